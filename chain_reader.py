"""
Read-only chain access: wallet address derivation, deployment status, nonces and fees
"""

import logging
from functools import wraps
from typing import Optional, Tuple

import requests
from web3 import Web3
from web3.exceptions import Web3Exception

from call_data import ENTRY_POINT_ABI, FACTORY_ABI
from errors import ChainReadError
from user_operations import FeeQuote, UserOperation

logger = logging.getLogger(__name__)

# viem-compatible base fee headroom for the suggested maxFeePerGas
BASE_FEE_MULTIPLIER_PERCENT = 120

CHAIN_ERRORS = (Web3Exception, requests.RequestException, ValueError)


def chain_read(func):
    """Surface node/RPC failures as ChainReadError; no retries here"""
    @wraps(func)
    def wrapper(*args, **kwargs):
        try:
            return func(*args, **kwargs)
        except CHAIN_ERRORS as e:
            logger.error(f"Chain read {func.__name__} failed: {e}")
            raise ChainReadError(f"{func.__name__} failed: {e}") from e
    return wrapper


class ChainReader:
    """Read calls against the wallet factory and the shared entry point"""

    def __init__(self, web3: Web3, factory_address: str, entry_point_address: str):
        self.web3 = web3
        self.factory = web3.eth.contract(address=Web3.to_checksum_address(factory_address), abi=FACTORY_ABI)
        self.entry_point = web3.eth.contract(address=Web3.to_checksum_address(entry_point_address), abi=ENTRY_POINT_ABI)

    @chain_read
    def derive_wallet_address(self, public_key: Tuple[bytes, bytes]) -> str:
        """Counterfactual wallet address for a passkey public key (factory getAddress)"""
        address = self.factory.functions.getAddress([bytes(public_key[0]), bytes(public_key[1])]).call()
        return Web3.to_checksum_address(address)

    @chain_read
    def is_deployed(self, address: str) -> bool:
        code = self.web3.eth.get_code(Web3.to_checksum_address(address))
        return code is not None and len(code) > 0

    @chain_read
    def get_nonce(self, address: str) -> int:
        nonce = self.entry_point.functions.getNonce(Web3.to_checksum_address(address), 0).call()
        logger.info(f"Current nonce for {address}: {nonce}")
        return nonce

    @chain_read
    def get_user_operation_hash(self, user_operation: UserOperation) -> bytes:
        return bytes(self.entry_point.functions.getUserOpHash(user_operation.to_tuple()).call())

    @chain_read
    def get_balance(self, address: str) -> int:
        return self.web3.eth.get_balance(Web3.to_checksum_address(address))

    @chain_read
    def suggest_fees(self) -> Optional[FeeQuote]:
        """EIP-1559 fee suggestion, or None when the chain reports no base fee"""
        block = self.web3.eth.get_block("latest")
        base_fee = block.get("baseFeePerGas")
        if base_fee is None:
            return None

        priority_fee = self.web3.eth.max_priority_fee
        max_fee = base_fee * BASE_FEE_MULTIPLIER_PERCENT // 100 + priority_fee
        return FeeQuote(max_fee_per_gas=max_fee, max_priority_fee_per_gas=priority_fee)
