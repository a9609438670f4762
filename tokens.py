"""
Token reads: balances, transfer history and metadata
"""

import logging
from dataclasses import dataclass
from typing import Dict, List, Optional

from web3 import Web3

from call_data import TOKEN_ABI
from chain_reader import chain_read
from errors import ChainReadError

logger = logging.getLogger(__name__)

TRANSFER_TOPIC = "0xddf252ad1be2c89b69c2b068fc378daa952ba7f163c4a11628f55a4df523b3ef"
DEFAULT_LOOKBACK_BLOCKS = 1000


def address_topic(address: str) -> str:
    return "0x" + "0" * 24 + Web3.to_checksum_address(address)[2:].lower()


@dataclass
class TokenTransfer:
    from_address: str
    to_address: str
    value: int
    block_number: int
    transaction_hash: str
    timestamp: Optional[int] = None


class TokenReader:
    def __init__(self, web3: Web3, token_address: str):
        self.web3 = web3
        self.token_address = Web3.to_checksum_address(token_address)
        self.contract = web3.eth.contract(address=self.token_address, abi=TOKEN_ABI)

    @chain_read
    def get_balance(self, address: str) -> int:
        return self.contract.functions.balanceOf(Web3.to_checksum_address(address)).call()

    @chain_read
    def get_token_info(self) -> Dict:
        return {
            "name": self.contract.functions.name().call(),
            "symbol": self.contract.functions.symbol().call(),
            "decimals": self.contract.functions.decimals().call(),
            "total_supply": self.contract.functions.totalSupply().call(),
        }

    @chain_read
    def _block_number(self) -> int:
        return self.web3.eth.block_number

    @chain_read
    def _block_timestamp(self, block_number: int) -> int:
        return self.web3.eth.get_block(block_number)["timestamp"]

    @chain_read
    def _get_logs(self, topics: List, from_block: int, to_block: int) -> List:
        return self.web3.eth.get_logs({
            "address": self.token_address,
            "fromBlock": from_block,
            "toBlock": to_block,
            "topics": topics,
        })

    def get_transfers(
        self,
        address: str,
        from_block: Optional[int] = None,
        to_block: Optional[int] = None,
        limit: int = 10,
    ) -> List[TokenTransfer]:
        """Transfers sent or received by `address`, most recent first"""
        if to_block is None:
            to_block = self._block_number()
        if from_block is None:
            from_block = max(0, to_block - DEFAULT_LOOKBACK_BLOCKS)

        topic = address_topic(address)
        sent = self._get_logs([TRANSFER_TOPIC, topic], from_block, to_block)
        received = self._get_logs([TRANSFER_TOPIC, None, topic], from_block, to_block)

        # One bundle transaction can carry several Transfer logs; only self-transfers appear twice
        unique = {}
        for log in list(sent) + list(received):
            unique[(bytes(log["transactionHash"]), log["logIndex"])] = log
        logs = sorted(unique.values(), key=lambda log: (log["blockNumber"], log["logIndex"]), reverse=True)
        if limit > 0:
            logs = logs[:limit]

        transfers = []
        for log in logs:
            event = self.contract.events.Transfer().process_log(log)
            transfers.append(TokenTransfer(
                from_address=event["args"]["from"],
                to_address=event["args"]["to"],
                value=event["args"]["value"],
                block_number=log["blockNumber"],
                transaction_hash="0x" + bytes(log["transactionHash"]).hex(),
            ))
        return self._add_timestamps(transfers)

    def _add_timestamps(self, transfers: List[TokenTransfer]) -> List[TokenTransfer]:
        try:
            timestamps = {
                number: self._block_timestamp(number)
                for number in {t.block_number for t in transfers}
            }
        except ChainReadError as e:
            logger.warning(f"Returning transfers without timestamps: {e}")
            return transfers

        for transfer in transfers:
            transfer.timestamp = timestamps[transfer.block_number]
        return transfers
