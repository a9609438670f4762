"""
ABI-encoded call payloads for the passkey wallet, its factory and the token contract.

Every fragment the encoder relies on is checked against a fixed signature schema
when the encoder is constructed, so a drifted ABI fails at startup instead of
reverting opaquely on-chain.
"""

import logging
from typing import Any, Dict, List, Sequence, Tuple

from eth_abi import encode
from web3 import Web3

from errors import AbiSchemaError

logger = logging.getLogger(__name__)

USER_OPERATION_COMPONENTS = [
    {"name": "sender", "type": "address"},
    {"name": "nonce", "type": "uint256"},
    {"name": "initCode", "type": "bytes"},
    {"name": "callData", "type": "bytes"},
    {"name": "callGasLimit", "type": "uint256"},
    {"name": "verificationGasLimit", "type": "uint256"},
    {"name": "preVerificationGas", "type": "uint256"},
    {"name": "maxFeePerGas", "type": "uint256"},
    {"name": "maxPriorityFeePerGas", "type": "uint256"},
    {"name": "paymasterAndData", "type": "bytes"},
    {"name": "signature", "type": "bytes"},
]

ACCOUNT_ABI = [
    {
        "inputs": [
            {"name": "dest", "type": "address"},
            {"name": "value", "type": "uint256"},
            {"name": "func", "type": "bytes"},
        ],
        "name": "execute",
        "outputs": [],
        "stateMutability": "nonpayable",
        "type": "function",
    },
    {
        "inputs": [{
            "name": "calls",
            "type": "tuple[]",
            "components": [
                {"name": "dest", "type": "address"},
                {"name": "value", "type": "uint256"},
                {"name": "data", "type": "bytes"},
            ],
        }],
        "name": "executeBatch",
        "outputs": [],
        "stateMutability": "nonpayable",
        "type": "function",
    },
]

FACTORY_ABI = [
    {
        "inputs": [{"name": "publicKey", "type": "bytes32[2]"}],
        "name": "createAccount",
        "outputs": [{"name": "", "type": "address"}],
        "stateMutability": "nonpayable",
        "type": "function",
    },
    {
        "inputs": [{"name": "publicKey", "type": "bytes32[2]"}],
        "name": "getAddress",
        "outputs": [{"name": "", "type": "address"}],
        "stateMutability": "view",
        "type": "function",
    },
]

ENTRY_POINT_ABI = [
    {
        "inputs": [{"name": "sender", "type": "address"}, {"name": "key", "type": "uint192"}],
        "name": "getNonce",
        "outputs": [{"name": "nonce", "type": "uint256"}],
        "stateMutability": "view",
        "type": "function",
    },
    {
        "inputs": [{"name": "userOp", "type": "tuple", "components": USER_OPERATION_COMPONENTS}],
        "name": "getUserOpHash",
        "outputs": [{"name": "", "type": "bytes32"}],
        "stateMutability": "view",
        "type": "function",
    },
]

TOKEN_ABI = [
    {
        "inputs": [{"name": "to", "type": "address"}, {"name": "amount", "type": "uint256"}],
        "name": "transfer",
        "outputs": [{"name": "", "type": "bool"}],
        "stateMutability": "nonpayable",
        "type": "function",
    },
    {
        "inputs": [],
        "name": "distributeWelcomeBonus",
        "outputs": [],
        "stateMutability": "nonpayable",
        "type": "function",
    },
    {
        "inputs": [{"name": "account", "type": "address"}],
        "name": "balanceOf",
        "outputs": [{"name": "", "type": "uint256"}],
        "stateMutability": "view",
        "type": "function",
    },
    {"inputs": [], "name": "name", "outputs": [{"name": "", "type": "string"}], "stateMutability": "view", "type": "function"},
    {"inputs": [], "name": "symbol", "outputs": [{"name": "", "type": "string"}], "stateMutability": "view", "type": "function"},
    {"inputs": [], "name": "decimals", "outputs": [{"name": "", "type": "uint8"}], "stateMutability": "view", "type": "function"},
    {"inputs": [], "name": "totalSupply", "outputs": [{"name": "", "type": "uint256"}], "stateMutability": "view", "type": "function"},
    {
        "anonymous": False,
        "inputs": [
            {"indexed": True, "name": "from", "type": "address"},
            {"indexed": True, "name": "to", "type": "address"},
            {"indexed": False, "name": "value", "type": "uint256"},
        ],
        "name": "Transfer",
        "type": "event",
    },
]

# Fixed call schema: canonical signatures the deployed contracts expose
CALL_SCHEMA = {
    "execute": "execute(address,uint256,bytes)",
    "executeBatch": "executeBatch((address,uint256,bytes)[])",
    "createAccount": "createAccount(bytes32[2])",
    "transfer": "transfer(address,uint256)",
    "distributeWelcomeBonus": "distributeWelcomeBonus()",
}

# Selectors pinned independently of the keccak computation
PINNED_SELECTORS = {
    "execute(address,uint256,bytes)": "b61d27f6",
    "transfer(address,uint256)": "a9059cbb",
}


def canonical_type(param: Dict[str, Any]) -> str:
    param_type = param["type"]
    if param_type.startswith("tuple"):
        inner = ",".join(canonical_type(component) for component in param.get("components", []))
        return f"({inner}){param_type[len('tuple'):]}"
    return param_type


def function_signature(fragment: Dict[str, Any]) -> str:
    return f"{fragment['name']}({','.join(canonical_type(p) for p in fragment.get('inputs', []))})"


def find_function(abi: List[Dict[str, Any]], name: str) -> Dict[str, Any]:
    matches = [item for item in abi if item.get("type") == "function" and item.get("name") == name]
    if len(matches) != 1:
        raise AbiSchemaError(f"Expected exactly one '{name}' function in ABI, found {len(matches)}")
    return matches[0]


def validate_abi_fragment(abi: List[Dict[str, Any]], name: str, expected_signature: str) -> Tuple[bytes, List[str]]:
    """Check a function fragment against its expected signature; returns (selector, input types)"""
    fragment = find_function(abi, name)
    signature = function_signature(fragment)
    if signature != expected_signature:
        raise AbiSchemaError(f"ABI fragment '{signature}' does not match schema '{expected_signature}'")

    selector = bytes(Web3.keccak(text=signature)[:4])
    pinned = PINNED_SELECTORS.get(signature)
    if pinned is not None and selector.hex() != pinned:
        raise AbiSchemaError(f"Selector mismatch for {signature}: {selector.hex()} != {pinned}")

    return selector, [canonical_type(p) for p in fragment.get("inputs", [])]


class CallDataEncoder:
    """Builds execute/executeBatch payloads and factory initCode"""

    def __init__(self, account_abi=ACCOUNT_ABI, factory_abi=FACTORY_ABI, token_abi=TOKEN_ABI):
        abis = {
            "execute": account_abi,
            "executeBatch": account_abi,
            "createAccount": factory_abi,
            "transfer": token_abi,
            "distributeWelcomeBonus": token_abi,
        }
        self._functions = {
            name: validate_abi_fragment(abis[name], name, signature)
            for name, signature in CALL_SCHEMA.items()
        }

    def selector(self, name: str) -> bytes:
        return self._functions[name][0]

    def encode_function(self, name: str, args: Sequence[Any]) -> bytes:
        selector, types = self._functions[name]
        return selector + encode(types, list(args))

    def encode_eth_transfer(self, to_address: str, amount_wei: int) -> bytes:
        """execute(to, amount, "")"""
        logger.info(f"Encoding ETH transfer: {amount_wei} wei to {to_address}")
        return self.encode_function("execute", [Web3.to_checksum_address(to_address), amount_wei, b""])

    def encode_batch(self, calls: Sequence[Tuple[str, int, bytes]]) -> bytes:
        return self.encode_function(
            "executeBatch",
            [[(Web3.to_checksum_address(dest), value, data) for dest, value, data in calls]],
        )

    def encode_erc20_transfer(self, token_address: str, to_address: str, amount: int) -> bytes:
        """executeBatch([{token, 0, transfer(to, amount)}])"""
        logger.info(f"Encoding token transfer: {amount} units of {token_address} to {to_address}")
        transfer = self.encode_function("transfer", [Web3.to_checksum_address(to_address), amount])
        return self.encode_batch([(token_address, 0, transfer)])

    def encode_bonus_claim(self, token_address: str) -> bytes:
        """executeBatch([{token, 0, distributeWelcomeBonus()}])"""
        return self.encode_batch([(token_address, 0, self.encode_function("distributeWelcomeBonus", []))])

    def encode_deploy_only(self) -> bytes:
        return b""

    def encode_init_code(self, factory_address: str, public_key: Tuple[bytes, bytes]) -> bytes:
        """factoryAddress || createAccount([x, y])"""
        create_call = self.encode_function("createAccount", [[bytes(public_key[0]), bytes(public_key[1])]])
        return bytes.fromhex(Web3.to_checksum_address(factory_address)[2:]) + create_call
