"""
UserOperation data model (EntryPoint v0.6) and RPC format conversion
"""

from dataclasses import dataclass, replace
from enum import Enum
from typing import Any, Dict, Optional, Union

from eth_abi import encode
from hexbytes import HexBytes
from web3 import Web3

GAS_FIELDS = ("callGasLimit", "verificationGasLimit", "preVerificationGas")


def to_hex_data(value: bytes) -> str:
    """0x-prefixed hex for a byte field; empty bytes become "0x" """
    return "0x" + bytes(value).hex()


def to_hex_quantity(value: int) -> str:
    """0x-prefixed hex without leading zeros, as bundlers expect for numeric fields"""
    if value < 0:
        raise ValueError(f"Quantity must be unsigned, got {value}")
    return hex(value)


def parse_quantity(value: Union[int, str]) -> int:
    if isinstance(value, int):
        return value
    return int(value, 16)


@dataclass(frozen=True)
class UserOperation:
    """
    ERC-4337 pseudo-transaction.

    Instances are immutable; every change yields a new value through `replace`.
    `signature` is the only field expected to change once gas and fees are final.
    """
    sender: str
    nonce: int
    init_code: bytes = b""
    call_data: bytes = b""
    call_gas_limit: int = 0
    verification_gas_limit: int = 0
    pre_verification_gas: int = 0
    max_fee_per_gas: int = 0
    max_priority_fee_per_gas: int = 0
    paymaster_and_data: bytes = b""
    signature: bytes = b""

    def __post_init__(self):
        for name in ("init_code", "call_data", "paymaster_and_data", "signature"):
            object.__setattr__(self, name, bytes(HexBytes(getattr(self, name))))

    @property
    def is_signed(self) -> bool:
        return bool(self.signature)

    def replace(self, **changes) -> "UserOperation":
        return replace(self, **changes)

    def with_signature(self, signature: bytes) -> "UserOperation":
        return replace(self, signature=signature)

    def to_rpc(self, signature: Optional[bytes] = None) -> Dict[str, str]:
        """Convert to the bundler/paymaster JSON format (numeric fields as hex quantities)"""
        return {
            "sender": self.sender,
            "nonce": to_hex_quantity(self.nonce),
            "initCode": to_hex_data(self.init_code),
            "callData": to_hex_data(self.call_data),
            "callGasLimit": to_hex_quantity(self.call_gas_limit),
            "verificationGasLimit": to_hex_quantity(self.verification_gas_limit),
            "preVerificationGas": to_hex_quantity(self.pre_verification_gas),
            "maxFeePerGas": to_hex_quantity(self.max_fee_per_gas),
            "maxPriorityFeePerGas": to_hex_quantity(self.max_priority_fee_per_gas),
            "paymasterAndData": to_hex_data(self.paymaster_and_data),
            "signature": to_hex_data(self.signature if signature is None else signature),
        }

    def to_tuple(self) -> tuple:
        """Positional form used for the entry point's `getUserOpHash` struct argument"""
        return (
            Web3.to_checksum_address(self.sender),
            self.nonce,
            self.init_code,
            self.call_data,
            self.call_gas_limit,
            self.verification_gas_limit,
            self.pre_verification_gas,
            self.max_fee_per_gas,
            self.max_priority_fee_per_gas,
            self.paymaster_and_data,
            self.signature,
        )

    @classmethod
    def from_rpc(cls, data: Dict[str, Any]) -> "UserOperation":
        return cls(
            sender=data["sender"],
            nonce=parse_quantity(data["nonce"]),
            init_code=data.get("initCode", "0x"),
            call_data=data.get("callData", "0x"),
            call_gas_limit=parse_quantity(data.get("callGasLimit", 0)),
            verification_gas_limit=parse_quantity(data.get("verificationGasLimit", 0)),
            pre_verification_gas=parse_quantity(data.get("preVerificationGas", 0)),
            max_fee_per_gas=parse_quantity(data.get("maxFeePerGas", 0)),
            max_priority_fee_per_gas=parse_quantity(data.get("maxPriorityFeePerGas", 0)),
            paymaster_and_data=data.get("paymasterAndData", "0x"),
            signature=data.get("signature", "0x"),
        )


def user_operation_hash(user_operation: UserOperation, entry_point: str, chain_id: int) -> bytes:
    """Compute the EntryPoint v0.6 userOpHash off-chain (matches `getUserOpHash`)"""
    packed = encode(
        ["address", "uint256", "bytes32", "bytes32", "uint256", "uint256", "uint256", "uint256", "uint256", "bytes32"],
        [
            Web3.to_checksum_address(user_operation.sender),
            user_operation.nonce,
            Web3.keccak(user_operation.init_code),
            Web3.keccak(user_operation.call_data),
            user_operation.call_gas_limit,
            user_operation.verification_gas_limit,
            user_operation.pre_verification_gas,
            user_operation.max_fee_per_gas,
            user_operation.max_priority_fee_per_gas,
            Web3.keccak(user_operation.paymaster_and_data),
        ],
    )
    return bytes(Web3.keccak(encode(
        ["bytes32", "address", "uint256"],
        [Web3.keccak(packed), Web3.to_checksum_address(entry_point), chain_id],
    )))


class GasSource(str, Enum):
    SPONSORED = "sponsored"
    ESTIMATED = "estimated"
    FALLBACK = "fallback"


@dataclass(frozen=True)
class SponsorshipResult:
    """Paymaster answer; overwrites the operation's gas fields and paymasterAndData verbatim"""
    paymaster_and_data: bytes
    call_gas_limit: int
    verification_gas_limit: int
    pre_verification_gas: int

    @classmethod
    def from_rpc(cls, result: Dict[str, Any]) -> "SponsorshipResult":
        return cls(
            paymaster_and_data=bytes(HexBytes(result["paymasterAndData"])),
            call_gas_limit=parse_quantity(result["callGasLimit"]),
            verification_gas_limit=parse_quantity(result["verificationGasLimit"]),
            pre_verification_gas=parse_quantity(result["preVerificationGas"]),
        )


@dataclass(frozen=True)
class GasEstimate:
    call_gas_limit: int
    verification_gas_limit: int
    pre_verification_gas: int
    paymaster_and_data: bytes = b""
    source: GasSource = GasSource.FALLBACK
    failure: Optional[Exception] = None

    def apply(self, user_operation: UserOperation) -> UserOperation:
        return user_operation.replace(
            call_gas_limit=self.call_gas_limit,
            verification_gas_limit=self.verification_gas_limit,
            pre_verification_gas=self.pre_verification_gas,
            paymaster_and_data=self.paymaster_and_data,
        )


@dataclass(frozen=True)
class FeeQuote:
    max_fee_per_gas: int
    max_priority_fee_per_gas: int
    floored: bool = False

    def apply(self, user_operation: UserOperation) -> UserOperation:
        return user_operation.replace(
            max_fee_per_gas=self.max_fee_per_gas,
            max_priority_fee_per_gas=self.max_priority_fee_per_gas,
        )
