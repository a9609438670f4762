"""
WebAuthn challenge codec: version || validUntil || userOpHash, and base64url helpers
"""

import base64
import binascii
import time
from typing import Any, Dict, Optional, Tuple

from config import DEFAULT_VALID_UNTIL, SIGNATURE_VERSION
from errors import SignatureFormatError

VERSION_SIZE = 1
VALID_UNTIL_SIZE = 6
USER_OP_HASH_SIZE = 32
CHALLENGE_SIZE = VERSION_SIZE + VALID_UNTIL_SIZE + USER_OP_HASH_SIZE

NO_EXPIRY = 0


def pack_envelope(version: int = SIGNATURE_VERSION, valid_until: int = DEFAULT_VALID_UNTIL) -> bytes:
    """abi.encodePacked(uint8 version, uint48 validUntil)"""
    if not 0 <= version < 2**8:
        raise ValueError(f"version must fit in uint8, got {version}")
    if not 0 <= valid_until < 2**48:
        raise ValueError(f"validUntil must fit in uint48, got {valid_until}")
    return version.to_bytes(VERSION_SIZE, "big") + valid_until.to_bytes(VALID_UNTIL_SIZE, "big")


def build_challenge(
    user_op_hash: bytes,
    version: int = SIGNATURE_VERSION,
    valid_until: int = DEFAULT_VALID_UNTIL,
) -> bytes:
    """Challenge bytes the wallet contract re-derives before verifying the passkey signature"""
    user_op_hash = bytes(user_op_hash)
    if len(user_op_hash) != USER_OP_HASH_SIZE:
        raise ValueError(f"userOpHash must be {USER_OP_HASH_SIZE} bytes, got {len(user_op_hash)}")
    return pack_envelope(version, valid_until) + user_op_hash


def parse_challenge(challenge: bytes) -> Tuple[int, int, bytes]:
    """Inverse of build_challenge: (version, valid_until, user_op_hash)"""
    if len(challenge) != CHALLENGE_SIZE:
        raise ValueError(f"challenge must be {CHALLENGE_SIZE} bytes, got {len(challenge)}")
    version = challenge[0]
    valid_until = int.from_bytes(challenge[VERSION_SIZE:VERSION_SIZE + VALID_UNTIL_SIZE], "big")
    return version, valid_until, bytes(challenge[VERSION_SIZE + VALID_UNTIL_SIZE:])


def is_expired(valid_until: int, now: Optional[float] = None) -> bool:
    # 0 means no expiry
    if valid_until == NO_EXPIRY:
        return False
    now = time.time() if now is None else now
    return now > valid_until


def to_base64url(data: bytes) -> str:
    return base64.urlsafe_b64encode(bytes(data)).rstrip(b"=").decode("ascii")


def from_base64url(value: str) -> bytes:
    """Decode base64url with or without padding"""
    padded = value + "=" * (-len(value) % 4)
    try:
        return base64.b64decode(padded, altchars=b"-_", validate=True)
    except (binascii.Error, ValueError) as e:
        raise SignatureFormatError(f"Invalid base64url value: {e}") from e


def parse_signature_response(response: Dict[str, Any]) -> Dict[str, Any]:
    """Decode the base64url fields of an assertion response into raw bytes/text"""
    try:
        authenticator_data = response["authenticatorData"]
        client_data_json = response["clientDataJSON"]
        signature = response["signature"]
    except KeyError as e:
        raise SignatureFormatError(f"Assertion response missing field {e}") from e

    client_data_bytes = from_base64url(client_data_json)
    try:
        client_data_text = client_data_bytes.decode("utf-8")
    except UnicodeDecodeError as e:
        raise SignatureFormatError(f"clientDataJSON is not valid UTF-8: {e}") from e

    user_handle = response.get("userHandle")
    return {
        "authenticatorData": from_base64url(authenticator_data),
        "clientDataJSON": client_data_text,
        "signature": from_base64url(signature),
        "userHandle": from_base64url(user_handle) if user_handle else None,
    }
