"""
Passkey capability: credential/assertion types, WebAuthn option builders and backends.

A backend is chosen once at composition time; the rest of the pipeline only sees
`create_passkey(wallet_name)` and `sign_challenge(challenge, credential_id)`.
"""

import hashlib
import json
import logging
import os
import secrets
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Optional, Protocol, Tuple

import cbor2
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec
from hexbytes import HexBytes

from challenge import from_base64url, to_base64url
from config import WebAuthnConfig
from errors import AssertionCancelled, SignatureFormatError

logger = logging.getLogger(__name__)

PUBLIC_KEY_SIZE = 64
COORDINATE_SIZE = 32

# authenticatorData flags
FLAG_USER_PRESENT = 0x01
FLAG_USER_VERIFIED = 0x04


@dataclass(frozen=True)
class PasskeyCredential:
    """P-256 public key (x, y) and the opaque credential id used to re-invoke the signer"""
    public_key: Tuple[bytes, bytes]
    credential_id: str

    def __post_init__(self):
        x, y = (bytes(HexBytes(coordinate)) for coordinate in self.public_key)
        if len(x) != COORDINATE_SIZE or len(y) != COORDINATE_SIZE:
            raise ValueError("Public key coordinates must be 32 bytes each")
        object.__setattr__(self, "public_key", (x, y))

    @classmethod
    def from_public_key_bytes(cls, public_key: bytes, credential_id: str) -> "PasskeyCredential":
        if len(public_key) != PUBLIC_KEY_SIZE:
            raise ValueError(f"Invalid public key length: expected {PUBLIC_KEY_SIZE} bytes, got {len(public_key)}")
        return cls(public_key=(public_key[:COORDINATE_SIZE], public_key[COORDINATE_SIZE:]), credential_id=credential_id)


@dataclass(frozen=True)
class Assertion:
    """Authenticator response, fields base64url-encoded as the platform returns them"""
    credential_id: str
    authenticator_data: str
    client_data_json: str
    signature: str
    user_handle: Optional[str] = None

    @classmethod
    def from_response(cls, data: Dict[str, Any]) -> "Assertion":
        try:
            response = data["response"]
            return cls(
                credential_id=data.get("rawId") or data["id"],
                authenticator_data=response["authenticatorData"],
                client_data_json=response["clientDataJSON"],
                signature=response["signature"],
                user_handle=response.get("userHandle"),
            )
        except KeyError as e:
            raise SignatureFormatError(f"Assertion missing field {e}") from e

    def to_response(self) -> Dict[str, str]:
        response = {
            "authenticatorData": self.authenticator_data,
            "clientDataJSON": self.client_data_json,
            "signature": self.signature,
        }
        if self.user_handle:
            response["userHandle"] = self.user_handle
        return response


class PasskeyBackend(Protocol):
    async def create_passkey(self, wallet_name: str) -> PasskeyCredential:
        ...

    async def sign_challenge(self, challenge: str, credential_id: str) -> Assertion:
        ...


def random_base64url(size: int = 16) -> str:
    return to_base64url(secrets.token_bytes(size))


def passkey_creation_options(config: WebAuthnConfig, wallet_name: str, challenge: str, user_id: str) -> Dict[str, Any]:
    return {
        "rp": {"name": config.rp_name, "id": config.rp_id},
        "user": {"id": user_id, "name": wallet_name, "displayName": wallet_name},
        "challenge": challenge,
        "pubKeyCredParams": [
            {"alg": -7, "type": "public-key"},
            {"alg": -257, "type": "public-key"},
        ],
        "timeout": config.timeout_ms,
        "attestation": "none",
        "authenticatorSelection": {
            "authenticatorAttachment": config.authenticator_attachment,
            "userVerification": config.user_verification,
        },
    }


def passkey_authentication_options(config: WebAuthnConfig, challenge: str, credential_id: str) -> Dict[str, Any]:
    return {
        "rpId": config.rp_id,
        "challenge": challenge,
        "allowCredentials": [{"id": credential_id, "type": "public-key"}],
        "userVerification": config.user_verification,
        "timeout": config.timeout_ms,
    }


# COSE_Key labels (RFC 8152)
COSE_KTY = 1
COSE_CRV = -1
COSE_X = -2
COSE_Y = -3
COSE_KTY_EC2 = 2
COSE_CRV_P256 = 1

# authenticatorData: rpIdHash(32) flags(1) signCount(4) | aaguid(16) credIdLen(2) credId coseKey
ATTESTED_DATA_OFFSET = 37
AAGUID_SIZE = 16


def public_key_from_spki(spki_der: bytes) -> Tuple[bytes, bytes]:
    """(x, y) from a DER SubjectPublicKeyInfo, as `AuthenticatorAttestationResponse.getPublicKey()` returns"""
    try:
        public_key = serialization.load_der_public_key(spki_der)
    except ValueError as e:
        raise SignatureFormatError(f"Invalid SPKI public key: {e}") from e
    if not isinstance(public_key, ec.EllipticCurvePublicKey) or not isinstance(public_key.curve, ec.SECP256R1):
        raise SignatureFormatError("Passkey public key is not a P-256 key")
    numbers = public_key.public_numbers()
    return numbers.x.to_bytes(COORDINATE_SIZE, "big"), numbers.y.to_bytes(COORDINATE_SIZE, "big")


def public_key_from_attestation(attestation_object: bytes) -> Tuple[bytes, bytes]:
    """(x, y) from the COSE key inside an attestationObject's attested credential data"""
    try:
        attestation = cbor2.loads(attestation_object)
        auth_data = bytes(attestation["authData"])
        offset = ATTESTED_DATA_OFFSET + AAGUID_SIZE
        credential_id_length = int.from_bytes(auth_data[offset:offset + 2], "big")
        offset += 2 + credential_id_length
        cose_key = cbor2.loads(auth_data[offset:])
    except (cbor2.CBORDecodeError, KeyError, TypeError, ValueError) as e:
        raise SignatureFormatError(f"Invalid attestationObject: {e}") from e

    if not isinstance(cose_key, dict) or cose_key.get(COSE_KTY) != COSE_KTY_EC2 or cose_key.get(COSE_CRV) != COSE_CRV_P256:
        raise SignatureFormatError("attestationObject does not carry a P-256 EC2 key")
    x, y = bytes(cose_key.get(COSE_X, b"")), bytes(cose_key.get(COSE_Y, b""))
    if len(x) != COORDINATE_SIZE or len(y) != COORDINATE_SIZE:
        raise SignatureFormatError("COSE key coordinates must be 32 bytes each")
    return x, y


class CallbackPasskeyBackend:
    """
    Adapter over platform passkey calls (native module or browser bridge).

    `create` and `get` receive the option dicts and return the platform's JSON
    result, or None when the user dismissed the prompt.
    """

    def __init__(
        self,
        config: WebAuthnConfig,
        create: Callable[[Dict[str, Any]], Awaitable[Optional[Dict[str, Any]]]],
        get: Callable[[Dict[str, Any]], Awaitable[Optional[Dict[str, Any]]]],
    ):
        self.config = config
        self._create = create
        self._get = get

    async def create_passkey(self, wallet_name: str) -> PasskeyCredential:
        logger.info(f"Creating passkey for wallet: {wallet_name}")
        options = passkey_creation_options(self.config, wallet_name, random_base64url(), random_base64url())

        result = await self._create(options)
        if not result:
            raise AssertionCancelled("Passkey creation was cancelled or failed")

        public_key = self._extract_public_key(result.get("response") or {})
        return PasskeyCredential(public_key=public_key, credential_id=result["rawId"])

    def _extract_public_key(self, response: Dict[str, Any]) -> Tuple[bytes, bytes]:
        """Native modules return the raw 64-byte x || y key as `publicKey`"""
        public_key_b64 = response.get("publicKey")
        if not public_key_b64:
            raise SignatureFormatError("No public key received from passkey")

        public_key = from_base64url(public_key_b64)
        if len(public_key) != PUBLIC_KEY_SIZE:
            raise SignatureFormatError(
                f"Invalid public key length: expected {PUBLIC_KEY_SIZE} bytes, got {len(public_key)}"
            )
        return public_key[:COORDINATE_SIZE], public_key[COORDINATE_SIZE:]

    async def sign_challenge(self, challenge: str, credential_id: str) -> Assertion:
        options = passkey_authentication_options(self.config, challenge, credential_id)

        result = await self._get(options)
        if not result:
            raise AssertionCancelled("WebAuthn assertion failed or was cancelled")

        logger.info(f"WebAuthn assertion received for credential {credential_id[:8]}...")
        return Assertion.from_response(result)


class BrowserPasskeyBackend(CallbackPasskeyBackend):
    """
    Adapter over `navigator.credentials.create/get` results serialized to JSON.

    The public key is read from the attestationObject's COSE key; when a
    bridge only forwards `getPublicKey()`, the SPKI DER form is accepted.
    """

    def _extract_public_key(self, response: Dict[str, Any]) -> Tuple[bytes, bytes]:
        attestation_object = response.get("attestationObject")
        if attestation_object:
            return public_key_from_attestation(from_base64url(attestation_object))

        public_key_b64 = response.get("publicKey")
        if not public_key_b64:
            raise SignatureFormatError("No attestationObject or public key received from passkey")
        return public_key_from_spki(from_base64url(public_key_b64))


class SoftwarePasskeyBackend:
    """
    In-process P-256 authenticator producing real WebAuthn assertions.

    Keys live only in memory. Useful for development networks and tests; the
    clientDataJSON layout matches what platform authenticators emit
    ({"type":"webauthn.get","challenge":...}).
    """

    def __init__(self, config: WebAuthnConfig, origin: Optional[str] = None):
        self.config = config
        self.origin = origin or f"https://{config.rp_id}"
        self._keys: Dict[str, ec.EllipticCurvePrivateKey] = {}
        self._sign_counts: Dict[str, int] = {}

    async def create_passkey(self, wallet_name: str) -> PasskeyCredential:
        private_key = ec.generate_private_key(ec.SECP256R1())
        credential_id = to_base64url(os.urandom(16))
        self._keys[credential_id] = private_key
        self._sign_counts[credential_id] = 0

        numbers = private_key.public_key().public_numbers()
        logger.info(f"Created software passkey for wallet: {wallet_name}")
        return PasskeyCredential(
            public_key=(numbers.x.to_bytes(COORDINATE_SIZE, "big"), numbers.y.to_bytes(COORDINATE_SIZE, "big")),
            credential_id=credential_id,
        )

    async def sign_challenge(self, challenge: str, credential_id: str) -> Assertion:
        private_key = self._keys.get(credential_id)
        if private_key is None:
            raise AssertionCancelled(f"No passkey available for credential {credential_id[:8]}...")

        self._sign_counts[credential_id] += 1
        authenticator_data = (
            hashlib.sha256(self.config.rp_id.encode("utf-8")).digest()
            + bytes([FLAG_USER_PRESENT | FLAG_USER_VERIFIED])
            + self._sign_counts[credential_id].to_bytes(4, "big")
        )
        client_data_json = json.dumps(
            {"type": "webauthn.get", "challenge": challenge, "origin": self.origin, "crossOrigin": False},
            separators=(",", ":"),
        ).encode("utf-8")

        signature = private_key.sign(
            authenticator_data + hashlib.sha256(client_data_json).digest(),
            ec.ECDSA(hashes.SHA256()),
        )

        return Assertion(
            credential_id=credential_id,
            authenticator_data=to_base64url(authenticator_data),
            client_data_json=to_base64url(client_data_json),
            signature=to_base64url(signature),
            user_handle=to_base64url(f"user-{int(time.time())}".encode("utf-8")),
        )
