"""
Re-encode a WebAuthn assertion into the signature bytes the wallet's on-chain verifier parses.

Final layout:
    uint8 version || uint48 validUntil || abi.encode((bytes authenticatorData,
        string clientDataJSON, uint256 challengeLocation, uint256 responseTypeLocation,
        bytes32 r, bytes32 s))
"""

import logging
from typing import Tuple

from cryptography.hazmat.primitives.asymmetric.utils import decode_dss_signature
from eth_abi import encode

from challenge import pack_envelope, parse_signature_response
from config import DEFAULT_VALID_UNTIL, SIGNATURE_VERSION
from errors import ChallengeNotFound, ResponseTypeNotFound, SignatureFormatError
from passkey import Assertion

logger = logging.getLogger(__name__)

CHALLENGE_MARKER = b'"challenge":"'
RESPONSE_TYPE_MARKER = b'"type":"webauthn.get"'

WEBAUTHN_SIGNATURE_TYPE = "(bytes,string,uint256,uint256,bytes32,bytes32)"

SCALAR_SIZE = 32
# P-256 group order
P256_N = 0xFFFFFFFF00000000FFFFFFFFFFFFFFFFBCE6FAADA7179E84F3B9CAC2FC632551


def locate_client_data_fields(client_data_json: bytes) -> Tuple[int, int]:
    """Byte offsets of `"challenge":"` and `"type":"webauthn.get"` inside clientDataJSON"""
    challenge_location = client_data_json.find(CHALLENGE_MARKER)
    if challenge_location == -1:
        raise ChallengeNotFound("Challenge not found in clientDataJSON")

    response_type_location = client_data_json.find(RESPONSE_TYPE_MARKER)
    if response_type_location == -1:
        raise ResponseTypeNotFound("Response type not found in clientDataJSON")

    return challenge_location, response_type_location


def scalar_to_bytes32(value: int) -> bytes:
    """
    Fixed-width big-endian form of a DER INTEGER value.

    DER prepends 0x00 when the high bit of the first significant byte is set;
    working on the integer value drops that sign byte before left-padding to 32.
    """
    if not 0 < value < P256_N:
        raise SignatureFormatError(f"ECDSA scalar out of range for P-256: {hex(value)}")
    return value.to_bytes(SCALAR_SIZE, "big")


def parse_der_signature(signature_der: bytes) -> Tuple[bytes, bytes]:
    """ASN.1 DER ECDSA-Sig-Value -> (r, s) as bytes32"""
    try:
        r, s = decode_dss_signature(signature_der)
    except ValueError as e:
        raise SignatureFormatError(f"Invalid DER ECDSA signature: {e}") from e
    return scalar_to_bytes32(r), scalar_to_bytes32(s)


class SignatureFormatter:
    """Stateless; formatting the same assertion twice yields identical bytes"""

    def __init__(self, version: int = SIGNATURE_VERSION, valid_until: int = DEFAULT_VALID_UNTIL):
        self.version = version
        self.valid_until = valid_until

    def format(self, assertion: Assertion) -> bytes:
        response = parse_signature_response(assertion.to_response())
        authenticator_data = response["authenticatorData"]
        # Kept as raw text: the verifier searches substrings, it never parses JSON
        client_data_json = response["clientDataJSON"]

        challenge_location, response_type_location = locate_client_data_fields(client_data_json.encode("utf-8"))
        r, s = parse_der_signature(response["signature"])

        logger.debug(
            f"WebAuthn signature fields: challengeLocation={challenge_location}, "
            f"responseTypeLocation={response_type_location}"
        )

        return self.encode(authenticator_data, client_data_json, challenge_location, response_type_location, r, s)

    def encode(
        self,
        authenticator_data: bytes,
        client_data_json: str,
        challenge_location: int,
        response_type_location: int,
        r: bytes,
        s: bytes,
    ) -> bytes:
        webauthn_signature = encode(
            [WEBAUTHN_SIGNATURE_TYPE],
            [(authenticator_data, client_data_json, challenge_location, response_type_location, r, s)],
        )
        return pack_envelope(self.version, self.valid_until) + webauthn_signature

    def dummy_signature(self, rp_id: str) -> bytes:
        """Correctly shaped placeholder used while estimating or sponsoring gas"""
        client_data_json = (
            '{"type":"webauthn.get","challenge":"' + "A" * 52
            + '","origin":"https://' + rp_id + '","crossOrigin":false}'
        )
        challenge_location, response_type_location = locate_client_data_fields(client_data_json.encode("utf-8"))
        return self.encode(
            b"\x49" * 32 + b"\x05" + b"\x00" * 4,
            client_data_json,
            challenge_location,
            response_type_location,
            b"\x7f" * SCALAR_SIZE,
            b"\x7f" * SCALAR_SIZE,
        )
