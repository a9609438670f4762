"""
Error taxonomy for the passkey smart wallet pipeline
"""

from typing import Any, Optional


class SmartWalletError(Exception):
    """Base error; `stage` names the pipeline step that failed, when known"""

    def __init__(self, message: str, stage: Optional[str] = None):
        super().__init__(message)
        self.stage = stage

    def __str__(self) -> str:
        message = super().__str__()
        if self.stage:
            return f"[{self.stage}] {message}"
        return message


class ConfigurationError(SmartWalletError):
    pass


class ChainReadError(SmartWalletError):
    """RPC or node failure during a read-only chain call"""


class RpcError(SmartWalletError):
    """Bundler or paymaster JSON-RPC failure, carrying the raw error payload"""

    def __init__(self, method: str, payload: Any, stage: Optional[str] = None):
        super().__init__(f"{method} failed: {payload}", stage=stage)
        self.method = method
        self.payload = payload


class SubmissionError(RpcError):
    """Bundler rejected eth_sendUserOperation (invalid signature, stale nonce, already included...)"""


class EstimationFailure(SmartWalletError):
    """Sponsorship and bundler estimation both failed; recovered with fallback limits"""

    def __init__(self, causes, stage: Optional[str] = None):
        super().__init__("; ".join(str(cause) for cause in causes), stage=stage)
        self.causes = list(causes)


class AssertionCancelled(SmartWalletError):
    """User declined or cancelled the biometric prompt"""


class ChallengeEncodingError(SmartWalletError):
    """clientDataJSON does not carry the fields the on-chain verifier searches for"""


class ChallengeNotFound(ChallengeEncodingError):
    pass


class ResponseTypeNotFound(ChallengeEncodingError):
    pass


class SignatureFormatError(SmartWalletError):
    """Malformed assertion field (base64url, DER, or an r/s value wider than 32 bytes)"""


class AbiSchemaError(SmartWalletError):
    """ABI fragment does not match the fixed call schema"""


class PublicKeyRequired(SmartWalletError):
    """An undeployed wallet needs its passkey public key to build initCode"""


class PipelineError(SmartWalletError):
    """Unexpected failure inside a pipeline stage"""


class WalletAlreadyDeployed(SmartWalletError):
    """A deployment use-case was requested for a wallet that already has code"""
