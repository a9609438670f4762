"""
Configuration for passkey smart wallet operations
"""

import os
from dataclasses import dataclass
from typing import Dict, Optional

from errors import ConfigurationError

# Network constants
ENTRYPOINT_V06 = "0x5FF137D4b0FDCD49DcA30c7CF57E578a026d2789"
PIMLICO_BUNDLER_URL = "https://api.pimlico.io/v1/{chain}/rpc?apikey={api_key}"
PIMLICO_PAYMASTER_URL = "https://api.pimlico.io/v2/{chain}/rpc?apikey={api_key}"

GWEI = 10**9

# Placeholder gas limits sent with a sponsorship request
DEFAULT_GAS_LIMITS = {
    "call": 0xa6d74,
    "verification": 0xa6d74,
    "pre_verification": 0x117af,
}

# Conservative limits used when neither the paymaster nor the bundler answers
FALLBACK_GAS_LIMITS = {
    "call": 150000,
    "verification_deployed": 200000,
    "verification_undeployed": 400000,
    "pre_verification": 75000,
}

GAS_SAFETY_MARGIN_PERCENT = 150

# Fee floors applied when the chain returns no fee suggestion
MIN_MAX_FEE_PER_GAS = 20 * GWEI
MIN_MAX_PRIORITY_FEE_PER_GAS = 1 * GWEI

# Signature envelope understood by the wallet's WebAuthn verifier
SIGNATURE_VERSION = 1
DEFAULT_VALID_UNTIL = 0

REQUIRED_ENV_VARS = (
    "RPC_URL",
    "FACTORY_CONTRACT_ADDRESS",
    "TOKEN_ADDRESS",
    "PIMLICO_API_KEY",
    "ASSOCIATED_DOMAIN",
)


@dataclass
class WebAuthnConfig:
    """Relying party settings passed to the passkey option builders"""
    rp_id: str
    rp_name: str = "CoilWallet"
    timeout_ms: int = 60000
    user_verification: str = "required"
    authenticator_attachment: str = "platform"


@dataclass
class SmartWalletConfig:
    """Configuration for passkey smart wallet operations"""

    rpc_url: str
    factory_address: str
    token_address: str
    bundler_url: str
    paymaster_url: Optional[str]
    webauthn: WebAuthnConfig
    chain_id: int = 11155111
    entry_point_address: str = ENTRYPOINT_V06

    # Alternate transport (e.g. socks5h://127.0.0.1:9050) for bundler/paymaster traffic
    relay_proxy_url: Optional[str] = None
    request_timeout: float = 30.0

    # Confirmation polling
    confirmation_interval: float = 2.0
    confirmation_attempts: int = 15

    # Domain association files served by app.py
    ios_team_id: Optional[str] = None
    bundle_id: Optional[str] = None
    android_sha256_fingerprint: Optional[str] = None

    @property
    def relay_proxies(self) -> Dict[str, str]:
        if not self.relay_proxy_url:
            return {}
        return {"http": self.relay_proxy_url, "https": self.relay_proxy_url}

    @classmethod
    def from_env(cls, environ: Optional[Dict[str, str]] = None) -> "SmartWalletConfig":
        """Build configuration from environment variables, failing on every missing name at once"""
        env = os.environ if environ is None else environ

        missing = [name for name in REQUIRED_ENV_VARS if not env.get(name)]
        if missing:
            raise ConfigurationError(f"Missing required environment variables: {', '.join(missing)}")

        chain = env.get("CHAIN_NAME", "sepolia")
        api_key = env["PIMLICO_API_KEY"]

        return cls(
            rpc_url=env["RPC_URL"],
            chain_id=int(env.get("CHAIN_ID", "11155111")),
            factory_address=env["FACTORY_CONTRACT_ADDRESS"],
            token_address=env["TOKEN_ADDRESS"],
            entry_point_address=env.get("ENTRY_POINT_ADDRESS", ENTRYPOINT_V06),
            bundler_url=env.get("BUNDLER_URL") or PIMLICO_BUNDLER_URL.format(chain=chain, api_key=api_key),
            paymaster_url=env.get("PAYMASTER_URL") or PIMLICO_PAYMASTER_URL.format(chain=chain, api_key=api_key),
            relay_proxy_url=env.get("RELAY_PROXY_URL") or None,
            webauthn=WebAuthnConfig(rp_id=env["ASSOCIATED_DOMAIN"]),
            ios_team_id=env.get("IOS_TEAM_ID"),
            bundle_id=env.get("BUNDLE_ID"),
            android_sha256_fingerprint=env.get("ANDROID_SHA256_FINGERPRINT"),
        )
