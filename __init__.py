"""
Passkey Smart Wallet

ERC-4337 smart wallets owned by a platform passkey: UserOperation building,
WebAuthn signature encoding, paymaster sponsorship and bundler submission.
"""

# Main service
from smart_account import SmartWalletService, create_smart_wallet_service

# Configuration
from config import SmartWalletConfig, WebAuthnConfig

# Individual components for advanced usage
from bundler import BundlerClient, PaymasterClient
from call_data import CallDataEncoder
from chain_reader import ChainReader
from challenge import build_challenge, to_base64url
from gas_estimator import GasEstimator
from passkey import BrowserPasskeyBackend, CallbackPasskeyBackend, PasskeyCredential, SoftwarePasskeyBackend
from signature_formatter import SignatureFormatter
from user_operation_builder import UserOperationBuilder
from user_operations import UserOperation

__version__ = "1.0.0"

__all__ = [
    "SmartWalletService",
    "create_smart_wallet_service",
    "SmartWalletConfig",
    "WebAuthnConfig",
    "BundlerClient",
    "PaymasterClient",
    "CallDataEncoder",
    "ChainReader",
    "build_challenge",
    "to_base64url",
    "GasEstimator",
    "BrowserPasskeyBackend",
    "CallbackPasskeyBackend",
    "PasskeyCredential",
    "SoftwarePasskeyBackend",
    "SignatureFormatter",
    "UserOperationBuilder",
    "UserOperation",
]
