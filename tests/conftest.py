"""
Shared fixtures for the passkey smart wallet tests.
"""
import pytest

from config import GWEI, SmartWalletConfig, WebAuthnConfig
from user_operations import FeeQuote, user_operation_hash

FACTORY_ADDRESS = "0x9406Cc6185a346906296840746125a0E44976454"
TOKEN_ADDRESS = "0x5FbDB2315678afecb367f032d93F642f64180aa3"
ENTRY_POINT = "0x5FF137D4b0FDCD49DcA30c7CF57E578a026d2789"
WALLET_ADDRESS = "0xf39Fd6e51aad88F6F4ce6aB8827279cffFb92266"
RELAYER_ADDRESS = "0x70997970C51812dc3A010C7d01b50e0d17dc79C8"
CHAIN_ID = 11155111

PUBLIC_KEY = (bytes.fromhex("11" * 32), bytes.fromhex("22" * 32))


def make_config(**overrides) -> SmartWalletConfig:
    values = dict(
        rpc_url="http://localhost:8545",
        factory_address=FACTORY_ADDRESS,
        token_address=TOKEN_ADDRESS,
        bundler_url="https://bundler.example.com/rpc",
        paymaster_url="https://paymaster.example.com/rpc",
        webauthn=WebAuthnConfig(rp_id="wallet.example.com"),
        chain_id=CHAIN_ID,
        entry_point_address=ENTRY_POINT,
        confirmation_interval=0,
        confirmation_attempts=3,
        ios_team_id="TEAMID1234",
        bundle_id="com.example.wallet",
        android_sha256_fingerprint="AA:BB:CC",
    )
    values.update(overrides)
    return SmartWalletConfig(**values)


class FakeChain:
    """In-memory stand-in for ChainReader and TokenReader"""

    def __init__(self, wallet=WALLET_ADDRESS, deployed=False, balance=10**18, token_balance=0):
        self.wallet = wallet
        self.deployed = deployed
        self.balance = balance
        self.token_balance = token_balance
        self.nonce = 0
        self.nonce_reads = 0

    def derive_wallet_address(self, public_key):
        return self.wallet

    def is_deployed(self, address):
        return self.deployed

    def get_nonce(self, address):
        self.nonce_reads += 1
        return self.nonce

    def get_balance(self, address):
        return self.balance

    def get_user_operation_hash(self, user_operation):
        return user_operation_hash(user_operation, ENTRY_POINT, CHAIN_ID)

    def suggest_fees(self):
        return FeeQuote(max_fee_per_gas=3 * GWEI, max_priority_fee_per_gas=GWEI)


class FakeTokenReader:
    def __init__(self, chain: FakeChain):
        self.chain = chain

    def get_balance(self, address):
        return self.chain.token_balance


@pytest.fixture
def config():
    return make_config()


@pytest.fixture
def fake_chain():
    return FakeChain()
