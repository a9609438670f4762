"""
Passkey smart wallet service orchestration
"""

import asyncio
import logging
import time
import uuid
import weakref
from contextlib import asynccontextmanager
from dataclasses import asdict, dataclass
from decimal import Decimal
from typing import Callable, Dict, Optional, Tuple, Union

import requests
from web3 import Web3

from bundler import BundlerClient, PaymasterClient, create_rpc_session
from call_data import CallDataEncoder
from challenge import build_challenge, to_base64url
from chain_reader import ChainReader
from config import SmartWalletConfig
from errors import ChainReadError, PipelineError, SmartWalletError
from gas_estimator import GasEstimator
from passkey import PasskeyBackend, PasskeyCredential
from signature_formatter import SignatureFormatter
from tokens import TokenReader
from user_operation_builder import BuildRequest, BuildState, UserOperationBuilder
from user_operations import UserOperation

logger = logging.getLogger(__name__)

Amount = Union[int, str, Decimal]
PublicKey = Tuple[bytes, bytes]


@dataclass
class WalletState:
    address: str
    deployed: bool
    balance: int
    token_balance: int


@dataclass
class OperationResult:
    wallet_address: str
    user_operation_hash: str
    confirmed: bool
    attempts: int
    state: WalletState

    def to_dict(self) -> Dict:
        return asdict(self)


Expectation = Callable[[WalletState, WalletState], bool]


class SmartWalletService:
    """Build -> sign -> submit -> confirm use-cases for passkey-owned ERC-4337 wallets"""

    def __init__(
        self,
        config: SmartWalletConfig,
        chain_reader: ChainReader,
        token_reader: TokenReader,
        builder: UserOperationBuilder,
        bundler: BundlerClient,
        passkey_backend: PasskeyBackend,
        encoder: CallDataEncoder,
        formatter: Optional[SignatureFormatter] = None,
    ):
        self.config = config
        self.chain_reader = chain_reader
        self.token_reader = token_reader
        self.builder = builder
        self.bundler = bundler
        self.passkey_backend = passkey_backend
        self.encoder = encoder
        self.formatter = formatter or SignatureFormatter()
        self._sender_locks: "weakref.WeakValueDictionary[str, asyncio.Lock]" = weakref.WeakValueDictionary()

        logger.info(f"Smart wallet service initialized (factory {config.factory_address}, chain {config.chain_id})")

    async def create_passkey(self, wallet_name: str) -> PasskeyCredential:
        return await self.passkey_backend.create_passkey(wallet_name)

    async def get_wallet_address(self, public_key: PublicKey) -> str:
        return await asyncio.to_thread(self.chain_reader.derive_wallet_address, public_key)

    async def get_wallet_state(self, address: str) -> WalletState:
        deployed, balance, token_balance = await asyncio.gather(
            asyncio.to_thread(self.chain_reader.is_deployed, address),
            asyncio.to_thread(self.chain_reader.get_balance, address),
            asyncio.to_thread(self.token_reader.get_balance, address),
        )
        return WalletState(address=address, deployed=deployed, balance=balance, token_balance=token_balance)

    async def deploy_wallet(self, credential: PasskeyCredential) -> OperationResult:
        """Deploy the wallet with no call attached"""
        return await self._deploy(credential, self.encoder.encode_deploy_only(), "deploy", lambda before, after: after.deployed)

    async def deploy_wallet_and_claim_bonus(self, credential: PasskeyCredential) -> OperationResult:
        """Deploy the wallet and claim the token welcome bonus in the same operation"""
        return await self._deploy(
            credential,
            self.encoder.encode_bonus_claim(self.config.token_address),
            "deploy_and_claim_bonus",
            lambda before, after: after.deployed and after.token_balance > before.token_balance,
        )

    async def send_value(
        self,
        to_address: str,
        amount_eth: Amount,
        credential_id: str,
        wallet_address: str,
        public_key: Optional[PublicKey] = None,
    ) -> OperationResult:
        """Send ETH; `public_key` is only needed while the wallet is undeployed"""
        amount_wei = Web3.to_wei(amount_eth, "ether")
        call_data = self.encoder.encode_eth_transfer(to_address, amount_wei)
        return await self._run(
            "send_value",
            wallet_address,
            BuildRequest(call_data=call_data, public_key=public_key, sender=wallet_address),
            credential_id,
            lambda before, after: after.balance <= before.balance - amount_wei,
        )

    async def send_tokens(
        self,
        to_address: str,
        amount: Amount,
        credential_id: str,
        wallet_address: str,
        public_key: Optional[PublicKey] = None,
    ) -> OperationResult:
        """Send the configured 18-decimal token"""
        amount_units = Web3.to_wei(amount, "ether")
        call_data = self.encoder.encode_erc20_transfer(self.config.token_address, to_address, amount_units)
        return await self._run(
            "send_tokens",
            wallet_address,
            BuildRequest(call_data=call_data, public_key=public_key, sender=wallet_address),
            credential_id,
            lambda before, after: after.token_balance <= before.token_balance - amount_units,
        )

    async def build_transfer_operation(self, public_key: PublicKey, to_address: str, amount_eth: Amount) -> BuildState:
        """Unsigned ETH transfer from the wallet owned by `public_key`"""
        call_data = self.encoder.encode_eth_transfer(to_address, Web3.to_wei(amount_eth, "ether"))
        return await self.builder.build(BuildRequest(call_data=call_data, public_key=public_key))

    async def sign_user_operation(self, user_operation: UserOperation, credential_id: str) -> UserOperation:
        """Passkey-sign a final operation; any field change afterwards invalidates the signature"""
        user_op_hash = await asyncio.to_thread(self.chain_reader.get_user_operation_hash, user_operation)
        challenge = build_challenge(user_op_hash, self.formatter.version, self.formatter.valid_until)

        assertion = await self.passkey_backend.sign_challenge(to_base64url(challenge), credential_id)
        signature = self.formatter.format(assertion)

        logger.info(f"Signed UserOperation {user_op_hash.hex()[:16]}... ({len(signature)} signature bytes)")
        return user_operation.with_signature(signature)

    async def _deploy(self, credential: PasskeyCredential, call_data: bytes, operation: str, expectation: Expectation):
        try:
            wallet_address = await self.get_wallet_address(credential.public_key)
        except SmartWalletError as e:
            e.stage = e.stage or "resolve_address"
            raise
        return await self._run(
            operation,
            wallet_address,
            BuildRequest(call_data=call_data, public_key=credential.public_key, sender=wallet_address, deploy=True),
            credential.credential_id,
            expectation,
        )

    def _sender_lock(self, sender: str) -> asyncio.Lock:
        # One in-flight operation per sender: concurrent builds would read the same nonce.
        # Entries vanish once no holder or waiter references the lock.
        key = sender.lower()
        lock = self._sender_locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._sender_locks[key] = lock
        return lock

    async def _run(
        self,
        operation: str,
        sender: str,
        request: BuildRequest,
        credential_id: str,
        expectation: Expectation,
    ) -> OperationResult:
        request_id = uuid.uuid4().hex[:12]
        logger.info(f"[{request_id}] {operation} started for {sender}")

        async with self._sender_lock(sender):
            async with self._stage(request_id, "snapshot"):
                before = await self.get_wallet_state(sender)

            async with self._stage(request_id, "build"):
                state = await self.builder.build(request)

            async with self._stage(request_id, "sign"):
                signed = await self.sign_user_operation(state.user_operation, credential_id)

            async with self._stage(request_id, "submit"):
                user_op_hash = await asyncio.to_thread(self.bundler.send_user_operation, signed)

            async with self._stage(request_id, "confirm"):
                confirmed, attempts, after = await self._await_confirmation(sender, before, expectation)

        logger.info(f"[{request_id}] {operation} finished: userOpHash={user_op_hash}, confirmed={confirmed}")
        return OperationResult(
            wallet_address=state.sender,
            user_operation_hash=user_op_hash,
            confirmed=confirmed,
            attempts=attempts,
            state=after,
        )

    async def _await_confirmation(self, address: str, before: WalletState, expectation: Expectation):
        """Poll wallet state until `expectation` holds or the attempt budget runs out"""
        latest = before
        for attempt in range(1, self.config.confirmation_attempts + 1):
            await asyncio.sleep(self.config.confirmation_interval)
            try:
                latest = await self.get_wallet_state(address)
            except ChainReadError as e:
                logger.warning(f"Confirmation poll {attempt} for {address} failed: {e}")
                continue
            if expectation(before, latest):
                return True, attempt, latest

        logger.warning(f"Post-state for {address} not observed after {self.config.confirmation_attempts} polls")
        try:
            latest = await self.get_wallet_state(address)
        except ChainReadError as e:
            logger.warning(f"Final state refresh for {address} failed: {e}")
        return expectation(before, latest), self.config.confirmation_attempts, latest

    @asynccontextmanager
    async def _stage(self, request_id: str, stage: str):
        started = time.monotonic()
        fields = {"request_id": request_id, "stage": stage}
        try:
            yield
        except SmartWalletError as e:
            e.stage = e.stage or stage
            logger.error(f"[{request_id}] stage={stage} failed: {e}", extra=fields)
            raise
        except Exception as e:
            logger.error(f"[{request_id}] stage={stage} failed unexpectedly: {e}", extra=fields)
            raise PipelineError(f"{type(e).__name__}: {e}", stage=stage) from e
        duration_ms = round((time.monotonic() - started) * 1000, 1)
        logger.info(f"[{request_id}] stage={stage} done in {duration_ms}ms", extra={**fields, "duration_ms": duration_ms})


def create_smart_wallet_service(
    config: SmartWalletConfig,
    passkey_backend: PasskeyBackend,
    session: Optional[requests.Session] = None,
) -> SmartWalletService:
    """Wire the service from configuration; clients are built once here and injected"""
    web3 = Web3(Web3.HTTPProvider(config.rpc_url, request_kwargs={"timeout": config.request_timeout}))
    session = session or create_rpc_session(config)

    chain_reader = ChainReader(web3, config.factory_address, config.entry_point_address)
    encoder = CallDataEncoder()
    formatter = SignatureFormatter()
    bundler = BundlerClient(config, session=session)
    paymaster = PaymasterClient(config, session=session) if config.paymaster_url else None
    gas_estimator = GasEstimator(
        chain_reader,
        bundler,
        paymaster,
        dummy_signature=formatter.dummy_signature(config.webauthn.rp_id),
    )
    builder = UserOperationBuilder(chain_reader, encoder, gas_estimator, config.factory_address)

    return SmartWalletService(
        config=config,
        chain_reader=chain_reader,
        token_reader=TokenReader(web3, config.token_address),
        builder=builder,
        bundler=bundler,
        passkey_backend=passkey_backend,
        encoder=encoder,
        formatter=formatter,
    )
