import asyncio
import gc
from unittest.mock import Mock

import pytest

from call_data import CallDataEncoder
from challenge import build_challenge, to_base64url
from conftest import (
    CHAIN_ID,
    ENTRY_POINT,
    FACTORY_ADDRESS,
    RELAYER_ADDRESS,
    WALLET_ADDRESS,
    FakeTokenReader,
    make_config,
)
from errors import AssertionCancelled, ChainReadError, PipelineError, PublicKeyRequired, SubmissionError, WalletAlreadyDeployed
from gas_estimator import GasEstimator
from passkey import CallbackPasskeyBackend, SoftwarePasskeyBackend
from signature_formatter import SignatureFormatter
from smart_account import SmartWalletService, create_smart_wallet_service
from user_operation_builder import UserOperationBuilder
from user_operations import user_operation_hash

BONUS = 100 * 10**18


class FakeBundler:
    """Accepts signed operations and applies `effect` to the fake chain"""

    def __init__(self, chain, effect=None):
        self.chain = chain
        self.effect = effect
        self.sent = []

    def estimate_user_operation_gas(self, user_operation, signature=b""):
        return {"callGasLimit": "0x186a0", "verificationGasLimit": "0x30d40", "preVerificationGas": "0xc350"}

    def send_user_operation(self, user_operation):
        self.sent.append(user_operation)
        if self.effect is not None:
            self.chain.nonce += 1
            self.chain.deployed = True
            self.effect(self.chain, user_operation)
        return "0x" + user_operation_hash(user_operation, ENTRY_POINT, CHAIN_ID).hex()


def _no_effect(chain, user_operation):
    pass


def _service(chain, bundler, backend, **config_overrides):
    config = make_config(**config_overrides)
    encoder = CallDataEncoder()
    builder = UserOperationBuilder(chain, encoder, GasEstimator(chain, bundler), FACTORY_ADDRESS)
    return SmartWalletService(
        config=config,
        chain_reader=chain,
        token_reader=FakeTokenReader(chain),
        builder=builder,
        bundler=bundler,
        passkey_backend=backend,
        encoder=encoder,
    )


def _software_backend(config=None):
    return SoftwarePasskeyBackend((config or make_config()).webauthn)


@pytest.mark.asyncio
async def test_transfer_from_undeployed_wallet_builds_signed_operation(fake_chain) -> None:
    backend = _software_backend()
    service = _service(fake_chain, FakeBundler(fake_chain), backend)
    credential = await service.create_passkey("Test Wallet")

    state = await service.build_transfer_operation(credential.public_key, RELAYER_ADDRESS, "0.0001")
    user_op = state.user_operation

    assert user_op.init_code != b""
    assert user_op.nonce == 0
    assert user_op.call_data == service.encoder.encode_eth_transfer(RELAYER_ADDRESS, 10**14)

    signed = await service.sign_user_operation(user_op, credential.credential_id)

    assert signed.signature[0] == 0x01
    assert signed.signature[1:7] == b"\x00" * 6
    assert signed.replace(signature=b"") == user_op


@pytest.mark.asyncio
async def test_signature_challenge_embeds_the_operation_hash(fake_chain) -> None:
    seen = {}

    async def get(options):
        seen["challenge"] = options["challenge"]
        return None

    backend = CallbackPasskeyBackend(make_config().webauthn, get, get)
    service = _service(fake_chain, FakeBundler(fake_chain), backend)
    state = await service.build_transfer_operation((b"\x11" * 32, b"\x22" * 32), RELAYER_ADDRESS, "0.0001")

    with pytest.raises(AssertionCancelled):
        await service.sign_user_operation(state.user_operation, "cred-1")

    expected = build_challenge(user_operation_hash(state.user_operation, ENTRY_POINT, CHAIN_ID))
    assert seen["challenge"] == to_base64url(expected)


@pytest.mark.asyncio
async def test_deploy_wallet_confirms_once_code_appears(fake_chain) -> None:
    bundler = FakeBundler(fake_chain, effect=_no_effect)
    service = _service(fake_chain, bundler, _software_backend())
    credential = await service.create_passkey("Test Wallet")

    result = await service.deploy_wallet(credential)

    assert result.confirmed is True
    assert result.attempts == 1
    assert result.wallet_address == WALLET_ADDRESS
    assert result.state.deployed is True
    sent = bundler.sent[0]
    assert sent.call_data == b""
    assert sent.init_code[:20] == bytes.fromhex(FACTORY_ADDRESS[2:])
    assert result.to_dict()["state"]["address"] == WALLET_ADDRESS


@pytest.mark.asyncio
async def test_deploy_and_claim_bonus_waits_for_token_balance(fake_chain) -> None:
    def claim(chain, user_operation):
        chain.token_balance += BONUS

    bundler = FakeBundler(fake_chain, effect=claim)
    service = _service(fake_chain, bundler, _software_backend())
    credential = await service.create_passkey("Test Wallet")

    result = await service.deploy_wallet_and_claim_bonus(credential)

    assert result.confirmed is True
    assert result.state.token_balance == BONUS
    assert bundler.sent[0].call_data == service.encoder.encode_bonus_claim(service.config.token_address)


@pytest.mark.asyncio
async def test_deploying_a_deployed_wallet_is_rejected(fake_chain) -> None:
    fake_chain.deployed = True
    bundler = FakeBundler(fake_chain)
    service = _service(fake_chain, bundler, _software_backend())
    credential = await service.create_passkey("Test Wallet")

    with pytest.raises(WalletAlreadyDeployed) as excinfo:
        await service.deploy_wallet(credential)

    assert excinfo.value.stage == "deployment_checked"
    assert bundler.sent == []


@pytest.mark.asyncio
async def test_send_value_from_deployed_wallet(fake_chain) -> None:
    fake_chain.deployed = True
    fake_chain.nonce = 5

    def spend(chain, user_operation):
        chain.balance -= 10**14

    bundler = FakeBundler(fake_chain, effect=spend)
    service = _service(fake_chain, bundler, _software_backend())
    credential = await service.create_passkey("Test Wallet")

    result = await service.send_value(RELAYER_ADDRESS, "0.0001", credential.credential_id, WALLET_ADDRESS)

    assert result.confirmed is True
    assert result.state.balance == 10**18 - 10**14
    sent = bundler.sent[0]
    assert sent.init_code == b""
    assert sent.nonce == 5
    assert sent.is_signed


@pytest.mark.asyncio
async def test_send_tokens_uses_token_transfer(fake_chain) -> None:
    fake_chain.deployed = True
    fake_chain.token_balance = BONUS

    def spend_tokens(chain, user_operation):
        chain.token_balance -= 10**18

    bundler = FakeBundler(fake_chain, effect=spend_tokens)
    service = _service(fake_chain, bundler, _software_backend())
    credential = await service.create_passkey("Test Wallet")

    result = await service.send_tokens(RELAYER_ADDRESS, 1, credential.credential_id, WALLET_ADDRESS)

    assert result.confirmed is True
    assert bundler.sent[0].call_data == service.encoder.encode_erc20_transfer(
        service.config.token_address, RELAYER_ADDRESS, 10**18,
    )


@pytest.mark.asyncio
async def test_send_value_from_undeployed_wallet_needs_public_key(fake_chain) -> None:
    bundler = FakeBundler(fake_chain)
    service = _service(fake_chain, bundler, _software_backend())

    with pytest.raises(PublicKeyRequired) as excinfo:
        await service.send_value(RELAYER_ADDRESS, "0.0001", "cred-1", WALLET_ADDRESS)

    assert excinfo.value.stage == "deployment_checked"
    assert bundler.sent == []


@pytest.mark.asyncio
async def test_cancelled_assertion_aborts_before_submission(fake_chain) -> None:
    async def dismissed(options):
        return None

    fake_chain.deployed = True
    bundler = Mock(wraps=FakeBundler(fake_chain))
    service = _service(fake_chain, bundler, CallbackPasskeyBackend(make_config().webauthn, dismissed, dismissed))

    with pytest.raises(AssertionCancelled) as excinfo:
        await service.send_value(RELAYER_ADDRESS, "0.0001", "cred-1", WALLET_ADDRESS)

    assert excinfo.value.stage == "sign"
    bundler.send_user_operation.assert_not_called()


@pytest.mark.asyncio
async def test_bundler_rejection_is_reported_with_its_payload(fake_chain) -> None:
    fake_chain.deployed = True
    payload = {"code": -32602, "message": "AA25 invalid account nonce"}
    bundler = FakeBundler(fake_chain)
    bundler.send_user_operation = Mock(side_effect=SubmissionError("eth_sendUserOperation", payload))
    service = _service(fake_chain, bundler, _software_backend())
    credential = await service.create_passkey("Test Wallet")

    with pytest.raises(SubmissionError) as excinfo:
        await service.send_value(RELAYER_ADDRESS, "0.0001", credential.credential_id, WALLET_ADDRESS)

    assert excinfo.value.stage == "submit"
    assert excinfo.value.payload == payload
    assert bundler.send_user_operation.call_count == 1


@pytest.mark.asyncio
async def test_unconfirmed_operation_returns_after_bounded_polling(fake_chain) -> None:
    fake_chain.deployed = True
    bundler = FakeBundler(fake_chain)
    service = _service(fake_chain, bundler, _software_backend(), confirmation_attempts=3)
    credential = await service.create_passkey("Test Wallet")

    result = await service.send_value(RELAYER_ADDRESS, "0.0001", credential.credential_id, WALLET_ADDRESS)

    assert result.confirmed is False
    assert result.attempts == 3
    assert result.user_operation_hash.startswith("0x")
    assert result.state.balance == 10**18


@pytest.mark.asyncio
async def test_poll_failures_do_not_fail_the_operation(fake_chain) -> None:
    fake_chain.deployed = True
    bundler = FakeBundler(fake_chain, effect=_no_effect)
    service = _service(fake_chain, bundler, _software_backend(), confirmation_attempts=2)
    credential = await service.create_passkey("Test Wallet")
    reads = {"count": 0}
    original = fake_chain.get_balance

    def flaky_balance(address):
        reads["count"] += 1
        if reads["count"] > 1:
            raise ChainReadError("get_balance failed: timeout")
        return original(address)

    fake_chain.get_balance = flaky_balance

    result = await service.send_value(RELAYER_ADDRESS, "0.0001", credential.credential_id, WALLET_ADDRESS)

    assert result.confirmed is False
    assert result.attempts == 2


@pytest.mark.asyncio
async def test_unexpected_stage_failure_is_wrapped(fake_chain) -> None:
    fake_chain.deployed = True
    bundler = FakeBundler(fake_chain)
    bundler.send_user_operation = Mock(side_effect=KeyError("result"))
    service = _service(fake_chain, bundler, _software_backend())
    credential = await service.create_passkey("Test Wallet")

    with pytest.raises(PipelineError) as excinfo:
        await service.send_value(RELAYER_ADDRESS, "0.0001", credential.credential_id, WALLET_ADDRESS)

    assert excinfo.value.stage == "submit"


@pytest.mark.asyncio
async def test_operations_for_one_sender_are_serialized(fake_chain) -> None:
    fake_chain.deployed = True

    def spend(chain, user_operation):
        chain.balance -= 10**14

    bundler = FakeBundler(fake_chain, effect=spend)
    service = _service(fake_chain, bundler, _software_backend())
    credential = await service.create_passkey("Test Wallet")

    await asyncio.gather(
        service.send_value(RELAYER_ADDRESS, "0.0001", credential.credential_id, WALLET_ADDRESS),
        service.send_value(RELAYER_ADDRESS, "0.0001", credential.credential_id, WALLET_ADDRESS),
    )

    assert sorted(op.nonce for op in bundler.sent) == [0, 1]


@pytest.mark.asyncio
async def test_wallet_state_reads(fake_chain) -> None:
    fake_chain.token_balance = 42
    service = _service(fake_chain, FakeBundler(fake_chain), _software_backend())

    state = await service.get_wallet_state(WALLET_ADDRESS)

    assert (state.deployed, state.balance, state.token_balance) == (False, 10**18, 42)
    assert await service.get_wallet_address((b"\x01" * 32, b"\x02" * 32)) == WALLET_ADDRESS


def test_default_formatter_signs_without_expiry(fake_chain) -> None:
    service = _service(fake_chain, FakeBundler(fake_chain), _software_backend())

    assert isinstance(service.formatter, SignatureFormatter)
    assert service.formatter.valid_until == 0


def test_service_wiring_from_config(config) -> None:
    session = Mock()
    service = create_smart_wallet_service(config, SoftwarePasskeyBackend(config.webauthn), session=session)

    estimator = service.builder.gas_estimator
    assert service.bundler.url == config.bundler_url
    assert service.bundler.session is session
    assert estimator.paymaster.url == config.paymaster_url
    assert estimator.dummy_signature[:7] == b"\x01" + b"\x00" * 6


def test_paymaster_is_optional(config) -> None:
    service = create_smart_wallet_service(
        make_config(paymaster_url=None), SoftwarePasskeyBackend(config.webauthn), session=Mock(),
    )

    assert service.builder.gas_estimator.paymaster is None


@pytest.mark.asyncio
async def test_sender_locks_are_released_after_operations(fake_chain) -> None:
    fake_chain.deployed = True

    def spend(chain, user_operation):
        assert WALLET_ADDRESS.lower() in service._sender_locks
        chain.balance -= 10**14

    bundler = FakeBundler(fake_chain, effect=spend)
    service = _service(fake_chain, bundler, _software_backend())
    credential = await service.create_passkey("Test Wallet")

    await service.send_value(RELAYER_ADDRESS, "0.0001", credential.credential_id, WALLET_ADDRESS)
    gc.collect()

    assert len(service._sender_locks) == 0
