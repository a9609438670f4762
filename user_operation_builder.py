"""
Assembles a complete unsigned UserOperation.

Init -> AddressResolved -> DeploymentChecked -> CallDataSet -> GasEstimated -> FeesSet -> Unsigned

Every build starts from Init: address, deployment status, nonce and fees are
read fresh each time, never carried over from an earlier operation.
"""

import asyncio
import logging
from dataclasses import dataclass, replace
from enum import Enum
from typing import Callable, Optional, Tuple

from call_data import CallDataEncoder
from chain_reader import ChainReader
from errors import PublicKeyRequired, SmartWalletError, WalletAlreadyDeployed
from gas_estimator import GasEstimator
from user_operations import FeeQuote, GasEstimate, UserOperation

logger = logging.getLogger(__name__)


class BuildStage(str, Enum):
    INIT = "init"
    ADDRESS_RESOLVED = "address_resolved"
    DEPLOYMENT_CHECKED = "deployment_checked"
    CALL_DATA_SET = "call_data_set"
    GAS_ESTIMATED = "gas_estimated"
    FEES_SET = "fees_set"
    UNSIGNED = "unsigned"


@dataclass(frozen=True)
class BuildRequest:
    call_data: bytes
    public_key: Optional[Tuple[bytes, bytes]] = None
    sender: Optional[str] = None
    # Deployment use-cases: refuse wallets that already have code
    deploy: bool = False


@dataclass(frozen=True)
class BuildState:
    request: BuildRequest
    stage: BuildStage = BuildStage.INIT
    sender: Optional[str] = None
    deployed: Optional[bool] = None
    init_code: bytes = b""
    user_operation: Optional[UserOperation] = None
    gas: Optional[GasEstimate] = None
    fees: Optional[FeeQuote] = None


class UserOperationBuilder:
    """Owns the in-progress operation; hands back an Unsigned state and never signs"""

    def __init__(
        self,
        chain_reader: ChainReader,
        encoder: CallDataEncoder,
        gas_estimator: GasEstimator,
        factory_address: str,
    ):
        self.chain_reader = chain_reader
        self.encoder = encoder
        self.gas_estimator = gas_estimator
        self.factory_address = factory_address
        self._transitions = (
            (BuildStage.ADDRESS_RESOLVED, self._resolve_address),
            (BuildStage.DEPLOYMENT_CHECKED, self._check_deployment),
            (BuildStage.CALL_DATA_SET, self._set_call_data),
            (BuildStage.GAS_ESTIMATED, self._estimate_gas),
            (BuildStage.FEES_SET, self._set_fees),
            (BuildStage.UNSIGNED, self._finish),
        )

    async def build(
        self,
        request: BuildRequest,
        on_stage: Optional[Callable[[BuildState], None]] = None,
    ) -> BuildState:
        state = BuildState(request=request)
        for stage, transition in self._transitions:
            try:
                state = replace(await transition(state), stage=stage)
            except SmartWalletError as e:
                e.stage = e.stage or stage.value
                raise
            if on_stage is not None:
                on_stage(state)
        logger.info(
            f"UserOperation built for {state.sender}: nonce={state.user_operation.nonce}, "
            f"deployed={state.deployed}, gas source={state.gas.source.value}"
        )
        return state

    async def _resolve_address(self, state: BuildState) -> BuildState:
        request = state.request
        if request.public_key is not None:
            sender = await asyncio.to_thread(self.chain_reader.derive_wallet_address, request.public_key)
            if request.sender and sender.lower() != request.sender.lower():
                raise SmartWalletError(f"Public key derives {sender}, not the requested sender {request.sender}")
        elif request.sender:
            sender = request.sender
        else:
            raise PublicKeyRequired("Either a public key or a sender address is required")
        return replace(state, sender=sender)

    async def _check_deployment(self, state: BuildState) -> BuildState:
        deployed = await asyncio.to_thread(self.chain_reader.is_deployed, state.sender)
        if deployed:
            if state.request.deploy:
                raise WalletAlreadyDeployed(f"Wallet {state.sender} is already deployed")
            return replace(state, deployed=True, init_code=b"")

        if state.request.public_key is None:
            raise PublicKeyRequired(f"Wallet {state.sender} is not deployed; its public key is required for initCode")
        init_code = self.encoder.encode_init_code(self.factory_address, state.request.public_key)
        return replace(state, deployed=False, init_code=init_code)

    async def _set_call_data(self, state: BuildState) -> BuildState:
        nonce = await asyncio.to_thread(self.chain_reader.get_nonce, state.sender)
        user_operation = UserOperation(
            sender=state.sender,
            nonce=nonce,
            init_code=state.init_code,
            call_data=state.request.call_data,
        )
        return replace(state, user_operation=user_operation)

    async def _estimate_gas(self, state: BuildState) -> BuildState:
        # Fees are quoted first so a paymaster signs over the fees the operation is sent with
        fees = await asyncio.to_thread(self.gas_estimator.suggest_fees)
        priced = fees.apply(state.user_operation)
        gas = await asyncio.to_thread(self.gas_estimator.estimate, priced, state.deployed)
        return replace(state, user_operation=gas.apply(state.user_operation), gas=gas, fees=fees)

    async def _set_fees(self, state: BuildState) -> BuildState:
        # Reuses the quote read in _estimate_gas: the paymaster already signed over these fees
        return replace(state, user_operation=state.fees.apply(state.user_operation))

    async def _finish(self, state: BuildState) -> BuildState:
        return state
