"""
Gas limits and fee fields for UserOperations.

Paths, tried in order of availability:
1. paymaster sponsorship - limits and paymasterAndData taken verbatim
2. bundler estimate - each limit scaled by GAS_SAFETY_MARGIN_PERCENT
3. fixed fallback limits - never raises
"""

import logging
from typing import Optional

from bundler import BundlerClient, PaymasterClient
from chain_reader import ChainReader
from config import (
    DEFAULT_GAS_LIMITS,
    FALLBACK_GAS_LIMITS,
    GAS_SAFETY_MARGIN_PERCENT,
    MIN_MAX_FEE_PER_GAS,
    MIN_MAX_PRIORITY_FEE_PER_GAS,
)
from errors import EstimationFailure
from user_operations import GAS_FIELDS, FeeQuote, GasEstimate, GasSource, UserOperation, parse_quantity

logger = logging.getLogger(__name__)


def apply_safety_margin(value: int, margin_percent: int = GAS_SAFETY_MARGIN_PERCENT) -> int:
    return value * margin_percent // 100


def with_placeholder_gas(user_operation: UserOperation) -> UserOperation:
    """Fill unset gas limits with the placeholders paymasters expect"""
    return user_operation.replace(
        call_gas_limit=user_operation.call_gas_limit or DEFAULT_GAS_LIMITS["call"],
        verification_gas_limit=user_operation.verification_gas_limit or DEFAULT_GAS_LIMITS["verification"],
        pre_verification_gas=user_operation.pre_verification_gas or DEFAULT_GAS_LIMITS["pre_verification"],
    )


def fallback_gas_estimate(deployed: bool, failure: Optional[Exception] = None) -> GasEstimate:
    verification_key = "verification_deployed" if deployed else "verification_undeployed"
    return GasEstimate(
        call_gas_limit=FALLBACK_GAS_LIMITS["call"],
        verification_gas_limit=FALLBACK_GAS_LIMITS[verification_key],
        pre_verification_gas=FALLBACK_GAS_LIMITS["pre_verification"],
        paymaster_and_data=b"",
        source=GasSource.FALLBACK,
        failure=failure,
    )


class GasEstimator:
    def __init__(
        self,
        chain_reader: ChainReader,
        bundler: BundlerClient,
        paymaster: Optional[PaymasterClient] = None,
        dummy_signature: bytes = b"",
    ):
        self.chain_reader = chain_reader
        self.bundler = bundler
        self.paymaster = paymaster
        self.dummy_signature = dummy_signature

    def suggest_fees(self) -> FeeQuote:
        """Chain fee suggestion with floors substituted when the chain has none"""
        return self.resolve_fees(self.chain_reader.suggest_fees())

    @staticmethod
    def resolve_fees(quote: Optional[FeeQuote]) -> FeeQuote:
        if quote is None or not quote.max_fee_per_gas or not quote.max_priority_fee_per_gas:
            logger.warning("No fee suggestion from chain, using floor values")
            max_fee = quote.max_fee_per_gas if quote and quote.max_fee_per_gas else MIN_MAX_FEE_PER_GAS
            priority_fee = (
                quote.max_priority_fee_per_gas if quote and quote.max_priority_fee_per_gas
                else MIN_MAX_PRIORITY_FEE_PER_GAS
            )
            # EIP-1559: maxPriorityFeePerGas <= maxFeePerGas
            return FeeQuote(max_fee_per_gas=max(max_fee, priority_fee), max_priority_fee_per_gas=priority_fee, floored=True)
        return quote

    def estimate(self, user_operation: UserOperation, deployed: bool) -> GasEstimate:
        """Gas limits for an unsigned operation; falls back to fixed limits instead of raising"""
        unsigned = with_placeholder_gas(user_operation.replace(paymaster_and_data=b"", signature=b""))
        causes = []

        if self.paymaster is not None:
            try:
                return self._sponsored_estimate(unsigned)
            except Exception as e:
                logger.warning(f"Paymaster sponsorship failed, trying bundler estimate: {e}")
                causes.append(e)

        try:
            return self._bundler_estimate(unsigned)
        except Exception as e:
            logger.warning(f"Bundler gas estimation failed: {e}")
            causes.append(e)

        failure = EstimationFailure(causes, stage="gas_estimation")
        estimate = fallback_gas_estimate(deployed, failure)
        logger.warning(
            f"Using fallback gas limits (deployed={deployed}): call={estimate.call_gas_limit}, "
            f"verification={estimate.verification_gas_limit}, preVerification={estimate.pre_verification_gas}"
        )
        return estimate

    def _sponsored_estimate(self, user_operation: UserOperation) -> GasEstimate:
        sponsorship = self.paymaster.sponsor_user_operation(user_operation, signature=self.dummy_signature)
        return GasEstimate(
            call_gas_limit=sponsorship.call_gas_limit,
            verification_gas_limit=sponsorship.verification_gas_limit,
            pre_verification_gas=sponsorship.pre_verification_gas,
            paymaster_and_data=sponsorship.paymaster_and_data,
            source=GasSource.SPONSORED,
        )

    def _bundler_estimate(self, user_operation: UserOperation) -> GasEstimate:
        result = self.bundler.estimate_user_operation_gas(user_operation, signature=self.dummy_signature)
        call_gas, verification_gas, pre_verification_gas = (
            apply_safety_margin(parse_quantity(result[name])) for name in GAS_FIELDS
        )
        if not (call_gas and verification_gas and pre_verification_gas):
            raise ValueError(f"Bundler returned zero gas limits: {result}")

        logger.info(
            f"Bundler gas estimate with {GAS_SAFETY_MARGIN_PERCENT}% margin: call={call_gas}, "
            f"verification={verification_gas}, preVerification={pre_verification_gas}"
        )
        return GasEstimate(
            call_gas_limit=call_gas,
            verification_gas_limit=verification_gas,
            pre_verification_gas=pre_verification_gas,
            source=GasSource.ESTIMATED,
        )
