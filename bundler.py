"""
Bundler and paymaster JSON-RPC clients (ERC-4337 EntryPoint v0.6)

Requests go over a plain `requests.Session`; pointing the session at a relay
or a SOCKS proxy swaps the transport without touching the calls below.
Nothing here retries: a failed call is reported immediately to the caller.
"""

import itertools
import logging
from typing import Any, Dict, List, Optional

import requests

from config import SmartWalletConfig
from errors import RpcError, SubmissionError
from user_operations import SponsorshipResult, UserOperation

logger = logging.getLogger(__name__)


def create_rpc_session(config: SmartWalletConfig) -> requests.Session:
    """HTTP session for bundler/paymaster traffic, routed through the relay proxy when configured"""
    session = requests.Session()
    session.headers.update({"Content-Type": "application/json", "Accept": "application/json"})
    session.proxies.update(config.relay_proxies)
    return session


class JsonRpcClient:
    """Minimal JSON-RPC 2.0 caller; results are returned untouched"""

    error_class = RpcError

    def __init__(self, url: str, session: Optional[requests.Session] = None, timeout: float = 30.0):
        self.url = url
        self.session = session or requests.Session()
        self.timeout = timeout
        self._ids = itertools.count(1)

    def _make_request(self, method: str, params: List, error_class=None) -> Any:
        error_class = error_class or self.error_class
        payload = {
            "jsonrpc": "2.0",
            "method": method,
            "params": params,
            "id": next(self._ids),
        }

        try:
            response = self.session.post(self.url, json=payload, timeout=self.timeout)
        except requests.RequestException as e:
            logger.error(f"{method} request failed: {e}")
            raise error_class(method, {"message": str(e)}) from e

        if response.status_code != 200:
            logger.error(f"{method} HTTP error: {response.status_code}")
            raise error_class(method, {"code": response.status_code, "message": response.text})

        try:
            result = response.json()
        except ValueError as e:
            raise error_class(method, {"message": f"Invalid JSON response: {e}"}) from e

        if not isinstance(result, dict):
            logger.error(f"{method} returned a non-object JSON-RPC body")
            raise error_class(method, {"message": "JSON-RPC response is not an object", "result": result})

        if result.get("error"):
            error = result["error"]
            logger.error(f"{method} error: {error.get('message', 'Unknown error') if isinstance(error, dict) else error}")
            raise error_class(method, error)

        return result.get("result")


class BundlerClient(JsonRpcClient):
    """Client for an ERC-4337 bundler (eth_* user operation namespace)"""

    def __init__(self, config: SmartWalletConfig, session: Optional[requests.Session] = None):
        super().__init__(config.bundler_url, session=session, timeout=config.request_timeout)
        self.entry_point_address = config.entry_point_address

    def estimate_user_operation_gas(self, user_operation: UserOperation, signature: bytes = b"") -> Dict:
        """Raw bundler gas estimate for an unsigned operation"""
        user_op_dict = user_operation.to_rpc(signature=signature or None)
        result = self._make_request("eth_estimateUserOperationGas", [user_op_dict, self.entry_point_address])
        if not isinstance(result, dict):
            raise RpcError("eth_estimateUserOperationGas", {"message": "Invalid gas estimate payload", "result": result})
        return result

    def send_user_operation(self, signed_user_operation: UserOperation) -> str:
        """Submit a signed operation and return its userOpHash"""
        if not signed_user_operation.is_signed:
            raise SubmissionError("eth_sendUserOperation", {"message": "UserOperation is not signed"})

        logger.info(f"Sending UserOperation for {signed_user_operation.sender} (nonce {signed_user_operation.nonce}) to bundler")
        result = self._make_request(
            "eth_sendUserOperation",
            [signed_user_operation.to_rpc(), self.entry_point_address],
            error_class=SubmissionError,
        )
        if not isinstance(result, str):
            raise SubmissionError("eth_sendUserOperation", {"message": "Invalid user operation hash", "result": result})

        logger.info(f"UserOperation sent successfully: {result}")
        return result

    def get_user_operation_receipt(self, user_op_hash: str) -> Optional[Dict]:
        """Receipt once the operation is included, None while pending"""
        result = self._make_request("eth_getUserOperationReceipt", [user_op_hash])
        if result is not None and not isinstance(result, dict):
            raise RpcError("eth_getUserOperationReceipt", {"message": "Invalid receipt payload", "result": result})
        return result


class PaymasterClient(JsonRpcClient):
    """Client for a sponsoring paymaster (pm_sponsorUserOperation)"""

    def __init__(
        self,
        config: SmartWalletConfig,
        session: Optional[requests.Session] = None,
        sponsorship_policy_id: Optional[str] = None,
    ):
        super().__init__(config.paymaster_url, session=session, timeout=config.request_timeout)
        self.entry_point_address = config.entry_point_address
        self.sponsorship_policy_id = sponsorship_policy_id

    def sponsor_user_operation(self, user_operation: UserOperation, signature: bytes = b"") -> SponsorshipResult:
        params: List[Any] = [user_operation.to_rpc(signature=signature or None), self.entry_point_address]
        if self.sponsorship_policy_id:
            params.append({"sponsorshipPolicyId": self.sponsorship_policy_id})

        result = self._make_request("pm_sponsorUserOperation", params)
        try:
            sponsorship = SponsorshipResult.from_rpc(result)
        except (KeyError, TypeError, ValueError) as e:
            raise RpcError("pm_sponsorUserOperation", {"message": f"Invalid sponsorship payload: {e}", "result": result}) from e

        logger.info(f"Sponsorship received: paymasterAndData={sponsorship.paymaster_and_data.hex()[:20]}...")
        return sponsorship
