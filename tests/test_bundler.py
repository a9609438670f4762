from unittest.mock import Mock

import pytest
import requests

from bundler import BundlerClient, PaymasterClient, create_rpc_session
from conftest import ENTRY_POINT, WALLET_ADDRESS, make_config
from errors import RpcError, SubmissionError
from user_operations import UserOperation


def _response(payload=None, status_code=200):
    response = Mock()
    response.status_code = status_code
    response.text = "upstream error"
    response.json.return_value = payload
    return response


def _session(payload=None, status_code=200):
    session = Mock()
    session.post.return_value = _response(payload, status_code)
    return session


def _user_op(signature: bytes = b"") -> UserOperation:
    return UserOperation(sender=WALLET_ADDRESS, nonce=3, call_data=b"\x01", signature=signature)


def test_estimate_sends_operation_and_entry_point(config) -> None:
    estimate = {"callGasLimit": "0x1", "verificationGasLimit": "0x2", "preVerificationGas": "0x3"}
    session = _session({"jsonrpc": "2.0", "id": 1, "result": estimate})
    bundler = BundlerClient(config, session=session)

    result = bundler.estimate_user_operation_gas(_user_op(), signature=b"\xaa")

    assert result == estimate
    url = session.post.call_args.args[0]
    body = session.post.call_args.kwargs["json"]
    assert url == config.bundler_url
    assert body["method"] == "eth_estimateUserOperationGas"
    assert body["params"][1] == ENTRY_POINT
    assert body["params"][0]["signature"] == "0xaa"
    assert body["params"][0]["nonce"] == "0x3"


def test_send_returns_user_operation_hash(config) -> None:
    session = _session({"jsonrpc": "2.0", "id": 1, "result": "0x" + "ab" * 32})
    bundler = BundlerClient(config, session=session)

    assert bundler.send_user_operation(_user_op(signature=b"\x01")) == "0x" + "ab" * 32
    assert session.post.call_args.kwargs["json"]["method"] == "eth_sendUserOperation"


def test_send_rejection_carries_bundler_payload_and_is_not_retried(config) -> None:
    error = {"code": -32507, "message": "Invalid UserOperation signature or paymaster signature"}
    session = _session({"jsonrpc": "2.0", "id": 1, "error": error})
    bundler = BundlerClient(config, session=session)

    with pytest.raises(SubmissionError) as excinfo:
        bundler.send_user_operation(_user_op(signature=b"\x01"))

    assert excinfo.value.payload == error
    assert excinfo.value.method == "eth_sendUserOperation"
    assert session.post.call_count == 1


def test_unsigned_operation_is_never_sent(config) -> None:
    session = _session()
    bundler = BundlerClient(config, session=session)

    with pytest.raises(SubmissionError):
        bundler.send_user_operation(_user_op())
    session.post.assert_not_called()


def test_http_error_status_raises_rpc_error(config) -> None:
    bundler = BundlerClient(config, session=_session(status_code=503))

    with pytest.raises(RpcError) as excinfo:
        bundler.estimate_user_operation_gas(_user_op())
    assert excinfo.value.payload["code"] == 503


def test_transport_failure_raises_rpc_error(config) -> None:
    session = Mock()
    session.post.side_effect = requests.ConnectionError("connection refused")
    bundler = BundlerClient(config, session=session)

    with pytest.raises(RpcError):
        bundler.get_user_operation_receipt("0x" + "00" * 32)


def test_receipt_is_none_while_pending(config) -> None:
    bundler = BundlerClient(config, session=_session({"jsonrpc": "2.0", "id": 1, "result": None}))

    assert bundler.get_user_operation_receipt("0x" + "00" * 32) is None


def test_request_ids_increase(config) -> None:
    session = _session({"jsonrpc": "2.0", "id": 1, "result": None})
    bundler = BundlerClient(config, session=session)

    bundler.get_user_operation_receipt("0x01")
    bundler.get_user_operation_receipt("0x02")

    ids = [call.kwargs["json"]["id"] for call in session.post.call_args_list]
    assert ids == [1, 2]


def test_sponsorship_parses_paymaster_answer(config) -> None:
    result = {
        "paymasterAndData": "0x" + "ee" * 20,
        "callGasLimit": "0x186a0",
        "verificationGasLimit": "0x30d40",
        "preVerificationGas": "0xc350",
    }
    session = _session({"jsonrpc": "2.0", "id": 1, "result": result})
    paymaster = PaymasterClient(config, session=session, sponsorship_policy_id="sp_test")

    sponsorship = paymaster.sponsor_user_operation(_user_op())

    assert sponsorship.paymaster_and_data == b"\xee" * 20
    assert sponsorship.call_gas_limit == 100_000
    assert sponsorship.verification_gas_limit == 200_000
    assert sponsorship.pre_verification_gas == 50_000
    body = session.post.call_args.kwargs["json"]
    assert session.post.call_args.args[0] == config.paymaster_url
    assert body["method"] == "pm_sponsorUserOperation"
    assert body["params"][2] == {"sponsorshipPolicyId": "sp_test"}


def test_sponsorship_with_missing_fields_raises(config) -> None:
    session = _session({"jsonrpc": "2.0", "id": 1, "result": {"paymasterAndData": "0x"}})

    with pytest.raises(RpcError):
        PaymasterClient(config, session=session).sponsor_user_operation(_user_op())


def test_rpc_session_uses_relay_proxy() -> None:
    session = create_rpc_session(make_config(relay_proxy_url="socks5h://127.0.0.1:9050"))

    assert session.proxies["https"] == "socks5h://127.0.0.1:9050"
    assert session.headers["Content-Type"] == "application/json"


@pytest.mark.parametrize("body", [[{"jsonrpc": "2.0", "id": 1, "result": "0x1"}], "0x1", None])
def test_non_object_body_raises_rpc_error(config, body) -> None:
    bundler = BundlerClient(config, session=_session(body))

    with pytest.raises(SubmissionError) as excinfo:
        bundler.send_user_operation(_user_op(signature=b"\x01"))
    assert excinfo.value.payload["result"] == body
