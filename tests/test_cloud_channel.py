import json
from unittest.mock import MagicMock

import pytest
import requests

from pos_settlement.services.errors import ErrorCode, ErrorKind, SessionStatus
from pos_settlement.services.poller import PaymentSessionPoller
from pos_settlement.services.terminals.cloud_channel import CloudTerminalChannel

BASE_URL = "https://cloud.test/api/v1"


def _response(payload, status_code=200):
    resp = MagicMock()
    resp.status_code = status_code
    resp.content = json.dumps(payload).encode("utf-8")
    resp.json.return_value = payload
    return resp


def _token(expires_in=3600):
    return _response({"token": "tok-123", "expiresIn": expires_in})


def _channel(session, clock=None, **kwargs):
    params = {
        "base_url": BASE_URL,
        "merchant_id": "m-1",
        "api_key": "k-1",
        "secret_key": "s-1",
        "timeout": 5,
        "session": session,
    }
    params.update(kwargs)
    if clock is not None:
        params["clock"] = clock
    return CloudTerminalChannel(**params)


def _calls(session, method):
    return [call for call in session.request.call_args_list if call.args[0] == method]


def test_initiate_payment_pending():
    session = MagicMock()
    session.request.side_effect = [_token(), _response({"status": "PENDING", "transactionId": "V-1"})]
    channel = _channel(session)

    result = channel.initiate_payment("25.00", "SN-42", invoice_number="LANE02-20240115-000003")

    assert result.status == SessionStatus.PENDING
    assert result.transaction_id == "V-1"
    method, url = session.request.call_args.args
    assert (method, url) == ("POST", f"{BASE_URL}/terminals/SN-42/transactions/sale")
    body = session.request.call_args.kwargs["json"]
    assert body["amount"] == "25.00"
    assert body["invoiceNumber"] == "LANE02-20240115-000003"
    assert body["transactionType"] == "SALE"
    assert session.request.call_args.kwargs["headers"]["Authorization"] == "Bearer tok-123"


def test_pending_twice_then_approved_makes_exactly_three_status_calls():
    session = MagicMock()
    session.request.side_effect = [
        _token(),
        _response({"status": "PENDING"}),
        _response({"status": "PROCESSING"}),
        _response({"status": "APPROVED", "transactionId": "V-1", "authCode": "OK1", "amount": "25.00"}),
    ]
    channel = _channel(session)
    sleeps = []
    poller = PaymentSessionPoller.for_channel(channel, "SN-42", sleep=sleeps.append)

    result = poller.poll("V-1", max_attempts=10, interval_ms=2000)

    assert result.approved
    assert result.auth_code == "OK1"
    assert result.attempts == 3
    assert len(_calls(session, "GET")) == 3
    assert len(_calls(session, "POST")) == 1
    assert sleeps == [2.0, 2.0]


def test_token_is_cached_until_expiry_margin():
    now = [1000.0]
    session = MagicMock()
    session.request.side_effect = [
        _token(expires_in=120),
        _response({"status": "PENDING"}),
        _response({"status": "PENDING"}),
        _token(expires_in=120),
        _response({"status": "PENDING"}),
    ]
    channel = _channel(session, clock=lambda: now[0])

    channel.check_status("V-1", "SN-42")
    now[0] += 59
    channel.check_status("V-1", "SN-42")
    now[0] += 2  # past issued_at + expires_in - 60
    channel.check_status("V-1", "SN-42")

    token_calls = [call for call in session.request.call_args_list if call.args[1].endswith("/auth/token")]
    assert len(token_calls) == 2


def test_missing_credentials_names_the_settings():
    session = MagicMock()
    channel = _channel(session, api_key="", secret_key="")

    result = channel.initiate_payment("10.00", "SN-42")

    assert result.error_code == ErrorCode.MISSING_CREDENTIALS
    assert result.kind == ErrorKind.INVALID_INPUT
    assert "VALOR_API_API_KEY" in result.error
    assert "VALOR_API_SECRET_KEY" in result.error
    session.request.assert_not_called()


@pytest.mark.parametrize("terminal_ref", [None, "", "  "])
def test_empty_terminal_id_fails_fast(terminal_ref):
    session = MagicMock()
    channel = _channel(session)

    result = channel.initiate_payment("10.00", terminal_ref)

    assert result.error_code == ErrorCode.TERMINAL_NOT_CONFIGURED
    assert "VALOR_TERMINAL_SERIAL" in result.error
    session.request.assert_not_called()


def test_declined_keeps_gateway_message_and_code():
    session = MagicMock()
    session.request.side_effect = [
        _token(),
        _response({"status": "DECLINED", "message": "Insufficient funds", "errorCode": "51"}),
    ]
    channel = _channel(session)

    result = channel.initiate_payment("10.00", "SN-42")

    assert result.status == SessionStatus.DECLINED
    assert result.error == "Insufficient funds"
    assert result.error_code == "51"


def test_status_cancelled_is_declined():
    session = MagicMock()
    session.request.side_effect = [_token(), _response({"status": "CANCELLED"})]
    channel = _channel(session)

    result = channel.check_status("V-1", "SN-42")

    assert result.declined


def test_status_without_terminal_uses_transaction_path():
    session = MagicMock()
    session.request.side_effect = [_token(), _response({"status": "SETTLED", "id": "V-1"})]
    channel = _channel(session)

    result = channel.check_status("V-1")

    assert result.approved
    assert session.request.call_args.args == ("GET", f"{BASE_URL}/transactions/V-1")


def test_unauthorized_clears_token_cache():
    session = MagicMock()
    session.request.side_effect = [
        _token(),
        _response({"message": "expired"}, status_code=401),
        _token(),
        _response({"status": "PENDING"}),
    ]
    channel = _channel(session)

    first = channel.check_status("V-1", "SN-42")
    second = channel.check_status("V-1", "SN-42")

    assert first.error_code == ErrorCode.AUTH_FAILED
    assert second.pending


def test_timeout_is_transport_failure():
    session = MagicMock()
    session.request.side_effect = [_token(), requests.exceptions.Timeout("slow")]
    channel = _channel(session)

    result = channel.initiate_payment("10.00", "SN-42")

    assert result.kind == ErrorKind.TRANSPORT_FAILURE
    assert result.error_code == ErrorCode.TIMEOUT


def test_connection_error_is_unreachable():
    session = MagicMock()
    session.request.side_effect = requests.exceptions.ConnectionError("dns")
    channel = _channel(session)

    result = channel.initiate_payment("10.00", "SN-42")

    assert result.error_code == ErrorCode.UNREACHABLE


def test_void_transaction():
    session = MagicMock()
    session.request.side_effect = [_token(), _response({"status": "VOIDED"})]
    channel = _channel(session)

    result = channel.void_transaction("V-1", "SN-42")

    assert result.approved
    assert session.request.call_args.args == ("POST", f"{BASE_URL}/terminals/SN-42/transactions/V-1/void")


def test_list_devices():
    session = MagicMock()
    session.request.side_effect = [_token(), _response({"devices": [{"serial": "SN-42"}]})]
    channel = _channel(session)

    assert channel.list_devices() == [{"serial": "SN-42"}]


def test_list_devices_returns_empty_on_failure():
    session = MagicMock()
    session.request.side_effect = [_token(), _response({"error": "boom"}, status_code=500)]
    channel = _channel(session)

    assert channel.list_devices() == []
