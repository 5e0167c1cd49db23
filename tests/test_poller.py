import threading
from unittest.mock import MagicMock

import pytest

from pos_settlement.services.errors import ErrorCode, ErrorKind, SessionStatus, TerminalResult, gateway_declined
from pos_settlement.services.poller import CallbackObserver, PaymentSessionPoller

PENDING = TerminalResult(status=SessionStatus.PENDING, transaction_id="tx-1")
APPROVED = TerminalResult(status=SessionStatus.APPROVED, transaction_id="tx-1", auth_code="OK")


def _poller(results):
    check_status = MagicMock(side_effect=list(results))
    sleeps = []
    return PaymentSessionPoller(check_status, sleep=sleeps.append), check_status, sleeps


def test_returns_first_non_pending_result():
    poller, check_status, sleeps = _poller([PENDING, APPROVED])

    result = poller.poll("tx-1", max_attempts=5, interval_ms=500)

    assert result.approved
    assert result.attempts == 2
    assert check_status.call_count == 2
    assert sleeps == [0.5]


def test_decline_ends_polling():
    poller, check_status, _ = _poller([gateway_declined("Declined", "05", "tx-1")])

    result = poller.poll("tx-1", max_attempts=5, interval_ms=0)

    assert result.declined
    assert check_status.call_count == 1


def test_exhausted_attempts_give_unknown_outcome():
    poller, check_status, sleeps = _poller([PENDING] * 3)

    result = poller.poll("tx-1", max_attempts=3, interval_ms=100)

    assert result.status == SessionStatus.TIMEOUT
    assert result.kind == ErrorKind.POLL_TIMEOUT
    assert result.error_code == ErrorCode.POLL_TIMEOUT
    assert result.transaction_id == "tx-1"
    assert result.attempts == 3
    assert "may have been charged" in result.error
    assert result.to_dict()["pending"] is True
    assert check_status.call_count == 3
    # no wait after the last attempt
    assert sleeps == [0.1, 0.1]


def test_observer_sees_every_attempt():
    poller, _, _ = _poller([PENDING, PENDING, APPROVED])
    seen = []

    poller.poll("tx-1", max_attempts=5, interval_ms=0, observer=CallbackObserver(lambda r, n: seen.append((n, r.status))))

    assert seen == [(1, SessionStatus.PENDING), (2, SessionStatus.PENDING), (3, SessionStatus.APPROVED)]


def test_failing_observer_does_not_stop_polling():
    poller, _, _ = _poller([PENDING, APPROVED])

    def explode(result, attempt):
        raise RuntimeError("display gone")

    result = poller.poll("tx-1", max_attempts=5, interval_ms=0, observer=CallbackObserver(explode))

    assert result.approved


def test_cancel_event_stops_polling():
    poller, check_status, sleeps = _poller([PENDING] * 5)
    cancel = threading.Event()
    cancel.set()

    result = poller.poll("tx-1", max_attempts=5, interval_ms=1000, cancel_event=cancel)

    assert result.status == SessionStatus.TIMEOUT
    assert result.error_code == ErrorCode.POLL_CANCELLED
    assert result.attempts == 1
    assert check_status.call_count == 1
    assert sleeps == []


def test_defaults_come_from_settings(monkeypatch):
    monkeypatch.setenv("POLL_MAX_ATTEMPTS", "2")
    monkeypatch.setenv("POLL_INTERVAL_MS", "250")
    poller, check_status, sleeps = _poller([PENDING, PENDING])

    result = poller.poll("tx-1")

    assert result.attempts == 2
    assert sleeps == [0.25]


@pytest.mark.parametrize("max_attempts", [0, 721])
def test_max_attempts_bounds(max_attempts):
    poller, check_status, _ = _poller([])

    with pytest.raises(ValueError):
        poller.poll("tx-1", max_attempts=max_attempts, interval_ms=0)
    check_status.assert_not_called()


def test_negative_interval_rejected():
    poller, _, _ = _poller([])

    with pytest.raises(ValueError):
        poller.poll("tx-1", max_attempts=1, interval_ms=-1)
