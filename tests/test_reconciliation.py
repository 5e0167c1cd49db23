import time
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from unittest.mock import patch

import pytest

from pos_settlement.models.order import ORDER_OPEN, ORDER_PAID
from pos_settlement.models.payment import (
    PAYMENT_AUTHORIZED,
    PAYMENT_CAPTURED,
    PROVIDER_SOCKET_TERMINAL,
    PROVIDER_VALOR,
    Payment,
)
from pos_settlement.services import orders as order_service
from pos_settlement.services.gateway_client import GatewayTransaction
from pos_settlement.services.reconciliation import ReconciliationEngine
from pos_settlement.services.timeutils import as_utc

CREATED_AT = datetime(2024, 1, 15, 10, 0, tzinfo=timezone.utc)
INVOICE = "LANE01-20240115-000001"


def _transaction(minutes_after=5, amount="100.00", invoice=INVOICE, transaction_id="60123", **kwargs):
    return GatewayTransaction(
        transaction_id=transaction_id,
        transaction_status=kwargs.pop("transaction_status", "capturedPendingSettlement"),
        amount=Decimal(amount),
        invoice_number=invoice,
        auth_code="ABC123",
        submitted_at=CREATED_AT + timedelta(minutes=minutes_after),
        **kwargs,
    )


@pytest.fixture
def engine(gateway, session_factory):
    gateway.get_transactions_by_batch.return_value = []
    gateway.get_recent_transactions.return_value = []
    return ReconciliationEngine(
        client=gateway,
        session_factory=session_factory,
        interval_seconds=0.01,
        lookback_minutes=15,
        match_window_minutes=15,
        amount_tolerance=Decimal("0.01"),
    )


def _payments(db):
    db.expire_all()
    return db.query(Payment).all()


def test_matching_transaction_marks_order_paid(db, engine, gateway, open_order):
    gateway.get_transactions_by_batch.return_value = [_transaction(minutes_after=5)]

    metrics = engine.run_once()

    assert metrics.scanned == 1
    assert metrics.matched == 1
    assert metrics.processed == 1
    assert metrics.source == "batch"
    payments = _payments(db)
    assert len(payments) == 1
    assert payments[0].transaction_id == "60123"
    assert payments[0].status == PAYMENT_AUTHORIZED
    assert payments[0].auth_code == "ABC123"
    assert db.get(type(open_order), open_order.id).status == ORDER_PAID


@pytest.mark.parametrize("minutes_after", [16, -1])
def test_transaction_outside_window_is_skipped(db, engine, gateway, open_order, minutes_after):
    gateway.get_transactions_by_batch.return_value = [_transaction(minutes_after=minutes_after)]

    metrics = engine.run_once()

    assert metrics.skipped == 1
    assert metrics.processed == 0
    assert _payments(db) == []


def test_amount_beyond_tolerance_is_skipped(db, engine, gateway, open_order):
    gateway.get_transactions_by_batch.return_value = [_transaction(amount="100.02")]

    metrics = engine.run_once()

    assert metrics.skipped == 1
    assert _payments(db) == []


def test_unknown_invoice_and_missing_invoice_are_skipped(db, engine, gateway, open_order):
    gateway.get_transactions_by_batch.return_value = [
        _transaction(invoice="LANE09-20240115-000042", transaction_id="1"),
        _transaction(invoice=None, transaction_id="2"),
    ]

    metrics = engine.run_once()

    assert metrics.scanned == 2
    assert metrics.skipped == 2


def test_second_run_does_not_duplicate_payment(db, engine, gateway, open_order):
    gateway.get_transactions_by_batch.return_value = [_transaction()]

    first = engine.run_once()
    second = engine.run_once()

    assert first.processed == 1
    assert second.processed == 0
    assert second.skipped == 1
    assert len(_payments(db)) == 1


def test_settled_transaction_recorded_as_captured(db, engine, gateway, open_order):
    settled_at = CREATED_AT + timedelta(hours=16)
    gateway.get_transactions_by_batch.return_value = [
        _transaction(transaction_status="settledSuccessfully", settled_at=settled_at)
    ]

    engine.run_once()

    payment = _payments(db)[0]
    assert payment.status == PAYMENT_CAPTURED
    assert payment.settled_at is not None


def test_authorized_payment_promoted_when_batch_settles(db, engine, gateway, open_order):
    settled_at = CREATED_AT + timedelta(hours=16)
    gateway.get_transactions_by_batch.return_value = [_transaction()]
    first = engine.run_once()
    gateway.get_transactions_by_batch.return_value = [
        _transaction(transaction_status="settledSuccessfully", settled_at=settled_at)
    ]

    second = engine.run_once()
    third = engine.run_once()

    assert first.processed == 1
    assert second.settled == 1
    assert second.processed == 0
    assert third.settled == 0
    assert third.skipped == 1
    payments = _payments(db)
    assert len(payments) == 1
    assert payments[0].status == PAYMENT_CAPTURED
    assert as_utc(payments[0].settled_at) == settled_at


def test_terminal_sale_settles_from_gateway_listing(db, engine, gateway, open_order):
    order_service.record_payment(
        db, open_order, provider=PROVIDER_SOCKET_TERMINAL, transaction_id="60123", amount="100.00"
    )
    gateway.get_transactions_by_batch.return_value = [_transaction(transaction_status="settledSuccessfully")]

    metrics = engine.run_once()

    assert metrics.settled == 1
    assert metrics.processed == 0
    payments = _payments(db)
    assert len(payments) == 1
    assert payments[0].provider == PROVIDER_SOCKET_TERMINAL
    assert payments[0].status == PAYMENT_CAPTURED
    assert payments[0].settled_at is not None


def test_terminal_sale_recorded_between_match_and_record_is_not_duplicated(
    db, engine, gateway, session_factory, open_order
):
    transaction = _transaction(transaction_id="60123456789")
    order = engine.match_transaction(db, transaction)
    assert order is not None

    # The LAN terminal path records the same sale from another session.
    other = session_factory()
    try:
        order_service.record_payment(
            other,
            order_service.get_order(other, open_order.id, for_update=True),
            provider=PROVIDER_SOCKET_TERMINAL,
            transaction_id="60123456789",
            amount="100.00",
        )
    finally:
        other.close()

    assert engine.process_match(db, transaction, order) is False
    payments = _payments(db)
    assert [(p.provider, p.transaction_id) for p in payments] == [(PROVIDER_SOCKET_TERMINAL, "60123456789")]

    gateway.get_transactions_by_batch.return_value = [transaction]
    metrics = engine.run_once()

    assert metrics.processed == 0
    assert metrics.skipped == 1
    assert len(_payments(db)) == 1


def test_order_paid_by_other_transaction_after_match_is_left_alone(db, engine, session_factory, open_order):
    transaction = _transaction()
    order = engine.match_transaction(db, transaction)

    other = session_factory()
    try:
        order_service.record_payment(
            other,
            order_service.get_order(other, open_order.id, for_update=True),
            provider=PROVIDER_SOCKET_TERMINAL,
            transaction_id="T-OTHER",
            amount="100.00",
        )
    finally:
        other.close()

    assert engine.process_match(db, transaction, order) is False
    assert [p.transaction_id for p in _payments(db)] == ["T-OTHER"]
    assert db.get(type(open_order), open_order.id).status == ORDER_PAID


def test_cloud_payment_with_same_id_does_not_block_gateway_match(db, engine, gateway, open_order):
    cloud_order = order_service.create_order(db, "100.00", "LANE-02", now=CREATED_AT)
    order_service.record_payment(db, cloud_order, provider=PROVIDER_VALOR, transaction_id="60123", amount="100.00")
    gateway.get_transactions_by_batch.return_value = [_transaction()]

    metrics = engine.run_once()

    assert metrics.processed == 1
    assert len(_payments(db)) == 2


def test_falls_back_to_recent_transactions(db, engine, gateway, open_order):
    gateway.get_recent_transactions.return_value = [_transaction()]

    metrics = engine.run_once()

    assert metrics.source == "recent"
    assert metrics.processed == 1
    gateway.get_recent_transactions.assert_called_once_with(minutes=15)


def test_no_transactions_anywhere(engine):
    metrics = engine.run_once()

    assert metrics.source == "none"
    assert metrics.scanned == 0


def test_overlapping_run_is_skipped(engine, gateway):
    engine._run_lock.acquire()
    try:
        assert engine.is_running
        metrics = engine.run_once()
    finally:
        engine._run_lock.release()

    assert metrics.overlapped
    gateway.get_transactions_by_batch.assert_not_called()


def test_failure_on_one_transaction_does_not_stop_cycle(db, engine, gateway, open_order):
    gateway.get_transactions_by_batch.return_value = [_transaction()]

    with patch("pos_settlement.services.reconciliation.record_payment", side_effect=RuntimeError("db gone")):
        metrics = engine.run_once()

    assert metrics.errors == 1
    assert metrics.matched == 1
    assert metrics.processed == 0
    db.expire_all()
    assert db.get(type(open_order), open_order.id).status == ORDER_OPEN


def test_background_worker_runs_until_stopped(engine, gateway):
    engine.start()
    deadline = time.monotonic() + 5
    while gateway.get_transactions_by_batch.call_count < 2 and time.monotonic() < deadline:
        time.sleep(0.01)
    engine.stop(timeout=5)

    assert gateway.get_transactions_by_batch.call_count >= 2
    assert engine._thread is None


def test_metrics_to_dict(engine):
    payload = engine.run_once().to_dict()

    assert set(payload) == {
        "scanned",
        "matched",
        "processed",
        "settled",
        "skipped",
        "errors",
        "elapsed_seconds",
        "source",
        "overlapped",
    }
