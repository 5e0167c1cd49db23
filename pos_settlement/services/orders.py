"""Order and payment store operations.

All status changes go through ``transition_order`` / ``transition_payment``
so the lifecycle tables in the models are the only place that decides what
is allowed. Payments are keyed by (provider, transaction_id), and a
transaction id already on the order under another provider counts as the
same payment; recording it twice returns the existing row.
"""

import logging
import re
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Any

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from pos_settlement.config import settings
from pos_settlement.models import Order, Payment
from pos_settlement.models.order import (
    ORDER_OPEN,
    ORDER_PAID,
    ORDER_REFUNDED,
    ORDER_TRANSITIONS,
    ORDER_VOIDED,
)
from pos_settlement.models.payment import (
    PAYMENT_AUTHORIZED,
    PAYMENT_CAPTURED,
    PAYMENT_REFUNDED,
    PAYMENT_VOIDED,
    PROVIDER_VALOR,
)
from pos_settlement.services.errors import (
    GatewayRequestError,
    InvalidInput,
    InvalidStateTransition,
    OrderNotFound,
    SettlementPreconditionError,
)
from pos_settlement.services.gateway_client import GatewayClient, GatewayTransaction
from pos_settlement.services.timeutils import as_utc, utcnow
from pos_settlement.services.validation import CENT, parse_amount, safe_response_subset

logger = logging.getLogger(__name__)

PAYMENT_TRANSITIONS = {
    PAYMENT_AUTHORIZED: {PAYMENT_CAPTURED, PAYMENT_VOIDED},
    PAYMENT_CAPTURED: {PAYMENT_REFUNDED},
    PAYMENT_VOIDED: set(),
    PAYMENT_REFUNDED: set(),
}

INVOICE_SEQUENCE_WIDTH = 6
_NON_DIGITS = re.compile(r"[^0-9]")


def transition_order(order: Order, target: str) -> None:
    if target not in ORDER_TRANSITIONS.get(order.status, set()):
        raise InvalidStateTransition("Order", order.status, target)
    order.status = target


def transition_payment(payment: Payment, target: str) -> None:
    if target not in PAYMENT_TRANSITIONS.get(payment.status, set()):
        raise InvalidStateTransition("Payment", payment.status, target)
    payment.status = target


def invoice_prefix(lane_id: str, when: datetime) -> str:
    lane = _NON_DIGITS.sub("", lane_id).rjust(2, "0")
    return f"LANE{lane}-{as_utc(when):%Y%m%d}-"


def next_invoice_number(db: Session, lane_id: str, when: datetime) -> str:
    """Next per-lane, per-day invoice number, e.g. ``LANE01-20240115-000123``."""
    prefix = invoice_prefix(lane_id, when)
    existing = db.query(Order.invoice_number).filter(Order.invoice_number.like(f"{prefix}%")).all()
    sequences = [int(number[len(prefix):]) for (number,) in existing if number[len(prefix):].isdigit()]
    return f"{prefix}{max(sequences, default=0) + 1:0{INVOICE_SEQUENCE_WIDTH}d}"


def create_order(
    db: Session,
    amount: Any,
    lane_id: str,
    notes: str | None = None,
    created_by: str | None = None,
    now: datetime | None = None,
    retries: int = 3,
) -> Order:
    try:
        parsed_amount = parse_amount(amount)
    except ValueError as exc:
        raise InvalidInput(str(exc)) from exc
    if not lane_id or not lane_id.strip():
        raise InvalidInput("lane_id is required")
    created_at = now or utcnow()

    for attempt in range(1, retries + 1):
        order = Order(
            invoice_number=next_invoice_number(db, lane_id, created_at),
            lane_id=lane_id.strip(),
            amount=parsed_amount,
            status=ORDER_OPEN,
            created_by=created_by,
            notes=notes,
            created_at=created_at,
        )
        db.add(order)
        try:
            db.commit()
        except IntegrityError:
            # Another request took the same sequence number.
            db.rollback()
            logger.warning("Invoice %s already taken (attempt %s/%s)", order.invoice_number, attempt, retries)
            continue
        db.refresh(order)
        logger.info("Order %s created: %s for %s on lane %s", order.id, order.invoice_number, parsed_amount, lane_id)
        return order
    raise InvalidInput(f"Could not allocate an invoice number for lane {lane_id}; retry the request")


def get_order(db: Session, order_id: int, for_update: bool = False) -> Order:
    query = db.query(Order).filter(Order.id == order_id)
    if for_update:
        query = query.with_for_update()
    order = query.first()
    if not order:
        raise OrderNotFound(f"Order {order_id} not found")
    return order


def find_payment(db: Session, provider: str, transaction_id: str) -> Payment | None:
    return (
        db.query(Payment)
        .filter(Payment.provider == provider, Payment.transaction_id == transaction_id)
        .first()
    )


def find_transaction(db: Session, transaction_id: str, order_id: int | None = None) -> Payment | None:
    """Oldest payment carrying this transaction id under any provider."""
    query = db.query(Payment).filter(Payment.transaction_id == transaction_id)
    if order_id is not None:
        query = query.filter(Payment.order_id == order_id)
    return query.order_by(Payment.id).first()


def amounts_match(expected: Decimal, actual: Decimal, tolerance: Decimal | None = None) -> bool:
    tolerance = tolerance if tolerance is not None else settings.RECONCILE_AMOUNT_TOLERANCE
    return abs(Decimal(expected) - Decimal(actual)) <= tolerance


def record_payment(
    db: Session,
    order: Order,
    *,
    provider: str,
    transaction_id: str,
    amount: Any,
    auth_code: str | None = None,
    settled_at: datetime | None = None,
    raw_response: dict[str, Any] | None = None,
    amount_tolerance: Decimal | None = None,
) -> tuple[Payment, bool]:
    """Attach a gateway transaction to an OPEN order and mark it PAID.

    Returns ``(payment, created)``. A transaction that is already stored is
    returned untouched with ``created=False``, including when a concurrent
    writer inserts it first or records it on this order under another
    provider (a LAN terminal sale later seen in the gateway listing).
    """
    if not transaction_id:
        raise InvalidInput("transaction_id is required to record a payment")
    existing = find_payment(db, provider, transaction_id)
    if existing:
        logger.info("Transaction %s/%s already recorded as payment %s", provider, transaction_id, existing.id)
        return existing, False

    try:
        parsed_amount = parse_amount(amount)
    except ValueError as exc:
        raise InvalidInput(str(exc)) from exc

    # The caller's copy of the order may predate a payment committed by another session.
    db.refresh(order, with_for_update=True)
    existing = find_transaction(db, transaction_id, order_id=order.id)
    if existing:
        logger.info(
            "Transaction %s already recorded on order %s as %s payment %s",
            transaction_id,
            order.invoice_number,
            existing.provider,
            existing.id,
        )
        return existing, False
    if not amounts_match(order.amount, parsed_amount, amount_tolerance):
        raise InvalidInput(
            f"Payment amount {parsed_amount} does not match order {order.invoice_number} amount {order.amount}"
        )
    transition_order(order, ORDER_PAID)
    payment = Payment(
        order_id=order.id,
        provider=provider,
        transaction_id=transaction_id,
        auth_code=auth_code,
        status=PAYMENT_CAPTURED if settled_at else PAYMENT_AUTHORIZED,
        amount=parsed_amount,
        refunded_amount=Decimal("0.00"),
        raw_response=safe_response_subset(raw_response),
        settled_at=settled_at,
    )
    db.add(payment)
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        winner = find_payment(db, provider, transaction_id)
        if winner is None:
            raise
        logger.info("Transaction %s/%s recorded concurrently; using payment %s", provider, transaction_id, winner.id)
        return winner, False
    db.refresh(payment)
    logger.info(
        "Payment %s recorded for order %s (%s %s, %s)",
        payment.id,
        order.invoice_number,
        provider,
        transaction_id,
        payment.status,
    )
    return payment, True


@dataclass(frozen=True)
class SettlementView:
    settled: bool
    gateway_status: str | None
    details: GatewayTransaction | None


def settlement_state(payment: Payment, client: GatewayClient | None) -> SettlementView:
    """Ask the gateway whether the payment has settled, falling back to local state."""
    details = None
    if client is not None and payment.provider != PROVIDER_VALOR:
        details = client.get_transaction_details(payment.transaction_id)
    if details is not None:
        return SettlementView(
            settled=details.settled or payment.settled_at is not None,
            gateway_status=details.transaction_status,
            details=details,
        )
    return SettlementView(
        settled=payment.settled_at is not None or payment.status in (PAYMENT_CAPTURED, PAYMENT_REFUNDED),
        gateway_status=None,
        details=None,
    )


def _sync_settlement(payment: Payment, view: SettlementView) -> bool:
    if not view.settled or payment.status != PAYMENT_AUTHORIZED:
        return False
    settled_at = view.details.settled_at if view.details and view.details.settled_at else utcnow()
    transition_payment(payment, PAYMENT_CAPTURED)
    payment.settled_at = payment.settled_at or settled_at
    return True


def mark_settled(db: Session, payment: Payment, settled_at: datetime | None = None) -> bool:
    """Promote an AUTHORIZED payment to CAPTURED once its batch has settled."""
    db.refresh(payment, with_for_update=True)
    if payment.status != PAYMENT_AUTHORIZED:
        return False
    transition_payment(payment, PAYMENT_CAPTURED)
    payment.settled_at = payment.settled_at or settled_at or utcnow()
    db.commit()
    logger.info("Payment %s (%s) settled at %s", payment.id, payment.transaction_id, payment.settled_at)
    return True


def get_payment_status(db: Session, order_id: int, client: GatewayClient | None) -> dict[str, Any]:
    order = get_order(db, order_id)
    payment = order.latest_payment
    can_void = can_refund = False
    payment_view = None
    if payment is not None:
        view = settlement_state(payment, client)
        if _sync_settlement(payment, view):
            db.commit()
            logger.info("Payment %s (%s) found settled on status check", payment.id, payment.transaction_id)
        live = order.status == ORDER_PAID and payment.status not in (PAYMENT_VOIDED, PAYMENT_REFUNDED)
        can_void = live and not view.settled
        can_refund = live and view.settled and remaining_refundable(payment) > 0
        payment_view = {
            "id": payment.id,
            "provider": payment.provider,
            "transaction_id": payment.transaction_id,
            "auth_code": payment.auth_code,
            "status": payment.status,
            "amount": payment.amount,
            "refunded_amount": payment.refunded_amount or Decimal("0.00"),
            "settled_at": payment.settled_at,
            "gateway_status": view.gateway_status,
        }
    return {
        "order": {
            "id": order.id,
            "invoice_number": order.invoice_number,
            "lane_id": order.lane_id,
            "status": order.status,
            "amount": order.amount,
            "created_at": order.created_at,
        },
        "payment": payment_view,
        "actions": {"can_void": can_void, "can_refund": can_refund},
    }


def _card_last4(details: GatewayTransaction | None) -> str | None:
    if details is None:
        return None
    card = (details.raw.get("payment") or {}).get("creditCard") or {}
    number = card.get("cardNumber")
    return number[-4:] if number else None


def remaining_refundable(payment: Payment) -> Decimal:
    return Decimal(payment.amount) - Decimal(payment.refunded_amount or 0)


def _payment_for_settlement(db: Session, order_id: int, action: str) -> tuple[Order, Payment]:
    order = get_order(db, order_id, for_update=True)
    if order.status in (ORDER_VOIDED, ORDER_REFUNDED):
        raise InvalidStateTransition("Order", order.status, ORDER_VOIDED if action == "void" else ORDER_REFUNDED)
    payment = order.latest_payment
    if payment is None:
        raise InvalidInput(f"No payment found for order {order.invoice_number}")
    if payment.status in (PAYMENT_VOIDED, PAYMENT_REFUNDED):
        raise InvalidStateTransition(
            "Payment", payment.status, PAYMENT_VOIDED if action == "void" else PAYMENT_REFUNDED
        )
    if payment.provider == PROVIDER_VALOR:
        raise InvalidInput(
            f"Payment {payment.transaction_id} was taken on the cloud terminal; {action} it through the cloud channel"
        )
    return order, payment


def void_payment(db: Session, order_id: int, client: GatewayClient) -> Payment:
    order, payment = _payment_for_settlement(db, order_id, "void")
    view = settlement_state(payment, client)
    if view.settled:
        db.rollback()
        raise SettlementPreconditionError("Cannot void a settled transaction. Use refund instead.")

    response = client.void(payment.transaction_id)
    if not response.ok:
        db.rollback()
        logger.error("Void of %s failed: %s (%s)", payment.transaction_id, response.message, response.error_code)
        raise GatewayRequestError(response.message or "Failed to void transaction", response.error_code)

    transition_payment(payment, PAYMENT_VOIDED)
    transition_order(order, ORDER_VOIDED)
    db.commit()
    db.refresh(payment)
    logger.info("Payment %s voided for order %s", payment.transaction_id, order.invoice_number)
    return payment


def refund_payment(db: Session, order_id: int, client: GatewayClient, amount: Any = None) -> Payment:
    order, payment = _payment_for_settlement(db, order_id, "refund")
    view = settlement_state(payment, client)
    if not view.settled:
        db.rollback()
        raise SettlementPreconditionError("Cannot refund an unsettled transaction. Use void instead.")

    remaining = remaining_refundable(payment)
    if amount is None:
        refund_amount = remaining
    else:
        try:
            refund_amount = parse_amount(amount)
        except ValueError as exc:
            db.rollback()
            raise InvalidInput(str(exc)) from exc
    if refund_amount <= 0 or refund_amount > remaining:
        db.rollback()
        raise InvalidInput(f"Invalid refund amount. Must be between 0.01 and {remaining.quantize(CENT)}")

    response = client.refund(payment.transaction_id, refund_amount, _card_last4(view.details))
    if not response.ok:
        db.rollback()
        logger.error("Refund of %s failed: %s (%s)", payment.transaction_id, response.message, response.error_code)
        raise GatewayRequestError(response.message or "Failed to refund transaction", response.error_code)

    _sync_settlement(payment, view)
    payment.refunded_amount = Decimal(payment.refunded_amount or 0) + refund_amount
    if remaining_refundable(payment) <= 0:
        transition_payment(payment, PAYMENT_REFUNDED)
        transition_order(order, ORDER_REFUNDED)
    db.commit()
    db.refresh(payment)
    logger.info(
        "Refunded %s of payment %s for order %s (total refunded %s)",
        refund_amount,
        payment.transaction_id,
        order.invoice_number,
        payment.refunded_amount,
    )
    return payment
