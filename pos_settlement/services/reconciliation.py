"""Periodic cross-check of local orders against the gateway's transaction list.

Catches charges that completed on a terminal while the POS lost track of
them (browser closed, poll timed out, network blip). A gateway transaction
is attached to an order only when invoice number, amount and timing all
agree, and only once.
"""

import logging
import threading
import time
from dataclasses import asdict, dataclass
from datetime import timedelta
from decimal import Decimal
from typing import Callable

from sqlalchemy.orm import Session

from pos_settlement.config import settings
from pos_settlement.models import Order
from pos_settlement.models.database import SessionLocal
from pos_settlement.models.order import ORDER_OPEN
from pos_settlement.models.payment import PROVIDER_AUTHORIZE_NET, PROVIDER_VALOR, Payment
from pos_settlement.services.errors import ErrorKind, InvalidStateTransition
from pos_settlement.services.gateway_client import GatewayClient, GatewayTransaction
from pos_settlement.services.orders import amounts_match, find_transaction, mark_settled, record_payment
from pos_settlement.services.timeutils import as_utc, utcnow

logger = logging.getLogger(__name__)


@dataclass
class ReconciliationMetrics:
    scanned: int = 0
    matched: int = 0
    processed: int = 0
    settled: int = 0
    skipped: int = 0
    errors: int = 0
    elapsed_seconds: float = 0.0
    source: str = "none"
    overlapped: bool = False

    def to_dict(self) -> dict:
        return asdict(self)


class ReconciliationEngine:
    def __init__(
        self,
        client: GatewayClient | None = None,
        session_factory: Callable[[], Session] = SessionLocal,
        interval_seconds: float | None = None,
        lookback_minutes: int | None = None,
        match_window_minutes: int | None = None,
        amount_tolerance: Decimal | None = None,
        provider: str = PROVIDER_AUTHORIZE_NET,
    ):
        self.client = client or GatewayClient()
        self.session_factory = session_factory
        self.interval_seconds = interval_seconds if interval_seconds is not None else settings.RECONCILE_INTERVAL_SECONDS
        self.lookback_minutes = lookback_minutes if lookback_minutes is not None else settings.RECONCILE_LOOKBACK_MINUTES
        self.match_window = timedelta(
            minutes=match_window_minutes if match_window_minutes is not None else settings.RECONCILE_MATCH_WINDOW_MINUTES
        )
        self.amount_tolerance = amount_tolerance if amount_tolerance is not None else settings.RECONCILE_AMOUNT_TOLERANCE
        self.provider = provider
        self._run_lock = threading.Lock()
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None

    @property
    def is_running(self) -> bool:
        return self._run_lock.locked()

    # ------------------------------------------------------------------
    # One cycle
    # ------------------------------------------------------------------

    def fetch_transactions(self) -> tuple[list[GatewayTransaction], str]:
        transactions = self.client.get_transactions_by_batch()
        if transactions:
            return transactions, "batch"
        transactions = self.client.get_recent_transactions(minutes=self.lookback_minutes)
        return transactions, "recent" if transactions else "none"

    def match_transaction(self, db: Session, transaction: GatewayTransaction) -> Order | None:
        """Return the OPEN order this transaction pays for, or None when any check fails."""
        tx_id = transaction.transaction_id
        if not transaction.invoice_number:
            logger.debug("Transaction %s has no invoice number", tx_id)
            return None

        order = (
            db.query(Order)
            .filter(Order.invoice_number == transaction.invoice_number, Order.status == ORDER_OPEN)
            .first()
        )
        if order is None:
            logger.debug("No OPEN order for invoice %s (transaction %s)", transaction.invoice_number, tx_id)
            return None

        if not amounts_match(order.amount, transaction.amount, self.amount_tolerance):
            self._mismatch(tx_id, order, f"amount {transaction.amount} != order amount {order.amount}")
            return None

        submitted_at = as_utc(transaction.submitted_at) if transaction.submitted_at else utcnow()
        created_at = as_utc(order.created_at) if order.created_at else utcnow()
        delta = submitted_at - created_at
        if delta < timedelta(0) or delta > self.match_window:
            self._mismatch(
                tx_id,
                order,
                f"submitted {delta.total_seconds() / 60:.1f} min after order creation "
                f"(window 0-{self.match_window.total_seconds() / 60:g} min)",
            )
            return None

        if self.recorded_payment(db, tx_id):
            logger.debug("Transaction %s already recorded", tx_id)
            return None
        return order

    def recorded_payment(self, db: Session, transaction_id: str) -> Payment | None:
        """Payment already holding this gateway transaction, whichever channel recorded it.

        LAN terminal sales run through the same gateway, so their ids share
        its namespace; cloud terminal ids do not.
        """
        payment = find_transaction(db, transaction_id)
        if payment is not None and payment.provider == PROVIDER_VALOR and self.provider != PROVIDER_VALOR:
            return None
        return payment

    def settle_existing(self, db: Session, payment: Payment, transaction: GatewayTransaction) -> bool:
        if not transaction.settled:
            return False
        return mark_settled(db, payment, transaction.settled_at)

    def process_match(self, db: Session, transaction: GatewayTransaction, order: Order) -> bool:
        settled_at = transaction.settled_at
        if settled_at is None and transaction.settled:
            settled_at = utcnow()
        try:
            _, created = record_payment(
                db,
                order,
                provider=self.provider,
                transaction_id=transaction.transaction_id,
                amount=transaction.amount,
                auth_code=transaction.auth_code,
                settled_at=settled_at,
                raw_response=transaction.safe_raw(),
                amount_tolerance=self.amount_tolerance,
            )
        except InvalidStateTransition as exc:
            # Paid by another transaction between matching and recording.
            db.rollback()
            logger.warning(
                "Transaction %s not attached to order %s: %s",
                transaction.transaction_id,
                order.invoice_number,
                exc,
            )
            return False
        if created:
            logger.info(
                "Reconciled transaction %s to order %s (%s)",
                transaction.transaction_id,
                order.invoice_number,
                "settled" if settled_at else "authorized",
            )
        return created

    def run_once(self) -> ReconciliationMetrics:
        if not self._run_lock.acquire(blocking=False):
            logger.info("Reconciliation already running, skipping this cycle")
            return ReconciliationMetrics(overlapped=True)
        try:
            return self._run_cycle()
        finally:
            self._run_lock.release()

    def _run_cycle(self) -> ReconciliationMetrics:
        started = time.monotonic()
        metrics = ReconciliationMetrics()
        transactions, metrics.source = self.fetch_transactions()
        metrics.scanned = len(transactions)

        db = self.session_factory()
        try:
            for transaction in transactions:
                try:
                    existing = self.recorded_payment(db, transaction.transaction_id)
                    if existing is not None:
                        if self.settle_existing(db, existing, transaction):
                            metrics.settled += 1
                        else:
                            metrics.skipped += 1
                        continue
                    order = self.match_transaction(db, transaction)
                    if order is None:
                        metrics.skipped += 1
                        continue
                    metrics.matched += 1
                    if self.process_match(db, transaction, order):
                        metrics.processed += 1
                except Exception:
                    db.rollback()
                    metrics.errors += 1
                    logger.exception("Failed to reconcile transaction %s", transaction.transaction_id)
        finally:
            db.close()

        metrics.elapsed_seconds = round(time.monotonic() - started, 3)
        logger.info(
            "Reconciliation cycle: scanned=%s matched=%s processed=%s settled=%s skipped=%s errors=%s "
            "source=%s elapsed=%ss",
            metrics.scanned,
            metrics.matched,
            metrics.processed,
            metrics.settled,
            metrics.skipped,
            metrics.errors,
            metrics.source,
            metrics.elapsed_seconds,
        )
        return metrics

    @staticmethod
    def _mismatch(transaction_id: str, order: Order, reason: str) -> None:
        logger.warning(
            "%s: transaction %s vs order %s: %s",
            ErrorKind.RECONCILIATION_MISMATCH.value,
            transaction_id,
            order.invoice_number,
            reason,
        )

    # ------------------------------------------------------------------
    # Background worker
    # ------------------------------------------------------------------

    def start(self) -> None:
        if self._thread and self._thread.is_alive():
            logger.warning("Reconciliation worker already started")
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._loop, name="reconciliation", daemon=True)
        self._thread.start()
        logger.info("Reconciliation worker started (every %ss)", self.interval_seconds)

    def stop(self, timeout: float | None = 5.0) -> None:
        self._stop_event.set()
        if self._thread:
            self._thread.join(timeout)
            self._thread = None
        logger.info("Reconciliation worker stopped")

    def _loop(self) -> None:
        while not self._stop_event.is_set():
            try:
                self.run_once()
            except Exception:
                logger.exception("Reconciliation cycle failed")
            if self._stop_event.wait(self.interval_seconds):
                break
