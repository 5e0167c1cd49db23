"""Fixed-interval polling of a pending terminal payment.

The poller only knows a ``check_status(transaction_id)`` callable, so the
same loop serves every channel. Exhausting the attempts is not an error: the
card may still have been charged, so the caller gets a TIMEOUT result whose
outcome is unknown and must be settled later (reconciliation does that).
"""

import logging
import threading
import time
from typing import Callable, Protocol

from pos_settlement.config import settings
from pos_settlement.services.errors import (
    ErrorCode,
    ErrorKind,
    SessionStatus,
    TerminalResult,
)
from pos_settlement.services.terminals.base import TerminalChannel

logger = logging.getLogger(__name__)

MAX_POLL_ATTEMPTS = 720


class PollObserver(Protocol):
    def on_update(self, result: TerminalResult, attempt: int) -> None:
        ...


class NullObserver:
    def on_update(self, result: TerminalResult, attempt: int) -> None:
        return None


class CallbackObserver:
    def __init__(self, callback: Callable[[TerminalResult, int], None]):
        self.callback = callback

    def on_update(self, result: TerminalResult, attempt: int) -> None:
        self.callback(result, attempt)


class PaymentSessionPoller:
    def __init__(
        self,
        check_status: Callable[[str], TerminalResult],
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.check_status = check_status
        self._sleep = sleep

    @classmethod
    def for_channel(cls, channel: TerminalChannel, terminal_ref: str | None = None, **kwargs) -> "PaymentSessionPoller":
        return cls(lambda transaction_id: channel.check_status(transaction_id, terminal_ref), **kwargs)

    def poll(
        self,
        transaction_id: str,
        max_attempts: int | None = None,
        interval_ms: int | None = None,
        observer: PollObserver | None = None,
        cancel_event: threading.Event | None = None,
    ) -> TerminalResult:
        max_attempts = max_attempts if max_attempts is not None else settings.POLL_MAX_ATTEMPTS
        interval_ms = interval_ms if interval_ms is not None else settings.POLL_INTERVAL_MS
        if not 1 <= max_attempts <= MAX_POLL_ATTEMPTS:
            raise ValueError(f"max_attempts must be between 1 and {MAX_POLL_ATTEMPTS}")
        if interval_ms < 0:
            raise ValueError("interval_ms must not be negative")
        observer = observer or NullObserver()
        interval = interval_ms / 1000

        for attempt in range(1, max_attempts + 1):
            result = self.check_status(transaction_id).with_attempts(attempt)
            try:
                observer.on_update(result, attempt)
            except Exception:
                logger.exception("Poll observer failed for %s on attempt %s", transaction_id, attempt)

            if not result.pending:
                logger.info("Poll for %s finished after %s attempt(s): %s", transaction_id, attempt, result.status.value)
                return result
            if attempt == max_attempts:
                break

            if cancel_event is not None:
                if cancel_event.wait(interval):
                    logger.warning("Poll for %s cancelled after %s attempt(s)", transaction_id, attempt)
                    return self._unknown_outcome(
                        transaction_id,
                        attempt,
                        ErrorCode.POLL_CANCELLED,
                        "Polling was cancelled before the terminal reported a final status",
                    )
            else:
                self._sleep(interval)

        logger.warning("Poll for %s timed out after %s attempts", transaction_id, max_attempts)
        return self._unknown_outcome(
            transaction_id,
            max_attempts,
            ErrorCode.POLL_TIMEOUT,
            "Payment status polling timeout. Check the terminal before retrying; the card may have been charged.",
        )

    @staticmethod
    def _unknown_outcome(transaction_id: str, attempts: int, code: str, message: str) -> TerminalResult:
        return TerminalResult(
            status=SessionStatus.TIMEOUT,
            transaction_id=transaction_id,
            error=message,
            error_code=code,
            kind=ErrorKind.POLL_TIMEOUT,
            attempts=attempts,
        )
