"""Error taxonomy shared by terminal channels, the poller and order services.

Channel calls never raise across their public boundary: every outcome is a
``TerminalResult``. Order/settlement rule violations are exceptions because
callers must not confuse them with transport trouble.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class ErrorKind(str, Enum):
    INVALID_INPUT = "invalid_input"
    TRANSPORT_FAILURE = "transport_failure"
    GATEWAY_DECLINED = "gateway_declined"
    GATEWAY_ERROR = "gateway_error"
    POLL_TIMEOUT = "poll_timeout"
    RECONCILIATION_MISMATCH = "reconciliation_mismatch"


class ErrorCode:
    TERMINAL_NOT_CONFIGURED = "TERMINAL_NOT_CONFIGURED"
    INVALID_ADDRESS = "INVALID_ADDRESS"
    INVALID_AMOUNT = "INVALID_AMOUNT"
    MISSING_CREDENTIALS = "MISSING_CREDENTIALS"
    MISSING_TRANSACTION_ID = "MISSING_TRANSACTION_ID"
    CONNECTION_REFUSED = "CONNECTION_REFUSED"
    UNREACHABLE = "UNREACHABLE"
    TIMEOUT = "TIMEOUT"
    CONNECTION_CLOSED = "CONNECTION_CLOSED"
    AUTH_FAILED = "AUTH_FAILED"
    MALFORMED_RESPONSE = "MALFORMED_RESPONSE"
    POLL_TIMEOUT = "POLL_TIMEOUT"
    POLL_CANCELLED = "POLL_CANCELLED"


class SessionStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    DECLINED = "declined"
    ERROR = "error"
    TIMEOUT = "timeout"


@dataclass(frozen=True)
class TerminalResult:
    """Outcome of a single channel call or of a completed poll."""

    status: SessionStatus
    transaction_id: str | None = None
    auth_code: str | None = None
    amount: str | None = None
    message: str | None = None
    error: str | None = None
    error_code: str | None = None
    kind: ErrorKind | None = None
    gateway_status: str | None = None
    gateway_outcome: str | None = None
    terminal_ref: str | None = None
    attempts: int = 0
    details: dict[str, Any] = field(default_factory=dict)

    @property
    def success(self) -> bool:
        return self.status in (SessionStatus.APPROVED, SessionStatus.PENDING)

    @property
    def pending(self) -> bool:
        return self.status == SessionStatus.PENDING

    @property
    def approved(self) -> bool:
        return self.status == SessionStatus.APPROVED

    @property
    def declined(self) -> bool:
        return self.status == SessionStatus.DECLINED

    @property
    def outcome_unknown(self) -> bool:
        return self.status == SessionStatus.TIMEOUT

    def to_dict(self) -> dict[str, Any]:
        if self.status in (SessionStatus.APPROVED, SessionStatus.PENDING):
            payload = {
                "success": True,
                "pending": self.pending,
                "transaction_id": self.transaction_id,
                "auth_code": self.auth_code,
                "message": self.message,
                "status": self.status.value,
            }
            if self.gateway_outcome:
                payload["gateway_outcome"] = self.gateway_outcome
            return payload
        payload = {
            "success": False,
            "pending": self.outcome_unknown,
            "status": self.status.value,
            "error": self.error or self.message,
            "error_code": self.error_code,
            "kind": self.kind.value if self.kind else None,
        }
        if self.transaction_id:
            payload["transaction_id"] = self.transaction_id
        return payload

    def with_attempts(self, attempts: int) -> "TerminalResult":
        return TerminalResult(
            status=self.status,
            transaction_id=self.transaction_id,
            auth_code=self.auth_code,
            amount=self.amount,
            message=self.message,
            error=self.error,
            error_code=self.error_code,
            kind=self.kind,
            gateway_status=self.gateway_status,
            gateway_outcome=self.gateway_outcome,
            terminal_ref=self.terminal_ref,
            attempts=attempts,
            details=self.details,
        )


def invalid_input(message: str, code: str, terminal_ref: str | None = None) -> TerminalResult:
    return TerminalResult(
        status=SessionStatus.ERROR,
        error=message,
        error_code=code,
        kind=ErrorKind.INVALID_INPUT,
        terminal_ref=terminal_ref,
    )


def transport_failure(message: str, code: str, terminal_ref: str | None = None) -> TerminalResult:
    return TerminalResult(
        status=SessionStatus.ERROR,
        error=message,
        error_code=code,
        kind=ErrorKind.TRANSPORT_FAILURE,
        terminal_ref=terminal_ref,
    )


def gateway_declined(
    message: str,
    code: str | None = None,
    transaction_id: str | None = None,
    gateway_status: str | None = None,
) -> TerminalResult:
    return TerminalResult(
        status=SessionStatus.DECLINED,
        transaction_id=transaction_id,
        error=message,
        error_code=code,
        kind=ErrorKind.GATEWAY_DECLINED,
        gateway_status=gateway_status,
    )


def gateway_error(message: str, code: str | None = None, transaction_id: str | None = None) -> TerminalResult:
    return TerminalResult(
        status=SessionStatus.ERROR,
        transaction_id=transaction_id,
        error=message,
        error_code=code,
        kind=ErrorKind.GATEWAY_ERROR,
    )


class PaymentError(Exception):
    """Base class for order and settlement errors raised by the services layer."""


class InvalidInput(PaymentError, ValueError):
    pass


class OrderNotFound(PaymentError, LookupError):
    pass


class InvalidStateTransition(PaymentError):
    def __init__(self, entity: str, current: str, target: str):
        self.entity = entity
        self.current = current
        self.target = target
        super().__init__(f"{entity} cannot move from {current} to {target}")


class SettlementPreconditionError(PaymentError):
    """Void requested on a settled payment, or refund on an unsettled one."""


class GatewayRequestError(PaymentError):
    def __init__(self, message: str, code: str | None = None):
        self.code = code
        super().__init__(message)
