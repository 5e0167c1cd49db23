from pos_settlement.schemas.orders import (
    OrderCreateRequest,
    OrderCreateResponse,
    PaymentActionResponse,
    PaymentStatusResponse,
    RefundRequest,
)
from pos_settlement.schemas.terminals import (
    PollRequest,
    ReconciliationRunResponse,
    TerminalPaymentRequest,
    TerminalResultResponse,
)

__all__ = [
    "OrderCreateRequest",
    "OrderCreateResponse",
    "PaymentActionResponse",
    "PaymentStatusResponse",
    "PollRequest",
    "ReconciliationRunResponse",
    "RefundRequest",
    "TerminalPaymentRequest",
    "TerminalResultResponse",
]
