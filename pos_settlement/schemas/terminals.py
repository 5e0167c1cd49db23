from decimal import Decimal

from pydantic import BaseModel, Field


class TerminalPaymentRequest(BaseModel):
    amount: Decimal
    terminal_ref: str | None = None
    invoice_number: str | None = None
    description: str | None = None
    order_id: int | None = None

    model_config = {
        "json_schema_extra": {
            "examples": [
                {
                    "amount": "42.50",
                    "terminal_ref": "192.168.1.100:10009",
                    "invoice_number": "LANE01-20240115-000123",
                    "order_id": 1,
                }
            ]
        }
    }


class TerminalResultResponse(BaseModel):
    success: bool
    pending: bool = False
    status: str
    transaction_id: str | None = None
    auth_code: str | None = None
    message: str | None = None
    error: str | None = None
    error_code: str | None = None
    kind: str | None = None
    gateway_outcome: str | None = None
    attempts: int | None = None
    recorded: bool = False


class PollRequest(BaseModel):
    terminal_ref: str | None = None
    max_attempts: int | None = Field(default=None, ge=1, le=720)
    interval_ms: int | None = Field(default=None, ge=0, le=60_000)
    order_id: int | None = None


class ReconciliationRunResponse(BaseModel):
    scanned: int
    matched: int
    processed: int
    settled: int
    skipped: int
    errors: int
    elapsed_seconds: float
    source: str
    overlapped: bool
