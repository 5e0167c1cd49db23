from datetime import datetime
from decimal import Decimal

from pydantic import BaseModel, Field


class OrderCreateRequest(BaseModel):
    amount: Decimal = Field(gt=0, decimal_places=2)
    lane_id: str = Field(min_length=1, max_length=32)
    notes: str | None = None
    created_by: str | None = None

    model_config = {
        "json_schema_extra": {
            "examples": [
                {
                    "amount": "42.50",
                    "lane_id": "LANE-01",
                    "notes": "Table 4",
                    "created_by": "cashier-7",
                }
            ]
        }
    }


class OrderCreateResponse(BaseModel):
    id: int
    invoice_number: str
    lane_id: str
    amount: Decimal
    status: str
    created_at: datetime | None = None

    model_config = {"from_attributes": True}


class OrderSummary(BaseModel):
    id: int
    invoice_number: str
    lane_id: str
    status: str
    amount: Decimal
    created_at: datetime | None = None


class PaymentSummary(BaseModel):
    id: int
    provider: str
    transaction_id: str
    auth_code: str | None = None
    status: str
    amount: Decimal
    refunded_amount: Decimal = Decimal("0.00")
    settled_at: datetime | None = None
    gateway_status: str | None = None


class PaymentActions(BaseModel):
    can_void: bool
    can_refund: bool


class PaymentStatusResponse(BaseModel):
    order: OrderSummary
    payment: PaymentSummary | None = None
    actions: PaymentActions


class RefundRequest(BaseModel):
    amount: Decimal | None = Field(default=None, gt=0, decimal_places=2)


class PaymentActionResponse(BaseModel):
    order_id: int
    order_status: str
    transaction_id: str
    payment_status: str
    refunded_amount: Decimal
    message: str
