import logging
from typing import Annotated

from fastapi import APIRouter, Depends, status
from sqlalchemy.orm import Session

from pos_settlement.api.errors import to_http_exception
from pos_settlement.dependencies import get_gateway_client
from pos_settlement.models import get_db
from pos_settlement.schemas.orders import (
    OrderCreateRequest,
    OrderCreateResponse,
    PaymentActionResponse,
    PaymentStatusResponse,
    RefundRequest,
)
from pos_settlement.services import orders as order_service
from pos_settlement.services.errors import PaymentError
from pos_settlement.services.gateway_client import GatewayClient

router = APIRouter()
logger = logging.getLogger(__name__)


@router.post(
    "",
    response_model=OrderCreateResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Create order",
)
def create_order(
    body: OrderCreateRequest,
    db: Annotated[Session, Depends(get_db)],
):
    """
    Create an OPEN order with a lane/day invoice number (LANE01-20240115-000123).
    Card terminals and the gateway carry the invoice number, which is how
    reconciliation finds the order later.
    """
    try:
        order = order_service.create_order(
            db,
            amount=body.amount,
            lane_id=body.lane_id,
            notes=body.notes,
            created_by=body.created_by,
        )
    except PaymentError as exc:
        db.rollback()
        raise to_http_exception(exc)
    return OrderCreateResponse.model_validate(order)


@router.get(
    "/{order_id}/payment-status",
    response_model=PaymentStatusResponse,
    summary="Get payment status and allowed actions",
)
def payment_status(
    order_id: int,
    db: Annotated[Session, Depends(get_db)],
    client: Annotated[GatewayClient, Depends(get_gateway_client)],
):
    """Latest payment of the order and whether it can be voided (unsettled) or refunded (settled)."""
    try:
        return order_service.get_payment_status(db, order_id, client)
    except PaymentError as exc:
        raise to_http_exception(exc)


@router.post(
    "/{order_id}/void",
    response_model=PaymentActionResponse,
    summary="Void an unsettled payment",
)
def void_payment(
    order_id: int,
    db: Annotated[Session, Depends(get_db)],
    client: Annotated[GatewayClient, Depends(get_gateway_client)],
):
    try:
        payment = order_service.void_payment(db, order_id, client)
    except PaymentError as exc:
        db.rollback()
        logger.warning("Void rejected for order %s: %s", order_id, exc)
        raise to_http_exception(exc)
    return PaymentActionResponse(
        order_id=order_id,
        order_status=payment.order.status,
        transaction_id=payment.transaction_id,
        payment_status=payment.status,
        refunded_amount=payment.refunded_amount,
        message="Transaction voided successfully",
    )


@router.post(
    "/{order_id}/refund",
    response_model=PaymentActionResponse,
    summary="Refund a settled payment (full or partial)",
)
def refund_payment(
    order_id: int,
    db: Annotated[Session, Depends(get_db)],
    client: Annotated[GatewayClient, Depends(get_gateway_client)],
    body: RefundRequest | None = None,
):
    """Omit ``amount`` to refund whatever is left of the settled payment."""
    try:
        payment = order_service.refund_payment(db, order_id, client, amount=body.amount if body else None)
    except PaymentError as exc:
        db.rollback()
        logger.warning("Refund rejected for order %s: %s", order_id, exc)
        raise to_http_exception(exc)
    return PaymentActionResponse(
        order_id=order_id,
        order_status=payment.order.status,
        transaction_id=payment.transaction_id,
        payment_status=payment.status,
        refunded_amount=payment.refunded_amount,
        message="Refund processed successfully",
    )
