import logging
from typing import Annotated

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.orm import Session

from pos_settlement.dependencies import get_channel_registry
from pos_settlement.models import get_db
from pos_settlement.schemas.terminals import (
    PollRequest,
    TerminalPaymentRequest,
    TerminalResultResponse,
)
from pos_settlement.services import orders as order_service
from pos_settlement.services.errors import PaymentError, TerminalResult
from pos_settlement.services.poller import PaymentSessionPoller
from pos_settlement.services.terminals import TerminalChannelConfig

router = APIRouter()
logger = logging.getLogger(__name__)

ChannelRegistry = Annotated[dict[str, TerminalChannelConfig], Depends(get_channel_registry)]


def _channel_or_404(registry: dict[str, TerminalChannelConfig], channel: str) -> TerminalChannelConfig:
    config = registry.get(channel)
    if config is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Unknown terminal channel: {channel}. Available: {', '.join(sorted(registry))}",
        )
    return config


def _record_approved(db: Session, order_id: int, config: TerminalChannelConfig, result: TerminalResult) -> bool:
    """Attach an approved terminal sale to its order; the sale stands even if this fails."""
    if not result.approved or not result.transaction_id:
        return False
    try:
        order = order_service.get_order(db, order_id, for_update=True)
        _, created = order_service.record_payment(
            db,
            order,
            provider=config.channel.provider,
            transaction_id=result.transaction_id,
            amount=result.amount or order.amount,
            auth_code=result.auth_code,
            raw_response=result.details,
        )
    except PaymentError as exc:
        db.rollback()
        logger.error(
            "Approved %s transaction %s could not be recorded on order %s: %s",
            config.name,
            result.transaction_id,
            order_id,
            exc,
        )
        return False
    return created


def _response(result: TerminalResult, recorded: bool = False) -> TerminalResultResponse:
    return TerminalResultResponse(**result.to_dict(), attempts=result.attempts or None, recorded=recorded)


@router.post(
    "/{channel}/payment",
    response_model=TerminalResultResponse,
    summary="Start a card-present payment on a terminal",
)
def initiate_payment(
    channel: str,
    body: TerminalPaymentRequest,
    db: Annotated[Session, Depends(get_db)],
    registry: ChannelRegistry,
):
    """
    Failures come back as ``success: false`` with ``error`` / ``error_code``,
    not as HTTP errors, so the POS can always show the terminal's answer.
    A pending result must be followed by ``/poll``.
    """
    config = _channel_or_404(registry, channel)
    terminal_ref = body.terminal_ref if body.terminal_ref is not None else config.default_terminal_ref
    invoice_number = body.invoice_number
    if body.order_id is not None and not invoice_number:
        try:
            invoice_number = order_service.get_order(db, body.order_id).invoice_number
        except PaymentError as exc:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc))

    result = config.channel.initiate_payment(body.amount, terminal_ref, invoice_number, body.description)
    recorded = False
    if body.order_id is not None:
        recorded = _record_approved(db, body.order_id, config, result)
    return _response(result, recorded)


@router.get(
    "/{channel}/status/{transaction_id}",
    response_model=TerminalResultResponse,
    summary="Check a terminal transaction once",
)
def check_status(
    channel: str,
    transaction_id: str,
    registry: ChannelRegistry,
    terminal_ref: str | None = None,
):
    config = _channel_or_404(registry, channel)
    ref = terminal_ref if terminal_ref is not None else config.default_terminal_ref
    return _response(config.channel.check_status(transaction_id, ref))


@router.post(
    "/{channel}/poll/{transaction_id}",
    response_model=TerminalResultResponse,
    summary="Poll a pending terminal transaction until it finishes",
)
def poll_status(
    channel: str,
    transaction_id: str,
    db: Annotated[Session, Depends(get_db)],
    registry: ChannelRegistry,
    body: PollRequest | None = None,
):
    """Blocks for up to max_attempts x interval_ms. A ``timeout`` status means the outcome is unknown."""
    body = body or PollRequest()
    config = _channel_or_404(registry, channel)
    ref = body.terminal_ref if body.terminal_ref is not None else config.default_terminal_ref
    poller = PaymentSessionPoller.for_channel(config.channel, ref)
    result = poller.poll(transaction_id, max_attempts=body.max_attempts, interval_ms=body.interval_ms)
    recorded = False
    if body.order_id is not None:
        recorded = _record_approved(db, body.order_id, config, result)
    return _response(result, recorded)
