import logging
from decimal import Decimal

from pos_settlement.config import settings
from pos_settlement.models.payment import PROVIDER_AUTHORIZE_NET
from pos_settlement.services.errors import (
    ErrorCode,
    SessionStatus,
    TerminalResult,
    gateway_declined,
    gateway_error,
    transport_failure,
)
from pos_settlement.services.gateway_client import (
    GatewayClient,
    ResponseCode,
    SettlementState,
    classify_transaction_status,
)
from pos_settlement.services.terminals.base import TerminalChannel
from pos_settlement.services.validation import format_amount

logger = logging.getLogger(__name__)

# The terminal finishes the sale after the API call returns, so every
# non-decline answer is only provisional.
PENDING_OUTCOMES = {
    ResponseCode.APPROVED: "approved",
    ResponseCode.ERROR: "error",
    ResponseCode.HELD_FOR_REVIEW: "held_for_review",
}

_TRANSPORT_CODES = {ErrorCode.TIMEOUT, ErrorCode.UNREACHABLE}


class GatewayTerminalChannel(TerminalChannel):
    name = "gateway"
    provider = PROVIDER_AUTHORIZE_NET
    not_configured_hint = "Set the terminal number (GATEWAY_TERMINAL_NUMBER) in Settings."

    def __init__(self, client: GatewayClient | None = None):
        self.client = client or GatewayClient()

    def _initiate(
        self,
        amount: Decimal,
        terminal_ref: str,
        invoice_number: str | None,
        description: str | None,
    ) -> TerminalResult:
        response = self.client.charge_terminal(amount, terminal_ref, invoice_number, description)
        outcome = PENDING_OUTCOMES.get(response.response_code)
        if outcome:
            transaction_id = response.transaction_id or response.ref_id
            logger.info(
                "Gateway accepted terminal sale %s on %s (outcome=%s, environment=%s)",
                transaction_id,
                terminal_ref,
                outcome,
                settings.ENVIRONMENT,
            )
            return TerminalResult(
                status=SessionStatus.PENDING,
                transaction_id=transaction_id,
                auth_code=response.auth_code,
                amount=format_amount(amount),
                message=(
                    "Payment request sent to terminal. Please complete payment on device."
                    if outcome == "approved"
                    else f"Payment request sent to terminal ({outcome.replace('_', ' ')})."
                ),
                gateway_outcome=outcome,
                terminal_ref=terminal_ref,
                details=response.raw,
            )
        if response.response_code == ResponseCode.DECLINED:
            return gateway_declined(
                response.message or "Transaction declined",
                code=response.error_code,
                transaction_id=response.transaction_id,
            )
        if response.error_code in _TRANSPORT_CODES:
            return transport_failure(response.message or "Gateway unreachable", response.error_code, terminal_ref=terminal_ref)
        return gateway_error(response.message or "Terminal payment failed", code=response.error_code)

    def _check_status(self, transaction_id: str, terminal_ref: str | None) -> TerminalResult:
        details = self.client.get_transaction_details(transaction_id)
        if details is None:
            return gateway_error("Failed to retrieve transaction details", transaction_id=transaction_id)
        state = classify_transaction_status(details.transaction_status)
        if state == SettlementState.APPROVED:
            return TerminalResult(
                status=SessionStatus.APPROVED,
                transaction_id=details.transaction_id,
                auth_code=details.auth_code,
                amount=format_amount(details.amount),
                message="Payment approved",
                gateway_status=details.transaction_status,
                terminal_ref=terminal_ref,
            )
        if state == SettlementState.DECLINED:
            return gateway_declined(
                f"Transaction {details.transaction_status}",
                transaction_id=details.transaction_id,
                gateway_status=details.transaction_status,
            )
        return TerminalResult(
            status=SessionStatus.PENDING,
            transaction_id=details.transaction_id,
            message="Waiting for customer to complete payment on terminal",
            gateway_status=details.transaction_status,
            terminal_ref=terminal_ref,
        )

    def _void(self, transaction_id: str, terminal_ref: str | None) -> TerminalResult:
        response = self.client.void(transaction_id)
        if response.ok:
            return TerminalResult(
                status=SessionStatus.APPROVED,
                transaction_id=response.transaction_id or transaction_id,
                message="Transaction voided successfully",
                terminal_ref=terminal_ref,
            )
        if response.response_code == ResponseCode.DECLINED:
            return gateway_declined(response.message or "Void declined", response.error_code, transaction_id)
        return gateway_error(response.message or "Void failed", response.error_code, transaction_id)
