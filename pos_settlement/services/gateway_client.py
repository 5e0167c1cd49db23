"""Authorize.Net JSON API client.

Thin wrapper over ``createTransactionRequest`` and the transaction reporting
endpoints. Its main job is mapping the gateway's response-code and
settlement-status vocabularies into the local taxonomy used by the terminal
channels, the reconciliation engine and void/refund authorization.
"""

import json
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any

import requests

from pos_settlement.config import settings
from pos_settlement.services.validation import format_amount, safe_response_subset

logger = logging.getLogger(__name__)


class ResponseCode(str, Enum):
    APPROVED = "1"
    DECLINED = "2"
    ERROR = "3"
    HELD_FOR_REVIEW = "4"


SETTLED_STATUSES = {"settledSuccessfully"}
APPROVED_STATUSES = {"settledSuccessfully", "authorizedPendingCapture", "capturedPendingSettlement"}
DECLINED_STATUSES = {"declined", "voided", "refundSettledSuccessfully", "refundPendingSettlement"}
UNSETTLED_VOIDABLE_STATUSES = {
    "authorizedPendingCapture",
    "capturedPendingSettlement",
    "FDSPendingReview",
    "FDSAuthorizedPendingReview",
}


class SettlementState(str, Enum):
    APPROVED = "approved"
    DECLINED = "declined"
    PENDING = "pending"


def classify_transaction_status(status: str | None) -> SettlementState:
    if status in APPROVED_STATUSES:
        return SettlementState.APPROVED
    if status in DECLINED_STATUSES or (status or "").startswith("refund"):
        return SettlementState.DECLINED
    return SettlementState.PENDING


def is_settled_status(status: str | None) -> bool:
    return status in SETTLED_STATUSES


@dataclass(frozen=True)
class GatewayResponse:
    ok: bool
    response_code: ResponseCode | None = None
    transaction_id: str | None = None
    auth_code: str | None = None
    message: str | None = None
    error_code: str | None = None
    ref_id: str | None = None
    raw: dict[str, Any] = field(default_factory=dict)

    @property
    def approved(self) -> bool:
        return self.response_code == ResponseCode.APPROVED


@dataclass(frozen=True)
class GatewayTransaction:
    transaction_id: str
    transaction_status: str | None
    amount: Decimal
    invoice_number: str | None = None
    auth_code: str | None = None
    submitted_at: datetime | None = None
    settled_at: datetime | None = None
    raw: dict[str, Any] = field(default_factory=dict)

    @property
    def settled(self) -> bool:
        return self.settled_at is not None or is_settled_status(self.transaction_status)

    def safe_raw(self) -> dict[str, Any] | None:
        return safe_response_subset(self.raw)


def parse_gateway_datetime(value: str | None) -> datetime | None:
    if not value:
        return None
    text = value.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        logger.warning("Unparseable gateway timestamp: %s", value)
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _format_gateway_datetime(value: datetime) -> str:
    return value.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def _first_message(block: Any) -> tuple[str | None, str | None]:
    """Return (code, text) from either ``messages.message[]`` or ``messages[]`` shapes."""
    if not block:
        return None, None
    if isinstance(block, dict):
        inner = block.get("message")
        if isinstance(inner, list) and inner:
            return inner[0].get("code"), inner[0].get("text")
        if isinstance(inner, dict):
            return inner.get("code"), inner.get("text")
        return None, None
    if isinstance(block, list) and block:
        first = block[0]
        return first.get("code"), first.get("description") or first.get("text")
    return None, None


class GatewayClient:
    def __init__(
        self,
        login_id: str | None = None,
        transaction_key: str | None = None,
        endpoint: str | None = None,
        timeout: float | None = None,
        session: requests.Session | None = None,
    ):
        self.login_id = login_id if login_id is not None else settings.AUTHORIZE_NET_API_LOGIN_ID
        self.transaction_key = (
            transaction_key if transaction_key is not None else settings.AUTHORIZE_NET_TRANSACTION_KEY
        )
        self.endpoint = endpoint or settings.AUTHORIZE_NET_ENDPOINT
        self.timeout = timeout if timeout is not None else settings.GATEWAY_API_TIMEOUT
        self.session = session or requests.Session()

    @property
    def configured(self) -> bool:
        return bool(self.login_id and self.transaction_key)

    def _merchant_authentication(self) -> dict[str, str]:
        return {"name": self.login_id, "transactionKey": self.transaction_key}

    def _post(self, request_name: str, body: dict[str, Any]) -> dict[str, Any]:
        """POST one API request; raises requests exceptions or ValueError on bad JSON."""
        if not self.configured:
            raise ValueError("AUTHORIZE_NET_API_LOGIN_ID and AUTHORIZE_NET_TRANSACTION_KEY are not set")
        payload = {request_name: {"merchantAuthentication": self._merchant_authentication(), **body}}
        resp = self.session.post(
            self.endpoint,
            json=payload,
            headers={"Content-Type": "application/json"},
            timeout=self.timeout,
        )
        resp.raise_for_status()
        # The gateway prefixes JSON bodies with a UTF-8 BOM.
        text = resp.content.decode("utf-8-sig") if resp.content else "{}"
        return json.loads(text)

    # ------------------------------------------------------------------
    # Transactions
    # ------------------------------------------------------------------

    def _create_transaction(self, transaction_request: dict[str, Any], ref_id: str | None = None) -> GatewayResponse:
        body: dict[str, Any] = {}
        if ref_id:
            body["refId"] = ref_id
        body["transactionRequest"] = transaction_request
        tx_type = transaction_request.get("transactionType")
        if not self.configured:
            logger.error("Gateway %s skipped: credentials not configured", tx_type)
            return GatewayResponse(
                ok=False,
                message="Gateway credentials are not configured (AUTHORIZE_NET_API_LOGIN_ID, AUTHORIZE_NET_TRANSACTION_KEY).",
                error_code="MISSING_CREDENTIALS",
            )
        try:
            data = self._post("createTransactionRequest", body)
        except requests.exceptions.Timeout:
            logger.error("Gateway %s timed out", tx_type)
            return GatewayResponse(ok=False, message="Gateway request timed out", error_code="TIMEOUT")
        except requests.exceptions.RequestException as exc:
            logger.error("Gateway %s failed: %s", tx_type, exc)
            return GatewayResponse(ok=False, message=f"Gateway unreachable: {exc}", error_code="UNREACHABLE")
        except ValueError as exc:
            logger.error("Gateway %s returned unusable response: %s", tx_type, exc)
            return GatewayResponse(ok=False, message=str(exc), error_code="MALFORMED_RESPONSE")
        return self.map_transaction_response(data)

    @staticmethod
    def map_transaction_response(data: dict[str, Any]) -> GatewayResponse:
        result = data.get("transactionResponse") or {}
        raw_code = result.get("responseCode")
        try:
            response_code = ResponseCode(str(raw_code)) if raw_code is not None else None
        except ValueError:
            response_code = None

        errors = result.get("errors") or []
        error_code = errors[0].get("errorCode") if errors else None
        error_text = errors[0].get("errorText") if errors else None
        msg_code, msg_text = _first_message(result.get("messages"))
        root_code, root_text = _first_message(data.get("messages"))

        approved = response_code == ResponseCode.APPROVED
        if not approved:
            error_code = error_code or msg_code or root_code
        return GatewayResponse(
            ok=approved,
            response_code=response_code,
            transaction_id=result.get("transId") or None,
            auth_code=result.get("authCode") or None,
            message=error_text or msg_text or root_text,
            error_code=error_code,
            ref_id=data.get("refId"),
            raw=safe_response_subset(result) or {},
        )

    def charge_opaque_token(
        self,
        amount: Decimal,
        data_descriptor: str,
        data_value: str,
        invoice_number: str | None = None,
        description: str | None = None,
    ) -> GatewayResponse:
        """Charge a single-use token produced by the client-side card SDK."""
        return self._create_transaction(
            {
                "transactionType": "authCaptureTransaction",
                "amount": format_amount(amount),
                "payment": {"opaqueData": {"dataDescriptor": data_descriptor, "dataValue": data_value}},
                "order": {"invoiceNumber": invoice_number or "", "description": description or "POS Sale"},
            }
        )

    def charge_terminal(
        self,
        amount: Decimal,
        terminal_number: str,
        invoice_number: str | None = None,
        description: str | None = None,
    ) -> GatewayResponse:
        ref_id = f"TERMINAL-{uuid.uuid4().hex[:12]}"
        return self._create_transaction(
            {
                "transactionType": "authCaptureTransaction",
                "amount": format_amount(amount),
                "terminalNumber": terminal_number,
                "order": {
                    "invoiceNumber": invoice_number or "",
                    "description": description or "POS Sale - Terminal Payment",
                },
                "transactionSettings": {
                    "setting": [
                        {"settingName": "allowPartialAuth", "settingValue": "false"},
                        {"settingName": "duplicateWindow", "settingValue": "0"},
                    ]
                },
            },
            ref_id=ref_id,
        )

    def void(self, transaction_id: str) -> GatewayResponse:
        return self._create_transaction({"transactionType": "voidTransaction", "refTransId": transaction_id})

    def refund(self, transaction_id: str, amount: Decimal, card_last4: str | None = None) -> GatewayResponse:
        return self._create_transaction(
            {
                "transactionType": "refundTransaction",
                "amount": format_amount(amount),
                "payment": {"creditCard": {"cardNumber": card_last4 or "XXXX", "expirationDate": "XXXX"}},
                "refTransId": transaction_id,
            }
        )

    # ------------------------------------------------------------------
    # Reporting
    # ------------------------------------------------------------------

    @staticmethod
    def _to_transaction(item: dict[str, Any], batch: dict[str, Any] | None = None) -> GatewayTransaction | None:
        transaction_id = item.get("transId")
        if not transaction_id:
            return None
        amount_raw = item.get("settleAmount", item.get("authAmount", "0"))
        try:
            amount = Decimal(str(amount_raw))
        except InvalidOperation:
            logger.warning("Transaction %s has unparseable amount %r", transaction_id, amount_raw)
            return None
        order = item.get("order") or {}
        settled_at = None
        if batch and batch.get("settlementState") == "settledSuccessfully":
            settled_at = parse_gateway_datetime(batch.get("settlementTimeUTC"))
        return GatewayTransaction(
            transaction_id=str(transaction_id),
            transaction_status=item.get("transactionStatus"),
            amount=amount,
            invoice_number=item.get("invoiceNumber") or order.get("invoiceNumber") or None,
            auth_code=item.get("authCode"),
            submitted_at=parse_gateway_datetime(item.get("submitTimeUTC")),
            settled_at=settled_at,
            raw=item,
        )

    def get_transaction_details(self, transaction_id: str) -> GatewayTransaction | None:
        """Return the gateway's view of one transaction, or None when unavailable."""
        try:
            data = self._post("getTransactionDetailsRequest", {"transId": transaction_id})
        except (requests.exceptions.RequestException, ValueError) as exc:
            logger.warning("Transaction details lookup failed for %s: %s", transaction_id, exc)
            return None
        transaction = data.get("transaction")
        if not transaction:
            _, text = _first_message(data.get("messages"))
            logger.warning("No transaction details for %s: %s", transaction_id, text)
            return None
        return self._to_transaction(transaction, transaction.get("batch"))

    def get_settled_batch_list(self, first: datetime, last: datetime) -> list[dict[str, Any]]:
        data = self._post(
            "getSettledBatchListRequest",
            {
                "includeStatistics": "false",
                "firstSettlementDate": _format_gateway_datetime(first),
                "lastSettlementDate": _format_gateway_datetime(last),
            },
        )
        return data.get("batchList") or []

    def get_transaction_list(self, batch_id: str) -> list[dict[str, Any]]:
        data = self._post("getTransactionListRequest", {"batchId": batch_id})
        return data.get("transactions") or []

    def get_unsettled_transaction_list(self) -> list[dict[str, Any]]:
        data = self._post(
            "getUnsettledTransactionListRequest",
            {"sorting": {"orderBy": "submitTimeUTC", "orderDescending": "true"}, "paging": {"limit": "1000", "offset": "1"}},
        )
        return data.get("transactions") or []

    def get_transactions_by_batch(self, lookback_days: int = 2) -> list[GatewayTransaction]:
        """Transactions of the most recent settled batch plus still-unsettled ones."""
        now = datetime.now(timezone.utc)
        try:
            batches = self.get_settled_batch_list(now - timedelta(days=lookback_days), now)
            transactions: list[GatewayTransaction] = []
            if batches:
                latest = max(batches, key=lambda b: b.get("settlementTimeUTC") or "")
                for item in self.get_transaction_list(latest["batchId"]):
                    tx = self._to_transaction(item, latest)
                    if tx:
                        transactions.append(tx)
            for item in self.get_unsettled_transaction_list():
                tx = self._to_transaction(item)
                if tx:
                    transactions.append(tx)
            return transactions
        except (requests.exceptions.RequestException, ValueError, KeyError) as exc:
            logger.warning("Batch transaction fetch failed: %s", exc)
            return []

    def get_recent_transactions(self, minutes: int = 15) -> list[GatewayTransaction]:
        """Unsettled transactions submitted within the last ``minutes``."""
        cutoff = datetime.now(timezone.utc) - timedelta(minutes=minutes)
        try:
            items = self.get_unsettled_transaction_list()
        except (requests.exceptions.RequestException, ValueError) as exc:
            logger.warning("Recent transaction fetch failed: %s", exc)
            return []
        recent = []
        for item in items:
            tx = self._to_transaction(item)
            if tx and (tx.submitted_at is None or tx.submitted_at >= cutoff):
                recent.append(tx)
        return recent
