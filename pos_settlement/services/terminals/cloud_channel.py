"""Valor cloud terminals: the sale is pushed through the vendor API and the
terminal completes it asynchronously, so most sales start out pending."""

import logging
import time
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Callable

import requests

from pos_settlement.config import settings
from pos_settlement.models.payment import PROVIDER_VALOR
from pos_settlement.services.errors import (
    ErrorCode,
    SessionStatus,
    TerminalResult,
    gateway_declined,
    gateway_error,
    invalid_input,
    transport_failure,
)
from pos_settlement.services.terminals.base import ChannelFailure, TerminalChannel
from pos_settlement.services.validation import format_amount

logger = logging.getLogger(__name__)

DEFAULT_TOKEN_TTL_SECONDS = 3600
TOKEN_EXPIRY_MARGIN_SECONDS = 60

APPROVED_STATUSES = {"APPROVED", "SUCCESS", "SETTLED"}
PENDING_STATUSES = {"PENDING", "PROCESSING"}
DECLINED_STATUSES = {"DECLINED", "FAILED", "CANCELLED"}
VOIDED_STATUSES = {"SUCCESS", "VOIDED"}


@dataclass(frozen=True)
class CloudToken:
    value: str
    expires_at: float

    def valid(self, now: float) -> bool:
        return now < self.expires_at


class CloudTerminalChannel(TerminalChannel):
    name = "cloud"
    provider = PROVIDER_VALOR
    not_configured_hint = "Set the terminal serial number (VALOR_TERMINAL_SERIAL) in Settings."

    def __init__(
        self,
        base_url: str | None = None,
        merchant_id: str | None = None,
        api_key: str | None = None,
        secret_key: str | None = None,
        timeout: float | None = None,
        session: requests.Session | None = None,
        clock: Callable[[], float] = time.time,
    ):
        self.base_url = (base_url or settings.VALOR_API_BASE_URL).rstrip("/")
        self.merchant_id = merchant_id if merchant_id is not None else settings.VALOR_API_MERCHANT_ID
        self.api_key = api_key if api_key is not None else settings.VALOR_API_API_KEY
        self.secret_key = secret_key if secret_key is not None else settings.VALOR_API_SECRET_KEY
        self.timeout = timeout if timeout is not None else settings.CLOUD_API_TIMEOUT
        self.session = session or requests.Session()
        self._clock = clock
        self._token: CloudToken | None = None

    def missing_credentials(self) -> list[str]:
        required = {
            "VALOR_API_MERCHANT_ID": self.merchant_id,
            "VALOR_API_API_KEY": self.api_key,
            "VALOR_API_SECRET_KEY": self.secret_key,
        }
        return [name for name, value in required.items() if not value]

    def authenticate(self) -> CloudToken:
        """Return a cached bearer token, fetching a new one when it is about to expire."""
        now = self._clock()
        if self._token and self._token.valid(now):
            return self._token

        missing = self.missing_credentials()
        if missing:
            raise ChannelFailure(
                invalid_input(
                    f"Cloud terminal API credentials are not configured: {', '.join(missing)}",
                    ErrorCode.MISSING_CREDENTIALS,
                )
            )

        data = self._request(
            "POST",
            "/auth/token",
            json={"merchantId": self.merchant_id, "apiKey": self.api_key, "secretKey": self.secret_key},
            authenticated=False,
        )
        token = data.get("token")
        if not token:
            raise ChannelFailure(
                gateway_error("Invalid authentication response from cloud terminal API", ErrorCode.AUTH_FAILED)
            )
        expires_in = data.get("expiresIn") or DEFAULT_TOKEN_TTL_SECONDS
        self._token = CloudToken(value=token, expires_at=now + float(expires_in) - TOKEN_EXPIRY_MARGIN_SECONDS)
        logger.info("Cloud terminal API authenticated; token valid for %ss", expires_in)
        return self._token

    def _request(
        self,
        method: str,
        path: str,
        json: dict[str, Any] | None = None,
        authenticated: bool = True,
    ) -> Any:
        headers = {"Content-Type": "application/json"}
        if authenticated:
            headers["Authorization"] = f"Bearer {self.authenticate().value}"
        url = f"{self.base_url}{path}"
        try:
            resp = self.session.request(method, url, json=json, headers=headers, timeout=self.timeout)
        except requests.exceptions.Timeout:
            raise ChannelFailure(
                transport_failure(
                    f"Cloud terminal API did not respond within {self.timeout:g}s ({url})",
                    ErrorCode.TIMEOUT,
                )
            )
        except requests.exceptions.ConnectionError as exc:
            raise ChannelFailure(
                transport_failure(f"Cloud terminal API is unreachable ({url}): {exc}", ErrorCode.UNREACHABLE)
            )

        if resp.status_code == 401:
            self._token = None
            raise ChannelFailure(gateway_error("Cloud terminal API rejected the credentials", ErrorCode.AUTH_FAILED))
        try:
            data = resp.json() if resp.content else {}
        except ValueError:
            raise ChannelFailure(
                gateway_error(
                    f"Cloud terminal API returned a non-JSON response (HTTP {resp.status_code})",
                    ErrorCode.MALFORMED_RESPONSE,
                )
            )
        if resp.status_code >= 400:
            detail = data.get("message") or data.get("error") if isinstance(data, dict) else None
            raise ChannelFailure(
                gateway_error(
                    detail or f"Cloud terminal API error (HTTP {resp.status_code})",
                    str(data.get("errorCode") or data.get("code") or resp.status_code) if isinstance(data, dict) else None,
                )
            )
        return data

    def _initiate(
        self,
        amount: Decimal,
        terminal_ref: str,
        invoice_number: str | None,
        description: str | None,
    ) -> TerminalResult:
        data = self._request(
            "POST",
            f"/terminals/{terminal_ref}/transactions/sale",
            json={
                "amount": format_amount(amount),
                "invoiceNumber": invoice_number or f"POS-{int(time.time() * 1000)}",
                "description": description or "POS Sale - Terminal Payment",
                "transactionType": "SALE",
                "timeout": 180,
            },
        )
        status = str(data.get("status") or "").upper()
        transaction_id = data.get("transactionId") or data.get("id")
        if status in PENDING_STATUSES or status in APPROVED_STATUSES:
            pending = status in PENDING_STATUSES
            logger.info("Cloud sale %s on terminal %s: %s", transaction_id, terminal_ref, status)
            return TerminalResult(
                status=SessionStatus.PENDING if pending else SessionStatus.APPROVED,
                transaction_id=str(transaction_id) if transaction_id is not None else None,
                auth_code=data.get("authCode"),
                amount=data.get("amount") or format_amount(amount),
                message=(
                    "Payment request sent to terminal. Please complete payment on device."
                    if pending
                    else "Payment processed successfully"
                ),
                gateway_status=status,
                terminal_ref=terminal_ref,
            )
        return self._failure(data, status, "Transaction declined" if status in DECLINED_STATUSES else "Transaction failed")

    def _check_status(self, transaction_id: str, terminal_ref: str | None) -> TerminalResult:
        path = f"/terminals/{terminal_ref}/transactions/{transaction_id}" if terminal_ref else f"/transactions/{transaction_id}"
        data = self._request("GET", path)
        status = str(data.get("status") or "").upper()
        if status in APPROVED_STATUSES:
            return TerminalResult(
                status=SessionStatus.APPROVED,
                transaction_id=str(data.get("transactionId") or data.get("id") or transaction_id),
                auth_code=data.get("authCode"),
                amount=data.get("amount"),
                message=data.get("message") or "Payment approved",
                gateway_status=status,
                terminal_ref=terminal_ref,
            )
        if status in PENDING_STATUSES:
            return TerminalResult(
                status=SessionStatus.PENDING,
                transaction_id=transaction_id,
                message="Waiting for customer to complete payment on terminal",
                gateway_status=status,
                terminal_ref=terminal_ref,
            )
        if status in DECLINED_STATUSES:
            return self._failure(data, status, "Transaction declined", transaction_id)
        return gateway_error(f"Unknown cloud transaction status: {status or 'missing'}", transaction_id=transaction_id)

    def _void(self, transaction_id: str, terminal_ref: str | None) -> TerminalResult:
        path = (
            f"/terminals/{terminal_ref}/transactions/{transaction_id}/void"
            if terminal_ref
            else f"/transactions/{transaction_id}/void"
        )
        data = self._request("POST", path, json={})
        status = str(data.get("status") or "").upper()
        if status in VOIDED_STATUSES:
            return TerminalResult(
                status=SessionStatus.APPROVED,
                transaction_id=str(data.get("transactionId") or transaction_id),
                message=data.get("message") or "Transaction voided successfully",
                gateway_status=status,
                terminal_ref=terminal_ref,
            )
        return self._failure(data, status, "Failed to void transaction", transaction_id)

    def list_devices(self) -> list[dict[str, Any]]:
        """Terminals registered to the merchant; empty when the API cannot be reached."""
        try:
            data = self._request("GET", "/terminals")
        except ChannelFailure as failure:
            logger.warning("Cloud device listing failed: %s", failure.result.error)
            return []
        if isinstance(data, dict):
            data = data.get("devices") or data.get("terminals") or []
        return data if isinstance(data, list) else []

    @staticmethod
    def _failure(data: dict[str, Any], status: str, default_message: str, transaction_id: str | None = None) -> TerminalResult:
        message = data.get("message") or data.get("error") or default_message
        code = data.get("errorCode") or data.get("code")
        code = str(code) if code is not None else None
        if status in DECLINED_STATUSES:
            return gateway_declined(message, code=code, transaction_id=transaction_id, gateway_status=status)
        return gateway_error(message, code=code, transaction_id=transaction_id)
