import logging
from abc import ABC, abstractmethod
from decimal import Decimal
from typing import Any, Callable

from pos_settlement.services.errors import (
    ErrorCode,
    TerminalResult,
    gateway_error,
    invalid_input,
)
from pos_settlement.services.validation import normalize_terminal_ref, parse_amount

logger = logging.getLogger(__name__)


class ChannelFailure(Exception):
    """Raised inside a channel to short-circuit with a ready-made result.

    Never escapes the public channel methods; ``TerminalChannel._guard``
    turns it back into the carried ``TerminalResult``.
    """

    def __init__(self, result: TerminalResult):
        self.result = result
        super().__init__(result.error or result.message or result.status.value)


class TerminalChannel(ABC):
    """One payment rail. Every public method returns a ``TerminalResult``."""

    name: str = "terminal"
    provider: str = ""
    not_configured_hint: str = "Configure the terminal reference in Settings."

    def initiate_payment(
        self,
        amount: Any,
        terminal_ref: str | None,
        invoice_number: str | None = None,
        description: str | None = None,
    ) -> TerminalResult:
        ref = normalize_terminal_ref(terminal_ref)
        if ref is None:
            logger.warning("%s payment rejected: no terminal reference configured", self.name)
            return invalid_input(
                f"Terminal is not configured. {self.not_configured_hint}",
                ErrorCode.TERMINAL_NOT_CONFIGURED,
            )
        try:
            parsed_amount = parse_amount(amount)
        except ValueError as exc:
            return invalid_input(str(exc), ErrorCode.INVALID_AMOUNT, terminal_ref=ref)
        return self._guard(
            "initiate_payment",
            ref,
            lambda: self._initiate(parsed_amount, ref, invoice_number, description),
        )

    def check_status(self, transaction_id: str, terminal_ref: str | None = None) -> TerminalResult:
        if not transaction_id:
            return invalid_input("Transaction ID is required", ErrorCode.MISSING_TRANSACTION_ID)
        ref = normalize_terminal_ref(terminal_ref)
        return self._guard("check_status", ref, lambda: self._check_status(transaction_id, ref))

    def void_transaction(self, transaction_id: str, terminal_ref: str | None = None) -> TerminalResult:
        if not transaction_id:
            return invalid_input("Transaction ID is required to void a transaction", ErrorCode.MISSING_TRANSACTION_ID)
        ref = normalize_terminal_ref(terminal_ref)
        return self._guard("void_transaction", ref, lambda: self._void(transaction_id, ref))

    def _guard(self, operation: str, terminal_ref: str | None, call: Callable[[], TerminalResult]) -> TerminalResult:
        try:
            return call()
        except ChannelFailure as failure:
            result = failure.result
            logger.warning(
                "%s %s failed for %s: %s (%s)",
                self.name,
                operation,
                terminal_ref or "<default>",
                result.error,
                result.error_code,
            )
            return result
        except Exception as exc:
            logger.exception("%s %s unexpected error for %s", self.name, operation, terminal_ref or "<default>")
            return gateway_error(f"{self.name} terminal error: {exc}")

    @abstractmethod
    def _initiate(
        self,
        amount: Decimal,
        terminal_ref: str,
        invoice_number: str | None,
        description: str | None,
    ) -> TerminalResult:
        raise NotImplementedError

    @abstractmethod
    def _check_status(self, transaction_id: str, terminal_ref: str | None) -> TerminalResult:
        raise NotImplementedError

    @abstractmethod
    def _void(self, transaction_id: str, terminal_ref: str | None) -> TerminalResult:
        raise NotImplementedError
