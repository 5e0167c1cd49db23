"""LAN terminals driven over a raw TCP socket (PAX / EBizCharge firmware).

Requests are one JSON object per line. Responses are JSON when the firmware
is recent, and ``Key=Value`` lines on older firmware. Each operation opens
its own connection and closes it before returning.
"""

import json
import logging
import socket
import time
from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from typing import Any, Callable

from pos_settlement.config import settings
from pos_settlement.models.payment import PROVIDER_SOCKET_TERMINAL
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
from pos_settlement.services.timeutils import utcnow
from pos_settlement.services.validation import (
    format_amount,
    is_valid_host,
    is_valid_port,
    normalize_terminal_ref,
    safe_response_subset,
)

logger = logging.getLogger(__name__)

SALE_TIMEOUT_FLOOR_SECONDS = 120.0
SUCCESS_CODES = frozenset({"000000", "A0000", "00", "APPROVED"})
PENDING_STATUSES = frozenset({"PENDING", "PROCESSING", "IN_PROGRESS"})
RECV_CHUNK = 4096
# Legacy Key=Value replies have no terminator; the frame ends when the terminal goes quiet.
LEGACY_IDLE_SECONDS = 0.3


class MessageType(str, Enum):
    DO_SALE = "DO_SALE"
    DO_VOID = "DO_VOID"
    DO_REFUND = "DO_REFUND"
    GET_LAST_TRANSACTION = "GET_LAST_TRANSACTION"
    GET_BATCH_REPORT = "GET_BATCH_REPORT"
    GET_TERMINAL_STATUS = "GET_TERMINAL_STATUS"


@dataclass(frozen=True)
class VendorProfile:
    name: str
    default_port: int
    strict_legacy_keys: bool


PAX = VendorProfile(name="pax", default_port=10009, strict_legacy_keys=True)
EBIZCHARGE = VendorProfile(name="ebizcharge", default_port=10009, strict_legacy_keys=False)

_LEGACY_KEYS = {
    "ResponseCode": "responseCode",
    "TransactionID": "transactionId",
    "AuthCode": "authCode",
    "Message": "message",
}
_LENIENT_LEGACY_KEYS = {key.lower(): name for key, name in {**_LEGACY_KEYS, "Status": "status"}.items()}


@dataclass(frozen=True)
class TerminalAddress:
    host: str
    port: int

    def __str__(self) -> str:
        return f"{self.host}:{self.port}"


@dataclass(frozen=True)
class StructuredResponse:
    fields: dict[str, Any]


@dataclass(frozen=True)
class LegacyResponse:
    fields: dict[str, Any]
    raw_text: str = ""


ParsedResponse = StructuredResponse | LegacyResponse


@dataclass
class Connection:
    sock: socket.socket
    address: TerminalAddress
    closed: bool = field(default=False)

    def close(self) -> None:
        if not self.closed:
            self.closed = True
            self.sock.close()


def parse_address(terminal_ref: str, default_port: int) -> TerminalAddress:
    """Parse ``host`` or ``host:port``; raise ChannelFailure on anything else."""
    host, sep, port_text = terminal_ref.strip().rpartition(":")
    if not sep:
        host, port_text = terminal_ref.strip(), str(default_port)
    if not is_valid_host(host) or not port_text.isdigit() or not is_valid_port(port_text):
        raise ChannelFailure(
            invalid_input(
                f"Invalid terminal address: {terminal_ref}. "
                "Provide an IPv4 address or hostname, optionally followed by :port (1-65535).",
                ErrorCode.INVALID_ADDRESS,
                terminal_ref=terminal_ref,
            )
        )
    return TerminalAddress(host=host, port=int(port_text))


def build_message(message_type: MessageType, payload: dict[str, Any] | None = None) -> bytes:
    message = {"type": message_type.value, "timestamp": utcnow().isoformat(), **(payload or {})}
    return (json.dumps(message) + "\n").encode("utf-8")


def is_complete_frame(data: bytes) -> bool:
    """True once a JSON reply is newline-terminated or closes its brackets."""
    text = data.decode("utf-8", errors="replace")
    stripped = text.strip()
    if not stripped.startswith(("{", "[")):
        return False
    return "\n" in text or stripped.endswith("}") or stripped.endswith("]")


def has_legacy_lines(data: bytes) -> bool:
    """True when a non-JSON reply holds at least one finished line."""
    text = data.decode("utf-8", errors="replace")
    return "\n" in text and not text.lstrip().startswith(("{", "["))


def parse_response(text: str, strict_keys: bool = True) -> ParsedResponse:
    """Parse a terminal reply as JSON, falling back to ``Key=Value`` lines."""
    try:
        data = json.loads(text.strip())
    except ValueError:
        data = None
    if isinstance(data, dict):
        return StructuredResponse(fields=data)
    if isinstance(data, list) and data and isinstance(data[0], dict):
        return StructuredResponse(fields=data[0])

    fields: dict[str, Any] = {}
    for line in text.splitlines():
        key, sep, value = line.partition("=")
        if not sep:
            continue
        key = key.strip()
        name = _LEGACY_KEYS.get(key) if strict_keys else _LENIENT_LEGACY_KEYS.get(key.lower())
        if name:
            fields[name] = value.strip()
    return LegacyResponse(fields=fields, raw_text=text)


def _first(fields: dict[str, Any], *names: str) -> Any:
    for name in names:
        value = fields.get(name)
        if value not in (None, ""):
            return value
    return None


def is_approved(fields: dict[str, Any]) -> bool:
    if fields.get("success") is True:
        return True
    code = _first(fields, "responseCode", "code")
    if code is not None and str(code) in SUCCESS_CODES:
        return True
    status = fields.get("status")
    return isinstance(status, str) and status.upper() == "APPROVED"


class SocketTerminalChannel(TerminalChannel):
    name = "socket"
    provider = PROVIDER_SOCKET_TERMINAL
    not_configured_hint = "Set the terminal IP address (TERMINAL_HOST) in Settings."

    def __init__(
        self,
        profile: VendorProfile = PAX,
        connect_timeout: float | None = None,
        sale_timeout: float | None = None,
        status_timeout: float | None = None,
        sale_timeout_floor: float = SALE_TIMEOUT_FLOOR_SECONDS,
        socket_factory: Callable[..., socket.socket] = socket.create_connection,
        clock: Callable[[], float] = time.monotonic,
        legacy_idle_seconds: float = LEGACY_IDLE_SECONDS,
    ):
        self.profile = profile
        self.name = profile.name
        self.connect_timeout = connect_timeout if connect_timeout is not None else settings.TERMINAL_CONNECT_TIMEOUT
        self.sale_timeout = sale_timeout if sale_timeout is not None else settings.TERMINAL_SALE_TIMEOUT
        self.status_timeout = status_timeout if status_timeout is not None else settings.TERMINAL_STATUS_TIMEOUT
        self.sale_timeout_floor = sale_timeout_floor
        self._socket_factory = socket_factory
        self._clock = clock
        self.legacy_idle_seconds = legacy_idle_seconds

    def response_timeout(self, message_type: MessageType) -> float:
        if message_type == MessageType.DO_SALE:
            return max(self.sale_timeout, self.sale_timeout_floor)
        return self.status_timeout

    # ------------------------------------------------------------------
    # Transport
    # ------------------------------------------------------------------

    def connect(self, address: str | TerminalAddress) -> Connection:
        if not isinstance(address, TerminalAddress):
            address = parse_address(address, self.profile.default_port)
        target = str(address)
        try:
            sock = self._socket_factory((address.host, address.port), timeout=self.connect_timeout)
        except ConnectionRefusedError:
            raise ChannelFailure(
                transport_failure(
                    f"Cannot connect to terminal at {target}. "
                    "Please verify the terminal is powered on and the IP address is correct.",
                    ErrorCode.CONNECTION_REFUSED,
                    terminal_ref=target,
                )
            )
        except TimeoutError:
            raise ChannelFailure(
                transport_failure(
                    f"Connection to terminal at {target} timed out after {self.connect_timeout:g}s. "
                    "Please check network connectivity.",
                    ErrorCode.TIMEOUT,
                    terminal_ref=target,
                )
            )
        except OSError as exc:
            raise ChannelFailure(
                transport_failure(
                    f"Terminal at {target} is unreachable ({exc}). "
                    "Check that the terminal and this server are on the same network.",
                    ErrorCode.UNREACHABLE,
                    terminal_ref=target,
                )
            )
        logger.info("Connected to %s terminal at %s", self.profile.name, target)
        return Connection(sock=sock, address=address)

    def send(
        self,
        connection: Connection,
        message_type: MessageType,
        payload: dict[str, Any] | None = None,
    ) -> ParsedResponse:
        target = str(connection.address)
        try:
            connection.sock.sendall(build_message(message_type, payload))
        except OSError as exc:
            raise ChannelFailure(
                transport_failure(
                    f"Failed to send {message_type.value} to terminal at {target}: {exc}",
                    ErrorCode.CONNECTION_CLOSED,
                    terminal_ref=target,
                )
            )
        data = self._read_frame(connection, self.response_timeout(message_type))
        return parse_response(data.decode("utf-8", errors="replace"), strict_keys=self.profile.strict_legacy_keys)

    def _read_frame(self, connection: Connection, timeout: float) -> bytes:
        target = str(connection.address)
        timed_out = ChannelFailure(
            transport_failure(
                f"Terminal at {target} did not respond within {timeout:g}s. "
                "The terminal may be busy processing another transaction.",
                ErrorCode.TIMEOUT,
                terminal_ref=target,
            )
        )
        deadline = self._clock() + timeout
        buffer = bytearray()
        while True:
            legacy = has_legacy_lines(buffer)
            remaining = deadline - self._clock()
            if remaining <= 0:
                if legacy:
                    return bytes(buffer)
                raise timed_out
            connection.sock.settimeout(min(remaining, self.legacy_idle_seconds) if legacy else remaining)
            try:
                chunk = connection.sock.recv(RECV_CHUNK)
            except TimeoutError:
                if legacy:
                    return bytes(buffer)
                raise timed_out
            except OSError as exc:
                raise ChannelFailure(
                    transport_failure(
                        f"Socket error while communicating with terminal at {target}: {exc}",
                        ErrorCode.CONNECTION_CLOSED,
                        terminal_ref=target,
                    )
                )
            if not chunk:
                if buffer:
                    return bytes(buffer)
                raise ChannelFailure(
                    transport_failure(
                        f"Socket closed unexpectedly before receiving a response from terminal at {target}",
                        ErrorCode.CONNECTION_CLOSED,
                        terminal_ref=target,
                    )
                )
            buffer.extend(chunk)
            if is_complete_frame(buffer):
                return bytes(buffer)

    def _exchange(self, terminal_ref: str, message_type: MessageType, payload: dict[str, Any] | None = None) -> ParsedResponse:
        connection = self.connect(terminal_ref)
        try:
            return self.send(connection, message_type, payload)
        finally:
            connection.close()

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    def _require_ref(self, terminal_ref: str | None) -> str:
        ref = normalize_terminal_ref(terminal_ref)
        if ref is None:
            raise ChannelFailure(
                invalid_input(f"Terminal is not configured. {self.not_configured_hint}", ErrorCode.TERMINAL_NOT_CONFIGURED)
            )
        return ref

    def process_payment(
        self,
        amount: Any,
        terminal_ref: str | None,
        invoice_number: str | None = None,
        description: str | None = None,
    ) -> TerminalResult:
        return self.initiate_payment(amount, terminal_ref, invoice_number, description)

    def _initiate(
        self,
        amount: Decimal,
        terminal_ref: str,
        invoice_number: str | None,
        description: str | None,
    ) -> TerminalResult:
        # Card gateway credentials live on the terminal itself.
        parsed = self._exchange(
            terminal_ref,
            MessageType.DO_SALE,
            {
                "amount": format_amount(amount),
                "invoiceNumber": invoice_number or f"POS-{int(time.time() * 1000)}",
                "description": description or "POS Sale",
                "transactionType": "SALE",
                "gateway": "AUTHORIZE_NET",
                "allowDuplicates": False,
                "timeout": 120,
                "cardEntryMethods": ["SWIPE", "INSERT", "TAP"],
                "requireSignature": False,
                "printReceipt": True,
            },
        )
        fields = self._fields_or_fail(parsed)
        if is_approved(fields):
            transaction_id = _first(fields, "transactionId", "transId")
            logger.info("Terminal %s approved sale %s for %s", terminal_ref, transaction_id, amount)
            return TerminalResult(
                status=SessionStatus.APPROVED,
                transaction_id=str(transaction_id) if transaction_id is not None else None,
                auth_code=_first(fields, "authCode", "auth_code"),
                amount=format_amount(amount),
                message=fields.get("message") or "Transaction approved",
                terminal_ref=terminal_ref,
                details=safe_response_subset(fields) or {},
            )
        return self._declined(fields, "Transaction declined")

    def _check_status(self, transaction_id: str, terminal_ref: str | None) -> TerminalResult:
        ref = self._require_ref(terminal_ref)
        fields = self._fields_or_fail(
            self._exchange(ref, MessageType.GET_LAST_TRANSACTION, {"transactionId": transaction_id})
        )
        if is_approved(fields):
            return TerminalResult(
                status=SessionStatus.APPROVED,
                transaction_id=str(_first(fields, "transactionId", "transId") or transaction_id),
                auth_code=_first(fields, "authCode", "auth_code"),
                amount=fields.get("amount"),
                message=fields.get("message") or "Transaction approved",
                terminal_ref=ref,
            )
        status = str(fields.get("status") or "").upper()
        if status in PENDING_STATUSES:
            return TerminalResult(
                status=SessionStatus.PENDING,
                transaction_id=transaction_id,
                message=fields.get("message") or "Waiting for customer",
                gateway_status=status,
                terminal_ref=ref,
            )
        return self._declined(fields, "Transaction declined", transaction_id)

    def _void(self, transaction_id: str, terminal_ref: str | None) -> TerminalResult:
        ref = self._require_ref(terminal_ref)
        fields = self._fields_or_fail(
            self._exchange(ref, MessageType.DO_VOID, {"transactionId": transaction_id, "transactionType": "VOID"})
        )
        if is_approved(fields):
            return TerminalResult(
                status=SessionStatus.APPROVED,
                transaction_id=transaction_id,
                message=fields.get("message") or "Transaction voided successfully",
                terminal_ref=ref,
            )
        return self._declined(fields, "Void failed", transaction_id)

    def get_status(self, terminal_ref: str | None) -> TerminalResult:
        def query() -> TerminalResult:
            ref = self._require_ref(terminal_ref)
            fields = self._exchange(ref, MessageType.GET_TERMINAL_STATUS).fields
            return TerminalResult(
                status=SessionStatus.APPROVED,
                message=f"Terminal status: {fields.get('status') or 'connected'}",
                terminal_ref=ref,
                details={key: fields.get(key) for key in ("status", "model", "firmware", "battery", "signal")},
            )

        return self._guard("get_status", terminal_ref, query)

    def test_connection(self, terminal_ref: str | None) -> TerminalResult:
        """Connect and ask for status; a failed status query still counts as reachable."""

        def connect_and_query() -> TerminalResult:
            ref = self._require_ref(terminal_ref)
            connection = self.connect(ref)
            try:
                try:
                    fields = self.send(connection, MessageType.GET_TERMINAL_STATUS).fields
                except ChannelFailure as failure:
                    logger.warning("Terminal %s connected but status query failed: %s", ref, failure.result.error)
                    return TerminalResult(
                        status=SessionStatus.APPROVED,
                        message="Connection successful, but the terminal did not answer the status query",
                        terminal_ref=str(connection.address),
                        details={"warning": failure.result.error},
                    )
                return TerminalResult(
                    status=SessionStatus.APPROVED,
                    message="Connection successful",
                    terminal_ref=str(connection.address),
                    details={key: fields.get(key) for key in ("status", "model", "firmware")},
                )
            finally:
                connection.close()

        return self._guard("test_connection", terminal_ref, connect_and_query)

    @staticmethod
    def _fields_or_fail(parsed: ParsedResponse) -> dict[str, Any]:
        if isinstance(parsed, LegacyResponse) and not parsed.fields:
            raise ChannelFailure(
                gateway_error("Terminal returned an unrecognised response", ErrorCode.MALFORMED_RESPONSE)
            )
        return parsed.fields

    @staticmethod
    def _declined(fields: dict[str, Any], default_message: str, transaction_id: str | None = None) -> TerminalResult:
        code = _first(fields, "responseCode", "code")
        tx_id = _first(fields, "transactionId", "transId") or transaction_id
        return gateway_declined(
            _first(fields, "message", "error") or default_message,
            code=str(code) if code is not None else None,
            transaction_id=str(tx_id) if tx_id is not None else None,
            gateway_status=fields.get("status"),
        )
