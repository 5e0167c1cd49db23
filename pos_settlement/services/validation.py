import re
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any

CENT = Decimal("0.01")

_HOSTNAME_LABEL = re.compile(r"^(?!-)[A-Za-z0-9-]{1,63}(?<!-)$")
_DOTTED_QUAD = re.compile(r"^(\d{1,3}\.){3}\d{1,3}$")

# Fields that may be persisted in Payment.raw_response. Anything else
# (card numbers, track data, opaque tokens, credentials) is dropped.
SAFE_RESPONSE_FIELDS = frozenset(
    {
        "transactionId",
        "transId",
        "refTransID",
        "responseCode",
        "authCode",
        "avsResultCode",
        "cvvResultCode",
        "accountType",
        "transactionStatus",
        "status",
        "message",
        "invoiceNumber",
        "submitTimeUTC",
        "settleAmount",
        "authAmount",
        "batchId",
        "terminalRef",
    }
)


def parse_amount(value: Any) -> Decimal:
    """Return a positive amount quantized to cents, or raise ValueError."""
    try:
        amount = Decimal(str(value).strip())
    except (InvalidOperation, AttributeError):
        raise ValueError(f"Invalid payment amount: {value}. Amount must be a positive number.")
    if not amount.is_finite() or amount <= 0:
        raise ValueError(f"Invalid payment amount: {value}. Amount must be a positive number.")
    return amount.quantize(CENT, rounding=ROUND_HALF_UP)


def format_amount(amount: Decimal) -> str:
    return f"{amount.quantize(CENT, rounding=ROUND_HALF_UP):.2f}"


def is_valid_ipv4(value: str | None) -> bool:
    if not value or not _DOTTED_QUAD.match(value):
        return False
    return all(0 <= int(part) <= 255 for part in value.split("."))


def is_valid_host(value: str | None) -> bool:
    if not value:
        return False
    if _DOTTED_QUAD.match(value):
        return is_valid_ipv4(value)
    if len(value) > 253:
        return False
    return all(_HOSTNAME_LABEL.match(label) for label in value.rstrip(".").split("."))


def is_valid_port(value: Any) -> bool:
    try:
        port = int(value)
    except (TypeError, ValueError):
        return False
    return 1 <= port <= 65535


def normalize_terminal_ref(value: str | None) -> str | None:
    """Strip a configured terminal reference; blank means not configured."""
    if value is None:
        return None
    stripped = value.strip()
    return stripped or None


def safe_response_subset(response: dict[str, Any] | None) -> dict[str, Any] | None:
    if not response:
        return None
    return {key: value for key, value in response.items() if key in SAFE_RESPONSE_FIELDS and value is not None}
