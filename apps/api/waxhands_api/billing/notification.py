"""Typed parsing of inbound Robokassa notifications.

Robokassa delivers the same field set either as a form POST (ResultURL) or
as query parameters (SuccessURL / GET ResultURL), and historically with
mixed-case keys. parse_notification() turns that raw mapping into a
Notification record or raises MalformedNotification; callers treat the
latter exactly like a signature failure.
"""

from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from typing import Mapping, Optional

INVOICE_ID_KEYS = ("InvId", "invId")
AMOUNT_KEYS = ("OutSum", "outSum")
SIGNATURE_KEYS = ("SignatureValue", "signatureValue")
TRANSACTION_ID_KEYS = ("Fee",)
CUSTOM_FIELD_PREFIX = "shp_"


class MalformedNotification(ValueError):
    """Raised when a notification lacks required fields or has a bad amount."""


@dataclass(frozen=True)
class Notification:
    """One inbound payment notification, validated and immutable."""

    invoice_id: str
    amount: Decimal
    raw_amount: str  # exactly as received; signatures are computed over it
    signature: str
    transaction_id: Optional[str] = None
    custom_fields: dict[str, str] = field(default_factory=dict)


def first_value(fields: Mapping[str, str], keys: tuple[str, ...]) -> Optional[str]:
    for key in keys:
        value = fields.get(key)
        if value is not None and str(value).strip() != "":
            return str(value).strip()
    return None


def parse_amount(raw: str) -> Decimal:
    """Parse a decimal amount string.

    Raises:
        MalformedNotification: If the value is not a finite, non-negative number
    """
    try:
        amount = Decimal(raw)
    except (InvalidOperation, TypeError, ValueError) as e:
        raise MalformedNotification(f"amount is not numeric: {raw!r}") from e
    if not amount.is_finite() or amount < 0:
        raise MalformedNotification(f"amount is out of range: {raw!r}")
    return amount


def parse_notification(fields: Mapping[str, str]) -> Notification:
    """Build a Notification from a raw key/value mapping.

    Args:
        fields: Merged form/query fields of the callback

    Returns:
        Notification

    Raises:
        MalformedNotification: If invoice id, amount or signature is missing,
            or the amount is not numeric
    """
    invoice_id = first_value(fields, INVOICE_ID_KEYS)
    if invoice_id is None:
        raise MalformedNotification("InvId is missing")

    raw_amount = first_value(fields, AMOUNT_KEYS)
    if raw_amount is None:
        raise MalformedNotification("OutSum is missing")

    signature = first_value(fields, SIGNATURE_KEYS)
    if signature is None:
        raise MalformedNotification("SignatureValue is missing")

    custom_fields = {
        key: str(value)
        for key, value in fields.items()
        if key.lower().startswith(CUSTOM_FIELD_PREFIX)
    }

    return Notification(
        invoice_id=invoice_id,
        amount=parse_amount(raw_amount),
        raw_amount=raw_amount,
        signature=signature,
        transaction_id=first_value(fields, TRANSACTION_ID_KEYS),
        custom_fields=custom_fields,
    )
