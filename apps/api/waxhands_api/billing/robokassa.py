"""Robokassa gateway client.

Covers the three places the merchant integration touches Robokassa:
- signing payment links (Password1)
- verifying ResultURL / SuccessURL callbacks (Password2 / Password1)
- querying the XML OpStateExt service for the operation key (Password2)

Robokassa API Reference:
- Signatures: https://docs.robokassa.ru/pay-interface/#notification
- OpStateExt: https://docs.robokassa.ru/xml-interfaces/#opstate
"""

import hashlib
import hmac
import logging
import xml.etree.ElementTree as ET
from dataclasses import dataclass
from decimal import Decimal
from typing import Mapping, Optional
from urllib.parse import urlencode

import httpx

from waxhands_api.billing.notification import Notification
from waxhands_api.config.env import RobokassaSettings

logger = logging.getLogger(__name__)

PROVIDER_NAME = "robokassa"


class RobokassaConfigError(RuntimeError):
    """Raised when a merchant password needed for signing is not configured."""


class RobokassaAPIError(RuntimeError):
    """Raised when OpStateExt answers with a non-zero result code or bad XML."""


@dataclass(frozen=True)
class OperationState:
    """Parsed OpStateExt response."""

    result_code: str
    state_code: Optional[str]
    op_key: Optional[str]
    out_sum: Optional[str]


def format_amount(amount: Decimal) -> str:
    """Render an amount the way Robokassa expects it in OutSum (two decimals)."""
    return f"{amount.quantize(Decimal('0.01'))}"


def _local_name(tag: str) -> str:
    return tag.rsplit("}", 1)[-1]


def _find_text(root: ET.Element, *path: str) -> Optional[str]:
    """Walk child elements by local name, ignoring XML namespaces."""
    node: Optional[ET.Element] = root
    for name in path:
        if node is None:
            return None
        node = next((child for child in node if _local_name(child.tag) == name), None)
    if node is None or node.text is None:
        return None
    return node.text.strip()


def parse_operation_state(body: str) -> OperationState:
    """Parse an OpStateExt XML document.

    Raises:
        RobokassaAPIError: If the XML is malformed or Result/Code is not "0"
    """
    try:
        root = ET.fromstring(body)
    except ET.ParseError as e:
        raise RobokassaAPIError(f"OpStateExt returned malformed XML: {e}") from e

    result_code = _find_text(root, "Result", "Code")
    if result_code != "0":
        description = _find_text(root, "Result", "Description")
        raise RobokassaAPIError(
            f"OpStateExt result code {result_code!r}: {description or 'no description'}"
        )

    return OperationState(
        result_code=result_code,
        state_code=_find_text(root, "State", "Code"),
        op_key=_find_text(root, "Info", "OpKey"),
        out_sum=_find_text(root, "Info", "OutSum"),
    )


class RobokassaClient:
    """Robokassa merchant client.

    Stateless apart from its settings; one instance is built by the
    application factory and shared across requests.
    """

    def __init__(
        self,
        settings: RobokassaSettings,
        *,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.settings = settings
        self._transport = transport

    # ========================================================================
    # Signatures
    # ========================================================================

    def _digest(self, payload: str) -> str:
        return hashlib.new(self.settings.algorithm, payload.encode("utf-8")).hexdigest().upper()

    @staticmethod
    def _custom_suffix(custom_fields: Mapping[str, str]) -> list[str]:
        # Shp_ parameters take part in every signature, sorted by name
        return [f"{key}={custom_fields[key]}" for key in sorted(custom_fields)]

    def _require(self, password: str, name: str) -> str:
        if not password:
            raise RobokassaConfigError(
                f"{name} is not configured. Set it in environment configuration."
            )
        return password

    def result_signature(
        self, out_sum: str, inv_id: str, custom_fields: Mapping[str, str] | None = None
    ) -> str:
        """Signature Robokassa puts on ResultURL callbacks: OutSum:InvId:Password2[:Shp_*]."""
        password2 = self._require(self.settings.password2, "ROBOKASSA_PASSWORD_2")
        parts = [out_sum, inv_id, password2, *self._custom_suffix(custom_fields or {})]
        return self._digest(":".join(parts))

    def success_signature(
        self, out_sum: str, inv_id: str, custom_fields: Mapping[str, str] | None = None
    ) -> str:
        """Signature on SuccessURL redirects: OutSum:InvId:Password1[:Shp_*]."""
        password1 = self._require(self.settings.password1, "ROBOKASSA_PASSWORD_1")
        parts = [out_sum, inv_id, password1, *self._custom_suffix(custom_fields or {})]
        return self._digest(":".join(parts))

    def payment_signature(self, out_sum: str, inv_id: str) -> str:
        """Signature of a payment link: MerchantLogin:OutSum:InvId:Password1."""
        password1 = self._require(self.settings.password1, "ROBOKASSA_PASSWORD_1")
        return self._digest(f"{self.settings.merchant_login}:{out_sum}:{inv_id}:{password1}")

    def opstate_signature(self, inv_id: str) -> str:
        """Signature of an OpStateExt request: MerchantLogin:InvoiceID:Password2."""
        password2 = self._require(self.settings.password2, "ROBOKASSA_PASSWORD_2")
        return self._digest(f"{self.settings.merchant_login}:{inv_id}:{password2}")

    @staticmethod
    def _matches(expected: str, claimed: str) -> bool:
        # Bytes, so a non-ASCII claimed signature is a mismatch rather than a TypeError
        return hmac.compare_digest(expected.encode("ascii"), claimed.upper().encode("utf-8"))

    def verify_result(self, notification: Notification) -> bool:
        """Check a ResultURL notification signature.

        Returns:
            True if the claimed signature matches, False otherwise

        Raises:
            RobokassaConfigError: If Password2 is not configured
        """
        expected = self.result_signature(
            notification.raw_amount, notification.invoice_id, notification.custom_fields
        )
        return self._matches(expected, notification.signature)

    def verify_success(self, notification: Notification) -> bool:
        """Check a SuccessURL redirect signature (advisory only)."""
        expected = self.success_signature(
            notification.raw_amount, notification.invoice_id, notification.custom_fields
        )
        return self._matches(expected, notification.signature)

    # ========================================================================
    # Payment links
    # ========================================================================

    def build_payment_url(self, *, inv_id: str, amount: Decimal, description: str) -> str:
        """Build the payment page URL for an invoice.

        Args:
            inv_id: Robokassa InvId assigned to the invoice
            amount: Invoice amount
            description: Text shown to the payer on the payment page

        Returns:
            Fully signed payment URL (GET)
        """
        out_sum = format_amount(amount)
        params = {
            "MerchantLogin": self.settings.merchant_login,
            "OutSum": out_sum,
            "InvId": inv_id,
            "Description": description,
            "SignatureValue": self.payment_signature(out_sum, inv_id),
            "Culture": "ru",
            "Encoding": "utf-8",
        }
        if self.settings.test_mode:
            params["IsTest"] = "1"
        return f"{self.settings.payment_url}?{urlencode(params)}"

    # ========================================================================
    # OpStateExt
    # ========================================================================

    async def get_operation_state(self, inv_id: str) -> OperationState:
        """Query OpStateExt for a paid invoice.

        Args:
            inv_id: Robokassa InvId (numeric string)

        Returns:
            OperationState

        Raises:
            httpx.RequestError: Network failure or client-side timeout
            httpx.HTTPStatusError: Non-2xx response
            RobokassaAPIError: Non-zero result code or malformed XML
            RobokassaConfigError: If Password2 is not configured
        """
        params = {
            "MerchantLogin": self.settings.merchant_login,
            "InvoiceID": inv_id,
            "Signature": self.opstate_signature(inv_id),
        }

        async with httpx.AsyncClient(
            transport=self._transport, timeout=self.settings.opstate_timeout
        ) as client:
            response = await client.get(self.settings.opstate_url, params=params)
            response.raise_for_status()

        state = parse_operation_state(response.text)
        logger.info(
            "Robokassa operation state retrieved",
            extra={
                "event": "robokassa.opstate.retrieved",
                "inv_id": inv_id,
                "state_code": state.state_code,
                "has_op_key": state.op_key is not None,
            },
        )
        return state
