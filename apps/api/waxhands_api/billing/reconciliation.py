"""Out-of-band payment confirmation through OpStateExt.

A ResultURL callback can be lost (network, downtime, misrouted URL). The
status check asks Robokassa directly for an invoice's operation state and,
when the operation is complete (state 100), settles the invoice through the
same conditional write the webhook uses. It is also where a paid invoice
that never got its OpKey picks one up.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Optional

import httpx
from sqlalchemy.orm import Session

from waxhands_api.billing.enrichment import OperationKeyEnricher
from waxhands_api.billing.notification import MalformedNotification, parse_amount
from waxhands_api.billing.robokassa import OperationState, RobokassaAPIError
from waxhands_api.billing.settlement import SettlementEngine, SettlementError
from waxhands_api.db.models import INVOICE_STATUS_PAID, INVOICE_STATUS_PENDING, Invoice

logger = logging.getLogger(__name__)

# OpStateExt State/Code of a completed payment
PAID_STATE_CODE = "100"


class ProviderInvoiceMissing(SettlementError):
    """Invoice has no numeric Robokassa InvId to query."""

    pass


class ProviderUnavailable(SettlementError):
    """OpStateExt failed, timed out or returned an unusable answer."""

    pass


@dataclass(frozen=True)
class StatusCheck:
    invoice: Invoice
    state_code: Optional[str]
    settled_now: bool


class PaymentStatusChecker:
    """Reconciles one invoice with its Robokassa operation state."""

    def __init__(self, db: Session, enricher: OperationKeyEnricher):
        self.db = db
        self.enricher = enricher
        self.engine = SettlementEngine(db)

    async def query_state(self, inv_id: str) -> OperationState:
        """Fetch the operation state, bounded by the enricher's timeout.

        Raises:
            ProviderUnavailable: Timeout, transport/HTTP error or OpStateExt error
            RobokassaConfigError: If Password2 is not configured
        """
        client = self.enricher.client
        try:
            return await asyncio.wait_for(
                client.get_operation_state(inv_id), timeout=self.enricher.timeout
            )
        except asyncio.TimeoutError as e:
            raise ProviderUnavailable(
                f"OpStateExt did not answer within {self.enricher.timeout}s"
            ) from e
        except (httpx.HTTPError, RobokassaAPIError) as e:
            raise ProviderUnavailable(f"OpStateExt request failed: {e}") from e

    async def check(self, invoice: Invoice) -> StatusCheck:
        """Query Robokassa for the invoice and apply what it reports.

        Returns:
            StatusCheck with the refreshed invoice

        Raises:
            ProviderInvoiceMissing: No numeric provider_invoice_id
            ProviderUnavailable: OpStateExt failed or reported no OutSum for a paid operation
            AmountMismatch: Paid amount outside tolerance (invoice untouched)
            InvoiceNotPayable: Invoice was cancelled concurrently
            StoreError: Settlement write failed
        """
        inv_id = invoice.provider_invoice_id
        if not inv_id or not inv_id.isdigit():
            raise ProviderInvoiceMissing(f"Invoice {invoice.id} has no numeric Robokassa InvId")

        state = await self.query_state(inv_id)
        settled_now = False

        if invoice.status == INVOICE_STATUS_PENDING and state.state_code == PAID_STATE_CODE:
            if state.out_sum is None:
                raise ProviderUnavailable("OpStateExt reported a paid operation without OutSum")
            try:
                amount = parse_amount(state.out_sum)
            except MalformedNotification as e:
                raise ProviderUnavailable(str(e)) from e

            result = self.engine.confirm(invoice, amount, payment_id=inv_id)
            settled_now = not result.already_settled
            if settled_now:
                logger.info(
                    "PAYMENT_SETTLED",
                    extra={"source": "opstate", "amount": str(amount), "payment_id": inv_id},
                )

        if state.op_key and invoice.status == INVOICE_STATUS_PAID and not invoice.robokassa_op_key:
            self.enricher.store_operation_key(self.db, invoice.id, state.op_key)
            self.db.refresh(invoice)

        return StatusCheck(invoice=invoice, state_code=state.state_code, settled_now=settled_now)
