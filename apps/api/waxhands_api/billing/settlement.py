"""Invoice resolution and idempotent settlement.

Settlement is exactly-once per invoice without any in-process locking:
the pending -> paid write is a conditional UPDATE guarded by
status = 'pending', and rowcount tells the caller whether it won.

  (1) idempotency short-circuit: status already 'paid' -> success, no write
  (2) amount check: |claimed - stored| > 0.01 -> AmountMismatch, no write
  (3) commit:
      WHERE: id=:id AND status='pending'
      SET:   status='paid', paid_at, payment_id, payment_method, updated_at
      rowcount 1 -> fresh settlement
      rowcount 0 -> re-read; 'paid' -> already settled (lost the race),
                    anything else -> InvoiceNotPayable
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from waxhands_api.billing.notification import Notification
from waxhands_api.billing.robokassa import PROVIDER_NAME
from waxhands_api.db.models import INVOICE_STATUS_PAID, Invoice
from waxhands_api.db.repo_invoices import InvoiceRepository

logger = logging.getLogger(__name__)

AMOUNT_TOLERANCE = Decimal("0.01")


class SettlementError(Exception):
    """Base exception for settlement errors."""

    pass


class InvoiceNotFound(SettlementError):
    """No single invoice matches the claimed identifier."""

    pass


class AmountMismatch(SettlementError):
    """Claimed amount differs from the stored amount beyond tolerance."""

    def __init__(self, invoice_id: str, expected: Decimal, received: Decimal):
        super().__init__(
            f"Invoice {invoice_id} amount mismatch: expected {expected}, received {received}"
        )
        self.invoice_id = invoice_id
        self.expected = expected
        self.received = received


class InvoiceNotPayable(SettlementError):
    """Invoice left 'pending' for a state other than 'paid' (e.g. cancelled)."""

    def __init__(self, invoice_id: str, status: str):
        super().__init__(f"Invoice {invoice_id} status is {status}, expected pending")
        self.invoice_id = invoice_id
        self.status = status


class StoreError(SettlementError):
    """The invoice store failed; the only retryable outcome."""

    pass


@dataclass(frozen=True)
class SettlementResult:
    invoice: Invoice
    already_settled: bool


class InvoiceResolver:
    """Maps a claimed identifier to exactly one invoice."""

    def __init__(self, db: Session):
        self.repo = InvoiceRepository(db)

    def resolve(self, identifier: str) -> Invoice:
        """Resolve by provider_invoice_id or id.

        Raises:
            InvoiceNotFound: Zero or more than one row matched
            StoreError: Store lookup failed
        """
        try:
            matches = self.repo.find_by_any_id(identifier)
        except SQLAlchemyError as e:
            raise StoreError(f"Invoice lookup failed for {identifier!r}") from e

        if len(matches) != 1:
            if matches:
                logger.error(
                    "INVOICE_AMBIGUOUS_IDENTIFIER",
                    extra={"identifier": identifier, "match_count": len(matches)},
                )
            raise InvoiceNotFound(f"No unique invoice for identifier {identifier!r}")

        return matches[0]


class SettlementEngine:
    """Applies the pending -> paid transition for an authenticated notification."""

    def __init__(self, db: Session):
        self.db = db
        self.repo = InvoiceRepository(db)

    def settle(self, invoice: Invoice, notification: Notification) -> SettlementResult:
        """Settle an invoice from an authenticated ResultURL notification."""
        payment_id = notification.transaction_id or notification.invoice_id
        return self.confirm(invoice, notification.amount, payment_id)

    def confirm(self, invoice: Invoice, amount: Decimal, payment_id: str) -> SettlementResult:
        """Settle an invoice exactly once.

        Args:
            invoice: Invoice attached to self.db
            amount: Amount Robokassa reports as paid
            payment_id: Provider transaction reference stored on the invoice

        Returns:
            SettlementResult; already_settled=True on the idempotent path

        Raises:
            AmountMismatch: Amount outside tolerance (invoice untouched)
            InvoiceNotPayable: Invoice is cancelled
            StoreError: Store write failed (rolled back)
        """
        if invoice.status == INVOICE_STATUS_PAID:
            return SettlementResult(invoice=invoice, already_settled=True)

        try:
            expected = Decimal(invoice.amount)
        except (InvalidOperation, TypeError) as e:
            raise StoreError(f"Invoice {invoice.id} has a non-decimal amount") from e

        if abs(amount - expected) > AMOUNT_TOLERANCE:
            raise AmountMismatch(invoice.id, expected, amount)

        paid_at = datetime.now(timezone.utc)

        try:
            won = self.repo.mark_paid(
                invoice.id,
                payment_id=payment_id,
                payment_method=PROVIDER_NAME,
                paid_at=paid_at,
            )
            self.db.commit()
            # Committed state is reloaded so the caller sees what the store holds
            self.db.refresh(invoice)
        except SQLAlchemyError as e:
            self.db.rollback()
            raise StoreError(f"Settlement write failed for invoice {invoice.id}") from e

        if won:
            return SettlementResult(invoice=invoice, already_settled=False)

        if invoice.status == INVOICE_STATUS_PAID:
            # Lost the race to a concurrent delivery
            return SettlementResult(invoice=invoice, already_settled=True)

        raise InvoiceNotPayable(invoice.id, invoice.status)
