"""Invoice repository.

Every statement here is fixed-shape and parameterized; status-changing
writes carry their precondition in the WHERE clause so concurrent callers
can tell from rowcount whether they won.
"""

from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import or_, select, update
from sqlalchemy.orm import Session

from waxhands_api.db.models import INVOICE_STATUS_PAID, INVOICE_STATUS_PENDING, Invoice


class InvoiceRepository:
    """Data access for the invoices table."""

    def __init__(self, db: Session):
        self.db = db

    def get_by_id(self, invoice_id: str) -> Optional[Invoice]:
        return self.db.get(Invoice, invoice_id)

    def find_by_any_id(self, identifier: str) -> list[Invoice]:
        """Look an invoice up by provider_invoice_id OR id in one query.

        At most two rows are fetched; callers treat anything other than
        exactly one as no match.
        """
        stmt = (
            select(Invoice)
            .where(
                or_(
                    Invoice.provider_invoice_id == identifier,
                    Invoice.id == identifier,
                )
            )
            .limit(2)
        )
        return list(self.db.execute(stmt).scalars().all())

    def mark_paid(
        self,
        invoice_id: str,
        *,
        payment_id: str,
        payment_method: str,
        paid_at: datetime,
    ) -> bool:
        """Transition pending -> paid. Caller commits.

        Returns:
            True if this call performed the transition, False if the invoice
            was no longer pending
        """
        stmt = (
            update(Invoice)
            .where(
                Invoice.id == invoice_id,
                Invoice.status == INVOICE_STATUS_PENDING,
            )
            .values(
                status=INVOICE_STATUS_PAID,
                paid_at=paid_at,
                payment_id=payment_id,
                payment_method=payment_method,
                updated_at=paid_at,
            )
            .execution_options(synchronize_session=False)
        )
        result = self.db.execute(stmt)
        return result.rowcount == 1

    def set_operation_key(self, invoice_id: str, op_key: str) -> bool:
        """Store the Robokassa OpKey unless one is already recorded. Caller commits."""
        stmt = (
            update(Invoice)
            .where(
                Invoice.id == invoice_id,
                Invoice.robokassa_op_key.is_(None),
            )
            .values(
                robokassa_op_key=op_key,
                updated_at=datetime.now(timezone.utc),
            )
            .execution_options(synchronize_session=False)
        )
        return self.db.execute(stmt).rowcount == 1

    def assign_provider_invoice_id(self, invoice_id: str, provider_invoice_id: str) -> bool:
        """Set provider_invoice_id only if it is still unset. Caller commits."""
        stmt = (
            update(Invoice)
            .where(
                Invoice.id == invoice_id,
                Invoice.provider_invoice_id.is_(None),
            )
            .values(
                provider_invoice_id=provider_invoice_id,
                updated_at=datetime.now(timezone.utc),
            )
            .execution_options(synchronize_session=False)
        )
        return self.db.execute(stmt).rowcount == 1

    def list_pending_with_provider_id(self, limit: int) -> list[Invoice]:
        """Newest pending invoices that already have a Robokassa InvId."""
        stmt = (
            select(Invoice)
            .where(
                Invoice.status == INVOICE_STATUS_PENDING,
                Invoice.provider_invoice_id.is_not(None),
            )
            .order_by(Invoice.created_at.desc())
            .limit(limit)
        )
        return list(self.db.execute(stmt).scalars().all())
