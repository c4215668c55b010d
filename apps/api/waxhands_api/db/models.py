"""SQLAlchemy ORM models for the payments API."""

from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import TEXT, TIMESTAMP, CheckConstraint, Index
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

INVOICE_STATUS_PENDING = "pending"
INVOICE_STATUS_PAID = "paid"
INVOICE_STATUS_CANCELLED = "cancelled"


class Base(DeclarativeBase):
    """Base class for all ORM models."""

    pass


class Invoice(Base):
    """Invoice model - amount owed by a participant for a workshop.

    Addressed by its own id or by provider_invoice_id (Robokassa InvId),
    which is assigned when the first payment link is issued and never
    changes afterwards.
    """

    __tablename__ = "invoices"

    id: Mapped[str] = mapped_column(TEXT, primary_key=True)
    provider_invoice_id: Mapped[Optional[str]] = mapped_column(
        TEXT, nullable=True, unique=True
    )

    workshop_id: Mapped[str] = mapped_column(TEXT, nullable=False)  # master class event
    workshop_date: Mapped[Optional[datetime]] = mapped_column(
        TIMESTAMP(timezone=True), nullable=True
    )
    participant_id: Mapped[str] = mapped_column(TEXT, nullable=False)
    participant_name: Mapped[Optional[str]] = mapped_column(TEXT, nullable=True)

    amount: Mapped[str] = mapped_column(TEXT, nullable=False)  # Decimal string for precision

    status: Mapped[str] = mapped_column(
        TEXT, nullable=False, default=INVOICE_STATUS_PENDING
    )
    # pending, paid, cancelled

    # Settlement details
    payment_method: Mapped[Optional[str]] = mapped_column(TEXT, nullable=True)  # provider name
    payment_id: Mapped[Optional[str]] = mapped_column(TEXT, nullable=True)  # provider reference
    paid_at: Mapped[Optional[datetime]] = mapped_column(
        TIMESTAMP(timezone=True), nullable=True
    )
    robokassa_op_key: Mapped[Optional[str]] = mapped_column(TEXT, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
    )
    updated_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    __table_args__ = (
        CheckConstraint(
            "status IN ('pending', 'paid', 'cancelled')", name="ck_invoices_status"
        ),
        Index("idx_invoices_participant", "participant_id"),
        Index("idx_invoices_status", "status"),
    )
