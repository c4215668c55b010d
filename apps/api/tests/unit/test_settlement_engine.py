"""Invoice resolution and idempotent settlement against a real SQLite store."""

from decimal import Decimal
from unittest.mock import MagicMock

import pytest
from sqlalchemy import create_engine
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import sessionmaker

from conftest import sign_result
from waxhands_api.billing.notification import parse_notification
from waxhands_api.billing.settlement import (
    AmountMismatch,
    InvoiceNotFound,
    InvoiceNotPayable,
    InvoiceResolver,
    SettlementEngine,
    StoreError,
)
from waxhands_api.db.models import Base, Invoice


def _notification(inv_id: str, out_sum: str, fee: str | None = None):
    fields = {"InvId": inv_id, "OutSum": out_sum, "SignatureValue": sign_result(out_sum, inv_id)}
    if fee is not None:
        fields["Fee"] = fee
    return parse_notification(fields)


class TestInvoiceResolver:
    def test_resolves_by_primary_id(self, db_session, make_invoice):
        make_invoice("INV-100")

        assert InvoiceResolver(db_session).resolve("INV-100").id == "INV-100"

    def test_resolves_by_provider_id_with_identical_result(self, db_session, make_invoice):
        invoice = make_invoice("INV-100")
        invoice.provider_invoice_id = "555001"
        db_session.commit()

        resolver = InvoiceResolver(db_session)
        assert resolver.resolve("555001") is resolver.resolve("INV-100")

    def test_unknown_identifier_is_not_found(self, db_session):
        with pytest.raises(InvoiceNotFound):
            InvoiceResolver(db_session).resolve("does-not-exist")

    def test_identifier_matching_two_invoices_is_not_found(self, db_session, make_invoice):
        # One invoice's id equals another invoice's provider id
        make_invoice("777")
        make_invoice("INV-200", provider_invoice_id="777")

        with pytest.raises(InvoiceNotFound):
            InvoiceResolver(db_session).resolve("777")

    def test_store_failure_is_store_error(self):
        db = MagicMock()
        db.execute.side_effect = OperationalError("SELECT", {}, Exception("db down"))

        with pytest.raises(StoreError):
            InvoiceResolver(db).resolve("INV-100")


class TestSettlementEngine:
    def test_fresh_settlement_marks_invoice_paid(self, db_session, make_invoice):
        invoice = make_invoice("INV-100", amount="1500.00")

        result = SettlementEngine(db_session).settle(invoice, _notification("INV-100", "1500.00", fee="42"))

        assert result.already_settled is False
        assert result.invoice.status == "paid"
        assert result.invoice.payment_method == "robokassa"
        assert result.invoice.payment_id == "42"
        assert result.invoice.paid_at is not None

    def test_payment_reference_falls_back_to_claimed_id(self, db_session, make_invoice):
        invoice = make_invoice("INV-100")

        result = SettlementEngine(db_session).settle(invoice, _notification("INV-100", "1500.00"))

        assert result.invoice.payment_id == "INV-100"

    def test_repeat_notification_is_idempotent(self, db_session, make_invoice):
        invoice = make_invoice("INV-100")
        engine = SettlementEngine(db_session)
        first = engine.settle(invoice, _notification("INV-100", "1500.00", fee="1"))
        paid_at, payment_id = first.invoice.paid_at, first.invoice.payment_id

        for fee in ("2", "3", "4"):
            again = engine.settle(invoice, _notification("INV-100", "1500.00", fee=fee))
            assert again.already_settled is True

        db_session.refresh(invoice)
        assert invoice.paid_at == paid_at
        assert invoice.payment_id == payment_id
        assert invoice.amount == "1500.00"

    def test_amount_off_by_exactly_one_cent_settles(self, db_session, make_invoice):
        invoice = make_invoice("INV-100", amount="1500.00")

        result = SettlementEngine(db_session).settle(invoice, _notification("INV-100", "1499.99"))

        assert result.invoice.status == "paid"

    @pytest.mark.parametrize("claimed", ["1500.011", "1499.989", "1999.50"])
    def test_amount_outside_tolerance_is_rejected(self, db_session, make_invoice, claimed):
        invoice = make_invoice("INV-101", amount="1500.00")

        with pytest.raises(AmountMismatch) as exc_info:
            SettlementEngine(db_session).settle(invoice, _notification("INV-101", claimed))

        assert exc_info.value.expected == Decimal("1500.00")
        db_session.refresh(invoice)
        assert invoice.status == "pending"
        assert invoice.paid_at is None

    def test_cancelled_invoice_is_not_payable(self, db_session, make_invoice):
        invoice = make_invoice("INV-102", status="cancelled")

        with pytest.raises(InvoiceNotPayable) as exc_info:
            SettlementEngine(db_session).settle(invoice, _notification("INV-102", "1500.00"))

        assert exc_info.value.status == "cancelled"
        db_session.refresh(invoice)
        assert invoice.status == "cancelled"

    def test_store_failure_rolls_back(self, make_invoice):
        invoice = MagicMock(spec=Invoice)
        invoice.id = "INV-100"
        invoice.status = "pending"
        invoice.amount = "1500.00"
        db = MagicMock()
        db.execute.side_effect = OperationalError("UPDATE", {}, Exception("db down"))

        with pytest.raises(StoreError):
            SettlementEngine(db).settle(invoice, _notification("INV-100", "1500.00"))

        db.rollback.assert_called_once()
        db.commit.assert_not_called()


def test_concurrent_deliveries_settle_exactly_once(tmp_path):
    """Two sessions both read 'pending'; only one conditional update wins."""
    engine = create_engine(f"sqlite:///{tmp_path / 'race.db'}")
    Base.metadata.create_all(engine)
    SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

    with SessionLocal() as setup:
        setup.add(
            Invoice(
                id="INV-100",
                workshop_id="workshop-1",
                participant_id="parent-1",
                amount="1500.00",
                status="pending",
            )
        )
        setup.commit()

    session_a = SessionLocal()
    session_b = SessionLocal()
    try:
        invoice_a = InvoiceResolver(session_a).resolve("INV-100")
        invoice_b = InvoiceResolver(session_b).resolve("INV-100")
        assert invoice_a.status == invoice_b.status == "pending"

        result_a = SettlementEngine(session_a).settle(invoice_a, _notification("INV-100", "1500.00", fee="A"))
        result_b = SettlementEngine(session_b).settle(invoice_b, _notification("INV-100", "1500.00", fee="B"))

        assert result_a.already_settled is False
        assert result_b.already_settled is True
        assert result_b.invoice.payment_id == "A"
    finally:
        session_a.close()
        session_b.close()
        engine.dispose()
