"""Typed parsing of raw Robokassa callback fields."""

from decimal import Decimal

import pytest

from waxhands_api.billing.notification import MalformedNotification, parse_notification


def test_parses_canonical_result_url_fields():
    notification = parse_notification(
        {
            "InvId": "INV-100",
            "OutSum": "1500.00",
            "SignatureValue": "abcdef",
            "Fee": "42.50",
            "Shp_participant": "Masha",
            "EMail": "parent@example.com",
        }
    )

    assert notification.invoice_id == "INV-100"
    assert notification.amount == Decimal("1500.00")
    assert notification.raw_amount == "1500.00"
    assert notification.signature == "abcdef"
    assert notification.transaction_id == "42.50"
    assert notification.custom_fields == {"Shp_participant": "Masha"}


def test_accepts_lower_camel_case_aliases():
    notification = parse_notification(
        {"invId": "77", "outSum": "10", "signatureValue": "sig"}
    )

    assert notification.invoice_id == "77"
    assert notification.amount == Decimal("10")
    assert notification.transaction_id is None


def test_keeps_amount_text_verbatim_for_signing():
    notification = parse_notification({"InvId": "1", "OutSum": "1500.000000", "SignatureValue": "s"})

    assert notification.raw_amount == "1500.000000"
    assert notification.amount == Decimal("1500")


@pytest.mark.parametrize(
    "fields",
    [
        {"OutSum": "1500.00", "SignatureValue": "sig"},
        {"InvId": "INV-1", "SignatureValue": "sig"},
        {"InvId": "INV-1", "OutSum": "1500.00"},
        {"InvId": "  ", "OutSum": "1500.00", "SignatureValue": "sig"},
    ],
)
def test_missing_required_field_is_malformed(fields):
    with pytest.raises(MalformedNotification):
        parse_notification(fields)


@pytest.mark.parametrize("amount", ["abc", "12,50", "NaN", "Infinity", "-5.00"])
def test_bad_amount_is_malformed(amount):
    with pytest.raises(MalformedNotification):
        parse_notification({"InvId": "INV-1", "OutSum": amount, "SignatureValue": "sig"})
