"""Structured JSON logging with request context and redaction."""

import json
import logging
from io import StringIO

from waxhands_api.context import invoice_id_var, request_id_var
from waxhands_api.utils.logging import JSONFormatter
from waxhands_api.utils.sanitize import payload_hash_bytes, sanitize_obj, sanitize_str


def _emit(message: str, **extra) -> dict:
    stream = StringIO()
    handler = logging.StreamHandler(stream)
    handler.setFormatter(JSONFormatter())
    test_logger = logging.getLogger("waxhands_test_logger")
    test_logger.handlers = [handler]
    test_logger.propagate = False
    test_logger.setLevel(logging.INFO)

    test_logger.info(message, extra=extra)
    return json.loads(stream.getvalue().strip())


def test_standard_fields_present():
    log = _emit("PAYMENT_SETTLED")

    assert log["message"] == "PAYMENT_SETTLED"
    assert log["level"] == "INFO"
    for field in ("timestamp", "module", "func", "line"):
        assert field in log


def test_context_vars_are_included():
    request_token = request_id_var.set("req-123")
    invoice_token = invoice_id_var.set("INV-100")
    try:
        log = _emit("WEBHOOK_RECEIVED")
    finally:
        request_id_var.reset(request_token)
        invoice_id_var.reset(invoice_token)

    assert log["request_id"] == "req-123"
    assert log["invoice_id"] == "INV-100"


def test_sensitive_extras_are_redacted():
    log = _emit("CALLBACK", fields={"SignatureValue": "ABCDEF", "InvId": "1"}, amount="1500.00")

    assert log["fields"]["SignatureValue"] == "[REDACTED]"
    assert log["fields"]["InvId"] == "1"
    assert log["amount"] == "1500.00"


def test_signature_in_query_string_is_redacted():
    redacted = sanitize_str("/payment/success?InvId=1&SignatureValue=ABCDEF&OutSum=10")

    assert "ABCDEF" not in redacted
    assert "InvId=1" in redacted


def test_opkey_and_password_in_text_are_redacted():
    redacted = sanitize_str("OpStateExt ok OpKey=abc-123 Password2=hunter2&InvoiceID=5")

    assert "abc-123" not in redacted
    assert "hunter2" not in redacted
    assert "OpKey=[REDACTED]" in redacted
    assert "InvoiceID=5" in redacted


def test_internal_token_key_is_redacted():
    assert sanitize_obj({"X-Internal-Token": "t0ken"}) == {"X-Internal-Token": "[REDACTED]"}


def test_long_strings_are_truncated_with_hash():
    assert sanitize_str("x" * 5000).startswith("[TRUNCATED len=5000 sha256=")


def test_depth_limit():
    nested: dict = {}
    cursor = nested
    for _ in range(10):
        cursor["next"] = {}
        cursor = cursor["next"]

    assert "[DEPTH_LIMIT]" in json.dumps(sanitize_obj(nested))


def test_payload_hash_is_sha256_hex():
    assert payload_hash_bytes(b"") == "e3b0c44298fc1c149afbf4c8996fb92427ae41e4649b934ca495991b7852b855"
