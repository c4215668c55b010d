"""Redaction of secrets and participant data in log output.

Robokassa callbacks carry signatures, merchant passwords only ever live in
settings, and the internal API token travels in a header. Anything of that
shape is replaced with [REDACTED] before a record is formatted. Oversized
strings are replaced by their length and hash instead of being scanned.
"""

import hashlib
import re
import traceback
from typing import Any

MAX_STR_LOG = 2048
MAX_DEPTH = 6

REDACTED = "[REDACTED]"

_SENSITIVE_KEYS = frozenset({
    "password", "password1", "password2",
    "signature", "signaturevalue",
    "x-internal-token", "internal_api_token",
    "opkey", "robokassa_op_key",
    "email", "phone",
})

# Query-string / form style occurrences: SignatureValue=..., Signature=..., OpKey=..., Password2=...
_KEY_VALUE_PATTERN = re.compile(
    r"(?i)\b(SignatureValue|Signature|OpKey|Password\d?)=[^&\s]+"
)


def payload_hash_bytes(raw: bytes) -> str:
    """Return sha256 hex digest of raw bytes."""
    return hashlib.sha256(raw).hexdigest()


def sanitize_str(s: str) -> str:
    if not isinstance(s, str):
        return s  # type: ignore[return-value]

    if len(s) > MAX_STR_LOG:
        digest = hashlib.sha256(s.encode("utf-8", errors="replace")).hexdigest()[:16]
        return f"[TRUNCATED len={len(s)} sha256={digest}]"

    return _KEY_VALUE_PATTERN.sub(lambda m: f"{m.group(1)}={REDACTED}", s)


def sanitize_obj(obj: Any, depth: int = 0) -> Any:
    """Recursively redact a log extra value (dicts by key, strings by pattern)."""
    if depth >= MAX_DEPTH:
        return "[DEPTH_LIMIT]"

    if isinstance(obj, dict):
        return {
            key: REDACTED
            if isinstance(key, str) and key.lower() in _SENSITIVE_KEYS
            else sanitize_obj(value, depth + 1)
            for key, value in obj.items()
        }

    if isinstance(obj, (list, tuple)):
        return [sanitize_obj(item, depth + 1) for item in obj]

    if isinstance(obj, str):
        return sanitize_str(obj)

    return obj


def sanitize_exc(exc_info: tuple) -> str:
    """Format exc_info without local variables, then redact it."""
    _type, value, _tb = exc_info
    if value is None:
        return ""
    te = traceback.TracebackException.from_exception(value, capture_locals=False)
    return sanitize_str("".join(te.format()))
