"""Utility functions and helpers."""

from waxhands_api.utils.logging import JSONFormatter, configure_json_logging
from waxhands_api.utils.sanitize import payload_hash_bytes, sanitize_obj, sanitize_str

__all__ = [
    "JSONFormatter",
    "configure_json_logging",
    "payload_hash_bytes",
    "sanitize_obj",
    "sanitize_str",
]
