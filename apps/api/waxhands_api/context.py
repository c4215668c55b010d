"""Request context management for observability.

Context variables carry request-scoped identifiers across async boundaries
so every log line emitted while handling a payment callback can be tied back
to the request and the invoice it touched.
"""

from contextvars import ContextVar

# Request ID - unique per HTTP request
request_id_var: ContextVar[str] = ContextVar("request_id", default="")

# Invoice ID - invoice claimed by the notification being processed
invoice_id_var: ContextVar[str] = ContextVar("invoice_id", default="")
