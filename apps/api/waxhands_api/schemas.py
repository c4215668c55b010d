"""Pydantic schemas for API requests/responses."""

from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel, Field


class ProblemDetail(BaseModel):
    """RFC 9457 Problem Details for HTTP API errors.

    RFC 9457: detail can be either a string or a structured object (dict).
    """

    type: str = Field(..., description="URI reference identifying the problem type")
    title: str = Field(..., description="Short, human-readable summary")
    status: int = Field(..., description="HTTP status code")
    detail: str | dict[str, Any] = Field(..., description="Human-readable explanation or structured error details")
    instance: Optional[str] = Field(None, description="URI reference identifying the specific occurrence")


# ============================================================================
# POST /payment/invoices/{invoice_id}/pay - Response
# ============================================================================


class PaymentLinkResponse(BaseModel):
    """Signed payment page link for an invoice."""

    payment_url: str
    invoice_id: str
    provider_invoice_id: str = Field(..., description="Robokassa InvId assigned to the invoice")
    method: str = Field(default="GET", description="HTTP method the browser must use")
    provider: str = "robokassa"


# ============================================================================
# GET /payment/invoices/{invoice_id}/refund/check - Response
# ============================================================================


class RefundCheckResponse(BaseModel):
    """Refund eligibility of a paid invoice."""

    invoice_id: str
    refund_available: bool
    hours_until_workshop: float = Field(..., ge=0)
    has_operation_key: bool
    provider: str = "robokassa"
    message: str


# ============================================================================
# GET /payment/invoices/{invoice_id}/status - Response
# ============================================================================


class PaymentStatusResponse(BaseModel):
    """Invoice status after reconciling with Robokassa OpStateExt."""

    invoice_id: str
    status: str
    paid_at: Optional[datetime] = None
    provider_state_code: Optional[str] = Field(None, description="OpStateExt State/Code, if queried")
    has_operation_key: bool
    provider: str = "robokassa"
    message: str


# ============================================================================
# POST /payment/invoices/sync-pending - Response
# ============================================================================


class SyncSummary(BaseModel):
    checked: int = 0
    updated: int = 0
    failed: int = 0
    updated_invoices: list[str] = Field(default_factory=list)


# ============================================================================
# GET /payment/provider/info - Response
# ============================================================================


class ProviderInfo(BaseModel):
    provider: str
    type: str
    supports_refunds: bool
    supports_refund_status: bool
    test_mode: bool
