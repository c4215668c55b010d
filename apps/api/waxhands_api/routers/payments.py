"""Robokassa payment endpoints.

Webhook (ResultURL) acknowledgement contract. Robokassa treats anything but
HTTP 200 as a delivery failure and keeps retrying, so only genuine
transient failures are allowed to leave as 5xx:
  (A) Malformed notification / signature mismatch → 200 "bad sign"
  (B) No unique invoice for InvId               → 200 "invoice not found"
  (C) Amount outside tolerance                  → 200 "invalid amount"
  (D) Invoice cancelled                         → 200 "invoice not payable"
  (E) Already paid / fresh settlement           → 200 "OK<InvId>"
  (F) Our misconfig (missing password)          → 500 WEBHOOK_PROVIDER_MISCONFIG
  (G) Store / unexpected error                  → 500 WEBHOOK_INTERNAL_ERROR
"""

import asyncio
import json as _json
import logging
import secrets
from decimal import Decimal
from typing import Optional
from urllib.parse import parse_qsl, urlencode

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Request, status
from fastapi.responses import JSONResponse, PlainTextResponse, RedirectResponse
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from waxhands_api.billing.enrichment import OperationKeyEnricher
from waxhands_api.billing.notification import (
    AMOUNT_KEYS,
    INVOICE_ID_KEYS,
    MalformedNotification,
    first_value,
    parse_notification,
)
from waxhands_api.billing.notifier import EventNotifier, SettlementEvent, publish_settlement
from waxhands_api.billing.reconciliation import (
    PaymentStatusChecker,
    ProviderInvoiceMissing,
    ProviderUnavailable,
)
from waxhands_api.billing.refund_policy import hours_until, refund_window_open
from waxhands_api.billing.robokassa import PROVIDER_NAME, RobokassaClient, RobokassaConfigError
from waxhands_api.billing.settlement import (
    AmountMismatch,
    InvoiceNotFound,
    InvoiceNotPayable,
    InvoiceResolver,
    SettlementEngine,
    SettlementError,
    StoreError,
)
from waxhands_api.config.env import AppSettings
from waxhands_api.context import invoice_id_var, request_id_var
from waxhands_api.db.models import (
    INVOICE_STATUS_CANCELLED,
    INVOICE_STATUS_PAID,
    INVOICE_STATUS_PENDING,
    Invoice,
)
from waxhands_api.db.repo_invoices import InvoiceRepository
from waxhands_api.db.session import get_db
from waxhands_api.dependencies import (
    get_enricher,
    get_notifier,
    get_robokassa_client,
    get_settings,
    require_internal_token,
)
from waxhands_api.schemas import (
    PaymentLinkResponse,
    PaymentStatusResponse,
    ProviderInfo,
    RefundCheckResponse,
    SyncSummary,
)
from waxhands_api.utils.sanitize import payload_hash_bytes

router = APIRouter(prefix="/payment", tags=["payment"])
logger = logging.getLogger(__name__)

ACK_BAD_SIGN = "bad sign"
ACK_INVOICE_NOT_FOUND = "invoice not found"
ACK_INVALID_AMOUNT = "invalid amount"
ACK_INVOICE_NOT_PAYABLE = "invoice not payable"

# Random InvId draws before giving up on a unique provider_invoice_id
PROVIDER_ID_ATTEMPTS = 5
MAX_PROVIDER_INVOICE_ID = 2**31 - 1

# Pending invoices reconciled per sync run, and the pause between OpStateExt calls
SYNC_BATCH_LIMIT = 100
SYNC_REQUEST_INTERVAL = 0.1


# ============================================================================
# Helpers
# ============================================================================


def _ack(body: str) -> PlainTextResponse:
    return PlainTextResponse(body, status_code=status.HTTP_200_OK)


def _webhook_problem(
    request: Request,
    status_code: int,
    *,
    code: str,
    title: str,
    detail: str | None,
    payload_hash: str | None,
    extra: dict | None = None,
) -> JSONResponse:
    """Log once + return RFC 9457 Problem Details response with webhook extensions.

    5xx failures → error log + Retry-After: 60 response header.
    """
    request_id = request_id_var.get()
    instance = request_id or str(request.url.path)

    log_extra: dict = {
        "event": f"webhook.{code.lower()}",
        "provider": PROVIDER_NAME,
        "payload_hash": payload_hash,
        "error_code": code,
    }
    if extra:
        log_extra.update(extra)

    if status_code >= 500:
        logger.error(code, extra=log_extra)
    else:
        logger.warning(code, extra=log_extra)

    content: dict = {
        "type": f"urn:waxhands:webhook:{code.lower()}",
        "title": title,
        "status": status_code,
        "provider": PROVIDER_NAME,
        "error_code": code,
    }
    if detail is not None:
        content["detail"] = detail
    if payload_hash is not None:
        content["payload_hash"] = payload_hash
    if instance:
        content["instance"] = instance

    headers = {}
    if status_code >= 500:
        headers["Retry-After"] = "60"

    return JSONResponse(
        status_code=status_code,
        content=content,
        media_type="application/problem+json",
        headers=headers,
    )


def _collect_fields(request: Request, raw_body: bytes) -> dict[str, str]:
    """Merge query parameters with a form or JSON body.

    Body values win over query values. An unreadable body contributes
    nothing, which later surfaces as a malformed notification.
    """
    fields: dict[str, str] = dict(request.query_params)
    if not raw_body:
        return fields

    content_type = request.headers.get("content-type", "")
    try:
        text_body = raw_body.decode("utf-8")
    except UnicodeDecodeError:
        return fields

    if "application/json" in content_type:
        try:
            payload = _json.loads(text_body)
        except _json.JSONDecodeError:
            return fields
        if isinstance(payload, dict):
            fields.update({str(k): str(v) for k, v in payload.items() if v is not None})
        return fields

    fields.update(dict(parse_qsl(text_body, keep_blank_values=True)))
    return fields


def _redirect_target(base_url: str, fields: dict[str, str]) -> str:
    params: dict[str, str] = {}
    invoice_id = first_value(fields, INVOICE_ID_KEYS)
    amount = first_value(fields, AMOUNT_KEYS)
    if invoice_id is not None:
        params["invoiceId"] = invoice_id
    if amount is not None:
        params["amount"] = amount
    params["provider"] = PROVIDER_NAME
    return f"{base_url}?{urlencode(params)}"


# ============================================================================
# Robokassa ResultURL (webhook)
# ============================================================================


@router.api_route("/webhook", methods=["GET", "POST"])
async def robokassa_webhook(
    request: Request,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
    robokassa: RobokassaClient = Depends(get_robokassa_client),
    enricher: OperationKeyEnricher = Depends(get_enricher),
    notifier: EventNotifier = Depends(get_notifier),
):
    """Robokassa ResultURL handler.

    Verifies the notification, settles the invoice exactly once, then
    fetches the OpKey (bounded) and schedules the real-time event.
    """
    # ── Step 0: Raw ingestion ────────────────────────────────────────────────
    raw_body: bytes = await request.body()
    payload_hash = payload_hash_bytes(raw_body or request.url.query.encode("utf-8"))
    fields = _collect_fields(request, raw_body)

    logger.info(
        "WEBHOOK_RECEIVED",
        extra={
            "provider": PROVIDER_NAME,
            "method": request.method,
            "payload_hash": payload_hash,
            "payload_size": len(raw_body),
        },
    )

    # ── Step 1: Typed notification (A → soft "bad sign") ────────────────────
    try:
        notification = parse_notification(fields)
    except MalformedNotification as e:
        logger.warning(
            "WEBHOOK_MALFORMED_NOTIFICATION",
            extra={"payload_hash": payload_hash, "reason": str(e)},
        )
        return _ack(ACK_BAD_SIGN)

    invoice_id_var.set(notification.invoice_id)

    # ── Step 2: Signature (F → 500 misconfig, A → soft "bad sign") ──────────
    try:
        authentic = robokassa.verify_result(notification)
    except (RobokassaConfigError, ValueError):
        # ValueError: hashlib does not provide the configured algorithm
        return _webhook_problem(
            request, 500,
            code="WEBHOOK_PROVIDER_MISCONFIG",
            title="Webhook provider misconfiguration",
            detail="Robokassa signature verification is not properly configured",
            payload_hash=payload_hash,
        )

    if not authentic:
        logger.warning(
            "WEBHOOK_SIGNATURE_INVALID",
            extra={"payload_hash": payload_hash, "provider": PROVIDER_NAME},
        )
        return _ack(ACK_BAD_SIGN)

    # ── Step 3: Resolve + settle (B, C, D soft; G → 500) ────────────────────
    try:
        invoice = InvoiceResolver(db).resolve(notification.invoice_id)
        result = SettlementEngine(db).settle(invoice, notification)
    except InvoiceNotFound:
        logger.warning("WEBHOOK_INVOICE_NOT_FOUND", extra={"payload_hash": payload_hash})
        return _ack(ACK_INVOICE_NOT_FOUND)
    except AmountMismatch as e:
        logger.warning(
            "WEBHOOK_AMOUNT_MISMATCH",
            extra={
                "expected_amount": str(e.expected),
                "received_amount": str(e.received),
                "FRAUD_FLAG": True,
            },
        )
        return _ack(ACK_INVALID_AMOUNT)
    except InvoiceNotPayable as e:
        logger.warning("WEBHOOK_INVOICE_NOT_PAYABLE", extra={"invoice_status": e.status})
        return _ack(ACK_INVOICE_NOT_PAYABLE)
    except StoreError as e:
        return _webhook_problem(
            request, 500,
            code="WEBHOOK_INTERNAL_ERROR",
            title="Webhook processing failed",
            detail="Invoice store is unavailable",
            payload_hash=payload_hash,
            extra={"error_type": type(e.__cause__ or e).__name__},
        )
    except Exception as e:
        return _webhook_problem(
            request, 500,
            code="WEBHOOK_INTERNAL_ERROR",
            title="Webhook processing failed",
            detail="Unexpected error while processing the notification",
            payload_hash=payload_hash,
            extra={"error_type": type(e).__name__},
        )

    ok_body = f"OK{notification.invoice_id}"

    if result.already_settled:
        logger.info("PAYMENT_ALREADY_SETTLED", extra={"payload_hash": payload_hash})
        return _ack(ok_body)

    invoice = result.invoice
    event = _settlement_event(invoice)
    lookup_id = invoice.provider_invoice_id or notification.invoice_id

    logger.info(
        "PAYMENT_SETTLED",
        extra={
            "provider": PROVIDER_NAME,
            "amount": str(notification.amount),
            "payment_id": invoice.payment_id,
        },
    )

    # ── Step 4: Best-effort side effects ────────────────────────────────────
    try:
        await enricher.enrich(db, invoice.id, lookup_id)
    except Exception as e:
        logger.warning("OPKEY_ENRICHMENT_FAILED", extra={"error_type": type(e).__name__})
    background_tasks.add_task(publish_settlement, notifier, event)

    return _ack(ok_body)


# ============================================================================
# Browser redirects (SuccessURL / FailURL)
# ============================================================================


@router.get("/success")
async def payment_success(
    request: Request,
    robokassa: RobokassaClient = Depends(get_robokassa_client),
    settings: AppSettings = Depends(get_settings),
):
    """SuccessURL redirect.

    The signature check is advisory: settlement happens on the webhook, so
    a mismatch is logged and the payer is still sent to the success page.
    """
    fields = dict(request.query_params)

    try:
        valid = robokassa.verify_success(parse_notification(fields))
    except (MalformedNotification, RobokassaConfigError, ValueError) as e:
        logger.warning("SUCCESS_REDIRECT_UNVERIFIED", extra={"reason": type(e).__name__})
        valid = False
    else:
        if not valid:
            logger.warning("SUCCESS_REDIRECT_SIGNATURE_INVALID")

    logger.info(
        "PAYMENT_SUCCESS_REDIRECT",
        extra={"invoice_ref": first_value(fields, INVOICE_ID_KEYS), "signature_valid": valid},
    )
    return RedirectResponse(
        _redirect_target(settings.success_page_url, fields),
        status_code=status.HTTP_302_FOUND,
    )


@router.get("/fail")
async def payment_fail(
    request: Request,
    settings: AppSettings = Depends(get_settings),
):
    """FailURL redirect. No money moved, so nothing is verified."""
    fields = dict(request.query_params)
    logger.info(
        "PAYMENT_FAIL_REDIRECT",
        extra={"invoice_ref": first_value(fields, INVOICE_ID_KEYS)},
    )
    return RedirectResponse(
        _redirect_target(settings.fail_page_url, fields),
        status_code=status.HTTP_302_FOUND,
    )


# ============================================================================
# Provider info
# ============================================================================


@router.get("/provider/info", response_model=ProviderInfo)
async def provider_info(
    robokassa: RobokassaClient = Depends(get_robokassa_client),
) -> ProviderInfo:
    return ProviderInfo(
        provider="Robokassa",
        type=PROVIDER_NAME,
        supports_refunds=True,
        supports_refund_status=True,
        test_mode=robokassa.settings.test_mode,
    )


# ============================================================================
# Internal: payment links and refund checks
# ============================================================================


@router.post(
    "/invoices/{invoice_id}/pay",
    response_model=PaymentLinkResponse,
    dependencies=[Depends(require_internal_token)],
)
async def create_payment_link(
    invoice_id: str,
    db: Session = Depends(get_db),
    robokassa: RobokassaClient = Depends(get_robokassa_client),
) -> PaymentLinkResponse:
    """Issue a signed Robokassa payment link for a pending invoice.

    The first call assigns the invoice a random numeric InvId; later calls
    reuse it, since Robokassa addresses the payment by that number.

    Raises:
        HTTPException 404: Invoice not found
        HTTPException 400: Invoice is not pending
        HTTPException 500: Provider misconfigured or no unique InvId found
    """
    invoice_id_var.set(invoice_id)
    repo = InvoiceRepository(db)

    invoice = repo.get_by_id(invoice_id)
    if invoice is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Invoice not found")

    if invoice.status != INVOICE_STATUS_PENDING:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Invoice is not payable (status={invoice.status})",
        )

    if invoice.provider_invoice_id is None:
        provider_invoice_id = _assign_provider_invoice_id(db, repo, invoice_id)
    else:
        provider_invoice_id = invoice.provider_invoice_id

    try:
        payment_url = robokassa.build_payment_url(
            inv_id=provider_invoice_id,
            amount=Decimal(invoice.amount),
            description=f"Workshop payment, invoice {invoice.id}",
        )
    except (RobokassaConfigError, ValueError) as e:
        logger.error("PAYMENT_LINK_MISCONFIG", extra={"error_type": type(e).__name__})
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Payment provider is not properly configured",
        )

    logger.info("PAYMENT_LINK_CREATED", extra={"provider_invoice_id": provider_invoice_id})

    return PaymentLinkResponse(
        payment_url=payment_url,
        invoice_id=invoice.id,
        provider_invoice_id=provider_invoice_id,
    )


def _assign_provider_invoice_id(db: Session, repo: InvoiceRepository, invoice_id: str) -> str:
    """Give the invoice a unique random InvId, or return the one a concurrent call set."""
    for _ in range(PROVIDER_ID_ATTEMPTS):
        candidate = str(secrets.randbelow(MAX_PROVIDER_INVOICE_ID) + 1)
        try:
            repo.assign_provider_invoice_id(invoice_id, candidate)
            db.commit()
        except IntegrityError:
            # InvId already taken by another invoice
            db.rollback()
            continue

        # Re-read: either our candidate or the value a concurrent request stored
        invoice = repo.get_by_id(invoice_id)
        db.refresh(invoice)
        if invoice.provider_invoice_id is not None:
            return invoice.provider_invoice_id

    raise HTTPException(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        detail="Could not allocate a payment provider invoice number",
    )


@router.get(
    "/invoices/{invoice_id}/refund/check",
    response_model=RefundCheckResponse,
    dependencies=[Depends(require_internal_token)],
)
async def check_refund(
    invoice_id: str,
    db: Session = Depends(get_db),
) -> RefundCheckResponse:
    """Report whether a paid invoice can still be refunded.

    Refunds need the stored OpKey and close 3 hours before the workshop.
    """
    invoice_id_var.set(invoice_id)
    invoice = InvoiceRepository(db).get_by_id(invoice_id)
    if invoice is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Invoice not found")

    if invoice.status != INVOICE_STATUS_PAID:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Refund is only possible for paid invoices",
        )

    window_open = refund_window_open(invoice.workshop_date)
    has_key = bool(invoice.robokassa_op_key)
    hours_left = hours_until(invoice.workshop_date) if invoice.workshop_date is not None else 0.0

    if not window_open:
        message = "Refund window closed: less than 3 hours before the workshop"
    elif not has_key:
        message = "Refund unavailable: payment operation key is not recorded yet"
    else:
        message = "Refund available"

    return RefundCheckResponse(
        invoice_id=invoice.id,
        refund_available=window_open and has_key,
        hours_until_workshop=hours_left,
        has_operation_key=has_key,
        message=message,
    )


# ============================================================================
# Internal: out-of-band status check and pending sync
# ============================================================================


def _status_response(
    invoice: Invoice, message: str, state_code: Optional[str] = None
) -> PaymentStatusResponse:
    return PaymentStatusResponse(
        invoice_id=invoice.id,
        status=invoice.status,
        paid_at=invoice.paid_at,
        provider_state_code=state_code,
        has_operation_key=bool(invoice.robokassa_op_key),
        message=message,
    )


def _settlement_event(invoice: Invoice) -> SettlementEvent:
    return SettlementEvent(
        invoice_id=invoice.id,
        participant_id=invoice.participant_id,
        status=invoice.status,
        workshop_id=invoice.workshop_id,
    )


@router.get(
    "/invoices/{invoice_id}/status",
    response_model=PaymentStatusResponse,
    dependencies=[Depends(require_internal_token)],
)
async def check_payment_status(
    invoice_id: str,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
    enricher: OperationKeyEnricher = Depends(get_enricher),
    notifier: EventNotifier = Depends(get_notifier),
) -> PaymentStatusResponse:
    """Ask Robokassa for the payment state of an invoice.

    A pending invoice whose operation is complete is settled here, with
    the same amount check and conditional write as the webhook. A paid
    invoice without an OpKey gets one backfilled; provider failures on
    that path only leave the key missing.

    Raises:
        HTTPException 404: Invoice not found
        HTTPException 400: Pending invoice has no Robokassa InvId
        HTTPException 409: Paid amount differs or invoice is no longer payable
        HTTPException 502: Robokassa did not give a usable answer
        HTTPException 500: Provider misconfigured or store failure
    """
    invoice_id_var.set(invoice_id)
    invoice = InvoiceRepository(db).get_by_id(invoice_id)
    if invoice is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Invoice not found")

    if invoice.status == INVOICE_STATUS_CANCELLED:
        return _status_response(invoice, "Invoice is cancelled")
    if invoice.status == INVOICE_STATUS_PAID and invoice.robokassa_op_key:
        return _status_response(invoice, "Invoice is paid")

    is_paid = invoice.status == INVOICE_STATUS_PAID
    try:
        check = await PaymentStatusChecker(db, enricher).check(invoice)
    except (ProviderInvoiceMissing, ProviderUnavailable) as e:
        if is_paid:
            logger.warning("OPKEY_BACKFILL_FAILED", extra={"reason": str(e)})
            return _status_response(invoice, "Invoice is paid")
        if isinstance(e, ProviderInvoiceMissing):
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail="Invoice has no Robokassa InvId yet",
            )
        logger.warning("PAYMENT_STATUS_PROVIDER_UNAVAILABLE", extra={"reason": str(e)})
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail="Robokassa operation state is unavailable",
        )
    except (RobokassaConfigError, ValueError) as e:
        logger.error("PAYMENT_STATUS_MISCONFIG", extra={"error_type": type(e).__name__})
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Payment provider is not properly configured",
        )
    except AmountMismatch as e:
        logger.warning(
            "PAYMENT_STATUS_AMOUNT_MISMATCH",
            extra={
                "expected_amount": str(e.expected),
                "received_amount": str(e.received),
                "FRAUD_FLAG": True,
            },
        )
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="Paid amount does not match the invoice",
        )
    except InvoiceNotPayable as e:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=f"Invoice is not payable (status={e.status})",
        )
    except StoreError:
        logger.error("PAYMENT_STATUS_STORE_ERROR", exc_info=True)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Invoice store is unavailable",
        )

    if check.settled_now:
        background_tasks.add_task(publish_settlement, notifier, _settlement_event(check.invoice))
        message = "Payment confirmed by Robokassa"
    elif check.invoice.status == INVOICE_STATUS_PAID:
        message = "Invoice is paid"
    else:
        message = "Payment is not confirmed yet"

    return _status_response(check.invoice, message, check.state_code)


@router.post(
    "/invoices/sync-pending",
    response_model=SyncSummary,
    dependencies=[Depends(require_internal_token)],
)
async def sync_pending_invoices(
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
    enricher: OperationKeyEnricher = Depends(get_enricher),
    notifier: EventNotifier = Depends(get_notifier),
) -> SyncSummary:
    """Reconcile the newest pending invoices with Robokassa.

    Each invoice is checked independently; one failure is counted and the
    batch continues. Only a provider misconfiguration aborts the run.
    """
    checker = PaymentStatusChecker(db, enricher)
    summary = SyncSummary()

    for invoice in InvoiceRepository(db).list_pending_with_provider_id(limit=SYNC_BATCH_LIMIT):
        summary.checked += 1
        try:
            check = await checker.check(invoice)
        except (RobokassaConfigError, ValueError) as e:
            logger.error("PAYMENT_SYNC_MISCONFIG", extra={"error_type": type(e).__name__})
            raise HTTPException(
                status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
                detail="Payment provider is not properly configured",
            )
        except SettlementError as e:
            summary.failed += 1
            logger.warning(
                "PAYMENT_SYNC_INVOICE_FAILED",
                extra={"sync_invoice_id": invoice.id, "error_type": type(e).__name__},
            )
            continue

        if check.settled_now:
            summary.updated += 1
            summary.updated_invoices.append(invoice.id)
            background_tasks.add_task(publish_settlement, notifier, _settlement_event(check.invoice))

        if SYNC_REQUEST_INTERVAL:
            await asyncio.sleep(SYNC_REQUEST_INTERVAL)

    logger.info(
        "PAYMENT_SYNC_COMPLETED",
        extra={"checked": summary.checked, "updated": summary.updated, "failed": summary.failed},
    )
    return summary
