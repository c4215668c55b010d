"""FastAPI dependencies for collaborators built by create_app().

Collaborators live on app.state and reach handlers through Depends(), so
tests swap them by passing replacements to create_app() or through
app.dependency_overrides.
"""

import logging
import secrets
from typing import Optional

from fastapi import Depends, Header, HTTPException, Request, status

from waxhands_api.billing.enrichment import OperationKeyEnricher
from waxhands_api.billing.notifier import EventNotifier
from waxhands_api.billing.robokassa import RobokassaClient
from waxhands_api.config.env import AppSettings
from waxhands_api.context import request_id_var

logger = logging.getLogger(__name__)


def get_settings(request: Request) -> AppSettings:
    return request.app.state.settings


def get_robokassa_client(request: Request) -> RobokassaClient:
    return request.app.state.robokassa


def get_enricher(request: Request) -> OperationKeyEnricher:
    return request.app.state.enricher


def get_notifier(request: Request) -> EventNotifier:
    return request.app.state.notifier


def require_internal_token(
    x_internal_token: Optional[str] = Header(None, alias="X-Internal-Token"),
    settings: AppSettings = Depends(get_settings),
) -> None:
    """Guard for endpoints called by the booking backend, not by browsers.

    Raises:
        HTTPException 503: INTERNAL_API_TOKEN is not configured
        HTTPException 401: Header missing or wrong
    """
    expected = settings.internal_api_token
    if not expected:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Internal API token is not configured",
        )

    # Constant-time comparison
    if not x_internal_token or not secrets.compare_digest(x_internal_token, expected):
        logger.warning(
            "Invalid internal token attempt",
            extra={"request_id": request_id_var.get()},
        )
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid X-Internal-Token",
            headers={"WWW-Authenticate": "Header"},
        )
