"""Pytest configuration and fixtures."""

import sys
from pathlib import Path
# Inject sys.path for reliable pytest imports
sys.path.insert(0, str(Path(__file__).resolve().parents[1]))  # => .../apps/api

import hashlib
import uuid
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

import httpx
import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from waxhands_api.billing.notifier import SettlementEvent
from waxhands_api.billing.robokassa import RobokassaClient
from waxhands_api.config.env import AppSettings, RobokassaSettings
from waxhands_api.db.models import Base, Invoice
from waxhands_api.db.session import get_db
from waxhands_api.main import create_app

TEST_MERCHANT_LOGIN = "waxhands.ru"
TEST_PASSWORD_1 = "test-password-one"
TEST_PASSWORD_2 = "test-password-two"
TEST_INTERNAL_TOKEN = "internal-test-token"

OPSTATE_XML_TEMPLATE = """<?xml version="1.0" encoding="utf-8"?>
<OperationStateResponse xmlns="http://merchant.roboxchange.com/WebService/">
  <Result><Code>{code}</Code><Description>{description}</Description></Result>
  <State><Code>{state_code}</Code><RequestDate>2026-10-19T10:00:00+03:00</RequestDate></State>
  <Info><IncCurrLabel>BankCard</IncCurrLabel><IncSum>{out_sum}</IncSum><OutSum>{out_sum}</OutSum><OpKey>{op_key}</OpKey></Info>
</OperationStateResponse>"""


def opstate_xml(
    op_key: str = "OPKEY-123",
    code: str = "0",
    description: str = "",
    state_code: str = "100",
    out_sum: str = "1500.00",
) -> str:
    return OPSTATE_XML_TEMPLATE.format(
        code=code, description=description, op_key=op_key, state_code=state_code, out_sum=out_sum
    )


def md5_upper(payload: str) -> str:
    return hashlib.md5(payload.encode("utf-8")).hexdigest().upper()


def sign_result(out_sum: str, inv_id: str, password2: str = TEST_PASSWORD_2) -> str:
    """ResultURL signature as Robokassa computes it."""
    return md5_upper(f"{out_sum}:{inv_id}:{password2}")


def sign_success(out_sum: str, inv_id: str, password1: str = TEST_PASSWORD_1) -> str:
    """SuccessURL signature as Robokassa computes it."""
    return md5_upper(f"{out_sum}:{inv_id}:{password1}")


class RecordingNotifier:
    """Notifier test double that keeps published events."""

    def __init__(self, fail: bool = False):
        self.events: list[SettlementEvent] = []
        self.fail = fail

    def publish(self, event: SettlementEvent) -> None:
        if self.fail:
            raise ConnectionError("redis is down")
        self.events.append(event)


@pytest.fixture
def robokassa_settings() -> RobokassaSettings:
    return RobokassaSettings(
        merchant_login=TEST_MERCHANT_LOGIN,
        password1=TEST_PASSWORD_1,
        password2=TEST_PASSWORD_2,
        test_mode=True,
        opstate_timeout=0.5,
    )


@pytest.fixture
def opstate_requests() -> list[httpx.Request]:
    """Requests seen by the fake OpStateExt service."""
    return []


@pytest.fixture
def opstate_reply() -> dict:
    """What the fake OpStateExt service answers; tests may replace "body" or set "error"."""
    return {"status": 200, "body": opstate_xml(), "error": None}


@pytest.fixture
def robokassa_client(
    robokassa_settings: RobokassaSettings,
    opstate_requests: list[httpx.Request],
    opstate_reply: dict,
) -> RobokassaClient:
    """Robokassa client whose OpStateExt calls hit an in-process fake."""

    def handler(request: httpx.Request) -> httpx.Response:
        opstate_requests.append(request)
        if opstate_reply["error"] is not None:
            raise opstate_reply["error"]
        return httpx.Response(opstate_reply["status"], text=opstate_reply["body"])

    return RobokassaClient(robokassa_settings, transport=httpx.MockTransport(handler))


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture(scope="function")
def db_session() -> Session:
    """
    Create a fresh in-memory SQLite database session for each test.
    """
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)

    SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)
    session = SessionLocal()

    try:
        yield session
        session.rollback()
    finally:
        session.close()
        Base.metadata.drop_all(engine)
        engine.dispose()


@pytest.fixture
def make_invoice(db_session: Session) -> Callable[..., Invoice]:
    """Factory for persisted invoices."""

    def _make(
        invoice_id: Optional[str] = None,
        amount: str = "1500.00",
        status: str = "pending",
        provider_invoice_id: Optional[str] = None,
        workshop_date: Optional[datetime] = None,
        **kwargs,
    ) -> Invoice:
        invoice = Invoice(
            id=invoice_id or str(uuid.uuid4()),
            provider_invoice_id=provider_invoice_id,
            workshop_id=kwargs.pop("workshop_id", "workshop-1"),
            workshop_date=workshop_date or datetime.now(timezone.utc) + timedelta(days=2),
            participant_id=kwargs.pop("participant_id", "parent-1"),
            amount=amount,
            status=status,
            **kwargs,
        )
        db_session.add(invoice)
        db_session.commit()
        db_session.refresh(invoice)
        return invoice

    return _make


@pytest.fixture
def app_settings(robokassa_settings: RobokassaSettings) -> AppSettings:
    return AppSettings(
        robokassa=robokassa_settings,
        success_page_url="https://waxhands.ru/payment/success",
        fail_page_url="https://waxhands.ru/payment/fail",
        internal_api_token=TEST_INTERNAL_TOKEN,
        cors_allowed_origins=["http://localhost:3000"],
    )


@pytest.fixture
def app(
    app_settings: AppSettings,
    robokassa_client: RobokassaClient,
    notifier: RecordingNotifier,
    db_session: Session,
) -> FastAPI:
    """Application wired to test doubles, with get_db overridden."""
    application = create_app(app_settings, robokassa=robokassa_client, notifier=notifier)

    def override_get_db():
        try:
            yield db_session
        finally:
            pass  # Don't close - db_session fixture will handle it

    application.dependency_overrides[get_db] = override_get_db
    yield application
    application.dependency_overrides.clear()


@pytest.fixture
def test_client(app: FastAPI) -> TestClient:
    return TestClient(app)
