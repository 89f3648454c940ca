"""
Shared fixtures for the deal service test-suite.

Tests run against in-memory SQLite (StaticPool), a frozen clock that tests
advance explicitly, a recording chat gateway and a mocked crypto processor.
Environment is pinned before any application module is imported because
Config reads it at import time.
"""

import os
import tempfile

os.environ["DATABASE_URL"] = "sqlite://"
os.environ["ENVIRONMENT"] = "development"
os.environ["AGENT_OPERATOR_IDS"] = "900"
os.environ["AGENT_EMAIL"] = "agent@escrow.test"
os.environ["NOWPAYMENTS_IPN_SECRET"] = "test_ipn_secret"
os.environ["NOWPAYMENTS_API_KEY"] = "test_api_key"
os.environ["CHAT_SERVICE_URL"] = ""
os.environ["HOLD_REQUIRED_PLATFORMS"] = "youtube"
os.environ["HOLDING_PERIOD_DAYS"] = "7"
os.environ["AUDIT_LOG_FILE"] = os.path.join(tempfile.gettempdir(), "deal_audit_test.log")

import logging
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import List
from unittest.mock import Mock

import pytest

from database import SessionLocal, engine as db_engine
from models import Base
from services.deal_authorization import ActingParty
from services.deal_lifecycle_engine import CreateDealRequest, DealLifecycleEngine
from services.notification_service import ChatGateway, DealNotification, NotificationEmitter
from services.nowpayments_service import NowPaymentsService
from services.payment_rails import CardRail, CryptoRail, PaymentRailRegistry

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)

BUYER_ID = 101
SELLER_ID = 202
STRANGER_ID = 303
AGENT_ID = 900

START_TIME = datetime(2025, 1, 6, 12, 0, 0, tzinfo=timezone.utc)


class FrozenClock:
    """Engine clock that only moves when a test says so"""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class RecordingChatGateway(ChatGateway):
    """Collects delivered notifications; can be switched to fail every delivery"""

    def __init__(self):
        self.messages: List[DealNotification] = []
        self.fail = False

    def post_system_message(self, notification: DealNotification) -> None:
        if self.fail:
            raise ConnectionError("chat service unavailable")
        self.messages.append(notification)

    @property
    def categories(self) -> List[str]:
        return [m.category.value for m in self.messages]


def fake_create_payment(**kwargs):
    """Echo the invoice request back the way NOWPayments answers it"""
    return {
        "payment_id": f"np_{kwargs['order_id']}",
        "payment_status": "waiting",
        "order_id": kwargs["order_id"],
        "price_amount": float(kwargs["price_amount"]),
        "price_currency": "usd",
        "pay_currency": kwargs.get("pay_currency") or "btc",
        "pay_amount": "0.00017",
        "pay_address": "bc1qtestaddress",
        "invoice_url": "https://nowpayments.io/payment/?iid=4242",
    }


@pytest.fixture(autouse=True)
def database():
    """Fresh schema for every test"""
    Base.metadata.create_all(bind=db_engine)
    yield db_engine
    Base.metadata.drop_all(bind=db_engine)


@pytest.fixture
def db_session():
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def clock():
    return FrozenClock(START_TIME)


@pytest.fixture
def chat_gateway():
    return RecordingChatGateway()


@pytest.fixture
def crypto_client():
    client = Mock(spec=NowPaymentsService)
    client.create_payment.side_effect = fake_create_payment
    return client


@pytest.fixture
def deal_engine(clock, chat_gateway, crypto_client):
    return DealLifecycleEngine(
        session_factory=SessionLocal,
        clock=clock,
        rails=PaymentRailRegistry([CardRail(), CryptoRail(client=crypto_client)]),
        emitter=NotificationEmitter(chat_gateway),
    )


@pytest.fixture
def buyer():
    return ActingParty(user_id=BUYER_ID)


@pytest.fixture
def seller():
    return ActingParty(user_id=SELLER_ID)


@pytest.fixture
def stranger():
    return ActingParty(user_id=STRANGER_ID)


@pytest.fixture
def agent():
    return ActingParty(user_id=AGENT_ID, is_agent=True)


def make_create_request(**overrides) -> CreateDealRequest:
    fields = dict(
        seller_id=SELLER_ID,
        channel_id="listing-42",
        channel_title="Daily Fitness Tips",
        channel_price=Decimal("100.00"),
        escrow_fee=Decimal("10.00"),
        payment_methods=[{"id": "paypal", "name": "PayPal", "category": "online"}],
        transaction_type="safest",
        buyer_email="buyer@example.com",
        listing_platform="instagram",
    )
    fields.update(overrides)
    return CreateDealRequest(**fields)


class DealFlow:
    """Drives a deal through the happy path up to a requested milestone"""

    def __init__(self, engine: DealLifecycleEngine, buyer: ActingParty, seller: ActingParty):
        self.engine = engine
        self.buyer = buyer
        self.seller = seller

    def create(self, **overrides) -> int:
        return self.engine.create_deal(self.buyer, make_create_request(**overrides))["deal"]["id"]

    def agreed(self, **overrides) -> int:
        deal_id = self.create(**overrides)
        self.engine.seller_agree(self.seller, deal_id)
        return deal_id

    def fee_paid(self, **overrides) -> int:
        deal_id = self.agreed(**overrides)
        self.engine.pay_transaction_fee(self.buyer, deal_id, "card", "buyer")
        return deal_id

    def rights_given(self, **overrides) -> int:
        deal_id = self.fee_paid(**overrides)
        self.engine.confirm_rights(self.seller, deal_id)
        return deal_id

    def promoted(self, **overrides) -> int:
        deal_id = self.rights_given(**overrides)
        self.engine.confirm_primary_owner(self.seller, deal_id)
        return deal_id

    def buyer_paid(self, **overrides) -> int:
        deal_id = self.promoted(**overrides)
        self.engine.confirm_payment_to_seller(self.buyer, deal_id)
        return deal_id


@pytest.fixture
def flow(deal_engine, buyer, seller):
    return DealFlow(deal_engine, buyer, seller)


@pytest.fixture
def api_client(deal_engine):
    """HTTP client wired to the test engine"""
    from fastapi.testclient import TestClient

    from handlers.deals import get_deal_engine
    from webhook_server import app

    app.dependency_overrides[get_deal_engine] = lambda: deal_engine
    try:
        yield TestClient(app)
    finally:
        app.dependency_overrides.clear()
