import json

import httpx
import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from ticketpay.main import app as fastapi_app
from ticketpay.database import Base
from ticketpay.models import TicketType
from ticketpay.schemas import PaymentRequest
import ticketpay.auth
import ticketpay.fx
import ticketpay.intents

# Setup test database
SQLALCHEMY_DATABASE_URL = "sqlite:///./test_temp.db"
engine = create_engine(SQLALCHEMY_DATABASE_URL, connect_args={
                       "check_same_thread": False})
TestingSessionLocal = sessionmaker(
    autocommit=False, autoflush=False, bind=engine)


@pytest.fixture(autouse=True)
def setup_db():
    Base.metadata.create_all(bind=engine)
    ticketpay.intents.create_limiter.reset()
    ticketpay.fx.LAST_GOOD_RATES.clear()
    yield
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture(autouse=True)
def provider_env(monkeypatch):
    # Unsigned webhooks unless a test opts in
    for name in ("STRIPE_WEBHOOK_SECRET", "PAYDUNYA_MASTER_KEY", "PAWAPAY_WEBHOOK_SECRET",
                 "XE_API_KEY", "FIXER_API_KEY", "FX_FALLBACK_RATE", "FX_DEFAULT_MARGIN_BPS"):
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv("PAWAPAY_API_KEY", "pawapay_test_key")
    monkeypatch.setenv("PAWAPAY_MODE", "sandbox")
    monkeypatch.setenv("SUPPORTED_CURRENCIES", "XOF")
    monkeypatch.setenv("FX_QUOTE_SECRET", "fx_test_secret")


@pytest.fixture
def db():
    session = TestingSessionLocal()
    yield session
    session.close()


@pytest.fixture
def client(monkeypatch):
    monkeypatch.setattr("ticketpay.routes.SessionLocal", TestingSessionLocal)
    monkeypatch.setattr("ticketpay.main.SessionLocal", TestingSessionLocal)
    # Bypass auth verification for tests
    fastapi_app.dependency_overrides[ticketpay.auth.verify_token] = lambda: True
    with TestClient(fastapi_app) as c:
        yield c
    fastapi_app.dependency_overrides.clear()


@pytest.fixture
def ticket_type(db):
    tt = TicketType(id="tt-standard", event_id="evt-concert", name="Standard",
                    price_minor=5000, currency="XOF")
    db.add(tt)
    db.commit()
    return tt


@pytest.fixture
def make_request(ticket_type):
    """Two standard tickets paid with mobile money B unless overridden."""
    def _make(**overrides):
        data = {
            "idempotency_key": "checkout-001",
            "event_id": "evt-concert",
            "ticket_lines": [{"ticket_type_id": "tt-standard", "quantity": 2}],
            "display_amount": 10000,
            "currency": "XOF",
            "provider": "MOBILE_MONEY_B",
            "buyer_contact": {"email": "awa@example.com", "phone": "+226 70 12 34 56"},
            "mobile_operator": "moov",
        }
        data.update(overrides)
        return PaymentRequest(**data)
    return _make


@pytest.fixture
def mock_http(mocker):
    """Route an adapter's outbound calls through ``handler``."""
    def _install(module: str, handler):
        calls = []

        def _record(request):
            calls.append(request)
            return handler(request)

        mocker.patch(f"ticketpay.{module}._client",
                     side_effect=lambda: httpx.Client(transport=httpx.MockTransport(_record)))
        return calls
    return _install


class FakePawaPay:
    """In-memory deposits endpoint: POST /deposits and GET /deposits/{id}."""

    def __init__(self):
        self.deposits = {}
        self.calls = []

    def __call__(self, request):
        if request.method == "POST":
            body = json.loads(request.content)
            self.deposits[body["depositId"]] = {
                "depositId": body["depositId"],
                "status": "ACCEPTED",
                "amount": body["amount"],
                "currency": body["currency"],
            }
            return httpx.Response(200, json={"depositId": body["depositId"], "status": "ACCEPTED"})

        deposit = self.deposits.get(request.url.path.rsplit("/", 1)[-1])
        if deposit is None:
            return httpx.Response(200, json={"status": "NOT_FOUND"})
        return httpx.Response(200, json={"status": "FOUND", "data": deposit})

    @property
    def creates(self):
        return [c for c in self.calls if c.method == "POST"]

    def settle(self, deposit_id, status="COMPLETED", amount=None):
        self.deposits[deposit_id]["status"] = status
        if amount is not None:
            self.deposits[deposit_id]["amount"] = str(amount)


@pytest.fixture
def pawapay(mock_http):
    fake = FakePawaPay()
    fake.calls = mock_http("pawapay_service", fake)
    return fake
