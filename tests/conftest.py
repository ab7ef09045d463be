"""
Pytest configuration and shared fixtures.

Test settings are placed in the environment before any tillsms import, so the
engine in tillsms.storage binds to a throwaway SQLite file.
"""

import json
import os
import tempfile

import httpx
import pytest

_TEST_DIR = tempfile.mkdtemp(prefix="tillsms-tests-")
os.environ.setdefault("DATABASE_URL", f"sqlite:///{os.path.join(_TEST_DIR, 'test.db')}")
os.environ.setdefault("SESSION_SECRET", "test-session-secret")
os.environ.setdefault("TX_ALLOWED_EMAILS", "staff@example.com, Ops@Example.com")
os.environ.setdefault("FLUXSMS_API_KEY", "test-api-key")
os.environ.setdefault("LOG_LEVEL", "WARNING")

# Clear settings cache before any app imports to ensure test env vars are used
from tillsms.config import get_settings
get_settings.cache_clear()

from fastapi.testclient import TestClient
from sqlalchemy import Column, Float, MetaData, String, Table, insert

from tillsms.config import settings
from tillsms.fluxsms import FluxSmsClient, get_sms_client
from tillsms.phone import to_international
from tillsms.storage import Base, SessionLocal, engine, insert_campaign, insert_messages
from tillsms.utils import sign_session


STAFF_EMAIL = "staff@example.com"

# Stand-in for the payment system's transactions table
upstream_metadata = MetaData()
transactions_table = Table(
    "transactions",
    upstream_metadata,
    Column("id", String, primary_key=True),
    Column("phone_number", String),
    Column("amount", Float),
    Column("status", String),
    Column("reference", String),
    Column("till_number", String),
    Column("created_at", String),
)


class FakeFluxSms:
    """
    In-process FluxSMS double served through httpx.MockTransport.

    - rejected: local phones the bulk send reports as failed
    - unreachable: message ids whose status lookup returns HTTP 500
    - delivery: message id -> smsstatus body (default: delivered, code 32)
    """

    def __init__(self):
        self.requests = []
        self.rejected = set()
        self.unreachable = set()
        self.delivery = {}
        self.balance = 250
        self._next_id = 0

    def _message_id(self) -> str:
        self._next_id += 1
        return f"flux-{self._next_id}"

    def handler(self, request: httpx.Request) -> httpx.Response:
        payload = json.loads(request.content)
        path = request.url.path
        self.requests.append((path, payload))

        if path == "/bulksms":
            responses = []
            for phone in payload["phones"]:
                if phone in self.rejected:
                    responses.append({
                        "response-code": 1003,
                        "response-description": "Invalid mobile number",
                        "mobile": to_international(phone),
                    })
                else:
                    responses.append({
                        "response-code": 200,
                        "response-description": "Success",
                        "mobile": to_international(phone),
                        "messageid": self._message_id(),
                    })
            return httpx.Response(200, json={"responses": responses})

        if path == "/sendsms":
            return httpx.Response(200, json={
                "response-code": 200,
                "response-description": "Success",
                "mobile": to_international(payload["phone"]),
                "messageid": self._message_id(),
            })

        if path == "/smsstatus":
            message_id = payload["message_id"]
            if message_id in self.unreachable:
                return httpx.Response(500, json={"error": "status lookup failed"})
            return httpx.Response(200, json=self.delivery.get(
                message_id, {"delivery-status": 32, "delivery-description": "DeliveredToTerminal"}
            ))

        if path == "/check_sms_balance":
            return httpx.Response(200, json={"sms_balance": self.balance})

        return httpx.Response(404, json={"error": "unknown endpoint"})

    def paths(self) -> list[str]:
        return [path for path, _ in self.requests]

    def client(self, api_key: str = "test-api-key") -> FluxSmsClient:
        return FluxSmsClient(
            api_key=api_key,
            base_url="https://fluxsms.test",
            transport=httpx.MockTransport(self.handler),
        )


@pytest.fixture(scope="function")
def db():
    """Fresh schema (sms_* tables plus a transactions table) for each test."""
    Base.metadata.create_all(bind=engine)
    upstream_metadata.create_all(bind=engine)

    session = SessionLocal()
    yield session
    session.close()

    # Cleanup - drop all tables after test
    Base.metadata.drop_all(bind=engine)
    upstream_metadata.drop_all(bind=engine)


@pytest.fixture
def add_transactions(db):
    """Insert upstream transactions; missing fields get defaults."""
    counter = {"n": 0}

    def _add(*rows):
        full_rows = []
        for row in rows:
            counter["n"] += 1
            full_rows.append({
                "id": row.get("id", f"tx-{counter['n']:04d}"),
                "phone_number": row.get("phone_number", "0712345678"),
                "amount": row.get("amount", 100.0),
                "status": row.get("status", "success"),
                "reference": row.get("reference"),
                "till_number": row.get("till_number", "5001"),
                "created_at": row.get("created_at", f"2025-01-15T10:{counter['n'] % 60:02d}:00.000Z"),
            })
        db.execute(insert(transactions_table), full_rows)
        db.commit()
        return full_rows

    return _add


@pytest.fixture
def add_history(db):
    """Record prior SMS messages: add_history(("254700000001", "delivered", "2025-01-15T08:00:00.000Z"), ...)."""

    def _add(*messages):
        campaign = insert_campaign(db, name="Earlier campaign", message="Hello", status="sending")
        insert_messages(db, [
            {
                "campaign_id": campaign.id,
                "created_at": created_at,
                "phone": "0" + phone[3:],
                "phone_normalized": phone,
                "status": status,
            }
            for phone, status, created_at in messages
        ])
        db.commit()
        return campaign.id

    return _add


@pytest.fixture
def gateway():
    return FakeFluxSms()


@pytest.fixture
def client(db, gateway):
    """Staff-authenticated test client with the FluxSMS double injected."""
    from tillsms.main import app

    app.dependency_overrides[get_sms_client] = lambda: gateway.client()
    with TestClient(app) as test_client:
        test_client.cookies.set(settings.SESSION_COOKIE_NAME, sign_session(STAFF_EMAIL, settings.SESSION_SECRET))
        yield test_client
    app.dependency_overrides.clear()


@pytest.fixture
def anon_client(db):
    """Test client without a session cookie."""
    from tillsms.main import app

    with TestClient(app) as test_client:
        yield test_client
