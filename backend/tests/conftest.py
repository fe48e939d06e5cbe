"""Pytest fixtures: SQLite database, in-memory payment gateway and a recording dispatcher."""
import json
import os
from datetime import datetime, timedelta, timezone

os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("CRON_SECRET", "test-cron-secret")

import pytest
from sqlalchemy import create_engine, event
from sqlalchemy.orm import sessionmaker
from fastapi.testclient import TestClient

from groupbooking.config import settings
from groupbooking.database import Base, get_db, utcnow
from groupbooking.main import app
from groupbooking.services import gateway as gw
from groupbooking.services.gateway import (
    Authorization,
    GatewayError,
    IntentState,
    InvalidSignature,
    PaymentGateway,
    event_from_payload,
    get_gateway,
)
from groupbooking.services.notifications import NotificationDispatcher, get_dispatcher

# Import all models so they register with Base.metadata
from groupbooking.models.owner import Owner                          # noqa: F401
from groupbooking.models.event import Event                          # noqa: F401
from groupbooking.models.payment import Payment                      # noqa: F401
from groupbooking.models.payment_transition import PaymentTransition  # noqa: F401
from groupbooking.models.waiting_list import WaitingListEntry        # noqa: F401

SQLITE_URL = "sqlite:///./test.db"
WEBHOOK_SIGNATURE = "t=1,v1=test"
CRON_HEADERS = {"x-cron-secret": settings.CRON_SECRET}


class FakeGateway(PaymentGateway):
    """In-memory gateway whose intents move like manual-capture PaymentIntents."""

    def __init__(self):
        self.intents: dict[str, dict] = {}
        self.calls: list[tuple[str, str]] = []
        self.authorize_error = None
        self.capture_error = None
        self.release_error = None
        self._seq = 0

    def authorize(self, amount_cents, application_fee_cents, account_id, metadata, idempotency_key):
        self.calls.append(("authorize", idempotency_key))
        if self.authorize_error:
            raise self.authorize_error
        self._seq += 1
        ref = f"pi_test_{self._seq}"
        self.intents[ref] = {
            "status": gw.REQUIRES_PAYMENT_METHOD,
            "account_id": account_id,
            "amount": amount_cents,
            "application_fee": application_fee_cents,
            "metadata": metadata,
            "charge_ref": None,
            "refunded": False,
        }
        return Authorization(reference=ref, client_secret=f"{ref}_secret_abc")

    def place_hold(self, reference):
        """The guest completed the card step."""
        self.intents[reference]["status"] = gw.REQUIRES_CAPTURE

    def retrieve(self, reference, account_id):
        self.calls.append(("retrieve", reference))
        intent = self.intents.get(reference)
        if intent is None:
            raise GatewayError(f"No such payment_intent: {reference}")
        return IntentState(reference=reference, status=intent["status"], charge_ref=intent["charge_ref"])

    def capture(self, reference, account_id, idempotency_key):
        self.calls.append(("capture", reference))
        if self.capture_error:
            raise self.capture_error
        intent = self.intents[reference]
        if intent["status"] not in (gw.REQUIRES_CAPTURE, gw.SUCCEEDED):
            raise GatewayError(f"Intent {reference} is {intent['status']}")
        intent["status"] = gw.SUCCEEDED
        intent["charge_ref"] = f"ch_{reference}"
        return intent["charge_ref"]

    def release(self, reference, account_id, reason):
        self.calls.append(("release", reference))
        if self.release_error:
            raise self.release_error
        intent = self.intents[reference]
        if intent["status"] == gw.SUCCEEDED:
            raise GatewayError(f"Intent {reference} is already captured")
        intent["status"] = gw.CANCELED

    def refund(self, reference, account_id, charge_ref, reason):
        self.calls.append(("refund", reference))
        self.intents[reference]["refunded"] = True

    def parse_webhook(self, payload, signature):
        if signature != WEBHOOK_SIGNATURE:
            raise InvalidSignature("Signature mismatch")
        return event_from_payload(json.loads(payload))

    def count(self, operation: str) -> int:
        return sum(1 for op, _ in self.calls if op == operation)


class RecordingDispatcher(NotificationDispatcher):
    """Keeps every message instead of sending it."""

    def __init__(self):
        self.sent = []
        self.fail = False

    def send(self, message):
        if self.fail:
            raise RuntimeError("dispatcher down")
        self.sent.append(message)

    def of_kind(self, kind: str) -> list:
        return [m for m in self.sent if m.kind == kind]


@pytest.fixture(scope="function")
def db_engine():
    """Create a fresh SQLite engine for each test."""
    # Writers from concurrent test threads wait on the lock instead of failing.
    engine = create_engine(SQLITE_URL, connect_args={"check_same_thread": False, "timeout": 30})

    # Enable WAL mode for better concurrency
    @event.listens_for(engine, "connect")
    def _set_sqlite_pragma(dbapi_conn, connection_record):
        cursor = dbapi_conn.cursor()
        cursor.execute("PRAGMA journal_mode=WAL")
        cursor.close()

    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    yield engine
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture(scope="function")
def db(db_engine):
    """Yield a database session on the test engine."""
    TestingSession = sessionmaker(autocommit=False, autoflush=False, bind=db_engine)
    session = TestingSession()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture(scope="function")
def gateway():
    return FakeGateway()


@pytest.fixture(scope="function")
def dispatcher():
    return RecordingDispatcher()


@pytest.fixture(scope="function")
def client(db_engine, gateway, dispatcher):
    """FastAPI TestClient with the database, gateway and dispatcher overridden."""
    TestingSession = sessionmaker(autocommit=False, autoflush=False, bind=db_engine)

    def _override_get_db():
        session = TestingSession()
        try:
            yield session
        finally:
            session.close()

    app.dependency_overrides[get_db] = _override_get_db
    app.dependency_overrides[get_gateway] = lambda: gateway
    app.dependency_overrides[get_dispatcher] = lambda: dispatcher
    with TestClient(app) as c:
        yield c
    app.dependency_overrides.clear()


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------
def send_webhook(client: TestClient, event_type: str, obj: dict, account: str = None,
                 signature: str = WEBHOOK_SIGNATURE):
    """POST a gateway event the way Stripe delivers it."""
    body = {"id": f"evt_{event_type}", "type": event_type, "data": {"object": obj}}
    if account:
        body["account"] = account
    headers = {"stripe-signature": signature} if signature else {}
    return client.post("/api/webhooks/gateway", content=json.dumps(body), headers=headers)


def create_test_owner(client: TestClient, name: str = "Ana Organizer", account: str = "acct_test_1",
                      onboarded: bool = True) -> dict:
    """Helper: POST /api/owners and, by default, finish onboarding via account.updated."""
    resp = client.post("/api/owners/", json={
        "name": name,
        "email": f"{name.split()[0].lower()}@example.com",
        "stripe_account_id": account,
    })
    assert resp.status_code == 201, resp.text
    owner = resp.json()
    if onboarded:
        resp = send_webhook(client, gw.ACCOUNT_UPDATED, {
            "id": account,
            "charges_enabled": True,
            "payouts_enabled": True,
            "details_submitted": True,
        })
        assert resp.status_code == 200, resp.text
        owner["onboarding_complete"] = True
    return owner


def event_payload(owner_id: str, name: str = "Sunset Kayak Tour", price: str = "20.00",
                  min_participants: int = 2, max_participants: int = 3,
                  deadline_in_hours: int = 24, starts_in_hours: int = 72) -> dict:
    now = datetime.now(timezone.utc)
    return {
        "owner_id": owner_id,
        "name": name,
        "price": price,
        "min_participants": min_participants,
        "max_participants": max_participants,
        "starts_at": (now + timedelta(hours=starts_in_hours)).isoformat(),
        "payment_deadline": (now + timedelta(hours=deadline_in_hours)).isoformat(),
    }


def create_test_event(client: TestClient, owner_id: str, **kwargs) -> dict:
    """Helper: POST /api/events and return response JSON."""
    resp = client.post("/api/events/", json=event_payload(owner_id, **kwargs))
    assert resp.status_code == 201, resp.text
    return resp.json()


def start_checkout(client: TestClient, event_id: str, name: str, email: str = None):
    return client.post("/api/payments/checkout", json={
        "event_id": event_id,
        "guest_name": name,
        "guest_email": email or f"{name.lower()}@example.com",
    })


def book(client: TestClient, gateway: FakeGateway, event_id: str, name: str, email: str = None) -> dict:
    """Helper: checkout, place the card hold and confirm through the fast path."""
    resp = start_checkout(client, event_id, name, email)
    assert resp.status_code == 201, resp.text
    checkout = resp.json()
    gateway.place_hold(checkout["authorization_reference"])
    resp = client.post("/api/payments/mark-paid",
                       json={"authorization_reference": checkout["authorization_reference"]})
    assert resp.status_code == 200, resp.text
    return checkout


def expire_deadline(db, event_id: str) -> None:
    """Move the payment deadline into the past."""
    db.query(Event).filter(Event.event_id == event_id).update(
        {"payment_deadline": utcnow() - timedelta(minutes=1)}, synchronize_session=False,
    )
    db.commit()


def load_payment(db, payment_id: str) -> Payment:
    db.expire_all()
    return db.query(Payment).filter(Payment.payment_id == payment_id).one()


def load_event(db, event_id: str) -> Event:
    db.expire_all()
    return db.query(Event).filter(Event.event_id == event_id).one()
