"""
Shared fixtures: in-memory store, a dispatcher that records instead of sending, a controllable clock,
and a TestClient over an app wired to those.
"""
import asyncio

import pytest
from fastapi.testclient import TestClient

from cardshop.config import Settings
from cardshop.main import create_app
from cardshop.notifications import DispatchReceipt
from cardshop.orders import OrderLifecycleManager
from cardshop.permissions import Principal, Role
from cardshop.sessions import SessionManager
from cardshop.store import MemoryStore
from cardshop.verification import VerificationWorkflow

TEST_PIN = "4321"

ADMIN = Principal(role=Role.ADMIN)
MODERATOR = Principal(role=Role.MODERATOR)
CUSTOMER = Principal(role=Role.USER)


def run(coro):
    return asyncio.run(coro)


def make_draft(**overrides) -> dict:
    draft = {
        "customerName": "Asha Rao",
        "email": "asha@example.com",
        "cardConfig": {
            "firstName": "Asha",
            "lastName": "Rao",
            "title": "Founder",
            "company": "Rao Studio",
            "mobile": "+91 9999999999",
            "quantity": 2,
        },
        "pricing": {"total": 1499.0},
    }
    draft.update(overrides)
    return draft


class FakeClock:
    def __init__(self, now: float = 1_700_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class RecordingDispatcher:
    def __init__(self):
        self.emails: list[tuple[str, str, str]] = []
        self.sms: list[tuple[str, str]] = []
        self.fail_with: Exception | None = None

    async def send_email(self, to: str, subject: str, body: str) -> DispatchReceipt:
        if self.fail_with is not None:
            raise self.fail_with
        self.emails.append((to, subject, body))
        return DispatchReceipt(message_id=f"msg-{len(self.emails)}", provider="test")

    async def send_sms(self, to: str, body: str) -> DispatchReceipt:
        if self.fail_with is not None:
            raise self.fail_with
        self.sms.append((to, body))
        return DispatchReceipt(message_id=f"sms-{len(self.sms)}", provider="test")

    def last_code(self) -> str:
        body = self.sms[-1][1]
        return body.split("code is ")[1].split(".")[0]


def make_settings(**overrides) -> Settings:
    values = {
        "admin_pin": TEST_PIN,
        "session_secret": "test-session-secret",
        "store_backend": "memory",
        "notification_backend": "log",
    }
    values.update(overrides)
    return Settings(**values)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def settings():
    return make_settings()


@pytest.fixture
def store(clock):
    return MemoryStore(clock=clock)


@pytest.fixture
def dispatcher():
    return RecordingDispatcher()


@pytest.fixture
def workflow(store, dispatcher, settings, clock):
    return VerificationWorkflow(store, dispatcher, settings, clock=clock)


@pytest.fixture
def orders(store, dispatcher, settings, workflow):
    return OrderLifecycleManager(store, dispatcher, settings, verification=workflow)


@pytest.fixture
def sessions(store, settings, clock):
    return SessionManager(store, settings, clock=clock)


@pytest.fixture
def client(settings, store, dispatcher):
    app = create_app(settings=settings, store=store, dispatcher=dispatcher)
    return TestClient(app)


@pytest.fixture
def admin_client(client):
    resp = client.post("/admin-login", json={"pin": TEST_PIN})
    assert resp.status_code == 200
    return client
