"""Shared fixtures: a throwaway SQLite order store and fake collaborators.

Environment variables are set before any `lumira` import because settings
and the engine are created at import time.
"""

import os
import tempfile
from pathlib import Path

_DB_PATH = Path(tempfile.gettempdir()) / f"lumira-tests-{os.getpid()}.sqlite3"
os.environ["POSTGRES_DSN"] = f"sqlite:///{_DB_PATH}"
os.environ["API_KEY"] = "test-api-key"
os.environ["STRIPE_SECRET_KEY"] = "sk_test_dummy"
os.environ["STRIPE_WEBHOOK_SECRET"] = "whsec_test_secret"
os.environ["CALLBACK_WEBHOOK_SECRET"] = "callback-test-secret"
os.environ["DISPATCH_URL"] = ""
os.environ["DISPATCH_SECRET"] = "dispatch-test-secret"
os.environ["EXPERT_ALERT_EMAILS"] = ""
os.environ["RESEND_API_KEY"] = ""
os.environ["OPENAI_API_KEY"] = ""
os.environ["OTEL_EXPORTER_OTLP_ENDPOINT"] = ""

import copy  # noqa: E402

import pytest  # noqa: E402

from lumira.common.db import Base, SessionLocal, engine  # noqa: E402
from lumira.common.state_machine import OrderStatus  # noqa: E402
from lumira.common.tasks import BackgroundRunner  # noqa: E402
from lumira.services.generation.orchestrator import GenerationOrchestrator  # noqa: E402
from lumira.services.notification import models as notification_models  # noqa: E402,F401
from lumira.services.notification.service import NotificationService  # noqa: E402
from lumira.services.orders.store import OrderStore  # noqa: E402


ORACLE_RESPONSE = {
    "pdf_content": {
        "introduction": "Your path opens under a quiet light.",
        "archetype_reveal": "You carry the energy of the Guide.",
        "sections": [
            {"domain": "mission", "title": "Your mission", "content": "Teach through presence."},
            {"domain": "relations", "title": "Your bonds", "content": "Choose depth over number."},
        ],
        "karmic_insights": ["Patience is earned."],
        "life_mission": "Light the way for others.",
        "rituals": [{"name": "Dawn breath", "description": "Morning ritual", "instructions": ["Breathe", "Listen"]}],
        "conclusion": "Walk gently.",
    },
    "synthesis": {
        "archetype": "Le Guide",
        "keywords": ["clarity", "patience"],
        "emotional_state": "calm",
        "key_blockage": "self-doubt",
    },
    "timeline": [
        {"day": day, "title": f"Day {day}", "action": "Write one page", "mantra": "I am here", "actionType": "JOURNALING"}
        for day in range(1, 8)
    ],
}


class FakeOracle:
    def __init__(self, response=None, error: Exception | None = None, hook=None) -> None:
        self.response = copy.deepcopy(ORACLE_RESPONSE) if response is None else response
        self.error = error
        self.hook = hook
        self.calls: list[tuple[dict, dict]] = []

    async def generate(self, profile, order_context):
        self.calls.append((profile, order_context))
        if self.hook is not None:
            self.hook(order_context)
        if self.error is not None:
            raise self.error
        return self.response


class FakeRenderer:
    def __init__(self, error: Exception | None = None) -> None:
        self.error = error
        self.calls: list[tuple[str, dict]] = []

    async def render(self, template_name, data):
        self.calls.append((template_name, data))
        if self.error is not None:
            raise self.error
        return b"%PDF-1.7 fake reading"


class FakeStorage:
    def __init__(self, error: Exception | None = None) -> None:
        self.error = error
        self.uploads: list[tuple[str, int]] = []

    async def upload(self, data, key):
        if self.error is not None:
            raise self.error
        self.uploads.append((key, len(data)))
        return f"https://cdn.test/{key}"


class RecordingSender:
    """Stands in for the Resend client call."""

    def __init__(self, fail: bool = False) -> None:
        self.fail = fail
        self.sent: list[dict] = []

    def __call__(self, params):
        if self.fail:
            raise RuntimeError("mail provider down")
        self.sent.append(params)
        return {"id": f"email-{len(self.sent)}"}


@pytest.fixture(autouse=True)
def db_tables():
    """Create all tables for one test and drop them afterwards."""

    Base.metadata.create_all(engine)
    yield
    Base.metadata.drop_all(engine)


@pytest.fixture
def store() -> OrderStore:
    return OrderStore(SessionLocal)


@pytest.fixture
def sender() -> RecordingSender:
    return RecordingSender()


@pytest.fixture
def notifier(sender) -> NotificationService:
    return NotificationService(SessionLocal, sender=sender)


@pytest.fixture
def runner() -> BackgroundRunner:
    return BackgroundRunner()


@pytest.fixture
def make_orchestrator(store, notifier):
    def _make(oracle=None, renderer=None, storage=None, auto_complete=False):
        return GenerationOrchestrator(
            store,
            oracle or FakeOracle(),
            renderer or FakeRenderer(),
            storage or FakeStorage(),
            notifier,
            auto_complete=auto_complete,
        )

    return _make


@pytest.fixture
def make_order(store):
    """Create an order and walk it forward to the requested status."""

    def _make(status: str = OrderStatus.PAID, email: str = "client@example.com", **kwargs):
        order = store.create_order(
            email=email,
            first_name=kwargs.pop("first_name", "Alice"),
            last_name=kwargs.pop("last_name", "Martin"),
            level=kwargs.pop("level", 2),
            amount_cents=kwargs.pop("amount_cents", 4700),
            currency=kwargs.pop("currency", "eur"),
            status=OrderStatus.PENDING if status == OrderStatus.PENDING else OrderStatus.PAID,
            **kwargs,
        )
        path = {
            OrderStatus.PENDING: [],
            OrderStatus.PAID: [],
            OrderStatus.PROCESSING: [OrderStatus.PROCESSING],
            OrderStatus.AWAITING_VALIDATION: [OrderStatus.PROCESSING, OrderStatus.AWAITING_VALIDATION],
            OrderStatus.COMPLETED: [
                OrderStatus.PROCESSING,
                OrderStatus.AWAITING_VALIDATION,
                OrderStatus.COMPLETED,
            ],
            OrderStatus.FAILED: [OrderStatus.FAILED],
        }[status]
        for step in path:
            values = None
            if step == OrderStatus.AWAITING_VALIDATION:
                values = {"generated_content": {"archetype": "Le Sage", "reading": "Original reading"}}
            if step == OrderStatus.FAILED:
                values = {"error_log": "seeded failure"}
            order = store.transition(order.id, step, "test_setup", values=values)
        return order

    return _make
