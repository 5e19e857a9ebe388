from __future__ import annotations

import datetime as dt
import itertools
import os
from typing import Any, Callable, Mapping

os.environ.setdefault("APP_ENV", "test")

import pytest  # noqa: E402
from sqlalchemy import create_engine  # noqa: E402
from sqlalchemy.pool import StaticPool  # noqa: E402

from app.core import cache as cache_module  # noqa: E402
from app.core.config import settings  # noqa: E402
from app.core.exceptions import RemoteResourceGoneError  # noqa: E402
from app.db import session as db_session  # noqa: E402
from app.db.base_class import Base  # noqa: E402
from app.db.session import SessionLocal  # noqa: E402
from app.models import discount_models, subscription_models, webhook_models  # noqa: E402,F401
from app.models.subscription_models import PlanType  # noqa: E402
from app.services.processor.types import (  # noqa: E402
    CreatedSubscription,
    Credential,
    OperationResult,
    PlanSpec,
    RemoteStatus,
    RevisedSubscription,
)
from app.services.subscription import (  # noqa: E402
    LifecycleOrchestrator,
    PremiumGate,
    ScheduledReconciler,
    SubscriptionStore,
)

TEST_DATABASE_URL = os.getenv("TEST_DATABASE_URL", "sqlite:///:memory:")


test_engine = create_engine(
    TEST_DATABASE_URL,
    future=True,
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)

# Ensure application code uses the test engine
settings.DATABASE_URL = TEST_DATABASE_URL  # type: ignore[attr-defined]
settings.ENV = "test"  # type: ignore[attr-defined]
db_session.engine = test_engine  # type: ignore[assignment]
SessionLocal.configure(bind=test_engine)

START = dt.datetime(2025, 2, 1, tzinfo=dt.timezone.utc)


@pytest.fixture(autouse=True)
def _reset_database_state():
    """Fresh schema and the default plan catalog for every test."""
    Base.metadata.drop_all(bind=test_engine)
    Base.metadata.create_all(bind=test_engine)
    session = SessionLocal()
    try:
        SubscriptionStore(session).ensure_default_plans()
        session.commit()
    finally:
        session.close()
    yield


class _MemoryRedis:
    """Just enough of the redis client API for the premium cache."""

    def __init__(self) -> None:
        self.data: dict[str, Any] = {}
        self.ttls: dict[str, int] = {}

    def get(self, key: str):
        return self.data.get(key)

    def setex(self, key: str, ttl: int, value: Any) -> None:
        self.data[key] = value
        self.ttls[key] = ttl

    def delete(self, key: str) -> None:
        self.data.pop(key, None)
        self.ttls.pop(key, None)


@pytest.fixture(autouse=True)
def memory_cache(monkeypatch):
    fake = _MemoryRedis()
    monkeypatch.setattr(cache_module, "_redis", fake)
    yield fake


class MutableClock:
    def __init__(self, now: dt.datetime) -> None:
        self.now = now

    def __call__(self) -> dt.datetime:
        return self.now

    def set(self, value: dt.datetime) -> None:
        self.now = value

    def advance(self, **delta: float) -> dt.datetime:
        self.now = self.now + dt.timedelta(**delta)
        return self.now


class FakeProcessor:
    """In-memory stand-in for the PayPal client.

    ``remote`` maps remote ids to PayPal statuses. ``errors`` maps an
    operation name to an exception raised on the next call of it, and
    ``hooks`` maps an operation name to a callable run at the start of the
    call (used to interleave a competing transition).
    """

    def __init__(self) -> None:
        self.calls: list[tuple[str, str | None]] = []
        self.remote: dict[str, str] = {}
        self.gone: set[str] = set()
        self.errors: dict[str, Exception] = {}
        self.hooks: dict[str, Callable[[], None]] = {}
        self.last_payment: dict[str, dt.datetime] = {}
        self.next_billing: dict[str, dt.datetime] = {}
        self.failed_payments: dict[str, int] = {}
        self.plans: list[PlanSpec] = []
        self.signature_valid = True
        self._ids = itertools.count(1)
        self._by_request: dict[str, CreatedSubscription] = {}

    def count(self, operation: str) -> int:
        return sum(1 for op, _ in self.calls if op == operation)

    def _enter(self, operation: str, remote_id: str | None = None) -> None:
        self.calls.append((operation, remote_id))
        hook = self.hooks.pop(operation, None)
        if hook is not None:
            hook()
        error = self.errors.pop(operation, None)
        if error is not None:
            raise error
        if remote_id is not None and remote_id in self.gone:
            raise RemoteResourceGoneError(operation, remote_id)

    def authenticate(self, force: bool = False) -> Credential:
        return Credential(access_token="fake", refresh_after=float("inf"))

    def create_subscription(self, plan: PlanSpec, *, user_id: int, return_url: str, cancel_url: str, request_id: str) -> CreatedSubscription:
        self._enter("create_subscription")
        if request_id in self._by_request:
            return self._by_request[request_id]
        remote_id = f"I-{next(self._ids):08d}"
        self.remote[remote_id] = "APPROVAL_PENDING"
        self.plans.append(plan)
        created = CreatedSubscription(
            remote_id=remote_id,
            approval_url=f"https://paypal.test/approve/{remote_id}",
            processor_plan_id=f"P-{remote_id}",
        )
        self._by_request[request_id] = created
        return created

    def _transition(self, operation: str, remote_id: str, target: str, blocked: set[str]) -> OperationResult:
        self._enter(operation, remote_id)
        current = self.remote.get(remote_id)
        if current == target or current in blocked:
            return OperationResult.ALREADY_IN_TARGET_STATE
        self.remote[remote_id] = target
        return OperationResult.OK

    def activate(self, remote_id: str, reason: str) -> OperationResult:
        return self._transition("activate", remote_id, "ACTIVE", {"CANCELLED", "EXPIRED"})

    def suspend(self, remote_id: str, reason: str) -> OperationResult:
        return self._transition("suspend", remote_id, "SUSPENDED", {"CANCELLED", "EXPIRED"})

    def cancel(self, remote_id: str, reason: str) -> OperationResult:
        return self._transition("cancel", remote_id, "CANCELLED", {"EXPIRED"})

    def revise(self, remote_id: str, plan: PlanSpec, *, return_url: str, cancel_url: str) -> RevisedSubscription:
        self._enter("revise", remote_id)
        self.plans.append(plan)
        return RevisedSubscription(approval_url=None, processor_plan_id=f"P-rev-{remote_id}")

    def fetch_status(self, remote_id: str) -> RemoteStatus:
        self._enter("fetch_status", remote_id)
        return RemoteStatus(
            remote_id=remote_id,
            status=self.remote.get(remote_id, "APPROVAL_PENDING"),
            payer_id="PAYER123",
            payer_email="payer@example.com",
            last_payment_at=self.last_payment.get(remote_id),
            next_billing_at=self.next_billing.get(remote_id),
            failed_payments_count=self.failed_payments.get(remote_id, 0),
        )

    def verify_webhook_signature(self, headers: Mapping[str, str], event: Mapping[str, Any]) -> bool:
        self.calls.append(("verify_webhook", None))
        return self.signature_valid


class RecordingNotifier:
    def __init__(self) -> None:
        self.sent: list[tuple[Any, int, dict[str, Any]]] = []
        self.fail = False

    def notify(self, kind, user_id: int, **context: Any) -> None:
        if self.fail:
            raise RuntimeError("mail relay down")
        self.sent.append((kind, user_id, context))

    def kinds(self) -> list[Any]:
        return [kind for kind, _, _ in self.sent]


@pytest.fixture
def clock() -> MutableClock:
    return MutableClock(START)


@pytest.fixture
def processor() -> FakeProcessor:
    return FakeProcessor()


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def orchestrator(processor, notifier, clock) -> LifecycleOrchestrator:
    return LifecycleOrchestrator(SessionLocal, processor=processor, notifier=notifier, clock=clock)


@pytest.fixture
def reconciler(orchestrator, clock) -> ScheduledReconciler:
    return ScheduledReconciler(orchestrator, SessionLocal, clock=clock, batch_size=50)


@pytest.fixture
def premium_gate(clock) -> PremiumGate:
    return PremiumGate(SessionLocal, clock=clock, use_cache=False)


@pytest.fixture
def activate(orchestrator, processor):
    """Take a user from nothing to an active subscription on ``plan``."""

    def _activate(user_id: int, plan: PlanType = PlanType.MONTHLY, discount_code: str | None = None):
        result = orchestrator.subscribe(user_id, plan, discount_code=discount_code)
        assert result.success, result.user_message
        remote_id = result.approval_url.rsplit("/", 1)[1]
        processor.remote[remote_id] = "ACTIVE"
        confirmed = orchestrator.confirm_activation(user_id, remote_id)
        assert confirmed.success, confirmed.user_message
        return remote_id

    return _activate


def load(user_id: int):
    """Fresh copy of a user's subscription row."""
    session = SessionLocal()
    try:
        return SubscriptionStore(session).get(user_id)
    finally:
        session.close()


@pytest.fixture
def db_session():
    """Provide a transactional database session for tests."""
    session = SessionLocal()
    try:
        yield session
        session.commit()
    finally:
        session.close()


# FastAPI TestClient fixture
from fastapi.testclient import TestClient  # noqa: E402

from app.api import dependencies  # noqa: E402
from app.api.main import app  # noqa: E402
from app.api.rate_limit import limiter  # noqa: E402


@pytest.fixture
def client(orchestrator, processor, clock):
    """TestClient wired to the fake processor and the test clock."""
    app.dependency_overrides[dependencies.get_orchestrator] = lambda: orchestrator
    app.dependency_overrides[dependencies.get_processor] = lambda: processor
    app.dependency_overrides[dependencies.get_premium_gate] = lambda: PremiumGate(SessionLocal, clock=clock)
    limiter.enabled = False
    try:
        yield TestClient(app)
    finally:
        app.dependency_overrides.clear()
        limiter.enabled = True
