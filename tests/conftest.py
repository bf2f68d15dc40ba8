import sys
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from pathlib import Path
from typing import Any, Mapping

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine


def _configure_path() -> None:
    src_path = Path(__file__).resolve().parents[1] / "src"
    if src_path.exists():
        sys.path.insert(0, str(src_path))


_configure_path()

from expertpay_api.api.dependencies.services import get_notifier, get_processors  # noqa: E402
from expertpay_api.app import create_app  # noqa: E402
from expertpay_api.core.errors import ProcessorUnavailable  # noqa: E402
from expertpay_api.db.base import Base  # noqa: E402
from expertpay_api.db.session import get_session  # noqa: E402
import expertpay_api.models  # noqa: E402,F401
from expertpay_api.services.notifications import InMemoryEmailBackend, NotificationGateway  # noqa: E402
from expertpay_api.services.payments.processors import (  # noqa: E402
    ProcessorCapture,
    ProcessorPayment,
    ProcessorRefund,
    ProcessorSubscription,
    RetryPolicy,
)


@dataclass
class StubProcessor:
    """In-test processor recording calls; ``fail_with`` makes every call raise."""

    name: str = "stripe"
    payment_status: str = "requires_capture"
    fail_with: BaseException | None = None
    calls: list[tuple[str, dict[str, Any]]] = field(default_factory=list)
    _counter: int = 0

    def _next_id(self, prefix: str) -> str:
        self._counter += 1
        return f"{prefix}_{self.name}_{self._counter}"

    def _record(self, operation: str, **kwargs: Any) -> None:
        self.calls.append((operation, kwargs))
        if self.fail_with is not None:
            raise self.fail_with

    def operations(self) -> list[str]:
        return [operation for operation, _ in self.calls]

    async def create_payment(self, *, amount, currency, metadata, idempotency_key, payment_method=None, customer_email=None):
        self._record("create_payment", amount=amount, currency=currency, idempotency_key=idempotency_key)
        return ProcessorPayment(id=self._next_id("pay"), status=self.payment_status, client_secret="secret_123")

    async def capture(self, payment_id, *, idempotency_key):
        self._record("capture", payment_id=payment_id)
        return ProcessorCapture(payment_id=payment_id, status="succeeded", capture_id=self._next_id("cap"))

    async def refund(self, payment_id, amount, *, idempotency_key, currency="USD", reason=None):
        self._record("refund", payment_id=payment_id, amount=amount, reason=reason)
        return ProcessorRefund(refund_id=self._next_id("re"), amount=Decimal(amount), status="succeeded")

    async def create_subscription(
        self,
        *,
        customer_email,
        plan_id,
        plan_name,
        amount,
        currency,
        interval,
        payment_method_id,
        trial_days,
        metadata,
    ):
        self._record("create_subscription", plan_id=plan_id, amount=amount, interval=interval, trial_days=trial_days)
        return ProcessorSubscription(id=self._next_id("sub"), status="active", customer_id="cus_123")

    async def update_subscription(self, subscription_id, *, plan_id=None, amount=None, interval=None):
        self._record("update_subscription", subscription_id=subscription_id, amount=amount, interval=interval)

    async def cancel_subscription(self, subscription_id, *, immediate):
        self._record("cancel_subscription", subscription_id=subscription_id, immediate=immediate)


class FixedClock:
    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now


@pytest_asyncio.fixture
async def session_factory():
    engine = create_async_engine("sqlite+aiosqlite:///:memory:", future=True)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    factory = async_sessionmaker(engine, expire_on_commit=False, class_=AsyncSession)

    try:
        yield factory
    finally:
        await engine.dispose()


@pytest.fixture
def email_backend() -> InMemoryEmailBackend:
    return InMemoryEmailBackend()


@pytest.fixture
def notifier(email_backend: InMemoryEmailBackend) -> NotificationGateway:
    return NotificationGateway(backend=email_backend)


@pytest.fixture
def processors() -> Mapping[str, StubProcessor]:
    return {
        "stripe": StubProcessor(name="stripe"),
        "paypal": StubProcessor(name="paypal", payment_status="CREATED"),
        "manual": StubProcessor(name="manual", payment_status="authorized"),
    }


@pytest.fixture
def fast_retry() -> RetryPolicy:
    return RetryPolicy(
        timeout_seconds=1.0,
        max_attempts=2,
        initial_backoff_seconds=0.0,
        max_backoff_seconds=0.0,
        jitter=False,
    )


@pytest.fixture
def clock() -> FixedClock:
    return FixedClock(datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc))


@pytest.fixture
def transient_failure() -> ProcessorUnavailable:
    return ProcessorUnavailable("processor down")


@pytest_asyncio.fixture
async def app_with_db(session_factory, notifier, processors):
    app = create_app()

    async def override_get_session():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_session] = override_get_session
    app.dependency_overrides[get_notifier] = lambda: notifier
    app.dependency_overrides[get_processors] = lambda: processors

    try:
        yield app, session_factory
    finally:
        app.dependency_overrides.clear()
