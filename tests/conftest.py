"""Test configuration and fixtures."""

from __future__ import annotations

from collections.abc import AsyncGenerator
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

import subplans.billing.models  # noqa: F401  registers the billing tables
from subplans.billing.locking import KeyedLocks
from subplans.billing.models import Plan
from subplans.billing.period import Interval
from subplans.billing.plans import PlanService
from subplans.billing.quota_manager import QuotaManager
from subplans.billing.schemas import PlanCreate, PlanFeatureCreate
from subplans.billing.service import SubscriptionService
from subplans.billing.signals import SubscriptionEvent, SubscriptionSignals
from subplans.billing.subscribers import SubscriberRef
from subplans.core.config import Settings
from subplans.models.base import Base

TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"


class ManualClock:
    """Clock whose current instant only moves when a test moves it."""

    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now

    def set(self, now: datetime) -> datetime:
        self.now = now
        return self.now


@dataclass(frozen=True)
class Account:
    """Minimal subscriber entity."""

    id: int

    @property
    def subscriber_ref(self) -> SubscriberRef:
        return SubscriberRef(kind="account", id=str(self.id))


class SignalRecorder:
    """Receiver that remembers every signal it was sent."""

    def __init__(self) -> None:
        self.events: list[tuple[SubscriptionEvent, str]] = []

    def __call__(self, event: SubscriptionEvent, subscription: object) -> None:
        self.events.append((event, str(subscription.id)))  # type: ignore[attr-defined]

    def of(self, event: SubscriptionEvent) -> list[str]:
        return [subscription_id for e, subscription_id in self.events if e == event]


class StatefulRedisMock:
    """A stateful Redis mock that actually tracks values."""

    def __init__(self) -> None:
        self._data: dict[str, str | bytes] = {}
        self._hashes: dict[str, dict[str, str | bytes]] = {}
        self._ttls: dict[str, int] = {}

    async def get(self, key: str) -> str | bytes | None:
        return self._data.get(key)

    async def set(self, key: str, value: str | bytes, ex: int | None = None) -> bool:
        self._data[key] = value
        if ex is not None:
            self._ttls[key] = ex
        return True

    async def setex(self, key: str, seconds: int, value: str | bytes) -> bool:
        self._data[key] = value
        self._ttls[key] = seconds
        return True

    async def hget(self, key: str, field: str) -> str | bytes | None:
        return self._hashes.get(key, {}).get(field)

    async def hset(self, key: str, field: str, value: str | bytes) -> int:
        fields = self._hashes.setdefault(key, {})
        added = int(field not in fields)
        fields[field] = value
        return added

    async def expire(self, key: str, seconds: int) -> bool:
        if key not in self._data and key not in self._hashes:
            return False
        self._ttls[key] = seconds
        return True

    async def delete(self, *keys: str) -> int:
        count = 0
        for key in keys:
            if key in self._data or key in self._hashes:
                self._data.pop(key, None)
                self._hashes.pop(key, None)
                self._ttls.pop(key, None)
                count += 1
        return count

    async def exists(self, *keys: str) -> int:
        return sum(1 for k in keys if k in self._data or k in self._hashes)

    async def ttl(self, key: str) -> int:
        if key not in self._data and key not in self._hashes:
            return -2
        return self._ttls.get(key, -1)

    async def ping(self) -> bool:
        return True

    async def aclose(self) -> None:
        pass


@pytest.fixture
def settings() -> Settings:
    """Settings isolated from any local .env file."""
    return Settings(_env_file=None)


@pytest.fixture
def clock() -> ManualClock:
    return ManualClock(datetime(2025, 1, 1, tzinfo=UTC))


@pytest.fixture
def signals() -> SubscriptionSignals:
    return SubscriptionSignals()


@pytest.fixture
def recorder(signals: SubscriptionSignals) -> SignalRecorder:
    recorder = SignalRecorder()
    signals.connect_all(recorder)
    return recorder


@pytest.fixture
def locks() -> KeyedLocks:
    return KeyedLocks()


@pytest.fixture
def redis_client() -> StatefulRedisMock:
    return StatefulRedisMock()


@pytest.fixture
def account() -> Account:
    return Account(id=1)


@pytest.fixture
def other_account() -> Account:
    return Account(id=2)


@pytest_asyncio.fixture(scope="function")
async def engine() -> AsyncGenerator[AsyncEngine, None]:
    """In-memory database shared by every session of a test."""
    engine = create_async_engine(
        TEST_DATABASE_URL,
        echo=False,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)

    await engine.dispose()


@pytest.fixture
def session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


@pytest_asyncio.fixture(scope="function")
async def db_session(
    session_factory: async_sessionmaker[AsyncSession],
) -> AsyncGenerator[AsyncSession, None]:
    """Create a test database session."""
    async with session_factory() as session:
        yield session


@pytest.fixture
def plan_service(
    db_session: AsyncSession,
    clock: ManualClock,
    signals: SubscriptionSignals,
    settings: Settings,
) -> PlanService:
    return PlanService(db_session, clock=clock, signals=signals, settings=settings)


@pytest.fixture
def subscription_service(
    db_session: AsyncSession,
    clock: ManualClock,
    signals: SubscriptionSignals,
    locks: KeyedLocks,
    settings: Settings,
) -> SubscriptionService:
    return SubscriptionService(
        db_session,
        clock=clock,
        signals=signals,
        locks=locks,
        settings=settings,
    )


@pytest.fixture
def quota_manager(
    db_session: AsyncSession,
    clock: ManualClock,
    signals: SubscriptionSignals,
    locks: KeyedLocks,
    plan_service: PlanService,
    settings: Settings,
) -> QuotaManager:
    return QuotaManager(
        db_session,
        clock=clock,
        signals=signals,
        locks=locks,
        plans=plan_service,
        settings=settings,
    )


@pytest_asyncio.fixture(scope="function")
async def monthly_plan(plan_service: PlanService) -> Plan:
    """Monthly plan without trial and one feature of each quota kind."""
    return await plan_service.create_plan(
        PlanCreate(
            name="Basic",
            invoice_period=1,
            invoice_interval=Interval.MONTH,
            trial_period=0,
            features=[
                PlanFeatureCreate(
                    name="API Calls",
                    value=5,
                    resettable_period=1,
                    resettable_interval=Interval.MONTH,
                ),
                PlanFeatureCreate(name="Exports", value=-1),
                PlanFeatureCreate(name="Webhooks", value=0),
                PlanFeatureCreate(name="Projects", value=3, resettable_period=0),
            ],
        )
    )


@pytest_asyncio.fixture(scope="function")
async def trial_plan(plan_service: PlanService) -> Plan:
    """Monthly plan with a 14 day trial."""
    return await plan_service.create_plan(
        PlanCreate(
            name="Pro",
            price="29.99",
            invoice_period=1,
            invoice_interval=Interval.MONTH,
            trial_period=14,
            trial_interval=Interval.DAY,
            features=[PlanFeatureCreate(name="API Calls", value=100, resettable_period=1)],
        )
    )


@pytest_asyncio.fixture(scope="function")
async def yearly_plan(plan_service: PlanService) -> Plan:
    """Yearly plan sharing the monthly plan's feature slugs."""
    return await plan_service.create_plan(
        PlanCreate(
            name="Basic Yearly",
            invoice_period=1,
            invoice_interval=Interval.YEAR,
            features=[
                PlanFeatureCreate(name="API Calls", value=60, resettable_period=1),
                PlanFeatureCreate(name="Projects", value=10),
            ],
        )
    )
