"""
Test Configuration — Fixtures for async DB, fake remote systems, and the test client.

The promotion core opens its own short-lived sessions through a session
factory, so each test gets a fresh file-backed SQLite database instead of
one session wrapped in a rolled-back transaction.
"""

import itertools

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from api.deps import (
    get_current_user,
    get_pending_tracker,
    get_progress_sink,
    get_session_factory,
    get_state_machine,
)
from api.main import app
from core.retry import RetryPolicy
from core.security import encrypt
from coordination import PendingOperationTracker, RemoteMutex
from db.models import PromotableEntity, Store
from db.session import Base
from promotion import PromotionStateMachine, Status
from promotion.progress import RecordingProgressSink
from promotion.repository import EntityRepository
from workers.exports import register_export_cleanup

STORE_CODE = "flex-us"


# ─── Fake remote systems ────────────────────────────────────────────────────


class FakeBilling:
    """In-memory billing provider: remembers live plans and coupons per env."""

    def __init__(self):
        self.objects: dict[tuple[str, str, str], dict] = {}
        self.calls: list[tuple[str, str, str]] = []
        self.failures: dict[str, Exception] = {}
        self.unique_codes: list[dict] = []

    def _maybe_fail(self, method: str) -> None:
        if method in self.failures:
            raise self.failures[method]

    def live(self, env, kind: str, code: str) -> bool:
        return (env.value, kind, code) in self.objects

    async def ensure_plan(self, store, env, plan):
        self.calls.append(("ensure_plan", env.value, plan["code"]))
        self._maybe_fail("ensure_plan")
        obj = self.objects.setdefault((env.value, "plan", plan["code"]), {"id": f"pl-{plan['code']}", **plan})
        return obj

    async def deactivate_plan(self, store, env, plan_code):
        self.calls.append(("deactivate_plan", env.value, plan_code))
        self._maybe_fail("deactivate_plan")
        return self.objects.pop((env.value, "plan", plan_code), None) is not None

    async def ensure_coupon(self, store, env, coupon):
        self.calls.append(("ensure_coupon", env.value, coupon["code"]))
        self._maybe_fail("ensure_coupon")
        obj = self.objects.setdefault(
            (env.value, "coupon", coupon["code"]), {"id": f"cp-{coupon['code']}", **coupon}
        )
        return obj

    async def deactivate_coupon(self, store, env, coupon_code):
        self.calls.append(("deactivate_coupon", env.value, coupon_code))
        self._maybe_fail("deactivate_coupon")
        return self.objects.pop((env.value, "coupon", coupon_code), None) is not None

    async def list_unique_codes(self, store, env, coupon_code):
        self.calls.append(("list_unique_codes", env.value, coupon_code))
        self._maybe_fail("list_unique_codes")
        return list(self.unique_codes)


class FakeCache:
    def __init__(self):
        self.cleared: list[str] = []
        self.error: Exception | None = None

    async def clear(self, env):
        if self.error is not None:
            raise self.error
        self.cleared.append(env.value)
        return True


class FakeCI:
    def __init__(self):
        self.builds: list[dict] = []
        self.error: Exception | None = None
        self.return_key = True
        self._counter = itertools.count(1)

    async def trigger_build(self, *, env, entity_type, code, region_code):
        if self.error is not None:
            raise self.error
        build = {"env": env.value, "entity_type": entity_type, "code": code, "region_code": region_code}
        self.builds.append(build)
        if not self.return_key:
            return {}
        return {"buildResultKey": f"OFFERS-VAL-{next(self._counter)}"}


# ─── Database ───────────────────────────────────────────────────────────────


@pytest.fixture
async def test_engine(tmp_path):
    """Fresh SQLite database per test, schema built from the models."""
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'offerops-test.db'}", echo=False)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def sessions(test_engine):
    return async_sessionmaker(test_engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
def retry_policy():
    """Real classification, no waiting between attempts."""
    return RetryPolicy(retries=2, backoff_min=0, backoff_max=0)


@pytest.fixture
async def store(sessions):
    async with sessions() as db:
        row = Store(
            store_code=STORE_CODE,
            region_code="US",
            name="Flex US",
            billing_subdomain_stg="flex-us-stg",
            billing_subdomain_prod="flex-us",
            billing_api_key_stg_encrypted=encrypt("stg-key"),
            billing_api_key_prod_encrypted=encrypt("prod-key"),
        )
        db.add(row)
        await db.commit()
        return row


@pytest.fixture
def make_entity(sessions, store, retry_policy):
    """Insert an entity directly at a given status."""

    async def _make(
        code: str = "SPRING24",
        entity_type: str = "offer",
        status: Status = Status.DRAFT,
        **fields,
    ) -> PromotableEntity:
        entity = PromotableEntity(
            store_code=STORE_CODE,
            entity_code=code,
            entity_type=entity_type,
            status_id=int(status),
            name=fields.pop("name", f"{code} offer"),
            payload=fields.pop("payload", {"discount_type": "percent", "discount_percent": 20}),
            **fields,
        )
        return await EntityRepository(sessions, retry_policy).create(entity, actor="seed")

    return _make


# ─── Promotion core ─────────────────────────────────────────────────────────


@pytest.fixture
def fake_billing():
    return FakeBilling()


@pytest.fixture
def fake_cache():
    return FakeCache()


@pytest.fixture
def fake_ci():
    return FakeCI()


@pytest.fixture
def progress():
    return RecordingProgressSink()


@pytest.fixture
def pending(sessions, retry_policy):
    return register_export_cleanup(PendingOperationTracker(sessions, retry_policy=retry_policy))


@pytest.fixture
def machine(sessions, retry_policy, fake_billing, fake_cache, fake_ci, pending, progress):
    return PromotionStateMachine(
        sessions,
        billing=fake_billing,
        cache=fake_cache,
        ci=fake_ci,
        mutex=RemoteMutex(sessions, retry_policy=retry_policy),
        pending=pending,
        retry_policy=retry_policy,
        progress=progress,
        disable_rollback=False,
    )


# ─── API client ─────────────────────────────────────────────────────────────


@pytest.fixture
def mock_user():
    """Mock authenticated operator."""
    return {"sub": "auth0|test-user-id", "email": "ops@offerops.test"}


@pytest.fixture
async def client(sessions, machine, pending, progress, mock_user):
    """Create an async test client with dependency overrides."""
    app.dependency_overrides[get_session_factory] = lambda: sessions
    app.dependency_overrides[get_current_user] = lambda: mock_user
    app.dependency_overrides[get_state_machine] = lambda: machine
    app.dependency_overrides[get_pending_tracker] = lambda: pending
    app.dependency_overrides[get_progress_sink] = lambda: progress

    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
    ) as ac:
        yield ac

    app.dependency_overrides.clear()
