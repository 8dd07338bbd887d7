"""
Test Configuration — Fixtures for async DB, test client, and rank data.

Each test gets its own SQLite file under tmp_path. The assessment batch
opens one session per manager concurrently, which an in-memory database
(single shared connection) cannot model.
"""

import asyncio
import uuid
from datetime import datetime

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from api.deps import get_clock, get_current_user, get_db, get_sales_aggregator, get_session_factory
from api.main import app
from db.session import Base
from ranks.eligibility import EligibilityConditions
from ranks.errors import DependencyFailure

# 2025 H1 is running; 2024 H2 is the period that just closed.
FIXED_NOW = datetime(2025, 1, 15, 9, 0, 0)

ADMIN_USER = {"sub": "admin-1", "email": "admin@memberrank.test", "role": "ADMIN"}
MEMBER_USER = {"sub": "member-1", "email": "member@memberrank.test", "role": "MEMBER"}

RANGE_ROWS = [
    # (range_number, name, promotion_threshold, maintenance_threshold)
    (1, "Range 1", 0, 1_200_000),
    (2, "Range 2", 1_500_000, 1_500_000),
    (3, "Range 3", 2_400_000, 2_400_000),
]


class FakeSalesAggregator:
    """In-memory SalesAggregator with failure and latency injection."""

    def __init__(self, totals=None, *, fail_for=(), delay: float = 0.0):
        self.totals = dict(totals or {})
        self.fail_for = set(fail_for)
        self.delay = delay
        self.calls = []

    async def total_sales(self, user_id, period_start, period_end) -> int:
        self.calls.append((user_id, period_start, period_end))
        if self.delay:
            await asyncio.sleep(self.delay)
        if user_id in self.fail_for:
            raise DependencyFailure("Sales data is currently unavailable", user_id=str(user_id))
        return self.totals.get(user_id, 0)


class FakeSignalSource:
    """PromotionSignalSource backed by dicts keyed on user_id."""

    def __init__(self, conditions=None, id_documents=None):
        self.conditions = dict(conditions or {})
        self.id_documents = dict(id_documents or {})

    async def conditions_for(self, user_id) -> EligibilityConditions:
        return self.conditions.get(user_id, EligibilityConditions())

    async def identity_document_submitted(self, user_id) -> bool:
        return self.id_documents.get(user_id, False)


@pytest.fixture
async def test_engine(tmp_path):
    """Fresh file-backed database with all tables."""
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'memberrank.db'}", echo=False)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(test_engine):
    return async_sessionmaker(test_engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
async def test_db(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
async def ranges(test_db):
    """Three-range catalog; the thresholds match the documented example."""
    from db.models import ManagerRange

    rows = [
        ManagerRange(range_number=n, name=name, promotion_threshold=promo, maintenance_threshold=maint)
        for n, name, promo, maint in RANGE_ROWS
    ]
    test_db.add_all(rows)
    await test_db.commit()
    return rows


@pytest.fixture
def make_user(test_db):
    """Factory for committed users. Managers default to ACTIVE in range 1."""
    from db.models import User

    counter = {"n": 0}

    async def _make(name: str = None, *, role: str = "MANAGER", range_number: int | None = 1, **fields):
        counter["n"] += 1
        n = counter["n"]
        user = User(
            user_id=uuid.uuid4(),
            member_code=f"M{n:04d}",
            name=name or f"Member {n}",
            email=f"member{n}@memberrank.test",
            role=role,
            current_range_number=range_number if role == "MANAGER" else None,
            membership_status=fields.pop("membership_status", "ACTIVE"),
            **fields,
        )
        test_db.add(user)
        await test_db.commit()
        return user

    return _make


@pytest.fixture
def make_assessment(test_db):
    """Factory for a committed assessment row (bypasses the batch)."""
    from db.models import ManagerAssessment

    async def _make(user, *, outcome: str, proposed: int, year: int = 2024, half: int = 2, sales: int = 0, **fields):
        assessment = ManagerAssessment(
            user_id=user.user_id,
            period_year=year,
            period_half=half,
            period_sales=sales,
            range_at_execution=user.current_range_number,
            proposed_range_number=proposed,
            outcome=outcome,
            status=fields.pop("status", "PENDING"),
            executed_by="admin-1",
            executed_at=FIXED_NOW,
            **fields,
        )
        test_db.add(assessment)
        await test_db.commit()
        return assessment

    return _make


@pytest.fixture
def fetch_user(session_factory):
    """Read a user through a fresh session so no identity-map state leaks in."""
    from db.models import User

    async def _fetch(user_id):
        async with session_factory() as db:
            return await db.get(User, user_id)

    return _fetch


@pytest.fixture
def fake_sales():
    return FakeSalesAggregator()


@pytest.fixture
def current_user():
    """Mutable operator identity used by the client fixture."""
    return dict(ADMIN_USER)


@pytest.fixture
async def client(session_factory, fake_sales, current_user):
    """Async test client with the engine's collaborators overridden."""

    async def override_get_db():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_current_user] = lambda: current_user
    app.dependency_overrides[get_session_factory] = lambda: session_factory
    app.dependency_overrides[get_sales_aggregator] = lambda: fake_sales
    app.dependency_overrides[get_clock] = lambda: (lambda: FIXED_NOW)

    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
    ) as ac:
        yield ac

    app.dependency_overrides.clear()


@pytest.fixture
async def db(session_factory):
    """Session for the code under test, kept apart from the seeding session."""
    async with session_factory() as session:
        yield session
