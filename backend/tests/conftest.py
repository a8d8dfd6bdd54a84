"""
Test Configuration — Fixtures for async DB, Redis double, test client and seed data.

Each test gets a fresh SQLite database file with foreign keys enforced, so
cascade behaviour matches PostgreSQL, code under test can commit and roll
back freely, and worker code can open its own sessions next to the test's.
"""

from datetime import datetime, timedelta

import pytest
from httpx import ASGITransport, AsyncClient
from redis.exceptions import ConnectionError as RedisConnectionError
from sqlalchemy import event
from sqlalchemy.ext.asyncio import create_async_engine

from api.deps import get_current_user, get_db, get_redis
from api.main import app
from db.session import Base, build_session_factory

USER_ID = "user-0001"


@pytest.fixture
def database_url(tmp_path):
    return f"sqlite+aiosqlite:///{tmp_path / 'offers.db'}"


@pytest.fixture
async def test_engine(database_url):
    """Create a fresh database and build all tables."""
    engine = create_async_engine(database_url, echo=False)

    @event.listens_for(engine.sync_engine, "connect")
    def enable_foreign_keys(dbapi_connection, connection_record):
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(test_engine):
    return build_session_factory(test_engine)


@pytest.fixture
async def test_db(session_factory):
    async with session_factory() as session:
        yield session


# ─── Redis double ───────────────────────────────────────────────────────────


class FakeRedis:
    """In-memory stand-in for the subset of redis.asyncio.Redis we use."""

    def __init__(self):
        self.store: dict[str, str] = {}
        self.ttls: dict[str, int] = {}
        self.fail = False
        self.closed = False

    def _check(self):
        if self.fail:
            raise RedisConnectionError("redis unavailable")

    async def get(self, key):
        self._check()
        return self.store.get(key)

    async def set(self, key, value, nx=False, ex=None):
        self._check()
        if nx and key in self.store:
            return None
        self.store[key] = value
        if ex is not None:
            self.ttls[key] = ex
        return True

    async def setex(self, key, seconds, value):
        self._check()
        self.store[key] = value
        self.ttls[key] = seconds
        return True

    async def delete(self, *keys):
        self._check()
        removed = 0
        for key in keys:
            if self.store.pop(key, None) is not None:
                removed += 1
            self.ttls.pop(key, None)
        return removed

    async def aclose(self):
        self.closed = True


@pytest.fixture
def fake_redis():
    return FakeRedis()


# ─── HTTP client ────────────────────────────────────────────────────────────


@pytest.fixture
def mock_user():
    """Mock authenticated user."""
    return {"sub": USER_ID}


@pytest.fixture
async def client(test_db, mock_user, fake_redis):
    """Create an async test client with dependency overrides."""

    async def override_get_db():
        yield test_db

    def override_get_current_user():
        return mock_user

    def override_get_redis():
        return fake_redis

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_current_user] = override_get_current_user
    app.dependency_overrides[get_redis] = override_get_redis

    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
    ) as ac:
        yield ac

    app.dependency_overrides.clear()


# ─── Seed data ──────────────────────────────────────────────────────────────


class Seeder:
    """Builds source rows (merchants, outlets, offers) for a test session."""

    def __init__(self, db):
        self.db = db

    async def _add(self, *objects):
        self.db.add_all(objects)
        await self.db.flush()
        return objects[0]

    async def review(self, status="Approved"):
        from db.models import Review

        return await self._add(Review(status=status))

    async def merchant(self, business_name="Mama Mboga", category="Food", status="Active", id=None):
        from db.models import Merchant

        extra = {"id": id} if id else {}
        return await self._add(Merchant(business_name=business_name, category=category, status=status, **extra))

    async def outlet(
        self,
        merchant,
        name="Main Street",
        description=None,
        id=None,
        is_active=True,
        approved=True,
        with_paybill=True,
    ):
        from db.models import Outlet

        review = await self.review("Approved" if approved else "Pending")
        extra = {"id": id} if id else {}
        outlet = await self._add(
            Outlet(
                **extra,
                merchant=merchant,
                name=name,
                description=description,
                is_active=is_active,
                review_id=review.id,
            )
        )
        if with_paybill:
            await self.paybill(outlet)
        return outlet

    async def paybill(self, outlet, is_active=True, approved=True, deleted_at=None):
        from db.models import PaybillOrTill

        review = await self.review("Approved" if approved else "Pending")
        return await self._add(
            PaybillOrTill(
                outlet_id=outlet.id,
                number="400200",
                is_active=is_active,
                deleted_at=deleted_at,
                review_id=review.id,
            )
        )

    async def cashback(
        self,
        merchant,
        outlets,
        tiers=(500,),
        customer_types=("All",),
        net=1000,
        used=0,
        name="Weekend cashback",
        is_active=True,
        approved=True,
        start_date=None,
        end_date=None,
    ):
        from db.models import CashbackConfiguration, CashbackConfigurationTier

        review = await self.review("Approved" if approved else "Pending")
        config = await self._add(
            CashbackConfiguration(
                merchant_id=merchant.id,
                name=name,
                eligible_customer_types=list(customer_types),
                is_active=is_active,
                start_date=start_date,
                end_date=end_date,
                net_cashback_budget=net,
                used_cashback_budget=used,
                review_id=review.id,
                outlets=list(outlets),
            )
        )
        for bps in tiers:
            tier_review = await self.review()
            await self._add(
                CashbackConfigurationTier(
                    cashback_configuration_id=config.id,
                    percentage=bps,
                    review_id=tier_review.id,
                )
            )
        return config

    async def exclusive(
        self,
        merchant,
        outlets,
        customer_types=("All",),
        net=1000,
        used=0,
        name="Free delivery",
        description="Free delivery on orders over 500",
        approved=True,
        start_date=None,
        end_date=None,
    ):
        from db.models import ExclusiveOffer

        review = await self.review("Approved" if approved else "Pending")
        return await self._add(
            ExclusiveOffer(
                merchant_id=merchant.id if merchant is not None else None,
                name=name,
                description=description,
                eligible_customer_types=list(customer_types),
                start_date=start_date,
                end_date=end_date,
                net_offer_budget=net,
                used_offer_budget=used,
                review_id=review.id,
                outlets=list(outlets),
            )
        )

    async def loyalty(
        self,
        merchant,
        tiers=("NonCustomer",),
        rewards=1,
        points_issued_limit=None,
        points_used=0,
        name="Points club",
        approved=True,
    ):
        from db.models import LoyaltyProgram, LoyaltyTier, MerchantLoyaltyReward

        review = await self.review("Approved" if approved else "Pending")
        program = await self._add(
            LoyaltyProgram(
                merchant_id=merchant.id,
                name=name,
                points_issued_limit=points_issued_limit,
                points_used_in_period=points_used,
                review_id=review.id,
            )
        )
        for min_type in tiers:
            tier_review = await self.review()
            await self._add(
                LoyaltyTier(
                    loyalty_program_id=program.id,
                    name=f"{min_type} tier",
                    min_customer_type=min_type,
                    review_id=tier_review.id,
                )
            )
        for i in range(rewards):
            reward_review = await self.review()
            await self._add(
                MerchantLoyaltyReward(
                    loyalty_program_id=program.id,
                    name=f"Reward {i + 1}",
                    review_id=reward_review.id,
                )
            )
        return program

    async def customer_type(self, user_id, merchant, type_):
        from db.models import CustomerType

        return await self._add(CustomerType(user_id=user_id, merchant_id=merchant.id, type=type_))

    async def commit(self):
        await self.db.commit()


@pytest.fixture
def seed(test_db):
    return Seeder(test_db)


@pytest.fixture
def now():
    return datetime(2026, 6, 1, 12, 0, 0)


@pytest.fixture
def window(now):
    """An offer window currently open around ``now``."""
    return now - timedelta(days=1), now + timedelta(days=1)
