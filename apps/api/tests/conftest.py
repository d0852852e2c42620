from decimal import Decimal

import pytest
import pytest_asyncio
from redis.exceptions import ConnectionError as RedisConnectionError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from database import Base
import models  # noqa: F401
from models.credit_balance import CreditBalance
from models.user import User
from services.credits import CreditService


class InMemoryRedis:
    """Just enough of redis.asyncio.Redis for the guest and plan caches."""

    def __init__(self):
        self.values = {}
        self.ttls = {}

    async def get(self, name):
        return self.values.get(name)

    async def set(self, name, value, ex=None, nx=False):
        if nx and name in self.values:
            return None
        if isinstance(value, bytes):
            value = value.decode("utf-8")
        self.values[name] = value
        self.ttls[name] = ex
        return True

    async def delete(self, *names):
        removed = 0
        for name in names:
            if self.values.pop(name, None) is not None:
                removed += 1
            self.ttls.pop(name, None)
        return removed

    async def ping(self):
        return True

    async def aclose(self):
        return None


class OfflineRedis:
    """Redis client whose server is unreachable."""

    async def _fail(self, *args, **kwargs):
        raise RedisConnectionError("redis offline")

    get = _fail
    set = _fail
    delete = _fail
    ping = _fail

    async def aclose(self):
        return None


@pytest_asyncio.fixture
async def ledger_db(tmp_path):
    db_path = tmp_path / "ledger.db"
    engine = create_async_engine(f"sqlite+aiosqlite:///{db_path}")
    session_maker = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine, session_maker

    await engine.dispose()


@pytest.fixture
def session_maker(ledger_db):
    return ledger_db[1]


@pytest.fixture
def credit_service(session_maker):
    return CreditService(session_maker)


@pytest.fixture
def fake_redis():
    return InMemoryRedis()


@pytest.fixture
def offline_redis():
    return OfflineRedis()


@pytest.fixture
def seed_principal(session_maker):
    """Insert a user and (optionally) its balance row."""

    async def _seed(
        user_id,
        *,
        email=None,
        balance="0.00",
        is_new_user=True,
        last_monthly_allocation=None,
        with_balance=True,
    ):
        async with session_maker() as session:
            session.add(User(id=user_id, email=email or f"{user_id}@example.com"))
            if with_balance:
                session.add(
                    CreditBalance(
                        user_id=user_id,
                        balance=Decimal(balance),
                        is_new_user=is_new_user,
                        last_monthly_allocation=last_monthly_allocation,
                    )
                )
            await session.commit()

    return _seed
