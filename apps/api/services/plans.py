"""Subscription plan catalog with a Redis read-through cache."""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
import logging
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, TypeAdapter, ValidationError
import redis.asyncio as redis
from redis.exceptions import RedisError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.future import select

from config import settings
from models.subscription_plan import SubscriptionPlan
from services.credits import storage_errors
from services.errors import PlanNotFoundError

logger = logging.getLogger(__name__)

PLANS_CACHE_KEY = "subscription:plans"

DEFAULT_PLANS = [
    {
        "name": "Free",
        "credits": Decimal("200.00"),
        "price": Decimal("0.00"),
        "description": "Get started with basic features",
        "display_order": 0,
    },
    {
        "name": "Starter",
        "credits": Decimal("500.00"),
        "price": Decimal("5.00"),
        "description": "Perfect for trying out the platform",
        "display_order": 1,
    },
    {
        "name": "Pro",
        "credits": Decimal("2000.00"),
        "price": Decimal("15.00"),
        "description": "Great for regular users",
        "display_order": 2,
    },
    {
        "name": "Premium",
        "credits": Decimal("5000.00"),
        "price": Decimal("30.00"),
        "description": "Best value for power users",
        "display_order": 3,
    },
]


class PlanRecord(BaseModel):
    """Cacheable snapshot of a catalog row."""

    model_config = ConfigDict(from_attributes=True)

    id: str
    name: str
    credits: Decimal
    price: Decimal
    description: Optional[str] = None
    is_active: bool = True
    display_order: int = 0
    created_at: Optional[datetime] = None


_plan_list_adapter = TypeAdapter(List[PlanRecord])


class PlanCatalog:
    def __init__(
        self,
        session_maker: async_sessionmaker[AsyncSession],
        redis_client: Optional[redis.Redis] = None,
    ):
        self.session_maker = session_maker
        self.redis = redis_client

    async def list_active_plans(self) -> List[PlanRecord]:
        """Active plans sorted by credits, lowest first."""
        cached = await self._read_cache()
        if cached is not None:
            return cached

        with storage_errors("get available subscription plans"):
            async with self.session_maker() as db:
                result = await db.execute(
                    select(SubscriptionPlan)
                    .where(SubscriptionPlan.is_active.is_(True))
                    .order_by(SubscriptionPlan.credits.asc(), SubscriptionPlan.display_order.asc())
                )
                plans = [PlanRecord.model_validate(plan) for plan in result.scalars().all()]

        if plans:
            await self._write_cache(plans)
        return plans

    async def get_plan(self, plan_id: str) -> SubscriptionPlan:
        with storage_errors("get subscription plan"):
            async with self.session_maker() as db:
                plan = await db.get(SubscriptionPlan, plan_id)
        if plan is None:
            raise PlanNotFoundError("Subscription plan not found")
        return plan

    async def invalidate_cache(self) -> bool:
        """Drop the cached listing. Call after any catalog change."""
        if self.redis is None:
            return False
        try:
            await self.redis.delete(PLANS_CACHE_KEY)
        except RedisError as exc:
            logger.warning("Plan cache invalidation failed: %s", exc)
            return False
        logger.info("Subscription plans cache invalidated")
        return True

    async def seed_default_plans(self) -> int:
        """Insert the default catalog entries that are missing by name."""
        inserted = 0
        with storage_errors("seed subscription plans"):
            async with self.session_maker() as db:
                result = await db.execute(select(SubscriptionPlan.name))
                existing = set(result.scalars().all())
                for plan in DEFAULT_PLANS:
                    if plan["name"] in existing:
                        continue
                    db.add(SubscriptionPlan(is_active=True, **plan))
                    inserted += 1
                await db.commit()
        if inserted:
            await self.invalidate_cache()
        return inserted

    async def _read_cache(self) -> Optional[List[PlanRecord]]:
        if self.redis is None:
            return None
        try:
            raw = await self.redis.get(PLANS_CACHE_KEY)
        except RedisError as exc:
            logger.warning("Plan cache read failed: %s", exc)
            return None
        if not raw:
            return None
        try:
            return _plan_list_adapter.validate_json(raw)
        except ValidationError as exc:
            logger.warning("Discarding malformed plan cache payload: %s", exc)
            return None

    async def _write_cache(self, plans: List[PlanRecord]) -> None:
        if self.redis is None:
            return
        ttl = max(int(settings.PLANS_CACHE_TTL_SECONDS), 1)
        try:
            await self.redis.set(PLANS_CACHE_KEY, _plan_list_adapter.dump_json(plans), ex=ttl)
        except RedisError as exc:
            logger.warning("Plan cache write failed: %s", exc)
