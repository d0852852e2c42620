import asyncio
import sys
import os

# Add parent dir to path to find config/database
sys.path.append(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

import redis.asyncio as redis

from config import settings
from database import Base, async_session_maker, engine
import models  # noqa: F401
from services.plans import PlanCatalog


async def seed_plans_async():
    print("⏳ Seeding subscription plans...")

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    redis_client = redis.from_url(settings.REDIS_URL, decode_responses=True) if settings.REDIS_ENABLED else None
    try:
        catalog = PlanCatalog(async_session_maker, redis_client)
        inserted = await catalog.seed_default_plans()
        print(f"✓ Inserted {inserted} plan(s)")

        for plan in await catalog.list_active_plans():
            print(f"  - {plan.name}: {plan.credits} credits, ${plan.price}")
    finally:
        if redis_client is not None:
            await redis_client.aclose()
        await engine.dispose()

    print("✅ Subscription plans ready.")


if __name__ == "__main__":
    asyncio.run(seed_plans_async())
