"""
Credit Ledger - FastAPI Backend
Main application entry point wiring store handles, services and routers.
"""

import asyncio
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
import redis.asyncio as redis
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from config import settings, validate_security_settings
from database import Base, async_session_maker, engine
import models  # noqa: F401
from routers import credits, health, payments, user
from services.credits import CreditService
from services.errors import CreditServiceError
from services.guest_credits import build_guest_balance_store
from services.locks import KeyedLock
from services.monthly_allocation import run_monthly_allocation_sweep
from services.payments import PaymentService
from services.plans import PlanCatalog


def configure_services(
    app: FastAPI,
    *,
    db_engine: AsyncEngine,
    session_maker: async_sessionmaker[AsyncSession],
    redis_client: Optional[redis.Redis] = None,
) -> None:
    """Attach explicitly constructed store handles and services to app.state."""
    locks = KeyedLock()
    credit_service = CreditService(session_maker, locks=locks)
    app.state.db_engine = db_engine
    app.state.redis = redis_client
    app.state.credit_service = credit_service
    app.state.guest_store = build_guest_balance_store(session_maker, redis_client, locks=locks)
    app.state.plan_catalog = PlanCatalog(session_maker, redis_client)
    app.state.payment_service = PaymentService(session_maker, credit_service)


async def _periodic_monthly_allocation(credit_service: CreditService) -> None:
    interval_minutes = max(int(settings.MONTHLY_ALLOCATION_INTERVAL_MINUTES), 0)
    if interval_minutes <= 0:
        return
    while True:
        try:
            result = await run_monthly_allocation_sweep(credit_service)
            if result["eligible"]:
                print(
                    f"💳 Monthly allocation tick: eligible={result['eligible']} "
                    f"succeeded={result['succeeded']} failed={result['failed']}"
                )
        except Exception as exc:
            print(f"⚠️ Monthly allocation tick failed: {exc!r}")
        await asyncio.sleep(interval_minutes * 60)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler for startup/shutdown."""
    # Startup
    print("🚀 Starting Credit Ledger API...")
    validate_security_settings()
    if settings.AUTO_CREATE_DB_SCHEMA:
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        print("🗄️ Database schema verified.")

    redis_client = None
    if settings.REDIS_ENABLED and settings.REDIS_URL:
        redis_client = redis.from_url(settings.REDIS_URL, decode_responses=True)
    configure_services(app, db_engine=engine, session_maker=async_session_maker, redis_client=redis_client)

    allocation_task = None
    if int(settings.MONTHLY_ALLOCATION_INTERVAL_MINUTES) > 0:
        allocation_task = asyncio.create_task(_periodic_monthly_allocation(app.state.credit_service))
        print(
            "📅 Monthly allocation loop enabled "
            f"(every {int(settings.MONTHLY_ALLOCATION_INTERVAL_MINUTES)} min)."
        )
    yield
    # Shutdown
    if allocation_task is not None:
        allocation_task.cancel()
        try:
            await allocation_task
        except asyncio.CancelledError:
            pass
    if redis_client is not None:
        await redis_client.aclose()
    await engine.dispose()
    print("👋 Shutting down API...")


app = FastAPI(
    title="Credit Ledger API",
    description="Credit balances, usage debits, plan purchases and monthly allowances",
    version="0.1.0",
    lifespan=lifespan,
)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(CreditServiceError)
async def credit_service_error_handler(request: Request, exc: CreditServiceError):
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.to_detail()})


# Include routers
app.include_router(health.router, tags=["Health"])
app.include_router(credits.router, prefix="/credits", tags=["Credits"])
app.include_router(payments.router, prefix="/payments", tags=["Payments"])
app.include_router(user.router, prefix="/user", tags=["User"])


@app.get("/")
async def root():
    """Root endpoint."""
    return {
        "name": "Credit Ledger API",
        "version": "0.1.0",
        "status": "running"
    }
