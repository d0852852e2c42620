"""
Health check endpoints.
"""

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse
from redis.exceptions import RedisError
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from services.errors import CreditServiceError

router = APIRouter()


@router.get("/health")
async def health_check(request: Request):
    """
    Health check endpoint.
    Returns overall system health status. Redis being down only degrades
    guest balances and the plan cache, both of which fall back to the database.
    """
    health_status = {
        "status": "healthy",
        "api": "up",
        "database": "unknown",
        "redis": "disabled",
    }

    # Check database connection
    try:
        async with request.app.state.db_engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
        health_status["database"] = "up"
    except SQLAlchemyError as e:
        health_status["database"] = f"down: {str(e)}"
        health_status["status"] = "unhealthy"

    # Check Redis connection
    redis_client = getattr(request.app.state, "redis", None)
    if redis_client is not None:
        try:
            await redis_client.ping()
            health_status["redis"] = "up"
        except RedisError as e:
            health_status["redis"] = f"down: {str(e)}"
            if health_status["status"] == "healthy":
                health_status["status"] = "degraded"

    return health_status


@router.get("/health/live")
async def liveness_check():
    """Kubernetes-style liveness probe."""
    return {"alive": True}


@router.get("/health/ready")
async def readiness_check(request: Request):
    """Ready once the database answers and the plan catalog has been seeded."""
    missing = []
    try:
        plans = await request.app.state.plan_catalog.list_active_plans()
    except CreditServiceError:
        missing.append("database")
    else:
        if not plans:
            missing.append("subscription_plans")

    if missing:
        return JSONResponse(
            status_code=503,
            content={"ready": False, "missing": missing},
        )
    return {"ready": True}
