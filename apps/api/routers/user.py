"""Registered user profile router."""

from __future__ import annotations

from fastapi import APIRouter, Depends

from routers.auth_scope import AuthContext, require_registered_user
from routers.deps import get_credit_service, get_payment_service, get_plan_catalog
from services.credits import CreditService
from services.payments import PaymentService
from services.plans import PlanCatalog
from services.profile import get_user_profile

router = APIRouter()


def _isoformat(value):
    return value.isoformat() if value else None


@router.get("/profile")
async def user_profile(
    auth: AuthContext = Depends(require_registered_user),
    credit_service: CreditService = Depends(get_credit_service),
    payment_service: PaymentService = Depends(get_payment_service),
    plan_catalog: PlanCatalog = Depends(get_plan_catalog),
):
    profile = await get_user_profile(auth.principal_id, credit_service, payment_service, plan_catalog)

    active_plan = None
    if profile.active_plan is not None:
        plan = profile.active_plan
        active_plan = {
            "id": plan.id,
            "name": plan.name,
            "credits": float(plan.credits),
            "price": float(plan.price),
            "description": plan.description,
            "purchased_at": _isoformat(profile.latest_purchase.created_at),
        }

    balance = profile.balance
    return {
        "user": {
            "id": profile.user.id,
            "email": profile.user.email,
            "name": profile.user.name,
        },
        "credit_balance": {
            "balance": float(balance.balance),
            "last_monthly_allocation": _isoformat(balance.last_monthly_allocation),
            "is_new_user": bool(balance.is_new_user),
            "created_at": _isoformat(balance.created_at),
            "updated_at": _isoformat(balance.updated_at),
        },
        "active_plan": active_plan,
    }
