"""Plan catalog and purchase router."""

from __future__ import annotations

from typing import Any, Dict

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field

from models.user_purchase import UserPurchase
from routers.auth_scope import AuthContext, require_registered_user
from routers.credits import serialize_transaction
from routers.deps import get_payment_service, get_plan_catalog
from services.payments import PaymentService
from services.plans import PlanCatalog, PlanRecord

router = APIRouter()


class PurchaseRequest(BaseModel):
    plan_id: str = Field(min_length=1)


def serialize_plan(plan: PlanRecord) -> Dict[str, Any]:
    return {
        "id": plan.id,
        "name": plan.name,
        "credits": float(plan.credits),
        "price": float(plan.price),
        "description": plan.description,
        "display_order": plan.display_order,
    }


def serialize_purchase(purchase: UserPurchase) -> Dict[str, Any]:
    return {
        "id": purchase.id,
        "plan_id": purchase.plan_id,
        "credits_added": float(purchase.credits_added),
        "amount_paid": float(purchase.amount_paid),
        "status": purchase.status,
        "created_at": purchase.created_at.isoformat() if purchase.created_at else None,
    }


@router.get("/plans")
async def list_plans(catalog: PlanCatalog = Depends(get_plan_catalog)):
    plans = await catalog.list_active_plans()
    return {"plans": [serialize_plan(plan) for plan in plans]}


@router.post("/purchase")
async def purchase_plan(
    request: PurchaseRequest,
    auth: AuthContext = Depends(require_registered_user),
    payment_service: PaymentService = Depends(get_payment_service),
):
    result = await payment_service.process_purchase(auth.principal_id, request.plan_id)
    return {
        "success": True,
        "purchase": serialize_purchase(result.purchase),
        "new_balance": float(result.transaction.balance_after),
        "transaction": serialize_transaction(result.transaction),
    }


@router.get("/history")
async def purchase_history(
    limit: int = Query(default=50),
    offset: int = Query(default=0),
    auth: AuthContext = Depends(require_registered_user),
    payment_service: PaymentService = Depends(get_payment_service),
):
    purchases, total = await payment_service.get_purchase_history(auth.principal_id, limit=limit, offset=offset)
    return {
        "purchases": [serialize_purchase(purchase) for purchase in purchases],
        "total": total,
        "limit": limit,
        "offset": offset,
        "has_more": offset + len(purchases) < total,
    }
