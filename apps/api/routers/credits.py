"""Credit balance, deduction and history router."""

from __future__ import annotations

from decimal import Decimal
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field

from models.credit_transaction import CreditTransaction, TRANSACTION_TYPE_DEDUCTION
from routers.auth_scope import AuthContext, get_auth_context, require_registered_user
from routers.deps import get_credit_service, get_guest_store
from services.credits import CreditService
from services.errors import GuestSessionNotFoundError
from services.guest_credits import GuestBalanceStore

router = APIRouter()


class DeductRequest(BaseModel):
    amount: Decimal
    description: str = Field(min_length=1, max_length=500)
    metadata: Optional[Dict[str, Any]] = None


def serialize_transaction(entry: CreditTransaction) -> Dict[str, Any]:
    return {
        "id": entry.id,
        "type": entry.type,
        "amount": float(entry.amount),
        "balance_after": float(entry.balance_after),
        "description": entry.description,
        "metadata": entry.metadata_json,
        "created_at": entry.created_at.isoformat() if entry.created_at else None,
    }


@router.get("/balance")
async def credit_balance(
    auth: AuthContext = Depends(get_auth_context),
    credit_service: CreditService = Depends(get_credit_service),
    guest_store: GuestBalanceStore = Depends(get_guest_store),
):
    if auth.is_guest:
        try:
            balance = await guest_store.get_balance(auth.principal_id)
        except GuestSessionNotFoundError:
            balance = await guest_store.initialize(auth.principal_id)
        return {"balance": float(balance), "last_monthly_allocation": None, "is_guest": True}

    record = await credit_service.get_balance(auth.principal_id)
    last_allocation = record.last_monthly_allocation
    return {
        "balance": float(record.balance),
        "last_monthly_allocation": last_allocation.isoformat() if last_allocation else None,
        "is_guest": False,
    }


@router.post("/deduct")
async def deduct_credits(
    request: DeductRequest,
    auth: AuthContext = Depends(get_auth_context),
    credit_service: CreditService = Depends(get_credit_service),
    guest_store: GuestBalanceStore = Depends(get_guest_store),
):
    if auth.is_guest:
        new_balance = await guest_store.deduct(auth.principal_id, request.amount)
        return {
            "success": True,
            "new_balance": float(new_balance),
            "transaction": {
                "type": TRANSACTION_TYPE_DEDUCTION,
                "amount": float(request.amount),
                "description": request.description,
                "balance_after": float(new_balance),
            },
        }

    entry = await credit_service.debit(
        auth.principal_id,
        request.amount,
        request.description,
        metadata=request.metadata,
    )
    return {
        "success": True,
        "new_balance": float(entry.balance_after),
        "transaction": serialize_transaction(entry),
    }


@router.get("/transactions")
async def transaction_history(
    limit: int = Query(default=10),
    offset: int = Query(default=0),
    auth: AuthContext = Depends(require_registered_user),
    credit_service: CreditService = Depends(get_credit_service),
):
    entries, total = await credit_service.get_transaction_history(auth.principal_id, limit=limit, offset=offset)
    return {
        "transactions": [serialize_transaction(entry) for entry in entries],
        "total": total,
        "limit": limit,
        "offset": offset,
        "has_more": offset + len(entries) < total,
    }
