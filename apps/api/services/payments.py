"""Plan purchases: record the purchase, then credit the ledger."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
import logging
from typing import List, Tuple
import uuid

from sqlalchemy import func
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.future import select

from models.credit_balance import CreditBalance
from models.credit_transaction import TRANSACTION_TYPE_PURCHASE, CreditTransaction
from models.subscription_plan import SubscriptionPlan
from models.user_purchase import UserPurchase
from services.credits import CreditService, round_credits, storage_errors, validate_pagination
from services.errors import (
    BalanceNotFoundError,
    CreditServiceError,
    PlanInactiveError,
    PlanNotFoundError,
    PurchaseReconciliationError,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PurchaseResult:
    purchase: UserPurchase
    transaction: CreditTransaction


class PaymentService:
    def __init__(
        self,
        session_maker: async_sessionmaker[AsyncSession],
        credit_service: CreditService,
    ):
        self.session_maker = session_maker
        self.credit_service = credit_service

    async def process_purchase(self, user_id: str, plan_id: str) -> PurchaseResult:
        """Record a completed purchase, then credit the plan's credits.

        The two steps run in separate transactions so the ledger's locked
        mutation never nests inside the purchase transaction. A failure in the
        second step leaves a purchase without credits; it is logged and raised
        as PurchaseReconciliationError instead of being retried.
        """
        purchase, plan_name = await self._record_purchase(user_id, plan_id)

        try:
            transaction = await self.credit_service.credit(
                user_id,
                purchase.credits_added,
                TRANSACTION_TYPE_PURCHASE,
                f"Purchase: {plan_name}",
                metadata={"plan_id": plan_id, "purchase_id": purchase.id},
            )
        except CreditServiceError as exc:
            logger.error(
                "Purchase %s for user %s recorded without credits (%s credits, plan %s): %s",
                purchase.id,
                user_id,
                purchase.credits_added,
                plan_id,
                exc.message,
            )
            raise PurchaseReconciliationError(purchase.id) from exc

        return PurchaseResult(purchase=purchase, transaction=transaction)

    async def get_purchase_history(
        self,
        user_id: str,
        limit: int = 50,
        offset: int = 0,
    ) -> Tuple[List[UserPurchase], int]:
        limit, offset = validate_pagination(limit, offset)
        with storage_errors("get purchase history"):
            async with self.session_maker() as db:
                total = await db.scalar(
                    select(func.count()).select_from(UserPurchase).where(UserPurchase.user_id == user_id)
                )
                result = await db.execute(
                    select(UserPurchase)
                    .where(UserPurchase.user_id == user_id)
                    .order_by(UserPurchase.created_at.desc())
                    .limit(limit)
                    .offset(offset)
                )
                return list(result.scalars().all()), int(total or 0)

    async def _record_purchase(self, user_id: str, plan_id: str) -> Tuple[UserPurchase, str]:
        with storage_errors("process purchase"):
            async with self.session_maker() as db:
                async with db.begin():
                    plan = await db.get(SubscriptionPlan, plan_id)
                    if plan is None:
                        raise PlanNotFoundError("Subscription plan not found")
                    if not plan.is_active:
                        raise PlanInactiveError("Subscription plan is not active")
                    if await db.get(CreditBalance, user_id) is None:
                        raise BalanceNotFoundError("Credit balance not found for user")

                    purchase = UserPurchase(
                        id=str(uuid.uuid4()),
                        user_id=user_id,
                        plan_id=plan.id,
                        credits_added=round_credits(plan.credits),
                        amount_paid=round_credits(plan.price),
                        status="completed",
                        created_at=datetime.now(timezone.utc),
                    )
                    db.add(purchase)
                    plan_name = plan.name
                return purchase, plan_name
