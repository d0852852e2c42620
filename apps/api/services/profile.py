"""Registered user profile: account, balance and the plan behind the latest purchase."""

from __future__ import annotations

from dataclasses import dataclass
import logging
from typing import Optional

from models.credit_balance import CreditBalance
from models.subscription_plan import SubscriptionPlan
from models.user import User
from models.user_purchase import UserPurchase
from services.credits import CreditService, storage_errors
from services.errors import PlanNotFoundError, UserNotFoundError
from services.payments import PaymentService
from services.plans import PlanCatalog

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class UserProfile:
    user: User
    balance: CreditBalance
    latest_purchase: Optional[UserPurchase] = None
    active_plan: Optional[SubscriptionPlan] = None


async def get_user_profile(
    user_id: str,
    credit_service: CreditService,
    payment_service: PaymentService,
    plan_catalog: PlanCatalog,
) -> UserProfile:
    """The active plan is the plan of the most recent purchase, if it still exists."""
    with storage_errors("retrieve user profile"):
        async with credit_service.session_maker() as db:
            user = await db.get(User, user_id)
    if user is None:
        raise UserNotFoundError("User not found")

    balance = await credit_service.get_balance(user_id)
    purchases, _ = await payment_service.get_purchase_history(user_id, limit=1, offset=0)

    latest = purchases[0] if purchases else None
    active_plan = None
    if latest is not None:
        try:
            active_plan = await plan_catalog.get_plan(latest.plan_id)
        except PlanNotFoundError:
            logger.warning("Plan %s of purchase %s no longer exists", latest.plan_id, latest.id)

    return UserProfile(user=user, balance=balance, latest_purchase=latest, active_plan=active_plan)
