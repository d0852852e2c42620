"""Monthly credit allowance sweep over all authenticated users."""

from __future__ import annotations

from datetime import datetime, timezone
import logging
import time
from typing import Dict, List, Optional, Tuple, TypedDict

from sqlalchemy.future import select

from config import settings
from models.credit_balance import CreditBalance
from models.user import User
from services.credits import CreditService, is_eligible_for_monthly_allocation, storage_errors
from services.errors import CreditServiceError

logger = logging.getLogger(__name__)


class SweepResult(TypedDict):
    total_principals: int
    eligible: int
    succeeded: int
    failed: int
    errors: List[Dict[str, str]]


async def list_authenticated_balances(credit_service: CreditService) -> List[Tuple[str, Optional[datetime]]]:
    """(user_id, last_monthly_allocation) for every non-guest user holding a balance."""
    guest_prefix = settings.GUEST_EMAIL_PREFIX
    with storage_errors("retrieve authenticated users"):
        async with credit_service.session_maker() as db:
            result = await db.execute(
                select(CreditBalance.user_id, CreditBalance.last_monthly_allocation, User.email)
                .join(User, User.id == CreditBalance.user_id)
                .order_by(CreditBalance.user_id)
            )
            rows = result.all()
    return [
        (str(user_id), last_allocation)
        for user_id, last_allocation, email in rows
        if not (guest_prefix and str(email or "").startswith(guest_prefix))
    ]


async def run_monthly_allocation_sweep(
    credit_service: CreditService,
    now: Optional[datetime] = None,
) -> SweepResult:
    """Grant the monthly allowance to every eligible user.

    Safe to run repeatedly: users already allocated in the current calendar
    month are skipped here and rejected again under the row lock.
    """
    current = now or datetime.now(timezone.utc)
    started = time.monotonic()
    eligible = 0
    succeeded = 0
    failed = 0
    errors: List[Dict[str, str]] = []

    balances = await list_authenticated_balances(credit_service)
    total = len(balances)
    logger.info("Monthly allocation: found %s authenticated users", total)

    for user_id, last_allocation in balances:
        if not is_eligible_for_monthly_allocation(last_allocation, current):
            continue
        eligible += 1
        try:
            await credit_service.allocate_monthly_credits(user_id, now=current)
            succeeded += 1
        except CreditServiceError as exc:
            failed += 1
            errors.append({"user_id": user_id, "error": exc.message})
            logger.warning("Monthly allocation failed for user %s: %s", user_id, exc.message)
        except Exception as exc:
            failed += 1
            errors.append({"user_id": user_id, "error": str(exc) or exc.__class__.__name__})
            logger.exception("Monthly allocation failed for user %s", user_id)

    logger.info(
        "Monthly allocation completed in %.0fms. Total: %s, Eligible: %s, Successful: %s, Failed: %s",
        (time.monotonic() - started) * 1000,
        total,
        eligible,
        succeeded,
        failed,
    )
    return SweepResult(
        total_principals=total,
        eligible=eligible,
        succeeded=succeeded,
        failed=failed,
        errors=errors,
    )
