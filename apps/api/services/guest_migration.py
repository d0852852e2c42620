"""Fold a guest's chats and residual credits into a newly authenticated user."""

from __future__ import annotations

from datetime import datetime, timezone
from decimal import Decimal
import logging
from typing import Optional

from sqlalchemy import update
from sqlalchemy.future import select

from models.chat import Chat
from models.credit_balance import CreditBalance
from models.credit_transaction import TRANSACTION_TYPE_BONUS
from services.credits import CreditService, build_ledger_entry, round_credits, storage_errors
from services.errors import BalanceNotFoundError, GuestSessionNotFoundError
from services.guest_credits import GuestBalanceStore

logger = logging.getLogger(__name__)

GUEST_TRANSFER_DESCRIPTION = "Guest balance transfer"


async def migrate_guest_to_user(
    guest_id: str,
    user_id: str,
    credit_service: CreditService,
    guest_store: Optional[GuestBalanceStore] = None,
) -> Decimal:
    """Move chats and leftover credits from ``guest_id`` to ``user_id``.

    The guest's durable balance row wins over its session balance. The
    transfer is written to the user's ledger so the balance_after chain stays
    continuous. The guest lock is held from reading the session balance until
    the session is removed, so guest deductions cannot interleave. Returns the
    number of credits transferred.
    """
    if guest_id == user_id:
        return Decimal("0.00")

    if guest_store is not None and guest_store.locks is not credit_service.locks:
        raise ValueError("guest_store and credit_service must share one KeyedLock")

    transferred = Decimal("0.00")
    async with credit_service.locks.hold_many([guest_id, user_id]):
        session_residual = Decimal("0.00")
        if guest_store is not None:
            try:
                session_residual = await guest_store.get_balance(guest_id)
            except GuestSessionNotFoundError:
                session_residual = Decimal("0.00")

        with storage_errors("migrate guest session to user account"):
            async with credit_service.session_maker() as db:
                async with db.begin():
                    result = await db.execute(
                        select(CreditBalance)
                        .where(CreditBalance.user_id.in_([guest_id, user_id]))
                        .order_by(CreditBalance.user_id)
                        .with_for_update()
                    )
                    balances = {row.user_id: row for row in result.scalars().all()}
                    user_balance = balances.get(user_id)
                    if user_balance is None:
                        raise BalanceNotFoundError("Credit balance not found for user")

                    await db.execute(update(Chat).where(Chat.user_id == guest_id).values(user_id=user_id))

                    guest_balance = balances.get(guest_id)
                    if guest_balance is not None:
                        residual = round_credits(guest_balance.balance)
                        await db.delete(guest_balance)
                    else:
                        residual = session_residual

                    if residual > 0:
                        now = datetime.now(timezone.utc)
                        user_balance.balance = round_credits(round_credits(user_balance.balance) + residual)
                        user_balance.updated_at = now
                        db.add(
                            build_ledger_entry(
                                user_balance,
                                TRANSACTION_TYPE_BONUS,
                                residual,
                                GUEST_TRANSFER_DESCRIPTION,
                                {"guest_id": guest_id},
                                now,
                            )
                        )
                        transferred = residual

        if guest_store is not None:
            await guest_store.remove(guest_id)

    logger.info("Migrated guest %s to user %s (%s credits transferred)", guest_id, user_id, transferred)
    return transferred
