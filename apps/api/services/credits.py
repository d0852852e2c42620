"""Credit ledger engine: balances, debits, credits and periodic allocations."""

from __future__ import annotations

from contextlib import contextmanager
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
import logging
from typing import Any, Callable, Dict, Iterator, List, Optional, Tuple
import uuid

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.future import select

from config import settings
from models.credit_balance import CreditBalance
from models.credit_transaction import (
    CREDIT_TRANSACTION_TYPES,
    TRANSACTION_TYPE_BONUS,
    TRANSACTION_TYPE_DEDUCTION,
    TRANSACTION_TYPE_MONTHLY_ALLOWANCE,
    CreditTransaction,
)
from services.errors import (
    AlreadyAllocatedThisMonthError,
    AlreadyBonusedError,
    BalanceNotFoundError,
    InsufficientCreditsError,
    InvalidAmountError,
    InvalidKindError,
    InvalidPaginationError,
    LedgerStorageError,
)
from services.locks import KeyedLock

logger = logging.getLogger(__name__)

CENT = Decimal("0.01")


def round_credits(value: Any) -> Decimal:
    """Quantize a credit amount to 2 decimal places (half-up)."""
    return Decimal(str(value)).quantize(CENT, rounding=ROUND_HALF_UP)


def as_utc(value: datetime) -> datetime:
    # SQLite hands back naive datetimes; everything is stored as UTC.
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def calculate_credits(text: str) -> Decimal:
    """Credit cost of generated text: characters / CHARACTERS_PER_CREDIT, 2 decimals, never negative."""
    per_credit = max(int(settings.CHARACTERS_PER_CREDIT), 1)
    raw = Decimal(len(text or "")) / Decimal(per_credit)
    return max(Decimal("0.00"), raw.quantize(CENT, rounding=ROUND_HALF_UP))


def validate_amount(amount: Any, *, max_amount: Optional[Any] = None) -> Decimal:
    """Return the amount rounded to cents or raise InvalidAmountError."""
    if isinstance(amount, bool):
        raise InvalidAmountError("Amount must be a number")
    try:
        value = Decimal(str(amount))
    except (InvalidOperation, TypeError, ValueError) as exc:
        raise InvalidAmountError("Amount must be a number") from exc

    if not value.is_finite():
        raise InvalidAmountError("Amount must be a finite number")
    if value <= 0:
        raise InvalidAmountError("Amount must be positive")
    if max_amount is not None and value > Decimal(str(max_amount)):
        raise InvalidAmountError(f"Amount cannot exceed {max_amount} credits")

    rounded = round_credits(value)
    if rounded <= 0:
        raise InvalidAmountError("Amount must be at least 0.01")
    return rounded


def validate_pagination(limit: Any, offset: Any) -> Tuple[int, int]:
    max_limit = max(int(settings.MAX_PAGE_LIMIT), 1)
    if isinstance(limit, bool) or not isinstance(limit, int) or not 1 <= limit <= max_limit:
        raise InvalidPaginationError(f"limit must be an integer between 1 and {max_limit}")
    if isinstance(offset, bool) or not isinstance(offset, int) or offset < 0:
        raise InvalidPaginationError("offset must be a non-negative integer")
    return limit, offset


def is_eligible_for_monthly_allocation(
    last_allocation: Optional[datetime],
    now: Optional[datetime] = None,
) -> bool:
    """Eligible unless the last allocation falls in the current UTC calendar month."""
    if last_allocation is None:
        return True
    current = as_utc(now or datetime.now(timezone.utc))
    last = as_utc(last_allocation)
    return (last.year, last.month) != (current.year, current.month)


@contextmanager
def storage_errors(operation: str) -> Iterator[None]:
    """Wrap unexpected database failures into LedgerStorageError."""
    try:
        yield
    except SQLAlchemyError as exc:
        logger.exception("Ledger storage failure while trying to %s", operation)
        raise LedgerStorageError(f"Failed to {operation}") from exc


Mutation = Callable[[CreditBalance, datetime], CreditTransaction]


class CreditService:
    """Ledger engine for authenticated principals.

    Every mutation holds the principal's lock, selects the balance row
    ``FOR UPDATE`` and writes the new balance plus one transaction row in a
    single database transaction.
    """

    def __init__(
        self,
        session_maker: async_sessionmaker[AsyncSession],
        locks: Optional[KeyedLock] = None,
    ):
        self.session_maker = session_maker
        self.locks = locks or KeyedLock()

    async def open_account(self, user_id: str) -> CreditBalance:
        """Create the zero balance a newly registered user starts with."""
        now = datetime.now(timezone.utc)
        with storage_errors("open credit account"):
            async with self.session_maker() as db:
                existing = await db.get(CreditBalance, user_id)
                if existing is not None:
                    return existing

                balance = CreditBalance(
                    user_id=user_id,
                    balance=Decimal("0.00"),
                    is_new_user=True,
                    created_at=now,
                    updated_at=now,
                )
                db.add(balance)
                try:
                    await db.commit()
                except IntegrityError:
                    await db.rollback()
                    existing = await db.get(CreditBalance, user_id)
                    if existing is None:
                        raise
                    return existing
                return balance

    async def get_balance(self, user_id: str) -> CreditBalance:
        with storage_errors("get credit balance"):
            async with self.session_maker() as db:
                balance = await db.get(CreditBalance, user_id)
        if balance is None:
            raise BalanceNotFoundError("Credit balance not found for user")
        return balance

    async def debit(
        self,
        user_id: str,
        amount: Any,
        description: str,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> CreditTransaction:
        debit_amount = validate_amount(amount, max_amount=settings.MAX_DEBIT_AMOUNT)

        def mutate(balance: CreditBalance, now: datetime) -> CreditTransaction:
            current = round_credits(balance.balance)
            if current < debit_amount:
                raise InsufficientCreditsError(current, debit_amount)
            balance.balance = round_credits(current - debit_amount)
            balance.updated_at = now
            return build_ledger_entry(balance, TRANSACTION_TYPE_DEDUCTION, debit_amount, description, metadata, now)

        return await self._apply(user_id, mutate, operation="deduct credits")

    async def credit(
        self,
        user_id: str,
        amount: Any,
        kind: str,
        description: str,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> CreditTransaction:
        if kind not in CREDIT_TRANSACTION_TYPES:
            raise InvalidKindError(
                f"Invalid credit type. Must be one of: {', '.join(CREDIT_TRANSACTION_TYPES)}"
            )
        ceiling = round_credits(settings.MAX_BALANCE_CREDITS)
        credit_amount = validate_amount(amount, max_amount=ceiling)

        def mutate(balance: CreditBalance, now: datetime) -> CreditTransaction:
            new_balance = round_credits(round_credits(balance.balance) + credit_amount)
            if new_balance > ceiling:
                raise InvalidAmountError(f"Resulting balance cannot exceed {ceiling} credits")
            balance.balance = new_balance
            balance.updated_at = now
            return build_ledger_entry(balance, kind, credit_amount, description, metadata, now)

        return await self._apply(user_id, mutate, operation="add credits")

    async def allocate_new_account_bonus(self, user_id: str) -> CreditTransaction:
        bonus = round_credits(settings.NEW_ACCOUNT_BONUS_CREDITS)

        def mutate(balance: CreditBalance, now: datetime) -> CreditTransaction:
            if not balance.is_new_user:
                raise AlreadyBonusedError("User has already received the new user bonus")
            balance.balance = round_credits(round_credits(balance.balance) + bonus)
            balance.is_new_user = False
            balance.updated_at = now
            return build_ledger_entry(balance, TRANSACTION_TYPE_BONUS, bonus, "New user bonus", None, now)

        entry = await self._apply(user_id, mutate, operation="allocate new user bonus")
        logger.info("Allocated new user bonus of %s credits to user %s", bonus, user_id)
        return entry

    async def allocate_monthly_credits(
        self,
        user_id: str,
        now: Optional[datetime] = None,
    ) -> CreditTransaction:
        allowance = round_credits(settings.MONTHLY_ALLOWANCE_CREDITS)

        def mutate(balance: CreditBalance, current: datetime) -> CreditTransaction:
            if not is_eligible_for_monthly_allocation(balance.last_monthly_allocation, current):
                raise AlreadyAllocatedThisMonthError(
                    "User has already received monthly allocation for this month"
                )
            balance.balance = round_credits(round_credits(balance.balance) + allowance)
            balance.last_monthly_allocation = current
            balance.updated_at = current
            return build_ledger_entry(
                balance,
                TRANSACTION_TYPE_MONTHLY_ALLOWANCE,
                allowance,
                "Monthly credit allowance",
                None,
                current,
            )

        return await self._apply(user_id, mutate, operation="allocate monthly credits", now=now)

    async def get_transaction_history(
        self,
        user_id: str,
        limit: int = 10,
        offset: int = 0,
    ) -> Tuple[List[CreditTransaction], int]:
        """Return one page of transactions, newest first, and the total count."""
        limit, offset = validate_pagination(limit, offset)
        with storage_errors("retrieve transaction history"):
            async with self.session_maker() as db:
                total = await db.scalar(
                    select(func.count()).select_from(CreditTransaction).where(CreditTransaction.user_id == user_id)
                )
                result = await db.execute(
                    select(CreditTransaction)
                    .where(CreditTransaction.user_id == user_id)
                    .order_by(CreditTransaction.created_at.desc())
                    .limit(limit)
                    .offset(offset)
                )
                return list(result.scalars().all()), int(total or 0)

    async def _apply(
        self,
        user_id: str,
        mutate: Mutation,
        *,
        operation: str,
        now: Optional[datetime] = None,
    ) -> CreditTransaction:
        async with self.locks.hold(user_id):
            with storage_errors(operation):
                async with self.session_maker() as db:
                    async with db.begin():
                        balance = await lock_balance_row(db, user_id)
                        entry = mutate(balance, now or datetime.now(timezone.utc))
                        db.add(entry)
                    return entry


async def lock_balance_row(db: AsyncSession, user_id: str) -> CreditBalance:
    """SELECT ... FOR UPDATE the principal's balance row."""
    result = await db.execute(
        select(CreditBalance).where(CreditBalance.user_id == user_id).with_for_update()
    )
    balance = result.scalar_one_or_none()
    if balance is None:
        raise BalanceNotFoundError("Credit balance not found for user")
    return balance


def build_ledger_entry(
    balance: CreditBalance,
    kind: str,
    amount: Decimal,
    description: str,
    metadata: Optional[Dict[str, Any]],
    now: datetime,
) -> CreditTransaction:
    return CreditTransaction(
        id=str(uuid.uuid4()),
        user_id=balance.user_id,
        type=kind,
        amount=amount,
        balance_after=balance.balance,
        description=description,
        metadata_json=dict(metadata) if metadata else None,
        created_at=now,
    )
