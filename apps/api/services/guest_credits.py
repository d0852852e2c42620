"""Guest session balances: Redis first, database fallback."""

from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import datetime, timedelta, timezone
from decimal import Decimal, InvalidOperation
import json
import logging
from typing import Any, Dict, Optional

import redis.asyncio as redis
from redis.exceptions import RedisError
from sqlalchemy import delete
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.future import select

from config import settings
from models.guest_session import GuestSession
from services.credits import as_utc, round_credits, storage_errors, validate_amount
from services.errors import (
    GuestSessionNotFoundError,
    InsufficientCreditsError,
    LedgerStorageError,
)
from services.locks import KeyedLock

logger = logging.getLogger(__name__)

GUEST_KEY_PREFIX = "guest:"


def guest_cache_key(session_id: str) -> str:
    return f"{GUEST_KEY_PREFIX}{session_id}"


def _ttl() -> timedelta:
    return timedelta(hours=max(int(settings.GUEST_SESSION_TTL_HOURS), 1))


def _starting_balance() -> Decimal:
    return round_credits(settings.GUEST_STARTING_CREDITS)


class GuestBalanceStore(ABC):
    """Balance storage for anonymous sessions. Guest balances are not written to the ledger."""

    locks: KeyedLock

    @abstractmethod
    async def initialize(self, session_id: str) -> Decimal:
        raise NotImplementedError

    @abstractmethod
    async def get_balance(self, session_id: str) -> Decimal:
        raise NotImplementedError

    @abstractmethod
    async def deduct(self, session_id: str, amount: Any) -> Decimal:
        raise NotImplementedError

    @abstractmethod
    async def remove(self, session_id: str) -> Optional[Decimal]:
        """Delete the session and return its residual balance, if any."""
        raise NotImplementedError


class DatabaseGuestBalanceStore(GuestBalanceStore):
    """Durable guest balances with an explicit expires_at."""

    def __init__(
        self,
        session_maker: async_sessionmaker[AsyncSession],
        locks: Optional[KeyedLock] = None,
    ):
        self.session_maker = session_maker
        self.locks = locks or KeyedLock()

    async def initialize(self, session_id: str) -> Decimal:
        now = datetime.now(timezone.utc)
        with storage_errors("initialize guest session"):
            async with self.locks.hold(session_id):
                async with self.session_maker() as db:
                    async with db.begin():
                        row = await db.get(GuestSession, session_id, with_for_update=True)
                        if row is not None and as_utc(row.expires_at) > now:
                            return round_credits(row.balance)
                        if row is None:
                            row = GuestSession(session_id=session_id)
                            db.add(row)
                        row.balance = _starting_balance()
                        row.created_at = now
                        row.expires_at = now + _ttl()
                    return round_credits(row.balance)

    async def get_balance(self, session_id: str) -> Decimal:
        with storage_errors("get guest balance"):
            async with self.session_maker() as db:
                row = await db.get(GuestSession, session_id)
        if row is None or _is_expired(row):
            raise GuestSessionNotFoundError("Guest session not found")
        return round_credits(row.balance)

    async def deduct(self, session_id: str, amount: Any) -> Decimal:
        deduction = validate_amount(amount, max_amount=settings.MAX_DEBIT_AMOUNT)
        async with self.locks.hold(session_id):
            return await self.deduct_locked(session_id, deduction)

    async def deduct_locked(self, session_id: str, deduction: Decimal) -> Decimal:
        """Deduct while the caller already holds the session lock."""
        with storage_errors("deduct guest credits"):
            async with self.session_maker() as db:
                async with db.begin():
                    result = await db.execute(
                        select(GuestSession)
                        .where(GuestSession.session_id == session_id)
                        .with_for_update()
                    )
                    row = result.scalar_one_or_none()
                    if row is None or _is_expired(row):
                        raise GuestSessionNotFoundError("Guest session not found")
                    current = round_credits(row.balance)
                    if current < deduction:
                        raise InsufficientCreditsError(current, deduction)
                    row.balance = round_credits(current - deduction)
                return round_credits(row.balance)

    async def remove(self, session_id: str) -> Optional[Decimal]:
        with storage_errors("remove guest session"):
            async with self.session_maker() as db:
                async with db.begin():
                    row = await db.get(GuestSession, session_id, with_for_update=True)
                    if row is None:
                        return None
                    residual = None if _is_expired(row) else round_credits(row.balance)
                    await db.delete(row)
                return residual

    async def purge_expired(self, now: Optional[datetime] = None) -> int:
        """Delete guest rows past their retention window."""
        cutoff = now or datetime.now(timezone.utc)
        with storage_errors("purge expired guest sessions"):
            async with self.session_maker() as db:
                result = await db.execute(delete(GuestSession).where(GuestSession.expires_at <= cutoff))
                await db.commit()
        purged = int(result.rowcount or 0)
        if purged:
            logger.info("Purged %s expired guest sessions", purged)
        return purged


class CachedGuestBalanceStore(GuestBalanceStore):
    """Redis-backed guest balances; any Redis failure drops through to the durable store."""

    def __init__(
        self,
        redis_client: redis.Redis,
        fallback: DatabaseGuestBalanceStore,
        locks: Optional[KeyedLock] = None,
    ):
        self.redis = redis_client
        self.fallback = fallback
        self.locks = locks or KeyedLock()

    async def initialize(self, session_id: str) -> Decimal:
        now = datetime.now(timezone.utc)
        key = guest_cache_key(session_id)
        payload = _session_payload(session_id, _starting_balance(), created_at=now)
        try:
            created = await self.redis.set(key, json.dumps(payload), ex=_ttl_seconds(), nx=True)
            if created:
                return _starting_balance()
            cached = _parse_payload(await self.redis.get(key))
            if cached is not None:
                return round_credits(cached["balance"])
            await self.redis.set(key, json.dumps(payload), ex=_ttl_seconds())
            return _starting_balance()
        except RedisError as exc:
            logger.warning("Guest cache unavailable, initializing session in database: %s", exc)
            return await self.fallback.initialize(session_id)

    async def get_balance(self, session_id: str) -> Decimal:
        cached = await self._read(session_id)
        if cached is not None:
            return round_credits(cached["balance"])
        return await self.fallback.get_balance(session_id)

    async def deduct(self, session_id: str, amount: Any) -> Decimal:
        deduction = validate_amount(amount, max_amount=settings.MAX_DEBIT_AMOUNT)
        key = guest_cache_key(session_id)
        async with self.locks.hold(session_id):
            cached = await self._read(session_id)
            if cached is None:
                return await self.fallback.deduct_locked(session_id, deduction)

            current = round_credits(cached["balance"])
            if current < deduction:
                raise InsufficientCreditsError(current, deduction)
            new_balance = round_credits(current - deduction)

            now = datetime.now(timezone.utc)
            cached["balance"] = f"{new_balance:.2f}"
            cached["expires_at"] = (now + _ttl()).isoformat()
            try:
                await self.redis.set(key, json.dumps(cached), ex=_ttl_seconds())
            except RedisError as exc:
                logger.error("Guest cache write failed for session %s: %s", session_id, exc)
                raise LedgerStorageError("Failed to deduct guest credits") from exc
            return new_balance

    async def remove(self, session_id: str) -> Optional[Decimal]:
        cached = await self._read(session_id)
        try:
            await self.redis.delete(guest_cache_key(session_id))
        except RedisError as exc:
            logger.warning("Guest cache delete failed for session %s: %s", session_id, exc)
        durable = await self.fallback.remove(session_id)
        if cached is not None:
            return round_credits(cached["balance"])
        return durable

    async def _read(self, session_id: str) -> Optional[Dict[str, Any]]:
        try:
            raw = await self.redis.get(guest_cache_key(session_id))
        except RedisError as exc:
            logger.warning("Guest cache read failed, using database: %s", exc)
            return None
        return _parse_payload(raw)


def build_guest_balance_store(
    session_maker: async_sessionmaker[AsyncSession],
    redis_client: Optional[redis.Redis] = None,
    locks: Optional[KeyedLock] = None,
) -> GuestBalanceStore:
    """Pick the guest store once, at construction time."""
    locks = locks or KeyedLock()
    durable = DatabaseGuestBalanceStore(session_maker, locks=locks)
    if redis_client is None:
        return durable
    return CachedGuestBalanceStore(redis_client, durable, locks=locks)


def _ttl_seconds() -> int:
    return int(_ttl().total_seconds())


def _is_expired(row: GuestSession) -> bool:
    return as_utc(row.expires_at) <= datetime.now(timezone.utc)


def _session_payload(session_id: str, balance: Decimal, *, created_at: datetime) -> Dict[str, Any]:
    return {
        "session_id": session_id,
        "balance": f"{balance:.2f}",
        "created_at": created_at.isoformat(),
        "expires_at": (created_at + _ttl()).isoformat(),
    }


def _parse_payload(raw: Any) -> Optional[Dict[str, Any]]:
    if not raw:
        return None
    try:
        payload = json.loads(raw)
        Decimal(str(payload["balance"]))
    except (ValueError, TypeError, KeyError, InvalidOperation) as exc:
        logger.warning("Discarding malformed guest cache payload: %s", exc)
        return None
    if not isinstance(payload, dict):
        return None
    return payload
