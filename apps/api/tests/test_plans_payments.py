from decimal import Decimal
from unittest.mock import AsyncMock

import pytest
from sqlalchemy.future import select

from models.credit_balance import CreditBalance
from models.credit_transaction import CreditTransaction
from models.subscription_plan import SubscriptionPlan
from models.user_purchase import UserPurchase
from services.errors import (
    BalanceNotFoundError,
    InvalidPaginationError,
    LedgerStorageError,
    PlanInactiveError,
    PlanNotFoundError,
    PurchaseReconciliationError,
)
from services.payments import PaymentService
from services.plans import PLANS_CACHE_KEY, PlanCatalog


async def _plan_id(session_maker, name):
    async with session_maker() as session:
        result = await session.execute(select(SubscriptionPlan.id).where(SubscriptionPlan.name == name))
        return result.scalar_one()


async def _set_plan_active(session_maker, name, active):
    async with session_maker() as session:
        result = await session.execute(select(SubscriptionPlan).where(SubscriptionPlan.name == name))
        plan = result.scalar_one()
        plan.is_active = active
        await session.commit()


@pytest.mark.asyncio
async def test_seed_default_plans_is_idempotent(session_maker):
    catalog = PlanCatalog(session_maker)

    assert await catalog.seed_default_plans() == 4
    assert await catalog.seed_default_plans() == 0

    plans = await catalog.list_active_plans()
    assert [(plan.name, plan.credits, plan.price) for plan in plans] == [
        ("Free", Decimal("200.00"), Decimal("0.00")),
        ("Starter", Decimal("500.00"), Decimal("5.00")),
        ("Pro", Decimal("2000.00"), Decimal("15.00")),
        ("Premium", Decimal("5000.00"), Decimal("30.00")),
    ]


@pytest.mark.asyncio
async def test_inactive_plans_are_not_listed(session_maker):
    catalog = PlanCatalog(session_maker)
    await catalog.seed_default_plans()
    await _set_plan_active(session_maker, "Pro", False)

    names = [plan.name for plan in await catalog.list_active_plans()]
    assert names == ["Free", "Starter", "Premium"]


@pytest.mark.asyncio
async def test_plan_listing_is_cached_until_invalidated(session_maker, fake_redis):
    catalog = PlanCatalog(session_maker, fake_redis)
    await catalog.seed_default_plans()

    first = await catalog.list_active_plans()
    assert PLANS_CACHE_KEY in fake_redis.values
    assert fake_redis.ttls[PLANS_CACHE_KEY] == 86400

    await _set_plan_active(session_maker, "Free", False)
    cached = await catalog.list_active_plans()
    assert [plan.name for plan in cached] == [plan.name for plan in first]

    assert await catalog.invalidate_cache() is True
    fresh = await catalog.list_active_plans()
    assert [plan.name for plan in fresh] == ["Starter", "Pro", "Premium"]


@pytest.mark.asyncio
async def test_plan_listing_survives_unavailable_cache(session_maker, offline_redis):
    catalog = PlanCatalog(session_maker, offline_redis)
    await catalog.seed_default_plans()

    plans = await catalog.list_active_plans()
    assert len(plans) == 4
    assert await catalog.invalidate_cache() is False


@pytest.mark.asyncio
async def test_empty_catalog_is_not_cached(session_maker, fake_redis):
    catalog = PlanCatalog(session_maker, fake_redis)

    assert await catalog.list_active_plans() == []
    assert PLANS_CACHE_KEY not in fake_redis.values


@pytest.mark.asyncio
async def test_get_plan_unknown_id(session_maker):
    with pytest.raises(PlanNotFoundError):
        await PlanCatalog(session_maker).get_plan("no-such-plan")


@pytest.mark.asyncio
async def test_buying_starter_twice_adds_credits_and_records_both(
    session_maker, credit_service, seed_principal
):
    await PlanCatalog(session_maker).seed_default_plans()
    await seed_principal("buyer", balance="12.00")
    payments = PaymentService(session_maker, credit_service)
    starter_id = await _plan_id(session_maker, "Starter")

    first = await payments.process_purchase("buyer", starter_id)
    second = await payments.process_purchase("buyer", starter_id)

    assert Decimal(first.transaction.balance_after) == Decimal("512.00")
    assert Decimal(second.transaction.balance_after) == Decimal("1012.00")
    assert second.transaction.type == "purchase"
    assert second.transaction.description == "Purchase: Starter"
    assert second.transaction.metadata_json == {"plan_id": starter_id, "purchase_id": second.purchase.id}

    async with session_maker() as session:
        balance = await session.get(CreditBalance, "buyer")
        assert Decimal(balance.balance) == Decimal("1012.00")
        purchases = (
            await session.execute(select(UserPurchase).where(UserPurchase.user_id == "buyer"))
        ).scalars().all()
        assert len(purchases) == 2
        assert all(Decimal(p.credits_added) == Decimal("500.00") for p in purchases)
        assert all(Decimal(p.amount_paid) == Decimal("5.00") for p in purchases)
        assert all(p.status == "completed" for p in purchases)
        ledger = (
            await session.execute(
                select(CreditTransaction).where(
                    CreditTransaction.user_id == "buyer",
                    CreditTransaction.type == "purchase",
                )
            )
        ).scalars().all()
        assert len(ledger) == 2

    history, total = await payments.get_purchase_history("buyer")
    assert total == 2
    assert {purchase.id for purchase in history} == {first.purchase.id, second.purchase.id}


@pytest.mark.asyncio
async def test_purchase_rejects_inactive_and_unknown_plans(session_maker, credit_service, seed_principal):
    await PlanCatalog(session_maker).seed_default_plans()
    await seed_principal("picky", balance="0.00")
    await _set_plan_active(session_maker, "Premium", False)
    payments = PaymentService(session_maker, credit_service)

    with pytest.raises(PlanInactiveError):
        await payments.process_purchase("picky", await _plan_id(session_maker, "Premium"))
    with pytest.raises(PlanNotFoundError):
        await payments.process_purchase("picky", "missing-plan")

    history, total = await payments.get_purchase_history("picky")
    assert history == []
    assert total == 0


@pytest.mark.asyncio
async def test_purchase_requires_a_balance_row(session_maker, credit_service, seed_principal):
    await PlanCatalog(session_maker).seed_default_plans()
    await seed_principal("no-wallet", with_balance=False)
    payments = PaymentService(session_maker, credit_service)

    with pytest.raises(BalanceNotFoundError):
        await payments.process_purchase("no-wallet", await _plan_id(session_maker, "Pro"))


@pytest.mark.asyncio
async def test_failed_credit_step_raises_reconciliation_error(session_maker, credit_service, seed_principal):
    await PlanCatalog(session_maker).seed_default_plans()
    await seed_principal("unlucky", balance="1.00")
    credit_service.credit = AsyncMock(side_effect=LedgerStorageError("Failed to add credits"))
    payments = PaymentService(session_maker, credit_service)

    with pytest.raises(PurchaseReconciliationError) as excinfo:
        await payments.process_purchase("unlucky", await _plan_id(session_maker, "Pro"))

    async with session_maker() as session:
        purchase = await session.get(UserPurchase, excinfo.value.purchase_id)
        assert purchase is not None
        balance = await session.get(CreditBalance, "unlucky")
        assert Decimal(balance.balance) == Decimal("1.00")
    assert excinfo.value.to_detail()["purchase_id"] == excinfo.value.purchase_id


@pytest.mark.asyncio
async def test_purchase_history_pagination_bounds(session_maker, credit_service):
    payments = PaymentService(session_maker, credit_service)

    with pytest.raises(InvalidPaginationError):
        await payments.get_purchase_history("anyone", limit=101)


@pytest.mark.asyncio
async def test_purchase_history_is_newest_first_with_offset_paging(session_maker, credit_service, seed_principal):
    await PlanCatalog(session_maker).seed_default_plans()
    await seed_principal("collector", balance="0.00")
    payments = PaymentService(session_maker, credit_service)

    bought = []
    for name in ("Starter", "Pro", "Premium"):
        result = await payments.process_purchase("collector", await _plan_id(session_maker, name))
        bought.append(result.purchase.id)

    first_page, total = await payments.get_purchase_history("collector", limit=2, offset=0)
    assert total == 3
    assert [purchase.id for purchase in first_page] == [bought[2], bought[1]]
    assert first_page[0].created_at > first_page[1].created_at

    second_page, total = await payments.get_purchase_history("collector", limit=2, offset=2)
    assert total == 3
    assert [purchase.id for purchase in second_page] == [bought[0]]

    past_end, _ = await payments.get_purchase_history("collector", limit=2, offset=3)
    assert past_end == []

    with pytest.raises(InvalidPaginationError):
        await payments.get_purchase_history("collector", limit=0)
    with pytest.raises(InvalidPaginationError):
        await payments.get_purchase_history("collector", offset=-1)
