import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from jose import jwt
from sqlalchemy.future import select

from config import settings
from main import app, configure_services
from models.subscription_plan import SubscriptionPlan
from services.plans import PlanCatalog
from services.session_token import SESSION_TOKEN_TYPE, decode_session_token, issue_guest_token, issue_user_token


MEMBER_ID = "route-member"
MEMBER_AUTH_HEADER = {"Authorization": f"Bearer {issue_user_token(MEMBER_ID, 'member@example.com')['token']}"}
GUEST_ID = "guest-route"
GUEST_AUTH_HEADER = {"Authorization": f"Bearer {issue_guest_token(GUEST_ID)['token']}"}


@pytest_asyncio.fixture
async def ledger_client(ledger_db, seed_principal, fake_redis):
    engine, session_maker = ledger_db
    await seed_principal(MEMBER_ID, email="member@example.com", balance="10.00")
    await PlanCatalog(session_maker).seed_default_plans()
    configure_services(app, db_engine=engine, session_maker=session_maker, redis_client=fake_redis)

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        yield client, session_maker


@pytest.mark.asyncio
async def test_requests_without_token_are_rejected(ledger_client):
    client, _ = ledger_client
    response = await client.get("/credits/balance")
    assert response.status_code == 401


@pytest.mark.asyncio
async def test_member_balance_and_deduct(ledger_client):
    client, _ = ledger_client

    response = await client.get("/credits/balance", headers=MEMBER_AUTH_HEADER)
    assert response.status_code == 200
    assert response.json() == {"balance": 10.0, "last_monthly_allocation": None, "is_guest": False}

    response = await client.post(
        "/credits/deduct",
        json={"amount": 2.5, "description": "Chat reply", "metadata": {"chars": 50}},
        headers=MEMBER_AUTH_HEADER,
    )
    assert response.status_code == 200
    payload = response.json()
    assert payload["success"] is True
    assert payload["new_balance"] == 7.5
    assert payload["transaction"]["type"] == "deduction"
    assert payload["transaction"]["amount"] == 2.5
    assert payload["transaction"]["metadata"] == {"chars": 50}


@pytest.mark.asyncio
async def test_deduct_over_balance_returns_payment_required(ledger_client):
    client, _ = ledger_client

    response = await client.post(
        "/credits/deduct",
        json={"amount": 11, "description": "Long reply"},
        headers=MEMBER_AUTH_HEADER,
    )
    assert response.status_code == 402
    detail = response.json()["detail"]
    assert detail["code"] == "insufficient_credits"
    assert "Current balance: 10.00" in detail["message"]


@pytest.mark.asyncio
async def test_deduct_rejects_non_positive_amount(ledger_client):
    client, _ = ledger_client

    response = await client.post(
        "/credits/deduct",
        json={"amount": -1, "description": "Negative"},
        headers=MEMBER_AUTH_HEADER,
    )
    assert response.status_code == 400
    assert response.json()["detail"]["code"] == "invalid_amount"


@pytest.mark.asyncio
async def test_transaction_history_paging(ledger_client):
    client, _ = ledger_client
    for _ in range(3):
        await client.post(
            "/credits/deduct",
            json={"amount": 1, "description": "usage"},
            headers=MEMBER_AUTH_HEADER,
        )

    response = await client.get("/credits/transactions?limit=2&offset=0", headers=MEMBER_AUTH_HEADER)
    assert response.status_code == 200
    payload = response.json()
    assert payload["total"] == 3
    assert len(payload["transactions"]) == 2
    assert payload["has_more"] is True
    assert payload["transactions"][0]["balance_after"] == 7.0

    response = await client.get("/credits/transactions?limit=200", headers=MEMBER_AUTH_HEADER)
    assert response.status_code == 400
    assert response.json()["detail"]["code"] == "invalid_pagination"


@pytest.mark.asyncio
async def test_guest_balance_is_lazily_initialized_and_deductible(ledger_client):
    client, _ = ledger_client

    response = await client.get("/credits/balance", headers=GUEST_AUTH_HEADER)
    assert response.status_code == 200
    assert response.json() == {"balance": 200.0, "last_monthly_allocation": None, "is_guest": True}

    response = await client.post(
        "/credits/deduct",
        json={"amount": 15, "description": "Guest chat"},
        headers=GUEST_AUTH_HEADER,
    )
    assert response.status_code == 200
    assert response.json()["new_balance"] == 185.0

    response = await client.get("/credits/transactions", headers=GUEST_AUTH_HEADER)
    assert response.status_code == 403


@pytest.mark.asyncio
async def test_plans_purchase_and_history(ledger_client):
    client, session_maker = ledger_client

    response = await client.get("/payments/plans")
    assert response.status_code == 200
    plans = response.json()["plans"]
    assert [plan["name"] for plan in plans] == ["Free", "Starter", "Pro", "Premium"]
    assert plans[1]["credits"] == 500.0
    assert plans[1]["price"] == 5.0

    async with session_maker() as session:
        starter_id = (
            await session.execute(select(SubscriptionPlan.id).where(SubscriptionPlan.name == "Starter"))
        ).scalar_one()

    response = await client.post("/payments/purchase", json={"plan_id": starter_id}, headers=MEMBER_AUTH_HEADER)
    assert response.status_code == 200
    payload = response.json()
    assert payload["new_balance"] == 510.0
    assert payload["purchase"]["credits_added"] == 500.0
    assert payload["transaction"]["type"] == "purchase"

    response = await client.post("/payments/purchase", json={"plan_id": "nope"}, headers=MEMBER_AUTH_HEADER)
    assert response.status_code == 404
    assert response.json()["detail"]["code"] == "plan_not_found"

    response = await client.post("/payments/purchase", json={"plan_id": starter_id}, headers=GUEST_AUTH_HEADER)
    assert response.status_code == 403

    response = await client.get("/payments/history", headers=MEMBER_AUTH_HEADER)
    assert response.status_code == 200
    assert response.json()["total"] == 1


@pytest.mark.asyncio
async def test_health_reports_database_and_cache(ledger_client):
    client, _ = ledger_client

    response = await client.get("/health")
    assert response.status_code == 200
    payload = response.json()
    assert payload["status"] == "healthy"
    assert payload["database"] == "up"
    assert payload["redis"] == "up"

    response = await client.get("/health/ready")
    assert response.status_code == 200
    assert response.json() == {"ready": True}


def test_guest_tokens_carry_prefixed_principal():
    issued = issue_guest_token()
    claims = decode_session_token(issued["token"])
    assert claims["guest"] is True
    assert claims["sub"] == issued["principal_id"]
    assert issued["principal_id"].startswith("guest-")


def test_guest_claim_requires_guest_subject():
    forged = jwt.encode(
        {"sub": MEMBER_ID, "guest": True, "type": SESSION_TOKEN_TYPE},
        settings.JWT_SECRET,
        algorithm=settings.JWT_ALGORITHM,
    )
    with pytest.raises(ValueError):
        decode_session_token(forged)


@pytest.mark.asyncio
async def test_guest_prefixed_user_token_is_treated_as_guest(ledger_client):
    client, _ = ledger_client
    token = issue_user_token("guest-sneaky", "guest-sneaky@guest.local")["token"]

    response = await client.get("/credits/transactions", headers={"Authorization": f"Bearer {token}"})
    assert response.status_code == 403


@pytest.mark.asyncio
async def test_user_profile_reports_balance_and_latest_plan(ledger_client):
    client, session_maker = ledger_client

    response = await client.get("/user/profile", headers=MEMBER_AUTH_HEADER)
    assert response.status_code == 200
    payload = response.json()
    assert payload["user"] == {"id": MEMBER_ID, "email": "member@example.com", "name": None}
    assert payload["credit_balance"]["balance"] == 10.0
    assert payload["credit_balance"]["last_monthly_allocation"] is None
    assert payload["active_plan"] is None

    async with session_maker() as session:
        pro_id = (
            await session.execute(select(SubscriptionPlan.id).where(SubscriptionPlan.name == "Pro"))
        ).scalar_one()
    response = await client.post("/payments/purchase", json={"plan_id": pro_id}, headers=MEMBER_AUTH_HEADER)
    assert response.status_code == 200

    response = await client.get("/user/profile", headers=MEMBER_AUTH_HEADER)
    payload = response.json()
    assert payload["credit_balance"]["balance"] == 2010.0
    assert payload["active_plan"]["id"] == pro_id
    assert payload["active_plan"]["name"] == "Pro"
    assert payload["active_plan"]["purchased_at"] is not None

    response = await client.get("/user/profile", headers=GUEST_AUTH_HEADER)
    assert response.status_code == 403


@pytest.mark.asyncio
async def test_user_profile_for_unknown_account_is_not_found(ledger_client):
    client, _ = ledger_client
    header = {"Authorization": f"Bearer {issue_user_token('ghost-member', 'ghost@example.com')['token']}"}

    response = await client.get("/user/profile", headers=header)
    assert response.status_code == 404
    assert response.json()["detail"]["code"] == "user_not_found"
