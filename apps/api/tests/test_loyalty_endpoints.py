import pytest
from httpx import ASGITransport, AsyncClient

from benmarket_api.core.settings import settings
from benmarket_api.services.loyalty import LoyaltyService
from benmarket_api.workers.loyalty_events import LoyaltyEventDispatcher


def _client(app) -> AsyncClient:
    return AsyncClient(transport=ASGITransport(app=app), base_url="http://test")


def _as(user) -> dict[str, str]:
    return {"X-Session-User": user.external_id}


@pytest.mark.asyncio
async def test_program_endpoint(app_with_db) -> None:
    app, session_factory = app_with_db

    async with _client(app) as client:
        missing = await client.get("/api/v1/loyalty/program")
        assert missing.status_code == 404
        assert missing.json()["detail"] == "No active loyalty program found"


@pytest.mark.asyncio
async def test_program_endpoint_returns_tier_ladder(app_with_db, loyalty_program) -> None:
    app, _ = app_with_db

    async with _client(app) as client:
        response = await client.get("/api/v1/loyalty/program")

    assert response.status_code == 200
    payload = response.json()
    assert payload["name"] == "BenMarket Rewards"
    assert payload["pointsPerDollar"] == 1
    assert payload["pointsForRegistration"] == 100
    assert payload["expiryMonths"] == 24
    assert [(tier["name"], tier["minPoints"]) for tier in payload["tiers"]] == [
        ("Bronze", 0),
        ("Silver", 500),
        ("Gold", 1500),
    ]


@pytest.mark.asyncio
async def test_account_endpoint_requires_session(app_with_db, loyalty_program) -> None:
    app, _ = app_with_db

    async with _client(app) as client:
        anonymous = await client.get("/api/v1/loyalty/")
        unknown = await client.get("/api/v1/loyalty/", headers={"X-Session-User": "ghost"})

    assert anonymous.status_code == 401
    assert unknown.status_code == 404


@pytest.mark.asyncio
async def test_account_endpoint_creates_account_with_welcome_bonus(app_with_db, loyalty_program, member) -> None:
    app, _ = app_with_db

    async with _client(app) as client:
        response = await client.get("/api/v1/loyalty/", headers=_as(member))
        repeat = await client.get("/api/v1/loyalty/", headers=_as(member))

    assert response.status_code == 200
    payload = response.json()
    assert payload["loyalty"]["availablePoints"] == 100
    assert payload["loyalty"]["currentTier"] == "Bronze"
    assert payload["program"]["name"] == "BenMarket Rewards"
    assert payload["tierBenefits"]["freeShipping"] is False
    assert [entry["type"] for entry in payload["loyalty"]["transactions"]] == ["earned"]
    assert repeat.json()["loyalty"]["availablePoints"] == 100
    assert len(repeat.json()["loyalty"]["transactions"]) == 1


@pytest.mark.asyncio
async def test_redeem_endpoint(app_with_db, loyalty_program, member) -> None:
    app, session_factory = app_with_db

    async with _client(app) as client:
        no_account = await client.post("/api/v1/loyalty/redeem", json={"points": 10}, headers=_as(member))
        assert no_account.status_code == 404

        await client.get("/api/v1/loyalty/", headers=_as(member))
        redeemed = await client.post(
            "/api/v1/loyalty/redeem",
            json={"points": 60, "reason": "Checkout discount", "orderId": "order-5"},
            headers=_as(member),
        )
        too_many = await client.post("/api/v1/loyalty/redeem", json={"points": 41}, headers=_as(member))
        invalid = await client.post("/api/v1/loyalty/redeem", json={"points": 0}, headers=_as(member))

    assert redeemed.status_code == 200
    assert redeemed.json() == {
        "message": "Points redeemed successfully",
        "availablePoints": 40,
        "totalPoints": 100,
    }
    assert too_many.status_code == 400
    assert too_many.json()["detail"] == "Insufficient points"
    assert invalid.status_code == 400

    async with session_factory() as session:
        account = await LoyaltyService(session).find_account(member.external_id)
        assert account.available_points == 40
        assert account.lifetime_redeemed == 60


@pytest.mark.asyncio
async def test_referral_endpoint(app_with_db, loyalty_program, member) -> None:
    app, _ = app_with_db

    async with _client(app) as client:
        missing = await client.post("/api/v1/loyalty/referral", headers=_as(member))
        await client.get("/api/v1/loyalty/", headers=_as(member))
        created = await client.post("/api/v1/loyalty/referral", headers=_as(member))
        account = await client.get("/api/v1/loyalty/", headers=_as(member))

    assert missing.status_code == 404
    assert created.status_code == 201
    code = created.json()["referralCode"]
    assert code.startswith("BEN")
    referrals = account.json()["loyalty"]["referrals"]
    assert [(referral["referralCode"], referral["status"]) for referral in referrals] == [(code, "pending")]


@pytest.mark.asyncio
async def test_admin_routes_require_admin_role(app_with_db, loyalty_program, member) -> None:
    app, _ = app_with_db

    async with _client(app) as client:
        stats = await client.get("/api/v1/loyalty/admin/stats", headers=_as(member))
        program = await client.post("/api/v1/loyalty/admin/program", json={"pointsForReview": 5}, headers=_as(member))
        observability = await client.get("/api/v1/loyalty/admin/observability", headers=_as(member))

    assert stats.status_code == 403
    assert program.status_code == 403
    assert observability.status_code == 403


@pytest.mark.asyncio
async def test_admin_stats_endpoint(app_with_db, loyalty_program, member, admin) -> None:
    app, _ = app_with_db

    async with _client(app) as client:
        await client.get("/api/v1/loyalty/", headers=_as(member))
        await client.post("/api/v1/loyalty/redeem", json={"points": 25}, headers=_as(member))
        response = await client.get("/api/v1/loyalty/admin/stats", headers=_as(admin))

    assert response.status_code == 200
    payload = response.json()
    assert payload["overview"] == {"totalUsers": 1, "totalPoints": 100, "activeUsers": 1, "averagePoints": 100}
    assert payload["topEarners"][0]["userEmail"] == "member@example.com"
    assert [entry["points"] for entry in payload["recentTransactions"]] == [-25, 100]
    assert payload["recentTransactions"][0]["userName"] == "Loyal Member"


@pytest.mark.asyncio
async def test_admin_program_endpoint_creates_and_updates(app_with_db, admin) -> None:
    app, _ = app_with_db
    body = {
        "name": "BenMarket Rewards",
        "description": "Earn points with every purchase",
        "pointsPerDollar": 2,
        "tiers": [
            {"name": "Bronze", "minPoints": 0},
            {"name": "Gold", "minPoints": 1500, "benefits": {"discountPercentage": 10, "freeShipping": True}},
        ],
    }

    async with _client(app) as client:
        created = await client.post("/api/v1/loyalty/admin/program", json=body, headers=_as(admin))
        updated = await client.post(
            "/api/v1/loyalty/admin/program",
            json={"pointsForReferral": 250},
            headers=_as(admin),
        )
        duplicate = await client.post(
            "/api/v1/loyalty/admin/program",
            json={"tiers": [{"name": "Gold", "minPoints": 0}, {"name": "Gold", "minPoints": 10}]},
            headers=_as(admin),
        )
        out_of_range = await client.post(
            "/api/v1/loyalty/admin/program",
            json={"tiers": [{"name": "Gold", "minPoints": 0, "benefits": {"discountPercentage": 150}}]},
            headers=_as(admin),
        )
        program = await client.get("/api/v1/loyalty/program")

    assert created.status_code == 200
    assert created.json()["pointsPerDollar"] == 2
    assert created.json()["tiers"][1]["benefits"]["freeShipping"] is True
    assert updated.status_code == 200
    assert updated.json()["id"] == created.json()["id"]
    assert updated.json()["pointsForReferral"] == 250
    assert duplicate.status_code == 400
    assert out_of_range.status_code == 422
    assert [tier["name"] for tier in program.json()["tiers"]] == ["Bronze", "Gold"]


@pytest.mark.asyncio
async def test_events_endpoint_requires_api_key(app_with_db, loyalty_program, member, monkeypatch) -> None:
    app, session_factory = app_with_db
    monkeypatch.setattr(settings, "loyalty_events_api_key", "internal-secret")
    dispatcher = LoyaltyEventDispatcher(session_factory=session_factory, use_celery=False)
    app.state.loyalty_event_dispatcher = dispatcher
    body = {"type": "purchase_completed", "externalId": member.external_id, "orderId": "A-1", "orderAmount": "75.40"}

    async with _client(app) as client:
        rejected = await client.post("/api/v1/loyalty/events", json=body)
        accepted = await client.post("/api/v1/loyalty/events", json=body, headers={"X-API-Key": "internal-secret"})
        invalid = await client.post(
            "/api/v1/loyalty/events",
            json={"type": "purchase_completed", "externalId": member.external_id},
            headers={"X-API-Key": "internal-secret"},
        )

    await dispatcher.drain()

    assert rejected.status_code == 401
    assert accepted.status_code == 202
    assert accepted.json()["status"] == "accepted"
    assert invalid.status_code == 400

    async with session_factory() as session:
        account = await LoyaltyService(session).find_account(member.external_id)
        assert account.available_points == 75


@pytest.mark.asyncio
async def test_observability_endpoint_reports_award_counters(app_with_db, loyalty_program, member, admin) -> None:
    app, session_factory = app_with_db
    dispatcher = LoyaltyEventDispatcher(session_factory=session_factory, use_celery=False)
    app.state.loyalty_event_dispatcher = dispatcher

    async with _client(app) as client:
        await client.post(
            "/api/v1/loyalty/events",
            json={"type": "review_submitted", "externalId": member.external_id},
        )
        await dispatcher.drain()
        response = await client.get("/api/v1/loyalty/admin/observability", headers=_as(admin))

    assert response.status_code == 200
    assert response.json()["awards"] == {"review_submitted": {"processed": 1}}


@pytest.mark.asyncio
async def test_health_endpoints(app_with_db) -> None:
    app, _ = app_with_db

    async with _client(app) as client:
        root = await client.get("/healthz")
        versioned = await client.get("/api/v1/healthz")

    assert root.status_code == 200
    assert root.json()["status"] == "ok"
    assert versioned.status_code == 200
    assert versioned.json()["loyaltyEvents"] == {"mode": "disabled", "pending": 0}
