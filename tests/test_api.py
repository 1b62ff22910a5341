"""
Test the HTTP surface: authentication, status mapping and the main
competition flows.
"""

from datetime import datetime, timedelta, timezone
from decimal import Decimal
from urllib.parse import parse_qs, urlparse

import httpx
import pytest
import pytest_asyncio

from cartbrawl.api.dependencies import get_competitions, get_ledger
from cartbrawl.api.main import app
from cartbrawl.api.routes.shopify import get_shopify
from cartbrawl.services.competition_service import CompetitionService
from cartbrawl.services.notification_service import NotificationService
from cartbrawl.services.shopify_client import ShopifyClient, decode_state, encode_state

CREATOR = {"Authorization": "Bearer creator-token"}
PLAYER = {"x-whop-user-token": "player-token"}


@pytest_asyncio.fixture
async def client(database, ledger, cipher):
    ledger.tokens.update({"creator-token": "user_creator", "player-token": "user_player"})
    service = CompetitionService(ledger, NotificationService(ledger), cipher)
    app.dependency_overrides[get_ledger] = lambda: ledger
    app.dependency_overrides[get_competitions] = lambda: service

    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://testserver") as http:
        yield http

    app.dependency_overrides.clear()


def _window():
    start = datetime.now(timezone.utc) + timedelta(days=1)
    return {"start_date": start.isoformat(), "end_date": (start + timedelta(hours=3)).isoformat()}


async def _create(client, **overrides):
    payload = {"title": "Weekend Rush", "prize": "150.00", **_window(), **overrides}
    return await client.post("/api/v1/competitions", json=payload, headers=CREATOR)


@pytest.mark.asyncio
async def test_health(client):
    response = await client.get("/health")

    assert response.status_code == 200
    assert response.json()["status"] == "healthy"
    assert response.headers["X-Content-Type-Options"] == "nosniff"


@pytest.mark.asyncio
async def test_create_and_list(client, ledger):
    response = await _create(client)

    assert response.status_code == 201
    created = response.json()["data"]
    assert created["creator_id"] == "user_creator"
    assert created["status"] == "UPCOMING"
    assert created["funds_tx_id"] in ledger.escrows

    listing = await client.get("/api/v1/competitions", params={"status": "UPCOMING"})

    assert listing.status_code == 200
    data = listing.json()["data"]
    assert [c["id"] for c in data["competitions"]] == [created["id"]]
    assert data["pagination"]["total"] == 1


@pytest.mark.asyncio
async def test_create_requires_authentication(client):
    missing = await client.post("/api/v1/competitions", json={"title": "x", "prize": "1", **_window()})
    invalid = await client.post(
        "/api/v1/competitions",
        json={"title": "x", "prize": "1", **_window()},
        headers={"Authorization": "Bearer unknown"}
    )

    assert missing.status_code == 401
    assert missing.json()["detail"]["message"] == "Authentication required"
    assert invalid.status_code == 401
    assert invalid.json()["detail"]["message"] == "Invalid user token"


@pytest.mark.asyncio
async def test_create_with_insufficient_balance(client, ledger):
    ledger.balance = Decimal("10")

    response = await _create(client, prize="150.00")

    assert response.status_code == 400
    assert response.json()["detail"]["error"] == "VALIDATION_ERROR"
    assert ledger.escrows == {}


@pytest.mark.asyncio
async def test_join_and_leaderboard(client):
    competition_id = (await _create(client)).json()["data"]["id"]
    join = {"shopify_domain": "Player-Store.myshopify.com", "access_token": "shpat_player"}

    first = await client.post(f"/api/v1/competitions/{competition_id}/join", json=join, headers=PLAYER)
    second = await client.post(f"/api/v1/competitions/{competition_id}/join", json=join, headers=PLAYER)

    assert first.status_code == 201
    assert second.status_code == 409

    board = await client.get(f"/api/v1/competitions/{competition_id}/leaderboard")
    entries = board.json()["data"]["leaderboard"]
    assert [e["user_id"] for e in entries] == ["user_player"]
    assert entries[0]["store_domain"] == "player-store.myshopify.com"
    assert "access_token" not in entries[0]


@pytest.mark.asyncio
async def test_unknown_competition_is_404(client):
    response = await client.get("/api/v1/competitions/does-not-exist")

    assert response.status_code == 404
    assert response.json()["detail"]["error"] == "NOT_FOUND"


@pytest.mark.asyncio
async def test_my_competitions(client):
    competition_id = (await _create(client)).json()["data"]["id"]

    response = await client.get("/api/v1/user/competitions", headers=CREATOR)

    assert response.status_code == 200
    created = response.json()["data"]["created"]
    assert [c["id"] for c in created] == [competition_id]


@pytest.mark.asyncio
async def test_admin_routes_require_admin(client):
    response = await client.post(
        "/api/v1/admin/background-jobs/trigger",
        json={"action": "update-statuses"},
        headers=PLAYER
    )

    assert response.status_code == 403


@pytest.mark.asyncio
async def test_shopify_auth_redirect(client):
    response = await client.get(
        "/api/v1/shopify/auth",
        params={"competition_id": "comp-1", "shop": "Store-A.myshopify.com"},
        headers=PLAYER
    )

    assert response.status_code == 302
    location = urlparse(response.headers["location"])
    assert location.netloc == "store-a.myshopify.com"
    [state] = parse_qs(location.query)["state"]
    assert decode_state(state) == {"competition_id": "comp-1", "user_id": "user_player"}


@pytest.mark.asyncio
async def test_shopify_callback_joins_competition(client, ledger):
    competition_id = (await _create(client)).json()["data"]["id"]
    shopify = ShopifyClient(transport=httpx.MockTransport(
        lambda request: httpx.Response(200, json={"access_token": "shpat_oauth", "scope": "read_orders"})
    ))
    app.dependency_overrides[get_shopify] = lambda: shopify

    response = await client.get(
        "/api/v1/shopify/callback",
        params={
            "code": "auth-code",
            "shop": "store-a.myshopify.com",
            "state": encode_state(competition_id, "user_player"),
        }
    )

    assert response.status_code == 302
    assert response.headers["location"].endswith(f"/experiences/{competition_id}?joined=true")

    detail = await client.get(f"/api/v1/competitions/{competition_id}", headers=PLAYER)
    data = detail.json()["data"]
    assert data["is_participant"] is True
    assert data["user_participation"]["store_domain"] == "store-a.myshopify.com"
    await shopify.close()


@pytest.mark.asyncio
async def test_shopify_callback_rejects_forged_state(client):
    response = await client.get(
        "/api/v1/shopify/callback",
        params={"code": "auth-code", "shop": "store-a.myshopify.com", "state": "forged.state"}
    )

    assert response.status_code == 400


@pytest.mark.asyncio
async def test_my_balance(client, ledger):
    ledger.balance = Decimal("42.50")

    response = await client.get("/api/v1/user/balance", headers=CREATOR)

    assert response.status_code == 200
    data = response.json()["data"]
    assert Decimal(str(data["balance"])) == Decimal("42.50")
    assert data["currency"] == "USD"
