from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from httpx import ASGITransport, AsyncClient

from dentashop.api.deps import get_promotion_service
from dentashop.core.security import create_access_token
from dentashop.main import app
from tests.conftest import build_promo_code, build_promotion


def auth(user_id=42, is_admin=False):
    token = create_access_token({"sub": user_id, "is_admin": is_admin})
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def client_app(service):
    app.dependency_overrides[get_promotion_service] = lambda: service
    yield app
    app.dependency_overrides.clear()


async def seed_running_promo(repository):
    now = datetime.now(timezone.utc)
    promotion = await repository.add_promotion(build_promotion(
        start_date=now - timedelta(days=1),
        end_date=now + timedelta(days=1),
        minimum_order_amount=50,
    ))
    promo_code = await repository.add_promo_code(build_promo_code(promotion.id))
    return promotion, promo_code


CART = {
    "code": "summer10",
    "cart_total": 100,
    "cart_items": [{"product_id": 1, "quantity": 2, "price": 50}],
}


@pytest.mark.anyio
async def test_root_endpoint_basic_response():
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        resp = await client.get("/")
    assert resp.status_code == 200
    body = resp.json()
    assert body.get("message") == "DentaShop Promotions API"
    assert body.get("status") == "operational"


@pytest.mark.anyio
async def test_apply_valid_code(client_app, repository):
    promotion, promo_code = await seed_running_promo(repository)
    transport = ASGITransport(app=client_app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        resp = await client.post("/api/promotions/apply", json=CART, headers=auth())

    assert resp.status_code == 200
    body = resp.json()
    assert body["is_valid"] is True
    assert body["discount"] == 10.0
    assert body["message"] == "Code promo appliqué ! Réduction de 10€"
    assert body["promotion_id"] == promotion.id
    assert body["promo_code_id"] == promo_code.id
    assert body["code"] == "SUMMER10"


@pytest.mark.anyio
async def test_apply_rejection_is_ok_response(client_app, repository):
    await seed_running_promo(repository)
    transport = ASGITransport(app=client_app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        resp = await client.post(
            "/api/promotions/apply", json={**CART, "cart_total": 40}, headers=auth()
        )

    assert resp.status_code == 200
    body = resp.json()
    assert body["is_valid"] is False
    assert body["discount"] == 0
    assert body["message"] == "Montant minimum de commande requis: 50€"
    assert body["promotion_id"] is None


@pytest.mark.anyio
async def test_apply_requires_token(client_app, repository):
    await seed_running_promo(repository)
    transport = ASGITransport(app=client_app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        missing = await client.post("/api/promotions/apply", json=CART)
        invalid = await client.post(
            "/api/promotions/apply", json=CART, headers={"Authorization": "Bearer not-a-jwt"}
        )

    assert missing.status_code in (401, 403)
    assert invalid.status_code == 401


@pytest.mark.anyio
async def test_active_promotions_are_public(client_app, repository):
    promotion, _ = await seed_running_promo(repository)
    transport = ASGITransport(app=client_app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        resp = await client.get("/api/promotions/active")

    assert resp.status_code == 200
    assert [p["id"] for p in resp.json()] == [promotion.id]


@pytest.mark.anyio
async def test_admin_endpoints_reject_customers(client_app):
    transport = ASGITransport(app=client_app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        resp = await client.get("/api/promotions", headers=auth(is_admin=False))
    assert resp.status_code == 403


@pytest.mark.anyio
async def test_admin_promotion_lifecycle(client_app):
    admin = auth(user_id=1, is_admin=True)
    now = datetime.now(timezone.utc)
    payload = {
        "name": "Black Friday",
        "type": "fixed_amount",
        "discount_value": 15,
        "start_date": (now - timedelta(hours=1)).isoformat(),
        "end_date": (now + timedelta(days=3)).isoformat(),
        "metadata": {"campaign": "bf"},
    }

    transport = ASGITransport(app=client_app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        created = await client.post("/api/promotions", json=payload, headers=admin)
        assert created.status_code == 201
        promotion = created.json()
        assert promotion["status"] == "draft"
        assert promotion["metadata"] == {"campaign": "bf"}

        code = await client.post(
            f"/api/promotions/{promotion['id']}/codes", json={"code": "bf15"}, headers=admin
        )
        assert code.status_code == 201
        assert code.json()["code"] == "BF15"

        duplicate = await client.post(
            f"/api/promotions/{promotion['id']}/codes", json={"code": "BF15"}, headers=admin
        )
        assert duplicate.status_code == 409
        assert duplicate.json()["error"] == "PROMO_CODE_EXISTS"

        activated = await client.patch(
            f"/api/promotions/{promotion['id']}/status", json={"status": "active"}, headers=admin
        )
        assert activated.json()["status"] == "active"

        applied = await client.post(
            "/api/promotions/apply",
            json={**CART, "code": "BF15"},
            headers=auth(user_id=7),
        )
        assert applied.json()["discount"] == 15.0

        usage = await client.post("/api/promotions/usage", json={
            "user_id": 7,
            "promotion_id": promotion["id"],
            "promo_code_id": code.json()["id"],
            "order_id": 555,
            "discount_amount": 15,
        }, headers=admin)
        assert usage.status_code == 201

        stats = await client.get(f"/api/promotions/{promotion['id']}/stats", headers=admin)
        assert stats.json()["total_usage"] == 1
        assert stats.json()["total_discount"] == 15.0

        listing = await client.get("/api/promotions?status=active", headers=admin)
        assert listing.json()["total"] == 1

        deactivated = await client.patch(
            f"/api/promotions/codes/{code.json()['id']}/deactivate", headers=admin
        )
        assert deactivated.json()["is_active"] is False

        deleted = await client.delete(f"/api/promotions/{promotion['id']}", headers=admin)
        assert deleted.json() == {"deleted": True, "id": promotion["id"]}

        missing = await client.delete(f"/api/promotions/{promotion['id']}", headers=admin)
        assert missing.status_code == 404
        assert missing.json() == {"error": "PROMOTION_NOT_FOUND", "message": "Promotion non trouvée"}


@pytest.mark.anyio
async def test_create_promotion_with_inverted_dates(client_app):
    now = datetime.now(timezone.utc)
    transport = ASGITransport(app=client_app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        resp = await client.post("/api/promotions", json={
            "name": "Broken",
            "type": "percentage",
            "discount_value": 10,
            "start_date": now.isoformat(),
            "end_date": (now - timedelta(days=1)).isoformat(),
        }, headers=auth(is_admin=True))

    assert resp.status_code == 400
    assert resp.json()["error"] == "PROMOTION_INVALID"


@pytest.mark.anyio
async def test_unhandled_error_is_sanitized():
    failing = MagicMock()
    failing.get_active_promotions = AsyncMock(
        side_effect=RuntimeError("asyncpg: password authentication failed for user promo")
    )
    app.dependency_overrides[get_promotion_service] = lambda: failing
    try:
        transport = ASGITransport(app=app)
        async with AsyncClient(transport=transport, base_url="http://test") as client:
            resp = await client.get("/api/promotions/active")
    finally:
        app.dependency_overrides.clear()

    assert resp.status_code == 500
    body = resp.json()
    assert body["error"] == "internal_error"
    assert body["message"] == "An unexpected error occurred. Please try again later."
    assert "asyncpg" not in resp.text


@pytest.mark.anyio
async def test_health_reports_database_down():
    session_factory = MagicMock(side_effect=OSError("connection refused"))
    with patch("dentashop.main.AsyncSessionLocal", session_factory):
        transport = ASGITransport(app=app)
        async with AsyncClient(transport=transport, base_url="http://test") as client:
            resp = await client.get("/health")

    assert resp.status_code == 503
    body = resp.json()
    assert body["status"] == "unhealthy"
    assert body["database"] == "error: OSError"


@pytest.mark.anyio
async def test_health_with_database_up():
    session = AsyncMock()
    session_factory = MagicMock()
    session_factory.return_value.__aenter__ = AsyncMock(return_value=session)
    session_factory.return_value.__aexit__ = AsyncMock(return_value=False)
    with patch("dentashop.main.AsyncSessionLocal", session_factory):
        transport = ASGITransport(app=app)
        async with AsyncClient(transport=transport, base_url="http://test") as client:
            resp = await client.get("/health")

    assert resp.status_code == 200
    assert resp.json()["database"] == "connected"
    session.execute.assert_awaited_once()
