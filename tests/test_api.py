from httpx import AsyncClient, ASGITransport

import pytest

from quizstore import config
from quizstore.main import app, get_client
from conftest import make_payment, make_user


@pytest.fixture
async def api(client, monkeypatch):
    monkeypatch.setattr(config, "ADMIN_API_KEY", "secret")
    app.dependency_overrides[get_client] = lambda: client
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as http:
        yield http
    app.dependency_overrides.clear()


async def test_health(api):
    r = await api.get("/health")
    assert r.status_code == 200, r.text
    assert r.json() == {"status": "ok", "database": "connected"}


async def test_admin_requires_key(api):
    r = await api.get("/admin/payments")
    assert r.status_code == 401, r.text
    r = await api.get("/admin/payments", headers={"X-Admin-Key": "wrong"})
    assert r.status_code == 401, r.text


async def test_admin_disabled_without_configured_key(api, monkeypatch):
    monkeypatch.setattr(config, "ADMIN_API_KEY", "")
    r = await api.get("/admin/health", headers={"X-Admin-Key": "secret"})
    assert r.status_code == 503, r.text


async def test_admin_health_counts(api, client):
    user = await make_user(client)
    await make_payment(client, user["id"])
    r = await api.get("/admin/health", headers={"X-Admin-Key": "secret"})
    assert r.status_code == 200, r.text
    assert r.json() == {"status": "ok", "users": 1, "payments": 1, "refunds": 0}


async def test_admin_payments_listing(api, client):
    ana = await make_user(client, email="ana@example.com", first_name="Ana")
    bob = await make_user(client, email="bob@example.com")
    await make_payment(client, ana["id"], amount="9.99", status="completed")
    await make_payment(client, bob["id"], amount="4.50")

    r = await api.get("/admin/payments", headers={"X-Admin-Key": "secret"})
    assert r.status_code == 200, r.text
    body = r.json()
    assert body["limit"] == 100
    assert body["offset"] == 0
    assert [p["user"]["email"] for p in body["payments"]] == ["bob@example.com", "ana@example.com"]
    assert body["payments"][1]["amount"] == "9.99"
    assert body["payments"][1]["user"]["first_name"] == "Ana"
    assert "password" not in body["payments"][1]["user"]

    r = await api.get("/admin/payments?status=completed&limit=5000", headers={"X-Admin-Key": "secret"})
    body = r.json()
    assert body["limit"] == 1000
    assert [p["status"] for p in body["payments"]] == ["completed"]

    r = await api.get("/admin/payments?offset=1", headers={"X-Admin-Key": "secret"})
    assert [p["user"]["email"] for p in r.json()["payments"]] == ["ana@example.com"]


async def test_admin_refunds_listing(api, client):
    user = await make_user(client)
    payment = await make_payment(client, user["id"])
    await client.refund.create(data={
        "payment_id": payment["id"],
        "amount": "9.99",
        "reason": "duplicate charge",
    })
    r = await api.get("/admin/refunds", headers={"X-Admin-Key": "secret"})
    assert r.status_code == 200, r.text
    refunds = r.json()["refunds"]
    assert len(refunds) == 1
    assert refunds[0]["reason"] == "duplicate charge"
    assert refunds[0]["status"] == "pending"


async def test_invalid_paging_is_rejected(api):
    r = await api.get("/admin/payments?limit=0", headers={"X-Admin-Key": "secret"})
    assert r.status_code == 422, r.text
