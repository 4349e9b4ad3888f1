"""
End-to-end API tests — HTTP request → routes → ingestor / authorizer → fakeredis.

The lifespan does not run under ASGITransport, so each test installs its own
fakeredis client and a mocked Stripe gateway on app.state.

Run from the repository root: pytest photo_store/tests/test_api.py -v
"""
from __future__ import annotations

from unittest.mock import AsyncMock

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from redis.exceptions import ConnectionError as RedisConnectionError

from conftest import make_completed_event, make_item, make_record
from photo_store.cache import get_temp_cart, save_temp_cart
from photo_store.checkout.schemas import CheckoutSessionCreated
from photo_store.config import settings
from photo_store.errors import InvalidSignatureError, PaymentProviderError
from photo_store.main import app

SIGNATURE = {"Stripe-Signature": "t=1767607200,v1=deadbeef"}


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

@pytest_asyncio.fixture
async def client(redis_client, gateway):
    """Async httpx client using ASGI transport — no live server needed."""
    app.state.redis = redis_client
    app.state.payments = gateway
    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
    ) as ac:
        yield ac


def _assert_error(response, status: int, code: str) -> dict:
    assert response.status_code == status, (
        f"Expected {status}, got {response.status_code}. Body: {response.text}"
    )
    error = response.json()["error"]
    assert error["code"] == code, f"Expected code={code!r}, got {error['code']!r}"
    return error


# ---------------------------------------------------------------------------
# Test Group 1: health
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_health(client: AsyncClient) -> None:
    response = await client.get("/api/health")
    assert response.status_code == 200
    assert response.json()["status"] == "ok"


# ---------------------------------------------------------------------------
# Test Group 2: POST /api/webhook
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_webhook_stores_purchase(client: AsyncClient, redis_client, repository) -> None:
    await save_temp_cart(redis_client, "temp_cart:cs_test_1", [
        {"productId": "p1", "name": "Sunset", "imageHQ": "/hq/sunset.jpg", "quantity": 3},
    ])

    response = await client.post("/api/webhook", content=b'{"id":"evt_test_1"}', headers=SIGNATURE)

    assert response.status_code == 200
    assert response.json() == {"received": True}
    record = await repository.get("cs_test_1")
    assert record.customer_email == "a@b.com"
    assert record.find_item("p1").quantity_purchased == 3


@pytest.mark.asyncio
async def test_webhook_without_signature_header(client: AsyncClient, gateway) -> None:
    response = await client.post("/api/webhook", content=b"{}")
    _assert_error(response, 400, "BAD_REQUEST")
    gateway.construct_event.assert_not_called()


@pytest.mark.asyncio
async def test_webhook_invalid_signature(client: AsyncClient, gateway, repository) -> None:
    gateway.construct_event.side_effect = InvalidSignatureError("bad")

    response = await client.post("/api/webhook", content=b"{}", headers=SIGNATURE)

    error = _assert_error(response, 400, "INVALID_SIGNATURE")
    assert error["message"] == "Webhook signature verification failed"
    assert await repository.get("cs_test_1") is None


@pytest.mark.asyncio
async def test_webhook_missing_email(client: AsyncClient, gateway, repository) -> None:
    gateway.construct_event.return_value = make_completed_event(email=None)
    response = await client.post("/api/webhook", content=b"{}", headers=SIGNATURE)
    _assert_error(response, 400, "MISSING_EMAIL")
    assert await repository.get("cs_test_1") is None


@pytest.mark.asyncio
async def test_webhook_event_without_session_id(client: AsyncClient, gateway, redis_client) -> None:
    event = make_completed_event()
    del event["data"]["object"]["id"]
    gateway.construct_event.return_value = event

    response = await client.post("/api/webhook", content=b"{}", headers=SIGNATURE)

    _assert_error(response, 400, "MALFORMED_EVENT")
    assert await redis_client.keys("purchase:*") == []


@pytest.mark.asyncio
async def test_webhook_ignores_other_events(client: AsyncClient, gateway, redis_client) -> None:
    gateway.construct_event.return_value = {"id": "evt_9", "type": "charge.refunded", "data": {"object": {}}}
    response = await client.post("/api/webhook", content=b"{}", headers=SIGNATURE)
    assert response.status_code == 200
    assert await redis_client.keys("purchase:*") == []


# ---------------------------------------------------------------------------
# Test Group 3: POST /api/download
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_download_admitted_then_already_downloaded(client: AsyncClient, repository) -> None:
    await repository.create(make_record(items=[make_item("p1", 3, file_name="sunset.jpg")]))
    body = {"session_id": "cs_test_1", "product_id": "p1"}

    first = await client.post("/api/download", json=body)
    second = await client.post("/api/download", json=body)

    assert first.status_code == 200, first.text
    grant = first.json()["grant"]
    assert first.json()["admitted"] is True
    assert grant["count"] == 3
    assert grant["suggested_filename"] == "sunset_3_copies.zip"
    assert grant["asset_ref"] == "/Images/High-Quality Photos/p1.jpg"

    error = _assert_error(second, 403, "ALREADY_DOWNLOADED")
    assert "already been downloaded" in error["message"]


@pytest.mark.asyncio
async def test_download_not_purchased(client: AsyncClient, repository) -> None:
    await repository.create(make_record())
    response = await client.post("/api/download", json={"session_id": "cs_test_1", "product_id": "p2"})
    _assert_error(response, 403, "NOT_PURCHASED")


@pytest.mark.asyncio
async def test_download_unknown_session(client: AsyncClient) -> None:
    response = await client.post("/api/download", json={"session_id": "cs_unknown", "product_id": "p1"})
    _assert_error(response, 404, "SESSION_NOT_FOUND")


@pytest.mark.asyncio
async def test_download_invalid_session_id(client: AsyncClient) -> None:
    response = await client.post("/api/download", json={"session_id": "pi_123", "product_id": "p1"})
    error = _assert_error(response, 400, "INVALID_SESSION_ID")
    assert '"cs_"' in error["message"]


@pytest.mark.asyncio
async def test_download_blank_product_id(client: AsyncClient) -> None:
    response = await client.post("/api/download", json={"session_id": "cs_test_1", "product_id": " "})
    _assert_error(response, 422, "VALIDATION_ERROR")


@pytest.mark.asyncio
async def test_download_missing_fields(client: AsyncClient) -> None:
    response = await client.post("/api/download", json={"session_id": "cs_test_1"})
    error = _assert_error(response, 422, "VALIDATION_ERROR")
    assert any(d["field"] == "product_id" for d in error["details"])


@pytest.mark.asyncio
async def test_download_store_outage_is_503(client: AsyncClient) -> None:
    broken = AsyncMock()
    broken.get.side_effect = RedisConnectionError("down")
    app.state.redis = broken

    response = await client.post("/api/download", json={"session_id": "cs_test_1", "product_id": "p1"})

    _assert_error(response, 503, "STORE_UNAVAILABLE")


# ---------------------------------------------------------------------------
# Test Group 4: read-only purchase endpoints
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_download_links(client: AsyncClient, repository) -> None:
    await repository.create(make_record(items=[make_item("p1", 3), make_item("p2", 1)]))
    await client.post("/api/download", json={"session_id": "cs_test_1", "product_id": "p2"})

    response = await client.get("/api/download-links", params={"session_id": "cs_test_1"})

    assert response.status_code == 200
    data = response.json()
    assert data["purchase"]["email"] == "a@b.com"
    assert data["purchase"]["payment_status"] == "paid"
    assert data["quantity"] == 4
    by_id = {d["product_id"]: d for d in data["downloads"]}
    assert by_id["p1"]["can_download"] is True
    assert by_id["p2"]["can_download"] is False
    assert by_id["p1"]["download_url"] == "/api/download?session_id=cs_test_1&product_id=p1"


@pytest.mark.asyncio
async def test_download_links_unknown_session(client: AsyncClient) -> None:
    response = await client.get("/api/download-links", params={"session_id": "cs_unknown"})
    _assert_error(response, 404, "NOT_FOUND")


@pytest.mark.asyncio
async def test_purchase_final(client: AsyncClient, repository) -> None:
    await repository.create(make_record())
    response = await client.get("/api/purchase-final", params={"session_id": "cs_test_1"})
    assert response.status_code == 200
    data = response.json()
    assert data["is_final"] is True
    assert data["finalized_at"] == "2026-01-05T10:00:00+00:00"


@pytest.mark.asyncio
async def test_webhook_check(client: AsyncClient, repository) -> None:
    missing = await client.get("/api/webhook/check", params={"session_id": "cs_test_1"})
    assert missing.json()["found"] is False

    await repository.create(make_record(items=[make_item("p1"), make_item("p2")]))
    found = await client.get("/api/webhook/check", params={"session_id": "cs_test_1"})
    assert found.json() == {"session_id": "cs_test_1", "found": True, "item_count": 2}


# ---------------------------------------------------------------------------
# Test Group 5: checkout
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_checkout_session_parks_cart(client: AsyncClient, gateway, redis_client) -> None:
    gateway.create_checkout_session.return_value = CheckoutSessionCreated(
        id="cs_test_new", url="https://checkout.stripe.com/pay/cs_test_new"
    )
    body = {
        "items": [{"name": "Sunset", "price": 0.99, "quantity": 2, "productId": "p1",
                   "imageHQ": "/hq/sunset.jpg"}],
        "customer_email": "a@b.com",
    }

    response = await client.post("/api/checkout-session", json=body)

    assert response.status_code == 200, response.text
    assert response.json() == {"id": "cs_test_new", "url": "https://checkout.stripe.com/pay/cs_test_new"}
    request_arg, temp_cart_key = gateway.create_checkout_session.await_args.args
    assert temp_cart_key.startswith("temp_cart:")
    cart = await get_temp_cart(redis_client, temp_cart_key)
    assert cart[0]["product_id"] == "p1"
    assert cart[0]["image_hq"] == "/hq/sunset.jpg"
    assert cart[0]["quantity"] == 2
    assert await redis_client.ttl(temp_cart_key) > 0


@pytest.mark.asyncio
async def test_checkout_session_empty_cart(client: AsyncClient, gateway) -> None:
    response = await client.post("/api/checkout-session", json={"items": []})
    _assert_error(response, 422, "VALIDATION_ERROR")
    gateway.create_checkout_session.assert_not_awaited()


@pytest.mark.asyncio
async def test_checkout_session_provider_failure(client: AsyncClient, gateway) -> None:
    gateway.create_checkout_session.side_effect = PaymentProviderError("boom")
    response = await client.post("/api/checkout-session", json={"items": [{"name": "Sunset", "price": 1}]})
    _assert_error(response, 502, "PAYMENT_PROVIDER_ERROR")


@pytest.mark.asyncio
async def test_stripe_key(client: AsyncClient, monkeypatch) -> None:
    monkeypatch.setattr(settings, "stripe_publishable_key", "pk_test_123")
    response = await client.get("/api/stripe-key")
    assert response.json() == {"publishable_key": "pk_test_123"}


@pytest.mark.asyncio
async def test_stripe_key_not_configured(client: AsyncClient, monkeypatch) -> None:
    monkeypatch.setattr(settings, "stripe_publishable_key", "")
    response = await client.get("/api/stripe-key")
    _assert_error(response, 500, "CONFIGURATION_ERROR")
