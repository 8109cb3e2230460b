import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

from main import create_app


@pytest_asyncio.fixture
async def client(container):
    app = create_app()
    # lifespan does not run under ASGITransport; inject the wired services directly
    app.state.container = container
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac


@pytest.mark.asyncio
async def test_health(client):
    resp = await client.get("/health")
    assert resp.status_code == 200
    assert resp.json()["data"] == {"status": "healthy", "processors": ["gateway_a", "gateway_card"]}
    assert "X-Request-ID" in resp.headers


@pytest.mark.asyncio
async def test_preview_and_create_order(client, order_lines):
    resp = await client.post("/api/v1/orders/preview", json={"currency": "USD", "lines": order_lines})
    assert resp.status_code == 200
    assert (resp.json()["data"]["state"], resp.json()["data"]["total"]) == ("draft", 10000)

    resp = await client.post("/api/v1/orders", json={"currency": "USD", "lines": order_lines})
    assert resp.status_code == 201
    order_id = resp.json()["data"]["id"]

    resp = await client.get(f"/api/v1/orders/{order_id}/payment-methods")
    assert sorted(m["key"] for m in resp.json()["data"]) == ["gateway_a", "gateway_card"]


@pytest.mark.asyncio
async def test_validation_and_not_found(client):
    resp = await client.post("/api/v1/orders", json={"currency": "USD", "lines": []})
    assert resp.status_code == 422

    resp = await client.get("/api/v1/orders/999")
    assert resp.status_code == 404
    assert resp.json()["error"]["type"] == "OrderNotFound"


@pytest.mark.asyncio
async def test_redirect_payment_and_webhooks(client, order, webhook):
    resp = await client.post(
        f"/api/v1/payments/orders/{order.id}/redirect",
        json={"processor": "gateway_a", "idempotency_key": "checkout-1"},
    )
    assert resp.status_code == 200
    payment = resp.json()["data"]["payment"]
    assert resp.json()["data"]["redirect_url"].endswith(payment["external_ref"])

    headers, body = webhook("capture_succeeded", payment["external_ref"], amount=10000)
    resp = await client.post("/api/v1/payments/webhooks/gateway_a", headers=headers, content=body)
    assert resp.status_code == 200
    assert resp.json()["data"]["outcome"] == "applied"

    resp = await client.post("/api/v1/payments/webhooks/gateway_a", headers=headers, content=body)
    assert resp.status_code == 200
    assert resp.json()["data"]["outcome"] == "duplicate_ignored"

    # orphans are acknowledged so the gateway stops retrying
    orphan_headers, orphan_body = webhook("capture_succeeded", "ga_unknown", amount=10000)
    resp = await client.post("/api/v1/payments/webhooks/gateway_a", headers=orphan_headers, content=orphan_body)
    assert resp.status_code == 200
    assert resp.json()["data"]["outcome"] == "rejected"

    resp = await client.get(f"/api/v1/orders/{order.id}/receipts")
    receipts = resp.json()["data"]
    assert [r["total"] for r in receipts] == [10000]
    assert sum(item["line_total"] for item in receipts[0]["line_items"]) == 10000

    resp = await client.get(f"/api/v1/orders/{order.id}")
    assert resp.json()["data"]["state"] == "paid"


@pytest.mark.asyncio
async def test_webhook_rejections(client, webhook):
    headers, body = webhook("capture_succeeded", "ga_1", amount=10000, secret="wrong")
    resp = await client.post("/api/v1/payments/webhooks/gateway_a", headers=headers, content=body)
    assert resp.status_code == 400
    assert resp.json()["error"]["type"] == "RejectedCallback"

    headers, body = webhook("capture_succeeded", "ga_1", amount=10000)
    resp = await client.post("/api/v1/payments/webhooks/unknown", headers=headers, content=body)
    assert resp.status_code == 404


@pytest.mark.asyncio
async def test_refund_endpoint(client, order):
    resp = await client.post(
        f"/api/v1/payments/orders/{order.id}/card",
        json={"processor": "gateway_card", "idempotency_key": "card-1", "payment_token": "pm_card_visa"},
    )
    assert resp.status_code == 200
    payment_id = resp.json()["data"]["payment"]["id"]

    resp = await client.post(f"/api/v1/payments/{payment_id}/refunds", json={"amount": 20000, "idempotency_key": "rf-1"})
    assert resp.status_code == 422
    assert resp.json()["error"]["type"] == "RefundExceeded"

    resp = await client.post(f"/api/v1/payments/{payment_id}/refunds", json={"amount": 4000, "idempotency_key": "rf-1"})
    assert resp.status_code == 200
    assert resp.json()["data"]["state"] == "partially_refunded"


@pytest.mark.asyncio
async def test_unknown_processor_is_bad_request(client, order):
    resp = await client.post(
        f"/api/v1/payments/orders/{order.id}/redirect",
        json={"processor": "nope", "idempotency_key": "checkout-1"},
    )
    assert resp.status_code == 400
    assert resp.json()["error"]["type"] == "InvalidProcessor"
