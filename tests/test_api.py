import httpx
import pytest

from api.server import create_app
from core.rate_limit import RateLimiter
from fakes import ADDRESS, AGENT_ID, BUYER, STORE_WALLET, STRANGER, provider_down, tx_hash

TX = tx_hash(1)
ADMIN = {"X-Admin-Token": "operator-secret"}


def order_body(**overrides) -> dict:
    body = {
        "stickers": [{"id": "claw-classic", "qty": 1}],
        "shipping_address": dict(ADDRESS),
        "agent_id": AGENT_ID,
        "payer_wallet": BUYER,
        "shipping_method": "STANDARD",
        "shipping_cost": "3.72",
    }
    body.update(overrides)
    return body


def client_for(app) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://store.test")


@pytest.fixture()
def app(settings, orchestrator):
    return create_app(
        settings,
        orchestrator,
        rate_limiter=RateLimiter(1000, 60),
        order_rate_limiter=RateLimiter(1000, 60),
    )


@pytest.fixture()
async def client(app):
    async with client_for(app) as c:
        yield c


class TestPublicRoutes:
    async def test_health(self, client):
        resp = await client.get("/api/health")

        assert resp.status_code == 200
        assert resp.json()["status"] == "ok"
        assert resp.json()["version"] == "1.0.0"

    async def test_catalog_lists_active_only(self, client):
        body = (await client.get("/api/catalog")).json()

        ids = [s["id"] for s in body["stickers"]]
        assert "claw-classic" in ids
        assert "retired-mascot" not in ids
        assert body["total"] == len(ids)

    async def test_sticker(self, client):
        assert (await client.get("/api/sticker/claw-classic")).json()["basePrice"] == "4.20"

        missing = await client.get("/api/sticker/retired-mascot")
        assert missing.status_code == 404
        assert missing.json() == {"error": "Sticker not found"}

    async def test_payment_info(self, client):
        body = (await client.get("/api/payment-info")).json()

        assert body["wallet"] == STORE_WALLET
        assert body["chainId"] == 8453
        assert body["token"] == "USDC"

    async def test_shipping_estimate(self, client):
        resp = await client.post("/api/shipping/estimate", json={
            "items": [{"id": "claw-classic", "qty": 2}],
            "shippingAddress": {"country": "US", "city": "Chatsworth", "zip": "91311"},
        })

        assert resp.status_code == 200
        assert resp.json()["rates"]["standard"]["cost"] == "3.72"


class TestCreateOrder:
    async def test_created(self, client, chain):
        chain.pay(TX, "7.92")

        resp = await client.post("/api/order", json=order_body(payment_tx_hash=TX))

        assert resp.status_code == 201
        body = resp.json()
        assert body["total"] == "7.92"
        assert body["status"] == "fulfilled"
        assert body["payment"]["from"] == BUYER
        assert body["payment"]["method"] == "x402-usdc"

    async def test_camel_case_body_and_headers(self, client, chain):
        chain.pay(TX, "7.92")
        body = {
            "stickers": [{"id": "claw-classic", "qty": 1}],
            "shippingAddress": dict(ADDRESS),
            "agentId": 24212,
            "shippingMethod": "STANDARD",
            "shippingCost": 3.72,
        }

        resp = await client.post(
            "/api/order", json=body, headers={"X-Wallet": BUYER, "X-Payment-Tx": TX}
        )

        assert resp.status_code == 201
        assert resp.json()["payment"]["transactionHash"] == TX

    async def test_validation_errors_are_aggregated(self, client):
        resp = await client.post("/api/order", json=order_body(
            stickers=[],
            shipping_address={**ADDRESS, "country": "usa"},
            shipping_cost="-1",
            unexpected="field",
        ))

        assert resp.status_code == 400
        body = resp.json()
        assert body["error"] == "Invalid request"
        assert len(body["errors"]) >= 4
        assert "stickers" in [e["field"] for e in body["errors"]]

    async def test_payment_required(self, client):
        resp = await client.post("/api/order", json=order_body())

        assert resp.status_code == 402
        body = resp.json()
        assert body["error"] == "Payment required"
        assert body["expectedAmount"] == "7.92"
        assert body["paymentInfo"]["wallet"] == STORE_WALLET

    async def test_agent_required(self, client):
        resp = await client.post("/api/order", json=order_body(agent_id=None, payment_tx_hash=TX))

        assert resp.status_code == 403
        assert resp.json()["error"] == "Agent verification required"

    async def test_wrong_agent_owner(self, client, chain):
        chain.pay(TX, "7.92", sender=STRANGER)

        resp = await client.post("/api/order", json=order_body(payer_wallet=STRANGER, payment_tx_hash=TX))

        assert resp.status_code == 403
        assert resp.json()["owner"] == BUYER

    async def test_replay(self, client, chain):
        chain.pay(TX, "7.92")
        assert (await client.post("/api/order", json=order_body(payment_tx_hash=TX))).status_code == 201

        resp = await client.post("/api/order", json=order_body(payment_tx_hash=TX))

        assert resp.status_code == 400
        assert resp.json()["error"] == "Payment already used"

    async def test_fulfillment_failure_is_still_created(self, client, chain, fulfillment):
        fulfillment.error = provider_down()
        chain.pay(TX, "7.92")

        resp = await client.post("/api/order", json=order_body(payment_tx_hash=TX))

        assert resp.status_code == 201
        assert resp.json()["status"] == "fulfillment_failed"

    async def test_order_rate_limit(self, settings, orchestrator):
        app = create_app(
            settings,
            orchestrator,
            rate_limiter=RateLimiter(1000, 60),
            order_rate_limiter=RateLimiter(1, 60),
        )
        async with client_for(app) as client:
            assert (await client.post("/api/order", json=order_body())).status_code == 402

            resp = await client.post("/api/order", json=order_body())

        assert resp.status_code == 429
        assert int(resp.headers["Retry-After"]) > 0

    async def test_global_rate_limit(self, settings, orchestrator):
        app = create_app(settings, orchestrator, rate_limiter=RateLimiter(2, 60))
        async with client_for(app) as client:
            codes = [(await client.get("/api/health")).status_code for _ in range(3)]

        assert codes == [200, 200, 429]


class TestLookup:
    async def test_owner_only_and_no_address(self, client, chain):
        chain.pay(TX, "7.92")
        order_id = (await client.post("/api/order", json=order_body(payment_tx_hash=TX))).json()["orderId"]

        own = await client.get(f"/api/order/{order_id}", params={"wallet": BUYER})
        other = await client.get(f"/api/order/{order_id}", params={"wallet": STRANGER})
        anonymous = await client.get(f"/api/order/{order_id}")

        assert own.status_code == 200
        assert own.json()["status"] == "fulfilled"
        assert ADDRESS["address1"] not in own.text
        assert other.status_code == 403
        assert anonymous.status_code == 403

    async def test_unknown_order(self, client):
        resp = await client.get("/api/order/missing", params={"wallet": BUYER})

        assert resp.status_code == 404
        assert resp.json()["error"] == "Order not found"


class TestAdmin:
    async def test_requires_token(self, client):
        assert (await client.get("/api/admin/orders/failed")).status_code == 403
        assert (await client.get("/api/admin/orders/failed", headers={"X-Admin-Token": "guess"})).status_code == 403

    async def test_resubmit_failed_order(self, client, chain, fulfillment):
        fulfillment.error = provider_down()
        chain.pay(TX, "7.92")
        order_id = (await client.post("/api/order", json=order_body(payment_tx_hash=TX))).json()["orderId"]

        failed = (await client.get("/api/admin/orders/failed", headers=ADMIN)).json()["orders"]
        assert [o["orderId"] for o in failed] == [order_id]

        fulfillment.error = None
        resp = await client.post(f"/api/admin/order/{order_id}/resubmit", headers=ADMIN)

        assert resp.status_code == 200
        assert resp.json()["status"] == "fulfilled"

    async def test_stats(self, client, chain):
        chain.pay(TX, "7.92")
        await client.post("/api/order", json=order_body(payment_tx_hash=TX))

        body = (await client.get("/api/admin/stats", headers=ADMIN)).json()

        assert body["orders"]["totalOrders"] == 1
        assert body["orders"]["totalRevenue"] == "7.92"
        assert body["attester"]["hasMinimumBalance"] is True
