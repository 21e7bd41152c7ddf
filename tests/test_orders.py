import asyncio
import pytest
from bson import ObjectId

from utils import ledger_store
from utils.wallet_service import get_wallet_balance


@pytest.fixture
def make_product(db):
    async def _make(seller_id, price: int, *, stock: int = 10, currency: str = "USD", commission_rate=None):
        product = {
            "_id": ObjectId(),
            "seller_id": seller_id,
            "title": "Widget",
            "price": price,
            "currency": currency,
            "stock": stock,
            "active": True,
            "commission_rate": commission_rate,
        }
        await db.products.insert_one(product)
        return product

    return _make


def _order_body(product, quantity=1, key="order-1", **extra):
    return {
        "items": [{"product_id": str(product["_id"]), "quantity": quantity}],
        "payment_provider": "card",
        "idempotency_key": key,
        **extra,
    }


async def test_order_within_collateral_succeeds(
    client, db, rates, auth_headers, make_seller, make_user, make_lot, make_product
):
    seller = await make_seller()
    buyer = await make_user("buyer")
    await make_lot(seller["_id"], 20000)
    product = await make_product(seller["_id"], 8000)

    resp = await client.post("/api/orders", json=_order_body(product), headers=auth_headers(buyer))

    assert resp.status_code == 200
    assert resp.json()["status"] == "pending_payment"
    assert resp.json()["total_amount"] == 8000

    exposure = await ledger_store.sum_exposure(db, seller["_id"], rates)
    collateral = await ledger_store.sum_collateral(db, seller["_id"], rates)
    assert collateral >= exposure == 8000
    assert (await db.products.find_one({"_id": product["_id"]}))["stock"] == 9


async def test_order_beyond_collateral_locks_seller(
    client, db, auth_headers, make_seller, make_user, make_lot, make_product
):
    seller = await make_seller()
    buyer = await make_user("buyer")
    await make_lot(seller["_id"], 20000)
    product = await make_product(seller["_id"], 8000)

    first = await client.post("/api/orders", json=_order_body(product, key="a"), headers=auth_headers(buyer))
    assert first.status_code == 200

    resp = await client.post("/api/orders", json=_order_body(product, quantity=2, key="b"), headers=auth_headers(buyer))

    assert resp.status_code == 409
    detail = resp.json()["detail"]
    assert detail["requiresDeposit"] is True
    assert detail["requiredAmount"] == 40.0
    assert detail["suggestedTier"] == 300
    assert detail["currentTier"] == 100

    stored = await db.users.find_one({"_id": seller["_id"]})
    assert stored["payment_control"]["enabled"] is False
    assert stored["payment_control"]["reason"] == "deposit_breach"
    assert stored["payout_eligibility"] == "blocked"
    assert "deposit_breach" in stored["eligibility_reasons"]

    assert await db.orders.count_documents({"seller_id": seller["_id"]}) == 1
    assert (await db.products.find_one({"_id": product["_id"]}))["stock"] == 9


async def test_deposit_payment_lifts_breach(
    client, db, gateway, auth_headers, make_seller, make_user, make_product
):
    seller = await make_seller()
    buyer = await make_user("buyer")
    product = await make_product(seller["_id"], 8000)

    blocked = await client.post("/api/orders", json=_order_body(product), headers=auth_headers(buyer))
    assert blocked.status_code == 409

    check = await client.get("/api/deposits/check", params={"amount": 80}, headers=auth_headers(seller))
    assert check.json()["suggestedTier"] == 100

    paid = await client.post(
        "/api/deposits/pay",
        json={
            "amount": 100,
            "currency": "USD",
            "payment_provider": "card",
            "payment_token": "tok_visa",
            "idempotency_key": "deposit-1",
        },
        headers=auth_headers(seller),
    )
    assert paid.status_code == 200
    assert paid.json()["payment_reenabled"] is True
    assert paid.json()["lot"]["status"] == "held"
    assert gateway.calls_for("charge")[0]["amount"] == 10000

    stored = await db.users.find_one({"_id": seller["_id"]})
    assert stored["payment_control"]["enabled"] is True
    assert stored["payout_eligibility"] == "eligible"

    retry = await client.post("/api/orders", json=_order_body(product, key="order-2"), headers=auth_headers(buyer))
    assert retry.status_code == 200


async def test_order_creation_is_idempotent(client, db, auth_headers, make_seller, make_user, make_lot, make_product):
    seller = await make_seller()
    buyer = await make_user("buyer")
    await make_lot(seller["_id"], 50000)
    product = await make_product(seller["_id"], 1000)

    first = await client.post("/api/orders", json=_order_body(product, key="same"), headers=auth_headers(buyer))
    second = await client.post("/api/orders", json=_order_body(product, key="same"), headers=auth_headers(buyer))

    assert first.json()["order_id"] == second.json()["order_id"]
    assert await db.orders.count_documents({}) == 1


async def test_ineligible_seller_cannot_take_orders(
    client, db, auth_headers, make_seller, make_user, make_lot, make_product
):
    seller = await make_seller(account=False, payout_eligibility="pending_review",
                               eligibility_reasons=["payment_account_missing"])
    buyer = await make_user("buyer")
    await make_lot(seller["_id"], 50000)
    product = await make_product(seller["_id"], 1000)

    resp = await client.post("/api/orders", json=_order_body(product), headers=auth_headers(buyer))

    assert resp.status_code == 403
    assert resp.json()["detail"]["requiredAction"] == "bind_payment_account"
    assert await db.orders.count_documents({}) == 0


async def test_order_lifecycle_settles_wallet_and_commission(
    client, db, gateway, auth_headers, make_seller, make_user, make_lot, make_product
):
    seller = await make_seller()
    buyer = await make_user("buyer")
    affiliate = await make_user("affiliate")
    await make_lot(seller["_id"], 50000)
    product = await make_product(seller["_id"], 10000, commission_rate=5)

    created = await client.post(
        "/api/orders",
        json=_order_body(product, affiliate_id=str(affiliate["_id"])),
        headers=auth_headers(buyer),
    )
    order_id = created.json()["order_id"]

    paid = await client.post(f"/api/orders/{order_id}/pay", json={"payment_token": "tok"}, headers=auth_headers(buyer))
    assert paid.status_code == 200
    assert paid.json()["order"]["payment_reference"] == "charge_1"

    assert (await client.post(f"/api/orders/{order_id}/ship", headers=auth_headers(seller))).status_code == 200
    assert (await client.post(f"/api/orders/{order_id}/complete", headers=auth_headers(buyer))).status_code == 200

    # 5% platform fee
    assert await get_wallet_balance(db, seller["_id"], "USD") == 9500

    commission = await db.commission_obligations.find_one({"order_id": ObjectId(order_id)})
    assert commission["amount"] == 500
    assert commission["due_at"] is not None

    detail = await client.get(f"/api/orders/{order_id}", headers=auth_headers(buyer))
    events = [e["event"] for e in detail.json()["timeline"]]
    assert events == ["ORDER_CREATED", "ORDER_PAID", "ORDER_SHIPPED", "ORDER_COMPLETED"]


async def test_cancel_releases_stock_and_exposure(
    client, db, rates, auth_headers, make_seller, make_user, make_lot, make_product
):
    seller = await make_seller()
    buyer = await make_user("buyer")
    await make_lot(seller["_id"], 50000)
    product = await make_product(seller["_id"], 1000, stock=3)

    created = await client.post("/api/orders", json=_order_body(product, quantity=2), headers=auth_headers(buyer))
    order_id = created.json()["order_id"]

    resp = await client.post(f"/api/orders/{order_id}/cancel", headers=auth_headers(seller))

    assert resp.status_code == 200
    assert (await db.products.find_one({"_id": product["_id"]}))["stock"] == 3
    assert await ledger_store.sum_exposure(db, seller["_id"], rates) == 0


async def test_concurrent_orders_cannot_both_pass_deposit_check(
    client, db, rates, auth_headers, make_seller, make_user, make_lot, make_product
):
    seller = await make_seller()
    buyer = await make_user("buyer")
    await make_lot(seller["_id"], 10000)
    product = await make_product(seller["_id"], 8000)

    first, second = await asyncio.gather(
        client.post("/api/orders", json=_order_body(product, key="race-a"), headers=auth_headers(buyer)),
        client.post("/api/orders", json=_order_body(product, key="race-b"), headers=auth_headers(buyer)),
    )

    assert sorted([first.status_code, second.status_code]) == [200, 409]
    assert await db.orders.count_documents({"seller_id": seller["_id"]}) == 1

    exposure = await ledger_store.sum_exposure(db, seller["_id"], rates)
    collateral = await ledger_store.sum_collateral(db, seller["_id"], rates)
    assert collateral >= exposure == 8000
    assert (await db.products.find_one({"_id": product["_id"]}))["stock"] == 9
