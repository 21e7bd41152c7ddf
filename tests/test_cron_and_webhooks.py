import hashlib
import hmac
import json
from datetime import datetime, timedelta

import pytest

from config.env import PROVIDER_WEBHOOK_SECRET

CRON_HEADERS = {"Authorization": "Bearer test-cron-secret"}


def _signed(payload: dict) -> tuple[bytes, dict]:
    body = json.dumps(payload).encode("utf-8")
    signature = hmac.new(PROVIDER_WEBHOOK_SECRET.encode("utf-8"), body, hashlib.sha256).hexdigest()
    return body, {"X-Provider-Signature": signature, "Content-Type": "application/json"}


# =====================================================
# Cron
# =====================================================

@pytest.mark.parametrize("headers", [{}, {"Authorization": "Bearer wrong"}])
async def test_cron_rejects_bad_credentials(client, headers):
    resp = await client.post("/api/cron/collect-debts", headers=headers)
    assert resp.status_code == 401


async def test_cron_collect_debts(client, db, make_seller, make_lot, make_debt):
    seller = await make_seller()
    await make_lot(seller["_id"], 5000)
    debt = await make_debt(seller["_id"], 2000)

    resp = await client.post("/api/cron/collect-debts", headers=CRON_HEADERS)

    assert resp.status_code == 200
    assert (await db.seller_debts.find_one({"_id": debt["_id"]}))["status"] == "collected"


async def test_cron_daily_runs_every_sweep(client, db, make_seller):
    seller = await make_seller()
    await db.subscriptions.update_many(
        {"user_id": seller["_id"]},
        {"$set": {"expires_at": datetime.utcnow() - timedelta(minutes=1)}},
    )

    resp = await client.post("/api/cron/daily", headers=CRON_HEADERS)

    assert resp.status_code == 200
    body = resp.json()
    assert set(body) == {
        "deposit_lots", "subscriptions", "debt_collection", "commission_deduction", "notifications",
    }
    assert body["subscriptions"]["expired"] == 1

    stored = await db.users.find_one({"_id": seller["_id"]})
    assert stored["payout_eligibility"] == "blocked"
    assert stored["eligibility_reasons"] == ["subscription_inactive"]
    # The eligibility change notification is delivered in the same run
    assert body["notifications"]["sent"] == 1
    assert await db.notifications.count_documents({"user_id": seller["_id"]}) == 1


# =====================================================
# Provider webhook
# =====================================================

async def test_webhook_requires_valid_signature(client):
    body, headers = _signed({"event_id": "evt_1", "account_id": "x", "status": "disabled"})

    missing = await client.post("/api/webhooks/payment-accounts", content=body)
    forged = await client.post(
        "/api/webhooks/payment-accounts",
        content=body,
        headers={"X-Provider-Signature": "0" * 64},
    )

    assert missing.status_code == 401
    assert forged.status_code == 401


async def test_webhook_disables_account_and_blocks_seller(client, db, make_seller):
    seller = await make_seller()
    account = await db.payment_accounts.find_one({"seller_id": seller["_id"]})
    body, headers = _signed({
        "event_id": "evt_disable",
        "account_id": str(account["_id"]),
        "status": "disabled",
        "reason": "compliance_hold",
    })

    first = await client.post("/api/webhooks/payment-accounts", content=body, headers=headers)
    second = await client.post("/api/webhooks/payment-accounts", content=body, headers=headers)

    assert first.status_code == 200
    assert first.json() == {"ok": True, "payout_eligibility": "blocked"}
    assert second.json() == first.json()

    stored = await db.payment_accounts.find_one({"_id": account["_id"]})
    assert stored["provider_status"] == "disabled"
    assert stored["provider_status_reason"] == "compliance_hold"

    seller = await db.users.find_one({"_id": seller["_id"]})
    assert seller["eligibility_reasons"] == ["payment_account_disabled"]
    assert await db.audit_logs.count_documents({"action": "PAYMENT_ACCOUNT_PROVIDER_STATUS"}) == 1


async def test_webhook_ignores_unknown_status(client, db, make_seller):
    seller = await make_seller()
    account = await db.payment_accounts.find_one({"seller_id": seller["_id"]})
    body, headers = _signed({"event_id": "evt_x", "account_id": str(account["_id"]), "status": "exploded"})

    resp = await client.post("/api/webhooks/payment-accounts", content=body, headers=headers)

    assert resp.json() == {"ok": True, "ignored": True}
    assert (await db.payment_accounts.find_one({"_id": account["_id"]}))["provider_status"] == "enabled"
