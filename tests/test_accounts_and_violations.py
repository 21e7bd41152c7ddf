import hashlib
import hmac
import json

from config.env import PROVIDER_WEBHOOK_SECRET


async def _provider_event(client, event_id, account_id, status):
    body = json.dumps({"event_id": event_id, "account_id": account_id, "status": status}).encode("utf-8")
    signature = hmac.new(PROVIDER_WEBHOOK_SECRET.encode("utf-8"), body, hashlib.sha256).hexdigest()
    return await client.post(
        "/api/webhooks/payment-accounts",
        content=body,
        headers={"X-Provider-Signature": signature, "Content-Type": "application/json"},
    )


async def test_account_onboarding_reaches_eligible(client, db, auth_headers, make_seller, make_user):
    seller = await make_seller(account=False)
    admin = await make_user("admin")

    bound = await client.post(
        "/api/payment-accounts",
        json={"provider": "bank", "account_reference": "GB29NWBK60161331926819", "currency": "USD"},
        headers=auth_headers(seller),
    )
    assert bound.status_code == 200
    account = bound.json()["account"]
    assert account["account_reference_last4"] == "6819"
    assert "account_reference_encrypted" not in account

    default = await client.post(f"/api/payment-accounts/{account['id']}/set-default", headers=auth_headers(seller))
    assert default.json()["eligibility"]["status"] == "pending_review"
    assert default.json()["eligibility"]["reasons"] == ["payment_account_unverified", "provider_account_pending"]

    verified = await client.post(
        f"/api/admin/payment-accounts/{account['id']}/verify",
        json={"action": "verify"},
        headers=auth_headers(admin),
    )
    assert verified.json()["eligibility"]["reasons"] == ["provider_account_pending"]

    enabled = await _provider_event(client, "evt_enable", account["id"], "enabled")
    assert enabled.json()["payout_eligibility"] == "eligible"

    view = await client.get("/api/seller/eligibility", headers=auth_headers(seller))
    assert view.json()["payout_eligibility"] == "eligible"
    assert view.json()["reasons"] == []


async def test_rejected_account_cannot_be_default(client, auth_headers, make_seller, make_user):
    seller = await make_seller(account=False)
    admin = await make_user("admin")
    bound = await client.post(
        "/api/payment-accounts",
        json={"provider": "bank", "account_reference": "GB29NWBK60161331926819"},
        headers=auth_headers(seller),
    )
    account_id = bound.json()["account"]["id"]

    await client.post(
        f"/api/admin/payment-accounts/{account_id}/verify",
        json={"action": "reject", "reason": "name mismatch"},
        headers=auth_headers(admin),
    )
    resp = await client.post(f"/api/payment-accounts/{account_id}/set-default", headers=auth_headers(seller))

    assert resp.status_code == 409


async def test_foreign_account_is_hidden(client, auth_headers, make_seller):
    owner = await make_seller(account=False)
    other = await make_seller(account=False)
    bound = await client.post(
        "/api/payment-accounts",
        json={"provider": "bank", "account_reference": "GB29NWBK60161331926819"},
        headers=auth_headers(owner),
    )

    resp = await client.post(
        f"/api/payment-accounts/{bound.json()['account']['id']}/set-default",
        headers=auth_headers(other),
    )

    assert resp.status_code == 404


async def test_violation_penalty_blocks_until_resolved(client, db, auth_headers, make_seller, make_user, make_lot):
    seller = await make_seller()
    admin = await make_user("admin")
    lot = await make_lot(seller["_id"], 10000)

    resp = await client.post(
        "/api/admin/violation-penalties/deduct",
        json={
            "seller_id": str(seller["_id"]),
            "amount": 25,
            "currency": "USD",
            "violation_type": "counterfeit",
            "violation_reason": "listing removed",
        },
        headers=auth_headers(admin),
    )

    assert resp.status_code == 200
    body = resp.json()
    assert body["debt"]["status"] == "collected"
    assert body["collection"]["totalCollected"] == 2500
    assert (await db.deposit_lots.find_one({"_id": lot["_id"]}))["deducted_amount"] == 2500

    stored = await db.users.find_one({"_id": seller["_id"]})
    assert stored["payout_eligibility"] == "blocked"
    assert stored["eligibility_reasons"] == ["active_violation"]

    resolved = await client.post(
        f"/api/admin/violations/{body['violation']['id']}/resolve",
        json={"note": "appeal accepted"},
        headers=auth_headers(admin),
    )
    assert resolved.status_code == 200
    assert (await db.users.find_one({"_id": seller["_id"]}))["payout_eligibility"] == "eligible"

    again = await client.post(
        f"/api/admin/violations/{body['violation']['id']}/resolve",
        json={},
        headers=auth_headers(admin),
    )
    assert again.status_code == 409


async def test_non_admin_cannot_penalise(client, auth_headers, make_seller):
    seller = await make_seller()

    resp = await client.post(
        "/api/admin/violation-penalties/deduct",
        json={
            "seller_id": str(seller["_id"]),
            "amount": 25,
            "violation_type": "counterfeit",
            "violation_reason": "x",
        },
        headers=auth_headers(seller),
    )

    assert resp.status_code == 403
