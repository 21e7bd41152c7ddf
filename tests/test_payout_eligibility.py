from datetime import datetime, timedelta

import pytest
from bson import ObjectId
from fastapi import HTTPException

from utils import payout_eligibility
from utils.ledger_store import LedgerConsistencyError


class _UnreachableDb:
    def __getattr__(self, name):
        raise RuntimeError("database unreachable")


async def test_fully_set_up_seller_is_eligible(db, make_seller):
    seller = await make_seller()

    result = await payout_eligibility.explain(db, seller["_id"])

    assert result == {"status": "eligible", "reasons": [], "required_action": None}
    assert await payout_eligibility.calculate(db, seller["_id"]) == "eligible"


async def test_unknown_seller_is_blocked(db, make_user):
    buyer = await make_user("buyer")

    assert (await payout_eligibility.explain(db, ObjectId()))["reasons"] == ["seller_not_found"]
    assert await payout_eligibility.calculate(db, buyer["_id"]) == "blocked"


async def test_read_failure_resolves_to_blocked():
    result = await payout_eligibility.explain(_UnreachableDb(), ObjectId())

    assert result["status"] == "blocked"
    assert result["reasons"] == ["ledger_unavailable"]
    assert result["required_action"] == "retry_later"


async def test_disabled_account_is_never_eligible(db, make_seller):
    seller = await make_seller()
    # A disabled non-default account still blocks
    await db.payment_accounts.insert_one({
        "seller_id": seller["_id"],
        "provider": "paypal",
        "is_default": False,
        "verification_status": "verified",
        "provider_status": "disabled",
    })

    result = await payout_eligibility.explain(db, seller["_id"])

    assert result["status"] == "blocked"
    assert "payment_account_disabled" in result["reasons"]


async def test_rejected_account_blocks(db, make_seller):
    seller = await make_seller()
    await db.payment_accounts.update_one(
        {"seller_id": seller["_id"]},
        {"$set": {"verification_status": "rejected"}},
    )

    result = await payout_eligibility.explain(db, seller["_id"])

    assert result["status"] == "blocked"
    assert result["reasons"] == ["payment_account_rejected"]
    assert result["required_action"] == "replace_payment_account"


async def test_unverified_default_account_is_pending_review(db, make_seller):
    seller = await make_seller()
    await db.payment_accounts.update_one(
        {"seller_id": seller["_id"]},
        {"$set": {"verification_status": "pending", "provider_status": "pending"}},
    )

    result = await payout_eligibility.explain(db, seller["_id"])

    assert result["status"] == "pending_review"
    assert result["reasons"] == ["payment_account_unverified", "provider_account_pending"]
    assert result["required_action"] == "await_verification"


async def test_missing_account_is_pending_review(db, make_seller):
    seller = await make_seller(account=False)

    result = await payout_eligibility.explain(db, seller["_id"])

    assert result["status"] == "pending_review"
    assert result["reasons"] == ["payment_account_missing"]


@pytest.mark.parametrize(
    "fields, reason",
    [
        ({"is_frozen": True}, "account_frozen"),
        ({"payment_control": {"enabled": False, "reason": "deposit_breach"}}, "deposit_breach"),
    ],
)
async def test_seller_flags_block(db, make_seller, fields, reason):
    seller = await make_seller(**fields)

    result = await payout_eligibility.explain(db, seller["_id"])

    assert result["status"] == "blocked"
    assert reason in result["reasons"]


async def test_expired_subscription_blocks(db, make_seller):
    seller = await make_seller(subscription=False)
    await db.subscriptions.insert_one({
        "user_id": seller["_id"],
        "subscription_type": "seller",
        "status": "active",
        "expires_at": datetime.utcnow() - timedelta(minutes=1),
    })

    result = await payout_eligibility.explain(db, seller["_id"])

    assert result["reasons"] == ["subscription_inactive"]
    assert result["required_action"] == "renew_subscription"


async def test_active_violation_blocks(db, make_seller):
    seller = await make_seller()
    await db.seller_violations.insert_one({"seller_id": seller["_id"], "status": "active"})

    assert (await payout_eligibility.explain(db, seller["_id"]))["reasons"] == ["active_violation"]


async def test_only_overdue_debt_blocks(db, make_seller, make_debt):
    seller = await make_seller()
    await make_debt(seller["_id"], 1000)
    assert await payout_eligibility.calculate(db, seller["_id"]) == "eligible"

    await make_debt(seller["_id"], 1000, created_at=datetime.utcnow() - timedelta(days=31))
    result = await payout_eligibility.explain(db, seller["_id"])
    assert result["reasons"] == ["overdue_debt"]
    assert result["required_action"] == "settle_debt"


async def test_update_persists_and_is_idempotent(db, make_seller):
    seller = await make_seller(payout_eligibility="blocked", eligibility_reasons=["account_frozen"])

    first = await payout_eligibility.update(db, seller["_id"], trigger="test")
    second = await payout_eligibility.update(db, seller["_id"], trigger="test")

    assert first == second
    stored = await db.users.find_one({"_id": seller["_id"]})
    assert stored["payout_eligibility"] == "eligible"
    assert stored["eligibility_reasons"] == []
    assert stored["eligibility_updated_at"] is not None
    # Only the actual change is audited and announced
    assert await db.audit_logs.count_documents({"action": "ELIGIBILITY_UPDATE"}) == 1
    assert await db.notification_queue.count_documents({"type": "payout_eligibility"}) == 1


async def test_update_raises_when_write_does_not_land(db, make_seller, monkeypatch):
    seller = await make_seller(payout_eligibility="blocked")

    async def _lost_write(db, seller_id, result):
        return None

    monkeypatch.setattr(payout_eligibility, "_persist_eligibility", _lost_write)

    with pytest.raises(LedgerConsistencyError):
        await payout_eligibility.update(db, seller["_id"])

    assert await db.audit_logs.count_documents({"action": "ELIGIBILITY_UPDATE", "result": "fail"}) == 1


def test_validate_seller_payment_ready():
    payout_eligibility.validate_seller_payment_ready({"payout_eligibility": "eligible"})

    with pytest.raises(HTTPException) as exc:
        payout_eligibility.validate_seller_payment_ready({
            "payout_eligibility": "blocked",
            "eligibility_reasons": ["overdue_debt"],
        })

    assert exc.value.status_code == 403
    assert exc.value.detail["payoutEligibility"] == "blocked"
    assert exc.value.detail["requiredAction"] == "settle_debt"


def test_validate_rejects_pending_review():
    with pytest.raises(HTTPException) as exc:
        payout_eligibility.validate_seller_payment_ready({"payout_eligibility": "pending_review"})

    assert exc.value.status_code == 403
