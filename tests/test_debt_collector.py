from datetime import datetime, timedelta

import pytest
from bson import ObjectId
from fastapi import HTTPException

from utils.debt_collector import collect_from_deposit, collect_from_payout, create_debt, mark_debt_paid
from workers.debt_collection_worker import run_debt_collection


async def test_deposit_collection_conserves_amounts(db, rates, make_seller, make_lot, make_debt):
    seller = await make_seller()
    older = await make_lot(seller["_id"], 3000, created_at=datetime.utcnow() - timedelta(days=2))
    newer = await make_lot(seller["_id"], 5000, created_at=datetime.utcnow() - timedelta(days=1))
    debt = await make_debt(seller["_id"], 6000)

    result = await collect_from_deposit(db, seller["_id"], rates)

    assert result == {"collectedCount": 1, "totalCollected": 6000, "remainingDebt": 0}

    older = await db.deposit_lots.find_one({"_id": older["_id"]})
    newer = await db.deposit_lots.find_one({"_id": newer["_id"]})
    debt = await db.seller_debts.find_one({"_id": debt["_id"]})

    # Oldest lot drains first and is forfeited once empty
    assert older["deducted_amount"] == 3000
    assert older["status"] == "forfeited"
    assert newer["deducted_amount"] == 3000
    assert newer["status"] == "held"

    assert debt["status"] == "collected"
    assert debt["collected_amount"] == 6000
    assert debt["collected_at"] is not None

    events = await db.debt_collections.find({"debt_id": debt["_id"]}).to_list(None)
    assert sum(e["amount"] for e in events) == 6000
    assert sum(e["source_amount"] for e in events) == older["deducted_amount"] + newer["deducted_amount"]
    assert {e["source"] for e in events} == {"deposit"}

    audits = await db.audit_logs.find({"action": "DEBT_COLLECT_DEPOSIT"}).to_list(None)
    assert len(audits) == 1


async def test_partial_collection_leaves_debt_pending(db, rates, make_seller, make_lot, make_debt):
    seller = await make_seller()
    await make_lot(seller["_id"], 4000, status="refundable")
    debt = await make_debt(seller["_id"], 10000)

    result = await collect_from_deposit(db, seller["_id"], rates)

    assert result["collectedCount"] == 0
    assert result["totalCollected"] == 4000
    assert result["remainingDebt"] == 6000

    debt = await db.seller_debts.find_one({"_id": debt["_id"]})
    assert debt["status"] == "pending"
    assert debt["collected_amount"] == 4000


async def test_cross_currency_collection(db, rates, make_seller, make_lot, make_debt):
    seller = await make_seller()
    lot = await make_lot(seller["_id"], 300, currency="EUR")
    debt = await make_debt(seller["_id"], 1000)

    result = await collect_from_deposit(db, seller["_id"], rates)

    assert result["totalCollected"] == 600
    assert result["remainingDebt"] == 400

    event = await db.debt_collections.find_one({"debt_id": debt["_id"]})
    assert event["amount"] == 600
    assert event["currency"] == "USD"
    assert event["source_amount"] == 300
    assert event["source_currency"] == "EUR"
    assert (await db.deposit_lots.find_one({"_id": lot["_id"]}))["deducted_amount"] == 300


async def test_nothing_to_collect_writes_nothing(db, rates, make_seller, make_lot):
    seller = await make_seller()
    await make_lot(seller["_id"], 4000)

    result = await collect_from_deposit(db, seller["_id"], rates)

    assert result == {"collectedCount": 0, "totalCollected": 0, "remainingDebt": 0}
    assert await db.audit_logs.count_documents({}) == 0
    assert await db.debt_collections.count_documents({}) == 0


async def test_payout_collection_caps_at_payout(db, rates, make_seller, make_debt):
    seller = await make_seller()
    first = await make_debt(seller["_id"], 3000, created_at=datetime.utcnow() - timedelta(days=1))
    second = await make_debt(seller["_id"], 9000)
    payout_id = ObjectId()

    result = await collect_from_payout(db, seller["_id"], 10000, "USD", payout_id, rates)

    assert result == {"actualPayoutAmount": 0, "deductedDebtAmount": 10000, "remainingDebt": 2000}
    assert (await db.seller_debts.find_one({"_id": first["_id"]}))["status"] == "collected"
    second = await db.seller_debts.find_one({"_id": second["_id"]})
    assert second["status"] == "pending"
    assert second["collected_amount"] == 7000

    audit = await db.audit_logs.find({"action": "DEBT_COLLECT_PAYOUT"}).to_list(None)
    assert len(audit) == 1
    assert audit[0]["resource_id"] == str(payout_id)


async def test_payout_collection_rejects_non_positive_amount(db, rates, make_seller):
    seller = await make_seller()

    with pytest.raises(HTTPException) as exc:
        await collect_from_payout(db, seller["_id"], 0, "USD", ObjectId(), rates)

    assert exc.value.status_code == 400


async def test_create_debt_is_idempotent_per_reference(db, make_seller):
    seller = await make_seller()
    refund_id = ObjectId()

    first = await create_debt(
        db, seller_id=seller["_id"], cause="dispute_refund_shortfall", amount=1500,
        currency="USD", reason="shortfall", refund_id=refund_id,
    )
    second = await create_debt(
        db, seller_id=seller["_id"], cause="dispute_refund_shortfall", amount=1500,
        currency="USD", reason="shortfall", refund_id=refund_id,
    )

    assert first["_id"] == second["_id"]
    assert await db.seller_debts.count_documents({"refund_id": refund_id}) == 1
    assert await db.audit_logs.count_documents({"action": "SELLER_DEBT_CREATE"}) == 1


async def test_create_debt_requires_its_reference(db, make_seller):
    seller = await make_seller()

    with pytest.raises(ValueError):
        await create_debt(
            db, seller_id=seller["_id"], cause="overdue_commission", amount=100,
            currency="USD", reason="missing commission id",
        )


async def test_mark_debt_paid_once(db, make_seller, make_debt):
    seller = await make_seller()
    debt = await make_debt(seller["_id"], 2500)
    admin_id = ObjectId()

    paid = await mark_debt_paid(db, debt["_id"], admin_id=admin_id, reference="BANK-123")
    assert paid["status"] == "paid"
    assert paid["paid_reference"] == "BANK-123"

    with pytest.raises(HTTPException) as exc:
        await mark_debt_paid(db, debt["_id"], admin_id=admin_id, reference="BANK-123")
    assert exc.value.status_code == 409

    assert await db.audit_logs.count_documents({"action": "SELLER_DEBT_MARK_PAID", "result": "fail"}) == 1


async def test_sweep_blocks_seller_whose_debt_went_overdue(db, rates, make_seller, make_debt):
    seller = await make_seller()
    await make_debt(seller["_id"], 4000, created_at=datetime.utcnow() - timedelta(days=365))

    result = await run_debt_collection(db, rates)

    assert result["debts_collected"] == 0
    assert result["sellers_not_eligible"] == 1
    stored = await db.users.find_one({"_id": seller["_id"]})
    assert stored["payout_eligibility"] == "blocked"
    assert stored["eligibility_reasons"] == ["overdue_debt"]


async def test_sweep_keeps_recent_uncollected_debt_eligible(db, rates, make_seller, make_debt):
    seller = await make_seller()
    await make_debt(seller["_id"], 4000)

    result = await run_debt_collection(db, rates)

    assert result["sellers_processed"] == 1
    assert (await db.users.find_one({"_id": seller["_id"]}))["payout_eligibility"] == "eligible"
