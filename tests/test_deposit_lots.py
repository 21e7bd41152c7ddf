from datetime import datetime, timedelta

import pytest
from bson import ObjectId
from fastapi import HTTPException

from models.deposit import DepositLotStatus, can_transition
from utils.deposits import process_refund, refund_fee, release_matured_lots, request_refund
from utils.ledger_store import transition_lot
from utils.payment_providers import ProviderError

ALL_STATUSES = [s.value for s in DepositLotStatus]
ALLOWED = {
    ("held", "refundable"),
    ("held", "forfeited"),
    ("refundable", "refunding"),
    ("refunding", "refunded"),
}


def test_lot_transitions_never_skip_a_step():
    for current in ALL_STATUSES:
        for target in ALL_STATUSES:
            assert can_transition(current, target) is ((current, target) in ALLOWED)


def test_unknown_status_never_transitions():
    assert can_transition("held", "archived") is False
    assert can_transition("archived", "held") is False


async def test_transition_lot_rejects_skips(db, make_seller, make_lot):
    seller = await make_seller()
    lot = await make_lot(seller["_id"], 1000)

    with pytest.raises(HTTPException) as exc:
        await transition_lot(db, lot, "refunded")
    assert exc.value.status_code == 409


async def test_transition_lot_loses_race_quietly(db, make_seller, make_lot):
    seller = await make_seller()
    lot = await make_lot(seller["_id"], 1000)
    await db.deposit_lots.update_one({"_id": lot["_id"]}, {"$set": {"status": "forfeited"}})

    assert await transition_lot(db, lot, "refundable") is None


def test_refund_fee():
    assert refund_fee("card", 10000) == 320
    assert refund_fee("card", 10) == 10
    assert refund_fee("bank", 10000) == 0


async def test_release_matured_lots(db, make_seller, make_lot):
    seller = await make_seller()
    matured = await make_lot(seller["_id"], 1000, refundable_after=datetime.utcnow() - timedelta(minutes=1))
    young = await make_lot(seller["_id"], 1000)

    result = await release_matured_lots(db)

    assert result == {"updated": 1, "failed": []}
    assert (await db.deposit_lots.find_one({"_id": matured["_id"]}))["status"] == "refundable"
    assert (await db.deposit_lots.find_one({"_id": young["_id"]}))["status"] == "held"


async def test_refund_request_and_processing(db, rates, gateway, make_seller, make_lot):
    seller = await make_seller()
    lot = await make_lot(
        seller["_id"], 10000, status="refundable",
        refundable_after=datetime.utcnow() - timedelta(days=1),
    )

    requested = await request_refund(db, lot["_id"], seller, rates)
    assert requested["status"] == "refunding"

    refunded = await process_refund(db, lot["_id"], admin_id=ObjectId(), gateway=gateway)

    assert refunded["status"] == "refunded"
    assert refunded["refund_fee_amount"] == 320
    assert refunded["refunded_amount"] == 9680

    [call] = gateway.calls_for("refund")
    assert call["amount"] == 9680
    assert call["original_reference"] == lot["provider_reference"]
    assert call["idempotency_key"] == f"deposit-refund:{lot['_id']}"


async def test_refund_request_collects_debt_first(db, rates, make_seller, make_lot, make_debt):
    seller = await make_seller()
    lot = await make_lot(
        seller["_id"], 10000, status="refundable",
        refundable_after=datetime.utcnow() - timedelta(days=1),
    )
    debt = await make_debt(seller["_id"], 2000)

    requested = await request_refund(db, lot["_id"], seller, rates)

    assert requested["deducted_amount"] == 2000
    assert (await db.seller_debts.find_one({"_id": debt["_id"]}))["status"] == "collected"


async def test_refund_blocked_while_orders_depend_on_it(db, rates, make_seller, make_lot, make_order):
    seller = await make_seller()
    lot = await make_lot(
        seller["_id"], 10000, status="refundable",
        refundable_after=datetime.utcnow() - timedelta(days=1),
    )
    await make_order(seller["_id"], ObjectId(), 8000, status="shipped")

    with pytest.raises(HTTPException) as exc:
        await request_refund(db, lot["_id"], seller, rates)

    assert exc.value.status_code == 409
    assert exc.value.detail["exposure"] == 80.0
    assert (await db.deposit_lots.find_one({"_id": lot["_id"]}))["status"] == "refundable"


async def test_held_lot_cannot_be_refunded(db, rates, make_seller, make_lot):
    seller = await make_seller()
    lot = await make_lot(seller["_id"], 10000)

    with pytest.raises(HTTPException) as exc:
        await request_refund(db, lot["_id"], seller, rates)
    assert exc.value.status_code == 409


async def test_provider_failure_keeps_lot_refunding(db, gateway, make_seller, make_lot):
    seller = await make_seller()
    lot = await make_lot(seller["_id"], 10000, status="refunding")
    gateway.failing.add("refund")

    with pytest.raises(ProviderError):
        await process_refund(db, lot["_id"], admin_id=ObjectId(), gateway=gateway)

    stored = await db.deposit_lots.find_one({"_id": lot["_id"]})
    assert stored["status"] == "refunding"
    assert "declined" in stored["last_refund_error"]

    gateway.failing.clear()
    refunded = await process_refund(db, lot["_id"], admin_id=ObjectId(), gateway=gateway)
    assert refunded["status"] == "refunded"
    keys = {c["idempotency_key"] for c in gateway.calls_for("refund")}
    assert keys == {f"deposit-refund:{lot['_id']}"}
