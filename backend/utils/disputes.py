"""
Dispute / refund orchestration.

Disputes: pending -> reviewing -> resolved, one open dispute per order.
Refunds: pending -> processing -> completed | failed (failed may be retried).

The buyer's refund completes first. The seller is charged back only what the
order already credited them; whatever the live balance cannot cover becomes a
seller debt, collected from deposits afterwards.
"""
import logging
from datetime import datetime, timedelta

from fastapi import HTTPException
from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError

from config.constants import ORDER_COMPLETED, ORDER_PAID, ORDER_REFUNDED, ORDER_SHIPPED
from config.env import REFUND_PROCESSING_TIMEOUT_SECONDS
from models.debt import DebtCause
from models.dispute import OPEN_DISPUTE_STATUSES, DisputeStatus, RefundStatus
from utils.audit import log_audit
from utils.debt_collector import collect_from_deposit, create_debt
from utils.notifications import queue_notification
from utils.order_timeline import (
    EVENT_DISPUTE_OPENED,
    EVENT_DISPUTE_RESOLVED,
    EVENT_REFUND_COMPLETED,
    EVENT_REFUND_FAILED,
    record_order_event,
)
from utils.payment_providers import ProviderError
from utils.seller_lock import seller_lock
from utils.wallet_service import order_settlement_net, recover_refund_from_wallet

logger = logging.getLogger(__name__)

DISPUTABLE_ORDER_STATUSES = (ORDER_PAID, ORDER_SHIPPED, ORDER_COMPLETED)


def _party_role(order: dict, user: dict) -> str | None:
    if user["_id"] == order["buyer_id"]:
        return "buyer"
    if user["_id"] == order["seller_id"]:
        return "seller"
    return None


# ======================================================
# DISPUTES
# ======================================================

async def open_dispute(db, order: dict, user: dict, *, dispute_type: str, reason: str, evidence: list) -> dict:
    role = _party_role(order, user)
    if not role:
        raise HTTPException(status_code=403, detail="Not a party to this order")

    if order["status"] not in DISPUTABLE_ORDER_STATUSES:
        raise HTTPException(status_code=409, detail=f"Order in status {order['status']} cannot be disputed")

    existing = await db.order_disputes.find_one({
        "order_id": order["_id"],
        "status": {"$in": list(OPEN_DISPUTE_STATUSES)},
    })
    if existing:
        raise HTTPException(status_code=409, detail="An open dispute already exists for this order")

    now = datetime.utcnow()
    dispute = {
        "order_id": order["_id"],
        "buyer_id": order["buyer_id"],
        "seller_id": order["seller_id"],
        "opened_by": user["_id"],
        "opened_by_role": role,
        "dispute_type": dispute_type,
        "reason": reason,
        "evidence": evidence,
        "responses": [],
        "status": DisputeStatus.PENDING.value,
        "is_open": True,
        "resolution": None,
        "refund_amount": None,
        "refund_id": None,
        "created_at": now,
        "updated_at": now,
    }
    try:
        result = await db.order_disputes.insert_one(dispute)
    except DuplicateKeyError:
        raise HTTPException(status_code=409, detail="An open dispute already exists for this order")
    dispute["_id"] = result.inserted_id

    await record_order_event(
        db,
        order_id=order["_id"],
        event=EVENT_DISPUTE_OPENED,
        actor_role=role,
        actor_id=user["_id"],
        metadata={"dispute_id": str(dispute["_id"]), "dispute_type": dispute_type},
    )
    await log_audit(
        db, "DISPUTE_OPEN",
        actor_id=user["_id"], actor_role=role, resource_id=dispute["_id"],
        meta={"order_id": str(order["_id"])},
    )

    counter_party = order["seller_id"] if role == "buyer" else order["buyer_id"]
    await queue_notification(
        db,
        user_id=counter_party,
        type="dispute_opened",
        title="A dispute was opened",
        content=f"A dispute was opened on order {order['_id']}: {reason}",
        related_id=dispute["_id"],
        related_type="dispute",
    )
    return dispute


async def respond(db, dispute: dict, order: dict, user: dict, *, message: str, evidence: list) -> dict:
    role = _party_role(order, user)
    if not role:
        raise HTTPException(status_code=403, detail="Not a party to this order")
    if user["_id"] == dispute["opened_by"]:
        raise HTTPException(status_code=403, detail="Only the other party can respond")
    if dispute["status"] not in OPEN_DISPUTE_STATUSES:
        raise HTTPException(status_code=409, detail="Dispute is already resolved")

    now = datetime.utcnow()
    updated = await db.order_disputes.find_one_and_update(
        {"_id": dispute["_id"], "status": {"$in": list(OPEN_DISPUTE_STATUSES)}},
        {
            "$push": {"responses": {
                "user_id": user["_id"],
                "role": role,
                "message": message,
                "evidence": evidence,
                "created_at": now,
            }},
            "$set": {"status": DisputeStatus.REVIEWING.value, "updated_at": now},
        },
        return_document=ReturnDocument.AFTER,
    )
    if not updated:
        raise HTTPException(status_code=409, detail="Dispute is already resolved")

    await log_audit(
        db, "DISPUTE_RESPOND",
        actor_id=user["_id"], actor_role=role, resource_id=dispute["_id"],
    )
    await queue_notification(
        db,
        user_id=dispute["opened_by"],
        type="dispute_response",
        title="Your dispute has a response",
        content=message[:200],
        related_id=dispute["_id"],
        related_type="dispute",
    )
    return updated


async def start_review(db, dispute_id, *, admin_id) -> dict:
    updated = await db.order_disputes.find_one_and_update(
        {"_id": dispute_id, "status": DisputeStatus.PENDING.value},
        {"$set": {
            "status": DisputeStatus.REVIEWING.value,
            "reviewer_id": admin_id,
            "updated_at": datetime.utcnow(),
        }},
        return_document=ReturnDocument.AFTER,
    )
    if not updated:
        raise HTTPException(status_code=409, detail="Only pending disputes can be moved to review")

    await log_audit(db, "DISPUTE_REVIEW", actor_id=admin_id, actor_role="admin", resource_id=dispute_id)
    return updated


async def resolve(
    db,
    dispute_id,
    *,
    admin_id,
    resolution: str,
    refund_amount: int,
    gateway,
    rates,
    background_tasks=None,
) -> tuple[dict, dict | None]:
    """
    Closes the dispute. A positive refund amount creates (or reuses) the
    dispute's refund obligation and drives it to the provider.
    """
    dispute = await db.order_disputes.find_one({"_id": dispute_id})
    if not dispute:
        raise HTTPException(status_code=404, detail="Dispute not found")

    order = await db.orders.find_one({"_id": dispute["order_id"]})
    if refund_amount:
        _check_refundable(order, refund_amount)

    resolved = await db.order_disputes.find_one_and_update(
        {"_id": dispute_id, "status": {"$in": list(OPEN_DISPUTE_STATUSES)}},
        {"$set": {
            "status": DisputeStatus.RESOLVED.value,
            "is_open": False,
            "resolution": resolution,
            "refund_amount": refund_amount or 0,
            "resolved_by": admin_id,
            "resolved_at": datetime.utcnow(),
            "updated_at": datetime.utcnow(),
        }},
        return_document=ReturnDocument.AFTER,
    )
    if not resolved:
        await log_audit(
            db, "DISPUTE_RESOLVE",
            actor_id=admin_id, actor_role="admin", resource_id=dispute_id,
            result="fail", meta={"status": dispute["status"]},
        )
        raise HTTPException(status_code=409, detail="Dispute is already resolved")

    await record_order_event(
        db,
        order_id=order["_id"],
        event=EVENT_DISPUTE_RESOLVED,
        actor_role="admin",
        actor_id=admin_id,
        metadata={"dispute_id": str(dispute_id), "refund_amount": refund_amount or 0},
    )
    await log_audit(
        db, "DISPUTE_RESOLVE",
        actor_id=admin_id, actor_role="admin", resource_id=dispute_id,
        meta={"resolution": resolution, "refund_amount": refund_amount or 0},
    )
    for party in (order["buyer_id"], order["seller_id"]):
        await queue_notification(
            db,
            user_id=party,
            type="dispute_resolved",
            title="Dispute resolved",
            content=resolution,
            related_id=dispute_id,
            related_type="dispute",
        )

    if not refund_amount:
        return resolved, None

    refund = await create_refund(
        db,
        order=order,
        amount=refund_amount,
        reason=f"Dispute resolution: {resolution}",
        dispute_id=dispute_id,
        created_by=admin_id,
    )
    await db.order_disputes.update_one({"_id": dispute_id}, {"$set": {"refund_id": refund["_id"]}})
    resolved["refund_id"] = refund["_id"]

    refund = await drive_refund(db, refund, gateway=gateway, rates=rates, background_tasks=background_tasks)
    return resolved, refund


# ======================================================
# REFUNDS
# ======================================================

def _check_refundable(order: dict | None, amount: int):
    if not order:
        raise HTTPException(status_code=404, detail="Order not found")
    if amount <= 0:
        raise HTTPException(status_code=400, detail="Refund amount must be positive")
    if not order.get("payment_reference"):
        raise HTTPException(status_code=409, detail="Order was never paid")
    left = int(order["pricing"]["total_amount"]) - int(order.get("refunded_amount", 0))
    if amount > left:
        raise HTTPException(status_code=400, detail="Refund exceeds the refundable amount")


async def create_refund(db, *, order: dict, amount: int, reason: str, dispute_id=None, created_by=None) -> dict:
    """A dispute has at most one refund; asking again returns the existing one."""
    if dispute_id is not None:
        existing = await db.order_refunds.find_one({"dispute_id": dispute_id})
        if existing:
            return existing
    else:
        in_flight = await db.order_refunds.find({
            "order_id": order["_id"],
            "status": {"$in": [RefundStatus.PENDING.value, RefundStatus.PROCESSING.value, RefundStatus.FAILED.value]},
        }).to_list(None)
        outstanding = sum(int(r["amount"]) for r in in_flight)
        _check_refundable(order, amount + outstanding)

    now = datetime.utcnow()
    refund = {
        "order_id": order["_id"],
        "buyer_id": order["buyer_id"],
        "seller_id": order["seller_id"],
        "dispute_id": dispute_id,
        "amount": int(amount),
        "currency": order["pricing"]["currency"],
        "reason": reason,
        "payment_provider": order["payment_provider"],
        "status": RefundStatus.PENDING.value,
        "attempt_count": 0,
        "provider_reference": None,
        "last_error": None,
        "charged_to_seller": None,
        "recovered_from_wallet": None,
        "debt_id": None,
        "created_by": created_by,
        "created_at": now,
        "updated_at": now,
    }
    try:
        result = await db.order_refunds.insert_one(refund)
    except DuplicateKeyError:
        return await db.order_refunds.find_one({"dispute_id": dispute_id})
    refund["_id"] = result.inserted_id

    await log_audit(
        db, "REFUND_CREATE",
        actor_id=created_by, actor_role="admin", resource_id=refund["_id"],
        meta={"order_id": str(order["_id"]), "amount": int(amount), "dispute_id": str(dispute_id) if dispute_id else None},
    )
    return refund


async def drive_refund(db, refund: dict, *, gateway, rates, background_tasks=None) -> dict:
    """
    Sends the refund to the provider that took the original payment, using
    the refund id as the provider idempotency key.

    A refund left in processing past REFUND_PROCESSING_TIMEOUT_SECONDS is
    claimed again; the provider key makes the repeated call safe.
    """
    now = datetime.utcnow()
    stale_before = now - timedelta(seconds=REFUND_PROCESSING_TIMEOUT_SECONDS)
    claimed = await db.order_refunds.find_one_and_update(
        {
            "_id": refund["_id"],
            "$or": [
                {"status": {"$in": [RefundStatus.PENDING.value, RefundStatus.FAILED.value]}},
                {"status": RefundStatus.PROCESSING.value, "processing_at": {"$lt": stale_before}},
            ],
        },
        {
            "$set": {"status": RefundStatus.PROCESSING.value, "processing_at": now},
            "$inc": {"attempt_count": 1},
        },
        return_document=ReturnDocument.AFTER,
    )
    if not claimed:
        current = await db.order_refunds.find_one({"_id": refund["_id"]})
        if current and current["status"] == RefundStatus.COMPLETED.value:
            return current
        raise HTTPException(status_code=409, detail="Refund is already processing")

    order = await db.orders.find_one({"_id": claimed["order_id"]})

    try:
        result = await gateway.refund(
            claimed["payment_provider"],
            original_reference=order["payment_reference"],
            amount=claimed["amount"],
            currency=claimed["currency"],
            idempotency_key=f"refund:{claimed['_id']}",
        )
    except ProviderError as e:
        await db.order_refunds.update_one(
            {"_id": claimed["_id"]},
            {"$set": {
                "status": RefundStatus.FAILED.value,
                "last_error": e.detail[:240],
                "failed_at": datetime.utcnow(),
            }},
        )
        await record_order_event(
            db,
            order_id=order["_id"],
            event=EVENT_REFUND_FAILED,
            actor_role="system",
            metadata={"refund_id": str(claimed["_id"]), "error": e.detail[:120]},
        )
        await log_audit(
            db, "REFUND_PROVIDER_CALL",
            actor_id=None, actor_role="system", resource_id=claimed["_id"],
            result="fail", meta={"provider": e.provider, "error": e.detail[:240]},
        )
        raise

    completed = await db.order_refunds.find_one_and_update(
        {"_id": claimed["_id"], "status": RefundStatus.PROCESSING.value},
        {"$set": {
            "status": RefundStatus.COMPLETED.value,
            "provider_reference": result["reference"],
            "completed_at": datetime.utcnow(),
            "last_error": None,
        }},
        return_document=ReturnDocument.AFTER,
    )
    if not completed:
        # Another attempt finished it first
        return await db.order_refunds.find_one({"_id": claimed["_id"]})

    await record_order_event(
        db,
        order_id=order["_id"],
        event=EVENT_REFUND_COMPLETED,
        actor_role="system",
        metadata={"refund_id": str(claimed["_id"]), "amount": claimed["amount"]},
    )
    await log_audit(
        db, "REFUND_COMPLETE",
        actor_id=None, actor_role="system", resource_id=claimed["_id"],
        meta={"provider_reference": result["reference"], "amount": claimed["amount"]},
    )
    await queue_notification(
        db,
        user_id=claimed["buyer_id"],
        type="refund_completed",
        title="Refund completed",
        content="Your refund has been sent to your original payment method.",
        related_id=claimed["_id"],
        related_type="refund",
    )

    return await _book_refund(db, completed, rates=rates, background_tasks=background_tasks)


async def _charged_for_order(db, order_id, *, exclude_refund_id) -> int:
    refunds = await db.order_refunds.find({
        "order_id": order_id,
        "_id": {"$ne": exclude_refund_id},
        "status": RefundStatus.COMPLETED.value,
    }).to_list(None)
    return sum(int(r.get("charged_to_seller") or 0) for r in refunds)


async def _book_refund(db, refund: dict, *, rates, background_tasks=None) -> dict:
    """
    Records a completed refund on the order and charges the seller back.

    Only what the seller was already credited for this order can be charged;
    a refund on an order that has not settled yet comes out of the payment the
    platform still holds, and the later settlement credits the remainder.
    """
    seller_id = refund["seller_id"]

    async with seller_lock(db, seller_id):
        order = await db.orders.find_one({"_id": refund["order_id"]})
        refunded_total = int(order.get("refunded_amount", 0)) + int(refund["amount"])
        order_update = {"refunded_amount": refunded_total, "updated_at": datetime.utcnow()}
        if refunded_total >= int(order["pricing"]["total_amount"]):
            order_update["status"] = ORDER_REFUNDED
            order_update["refunded_at"] = datetime.utcnow()
        await db.orders.update_one({"_id": order["_id"]}, {"$set": order_update})

        credited = await order_settlement_net(db, seller_id, order["_id"], refund["currency"])
        charged_before = await _charged_for_order(db, order["_id"], exclude_refund_id=refund["_id"])
        chargeable = max(0, min(int(refund["amount"]), credited - charged_before))

        recovered = 0
        if chargeable:
            recovered = await recover_refund_from_wallet(
                db, seller_id, refund["order_id"], refund["_id"], chargeable, refund["currency"]
            )
        shortfall = chargeable - recovered

        debt = None
        if shortfall > 0:
            debt = await create_debt(
                db,
                seller_id=seller_id,
                cause=DebtCause.DISPUTE_REFUND_SHORTFALL.value,
                amount=shortfall,
                currency=refund["currency"],
                reason="Refund not covered by wallet balance",
                order_id=refund["order_id"],
                dispute_id=refund.get("dispute_id"),
                refund_id=refund["_id"],
            )

        refund = await db.order_refunds.find_one_and_update(
            {"_id": refund["_id"]},
            {"$set": {
                "charged_to_seller": chargeable,
                "recovered_from_wallet": recovered,
                "debt_id": debt["_id"] if debt else None,
            }},
            return_document=ReturnDocument.AFTER,
        )

    if chargeable:
        await queue_notification(
            db,
            user_id=seller_id,
            type="refund_charged",
            title="Refund charged to your account",
            content="A buyer refund was charged to your wallet"
            + (" and the remainder recorded as an amount owed." if debt else "."),
            related_id=refund["_id"],
            related_type="refund",
        )

    if debt and background_tasks is not None:
        background_tasks.add_task(collect_from_deposit, db, seller_id, rates)

    return refund
