import logging
from datetime import datetime, timedelta

from fastapi import HTTPException
from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError

from config.constants import ORDER_COMPLETED
from config.env import COMMISSION_PAYMENT_DAYS
from models.commission import CommissionResolution, CommissionStatus
from models.debt import DebtCause
from utils import ledger_store
from utils.audit import log_audit
from utils.debt_collector import create_debt, take_from_lot
from utils.ledger_store import LedgerConsistencyError
from utils.notifications import queue_notification
from utils.seller_lock import seller_lock
from utils.wallet_service import (
    ENTRY_COMMISSION_CREDIT,
    ENTRY_COMMISSION_DEBIT,
    add_ledger_entry,
    get_wallet_balance,
)

logger = logging.getLogger(__name__)


def commission_amount(line_total: int, rate: float) -> int:
    return int(line_total * float(rate) / 100)


async def create_commissions_for_order(db, order: dict) -> list:
    """One pending obligation per referred order line."""
    affiliate_id = order.get("affiliate_id")
    if not affiliate_id:
        return []

    affiliate = await db.users.find_one({"_id": affiliate_id, "role": "affiliate"})
    if not affiliate:
        return []
    override = (affiliate.get("affiliate_profile") or {}).get("commission_rate")

    created = []
    now = datetime.utcnow()
    for item in order["items"]:
        rate = override if override is not None else item.get("commission_rate")
        if not rate:
            continue
        amount = commission_amount(item["line_total"], rate)
        if amount <= 0:
            continue

        doc = {
            "order_id": order["_id"],
            "product_id": item["product_id"],
            "affiliate_id": affiliate_id,
            "seller_id": order["seller_id"],
            "rate": float(rate),
            "amount": amount,
            "currency": order["pricing"]["currency"],
            "status": CommissionStatus.PENDING.value,
            "due_at": None,
            "created_at": now,
            "updated_at": now,
        }
        try:
            result = await db.commission_obligations.insert_one(doc)
        except DuplicateKeyError:
            continue
        doc["_id"] = result.inserted_id
        created.append(doc)

    return created


async def on_order_completed(db, order: dict):
    completed_at = order.get("completed_at") or datetime.utcnow()
    await db.commission_obligations.update_many(
        {"order_id": order["_id"], "status": CommissionStatus.PENDING.value},
        {"$set": {
            "due_at": completed_at + timedelta(days=COMMISSION_PAYMENT_DAYS),
            "updated_at": datetime.utcnow(),
        }},
    )


async def settle(db, commission_id, *, admin_id) -> dict:
    """
    Releases a pending commission once its order is completed.
    Paid from the seller's wallet to the affiliate's.
    """
    commission = await db.commission_obligations.find_one({"_id": commission_id})
    if not commission:
        raise HTTPException(status_code=404, detail="Commission not found")

    order = await db.orders.find_one({"_id": commission["order_id"]})
    if not order or order.get("status") != ORDER_COMPLETED:
        await log_audit(
            db, "COMMISSION_SETTLE",
            actor_id=admin_id, actor_role="admin", resource_id=commission_id,
            result="fail", meta={"reason": "order_not_completed"},
        )
        raise HTTPException(status_code=409, detail="Order is not completed")

    async with seller_lock(db, commission["seller_id"]):
        balance = await get_wallet_balance(db, commission["seller_id"], commission["currency"])
        if commission["status"] == CommissionStatus.PENDING.value and balance < commission["amount"]:
            raise HTTPException(status_code=409, detail="Seller balance does not cover this commission")

        settled = await db.commission_obligations.find_one_and_update(
            {"_id": commission_id, "status": CommissionStatus.PENDING.value},
            {"$set": {
                "status": CommissionStatus.SETTLED.value,
                "settled_at": datetime.utcnow(),
                "settled_by": admin_id,
                "updated_at": datetime.utcnow(),
            }},
            return_document=ReturnDocument.AFTER,
        )
        if not settled:
            current = await db.commission_obligations.find_one({"_id": commission_id})
            await log_audit(
                db, "COMMISSION_SETTLE",
                actor_id=admin_id, actor_role="admin", resource_id=commission_id,
                result="fail", meta={"status": current.get("status") if current else None},
            )
            raise HTTPException(
                status_code=409,
                detail=f"Commission is already {current.get('status') if current else 'gone'}",
            )

        await add_ledger_entry(
            db, settled["seller_id"], ENTRY_COMMISSION_DEBIT, settled["currency"],
            debit=settled["amount"], order_id=settled["order_id"],
            reference_id=settled["_id"], reason_code="COMMISSION_SETTLED",
        )
        await add_ledger_entry(
            db, settled["affiliate_id"], ENTRY_COMMISSION_CREDIT, settled["currency"],
            credit=settled["amount"], order_id=settled["order_id"],
            reference_id=settled["_id"], reason_code="COMMISSION_SETTLED",
        )

    await log_audit(
        db, "COMMISSION_SETTLE",
        actor_id=admin_id, actor_role="admin", resource_id=commission_id,
        meta={"amount": settled["amount"], "currency": settled["currency"]},
    )
    await queue_notification(
        db,
        user_id=settled["affiliate_id"],
        type="commission_settled",
        title="Commission paid",
        content="A referral commission has been released to your wallet.",
        related_id=settled["_id"],
        related_type="commission",
    )
    return settled


async def mark_overdue(db) -> int:
    """Pending obligations on completed orders past their due date become overdue."""
    now = datetime.utcnow()
    marked = 0

    cursor = db.commission_obligations.find({
        "status": CommissionStatus.PENDING.value,
        "due_at": {"$ne": None, "$lt": now},
    })
    async for commission in cursor:
        try:
            order = await db.orders.find_one({"_id": commission["order_id"]}, {"status": 1})
            if not order or order.get("status") != ORDER_COMPLETED:
                continue

            result = await db.commission_obligations.update_one(
                {"_id": commission["_id"], "status": CommissionStatus.PENDING.value},
                {"$set": {
                    "status": CommissionStatus.OVERDUE.value,
                    "overdue_at": now,
                    "updated_at": now,
                }},
            )
            marked += result.modified_count
        except Exception:
            logger.exception("COMMISSION_OVERDUE_MARK_ERROR commission=%s", commission["_id"])

    return marked


async def deduct_commission_from_deposit(db, commission_id, rates) -> dict:
    """
    Recovers an overdue commission from the seller's deposit. Whatever the
    deposit cannot cover becomes an overdue_commission debt; the affiliate is
    credited as that debt is collected.
    """
    commission = await db.commission_obligations.find_one({"_id": commission_id})
    if not commission:
        raise HTTPException(status_code=404, detail="Commission not found")

    seller_id = commission["seller_id"]
    currency = commission["currency"]

    async with seller_lock(db, seller_id):
        commission = await db.commission_obligations.find_one({"_id": commission_id})
        if commission["status"] != CommissionStatus.OVERDUE.value:
            raise HTTPException(status_code=409, detail=f"Commission is {commission['status']}")

        remaining = int(commission["amount"])
        deducted = 0

        for lot in await ledger_store.list_collateral_lots(db, seller_id):
            if remaining <= 0:
                break
            _, _, take = await take_from_lot(db, lot, remaining, currency, rates)
            remaining -= take
            deducted += take

        debt = None
        if remaining > 0:
            debt = await create_debt(
                db,
                seller_id=seller_id,
                cause=DebtCause.OVERDUE_COMMISSION.value,
                amount=remaining,
                currency=currency,
                reason="Overdue affiliate commission not covered by deposit",
                order_id=commission["order_id"],
                commission_id=commission["_id"],
            )

        resolution = (
            CommissionResolution.CONVERTED_TO_DEBT.value
            if debt else CommissionResolution.DEPOSIT_DEDUCTION.value
        )
        resolved = await db.commission_obligations.find_one_and_update(
            {"_id": commission_id, "status": CommissionStatus.OVERDUE.value},
            {"$set": {
                "status": CommissionStatus.RESOLVED.value,
                "resolution": resolution,
                "deducted_amount": deducted,
                "debt_id": debt["_id"] if debt else None,
                "resolved_at": datetime.utcnow(),
                "updated_at": datetime.utcnow(),
            }},
            return_document=ReturnDocument.AFTER,
        )
        if not resolved:
            raise LedgerConsistencyError(f"Commission {commission_id} changed during deduction")

        if deducted:
            await add_ledger_entry(
                db, commission["affiliate_id"], ENTRY_COMMISSION_CREDIT, currency,
                credit=deducted, order_id=commission["order_id"],
                reference_id=commission["_id"], reason_code="COMMISSION_FROM_DEPOSIT",
            )

    await log_audit(
        db, "COMMISSION_DEPOSIT_DEDUCTION",
        actor_id=None, actor_role="system", resource_id=commission_id,
        meta={"deducted": deducted, "debt": remaining, "resolution": resolution},
    )
    await queue_notification(
        db,
        user_id=seller_id,
        type="commission_deducted",
        title="Overdue commission recovered",
        content="An overdue affiliate commission was deducted from your deposit.",
        related_id=commission_id,
        related_type="commission",
    )
    return resolved


async def write_off(db, commission_id, *, admin_id, reason: str | None = None) -> dict:
    commission = await db.commission_obligations.find_one({"_id": commission_id})
    if not commission:
        raise HTTPException(status_code=404, detail="Commission not found")

    async with seller_lock(db, commission["seller_id"]):
        resolved = await db.commission_obligations.find_one_and_update(
            {"_id": commission_id, "status": CommissionStatus.OVERDUE.value},
            {"$set": {
                "status": CommissionStatus.RESOLVED.value,
                "resolution": CommissionResolution.WRITTEN_OFF.value,
                "write_off_reason": reason,
                "resolved_by": admin_id,
                "resolved_at": datetime.utcnow(),
                "updated_at": datetime.utcnow(),
            }},
            return_document=ReturnDocument.AFTER,
        )

    if not resolved:
        await log_audit(
            db, "COMMISSION_WRITE_OFF",
            actor_id=admin_id, actor_role="admin", resource_id=commission_id,
            result="fail", meta={"status": commission["status"]},
        )
        raise HTTPException(status_code=409, detail="Only overdue commissions can be written off")

    await log_audit(
        db, "COMMISSION_WRITE_OFF",
        actor_id=admin_id, actor_role="admin", resource_id=commission_id,
        meta={"reason": reason},
    )
    return resolved
