from datetime import datetime

from fastapi import HTTPException
from pymongo import ReturnDocument

from models.debt import DebtCause
from utils import payout_eligibility
from utils.audit import log_audit
from utils.debt_collector import collect_from_deposit, create_debt
from utils.notifications import queue_notification

VIOLATION_ACTIVE = "active"
VIOLATION_RESOLVED = "resolved"


async def apply_violation_penalty(
    db,
    seller: dict,
    *,
    amount: int,
    currency: str,
    violation_type: str,
    violation_reason: str,
    related_order_id=None,
    related_dispute_id=None,
    admin_id,
    rates,
) -> dict:
    """
    Records the violation (blocking payouts while active), books the penalty
    as a debt and collects what the deposit can cover right away.
    """
    now = datetime.utcnow()
    violation = {
        "seller_id": seller["_id"],
        "violation_type": violation_type,
        "reason": violation_reason,
        "penalty_amount": int(amount),
        "currency": currency,
        "related_order_id": related_order_id,
        "related_dispute_id": related_dispute_id,
        "status": VIOLATION_ACTIVE,
        "created_by": admin_id,
        "created_at": now,
        "updated_at": now,
    }
    result = await db.seller_violations.insert_one(violation)
    violation["_id"] = result.inserted_id

    debt = await create_debt(
        db,
        seller_id=seller["_id"],
        cause=DebtCause.VIOLATION_PENALTY.value,
        amount=int(amount),
        currency=currency,
        reason=f"Violation penalty: {violation_reason}",
        order_id=related_order_id,
        dispute_id=related_dispute_id,
        violation_id=violation["_id"],
        actor_id=admin_id,
        actor_role="admin",
    )
    collection = await collect_from_deposit(db, seller["_id"], rates, actor_id=admin_id, actor_role="admin")

    await log_audit(
        db, "VIOLATION_PENALTY_DEDUCT",
        actor_id=admin_id, actor_role="admin", resource_id=violation["_id"],
        meta={
            "seller_id": str(seller["_id"]),
            "amount": int(amount),
            "currency": currency,
            "collected": collection["totalCollected"],
        },
    )
    await queue_notification(
        db,
        user_id=seller["_id"],
        type="violation_penalty",
        title="Penalty applied",
        content=f"A {violation_type} penalty was applied to your account: {violation_reason}",
        related_id=violation["_id"],
        related_type="violation",
    )

    debt = await db.seller_debts.find_one({"_id": debt["_id"]})
    return {"violation": violation, "debt": debt, "collection": collection}


async def resolve_violation(db, violation_id, *, admin_id, note: str | None = None) -> dict:
    resolved = await db.seller_violations.find_one_and_update(
        {"_id": violation_id, "status": VIOLATION_ACTIVE},
        {"$set": {
            "status": VIOLATION_RESOLVED,
            "resolution_note": note,
            "resolved_by": admin_id,
            "resolved_at": datetime.utcnow(),
            "updated_at": datetime.utcnow(),
        }},
        return_document=ReturnDocument.AFTER,
    )
    if not resolved:
        raise HTTPException(status_code=409, detail="Violation is not active")

    await log_audit(
        db, "VIOLATION_RESOLVE",
        actor_id=admin_id, actor_role="admin", resource_id=violation_id,
        meta={"note": note},
    )
    await payout_eligibility.update(db, resolved["seller_id"], trigger="violation_resolved")
    return resolved
