from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException
from datetime import datetime
from typing import Literal, Optional
from pydantic import BaseModel

from database import get_db
from models.debt import DebtPaymentRecord, DebtStatus, ViolationPenaltyRequest
from models.dispute import AdminRefundRequest, DisputeResolve
from models.payment_account import AccountVerification, PaymentAccountVerify
from utils import payout_eligibility
from utils.audit import log_audit
from utils.commission_settlement import settle, write_off
from utils.debt_collector import mark_debt_paid
from utils.deposits import process_refund
from utils.disputes import create_refund, drive_refund, resolve, start_review
from utils.guards import parse_object_id
from utils.ledger_store import debt_remaining
from utils.money import get_rate_lookup, normalize_currency, to_minor_units
from utils.mongo import serialize_doc, serialize_docs
from utils.payment_providers import get_provider_gateway
from utils.payouts import retry_payout
from utils.security import require_role
from utils.seller_lock import seller_lock
from utils.violations import apply_violation_penalty, resolve_violation


router = APIRouter(prefix="/api/admin", tags=["Admin"])


# =====================================================
# SCHEMAS
# =====================================================

class WriteOffRequest(BaseModel):
    reason: Optional[str] = None


class ViolationResolveRequest(BaseModel):
    note: Optional[str] = None


# =====================================================
# PAYMENT ACCOUNT VERIFICATION
# =====================================================

@router.post("/payment-accounts/{account_id}/verify")
async def verify_payment_account(
    account_id: str,
    data: PaymentAccountVerify,
    admin=Depends(require_role("admin")),
    db=Depends(get_db),
):
    if data.action not in ("verify", "reject"):
        raise HTTPException(400, "Action must be verify or reject")

    account = await db.payment_accounts.find_one({"_id": parse_object_id(account_id, "account_id")})
    if not account:
        raise HTTPException(404, "Payment account not found")

    status = AccountVerification.VERIFIED.value if data.action == "verify" else AccountVerification.REJECTED.value

    async with seller_lock(db, account["seller_id"]):
        await db.payment_accounts.update_one(
            {"_id": account["_id"]},
            {"$set": {
                "verification_status": status,
                "verification_reason": data.reason,
                "verified_by": admin["_id"],
                "verified_at": datetime.utcnow(),
                "updated_at": datetime.utcnow(),
            }},
        )
        eligibility = await payout_eligibility.update(db, account["seller_id"], trigger="account_verification")

    await log_audit(
        db, "PAYMENT_ACCOUNT_VERIFY",
        actor_id=admin["_id"], actor_role="admin", resource_id=account["_id"],
        meta={"action": data.action, "reason": data.reason},
    )
    return {"message": f"Payment account {status}", "eligibility": eligibility}


# =====================================================
# DISPUTES / REFUNDS
# =====================================================

@router.post("/disputes/{dispute_id}/review")
async def review_dispute(
    dispute_id: str,
    admin=Depends(require_role("admin")),
    db=Depends(get_db),
):
    dispute = await start_review(db, parse_object_id(dispute_id, "dispute_id"), admin_id=admin["_id"])
    return {"message": "Dispute under review", "dispute": serialize_doc(dispute)}


@router.post("/disputes/{dispute_id}/resolve")
async def resolve_dispute(
    dispute_id: str,
    data: DisputeResolve,
    background_tasks: BackgroundTasks,
    admin=Depends(require_role("admin")),
    db=Depends(get_db),
    rates=Depends(get_rate_lookup),
    gateway=Depends(get_provider_gateway),
):
    dispute, refund = await resolve(
        db,
        parse_object_id(dispute_id, "dispute_id"),
        admin_id=admin["_id"],
        resolution=data.resolution,
        refund_amount=to_minor_units(data.refund_amount or 0),
        gateway=gateway,
        rates=rates,
        background_tasks=background_tasks,
    )
    return {
        "message": "Dispute resolved",
        "dispute": serialize_doc(dispute),
        "refund": serialize_doc(refund) if refund else None,
    }


@router.post("/refunds/{refund_id}/retry")
async def retry_refund(
    refund_id: str,
    background_tasks: BackgroundTasks,
    admin=Depends(require_role("admin")),
    db=Depends(get_db),
    rates=Depends(get_rate_lookup),
    gateway=Depends(get_provider_gateway),
):
    refund = await db.order_refunds.find_one({"_id": parse_object_id(refund_id, "refund_id")})
    if not refund:
        raise HTTPException(404, "Refund not found")
    # A processing refund is only re-claimed once it has gone stale
    if refund["status"] not in ("failed", "processing"):
        raise HTTPException(409, f"Refund is {refund['status']}, only failed or stuck refunds can be retried")

    await log_audit(db, "REFUND_RETRY", actor_id=admin["_id"], actor_role="admin", resource_id=refund["_id"])
    refund = await drive_refund(db, refund, gateway=gateway, rates=rates, background_tasks=background_tasks)
    return {"message": "Refund completed", "refund": serialize_doc(refund)}


@router.post("/orders/{order_id}/refund")
async def admin_refund_order(
    order_id: str,
    data: AdminRefundRequest,
    background_tasks: BackgroundTasks,
    admin=Depends(require_role("admin")),
    db=Depends(get_db),
    rates=Depends(get_rate_lookup),
    gateway=Depends(get_provider_gateway),
):
    order = await db.orders.find_one({"_id": parse_object_id(order_id, "order_id")})
    if not order:
        raise HTTPException(404, "Order not found")

    refund = await create_refund(
        db,
        order=order,
        amount=to_minor_units(data.amount),
        reason=data.reason,
        created_by=admin["_id"],
    )
    refund = await drive_refund(db, refund, gateway=gateway, rates=rates, background_tasks=background_tasks)
    return {"message": "Refund completed", "refund": serialize_doc(refund)}


# =====================================================
# COMMISSIONS
# =====================================================

@router.post("/commissions/{commission_id}/settle")
async def settle_commission(
    commission_id: str,
    admin=Depends(require_role("admin")),
    db=Depends(get_db),
):
    commission = await settle(db, parse_object_id(commission_id, "commission_id"), admin_id=admin["_id"])
    return {"message": "Commission settled", "commission": serialize_doc(commission)}


@router.post("/commissions/{commission_id}/write-off")
async def write_off_commission(
    commission_id: str,
    data: WriteOffRequest,
    admin=Depends(require_role("admin")),
    db=Depends(get_db),
):
    commission = await write_off(
        db, parse_object_id(commission_id, "commission_id"), admin_id=admin["_id"], reason=data.reason
    )
    return {"message": "Commission written off", "commission": serialize_doc(commission)}


# =====================================================
# PAYOUTS
# =====================================================

@router.post("/payouts/{payout_id}/retry")
async def retry_failed_payout(
    payout_id: str,
    admin=Depends(require_role("admin")),
    db=Depends(get_db),
    gateway=Depends(get_provider_gateway),
):
    payout = await retry_payout(db, parse_object_id(payout_id, "payout_id"), admin_id=admin["_id"], gateway=gateway)
    return {"message": "Payout retried successfully", "payout": serialize_doc(payout)}


# =====================================================
# VIOLATIONS
# =====================================================

@router.post("/violation-penalties/deduct")
async def deduct_violation_penalty(
    data: ViolationPenaltyRequest,
    admin=Depends(require_role("admin")),
    db=Depends(get_db),
    rates=Depends(get_rate_lookup),
):
    seller = await db.users.find_one({"_id": parse_object_id(data.seller_id, "seller_id"), "role": "seller"})
    if not seller:
        raise HTTPException(404, "Seller not found")

    result = await apply_violation_penalty(
        db,
        seller,
        amount=to_minor_units(data.amount),
        currency=normalize_currency(data.currency),
        violation_type=data.violation_type,
        violation_reason=data.violation_reason,
        related_order_id=parse_object_id(data.related_order_id, "related_order_id") if data.related_order_id else None,
        related_dispute_id=parse_object_id(data.related_dispute_id, "related_dispute_id") if data.related_dispute_id else None,
        admin_id=admin["_id"],
        rates=rates,
    )
    return {
        "message": "Penalty applied",
        "violation": serialize_doc(result["violation"]),
        "debt": serialize_doc(result["debt"]),
        "collection": result["collection"],
    }


@router.post("/violations/{violation_id}/resolve")
async def resolve_seller_violation(
    violation_id: str,
    data: ViolationResolveRequest,
    admin=Depends(require_role("admin")),
    db=Depends(get_db),
):
    violation = await resolve_violation(
        db, parse_object_id(violation_id, "violation_id"), admin_id=admin["_id"], note=data.note
    )
    return {"message": "Violation resolved", "violation": serialize_doc(violation)}


# =====================================================
# DEPOSITS
# =====================================================

@router.post("/deposits/{lot_id}/process-refund")
async def process_deposit_refund(
    lot_id: str,
    admin=Depends(require_role("admin")),
    db=Depends(get_db),
    gateway=Depends(get_provider_gateway),
):
    lot = await process_refund(db, parse_object_id(lot_id, "lot_id"), admin_id=admin["_id"], gateway=gateway)
    return {"message": "Deposit refunded", "lot": serialize_doc(lot)}


# =====================================================
# SELLER DEBTS
# =====================================================

@router.get("/seller-debts")
async def list_seller_debts(
    status: Literal["pending", "collected", "paid"] = "pending",
    admin=Depends(require_role("admin")),
    db=Depends(get_db),
):
    pipeline = [
        {"$match": {"status": status}},
        {"$group": {
            "_id": {"seller_id": "$seller_id", "currency": "$currency"},
            "amount": {"$sum": "$amount"},
            "collected": {"$sum": "$collected_amount"},
            "count": {"$sum": 1},
        }},
    ]
    rows = await db.seller_debts.aggregate(pipeline).to_list(None)
    return {
        "status": status,
        "sellers": [
            {
                "seller_id": str(r["_id"]["seller_id"]),
                "currency": r["_id"]["currency"],
                "debt_count": r["count"],
                "total_amount": r["amount"],
                "outstanding": r["amount"] - r["collected"],
            }
            for r in rows
        ],
    }


@router.get("/seller-debts/{seller_id}")
async def seller_debt_detail(
    seller_id: str,
    admin=Depends(require_role("admin")),
    db=Depends(get_db),
):
    seller_oid = parse_object_id(seller_id, "seller_id")
    debts = await db.seller_debts.find({"seller_id": seller_oid}).sort("created_at", -1).to_list(None)
    collections = await db.debt_collections.find({"seller_id": seller_oid}).sort("created_at", -1).to_list(None)

    outstanding = {}
    for debt in debts:
        if debt["status"] == DebtStatus.PENDING.value:
            outstanding[debt["currency"]] = outstanding.get(debt["currency"], 0) + debt_remaining(debt)

    return {
        "debts": serialize_docs(debts),
        "collections": serialize_docs(collections),
        "outstanding": outstanding,
    }


@router.post("/seller-debts/{debt_id}/mark-paid")
async def mark_seller_debt_paid(
    debt_id: str,
    data: DebtPaymentRecord,
    admin=Depends(require_role("admin")),
    db=Depends(get_db),
):
    debt = await mark_debt_paid(
        db, parse_object_id(debt_id, "debt_id"), admin_id=admin["_id"], reference=data.reference, note=data.note
    )
    return {"message": "Debt marked as paid", "debt": serialize_doc(debt)}


# =====================================================
# ELIGIBILITY
# =====================================================

@router.post("/sellers/{seller_id}/recompute-eligibility")
async def recompute_eligibility(
    seller_id: str,
    admin=Depends(require_role("admin")),
    db=Depends(get_db),
):
    seller_oid = parse_object_id(seller_id, "seller_id")
    seller = await db.users.find_one({"_id": seller_oid, "role": "seller"})
    if not seller:
        raise HTTPException(404, "Seller not found")

    result = await payout_eligibility.update(db, seller_oid, trigger="admin")
    await log_audit(
        db, "ELIGIBILITY_RECOMPUTE",
        actor_id=admin["_id"], actor_role="admin", resource_id=seller_oid,
        meta={"status": result["status"]},
    )
    return result
