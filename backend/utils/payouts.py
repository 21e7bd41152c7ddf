import logging
from datetime import datetime

from fastapi import HTTPException
from pymongo import ReturnDocument

from models.payment_account import AccountVerification, ProviderAccountStatus
from utils import ledger_store
from utils.audit import log_audit
from utils.crypto import open_account_reference
from utils.debt_collector import collect_from_payout
from utils.money import to_major_units
from utils.notifications import queue_notification
from utils.payment_providers import ProviderError
from utils.payout_eligibility import validate_seller_payment_ready
from utils.seller_lock import seller_lock
from utils.wallet_service import (
    ENTRY_DEBT_COLLECTION_DEBIT,
    ENTRY_PAYOUT_DEBIT,
    add_ledger_entry,
    get_wallet_balance,
)

logger = logging.getLogger(__name__)

PAYOUT_PENDING = "pending"
PAYOUT_PROCESSING = "processing"
PAYOUT_COMPLETED = "completed"
PAYOUT_FAILED = "failed"


async def _payout_account(db, seller_id) -> dict:
    accounts = await ledger_store.list_payment_accounts(db, seller_id)
    account = next((a for a in accounts if a.get("is_default")), None)
    if (
        not account
        or account.get("verification_status") != AccountVerification.VERIFIED.value
        or account.get("provider_status") != ProviderAccountStatus.ENABLED.value
    ):
        raise HTTPException(status_code=409, detail="No verified default payment account")
    return account


async def create_payout(db, seller_id, *, amount: int, currency: str, gateway, rates) -> dict:
    """
    Pending debt is withheld before the transfer; only the net amount
    leaves the platform.
    """
    async with seller_lock(db, seller_id):
        seller = await ledger_store.get_seller(db, seller_id)
        validate_seller_payment_ready(seller)
        account = await _payout_account(db, seller_id)

        balance = await get_wallet_balance(db, seller_id, currency)
        if amount > balance:
            raise HTTPException(status_code=400, detail="Payout exceeds wallet balance")

        now = datetime.utcnow()
        payout = {
            "seller_id": seller_id,
            "account_id": account["_id"],
            "provider": account["provider"],
            "amount": int(amount),
            "currency": currency,
            "net_amount": None,
            "deducted_debt_amount": None,
            "status": PAYOUT_PENDING,
            "provider_reference": None,
            "attempt_count": 0,
            "last_error": None,
            "created_at": now,
            "updated_at": now,
        }
        result = await db.payouts.insert_one(payout)
        payout["_id"] = result.inserted_id

        collection = await collect_from_payout(db, seller_id, int(amount), currency, payout["_id"], rates)
        net = collection["actualPayoutAmount"]
        deducted = collection["deductedDebtAmount"]

        if deducted:
            await add_ledger_entry(
                db, seller_id, ENTRY_DEBT_COLLECTION_DEBIT, currency,
                debit=deducted, reference_id=payout["_id"], reason_code="DEBT_WITHHELD_FROM_PAYOUT",
            )
        if net:
            await add_ledger_entry(
                db, seller_id, ENTRY_PAYOUT_DEBIT, currency,
                debit=net, reference_id=payout["_id"], reason_code="PAYOUT_REQUESTED",
            )

        payout = await db.payouts.find_one_and_update(
            {"_id": payout["_id"]},
            {"$set": {
                "net_amount": net,
                "deducted_debt_amount": deducted,
                "status": PAYOUT_PROCESSING if net else PAYOUT_COMPLETED,
                "updated_at": datetime.utcnow(),
            }},
            return_document=ReturnDocument.AFTER,
        )

    await log_audit(
        db, "PAYOUT_CREATE",
        actor_id=seller_id, actor_role="seller", resource_id=payout["_id"],
        meta={"amount": int(amount), "net": net, "deducted_debt": deducted, "currency": currency},
    )

    if not net:
        return payout
    return await _transfer(db, payout, account, gateway)


async def _transfer(db, payout: dict, account: dict, gateway) -> dict:
    try:
        result = await gateway.transfer(
            payout["provider"],
            account_reference=open_account_reference(account),
            amount=payout["net_amount"],
            currency=payout["currency"],
            idempotency_key=f"payout:{payout['_id']}",
        )
    except ProviderError as e:
        await db.payouts.update_one(
            {"_id": payout["_id"]},
            {
                "$set": {
                    "status": PAYOUT_FAILED,
                    "last_error": e.detail[:240],
                    "failed_at": datetime.utcnow(),
                    "updated_at": datetime.utcnow(),
                },
                "$inc": {"attempt_count": 1},
            },
        )
        await log_audit(
            db, "PAYOUT_TRANSFER",
            actor_id=None, actor_role="system", resource_id=payout["_id"],
            result="fail", meta={"provider": e.provider, "error": e.detail[:240]},
        )
        raise

    completed = await db.payouts.find_one_and_update(
        {"_id": payout["_id"]},
        {
            "$set": {
                "status": PAYOUT_COMPLETED,
                "provider_reference": result["reference"],
                "completed_at": datetime.utcnow(),
                "last_error": None,
                "updated_at": datetime.utcnow(),
            },
            "$inc": {"attempt_count": 1},
        },
        return_document=ReturnDocument.AFTER,
    )

    await log_audit(
        db, "PAYOUT_TRANSFER",
        actor_id=None, actor_role="system", resource_id=payout["_id"],
        meta={"provider_reference": result["reference"]},
    )
    await queue_notification(
        db,
        user_id=payout["seller_id"],
        type="payout_sent",
        title="Payout sent",
        content=f"{to_major_units(payout['net_amount']):.2f} {payout['currency']} is on its way.",
        related_id=payout["_id"],
        related_type="payout",
    )
    return completed


async def retry_payout(db, payout_id, *, admin_id, gateway) -> dict:
    """
    Re-sends a failed transfer for the same net amount. Debt was already
    withheld on the first attempt and is not collected again.

    The seller and the payout account are checked again first; a seller who
    stopped being eligible since the first attempt gets nothing, and the
    payout stays failed.
    """
    current = await db.payouts.find_one({"_id": payout_id})
    if not current:
        raise HTTPException(status_code=404, detail="Payout not found")

    async with seller_lock(db, current["seller_id"]):
        claimed = await db.payouts.find_one_and_update(
            {"_id": payout_id, "status": PAYOUT_FAILED},
            {"$set": {"status": PAYOUT_PROCESSING, "updated_at": datetime.utcnow()}},
            return_document=ReturnDocument.AFTER,
        )
        if not claimed:
            current = await db.payouts.find_one({"_id": payout_id})
            raise HTTPException(status_code=409, detail=f"Payout is {current['status']}, not failed")

        try:
            seller = await ledger_store.get_seller(db, claimed["seller_id"])
            validate_seller_payment_ready(seller)
            account = await _payout_account(db, claimed["seller_id"])
        except HTTPException as e:
            reason = e.detail.get("message") if isinstance(e.detail, dict) else e.detail
            await db.payouts.update_one(
                {"_id": payout_id},
                {"$set": {
                    "status": PAYOUT_FAILED,
                    "last_error": f"Retry refused: {reason}"[:240],
                    "updated_at": datetime.utcnow(),
                }},
            )
            await log_audit(
                db, "PAYOUT_RETRY",
                actor_id=admin_id, actor_role="admin", resource_id=payout_id,
                result="fail", meta={"reason": reason},
            )
            raise

        if account["_id"] != claimed["account_id"]:
            claimed = await db.payouts.find_one_and_update(
                {"_id": payout_id},
                {"$set": {"account_id": account["_id"], "provider": account["provider"]}},
                return_document=ReturnDocument.AFTER,
            )

        await log_audit(
            db, "PAYOUT_RETRY",
            actor_id=admin_id, actor_role="admin", resource_id=payout_id,
            meta={"attempt": int(claimed.get("attempt_count", 0)) + 1, "account_id": str(account["_id"])},
        )
        return await _transfer(db, claimed, account, gateway)
