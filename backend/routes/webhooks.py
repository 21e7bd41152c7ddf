from fastapi import APIRouter, Depends, Request, HTTPException
from datetime import datetime
import json

from bson import ObjectId
from database import get_db
from models.payment_account import ProviderAccountStatus
from utils import payout_eligibility
from utils.audit import log_audit
from utils.payment_providers import verify_webhook_signature
from utils.idempotency import (
    reserve_idempotency_key,
    complete_idempotency_key,
)
from utils.seller_lock import seller_lock

router = APIRouter(prefix="/api/webhooks", tags=["Webhooks"])

PROVIDER_STATUSES = {s.value for s in ProviderAccountStatus}


# =========================================================
# PAYMENT ACCOUNT HEALTH (IDEMPOTENT)
# =========================================================

@router.post("/payment-accounts")
async def payment_account_webhook(request: Request, db=Depends(get_db)):
    """
    Provider-reported account health.
    Feeds the eligibility recompute; never touches money.
    """
    signature = request.headers.get("X-Provider-Signature")
    if not signature:
        raise HTTPException(401, "Missing signature")

    raw_body = await request.body()
    if not verify_webhook_signature(raw_body=raw_body, received_signature=signature):
        raise HTTPException(401, "Invalid webhook signature")

    try:
        payload = json.loads(raw_body.decode("utf-8"))
    except Exception:
        raise HTTPException(400, "Invalid JSON payload")

    event_id = payload.get("event_id")
    account_id = payload.get("account_id")
    status = (payload.get("status") or "").lower()

    if not event_id or not ObjectId.is_valid(account_id or "") or status not in PROVIDER_STATUSES:
        return {"ok": True, "ignored": True}

    existing = await reserve_idempotency_key(db=db, key=str(event_id), scope="payment_account_webhook")
    if existing:
        return existing

    account = await db.payment_accounts.find_one({"_id": ObjectId(account_id)})
    if not account:
        response = {"ok": True, "account": "not_found"}
        await complete_idempotency_key(db=db, key=str(event_id), scope="payment_account_webhook", response=response)
        return response

    async with seller_lock(db, account["seller_id"]):
        await db.payment_accounts.update_one(
            {"_id": account["_id"]},
            {"$set": {
                "provider_status": status,
                "provider_status_reason": payload.get("reason"),
                "provider_status_at": datetime.utcnow(),
                "updated_at": datetime.utcnow(),
            }},
        )
        eligibility = await payout_eligibility.update(db, account["seller_id"], trigger="provider_webhook")

    await log_audit(
        db, "PAYMENT_ACCOUNT_PROVIDER_STATUS",
        actor_id=None, actor_role="provider", resource_id=account["_id"],
        meta={"status": status, "event_id": str(event_id)},
    )

    response = {"ok": True, "payout_eligibility": eligibility["status"]}
    await complete_idempotency_key(db=db, key=str(event_id), scope="payment_account_webhook", response=response)
    return response
