from fastapi import APIRouter, Depends, HTTPException
from datetime import datetime

from database import get_db
from models.payment_account import (
    AccountVerification,
    PaymentAccountCreate,
    ProviderAccountStatus,
)
from utils import payout_eligibility
from utils.audit import log_audit
from utils.crypto import seal_account_reference
from utils.guards import assert_owner, parse_object_id
from utils.money import normalize_currency
from utils.mongo import serialize_doc
from utils.payment_providers import require_provider
from utils.security import require_role
from utils.seller_lock import seller_lock

router = APIRouter(
    prefix="/api/payment-accounts",
    tags=["Payment Accounts"]
)


def serialize_account(account: dict) -> dict:
    data = serialize_doc(account)
    data.pop("account_reference_encrypted", None)
    return data


@router.post("")
async def bind_payment_account(
    payload: PaymentAccountCreate,
    seller=Depends(require_role("seller")),
    db=Depends(get_db),
):
    now = datetime.utcnow()
    account = {
        "seller_id": seller["_id"],
        "provider": require_provider(payload.provider),
        **seal_account_reference(payload.account_reference),
        "account_holder_name": payload.account_holder_name,
        "currency": normalize_currency(payload.currency),
        "is_default": False,
        "verification_status": AccountVerification.PENDING.value,
        "provider_status": ProviderAccountStatus.PENDING.value,
        "created_at": now,
        "updated_at": now,
    }
    result = await db.payment_accounts.insert_one(account)
    account["_id"] = result.inserted_id

    await log_audit(
        db, "PAYMENT_ACCOUNT_BIND",
        actor_id=seller["_id"], actor_role="seller", resource_id=account["_id"],
        meta={"provider": account["provider"]},
    )
    return {"message": "Payment account added", "account": serialize_account(account)}


@router.get("")
async def list_payment_accounts(
    seller=Depends(require_role("seller")),
    db=Depends(get_db),
):
    accounts = await db.payment_accounts.find({"seller_id": seller["_id"]}).to_list(None)
    return {"accounts": [serialize_account(a) for a in accounts]}


@router.post("/{account_id}/set-default")
async def set_default_account(
    account_id: str,
    seller=Depends(require_role("seller")),
    db=Depends(get_db),
):
    account = await db.payment_accounts.find_one({"_id": parse_object_id(account_id, "account_id")})
    assert_owner(account, seller, name="Payment account")
    if account.get("verification_status") == AccountVerification.REJECTED.value:
        raise HTTPException(409, "Rejected accounts cannot be the default")

    async with seller_lock(db, seller["_id"]):
        await db.payment_accounts.update_many(
            {"seller_id": seller["_id"], "_id": {"$ne": account["_id"]}},
            {"$set": {"is_default": False, "updated_at": datetime.utcnow()}},
        )
        await db.payment_accounts.update_one(
            {"_id": account["_id"]},
            {"$set": {"is_default": True, "updated_at": datetime.utcnow()}},
        )
        eligibility = await payout_eligibility.update(db, seller["_id"], trigger="default_account_changed")

    await log_audit(
        db, "PAYMENT_ACCOUNT_SET_DEFAULT",
        actor_id=seller["_id"], actor_role="seller", resource_id=account["_id"],
    )
    return {"message": "Default payment account updated", "eligibility": eligibility}
