from fastapi import APIRouter, Depends, HTTPException

from database import get_db
from models.debt import DebtStatus
from models.order import PayoutCreate
from utils import payout_eligibility
from utils.idempotency import (
    reserve_idempotency_key,
    complete_idempotency_key,
    fail_idempotency_key,
    clear_idempotency_key,
)
from utils.ledger_store import debt_remaining
from utils.money import get_rate_lookup, normalize_currency, to_minor_units
from utils.mongo import serialize_doc, serialize_docs
from utils.payment_providers import get_provider_gateway
from utils.payouts import create_payout
from utils.security import require_role
from utils.wallet_service import get_wallet_balances

router = APIRouter(
    prefix="/api/seller",
    tags=["Seller"]
)


# ----------------------------------------
# ELIGIBILITY
# ----------------------------------------

@router.get("/eligibility")
async def seller_eligibility(
    seller=Depends(require_role("seller")),
    db=Depends(get_db),
):
    """Stored value plus a fresh explanation of what is holding it."""
    live = await payout_eligibility.explain(db, seller["_id"])
    return {
        "payout_eligibility": seller.get("payout_eligibility") or payout_eligibility.BLOCKED,
        "updated_at": seller.get("eligibility_updated_at"),
        "reasons": live["reasons"],
        "required_action": live["required_action"],
        "payment_enabled": (seller.get("payment_control") or {}).get("enabled", True),
    }


# ----------------------------------------
# DEBTS
# ----------------------------------------

@router.get("/debts")
async def seller_debts(
    seller=Depends(require_role("seller")),
    db=Depends(get_db),
):
    debts = await db.seller_debts.find({"seller_id": seller["_id"]}).sort("created_at", -1).to_list(None)

    outstanding = {}
    for debt in debts:
        if debt["status"] == DebtStatus.PENDING.value:
            outstanding[debt["currency"]] = outstanding.get(debt["currency"], 0) + debt_remaining(debt)

    return {"debts": serialize_docs(debts), "outstanding": outstanding}


# ----------------------------------------
# WALLET
# ----------------------------------------

@router.get("/wallet")
async def seller_wallet(
    seller=Depends(require_role("seller")),
    db=Depends(get_db),
):
    balances = await get_wallet_balances(db, seller["_id"])
    entries = await db.wallet_ledger.find({"seller_id": seller["_id"]}).sort("created_at", -1).limit(50).to_list(50)
    return {"balances": balances, "recent_entries": serialize_docs(entries)}


# ----------------------------------------
# PAYOUTS
# ----------------------------------------

@router.post("/payouts")
async def request_payout(
    payload: PayoutCreate,
    seller=Depends(require_role("seller")),
    db=Depends(get_db),
    rates=Depends(get_rate_lookup),
    gateway=Depends(get_provider_gateway),
):
    scope = f"payout:{seller['_id']}"
    existing_response = await reserve_idempotency_key(db=db, key=payload.idempotency_key, scope=scope)
    if existing_response:
        return existing_response

    try:
        payout = await create_payout(
            db,
            seller["_id"],
            amount=to_minor_units(payload.amount),
            currency=normalize_currency(payload.currency),
            gateway=gateway,
            rates=rates,
        )
        response = {"message": "Payout processed", "payout": serialize_doc(payout)}
        await complete_idempotency_key(db=db, key=payload.idempotency_key, scope=scope, response=response)
        return response
    except HTTPException:
        await clear_idempotency_key(db=db, key=payload.idempotency_key, scope=scope)
        raise
    except Exception as e:
        await fail_idempotency_key(db=db, key=payload.idempotency_key, scope=scope, error=str(e))
        raise


@router.get("/payouts")
async def list_payouts(
    seller=Depends(require_role("seller")),
    db=Depends(get_db),
):
    payouts = await db.payouts.find({"seller_id": seller["_id"]}).sort("created_at", -1).to_list(None)
    return {"payouts": serialize_docs(payouts)}
