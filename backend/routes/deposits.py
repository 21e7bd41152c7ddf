from fastapi import APIRouter, Depends, HTTPException, Query

from database import get_db
from models.deposit import DepositPayRequest
from utils.deposit_requirement import evaluate
from utils.deposits import post_deposit, request_refund
from utils.guards import parse_object_id
from utils.idempotency import (
    reserve_idempotency_key,
    complete_idempotency_key,
    fail_idempotency_key,
    clear_idempotency_key,
)
from utils.money import get_rate_lookup, normalize_currency, to_minor_units
from utils.mongo import serialize_doc, serialize_docs
from utils.payment_providers import get_provider_gateway, require_provider
from utils.security import require_role
from utils.seller_lock import seller_lock

router = APIRouter(
    prefix="/api/deposits",
    tags=["Deposits"]
)


@router.get("/check")
async def check_deposit(
    amount: float = Query(0, ge=0),
    currency: str | None = Query(None),
    seller=Depends(require_role("seller")),
    db=Depends(get_db),
    rates=Depends(get_rate_lookup),
):
    """Preview: would an order of `amount` need more deposit right now?"""
    code = normalize_currency(currency or rates.base_currency)
    async with seller_lock(db, seller["_id"]):
        return await evaluate(db, seller["_id"], to_minor_units(amount), code, rates)


@router.post("/pay")
async def pay_deposit(
    payload: DepositPayRequest,
    seller=Depends(require_role("seller")),
    db=Depends(get_db),
    rates=Depends(get_rate_lookup),
    gateway=Depends(get_provider_gateway),
):
    scope = f"deposit_pay:{seller['_id']}"
    existing_response = await reserve_idempotency_key(db=db, key=payload.idempotency_key, scope=scope)
    if existing_response:
        return existing_response

    try:
        result = await post_deposit(
            db,
            seller,
            amount=to_minor_units(payload.amount),
            currency=normalize_currency(payload.currency),
            provider=require_provider(payload.payment_provider),
            payment_token=payload.payment_token,
            idempotency_key=payload.idempotency_key,
            gateway=gateway,
            rates=rates,
        )
        response = {
            "message": "Deposit received",
            "lot": serialize_doc(result["lot"]),
            "debt_collection": result["debt_collection"],
            "payment_reenabled": result["payment_reenabled"],
        }
        await complete_idempotency_key(db=db, key=payload.idempotency_key, scope=scope, response=response)
        return response
    except HTTPException:
        await clear_idempotency_key(db=db, key=payload.idempotency_key, scope=scope)
        raise
    except Exception as e:
        await fail_idempotency_key(db=db, key=payload.idempotency_key, scope=scope, error=str(e))
        raise


@router.get("")
async def list_deposits(
    seller=Depends(require_role("seller")),
    db=Depends(get_db),
):
    lots = await db.deposit_lots.find({"seller_id": seller["_id"]}).sort("created_at", -1).to_list(None)
    return {"lots": serialize_docs(lots)}


@router.post("/{lot_id}/request-refund")
async def request_deposit_refund(
    lot_id: str,
    seller=Depends(require_role("seller")),
    db=Depends(get_db),
    rates=Depends(get_rate_lookup),
):
    lot = await request_refund(db, parse_object_id(lot_id, "lot_id"), seller, rates)
    return {"message": "Deposit refund requested", "lot": serialize_doc(lot)}
