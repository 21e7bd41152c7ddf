from fastapi import APIRouter, Depends, HTTPException
from datetime import datetime
from pymongo import ReturnDocument

from database import get_db
from config.constants import (
    ORDER_CANCELLED,
    ORDER_COMPLETED,
    ORDER_PAID,
    ORDER_PENDING_PAYMENT,
    ORDER_SHIPPED,
    PLATFORM_FEE_PERCENT,
)
from models.order import OrderCreate, OrderPay
from utils import payout_eligibility
from utils.audit import log_audit
from utils.commission_settlement import create_commissions_for_order, on_order_completed
from utils.deposit_requirement import check_auto_recovery, evaluate
from utils.guards import parse_object_id
from utils.idempotency import (
    reserve_idempotency_key,
    complete_idempotency_key,
    fail_idempotency_key,
    clear_idempotency_key,
)
from utils.money import get_rate_lookup
from utils.mongo import serialize_doc, serialize_docs
from utils.order_timeline import (
    EVENT_CANCELLED,
    EVENT_COMPLETED,
    EVENT_CREATED,
    EVENT_PAID,
    EVENT_SHIPPED,
    get_order_timeline,
    record_order_event,
)
from utils.payment_control import REASON_DEPOSIT_BREACH, disable_payment, is_deposit_breach, is_payment_enabled
from utils.payment_providers import ProviderError, get_provider_gateway, require_provider
from utils.security import get_current_user, require_role, require_roles
from utils.seller_lock import seller_lock
from utils.wallet_service import credit_order_settlement


router = APIRouter(
    prefix="/api/orders",
    tags=["Orders"]
)


async def _load_order(db, order_id: str) -> dict:
    order = await db.orders.find_one({"_id": parse_object_id(order_id, "order_id")})
    if not order:
        raise HTTPException(404, "Order not found")
    return order


async def _transition(db, order: dict, current: str, target: str, extra: dict | None = None) -> dict:
    fields = {"status": target, "updated_at": datetime.utcnow()}
    fields.update(extra or {})
    updated = await db.orders.find_one_and_update(
        {"_id": order["_id"], "status": current},
        {"$set": fields},
        return_document=ReturnDocument.AFTER,
    )
    if not updated:
        raise HTTPException(409, f"Order is {order['status']}, expected {current}")
    return updated


async def _build_items(db, payload: OrderCreate):
    """Returns (seller_id, currency, items, total) for a single-seller basket."""
    items = []
    seller_id = None
    currency = None
    total = 0

    for line in payload.items:
        product = await db.products.find_one({
            "_id": parse_object_id(line.product_id, "product_id"),
            "active": True,
        })
        if not product:
            raise HTTPException(404, "Product not found")
        if product.get("stock", 0) < line.quantity:
            raise HTTPException(400, "Insufficient stock")

        if seller_id is None:
            seller_id = product["seller_id"]
            currency = product["currency"]
        elif product["seller_id"] != seller_id:
            raise HTTPException(400, "All items must come from the same seller")
        elif product["currency"] != currency:
            raise HTTPException(400, "All items must share a currency")

        line_total = int(product["price"]) * line.quantity
        total += line_total
        items.append({
            "product_id": product["_id"],
            "title": product.get("title"),
            "quantity": line.quantity,
            "unit_price": int(product["price"]),
            "line_total": line_total,
            "commission_rate": product.get("commission_rate"),
        })

    return seller_id, currency, items, total


async def _reserve_stock(db, items: list):
    reserved = []
    for item in items:
        result = await db.products.update_one(
            {"_id": item["product_id"], "stock": {"$gte": item["quantity"]}},
            {"$inc": {"stock": -item["quantity"]}},
        )
        if result.modified_count == 0:
            await _release_stock(db, reserved)
            raise HTTPException(409, "Stock reservation failed")
        reserved.append(item)


async def _release_stock(db, items: list):
    for item in items:
        await db.products.update_one(
            {"_id": item["product_id"]},
            {"$inc": {"stock": item["quantity"]}},
        )


# ======================================================
# CREATE ORDER (BUYER)
# ======================================================

@router.post("")
async def create_order(
    payload: OrderCreate,
    buyer=Depends(require_role("buyer")),
    db=Depends(get_db),
    rates=Depends(get_rate_lookup),
):
    """
    The deposit check and the order insert happen under one seller lease,
    so two concurrent orders cannot both pass against the same collateral.
    """
    scope = f"create_order:{buyer['_id']}"
    existing_response = await reserve_idempotency_key(db=db, key=payload.idempotency_key, scope=scope)
    if existing_response:
        return existing_response

    try:
        provider = require_provider(payload.payment_provider)
        affiliate_id = parse_object_id(payload.affiliate_id, "affiliate_id") if payload.affiliate_id else None
        seller_id, currency, items, total = await _build_items(db, payload)

        async with seller_lock(db, seller_id):
            check = await evaluate(db, seller_id, total, currency, rates)

            if check["requiresDeposit"]:
                seller = await db.users.find_one({"_id": seller_id})
                if seller and not is_deposit_breach(seller):
                    await disable_payment(
                        db, seller_id,
                        reason=REASON_DEPOSIT_BREACH,
                        detail={
                            "required_amount": check["requiredAmount"],
                            "suggested_tier": check["suggestedTier"],
                        },
                    )
                await payout_eligibility.update(db, seller_id, trigger="deposit_breach")
                await log_audit(
                    db, "ORDER_CREATE",
                    actor_id=buyer["_id"], actor_role="buyer", resource_id=seller_id,
                    result="fail", meta={"reason": "deposit_required", "required_amount": check["requiredAmount"]},
                )
                raise HTTPException(
                    status_code=409,
                    detail={"message": "Seller deposit does not cover this order", **check},
                )

            await check_auto_recovery(db, seller_id, rates)
            seller = await db.users.find_one({"_id": seller_id})
            payout_eligibility.validate_seller_payment_ready(seller)
            if not is_payment_enabled(seller):
                raise HTTPException(403, "Seller is not accepting payments")

            await _reserve_stock(db, items)

            now = datetime.utcnow()
            order = {
                "buyer_id": buyer["_id"],
                "seller_id": seller_id,
                "affiliate_id": affiliate_id,
                "items": items,
                "pricing": {"total_amount": total, "currency": currency},
                "payment_provider": provider,
                "payment_reference": None,
                "refunded_amount": 0,
                "status": ORDER_PENDING_PAYMENT,
                "created_at": now,
                "updated_at": now,
            }
            result = await db.orders.insert_one(order)
            order["_id"] = result.inserted_id

        await create_commissions_for_order(db, order)
        await record_order_event(
            db,
            order_id=order["_id"],
            event=EVENT_CREATED,
            actor_role="buyer",
            actor_id=buyer["_id"],
            metadata={"total_amount": total, "currency": currency},
        )
        await log_audit(
            db, "ORDER_CREATE",
            actor_id=buyer["_id"], actor_role="buyer", resource_id=order["_id"],
            meta={"seller_id": str(seller_id), "total_amount": total, "currency": currency},
        )

        response = {
            "message": "Order created successfully",
            "order_id": str(order["_id"]),
            "total_amount": total,
            "currency": currency,
            "status": ORDER_PENDING_PAYMENT,
        }
        await complete_idempotency_key(db=db, key=payload.idempotency_key, scope=scope, response=response)
        return response
    except HTTPException:
        await clear_idempotency_key(db=db, key=payload.idempotency_key, scope=scope)
        raise
    except Exception as e:
        await fail_idempotency_key(db=db, key=payload.idempotency_key, scope=scope, error=str(e))
        raise


# ======================================================
# PAY (BUYER)
# ======================================================

@router.post("/{order_id}/pay")
async def pay_order(
    order_id: str,
    payload: OrderPay,
    buyer=Depends(require_role("buyer")),
    db=Depends(get_db),
    gateway=Depends(get_provider_gateway),
):
    order = await _load_order(db, order_id)
    if order["buyer_id"] != buyer["_id"]:
        raise HTTPException(404, "Order not found")
    if order["status"] != ORDER_PENDING_PAYMENT:
        raise HTTPException(409, f"Order is {order['status']}")

    seller = await db.users.find_one({"_id": order["seller_id"]})
    if not seller or not is_payment_enabled(seller):
        raise HTTPException(403, "Seller is not accepting payments")
    payout_eligibility.validate_seller_payment_ready(seller)

    try:
        charge = await gateway.charge(
            order["payment_provider"],
            amount=order["pricing"]["total_amount"],
            currency=order["pricing"]["currency"],
            payment_token=payload.payment_token,
            idempotency_key=f"order:{order['_id']}",
        )
    except ProviderError as e:
        await log_audit(
            db, "ORDER_PAY",
            actor_id=buyer["_id"], actor_role="buyer", resource_id=order["_id"],
            result="fail", meta={"provider": e.provider, "error": e.detail[:240]},
        )
        raise

    updated = await _transition(
        db, order, ORDER_PENDING_PAYMENT, ORDER_PAID,
        {"payment_reference": charge["reference"], "paid_at": datetime.utcnow()},
    )
    await record_order_event(
        db, order_id=order["_id"], event=EVENT_PAID, actor_role="buyer", actor_id=buyer["_id"],
        metadata={"provider_reference": charge["reference"]},
    )
    await log_audit(
        db, "ORDER_PAY",
        actor_id=buyer["_id"], actor_role="buyer", resource_id=order["_id"],
        meta={"provider_reference": charge["reference"]},
    )
    return {"message": "Payment captured", "order": serialize_doc(updated)}


# ======================================================
# SHIP (SELLER)
# ======================================================

@router.post("/{order_id}/ship")
async def ship_order(
    order_id: str,
    seller=Depends(require_role("seller")),
    db=Depends(get_db),
):
    order = await _load_order(db, order_id)
    if order["seller_id"] != seller["_id"]:
        raise HTTPException(404, "Order not found")

    updated = await _transition(db, order, ORDER_PAID, ORDER_SHIPPED, {"shipped_at": datetime.utcnow()})
    await record_order_event(
        db, order_id=order["_id"], event=EVENT_SHIPPED, actor_role="seller", actor_id=seller["_id"],
    )
    await log_audit(db, "ORDER_SHIP", actor_id=seller["_id"], actor_role="seller", resource_id=order["_id"])
    return {"message": "Order shipped", "order": serialize_doc(updated)}


# ======================================================
# COMPLETE (BUYER / ADMIN)
# ======================================================

@router.post("/{order_id}/complete")
async def complete_order(
    order_id: str,
    user=Depends(require_roles("buyer", "admin")),
    db=Depends(get_db),
    rates=Depends(get_rate_lookup),
):
    order = await _load_order(db, order_id)
    if user["role"] == "buyer" and order["buyer_id"] != user["_id"]:
        raise HTTPException(404, "Order not found")

    async with seller_lock(db, order["seller_id"]):
        updated = await _transition(
            db, order, ORDER_SHIPPED, ORDER_COMPLETED, {"completed_at": datetime.utcnow()}
        )
        await credit_order_settlement(db, order["seller_id"], updated, PLATFORM_FEE_PERCENT)

    await on_order_completed(db, updated)
    await record_order_event(
        db, order_id=order["_id"], event=EVENT_COMPLETED, actor_role=user["role"], actor_id=user["_id"],
    )
    await log_audit(db, "ORDER_COMPLETE", actor_id=user["_id"], actor_role=user["role"], resource_id=order["_id"])
    await check_auto_recovery(db, order["seller_id"], rates)
    return {"message": "Order completed", "order": serialize_doc(updated)}


# ======================================================
# CANCEL (BUYER / SELLER, UNPAID ONLY)
# ======================================================

@router.post("/{order_id}/cancel")
async def cancel_order(
    order_id: str,
    user=Depends(require_roles("buyer", "seller")),
    db=Depends(get_db),
    rates=Depends(get_rate_lookup),
):
    order = await _load_order(db, order_id)
    if user["_id"] not in (order["buyer_id"], order["seller_id"]):
        raise HTTPException(404, "Order not found")

    updated = await _transition(
        db, order, ORDER_PENDING_PAYMENT, ORDER_CANCELLED, {"cancelled_at": datetime.utcnow()}
    )
    await _release_stock(db, order["items"])
    await record_order_event(
        db, order_id=order["_id"], event=EVENT_CANCELLED, actor_role=user["role"], actor_id=user["_id"],
    )
    await log_audit(db, "ORDER_CANCEL", actor_id=user["_id"], actor_role=user["role"], resource_id=order["_id"])
    await check_auto_recovery(db, order["seller_id"], rates)
    return {"message": "Order cancelled", "order": serialize_doc(updated)}


# ======================================================
# READ
# ======================================================

@router.get("/{order_id}")
async def get_order(
    order_id: str,
    user=Depends(get_current_user),
    db=Depends(get_db),
):
    order = await _load_order(db, order_id)
    if user.get("role") != "admin" and user["_id"] not in (order["buyer_id"], order["seller_id"]):
        raise HTTPException(404, "Order not found")

    timeline = await get_order_timeline(db, order["_id"])
    return {"order": serialize_doc(order), "timeline": serialize_docs(timeline)}
