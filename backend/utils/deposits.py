import logging
from datetime import datetime, timedelta

from fastapi import HTTPException

from config.constants import DEPOSIT_REFUND_FEES
from config.env import DEPOSIT_HOLD_DAYS
from models.deposit import DepositLotStatus
from utils import ledger_store
from utils.audit import log_audit
from utils.debt_collector import collect_from_deposit
from utils.deposit_requirement import check_auto_recovery
from utils.ledger_store import lot_available
from utils.money import to_major_units
from utils.notifications import queue_notification
from utils.payment_providers import ProviderError
from utils.seller_lock import seller_lock

logger = logging.getLogger(__name__)


def refund_fee(provider: str, amount: int) -> int:
    percent, flat = DEPOSIT_REFUND_FEES.get(provider, (0, 0))
    if not percent and not flat:
        return 0
    fee = int(round(amount * percent / 100)) + int(flat)
    return min(fee, amount)


async def post_deposit(
    db,
    seller: dict,
    *,
    amount: int,
    currency: str,
    provider: str,
    payment_token: str,
    idempotency_key: str,
    gateway,
    rates,
) -> dict:
    """Charges the seller and records a new held lot, then applies it to debts."""
    seller_id = seller["_id"]

    try:
        charge = await gateway.charge(
            provider,
            amount=amount,
            currency=currency,
            payment_token=payment_token,
            idempotency_key=f"deposit:{seller_id}:{idempotency_key}",
        )
    except ProviderError as e:
        await log_audit(
            db, "DEPOSIT_PAY",
            actor_id=seller_id, actor_role="seller", resource_id=seller_id,
            result="fail", meta={"provider": provider, "error": e.detail[:240]},
        )
        raise

    async with seller_lock(db, seller_id):
        lot = await ledger_store.create_deposit_lot(
            db,
            seller_id=seller_id,
            amount=amount,
            currency=currency,
            payment_provider=provider,
            provider_reference=charge["reference"],
            refundable_after=datetime.utcnow() + timedelta(days=DEPOSIT_HOLD_DAYS),
        )

        await log_audit(
            db, "DEPOSIT_PAY",
            actor_id=seller_id, actor_role="seller", resource_id=lot["_id"],
            meta={"amount": amount, "currency": currency, "provider_reference": charge["reference"]},
        )

        collection = await collect_from_deposit(db, seller_id, rates)
        recovered = await check_auto_recovery(db, seller_id, rates)

    await queue_notification(
        db,
        user_id=seller_id,
        type="deposit_received",
        title="Deposit received",
        content=f"Your deposit of {to_major_units(amount):.2f} {currency} is now held as collateral.",
        related_id=lot["_id"],
        related_type="deposit_lot",
    )
    return {"lot": lot, "debt_collection": collection, "payment_reenabled": recovered}


async def request_refund(db, lot_id, seller: dict, rates) -> dict:
    """
    Seller asks for a matured lot back. Pending debts are collected from
    deposits first, and the lot is only released if the remaining collateral
    still covers open orders.
    """
    seller_id = seller["_id"]

    async with seller_lock(db, seller_id):
        lot = await db.deposit_lots.find_one({"_id": lot_id, "seller_id": seller_id})
        if not lot:
            raise HTTPException(status_code=404, detail="Deposit lot not found")
        if lot["status"] != DepositLotStatus.REFUNDABLE.value:
            raise HTTPException(status_code=409, detail=f"Deposit lot is {lot['status']}, not refundable")
        if lot["refundable_after"] > datetime.utcnow():
            raise HTTPException(status_code=409, detail="Deposit lot is still in its holding period")

        await collect_from_deposit(db, seller_id, rates, actor_id=seller_id, actor_role="seller")

        lot = await db.deposit_lots.find_one({"_id": lot_id})
        available = lot_available(lot)
        if available <= 0:
            raise HTTPException(status_code=409, detail="Nothing left to refund on this lot")

        exposure = await ledger_store.sum_exposure(db, seller_id, rates)
        collateral = await ledger_store.sum_collateral(db, seller_id, rates)
        released = await rates.to_base(available, lot["currency"])
        if collateral - released < exposure:
            await log_audit(
                db, "DEPOSIT_REFUND_REQUEST",
                actor_id=seller_id, actor_role="seller", resource_id=lot_id,
                result="fail", meta={"reason": "exposure_not_covered"},
            )
            raise HTTPException(
                status_code=409,
                detail={
                    "message": "Deposit still secures open orders",
                    "exposure": to_major_units(exposure),
                    "collateralAfterRefund": to_major_units(collateral - released),
                    "currency": rates.base_currency,
                },
            )

        updated = await ledger_store.transition_lot(
            db, lot, DepositLotStatus.REFUNDING.value,
            {"refund_requested_at": datetime.utcnow()},
        )
        if not updated:
            raise HTTPException(status_code=409, detail="Deposit lot changed, please retry")

    await log_audit(
        db, "DEPOSIT_REFUND_REQUEST",
        actor_id=seller_id, actor_role="seller", resource_id=lot_id,
        meta={"available": available, "currency": lot["currency"]},
    )
    return updated


async def process_refund(db, lot_id, *, admin_id, gateway) -> dict:
    """
    refunding -> refunded. A provider failure leaves the lot at refunding;
    the provider call is keyed by lot id so a retry cannot pay twice.
    """
    lot = await db.deposit_lots.find_one({"_id": lot_id})
    if not lot:
        raise HTTPException(status_code=404, detail="Deposit lot not found")

    seller_id = lot["seller_id"]
    async with seller_lock(db, seller_id):
        lot = await db.deposit_lots.find_one({"_id": lot_id})
        if lot["status"] != DepositLotStatus.REFUNDING.value:
            raise HTTPException(status_code=409, detail=f"Deposit lot is {lot['status']}, not refunding")

        available = lot_available(lot)
        fee = refund_fee(lot["payment_provider"], available)
        net = available - fee

        provider_reference = None
        if net > 0:
            try:
                result = await gateway.refund(
                    lot["payment_provider"],
                    original_reference=lot["provider_reference"],
                    amount=net,
                    currency=lot["currency"],
                    idempotency_key=f"deposit-refund:{lot_id}",
                )
            except ProviderError as e:
                await db.deposit_lots.update_one(
                    {"_id": lot_id},
                    {"$set": {"last_refund_error": e.detail[:240], "updated_at": datetime.utcnow()}},
                )
                await log_audit(
                    db, "DEPOSIT_REFUND_PROCESS",
                    actor_id=admin_id, actor_role="admin", resource_id=lot_id,
                    result="fail", meta={"error": e.detail[:240]},
                )
                raise
            provider_reference = result["reference"]

        updated = await ledger_store.transition_lot(
            db, lot, DepositLotStatus.REFUNDED.value,
            {
                "refund_fee_amount": fee,
                "refunded_amount": net,
                "refund_provider_reference": provider_reference,
                "refunded_at": datetime.utcnow(),
                "last_refund_error": None,
            },
        )

    await log_audit(
        db, "DEPOSIT_REFUND_PROCESS",
        actor_id=admin_id, actor_role="admin", resource_id=lot_id,
        meta={"refunded_amount": net, "fee": fee, "currency": lot["currency"]},
    )
    await queue_notification(
        db,
        user_id=seller_id,
        type="deposit_refunded",
        title="Deposit refunded",
        content=(
            f"{to_major_units(net):.2f} {lot['currency']} was refunded "
            f"(fee {to_major_units(fee):.2f})."
        ),
        related_id=lot_id,
        related_type="deposit_lot",
    )
    return updated


async def release_matured_lots(db) -> dict:
    """held -> refundable once the holding period is over."""
    now = datetime.utcnow()
    updated = 0
    failed = []

    cursor = db.deposit_lots.find({
        "status": DepositLotStatus.HELD.value,
        "refundable_after": {"$lte": now},
    })
    async for lot in cursor:
        try:
            async with seller_lock(db, lot["seller_id"]):
                fresh = await db.deposit_lots.find_one({"_id": lot["_id"]})
                if fresh["status"] != DepositLotStatus.HELD.value:
                    continue
                if await ledger_store.transition_lot(db, fresh, DepositLotStatus.REFUNDABLE.value):
                    updated += 1
        except Exception as e:
            logger.exception("DEPOSIT_LOT_RELEASE_ERROR lot=%s", lot["_id"])
            failed.append({"lot_id": str(lot["_id"]), "error": str(e)[:200]})

    return {"updated": updated, "failed": failed}
