"""
Ledger Store access layer.

Every read goes to MongoDB; nothing here caches ledger state between calls.
Deposit lot status and debt progress only move through the conditional
updates below, so a concurrent writer loses instead of overwriting.

The payout eligibility field is not written here. Only
utils.payout_eligibility writes it.
"""
from datetime import datetime

from fastapi import HTTPException
from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError

from config.constants import UNFULFILLED_ORDER_STATUSES
from models.deposit import COLLATERAL_STATUSES, DepositLotStatus, can_transition
from models.debt import DebtStatus
from models.user import SubscriptionStatus


class LedgerConsistencyError(Exception):
    """A ledger write did not land the way it was computed. Needs an operator."""


# ==============================
# Sellers / orders
# ==============================

async def get_seller(db, seller_id):
    return await db.users.find_one({"_id": seller_id})


async def list_unfulfilled_orders(db, seller_id) -> list:
    return await db.orders.find({
        "seller_id": seller_id,
        "status": {"$in": list(UNFULFILLED_ORDER_STATUSES)},
    }).to_list(None)


async def sum_exposure(db, seller_id, rates) -> int:
    """Unfulfilled order totals in the base currency."""
    total = 0
    for order in await list_unfulfilled_orders(db, seller_id):
        pricing = order["pricing"]
        total += await rates.to_base(pricing["total_amount"], pricing["currency"])
    return total


# ==============================
# Deposit lots
# ==============================

def lot_available(lot: dict) -> int:
    return max(int(lot["required_amount"]) - int(lot.get("deducted_amount", 0)), 0)


async def list_collateral_lots(db, seller_id) -> list:
    """Held/refundable lots, oldest first."""
    return await db.deposit_lots.find({
        "seller_id": seller_id,
        "status": {"$in": list(COLLATERAL_STATUSES)},
    }).sort("created_at", 1).to_list(None)


async def sum_collateral(db, seller_id, rates) -> int:
    total = 0
    for lot in await list_collateral_lots(db, seller_id):
        total += await rates.to_base(lot_available(lot), lot["currency"])
    return total


async def create_deposit_lot(
    db,
    *,
    seller_id,
    amount: int,
    currency: str,
    payment_provider: str,
    provider_reference: str,
    refundable_after: datetime,
) -> dict:
    now = datetime.utcnow()
    lot = {
        "seller_id": seller_id,
        "required_amount": int(amount),
        "deducted_amount": 0,
        "currency": currency,
        "status": DepositLotStatus.HELD.value,
        "payment_provider": payment_provider,
        "provider_reference": provider_reference,
        "refundable_after": refundable_after,
        "refund_fee_amount": None,
        "refunded_amount": None,
        "created_at": now,
        "updated_at": now,
    }
    try:
        result = await db.deposit_lots.insert_one(lot)
    except DuplicateKeyError:
        # Same provider charge recorded twice
        return await db.deposit_lots.find_one({
            "payment_provider": payment_provider,
            "provider_reference": provider_reference,
        })
    lot["_id"] = result.inserted_id
    return lot


async def transition_lot(db, lot: dict, target: str, extra: dict | None = None) -> dict | None:
    """
    Moves a lot one step along its status chain.
    Returns the updated lot, or None when another writer moved it first.
    """
    current = lot["status"]
    if not can_transition(current, target):
        raise HTTPException(
            status_code=409,
            detail=f"Deposit lot cannot move from {current} to {target}",
        )

    fields = {"status": target, "updated_at": datetime.utcnow()}
    fields.update(extra or {})

    return await db.deposit_lots.find_one_and_update(
        {"_id": lot["_id"], "status": current},
        {"$set": fields},
        return_document=ReturnDocument.AFTER,
    )


async def consume_lot(db, lot: dict, amount: int) -> dict | None:
    """Draws `amount` from a lot's remaining collateral if nobody else did."""
    if amount <= 0 or amount > lot_available(lot):
        raise ValueError("Invalid lot consumption amount")

    return await db.deposit_lots.find_one_and_update(
        {
            "_id": lot["_id"],
            "status": {"$in": list(COLLATERAL_STATUSES)},
            "deducted_amount": int(lot.get("deducted_amount", 0)),
        },
        {
            "$inc": {"deducted_amount": int(amount)},
            "$set": {"updated_at": datetime.utcnow()},
        },
        return_document=ReturnDocument.AFTER,
    )


# ==============================
# Seller debts
# ==============================

def debt_remaining(debt: dict) -> int:
    return max(int(debt["amount"]) - int(debt.get("collected_amount", 0)), 0)


async def list_pending_debts(db, seller_id) -> list:
    """Fresh read, oldest first."""
    return await db.seller_debts.find({
        "seller_id": seller_id,
        "status": DebtStatus.PENDING.value,
    }).sort("created_at", 1).to_list(None)


async def insert_debt(db, debt: dict, unique_filter: dict) -> tuple[dict, bool]:
    """Returns (debt, created). An existing debt for the same cause/reference wins."""
    existing = await db.seller_debts.find_one(unique_filter)
    if existing:
        return existing, False
    try:
        result = await db.seller_debts.insert_one(debt)
    except DuplicateKeyError:
        return await db.seller_debts.find_one(unique_filter), False
    debt["_id"] = result.inserted_id
    return debt, True


async def apply_debt_collection(
    db,
    debt: dict,
    *,
    amount: int,
    source: str,
    source_amount: int,
    source_currency: str,
    lot_id=None,
    payout_id=None,
) -> dict | None:
    """
    Appends one collection event and advances the debt's progress counter.
    Returns the updated debt, or None if the debt moved underneath us.
    """
    if amount <= 0 or amount > debt_remaining(debt):
        raise ValueError("Invalid debt collection amount")

    previous = int(debt.get("collected_amount", 0))
    collected = previous + int(amount)
    now = datetime.utcnow()

    fields = {"collected_amount": collected, "updated_at": now}
    if collected >= int(debt["amount"]):
        fields["status"] = DebtStatus.COLLECTED.value
        fields["collected_at"] = now

    updated = await db.seller_debts.find_one_and_update(
        {
            "_id": debt["_id"],
            "status": DebtStatus.PENDING.value,
            "collected_amount": previous,
        },
        {"$set": fields},
        return_document=ReturnDocument.AFTER,
    )
    if not updated:
        return None

    await db.debt_collections.insert_one({
        "debt_id": debt["_id"],
        "seller_id": debt["seller_id"],
        "source": source,
        "lot_id": lot_id,
        "payout_id": payout_id,
        "amount": int(amount),
        "currency": debt["currency"],
        "source_amount": int(source_amount),
        "source_currency": source_currency,
        "created_at": now,
    })
    return updated


# ==============================
# Payment accounts / subscriptions / violations
# ==============================

async def list_payment_accounts(db, seller_id) -> list:
    return await db.payment_accounts.find({"seller_id": seller_id}).to_list(None)


async def get_active_subscription(db, seller_id):
    return await db.subscriptions.find_one(
        {
            "user_id": seller_id,
            "subscription_type": "seller",
            "status": SubscriptionStatus.ACTIVE.value,
            "expires_at": {"$gt": datetime.utcnow()},
        },
        sort=[("expires_at", -1)],
    )


async def count_active_violations(db, seller_id) -> int:
    return await db.seller_violations.count_documents({
        "seller_id": seller_id,
        "status": "active",
    })


async def count_overdue_debts(db, seller_id, cutoff: datetime) -> int:
    return await db.seller_debts.count_documents({
        "seller_id": seller_id,
        "status": DebtStatus.PENDING.value,
        "created_at": {"$lt": cutoff},
    })
