from datetime import datetime

# ==============================
# Ledger entry types (ENUM-LIKE)
# ==============================

ENTRY_SALE_CREDIT = "SALE_CREDIT"
ENTRY_PLATFORM_FEE_DEBIT = "PLATFORM_FEE_DEBIT"
ENTRY_REFUND_DEBIT = "REFUND_DEBIT"
ENTRY_PAYOUT_DEBIT = "PAYOUT_DEBIT"
ENTRY_DEBT_COLLECTION_DEBIT = "DEBT_COLLECTION_DEBIT"
ENTRY_COMMISSION_DEBIT = "COMMISSION_DEBIT"
ENTRY_COMMISSION_CREDIT = "COMMISSION_CREDIT"


# ==============================
# Core: Append-only ledger write
# ==============================

async def add_ledger_entry(
    db,
    seller_id,
    entry_type: str,
    currency: str,
    credit: int = 0,
    debit: int = 0,
    order_id=None,
    reference_id=None,
    reason_code: str | None = None,
):
    if credit < 0 or debit < 0:
        raise ValueError("Credit/Debit cannot be negative")

    entry = {
        "seller_id": seller_id,
        "order_id": order_id,
        "reference_id": reference_id,
        "entry_type": entry_type,
        "currency": currency,
        "credit": int(credit),
        "debit": int(debit),
        "reason_code": reason_code,
        "created_at": datetime.utcnow(),
    }

    await db.wallet_ledger.insert_one(entry)


# ==============================
# Wallet balance (derived only)
# ==============================

async def get_wallet_balance(db, seller_id, currency: str) -> int:
    pipeline = [
        {"$match": {"seller_id": seller_id, "currency": currency}},
        {"$group": {
            "_id": None,
            "credit": {"$sum": "$credit"},
            "debit": {"$sum": "$debit"},
        }},
    ]

    result = await db.wallet_ledger.aggregate(pipeline).to_list(1)
    if not result:
        return 0

    return result[0]["credit"] - result[0]["debit"]


async def get_wallet_balances(db, seller_id) -> dict:
    pipeline = [
        {"$match": {"seller_id": seller_id}},
        {"$group": {
            "_id": "$currency",
            "credit": {"$sum": "$credit"},
            "debit": {"$sum": "$debit"},
        }},
    ]

    rows = await db.wallet_ledger.aggregate(pipeline).to_list(None)
    return {r["_id"]: r["credit"] - r["debit"] for r in rows}


# ==============================
# Settlement (order completed)
# ==============================

async def credit_order_settlement(db, seller_id, order: dict, platform_fee_percent: float):
    """Credits what the buyer still paid for the order, less the platform fee."""
    total = int(order["pricing"]["total_amount"]) - int(order.get("refunded_amount") or 0)
    currency = order["pricing"]["currency"]
    if total <= 0:
        return 0
    fee = int(total * platform_fee_percent / 100)

    await add_ledger_entry(
        db,
        seller_id,
        ENTRY_SALE_CREDIT,
        currency,
        credit=total,
        order_id=order["_id"],
        reason_code="ORDER_COMPLETED",
    )

    if fee > 0:
        await add_ledger_entry(
            db,
            seller_id,
            ENTRY_PLATFORM_FEE_DEBIT,
            currency,
            debit=fee,
            order_id=order["_id"],
            reason_code="PLATFORM_FEE_DEDUCTED",
        )

    return total - fee


async def order_settlement_net(db, seller_id, order_id, currency: str) -> int:
    """Sale credit minus platform fee booked for one order; 0 before completion."""
    pipeline = [
        {"$match": {
            "seller_id": seller_id,
            "order_id": order_id,
            "currency": currency,
            "entry_type": {"$in": [ENTRY_SALE_CREDIT, ENTRY_PLATFORM_FEE_DEBIT]},
        }},
        {"$group": {
            "_id": None,
            "credit": {"$sum": "$credit"},
            "debit": {"$sum": "$debit"},
        }},
    ]

    result = await db.wallet_ledger.aggregate(pipeline).to_list(1)
    if not result:
        return 0

    return result[0]["credit"] - result[0]["debit"]


# ==============================
# Refund recovery (live balance only, never negative)
# ==============================

async def recover_refund_from_wallet(db, seller_id, order_id, refund_id, amount: int, currency: str) -> int:
    """
    Debits up to the seller's live balance for a refund already paid to the
    buyer. Returns the amount recovered; the caller turns the rest into debt.
    """
    balance = await get_wallet_balance(db, seller_id, currency)
    recovered = max(0, min(balance, amount))

    if recovered > 0:
        await add_ledger_entry(
            db,
            seller_id,
            ENTRY_REFUND_DEBIT,
            currency,
            debit=recovered,
            order_id=order_id,
            reference_id=refund_id,
            reason_code="DISPUTE_REFUND_RECOVERED",
        )

    return recovered
