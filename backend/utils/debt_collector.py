"""
Debt recovery.

Deposits are drained opportunistically at any time (oldest lot first,
partial consumption allowed). Payouts are intercepted only at the moment
of disbursement, before the transfer leaves the platform.
"""
import logging
from datetime import datetime

from fastapi import HTTPException
from pymongo import ReturnDocument

from models.debt import DebtCause, DebtStatus
from models.deposit import DepositLotStatus
from utils import ledger_store
from utils import payout_eligibility
from utils.audit import log_audit
from utils.ledger_store import LedgerConsistencyError, debt_remaining, lot_available
from utils.money import to_major_units
from utils.notifications import queue_notification
from utils.seller_lock import seller_lock
from utils.wallet_service import ENTRY_COMMISSION_CREDIT, add_ledger_entry

logger = logging.getLogger(__name__)

SOURCE_DEPOSIT = "deposit"
SOURCE_PAYOUT = "payout"

# Debt reference field that makes each cause unique
_UNIQUE_REFERENCE = {
    DebtCause.DISPUTE_REFUND_SHORTFALL.value: "refund_id",
    DebtCause.OVERDUE_COMMISSION.value: "commission_id",
    DebtCause.VIOLATION_PENALTY.value: "violation_id",
}


async def _remaining_debt_base(db, seller_id, rates) -> int:
    total = 0
    for debt in await ledger_store.list_pending_debts(db, seller_id):
        total += await rates.to_base(debt_remaining(debt), debt["currency"])
    return total


async def _slice(rates, available: int, source_currency: str, wanted: int, target_currency: str):
    """
    How much of `available` (source currency) to take to cover up to `wanted`
    (target currency). Returns (source_amount, target_amount).
    """
    available_in_target = await rates.convert(available, source_currency, target_currency)
    if available_in_target <= wanted:
        return available, available_in_target

    source_amount = await rates.convert(wanted, target_currency, source_currency)
    source_amount = min(max(source_amount, 1), available)
    return source_amount, wanted


async def _forward_commission(db, debt: dict, amount: int):
    """An overdue_commission debt is owed to the affiliate; pass on what was recovered."""
    if debt.get("cause") != DebtCause.OVERDUE_COMMISSION.value or amount <= 0:
        return
    commission = await db.commission_obligations.find_one({"_id": debt["commission_id"]})
    if not commission:
        raise LedgerConsistencyError(f"Debt {debt['_id']} references a missing commission")

    await add_ledger_entry(
        db, commission["affiliate_id"], ENTRY_COMMISSION_CREDIT, debt["currency"],
        credit=amount, order_id=commission["order_id"],
        reference_id=commission["_id"], reason_code="COMMISSION_FROM_DEBT",
    )


async def take_from_lot(db, lot: dict, wanted: int, currency: str, rates):
    """
    Consumes up to `wanted` (in `currency`) from one deposit lot and forfeits
    the lot once it is empty. Returns (updated_lot, lot_amount, covered);
    covered is 0 when the lot had nothing to give.
    """
    available = lot_available(lot)
    if available <= 0 or wanted <= 0:
        return lot, 0, 0

    lot_amount, covered = await _slice(rates, available, lot["currency"], wanted, currency)
    if covered <= 0:
        return lot, 0, 0

    updated = await ledger_store.consume_lot(db, lot, lot_amount)
    if not updated:
        raise LedgerConsistencyError(f"Deposit lot {lot['_id']} changed during collection")

    if updated["status"] == DepositLotStatus.HELD.value and lot_available(updated) == 0:
        updated = await ledger_store.transition_lot(
            db, updated, DepositLotStatus.FORFEITED.value,
            {"forfeited_at": datetime.utcnow()},
        ) or updated

    return updated, lot_amount, covered


async def collect_from_deposit(db, seller_id, rates, *, actor_id=None, actor_role: str = "system") -> dict:
    """
    Drains available deposit collateral into pending debts.
    Debts and lots are read inside the seller lease, never from a snapshot.
    """
    collected_count = 0
    total_collected = 0
    slices = []

    async with seller_lock(db, seller_id):
        debts = await ledger_store.list_pending_debts(db, seller_id)
        lots = await ledger_store.list_collateral_lots(db, seller_id) if debts else []

        for debt in debts:
            remaining = debt_remaining(debt)

            for index, lot in enumerate(lots):
                if remaining <= 0:
                    break

                updated_lot, lot_amount, debt_amount = await take_from_lot(
                    db, lot, remaining, debt["currency"], rates
                )
                if debt_amount <= 0:
                    continue

                updated_debt = await ledger_store.apply_debt_collection(
                    db,
                    debt,
                    amount=debt_amount,
                    source=SOURCE_DEPOSIT,
                    source_amount=lot_amount,
                    source_currency=lot["currency"],
                    lot_id=lot["_id"],
                )
                if not updated_debt:
                    raise LedgerConsistencyError(f"Debt {debt['_id']} changed during collection")
                await _forward_commission(db, debt, debt_amount)

                lots[index] = updated_lot
                debt = updated_debt
                remaining -= debt_amount
                total_collected += await rates.to_base(debt_amount, debt["currency"])
                slices.append({
                    "debt_id": str(debt["_id"]),
                    "lot_id": str(lot["_id"]),
                    "amount": debt_amount,
                    "currency": debt["currency"],
                })

            if debt["status"] == DebtStatus.COLLECTED.value:
                collected_count += 1

        remaining_debt = await _remaining_debt_base(db, seller_id, rates)

        if slices:
            await log_audit(
                db,
                "DEBT_COLLECT_DEPOSIT",
                actor_id=actor_id,
                actor_role=actor_role,
                resource_id=seller_id,
                meta={"slices": slices, "total_collected": total_collected},
            )
            await queue_notification(
                db,
                user_id=seller_id,
                type="debt_collected",
                title="Debt deducted from deposit",
                content=(
                    f"{to_major_units(total_collected):.2f} {rates.base_currency} "
                    "was deducted from your deposit to settle outstanding debt."
                ),
                related_id=seller_id,
                related_type="seller_debt",
            )
            await payout_eligibility.update(db, seller_id, trigger="debt_collected")

    return {
        "collectedCount": collected_count,
        "totalCollected": total_collected,
        "remainingDebt": remaining_debt,
    }


async def collect_from_payout(db, seller_id, payout_amount: int, currency: str, payout_id, rates) -> dict:
    """
    Deducts pending debt from a payout that has not been disbursed yet,
    capped at the payout amount.
    """
    if payout_amount <= 0:
        raise HTTPException(status_code=400, detail="Invalid payout amount")

    left = int(payout_amount)
    deducted = 0
    slices = []

    async with seller_lock(db, seller_id):
        for debt in await ledger_store.list_pending_debts(db, seller_id):
            if left <= 0:
                break

            payout_slice, debt_slice = await _slice(
                rates, left, currency, debt_remaining(debt), debt["currency"]
            )
            if debt_slice <= 0:
                continue

            updated = await ledger_store.apply_debt_collection(
                db,
                debt,
                amount=debt_slice,
                source=SOURCE_PAYOUT,
                source_amount=payout_slice,
                source_currency=currency,
                payout_id=payout_id,
            )
            if not updated:
                raise LedgerConsistencyError(f"Debt {debt['_id']} changed during payout collection")
            await _forward_commission(db, debt, debt_slice)

            left -= payout_slice
            deducted += payout_slice
            slices.append({"debt_id": str(debt["_id"]), "amount": debt_slice, "currency": debt["currency"]})

        remaining_debt = await _remaining_debt_base(db, seller_id, rates)

        if deducted:
            await log_audit(
                db,
                "DEBT_COLLECT_PAYOUT",
                actor_id=None,
                actor_role="system",
                resource_id=payout_id,
                meta={"seller_id": str(seller_id), "deducted": deducted, "currency": currency, "slices": slices},
            )
            await queue_notification(
                db,
                user_id=seller_id,
                type="debt_collected",
                title="Debt deducted from payout",
                content=f"{to_major_units(deducted):.2f} {currency} was withheld from your payout to settle outstanding debt.",
                related_id=payout_id,
                related_type="payout",
            )
            await payout_eligibility.update(db, seller_id, trigger="debt_collected")

    return {
        "actualPayoutAmount": left,
        "deductedDebtAmount": deducted,
        "remainingDebt": remaining_debt,
    }


async def create_debt(
    db,
    *,
    seller_id,
    cause: str,
    amount: int,
    currency: str,
    reason: str,
    order_id=None,
    dispute_id=None,
    refund_id=None,
    commission_id=None,
    violation_id=None,
    actor_id=None,
    actor_role: str = "system",
) -> dict:
    """Idempotent per cause and reference. Recomputes eligibility on creation."""
    if amount <= 0:
        raise ValueError("Debt amount must be positive")

    references = {
        "order_id": order_id,
        "dispute_id": dispute_id,
        "refund_id": refund_id,
        "commission_id": commission_id,
        "violation_id": violation_id,
    }
    unique_field = _UNIQUE_REFERENCE[cause]
    if references[unique_field] is None:
        raise ValueError(f"{cause} debt needs {unique_field}")

    now = datetime.utcnow()
    debt, created = await ledger_store.insert_debt(
        db,
        {
            "seller_id": seller_id,
            "cause": cause,
            **references,
            "amount": int(amount),
            "currency": currency,
            "collected_amount": 0,
            "status": DebtStatus.PENDING.value,
            "reason": reason,
            "created_at": now,
            "updated_at": now,
        },
        {"cause": cause, unique_field: references[unique_field]},
    )
    if not created:
        return debt

    await log_audit(
        db,
        "SELLER_DEBT_CREATE",
        actor_id=actor_id,
        actor_role=actor_role,
        resource_id=debt["_id"],
        meta={"seller_id": str(seller_id), "cause": cause, "amount": int(amount), "currency": currency},
    )
    await queue_notification(
        db,
        user_id=seller_id,
        type="seller_debt",
        title="New amount owed",
        content=f"{to_major_units(amount):.2f} {currency} is owed to the platform: {reason}",
        related_id=debt["_id"],
        related_type="seller_debt",
    )
    await payout_eligibility.update(db, seller_id, trigger="debt_created")
    return debt


async def mark_debt_paid(db, debt_id, *, admin_id, reference: str, note: str | None = None) -> dict:
    debt = await db.seller_debts.find_one({"_id": debt_id})
    if not debt:
        raise HTTPException(status_code=404, detail="Debt not found")

    async with seller_lock(db, debt["seller_id"]):
        updated = await db.seller_debts.find_one_and_update(
            {"_id": debt_id, "status": DebtStatus.PENDING.value},
            {"$set": {
                "status": DebtStatus.PAID.value,
                "paid_at": datetime.utcnow(),
                "paid_reference": reference,
                "paid_note": note,
                "paid_by": admin_id,
                "updated_at": datetime.utcnow(),
            }},
            return_document=ReturnDocument.AFTER,
        )
        if not updated:
            await log_audit(
                db,
                "SELLER_DEBT_MARK_PAID",
                actor_id=admin_id,
                actor_role="admin",
                resource_id=debt_id,
                result="fail",
                meta={"status": debt["status"]},
            )
            raise HTTPException(status_code=409, detail=f"Debt is already {debt['status']}")

        await log_audit(
            db,
            "SELLER_DEBT_MARK_PAID",
            actor_id=admin_id,
            actor_role="admin",
            resource_id=debt_id,
            meta={"reference": reference},
        )
        await _forward_commission(db, updated, debt_remaining(updated))
        await payout_eligibility.update(db, debt["seller_id"], trigger="debt_paid")

    return updated
