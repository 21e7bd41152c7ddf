"""
Payout eligibility.

`calculate` derives eligible / blocked / pending_review from ledger facts.
`update` is the only way the stored value changes: it recomputes under the
seller lease, persists through `_persist_eligibility` (not exported), then
re-reads and checks the stored value.

Anything other than `eligible` means the seller cannot receive funds.
"""
import logging
from datetime import datetime, timedelta

from fastapi import HTTPException

from config.env import DEBT_OVERDUE_DAYS
from models.payment_account import AccountVerification, ProviderAccountStatus
from models.user import PayoutEligibility, UserRole
from utils import ledger_store
from utils.audit import log_audit
from utils.ledger_store import LedgerConsistencyError
from utils.notifications import queue_notification
from utils.seller_lock import seller_lock

__all__ = [
    "ELIGIBLE",
    "BLOCKED",
    "PENDING_REVIEW",
    "calculate",
    "explain",
    "update",
    "validate_seller_payment_ready",
]

logger = logging.getLogger(__name__)

ELIGIBLE = PayoutEligibility.ELIGIBLE.value
BLOCKED = PayoutEligibility.BLOCKED.value
PENDING_REVIEW = PayoutEligibility.PENDING_REVIEW.value

# reason code -> what the seller has to do about it
REQUIRED_ACTIONS = {
    "seller_not_found": "contact_support",
    "account_frozen": "contact_support",
    "active_violation": "resolve_violation",
    "deposit_breach": "post_deposit",
    "overdue_debt": "settle_debt",
    "subscription_inactive": "renew_subscription",
    "payment_account_disabled": "replace_payment_account",
    "payment_account_rejected": "replace_payment_account",
    "payment_account_missing": "bind_payment_account",
    "payment_account_unverified": "await_verification",
    "provider_account_pending": "await_verification",
    "ledger_unavailable": "retry_later",
}


async def _blocking_reasons(db, seller) -> list:
    seller_id = seller["_id"]
    reasons = []

    if seller.get("is_frozen"):
        reasons.append("account_frozen")

    if await ledger_store.count_active_violations(db, seller_id) > 0:
        reasons.append("active_violation")

    control = seller.get("payment_control") or {}
    if control.get("enabled") is False and control.get("reason") == "deposit_breach":
        reasons.append("deposit_breach")

    cutoff = datetime.utcnow() - timedelta(days=DEBT_OVERDUE_DAYS)
    if await ledger_store.count_overdue_debts(db, seller_id, cutoff) > 0:
        reasons.append("overdue_debt")

    if not await ledger_store.get_active_subscription(db, seller_id):
        reasons.append("subscription_inactive")

    return reasons


def _account_reasons(accounts: list) -> tuple[list, list]:
    """Returns (blocking, review) reasons for the bound payment accounts."""
    blocking = []
    review = []

    for account in accounts:
        if account.get("provider_status") == ProviderAccountStatus.DISABLED.value:
            blocking.append("payment_account_disabled")
        if account.get("verification_status") == AccountVerification.REJECTED.value:
            blocking.append("payment_account_rejected")

    default = next((a for a in accounts if a.get("is_default")), None)
    if not default:
        review.append("payment_account_missing")
    else:
        if default.get("verification_status") != AccountVerification.VERIFIED.value:
            review.append("payment_account_unverified")
        if default.get("provider_status") != ProviderAccountStatus.ENABLED.value:
            review.append("provider_account_pending")

    return sorted(set(blocking)), review


async def explain(db, seller_id) -> dict:
    """
    Eligibility plus the reasons behind it.
    A failed read resolves to blocked.
    """
    try:
        seller = await ledger_store.get_seller(db, seller_id)
        if not seller or seller.get("role") != UserRole.SELLER.value:
            return _result(BLOCKED, ["seller_not_found"])

        blocking = await _blocking_reasons(db, seller)
        accounts = await ledger_store.list_payment_accounts(db, seller_id)
    except Exception:
        logger.exception("ELIGIBILITY_READ_ERROR seller=%s", seller_id)
        return _result(BLOCKED, ["ledger_unavailable"])

    account_blocking, review = _account_reasons(accounts)
    blocking += account_blocking

    if blocking:
        return _result(BLOCKED, blocking)
    if review:
        return _result(PENDING_REVIEW, review)
    return _result(ELIGIBLE, [])


def _result(status: str, reasons: list) -> dict:
    return {
        "status": status,
        "reasons": reasons,
        "required_action": REQUIRED_ACTIONS.get(reasons[0]) if reasons else None,
    }


async def calculate(db, seller_id) -> str:
    return (await explain(db, seller_id))["status"]


async def _persist_eligibility(db, seller_id, result: dict):
    await db.users.update_one(
        {"_id": seller_id},
        {"$set": {
            "payout_eligibility": result["status"],
            "eligibility_reasons": result["reasons"],
            "eligibility_updated_at": datetime.utcnow(),
        }},
    )


async def update(db, seller_id, *, trigger: str = "system") -> dict:
    """
    Recompute and persist. Safe to call repeatedly; the stored value always
    equals the last computation or a LedgerConsistencyError is raised.
    """
    async with seller_lock(db, seller_id):
        before = await ledger_store.get_seller(db, seller_id)
        result = await explain(db, seller_id)

        if not before:
            return result

        await _persist_eligibility(db, seller_id, result)

        stored = await db.users.find_one({"_id": seller_id}, {"payout_eligibility": 1})
        if not stored or stored.get("payout_eligibility") != result["status"]:
            await log_audit(
                db,
                "ELIGIBILITY_UPDATE",
                actor_id=None,
                actor_role="system",
                resource_id=seller_id,
                result="fail",
                meta={"computed": result["status"], "trigger": trigger},
            )
            raise LedgerConsistencyError(
                f"Eligibility write for seller {seller_id} did not persist"
            )

    previous = before.get("payout_eligibility")
    if previous != result["status"]:
        await log_audit(
            db,
            "ELIGIBILITY_UPDATE",
            actor_id=None,
            actor_role="system",
            resource_id=seller_id,
            meta={
                "from": previous,
                "to": result["status"],
                "reasons": result["reasons"],
                "trigger": trigger,
            },
        )
        await queue_notification(
            db,
            user_id=seller_id,
            type="payout_eligibility",
            title="Payout eligibility changed",
            content=f"Your payout status is now {result['status']}.",
            related_id=seller_id,
            related_type="seller",
        )

    return result


def validate_seller_payment_ready(seller: dict):
    """Only an eligible seller may take payments or receive payouts."""
    if not seller or seller.get("payout_eligibility") != ELIGIBLE:
        reasons = (seller or {}).get("eligibility_reasons") or []
        raise HTTPException(
            status_code=403,
            detail={
                "message": "Seller cannot receive funds",
                "payoutEligibility": (seller or {}).get("payout_eligibility") or BLOCKED,
                "reasons": reasons,
                "requiredAction": REQUIRED_ACTIONS.get(reasons[0]) if reasons else "contact_support",
            },
        )
