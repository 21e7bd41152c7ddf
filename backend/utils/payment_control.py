from datetime import datetime

from utils.audit import log_audit
from utils.notifications import queue_notification

REASON_DEPOSIT_BREACH = "deposit_breach"


def is_payment_enabled(seller: dict) -> bool:
    control = seller.get("payment_control") or {}
    return control.get("enabled", True) is not False


def is_deposit_breach(seller: dict) -> bool:
    control = seller.get("payment_control") or {}
    return control.get("enabled") is False and control.get("reason") == REASON_DEPOSIT_BREACH


async def disable_payment(db, seller_id, *, reason: str, detail: dict | None = None):
    """Stops the seller from taking new payments. Caller recomputes eligibility."""
    result = await db.users.update_one(
        {"_id": seller_id},
        {"$set": {
            "payment_control": {
                "enabled": False,
                "reason": reason,
                "detail": detail or {},
                "updated_at": datetime.utcnow(),
            }
        }},
    )

    await log_audit(
        db,
        "SELLER_PAYMENT_DISABLED",
        actor_id=None,
        actor_role="system",
        resource_id=seller_id,
        meta={"reason": reason, **(detail or {})},
    )

    if result.modified_count:
        await queue_notification(
            db,
            user_id=seller_id,
            type="payment_disabled",
            title="Payments paused",
            content="New payments are paused until your deposit covers outstanding orders."
            if reason == REASON_DEPOSIT_BREACH
            else "New payments are paused on your account.",
            related_id=seller_id,
            related_type="seller",
        )


async def enable_payment(db, seller_id, *, reason: str):
    await db.users.update_one(
        {"_id": seller_id},
        {"$set": {
            "payment_control": {
                "enabled": True,
                "reason": reason,
                "detail": {},
                "updated_at": datetime.utcnow(),
            }
        }},
    )

    await log_audit(
        db,
        "SELLER_PAYMENT_ENABLED",
        actor_id=None,
        actor_role="system",
        resource_id=seller_id,
        meta={"reason": reason},
    )
    await queue_notification(
        db,
        user_id=seller_id,
        type="payment_enabled",
        title="Payments resumed",
        content="Your account can take payments again.",
        related_id=seller_id,
        related_type="seller",
    )
