import logging
from datetime import datetime

from models.user import SubscriptionStatus
from utils import payout_eligibility

logger = logging.getLogger(__name__)


async def run_subscription_expiry(db) -> dict:
    """Expires lapsed subscriptions and recomputes eligibility for each affected seller."""
    now = datetime.utcnow()
    expired = 0
    affected = set()
    failed = []

    cursor = db.subscriptions.find({
        "status": SubscriptionStatus.ACTIVE.value,
        "expires_at": {"$lte": now},
    })
    async for subscription in cursor:
        try:
            result = await db.subscriptions.update_one(
                {"_id": subscription["_id"], "status": SubscriptionStatus.ACTIVE.value},
                {"$set": {"status": SubscriptionStatus.EXPIRED.value, "expired_at": now}},
            )
            expired += result.modified_count
            affected.add(subscription["user_id"])
        except Exception as e:
            logger.exception("SUBSCRIPTION_EXPIRY_ERROR subscription=%s", subscription["_id"])
            failed.append({"subscription_id": str(subscription["_id"]), "error": str(e)[:200]})

    recomputed = 0
    for seller_id in affected:
        try:
            await payout_eligibility.update(db, seller_id, trigger="subscription_expired")
            recomputed += 1
        except Exception as e:
            logger.exception("SUBSCRIPTION_ELIGIBILITY_ERROR seller=%s", seller_id)
            failed.append({"seller_id": str(seller_id), "error": str(e)[:200]})

    logger.info("SUBSCRIPTION_EXPIRY_SWEEP expired=%s recomputed=%s failed=%s", expired, recomputed, len(failed))
    return {"expired": expired, "sellers_recomputed": recomputed, "failed": failed}
