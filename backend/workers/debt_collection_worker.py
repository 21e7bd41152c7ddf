import logging

from models.debt import DebtStatus
from utils import payout_eligibility
from utils.debt_collector import collect_from_deposit

logger = logging.getLogger(__name__)


async def run_debt_collection(db, rates) -> dict:
    """
    One pass over every seller holding pending debt. Eligibility is
    recomputed for each of them even when nothing was collected, since a
    debt may have aged past the overdue window since the last run.
    """
    seller_ids = await db.seller_debts.distinct("seller_id", {"status": DebtStatus.PENDING.value})

    sellers = 0
    debts_collected = 0
    total_collected = 0
    blocked = 0
    failed = []

    for seller_id in seller_ids:
        try:
            result = await collect_from_deposit(db, seller_id, rates)
            eligibility = await payout_eligibility.update(db, seller_id, trigger="debt_sweep")
            sellers += 1
            debts_collected += result["collectedCount"]
            total_collected += result["totalCollected"]
            if eligibility["status"] != payout_eligibility.ELIGIBLE:
                blocked += 1
        except Exception as e:
            # Never crash the sweep for one seller
            logger.exception("DEBT_COLLECTION_ERROR seller=%s", seller_id)
            failed.append({"seller_id": str(seller_id), "error": str(e)[:200]})

    logger.info(
        "DEBT_COLLECTION_SWEEP sellers=%s collected=%s total=%s not_eligible=%s failed=%s",
        sellers, debts_collected, total_collected, blocked, len(failed),
    )
    return {
        "sellers_processed": sellers,
        "debts_collected": debts_collected,
        "total_collected": total_collected,
        "sellers_not_eligible": blocked,
        "failed": failed,
    }
