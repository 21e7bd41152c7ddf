import logging

from models.commission import CommissionStatus
from utils.commission_settlement import deduct_commission_from_deposit, mark_overdue

logger = logging.getLogger(__name__)


async def run_overdue_commission_deduction(db, rates) -> dict:
    marked = await mark_overdue(db)

    resolved = 0
    converted_to_debt = 0
    failed = []

    cursor = db.commission_obligations.find({"status": CommissionStatus.OVERDUE.value})
    async for commission in cursor:
        try:
            result = await deduct_commission_from_deposit(db, commission["_id"], rates)
            resolved += 1
            if result.get("debt_id"):
                converted_to_debt += 1
        except Exception as e:
            logger.exception("COMMISSION_DEDUCTION_ERROR commission=%s", commission["_id"])
            failed.append({"commission_id": str(commission["_id"]), "error": str(e)[:200]})

    logger.info(
        "COMMISSION_OVERDUE_SWEEP marked=%s resolved=%s debts=%s failed=%s",
        marked, resolved, converted_to_debt, len(failed),
    )
    return {
        "marked_overdue": marked,
        "resolved": resolved,
        "converted_to_debt": converted_to_debt,
        "failed": failed,
    }
