import logging

from utils.deposits import release_matured_lots

logger = logging.getLogger(__name__)


async def run_deposit_lot_maturity(db) -> dict:
    result = await release_matured_lots(db)
    logger.info("DEPOSIT_LOT_SWEEP updated=%s failed=%s", result["updated"], len(result["failed"]))
    return result
