import logging

from utils.notifications import dispatch_pending_notifications

logger = logging.getLogger(__name__)


async def run_notification_dispatch(db, sink) -> dict:
    result = await dispatch_pending_notifications(db, sink)
    if result["dead"]:
        logger.warning("NOTIFICATION_DEAD_LETTERED count=%s", result["dead"])
    logger.info("NOTIFICATION_DISPATCH sent=%s failed=%s", result["sent"], result["failed"])
    return result
