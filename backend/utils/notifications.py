import logging
from datetime import datetime, timedelta

from fastapi import Depends

from config.constants import (
    NOTIFICATION_MAX_ATTEMPTS,
    NOTIFICATION_BACKOFF_BASE_SECONDS,
    NOTIFICATION_BACKOFF_MAX_SECONDS,
)
from database import get_db

logger = logging.getLogger(__name__)

# queued -> sent | failed -> (retry) ... -> dead
STATUS_QUEUED = "queued"
STATUS_SENT = "sent"
STATUS_FAILED = "failed"
STATUS_DEAD = "dead"


class InboxNotificationSink:
    """Default sink: the in-app notification inbox."""

    def __init__(self, db):
        self.db = db

    async def deliver(self, message: dict):
        await self.db.notifications.update_one(
            {"queue_id": message["_id"]},
            {
                "$setOnInsert": {
                    "queue_id": message["_id"],
                    "user_id": message["user_id"],
                    "type": message["type"],
                    "title": message["title"],
                    "content": message["content"],
                    "related_id": message.get("related_id"),
                    "related_type": message.get("related_type"),
                    "link": message.get("link"),
                    "read": False,
                    "created_at": datetime.utcnow(),
                }
            },
            upsert=True,
        )


async def queue_notification(
    db,
    *,
    user_id,
    type: str,
    title: str,
    content: str,
    related_id=None,
    related_type: str | None = None,
    link: str | None = None,
):
    """
    Fire-and-forget. The ledger write that triggered this has already
    happened; a failure here is logged and never raised.
    """
    if not user_id:
        return None

    now = datetime.utcnow()
    try:
        result = await db.notification_queue.insert_one({
            "user_id": user_id,
            "type": type,
            "title": title,
            "content": content,
            "related_id": related_id,
            "related_type": related_type,
            "link": link,
            "status": STATUS_QUEUED,
            "attempt_count": 0,
            "max_attempts": NOTIFICATION_MAX_ATTEMPTS,
            "next_attempt_at": now,
            "last_error": None,
            "created_at": now,
        })
        return result.inserted_id
    except Exception:
        logger.exception("NOTIFICATION_QUEUE_ERROR user=%s type=%s", user_id, type)
        return None


def next_attempt_delay(attempt_count: int) -> int:
    """Exponential backoff with a cap."""
    n = max(int(attempt_count or 0), 0)
    return min(int(NOTIFICATION_BACKOFF_BASE_SECONDS * (2 ** n)), NOTIFICATION_BACKOFF_MAX_SECONDS)


async def dispatch_pending_notifications(db, sink, *, limit: int = 200) -> dict:
    """
    At-least-once delivery: a message is marked sent only after the sink
    accepted it, so a crash in between re-delivers it on the next run.
    """
    now = datetime.utcnow()
    sent = 0
    failed = 0
    dead = 0

    cursor = db.notification_queue.find({
        "status": {"$in": [STATUS_QUEUED, STATUS_FAILED]},
        "next_attempt_at": {"$lte": now},
    }).sort("created_at", 1).limit(limit)

    async for message in cursor:
        try:
            await sink.deliver(message)
        except Exception as e:
            attempts = int(message.get("attempt_count", 0)) + 1
            logger.exception("NOTIFICATION_DELIVERY_ERROR id=%s attempt=%s", message["_id"], attempts)

            update = {
                "attempt_count": attempts,
                "last_error": str(e)[:240],
            }
            if attempts >= int(message.get("max_attempts", NOTIFICATION_MAX_ATTEMPTS)):
                update["status"] = STATUS_DEAD
                update["dead_lettered_at"] = datetime.utcnow()
                dead += 1
            else:
                update["status"] = STATUS_FAILED
                update["next_attempt_at"] = datetime.utcnow() + timedelta(seconds=next_attempt_delay(attempts))
                failed += 1

            await db.notification_queue.update_one({"_id": message["_id"]}, {"$set": update})
            continue

        await db.notification_queue.update_one(
            {"_id": message["_id"]},
            {"$set": {"status": STATUS_SENT, "sent_at": datetime.utcnow()}},
        )
        sent += 1

    return {"sent": sent, "failed": failed, "dead": dead}


def get_notification_sink(db=Depends(get_db)):
    return InboxNotificationSink(db)
