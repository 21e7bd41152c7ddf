from datetime import datetime, timedelta

from pymongo.errors import DuplicateKeyError

IDEMPOTENCY_TTL_SECONDS = 60 * 60 * 24  # 24 hours
IN_PROGRESS_STALE_SECONDS = 60 * 10     # 10 minutes

IN_PROGRESS_RESPONSE = {
    "message": "Request already in progress",
    "status": "processing",
}


async def reserve_idempotency_key(
    *,
    db,
    key: str,
    scope: str,
):
    """
    Reserve an idempotency key.
    Returns None when the caller owns the key, the stored response when the
    key already completed, or an in-progress marker otherwise.
    Failed or stale reservations are taken over in place.
    """
    now = datetime.utcnow()
    existing = await db.idempotency_keys.find_one({"key": key, "scope": scope})

    if not existing:
        try:
            await db.idempotency_keys.insert_one({
                "key": key,
                "scope": scope,
                "status": "reserved",
                "response": None,
                "created_at": now,
            })
            return None
        except DuplicateKeyError:
            # Concurrent request won the race
            existing = await db.idempotency_keys.find_one({"key": key, "scope": scope})

    if not existing:
        return IN_PROGRESS_RESPONSE
    if existing.get("status") == "completed":
        return existing.get("response")

    stale_before = now - timedelta(seconds=IN_PROGRESS_STALE_SECONDS)
    takeover = await db.idempotency_keys.find_one_and_update(
        {
            "_id": existing["_id"],
            "$or": [
                {"status": "failed"},
                {"status": "reserved", "created_at": {"$lt": stale_before}},
            ],
        },
        {"$set": {"status": "reserved", "created_at": now, "error": None}},
    )
    if takeover:
        return None
    return IN_PROGRESS_RESPONSE


async def complete_idempotency_key(
    *,
    db,
    key: str,
    scope: str,
    response: dict,
):
    await db.idempotency_keys.update_one(
        {"key": key, "scope": scope},
        {
            "$set": {
                "status": "completed",
                "response": response,
                "completed_at": datetime.utcnow(),
            }
        },
    )


async def fail_idempotency_key(
    *,
    db,
    key: str,
    scope: str,
    error: str,
):
    """
    Mark idempotency key as failed so retries can be attempted explicitly.
    """
    await db.idempotency_keys.update_one(
        {"key": key, "scope": scope},
        {
            "$set": {
                "status": "failed",
                "error": error,
                "failed_at": datetime.utcnow(),
            }
        },
    )


async def clear_idempotency_key(
    *,
    db,
    key: str,
    scope: str,
):
    await db.idempotency_keys.delete_one({"key": key, "scope": scope})
