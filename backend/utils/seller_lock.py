import asyncio
import logging
import time
import uuid
from contextlib import asynccontextmanager
from contextvars import ContextVar
from datetime import datetime, timedelta

from fastapi import HTTPException
from pymongo.errors import DuplicateKeyError

from config.env import SELLER_LOCK_LEASE_SECONDS, SELLER_LOCK_WAIT_SECONDS

LOCK_RETRY_SECONDS = 0.05
logger = logging.getLogger(__name__)

# Sellers whose lease the current task already holds (re-entrancy)
_held_sellers: ContextVar[frozenset] = ContextVar("held_sellers", default=frozenset())


def holds_seller_lock(seller_id) -> bool:
    return str(seller_id) in _held_sellers.get()


@asynccontextmanager
async def seller_lock(db, seller_id, *, wait_seconds: float | None = None):
    """
    Per-seller ledger lease.

    One document per seller in `seller_locks`, created by insert so the unique
    `_id` decides the winner. A lease past `expires_at` belongs to a crashed
    holder and can be taken over. Nested use inside the same task is a no-op.
    """
    key = str(seller_id)
    if key in _held_sellers.get():
        yield
        return

    token = uuid.uuid4().hex
    wait = SELLER_LOCK_WAIT_SECONDS if wait_seconds is None else wait_seconds
    deadline = time.monotonic() + wait

    while True:
        now = datetime.utcnow()
        expires_at = now + timedelta(seconds=SELLER_LOCK_LEASE_SECONDS)
        try:
            await db.seller_locks.insert_one({
                "_id": key,
                "token": token,
                "acquired_at": now,
                "expires_at": expires_at,
            })
            break
        except DuplicateKeyError:
            stale = await db.seller_locks.find_one_and_update(
                {"_id": key, "expires_at": {"$lt": now}},
                {"$set": {"token": token, "acquired_at": now, "expires_at": expires_at}},
            )
            if stale:
                logger.warning("SELLER_LOCK_TAKEOVER seller=%s", key)
                break

        if time.monotonic() >= deadline:
            raise HTTPException(
                status_code=409,
                detail="Seller ledger is busy. Please retry.",
            )
        await asyncio.sleep(LOCK_RETRY_SECONDS)

    ctx_token = _held_sellers.set(_held_sellers.get() | {key})
    try:
        yield
    finally:
        _held_sellers.reset(ctx_token)
        await db.seller_locks.delete_one({"_id": key, "token": token})
