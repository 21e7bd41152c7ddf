import logging
from datetime import datetime

AUDIT_SUCCESS = "success"
AUDIT_FAIL = "fail"

logger = logging.getLogger(__name__)


async def log_audit(
    db,
    action: str,
    *,
    actor_id: str | None,
    actor_role: str,
    resource_id=None,
    result: str = AUDIT_SUCCESS,
    meta: dict | None = None,
):
    """
    Append-only audit record for every mutating ledger operation,
    written whether the operation succeeded or not.
    Audit must never change the outcome of the operation it records.
    """
    try:
        await db.audit_logs.insert_one({
            "action": action,
            "actor_id": str(actor_id) if actor_id else None,
            "actor_role": actor_role,
            "resource_id": str(resource_id) if resource_id is not None else None,
            "result": result,
            "timestamp": datetime.utcnow(),
            "meta": meta or {},
        })
    except Exception:
        logger.exception("AUDIT_WRITE_ERROR action=%s resource=%s", action, resource_id)
