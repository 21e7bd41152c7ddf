from datetime import datetime

EVENT_CREATED = "ORDER_CREATED"
EVENT_PAID = "ORDER_PAID"
EVENT_SHIPPED = "ORDER_SHIPPED"
EVENT_COMPLETED = "ORDER_COMPLETED"
EVENT_CANCELLED = "ORDER_CANCELLED"
EVENT_DISPUTE_OPENED = "DISPUTE_OPENED"
EVENT_DISPUTE_RESOLVED = "DISPUTE_RESOLVED"
EVENT_REFUND_COMPLETED = "REFUND_COMPLETED"
EVENT_REFUND_FAILED = "REFUND_FAILED"


async def record_order_event(
    db,
    *,
    order_id,
    event: str,
    actor_role: str,
    actor_id=None,
    metadata: dict | None = None,
):
    """
    Single source of truth for order timeline events.
    """
    await db.order_timeline.insert_one({
        "order_id": order_id,
        "event": event,
        "actor_role": actor_role,
        "actor_id": actor_id,
        "metadata": metadata or {},
        "created_at": datetime.utcnow(),
    })


async def get_order_timeline(db, order_id) -> list:
    return await db.order_timeline.find({"order_id": order_id}).sort("created_at", 1).to_list(None)
