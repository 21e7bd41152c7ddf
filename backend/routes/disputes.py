from fastapi import APIRouter, Depends, HTTPException

from database import get_db
from models.dispute import DisputeCreate, DisputeResponse
from utils.disputes import open_dispute, respond
from utils.guards import parse_object_id
from utils.mongo import serialize_doc
from utils.security import require_roles

router = APIRouter(
    prefix="/api/orders",
    tags=["Disputes"]
)


async def _order_for_party(db, order_id: str, user: dict) -> dict:
    order = await db.orders.find_one({"_id": parse_object_id(order_id, "order_id")})
    if not order or user["_id"] not in (order["buyer_id"], order["seller_id"]):
        raise HTTPException(404, "Order not found")
    return order


def _public_dispute(dispute: dict, user: dict) -> dict:
    """Buyers see dispute and refund progress, never the seller-side debt trail."""
    data = serialize_doc(dispute)
    if user.get("role") == "buyer":
        data.pop("seller_id", None)
    return data


@router.post("/{order_id}/dispute")
async def create_dispute(
    order_id: str,
    payload: DisputeCreate,
    user=Depends(require_roles("buyer", "seller")),
    db=Depends(get_db),
):
    order = await _order_for_party(db, order_id, user)
    dispute = await open_dispute(
        db, order, user,
        dispute_type=payload.dispute_type,
        reason=payload.reason,
        evidence=payload.evidence,
    )
    return {"message": "Dispute opened", "dispute": _public_dispute(dispute, user)}


@router.get("/{order_id}/dispute")
async def get_dispute(
    order_id: str,
    user=Depends(require_roles("buyer", "seller")),
    db=Depends(get_db),
):
    order = await _order_for_party(db, order_id, user)
    dispute = await db.order_disputes.find_one(
        {"order_id": order["_id"]},
        sort=[("created_at", -1)],
    )
    if not dispute:
        raise HTTPException(404, "No dispute for this order")

    refund = None
    if dispute.get("refund_id"):
        refund = await db.order_refunds.find_one(
            {"_id": dispute["refund_id"]},
            {"status": 1, "amount": 1, "currency": 1, "completed_at": 1, "created_at": 1},
        )

    return {
        "dispute": _public_dispute(dispute, user),
        "refund": serialize_doc(refund) if refund else None,
    }


@router.post("/{order_id}/dispute/respond")
async def respond_to_dispute(
    order_id: str,
    payload: DisputeResponse,
    user=Depends(require_roles("buyer", "seller")),
    db=Depends(get_db),
):
    order = await _order_for_party(db, order_id, user)
    dispute = await db.order_disputes.find_one(
        {"order_id": order["_id"], "is_open": True},
    )
    if not dispute:
        raise HTTPException(404, "No open dispute for this order")

    updated = await respond(db, dispute, order, user, message=payload.message, evidence=payload.evidence)
    return {"message": "Response recorded", "dispute": _public_dispute(updated, user)}
