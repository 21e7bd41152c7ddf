from pydantic import BaseModel, Field
from typing import Optional
from enum import Enum


class DebtCause(str, Enum):
    DISPUTE_REFUND_SHORTFALL = "dispute_refund_shortfall"
    OVERDUE_COMMISSION = "overdue_commission"
    VIOLATION_PENALTY = "violation_penalty"


class DebtStatus(str, Enum):
    PENDING = "pending"
    COLLECTED = "collected"
    PAID = "paid"


class ViolationPenaltyRequest(BaseModel):
    seller_id: str
    amount: float = Field(..., gt=0)
    currency: str = Field("USD", min_length=3, max_length=3)
    violation_type: str
    violation_reason: str
    related_order_id: Optional[str] = None
    related_dispute_id: Optional[str] = None


class DebtPaymentRecord(BaseModel):
    reference: str
    note: Optional[str] = None
