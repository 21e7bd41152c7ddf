from pydantic import BaseModel, Field
from typing import List, Optional
from enum import Enum


class DisputeStatus(str, Enum):
    PENDING = "pending"
    REVIEWING = "reviewing"
    RESOLVED = "resolved"


OPEN_DISPUTE_STATUSES = (DisputeStatus.PENDING.value, DisputeStatus.REVIEWING.value)


class RefundStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class DisputeCreate(BaseModel):
    dispute_type: str = Field(..., min_length=1)
    reason: str = Field(..., min_length=1)
    evidence: List[str] = []


class DisputeResponse(BaseModel):
    message: str = Field(..., min_length=1)
    evidence: List[str] = []


class DisputeResolve(BaseModel):
    resolution: str = Field(..., min_length=1)
    refund_amount: Optional[float] = Field(None, ge=0)


class AdminRefundRequest(BaseModel):
    amount: float = Field(..., gt=0)
    reason: str = Field(..., min_length=1)
