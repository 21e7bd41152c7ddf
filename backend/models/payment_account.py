from pydantic import BaseModel, Field
from typing import Optional
from enum import Enum


class AccountVerification(str, Enum):
    PENDING = "pending"
    VERIFIED = "verified"
    REJECTED = "rejected"


class ProviderAccountStatus(str, Enum):
    PENDING = "pending"
    ENABLED = "enabled"
    DISABLED = "disabled"


class PaymentAccountCreate(BaseModel):
    provider: str
    account_reference: str = Field(..., min_length=3)
    account_holder_name: Optional[str] = None
    currency: str = Field("USD", min_length=3, max_length=3)


class PaymentAccountVerify(BaseModel):
    action: str  # verify | reject
    reason: Optional[str] = None
