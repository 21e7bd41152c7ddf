from pydantic import BaseModel, Field
from typing import List, Optional


class OrderItemIn(BaseModel):
    product_id: str
    quantity: int = Field(..., gt=0)


class OrderCreate(BaseModel):
    items: List[OrderItemIn] = Field(..., min_length=1)
    payment_provider: str
    affiliate_id: Optional[str] = None
    idempotency_key: str


class OrderPay(BaseModel):
    payment_token: str


class PayoutCreate(BaseModel):
    amount: float = Field(..., gt=0)
    currency: str = Field("USD", min_length=3, max_length=3)
    idempotency_key: str
