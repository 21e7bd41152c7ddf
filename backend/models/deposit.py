from pydantic import BaseModel, Field
from enum import Enum


class DepositLotStatus(str, Enum):
    HELD = "held"
    REFUNDABLE = "refundable"
    REFUNDING = "refunding"
    REFUNDED = "refunded"
    FORFEITED = "forfeited"


# Forward-only status chain. Anything not listed is rejected.
DEPOSIT_LOT_TRANSITIONS = {
    DepositLotStatus.HELD: {DepositLotStatus.REFUNDABLE, DepositLotStatus.FORFEITED},
    DepositLotStatus.REFUNDABLE: {DepositLotStatus.REFUNDING},
    DepositLotStatus.REFUNDING: {DepositLotStatus.REFUNDED},
}

# Lots whose remaining balance still secures exposure and can be drained
COLLATERAL_STATUSES = (DepositLotStatus.HELD.value, DepositLotStatus.REFUNDABLE.value)


def can_transition(current: str, target: str) -> bool:
    try:
        current_status = DepositLotStatus(current)
        target_status = DepositLotStatus(target)
    except ValueError:
        return False
    return target_status in DEPOSIT_LOT_TRANSITIONS.get(current_status, set())


class DepositPayRequest(BaseModel):
    amount: float = Field(..., gt=0)
    currency: str = Field("USD", min_length=3, max_length=3)
    payment_provider: str
    payment_token: str
    idempotency_key: str
