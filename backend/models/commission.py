from enum import Enum


class CommissionStatus(str, Enum):
    PENDING = "pending"
    SETTLED = "settled"
    OVERDUE = "overdue"
    RESOLVED = "resolved"


class CommissionResolution(str, Enum):
    DEPOSIT_DEDUCTION = "deposit_deduction"
    CONVERTED_TO_DEBT = "converted_to_debt"
    WRITTEN_OFF = "written_off"
