from enum import Enum


class PayoutEligibility(str, Enum):
    ELIGIBLE = "eligible"
    BLOCKED = "blocked"
    PENDING_REVIEW = "pending_review"


class UserRole(str, Enum):
    BUYER = "buyer"
    SELLER = "seller"
    AFFILIATE = "affiliate"
    ADMIN = "admin"


class SubscriptionStatus(str, Enum):
    ACTIVE = "active"
    EXPIRED = "expired"
    CANCELLED = "cancelled"
