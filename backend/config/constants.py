# backend/config/constants.py

# -----------------------------
# DEPOSIT TIER LADDER
# -----------------------------
# Breakpoints in BASE_CURRENCY major units, ascending.
DEPOSIT_TIER_LADDER = (10, 20, 50, 100, 300)

# -----------------------------
# ORDER STATES
# -----------------------------

ORDER_PENDING_PAYMENT = "pending_payment"
ORDER_PAID = "paid"
ORDER_SHIPPED = "shipped"
ORDER_COMPLETED = "completed"
ORDER_CANCELLED = "cancelled"
ORDER_REFUNDED = "refunded"

# Orders that still count against collateral
UNFULFILLED_ORDER_STATUSES = (ORDER_PENDING_PAYMENT, ORDER_PAID, ORDER_SHIPPED)

PLATFORM_FEE_PERCENT = 5

# -----------------------------
# PAYMENT PROVIDERS
# -----------------------------

PROVIDER_CARD = "card"
PROVIDER_PAYPAL = "paypal"
PROVIDER_ALIPAY = "alipay"
PROVIDER_WECHAT = "wechat"
PROVIDER_BANK = "bank"

PAYMENT_PROVIDERS = (
    PROVIDER_CARD,
    PROVIDER_PAYPAL,
    PROVIDER_ALIPAY,
    PROVIDER_WECHAT,
    PROVIDER_BANK,
)

# Fee withheld when a deposit is refunded through the funding provider:
# (percent, flat minor units)
DEPOSIT_REFUND_FEES = {
    PROVIDER_CARD: (2.9, 30),
}

# -----------------------------
# NOTIFICATIONS
# -----------------------------

NOTIFICATION_MAX_ATTEMPTS = 5
NOTIFICATION_BACKOFF_BASE_SECONDS = 15
NOTIFICATION_BACKOFF_MAX_SECONDS = 3600
