import os
from dotenv import load_dotenv

load_dotenv()

# =====================================================
# ENV
# =====================================================
ENV = os.getenv("ENV", "development")

# =====================================================
# DATABASE
# =====================================================
MONGO_URI = os.getenv("MONGO_URI") or os.getenv("MONGODB_URI")

# =====================================================
# JWT
# =====================================================
JWT_SECRET = os.getenv("JWT_SECRET")
JWT_ALGORITHM = os.getenv("JWT_ALGORITHM", "HS256")
ACCESS_TOKEN_DAYS = int(os.getenv("ACCESS_TOKEN_DAYS", 30))

# =====================================================
# SECRETS
# =====================================================
CRON_SECRET = os.getenv("CRON_SECRET")
PROVIDER_WEBHOOK_SECRET = os.getenv("PROVIDER_WEBHOOK_SECRET")

# =====================================================
# PAYMENT PROVIDERS
# =====================================================
CARD_GATEWAY_URL = os.getenv("CARD_GATEWAY_URL")
CARD_GATEWAY_KEY = os.getenv("CARD_GATEWAY_KEY")
PAYPAL_GATEWAY_URL = os.getenv("PAYPAL_GATEWAY_URL")
PAYPAL_GATEWAY_KEY = os.getenv("PAYPAL_GATEWAY_KEY")
ALIPAY_GATEWAY_URL = os.getenv("ALIPAY_GATEWAY_URL")
ALIPAY_GATEWAY_KEY = os.getenv("ALIPAY_GATEWAY_KEY")
WECHAT_GATEWAY_URL = os.getenv("WECHAT_GATEWAY_URL")
WECHAT_GATEWAY_KEY = os.getenv("WECHAT_GATEWAY_KEY")
BANK_GATEWAY_URL = os.getenv("BANK_GATEWAY_URL")
BANK_GATEWAY_KEY = os.getenv("BANK_GATEWAY_KEY")
PROVIDER_TIMEOUT_SECONDS = int(os.getenv("PROVIDER_TIMEOUT_SECONDS", 20))
REFUND_PROCESSING_TIMEOUT_SECONDS = int(os.getenv("REFUND_PROCESSING_TIMEOUT_SECONDS", 900))

# =====================================================
# LEDGER
# =====================================================
BASE_CURRENCY = os.getenv("BASE_CURRENCY", "USD").upper()
SELLER_LOCK_LEASE_SECONDS = int(os.getenv("SELLER_LOCK_LEASE_SECONDS", 30))
SELLER_LOCK_WAIT_SECONDS = float(os.getenv("SELLER_LOCK_WAIT_SECONDS", 10))
DEPOSIT_HOLD_DAYS = int(os.getenv("DEPOSIT_HOLD_DAYS", 90))
COMMISSION_PAYMENT_DAYS = int(os.getenv("COMMISSION_PAYMENT_DAYS", 7))
DEBT_OVERDUE_DAYS = int(os.getenv("DEBT_OVERDUE_DAYS", 30))

# =====================================================
# CORS
# =====================================================
CORS_ALLOWED_ORIGINS = os.getenv("CORS_ALLOWED_ORIGINS", "").split(",")

# --------------------------------------------------
# DATA ENCRYPTION
# --------------------------------------------------
BANK_DATA_ENCRYPTION_KEY = os.getenv("BANK_DATA_ENCRYPTION_KEY")


def validate_production_env() -> None:
    if (ENV or "").lower() != "production":
        return

    required = {
        "JWT_SECRET": JWT_SECRET,
        "CRON_SECRET": CRON_SECRET,
        "PROVIDER_WEBHOOK_SECRET": PROVIDER_WEBHOOK_SECRET,
        "CARD_GATEWAY_URL": CARD_GATEWAY_URL,
        "CARD_GATEWAY_KEY": CARD_GATEWAY_KEY,
        "BANK_DATA_ENCRYPTION_KEY": BANK_DATA_ENCRYPTION_KEY,
        "MONGODB_URI": MONGO_URI,
    }

    invalid = []
    for key, value in required.items():
        val = (value or "").strip()
        if not val or val.startswith("CHANGE_THIS"):
            invalid.append(key)

    if invalid:
        raise RuntimeError(f"Production env misconfigured. Invalid keys: {', '.join(sorted(invalid))}")
