import base64
import hashlib

from cryptography.fernet import Fernet, InvalidToken
from fastapi import HTTPException

from config.env import BANK_DATA_ENCRYPTION_KEY, JWT_SECRET


def _account_fernet() -> Fernet:
    seed = (BANK_DATA_ENCRYPTION_KEY or JWT_SECRET or "").strip()
    if not seed:
        raise HTTPException(status_code=500, detail="Bank data encryption key is not configured")
    return Fernet(base64.urlsafe_b64encode(hashlib.sha256(seed.encode("utf-8")).digest()))


def normalize_account_reference(reference: str) -> str:
    return "".join((reference or "").split()).upper()


def seal_account_reference(reference: str) -> dict:
    """
    Fields to store for a payout account reference. Only the last four
    characters are kept in clear for display.
    """
    normalized = normalize_account_reference(reference)
    if len(normalized) < 4:
        raise HTTPException(status_code=400, detail="Account reference is too short")

    token = _account_fernet().encrypt(normalized.encode("utf-8")).decode("utf-8")
    return {
        "account_reference_encrypted": token,
        "account_reference_last4": normalized[-4:],
    }


def open_account_reference(account: dict) -> str:
    """Clear reference for a provider transfer. Never returned to clients."""
    token = account.get("account_reference_encrypted")
    if not token:
        raise HTTPException(status_code=409, detail="Payment account has no stored reference")
    try:
        return _account_fernet().decrypt(token.encode("utf-8")).decode("utf-8")
    except InvalidToken:
        raise HTTPException(status_code=500, detail="Stored account reference cannot be decrypted")
