import asyncio
import hashlib
import hmac
import json
from urllib import request, error

from fastapi import HTTPException

from config.constants import (
    PAYMENT_PROVIDERS,
    PROVIDER_ALIPAY,
    PROVIDER_BANK,
    PROVIDER_CARD,
    PROVIDER_PAYPAL,
    PROVIDER_WECHAT,
)
from config.env import (
    ALIPAY_GATEWAY_KEY,
    ALIPAY_GATEWAY_URL,
    BANK_GATEWAY_KEY,
    BANK_GATEWAY_URL,
    CARD_GATEWAY_KEY,
    CARD_GATEWAY_URL,
    PAYPAL_GATEWAY_KEY,
    PAYPAL_GATEWAY_URL,
    PROVIDER_TIMEOUT_SECONDS,
    PROVIDER_WEBHOOK_SECRET,
    WECHAT_GATEWAY_KEY,
    WECHAT_GATEWAY_URL,
)


class ProviderError(Exception):
    """A payment network call failed or returned no usable reference."""

    def __init__(self, provider: str, detail: str):
        super().__init__(f"{provider}: {detail}")
        self.provider = provider
        self.detail = detail


def require_provider(value: str | None) -> str:
    provider = (value or "").strip().lower()
    if provider not in PAYMENT_PROVIDERS:
        raise HTTPException(status_code=400, detail="Unsupported payment provider")
    return provider


class ProviderGateway:
    """
    Opaque payment-provider surface: charge, refund, transfer.
    Each call returns {"reference": str, "status": str} or raises ProviderError.
    """

    async def charge(self, provider, *, amount, currency, payment_token, idempotency_key) -> dict:
        raise NotImplementedError

    async def refund(self, provider, *, original_reference, amount, currency, idempotency_key) -> dict:
        raise NotImplementedError

    async def transfer(self, provider, *, account_reference, amount, currency, idempotency_key) -> dict:
        raise NotImplementedError


def _gateway_config() -> dict:
    return {
        PROVIDER_CARD: (CARD_GATEWAY_URL, CARD_GATEWAY_KEY),
        PROVIDER_PAYPAL: (PAYPAL_GATEWAY_URL, PAYPAL_GATEWAY_KEY),
        PROVIDER_ALIPAY: (ALIPAY_GATEWAY_URL, ALIPAY_GATEWAY_KEY),
        PROVIDER_WECHAT: (WECHAT_GATEWAY_URL, WECHAT_GATEWAY_KEY),
        PROVIDER_BANK: (BANK_GATEWAY_URL, BANK_GATEWAY_KEY),
    }


def _post(provider: str, path: str, payload: dict, idempotency_key: str) -> dict:
    base_url, api_key = _gateway_config().get(provider, (None, None))
    if not base_url or not api_key:
        raise ProviderError(provider, "gateway is not configured")

    req = request.Request(
        url=f"{base_url.rstrip('/')}/{path}",
        data=json.dumps(payload).encode("utf-8"),
        headers={
            "Content-Type": "application/json",
            "Authorization": f"Bearer {api_key}",
            "Idempotency-Key": idempotency_key,
        },
        method="POST",
    )
    try:
        with request.urlopen(req, timeout=PROVIDER_TIMEOUT_SECONDS) as resp:
            body = json.loads(resp.read().decode("utf-8"))
    except error.HTTPError as e:
        details = e.read().decode("utf-8", errors="ignore")
        raise ProviderError(provider, f"HTTP {e.code}: {details[:200]}")
    except Exception as e:
        raise ProviderError(provider, f"request failed: {e}")

    reference = body.get("id") or body.get("reference")
    status = (body.get("status") or "").lower()
    if not reference or status in {"failed", "declined", "rejected"}:
        raise ProviderError(provider, f"rejected with status {status or 'unknown'}")

    return {"reference": str(reference), "status": status, "raw": body}


class HttpProviderGateway(ProviderGateway):
    """JSON-over-HTTP gateway; blocking urllib calls run off the event loop."""

    async def charge(self, provider, *, amount, currency, payment_token, idempotency_key) -> dict:
        return await asyncio.to_thread(
            _post,
            provider,
            "charges",
            {"amount": amount, "currency": currency, "source": payment_token},
            idempotency_key,
        )

    async def refund(self, provider, *, original_reference, amount, currency, idempotency_key) -> dict:
        return await asyncio.to_thread(
            _post,
            provider,
            "refunds",
            {"charge": original_reference, "amount": amount, "currency": currency},
            idempotency_key,
        )

    async def transfer(self, provider, *, account_reference, amount, currency, idempotency_key) -> dict:
        return await asyncio.to_thread(
            _post,
            provider,
            "transfers",
            {"destination": account_reference, "amount": amount, "currency": currency},
            idempotency_key,
        )


_gateway = HttpProviderGateway()


def get_provider_gateway() -> ProviderGateway:
    return _gateway


def verify_webhook_signature(*, raw_body: bytes, received_signature: str) -> bool:
    if not PROVIDER_WEBHOOK_SECRET:
        raise HTTPException(status_code=500, detail="Provider webhook secret is not configured")
    expected = hmac.new(PROVIDER_WEBHOOK_SECRET.encode("utf-8"), raw_body, hashlib.sha256).hexdigest()
    return hmac.compare_digest(expected, received_signature or "")
