from decimal import Decimal, ROUND_HALF_UP

from fastapi import Depends, HTTPException

from config.env import BASE_CURRENCY
from database import get_db


class ExchangeRateUnavailable(Exception):
    """Raised when two currencies cannot be compared. Callers must not guess."""


def normalize_currency(code: str | None) -> str:
    value = (code or "").strip().upper()
    if len(value) != 3 or not value.isalpha():
        raise HTTPException(status_code=400, detail="Invalid currency code")
    return value


def to_minor_units(amount: float) -> int:
    return int((Decimal(str(amount)) * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def to_major_units(amount_minor: int) -> float:
    return float(Decimal(int(amount_minor or 0)) / 100)


class ExchangeRateLookup:
    """
    Currency conversion over integer minor units.
    Subclasses only provide how many units of `currency` one base unit buys.
    """

    base_currency = BASE_CURRENCY

    async def units_per_base(self, currency: str) -> Decimal:
        raise NotImplementedError

    async def rate(self, from_currency: str, to_currency: str) -> Decimal:
        if from_currency == to_currency:
            return Decimal(1)
        source = await self.units_per_base(from_currency)
        target = await self.units_per_base(to_currency)
        return target / source

    async def convert(self, amount_minor: int, from_currency: str, to_currency: str) -> int:
        if from_currency == to_currency:
            return int(amount_minor)
        rate = await self.rate(from_currency, to_currency)
        return int((Decimal(int(amount_minor)) * rate).quantize(Decimal("1"), rounding=ROUND_HALF_UP))

    async def to_base(self, amount_minor: int, currency: str) -> int:
        return await self.convert(amount_minor, currency, self.base_currency)


class MongoExchangeRates(ExchangeRateLookup):
    """Reads rates published into `exchange_rates` ({currency, rate, updated_at})."""

    def __init__(self, db, base_currency: str = BASE_CURRENCY):
        self.db = db
        self.base_currency = base_currency

    async def units_per_base(self, currency: str) -> Decimal:
        if currency == self.base_currency:
            return Decimal(1)

        row = await self.db.exchange_rates.find_one({"currency": currency})
        if not row or row.get("rate") in (None, ""):
            raise ExchangeRateUnavailable(f"No exchange rate for {currency}")

        value = Decimal(str(row["rate"]))
        if value <= 0:
            raise ExchangeRateUnavailable(f"Invalid exchange rate for {currency}")
        return value


class StaticExchangeRates(ExchangeRateLookup):
    def __init__(self, rates: dict | None = None, base_currency: str = BASE_CURRENCY):
        self.rates = {k.upper(): Decimal(str(v)) for k, v in (rates or {}).items()}
        self.base_currency = base_currency

    async def units_per_base(self, currency: str) -> Decimal:
        if currency == self.base_currency:
            return Decimal(1)
        if currency not in self.rates:
            raise ExchangeRateUnavailable(f"No exchange rate for {currency}")
        return self.rates[currency]


def get_rate_lookup(db=Depends(get_db)) -> ExchangeRateLookup:
    return MongoExchangeRates(db)
