import os

os.environ.setdefault("MONGODB_URI", "mongodb://localhost:27017/seller_ledger_test")
os.environ.setdefault("JWT_SECRET", "test-jwt-secret")
os.environ.setdefault("CRON_SECRET", "test-cron-secret")
os.environ.setdefault("PROVIDER_WEBHOOK_SECRET", "test-webhook-secret")
os.environ.setdefault("BASE_CURRENCY", "USD")

import itertools
from datetime import datetime, timedelta

import httpx
import mongomock
import pytest
import pytest_asyncio
from bson import ObjectId

from utils.crypto import seal_account_reference
from utils.jwt import create_access_token
from utils.money import StaticExchangeRates
from utils.payment_providers import ProviderError
from utils.wallet_service import ENTRY_SALE_CREDIT, add_ledger_entry


# =====================================================
# In-memory Mongo with the motor call shape
# =====================================================

class AsyncMockCursor:
    def __init__(self, cursor):
        self._cursor = cursor

    def sort(self, *args, **kwargs):
        self._cursor = self._cursor.sort(*args, **kwargs)
        return self

    def limit(self, count):
        self._cursor = self._cursor.limit(count)
        return self

    def __aiter__(self):
        return self

    async def __anext__(self):
        try:
            return next(self._cursor)
        except StopIteration:
            raise StopAsyncIteration

    async def to_list(self, length=None):
        docs = list(self._cursor)
        return docs[:length] if length else docs


class AsyncMockCollection:
    def __init__(self, collection):
        self._collection = collection

    def find(self, *args, **kwargs):
        return AsyncMockCursor(self._collection.find(*args, **kwargs))

    def aggregate(self, pipeline, **kwargs):
        return AsyncMockCursor(iter(self._collection.aggregate(pipeline, **kwargs)))

    def __getattr__(self, name):
        if name.startswith("_"):
            raise AttributeError(name)
        method = getattr(self._collection, name)

        async def call(*args, **kwargs):
            return method(*args, **kwargs)

        return call


class AsyncMockDatabase:
    def __init__(self, database):
        self._database = database

    def __getattr__(self, name):
        if name.startswith("_"):
            raise AttributeError(name)
        return AsyncMockCollection(self._database[name])

    async def command(self, *args, **kwargs):
        return {"ok": 1}


# =====================================================
# Provider / notification doubles
# =====================================================

class FakeGateway:
    def __init__(self):
        self.calls = []
        self.failing = set()
        self._refs = itertools.count(1)

    async def _call(self, op, provider, **kwargs):
        self.calls.append({"op": op, "provider": provider, **kwargs})
        if op in self.failing:
            raise ProviderError(provider, f"{op} declined")
        return {"reference": f"{op}_{next(self._refs)}", "status": "succeeded", "raw": {}}

    async def charge(self, provider, **kwargs):
        return await self._call("charge", provider, **kwargs)

    async def refund(self, provider, **kwargs):
        return await self._call("refund", provider, **kwargs)

    async def transfer(self, provider, **kwargs):
        return await self._call("transfer", provider, **kwargs)

    def calls_for(self, op):
        return [c for c in self.calls if c["op"] == op]


class RecordingSink:
    def __init__(self):
        self.delivered = []
        self.fail = False

    async def deliver(self, message):
        if self.fail:
            raise RuntimeError("sink unavailable")
        self.delivered.append(message)


# =====================================================
# Fixtures
# =====================================================

@pytest.fixture
def db():
    return AsyncMockDatabase(mongomock.MongoClient()["seller_ledger_test"])


@pytest.fixture
def rates():
    # 1 USD buys 0.5 EUR
    return StaticExchangeRates({"EUR": "0.5"}, base_currency="USD")


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def sink():
    return RecordingSink()


@pytest.fixture
def make_user(db):
    async def _make(role: str, **fields):
        user = {"_id": ObjectId(), "role": role, "created_at": datetime.utcnow(), **fields}
        await db.users.insert_one(user)
        return user

    return _make


@pytest.fixture
def make_seller(db):
    """
    An eligible seller by default: active subscription plus a verified,
    provider-enabled default payout account.
    """
    async def _make(*, wallet: int = 0, currency: str = "USD", account: bool = True,
                    subscription: bool = True, **fields):
        now = datetime.utcnow()
        seller = {
            "_id": ObjectId(),
            "role": "seller",
            "name": "Test Seller",
            "payout_eligibility": "eligible",
            "eligibility_reasons": [],
            "created_at": now,
        }
        seller.update(fields)
        await db.users.insert_one(seller)

        if subscription:
            await db.subscriptions.insert_one({
                "user_id": seller["_id"],
                "subscription_type": "seller",
                "status": "active",
                "expires_at": now + timedelta(days=30),
                "created_at": now,
            })
        if account:
            await db.payment_accounts.insert_one({
                "seller_id": seller["_id"],
                "provider": "bank",
                **seal_account_reference("DE89370400440532013000"),
                "currency": currency,
                "is_default": True,
                "verification_status": "verified",
                "provider_status": "enabled",
                "created_at": now,
            })
        if wallet:
            await add_ledger_entry(db, seller["_id"], ENTRY_SALE_CREDIT, currency, credit=wallet)

        return await db.users.find_one({"_id": seller["_id"]})

    return _make


@pytest.fixture
def make_lot(db):
    async def _make(seller_id, amount: int, *, currency: str = "USD", status: str = "held",
                    deducted: int = 0, provider: str = "card", refundable_after=None, created_at=None):
        now = datetime.utcnow()
        lot = {
            "_id": ObjectId(),
            "seller_id": seller_id,
            "required_amount": amount,
            "deducted_amount": deducted,
            "currency": currency,
            "status": status,
            "payment_provider": provider,
            "provider_reference": f"ch_{ObjectId()}",
            "refundable_after": refundable_after or now + timedelta(days=90),
            "created_at": created_at or now,
            "updated_at": now,
        }
        await db.deposit_lots.insert_one(lot)
        return lot

    return _make


@pytest.fixture
def make_order(db):
    async def _make(seller_id, buyer_id, total: int, *, currency: str = "USD", status: str = "pending_payment",
                    payment_reference=None, affiliate_id=None, **fields):
        now = datetime.utcnow()
        order = {
            "_id": ObjectId(),
            "buyer_id": buyer_id,
            "seller_id": seller_id,
            "affiliate_id": affiliate_id,
            "items": [{
                "product_id": ObjectId(),
                "title": "Widget",
                "quantity": 1,
                "unit_price": total,
                "line_total": total,
                "commission_rate": None,
            }],
            "pricing": {"total_amount": total, "currency": currency},
            "payment_provider": "card",
            "payment_reference": payment_reference,
            "refunded_amount": 0,
            "status": status,
            "created_at": now,
            "updated_at": now,
        }
        order.update(fields)
        await db.orders.insert_one(order)
        return order

    return _make


@pytest.fixture
def make_debt(db):
    async def _make(seller_id, amount: int, *, currency: str = "USD", collected: int = 0,
                    cause: str = "violation_penalty", created_at=None):
        now = datetime.utcnow()
        debt = {
            "_id": ObjectId(),
            "seller_id": seller_id,
            "cause": cause,
            "order_id": None,
            "dispute_id": None,
            "refund_id": None,
            "commission_id": None,
            "violation_id": ObjectId(),
            "amount": amount,
            "currency": currency,
            "collected_amount": collected,
            "status": "pending",
            "reason": "test debt",
            "created_at": created_at or now,
            "updated_at": now,
        }
        await db.seller_debts.insert_one(debt)
        return debt

    return _make


@pytest.fixture
def auth_headers():
    def _headers(user: dict) -> dict:
        return {"Authorization": f"Bearer {create_access_token(user['_id'], user['role'])}"}

    return _headers


@pytest_asyncio.fixture
async def client(db, rates, gateway):
    from main import app
    from database import get_db
    from utils.money import get_rate_lookup
    from utils.payment_providers import get_provider_gateway

    app.dependency_overrides[get_db] = lambda: db
    app.dependency_overrides[get_rate_lookup] = lambda: rates
    app.dependency_overrides[get_provider_gateway] = lambda: gateway

    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as c:
        yield c

    app.dependency_overrides.clear()
