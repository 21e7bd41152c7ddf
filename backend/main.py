from dotenv import load_dotenv
load_dotenv()

import logging
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from database import get_db

# ENV
from config.env import ENV, CORS_ALLOWED_ORIGINS, validate_production_env

# ROUTES
from routes.orders import router as orders_router
from routes.disputes import router as disputes_router
from routes.deposits import router as deposits_router
from routes.payment_accounts import router as payment_accounts_router
from routes.seller import router as seller_router
from routes.admin import router as admin_router
from routes.cron import router as cron_router
from routes.webhooks import router as webhook_router

from utils.indexes import ensure_indexes
from utils.ledger_store import LedgerConsistencyError
from utils.money import ExchangeRateUnavailable
from utils.payment_providers import ProviderError

logger = logging.getLogger(__name__)

print("ENV:", ENV)

app = FastAPI(
    title="Seller Ledger API",
    version="1.0.0",
    docs_url=None if ENV == "production" else "/docs",
    redoc_url=None if ENV == "production" else "/redoc",
    openapi_url=None if ENV == "production" else "/openapi.json",
)

# -----------------------------
# CORS
# -----------------------------

allowed_origins = [origin.strip() for origin in CORS_ALLOWED_ORIGINS if origin.strip()]
if not allowed_origins:
    allowed_origins = [
        "http://localhost:3000",
        "http://localhost:5173",
        "http://127.0.0.1:5173",
    ]

app.add_middleware(
    CORSMiddleware,
    allow_origins=allowed_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# -----------------------------
# ROUTES
# -----------------------------

app.include_router(orders_router)
app.include_router(disputes_router)
app.include_router(deposits_router)
app.include_router(payment_accounts_router)
app.include_router(seller_router)
app.include_router(admin_router)
app.include_router(cron_router)
app.include_router(webhook_router)

# -----------------------------
# ERRORS
# -----------------------------

@app.exception_handler(ProviderError)
async def provider_error_handler(request: Request, exc: ProviderError):
    logger.warning("Provider %s failed on %s: %s", exc.provider, request.url.path, exc.detail)
    return JSONResponse(
        status_code=502,
        content={"detail": f"Payment provider error: {exc.detail}", "provider": exc.provider},
    )


@app.exception_handler(ExchangeRateUnavailable)
async def exchange_rate_error_handler(request: Request, exc: ExchangeRateUnavailable):
    return JSONResponse(status_code=503, content={"detail": str(exc) or "Exchange rate unavailable"})


@app.exception_handler(LedgerConsistencyError)
async def ledger_error_handler(request: Request, exc: LedgerConsistencyError):
    logger.error("Ledger consistency error on %s: %s", request.url.path, exc)
    return JSONResponse(status_code=500, content={"detail": "Ledger write could not be confirmed"})

# -----------------------------
# HEALTH CHECKS
# -----------------------------

@app.get("/api/health")
async def health():

    return {"status": "ok"}

@app.get("/api/health/db")
async def health_db():
    db = get_db()
    await db.command("ping")
    return {"status": "mongodb connected"}

# -----------------------------
# STARTUP
# -----------------------------

@app.on_event("startup")
async def startup():
    validate_production_env()
    await ensure_indexes(get_db())
