"""
Billing & Entitlement API - FastAPI Backend
Main application entry point with health check and API routing.
"""

import asyncio
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from config import settings, validate_security_settings
from database import Base, async_session_maker, engine
import models  # noqa: F401
from routers import admin, billing, cron, health, subscription, webhooks
from services.errors import (
    BillingError,
    InsufficientBalanceError,
    NotFoundError,
    PolicyError,
    RefundNotAllowedError,
    ValidationError,
)
from services.gateway import GatewayError
from services.rate_limiter import build_rate_limiter
from services.refund_retry import run_refund_retries

logging.basicConfig(level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO))
logger = logging.getLogger(__name__)


async def _periodic_refund_retries() -> None:
    interval_minutes = max(int(settings.REFUND_RETRY_INTERVAL_MINUTES), 0)
    if interval_minutes <= 0:
        return
    while True:
        await asyncio.sleep(interval_minutes * 60)
        try:
            async with async_session_maker() as db:
                result = await run_refund_retries(db)
            if result.processed or result.max_retries_reached:
                print(
                    f"💸 Refund retry tick: processed={result.processed} "
                    f"succeeded={result.succeeded} failed={result.failed} "
                    f"manual_review={result.max_retries_reached}"
                )
        except Exception as exc:
            print(f"⚠️ Refund retry tick failed: {exc}")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler for startup/shutdown."""
    # Startup
    print("🚀 Starting Billing & Entitlement API...")
    validate_security_settings()
    if settings.AUTO_CREATE_DB_SCHEMA:
        try:
            async with engine.begin() as conn:
                await conn.run_sync(Base.metadata.create_all)
            print("🗄️ Database schema verified.")
        except Exception as e:
            print(f"⚠️ Database bootstrap skipped: {e}")
    refund_retry_task = None
    if int(settings.REFUND_RETRY_INTERVAL_MINUTES) > 0:
        refund_retry_task = asyncio.create_task(_periodic_refund_retries())
        print(
            "📅 Refund retry loop enabled "
            f"(every {int(settings.REFUND_RETRY_INTERVAL_MINUTES)} min)."
        )
    yield
    # Shutdown
    if refund_retry_task is not None:
        refund_retry_task.cancel()
        try:
            await refund_retry_task
        except asyncio.CancelledError:
            pass
    await app.state.rate_limiter.close()
    print("👋 Shutting down API...")


app = FastAPI(
    title="Billing & Entitlement API",
    description="Subscriptions, credits, refunds and payment gateway reconciliation",
    version="0.1.0",
    lifespan=lifespan,
)

app.state.rate_limiter = build_rate_limiter(settings.REDIS_URL)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def _billing_error_status(exc: BillingError) -> int:
    if isinstance(exc, ValidationError):
        return 422
    if isinstance(exc, InsufficientBalanceError):
        return 402
    if isinstance(exc, NotFoundError):
        return 404
    if isinstance(exc, PolicyError):
        return 409
    return 400


@app.exception_handler(BillingError)
async def billing_error_handler(request: Request, exc: BillingError):
    content = {"detail": exc.message, "code": exc.code}
    if isinstance(exc, RefundNotAllowedError):
        content["restrictions"] = exc.restrictions
    return JSONResponse(status_code=_billing_error_status(exc), content=content)


@app.exception_handler(GatewayError)
async def gateway_error_handler(request: Request, exc: GatewayError):
    logger.warning("gateway error surfaced path=%s code=%s retryable=%s", request.url.path, exc.code, exc.retryable)
    return JSONResponse(
        status_code=503 if exc.retryable else 402,
        content={"detail": exc.user_message, "code": exc.code, "retryable": exc.retryable},
    )


# Include routers
app.include_router(health.router, tags=["Health"])
app.include_router(billing.router, prefix="/billing", tags=["Billing"])
app.include_router(subscription.router, prefix="/subscriptions", tags=["Subscriptions"])
app.include_router(webhooks.router, prefix="/webhooks", tags=["Webhooks"])
app.include_router(cron.router, prefix="/cron", tags=["Cron"])
app.include_router(admin.router, prefix="/admin", tags=["Admin"])


@app.get("/")
async def root():
    """Root endpoint."""
    return {
        "name": "Billing & Entitlement API",
        "version": "0.1.0",
        "status": "running"
    }
