"""Scheduled job endpoints guarded by the cron bearer secret."""

from __future__ import annotations

import hmac
import logging
import time

from fastapi import APIRouter, Depends, Header, HTTPException
from sqlalchemy.ext.asyncio import AsyncSession

from config import settings
from database import get_db
from services.credits import expire_credits
from services.refund_retry import run_refund_retries
from services.subscriptions import renew_due_subscriptions

router = APIRouter()
logger = logging.getLogger(__name__)


async def require_cron_secret(authorization: str = Header(default="")) -> None:
    secret = (settings.CRON_SECRET or "").strip()
    if not secret:
        logger.error("CRON_SECRET is not configured; refusing scheduled job call")
        raise HTTPException(status_code=500, detail="Cron secret is not configured.")
    if not hmac.compare_digest(authorization.encode(), f"Bearer {secret}".encode()):
        raise HTTPException(status_code=401, detail="Unauthorized")


@router.api_route("/retry-refunds", methods=["GET", "POST"])
async def retry_refunds(
    _auth: None = Depends(require_cron_secret),
    db: AsyncSession = Depends(get_db),
):
    started = time.monotonic()
    result = await run_refund_retries(db)
    return {**result.to_dict(), "execution_time_ms": int((time.monotonic() - started) * 1000)}


@router.api_route("/expire-credits", methods=["GET", "POST"])
async def expire_credits_job(
    _auth: None = Depends(require_cron_secret),
    db: AsyncSession = Depends(get_db),
):
    started = time.monotonic()
    result = await expire_credits(db)
    return {**result, "execution_time_ms": int((time.monotonic() - started) * 1000)}


@router.api_route("/renew-subscriptions", methods=["GET", "POST"])
async def renew_subscriptions_job(
    _auth: None = Depends(require_cron_secret),
    db: AsyncSession = Depends(get_db),
):
    started = time.monotonic()
    result = await renew_due_subscriptions(db)
    return {**result.to_dict(), "execution_time_ms": int((time.monotonic() - started) * 1000)}
