"""Payment gateway webhook endpoint."""

from __future__ import annotations

import json
import logging

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse
from pydantic import ValidationError as PydanticValidationError
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from config import settings
from database import get_db
from services.crypto import verify_webhook_signature
from services.webhook_reconciler import WebhookEnvelope, dedup_key_for, receive_event

router = APIRouter()
logger = logging.getLogger(__name__)

OUTCOME_MESSAGES = {
    "processed": "Processed",
    "already_processed": "Already processed",
    "failed": "Logged; processing failed and will be retried",
}


@router.post("/gateway")
async def gateway_webhook(request: Request, db: AsyncSession = Depends(get_db)):
    raw_body = await request.body()
    if len(raw_body) > settings.WEBHOOK_MAX_PAYLOAD_BYTES:
        logger.warning("webhook payload too large size=%s max=%s", len(raw_body), settings.WEBHOOK_MAX_PAYLOAD_BYTES)
        return JSONResponse(status_code=413, content={"error": "Payload too large"})

    signature = request.headers.get(settings.WEBHOOK_SIGNATURE_HEADER)
    if not signature:
        logger.warning("webhook signature header missing")
        return JSONResponse(status_code=401, content={"error": "Missing signature"})
    if not verify_webhook_signature(raw_body, signature):
        logger.warning("webhook signature verification failed")
        return JSONResponse(status_code=401, content={"error": "Invalid signature"})

    try:
        payload = json.loads(raw_body)
        envelope = WebhookEnvelope.model_validate(payload)
    except (ValueError, PydanticValidationError) as exc:
        logger.warning("webhook payload rejected: %s", exc.__class__.__name__)
        return JSONResponse(status_code=400, content={"error": "Malformed payload"})

    dedup_key = dedup_key_for(raw_body, request.headers)
    try:
        outcome = await receive_event(db, dedup_key, envelope, payload)
    except SQLAlchemyError:
        logger.exception("webhook log write failed dedup_key=%s", dedup_key)
        return JSONResponse(status_code=500, content={"error": "Webhook could not be recorded"})

    return {
        "success": outcome.status != "failed",
        "message": OUTCOME_MESSAGES.get(outcome.status, outcome.status),
        "event_id": outcome.event_id,
    }


@router.get("/gateway")
async def gateway_webhook_status():
    return {
        "status": "ok",
        "endpoint": "/webhooks/gateway",
        "signature_header": settings.WEBHOOK_SIGNATURE_HEADER,
    }
