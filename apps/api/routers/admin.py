"""Operator endpoints for reconciliation follow-up."""

from __future__ import annotations

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from database import get_db
from routers.cron import require_cron_secret
from services.refunds import list_manual_review
from services.webhook_reconciler import reprocess_event

router = APIRouter()


@router.post("/webhooks/{event_id}/reprocess")
async def reprocess_webhook(
    event_id: str,
    _auth: None = Depends(require_cron_secret),
    db: AsyncSession = Depends(get_db),
):
    outcome = await reprocess_event(db, event_id)
    return {"event_id": outcome.event_id, "status": outcome.status, "detail": outcome.detail}


@router.get("/refunds/manual-review")
async def manual_review(
    limit: int = Query(default=100, ge=1, le=500),
    _auth: None = Depends(require_cron_secret),
    db: AsyncSession = Depends(get_db),
):
    items = await list_manual_review(db, limit=limit)
    return {"items": items, "count": len(items)}
