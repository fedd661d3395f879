"""Billing router: entitlement, credit purchases and refunds."""

from __future__ import annotations

import logging
from typing import Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from database import get_db
from routers.auth_scope import AuthContext, get_auth_context
from routers.rate_limit import rate_limit
from services import credits as ledger
from services.plans import CREDIT_PACKAGES, PLANS, get_yearly_discount
from services.purchases import confirm_credit_purchase, prepare_credit_purchase
from services.refunds import preview_refund, request_refund

router = APIRouter()
logger = logging.getLogger(__name__)


class ConsumeGenerationRequest(BaseModel):
    reason: str = Field(default="Content generation", max_length=200)


class RestoreGenerationRequest(BaseModel):
    used_credits: bool
    reason: str = Field(default="Generation failed; restoring entitlement", max_length=200)


class PrepareCreditPurchaseRequest(BaseModel):
    package_id: str = Field(min_length=1, max_length=40)


class ConfirmCreditPurchaseRequest(BaseModel):
    order_id: str = Field(min_length=1, max_length=64)
    payment_key: str = Field(min_length=1, max_length=200)
    amount: int = Field(gt=0)


class RefundRequestBody(BaseModel):
    payment_id: str = Field(min_length=1)
    reason: str = Field(default="Customer request", min_length=1, max_length=500)
    amount: Optional[int] = Field(default=None, gt=0)


@router.get("/catalog")
async def catalog():
    return {
        "plans": [
            {
                "id": plan.id,
                "name": plan.name,
                "monthly_price": plan.monthly_price,
                "yearly_price": plan.yearly_price,
                "yearly_discount_percent": get_yearly_discount(plan.id),
                "daily_generations": plan.daily_generations,
                "self_serve": plan.self_serve,
            }
            for plan in PLANS.values()
        ],
        "credit_packages": [
            {
                "id": package.id,
                "name": package.name,
                "credits": package.credits,
                "price": package.price,
                "price_per_credit": package.price_per_credit,
                "validity_days": package.validity_days,
            }
            for package in CREDIT_PACKAGES.values()
        ],
    }


@router.get("/entitlement")
async def entitlement(
    _rate_limit: None = Depends(rate_limit("get_entitlement", "GENERAL_READ")),
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    return await ledger.get_entitlement_summary(db, auth.account_id)


@router.post("/generations/consume")
async def consume_generation(
    request: ConsumeGenerationRequest,
    _rate_limit: None = Depends(rate_limit("ai_generate", "AI_GENERATE")),
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    grant = await ledger.consume_generation(db, auth.account_id, request.reason)
    return {
        "use_credits": grant.use_credits,
        "daily_remaining": grant.daily_remaining,
        "credit_balance": grant.credit_balance,
    }


@router.post("/generations/restore")
async def restore_generation(
    request: RestoreGenerationRequest,
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    remaining = await ledger.restore_generation(db, auth.account_id, request.used_credits, request.reason)
    key = "credit_balance" if request.used_credits else "daily_remaining"
    return {"restored": True, key: remaining}


@router.get("/credits/history")
async def credit_history(
    limit: int = Query(default=30, ge=1, le=100),
    offset: int = Query(default=0, ge=0),
    _rate_limit: None = Depends(rate_limit("credit_history", "GENERAL_READ")),
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    entries = await ledger.get_credit_history(db, auth.account_id, limit=limit, offset=offset)
    return {"items": entries, "limit": limit, "offset": offset}


@router.post("/credits/prepare")
async def prepare_credits(
    request: PrepareCreditPurchaseRequest,
    _rate_limit: None = Depends(rate_limit("prepare_credit_purchase", "PAYMENT_PREPARE")),
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    payment = await prepare_credit_purchase(db, auth.account_id, request.package_id)
    metadata = payment.metadata_json or {}
    return {
        "payment_id": payment.id,
        "order_id": payment.order_id,
        "amount": payment.amount,
        "credits": metadata.get("credits"),
        "package_id": metadata.get("package_id"),
    }


@router.post("/credits/confirm")
async def confirm_credits(
    request: ConfirmCreditPurchaseRequest,
    _rate_limit: None = Depends(rate_limit("confirm_credit_purchase", "PAYMENT_CONFIRM")),
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    return await confirm_credit_purchase(
        db,
        auth.account_id,
        request.order_id,
        request.payment_key,
        request.amount,
    )


@router.get("/refunds/preview/{payment_id}")
async def refund_preview(
    payment_id: str,
    amount: Optional[int] = Query(default=None, gt=0),
    _rate_limit: None = Depends(rate_limit("refund_preview", "GENERAL_READ")),
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    preview = await preview_refund(db, auth.account_id, payment_id, amount)
    return preview.to_dict()


@router.post("/refunds")
async def create_refund(
    request: RefundRequestBody,
    _rate_limit: None = Depends(rate_limit("refund_request", "REFUND_REQUEST")),
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    outcome = await request_refund(
        db,
        auth.account_id,
        request.payment_id,
        request.reason,
        request.amount,
    )
    logger.info("refund requested account=%s payment=%s status=%s", auth.account_id, request.payment_id, outcome.status)
    return {
        "request_id": outcome.request_id,
        "status": outcome.status,
        "requested_amount": outcome.requested_amount,
        "approved_amount": outcome.approved_amount,
        "detail": outcome.detail,
    }
