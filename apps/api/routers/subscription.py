"""Subscription lifecycle router."""

from __future__ import annotations

from typing import Literal

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from database import get_db
from routers.auth_scope import AuthContext, get_auth_context
from routers.rate_limit import rate_limit
from services import subscriptions
from services.proration import format_proration_summary

router = APIRouter()


class StartSubscriptionRequest(BaseModel):
    plan: str = Field(min_length=1, max_length=40)
    billing_cycle: Literal["monthly", "yearly"] = "monthly"
    auth_key: str = Field(min_length=1, max_length=300)


class PlanChangeRequest(BaseModel):
    plan: str = Field(min_length=1, max_length=40)
    billing_cycle: Literal["monthly", "yearly"]


class CancelSubscriptionRequest(BaseModel):
    immediate: bool = False


@router.post("")
async def start_subscription(
    request: StartSubscriptionRequest,
    _rate_limit: None = Depends(rate_limit("confirm_subscription", "SUBSCRIPTION_CREATE")),
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    subscription = await subscriptions.start_subscription(
        db,
        auth.account_id,
        request.plan,
        request.billing_cycle,
        request.auth_key,
    )
    return subscriptions.subscription_to_dict(subscription)


@router.get("/current")
async def current_subscription(
    _rate_limit: None = Depends(rate_limit("get_subscription", "GENERAL_READ")),
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    subscription = await subscriptions.get_current_subscription(db, auth.account_id)
    if subscription is None:
        return {"subscription": None}
    return {"subscription": subscriptions.subscription_to_dict(subscription)}


@router.post("/change/preview")
async def preview_plan_change(
    request: PlanChangeRequest,
    _rate_limit: None = Depends(rate_limit("preview_plan_change", "GENERAL_READ")),
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    proration = await subscriptions.preview_change(db, auth.account_id, request.plan, request.billing_cycle)
    return {**proration.to_dict(), "summary": format_proration_summary(proration)}


@router.post("/change")
async def change_plan(
    request: PlanChangeRequest,
    _rate_limit: None = Depends(rate_limit("change_plan", "PAYMENT_CONFIRM")),
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    return await subscriptions.change_plan(db, auth.account_id, request.plan, request.billing_cycle)


@router.delete("/change")
async def cancel_scheduled_change(
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    subscription = await subscriptions.cancel_pending_change(db, auth.account_id)
    return subscriptions.subscription_to_dict(subscription)


@router.post("/cancel")
async def cancel_subscription(
    request: CancelSubscriptionRequest,
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    subscription = await subscriptions.cancel_subscription(db, auth.account_id, request.immediate)
    return subscriptions.subscription_to_dict(subscription)


@router.post("/resume")
async def resume_subscription(
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    subscription = await subscriptions.resume_subscription(db, auth.account_id)
    return subscriptions.subscription_to_dict(subscription)
