"""Subscription plans, status and cancellation routes."""

import math
from datetime import datetime

import structlog
from fastapi import APIRouter, HTTPException, Request, Response
from pydantic import BaseModel
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from storymeter.database.models import User, as_utc
from storymeter.dependencies import CurrentUserId, DbSession
from storymeter.exceptions import UserNotFoundError
from storymeter.middleware.rate_limit import RATE_LIMIT_STANDARD, limiter
from storymeter.services.quota import UsageMetric, get_usage_summary
from storymeter.services.subscription import (
    CANCELLED_PLAN,
    SUBSCRIPTION_PLANS,
    cancel_subscription,
    days_remaining,
    get_payment_history,
    get_upgrade_suggestion,
    is_subscription_active,
    resolve_tier,
)

logger = structlog.get_logger()

router = APIRouter(prefix="/subscription", tags=["subscription"])


def limit_value(limit: float) -> int | None:
    """JSON-safe limit: None means unlimited."""
    return None if math.isinf(limit) else int(limit)


class PlanResponse(BaseModel):
    id: str
    name: str
    description: str
    tier: str
    price: float
    billing_period: str | None
    tokens_per_month: int | None
    images_per_month: int | None
    max_projects: int | None
    features: list[str]


class UsageMetricResponse(BaseModel):
    used: int
    limit: int | None
    remaining: int | None
    percentage: float

    @classmethod
    def from_metric(cls, metric: UsageMetric) -> "UsageMetricResponse":
        return cls(
            used=metric.used,
            limit=limit_value(metric.limit),
            remaining=limit_value(metric.remaining),
            percentage=metric.percentage,
        )


class UsageResponse(BaseModel):
    tokens: UsageMetricResponse
    images: UsageMetricResponse
    reset_date: datetime | None


class PaymentResponse(BaseModel):
    model_config = {"from_attributes": True}

    id: str
    amount: int
    currency: str
    status: str
    plan_id: str | None
    plan_name: str | None
    billing_period: str | None
    created_at: datetime


class UpgradeSuggestionResponse(BaseModel):
    plan_id: str
    name: str
    price: float
    reason: str


class SubscriptionStatusResponse(BaseModel):
    tier: str
    plan: str | None
    plan_name: str
    is_active: bool
    is_pro: bool
    is_paid: bool
    is_cancelled: bool
    start_date: datetime | None
    end_date: datetime | None
    days_remaining: int | None
    max_projects: int | None
    usage: UsageResponse
    payments: list[PaymentResponse]
    upgrade_suggestion: UpgradeSuggestionResponse | None


class CancelResponse(BaseModel):
    success: bool
    message: str
    end_date: datetime | None


async def _get_user_or_404(db: AsyncSession, user_id: str) -> User:
    result = await db.execute(select(User).where(User.id == user_id))
    user = result.scalar_one_or_none()
    if not user:
        raise HTTPException(status_code=404, detail="User not found")
    return user


@router.get("/plans", response_model=list[PlanResponse])
@limiter.limit(RATE_LIMIT_STANDARD)
async def list_plans(request: Request, response: Response) -> list[PlanResponse]:
    """List the plan catalogue."""
    return [
        PlanResponse(
            id=plan.id,
            name=plan.name,
            description=plan.description,
            tier=plan.tier.value,
            price=plan.price,
            billing_period=plan.billing_period.value if plan.billing_period else None,
            tokens_per_month=limit_value(plan.limits.token_limit),
            images_per_month=limit_value(plan.limits.image_limit),
            max_projects=limit_value(plan.limits.max_projects),
            features=list(plan.features),
        )
        for plan in SUBSCRIPTION_PLANS.values()
    ]


@router.get("/status", response_model=SubscriptionStatusResponse)
@limiter.limit(RATE_LIMIT_STANDARD)
async def get_subscription_status(
    request: Request,
    response: Response,
    db: DbSession,
    user_id: CurrentUserId,
) -> SubscriptionStatusResponse:
    """Effective tier, subscription window, usage this cycle and recent payments."""
    user = await _get_user_or_404(db, user_id)
    limits = resolve_tier(user)
    summary = get_usage_summary(user)
    payments = await get_payment_history(db, user_id)

    plan = SUBSCRIPTION_PLANS.get(user.subscription_plan or "")
    plan_name = plan.name if plan and limits.is_paid else limits.tier.value.capitalize()
    suggestion = get_upgrade_suggestion(limits.tier)

    return SubscriptionStatusResponse(
        tier=limits.tier.value,
        plan=user.subscription_plan,
        plan_name=plan_name,
        is_active=is_subscription_active(user),
        is_pro=limits.is_pro,
        is_paid=limits.is_paid,
        is_cancelled=user.subscription_plan == CANCELLED_PLAN,
        start_date=as_utc(user.subscription_start_date),
        end_date=as_utc(user.subscription_end_date),
        days_remaining=days_remaining(user),
        max_projects=limit_value(limits.max_projects),
        usage=UsageResponse(
            tokens=UsageMetricResponse.from_metric(summary.tokens),
            images=UsageMetricResponse.from_metric(summary.images),
            reset_date=summary.reset_date,
        ),
        payments=[PaymentResponse.model_validate(p) for p in payments],
        upgrade_suggestion=(
            UpgradeSuggestionResponse(
                plan_id=suggestion.plan_id,
                name=suggestion.name,
                price=suggestion.price,
                reason=suggestion.reason,
            )
            if suggestion
            else None
        ),
    )


@router.post("/cancel", response_model=CancelResponse)
@limiter.limit(RATE_LIMIT_STANDARD)
async def cancel(
    request: Request,
    response: Response,
    db: DbSession,
    user_id: CurrentUserId,
) -> CancelResponse:
    """Cancel renewal. Paid limits stay until the end date."""
    try:
        user = await cancel_subscription(db, user_id)
    except UserNotFoundError:
        raise HTTPException(status_code=404, detail="User not found") from None

    return CancelResponse(
        success=True,
        message="Subscription cancelled. Your plan stays active until the end of the billing period.",
        end_date=as_utc(user.subscription_end_date),
    )
