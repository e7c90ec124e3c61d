"""Usage and quota read routes."""

from datetime import datetime

from fastapi import APIRouter, HTTPException, Request, Response
from pydantic import BaseModel
from sqlalchemy import select

from storymeter.database.models import User
from storymeter.dependencies import CurrentUserId, DbSession
from storymeter.middleware.rate_limit import RATE_LIMIT_STANDARD, limiter
from storymeter.routes.subscription import limit_value
from storymeter.services.quota import check_image_quota, get_usage_summary
from storymeter.services.subscription import resolve_tier
from storymeter.services.usage import get_project_token_usage, get_user_token_usage

router = APIRouter(tags=["usage"])


class TierLimitsResponse(BaseModel):
    tokens: int | None
    images: int | None
    max_projects: int | None


class UserUsageResponse(BaseModel):
    token_usage_this_month: int
    image_usage_this_month: int
    subscription_status: str | None
    tier: str
    limits: TierLimitsResponse


class ImageQuotaResponse(BaseModel):
    has_quota: bool
    used: int
    limit: int | None
    remaining: int | None


class UsageRecordResponse(BaseModel):
    model_config = {"from_attributes": True}

    id: str
    type: str
    model: str
    tokens: int
    prompt_tokens: int
    completion_tokens: int
    cost: float
    operation_name: str | None
    created_at: datetime


class ProjectUsageResponse(BaseModel):
    project_id: str
    records: list[UsageRecordResponse]
    total_tokens: int
    total_cost: float


@router.get("/user/usage", response_model=UserUsageResponse)
@limiter.limit(RATE_LIMIT_STANDARD)
async def get_user_usage(
    request: Request,
    response: Response,
    db: DbSession,
    user_id: CurrentUserId,
) -> UserUsageResponse:
    """Current cycle counters and the limits of the effective tier."""
    result = await db.execute(select(User).where(User.id == user_id))
    user = result.scalar_one_or_none()
    if not user:
        raise HTTPException(status_code=404, detail="User not found")

    limits = resolve_tier(user)
    summary = get_usage_summary(user)
    return UserUsageResponse(
        token_usage_this_month=summary.tokens.used,
        image_usage_this_month=summary.images.used,
        subscription_status=user.subscription_status,
        tier=limits.tier.value,
        limits=TierLimitsResponse(
            tokens=limit_value(limits.token_limit),
            images=limit_value(limits.image_limit),
            max_projects=limit_value(limits.max_projects),
        ),
    )


@router.get("/user/image-quota", response_model=ImageQuotaResponse)
@limiter.limit(RATE_LIMIT_STANDARD)
async def get_image_quota(
    request: Request,
    response: Response,
    db: DbSession,
    user_id: CurrentUserId,
) -> ImageQuotaResponse:
    quota = await check_image_quota(db, user_id)
    return ImageQuotaResponse(
        has_quota=quota.has_quota,
        used=quota.used,
        limit=limit_value(quota.limit),
        remaining=limit_value(quota.remaining),
    )


@router.get("/projects/{project_id}/usage", response_model=ProjectUsageResponse)
@limiter.limit(RATE_LIMIT_STANDARD)
async def get_project_usage(
    request: Request,
    response: Response,
    project_id: str,
    db: DbSession,
    user_id: CurrentUserId,
) -> ProjectUsageResponse:
    """The caller's usage records for one project, newest first."""
    totals = await get_project_token_usage(db, user_id, project_id)
    return ProjectUsageResponse(
        project_id=project_id,
        records=[UsageRecordResponse.model_validate(r) for r in totals.records],
        total_tokens=totals.total_tokens,
        total_cost=totals.total_cost,
    )


class UserUsageRecordsResponse(BaseModel):
    records: list[UsageRecordResponse]
    total_tokens: int
    total_cost: float


@router.get("/user/usage/records", response_model=UserUsageRecordsResponse)
@limiter.limit(RATE_LIMIT_STANDARD)
async def get_user_usage_records(
    request: Request,
    response: Response,
    db: DbSession,
    user_id: CurrentUserId,
) -> UserUsageRecordsResponse:
    """All of the caller's usage records across projects, newest first."""
    totals = await get_user_token_usage(db, user_id)
    return UserUsageRecordsResponse(
        records=[UsageRecordResponse.model_validate(r) for r in totals.records],
        total_tokens=totals.total_tokens,
        total_cost=totals.total_cost,
    )
