"""Quota accounting for monthly token and image allowances.

Reservation is a single conditional UPDATE: the counters are incremented only
if the result stays within the user's tier limits, so concurrent requests for
the same user can never jointly overshoot.
"""

import math
from dataclasses import dataclass
from datetime import UTC, datetime

import structlog
from sqlalchemy import ColumnElement, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.attributes import set_committed_value

from storymeter.database.models import User, as_utc
from storymeter.exceptions import UserNotFoundError
from storymeter.services.subscription import SubscriptionTier, TierLimits, resolve_tier

logger = structlog.get_logger()


@dataclass
class QuotaCheckResult:
    """Outcome of a reservation attempt."""

    allowed: bool
    tier: SubscriptionTier
    token_usage: int
    image_usage: int
    tokens_remaining: float
    images_remaining: float
    token_limit: float
    image_limit: float


@dataclass
class ImageQuota:
    has_quota: bool
    used: int
    limit: float
    remaining: float


@dataclass
class UsageMetric:
    used: int
    limit: float
    remaining: float
    percentage: float


@dataclass
class UsageSummary:
    tokens: UsageMetric
    images: UsageMetric
    reset_date: datetime | None


def start_of_month(now: datetime) -> datetime:
    """First instant of the calendar month containing now (UTC)."""
    now = now.astimezone(UTC)
    return now.replace(day=1, hour=0, minute=0, second=0, microsecond=0)


def should_reset_monthly_usage(usage_reset_date: datetime | None, now: datetime | None = None) -> bool:
    """True when the stored cycle began in an earlier calendar month, or never began."""
    reset_date = as_utc(usage_reset_date)
    if reset_date is None:
        return True
    return reset_date < start_of_month(now or datetime.now(UTC))


def _needs_reset_clause(now: datetime) -> ColumnElement[bool]:
    return or_(User.usage_reset_date.is_(None), User.usage_reset_date < start_of_month(now))


def _remaining(limit: float, used: int) -> float:
    return math.inf if math.isinf(limit) else max(0, int(limit) - used)


def _build_result(allowed: bool, limits: TierLimits, tokens: int, images: int) -> QuotaCheckResult:
    return QuotaCheckResult(
        allowed=allowed,
        tier=limits.tier,
        token_usage=tokens,
        image_usage=images,
        tokens_remaining=_remaining(limits.token_limit, tokens),
        images_remaining=_remaining(limits.image_limit, images),
        token_limit=limits.token_limit,
        image_limit=limits.image_limit,
    )


async def _get_user(db: AsyncSession, user_id: str) -> User:
    result = await db.execute(select(User).where(User.id == user_id))
    user = result.scalar_one_or_none()
    if not user:
        raise UserNotFoundError(user_id)
    return user


async def _reset_if_new_cycle(db: AsyncSession, user: User, now: datetime) -> bool:
    """Zero the counters when the stored cycle is from an earlier month."""
    result = await db.execute(
        update(User)
        .where(User.id == user.id, _needs_reset_clause(now))
        .values(token_usage_this_month=0, image_usage_this_month=0, usage_reset_date=now)
        .execution_options(synchronize_session=False)
    )
    if not result.rowcount:  # type: ignore[attr-defined]
        return False

    set_committed_value(user, "token_usage_this_month", 0)
    set_committed_value(user, "image_usage_this_month", 0)
    set_committed_value(user, "usage_reset_date", now)
    logger.info("Monthly usage reset", user_id=user.id)
    return True


async def check_and_reserve(
    db: AsyncSession,
    user_id: str,
    tokens_to_add: int = 0,
    images_to_add: int = 0,
    now: datetime | None = None,
) -> QuotaCheckResult:
    """Check the user's remaining allowance and reserve it in one step.

    Logic:
    1. Load the user and resolve the effective tier
    2. Admin: allowed, counters untouched
    3. Start a new cycle if the stored one is from an earlier month
    4. Conditionally increment both counters; no row updated means denied

    Args:
        db: Database session
        user_id: User ID
        tokens_to_add: Tokens to reserve
        images_to_add: Images to reserve

    Returns:
        QuotaCheckResult; counters are unchanged when allowed is False

    Raises:
        UserNotFoundError: user does not exist
        ValueError: a negative amount was requested
    """
    if tokens_to_add < 0 or images_to_add < 0:
        raise ValueError("Reservation amounts must be non-negative")

    now = now or datetime.now(UTC)
    user = await _get_user(db, user_id)
    limits = resolve_tier(user, now)

    if limits.is_admin:
        return _build_result(True, limits, user.token_usage_this_month, user.image_usage_this_month)

    await _reset_if_new_cycle(db, user, now)

    result = await db.execute(
        update(User)
        .where(
            User.id == user_id,
            User.token_usage_this_month + tokens_to_add <= int(limits.token_limit),
            User.image_usage_this_month + images_to_add <= int(limits.image_limit),
        )
        .values(
            token_usage_this_month=User.token_usage_this_month + tokens_to_add,
            image_usage_this_month=User.image_usage_this_month + images_to_add,
        )
        .returning(User.token_usage_this_month, User.image_usage_this_month)
        .execution_options(synchronize_session=False)
    )
    row = result.first()
    if row is None:
        # The loaded user may predate other reservations
        await db.refresh(user, ["token_usage_this_month", "image_usage_this_month"])
    await db.commit()

    if row is None:
        logger.info(
            "Quota exceeded",
            user_id=user_id,
            tier=limits.tier.value,
            tokens_requested=tokens_to_add,
            images_requested=images_to_add,
            token_usage=user.token_usage_this_month,
            image_usage=user.image_usage_this_month,
        )
        return _build_result(
            False, limits, user.token_usage_this_month, user.image_usage_this_month
        )

    token_usage, image_usage = row
    set_committed_value(user, "token_usage_this_month", token_usage)
    set_committed_value(user, "image_usage_this_month", image_usage)
    return _build_result(True, limits, token_usage, image_usage)


async def check_image_quota(
    db: AsyncSession,
    user_id: str,
    now: datetime | None = None,
) -> ImageQuota:
    """Read-only image allowance check. Unknown users have no quota."""
    now = now or datetime.now(UTC)
    result = await db.execute(select(User).where(User.id == user_id))
    user = result.scalar_one_or_none()
    if not user:
        return ImageQuota(has_quota=False, used=0, limit=0, remaining=0)

    limits = resolve_tier(user, now)
    used = 0 if should_reset_monthly_usage(user.usage_reset_date, now) else user.image_usage_this_month
    remaining = _remaining(limits.image_limit, used)
    return ImageQuota(has_quota=remaining > 0, used=used, limit=limits.image_limit, remaining=remaining)


def _metric(used: int, limit: float) -> UsageMetric:
    if math.isinf(limit):
        return UsageMetric(used=used, limit=limit, remaining=math.inf, percentage=0.0)
    percentage = round(min(100.0, used / limit * 100), 1) if limit else 100.0
    return UsageMetric(used=used, limit=limit, remaining=_remaining(limit, used), percentage=percentage)


def get_usage_summary(user: User, now: datetime | None = None) -> UsageSummary:
    """Usage against limits for display. Stale cycles read as zero."""
    now = now or datetime.now(UTC)
    limits = resolve_tier(user, now)
    stale = should_reset_monthly_usage(user.usage_reset_date, now)
    tokens = 0 if stale else user.token_usage_this_month
    images = 0 if stale else user.image_usage_this_month
    return UsageSummary(
        tokens=_metric(tokens, limits.token_limit),
        images=_metric(images, limits.image_limit),
        reset_date=as_utc(user.usage_reset_date),
    )


async def reset_monthly_usage(db: AsyncSession, now: datetime | None = None) -> int:
    """Start a new cycle for every user whose stored cycle is from an earlier month.

    Returns:
        Number of users reset
    """
    now = now or datetime.now(UTC)
    result = await db.execute(
        update(User)
        .where(_needs_reset_clause(now))
        .values(token_usage_this_month=0, image_usage_this_month=0, usage_reset_date=now)
        .execution_options(synchronize_session=False)
    )
    await db.commit()
    return int(result.rowcount or 0)  # type: ignore[attr-defined]
