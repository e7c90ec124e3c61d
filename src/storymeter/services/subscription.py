"""Subscription tiers, plan catalogue and subscription lifecycle.

This module is the single source of the per-tier limits:
- Tier resolution from a user's stored subscription fields
- Plan catalogue served to the pricing page
- Upgrade after a captured payment, cancellation and payment history
"""

import math
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from enum import Enum
from typing import Any, Protocol

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from storymeter.config import settings
from storymeter.database.models import Payment, User, as_utc
from storymeter.exceptions import UnknownPlanError, UserNotFoundError

logger = structlog.get_logger()

CANCELLED_PLAN = "cancelled"


class SubscriptionTier(str, Enum):
    """Named subscription level."""

    FREE = "free"
    HOBBY = "hobby"
    PRO = "pro"
    ADMIN = "admin"


class BillingPeriod(str, Enum):
    MONTHLY = "monthly"
    YEARLY = "yearly"


@dataclass(frozen=True)
class TierLimits:
    """Effective monthly limits for a tier. Unlimited values are math.inf."""

    tier: SubscriptionTier
    token_limit: float
    image_limit: float
    max_projects: float

    @property
    def is_admin(self) -> bool:
        return self.tier == SubscriptionTier.ADMIN

    @property
    def is_pro(self) -> bool:
        return self.tier in (SubscriptionTier.PRO, SubscriptionTier.ADMIN)

    @property
    def is_hobby(self) -> bool:
        return self.tier == SubscriptionTier.HOBBY

    @property
    def is_paid(self) -> bool:
        return self.tier in (SubscriptionTier.HOBBY, SubscriptionTier.PRO)


TIER_LIMITS: dict[SubscriptionTier, TierLimits] = {
    SubscriptionTier.FREE: TierLimits(SubscriptionTier.FREE, 10_000, 5, 3),
    SubscriptionTier.HOBBY: TierLimits(SubscriptionTier.HOBBY, 25_000, 25, 10),
    SubscriptionTier.PRO: TierLimits(SubscriptionTier.PRO, 100_000, 100, math.inf),
    SubscriptionTier.ADMIN: TierLimits(SubscriptionTier.ADMIN, math.inf, math.inf, math.inf),
}


@dataclass(frozen=True)
class SubscriptionPlan:
    """A purchasable plan. Limits come from the plan's tier."""

    id: str
    name: str
    description: str
    tier: SubscriptionTier
    price: float  # USD
    billing_period: BillingPeriod | None = None
    features: tuple[str, ...] = field(default_factory=tuple)

    @property
    def limits(self) -> TierLimits:
        return TIER_LIMITS[self.tier]


_FREE_FEATURES = (
    "10,000 tokens per month",
    "5 image generations per month",
    "3 projects limit",
)
_HOBBY_FEATURES = (
    "25,000 tokens per month",
    "25 image generations per month",
    "10 projects limit",
    "PDF export",
)
_PRO_FEATURES = (
    "100,000 tokens per month",
    "100 image generations per month",
    "Unlimited projects",
    "Priority support",
)

SUBSCRIPTION_PLANS: dict[str, SubscriptionPlan] = {
    plan.id: plan
    for plan in (
        SubscriptionPlan(
            "free", "Free", "Get started with AI storytelling",
            SubscriptionTier.FREE, 0.0, None, _FREE_FEATURES,
        ),
        SubscriptionPlan(
            "hobby_monthly", "Hobby (Monthly)", "For passionate storytellers",
            SubscriptionTier.HOBBY, 4.99, BillingPeriod.MONTHLY, _HOBBY_FEATURES,
        ),
        SubscriptionPlan(
            "hobby_yearly", "Hobby (Yearly)", "For passionate storytellers",
            SubscriptionTier.HOBBY, 39.99, BillingPeriod.YEARLY, _HOBBY_FEATURES,
        ),
        SubscriptionPlan(
            "pro_monthly", "Pro (Monthly)", "For serious creators & professionals",
            SubscriptionTier.PRO, 9.99, BillingPeriod.MONTHLY, _PRO_FEATURES,
        ),
        SubscriptionPlan(
            "pro_yearly", "Pro (Yearly)", "For serious creators & professionals",
            SubscriptionTier.PRO, 79.99, BillingPeriod.YEARLY, _PRO_FEATURES,
        ),
    )
}

# Bare tier names are accepted wherever a plan id is, as their monthly plan
_PLAN_ALIASES = {"hobby": "hobby_monthly", "pro": "pro_monthly"}


@dataclass(frozen=True)
class UpgradeSuggestion:
    plan_id: str
    name: str
    price: float
    reason: str


class SubscriptionHolder(Protocol):
    """Fields the resolver reads. Satisfied by the User model."""

    email: str
    is_admin: bool
    subscription_status: str | None
    subscription_end_date: datetime | None


def get_plan(plan_id: str) -> SubscriptionPlan:
    """Look up a plan by id, accepting bare tier names."""
    plan = SUBSCRIPTION_PLANS.get(_PLAN_ALIASES.get(plan_id, plan_id))
    if plan is None:
        raise UnknownPlanError(plan_id)
    return plan


def get_subscription_limits(subscription_status: str | None) -> TierLimits:
    """Map a raw status string to limits without checking expiry."""
    status = (subscription_status or SubscriptionTier.FREE.value).lower()
    if status == SubscriptionTier.ADMIN.value:
        return TIER_LIMITS[SubscriptionTier.ADMIN]
    if SubscriptionTier.PRO.value in status:
        return TIER_LIMITS[SubscriptionTier.PRO]
    if SubscriptionTier.HOBBY.value in status:
        return TIER_LIMITS[SubscriptionTier.HOBBY]
    return TIER_LIMITS[SubscriptionTier.FREE]


def _is_admin(user: SubscriptionHolder) -> bool:
    if user.subscription_status == SubscriptionTier.ADMIN.value or user.is_admin:
        return True
    email = (user.email or "").lower()
    return bool(email) and email in settings.ADMIN_EMAILS


def is_subscription_active(user: SubscriptionHolder, now: datetime | None = None) -> bool:
    """Whether a paid subscription is currently in force.

    Admin is always active. Free (or no status) is never active. A paid status
    with no end date is treated as non-expiring.
    """
    if _is_admin(user):
        return True
    status = user.subscription_status
    if not status or status == SubscriptionTier.FREE.value:
        return False
    end_date = as_utc(user.subscription_end_date)
    if end_date is None:
        return get_subscription_limits(status).is_paid
    return end_date > (now or datetime.now(UTC))


def resolve_tier(user: SubscriptionHolder, now: datetime | None = None) -> TierLimits:
    """Resolve the effective tier and limits for a user.

    Expired paid subscriptions resolve to free limits until renewed.
    """
    if _is_admin(user):
        return TIER_LIMITS[SubscriptionTier.ADMIN]
    limits = get_subscription_limits(user.subscription_status)
    if limits.is_paid and not is_subscription_active(user, now):
        return TIER_LIMITS[SubscriptionTier.FREE]
    return limits


def days_remaining(user: SubscriptionHolder, now: datetime | None = None) -> int | None:
    """Whole days until the subscription ends, or None without an end date."""
    end_date = as_utc(user.subscription_end_date)
    if end_date is None:
        return None
    delta = end_date - (now or datetime.now(UTC))
    return max(0, math.ceil(delta.total_seconds() / 86400))


def get_upgrade_suggestion(tier: SubscriptionTier) -> UpgradeSuggestion | None:
    """Next plan up from the given tier, if there is one."""
    if tier == SubscriptionTier.FREE:
        plan = SUBSCRIPTION_PLANS["hobby_monthly"]
        return UpgradeSuggestion(plan.id, plan.name, plan.price, "Get 5x more tokens and images")
    if tier == SubscriptionTier.HOBBY:
        plan = SUBSCRIPTION_PLANS["pro_monthly"]
        return UpgradeSuggestion(
            plan.id, plan.name, plan.price, "Get 4x more tokens and unlimited projects"
        )
    return None


def _add_billing_period(start: datetime, period: BillingPeriod | None) -> datetime:
    """Advance by one calendar month or year, clamping to the last day of month."""
    months = 12 if period == BillingPeriod.YEARLY else 1
    month_index = start.month - 1 + months
    year = start.year + month_index // 12
    month = month_index % 12 + 1
    day = min(start.day, _days_in_month(year, month))
    return start.replace(year=year, month=month, day=day)


def _days_in_month(year: int, month: int) -> int:
    next_month = datetime(year + month // 12, month % 12 + 1, 1)
    return (next_month - timedelta(days=1)).day


async def _get_user(db: AsyncSession, user_id: str) -> User:
    result = await db.execute(select(User).where(User.id == user_id))
    user = result.scalar_one_or_none()
    if not user:
        raise UserNotFoundError(user_id)
    return user


async def upgrade_user_subscription(
    db: AsyncSession,
    user_id: str,
    plan_id: str,
    payment: dict[str, Any],
    now: datetime | None = None,
    existing_payment: Payment | None = None,
) -> User:
    """Activate a paid plan after a captured payment.

    Sets the tier, the subscription window and a fresh usage cycle, and
    records the payment. Commits once.

    Args:
        db: Database session
        user_id: Paying user
        plan_id: Plan id from the catalogue (e.g. "pro_yearly")
        payment: amount (minor units), currency, provider_order_id, provider_payment_id
        existing_payment: Stored row for the same provider payment (e.g. an
            earlier failed attempt), updated in place instead of adding a new one

    Returns:
        The updated user

    Raises:
        UnknownPlanError: plan_id is not a paid plan
        UserNotFoundError: user does not exist
    """
    plan = get_plan(plan_id)
    if not plan.limits.is_paid:
        raise UnknownPlanError(plan_id)

    user = await _get_user(db, user_id)
    now = now or datetime.now(UTC)

    user.subscription_status = plan.tier.value
    user.subscription_plan = plan.id
    user.subscription_start_date = now
    user.subscription_end_date = _add_billing_period(now, plan.billing_period)
    user.last_payment_date = now
    user.token_usage_this_month = 0
    user.image_usage_this_month = 0
    user.usage_reset_date = now

    details: dict[str, Any] = {
        "amount": int(payment.get("amount") or 0),
        "currency": payment.get("currency") or "INR",
        "status": "completed",
        "provider_order_id": payment.get("provider_order_id"),
        "provider_payment_id": payment.get("provider_payment_id"),
        "plan_id": plan.id,
        "plan_name": plan.name,
        "billing_period": plan.billing_period.value if plan.billing_period else None,
    }
    if existing_payment is None:
        db.add(Payment(user_id=user.id, **details))
    else:
        for key, value in details.items():
            setattr(existing_payment, key, value)
    await db.commit()

    logger.info(
        "Subscription upgraded",
        user_id=user_id,
        plan_id=plan.id,
        tier=plan.tier.value,
        ends_at=user.subscription_end_date.isoformat(),
    )
    return user


async def cancel_subscription(db: AsyncSession, user_id: str) -> User:
    """Mark the plan cancelled. Paid limits stay until the end date."""
    user = await _get_user(db, user_id)
    user.subscription_plan = CANCELLED_PLAN
    await db.commit()
    logger.info(
        "Subscription cancelled",
        user_id=user_id,
        tier=user.subscription_status,
        ends_at=user.subscription_end_date.isoformat() if user.subscription_end_date else None,
    )
    return user


async def get_payment_history(db: AsyncSession, user_id: str, limit: int = 10) -> list[Payment]:
    """Most recent payments first."""
    result = await db.execute(
        select(Payment)
        .where(Payment.user_id == user_id)
        .order_by(Payment.created_at.desc())
        .limit(limit)
    )
    return list(result.scalars().all())
