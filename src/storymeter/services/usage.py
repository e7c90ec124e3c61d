"""Usage log and per-model pricing.

Recording is best effort: a failure to persist a usage record is logged and
reported in the result, never raised, and never undoes the AI call or the
quota reservation that preceded it.
"""

from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum

import structlog
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from storymeter.database.models import TokenUsageRecord, User

logger = structlog.get_logger()

DEFAULT_IMAGE_COST_USD = 0.02
_TOKENS_PER_UNIT = Decimal(1000)


class UsageType(str, Enum):
    """Kinds of metered operation written to the usage log."""

    CHAT = "chat"
    IDEA = "idea"
    LOGLINE = "logline"
    TREATMENT = "treatment"
    SYNOPSIS = "synopsis"
    PLOT_POINTS = "plot_points"
    CHARACTER_GENERATION = "character_generation"
    SCENES = "scenes"
    SCRIPT = "script"
    DIALOGUE = "dialogue"
    FULL_SCRIPT = "full_script"
    STORYBOARD = "storyboard"


@dataclass(frozen=True)
class ModelPricing:
    """USD price per 1K tokens."""

    model_id: str
    input_per_1k: Decimal
    output_per_1k: Decimal


MODEL_PRICING: dict[str, ModelPricing] = {
    p.model_id: p
    for p in (
        ModelPricing("gemini-2.0-flash", Decimal("0.000075"), Decimal("0.0003")),
        ModelPricing("gemini-2.5-flash", Decimal("0.000075"), Decimal("0.0003")),
        ModelPricing("gemini-2.5-pro", Decimal("0.00125"), Decimal("0.005")),
        ModelPricing("gpt-4", Decimal("0.01"), Decimal("0.03")),
        ModelPricing("gpt-3.5-turbo", Decimal("0.0005"), Decimal("0.0015")),
    )
}
DEFAULT_PRICING_MODEL = "gemini-2.0-flash"


@dataclass
class UsageRecordResult:
    tokens: int
    cost: float
    recorded: bool
    record_id: str | None = None
    error: str | None = None


@dataclass
class UsageTotals:
    """Usage records with aggregate totals, newest first."""

    records: list[TokenUsageRecord] = field(default_factory=list)
    total_tokens: int = 0
    total_cost: float = 0.0


def get_model_pricing(model: str) -> ModelPricing | None:
    """Find pricing for a model id.

    Ignores a "models/" prefix, then tries an exact match, then the longest
    catalogue id contained in the name (e.g. "gemini-2.0-flash-001").
    """
    model_id = model.removeprefix("models/").lower()
    if model_id in MODEL_PRICING:
        return MODEL_PRICING[model_id]
    for known in sorted(MODEL_PRICING, key=len, reverse=True):
        if known in model_id:
            return MODEL_PRICING[known]
    return None


def calculate_token_cost(model: str, prompt_tokens: int, completion_tokens: int) -> float:
    """USD cost of a call. Unknown models are priced as the default model."""
    pricing = get_model_pricing(model)
    if pricing is None:
        logger.warning(
            "No pricing for model, using default rates",
            model=model,
            default_model=DEFAULT_PRICING_MODEL,
        )
        pricing = MODEL_PRICING[DEFAULT_PRICING_MODEL]

    input_cost = Decimal(prompt_tokens) / _TOKENS_PER_UNIT * pricing.input_per_1k
    output_cost = Decimal(completion_tokens) / _TOKENS_PER_UNIT * pricing.output_per_1k
    return float(input_cost + output_cost)


async def record_usage(
    db: AsyncSession,
    user_id: str,
    project_id: str | None,
    usage_type: UsageType | str,
    model: str,
    prompt_tokens: int,
    completion_tokens: int,
    total_tokens: int | None = None,
    operation_name: str | None = None,
    cost: float | None = None,
) -> UsageRecordResult:
    """Append a usage record for a completed AI call.

    Never re-checks limits. The cost is derived from the pricing table
    unless supplied.
    """
    tokens = total_tokens if total_tokens is not None else prompt_tokens + completion_tokens
    if cost is None:
        cost = calculate_token_cost(model, prompt_tokens, completion_tokens)
    type_value = usage_type.value if isinstance(usage_type, UsageType) else usage_type

    try:
        record = TokenUsageRecord(
            user_id=user_id,
            project_id=project_id,
            type=type_value,
            model=model,
            tokens=tokens,
            prompt_tokens=prompt_tokens,
            completion_tokens=completion_tokens,
            cost=cost,
            operation_name=operation_name,
        )
        db.add(record)
        await db.commit()
    except Exception as e:
        await db.rollback()
        logger.exception(
            "Failed to record usage",
            user_id=user_id,
            project_id=project_id,
            type=type_value,
            tokens=tokens,
            error=str(e),
        )
        return UsageRecordResult(tokens=tokens, cost=cost, recorded=False, error=str(e))

    logger.debug("Usage recorded", user_id=user_id, type=type_value, tokens=tokens, cost=cost)
    return UsageRecordResult(tokens=tokens, cost=cost, recorded=True, record_id=record.id)


async def track_image_usage(
    db: AsyncSession,
    user_id: str,
    project_id: str | None,
    scene_id: str,
    model: str,
    cost: float = DEFAULT_IMAGE_COST_USD,
    increment_counter: bool = False,
) -> UsageRecordResult:
    """Log one generated storyboard image.

    The monthly image counter is only bumped when increment_counter is set,
    for images that were not reserved up front.
    """
    if increment_counter:
        try:
            await db.execute(
                update(User)
                .where(User.id == user_id)
                .values(image_usage_this_month=User.image_usage_this_month + 1)
                .execution_options(synchronize_session=False)
            )
        except Exception as e:
            await db.rollback()
            logger.exception("Failed to increment image usage", user_id=user_id, error=str(e))

    return await record_usage(
        db,
        user_id=user_id,
        project_id=project_id,
        usage_type=UsageType.STORYBOARD,
        model=model,
        prompt_tokens=0,
        completion_tokens=0,
        total_tokens=0,
        operation_name=f"Storyboard Image: Scene {scene_id}",
        cost=cost,
    )


async def _get_usage_totals(db: AsyncSession, *criteria: object) -> UsageTotals:
    result = await db.execute(
        select(TokenUsageRecord)
        .where(*criteria)  # type: ignore[arg-type]
        .order_by(TokenUsageRecord.created_at.desc())
    )
    records = list(result.scalars().all())
    return UsageTotals(
        records=records,
        total_tokens=sum(r.tokens for r in records),
        total_cost=sum(r.cost for r in records),
    )


async def get_user_token_usage(db: AsyncSession, user_id: str) -> UsageTotals:
    return await _get_usage_totals(db, TokenUsageRecord.user_id == user_id)


async def get_project_token_usage(db: AsyncSession, user_id: str, project_id: str) -> UsageTotals:
    return await _get_usage_totals(
        db,
        TokenUsageRecord.user_id == user_id,
        TokenUsageRecord.project_id == project_id,
    )
