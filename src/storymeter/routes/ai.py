"""Metered AI routes: chat assistant, story generation and storyboard prompts.

Gates run before any provider call: the chat rate limit (429) or the quota
reservation (403). Usage is recorded after a successful call and recording
failures never change the response.
"""

import structlog
from fastapi import APIRouter, HTTPException, Request, Response
from pydantic import BaseModel, Field

from storymeter.config import settings
from storymeter.dependencies import ChatRateLimiter, CurrentUserId, DbSession, Generator
from storymeter.exceptions import UpstreamProviderError, UserNotFoundError
from storymeter.middleware.rate_limit import RATE_LIMIT_STANDARD, limiter
from storymeter.prompts import (
    GENERATION_OPERATIONS,
    build_chat_system_prompt,
    build_generation_prompt,
    build_storyboard_prompt,
)
from storymeter.routes.subscription import limit_value
from storymeter.services.quota import check_and_reserve, check_image_quota
from storymeter.services.usage import UsageType, record_usage, track_image_usage

logger = structlog.get_logger()

router = APIRouter(tags=["ai"])

TOKEN_LIMIT_MESSAGE = (
    "You have reached your monthly token limit. Please upgrade your plan to continue."
)
IMAGE_LIMIT_MESSAGE = (
    "You have reached your monthly image limit. Please upgrade your plan to continue."
)
CHAT_MAX_TOKENS = 1500
CHAT_TEMPERATURE = 0.8


class ChatRequest(BaseModel):
    message: str | None = None
    context: str | None = None
    project_type: str | None = None
    current_step: str | None = None
    project_id: str | None = None


class ChatResponse(BaseModel):
    success: bool
    response: str


class GenerateRequest(BaseModel):
    source: str = Field(..., min_length=1, description="Idea or earlier artefact to build on")
    language: str = "English"


class TokenUsageResponse(BaseModel):
    prompt_tokens: int
    completion_tokens: int
    total_tokens: int


class GenerateResponse(BaseModel):
    operation: str
    content: str
    model: str
    usage: TokenUsageResponse
    cost: float
    tokens_remaining: int | None


class StoryboardRequest(BaseModel):
    scene_description: str = Field(..., min_length=1)
    style: str | None = None


class StoryboardResponse(BaseModel):
    scene_id: str
    image_prompt: str
    model: str
    images_remaining: int | None


@router.post("/ai/chat", response_model=ChatResponse)
async def chat(
    data: ChatRequest,
    db: DbSession,
    user_id: CurrentUserId,
    rate_limiter: ChatRateLimiter,
    generator: Generator,
) -> ChatResponse:
    """Writing assistant chat. Throttled per user, not charged against quota."""
    if not await rate_limiter.allow(user_id):
        raise HTTPException(
            status_code=429,
            detail="Rate limit exceeded. Please wait a moment.",
            headers={"Retry-After": str(rate_limiter.window_seconds)},
        )

    if not data.message:
        raise HTTPException(status_code=400, detail="Message is required")

    try:
        result = await generator.generate(
            f"User's question: {data.message}",
            system_prompt=build_chat_system_prompt(
                data.project_type, data.current_step, data.context
            ),
            temperature=CHAT_TEMPERATURE,
            max_tokens=CHAT_MAX_TOKENS,
        )
    except UpstreamProviderError as e:
        logger.exception("AI chat failed", user_id=user_id, error=str(e))
        raise HTTPException(status_code=500, detail="Failed to get AI response") from e

    await record_usage(
        db,
        user_id=user_id,
        project_id=data.project_id,
        usage_type=UsageType.CHAT,
        model=result.model,
        prompt_tokens=result.usage.prompt_tokens,
        completion_tokens=result.usage.completion_tokens,
        total_tokens=result.usage.total_tokens,
        operation_name="AI Chat",
    )
    return ChatResponse(success=True, response=result.text)


@router.post("/projects/{project_id}/generate/{operation}", response_model=GenerateResponse)
@limiter.limit(RATE_LIMIT_STANDARD)
async def generate(
    request: Request,
    response: Response,
    project_id: str,
    operation: str,
    data: GenerateRequest,
    db: DbSession,
    user_id: CurrentUserId,
    generator: Generator,
) -> GenerateResponse:
    """Generate a story artefact after reserving the token estimate."""
    try:
        usage_type = UsageType(operation)
    except ValueError:
        raise HTTPException(status_code=404, detail=f"Unknown operation: {operation}") from None
    if usage_type not in GENERATION_OPERATIONS:
        raise HTTPException(status_code=404, detail=f"Unknown operation: {operation}")

    try:
        quota = await check_and_reserve(
            db, user_id, tokens_to_add=settings.GENERATION_TOKEN_ESTIMATE
        )
    except UserNotFoundError:
        raise HTTPException(status_code=404, detail="User not found") from None

    if not quota.allowed:
        raise HTTPException(status_code=403, detail=TOKEN_LIMIT_MESSAGE)

    try:
        result = await generator.generate(
            build_generation_prompt(usage_type, data.source, data.language)
        )
    except UpstreamProviderError as e:
        logger.exception(
            "Generation failed",
            user_id=user_id,
            project_id=project_id,
            operation=operation,
            error=str(e),
        )
        raise HTTPException(status_code=500, detail="Failed to generate content") from e

    recorded = await record_usage(
        db,
        user_id=user_id,
        project_id=project_id,
        usage_type=usage_type,
        model=result.model,
        prompt_tokens=result.usage.prompt_tokens,
        completion_tokens=result.usage.completion_tokens,
        total_tokens=result.usage.total_tokens,
        operation_name=f"Generate {operation.replace('_', ' ').title()}",
    )

    return GenerateResponse(
        operation=operation,
        content=result.text,
        model=result.model,
        usage=TokenUsageResponse(**result.usage.model_dump()),
        cost=recorded.cost,
        tokens_remaining=limit_value(quota.tokens_remaining),
    )


@router.post(
    "/projects/{project_id}/scenes/{scene_id}/storyboard",
    response_model=StoryboardResponse,
)
@limiter.limit(RATE_LIMIT_STANDARD)
async def generate_storyboard(
    request: Request,
    response: Response,
    project_id: str,
    scene_id: str,
    data: StoryboardRequest,
    db: DbSession,
    user_id: CurrentUserId,
    generator: Generator,
) -> StoryboardResponse:
    """Produce a storyboard frame prompt, charging one image."""
    image_quota = await check_image_quota(db, user_id)
    if not image_quota.has_quota:
        raise HTTPException(status_code=403, detail=IMAGE_LIMIT_MESSAGE)

    try:
        reservation = await check_and_reserve(db, user_id, images_to_add=1)
    except UserNotFoundError:
        raise HTTPException(status_code=404, detail="User not found") from None

    if not reservation.allowed:
        raise HTTPException(status_code=403, detail=IMAGE_LIMIT_MESSAGE)

    try:
        result = await generator.generate(build_storyboard_prompt(data.scene_description, data.style))
    except UpstreamProviderError as e:
        logger.exception(
            "Storyboard generation failed",
            user_id=user_id,
            project_id=project_id,
            scene_id=scene_id,
            error=str(e),
        )
        raise HTTPException(status_code=500, detail="Failed to generate storyboard") from e

    await track_image_usage(
        db,
        user_id=user_id,
        project_id=project_id,
        scene_id=scene_id,
        model=result.model,
        cost=settings.STORYBOARD_IMAGE_COST_USD,
    )

    return StoryboardResponse(
        scene_id=scene_id,
        image_prompt=result.text,
        model=result.model,
        images_remaining=limit_value(reservation.images_remaining),
    )
