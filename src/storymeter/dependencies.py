"""Shared FastAPI dependencies."""

from typing import Annotated

from fastapi import Depends, HTTPException, Request
from sqlalchemy.ext.asyncio import AsyncSession

from storymeter.database import get_db
from storymeter.middleware.auth import get_current_user_id
from storymeter.middleware.rate_limit import FixedWindowRateLimiter
from storymeter.providers import TextGenerator

DbSession = Annotated[AsyncSession, Depends(get_db)]
CurrentUserId = Annotated[str, Depends(get_current_user_id)]


def get_chat_rate_limiter(request: Request) -> FixedWindowRateLimiter:
    """The chat limiter built at app creation; swap it via app.state."""
    limiter: FixedWindowRateLimiter = request.app.state.chat_rate_limiter
    return limiter


def get_text_generator(request: Request) -> TextGenerator:
    generator: TextGenerator | None = getattr(request.app.state, "text_generator", None)
    if generator is None:
        raise HTTPException(status_code=500, detail="AI provider is not configured")
    return generator


ChatRateLimiter = Annotated[FixedWindowRateLimiter, Depends(get_chat_rate_limiter)]
Generator = Annotated[TextGenerator, Depends(get_text_generator)]
