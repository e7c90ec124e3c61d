"""
Pytest fixtures for storymeter tests.

This module provides:
- A file-backed SQLite database wired into the app's session factory
- A user factory and a fresh-session user reader
- Bearer tokens signed with the test secret
- A fake text generator and an HTTP client for the app
"""

import os

os.environ.setdefault("ENVIRONMENT", "test")
os.environ.setdefault("JWT_SECRET_KEY", "storymeter-test-secret-key-0123456789abcdef")
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("USAGE_RESET_TASK_ENABLED", "false")

from collections.abc import AsyncGenerator, Awaitable, Callable
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any
from uuid import uuid4

import pytest
import pytest_asyncio
from fastapi import FastAPI
from httpx import ASGITransport, AsyncClient
from jose import jwt
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from storymeter.config import settings
from storymeter.database import Base, User, configure_database, create_engine_for_url
from storymeter.exceptions import UpstreamProviderError
from storymeter.main import create_app
from storymeter.middleware.rate_limit import limiter
from storymeter.providers import GenerationResult, TokenUsage

UserFactory = Callable[..., Awaitable[User]]


def _make_token(user_id: str, email: str | None = None, **claims: Any) -> str:
    """Sign a token the way the identity provider does."""
    payload: dict[str, Any] = {
        "sub": user_id,
        "exp": datetime.now(UTC) + timedelta(hours=1),
        **claims,
    }
    if email:
        payload["email"] = email
    return jwt.encode(payload, settings.JWT_SECRET_KEY, algorithm=settings.JWT_ALGORITHM)


def _auth_headers(user: User) -> dict[str, str]:
    return {"Authorization": f"Bearer {_make_token(user.id, user.email)}"}


class FakeTextGenerator:
    """Records prompts and returns canned results."""

    def __init__(
        self,
        text: str = "Generated text",
        prompt_tokens: int = 120,
        completion_tokens: int = 80,
        model: str = "gemini-2.0-flash",
    ) -> None:
        self.text = text
        self.prompt_tokens = prompt_tokens
        self.completion_tokens = completion_tokens
        self.model = model
        self.error: Exception | None = None
        self.calls: list[dict[str, Any]] = []

    async def generate(
        self,
        prompt: str,
        *,
        system_prompt: str | None = None,
        temperature: float = 0.7,
        max_tokens: int = 8192,
    ) -> GenerationResult:
        self.calls.append(
            {
                "prompt": prompt,
                "system_prompt": system_prompt,
                "temperature": temperature,
                "max_tokens": max_tokens,
            }
        )
        if self.error is not None:
            raise self.error
        return GenerationResult(
            text=self.text,
            usage=TokenUsage(
                prompt_tokens=self.prompt_tokens,
                completion_tokens=self.completion_tokens,
                total_tokens=self.prompt_tokens + self.completion_tokens,
            ),
            model=self.model,
        )

    def fail_with(self, error: Exception | None = None) -> None:
        self.error = error or UpstreamProviderError("gemini", "HTTP 500", status_code=500)


@pytest_asyncio.fixture
async def engine(tmp_path: Path) -> AsyncGenerator[AsyncEngine, None]:
    """Fresh database file per test, installed as the app's engine."""
    test_engine = create_engine_for_url(f"sqlite+aiosqlite:///{tmp_path / 'storymeter.db'}")
    async with test_engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    configure_database(test_engine)
    yield test_engine
    await test_engine.dispose()


@pytest.fixture
def session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False, autoflush=False)


@pytest_asyncio.fixture
async def db(
    session_factory: async_sessionmaker[AsyncSession],
) -> AsyncGenerator[AsyncSession, None]:
    async with session_factory() as session:
        yield session


@pytest.fixture
def make_user(session_factory: async_sessionmaker[AsyncSession]) -> UserFactory:
    """Create a committed user. The usage cycle starts now unless overridden."""

    async def _make_user(**overrides: Any) -> User:
        user_id = overrides.pop("id", str(uuid4()))
        values: dict[str, Any] = {
            "id": user_id,
            "email": f"{user_id}@example.com",
            "subscription_status": "free",
            "token_usage_this_month": 0,
            "image_usage_this_month": 0,
            "usage_reset_date": datetime.now(UTC),
        }
        values.update(overrides)
        async with session_factory() as session:
            user = User(**values)
            session.add(user)
            await session.commit()
        return user

    return _make_user


@pytest.fixture
def read_user(
    session_factory: async_sessionmaker[AsyncSession],
) -> Callable[[str], Awaitable[User | None]]:
    """Read a user through a new session so no cached state leaks in."""

    async def _read_user(user_id: str) -> User | None:
        async with session_factory() as session:
            result = await session.execute(select(User).where(User.id == user_id))
            return result.scalar_one_or_none()

    return _read_user


@pytest.fixture
def fake_generator() -> FakeTextGenerator:
    return FakeTextGenerator()


@pytest.fixture
def app(engine: AsyncEngine, fake_generator: FakeTextGenerator) -> FastAPI:
    application = create_app()
    application.state.text_generator = fake_generator
    limiter.reset()
    return application


@pytest_asyncio.fixture
async def client(app: FastAPI) -> AsyncGenerator[AsyncClient, None]:
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as test_client:
        yield test_client


@pytest.fixture
def make_token() -> Callable[..., str]:
    return _make_token


@pytest.fixture
def auth_headers() -> Callable[[User], dict[str, str]]:
    return _auth_headers
