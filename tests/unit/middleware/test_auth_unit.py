"""Unit tests for authentication middleware helpers."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta

import pytest
from fastapi import FastAPI, HTTPException, Request
from httpx import ASGITransport, AsyncClient
from jose import jwt
from starlette.requests import Request as StarletteRequest

from storymeter.config import settings
from storymeter.middleware import auth as auth_module


def _make_request(headers: dict[str, str] | None = None) -> StarletteRequest:
    scope = {
        "type": "http",
        "path": "/",
        "method": "GET",
        "headers": [(k.lower().encode(), v.encode()) for k, v in (headers or {}).items()],
    }
    return StarletteRequest(scope)


def _token(claims: dict[str, object], secret: str | None = None) -> str:
    payload = {"exp": datetime.now(UTC) + timedelta(minutes=5), **claims}
    return jwt.encode(payload, secret or settings.JWT_SECRET_KEY, algorithm=settings.JWT_ALGORITHM)


@pytest.fixture
def protected_app() -> FastAPI:
    app = FastAPI()
    app.add_middleware(auth_module.AuthMiddleware)

    @app.get("/api/whoami")
    async def whoami(request: Request) -> dict[str, str | None]:
        return {
            "user_id": auth_module.get_current_user_id(request),
            "email": request.state.user_email,
        }

    @app.get("/health")
    async def health() -> dict[str, str]:
        return {"status": "healthy"}

    return app


@pytest.mark.parametrize(
    ("path", "expected"),
    [
        ("/health", True),
        ("/api/subscription/plans", True),
        ("/api/subscription/webhook", True),
        ("/api/docs", True),
        ("/api/docs/oauth2-redirect", True),
        ("/api/docsevil", False),
        ("/api/subscription/status", False),
        ("/api/ai/chat", False),
        ("/health/extra", False),
    ],
)
def test_is_public_path(path: str, expected: bool) -> None:
    assert auth_module._is_public_path(path) is expected


def test_extract_bearer_token() -> None:
    assert auth_module._extract_bearer_token(_make_request({"Authorization": "Bearer abc"})) == "abc"
    assert auth_module._extract_bearer_token(_make_request({"Authorization": "Basic abc"})) is None
    assert auth_module._extract_bearer_token(_make_request({"Authorization": "Bearer "})) is None
    assert auth_module._extract_bearer_token(_make_request()) is None


def test_get_current_user_id_requires_state() -> None:
    request = _make_request()
    with pytest.raises(HTTPException) as exc_info:
        auth_module.get_current_user_id(request)
    assert exc_info.value.status_code == 401

    request.state.user_id = "user-1"
    assert auth_module.get_current_user_id(request) == "user-1"


@pytest.mark.unit
@pytest.mark.asyncio
async def test_middleware_accepts_valid_token(protected_app: FastAPI) -> None:
    token = _token({"sub": "user-42", "email": "writer@example.com"})
    transport = ASGITransport(app=protected_app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        response = await client.get("/api/whoami", headers={"Authorization": f"Bearer {token}"})

    assert response.status_code == 200
    assert response.json() == {"user_id": "user-42", "email": "writer@example.com"}


@pytest.mark.unit
@pytest.mark.asyncio
@pytest.mark.parametrize(
    ("headers", "detail"),
    [
        ({}, "Unauthorized"),
        ({"Authorization": "Bearer not-a-jwt"}, "Invalid or expired token"),
    ],
)
async def test_middleware_rejects_missing_or_malformed_token(
    protected_app: FastAPI, headers: dict[str, str], detail: str
) -> None:
    transport = ASGITransport(app=protected_app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        response = await client.get("/api/whoami", headers=headers)

    assert response.status_code == 401
    assert response.json()["detail"] == detail


@pytest.mark.unit
@pytest.mark.asyncio
async def test_middleware_rejects_wrong_secret_and_expired(protected_app: FastAPI) -> None:
    forged = _token({"sub": "user-1"}, secret="x" * 40)
    expired = jwt.encode(
        {"sub": "user-1", "exp": datetime.now(UTC) - timedelta(minutes=1)},
        settings.JWT_SECRET_KEY,
        algorithm=settings.JWT_ALGORITHM,
    )
    transport = ASGITransport(app=protected_app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        for token in (forged, expired):
            response = await client.get("/api/whoami", headers={"Authorization": f"Bearer {token}"})
            assert response.status_code == 401


@pytest.mark.unit
@pytest.mark.asyncio
async def test_middleware_requires_subject(protected_app: FastAPI) -> None:
    token = _token({"email": "nosub@example.com"})
    transport = ASGITransport(app=protected_app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        response = await client.get("/api/whoami", headers={"Authorization": f"Bearer {token}"})

    assert response.status_code == 401
    assert response.json()["detail"] == "Invalid token - missing user ID"


@pytest.mark.unit
@pytest.mark.asyncio
async def test_public_paths_skip_auth(protected_app: FastAPI) -> None:
    transport = ASGITransport(app=protected_app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        response = await client.get("/health")

    assert response.status_code == 200
