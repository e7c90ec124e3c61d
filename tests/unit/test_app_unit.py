"""Unit tests for application assembly, background reset and logging setup."""

import asyncio
import json
from unittest.mock import AsyncMock

import pytest
from starlette.requests import Request

from storymeter import main
from storymeter.config import settings
from storymeter.log_config import _before_send, _before_send_transaction, init_sentry


def _make_request(path: str = "/api/ai/chat") -> Request:
    return Request({"type": "http", "path": path, "method": "POST", "headers": []})


@pytest.mark.unit
@pytest.mark.asyncio
async def test_global_exception_handler_hides_details():
    response = await main._global_exception_handler(_make_request(), RuntimeError("db password leaked"))

    assert response.status_code == 500
    body = json.loads(response.body)
    assert body["detail"] == "An internal error occurred. Please try again later."
    assert len(body["error_id"]) == 8
    assert "password" not in response.body.decode()


@pytest.mark.unit
@pytest.mark.asyncio
async def test_usage_reset_task_runs_until_cancelled(engine, monkeypatch):
    """Test one reset pass runs and cancellation ends the loop cleanly."""
    reset = AsyncMock(return_value=3)
    monkeypatch.setattr(main, "reset_monthly_usage", reset)

    async def cancel_on_sleep(delay: float) -> None:
        raise asyncio.CancelledError

    monkeypatch.setattr(main.asyncio, "sleep", cancel_on_sleep)

    await main.usage_reset_background_task(interval_seconds=10)

    reset.assert_awaited_once()


@pytest.mark.unit
@pytest.mark.asyncio
async def test_usage_reset_task_survives_errors(engine, monkeypatch):
    """Test a failing pass is logged and the loop backs off instead of exiting."""
    reset = AsyncMock(side_effect=[RuntimeError("db down"), 0])
    monkeypatch.setattr(main, "reset_monthly_usage", reset)
    delays: list[float] = []

    async def record_sleep(delay: float) -> None:
        delays.append(delay)
        if len(delays) == 2:
            raise asyncio.CancelledError

    monkeypatch.setattr(main.asyncio, "sleep", record_sleep)

    await main.usage_reset_background_task(interval_seconds=10)

    assert delays == [60, 10]
    assert reset.await_count == 2


@pytest.mark.unit
@pytest.mark.asyncio
async def test_lifespan_without_provider_key(engine, monkeypatch):
    """Test startup tolerates a missing provider key and leaves AI routes unconfigured."""
    monkeypatch.setattr(settings, "AI_PROVIDER", "gemini")
    monkeypatch.setattr(settings, "GEMINI_API_KEY", None)
    monkeypatch.setattr(settings, "USAGE_RESET_TASK_ENABLED", False)
    app = main.create_app()

    async with main.lifespan(app):
        assert app.state.text_generator is None
        assert app.state.chat_rate_limiter.limit == settings.CHAT_RATE_LIMIT_REQUESTS


@pytest.mark.unit
@pytest.mark.asyncio
async def test_lifespan_builds_provider(engine, monkeypatch):
    monkeypatch.setattr(settings, "AI_PROVIDER", "gemini")
    monkeypatch.setattr(settings, "GEMINI_API_KEY", "test-key")
    monkeypatch.setattr(settings, "USAGE_RESET_TASK_ENABLED", False)
    app = main.create_app()

    async with main.lifespan(app):
        assert app.state.text_generator.model == settings.GEMINI_MODEL


@pytest.mark.unit
def test_sentry_disabled_without_dsn(monkeypatch):
    monkeypatch.delenv("SENTRY_DSN", raising=False)

    assert init_sentry("storymeter", dsn=None) is False


@pytest.mark.unit
def test_sentry_scrubs_sensitive_headers():
    event = {
        "request": {
            "headers": {
                "Authorization": "Bearer secret",
                "X-Razorpay-Signature": "abc",
                "Accept": "application/json",
            }
        }
    }

    scrubbed = _before_send(event, {})

    assert scrubbed["request"]["headers"] == {
        "Authorization": "[Filtered]",
        "X-Razorpay-Signature": "[Filtered]",
        "Accept": "application/json",
    }


@pytest.mark.unit
def test_sentry_drops_health_transactions():
    assert _before_send_transaction({"transaction": "/health"}, {}) is None
    assert _before_send_transaction({"transaction": "generate"}, {}) is not None
