"""Unit tests for the OpenAI client and provider selection."""

import json

import httpx
import pytest

from storymeter.config import Settings
from storymeter.exceptions import ProviderConfigurationError, UpstreamProviderError
from storymeter.providers import GeminiClient, OpenAIClient, build_text_generator


def _client(handler) -> OpenAIClient:
    return OpenAIClient(httpx.AsyncClient(transport=httpx.MockTransport(handler)), api_key="sk-test")


@pytest.mark.unit
@pytest.mark.asyncio
async def test_generate_sends_system_and_user_messages():
    requests: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        return httpx.Response(
            200,
            json={
                "model": "gpt-3.5-turbo-0125",
                "choices": [{"message": {"role": "assistant", "content": "Once upon a time"}}],
                "usage": {"prompt_tokens": 30, "completion_tokens": 10, "total_tokens": 40},
            },
        )

    result = await _client(handler).generate("Tell a story", system_prompt="You are a writer")

    assert result.text == "Once upon a time"
    assert result.model == "gpt-3.5-turbo-0125"
    assert result.usage.total_tokens == 40

    body = json.loads(requests[0].content)
    assert [m["role"] for m in body["messages"]] == ["system", "user"]
    assert requests[0].headers["Authorization"] == "Bearer sk-test"


@pytest.mark.unit
@pytest.mark.asyncio
async def test_http_errors_are_wrapped():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(401, json={"error": {"message": "bad key"}})

    with pytest.raises(UpstreamProviderError) as exc_info:
        await _client(handler).generate("hi")

    assert exc_info.value.provider == "openai"
    assert exc_info.value.status_code == 401


@pytest.mark.unit
@pytest.mark.asyncio
async def test_empty_choices_are_an_error():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"choices": [], "usage": {"prompt_tokens": 9}})

    with pytest.raises(UpstreamProviderError, match="empty or blocked"):
        await _client(handler).generate("hi")


@pytest.mark.unit
@pytest.mark.asyncio
async def test_filtered_choice_without_content_is_an_error():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(
            200,
            json={
                "choices": [{"message": {"role": "assistant", "content": None}, "finish_reason": "content_filter"}],
                "usage": {"prompt_tokens": 9, "completion_tokens": 0, "total_tokens": 9},
            },
        )

    with pytest.raises(UpstreamProviderError) as exc_info:
        await _client(handler).generate("hi")

    assert exc_info.value.provider == "openai"


@pytest.mark.unit
@pytest.mark.asyncio
async def test_non_json_body_is_wrapped():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, text="<html>gateway</html>")

    with pytest.raises(UpstreamProviderError, match="invalid JSON"):
        await _client(handler).generate("hi")


@pytest.mark.unit
def test_build_text_generator_selects_provider():
    http_client = httpx.AsyncClient()

    gemini = build_text_generator(Settings(AI_PROVIDER="gemini", GEMINI_API_KEY="g-key"), http_client)
    openai = build_text_generator(Settings(AI_PROVIDER="openai", OPENAI_API_KEY="o-key"), http_client)

    assert isinstance(gemini, GeminiClient)
    assert isinstance(openai, OpenAIClient)


@pytest.mark.unit
def test_build_text_generator_requires_api_key():
    with pytest.raises(ProviderConfigurationError):
        build_text_generator(Settings(AI_PROVIDER="openai", OPENAI_API_KEY=None), httpx.AsyncClient())
