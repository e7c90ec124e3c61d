"""Gemini client over the generateContent REST endpoint."""

import asyncio
from typing import Any

import httpx
import structlog

from storymeter.exceptions import ProviderRateLimitedError, UpstreamProviderError
from storymeter.providers.base import GenerationResult, TokenUsage

logger = structlog.get_logger()

PROVIDER = "gemini"
_RESOURCE_EXHAUSTED = "RESOURCE_EXHAUSTED"


def _is_rate_limited(response: httpx.Response) -> bool:
    if response.status_code == 429:
        return True
    # Quota errors sometimes arrive with another status but this error status
    return _RESOURCE_EXHAUSTED in response.text.upper().replace(" ", "_")


def _parse_response(data: Any, model: str) -> GenerationResult:
    """Map a generateContent body to a result.

    A body without candidate text (for example a safety block reported in
    promptFeedback.blockReason) is a failed call, not an empty success.
    """
    if not isinstance(data, dict):
        raise UpstreamProviderError(PROVIDER, "malformed response")

    candidates = data.get("candidates") or []
    parts = ((candidates[0].get("content") or {}).get("parts") or []) if candidates else []
    texts = [part["text"] for part in parts if isinstance(part, dict) and part.get("text")]
    if not texts:
        block_reason = (data.get("promptFeedback") or {}).get("blockReason")
        finish_reason = candidates[0].get("finishReason") if candidates else None
        logger.warning(
            "Gemini returned no text",
            model=model,
            block_reason=block_reason,
            finish_reason=finish_reason,
        )
        raise UpstreamProviderError(PROVIDER, "empty or blocked response")

    usage_metadata = data.get("usageMetadata") or {}
    prompt_tokens = int(usage_metadata.get("promptTokenCount") or 0)
    completion_tokens = int(usage_metadata.get("candidatesTokenCount") or 0)
    total_tokens = int(usage_metadata.get("totalTokenCount") or prompt_tokens + completion_tokens)

    return GenerationResult(
        text="".join(texts),
        usage=TokenUsage(
            prompt_tokens=prompt_tokens,
            completion_tokens=completion_tokens,
            total_tokens=total_tokens,
        ),
        model=model,
    )


class GeminiClient:
    """Gemini text generation with backoff on rate limiting.

    Only 429 / RESOURCE_EXHAUSTED responses are retried, after
    initial_delay * 2**attempt seconds. Every other failure is raised
    immediately.
    """

    def __init__(
        self,
        http_client: httpx.AsyncClient,
        api_key: str,
        model: str = "gemini-2.0-flash",
        base_url: str = "https://generativelanguage.googleapis.com/v1beta",
        max_retries: int = 3,
        initial_delay: float = 1.0,
    ) -> None:
        self._http = http_client
        self._api_key = api_key
        self.model = model
        self._base_url = base_url.rstrip("/")
        self.max_retries = max_retries
        self.initial_delay = initial_delay

    def _build_payload(
        self, prompt: str, system_prompt: str | None, temperature: float, max_tokens: int
    ) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "contents": [{"role": "user", "parts": [{"text": prompt}]}],
            "generationConfig": {"temperature": temperature, "maxOutputTokens": max_tokens},
        }
        if system_prompt:
            payload["systemInstruction"] = {"parts": [{"text": system_prompt}]}
        return payload

    async def generate(
        self,
        prompt: str,
        *,
        system_prompt: str | None = None,
        temperature: float = 0.7,
        max_tokens: int = 8192,
    ) -> GenerationResult:
        url = f"{self._base_url}/models/{self.model}:generateContent"
        payload = self._build_payload(prompt, system_prompt, temperature, max_tokens)

        for attempt in range(self.max_retries):
            try:
                response = await self._http.post(
                    url,
                    json=payload,
                    headers={"x-goog-api-key": self._api_key},
                )
            except httpx.RequestError as e:
                raise UpstreamProviderError(PROVIDER, str(e)) from e

            if response.is_success:
                try:
                    data = response.json()
                except ValueError as e:
                    raise UpstreamProviderError(PROVIDER, "invalid JSON response") from e
                return _parse_response(data, self.model)

            if not _is_rate_limited(response):
                logger.error(
                    "Gemini request failed",
                    status_code=response.status_code,
                    model=self.model,
                )
                raise UpstreamProviderError(
                    PROVIDER, f"HTTP {response.status_code}", status_code=response.status_code
                )

            if attempt < self.max_retries - 1:
                delay = self.initial_delay * 2**attempt
                logger.warning(
                    "Gemini rate limited, retrying",
                    delay_seconds=delay,
                    attempt=attempt + 1,
                    max_retries=self.max_retries,
                )
                await asyncio.sleep(delay)

        raise ProviderRateLimitedError(PROVIDER, self.max_retries)
