"""OpenAI chat completions client."""

from typing import Any

import httpx
import structlog

from storymeter.exceptions import UpstreamProviderError
from storymeter.providers.base import GenerationResult, TokenUsage

logger = structlog.get_logger()

PROVIDER = "openai"


class OpenAIClient:
    def __init__(
        self,
        http_client: httpx.AsyncClient,
        api_key: str,
        model: str = "gpt-3.5-turbo",
        base_url: str = "https://api.openai.com/v1",
    ) -> None:
        self._http = http_client
        self._api_key = api_key
        self.model = model
        self._base_url = base_url.rstrip("/")

    async def generate(
        self,
        prompt: str,
        *,
        system_prompt: str | None = None,
        temperature: float = 0.7,
        max_tokens: int = 8192,
    ) -> GenerationResult:
        messages: list[dict[str, str]] = []
        if system_prompt:
            messages.append({"role": "system", "content": system_prompt})
        messages.append({"role": "user", "content": prompt})

        try:
            response = await self._http.post(
                f"{self._base_url}/chat/completions",
                json={
                    "model": self.model,
                    "messages": messages,
                    "temperature": temperature,
                    "max_tokens": max_tokens,
                },
                headers={"Authorization": f"Bearer {self._api_key}"},
            )
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            logger.error(
                "OpenAI request failed",
                status_code=e.response.status_code,
                model=self.model,
            )
            raise UpstreamProviderError(
                PROVIDER, f"HTTP {e.response.status_code}", status_code=e.response.status_code
            ) from e
        except httpx.RequestError as e:
            raise UpstreamProviderError(PROVIDER, str(e)) from e

        try:
            data: Any = response.json()
        except ValueError as e:
            raise UpstreamProviderError(PROVIDER, "invalid JSON response") from e
        if not isinstance(data, dict):
            raise UpstreamProviderError(PROVIDER, "malformed response")

        choices = data.get("choices") or []
        text = ((choices[0].get("message") or {}).get("content") or "") if choices else ""
        if not text:
            logger.warning(
                "OpenAI returned no text",
                model=self.model,
                finish_reason=choices[0].get("finish_reason") if choices else None,
            )
            raise UpstreamProviderError(PROVIDER, "empty or blocked response")

        usage = data.get("usage") or {}
        prompt_tokens = int(usage.get("prompt_tokens") or 0)
        completion_tokens = int(usage.get("completion_tokens") or 0)

        return GenerationResult(
            text=text,
            usage=TokenUsage(
                prompt_tokens=prompt_tokens,
                completion_tokens=completion_tokens,
                total_tokens=int(usage.get("total_tokens") or prompt_tokens + completion_tokens),
            ),
            model=data.get("model") or self.model,
        )
