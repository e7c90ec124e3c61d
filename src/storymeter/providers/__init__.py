"""AI text generation providers."""

import httpx

from storymeter.config import Settings
from storymeter.exceptions import ProviderConfigurationError
from storymeter.providers.base import GenerationResult, TextGenerator, TokenUsage
from storymeter.providers.gemini import GeminiClient
from storymeter.providers.openai import OpenAIClient


def build_text_generator(settings: Settings, http_client: httpx.AsyncClient) -> TextGenerator:
    """Create the configured provider client.

    Raises:
        ProviderConfigurationError: the selected provider has no API key
    """
    if settings.AI_PROVIDER == "openai":
        if not settings.OPENAI_API_KEY:
            raise ProviderConfigurationError("openai")
        return OpenAIClient(
            http_client,
            api_key=settings.OPENAI_API_KEY,
            model=settings.OPENAI_MODEL,
            base_url=settings.OPENAI_API_URL,
        )

    if not settings.GEMINI_API_KEY:
        raise ProviderConfigurationError("gemini")
    return GeminiClient(
        http_client,
        api_key=settings.GEMINI_API_KEY,
        model=settings.GEMINI_MODEL,
        base_url=settings.GEMINI_API_URL,
        max_retries=settings.PROVIDER_MAX_RETRIES,
        initial_delay=settings.PROVIDER_RETRY_INITIAL_DELAY,
    )


__all__ = [
    "GeminiClient",
    "GenerationResult",
    "OpenAIClient",
    "TextGenerator",
    "TokenUsage",
    "build_text_generator",
]
