"""Provider-neutral types for text generation."""

from typing import Protocol

from pydantic import BaseModel


class TokenUsage(BaseModel):
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0


class GenerationResult(BaseModel):
    """Text returned by a provider with the token counts it reported."""

    text: str
    usage: TokenUsage
    model: str


class TextGenerator(Protocol):
    """Anything that can turn a prompt into text with usage metadata."""

    model: str

    async def generate(
        self,
        prompt: str,
        *,
        system_prompt: str | None = None,
        temperature: float = 0.7,
        max_tokens: int = 8192,
    ) -> GenerationResult: ...
