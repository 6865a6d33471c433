"""Generative model backends for the analysis step.

The default backend speaks the OpenAI chat completions protocol, which
also covers OpenRouter and other compatible gateways. Claude is
available through the Anthropic SDK.
"""

from __future__ import annotations

from typing import Protocol

import anthropic
import openai

from dreamflow.config import ConfigurationError, Settings, get_settings, require_secret
from dreamflow.logging import get_logger

log = get_logger("dreamflow.pipeline.generation")


class GenerationError(Exception):
    """Raised when a generative model call fails."""


class AnalysisGenerator(Protocol):
    """Produces the raw analysis text for a prompt."""

    model_name: str

    async def generate(self, system: str, prompt: str) -> str:
        """Return the model's reply to ``prompt``."""
        ...

    async def close(self) -> None:
        """Release the underlying HTTP client."""
        ...


class OpenAIChatGenerator:
    """Generator using an OpenAI-compatible chat completions endpoint."""

    def __init__(
        self,
        api_key: str,
        *,
        model: str,
        base_url: str | None = None,
        max_tokens: int = 4000,
        temperature: float = 0.3,
        timeout: float = 120.0,
    ) -> None:
        self._client = openai.AsyncOpenAI(api_key=api_key, base_url=base_url, timeout=timeout)
        self.model_name = model
        self._max_tokens = max_tokens
        self._temperature = temperature
        log.info("openai_chat_generator_initialized", model=model, base_url=base_url)

    async def generate(self, system: str, prompt: str) -> str:
        try:
            response = await self._client.chat.completions.create(
                model=self.model_name,
                messages=[
                    {"role": "system", "content": system},
                    {"role": "user", "content": prompt},
                ],
                temperature=self._temperature,
                max_tokens=self._max_tokens,
            )
        except openai.OpenAIError as e:
            log.error("analysis_api_error", model=self.model_name, error=str(e))
            raise GenerationError(str(e)) from e

        if not response.choices:
            raise GenerationError("No analysis content received")
        content = response.choices[0].message.content
        if not content:
            raise GenerationError("No analysis content received")

        if response.usage is not None:
            log.debug(
                "analysis_response_generated",
                model=self.model_name,
                input_tokens=response.usage.prompt_tokens,
                output_tokens=response.usage.completion_tokens,
            )
        return content

    async def close(self) -> None:
        await self._client.close()


class AnthropicGenerator:
    """Generator using Claude through the Anthropic messages API."""

    def __init__(
        self,
        api_key: str,
        *,
        model: str,
        max_tokens: int = 4000,
        temperature: float = 0.3,
        timeout: float = 120.0,
    ) -> None:
        self._client = anthropic.AsyncAnthropic(api_key=api_key, timeout=timeout)
        self.model_name = model
        self._max_tokens = max_tokens
        self._temperature = temperature
        log.info("anthropic_generator_initialized", model=model)

    async def generate(self, system: str, prompt: str) -> str:
        try:
            response = await self._client.messages.create(
                model=self.model_name,
                max_tokens=self._max_tokens,
                temperature=self._temperature,
                system=system,
                messages=[{"role": "user", "content": prompt}],
            )
        except anthropic.APIError as e:
            log.error("claude_api_error", model=self.model_name, error=str(e))
            raise GenerationError(str(e)) from e

        text = "".join(
            block.text for block in response.content if getattr(block, "type", "") == "text"
        )
        if not text:
            raise GenerationError("No analysis content received")

        log.debug(
            "claude_response_generated",
            input_tokens=response.usage.input_tokens,
            output_tokens=response.usage.output_tokens,
        )
        return text

    async def close(self) -> None:
        await self._client.close()


def get_analysis_generator(settings: Settings | None = None) -> AnalysisGenerator:
    """Build the configured analysis backend.

    Raises:
        ConfigurationError: The backend is unknown or its key is missing.
    """
    settings = settings or get_settings()

    if settings.analysis_provider == "anthropic":
        return AnthropicGenerator(
            require_secret(settings.anthropic_api_key, "ANTHROPIC_API_KEY"),
            model=settings.anthropic_model,
            max_tokens=settings.analysis_max_tokens,
            temperature=settings.analysis_temperature,
            timeout=settings.service_timeout_seconds,
        )

    if settings.analysis_provider == "openai":
        return OpenAIChatGenerator(
            require_secret(settings.analysis_api_key, "ANALYSIS_API_KEY"),
            model=settings.analysis_model,
            base_url=settings.analysis_base_url or None,
            max_tokens=settings.analysis_max_tokens,
            temperature=settings.analysis_temperature,
            timeout=settings.service_timeout_seconds,
        )

    raise ConfigurationError(f"Unknown analysis provider: {settings.analysis_provider}")
