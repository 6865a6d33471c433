"""Speech-to-text for recorded dreams."""

from __future__ import annotations

from typing import Protocol

import openai

from dreamflow.config import Settings, get_settings, require_secret
from dreamflow.logging import get_logger

log = get_logger("dreamflow.pipeline.transcription")


class TranscriptionError(Exception):
    """Raised when audio could not be turned into text."""


class Transcriber(Protocol):
    """Converts an audio blob into a transcript."""

    async def transcribe(self, filename: str, audio: bytes) -> str:
        """Return the transcript text for ``audio``."""
        ...

    async def close(self) -> None:
        """Release the underlying HTTP client."""
        ...


class OpenAITranscriber:
    """Transcriber backed by the OpenAI audio transcription endpoint."""

    def __init__(
        self,
        api_key: str,
        *,
        model: str = "whisper-1",
        language: str | None = "en",
        timeout: float = 120.0,
    ) -> None:
        self._client = openai.AsyncOpenAI(api_key=api_key, timeout=timeout)
        self._model = model
        self._language = language
        log.info("openai_transcriber_initialized", model=model, language=language)

    async def transcribe(self, filename: str, audio: bytes) -> str:
        """Transcribe an audio file.

        Args:
            filename: Original name, used by the API to detect the format.
            audio: Raw audio bytes.

        Returns:
            The transcript text, stripped.

        Raises:
            TranscriptionError: The API call failed or returned no text.
        """
        if not audio:
            raise TranscriptionError("Audio file is empty")

        kwargs: dict[str, object] = {"model": self._model, "file": (filename, audio)}
        if self._language:
            kwargs["language"] = self._language

        try:
            response = await self._client.audio.transcriptions.create(**kwargs)  # type: ignore[call-overload]
        except openai.OpenAIError as e:
            log.error("transcription_api_error", model=self._model, error=str(e))
            raise TranscriptionError(str(e)) from e

        text = (getattr(response, "text", "") or "").strip()
        if not text:
            raise TranscriptionError("No transcription text received")

        log.debug("transcription_received", model=self._model, characters=len(text))
        return text

    async def close(self) -> None:
        """Close the OpenAI client."""
        await self._client.close()


def get_transcriber(settings: Settings | None = None) -> Transcriber:
    """Build the configured transcriber."""
    settings = settings or get_settings()
    return OpenAITranscriber(
        require_secret(settings.openai_api_key, "OPENAI_API_KEY"),
        model=settings.transcription_model,
        language=settings.transcription_language or None,
        timeout=settings.service_timeout_seconds,
    )
