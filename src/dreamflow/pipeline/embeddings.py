"""Embeddings clients for transcript vectors.

OpenAI is the default. Gemini and a local Ollama server are supported
as alternatives, and the step can be disabled entirely.
"""

import asyncio
from abc import ABC, abstractmethod

import httpx
import openai
from google import genai  # type: ignore[attr-defined]

from dreamflow.config import ConfigurationError, Settings, get_settings, require_secret
from dreamflow.logging import get_logger

log = get_logger("dreamflow.pipeline.embeddings")


class EmbeddingsClient(ABC):
    """Abstract base class for embeddings clients."""

    @abstractmethod
    async def embed_text(self, text: str) -> list[float]:
        """Generate embedding for a single text."""
        raise NotImplementedError

    async def close(self) -> None:
        """Close the client (no-op by default)."""
        return


class OpenAIEmbeddings(EmbeddingsClient):
    """Client for generating embeddings using OpenAI."""

    def __init__(self, api_key: str, *, model: str, dimensions: int | None = None) -> None:
        self._client = openai.AsyncOpenAI(api_key=api_key)
        self._model = model
        self._dimensions = dimensions
        log.info("openai_embeddings_initialized", model=model, dimensions=dimensions)

    async def embed_text(self, text: str) -> list[float]:
        """Generate embedding using OpenAI.

        Args:
            text: The text to embed.

        Returns:
            A list of floats representing the embedding vector.
        """
        if self._dimensions:
            response = await self._client.embeddings.create(
                model=self._model, input=text, dimensions=self._dimensions
            )
        else:
            response = await self._client.embeddings.create(model=self._model, input=text)
        return list(response.data[0].embedding)

    async def close(self) -> None:
        """Close the OpenAI client."""
        await self._client.close()


class GeminiEmbeddings(EmbeddingsClient):
    """Client for generating embeddings using Gemini."""

    def __init__(self, api_key: str, *, model: str) -> None:
        self._client = genai.Client(api_key=api_key)
        self._model = model
        log.info("gemini_embeddings_initialized", model=model)

    async def embed_text(self, text: str) -> list[float]:
        # The Gemini SDK call is synchronous
        result = await asyncio.to_thread(
            self._client.models.embed_content,
            model=self._model,
            contents=text,
        )
        return list(result.embeddings[0].values)  # type: ignore[index, arg-type]


class OllamaEmbeddings(EmbeddingsClient):
    """Client for generating embeddings using a local Ollama server."""

    def __init__(self, base_url: str, *, model: str, timeout: float = 30.0) -> None:
        self._base_url = base_url
        self._model = model
        self._client = httpx.AsyncClient(timeout=timeout)
        log.info("ollama_embeddings_initialized", url=base_url, model=model)

    async def embed_text(self, text: str) -> list[float]:
        response = await self._client.post(
            f"{self._base_url}/api/embed",
            json={"model": self._model, "input": text},
        )
        response.raise_for_status()
        data = response.json()
        # {"embeddings": [[...]]} for a single input
        return list(data["embeddings"][0])

    async def close(self) -> None:
        """Close the HTTP client."""
        await self._client.aclose()


def get_embeddings_client(settings: Settings | None = None) -> EmbeddingsClient | None:
    """Build the configured embeddings client, or None when disabled.

    Raises:
        ConfigurationError: The backend is unknown or its key is missing.
    """
    settings = settings or get_settings()
    backend = settings.embeddings_backend

    if backend == "none":
        return None
    if backend == "openai":
        return OpenAIEmbeddings(
            require_secret(settings.openai_api_key, "OPENAI_API_KEY"),
            model=settings.openai_embedding_model,
            dimensions=settings.openai_embedding_dimensions,
        )
    if backend == "gemini":
        return GeminiEmbeddings(
            require_secret(settings.gemini_api_key, "GEMINI_API_KEY"),
            model=settings.gemini_embedding_model,
        )
    if backend == "ollama":
        return OllamaEmbeddings(
            settings.ollama_url,
            model=settings.ollama_embedding_model,
            timeout=settings.provider_timeout_seconds,
        )

    raise ConfigurationError(f"Unknown embeddings backend: {backend}")
