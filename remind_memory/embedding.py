"""Embedding providers and the ``Embedder`` glue the store depends on.

A provider only has to implement ``embed(texts, dimensions)``. ``Embedder``
wraps it, turns any provider error into ``EmbeddingFailure`` and treats a
vector of the wrong length as a configuration error: every stored embedding
must share one dimensionality.
"""

from __future__ import annotations

import asyncio
import json
import logging
import urllib.request
from typing import Protocol, Sequence

import numpy as np

from .errors import ConfigError, EmbeddingFailure

log = logging.getLogger("remind.embedding")

OLLAMA_URL = "http://localhost:11434"
OPENAI_URL = "https://api.openai.com"


class EmbeddingProvider(Protocol):
    """Anything that can turn strings into fixed-dimension vectors."""

    async def embed(self, texts: list[str], dimensions: int) -> list[Sequence[float]]:
        ...


def _post_json(url: str, payload: dict, headers: dict | None = None, timeout: float = 10) -> dict:
    req = urllib.request.Request(
        url,
        data=json.dumps(payload).encode(),
        headers={"Content-Type": "application/json", **(headers or {})},
    )
    with urllib.request.urlopen(req, timeout=timeout) as resp:
        return json.loads(resp.read())


class OllamaEmbeddingProvider:
    """Embeddings from a local Ollama server (``/api/embed``)."""

    def __init__(self, model: str = "mxbai-embed-large", base_url: str = "", timeout: float = 10):
        self.model = model
        self.base_url = (base_url or OLLAMA_URL).rstrip("/")
        self.timeout = timeout

    async def embed(self, texts: list[str], dimensions: int) -> list[Sequence[float]]:
        return await asyncio.to_thread(self._request, texts, dimensions)

    def _request(self, texts: list[str], dimensions: int) -> list[Sequence[float]]:
        data = _post_json(
            f"{self.base_url}/api/embed",
            {"model": self.model, "input": texts, "dimensions": dimensions},
            timeout=self.timeout,
        )
        embeddings = data.get("embeddings")
        if not embeddings:
            raise EmbeddingFailure("ollama returned no embeddings", detail=str(data)[:200])
        return embeddings


class OpenAIEmbeddingProvider:
    """Embeddings from an OpenAI-compatible ``/v1/embeddings`` endpoint."""

    def __init__(
        self,
        model: str = "text-embedding-3-small",
        api_key: str = "",
        base_url: str = "",
        timeout: float = 10,
    ):
        self.model = model
        self.api_key = api_key
        self.base_url = (base_url or OPENAI_URL).rstrip("/")
        self.timeout = timeout

    async def embed(self, texts: list[str], dimensions: int) -> list[Sequence[float]]:
        return await asyncio.to_thread(self._request, texts, dimensions)

    def _request(self, texts: list[str], dimensions: int) -> list[Sequence[float]]:
        headers = {"Authorization": f"Bearer {self.api_key}"} if self.api_key else {}
        data = _post_json(
            f"{self.base_url}/v1/embeddings",
            {"model": self.model, "input": texts, "dimensions": dimensions},
            headers=headers,
            timeout=self.timeout,
        )
        items = sorted(data.get("data", []), key=lambda item: item.get("index", 0))
        return [item["embedding"] for item in items]


class Embedder:
    """Validating front for an ``EmbeddingProvider`` with a fixed dimensionality."""

    def __init__(self, provider: EmbeddingProvider, dimensions: int):
        if dimensions <= 0:
            raise ConfigError("embedding dimensions must be positive", component="embedding")
        self.provider = provider
        self.dimensions = dimensions

    async def embed_many(self, texts: list[str]) -> list[np.ndarray]:
        """Embed ``texts`` in one provider call.

        Raises ``EmbeddingFailure`` for provider or input problems and
        ``ConfigError`` when the provider's dimensionality is wrong.
        """
        if not texts or any(not t or not t.strip() for t in texts):
            raise EmbeddingFailure("cannot embed empty text")

        try:
            raw = await self.provider.embed(list(texts), self.dimensions)
        except EmbeddingFailure:
            raise
        except Exception as exc:
            log.warning("embedding provider failed: %s", exc)
            raise EmbeddingFailure(detail=str(exc)) from exc

        if raw is None or len(raw) != len(texts):
            got = 0 if raw is None else len(raw)
            raise EmbeddingFailure(f"provider returned {got} vectors for {len(texts)} inputs")

        vectors = []
        for vec in raw:
            try:
                arr = np.asarray(vec, dtype=np.float32)
            except (TypeError, ValueError) as exc:
                raise EmbeddingFailure("malformed embedding vector", detail=str(exc)) from exc
            if arr.ndim != 1 or arr.size == 0 or not np.all(np.isfinite(arr)):
                raise EmbeddingFailure("malformed embedding vector")
            if arr.size != self.dimensions:
                raise ConfigError(
                    f"embedding has {arr.size} dimensions, expected {self.dimensions}",
                    component="embedding",
                )
            vectors.append(arr)
        return vectors

    async def embed_one(self, text: str) -> np.ndarray:
        return (await self.embed_many([text]))[0]


def provider_from_settings(settings) -> EmbeddingProvider:
    """Build the provider named in ``settings.embed_provider``."""
    if settings.embed_provider == "ollama":
        return OllamaEmbeddingProvider(
            model=settings.embed_model,
            base_url=settings.embed_base_url,
            timeout=settings.embed_timeout,
        )
    if settings.embed_provider == "openai":
        return OpenAIEmbeddingProvider(
            model=settings.embed_model,
            api_key=settings.embed_api_key,
            base_url=settings.embed_base_url,
            timeout=settings.embed_timeout,
        )
    raise ConfigError(f"unknown embedding provider: {settings.embed_provider}", component="embedding")
