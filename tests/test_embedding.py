"""Tests for Embedder validation and the HTTP embedding providers."""

from __future__ import annotations

import io
import json
from types import SimpleNamespace
from unittest.mock import patch

import numpy as np
import pytest

from remind_memory.embedding import (
    Embedder,
    OllamaEmbeddingProvider,
    OpenAIEmbeddingProvider,
    provider_from_settings,
)
from remind_memory.errors import ConfigError, EmbeddingFailure


class FixedProvider:
    def __init__(self, result=None, error=None):
        self.result = result
        self.error = error

    async def embed(self, texts, dimensions):
        if self.error:
            raise self.error
        return self.result


class _Response(io.BytesIO):
    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.close()


def _urlopen_returning(payload, captured):
    def fake_urlopen(req, timeout=None):
        captured.append(req)
        return _Response(json.dumps(payload).encode())
    return fake_urlopen


class TestEmbedder:
    @pytest.mark.asyncio
    async def test_returns_float32_vectors(self):
        vectors = await Embedder(FixedProvider([[1, 2, 3], [4, 5, 6]]), 3).embed_many(["a", "b"])
        assert [v.dtype for v in vectors] == [np.float32, np.float32]
        assert vectors[1].tolist() == [4.0, 5.0, 6.0]

    @pytest.mark.asyncio
    async def test_provider_error_wrapped(self):
        embedder = Embedder(FixedProvider(error=ConnectionError("refused")), 3)
        with pytest.raises(EmbeddingFailure) as exc_info:
            await embedder.embed_one("hello")
        assert exc_info.value.detail == "refused"
        assert isinstance(exc_info.value.__cause__, ConnectionError)

    @pytest.mark.asyncio
    async def test_wrong_dimensions_is_config_error(self):
        with pytest.raises(ConfigError):
            await Embedder(FixedProvider([[1.0, 2.0]]), 3).embed_one("hello")

    @pytest.mark.asyncio
    async def test_count_mismatch(self):
        with pytest.raises(EmbeddingFailure):
            await Embedder(FixedProvider([[1.0, 2.0, 3.0]]), 3).embed_many(["a", "b"])

    @pytest.mark.asyncio
    @pytest.mark.parametrize("vector", [[1.0, float("nan"), 0.0], [], ["x", "y", "z"]])
    async def test_malformed_vector(self, vector):
        with pytest.raises(EmbeddingFailure):
            await Embedder(FixedProvider([vector]), 3).embed_one("hello")

    @pytest.mark.asyncio
    async def test_empty_text(self):
        provider = FixedProvider([[1.0, 2.0, 3.0]])
        with pytest.raises(EmbeddingFailure):
            await Embedder(provider, 3).embed_one("  ")

    def test_dimensions_must_be_positive(self):
        with pytest.raises(ConfigError):
            Embedder(FixedProvider(), 0)


class TestProviders:
    @pytest.mark.asyncio
    async def test_ollama(self):
        captured = []
        fake = _urlopen_returning({"embeddings": [[0.1, 0.2]]}, captured)
        with patch("remind_memory.embedding.urllib.request.urlopen", fake):
            result = await OllamaEmbeddingProvider(model="m", base_url="http://host:1/").embed(["hi"], 2)

        assert result == [[0.1, 0.2]]
        assert captured[0].full_url == "http://host:1/api/embed"
        assert json.loads(captured[0].data) == {"model": "m", "input": ["hi"], "dimensions": 2}

    @pytest.mark.asyncio
    async def test_ollama_without_embeddings(self):
        fake = _urlopen_returning({"error": "model not found"}, [])
        with patch("remind_memory.embedding.urllib.request.urlopen", fake):
            with pytest.raises(EmbeddingFailure):
                await OllamaEmbeddingProvider().embed(["hi"], 2)

    @pytest.mark.asyncio
    async def test_openai_sorted_by_index(self):
        captured = []
        payload = {"data": [
            {"index": 1, "embedding": [0.3, 0.4]},
            {"index": 0, "embedding": [0.1, 0.2]},
        ]}
        with patch("remind_memory.embedding.urllib.request.urlopen", _urlopen_returning(payload, captured)):
            result = await OpenAIEmbeddingProvider(api_key="sk-test").embed(["a", "b"], 2)

        assert result == [[0.1, 0.2], [0.3, 0.4]]
        assert captured[0].full_url == "https://api.openai.com/v1/embeddings"
        assert captured[0].get_header("Authorization") == "Bearer sk-test"


class TestProviderFromSettings:
    def _settings(self, provider):
        return SimpleNamespace(
            embed_provider=provider,
            embed_model="m",
            embed_base_url="",
            embed_api_key="k",
            embed_timeout=3.0,
        )

    def test_ollama(self):
        assert isinstance(provider_from_settings(self._settings("ollama")), OllamaEmbeddingProvider)

    def test_openai(self):
        p = provider_from_settings(self._settings("openai"))
        assert isinstance(p, OpenAIEmbeddingProvider)
        assert p.api_key == "k"

    def test_unknown(self):
        with pytest.raises(ConfigError):
            provider_from_settings(self._settings("carrier-pigeon"))
