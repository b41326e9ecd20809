"""Shared fixtures: deterministic embeddings and temp-file stores."""

from __future__ import annotations

import re
import zlib

import numpy as np
import pytest

import remind_memory.errors as errors_mod
from remind_memory.embedding import Embedder
from remind_memory.models import Decision
from remind_memory.ranker import Ranker
from remind_memory.store import MemoryStore

DIMS = 256


class KeywordEmbeddingProvider:
    """Bag-of-words vectors: every word bumps one hashed dimension.

    Texts sharing words are similar; identical texts embed identically.
    Set ``fail = True`` to simulate an unreachable provider.
    """

    def __init__(self):
        self.calls = 0
        self.fail = False

    async def embed(self, texts, dimensions):
        self.calls += 1
        if self.fail:
            raise ConnectionError("embedding provider unreachable")
        return [self.vector(t, dimensions) for t in texts]

    @staticmethod
    def vector(text: str, dimensions: int = DIMS) -> list[float]:
        vec = np.zeros(dimensions, dtype=np.float32)
        for word in re.findall(r"[a-z]+", text.lower()):
            vec[zlib.crc32(word.encode()) % dimensions] += 1.0
        return vec.tolist()


class ScriptedPolicy:
    """Returns queued decisions in order, then empty ones."""

    def __init__(self, *decisions: Decision):
        self.decisions = list(decisions)
        self.contexts = []

    async def decide(self, context):
        self.contexts.append(context)
        if self.decisions:
            return self.decisions.pop(0)
        return Decision()


@pytest.fixture(autouse=True)
def _patch_error_log(tmp_path, monkeypatch):
    """Keep error log writes inside the test's temp directory."""
    monkeypatch.setattr(errors_mod, "DEFAULT_LOG_DIR", tmp_path / "logs")


@pytest.fixture
def provider():
    return KeywordEmbeddingProvider()


@pytest.fixture
def embedder(provider):
    return Embedder(provider, DIMS)


@pytest.fixture
def store(tmp_path, embedder):
    return MemoryStore(tmp_path / "memory.db", embedder)


@pytest.fixture
def ranker(store, embedder, tmp_path):
    return Ranker(store, embedder, error_log_dir=tmp_path / "logs")
