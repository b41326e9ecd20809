"""Tests for MemoryService (the caller contract) and the MCP server wiring."""

from __future__ import annotations

from unittest.mock import AsyncMock, patch

import pytest

from remind_memory.config import _ENV_MAP, Settings
from remind_memory.errors import ConfigError, StoreUnavailable
from remind_memory.extractor import FactExtractor
from remind_memory.policy import LLMPolicy, SimilarityPolicy
from remind_memory.server import build_server
from remind_memory.service import MemoryService

from conftest import DIMS, KeywordEmbeddingProvider


@pytest.fixture(autouse=True)
def _isolated_env(tmp_path, monkeypatch):
    for key in _ENV_MAP:
        monkeypatch.delenv(key, raising=False)
    monkeypatch.delenv("ANTHROPIC_API_KEY", raising=False)
    monkeypatch.delenv("OPENAI_API_KEY", raising=False)
    monkeypatch.setenv("HOME", str(tmp_path / "home"))


def _settings(tmp_path, **overrides):
    data = {"data_dir": str(tmp_path / "data"), "embedding": {"dimensions": DIMS}}
    for section, values in overrides.items():
        data.setdefault(section, {}).update(values)
    return Settings(tmp_path / "missing.yaml", overrides=data)


@pytest.fixture
def service(tmp_path):
    svc = MemoryService.from_settings(_settings(tmp_path))
    svc.store.embedder.provider = KeywordEmbeddingProvider()
    return svc


class TestFromSettings:
    def test_similarity_policy_by_default(self, tmp_path):
        svc = MemoryService.from_settings(_settings(tmp_path))
        assert isinstance(svc.agent.policy, SimilarityPolicy)
        assert svc.store.db_path == tmp_path / "data" / "memory.db"
        assert svc.extractor.client is None

    def test_invalid_settings(self, tmp_path):
        with pytest.raises(ConfigError) as exc_info:
            MemoryService.from_settings(_settings(tmp_path, agent={"max_steps": 0}))
        assert "max_steps" in exc_info.value.detail

    def test_llm_policy_requires_key(self, tmp_path):
        with pytest.raises(ConfigError):
            MemoryService.from_settings(_settings(tmp_path, agent={"policy": "llm"}))

    def test_llm_policy_with_key(self, tmp_path, monkeypatch):
        monkeypatch.setenv("OPENAI_API_KEY", "sk-test")
        svc = MemoryService.from_settings(_settings(tmp_path, agent={"policy": "llm"}))
        assert isinstance(svc.agent.policy, LLMPolicy)
        assert svc.agent.policy.client.backend == "openai"

    def test_dimension_change_rejected(self, tmp_path):
        MemoryService.from_settings(_settings(tmp_path))
        with pytest.raises(ConfigError):
            MemoryService.from_settings(_settings(tmp_path, embedding={"dimensions": DIMS * 2}))


class TestCallerContract:
    @pytest.mark.asyncio
    async def test_add_and_search(self, service):
        added = await service.add("u1", "User likes coffee")
        assert added["success"] is True

        results = await service.search("u1", "coffee")
        assert results[0]["id"] == added["id"]
        assert set(results[0]) == {"id", "fact", "similarity", "created_at"}

    @pytest.mark.asyncio
    async def test_zero_limit_returns_nothing(self, service):
        for n in range(3):
            await service.add("u1", f"User visited city number {n}")
        assert await service.search("u1", "city", 0) == []
        assert await service.recall("u1", "city", 0) == []
        assert len(await service.search("u1", "city")) == 3

    @pytest.mark.asyncio
    async def test_recall_marks_match_kind(self, service):
        await service.add("u1", "User plays chess")
        results = await service.recall("u1", "chess")
        assert results[0]["match"] == "keyword"

    @pytest.mark.asyncio
    async def test_add_rejects_bad_input(self, service):
        assert (await service.add("u1", "   "))["success"] is False
        assert (await service.add("u1", "User likes tea", "opinion"))["success"] is False

    @pytest.mark.asyncio
    async def test_add_embedding_failure(self, service):
        service.store.embedder.provider.fail = True
        result = await service.add("u1", "User likes tea")
        assert result == {"success": False, "error": "failed to generate embeddings"}

    @pytest.mark.asyncio
    async def test_update(self, service):
        parent = await service.add("u1", "User likes coffee")
        result = await service.update("u1", parent["id"], "User likes tea", "replace")
        assert result["success"] is True
        assert result["parent_id"] == parent["id"]

        again = await service.update("u1", parent["id"], "User likes water")
        assert again == {"success": False, "error": "parent memory already deleted"}

    @pytest.mark.asyncio
    async def test_update_other_users_memory(self, service):
        parent = await service.add("u1", "User likes coffee")
        result = await service.update("u2", parent["id"], "User likes tea")
        assert result["success"] is False

    @pytest.mark.asyncio
    async def test_delete(self, service):
        rec = await service.add("u1", "User likes coffee")
        assert await service.delete("u1", [rec["id"]]) == {"success": True, "deleted_ids": [rec["id"]]}
        again = await service.delete("u1", [rec["id"]])
        assert again == {"success": True, "deleted_ids": [], "status": "nothing_deleted"}

    @pytest.mark.asyncio
    async def test_history(self, service):
        a = await service.add("u1", "User likes coffee")
        b = await service.update("u1", a["id"], "User likes coffee with milk", "extend")
        chain = await service.history("u1", b["id"])
        assert [r["id"] for r in chain] == [b["id"], a["id"]]
        assert chain[0]["edge_type"] == "extend"
        assert chain[1]["deleted"] is True

    @pytest.mark.asyncio
    async def test_remember(self, service):
        first = await service.remember("u1", "User is vegetarian")
        assert first["success"] is True
        assert first["outcome"] == "summary"
        assert first["steps"][0]["action"] == "add"

        second = await service.remember("u1", "User is vegetarian")
        assert second["steps"] == []
        assert second["summary"] == "already known"

    @pytest.mark.asyncio
    async def test_ingest_conversation(self, service):
        service.extractor = FactExtractor(None)
        service.extractor.extract = AsyncMock(return_value=["User has a cat", "User lives in Oslo"])
        result = await service.ingest_conversation("u1", "user: my cat and I love Oslo")
        assert result["facts"] == ["User has a cat", "User lives in Oslo"]
        assert len(result["runs"]) == 2
        assert len(await service.store.list("u1")) == 2

    @pytest.mark.asyncio
    async def test_store_unavailable_propagates(self, service):
        with patch.object(service.store, "delete", AsyncMock(side_effect=StoreUnavailable())):
            with pytest.raises(StoreUnavailable):
                await service.delete("u1", ["x"])


class TestServer:
    @pytest.mark.asyncio
    async def test_tools_registered(self, service):
        mcp = build_server(service)
        names = {tool.name for tool in await mcp.list_tools()}
        assert names == {
            "search_memories", "remember", "add_memory", "update_memory", "delete_memories",
        }
