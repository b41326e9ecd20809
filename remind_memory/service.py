"""MemoryService: the caller contract used by the conversational pipeline.

Every method takes a ``user_id`` and returns plain dicts. Recoverable
failures come back as ``{"success": False, "error": ...}`` with a short
reason; raw store errors are logged, never returned. ``StoreUnavailable``
still propagates: the turn has to proceed without memory or tell the user
something went wrong, which is the pipeline's call.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Iterable

from .agent import ConsolidationAgent
from .config import Settings
from .embedding import Embedder, provider_from_settings
from .errors import NOTHING_DELETED, ConfigError, EmbeddingFailure, UpdateFailed, log_error
from .extractor import FactExtractor
from .llm import LLMClient
from .models import Category, ConsolidationResult, EdgeType
from .policy import LLMPolicy, SimilarityPolicy
from .ranker import Ranker
from .store import MemoryStore

log = logging.getLogger("remind.service")


class MemoryService:
    """Facade wiring store, ranker, agent and extractor together."""

    def __init__(
        self,
        store: MemoryStore,
        ranker: Ranker,
        agent: ConsolidationAgent,
        extractor: FactExtractor | None = None,
        *,
        search_limit: int = 10,
        error_log_dir: Path | None = None,
    ):
        self.store = store
        self.ranker = ranker
        self.agent = agent
        self.extractor = extractor or FactExtractor(None)
        self.search_limit = search_limit
        self._error_log_dir = error_log_dir

    @classmethod
    def from_settings(cls, settings: Settings) -> "MemoryService":
        """Build the full stack from resolved settings.

        Raises ``ConfigError`` for invalid settings, including a database
        created with a different embedding dimensionality.
        """
        errors = settings.validate()
        if errors:
            raise ConfigError("invalid configuration", component="config", detail="; ".join(errors))

        embedder = Embedder(provider_from_settings(settings), settings.embed_dimensions)
        store = MemoryStore(settings.db_path, embedder, busy_timeout=settings.busy_timeout)
        ranker = Ranker(store, embedder, error_log_dir=settings.error_log_dir)

        client = LLMClient.from_settings(settings)
        if settings.policy == "llm":
            if client is None:
                raise ConfigError(
                    "agent.policy is 'llm' but no ANTHROPIC_API_KEY or OPENAI_API_KEY is set",
                    component="config",
                )
            policy = LLMPolicy(client)
        else:
            policy = SimilarityPolicy(
                duplicate=settings.duplicate_threshold,
                related=settings.related_threshold,
            )

        agent = ConsolidationAgent(
            store,
            ranker,
            policy,
            max_steps=settings.max_steps,
            token_budget=settings.token_budget,
            candidate_limit=settings.candidate_limit,
            error_log_dir=settings.error_log_dir,
        )
        return cls(
            store,
            ranker,
            agent,
            FactExtractor(client),
            search_limit=settings.search_limit,
            error_log_dir=settings.error_log_dir,
        )

    # -- Retrieval --

    async def search(self, user_id: str, query: str, limit: int | None = None) -> list[dict]:
        """Semantic search: ``[{id, fact, similarity, created_at}]``."""
        if limit is None:
            limit = self.search_limit
        hits = await self.ranker.search(user_id, query, limit)
        return [h.as_dict() for h in hits]

    async def recall(self, user_id: str, query: str, limit: int | None = None) -> list[dict]:
        """Keyword matches first, then semantic matches."""
        if limit is None:
            limit = self.search_limit
        hits = await self.ranker.recall(user_id, query, limit)
        return [{**h.as_dict(), "match": h.match} for h in hits]

    # -- Mutations --

    async def add(self, user_id: str, content: str, category: str = "fact") -> dict:
        try:
            record = await self.store.add(user_id, content, Category(category))
        except (EmbeddingFailure, ValueError) as exc:
            log_error(exc, component="service", log_dir=self._error_log_dir)
            return {"success": False, "error": _public_reason(exc)}
        return {"success": True, "id": record.id, "memory": record.fact}

    async def update(
        self,
        user_id: str,
        memory_id: str,
        content: str,
        edge_type: str = "replace",
        category: str = "fact",
    ) -> dict:
        try:
            record = await self.store.update(
                user_id, memory_id, content, EdgeType(edge_type), Category(category),
            )
        except (UpdateFailed, ValueError) as exc:
            log_error(exc, component="service", log_dir=self._error_log_dir)
            return {"success": False, "error": _public_reason(exc)}
        return {"success": True, "id": record.id, "parent_id": memory_id, "memory": record.fact}

    async def delete(self, user_id: str, ids: Iterable[str]) -> dict:
        result = await self.store.delete(user_id, ids)
        response = {"success": True, "deleted_ids": result.deleted_ids}
        if result.nothing_deleted:
            response["status"] = NOTHING_DELETED
        return response

    # -- Consolidation --

    async def remember(self, user_id: str, content: str) -> dict:
        """Let the consolidation agent decide how ``content`` is stored."""
        result = await self.agent.run(user_id, content)
        return _run_to_dict(result)

    async def ingest_conversation(self, user_id: str, conversation: str) -> dict:
        """Extract facts from a conversation and consolidate each in turn."""
        facts = await self.extractor.extract(conversation)
        runs = []
        for fact in facts:
            runs.append(_run_to_dict(await self.agent.run(user_id, fact)))
        return {"success": True, "facts": facts, "runs": runs}

    # -- Audit --

    async def history(self, user_id: str, memory_id: str) -> list[dict]:
        """A memory and every version it superseded, newest first."""
        chain = await self.store.lineage(user_id, memory_id)
        return [
            {
                "id": r.id,
                "fact": r.fact,
                "category": r.category.value,
                "edge_type": r.edge_type.value if r.edge_type else None,
                "deleted": r.deleted,
                "created_at": r.created_at.isoformat(),
            }
            for r in chain
        ]


def _public_reason(exc: Exception) -> str:
    if isinstance(exc, UpdateFailed):
        return exc.reason
    if isinstance(exc, EmbeddingFailure):
        return "failed to generate embeddings"
    return str(exc)


def _run_to_dict(result: ConsolidationResult) -> dict:
    return {
        "success": not result.failures,
        "outcome": result.outcome.value if result.outcome else None,
        "summary": result.summary,
        "steps": [
            {
                "action": s.intent.action,
                "ok": s.ok,
                "id": s.record_id,
                "deleted_ids": s.deleted_ids,
                "error": s.error,
            }
            for s in result.steps
        ],
        "tokens": result.tokens_used,
    }
