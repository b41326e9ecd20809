"""Retrieval: rank a user's active memories against a piece of text.

Retrieval is best-effort. A failed query embedding yields an empty result
and a logged ``EmbeddingFailure``; it never aborts the caller's turn.
"""

from __future__ import annotations

import logging

from .embedding import Embedder
from .errors import ConfigError, EmbeddingFailure, log_error
from .models import SearchHit
from .store import MemoryStore

log = logging.getLogger("remind.ranker")

DEFAULT_LIMIT = 10


class Ranker:
    """Semantic and hybrid search over one ``MemoryStore``."""

    def __init__(self, store: MemoryStore, embedder: Embedder, *, error_log_dir=None):
        if store.dimensions != embedder.dimensions:
            raise ConfigError(
                "store and ranker must share one embedding dimensionality",
                component="ranker",
            )
        self.store = store
        self.embedder = embedder
        self._error_log_dir = error_log_dir

    async def search(self, user_id: str, query: str, limit: int = DEFAULT_LIMIT) -> list[SearchHit]:
        """Active memories ordered by similarity, newest first on ties."""
        query = (query or "").strip()
        if not query or limit <= 0:
            return []

        try:
            query_emb = await self.embedder.embed_one(query)
        except EmbeddingFailure as exc:
            log_error(exc, component="ranker", log_dir=self._error_log_dir)
            return []

        ranked = await self.store.search_similar(user_id, query_emb, limit)
        log.debug("search user=%s query=%r -> %d hits", user_id, query[:60], len(ranked))
        return [SearchHit(record=rec, similarity=sim) for rec, sim in ranked]

    async def recall(self, user_id: str, query: str, limit: int = DEFAULT_LIMIT) -> list[SearchHit]:
        """Keyword matches first, then semantic results fill the remaining slots."""
        query = (query or "").strip()
        if not query or limit <= 0:
            return []

        keyword = await self.store.search_keywords(user_id, query, limit)
        hits = [SearchHit(record=rec, similarity=1.0, match="keyword") for rec in keyword]
        if len(hits) >= limit:
            return hits[:limit]

        seen = {h.record.id for h in hits}
        # at most len(hits) of these repeat a keyword hit
        for hit in await self.search(user_id, query, limit):
            if hit.record.id in seen:
                continue
            hits.append(hit)
            seen.add(hit.record.id)
            if len(hits) >= limit:
                break
        return hits
