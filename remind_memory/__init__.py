"""Remind Memory: versioned long-term memory for a conversational assistant.

Facts are embedded and stored per user in SQLite. New information is
consolidated by a bounded agent loop that adds, supersedes or retracts
memories; superseded and retracted records stay in the audit trail.
"""

__version__ = "0.1.0"

from .agent import ConsolidationAgent
from .config import Settings
from .embedding import Embedder, OllamaEmbeddingProvider, OpenAIEmbeddingProvider
from .errors import ConfigError, EmbeddingFailure, RemindError, StoreUnavailable, UpdateFailed
from .models import Category, EdgeType, MemoryRecord, SearchHit
from .policy import LLMPolicy, SimilarityPolicy
from .ranker import Ranker
from .service import MemoryService
from .store import MemoryStore

__all__ = [
    "Category",
    "ConfigError",
    "ConsolidationAgent",
    "EdgeType",
    "Embedder",
    "EmbeddingFailure",
    "LLMPolicy",
    "MemoryRecord",
    "MemoryService",
    "MemoryStore",
    "OllamaEmbeddingProvider",
    "OpenAIEmbeddingProvider",
    "Ranker",
    "RemindError",
    "SearchHit",
    "Settings",
    "SimilarityPolicy",
    "StoreUnavailable",
    "UpdateFailed",
]
