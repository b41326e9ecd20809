"""Pydantic models for memory records, search hits and agent runs."""

from __future__ import annotations

import os
import threading
import time
import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, Literal, Union

from pydantic import BaseModel, Field


class Category(str, Enum):
    """What kind of knowledge a memory holds."""

    FACT = "fact"  # user preference, account detail, domain fact
    EPISODE = "episode"  # summary of a past interaction or completed task
    SEMANTIC = "semantic"  # relationship between concepts


class EdgeType(str, Enum):
    """How a superseding record relates to its parent."""

    REPLACE = "replace"
    EXTEND = "extend"


class AgentState(str, Enum):
    """States a consolidation run moves through."""

    IDLE = "idle"
    RETRIEVING = "retrieving"
    DECIDING = "deciding"
    MUTATING = "mutating"
    TERMINATED = "terminated"


class Outcome(str, Enum):
    """Why a consolidation run terminated."""

    SUMMARY = "summary"
    BUDGET_EXCEEDED = "budget_exceeded"


_id_lock = threading.Lock()
_last_id_ms = 0
_id_seq = 0


def new_memory_id() -> str:
    """Return a UUIDv7 string. Ids from one process sort by creation order."""
    global _last_id_ms, _id_seq
    with _id_lock:
        ms = time.time_ns() // 1_000_000
        if ms > _last_id_ms:
            _last_id_ms = ms
            _id_seq = int.from_bytes(os.urandom(2), "big") & 0x3FF
        else:
            # same millisecond (or clock went back): bump the 12-bit counter
            _id_seq += 1
            if _id_seq > 0xFFF:
                _last_id_ms += 1
                _id_seq = 0
        ms = _last_id_ms
        seq = _id_seq
    rand_b = int.from_bytes(os.urandom(8), "big") & ((1 << 62) - 1)
    value = (ms & ((1 << 48) - 1)) << 80
    value |= 0x7 << 76
    value |= seq << 64
    value |= 0b10 << 62
    value |= rand_b
    return str(uuid.UUID(int=value))


class MemoryRecord(BaseModel):
    """One atomic fact, episode or semantic relation owned by a user."""

    id: str = Field(default_factory=new_memory_id)
    user_id: str
    fact: str
    embedding: list[float] = Field(default_factory=list, repr=False)
    category: Category = Field(default=Category.FACT)
    parent_id: str | None = Field(default=None)
    edge_type: EdgeType | None = Field(default=None)
    deleted: bool = Field(default=False)
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def active(self) -> bool:
        return not self.deleted


class SearchHit(BaseModel):
    """A ranked memory with its similarity to the query."""

    record: MemoryRecord
    similarity: float
    match: Literal["semantic", "keyword"] = "semantic"

    def as_dict(self) -> dict:
        """Caller-facing shape: id, fact, similarity, created_at."""
        return {
            "id": self.record.id,
            "fact": self.record.fact,
            "similarity": round(self.similarity, 4),
            "created_at": self.record.created_at.isoformat(),
        }


class DeleteResult(BaseModel):
    """Ids that were actually flipped to deleted by one delete call."""

    deleted_ids: list[str] = Field(default_factory=list)

    @property
    def nothing_deleted(self) -> bool:
        return not self.deleted_ids


# -- Mutation intents ---------------------------------------------------------


class AddIntent(BaseModel):
    action: Literal["add"] = "add"
    content: str
    category: Category = Category.FACT


class UpdateIntent(BaseModel):
    action: Literal["update"] = "update"
    memory_id: str
    content: str
    edge_type: EdgeType = EdgeType.REPLACE
    category: Category = Category.FACT


class DeleteIntent(BaseModel):
    action: Literal["delete"] = "delete"
    ids: list[str]


MutationIntent = Annotated[
    Union[AddIntent, UpdateIntent, DeleteIntent], Field(discriminator="action")
]


class Decision(BaseModel):
    """What a decision policy wants done next.

    An empty ``intents`` list means the policy is finished.
    """

    intents: list[MutationIntent] = Field(default_factory=list)
    summary: str | None = Field(default=None)
    tokens: int = Field(default=0)


class StepRecord(BaseModel):
    """Outcome of dispatching a single intent."""

    index: int
    intent: MutationIntent
    ok: bool
    record_id: str | None = Field(default=None)
    deleted_ids: list[str] = Field(default_factory=list)
    error: str | None = Field(default=None)

    def describe(self) -> str:
        intent = self.intent
        if intent.action == "add":
            what = f"added '{intent.content}'"
        elif intent.action == "update":
            verb = "replaced" if intent.edge_type == EdgeType.REPLACE else "extended"
            what = f"{verb} {intent.memory_id}"
        elif self.deleted_ids:
            what = f"deleted {len(self.deleted_ids)} memories"
        else:
            what = "nothing deleted"
        if self.ok:
            return what
        return f"failed: {intent.action} ({self.error})"


class ConsolidationResult(BaseModel):
    """Everything a consolidation run did."""

    user_id: str
    content: str
    state: AgentState = Field(default=AgentState.IDLE)
    outcome: Outcome | None = Field(default=None)
    summary: str = Field(default="")
    candidates: list[SearchHit] = Field(default_factory=list)
    steps: list[StepRecord] = Field(default_factory=list)
    tokens_used: int = Field(default=0)
    started_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    finished_at: datetime | None = Field(default=None)

    def update_state(self, state: AgentState) -> None:
        self.state = state

    @property
    def failures(self) -> list[StepRecord]:
        return [s for s in self.steps if not s.ok]
