"""Decision policies for the consolidation agent.

A policy looks at the new content, the similar memories retrieved for it and
what the agent has done so far, and returns the next mutation intents. It
never touches the store itself; the agent dispatches what it returns.

Two policies ship here:

- ``SimilarityPolicy``: deterministic thresholds, no network.
- ``LLMPolicy``: asks a chat model for a JSON action list.
"""

from __future__ import annotations

import json
import logging
import re
from typing import Protocol

from pydantic import BaseModel, Field, TypeAdapter, ValidationError

from .llm import LLMClient, parse_json_block
from .models import (
    AddIntent,
    Category,
    Decision,
    DeleteIntent,
    EdgeType,
    MutationIntent,
    SearchHit,
    StepRecord,
    UpdateIntent,
)

log = logging.getLogger("remind.policy")


class DecisionContext(BaseModel):
    """Everything a policy may look at when deciding."""

    user_id: str
    content: str
    candidates: list[SearchHit] = Field(default_factory=list)
    steps: list[StepRecord] = Field(default_factory=list)
    round: int = 0


class DecisionPolicy(Protocol):
    async def decide(self, context: DecisionContext) -> Decision:
        ...


# ---------------------------------------------------------------------------
# Content screening
# ---------------------------------------------------------------------------

_SENSITIVE = [
    (re.compile(r"\b(password|passcode|passwd|pin code|pin number)\b", re.I), "credential"),
    (re.compile(r"\b(otp|one[- ]time (pass)?code|verification code|2fa code)\b", re.I), "one-time code"),
    (re.compile(r"\b(?:\d[ -]?){13,19}\b"), "card number"),
    (re.compile(r"\b\d{3}-\d{2}-\d{4}\b"), "national id"),
    (re.compile(r"\b(sk-[A-Za-z0-9_-]{16,}|AKIA[0-9A-Z]{16}|gh[pousr]_[A-Za-z0-9]{20,})\b"), "api key"),
]

_EPHEMERAL = frozenset((
    "ok", "okay", "k", "sure", "yes", "no", "yep", "nope", "thanks", "thank you",
    "thx", "hi", "hello", "hey", "bye", "good night", "gn", "lol", "haha", "hmm",
    "got it", "cool", "nice", "great",
))


def screen_content(text: str) -> str | None:
    """Return why ``text`` must not be stored, or None when it may be.

    Sensitive data (credentials, card numbers, one-time codes, keys) and
    ephemeral chatter are never committed.
    """
    normalized = re.sub(r"[^\w\s]", "", (text or "").strip().lower())
    if len(normalized) < 3 or normalized in _EPHEMERAL:
        return "ephemeral"
    for pattern, label in _SENSITIVE:
        if pattern.search(text):
            return f"sensitive ({label})"
    return None


_RETRACTION = re.compile(
    r"^\s*(please\s+)?(forget|disregard|delete|remove)\b"
    r"|\b(no longer relevant|not relevant anymore|doesn't matter anymore|is outdated)\b",
    re.I,
)


def is_retraction(text: str) -> bool:
    """True when ``text`` asks to retire a memory without replacing it."""
    return bool(_RETRACTION.search(text or ""))


# ---------------------------------------------------------------------------
# Similarity policy
# ---------------------------------------------------------------------------

class SimilarityPolicy:
    """Threshold rules over candidate similarity.

    - nothing at or above ``related``: add
    - best match at or above ``duplicate``: already known, no action
    - otherwise update the most recent related memory; ``extend`` when the
      new content contains the old fact, ``replace`` when it doesn't
    - retraction phrasing deletes every related memory
    """

    def __init__(
        self,
        *,
        duplicate: float = 0.97,
        related: float = 0.85,
        category: Category = Category.FACT,
    ):
        if not 0.0 < related <= duplicate <= 1.0:
            raise ValueError("thresholds must satisfy 0 < related <= duplicate <= 1")
        self.duplicate = duplicate
        self.related = related
        self.category = category

    async def decide(self, context: DecisionContext) -> Decision:
        if context.steps:
            return Decision()

        related = [c for c in context.candidates if c.similarity >= self.related]

        if is_retraction(context.content):
            if not related:
                return Decision(summary="nothing to forget")
            return Decision(intents=[DeleteIntent(ids=[c.record.id for c in related])])

        if not related:
            return Decision(intents=[AddIntent(content=context.content, category=self.category)])

        best = max(related, key=lambda c: c.similarity)
        if best.similarity >= self.duplicate:
            return Decision(summary="already known")

        target = max(related, key=lambda c: (c.record.created_at, c.record.id)).record
        if target.fact.lower().rstrip(".") in context.content.lower():
            edge = EdgeType.EXTEND
        else:
            edge = EdgeType.REPLACE
        return Decision(intents=[UpdateIntent(
            memory_id=target.id,
            content=context.content,
            edge_type=edge,
            category=target.category,
        )])


# ---------------------------------------------------------------------------
# LLM policy
# ---------------------------------------------------------------------------

_SYSTEM = (
    "You maintain a user's long-term memory. You are given new information and "
    "the most similar memories already stored. Decide how to store the new "
    "information without creating duplicates or contradictions.\n\n"
    "Each memory is one atomic statement of the form <subject> <verb> <predicate>, "
    "for example 'User likes coffee'. Categories:\n"
    "- fact: user preferences, account details, domain facts\n"
    "- episode: summaries of past interactions or completed tasks\n"
    "- semantic: relationships between concepts\n\n"
    "Rules:\n"
    "- nothing similar stored: add\n"
    "- richer detail for a stored memory: update with edge_type 'extend'\n"
    "- newer or contradicting information: update with edge_type 'replace', "
    "targeting the most recent conflicting memory\n"
    "- explicitly no longer relevant and nothing replaces it: delete\n"
    "- never store greetings, one-off chatter, passwords, codes or card numbers\n\n"
    "Reply with JSON only:\n"
    '{"actions": [{"action": "add", "content": "...", "category": "fact"}, '
    '{"action": "update", "memory_id": "...", "content": "...", "edge_type": "replace", '
    '"category": "fact"}, {"action": "delete", "ids": ["..."]}], '
    '"summary": "what you did in 10 words or less"}\n'
    'Use an empty "actions" list when nothing (more) should be done.'
)

_intent_adapter = TypeAdapter(MutationIntent)


def _render_context(context: DecisionContext) -> str:
    lines = ["Similar stored memories:"]
    if context.candidates:
        for c in context.candidates:
            lines.append(
                f"- id={c.record.id} created={c.record.created_at.isoformat(timespec='seconds')} "
                f"similarity={c.similarity:.3f} category={c.record.category.value}: {c.record.fact}"
            )
    else:
        lines.append("- (none)")
    lines.append("")
    lines.append(f"New information: {context.content}")
    if context.steps:
        lines.append("")
        lines.append("Actions already taken:")
        for s in context.steps:
            result = f"ok id={s.record_id}" if s.ok and s.record_id else ("ok" if s.ok else f"error: {s.error}")
            lines.append(f"- {s.intent.model_dump_json()} -> {result}")
        lines.append("Return only further actions, or an empty list if done.")
    return "\n".join(lines)


class LLMPolicy:
    """Asks a chat model which mutations to make.

    Backend errors and unparseable replies end the run with a note instead of
    raising; the agent treats them like an empty decision.
    """

    def __init__(self, client: LLMClient):
        self.client = client

    async def decide(self, context: DecisionContext) -> Decision:
        try:
            completion = await self.client.complete(_SYSTEM, _render_context(context))
        except Exception as exc:
            log.warning("decision model call failed: %s", exc)
            return Decision(summary="decision model unavailable")

        try:
            data = parse_json_block(completion.text)
        except (json.JSONDecodeError, ValueError):
            log.warning("decision model reply is not JSON: %r", completion.text[:200])
            return Decision(summary="could not parse decision", tokens=completion.tokens)

        if not isinstance(data, dict):
            return Decision(summary="could not parse decision", tokens=completion.tokens)

        intents = []
        for raw in data.get("actions") or []:
            try:
                intents.append(_intent_adapter.validate_python(raw))
            except ValidationError as exc:
                log.warning("dropping invalid action %r: %s", raw, exc.errors()[:1])
        summary = data.get("summary")
        return Decision(
            intents=intents,
            summary=str(summary) if summary else None,
            tokens=completion.tokens,
        )
