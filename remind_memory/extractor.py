"""FactExtractor: pull atomic facts worth remembering out of a conversation.

Uses the configured chat backend. Without one, or when the call fails, it
returns no facts: storing raw conversation text would defeat the
one-fact-per-record model.
"""

from __future__ import annotations

import json
import logging

from .llm import LLMClient, parse_json_block

log = logging.getLogger("remind.extractor")

MAX_FACTS = 5
MAX_CONVERSATION_CHARS = 8000

_SYSTEM = (
    "Extract the memories worth keeping from this conversation so you can use "
    "them when talking with the user later. Each memory is one atomic statement "
    "<subject> <verb> <predicate>, for example:\n"
    "- User likes coffee\n"
    "- User is interested in LLMs and AI\n"
    "- User's friends went home for the holidays\n"
    "Skip pleasantries, one-off requests and secrets.\n"
    'Reply with JSON only: {"no_info": true|false, "info": ["...", "..."]}'
)


class FactExtractor:
    """Extract up to five atomic facts from a conversation string."""

    def __init__(self, client: LLMClient | None):
        self.client = client

    async def extract(self, conversation: str) -> list[str]:
        if not conversation or not conversation.strip():
            return []
        if self.client is None:
            log.debug("no LLM backend configured; nothing extracted")
            return []

        try:
            completion = await self.client.complete(_SYSTEM, conversation[:MAX_CONVERSATION_CHARS])
        except Exception as exc:
            log.warning("fact extraction failed: %s", exc)
            return []

        try:
            data = parse_json_block(completion.text)
        except (json.JSONDecodeError, ValueError):
            # tolerate a plain one-fact-per-line reply
            data = {"info": completion.text.splitlines()}

        if not isinstance(data, dict) or data.get("no_info"):
            return []

        facts = []
        for line in data.get("info") or []:
            fact = str(line).strip().lstrip("-*• ").strip()
            if fact and not fact.startswith("#"):
                facts.append(fact)
        log.debug("extracted %d facts (%d tokens)", len(facts), completion.tokens)
        return facts[:MAX_FACTS]
