"""Tests for content screening and the decision policies."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, MagicMock

import pytest

from remind_memory.llm import Completion
from remind_memory.models import (
    AddIntent,
    Category,
    DeleteIntent,
    EdgeType,
    MemoryRecord,
    SearchHit,
    StepRecord,
    UpdateIntent,
)
from remind_memory.policy import (
    DecisionContext,
    LLMPolicy,
    SimilarityPolicy,
    _render_context,
    is_retraction,
    screen_content,
)

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


def _hit(fact, similarity, *, age_minutes=0, category=Category.FACT, rid=None):
    record = MemoryRecord(
        user_id="u1",
        fact=fact,
        embedding=[0.0],
        category=category,
        created_at=NOW - timedelta(minutes=age_minutes),
        **({"id": rid} if rid else {}),
    )
    return SearchHit(record=record, similarity=similarity)


def _ctx(content, candidates=(), steps=()):
    return DecisionContext(user_id="u1", content=content, candidates=list(candidates), steps=list(steps))


class TestScreenContent:
    @pytest.mark.parametrize("text", [
        "My password is hunter2",
        "the verification code is 481516",
        "card 4111-1111-1111-1111 expires soon",
        "my ssn is 123-45-6789",
        "use key sk-abcdefghijklmnopqrstuvwx",
    ])
    def test_sensitive(self, text):
        assert screen_content(text).startswith("sensitive")

    @pytest.mark.parametrize("text", ["ok", "Thanks!", "hi", "  ", "", "k."])
    def test_ephemeral(self, text):
        assert screen_content(text) == "ephemeral"

    @pytest.mark.parametrize("text", [
        "User likes coffee",
        "User's birthday is on 12 May",
        "User lives at 221B Baker Street",
    ])
    def test_allowed(self, text):
        assert screen_content(text) is None


class TestRetraction:
    @pytest.mark.parametrize("text", [
        "Forget that I like coffee",
        "please remove my old address",
        "The gym membership is no longer relevant",
    ])
    def test_detected(self, text):
        assert is_retraction(text)

    def test_ordinary_statement(self):
        assert not is_retraction("User forgot their umbrella at work")


class TestSimilarityPolicy:
    @pytest.mark.asyncio
    async def test_adds_when_nothing_related(self):
        decision = await SimilarityPolicy().decide(_ctx("User likes tea", [_hit("User owns a car", 0.3)]))
        assert decision.intents == [AddIntent(content="User likes tea", category=Category.FACT)]

    @pytest.mark.asyncio
    async def test_duplicate_is_already_known(self):
        decision = await SimilarityPolicy().decide(_ctx("User likes tea", [_hit("User likes tea", 0.99)]))
        assert decision.intents == []
        assert decision.summary == "already known"

    @pytest.mark.asyncio
    async def test_extend_when_old_fact_contained(self):
        old = _hit("User likes coffee", 0.9, category=Category.EPISODE)
        decision = await SimilarityPolicy().decide(_ctx("User likes coffee with oat milk", [old]))
        (intent,) = decision.intents
        assert isinstance(intent, UpdateIntent)
        assert intent.memory_id == old.record.id
        assert intent.edge_type == EdgeType.EXTEND
        assert intent.category == Category.EPISODE

    @pytest.mark.asyncio
    async def test_replace_targets_most_recent(self):
        older = _hit("User lives in Berlin", 0.9, age_minutes=60)
        newer = _hit("User lives in Munich", 0.88, age_minutes=5)
        decision = await SimilarityPolicy().decide(_ctx("User lives in Hamburg", [older, newer]))
        (intent,) = decision.intents
        assert intent.memory_id == newer.record.id
        assert intent.edge_type == EdgeType.REPLACE

    @pytest.mark.asyncio
    async def test_retraction_deletes_related(self):
        a = _hit("User has a gym membership", 0.9)
        b = _hit("User goes to the gym on Mondays", 0.86)
        c = _hit("User likes pizza", 0.2)
        decision = await SimilarityPolicy().decide(
            _ctx("Forget my gym membership", [a, b, c]),
        )
        assert decision.intents == [DeleteIntent(ids=[a.record.id, b.record.id])]

    @pytest.mark.asyncio
    async def test_retraction_with_nothing_related(self):
        decision = await SimilarityPolicy().decide(_ctx("Forget my gym membership"))
        assert decision.intents == []
        assert decision.summary == "nothing to forget"

    @pytest.mark.asyncio
    async def test_single_round(self):
        step = StepRecord(index=0, intent=AddIntent(content="User likes tea"), ok=True, record_id="x")
        decision = await SimilarityPolicy().decide(_ctx("User likes tea", steps=[step]))
        assert decision.intents == []

    def test_threshold_order_enforced(self):
        with pytest.raises(ValueError):
            SimilarityPolicy(duplicate=0.8, related=0.9)


class TestLLMPolicy:
    def _client(self, text=None, tokens=42, error=None):
        client = MagicMock()
        if error:
            client.complete = AsyncMock(side_effect=error)
        else:
            client.complete = AsyncMock(return_value=Completion(text, tokens))
        return client

    @pytest.mark.asyncio
    async def test_parses_actions(self):
        client = self._client(
            '```json\n{"actions": ['
            '{"action": "add", "content": "User likes tea", "category": "fact"},'
            '{"action": "update", "memory_id": "m1", "content": "User likes green tea", "edge_type": "extend"},'
            '{"action": "delete", "ids": ["m2"]}'
            '], "summary": "stored tea"}\n```'
        )
        decision = await LLMPolicy(client).decide(_ctx("User likes green tea"))

        assert [i.action for i in decision.intents] == ["add", "update", "delete"]
        assert decision.intents[1].edge_type == EdgeType.EXTEND
        assert decision.intents[2].ids == ["m2"]
        assert decision.summary == "stored tea"
        assert decision.tokens == 42

    @pytest.mark.asyncio
    async def test_invalid_actions_dropped(self):
        client = self._client(
            '{"actions": [{"action": "explode"}, {"action": "update", "content": "no id"},'
            ' {"action": "add", "content": "User likes tea"}]}'
        )
        decision = await LLMPolicy(client).decide(_ctx("User likes tea"))
        assert [i.action for i in decision.intents] == ["add"]

    @pytest.mark.asyncio
    async def test_unparseable_reply(self):
        decision = await LLMPolicy(self._client("I think you should add it")).decide(_ctx("User likes tea"))
        assert decision.intents == []
        assert decision.summary == "could not parse decision"
        assert decision.tokens == 42

    @pytest.mark.asyncio
    async def test_backend_failure(self):
        decision = await LLMPolicy(self._client(error=TimeoutError())).decide(_ctx("User likes tea"))
        assert decision.intents == []
        assert decision.summary == "decision model unavailable"

    @pytest.mark.asyncio
    async def test_prompt_includes_candidates_and_steps(self):
        hit = _hit("User likes coffee", 0.91, rid="m1")
        step = StepRecord(index=0, intent=AddIntent(content="User likes tea"), ok=False, error="boom")
        client = self._client('{"actions": []}')
        await LLMPolicy(client).decide(_ctx("User likes tea", [hit], [step]))

        _, prompt = client.complete.call_args.args
        assert "id=m1" in prompt
        assert "similarity=0.910" in prompt
        assert "error: boom" in prompt


def test_render_context_without_candidates():
    text = _render_context(_ctx("User likes tea"))
    assert "- (none)" in text
    assert text.endswith("New information: User likes tea")
