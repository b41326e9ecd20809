"""ConsolidationAgent: bounded loop that turns new content into store mutations.

Drives each run through the state machine:
idle -> retrieving -> deciding -> (mutating -> deciding)* -> terminated

The policy decides, the agent executes. Termination, budgets and dispatch
are plain control flow, so a run always ends within ``max_steps`` mutations
no matter what the policy returns.
"""

from __future__ import annotations

import logging
from collections import deque
from datetime import datetime, timezone

from .errors import RemindError, is_fatal, log_error
from .models import (
    AgentState,
    ConsolidationResult,
    MutationIntent,
    Outcome,
    StepRecord,
)
from .policy import DecisionContext, DecisionPolicy, screen_content
from .ranker import Ranker
from .store import MemoryStore

log = logging.getLogger("remind.agent")

DEFAULT_MAX_STEPS = 5


class ConsolidationAgent:
    """Consolidates one piece of new content into a user's memories.

    Usage:
        agent = ConsolidationAgent(store, ranker, SimilarityPolicy())
        result = await agent.run("u1", "User switched from coffee to tea")
        print(result.outcome, result.summary)
    """

    def __init__(
        self,
        store: MemoryStore,
        ranker: Ranker,
        policy: DecisionPolicy,
        *,
        max_steps: int = DEFAULT_MAX_STEPS,
        token_budget: int | None = None,
        candidate_limit: int = 10,
        error_log_dir=None,
    ):
        if max_steps < 1:
            raise ValueError("max_steps must be at least 1")
        self.store = store
        self.ranker = ranker
        self.policy = policy
        self.max_steps = max_steps
        self.token_budget = token_budget
        self.candidate_limit = candidate_limit
        self._error_log_dir = error_log_dir

    async def run(self, user_id: str, content: str) -> ConsolidationResult:
        """Run the loop once for ``content``.

        Mutation failures are recorded on their step and reported in the
        summary. ``StoreUnavailable`` (and configuration errors) propagate:
        the turn cannot continue without a store.
        """
        content = (content or "").strip()
        result = ConsolidationResult(user_id=user_id, content=content)

        reason = screen_content(content)
        if reason:
            log.info("not storing content for user=%s: %s", user_id, reason)
            return self._finish(result, Outcome.SUMMARY, f"no action ({reason})")

        result.update_state(AgentState.RETRIEVING)
        result.candidates = await self.ranker.search(user_id, content, self.candidate_limit)

        pending: deque[MutationIntent] = deque()
        policy_summary: str | None = None
        round_no = 0

        while True:
            if not pending:
                result.update_state(AgentState.DECIDING)
                decision = await self.policy.decide(DecisionContext(
                    user_id=user_id,
                    content=content,
                    candidates=result.candidates,
                    steps=list(result.steps),
                    round=round_no,
                ))
                round_no += 1
                result.tokens_used += decision.tokens
                if decision.summary:
                    policy_summary = decision.summary

                if self.token_budget is not None and result.tokens_used > self.token_budget:
                    log.warning(
                        "token budget exceeded for user=%s (%d > %d)",
                        user_id, result.tokens_used, self.token_budget,
                    )
                    return self._finish(result, Outcome.BUDGET_EXCEEDED, policy_summary)
                if not decision.intents:
                    return self._finish(result, Outcome.SUMMARY, policy_summary)
                pending.extend(decision.intents)

            if len(result.steps) >= self.max_steps:
                log.warning("step cap (%d) reached for user=%s", self.max_steps, user_id)
                return self._finish(result, Outcome.BUDGET_EXCEEDED, policy_summary)

            result.update_state(AgentState.MUTATING)
            step = await self._dispatch(user_id, len(result.steps), pending.popleft())
            result.steps.append(step)

    async def _dispatch(self, user_id: str, index: int, intent: MutationIntent) -> StepRecord:
        """Execute one intent. Only fatal errors escape."""
        if intent.action in ("add", "update"):
            reason = screen_content(intent.content)
            if reason:
                return StepRecord(index=index, intent=intent, ok=False, error=f"refused: {reason}")

        try:
            if intent.action == "add":
                record = await self.store.add(user_id, intent.content, intent.category)
                return StepRecord(index=index, intent=intent, ok=True, record_id=record.id)
            if intent.action == "update":
                record = await self.store.update(
                    user_id, intent.memory_id, intent.content, intent.edge_type, intent.category,
                )
                return StepRecord(index=index, intent=intent, ok=True, record_id=record.id)
            deleted = await self.store.delete(user_id, intent.ids)
            return StepRecord(index=index, intent=intent, ok=True, deleted_ids=deleted.deleted_ids)
        except (RemindError, ValueError) as exc:
            if is_fatal(exc):
                raise
            log_error(exc, component="agent", log_dir=self._error_log_dir)
            error = getattr(exc, "reason", None) or str(exc)
            return StepRecord(index=index, intent=intent, ok=False, error=error)

    @staticmethod
    def _finish(result: ConsolidationResult, outcome: Outcome, policy_summary: str | None) -> ConsolidationResult:
        if policy_summary:
            summary = policy_summary
            failures = [s.describe() for s in result.failures]
            if failures:
                summary += " (" + "; ".join(failures) + ")"
        else:
            summary = "; ".join(s.describe() for s in result.steps) or "no action"

        if outcome == Outcome.BUDGET_EXCEEDED:
            summary = f"stopped after {len(result.steps)} steps, budget exceeded: {summary}"

        result.update_state(AgentState.TERMINATED)
        result.outcome = outcome
        result.summary = summary
        result.finished_at = datetime.now(timezone.utc)
        log.info("consolidation user=%s outcome=%s: %s", result.user_id, outcome.value, summary)
        return result
