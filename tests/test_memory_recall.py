"""
Unit Tests for the Memory Recall Engine

Tests prove:
1. Search terms are built and de-duplicated deterministically
2. Each scoring component is bounded and combined correctly
3. Failure and blocking boosts apply to the right records only
4. Recall with no signal is rejected
5. since/until, limit and zero-score filtering
"""

from datetime import datetime, timedelta

import pytest

from governance.constraint_model import Constraint, ConstraintScope, ConstraintTrigger, EnforcementLevel
from governance.errors import ValidationError
from governance.memory_model import (
    Decision,
    MemoryRecallContext,
    Outcome,
    OutcomeResult,
    OutcomeSubjectType,
    WorkItem,
    AgentTask,
)
from governance.memory_recall import (
    MemoryRecallEngine,
    RecallCandidate,
    build_search_terms,
    compute_recency_score,
    round_half_up,
    score_item,
)

NOW = datetime(2026, 3, 1, 12, 0, 0)
SUBJECT_ID = "7b1f7d8e-2c4a-4f4e-9a51-0c2b8f1d1e11"


def ctx(**kwargs):
    return MemoryRecallContext.from_payload(kwargs)


def candidate(text="", days_old=None, **kwargs):
    created = NOW - timedelta(days=days_old) if days_old is not None else None
    return RecallCandidate(text=text, created_at=created, **kwargs)


@pytest.fixture
def engine(records):
    return MemoryRecallEngine(records)


# -----------------------------------------------------------------------------
# Context & Search Terms
# -----------------------------------------------------------------------------
class TestRecallContext:
    """Tests for MemoryRecallContext.from_payload and build_search_terms."""

    def test_no_signal_rejected(self):
        with pytest.raises(ValidationError):
            MemoryRecallContext.from_payload({})
        with pytest.raises(ValidationError):
            MemoryRecallContext.from_payload({"query": "   ", "tags": [], "limit": 5})

    def test_bad_limit(self):
        with pytest.raises(ValidationError):
            ctx(query="x", limit=0)
        with pytest.raises(ValidationError):
            ctx(query="x", limit="ten")

    def test_bad_timestamp(self):
        with pytest.raises(ValidationError):
            ctx(query="x", since="yesterday")

    def test_zulu_timestamp(self):
        context = ctx(query="x", since="2026-01-01T00:00:00Z")
        assert context.since == datetime(2026, 1, 1)

    def test_terms_lowercased_and_deduplicated(self):
        context = ctx(query="Payment  retries payment", keywords=["Stripe", "retries"], tags=["PAYMENT"])
        assert build_search_terms(context) == ["payment", "retries", "stripe"]


# -----------------------------------------------------------------------------
# Scoring
# -----------------------------------------------------------------------------
class TestScoring:
    """Tests for score_item and its components."""

    def test_recency_exact_bounds(self):
        assert compute_recency_score(NOW, NOW)[0] == 10
        assert compute_recency_score(NOW - timedelta(days=30), NOW)[0] == 0
        assert compute_recency_score(NOW - timedelta(days=45), NOW)[0] == 0
        assert compute_recency_score(NOW - timedelta(days=15), NOW)[0] == pytest.approx(5)

    def test_recency_window_configurable(self):
        assert compute_recency_score(NOW - timedelta(days=5), NOW, window_days=10)[0] == pytest.approx(5)

    def test_round_half_up(self):
        assert round_half_up(2.5) == 3
        assert round_half_up(13.3) == 13

    def test_text_component(self):
        context = ctx(query="payment retries")
        score, reasons = score_item(candidate("payment gateway"), build_search_terms(context), context, NOW)
        assert score == 20
        assert reasons == ["Matched 1/2 search terms"]

    def test_monotonic_in_matched_terms(self):
        context = ctx(query="alpha beta gamma delta")
        terms = build_search_terms(context)
        texts = ["", "alpha", "alpha beta", "alpha beta gamma", "alpha beta gamma delta"]
        scores = [score_item(candidate(t, days_old=3), terms, context, NOW)[0] for t in texts]
        assert scores == sorted(scores)

    def test_tag_component(self):
        context = ctx(tags=["payments", "infra"])
        score, reasons = score_item(
            candidate(tags=("Payments",)), build_search_terms(context), context, NOW
        )
        assert reasons == ["Matched 1/2 tags"]
        assert score == 13

    def test_file_component_uses_path_segments(self):
        context = ctx(files=["src/billing/retry.py", "docs/readme.md"])
        score, reasons = score_item(
            candidate("the billing module"), build_search_terms(context), context, NOW
        )
        assert reasons == ["Mentioned 1/2 relevant file paths"]
        assert score == 13

    def test_failure_boost(self):
        context = ctx(query="zzz")
        score, reasons = score_item(
            candidate(result=OutcomeResult.DIDNT_WORK), ["zzz"], context, NOW
        )
        assert score == 15
        assert reasons == ["Previous failure - critical to avoid repeating"]

    def test_mixed_boost(self):
        score, _ = score_item(candidate(result=OutcomeResult.MIXED), ["zzz"], ctx(query="zzz"), NOW)
        assert score == 10

    def test_blocking_boost(self):
        score, reasons = score_item(candidate(blocking=True), ["zzz"], ctx(query="zzz"), NOW)
        assert score == 15
        assert reasons == ["Blocking constraint - critical to be aware of"]

    def test_recency_reason(self):
        _, reasons = score_item(candidate(days_old=1), ["zzz"], ctx(query="zzz"), NOW)
        assert reasons == ["Recent (1 day ago)"]
        _, reasons = score_item(candidate(days_old=3), ["zzz"], ctx(query="zzz"), NOW)
        assert reasons == ["Recent (3 days ago)"]

    def test_can_exceed_one_hundred(self):
        context = ctx(query="retry", tags=["retry"], files=["retry/x.py"])
        score, _ = score_item(
            candidate("retry", days_old=0, tags=("retry",), result=OutcomeResult.DIDNT_WORK),
            build_search_terms(context),
            context,
            NOW,
        )
        assert score == 40 + 25 + 25 + 10 + 15


# -----------------------------------------------------------------------------
# Engine
# -----------------------------------------------------------------------------
class TestMemoryRecallEngine:
    """Tests for MemoryRecallEngine.recall over a store."""

    def _outcome(self, project, user_id, notes, result="didnt_work", days_old=0, tags=()):
        return Outcome(
            id=f"o-{notes[:8]}-{days_old}",
            project_id=project.id,
            user_id=user_id,
            subject_type=OutcomeSubjectType.TASK,
            subject_id=SUBJECT_ID,
            result=OutcomeResult(result),
            notes=notes,
            tags=tuple(tags),
            created_at=(NOW - timedelta(days=days_old)).isoformat(),
        )

    def test_payment_retries_failure(self, engine, store, project, user_id):
        store.add_outcome(self._outcome(project, user_id, "Payment retries caused double charges"))
        result = engine.recall(user_id, project.id, {"query": "payment retries"}, now=NOW)

        assert len(result.relevant_outcomes) == 1
        scored = result.relevant_outcomes[0]
        assert scored.relevance_score == 40 + 10 + 15
        assert "Matched 2/2 search terms" in scored.relevance_reason
        assert "Previous failure - critical to avoid repeating" in scored.relevance_reason
        assert result.summary["highest_relevance_score"] == 65
        assert result.summary["total_outcomes"] == 1

    def test_zero_scores_dropped(self, engine, store, project, user_id):
        store.add_outcome(self._outcome(project, user_id, "unrelated", result="worked", days_old=90))
        result = engine.recall(user_id, project.id, {"query": "payment"}, now=NOW)
        assert result.relevant_outcomes == ()
        assert result.summary["highest_relevance_score"] == 0

    def test_all_collections_scored(self, engine, store, project, user_id):
        created = NOW.isoformat()
        store.add_decision(Decision(
            id="d1", project_id=project.id, user_id=user_id, title="Use exponential backoff",
            choice="backoff", rationale="Avoid thundering herd", created_at=created,
        ))
        store.add_constraint(Constraint(
            id="c1", project_id=project.id, user_id=user_id, scope=ConstraintScope.PROJECT,
            trigger=ConstraintTrigger.ALWAYS, rule_text="Never retry non-idempotent backoff calls",
            enforcement_level=EnforcementLevel.BLOCK, created_at=created,
        ))
        store.add_work_item(WorkItem(
            id="w1", project_id=project.id, user_id=user_id, title="Backoff tuning",
            created_at=created,
        ))
        store.add_agent_task(AgentTask(
            id="g1", project_id=project.id, user_id=user_id, title="Audit backoff",
            goal="Check every client", created_at=created,
        ))
        result = engine.recall(user_id, project.id, {"keywords": ["backoff"]}, now=NOW)

        assert result.relevant_decisions[0].relevance_score == 50
        assert result.recommended_constraints[0].relevance_score == 65
        assert result.relevant_work_items[0].relevance_score == 50
        assert result.relevant_agent_tasks[0].relevance_score == 50
        assert result.summary["total_constraints"] == 1

    def test_sorted_and_limited(self, engine, store, project, user_id):
        store.add_outcome(self._outcome(project, user_id, "cache worked", result="worked", days_old=40))
        store.add_outcome(self._outcome(project, user_id, "cache failed", days_old=40))
        store.add_outcome(self._outcome(project, user_id, "cache mixed", result="mixed", days_old=40))
        result = engine.recall(user_id, project.id, {"query": "cache", "limit": 2}, now=NOW)
        assert [m.relevance_score for m in result.relevant_outcomes] == [55, 50]

    def test_since_until(self, engine, store, project, user_id):
        store.add_outcome(self._outcome(project, user_id, "cache old", days_old=20))
        store.add_outcome(self._outcome(project, user_id, "cache new", days_old=2))
        since = (NOW - timedelta(days=10)).isoformat()
        result = engine.recall(user_id, project.id, {"query": "cache", "since": since}, now=NOW)
        assert [m.entity.notes for m in result.relevant_outcomes] == ["cache new"]

        until = (NOW - timedelta(days=10)).isoformat()
        result = engine.recall(user_id, project.id, {"query": "cache", "until": until}, now=NOW)
        assert [m.entity.notes for m in result.relevant_outcomes] == ["cache old"]

    def test_other_users_history_ignored(self, engine, store, project, user_id, other_user_id):
        store.add_outcome(self._outcome(project, other_user_id, "payment retries"))
        result = engine.recall(user_id, project.id, {"query": "payment"}, now=NOW)
        assert result.relevant_outcomes == ()

    def test_absent_collections_are_empty(self, engine, project, user_id):
        result = engine.recall(user_id, project.id, {"query": "anything"}, now=NOW)
        assert result.summary == {
            "total_decisions": 0,
            "total_outcomes": 0,
            "total_constraints": 0,
            "total_work_items": 0,
            "total_agent_tasks": 0,
            "highest_relevance_score": 0,
        }

    def test_no_signal_rejected(self, engine, project, user_id):
        with pytest.raises(ValidationError):
            engine.recall(user_id, project.id, {"limit": 3})

    def test_read_only(self, engine, store, project, user_id):
        before = len(store.list_events())
        engine.recall(user_id, project.id, {"query": "x"}, now=NOW)
        assert len(store.list_events()) == before
