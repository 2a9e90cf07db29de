"""
Memory Recall Engine

Relevance-ranked retrieval of project history before a decision is made.

Five collections are scored independently:
    decisions, outcomes, constraints, work items, agent tasks

Score components (summed, then rounded half-up):
    Text match        <= 40  fraction of search terms found in the item text
    Tag overlap       <= 25  fraction of context tags carried by the item
    File overlap      <= 25  fraction of context files whose path segments
                             appear in the item text
    Recency           <= 10  linear decay to 0 over the recency window
    Failure boost        +15 didnt_work outcome, +10 mixed outcome
    Blocking boost       +15 constraint with enforcement level "block"

CRITICAL CONSTRAINTS:
- READ-ONLY: recall never writes and emits no events
- NO SIGNAL IS AN ERROR: a context without query/tags/files/keywords raises
  ValidationError instead of returning an empty result
- Items scoring 0 are dropped; ties keep newest-first order
"""

import logging
import math
from dataclasses import dataclass
from datetime import datetime
from typing import Optional, Any, List, Sequence, Tuple

from .config import get_config
from .constraint_model import Constraint
from .errors import ValidationError
from .memory_model import (
    AgentTask,
    Decision,
    MemoryRecallContext,
    MemoryRecallResult,
    Outcome,
    OutcomeResult,
    ScoredMemory,
    WorkItem,
)
from .records_service import RecordsService
from .validation import parse_timestamp

logger = logging.getLogger("memory_recall")

MAX_TEXT_SCORE = 40
MAX_TAG_SCORE = 25
MAX_FILE_SCORE = 25
MAX_RECENCY_SCORE = 10
FAILURE_BOOST = 15
MIXED_BOOST = 10
BLOCKING_BOOST = 15


@dataclass(frozen=True)
class RecallCandidate:
    """The scoring view of one history record."""
    text: str
    created_at: Optional[datetime]
    tags: Tuple[str, ...] = ()
    result: Optional[OutcomeResult] = None
    blocking: bool = False


# -----------------------------------------------------------------------------
# Scoring (pure)
# -----------------------------------------------------------------------------
def build_search_terms(context: MemoryRecallContext) -> List[str]:
    """Lower-cased query words, keywords and tags; de-duplicated, first seen wins."""
    terms: List[str] = []
    if context.query:
        terms.extend(context.query.lower().split())
    terms.extend(k.lower() for k in context.keywords)
    terms.extend(t.lower() for t in context.tags)

    seen = set()
    unique = []
    for term in terms:
        if term and term not in seen:
            seen.add(term)
            unique.append(term)
    return unique


def compute_recency_score(
    created_at: Optional[datetime],
    now: datetime,
    window_days: int = 30,
) -> Tuple[float, Optional[int]]:
    """
    Recency contribution and the age in whole days.

    10 at age 0, 0 at age >= window_days, linear in between.
    """
    if created_at is None:
        return 0.0, None
    age_days = (now - created_at).total_seconds() / 86400
    score = max(0.0, min(float(MAX_RECENCY_SCORE), MAX_RECENCY_SCORE * (1 - age_days / window_days)))
    return score, math.floor(age_days)


def round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def score_item(
    item: RecallCandidate,
    search_terms: Sequence[str],
    context: MemoryRecallContext,
    now: datetime,
    window_days: int = 30,
) -> Tuple[int, List[str]]:
    """Score one candidate. Returns (rounded score, reasons)."""
    score = 0.0
    reasons: List[str] = []
    text = item.text

    if search_terms:
        matched = [term for term in search_terms if term in text]
        if matched:
            score += min(MAX_TEXT_SCORE, len(matched) / len(search_terms) * MAX_TEXT_SCORE)
            reasons.append(f"Matched {len(matched)}/{len(search_terms)} search terms")

    if context.tags and item.tags:
        context_tags = [t.lower() for t in context.tags]
        item_tags = {t.lower() for t in item.tags}
        matched_tags = [t for t in context_tags if t in item_tags]
        if matched_tags:
            score += min(MAX_TAG_SCORE, len(matched_tags) / len(context_tags) * MAX_TAG_SCORE)
            reasons.append(f"Matched {len(matched_tags)}/{len(context_tags)} tags")

    if context.files:
        paths = [f.lower() for f in context.files]
        mentioned = [
            p for p in paths
            if any(part in text for part in p.split("/") if part)
        ]
        if mentioned:
            score += min(MAX_FILE_SCORE, len(mentioned) / len(paths) * MAX_FILE_SCORE)
            reasons.append(f"Mentioned {len(mentioned)}/{len(paths)} relevant file paths")

    recency, days_ago = compute_recency_score(item.created_at, now, window_days)
    if recency > 0:
        score += recency
        reasons.append(f"Recent ({days_ago} day{'' if days_ago == 1 else 's'} ago)")

    if item.result == OutcomeResult.DIDNT_WORK:
        score += FAILURE_BOOST
        reasons.append("Previous failure - critical to avoid repeating")
    elif item.result == OutcomeResult.MIXED:
        score += MIXED_BOOST
        reasons.append("Mixed result - learn from experience")

    if item.blocking:
        score += BLOCKING_BOOST
        reasons.append("Blocking constraint - critical to be aware of")

    return round_half_up(score), reasons


# -----------------------------------------------------------------------------
# Candidate Builders
# -----------------------------------------------------------------------------
def _join(*parts: Any) -> str:
    return " ".join(str(p) for p in parts if p).lower()


def _created(value: str) -> Optional[datetime]:
    try:
        return parse_timestamp(value, "created_at")
    except ValidationError:
        logger.warning(f"Unparseable created_at on history record: {value!r}")
        return None


def decision_candidate(decision: Decision) -> RecallCandidate:
    return RecallCandidate(
        text=_join(decision.title, decision.rationale, decision.choice, *decision.options),
        created_at=_created(decision.created_at),
    )


def outcome_candidate(outcome: Outcome) -> RecallCandidate:
    return RecallCandidate(
        text=_join(outcome.notes, outcome.root_cause, outcome.recommendation),
        created_at=_created(outcome.created_at),
        tags=outcome.tags,
        result=outcome.result,
    )


def constraint_candidate(constraint: Constraint) -> RecallCandidate:
    return RecallCandidate(
        text=_join(constraint.rule_text, constraint.scope_value, constraint.trigger_value),
        created_at=_created(constraint.created_at),
        blocking=constraint.is_blocking,
    )


def work_item_candidate(work_item: WorkItem) -> RecallCandidate:
    return RecallCandidate(
        text=_join(work_item.title, work_item.description, work_item.external_url),
        created_at=_created(work_item.created_at),
    )


def agent_task_candidate(agent_task: AgentTask) -> RecallCandidate:
    return RecallCandidate(
        text=_join(
            agent_task.title,
            agent_task.goal,
            agent_task.context,
            agent_task.verification,
            agent_task.type,
        ),
        created_at=_created(agent_task.created_at),
    )


# -----------------------------------------------------------------------------
# Engine
# -----------------------------------------------------------------------------
class MemoryRecallEngine:
    """Scores and ranks project history for a recall query."""

    def __init__(self, records: RecordsService, recency_window_days: Optional[int] = None):
        self._records = records
        self._window_days = recency_window_days or get_config().recency_window_days

    def recall(
        self,
        user_id: str,
        project_id: str,
        context: Any,
        now: Optional[datetime] = None,
    ) -> MemoryRecallResult:
        """
        Recall history relevant to a context.

        Args:
            user_id: Caller
            project_id: Project whose history is searched
            context: MemoryRecallContext or its JSON shape
            now: Reference time for recency (defaults to utcnow)

        Raises:
            ValidationError: malformed ids or context, or no search signal
            NotFoundError: unknown project
        """
        ctx = MemoryRecallContext.from_payload(context)
        project = self._records.load_project(user_id, project_id)
        store = self._records.store
        now = now or datetime.utcnow()
        limit = ctx.limit or get_config().recall_default_limit
        terms = build_search_terms(ctx)

        def rank(items: Sequence[Any], to_candidate) -> Tuple[ScoredMemory, ...]:
            scored = []
            # newest first, so equal scores favour recent records
            for entity in reversed(list(items)):
                candidate = to_candidate(entity)
                if not self._in_window(candidate.created_at, ctx):
                    continue
                score, reasons = score_item(candidate, terms, ctx, now, self._window_days)
                if score > 0:
                    scored.append(ScoredMemory(entity, score, "; ".join(reasons)))
            scored.sort(key=lambda m: m.relevance_score, reverse=True)
            return tuple(scored[:limit])

        result = MemoryRecallResult(
            relevant_decisions=rank(store.list_decisions(project.id, user_id), decision_candidate),
            relevant_outcomes=rank(store.list_outcomes(project.id, user_id), outcome_candidate),
            recommended_constraints=rank(store.list_constraints(project.id, user_id), constraint_candidate),
            relevant_work_items=rank(store.list_work_items(project.id, user_id), work_item_candidate),
            relevant_agent_tasks=rank(store.list_agent_tasks(project.id, user_id), agent_task_candidate),
        )

        summary = result.summary
        logger.info(
            f"Recall in project {project.id}: {len(terms)} term(s), "
            f"top score {summary['highest_relevance_score']}"
        )
        return result

    @staticmethod
    def _in_window(created_at: Optional[datetime], ctx: MemoryRecallContext) -> bool:
        if created_at is None:
            return ctx.since is None and ctx.until is None
        if ctx.since and created_at < ctx.since:
            return False
        if ctx.until and created_at > ctx.until:
            return False
        return True
