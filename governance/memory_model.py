"""
Memory Models

Immutable history records (decisions, outcomes, work items, agent tasks) and
the recall query/result shapes.

Decisions and outcomes are IMMUTABLE once recorded.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Optional, Dict, Any, List, Tuple

from .errors import ValidationError
from .task_model import CreatedBy, utc_now_iso
from .validation import optional_string_list, parse_timestamp


class OutcomeSubjectType(str, Enum):
    DECISION = "decision"
    TASK = "task"
    GATE = "gate"
    CHECKPOINT = "checkpoint"


class OutcomeResult(str, Enum):
    """Observed result of a past choice. didnt_work and mixed boost recall."""
    WORKED = "worked"
    DIDNT_WORK = "didnt_work"
    MIXED = "mixed"
    UNKNOWN = "unknown"


# -----------------------------------------------------------------------------
# History Records
# -----------------------------------------------------------------------------
@dataclass(frozen=True)
class Decision:
    id: str
    project_id: str
    user_id: str
    title: str
    choice: str
    rationale: str
    options: Tuple[str, ...] = ()
    task_id: Optional[str] = None
    created_at: str = field(default_factory=utc_now_iso)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "project_id": self.project_id,
            "user_id": self.user_id,
            "task_id": self.task_id,
            "title": self.title,
            "options": list(self.options),
            "choice": self.choice,
            "rationale": self.rationale,
            "created_at": self.created_at,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Decision":
        return cls(
            id=data["id"],
            project_id=data["project_id"],
            user_id=data["user_id"],
            task_id=data.get("task_id"),
            title=data["title"],
            options=tuple(data.get("options") or ()),
            choice=data["choice"],
            rationale=data["rationale"],
            created_at=data.get("created_at", utc_now_iso()),
        )


@dataclass(frozen=True)
class Outcome:
    id: str
    project_id: str
    user_id: str
    subject_type: OutcomeSubjectType
    subject_id: str
    result: OutcomeResult
    notes: Optional[str] = None
    root_cause: Optional[str] = None
    recommendation: Optional[str] = None
    tags: Tuple[str, ...] = ()
    created_by: CreatedBy = CreatedBy.AGENT
    created_at: str = field(default_factory=utc_now_iso)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "project_id": self.project_id,
            "user_id": self.user_id,
            "subject_type": self.subject_type.value,
            "subject_id": self.subject_id,
            "result": self.result.value,
            "notes": self.notes,
            "root_cause": self.root_cause,
            "recommendation": self.recommendation,
            "tags": list(self.tags),
            "created_by": self.created_by.value,
            "created_at": self.created_at,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Outcome":
        return cls(
            id=data["id"],
            project_id=data["project_id"],
            user_id=data["user_id"],
            subject_type=OutcomeSubjectType(data["subject_type"]),
            subject_id=data["subject_id"],
            result=OutcomeResult(data["result"]),
            notes=data.get("notes"),
            root_cause=data.get("root_cause"),
            recommendation=data.get("recommendation"),
            tags=tuple(data.get("tags") or ()),
            created_by=CreatedBy(data.get("created_by", "agent")),
            created_at=data.get("created_at", utc_now_iso()),
        )


@dataclass(frozen=True)
class WorkItem:
    """An external ticket or issue linked to the project."""
    id: str
    project_id: str
    user_id: str
    title: str
    description: Optional[str] = None
    external_url: Optional[str] = None
    status: str = "open"
    created_at: str = field(default_factory=utc_now_iso)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "project_id": self.project_id,
            "user_id": self.user_id,
            "title": self.title,
            "description": self.description,
            "external_url": self.external_url,
            "status": self.status,
            "created_at": self.created_at,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "WorkItem":
        return cls(
            id=data["id"],
            project_id=data["project_id"],
            user_id=data["user_id"],
            title=data["title"],
            description=data.get("description"),
            external_url=data.get("external_url"),
            status=data.get("status", "open"),
            created_at=data.get("created_at", utc_now_iso()),
        )


@dataclass(frozen=True)
class AgentTask:
    """A unit of work handed to a sub-agent."""
    id: str
    project_id: str
    user_id: str
    title: str
    goal: str
    type: Optional[str] = None
    context: Optional[str] = None
    verification: Optional[str] = None
    status: str = "pending"
    created_at: str = field(default_factory=utc_now_iso)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "project_id": self.project_id,
            "user_id": self.user_id,
            "title": self.title,
            "goal": self.goal,
            "type": self.type,
            "context": self.context,
            "verification": self.verification,
            "status": self.status,
            "created_at": self.created_at,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "AgentTask":
        return cls(
            id=data["id"],
            project_id=data["project_id"],
            user_id=data["user_id"],
            title=data["title"],
            goal=data["goal"],
            type=data.get("type"),
            context=data.get("context"),
            verification=data.get("verification"),
            status=data.get("status", "pending"),
            created_at=data.get("created_at", utc_now_iso()),
        )


# -----------------------------------------------------------------------------
# Recall Query & Result
# -----------------------------------------------------------------------------
@dataclass(frozen=True)
class MemoryRecallContext:
    """
    A recall query.

    At least one of query/tags/files/keywords must carry a signal.
    limit=None means "use the configured default".
    """
    query: Optional[str] = None
    tags: Tuple[str, ...] = ()
    files: Tuple[str, ...] = ()
    keywords: Tuple[str, ...] = ()
    since: Optional[datetime] = None
    until: Optional[datetime] = None
    limit: Optional[int] = None

    @property
    def has_signal(self) -> bool:
        return bool(
            (self.query and self.query.strip())
            or self.tags
            or self.files
            or self.keywords
        )

    @classmethod
    def from_payload(cls, payload: Optional[Dict[str, Any]]) -> "MemoryRecallContext":
        """
        Build a recall context from its JSON shape.

        Raises:
            ValidationError: on a bad shape, a bad timestamp or limit, or
                when no search signal is present
        """
        if isinstance(payload, MemoryRecallContext):
            context = payload
        else:
            if payload is None:
                payload = {}
            if not isinstance(payload, dict):
                raise ValidationError("Recall context must be an object", "context")

            query = payload.get("query")
            if query is not None and not isinstance(query, str):
                raise ValidationError("query must be a string", "query")

            limit = payload.get("limit")
            if limit is not None:
                if isinstance(limit, bool) or not isinstance(limit, int) or limit <= 0:
                    raise ValidationError("limit must be a positive integer", "limit")

            since = payload.get("since")
            until = payload.get("until")
            context = cls(
                query=query,
                tags=tuple(optional_string_list(payload.get("tags"), "tags") or ()),
                files=tuple(optional_string_list(payload.get("files"), "files") or ()),
                keywords=tuple(optional_string_list(payload.get("keywords"), "keywords") or ()),
                since=parse_timestamp(since, "since") if since is not None else None,
                until=parse_timestamp(until, "until") if until is not None else None,
                limit=limit,
            )

        if not context.has_signal:
            raise ValidationError(
                "Recall context requires at least one of: query, tags, files, keywords",
                "context",
            )
        return context


@dataclass(frozen=True)
class ScoredMemory:
    """A recalled entity with its relevance score and the reasons behind it."""
    entity: Any
    relevance_score: int
    relevance_reason: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "entity": self.entity.to_dict(),
            "relevanceScore": self.relevance_score,
            "relevanceReason": self.relevance_reason,
        }


@dataclass(frozen=True)
class MemoryRecallResult:
    relevant_decisions: Tuple[ScoredMemory, ...] = ()
    relevant_outcomes: Tuple[ScoredMemory, ...] = ()
    recommended_constraints: Tuple[ScoredMemory, ...] = ()
    relevant_work_items: Tuple[ScoredMemory, ...] = ()
    relevant_agent_tasks: Tuple[ScoredMemory, ...] = ()

    def _all(self) -> List[ScoredMemory]:
        return [
            *self.relevant_decisions,
            *self.relevant_outcomes,
            *self.recommended_constraints,
            *self.relevant_work_items,
            *self.relevant_agent_tasks,
        ]

    @property
    def summary(self) -> Dict[str, int]:
        scores = [m.relevance_score for m in self._all()]
        return {
            "total_decisions": len(self.relevant_decisions),
            "total_outcomes": len(self.relevant_outcomes),
            "total_constraints": len(self.recommended_constraints),
            "total_work_items": len(self.relevant_work_items),
            "total_agent_tasks": len(self.relevant_agent_tasks),
            "highest_relevance_score": max(scores) if scores else 0,
        }

    def to_dict(self) -> Dict[str, Any]:
        return {
            "relevant_decisions": [m.to_dict() for m in self.relevant_decisions],
            "relevant_outcomes": [m.to_dict() for m in self.relevant_outcomes],
            "recommended_constraints": [m.to_dict() for m in self.recommended_constraints],
            "relevant_work_items": [m.to_dict() for m in self.relevant_work_items],
            "relevant_agent_tasks": [m.to_dict() for m in self.relevant_agent_tasks],
            "summary": self.summary,
        }
