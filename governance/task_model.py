"""
Task Governance - Core Data Models

Tasks, projects, scope rules, gates, proof-of-work records and audit events.

Records are FROZEN dataclasses. A task "update" is a new snapshot built with
dataclasses.replace() and written with a bumped version; the previous snapshot
stays in the append-only store.

Wire names for rules and changesets are camelCase (allowedPaths, filesAdded).
All to_dict()/from_dict() pairs form the mapping layer at the storage boundary:
the engine itself only ever sees these typed models.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Optional, Dict, Any, List, Tuple

from .errors import ValidationError


def utc_now_iso() -> str:
    """Current time as a naive UTC ISO-8601 string."""
    return datetime.utcnow().isoformat()


# -----------------------------------------------------------------------------
# Enums
# -----------------------------------------------------------------------------
class TaskStatus(str, Enum):
    """Task lifecycle states."""
    TODO = "todo"
    IN_PROGRESS = "in_progress"
    BLOCKED = "blocked"
    DONE = "done"
    CANCELLED = "cancelled"


class TaskPriority(str, Enum):
    """Task priority. Higher rank is picked first by the priority strategy."""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"

    @property
    def rank(self) -> int:
        return {"low": 1, "medium": 2, "high": 3}[self.value]


class GateType(str, Enum):
    """
    Known gate types.

    The DSL parser drops anything else; explicit Gate objects may still carry
    an unknown type string, which then FAILS at evaluation.
    """
    HAS_TESTS = "has_tests"
    HAS_DOCS = "has_docs"
    HAS_ARTIFACTS = "has_artifacts"
    ACCEPTANCE_MET = "acceptance_met"
    CUSTOM = "custom"


class ArtifactType(str, Enum):
    DIFF = "diff"
    PR = "pr"
    TEST_REPORT = "test_report"
    DOCUMENT = "document"
    OTHER = "other"


class EvidenceType(str, Enum):
    NOTE = "note"
    LINK = "link"
    LOG = "log"
    DIFF = "diff"


class CreatedBy(str, Enum):
    AGENT = "agent"
    HUMAN = "human"


class EventType(str, Enum):
    """Audit event types appended to the event log."""
    PROJECT_CREATED = "ProjectCreated"
    TASK_CREATED = "TaskCreated"
    TASK_STARTED = "TaskStarted"
    TASK_BLOCKED = "TaskBlocked"
    TASK_COMPLETED = "TaskCompleted"
    TASK_CANCELLED = "TaskCancelled"
    ARTIFACT_PRODUCED = "ArtifactProduced"
    EVIDENCE_ADDED = "EvidenceAdded"
    GATE_EVALUATED = "GateEvaluated"
    GATE_WAIVED = "GateWaived"
    SCOPE_ASSERTED = "ScopeAsserted"
    DECISION_RECORDED = "DecisionRecorded"
    OUTCOME_RECORDED = "OutcomeRecorded"
    CONSTRAINT_CREATED = "ConstraintCreated"
    WORK_ITEM_CREATED = "WorkItemCreated"
    AGENT_TASK_CREATED = "AgentTaskCreated"


# -----------------------------------------------------------------------------
# Scope Rules
# -----------------------------------------------------------------------------
def _optional_list(data: Dict[str, Any], key: str) -> Optional[Tuple[str, ...]]:
    value = data.get(key)
    if value is None:
        return None
    if not isinstance(value, (list, tuple)):
        raise ValidationError(f"{key} must be an array of strings", key)
    return tuple(str(v) for v in value)


@dataclass(frozen=True)
class TaskConstraints:
    """
    Task-level scope rules.

    None means "not set at task level"; an empty tuple is a real value and
    still takes precedence over the project rule.
    """
    allowed_paths: Optional[Tuple[str, ...]] = None
    forbidden_paths: Optional[Tuple[str, ...]] = None
    max_files: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {}
        if self.allowed_paths is not None:
            data["allowedPaths"] = list(self.allowed_paths)
        if self.forbidden_paths is not None:
            data["forbiddenPaths"] = list(self.forbidden_paths)
        if self.max_files is not None:
            data["maxFiles"] = self.max_files
        return data

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "TaskConstraints":
        data = data or {}
        max_files = data.get("maxFiles")
        if max_files is not None and (isinstance(max_files, bool) or not isinstance(max_files, int) or max_files < 0):
            raise ValidationError("maxFiles must be a non-negative integer", "maxFiles")
        return cls(
            allowed_paths=_optional_list(data, "allowedPaths"),
            forbidden_paths=_optional_list(data, "forbiddenPaths"),
            max_files=max_files,
        )


@dataclass(frozen=True)
class ProjectRules:
    """Project-level defaults for scope and gates."""
    allowed_paths: Optional[Tuple[str, ...]] = None
    forbidden_paths: Optional[Tuple[str, ...]] = None
    default_gates: Optional[Tuple[str, ...]] = None

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {}
        if self.allowed_paths is not None:
            data["allowedPaths"] = list(self.allowed_paths)
        if self.forbidden_paths is not None:
            data["forbiddenPaths"] = list(self.forbidden_paths)
        if self.default_gates is not None:
            data["defaultGates"] = list(self.default_gates)
        return data

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "ProjectRules":
        data = data or {}
        return cls(
            allowed_paths=_optional_list(data, "allowedPaths"),
            forbidden_paths=_optional_list(data, "forbiddenPaths"),
            default_gates=_optional_list(data, "defaultGates"),
        )


# -----------------------------------------------------------------------------
# Project & Task
# -----------------------------------------------------------------------------
@dataclass(frozen=True)
class Project:
    id: str
    user_id: str
    name: str
    description: Optional[str] = None
    rules: ProjectRules = field(default_factory=ProjectRules)
    created_at: str = field(default_factory=utc_now_iso)
    updated_at: str = field(default_factory=utc_now_iso)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "name": self.name,
            "description": self.description,
            "rules": self.rules.to_dict(),
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Project":
        return cls(
            id=data["id"],
            user_id=data["user_id"],
            name=data["name"],
            description=data.get("description"),
            rules=ProjectRules.from_dict(data.get("rules")),
            created_at=data.get("created_at", utc_now_iso()),
            updated_at=data.get("updated_at", utc_now_iso()),
        )


@dataclass(frozen=True)
class Task:
    """
    A unit of agent work.

    Mutated ONLY through the Task Lifecycle Coordinator. Every write bumps
    version; writers must present the version they read.
    """
    id: str
    project_id: str
    user_id: str
    title: str
    description: Optional[str] = None
    status: TaskStatus = TaskStatus.TODO
    priority: TaskPriority = TaskPriority.MEDIUM
    acceptance_criteria: Tuple[str, ...] = ()
    constraints: TaskConstraints = field(default_factory=TaskConstraints)
    dependencies: Tuple[str, ...] = ()
    tags: Tuple[str, ...] = ()
    task_type: Optional[str] = None
    locked_by: Optional[str] = None
    locked_at: Optional[str] = None
    version: int = 1
    created_at: str = field(default_factory=utc_now_iso)
    updated_at: str = field(default_factory=utc_now_iso)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "project_id": self.project_id,
            "user_id": self.user_id,
            "title": self.title,
            "description": self.description,
            "status": self.status.value,
            "priority": self.priority.value,
            "acceptance_criteria": list(self.acceptance_criteria),
            "constraints": self.constraints.to_dict(),
            "dependencies": list(self.dependencies),
            "tags": list(self.tags),
            "task_type": self.task_type,
            "locked_by": self.locked_by,
            "locked_at": self.locked_at,
            "version": self.version,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Task":
        return cls(
            id=data["id"],
            project_id=data["project_id"],
            user_id=data["user_id"],
            title=data["title"],
            description=data.get("description"),
            status=TaskStatus(data.get("status", "todo")),
            priority=TaskPriority(data.get("priority") or "medium"),
            acceptance_criteria=tuple(data.get("acceptance_criteria") or ()),
            constraints=TaskConstraints.from_dict(data.get("constraints")),
            dependencies=tuple(data.get("dependencies") or ()),
            tags=tuple(data.get("tags") or ()),
            task_type=data.get("task_type"),
            locked_by=data.get("locked_by"),
            locked_at=data.get("locked_at"),
            version=data.get("version", 1),
            created_at=data.get("created_at", utc_now_iso()),
            updated_at=data.get("updated_at", utc_now_iso()),
        )

    @property
    def is_locked(self) -> bool:
        return self.locked_at is not None


# -----------------------------------------------------------------------------
# Changeset & Scope Result
# -----------------------------------------------------------------------------
CHANGESET_FIELDS = ("filesChanged", "filesAdded", "filesDeleted")


@dataclass(frozen=True)
class ChangesetManifest:
    """Declared set of added/changed/deleted files for a proposed edit."""
    files_changed: Tuple[str, ...]
    files_added: Tuple[str, ...]
    files_deleted: Tuple[str, ...]

    @property
    def all_files(self) -> List[str]:
        """Union of the three lists, in changed -> added -> deleted order."""
        return [*self.files_changed, *self.files_added, *self.files_deleted]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "filesChanged": list(self.files_changed),
            "filesAdded": list(self.files_added),
            "filesDeleted": list(self.files_deleted),
        }

    @classmethod
    def from_payload(cls, payload: Any) -> "ChangesetManifest":
        """
        Build a manifest from its JSON shape.

        All three fields are REQUIRED and must be arrays of strings.
        A malformed shape is a fatal input error, never a ScopeResult.
        """
        if isinstance(payload, ChangesetManifest):
            return payload
        if not isinstance(payload, dict):
            raise ValidationError("Invalid changeset manifest", "changeset")
        for key in CHANGESET_FIELDS:
            value = payload.get(key)
            if not isinstance(value, list):
                raise ValidationError(
                    "Changeset manifest must have filesChanged, filesAdded, and filesDeleted arrays",
                    key,
                )
            if not all(isinstance(item, str) for item in value):
                raise ValidationError(f"{key} must contain only file path strings", key)
        return cls(
            files_changed=tuple(payload["filesChanged"]),
            files_added=tuple(payload["filesAdded"]),
            files_deleted=tuple(payload["filesDeleted"]),
        )


@dataclass(frozen=True)
class ScopeResult:
    """Verdict of a scope check. A value, never an exception."""
    allowed: bool
    reason: str
    violations: Optional[Tuple[str, ...]] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "allowed": self.allowed,
            "reason": self.reason,
            "violations": list(self.violations) if self.violations else None,
        }


# -----------------------------------------------------------------------------
# Gates
# -----------------------------------------------------------------------------
FALSE_VALUES = ("false", "no", "0")


def parse_required(value: Any) -> bool:
    """Missing means required; "false", "no" and "0" (any case) mean optional."""
    if value is None:
        return True
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() not in FALSE_VALUES


@dataclass(frozen=True)
class Gate:
    """
    A named pass/fail check.

    type is a plain string so that unknown explicit gates survive to
    evaluation (where they fail).
    """
    type: str
    config: Dict[str, Any] = field(default_factory=dict)
    required: bool = True

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.type,
            "config": dict(self.config),
            "required": self.required,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Gate":
        if not isinstance(data, dict) or not isinstance(data.get("type"), str):
            raise ValidationError("Gate must be an object with a string type", "gates")
        config = data.get("config") or {}
        if not isinstance(config, dict):
            raise ValidationError("Gate config must be an object", "gates")
        return cls(
            type=data["type"],
            config=dict(config),
            required=parse_required(data.get("required")),
        )


@dataclass(frozen=True)
class GateResult:
    """Outcome of one gate. A value, never an exception."""
    passed: bool
    gate: Gate
    reason: str
    missing_requirements: Optional[Tuple[str, ...]] = None
    waived: bool = False

    @property
    def blocks_completion(self) -> bool:
        return self.gate.required and not self.passed and not self.waived

    def to_dict(self) -> Dict[str, Any]:
        return {
            "passed": self.passed,
            "gate": self.gate.to_dict(),
            "reason": self.reason,
            "missingRequirements": list(self.missing_requirements) if self.missing_requirements else None,
            "waived": self.waived,
        }


@dataclass(frozen=True)
class GateWaiver:
    """A recorded, decision-backed exemption from one gate on one task."""
    id: str
    project_id: str
    task_id: str
    user_id: str
    gate_type: str
    decision_id: str
    rationale: str
    created_by: CreatedBy = CreatedBy.AGENT
    constraint_evaluation: Dict[str, Any] = field(default_factory=dict)
    created_at: str = field(default_factory=utc_now_iso)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "project_id": self.project_id,
            "task_id": self.task_id,
            "user_id": self.user_id,
            "gate_type": self.gate_type,
            "decision_id": self.decision_id,
            "rationale": self.rationale,
            "created_by": self.created_by.value,
            "constraint_evaluation": dict(self.constraint_evaluation),
            "created_at": self.created_at,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "GateWaiver":
        return cls(
            id=data["id"],
            project_id=data["project_id"],
            task_id=data["task_id"],
            user_id=data["user_id"],
            gate_type=data["gate_type"],
            decision_id=data["decision_id"],
            rationale=data["rationale"],
            created_by=CreatedBy(data.get("created_by", "agent")),
            constraint_evaluation=data.get("constraint_evaluation") or {},
            created_at=data.get("created_at", utc_now_iso()),
        )


# -----------------------------------------------------------------------------
# Proof of Work
# -----------------------------------------------------------------------------
@dataclass(frozen=True)
class Artifact:
    id: str
    task_id: str
    project_id: str
    user_id: str
    type: ArtifactType
    ref: str
    summary: Optional[str] = None
    created_at: str = field(default_factory=utc_now_iso)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "task_id": self.task_id,
            "project_id": self.project_id,
            "user_id": self.user_id,
            "type": self.type.value,
            "ref": self.ref,
            "summary": self.summary,
            "created_at": self.created_at,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Artifact":
        return cls(
            id=data["id"],
            task_id=data["task_id"],
            project_id=data["project_id"],
            user_id=data["user_id"],
            type=ArtifactType(data["type"]),
            ref=data["ref"],
            summary=data.get("summary"),
            created_at=data.get("created_at", utc_now_iso()),
        )


@dataclass(frozen=True)
class Evidence:
    id: str
    task_id: str
    project_id: str
    user_id: str
    type: EvidenceType
    content: str
    summary: Optional[str] = None
    created_by: CreatedBy = CreatedBy.AGENT
    created_at: str = field(default_factory=utc_now_iso)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "task_id": self.task_id,
            "project_id": self.project_id,
            "user_id": self.user_id,
            "type": self.type.value,
            "content": self.content,
            "summary": self.summary,
            "created_by": self.created_by.value,
            "created_at": self.created_at,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Evidence":
        return cls(
            id=data["id"],
            task_id=data["task_id"],
            project_id=data["project_id"],
            user_id=data["user_id"],
            type=EvidenceType(data["type"]),
            content=data["content"],
            summary=data.get("summary"),
            created_by=CreatedBy(data.get("created_by", "agent")),
            created_at=data.get("created_at", utc_now_iso()),
        )


# -----------------------------------------------------------------------------
# Audit Event
# -----------------------------------------------------------------------------
@dataclass(frozen=True)
class GovernanceEvent:
    """Immutable audit record. APPEND-ONLY."""
    id: str
    project_id: str
    user_id: str
    event_type: EventType
    payload: Dict[str, Any]
    task_id: Optional[str] = None
    created_at: str = field(default_factory=utc_now_iso)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "project_id": self.project_id,
            "task_id": self.task_id,
            "user_id": self.user_id,
            "event_type": self.event_type.value,
            "payload": self.payload,
            "created_at": self.created_at,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "GovernanceEvent":
        return cls(
            id=data["id"],
            project_id=data["project_id"],
            task_id=data.get("task_id"),
            user_id=data["user_id"],
            event_type=EventType(data["event_type"]),
            payload=data.get("payload") or {},
            created_at=data.get("created_at", utc_now_iso()),
        )


# -----------------------------------------------------------------------------
# Transition Result
# -----------------------------------------------------------------------------
@dataclass(frozen=True)
class TransitionResult:
    """
    Outcome of a lifecycle transition request.

    accepted=False is a GUARD FAILURE: the agent may remediate and retry.
    """
    accepted: bool
    task: Task
    from_status: TaskStatus
    to_status: TaskStatus
    reason: str
    scope_result: Optional[ScopeResult] = None
    gate_results: Tuple[GateResult, ...] = ()
    missing_requirements: Tuple[str, ...] = ()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "accepted": self.accepted,
            "task": self.task.to_dict(),
            "from_status": self.from_status.value,
            "to_status": self.to_status.value,
            "reason": self.reason,
            "scope_result": self.scope_result.to_dict() if self.scope_result else None,
            "gate_results": [r.to_dict() for r in self.gate_results],
            "missing_requirements": list(self.missing_requirements),
        }
