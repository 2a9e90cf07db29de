"""
Constraint Models

Project-level rules (scope x trigger) and the evaluation context they are
matched against.

Constraints are APPEND-ONLY: they are evaluated, never mutated.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Optional, Dict, Any, Tuple

from .errors import ValidationError
from .task_model import utc_now_iso
from .validation import optional_string_list

MAX_RULE_TEXT_LENGTH = 5000


class ConstraintScope(str, Enum):
    """Where a constraint applies."""
    PROJECT = "project"
    REPO = "repo"
    DIRECTORY = "directory"
    TASK_TYPE = "task_type"


class ConstraintTrigger(str, Enum):
    """What in the evaluation context fires a constraint."""
    FILES_MATCH = "files_match"
    TASK_TAG = "task_tag"
    GATE = "gate"
    KEYWORD = "keyword"
    ALWAYS = "always"


class EnforcementLevel(str, Enum):
    """block -> violation (caller must refuse), warn -> warning (caller must surface)."""
    WARN = "warn"
    BLOCK = "block"


@dataclass(frozen=True)
class Constraint:
    id: str
    project_id: str
    user_id: str
    scope: ConstraintScope
    trigger: ConstraintTrigger
    rule_text: str
    enforcement_level: EnforcementLevel = EnforcementLevel.WARN
    scope_value: Optional[str] = None
    trigger_value: Optional[str] = None
    source_links: Tuple[str, ...] = ()
    created_at: str = field(default_factory=utc_now_iso)

    @property
    def is_blocking(self) -> bool:
        return self.enforcement_level == EnforcementLevel.BLOCK

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "project_id": self.project_id,
            "user_id": self.user_id,
            "scope": self.scope.value,
            "scope_value": self.scope_value,
            "trigger": self.trigger.value,
            "trigger_value": self.trigger_value,
            "rule_text": self.rule_text,
            "enforcement_level": self.enforcement_level.value,
            "source_links": list(self.source_links),
            "created_at": self.created_at,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Constraint":
        return cls(
            id=data["id"],
            project_id=data["project_id"],
            user_id=data["user_id"],
            scope=ConstraintScope(data["scope"]),
            scope_value=data.get("scope_value"),
            trigger=ConstraintTrigger(data["trigger"]),
            trigger_value=data.get("trigger_value"),
            rule_text=data["rule_text"],
            enforcement_level=EnforcementLevel(data.get("enforcement_level", "warn")),
            source_links=tuple(data.get("source_links") or ()),
            created_at=data.get("created_at", utc_now_iso()),
        )


@dataclass(frozen=True)
class ConstraintContext:
    """What the caller is about to do, as seen by the constraint matcher."""
    files: Tuple[str, ...] = ()
    tags: Tuple[str, ...] = ()
    keywords: Tuple[str, ...] = ()
    gate: Optional[str] = None
    task_type: Optional[str] = None
    directory: Optional[str] = None

    @classmethod
    def from_payload(cls, payload: Optional[Dict[str, Any]]) -> "ConstraintContext":
        """
        Build a context from its JSON shape.

        Accepts taskType or task_type. files, tags and keywords must be
        arrays of strings when present.
        """
        if isinstance(payload, ConstraintContext):
            return payload
        if payload is None:
            payload = {}
        if not isinstance(payload, dict):
            raise ValidationError("Evaluation context must be an object", "context")

        def _optional_str(key: str, value: Any) -> Optional[str]:
            if value is None:
                return None
            if not isinstance(value, str):
                raise ValidationError(f"{key} must be a string", key)
            return value

        task_type = payload.get("taskType", payload.get("task_type"))
        return cls(
            files=tuple(optional_string_list(payload.get("files"), "files") or ()),
            tags=tuple(optional_string_list(payload.get("tags"), "tags") or ()),
            keywords=tuple(optional_string_list(payload.get("keywords"), "keywords") or ()),
            gate=_optional_str("gate", payload.get("gate")),
            task_type=_optional_str("taskType", task_type),
            directory=_optional_str("directory", payload.get("directory")),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "files": list(self.files),
            "tags": list(self.tags),
            "keywords": list(self.keywords),
            "gate": self.gate,
            "taskType": self.task_type,
            "directory": self.directory,
        }


@dataclass(frozen=True)
class ConstraintMatch:
    constraint: Constraint
    reason: str

    def to_dict(self) -> Dict[str, Any]:
        return {"constraint": self.constraint.to_dict(), "reason": self.reason}


@dataclass(frozen=True)
class ConstraintEvaluationResult:
    """Partition of matched constraints. A value, never an exception."""
    violations: Tuple[ConstraintMatch, ...] = ()
    warnings: Tuple[ConstraintMatch, ...] = ()

    @property
    def passed(self) -> bool:
        return not self.violations

    def to_dict(self) -> Dict[str, Any]:
        return {
            "passed": self.passed,
            "violations": [v.to_dict() for v in self.violations],
            "warnings": [w.to_dict() for w in self.warnings],
        }

