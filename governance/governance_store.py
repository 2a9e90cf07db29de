"""
Governance Store

Append-only JSONL persistence for every governance collection.

CRITICAL CONSTRAINTS:
- APPEND-ONLY: Lines are NEVER modified or deleted
- LATEST SNAPSHOT WINS: Projects and tasks are re-appended on change;
  the last line for an id is the current state
- COMPARE-AND-SWAP: Task writes must present the version they read
- FSYNC: All writes are fsync'd for durability
- PAIRED WRITES: a task snapshot written with its event is restored if the
  event cannot be written
- MISSING FILE = EMPTY COLLECTION, never an error
- TYPED BOUNDARY: Raw dicts never leave this module; callers get models

Collections:
    projects, tasks, artifacts, evidence, constraints, decisions, outcomes,
    work_items, agent_tasks, gate_waivers, events
"""

import json
import logging
import os
import threading
from dataclasses import replace
from pathlib import Path
from typing import Optional, Dict, Any, List, Callable, TypeVar

from .config import get_config
from .constraint_model import Constraint
from .errors import ConflictError, DomainError, NotFoundError
from .memory_model import Decision, Outcome, WorkItem, AgentTask
from .task_model import (
    Project,
    Task,
    Artifact,
    Evidence,
    GateWaiver,
    GovernanceEvent,
    EventType,
    utc_now_iso,
)

logger = logging.getLogger("governance_store")

T = TypeVar("T")


class GovernanceStore:
    """
    File-backed store, one JSONL file per collection.

    A single lock serialises every write so that the read-compare-append of
    a task update is atomic within the process.
    """

    def __init__(self, data_dir: Optional[Path] = None):
        """
        Args:
            data_dir: Directory holding the JSONL files (defaults to config)
        """
        self._data_dir = Path(data_dir) if data_dir is not None else get_config().data_dir
        self._lock = threading.Lock()

    @property
    def data_dir(self) -> Path:
        return self._data_dir

    def _path(self, collection: str) -> Path:
        return self._data_dir / f"{collection}.jsonl"

    # -------------------------------------------------------------------------
    # Projects
    # -------------------------------------------------------------------------

    def save_project(self, project: Project) -> Project:
        with self._lock:
            self._append_record(self._path("projects"), project.to_dict())
        return project

    def get_project(self, project_id: str) -> Optional[Project]:
        record = self._latest_by_id("projects").get(project_id)
        return Project.from_dict(record) if record else None

    def list_projects(self, user_id: str) -> List[Project]:
        return [
            Project.from_dict(r)
            for r in self._latest_by_id("projects").values()
            if r.get("user_id") == user_id
        ]

    # -------------------------------------------------------------------------
    # Tasks (versioned)
    # -------------------------------------------------------------------------

    def create_task(self, task: Task) -> Task:
        with self._lock:
            if task.id in self._latest_by_id("tasks"):
                raise DomainError(f"Task {task.id} already exists")
            self._append_record(self._path("tasks"), task.to_dict())
        return task

    def get_task(self, task_id: str) -> Optional[Task]:
        record = self._latest_by_id("tasks").get(task_id)
        return Task.from_dict(record) if record else None

    def list_tasks(self, project_id: str, user_id: Optional[str] = None) -> List[Task]:
        tasks = []
        for record in self._latest_by_id("tasks").values():
            if record.get("project_id") != project_id:
                continue
            if user_id and record.get("user_id") != user_id:
                continue
            tasks.append(Task.from_dict(record))
        return tasks

    def update_task(
        self,
        task: Task,
        expected_version: int,
        event: Optional[GovernanceEvent] = None,
    ) -> Task:
        """
        Write a new task snapshot if nobody else wrote since expected_version.

        When an event is given, the snapshot and the event are one unit: if the
        event cannot be written, the prior snapshot is re-appended so the task
        reads as it did before the call.

        Returns:
            The stored snapshot with version = expected_version + 1

        Raises:
            NotFoundError: if the task was never created
            ConflictError: if the stored version differs from expected_version
            DomainError: the event could not be written (snapshot restored)
        """
        with self._lock:
            current = self._latest_by_id("tasks").get(task.id)
            if current is None:
                raise NotFoundError(f"Task {task.id} not found")
            actual = current.get("version", 1)
            if actual != expected_version:
                logger.warning(
                    f"Stale write on task {task.id}: expected v{expected_version}, found v{actual}"
                )
                raise ConflictError(
                    f"Task {task.id} was modified concurrently",
                    expected_version=expected_version,
                    actual_version=actual,
                )
            updated = replace(task, version=expected_version + 1, updated_at=utc_now_iso())
            self._append_record(self._path("tasks"), updated.to_dict())
            if event is None:
                return updated
            try:
                self._append_record(self._path("events"), event.to_dict())
            except (OSError, TypeError, ValueError) as e:
                logger.critical(f"AUDIT LOG FAILURE ({event.event_type.value}): {e}")
                self._restore_snapshot(current)
                raise DomainError(f"Failed to record {event.event_type.value} event", {"reason": str(e)})
        return updated

    # -------------------------------------------------------------------------
    # Append-only collections
    # -------------------------------------------------------------------------

    def add_artifact(self, artifact: Artifact) -> Artifact:
        return self._add("artifacts", artifact)

    def list_artifacts(self, task_id: str) -> List[Artifact]:
        return self._list("artifacts", Artifact.from_dict, lambda r: r.get("task_id") == task_id)

    def add_evidence(self, evidence: Evidence) -> Evidence:
        return self._add("evidence", evidence)

    def list_evidence(self, task_id: str) -> List[Evidence]:
        return self._list("evidence", Evidence.from_dict, lambda r: r.get("task_id") == task_id)

    def add_constraint(self, constraint: Constraint) -> Constraint:
        return self._add("constraints", constraint)

    def list_constraints(self, project_id: str, user_id: str) -> List[Constraint]:
        return self._list("constraints", Constraint.from_dict, _owned_by(project_id, user_id))

    def add_decision(self, decision: Decision) -> Decision:
        return self._add("decisions", decision)

    def get_decision(self, decision_id: str) -> Optional[Decision]:
        for record in self._read_records(self._path("decisions")):
            if record.get("id") == decision_id:
                return Decision.from_dict(record)
        return None

    def list_decisions(self, project_id: str, user_id: str) -> List[Decision]:
        return self._list("decisions", Decision.from_dict, _owned_by(project_id, user_id))

    def add_outcome(self, outcome: Outcome) -> Outcome:
        return self._add("outcomes", outcome)

    def list_outcomes(self, project_id: str, user_id: str) -> List[Outcome]:
        return self._list("outcomes", Outcome.from_dict, _owned_by(project_id, user_id))

    def add_work_item(self, work_item: WorkItem) -> WorkItem:
        return self._add("work_items", work_item)

    def list_work_items(self, project_id: str, user_id: str) -> List[WorkItem]:
        return self._list("work_items", WorkItem.from_dict, _owned_by(project_id, user_id))

    def add_agent_task(self, agent_task: AgentTask) -> AgentTask:
        return self._add("agent_tasks", agent_task)

    def list_agent_tasks(self, project_id: str, user_id: str) -> List[AgentTask]:
        return self._list("agent_tasks", AgentTask.from_dict, _owned_by(project_id, user_id))

    def add_gate_waiver(self, waiver: GateWaiver) -> GateWaiver:
        return self._add("gate_waivers", waiver)

    def list_gate_waivers(self, task_id: str) -> List[GateWaiver]:
        return self._list("gate_waivers", GateWaiver.from_dict, lambda r: r.get("task_id") == task_id)

    # -------------------------------------------------------------------------
    # Audit Events
    # -------------------------------------------------------------------------

    def append_event(self, event: GovernanceEvent) -> GovernanceEvent:
        """
        Append an audit event.

        Raises:
            DomainError: the event could not be written (logged at CRITICAL)
        """
        try:
            with self._lock:
                self._append_record(self._path("events"), event.to_dict())
        except (OSError, TypeError, ValueError) as e:
            logger.critical(f"AUDIT LOG FAILURE ({event.event_type.value}): {e}")
            raise DomainError(f"Failed to record {event.event_type.value} event", {"reason": str(e)})
        return event

    def list_events(
        self,
        project_id: Optional[str] = None,
        task_id: Optional[str] = None,
        event_type: Optional[EventType] = None,
    ) -> List[GovernanceEvent]:
        """Events in append order, optionally filtered."""
        events = []
        for record in self._read_records(self._path("events")):
            if project_id and record.get("project_id") != project_id:
                continue
            if task_id and record.get("task_id") != task_id:
                continue
            if event_type and record.get("event_type") != event_type.value:
                continue
            events.append(GovernanceEvent.from_dict(record))
        return events

    # -------------------------------------------------------------------------
    # Internal
    # -------------------------------------------------------------------------

    def _add(self, collection: str, item: T) -> T:
        with self._lock:
            self._append_record(self._path(collection), item.to_dict())
        return item

    def _list(
        self,
        collection: str,
        from_dict: Callable[[Dict[str, Any]], T],
        predicate: Callable[[Dict[str, Any]], bool],
    ) -> List[T]:
        return [from_dict(r) for r in self._read_records(self._path(collection)) if predicate(r)]

    def _latest_by_id(self, collection: str) -> Dict[str, Dict[str, Any]]:
        latest: Dict[str, Dict[str, Any]] = {}
        for record in self._read_records(self._path(collection)):
            record_id = record.get("id")
            if record_id:
                # dict keeps first-insertion order, so listings stay in creation order
                latest[record_id] = record
        return latest

    def _append_record(self, file_path: Path, record: Dict[str, Any]) -> None:
        """
        Append a record to a JSONL file with fsync.

        Callers hold self._lock.
        """
        file_path.parent.mkdir(parents=True, exist_ok=True)
        line = json.dumps(record)
        with open(file_path, "a") as f:
            f.write(line + "\n")
            f.flush()
            os.fsync(f.fileno())

    def _restore_snapshot(self, record: Dict[str, Any]) -> None:
        """Re-append a prior task snapshot. Callers hold self._lock."""
        try:
            self._append_record(self._path("tasks"), record)
        except OSError as e:
            logger.critical(f"TASK ROLLBACK FAILURE ({record.get('id')}): {e}")
        else:
            logger.warning(f"Task {record.get('id')} restored to v{record.get('version', 1)}")

    def _read_records(self, file_path: Path) -> List[Dict[str, Any]]:
        if not file_path.exists():
            return []

        records = []
        with open(file_path, "r") as f:
            for line in f:
                line = line.strip()
                if not line:
                    continue
                try:
                    records.append(json.loads(line))
                except json.JSONDecodeError:
                    logger.warning(f"Skipping malformed line in {file_path.name}")
        return records


def _owned_by(project_id: str, user_id: str) -> Callable[[Dict[str, Any]], bool]:
    def predicate(record: Dict[str, Any]) -> bool:
        return record.get("project_id") == project_id and record.get("user_id") == user_id
    return predicate


# -----------------------------------------------------------------------------
# Module-Level Functions
# -----------------------------------------------------------------------------

# Singleton instance
_store: Optional[GovernanceStore] = None


def get_governance_store(data_dir: Optional[Path] = None) -> GovernanceStore:
    """Get the process-wide store."""
    global _store
    if _store is None:
        _store = GovernanceStore(data_dir)
    return _store


def reset_governance_store() -> None:
    """Forget the cached store (used by tests)."""
    global _store
    _store = None
