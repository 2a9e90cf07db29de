"""
Records Service

Validated creation of every governance record, plus the ownership-checked
loaders the engines share.

Each write emits its audit event:
    ProjectCreated, TaskCreated, ArtifactProduced, EvidenceAdded,
    DecisionRecorded, OutcomeRecorded, WorkItemCreated, AgentTaskCreated

Lifecycle changes to an existing task are NOT made here; they belong to the
Task Lifecycle Coordinator.
"""

import logging
import uuid
from typing import Optional, Dict, Any, List, Sequence

from .command_safety import screen_command
from .errors import NotFoundError, UnauthorizedError, ValidationError
from .governance_store import GovernanceStore
from .memory_model import (
    Decision,
    Outcome,
    OutcomeResult,
    OutcomeSubjectType,
    WorkItem,
    AgentTask,
)
from .task_model import (
    Project,
    ProjectRules,
    Task,
    TaskConstraints,
    TaskPriority,
    Artifact,
    ArtifactType,
    Evidence,
    EvidenceType,
    CreatedBy,
    GovernanceEvent,
    EventType,
)
from .validation import (
    validate_id,
    validate_non_empty,
    validate_choice,
    optional_string_list,
)

logger = logging.getLogger("records_service")

MAX_TITLE_LENGTH = 500


def new_id() -> str:
    return str(uuid.uuid4())


def _values(enum_cls) -> List[str]:
    return [e.value for e in enum_cls]


def _optional_text(value: Any, field_name: str) -> Optional[str]:
    if value is None:
        return None
    if not isinstance(value, str):
        raise ValidationError(f"{field_name} must be a string", field_name)
    return value


def _screen_gate_commands(specs: Sequence[str]) -> None:
    """Reject default gate specs whose "command=" value is dangerous."""
    for spec in specs:
        _, _, config_str = spec.partition(":")
        for pair in config_str.split(","):
            key, _, value = pair.partition("=")
            if key.strip() == "command":
                screen_command(value, "defaultGates")


class RecordsService:
    """Creates and loads governance records on behalf of a user."""

    def __init__(self, store: GovernanceStore):
        self._store = store

    @property
    def store(self) -> GovernanceStore:
        return self._store

    # -------------------------------------------------------------------------
    # Loaders
    # -------------------------------------------------------------------------

    def load_project(self, user_id: str, project_id: str) -> Project:
        """
        Load a project owned by user_id.

        Raises:
            ValidationError: malformed ids
            NotFoundError: unknown project
            UnauthorizedError: project belongs to another user
        """
        validate_id(user_id, "userId")
        validate_id(project_id, "projectId")
        project = self._store.get_project(project_id)
        if project is None:
            raise NotFoundError(f"Project {project_id} not found")
        if project.user_id != user_id:
            raise UnauthorizedError()
        return project

    def load_task(self, user_id: str, task_id: str) -> Task:
        validate_id(user_id, "userId")
        validate_id(task_id, "taskId")
        task = self._store.get_task(task_id)
        if task is None:
            raise NotFoundError(f"Task {task_id} not found")
        if task.user_id != user_id:
            raise UnauthorizedError()
        return task

    def load_task_and_project(self, user_id: str, task_id: str):
        task = self.load_task(user_id, task_id)
        project = self._store.get_project(task.project_id)
        if project is None:
            raise NotFoundError(f"Project {task.project_id} not found")
        return task, project

    # -------------------------------------------------------------------------
    # Events
    # -------------------------------------------------------------------------

    def emit(
        self,
        event_type: EventType,
        project_id: str,
        user_id: str,
        payload: Dict[str, Any],
        task_id: Optional[str] = None,
    ) -> GovernanceEvent:
        return self._store.append_event(
            self.new_event(event_type, project_id, user_id, payload, task_id=task_id)
        )

    @staticmethod
    def new_event(
        event_type: EventType,
        project_id: str,
        user_id: str,
        payload: Dict[str, Any],
        task_id: Optional[str] = None,
    ) -> GovernanceEvent:
        """Build an event without writing it (for writes paired with a snapshot)."""
        return GovernanceEvent(
            id=new_id(),
            project_id=project_id,
            task_id=task_id,
            user_id=user_id,
            event_type=event_type,
            payload=payload,
        )

    def list_events(self, user_id: str, project_id: str, task_id: Optional[str] = None) -> List[GovernanceEvent]:
        self.load_project(user_id, project_id)
        return self._store.list_events(project_id=project_id, task_id=task_id)

    # -------------------------------------------------------------------------
    # Projects & Tasks
    # -------------------------------------------------------------------------

    def create_project(
        self,
        user_id: str,
        name: str,
        description: Optional[str] = None,
        rules: Optional[Dict[str, Any]] = None,
    ) -> Project:
        validate_id(user_id, "userId")
        project = Project(
            id=new_id(),
            user_id=user_id,
            name=validate_non_empty(name, "name", MAX_TITLE_LENGTH),
            description=_optional_text(description, "description"),
            rules=ProjectRules.from_dict(rules),
        )
        _screen_gate_commands(project.rules.default_gates or ())
        self._store.save_project(project)
        self.emit(EventType.PROJECT_CREATED, project.id, user_id, {"name": project.name})
        logger.info(f"Project created: {project.id} ({project.name})")
        return project

    def create_task(
        self,
        user_id: str,
        project_id: str,
        title: str,
        description: Optional[str] = None,
        priority: str = "medium",
        acceptance_criteria: Optional[List[str]] = None,
        constraints: Optional[Dict[str, Any]] = None,
        dependencies: Optional[List[str]] = None,
        tags: Optional[List[str]] = None,
        task_type: Optional[str] = None,
    ) -> Task:
        project = self.load_project(user_id, project_id)
        validate_choice(priority, _values(TaskPriority), "priority")
        deps = optional_string_list(dependencies, "dependencies") or []
        for dep in deps:
            validate_id(dep, "dependencies")

        task = Task(
            id=new_id(),
            project_id=project.id,
            user_id=user_id,
            title=validate_non_empty(title, "title", MAX_TITLE_LENGTH),
            description=_optional_text(description, "description"),
            priority=TaskPriority(priority),
            acceptance_criteria=tuple(optional_string_list(acceptance_criteria, "acceptanceCriteria") or ()),
            constraints=TaskConstraints.from_dict(constraints),
            dependencies=tuple(deps),
            tags=tuple(optional_string_list(tags, "tags") or ()),
            task_type=_optional_text(task_type, "taskType"),
        )
        self._store.create_task(task)
        self.emit(
            EventType.TASK_CREATED,
            project.id,
            user_id,
            {"title": task.title, "priority": task.priority.value},
            task_id=task.id,
        )
        logger.info(f"Task created: {task.id} in project {project.id}")
        return task

    # -------------------------------------------------------------------------
    # Proof of Work
    # -------------------------------------------------------------------------

    def add_artifact(
        self,
        user_id: str,
        task_id: str,
        type: str,
        ref: str,
        summary: Optional[str] = None,
    ) -> Artifact:
        task = self.load_task(user_id, task_id)
        validate_choice(type, _values(ArtifactType), "type")
        artifact = Artifact(
            id=new_id(),
            task_id=task.id,
            project_id=task.project_id,
            user_id=user_id,
            type=ArtifactType(type),
            ref=validate_non_empty(ref, "ref"),
            summary=_optional_text(summary, "summary"),
        )
        self._store.add_artifact(artifact)
        self.emit(
            EventType.ARTIFACT_PRODUCED,
            task.project_id,
            user_id,
            {"artifactId": artifact.id, "type": artifact.type.value, "ref": artifact.ref},
            task_id=task.id,
        )
        return artifact

    def add_evidence(
        self,
        user_id: str,
        task_id: str,
        type: str,
        content: str,
        summary: Optional[str] = None,
        created_by: str = "agent",
    ) -> Evidence:
        task = self.load_task(user_id, task_id)
        validate_choice(type, _values(EvidenceType), "type")
        validate_choice(created_by, _values(CreatedBy), "createdBy")
        evidence = Evidence(
            id=new_id(),
            task_id=task.id,
            project_id=task.project_id,
            user_id=user_id,
            type=EvidenceType(type),
            content=validate_non_empty(content, "content"),
            summary=_optional_text(summary, "summary"),
            created_by=CreatedBy(created_by),
        )
        self._store.add_evidence(evidence)
        self.emit(
            EventType.EVIDENCE_ADDED,
            task.project_id,
            user_id,
            {"evidenceId": evidence.id, "type": evidence.type.value},
            task_id=task.id,
        )
        return evidence

    # -------------------------------------------------------------------------
    # History
    # -------------------------------------------------------------------------

    def record_decision(
        self,
        user_id: str,
        project_id: str,
        title: str,
        choice: str,
        rationale: str,
        options: Optional[List[str]] = None,
        task_id: Optional[str] = None,
    ) -> Decision:
        project = self.load_project(user_id, project_id)
        if task_id is not None:
            task = self.load_task(user_id, task_id)
            if task.project_id != project.id:
                raise ValidationError("Task does not belong to this project", "taskId")
        decision = Decision(
            id=new_id(),
            project_id=project.id,
            user_id=user_id,
            task_id=task_id,
            title=validate_non_empty(title, "title", MAX_TITLE_LENGTH),
            options=tuple(optional_string_list(options, "options") or ()),
            choice=validate_non_empty(choice, "choice"),
            rationale=validate_non_empty(rationale, "rationale"),
        )
        self._store.add_decision(decision)
        self.emit(
            EventType.DECISION_RECORDED,
            project.id,
            user_id,
            {"decisionId": decision.id, "title": decision.title, "choice": decision.choice},
            task_id=task_id,
        )
        return decision

    def record_outcome(
        self,
        user_id: str,
        project_id: str,
        subject_type: str,
        subject_id: str,
        result: str,
        notes: Optional[str] = None,
        root_cause: Optional[str] = None,
        recommendation: Optional[str] = None,
        tags: Optional[List[str]] = None,
        created_by: str = "agent",
    ) -> Outcome:
        project = self.load_project(user_id, project_id)
        validate_choice(subject_type, _values(OutcomeSubjectType), "subjectType")
        validate_id(subject_id, "subjectId")
        validate_choice(result, _values(OutcomeResult), "result")
        validate_choice(created_by, _values(CreatedBy), "createdBy")
        outcome = Outcome(
            id=new_id(),
            project_id=project.id,
            user_id=user_id,
            subject_type=OutcomeSubjectType(subject_type),
            subject_id=subject_id,
            result=OutcomeResult(result),
            notes=_optional_text(notes, "notes"),
            root_cause=_optional_text(root_cause, "rootCause"),
            recommendation=_optional_text(recommendation, "recommendation"),
            tags=tuple(optional_string_list(tags, "tags") or ()),
            created_by=CreatedBy(created_by),
        )
        self._store.add_outcome(outcome)
        self.emit(
            EventType.OUTCOME_RECORDED,
            project.id,
            user_id,
            {
                "outcomeId": outcome.id,
                "subjectType": outcome.subject_type.value,
                "subjectId": outcome.subject_id,
                "result": outcome.result.value,
            },
        )
        return outcome

    def create_work_item(
        self,
        user_id: str,
        project_id: str,
        title: str,
        description: Optional[str] = None,
        external_url: Optional[str] = None,
        status: str = "open",
    ) -> WorkItem:
        project = self.load_project(user_id, project_id)
        work_item = WorkItem(
            id=new_id(),
            project_id=project.id,
            user_id=user_id,
            title=validate_non_empty(title, "title", MAX_TITLE_LENGTH),
            description=_optional_text(description, "description"),
            external_url=_optional_text(external_url, "externalUrl"),
            status=validate_non_empty(status, "status"),
        )
        self._store.add_work_item(work_item)
        self.emit(
            EventType.WORK_ITEM_CREATED,
            project.id,
            user_id,
            {"workItemId": work_item.id, "title": work_item.title},
        )
        return work_item

    def create_agent_task(
        self,
        user_id: str,
        project_id: str,
        title: str,
        goal: str,
        type: Optional[str] = None,
        context: Optional[str] = None,
        verification: Optional[str] = None,
    ) -> AgentTask:
        project = self.load_project(user_id, project_id)
        agent_task = AgentTask(
            id=new_id(),
            project_id=project.id,
            user_id=user_id,
            title=validate_non_empty(title, "title", MAX_TITLE_LENGTH),
            goal=validate_non_empty(goal, "goal"),
            type=_optional_text(type, "type"),
            context=_optional_text(context, "context"),
            verification=_optional_text(verification, "verification"),
        )
        self._store.add_agent_task(agent_task)
        self.emit(
            EventType.AGENT_TASK_CREATED,
            project.id,
            user_id,
            {"agentTaskId": agent_task.id, "title": agent_task.title},
        )
        return agent_task
