"""
Governance Tool Router

Single table-driven dispatch for every agent-facing governance tool.

    POST /tools/{tool_name}   (header X-User-Id, JSON body)
    GET  /tools

Each entry of TOOL_HANDLERS binds a tool name to its payload model and its
handler; there is no second switch anywhere. Errors raised by the engine are
mapped to HTTP status codes through ERROR_STATUS_CODES by error code.
"""

import logging
from dataclasses import dataclass
from typing import Optional, Dict, Any, List, Callable, Type, Union

from fastapi import APIRouter, Body, Header, HTTPException
from pydantic import BaseModel, ConfigDict, Field
from pydantic import ValidationError as PydanticValidationError
from pydantic.alias_generators import to_camel

from .command_safety import analyze_command
from .errors import ErrorCode, ValidationError
from .task_lifecycle import TaskLifecycleCoordinator, get_coordinator

logger = logging.getLogger("tool_router")

router = APIRouter(tags=["Governance Tools"])

ERROR_STATUS_CODES: Dict[ErrorCode, int] = {
    ErrorCode.VALIDATION_ERROR: 400,
    ErrorCode.UNAUTHORIZED: 403,
    ErrorCode.NOT_FOUND: 404,
    ErrorCode.CONFLICT: 409,
    ErrorCode.DOMAIN_ERROR: 500,
}


# -----------------------------------------------------------------------------
# Payload Models
# -----------------------------------------------------------------------------
class ToolPayload(BaseModel):
    """Base payload: camelCase on the wire, snake_case in Python."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="forbid")


class CreateProjectPayload(ToolPayload):
    name: str
    description: Optional[str] = None
    rules: Optional[Dict[str, Any]] = None


class CreateTaskPayload(ToolPayload):
    project_id: str
    title: str
    description: Optional[str] = None
    priority: str = "medium"
    acceptance_criteria: Optional[List[str]] = None
    constraints: Optional[Dict[str, Any]] = None
    dependencies: Optional[List[str]] = None
    tags: Optional[List[str]] = None
    task_type: Optional[str] = None


class AddArtifactPayload(ToolPayload):
    task_id: str
    type: str
    ref: str
    summary: Optional[str] = None


class AddEvidencePayload(ToolPayload):
    task_id: str
    type: str
    content: str
    summary: Optional[str] = None
    created_by: str = "agent"


class AssertScopePayload(ToolPayload):
    task_id: str
    changeset: Any = None


class EvaluateGatesPayload(ToolPayload):
    task_id: str
    gates: Optional[List[Union[Dict[str, Any], str]]] = None


class EvaluateConstraintsPayload(ToolPayload):
    project_id: str
    context: Dict[str, Any] = Field(default_factory=dict)


class CreateConstraintPayload(ToolPayload):
    project_id: str
    scope: str
    trigger: str
    rule_text: str
    enforcement_level: str
    scope_value: Optional[str] = None
    trigger_value: Optional[str] = None
    source_links: Optional[List[str]] = None


class ListConstraintsPayload(ToolPayload):
    project_id: str
    scope: Optional[str] = None
    trigger: Optional[str] = None
    enforcement_level: Optional[str] = None


class RecallMemoryPayload(ToolPayload):
    project_id: str
    context: Dict[str, Any] = Field(default_factory=dict)


class TransitionTaskPayload(ToolPayload):
    task_id: str
    status: str
    changeset: Optional[Dict[str, Any]] = None
    reason: Optional[str] = None
    needs_human: bool = False
    gates: Optional[List[Union[Dict[str, Any], str]]] = None


class StartTaskPayload(ToolPayload):
    task_id: str
    changeset: Optional[Dict[str, Any]] = None


class BlockTaskPayload(ToolPayload):
    task_id: str
    reason: Optional[str] = None
    needs_human: bool = False


class TaskIdPayload(ToolPayload):
    task_id: str


class CompleteTaskPayload(ToolPayload):
    task_id: str
    gates: Optional[List[Union[Dict[str, Any], str]]] = None
    changeset: Optional[Dict[str, Any]] = None


class CancelTaskPayload(ToolPayload):
    task_id: str
    reason: Optional[str] = None


class PickNextTaskPayload(ToolPayload):
    project_id: str
    strategy: str = "dependencies"
    locked_by: Optional[str] = None


class WaiveGatePayload(ToolPayload):
    task_id: str
    gate_type: str
    decision_id: str
    rationale: str
    created_by: str = "agent"


class RecordDecisionPayload(ToolPayload):
    project_id: str
    title: str
    choice: str
    rationale: str
    options: Optional[List[str]] = None
    task_id: Optional[str] = None
    recall_context: Optional[Dict[str, Any]] = None


class RecordOutcomePayload(ToolPayload):
    project_id: str
    subject_type: str
    subject_id: str
    result: str
    notes: Optional[str] = None
    root_cause: Optional[str] = None
    recommendation: Optional[str] = None
    tags: Optional[List[str]] = None
    created_by: str = "agent"


class CreateWorkItemPayload(ToolPayload):
    project_id: str
    title: str
    description: Optional[str] = None
    external_url: Optional[str] = None
    status: str = "open"


class CreateAgentTaskPayload(ToolPayload):
    project_id: str
    title: str
    goal: str
    type: Optional[str] = None
    context: Optional[str] = None
    verification: Optional[str] = None


class ListEventsPayload(ToolPayload):
    project_id: str
    task_id: Optional[str] = None


class AnalyzeCommandPayload(ToolPayload):
    command: str


# -----------------------------------------------------------------------------
# Handlers
# -----------------------------------------------------------------------------
Handler = Callable[[TaskLifecycleCoordinator, str, Any], Any]


def _create_project(c: TaskLifecycleCoordinator, user_id: str, p: CreateProjectPayload):
    return c.records.create_project(user_id, p.name, p.description, p.rules).to_dict()


def _create_task(c: TaskLifecycleCoordinator, user_id: str, p: CreateTaskPayload):
    return c.records.create_task(
        user_id,
        p.project_id,
        p.title,
        description=p.description,
        priority=p.priority,
        acceptance_criteria=p.acceptance_criteria,
        constraints=p.constraints,
        dependencies=p.dependencies,
        tags=p.tags,
        task_type=p.task_type,
    ).to_dict()


def _add_artifact(c: TaskLifecycleCoordinator, user_id: str, p: AddArtifactPayload):
    return c.records.add_artifact(user_id, p.task_id, p.type, p.ref, p.summary).to_dict()


def _add_evidence(c: TaskLifecycleCoordinator, user_id: str, p: AddEvidencePayload):
    return c.records.add_evidence(
        user_id, p.task_id, p.type, p.content, p.summary, p.created_by
    ).to_dict()


def _assert_in_scope(c: TaskLifecycleCoordinator, user_id: str, p: AssertScopePayload):
    return c.scope_checker.assert_in_scope(user_id, p.task_id, p.changeset).to_dict()


def _evaluate_gates(c: TaskLifecycleCoordinator, user_id: str, p: EvaluateGatesPayload):
    results = c.gate_evaluator.evaluate_gates(user_id, p.task_id, p.gates)
    return {
        "allPassed": all(not r.blocks_completion for r in results),
        "results": [r.to_dict() for r in results],
    }


def _evaluate_constraints(c: TaskLifecycleCoordinator, user_id: str, p: EvaluateConstraintsPayload):
    return c.constraint_evaluator.evaluate(user_id, p.project_id, p.context).to_dict()


def _create_constraint(c: TaskLifecycleCoordinator, user_id: str, p: CreateConstraintPayload):
    return c.constraint_evaluator.create_constraint(
        user_id,
        p.project_id,
        p.scope,
        p.trigger,
        p.rule_text,
        p.enforcement_level,
        scope_value=p.scope_value,
        trigger_value=p.trigger_value,
        source_links=p.source_links,
    ).to_dict()


def _list_constraints(c: TaskLifecycleCoordinator, user_id: str, p: ListConstraintsPayload):
    constraints = c.constraint_evaluator.list_constraints(
        user_id, p.project_id, p.scope, p.trigger, p.enforcement_level
    )
    return [con.to_dict() for con in constraints]


def _recall_memory(c: TaskLifecycleCoordinator, user_id: str, p: RecallMemoryPayload):
    return c.memory_recall.recall(user_id, p.project_id, p.context).to_dict()


def _transition_task(c: TaskLifecycleCoordinator, user_id: str, p: TransitionTaskPayload):
    return c.transition(
        user_id,
        p.task_id,
        p.status,
        changeset=p.changeset,
        reason=p.reason,
        needs_human=p.needs_human,
        gates=p.gates,
    ).to_dict()


def _start_task(c: TaskLifecycleCoordinator, user_id: str, p: StartTaskPayload):
    return c.start_task(user_id, p.task_id, p.changeset).to_dict()


def _block_task(c: TaskLifecycleCoordinator, user_id: str, p: BlockTaskPayload):
    return c.block_task(user_id, p.task_id, p.reason, p.needs_human).to_dict()


def _resume_task(c: TaskLifecycleCoordinator, user_id: str, p: TaskIdPayload):
    return c.resume_task(user_id, p.task_id).to_dict()


def _complete_task(c: TaskLifecycleCoordinator, user_id: str, p: CompleteTaskPayload):
    return c.complete_task(user_id, p.task_id, p.gates, p.changeset).to_dict()


def _cancel_task(c: TaskLifecycleCoordinator, user_id: str, p: CancelTaskPayload):
    return c.cancel_task(user_id, p.task_id, p.reason).to_dict()


def _pick_next_task(c: TaskLifecycleCoordinator, user_id: str, p: PickNextTaskPayload):
    task = c.pick_next_task(user_id, p.project_id, p.strategy, p.locked_by)
    return task.to_dict() if task else None


def _waive_gate(c: TaskLifecycleCoordinator, user_id: str, p: WaiveGatePayload):
    return c.waive_gate(
        user_id, p.task_id, p.gate_type, p.decision_id, p.rationale, p.created_by
    ).to_dict()


def _record_decision(c: TaskLifecycleCoordinator, user_id: str, p: RecordDecisionPayload):
    return c.record_decision(
        user_id,
        p.project_id,
        p.title,
        p.choice,
        p.rationale,
        options=p.options,
        task_id=p.task_id,
        recall_context=p.recall_context,
    ).to_dict()


def _record_outcome(c: TaskLifecycleCoordinator, user_id: str, p: RecordOutcomePayload):
    return c.records.record_outcome(
        user_id,
        p.project_id,
        p.subject_type,
        p.subject_id,
        p.result,
        notes=p.notes,
        root_cause=p.root_cause,
        recommendation=p.recommendation,
        tags=p.tags,
        created_by=p.created_by,
    ).to_dict()


def _create_work_item(c: TaskLifecycleCoordinator, user_id: str, p: CreateWorkItemPayload):
    return c.records.create_work_item(
        user_id, p.project_id, p.title, p.description, p.external_url, p.status
    ).to_dict()


def _create_agent_task(c: TaskLifecycleCoordinator, user_id: str, p: CreateAgentTaskPayload):
    return c.records.create_agent_task(
        user_id, p.project_id, p.title, p.goal, p.type, p.context, p.verification
    ).to_dict()


def _list_events(c: TaskLifecycleCoordinator, user_id: str, p: ListEventsPayload):
    return [e.to_dict() for e in c.records.list_events(user_id, p.project_id, p.task_id)]


def _analyze_command(c: TaskLifecycleCoordinator, user_id: str, p: AnalyzeCommandPayload):
    return analyze_command(p.command).to_dict()


# -----------------------------------------------------------------------------
# Registry
# -----------------------------------------------------------------------------
@dataclass(frozen=True)
class ToolSpec:
    payload: Type[ToolPayload]
    handler: Handler
    description: str


TOOL_HANDLERS: Dict[str, ToolSpec] = {
    "create_project": ToolSpec(CreateProjectPayload, _create_project, "Create a project with scope rules and default gates"),
    "create_task": ToolSpec(CreateTaskPayload, _create_task, "Create a task in a project"),
    "add_artifact": ToolSpec(AddArtifactPayload, _add_artifact, "Attach an artifact to a task"),
    "add_evidence": ToolSpec(AddEvidencePayload, _add_evidence, "Attach evidence to a task"),
    "assert_in_scope": ToolSpec(AssertScopePayload, _assert_in_scope, "Check a changeset against the task's scope"),
    "evaluate_gates": ToolSpec(EvaluateGatesPayload, _evaluate_gates, "Evaluate gates for a task"),
    "evaluate_constraints": ToolSpec(EvaluateConstraintsPayload, _evaluate_constraints, "Evaluate project constraints against a context"),
    "create_constraint": ToolSpec(CreateConstraintPayload, _create_constraint, "Create a project constraint"),
    "list_constraints": ToolSpec(ListConstraintsPayload, _list_constraints, "List project constraints"),
    "recall_memory": ToolSpec(RecallMemoryPayload, _recall_memory, "Recall relevant project history"),
    "transition_task": ToolSpec(TransitionTaskPayload, _transition_task, "Request a task status transition"),
    "start_task": ToolSpec(StartTaskPayload, _start_task, "Move a task to in_progress"),
    "block_task": ToolSpec(BlockTaskPayload, _block_task, "Block a task with a reason"),
    "resume_task": ToolSpec(TaskIdPayload, _resume_task, "Resume a blocked task"),
    "complete_task": ToolSpec(CompleteTaskPayload, _complete_task, "Complete a task after gates pass"),
    "cancel_task": ToolSpec(CancelTaskPayload, _cancel_task, "Cancel a task"),
    "pick_next_task": ToolSpec(PickNextTaskPayload, _pick_next_task, "Lock the next ready task"),
    "waive_gate": ToolSpec(WaiveGatePayload, _waive_gate, "Waive a gate on a task, backed by a decision"),
    "record_decision": ToolSpec(RecordDecisionPayload, _record_decision, "Record a decision, optionally with recall"),
    "record_outcome": ToolSpec(RecordOutcomePayload, _record_outcome, "Record the outcome of a decision, task or gate"),
    "create_work_item": ToolSpec(CreateWorkItemPayload, _create_work_item, "Link an external work item"),
    "create_agent_task": ToolSpec(CreateAgentTaskPayload, _create_agent_task, "Create a sub-agent task"),
    "list_events": ToolSpec(ListEventsPayload, _list_events, "List audit events for a project or task"),
    "analyze_command": ToolSpec(AnalyzeCommandPayload, _analyze_command, "Check a shell command for dangerous patterns"),
}


def dispatch(
    tool_name: str,
    user_id: str,
    body: Optional[Dict[str, Any]],
    coordinator: Optional[TaskLifecycleCoordinator] = None,
) -> Any:
    """
    Validate a payload and run its tool.

    Raises:
        HTTPException: 404 for an unknown tool
        GovernanceError: anything the engine raises, unchanged
    """
    spec = TOOL_HANDLERS.get(tool_name)
    if spec is None:
        raise HTTPException(status_code=404, detail=f"Unknown tool: {tool_name}")

    try:
        payload = spec.payload.model_validate(body or {})
    except PydanticValidationError as e:
        first = e.errors()[0]
        field = ".".join(str(part) for part in first.get("loc", ()))
        raise ValidationError(f"Invalid {tool_name} payload: {first.get('msg')}", field or None)

    logger.debug(f"Dispatching tool {tool_name} for user {user_id}")
    return spec.handler(coordinator or get_coordinator(), user_id, payload)


# -----------------------------------------------------------------------------
# Routes
# -----------------------------------------------------------------------------
@router.get("/tools")
async def list_tools():
    """List available governance tools."""
    return {
        "tools": [
            {"name": name, "description": spec.description}
            for name, spec in TOOL_HANDLERS.items()
        ]
    }


@router.post("/tools/{tool_name}")
def call_tool(
    tool_name: str,
    body: Optional[Dict[str, Any]] = Body(default=None),
    x_user_id: str = Header(...),
):
    """Run a governance tool on behalf of the X-User-Id caller."""
    return {"result": dispatch(tool_name, x_user_id, body)}
