"""
Task Lifecycle Coordinator

The state machine every task status change flows through.

    todo ---------> in_progress ---------> done
                     |    ^   \
                     v    |    \-------> cancelled
                    blocked

CRITICAL CONSTRAINTS:
- ONLY WRITER: no other component changes a task's status
- SCOPE FIRST: a supplied changeset must pass the Scope Checker; a scope
  violation rejects the transition whatever the gates say
- DONE IS EARNED: every required, non-waived gate passes AND at least one
  artifact or evidence item exists
- GUARD FAILURES ARE RESULTS (TransitionResult.accepted=False);
  missing entities, bad input and version conflicts RAISE
- COMPARE-AND-SWAP: every write presents the version it read
- ONE UNIT: a snapshot and its audit event land together or not at all
- LOCK RELEASE: blocked, done and cancelled clear locked_by/locked_at
"""

import logging
from dataclasses import dataclass, replace
from typing import Optional, Dict, Any, List, Sequence, Tuple

from .constraint_evaluator import ConstraintEvaluator
from .constraint_model import ConstraintContext, ConstraintEvaluationResult
from .errors import ConflictError, NotFoundError, ValidationError
from .gate_evaluator import GateEvaluator
from .governance_store import GovernanceStore, get_governance_store
from .memory_model import Decision, MemoryRecallResult
from .memory_recall import MemoryRecallEngine
from .records_service import RecordsService, new_id
from .scope_checker import ScopeChecker
from .task_model import (
    ChangesetManifest,
    CreatedBy,
    EventType,
    GateType,
    GateWaiver,
    Task,
    TaskStatus,
    TransitionResult,
    utc_now_iso,
)
from .validation import validate_choice, validate_id, validate_non_empty

logger = logging.getLogger("task_lifecycle")


# -----------------------------------------------------------------------------
# State Machine
# -----------------------------------------------------------------------------
VALID_TRANSITIONS: Dict[TaskStatus, List[TaskStatus]] = {
    TaskStatus.TODO: [TaskStatus.IN_PROGRESS],
    TaskStatus.IN_PROGRESS: [TaskStatus.BLOCKED, TaskStatus.DONE, TaskStatus.CANCELLED],
    TaskStatus.BLOCKED: [TaskStatus.IN_PROGRESS],
    TaskStatus.DONE: [],
    TaskStatus.CANCELLED: [],
}

TRANSITION_EVENTS: Dict[TaskStatus, EventType] = {
    TaskStatus.IN_PROGRESS: EventType.TASK_STARTED,
    TaskStatus.BLOCKED: EventType.TASK_BLOCKED,
    TaskStatus.DONE: EventType.TASK_COMPLETED,
    TaskStatus.CANCELLED: EventType.TASK_CANCELLED,
}

LOCK_RELEASING_STATES = (TaskStatus.BLOCKED, TaskStatus.DONE, TaskStatus.CANCELLED)

PICK_STRATEGIES = ("priority", "dependencies", "oldest", "newest")

MISSING_PROOF_OF_WORK = "At least one evidence or artifact item"


def can_transition(current: TaskStatus, target: TaskStatus) -> Tuple[bool, str]:
    """Check if a status transition is valid."""
    valid_targets = VALID_TRANSITIONS.get(current, [])
    if target in valid_targets:
        return True, f"Transition {current.value} -> {target.value} allowed"
    return False, (
        f"Invalid transition: {current.value} -> {target.value}. "
        f"Valid targets: {[t.value for t in valid_targets]}"
    )


# -----------------------------------------------------------------------------
# Results
# -----------------------------------------------------------------------------
@dataclass(frozen=True)
class GateWaiverResult:
    """Outcome of a waiver request. A blocking constraint rejects it."""
    accepted: bool
    reason: str
    constraint_result: ConstraintEvaluationResult
    waiver: Optional[GateWaiver] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "accepted": self.accepted,
            "reason": self.reason,
            "constraints": self.constraint_result.to_dict(),
            "waiver": self.waiver.to_dict() if self.waiver else None,
        }


@dataclass(frozen=True)
class DecisionRecordResult:
    """A recorded decision plus the history recalled for it, if asked."""
    decision: Decision
    recall: Optional[MemoryRecallResult] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "decision": self.decision.to_dict(),
            "recall": self.recall.to_dict() if self.recall else None,
        }


# -----------------------------------------------------------------------------
# Coordinator
# -----------------------------------------------------------------------------
class TaskLifecycleCoordinator:
    """
    Task state machine.

    Wires the scope checker, gate evaluator, constraint evaluator and
    memory recall engine over one records service.
    """

    def __init__(
        self,
        records: RecordsService,
        scope_checker: Optional[ScopeChecker] = None,
        gate_evaluator: Optional[GateEvaluator] = None,
        constraint_evaluator: Optional[ConstraintEvaluator] = None,
        memory_recall: Optional[MemoryRecallEngine] = None,
    ):
        self.records = records
        self.scope_checker = scope_checker or ScopeChecker(records)
        self.gate_evaluator = gate_evaluator or GateEvaluator(records)
        self.constraint_evaluator = constraint_evaluator or ConstraintEvaluator(records)
        self.memory_recall = memory_recall or MemoryRecallEngine(records)

    @property
    def store(self) -> GovernanceStore:
        return self.records.store

    # -------------------------------------------------------------------------
    # Transition
    # -------------------------------------------------------------------------

    def transition(
        self,
        user_id: str,
        task_id: str,
        target_status: Any,
        changeset: Any = None,
        reason: Optional[str] = None,
        needs_human: bool = False,
        gates: Optional[Sequence[Any]] = None,
    ) -> TransitionResult:
        """
        Request a status change.

        Args:
            user_id: Caller
            task_id: Task to move
            target_status: TaskStatus or its string value
            changeset: Optional ChangesetManifest (or JSON) checked for scope
            reason: Required when moving to blocked
            needs_human: Advisory flag carried on TaskBlocked
            gates: Explicit gates for the done check (default: project gates)

        Returns:
            TransitionResult; accepted=False carries what is missing

        Raises:
            ValidationError: malformed input, or blocking without a reason
            NotFoundError: unknown task or project
            ConflictError: the task changed underneath this request
            DomainError: the audit event could not be written (task unchanged)
        """
        target = self._parse_status(target_status)
        if target == TaskStatus.BLOCKED and (not isinstance(reason, str) or not reason.strip()):
            raise ValidationError("Block reason is required", "reason")
        manifest = ChangesetManifest.from_payload(changeset) if changeset is not None else None

        task, project = self.records.load_task_and_project(user_id, task_id)
        current = task.status

        allowed, message = can_transition(current, target)
        if not allowed:
            return self._reject(task, target, message)

        scope_result = None
        if manifest is not None:
            scope_result = self.scope_checker.check(user_id, task, project, manifest)
            if not scope_result.allowed:
                return self._reject(
                    task,
                    target,
                    scope_result.reason,
                    scope_result=scope_result,
                    missing=scope_result.violations or (),
                )

        gate_results: Tuple = ()
        proof_ids: Dict[str, List[str]] = {}
        if target == TaskStatus.DONE:
            gate_results = tuple(self.gate_evaluator.evaluate_gates(user_id, task.id, gates))
            self.records.emit(
                EventType.GATE_EVALUATED,
                task.project_id,
                user_id,
                {
                    "task_id": task.id,
                    "gates": [
                        {
                            "type": r.gate.type,
                            "required": r.gate.required,
                            "passed": r.passed,
                            "waived": r.waived,
                            "reason": r.reason,
                            "missingRequirements": list(r.missing_requirements or ()),
                        }
                        for r in gate_results
                    ],
                },
                task_id=task.id,
            )

            blocking = [r for r in gate_results if r.blocks_completion]
            if blocking:
                missing: List[str] = []
                for r in blocking:
                    missing.extend(r.missing_requirements or (r.reason,))
                return self._reject(
                    task,
                    target,
                    f"Required gates not satisfied: {', '.join(r.gate.type for r in blocking)}",
                    scope_result=scope_result,
                    gate_results=gate_results,
                    missing=missing,
                )

            proof_ids = {
                "artifacts": [a.id for a in self.store.list_artifacts(task.id)],
                "evidence": [e.id for e in self.store.list_evidence(task.id)],
            }
            if not proof_ids["artifacts"] and not proof_ids["evidence"]:
                return self._reject(
                    task,
                    target,
                    "Cannot complete task: no evidence or artifacts attached",
                    scope_result=scope_result,
                    gate_results=gate_results,
                    missing=[MISSING_PROOF_OF_WORK],
                )

        payload: Dict[str, Any] = {
            "task_id": task.id,
            "from": current.value,
            "to": target.value,
        }
        if reason:
            payload["reason"] = reason
        if target == TaskStatus.BLOCKED:
            payload["needs_human"] = bool(needs_human)
        if manifest is not None:
            payload["changeset"] = manifest.to_dict()
        payload.update(proof_ids)
        event = self.records.new_event(
            TRANSITION_EVENTS[target], task.project_id, user_id, payload, task_id=task.id
        )
        updated = self.store.update_task(
            self._apply(task, target), expected_version=task.version, event=event
        )

        logger.info(f"Task {task.id}: {current.value} -> {target.value} (v{updated.version})")
        return TransitionResult(
            accepted=True,
            task=updated,
            from_status=current,
            to_status=target,
            reason=message,
            scope_result=scope_result,
            gate_results=gate_results,
        )

    # -------------------------------------------------------------------------
    # Convenience Operations
    # -------------------------------------------------------------------------

    def start_task(self, user_id: str, task_id: str, changeset: Any = None) -> TransitionResult:
        return self.transition(user_id, task_id, TaskStatus.IN_PROGRESS, changeset=changeset)

    def block_task(
        self,
        user_id: str,
        task_id: str,
        reason: str,
        needs_human: bool = False,
    ) -> TransitionResult:
        return self.transition(
            user_id, task_id, TaskStatus.BLOCKED, reason=reason, needs_human=needs_human
        )

    def resume_task(self, user_id: str, task_id: str) -> TransitionResult:
        return self.transition(user_id, task_id, TaskStatus.IN_PROGRESS)

    def complete_task(
        self,
        user_id: str,
        task_id: str,
        gates: Optional[Sequence[Any]] = None,
        changeset: Any = None,
    ) -> TransitionResult:
        return self.transition(
            user_id, task_id, TaskStatus.DONE, changeset=changeset, gates=gates
        )

    def cancel_task(self, user_id: str, task_id: str, reason: Optional[str] = None) -> TransitionResult:
        return self.transition(user_id, task_id, TaskStatus.CANCELLED, reason=reason)

    def pick_next_task(
        self,
        user_id: str,
        project_id: str,
        strategy: str = "dependencies",
        locked_by: Optional[str] = None,
    ) -> Optional[Task]:
        """
        Lock the next ready task of a project.

        Ready = todo, unlocked, every dependency done. The lock is taken with
        a version compare-and-swap, so two pickers never get the same task.

        Returns:
            The locked task, or None when nothing is ready
        """
        validate_choice(strategy, list(PICK_STRATEGIES), "strategy")
        project = self.records.load_project(user_id, project_id)
        tasks = self.store.list_tasks(project.id, user_id)

        status_by_id = {t.id: t.status for t in tasks}

        def dependency_done(dep_id: str) -> bool:
            if dep_id not in status_by_id:
                dep = self.store.get_task(dep_id)
                status_by_id[dep_id] = dep.status if dep and dep.user_id == user_id else None
            return status_by_id[dep_id] == TaskStatus.DONE

        ready = [
            t for t in tasks
            if t.status == TaskStatus.TODO
            and not t.is_locked
            and all(dependency_done(dep) for dep in t.dependencies)
        ]

        if strategy == "priority":
            ready.sort(key=lambda t: (-t.priority.rank, t.created_at))
        elif strategy == "newest":
            ready.sort(key=lambda t: t.created_at, reverse=True)
        else:
            ready.sort(key=lambda t: t.created_at)

        for candidate in ready:
            locked_at = utc_now_iso()
            event = self.records.new_event(
                EventType.TASK_STARTED,
                project.id,
                user_id,
                {
                    "task_id": candidate.id,
                    "action": "picked",
                    "locked_at": locked_at,
                    "locked_by": locked_by,
                    "strategy": strategy,
                },
                task_id=candidate.id,
            )
            try:
                locked = self.store.update_task(
                    replace(candidate, locked_at=locked_at, locked_by=locked_by),
                    expected_version=candidate.version,
                    event=event,
                )
            except ConflictError:
                logger.debug(f"Lost pick-up race for task {candidate.id}, trying next")
                continue
            logger.info(f"Task {locked.id} picked by {locked_by or 'anonymous'} ({strategy})")
            return locked

        logger.info(f"No ready task in project {project.id}")
        return None

    # -------------------------------------------------------------------------
    # Waivers & Decisions
    # -------------------------------------------------------------------------

    def waive_gate(
        self,
        user_id: str,
        task_id: str,
        gate_type: str,
        decision_id: str,
        rationale: str,
        created_by: str = "agent",
    ) -> GateWaiverResult:
        """
        Exempt a task from one gate, backed by a recorded decision.

        Project constraints are evaluated with gate=<gate_type>; any blocking
        constraint rejects the waiver.
        """
        validate_choice(gate_type, [g.value for g in GateType], "gateType")
        validate_id(decision_id, "decisionId")
        validate_choice(created_by, [c.value for c in CreatedBy], "createdBy")
        rationale = validate_non_empty(rationale, "rationale")

        task = self.records.load_task(user_id, task_id)
        decision = self.store.get_decision(decision_id)
        if decision is None or decision.project_id != task.project_id or decision.user_id != user_id:
            raise NotFoundError(f"Decision {decision_id} not found")

        context = ConstraintContext(gate=gate_type, tags=task.tags, task_type=task.task_type)
        constraint_result = self.constraint_evaluator.evaluate(user_id, task.project_id, context)
        if not constraint_result.passed:
            reasons = "; ".join(v.reason for v in constraint_result.violations)
            logger.warning(f"Waiver of {gate_type} on task {task.id} REJECTED: {reasons}")
            return GateWaiverResult(
                accepted=False,
                reason=f"Waiver blocked by constraints: {reasons}",
                constraint_result=constraint_result,
            )

        waiver = GateWaiver(
            id=new_id(),
            project_id=task.project_id,
            task_id=task.id,
            user_id=user_id,
            gate_type=gate_type,
            decision_id=decision.id,
            rationale=rationale,
            created_by=CreatedBy(created_by),
            constraint_evaluation=constraint_result.to_dict(),
        )
        self.store.add_gate_waiver(waiver)
        self.records.emit(
            EventType.GATE_WAIVED,
            task.project_id,
            user_id,
            {
                "task_id": task.id,
                "waiver_id": waiver.id,
                "gate_type": gate_type,
                "decision_id": decision.id,
                "rationale": rationale,
                "warnings": [w.reason for w in constraint_result.warnings],
            },
            task_id=task.id,
        )
        logger.info(f"Gate {gate_type} waived on task {task.id} (decision {decision.id})")
        return GateWaiverResult(
            accepted=True,
            reason=f"Gate {gate_type} waived",
            constraint_result=constraint_result,
            waiver=waiver,
        )

    def record_decision(
        self,
        user_id: str,
        project_id: str,
        title: str,
        choice: str,
        rationale: str,
        options: Optional[List[str]] = None,
        task_id: Optional[str] = None,
        recall_context: Any = None,
    ) -> DecisionRecordResult:
        """
        Record a decision; with recall_context, also return the history
        recalled for it as advisory context.
        """
        recall = None
        if recall_context is not None:
            recall = self.memory_recall.recall(user_id, project_id, recall_context)
        decision = self.records.record_decision(
            user_id, project_id, title, choice, rationale, options=options, task_id=task_id
        )
        return DecisionRecordResult(decision=decision, recall=recall)

    # -------------------------------------------------------------------------
    # Internal
    # -------------------------------------------------------------------------

    @staticmethod
    def _parse_status(value: Any) -> TaskStatus:
        if isinstance(value, TaskStatus):
            return value
        validate_choice(value, [s.value for s in TaskStatus], "status")
        return TaskStatus(value)

    @staticmethod
    def _apply(task: Task, target: TaskStatus) -> Task:
        if target in LOCK_RELEASING_STATES:
            return replace(task, status=target, locked_at=None, locked_by=None)
        return replace(task, status=target, locked_at=task.locked_at or utc_now_iso())

    @staticmethod
    def _reject(
        task: Task,
        target: TaskStatus,
        reason: str,
        scope_result=None,
        gate_results: Sequence = (),
        missing: Sequence[str] = (),
    ) -> TransitionResult:
        logger.warning(f"Task {task.id}: {task.status.value} -> {target.value} REJECTED: {reason}")
        return TransitionResult(
            accepted=False,
            task=task,
            from_status=task.status,
            to_status=target,
            reason=reason,
            scope_result=scope_result,
            gate_results=tuple(gate_results),
            missing_requirements=tuple(missing),
        )


# -----------------------------------------------------------------------------
# Module-Level Functions
# -----------------------------------------------------------------------------

# Singleton instance
_coordinator: Optional[TaskLifecycleCoordinator] = None


def get_coordinator() -> TaskLifecycleCoordinator:
    """Get the process-wide coordinator over the process-wide store."""
    global _coordinator
    if _coordinator is None:
        _coordinator = TaskLifecycleCoordinator(RecordsService(get_governance_store()))
    return _coordinator


def reset_coordinator() -> None:
    """Forget the cached coordinator (used by tests)."""
    global _coordinator
    _coordinator = None
