"""
Constraint Evaluator

Matches project-level rules (scope x trigger) against an evaluation context
and partitions the hits into violations (block) and warnings (warn).

CRITICAL CONSTRAINTS:
- READ-ONLY: evaluation never mutates a constraint and emits no events
- block -> violation, warn -> warning, NEVER both
- MISSING TRIGGER VALUE never matches (except "always")
- Tag, gate and task-type comparisons are case-insensitive
"""

import logging
from typing import Optional, Any, List

from .constraint_model import (
    Constraint,
    ConstraintContext,
    ConstraintEvaluationResult,
    ConstraintMatch,
    ConstraintScope,
    ConstraintTrigger,
    EnforcementLevel,
    MAX_RULE_TEXT_LENGTH,
)
from .errors import ValidationError
from .records_service import RecordsService, new_id
from .scope_checker import matches_path
from .task_model import EventType
from .validation import validate_non_empty, optional_string_list

logger = logging.getLogger("constraint_evaluator")


# -----------------------------------------------------------------------------
# Matching (pure)
# -----------------------------------------------------------------------------
def scope_applies(constraint: Constraint, context: ConstraintContext) -> bool:
    """Pre-filter: does the constraint's scope cover this context at all?"""
    if constraint.scope in (ConstraintScope.PROJECT, ConstraintScope.REPO):
        return True

    if constraint.scope == ConstraintScope.DIRECTORY:
        if not constraint.scope_value:
            return True
        if context.directory and matches_path(context.directory, constraint.scope_value):
            return True
        return any(matches_path(f, constraint.scope_value) for f in context.files)

    if constraint.scope == ConstraintScope.TASK_TYPE:
        if not constraint.scope_value:
            return True
        if not context.task_type:
            return False
        return context.task_type.lower() == constraint.scope_value.lower()

    return False


def trigger_fires(constraint: Constraint, context: ConstraintContext) -> bool:
    trigger = constraint.trigger
    value = constraint.trigger_value

    if trigger == ConstraintTrigger.ALWAYS:
        return True
    if not value:
        return False

    if trigger == ConstraintTrigger.FILES_MATCH:
        return any(matches_path(f, value) for f in context.files)
    if trigger == ConstraintTrigger.TASK_TAG:
        return any(tag.lower() == value.lower() for tag in context.tags)
    if trigger == ConstraintTrigger.GATE:
        return bool(context.gate) and context.gate.lower() == value.lower()
    if trigger == ConstraintTrigger.KEYWORD:
        return any(value.lower() in keyword.lower() for keyword in context.keywords)
    return False


def build_reason(constraint: Constraint, context: ConstraintContext) -> str:
    """Rule text plus the piece of context that fired it."""
    reason = constraint.rule_text

    if constraint.trigger == ConstraintTrigger.FILES_MATCH and constraint.trigger_value:
        matched = [f for f in context.files if matches_path(f, constraint.trigger_value)]
        if matched:
            reason += f" (Matched files: {', '.join(matched)})"
    if constraint.trigger == ConstraintTrigger.TASK_TAG and context.tags:
        reason += f" (Task tags: {', '.join(context.tags)})"
    if constraint.trigger == ConstraintTrigger.GATE and context.gate:
        reason += f" (Gate: {context.gate})"
    if constraint.scope == ConstraintScope.DIRECTORY and constraint.scope_value:
        reason += f" (Directory: {constraint.scope_value})"

    return reason


def evaluate_constraint_set(
    constraints: List[Constraint],
    context: ConstraintContext,
) -> ConstraintEvaluationResult:
    violations = []
    warnings = []
    for constraint in constraints:
        if not scope_applies(constraint, context) or not trigger_fires(constraint, context):
            continue
        match = ConstraintMatch(constraint=constraint, reason=build_reason(constraint, context))
        if constraint.enforcement_level == EnforcementLevel.BLOCK:
            violations.append(match)
        else:
            warnings.append(match)
    return ConstraintEvaluationResult(violations=tuple(violations), warnings=tuple(warnings))


# -----------------------------------------------------------------------------
# Evaluator
# -----------------------------------------------------------------------------
class ConstraintEvaluator:
    """Creates, lists and evaluates project constraints."""

    def __init__(self, records: RecordsService):
        self._records = records

    def evaluate(self, user_id: str, project_id: str, context: Any) -> ConstraintEvaluationResult:
        """
        Evaluate every constraint of a project against a context.

        Args:
            user_id: Caller
            project_id: Project whose constraints apply
            context: ConstraintContext or its JSON shape

        Raises:
            ValidationError: malformed ids or context
            NotFoundError: unknown project
        """
        ctx = ConstraintContext.from_payload(context)
        project = self._records.load_project(user_id, project_id)
        constraints = self._records.store.list_constraints(project.id, user_id)

        result = evaluate_constraint_set(constraints, ctx)
        if result.violations:
            logger.warning(
                f"Constraints BLOCK in project {project.id}: "
                f"{len(result.violations)} violation(s), {len(result.warnings)} warning(s)"
            )
        else:
            logger.debug(
                f"Constraints evaluated in project {project.id}: {len(result.warnings)} warning(s)"
            )
        return result

    def create_constraint(
        self,
        user_id: str,
        project_id: str,
        scope: str,
        trigger: str,
        rule_text: str,
        enforcement_level: str,
        scope_value: Optional[str] = None,
        trigger_value: Optional[str] = None,
        source_links: Optional[List[str]] = None,
    ) -> Constraint:
        """Validate and append a constraint, emitting ConstraintCreated."""
        if scope not in [s.value for s in ConstraintScope]:
            raise ValidationError("Invalid constraint scope", "scope")
        if trigger not in [t.value for t in ConstraintTrigger]:
            raise ValidationError("Invalid constraint trigger", "trigger")
        rule = validate_non_empty(rule_text, "ruleText", MAX_RULE_TEXT_LENGTH)
        if enforcement_level not in [e.value for e in EnforcementLevel]:
            raise ValidationError("Invalid enforcement level", "enforcementLevel")
        for name, value in (("scopeValue", scope_value), ("triggerValue", trigger_value)):
            if value is not None and not isinstance(value, str):
                raise ValidationError(f"{name} must be a string", name)

        project = self._records.load_project(user_id, project_id)
        constraint = Constraint(
            id=new_id(),
            project_id=project.id,
            user_id=user_id,
            scope=ConstraintScope(scope),
            scope_value=scope_value or None,
            trigger=ConstraintTrigger(trigger),
            trigger_value=trigger_value or None,
            rule_text=rule,
            enforcement_level=EnforcementLevel(enforcement_level),
            source_links=tuple(optional_string_list(source_links, "sourceLinks") or ()),
        )
        self._records.store.add_constraint(constraint)
        self._records.emit(
            EventType.CONSTRAINT_CREATED,
            project.id,
            user_id,
            {
                "constraint_id": constraint.id,
                "scope": constraint.scope.value,
                "trigger": constraint.trigger.value,
                "enforcement_level": constraint.enforcement_level.value,
                "rule_text": constraint.rule_text,
            },
        )
        logger.info(
            f"Constraint created: {constraint.id} "
            f"({constraint.scope.value}/{constraint.trigger.value}, {constraint.enforcement_level.value})"
        )
        return constraint

    def list_constraints(
        self,
        user_id: str,
        project_id: str,
        scope: Optional[str] = None,
        trigger: Optional[str] = None,
        enforcement_level: Optional[str] = None,
    ) -> List[Constraint]:
        project = self._records.load_project(user_id, project_id)
        constraints = self._records.store.list_constraints(project.id, user_id)
        if scope:
            constraints = [c for c in constraints if c.scope.value == scope]
        if trigger:
            constraints = [c for c in constraints if c.trigger.value == trigger]
        if enforcement_level:
            constraints = [c for c in constraints if c.enforcement_level.value == enforcement_level]
        return constraints
