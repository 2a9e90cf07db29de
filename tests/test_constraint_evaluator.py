"""
Unit Tests for the Constraint Evaluator

Tests prove:
1. Each trigger fires on exactly the context it describes
2. block constraints land in violations, warn constraints in warnings
3. Scope pre-filtering (directory, task_type)
4. Evaluation is read-only
5. Constraint creation is validated and audited
"""

import pytest

from governance.constraint_evaluator import ConstraintEvaluator
from governance.constraint_model import ConstraintContext
from governance.errors import ValidationError
from governance.task_model import EventType


@pytest.fixture
def evaluator(records):
    return ConstraintEvaluator(records)


@pytest.fixture
def add_constraint(evaluator, project, user_id):
    def _add(trigger="always", trigger_value=None, level="warn", scope="project",
             scope_value=None, rule_text="Be careful"):
        return evaluator.create_constraint(
            user_id,
            project.id,
            scope=scope,
            trigger=trigger,
            rule_text=rule_text,
            enforcement_level=level,
            scope_value=scope_value,
            trigger_value=trigger_value,
        )
    return _add


# -----------------------------------------------------------------------------
# Triggers
# -----------------------------------------------------------------------------
class TestTriggers:
    """Tests for trigger matching."""

    def test_always(self, evaluator, add_constraint, project, user_id):
        add_constraint(trigger="always")
        result = evaluator.evaluate(user_id, project.id, {})
        assert len(result.warnings) == 1

    def test_files_match(self, evaluator, add_constraint, project, user_id):
        add_constraint(trigger="files_match", trigger_value="db/migrations", rule_text="Review migrations")
        hit = evaluator.evaluate(user_id, project.id, {"files": ["db/migrations/001.sql", "src/a.py"]})
        miss = evaluator.evaluate(user_id, project.id, {"files": ["db/migrations_old/001.sql"]})
        assert hit.warnings[0].reason == "Review migrations (Matched files: db/migrations/001.sql)"
        assert miss.warnings == ()

    def test_task_tag_case_insensitive(self, evaluator, add_constraint, project, user_id):
        add_constraint(trigger="task_tag", trigger_value="Payments", rule_text="PCI review")
        result = evaluator.evaluate(user_id, project.id, {"tags": ["payments", "backend"]})
        assert result.warnings[0].reason == "PCI review (Task tags: payments, backend)"

    def test_gate(self, evaluator, add_constraint, project, user_id):
        add_constraint(trigger="gate", trigger_value="has_tests", rule_text="Tests are mandatory")
        assert len(evaluator.evaluate(user_id, project.id, {"gate": "HAS_TESTS"}).warnings) == 1
        assert evaluator.evaluate(user_id, project.id, {"gate": "has_docs"}).warnings == ()

    def test_keyword_substring(self, evaluator, add_constraint, project, user_id):
        add_constraint(trigger="keyword", trigger_value="delete")
        result = evaluator.evaluate(user_id, project.id, {"keywords": ["bulk DELETE of users"]})
        assert len(result.warnings) == 1

    def test_missing_trigger_value_never_matches(self, evaluator, add_constraint, project, user_id):
        add_constraint(trigger="keyword", trigger_value=None)
        result = evaluator.evaluate(user_id, project.id, {"keywords": ["anything"]})
        assert result.warnings == ()

    def test_no_context_matches_only_always(self, evaluator, add_constraint, project, user_id):
        add_constraint(trigger="files_match", trigger_value="src")
        add_constraint(trigger="always")
        result = evaluator.evaluate(user_id, project.id, None)
        assert len(result.warnings) == 1


# -----------------------------------------------------------------------------
# Enforcement
# -----------------------------------------------------------------------------
class TestEnforcement:
    """Tests for the violation/warning partition."""

    def test_block_is_violation_never_warning(self, evaluator, add_constraint, project, user_id):
        blocking = add_constraint(trigger="gate", trigger_value="has_docs", level="block")
        result = evaluator.evaluate(user_id, project.id, {"gate": "has_docs"})
        assert [v.constraint.id for v in result.violations] == [blocking.id]
        assert all(w.constraint.id != blocking.id for w in result.warnings)
        assert result.passed is False

    def test_warn_only_passes(self, evaluator, add_constraint, project, user_id):
        add_constraint(trigger="always", level="warn")
        result = evaluator.evaluate(user_id, project.id, {})
        assert result.passed is True
        assert result.violations == ()

    def test_mixed(self, evaluator, add_constraint, project, user_id):
        add_constraint(trigger="always", level="warn")
        add_constraint(trigger="always", level="block")
        result = evaluator.evaluate(user_id, project.id, {})
        assert len(result.violations) == 1
        assert len(result.warnings) == 1


# -----------------------------------------------------------------------------
# Scope Pre-Filter
# -----------------------------------------------------------------------------
class TestScopeFilter:
    """Tests for directory and task_type scopes."""

    def test_directory_scope_by_files(self, evaluator, add_constraint, project, user_id):
        add_constraint(scope="directory", scope_value="infra", rule_text="Infra freeze")
        hit = evaluator.evaluate(user_id, project.id, {"files": ["infra/main.tf"]})
        miss = evaluator.evaluate(user_id, project.id, {"files": ["src/main.py"]})
        assert hit.warnings[0].reason == "Infra freeze (Directory: infra)"
        assert miss.warnings == ()

    def test_directory_scope_by_directory(self, evaluator, add_constraint, project, user_id):
        add_constraint(scope="directory", scope_value="infra")
        result = evaluator.evaluate(user_id, project.id, {"directory": "infra/modules"})
        assert len(result.warnings) == 1

    def test_task_type_scope(self, evaluator, add_constraint, project, user_id):
        add_constraint(scope="task_type", scope_value="migration")
        assert len(evaluator.evaluate(user_id, project.id, {"taskType": "Migration"}).warnings) == 1
        assert evaluator.evaluate(user_id, project.id, {"taskType": "feature"}).warnings == ()
        assert evaluator.evaluate(user_id, project.id, {}).warnings == ()

    def test_empty_scope_value_applies(self, evaluator, add_constraint, project, user_id):
        add_constraint(scope="task_type", scope_value=None)
        assert len(evaluator.evaluate(user_id, project.id, {}).warnings) == 1


# -----------------------------------------------------------------------------
# Validation & Side Effects
# -----------------------------------------------------------------------------
class TestConstraintLifecycle:
    """Tests for creation, listing and read-only evaluation."""

    def test_context_shape_validated(self, evaluator, project, user_id):
        with pytest.raises(ValidationError):
            evaluator.evaluate(user_id, project.id, {"files": "src/a.py"})

    def test_context_from_payload(self):
        context = ConstraintContext.from_payload({"task_type": "bugfix", "tags": ["a"]})
        assert context.task_type == "bugfix"
        assert context.tags == ("a",)

    def test_invalid_scope(self, add_constraint):
        with pytest.raises(ValidationError):
            add_constraint(scope="galaxy")

    def test_invalid_enforcement_level(self, add_constraint):
        with pytest.raises(ValidationError):
            add_constraint(level="maybe")

    def test_rule_text_required(self, add_constraint):
        with pytest.raises(ValidationError):
            add_constraint(rule_text="   ")

    def test_rule_text_too_long(self, add_constraint):
        with pytest.raises(ValidationError):
            add_constraint(rule_text="x" * 5001)

    def test_created_event(self, add_constraint, store, project):
        constraint = add_constraint(level="block")
        events = store.list_events(project_id=project.id, event_type=EventType.CONSTRAINT_CREATED)
        assert events[-1].payload["constraint_id"] == constraint.id
        assert events[-1].payload["enforcement_level"] == "block"

    def test_list_filters(self, evaluator, add_constraint, project, user_id):
        add_constraint(level="block")
        add_constraint(level="warn")
        blocking = evaluator.list_constraints(user_id, project.id, enforcement_level="block")
        assert len(blocking) == 1
        assert len(evaluator.list_constraints(user_id, project.id)) == 2

    def test_evaluation_is_read_only(self, evaluator, add_constraint, store, project, user_id):
        add_constraint(level="block")
        events_before = len(store.list_events())
        evaluator.evaluate(user_id, project.id, {})
        evaluator.evaluate(user_id, project.id, {})
        assert len(store.list_events()) == events_before
        assert len(store.list_constraints(project.id, user_id)) == 1
