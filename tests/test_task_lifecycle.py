"""
Unit Tests for the Task Lifecycle Coordinator

Tests prove:
1. Only table transitions are accepted; others come back rejected
2. Scope violations reject a transition even when gates would pass
3. done requires passing required gates AND proof of work
4. Guard failures are results, infrastructure failures are errors
5. Locks are released on blocked/done/cancelled
6. Pick-up is exclusive under a version compare-and-swap
7. Waivers and decisions with advisory recall
8. A snapshot whose audit event cannot be written is rolled back
"""

import uuid
from dataclasses import replace

import pytest

from governance.errors import ConflictError, DomainError, NotFoundError, ValidationError
from governance.task_lifecycle import MISSING_PROOF_OF_WORK, can_transition
from governance.task_model import EventType, TaskStatus


def in_scope(*files):
    return {"filesChanged": list(files), "filesAdded": [], "filesDeleted": []}


@pytest.fixture
def started(coordinator, task, user_id):
    """A task already moved to in_progress."""
    return coordinator.start_task(user_id, task.id).task


# -----------------------------------------------------------------------------
# State Machine
# -----------------------------------------------------------------------------
class TestTransitionTable:
    """Tests for can_transition."""

    @pytest.mark.parametrize("current,target", [
        (TaskStatus.TODO, TaskStatus.IN_PROGRESS),
        (TaskStatus.IN_PROGRESS, TaskStatus.BLOCKED),
        (TaskStatus.IN_PROGRESS, TaskStatus.DONE),
        (TaskStatus.IN_PROGRESS, TaskStatus.CANCELLED),
        (TaskStatus.BLOCKED, TaskStatus.IN_PROGRESS),
    ])
    def test_valid(self, current, target):
        assert can_transition(current, target)[0] is True

    @pytest.mark.parametrize("current,target", [
        (TaskStatus.TODO, TaskStatus.DONE),
        (TaskStatus.BLOCKED, TaskStatus.DONE),
        (TaskStatus.DONE, TaskStatus.IN_PROGRESS),
        (TaskStatus.CANCELLED, TaskStatus.IN_PROGRESS),
    ])
    def test_invalid(self, current, target):
        allowed, message = can_transition(current, target)
        assert allowed is False
        assert message.startswith("Invalid transition")


class TestTransitions:
    """Tests for TaskLifecycleCoordinator.transition."""

    def test_start(self, coordinator, task, store, user_id):
        result = coordinator.start_task(user_id, task.id)
        assert result.accepted is True
        assert result.task.status == TaskStatus.IN_PROGRESS
        assert result.task.version == task.version + 1
        assert result.task.locked_at is not None
        assert store.list_events(task_id=task.id, event_type=EventType.TASK_STARTED)

    def test_invalid_transition_is_rejected_result(self, coordinator, task, store, user_id):
        result = coordinator.transition(user_id, task.id, "done")
        assert result.accepted is False
        assert result.task.status == TaskStatus.TODO
        assert store.get_task(task.id).version == task.version

    def test_unknown_status_is_error(self, coordinator, task, user_id):
        with pytest.raises(ValidationError):
            coordinator.transition(user_id, task.id, "finished")

    def test_unknown_task_is_error(self, coordinator, user_id):
        with pytest.raises(NotFoundError):
            coordinator.start_task(user_id, str(uuid.uuid4()))

    def test_block_requires_reason(self, coordinator, started, user_id):
        with pytest.raises(ValidationError):
            coordinator.block_task(user_id, started.id, "  ")

    def test_block_and_resume(self, coordinator, started, store, user_id):
        blocked = coordinator.block_task(user_id, started.id, "Waiting on API keys", needs_human=True)
        assert blocked.accepted is True
        assert blocked.task.status == TaskStatus.BLOCKED
        assert blocked.task.locked_at is None

        event = store.list_events(task_id=started.id, event_type=EventType.TASK_BLOCKED)[0]
        assert event.payload["reason"] == "Waiting on API keys"
        assert event.payload["needs_human"] is True

        resumed = coordinator.resume_task(user_id, started.id)
        assert resumed.accepted is True
        assert resumed.task.status == TaskStatus.IN_PROGRESS

    def test_cancel_releases_lock(self, coordinator, started, user_id):
        result = coordinator.cancel_task(user_id, started.id, "Superseded")
        assert result.task.status == TaskStatus.CANCELLED
        assert result.task.locked_by is None
        assert result.task.locked_at is None


# -----------------------------------------------------------------------------
# Scope Guard
# -----------------------------------------------------------------------------
class TestScopeGuard:
    """Tests for changeset checks during transitions."""

    def test_scope_violation_rejects_even_if_gates_pass(self, coordinator, make_task, records, user_id):
        task = make_task(constraints={"allowedPaths": ["src/"]})
        coordinator.start_task(user_id, task.id)
        records.add_artifact(user_id, task.id, "diff", "abc123")

        result = coordinator.complete_task(user_id, task.id, changeset=in_scope("config.json"))
        assert result.accepted is False
        assert result.scope_result.allowed is False
        assert result.gate_results == ()
        assert "not in any allowed path" in result.missing_requirements[0]

    def test_in_scope_changeset_accepted(self, coordinator, make_task, user_id):
        task = make_task(constraints={"allowedPaths": ["src/"]})
        result = coordinator.start_task(user_id, task.id, changeset=in_scope("src/retry.py"))
        assert result.accepted is True
        assert result.scope_result.allowed is True

    def test_malformed_changeset_is_error(self, coordinator, task, user_id):
        with pytest.raises(ValidationError):
            coordinator.start_task(user_id, task.id, changeset={"filesChanged": []})


# -----------------------------------------------------------------------------
# Completion Guard
# -----------------------------------------------------------------------------
class TestCompletion:
    """Tests for the in_progress -> done guard."""

    def test_fails_without_artifacts(self, coordinator, started, store, user_id):
        result = coordinator.complete_task(user_id, started.id)
        assert result.accepted is False
        assert "At least 1 artifact(s) required" in result.missing_requirements
        assert store.get_task(started.id).status == TaskStatus.IN_PROGRESS

    def test_gate_evaluated_event_always_recorded(self, coordinator, started, store, user_id):
        coordinator.complete_task(user_id, started.id)
        events = store.list_events(task_id=started.id, event_type=EventType.GATE_EVALUATED)
        assert len(events) == 1
        assert events[0].payload["gates"][0]["type"] == "has_artifacts"

    def test_completes_with_artifact(self, coordinator, started, records, store, user_id):
        artifact = records.add_artifact(user_id, started.id, "diff", "abc123")
        result = coordinator.complete_task(user_id, started.id)

        assert result.accepted is True
        assert result.task.status == TaskStatus.DONE
        assert result.task.locked_at is None
        event = store.list_events(task_id=started.id, event_type=EventType.TASK_COMPLETED)[0]
        assert event.payload["artifacts"] == [artifact.id]

    def test_misspelled_gate_blocks_completion(self, coordinator, started, records, store, user_id):
        records.add_artifact(user_id, started.id, "diff", "abc123")
        result = coordinator.complete_task(user_id, started.id, gates=["securty_scan"])
        assert result.accepted is False
        assert [r.reason for r in result.gate_results] == ["Unknown gate type: securty_scan"]
        assert store.get_task(started.id).status == TaskStatus.IN_PROGRESS

    def test_requires_proof_of_work_even_when_gates_pass(self, coordinator, started, user_id):
        result = coordinator.complete_task(user_id, started.id, gates=[{"type": "custom"}])
        assert result.accepted is False
        assert result.missing_requirements == (MISSING_PROOF_OF_WORK,)

    def test_evidence_counts_as_proof(self, coordinator, started, records, user_id):
        records.add_evidence(user_id, started.id, "note", "Manually verified retries")
        result = coordinator.complete_task(user_id, started.id, gates=["custom"])
        assert result.accepted is True

    def test_optional_gate_failure_does_not_block(self, coordinator, started, records, user_id):
        records.add_artifact(user_id, started.id, "diff", "abc123")
        result = coordinator.complete_task(user_id, started.id, gates=["has_docs:required=false"])
        assert result.accepted is True
        assert result.gate_results[0].passed is False

    def test_waived_gate_does_not_block(self, coordinator, started, project, records, user_id):
        records.add_artifact(user_id, started.id, "diff", "abc123")
        decision = records.record_decision(
            user_id, project.id, "No tests for config bump", "skip", "Config-only change"
        )
        waiver = coordinator.waive_gate(user_id, started.id, "has_tests", decision.id, "Config-only change")
        assert waiver.accepted is True

        result = coordinator.complete_task(user_id, started.id, gates=["has_tests"])
        assert result.accepted is True
        assert result.gate_results[0].waived is True

    def test_cannot_complete_from_todo(self, coordinator, task, records, user_id):
        records.add_artifact(user_id, task.id, "diff", "abc123")
        result = coordinator.complete_task(user_id, task.id)
        assert result.accepted is False
        assert result.reason.startswith("Invalid transition")


# -----------------------------------------------------------------------------
# Compare-and-Swap
# -----------------------------------------------------------------------------
class TestCompareAndSwap:
    """Tests for versioned task writes."""

    def test_stale_write_rejected(self, store, task):
        store.update_task(replace(task, title="First"), expected_version=task.version)
        with pytest.raises(ConflictError):
            store.update_task(replace(task, title="Second"), expected_version=task.version)
        assert store.get_task(task.id).title == "First"

    def test_pick_next_is_exclusive(self, coordinator, task, user_id):
        first = coordinator.pick_next_task(user_id, task.project_id, locked_by="agent-a")
        second = coordinator.pick_next_task(user_id, task.project_id, locked_by="agent-b")
        assert first.id == task.id
        assert first.locked_by == "agent-a"
        assert second is None

    def test_pick_skips_task_locked_underneath(self, coordinator, make_task, store, user_id):
        first = make_task(title="First")
        second = make_task(title="Second")
        store.update_task(replace(first, locked_at="2026-01-01T00:00:00", locked_by="other"), first.version)

        picked = coordinator.pick_next_task(user_id, first.project_id, strategy="oldest")
        assert picked.id == second.id


# -----------------------------------------------------------------------------
# Audit Atomicity
# -----------------------------------------------------------------------------
@pytest.fixture
def failing_event_writes(store, monkeypatch):
    """Make every write to events.jsonl fail with a disk error."""
    original = store._append_record

    def append(file_path, record):
        if file_path.name == "events.jsonl":
            raise OSError("No space left on device")
        return original(file_path, record)

    monkeypatch.setattr(store, "_append_record", append)
    return monkeypatch


class TestAuditAtomicity:
    """Tests that a task change and its audit event land together."""

    def test_transition_rolled_back_when_event_fails(
        self, coordinator, task, store, user_id, failing_event_writes
    ):
        with pytest.raises(DomainError):
            coordinator.start_task(user_id, task.id)

        current = store.get_task(task.id)
        assert current.status == TaskStatus.TODO
        assert current.version == task.version
        assert current.locked_at is None
        assert store.list_events(task_id=task.id, event_type=EventType.TASK_STARTED) == []

    def test_retry_succeeds_after_rollback(
        self, coordinator, task, store, user_id, failing_event_writes
    ):
        with pytest.raises(DomainError):
            coordinator.start_task(user_id, task.id)
        failing_event_writes.delattr(store, "_append_record")

        result = coordinator.start_task(user_id, task.id)
        assert result.accepted is True
        assert result.task.version == task.version + 1
        assert len(store.list_events(task_id=task.id, event_type=EventType.TASK_STARTED)) == 1

    def test_pick_rolled_back_when_event_fails(
        self, coordinator, task, store, user_id, failing_event_writes
    ):
        with pytest.raises(DomainError):
            coordinator.pick_next_task(user_id, task.project_id, locked_by="agent-a")

        current = store.get_task(task.id)
        assert current.locked_by is None
        assert current.version == task.version


# -----------------------------------------------------------------------------
# Pick-Up Strategies
# -----------------------------------------------------------------------------
class TestPickNextTask:
    """Tests for pick_next_task readiness and strategies."""

    def test_priority(self, coordinator, make_task, user_id):
        make_task(title="Low", priority="low")
        high = make_task(title="High", priority="high")
        picked = coordinator.pick_next_task(user_id, high.project_id, strategy="priority")
        assert picked.id == high.id

    def test_newest(self, coordinator, make_task, user_id):
        make_task(title="Older")
        newer = make_task(title="Newer")
        picked = coordinator.pick_next_task(user_id, newer.project_id, strategy="newest")
        assert picked.id == newer.id

    def test_dependencies_must_be_done(self, coordinator, make_task, records, user_id):
        blocker = make_task(title="Blocker")
        dependent = make_task(title="Dependent", dependencies=[blocker.id])

        picked = coordinator.pick_next_task(user_id, blocker.project_id)
        assert picked.id == blocker.id
        assert coordinator.pick_next_task(user_id, blocker.project_id) is None

        coordinator.start_task(user_id, blocker.id)
        records.add_artifact(user_id, blocker.id, "diff", "abc123")
        assert coordinator.complete_task(user_id, blocker.id).accepted is True

        picked = coordinator.pick_next_task(user_id, blocker.project_id)
        assert picked.id == dependent.id

    def test_invalid_strategy(self, coordinator, project, user_id):
        with pytest.raises(ValidationError):
            coordinator.pick_next_task(user_id, project.id, strategy="random")


# -----------------------------------------------------------------------------
# Waivers & Decisions
# -----------------------------------------------------------------------------
class TestWaiversAndDecisions:
    """Tests for waive_gate and record_decision."""

    def test_waiver_requires_decision(self, coordinator, task, user_id):
        with pytest.raises(NotFoundError):
            coordinator.waive_gate(user_id, task.id, "has_tests", str(uuid.uuid4()), "Because")

    def test_waiver_blocked_by_constraint(self, coordinator, task, project, records, store, user_id):
        coordinator.constraint_evaluator.create_constraint(
            user_id, project.id, "project", "gate", "Tests may never be waived", "block",
            trigger_value="has_tests",
        )
        decision = records.record_decision(user_id, project.id, "Skip tests", "skip", "Hurry")
        result = coordinator.waive_gate(user_id, task.id, "has_tests", decision.id, "Hurry")

        assert result.accepted is False
        assert "Tests may never be waived" in result.reason
        assert store.list_gate_waivers(task.id) == []

    def test_waiver_emits_event(self, coordinator, task, project, records, store, user_id):
        decision = records.record_decision(user_id, project.id, "Skip docs", "skip", "Internal")
        coordinator.waive_gate(user_id, task.id, "has_docs", decision.id, "Internal")
        events = store.list_events(task_id=task.id, event_type=EventType.GATE_WAIVED)
        assert events[0].payload["decision_id"] == decision.id

    def test_record_decision_with_recall(self, coordinator, project, records, user_id):
        records.record_outcome(
            user_id, project.id, "task", str(uuid.uuid4()), "didnt_work",
            notes="Redis cache invalidation broke sessions",
        )
        result = coordinator.record_decision(
            user_id, project.id, "Cache sessions in Redis", "redis", "Lower latency",
            recall_context={"query": "redis sessions"},
        )
        assert result.decision.title == "Cache sessions in Redis"
        assert result.recall.relevant_outcomes
        assert result.recall.relevant_decisions == ()

    def test_record_decision_without_recall(self, coordinator, project, user_id):
        result = coordinator.record_decision(user_id, project.id, "Pick DB", "postgres", "Mature")
        assert result.recall is None

    def test_invalid_recall_context_records_nothing(self, coordinator, project, store, user_id):
        with pytest.raises(ValidationError):
            coordinator.record_decision(
                user_id, project.id, "Pick DB", "postgres", "Mature", recall_context={}
            )
        assert store.list_decisions(project.id, user_id) == []
