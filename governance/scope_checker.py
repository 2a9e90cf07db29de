"""
Scope Checker ("Leash")

Validates a proposed changeset against allow/forbid path rules and the
task's file-count limit.

CRITICAL CONSTRAINTS:
- NO MERGING: task constraints win over project rules field by field
- maxFiles is TASK-LEVEL ONLY
- VERDICT IS A VALUE: violations produce ScopeResult(allowed=False), never
  an exception
- MALFORMED CHANGESET IS AN ERROR: bad shape raises ValidationError
- ALWAYS AUDITED: every check appends a ScopeAsserted event, whatever the
  verdict
"""

import logging
from typing import Any, List, Sequence

from .records_service import RecordsService
from .task_model import (
    ChangesetManifest,
    EventType,
    Project,
    ScopeResult,
    Task,
)

logger = logging.getLogger("scope_checker")

REASON_IN_SCOPE = "All changes are within the allowed scope"


def _strip_slashes(path: str) -> str:
    return path.strip("/")


def matches_path(file_path: str, pattern: str) -> bool:
    """
    Check whether a repository-relative file path falls under a pattern.

    "src" and "src/" match "src/index.ts" and everything below it, but "src"
    does not match "srcode/index.ts". Leading/trailing slashes are ignored
    on both sides.
    """
    normalized_file = _strip_slashes(file_path)
    normalized_pattern = _strip_slashes(pattern)

    if normalized_file == normalized_pattern:
        return True
    if normalized_file.startswith(normalized_pattern + "/"):
        return True
    # explicit directory pattern
    if pattern.endswith("/") and normalized_file.startswith(normalized_pattern):
        return True
    return False


def find_scope_violations(
    files: Sequence[str],
    allowed_paths: Sequence[str],
    forbidden_paths: Sequence[str],
    max_files: Any = None,
) -> List[str]:
    """
    Pure rule check, in the order the messages are reported.

    1. File-count limit
    2. Per file: every matching forbidden path, then the allowed-path test
    """
    violations: List[str] = []

    if max_files is not None and len(files) > max_files:
        violations.append(
            f"Exceeds maximum file limit: {len(files)} files changed (limit: {max_files})"
        )

    for file_path in files:
        for forbidden in forbidden_paths:
            if matches_path(file_path, forbidden):
                violations.append(f'File "{file_path}" is in forbidden path: {forbidden}')

        if allowed_paths and not any(matches_path(file_path, a) for a in allowed_paths):
            violations.append(
                f'File "{file_path}" is not in any allowed path. '
                f"Allowed paths: {', '.join(allowed_paths)}"
            )

    return violations


def resolve_paths(task: Task, project: Project):
    """Task value if set, else project value, else empty."""
    allowed = task.constraints.allowed_paths
    if allowed is None:
        allowed = project.rules.allowed_paths
    forbidden = task.constraints.forbidden_paths
    if forbidden is None:
        forbidden = project.rules.forbidden_paths
    return list(allowed or ()), list(forbidden or ())


class ScopeChecker:
    """Checks changesets against the leash of a task."""

    def __init__(self, records: RecordsService):
        self._records = records

    def assert_in_scope(self, user_id: str, task_id: str, changeset: Any) -> ScopeResult:
        """
        Check a changeset against the task's scope rules.

        Args:
            user_id: Caller
            task_id: Task the changes belong to
            changeset: ChangesetManifest or its JSON shape

        Returns:
            ScopeResult (allowed iff no violations)

        Raises:
            ValidationError: malformed ids or changeset
            NotFoundError: unknown task or project
        """
        manifest = ChangesetManifest.from_payload(changeset)
        task, project = self._records.load_task_and_project(user_id, task_id)
        return self.check(user_id, task, project, manifest)

    def check(self, user_id: str, task: Task, project: Project, manifest: ChangesetManifest) -> ScopeResult:
        """Evaluate and audit an already-loaded task/project pair."""
        allowed_paths, forbidden_paths = resolve_paths(task, project)
        violations = find_scope_violations(
            manifest.all_files,
            allowed_paths,
            forbidden_paths,
            task.constraints.max_files,
        )

        allowed = not violations
        if allowed:
            reason = REASON_IN_SCOPE
        else:
            reason = f"Scope violations found: {len(violations)} violation(s)"

        result = ScopeResult(
            allowed=allowed,
            reason=reason,
            violations=tuple(violations) if violations else None,
        )

        self._records.emit(
            EventType.SCOPE_ASSERTED,
            task.project_id,
            user_id,
            {
                "task_id": task.id,
                "changeset": manifest.to_dict(),
                "allowed": allowed,
                "reason": reason,
                "violations": violations or None,
            },
            task_id=task.id,
        )

        if allowed:
            logger.info(f"Scope OK for task {task.id}: {len(manifest.all_files)} file(s)")
        else:
            logger.warning(f"Scope DENIED for task {task.id}: {len(violations)} violation(s)")
        return result
