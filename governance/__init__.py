"""
Task Governance Engine

Rules that decide whether an autonomous agent's proposed work may proceed.
Every state transition of a Task flows through this package.

Components (leaf-first):
- Gate Evaluator: named pass/fail checks against a task's artifacts
  * Compact gate DSL: "type" or "type:key1=val1,key2=val2"
  * Unknown DSL types are dropped, unknown explicit gates FAIL
  * Fallback gates when a project defines none
- Scope Checker ("Leash"): changeset validation against allow/forbid paths
  * Task constraints take precedence over project rules (no merging)
  * maxFiles limit (task-level only)
  * Every check emits a ScopeAsserted audit event, whatever the verdict
- Constraint Evaluator: project rules (scope x trigger) against a context
  * block -> violation, warn -> warning
  * READ-ONLY, no events
- Memory Recall Engine: relevance-ranked history before a decision
  * Decisions, outcomes, constraints, work items, agent tasks
  * Text, tag, file, recency scoring plus failure and blocking boosts
  * Recall with no search signal is REJECTED, never silently empty
- Task Lifecycle Coordinator: the state machine
  * todo -> in_progress -> {blocked, done, cancelled}, blocked -> in_progress
  * Guard failures are RESULTS, infrastructure failures are ERRORS
  * Task writes use a version compare-and-swap (exclusive pick-up)

Supporting layers:
- Append-only JSONL store with typed DTO mapping at the boundary
- Table-driven tool dispatch served by FastAPI
"""

__version__ = "0.4.0"

SERVICE_NAME = "Task Governance Engine"
