"""
Gate Evaluator

Named pass/fail checks a task must satisfy before it can be completed.

Gate DSL (project defaultGates, config fallback):
    "has_tests"
    "has_artifacts:minCount=2"
    "has_docs:required=false"

CRITICAL CONSTRAINTS:
- LENIENT DEFAULTS: unknown types in project defaults are dropped,
  malformed pairs skipped
- STRICT EVALUATION: an unknown type on an explicit gate (object or DSL
  string) FAILS
- SAFE COMMANDS: a custom gate command must pass command screening
- RESULTS ARE VALUES: a failing gate is a GateResult, never an exception
- NO EVENTS: the caller records GateEvaluated
"""

import logging
import math
from typing import Optional, Dict, Any, List, Sequence, Union

from .command_safety import analyze_command, describe_danger, screen_command
from .config import get_config
from .errors import ValidationError
from .records_service import RecordsService
from .task_model import (
    Artifact,
    ArtifactType,
    Gate,
    GateResult,
    GateType,
    Task,
    parse_required,
)

logger = logging.getLogger("gate_evaluator")

VALID_GATE_TYPES = frozenset(g.value for g in GateType)


# -----------------------------------------------------------------------------
# DSL Parsing
# -----------------------------------------------------------------------------
def _coerce_value(raw: str) -> Union[int, float, str]:
    """Numeric-looking values become int (when integral) or float."""
    value = raw.strip()
    try:
        number = float(value)
    except ValueError:
        return value
    if not math.isfinite(number):
        return value
    if number.is_integer():
        return int(number)
    return number


def parse_gate_spec(spec: str) -> Optional[Gate]:
    """
    Parse one "type[:k1=v1[,k2=v2]]" string.

    Returns None for unknown types. A "required" key with a false-ish value
    marks the gate optional and is not kept in config.
    """
    if not isinstance(spec, str):
        return None
    parts = spec.split(":")
    gate_type = parts[0].strip()
    if gate_type not in VALID_GATE_TYPES:
        logger.debug(f"Dropping unknown gate type in spec: {spec!r}")
        return None

    config: Dict[str, Any] = {}
    config_str = parts[1] if len(parts) > 1 else ""
    if config_str:
        for pair in config_str.split(","):
            pieces = pair.split("=")
            if len(pieces) < 2:
                continue
            key, value = pieces[0].strip(), pieces[1]
            if not key or not value.strip():
                continue
            config[key] = _coerce_value(value)

    required = True
    if "required" in config:
        required = parse_required(config.pop("required"))

    return Gate(type=gate_type, config=config, required=required)


def parse_gates_from_strings(specs: Sequence[str]) -> List[Gate]:
    gates = []
    for spec in specs:
        gate = parse_gate_spec(spec)
        if gate is not None:
            gates.append(gate)
    return gates


def coerce_gates(gates: Optional[Sequence[Any]]) -> List[Gate]:
    """
    Normalise caller-supplied gates.

    Gate objects pass through, dicts go through Gate.from_dict and strings go
    through the DSL. Unknown types are kept either way so that evaluation
    fails them.

    Raises:
        ValidationError: malformed gate, or a dangerous custom command
    """
    result: List[Gate] = []
    for item in gates or ():
        if isinstance(item, Gate):
            gate = item
        elif isinstance(item, dict):
            gate = Gate.from_dict(item)
        elif isinstance(item, str):
            gate = parse_gate_spec(item)
            if gate is None:
                logger.warning(f"Unknown gate type in explicit spec: {item!r}")
                gate = Gate(type=item.split(":")[0].strip())
        else:
            raise ValidationError("Gates must be objects or gate spec strings", "gates")
        if "command" in gate.config:
            screen_command(gate.config["command"], "gates")
        result.append(gate)
    return result


# -----------------------------------------------------------------------------
# Evaluation
# -----------------------------------------------------------------------------
def _min_count(gate: Gate) -> Any:
    value = gate.config.get("minCount")
    if isinstance(value, bool) or not isinstance(value, (int, float)) or not value:
        return 1
    return value


def evaluate_gate(gate: Gate, task: Task, artifacts: Sequence[Artifact]) -> GateResult:
    """Evaluate a single gate. Pure: no I/O, no events."""
    if gate.type == GateType.HAS_TESTS.value:
        count = sum(1 for a in artifacts if a.type == ArtifactType.TEST_REPORT)
        if count > 0:
            return GateResult(True, gate, f"Found {count} test artifact(s)")
        return GateResult(False, gate, "No test artifacts found", ("test_report artifact",))

    if gate.type == GateType.HAS_DOCS.value:
        count = sum(1 for a in artifacts if a.type == ArtifactType.DOCUMENT)
        if count > 0:
            return GateResult(True, gate, f"Found {count} document artifact(s)")
        return GateResult(False, gate, "No document artifacts found", ("document artifact",))

    if gate.type == GateType.HAS_ARTIFACTS.value:
        min_count = _min_count(gate)
        count = len(artifacts)
        if count >= min_count:
            return GateResult(True, gate, f"Found {count} artifact(s) (required: {min_count})")
        return GateResult(
            False,
            gate,
            f"Only {count} artifact(s) found (required: {min_count})",
            (f"At least {min_count} artifact(s) required",),
        )

    if gate.type == GateType.ACCEPTANCE_MET.value:
        # Placeholder: any artifact counts as proof; criteria text is not inspected.
        if not task.acceptance_criteria or artifacts:
            return GateResult(True, gate, "Acceptance criteria appear to be met")
        return GateResult(
            False,
            gate,
            "Acceptance criteria not yet met",
            ("Evidence that acceptance criteria are met",),
        )

    if gate.type == GateType.CUSTOM.value:
        command = gate.config.get("command")
        if command is not None:
            analysis = analyze_command(str(command))
            if analysis.is_dangerous:
                return GateResult(False, gate, describe_danger(analysis), ("Safe gate command",))
        return GateResult(True, gate, "Custom gate evaluation not implemented")

    return GateResult(False, gate, f"Unknown gate type: {gate.type}", ("Valid gate type",))


class GateEvaluator:
    """Loads a task's gates and artifacts and evaluates them."""

    def __init__(self, records: RecordsService):
        self._records = records

    def resolve_gates(self, project_rules_gates: Optional[Sequence[str]]) -> List[Gate]:
        """Project default gates if any are defined, else the configured fallback."""
        if project_rules_gates:
            return parse_gates_from_strings(project_rules_gates)
        return parse_gates_from_strings(get_config().fallback_gates)

    def evaluate_gates(
        self,
        user_id: str,
        task_id: str,
        gates: Optional[Sequence[Any]] = None,
    ) -> List[GateResult]:
        """
        Evaluate gates for a task.

        Args:
            user_id: Caller
            task_id: Task under evaluation
            gates: Explicit gates; empty/None means project defaults. Explicit
                gates are never replaced by defaults, even if all are unknown

        Returns:
            One GateResult per gate, in order. Failing gates covered by a
            recorded waiver come back with waived=True.

        Raises:
            ValidationError: malformed ids or gates
            NotFoundError: unknown task or project
        """
        explicit = coerce_gates(gates) if gates else None
        task, project = self._records.load_task_and_project(user_id, task_id)
        if explicit is None:
            explicit = self.resolve_gates(project.rules.default_gates)

        store = self._records.store
        artifacts = store.list_artifacts(task.id)
        waived_types = {w.gate_type for w in store.list_gate_waivers(task.id)}

        results = []
        for gate in explicit:
            result = evaluate_gate(gate, task, artifacts)
            if not result.passed and gate.type in waived_types:
                result = GateResult(
                    passed=False,
                    gate=gate,
                    reason=f"{result.reason} (waived)",
                    missing_requirements=result.missing_requirements,
                    waived=True,
                )
            results.append(result)

        failed = [r for r in results if r.blocks_completion]
        logger.info(
            f"Gates for task {task.id}: {len(results) - len(failed)}/{len(results)} clear"
        )
        return results
