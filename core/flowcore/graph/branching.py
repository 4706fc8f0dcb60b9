"""
Branching / Merge Evaluator.

Pure functions that decide control flow:

- CONDITION: predicate clauses (``variable operator value``) combined with
  ``all``/``any``; the boolean picks the "true" or "false" handle
- SWITCH: one variable against an ordered case list (exact, contains,
  regex, range); first match wins, then the default case, else nothing
- edge liveness after a node finishes
- MERGE readiness (``all``/``any``/``race``) and payload combination
  (``merge``/``array``/``first``) under an error strategy
  (``fail_fast``/``continue``/``collect``)

Nothing here performs I/O or touches engine state.
"""

import json
import logging
import re
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any

from flowcore.graph.errors import NodeExecutionError
from flowcore.graph.node import NodeResult, NodeStatus
from flowcore.graph.workflow import LOOP_BODY_HANDLE, Edge, NodeConfig, NodeType

logger = logging.getLogger(__name__)


class EdgeState(StrEnum):
    """Resolution state of an edge during one traversal."""

    PENDING = "pending"  # source has not finished
    LIVE = "live"  # source succeeded and selected this edge
    DEAD = "dead"  # source skipped, or did not select this edge
    ERRORED = "errored"  # source failed; only a tolerant MERGE accepts it


# ---------------------------------------------------------------------------
# CONDITION
# ---------------------------------------------------------------------------

CONDITION_OPERATORS = (
    "equals",
    "notEquals",
    "greaterThan",
    "lessThan",
    "greaterOrEqual",
    "lessOrEqual",
    "contains",
    "notContains",
    "startsWith",
    "endsWith",
    "isEmpty",
    "isNotEmpty",
)


def _to_number(value: Any) -> float | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, int | float):
        return float(value)
    if isinstance(value, str):
        try:
            return float(value.strip())
        except ValueError:
            return None
    return None


def _normalise(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, dict | list):
        return json.dumps(value, ensure_ascii=False, sort_keys=True)
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value).strip()


def _is_empty(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, str):
        return value.strip() == ""
    if isinstance(value, list | dict | tuple | set):
        return len(value) == 0
    return False


def compare(left: Any, operator: str, right: Any) -> bool:
    """
    Apply one comparison operator.

    Ordering operators are numeric only and are false when either side is
    not a number. Equality is numeric when both sides are numbers,
    otherwise it compares the normalised text.

    Raises:
        NodeExecutionError: for an unknown operator
    """
    match operator:
        case "equals" | "notEquals":
            ln, rn = _to_number(left), _to_number(right)
            equal = ln == rn if ln is not None and rn is not None else _normalise(left) == _normalise(right)
            return equal if operator == "equals" else not equal
        case "greaterThan" | "lessThan" | "greaterOrEqual" | "lessOrEqual":
            ln, rn = _to_number(left), _to_number(right)
            if ln is None or rn is None:
                return False
            return {
                "greaterThan": ln > rn,
                "lessThan": ln < rn,
                "greaterOrEqual": ln >= rn,
                "lessOrEqual": ln <= rn,
            }[operator]
        case "contains" | "notContains":
            if isinstance(left, list):
                needle = _normalise(right)
                found = any(_normalise(item) == needle for item in left)
            else:
                found = _normalise(right) in _normalise(left)
            return found if operator == "contains" else not found
        case "startsWith":
            return _normalise(left).startswith(_normalise(right))
        case "endsWith":
            return _normalise(left).endswith(_normalise(right))
        case "isEmpty":
            return _is_empty(left)
        case "isNotEmpty":
            return not _is_empty(left)
        case _:
            raise NodeExecutionError(f"Unknown condition operator: {operator}")


def evaluate_conditions(
    conditions: list[dict[str, Any]],
    mode: str = "all",
) -> tuple[bool, list[dict[str, Any]]]:
    """
    Evaluate resolved clauses ``{variable, operator, value}``.

    An empty clause list is true. Returns the combined result and a
    per-clause record for diagnostics.
    """
    if mode not in ("all", "any"):
        raise NodeExecutionError(f"Unknown evaluation mode: {mode}")

    evaluated = []
    for clause in conditions:
        operator = clause.get("operator", "equals")
        passed = compare(clause.get("variable"), operator, clause.get("value"))
        evaluated.append(
            {
                "variable": clause.get("variable"),
                "operator": operator,
                "value": clause.get("value"),
                "passed": passed,
            }
        )

    if not evaluated:
        return True, evaluated
    outcomes = [e["passed"] for e in evaluated]
    return (all(outcomes) if mode == "all" else any(outcomes)), evaluated


# ---------------------------------------------------------------------------
# SWITCH
# ---------------------------------------------------------------------------


@dataclass
class SwitchMatch:
    """Outcome of matching a switch value against its cases."""

    case: dict[str, Any] | None
    is_default: bool = False
    evaluated: list[dict[str, Any]] = field(default_factory=list)

    @property
    def has_match(self) -> bool:
        return self.case is not None


_RANGE_BETWEEN = re.compile(r"^\s*(-?\d+(?:\.\d+)?)\s*-\s*(-?\d+(?:\.\d+)?)\s*$")
_RANGE_BOUND = re.compile(r"^\s*(>=|<=|>|<)\s*(-?\d+(?:\.\d+)?)\s*$")


def _match_range(value: Any, spec: str) -> bool:
    number = _to_number(value)
    if number is None:
        return False
    between = _RANGE_BETWEEN.match(spec)
    if between:
        low, high = float(between.group(1)), float(between.group(2))
        return low <= number <= high
    bound = _RANGE_BOUND.match(spec)
    if bound:
        op, limit = bound.group(1), float(bound.group(2))
        return {">=": number >= limit, "<=": number <= limit, ">": number > limit, "<": number < limit}[op]
    return False


def match_case(value: Any, case_value: Any, match_type: str = "exact", case_sensitive: bool = True) -> bool:
    """Match one switch value against one case value."""
    if match_type == "range":
        return _match_range(value, str(case_value))

    if match_type == "exact":
        ln, rn = _to_number(value), _to_number(case_value)
        if ln is not None and rn is not None:
            return ln == rn
        if isinstance(value, bool) or isinstance(case_value, bool):
            return _normalise(value).lower() == _normalise(case_value).lower()

    left, right = _normalise(value), _normalise(case_value)
    if not case_sensitive:
        left, right = left.lower(), right.lower()

    match match_type:
        case "exact":
            return left == right
        case "contains":
            return right in left
        case "regex":
            try:
                flags = 0 if case_sensitive else re.IGNORECASE
                return re.search(_normalise(case_value), _normalise(value), flags) is not None
            except re.error as e:
                logger.warning(f"Invalid switch regex {case_value!r}: {e}")
                return False
        case _:
            raise NodeExecutionError(f"Unknown switch match type: {match_type}")


def evaluate_switch(
    value: Any,
    cases: list[dict[str, Any]],
    match_type: str = "exact",
    case_sensitive: bool = True,
) -> SwitchMatch:
    """First matching non-default case wins, then the default case, else no match."""
    evaluated = []
    matched: dict[str, Any] | None = None
    for case in cases:
        if case.get("isDefault"):
            continue
        ok = match_case(value, case.get("value"), match_type, case_sensitive)
        evaluated.append({"id": case.get("id"), "label": case.get("label"), "value": case.get("value"), "matched": ok})
        if ok and matched is None:
            matched = case

    if matched is not None:
        return SwitchMatch(case=matched, evaluated=evaluated)

    default = next((c for c in cases if c.get("isDefault")), None)
    return SwitchMatch(case=default, is_default=default is not None, evaluated=evaluated)


# ---------------------------------------------------------------------------
# Edge liveness
# ---------------------------------------------------------------------------


def live_edge_ids(node: NodeConfig, result: NodeResult, edges: list[Edge]) -> set[str]:
    """
    IDs of the outgoing ``edges`` a successful ``node`` selects.

    CONDITION picks the "true"/"false" handle; SWITCH picks the matched
    case (by id, label or "default"); LOOP never selects its body edges.
    Edges without a handle are live, except behind a SWITCH with no match.
    """
    if result.status != NodeStatus.SUCCESS:
        return set()

    if node.type == NodeType.CONDITION:
        branch = "true" if result.data.get("result") else "false"
        return {e.id for e in edges if e.source_handle is None or e.source_handle.lower() == branch}

    if node.type == NodeType.SWITCH:
        if not result.data.get("hasMatch"):
            return set()
        accepted = {
            str(v)
            for v in (result.data.get("matchedCaseId"), result.data.get("matchedCase"))
            if v is not None
        }
        if result.data.get("isDefault"):
            accepted.add("default")
        return {e.id for e in edges if e.source_handle is None or e.source_handle in accepted}

    if node.type == NodeType.LOOP:
        return {e.id for e in edges if e.source_handle != LOOP_BODY_HANDLE}

    return {e.id for e in edges}


# ---------------------------------------------------------------------------
# MERGE
# ---------------------------------------------------------------------------


class MergeStrategy(StrEnum):
    ALL = "all"
    ANY = "any"
    RACE = "race"


class MergeErrorStrategy(StrEnum):
    FAIL_FAST = "fail_fast"
    CONTINUE = "continue"
    COLLECT = "collect"


class MergeOutputMode(StrEnum):
    MERGE = "merge"
    ARRAY = "array"
    FIRST = "first"


class MergeDecision(StrEnum):
    WAIT = "wait"
    FIRE = "fire"
    SKIP = "skip"


@dataclass
class MergeSettings:
    strategy: MergeStrategy = MergeStrategy.ALL
    error_strategy: MergeErrorStrategy = MergeErrorStrategy.FAIL_FAST
    output_mode: MergeOutputMode = MergeOutputMode.MERGE

    @classmethod
    def from_config(cls, config: dict[str, Any]) -> "MergeSettings":
        try:
            return cls(
                strategy=MergeStrategy(config.get("mergeStrategy", "all")),
                error_strategy=MergeErrorStrategy(config.get("errorStrategy", "fail_fast")),
                output_mode=MergeOutputMode(config.get("outputMode", "merge")),
            )
        except ValueError as e:
            raise NodeExecutionError(f"Invalid merge configuration: {e}") from e

    @property
    def tolerates_errors(self) -> bool:
        return self.error_strategy in (MergeErrorStrategy.CONTINUE, MergeErrorStrategy.COLLECT)


def merge_readiness(settings: MergeSettings, states: list[EdgeState]) -> MergeDecision:
    """
    Decide whether a MERGE node can fire given its incoming edge states.

    ``collect`` always waits for every predecessor. If every incoming edge
    is dead the merge is skipped.
    """
    resolved = all(s != EdgeState.PENDING for s in states)
    any_live = EdgeState.LIVE in states
    any_arrival = any_live or EdgeState.ERRORED in states

    if settings.strategy == MergeStrategy.ALL or settings.error_strategy == MergeErrorStrategy.COLLECT:
        if not resolved:
            return MergeDecision.WAIT
        return MergeDecision.FIRE if any_arrival else MergeDecision.SKIP

    if settings.strategy == MergeStrategy.ANY:
        if any_live:
            return MergeDecision.FIRE
        if resolved:
            return MergeDecision.FIRE if any_arrival else MergeDecision.SKIP
        return MergeDecision.WAIT

    # RACE: first terminal arrival of any kind
    if any_arrival:
        return MergeDecision.FIRE
    return MergeDecision.SKIP if resolved else MergeDecision.WAIT


def combine_merge(
    settings: MergeSettings,
    arrivals: list[NodeResult],
    predecessors: list[tuple[str, str, NodeResult | None]] | None = None,
) -> dict[str, Any]:
    """
    Build a MERGE node's output from predecessor results in arrival order.

    Args:
        settings: merge configuration
        arrivals: predecessor results (success or error) the merge fires with
        predecessors: every predecessor as ``(node_id, node_name, result)``,
            used for the per-branch report under ``collect``

    Raises:
        NodeExecutionError: under ``fail_fast`` when a branch failed, or when
            no branch succeeded and errors are not being collected
    """
    successes = [r for r in arrivals if r.status == NodeStatus.SUCCESS]
    failures = [r for r in arrivals if r.status == NodeStatus.ERROR]

    if failures and settings.error_strategy == MergeErrorStrategy.FAIL_FAST:
        first = failures[0]
        raise NodeExecutionError(f'Branch "{first.node_name}" failed: {first.error}')
    if not successes and settings.error_strategy != MergeErrorStrategy.COLLECT:
        raise NodeExecutionError("All merged branches failed")

    match settings.output_mode:
        case MergeOutputMode.MERGE:
            output: dict[str, Any] = {}
            for r in successes:
                output.update(r.data)
        case MergeOutputMode.ARRAY:
            output = {
                "result": [r.data for r in successes],
                "branches": [
                    {"nodeId": r.node_id, "nodeName": r.node_name, "output": r.data} for r in successes
                ],
            }
        case MergeOutputMode.FIRST:
            output = dict(successes[0].data) if successes else {}

    skipped = [p for p in predecessors or [] if p[2] is not None and p[2].status == NodeStatus.SKIPPED]
    output["_merge"] = {
        "strategy": str(settings.strategy),
        "totalBranches": len(predecessors) if predecessors is not None else len(arrivals),
        "successfulBranches": len(successes),
        "failedBranches": len(failures),
        "skippedBranches": len(skipped),
        "branchNames": [r.node_name for r in arrivals],
    }

    if failures:
        output["_errors"] = [
            {"nodeId": r.node_id, "nodeName": r.node_name, "error": r.error} for r in failures
        ]

    if settings.error_strategy == MergeErrorStrategy.COLLECT:
        branches = []
        for node_id, node_name, result in predecessors or [(r.node_id, r.node_name, r) for r in arrivals]:
            entry: dict[str, Any] = {
                "nodeId": node_id,
                "nodeName": node_name,
                "status": str(result.status) if result is not None else "pending",
            }
            if result is not None and result.status == NodeStatus.ERROR:
                entry["error"] = result.error
            elif result is not None and result.status == NodeStatus.SUCCESS:
                entry["output"] = result.data
            branches.append(entry)
        output["_branches"] = branches

    return output
