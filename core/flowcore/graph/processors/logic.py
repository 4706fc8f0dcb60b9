"""CONDITION, SWITCH and MERGE nodes: thin wrappers over the branching evaluator."""

from flowcore.graph.branching import (
    MergeSettings,
    combine_merge,
    evaluate_conditions,
    evaluate_switch,
)
from flowcore.graph.errors import NodeExecutionError
from flowcore.graph.node import NodeContext, NodeOutput


async def run_condition(ctx: NodeContext) -> NodeOutput:
    conditions = ctx.config.get("conditions")
    if not conditions:
        raise NodeExecutionError("Condition node has no conditions configured")

    result, evaluated = evaluate_conditions(conditions, ctx.config.get("evaluationMode", "all"))
    return NodeOutput(
        data={
            "result": result,
            "conditionsMet": result,
            "branch": "true" if result else "false",
            "evaluatedConditions": evaluated,
        }
    )


async def run_switch(ctx: NodeContext) -> NodeOutput:
    config = ctx.config
    cases = config.get("cases") or []
    if not cases:
        raise NodeExecutionError("Switch node has no cases configured")

    value = config.get("switchVariable")
    match_type = config.get("matchType", "exact")
    match = evaluate_switch(value, cases, match_type, bool(config.get("caseSensitive", True)))

    label = None
    case_id = None
    if match.case is not None:
        case_id = match.case.get("id")
        label = match.case.get("label") or case_id
    return NodeOutput(
        data={
            "result": label,
            "switchValue": value,
            "matchType": match_type,
            "matchedCase": label,
            "matchedCaseId": case_id,
            "matchedBranch": "default" if match.is_default else label,
            "isDefault": match.is_default,
            "hasMatch": match.has_match,
            "evaluatedCases": match.evaluated,
        }
    )


async def run_merge(ctx: NodeContext) -> NodeOutput:
    settings = MergeSettings.from_config(ctx.config)
    predecessors = []
    for pred_id in ctx.workflow.predecessor_ids(ctx.node.id):
        pred = ctx.workflow.get_node(pred_id)
        predecessors.append((pred_id, pred.name if pred else pred_id, ctx.results.get(pred_id)))
    return NodeOutput(data=combine_merge(settings, ctx.arrivals, predecessors))
