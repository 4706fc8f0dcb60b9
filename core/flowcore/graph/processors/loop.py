"""
LOOP nodes: re-run a body sub-graph per array item (FOR) or while a
condition holds (WHILE).

Each iteration runs the body through the engine's sub-traversal with a
fresh loop scope layered over the outer variables:

    {{loop.item}} {{loop.index}} {{loop.iteration}} {{loop.isFirst}}
    {{loop.isLast}} {{loop.total}} {{loop.results}}

The same values are reachable under the loop node's own name
(``{{MyLoop.item}}``), which keeps nested loops addressable, and under the
configured ``itemName``/``indexName``.

Iterations are capped by the smaller of the node's ``maxIterations`` and
the engine limit. A FOR loop over more items than the cap, or a WHILE loop
whose condition still holds at the cap, is an error rather than a silent
truncation.
"""

import json
import logging
from typing import Any

from flowcore.config import HARD_MAX_LOOP_ITERATIONS
from flowcore.graph.branching import evaluate_conditions
from flowcore.graph.errors import LoopLimitExceededError, NodeExecutionError
from flowcore.graph.node import NodeContext, NodeOutput, NodeResult, NodeStatus
from flowcore.graph.variables import VariableResolver

logger = logging.getLogger(__name__)


def effective_cap(ctx: NodeContext, *user_caps: Any) -> int:
    engine_cap = ctx.engine_config.max_loop_iterations if ctx.engine_config else HARD_MAX_LOOP_ITERATIONS
    caps = [min(engine_cap, HARD_MAX_LOOP_ITERATIONS)]
    caps.extend(int(c) for c in user_caps if c not in (None, "", 0))
    return max(0, min(caps))


def build_scope(
    ctx: NodeContext,
    index: int,
    item: Any,
    total: int | None,
    results: list[Any],
) -> dict[str, Any]:
    values: dict[str, Any] = {
        "item": item,
        "index": index,
        "iteration": index + 1,
        "isFirst": index == 0,
        "isLast": total is not None and index == total - 1,
        "total": total,
        "results": list(results),
    }
    for_config = ctx.raw_config.get("forConfig") or {}
    if for_config.get("itemName"):
        values[for_config["itemName"]] = item
    if for_config.get("indexName"):
        values[for_config["indexName"]] = index

    scope: dict[str, Any] = {"loop": values, ctx.node.name: values}
    if for_config.get("itemName"):
        scope[for_config["itemName"]] = item
    return scope


def iteration_output(body: list[str], results: dict[str, NodeResult], item: Any) -> Any:
    """The value an iteration contributes: the last successful body node's output."""
    for node_id in reversed(body):
        result = results.get(node_id)
        if result is not None and result.status == NodeStatus.SUCCESS:
            return result.data
    return item


def first_error(body: list[str], results: dict[str, NodeResult]) -> NodeResult | None:
    for node_id in body:
        result = results.get(node_id)
        if result is not None and result.status == NodeStatus.ERROR:
            return result
    return None


def _resolve_items(ctx: NodeContext) -> list[Any]:
    expression = (ctx.raw_config.get("forConfig") or {}).get("arrayVariable")
    if expression is None or expression == "":
        raise NodeExecutionError("FOR loop requires forConfig.arrayVariable")

    items = ctx.resolver.resolve_string(expression) if isinstance(expression, str) else expression
    if isinstance(items, str):
        try:
            items = json.loads(items)
        except ValueError as e:
            raise NodeExecutionError(f"Loop variable {expression!r} is not an array") from e
    if not isinstance(items, list):
        raise NodeExecutionError(f"Loop variable {expression!r} is not an array")
    return items


async def run_loop(ctx: NodeContext) -> NodeOutput:
    if ctx.run_subgraph is None:
        raise NodeExecutionError("Loop node requires a sub-graph runner")

    loop_type = str(ctx.raw_config.get("loopType", "FOR")).upper()
    continue_on_error = bool(ctx.raw_config.get("continueOnError"))
    body = ctx.workflow.loop_body(ctx.node.id)

    outputs: list[Any] = []
    details: list[dict[str, Any]] = []
    all_succeeded = True

    async def run_iteration(index: int, item: Any, total: int | None) -> dict[str, NodeResult]:
        nonlocal all_succeeded
        scope = build_scope(ctx, index, item, total, outputs)
        results = await ctx.run_subgraph(body, scope) if body else {}
        failure = first_error(body, results)

        detail: dict[str, Any] = {"index": index, "success": failure is None}
        if failure is not None:
            all_succeeded = False
            detail["error"] = f'{failure.node_name}: {failure.error}'
            if not continue_on_error:
                raise NodeExecutionError(
                    f'Iteration {index + 1} failed at node "{failure.node_name}": {failure.error}'
                )
            outputs.append(None)
        else:
            outputs.append(iteration_output(body, results, item))
        details.append(detail)
        return results

    match loop_type:
        case "FOR":
            items = _resolve_items(ctx)
            cap = effective_cap(ctx, ctx.raw_config.get("maxIterations"))
            if len(items) > cap:
                raise LoopLimitExceededError(
                    f"Loop over {len(items)} items exceeds the maximum of {cap} iterations"
                )
            for index, item in enumerate(items):
                await run_iteration(index, item, len(items))

        case "WHILE":
            while_config = ctx.raw_config.get("whileConfig") or {}
            condition = while_config.get("condition")
            if not condition:
                raise NodeExecutionError("WHILE loop requires whileConfig.condition")
            cap = effective_cap(ctx, ctx.raw_config.get("maxIterations"), while_config.get("maxIterations"))

            last_results: dict[str, NodeResult] = {}
            index = 0
            while True:
                resolver = VariableResolver(
                    ctx.workflow,
                    {**ctx.results, **last_results},
                    global_variables=ctx.resolver.global_variables,
                    loop_scope={**ctx.resolver.loop_scope, **build_scope(ctx, index, None, None, outputs)},
                )
                if not _holds(resolver, condition):
                    break
                if index >= cap:
                    raise LoopLimitExceededError(
                        f"Loop condition still true after the maximum of {cap} iterations"
                    )
                last_results = await run_iteration(index, None, None)
                index += 1

        case _:
            raise NodeExecutionError(f"Unknown loop type: {loop_type}")

    logger.info(f"Loop '{ctx.node.name}' finished after {len(outputs)} iteration(s)")
    return NodeOutput(
        data={
            "result": outputs,
            "iterations": len(outputs),
            "results": outputs,
            "allSucceeded": all_succeeded,
            "iterationDetails": details,
        }
    )


def _holds(resolver: VariableResolver, condition: Any) -> bool:
    if isinstance(condition, list):
        clauses, mode = condition, "all"
    elif isinstance(condition, dict) and "conditions" in condition:
        clauses, mode = condition["conditions"], condition.get("evaluationMode", "all")
    elif isinstance(condition, dict):
        clauses, mode = [condition], "all"
    else:
        raise NodeExecutionError("WHILE loop condition must be an object or a list of clauses")
    result, _ = evaluate_conditions(resolver.resolve_config(clauses), mode)
    return result
