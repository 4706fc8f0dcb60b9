"""
Node Executor - turns one node plus the current results into a NodeResult.

The dispatcher:
1. Resolves ``{{Node.field}}`` references in the node's config
2. Picks the processor for the node type (exhaustive match)
3. Runs it under a per-node timeout
4. Converts any failure into an error NodeResult

Nothing a processor raises escapes ``execute`` except cancellation.
"""

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from datetime import datetime
from typing import Any, assert_never

from flowcore.config import EngineConfig
from flowcore.graph import processors
from flowcore.graph.errors import ErrorAnalyzer, NodeTimeoutError
from flowcore.graph.node import (
    NodeContext,
    NodeOutput,
    NodeResult,
    NodeStatus,
    Retriever,
    SubgraphRunner,
)
from flowcore.graph.variables import VariableResolver
from flowcore.graph.workflow import NodeConfig, NodeType, WorkflowConfig
from flowcore.llm.provider import LLMProvider

logger = logging.getLogger(__name__)

Processor = Callable[[NodeContext], Awaitable[NodeOutput]]


async def _pass_through(ctx: NodeContext) -> NodeOutput:
    """GROUP and APPROVAL: carry the upstream data forward unchanged."""
    data: dict[str, Any] = {}
    for result in ctx.upstream_results():
        data.update(result.data)
    return NodeOutput(data=data)


def processor_for(node_type: NodeType) -> Processor:
    """Return the processor for a node type."""
    match node_type:
        case NodeType.INPUT:
            return processors.run_input
        case NodeType.TRIGGER:
            return processors.run_trigger
        case NodeType.PROCESS:
            return processors.run_process
        case NodeType.CODE:
            return processors.run_code
        case NodeType.OUTPUT:
            return processors.run_output
        case NodeType.CONDITION:
            return processors.run_condition
        case NodeType.SWITCH:
            return processors.run_switch
        case NodeType.LOOP:
            return processors.run_loop
        case NodeType.MERGE:
            return processors.run_merge
        case NodeType.HTTP:
            return processors.run_http
        case NodeType.DATA | NodeType.IMAGE | NodeType.VIDEO | NodeType.AUDIO:
            return processors.run_media
        case NodeType.IMAGE_GEN:
            return processors.run_image_gen
        case NodeType.NOTIFICATION:
            return processors.run_notification
        case NodeType.GROUP | NodeType.APPROVAL:
            return _pass_through
        case _:
            assert_never(node_type)


def resolve_node_config(node: NodeConfig, resolver: VariableResolver) -> dict[str, Any]:
    """
    Resolve a node's config before dispatch.

    LOOP and MERGE resolve lazily inside their processors (per iteration
    and per arrival). CODE source is never templated; it receives values
    through ``inputs`` instead.
    """
    match node.type:
        case NodeType.LOOP | NodeType.MERGE:
            return dict(node.config)
        case NodeType.CODE:
            return resolver.resolve_config(node.config, skip_keys=("code",))
        case _:
            return resolver.resolve_config(node.config)


class NodeExecutor:
    """
    Executes single nodes on behalf of the workflow engine.

    Example:
        executor = NodeExecutor(llm=provider, engine_config=EngineConfig())
        result = await executor.execute(
            node,
            workflow,
            results,
            execution_id="exec_1",
            initial_input={"text": "hi"},
        )
    """

    def __init__(
        self,
        llm: LLMProvider | None = None,
        http_client: Any = None,
        engine_config: EngineConfig | None = None,
        retriever: Retriever | None = None,
    ):
        self.llm = llm
        self.http_client = http_client
        self.engine_config = engine_config or EngineConfig()
        self.retriever = retriever

    def node_timeout(self, node: NodeConfig) -> float | None:
        """Explicit ``nodeTimeout``, else the engine default. A LOOP has no default limit."""
        configured = node.config.get("nodeTimeout")
        if configured:
            return float(configured)
        if node.type == NodeType.LOOP:
            # Body nodes carry their own limits; the workflow timeout bounds the whole run
            return None
        return self.engine_config.default_node_timeout_s

    async def execute(
        self,
        node: NodeConfig,
        workflow: WorkflowConfig,
        results: dict[str, NodeResult],
        *,
        execution_id: str,
        initial_input: dict[str, Any] | None = None,
        loop_scope: dict[str, Any] | None = None,
        arrivals: list[NodeResult] | None = None,
        run_subgraph: SubgraphRunner | None = None,
    ) -> NodeResult:
        """
        Execute one node.

        Args:
            node: The node to run
            workflow: The workflow it belongs to
            results: Results visible to variable references
            execution_id: Owning execution
            initial_input: The invocation payload
            loop_scope: Variables of the enclosing loop iteration(s)
            arrivals: Predecessor results, for MERGE nodes
            run_subgraph: Loop body runner, for LOOP nodes

        Returns:
            NodeResult with status success or error
        """
        started_at = datetime.now()
        start = time.perf_counter()
        timeout = self.node_timeout(node)

        def finish(status: NodeStatus, **fields: Any) -> NodeResult:
            return NodeResult(
                node_id=node.id,
                node_name=node.name,
                node_type=str(node.type),
                status=status,
                started_at=started_at,
                completed_at=datetime.now(),
                duration=int((time.perf_counter() - start) * 1000),
                **fields,
            )

        try:
            resolver = VariableResolver(workflow, results, loop_scope=loop_scope)
            config = resolve_node_config(node, resolver)
            ctx = NodeContext(
                node=node,
                config=config,
                raw_config=node.config,
                workflow=workflow,
                resolver=resolver,
                results=results,
                execution_id=execution_id,
                initial_input=initial_input or {},
                llm=self.llm,
                http_client=self.http_client,
                engine_config=self.engine_config,
                retriever=self.retriever,
                run_subgraph=run_subgraph,
                arrivals=list(arrivals or []),
                loop_scope=loop_scope,
            )
            processor = processor_for(node.type)
            try:
                output = await asyncio.wait_for(processor(ctx), timeout=timeout)
            except TimeoutError as e:
                raise NodeTimeoutError(f"Node timed out after {timeout:g}s") from e

        except asyncio.CancelledError:
            raise
        except Exception as e:
            message = str(e) or type(e).__name__
            analysis = ErrorAnalyzer.analyze(e, str(node.type))
            logger.warning(
                f"Node '{node.name}' failed: {message}",
                extra={"event": "node_error", "node_id": node.id},
            )
            return finish(NodeStatus.ERROR, error=message, error_detail=analysis.to_dict())

        latency_ms = int((time.perf_counter() - start) * 1000)
        logger.info(
            f"Node '{node.name}' ({node.type}) completed in {latency_ms}ms",
            extra={
                "event": "node_complete",
                "node_id": node.id,
                "latency_ms": latency_ms,
                "tokens_used": output.total_tokens,
            },
        )
        return finish(
            NodeStatus.SUCCESS,
            data=output.data,
            prompt_tokens=output.prompt_tokens,
            completion_tokens=output.completion_tokens,
            total_tokens=output.total_tokens,
        )
