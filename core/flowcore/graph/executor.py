"""
Workflow Engine - runs a workflow graph for one execution.

The engine:
1. Creates the Execution record (PENDING), validates the graph, flips to RUNNING
2. Walks the graph in dependency order, dispatching ready nodes to the
   NodeExecutor (one at a time, or concurrently in parallel mode)
3. Marks edges live/dead after each node so untaken branches are skipped
   and MERGE nodes fire according to their strategy
4. Persists a log row per node, a heartbeat, and progress events
5. Stops on the first uncontained node error, saving a checkpoint of the
   successful results so the run can be resumed
6. Records the final output, token totals and terminal status
"""

import asyncio
import dataclasses
import logging
import time
import uuid
from datetime import datetime
from pathlib import Path
from typing import Any

from flowcore.config import EngineConfig
from flowcore.graph.branching import (
    EdgeState,
    MergeDecision,
    MergeSettings,
    MergeStrategy,
    live_edge_ids,
    merge_readiness,
)
from flowcore.graph.errors import (
    ExecutionNotFoundError,
    NodeExecutionError,
    ResumeError,
    WorkflowValidationError,
)
from flowcore.graph.node import NodeResult, NodeStatus, Retriever
from flowcore.graph.node_executor import NodeExecutor
from flowcore.graph.workflow import TOKEN_BEARING_TYPES, Edge, NodeConfig, NodeType, WorkflowConfig
from flowcore.llm.provider import LLMProvider
from flowcore.observability import clear_trace_context, set_trace_context
from flowcore.runtime.event_bus import ExecutionEventBus, get_default_bus
from flowcore.schemas.checkpoint import Checkpoint
from flowcore.schemas.execution import Execution, ExecutionLog, ExecutionResult, ExecutionStatus
from flowcore.storage.checkpoint_store import CheckpointManager
from flowcore.storage.execution_store import ExecutionStore, InMemoryExecutionStore
from flowcore.utils.redaction import redact_secrets

logger = logging.getLogger(__name__)

CANCELLED_MESSAGE = "Execution cancelled"
INTERNAL_ERROR_PREFIX = "Workflow execution failed due to an internal error"

# Statuses a terminal write may overwrite
OPEN_STATUSES = (ExecutionStatus.PENDING, ExecutionStatus.RUNNING)


def format_node_failure(result: NodeResult) -> str:
    """Execution error text for a failed node; always names the node."""
    return f'Node "{result.node_name}" failed: {result.error}'


@dataclasses.dataclass
class _Traversal:
    """Bookkeeping for one traversal scope (the whole graph or one loop iteration)."""

    members: list[str]
    edges: list[Edge]
    results: dict[str, NodeResult]
    loop_scope: dict[str, Any] | None
    edge_state: dict[str, EdgeState] = dataclasses.field(default_factory=dict)
    done: set[str] = dataclasses.field(default_factory=set)
    arrivals: dict[str, list[NodeResult]] = dataclasses.field(default_factory=dict)

    def __post_init__(self) -> None:
        self.incoming: dict[str, list[Edge]] = {m: [] for m in self.members}
        self.outgoing: dict[str, list[Edge]] = {m: [] for m in self.members}
        for edge in self.edges:
            self.incoming[edge.target].append(edge)
            self.outgoing[edge.source].append(edge)
            self.edge_state[edge.id] = EdgeState.PENDING

    def states_into(self, node_id: str) -> list[EdgeState]:
        return [self.edge_state[e.id] for e in self.incoming[node_id]]


class WorkflowEngine:
    """
    Executes one workflow.

    Example:
        engine = WorkflowEngine(
            "wf_1",
            "org_1",
            "user_1",
            workflow_config,
            store=FileExecutionStore("~/.flowcore/executions"),
            llm=LiteLLMProvider(),
        )
        result = await engine.execute({"text": "hi"})
    """

    def __init__(
        self,
        workflow_id: str,
        organization_id: str,
        user_id: str,
        config: WorkflowConfig | dict[str, Any],
        *,
        store: ExecutionStore | None = None,
        event_bus: ExecutionEventBus | None = None,
        llm: LLMProvider | None = None,
        engine_config: EngineConfig | None = None,
        http_client: Any = None,
        retriever: Retriever | None = None,
        output_dir: str | Path | None = None,
    ):
        self.workflow_id = workflow_id
        self.organization_id = organization_id
        self.user_id = user_id
        self.config = config if isinstance(config, WorkflowConfig) else WorkflowConfig.model_validate(config)
        self.store = store or InMemoryExecutionStore()
        self.event_bus = event_bus or get_default_bus()

        engine_config = engine_config or EngineConfig()
        if output_dir is not None:
            engine_config = dataclasses.replace(engine_config, output_dir=Path(output_dir))
        self.engine_config = engine_config
        self.node_executor = NodeExecutor(
            llm=llm,
            http_client=http_client,
            engine_config=engine_config,
            retriever=retriever,
        )

        self.execution_id: str | None = None
        self._task: asyncio.Task | None = None
        self._cancel_requested = False
        self._log_sequence = 0
        self._order_index: dict[str, int] = {}
        self._tokens = {"prompt": 0, "completion": 0, "total": 0}

    # === PUBLIC API ===

    @property
    def running(self) -> bool:
        """True while execute() is driving an execution."""
        return self._task is not None

    @property
    def parallel(self) -> bool:
        configured = self.config.settings.enable_parallel_execution
        if configured is not None:
            return configured
        return self.engine_config.enable_parallel_execution

    async def create_execution(
        self,
        initial_input: dict[str, Any] | None = None,
        resumed_from_id: str | None = None,
        checkpoint: Checkpoint | None = None,
    ) -> Execution:
        """Persist a PENDING execution row with the input redacted."""
        execution = Execution(
            workflow_id=self.workflow_id,
            organization_id=self.organization_id,
            user_id=self.user_id,
            input=redact_secrets(initial_input or {}),
            resumed_from_id=resumed_from_id,
            checkpoint=checkpoint,
        )
        return await self.store.create_execution(execution)

    def cancel(self) -> None:
        """Request cancellation; the running execute() ends as CANCELLED."""
        self._cancel_requested = True
        if self._task is not None and not self._task.done():
            self._task.cancel()

    async def execute(
        self,
        initial_input: dict[str, Any] | None = None,
        *,
        execution: Execution | None = None,
        checkpoint: Checkpoint | None = None,
    ) -> ExecutionResult:
        """
        Run the workflow to a terminal state.

        Args:
            initial_input: Invocation payload
            execution: An already-created PENDING row to drive (else one is created)
            checkpoint: Completed results to seed the run with (resume)

        Returns:
            ExecutionResult; the execution row is terminal when this returns
        """
        initial_input = dict(initial_input or {})
        start = time.perf_counter()
        if execution is None:
            execution = await self.create_execution(initial_input)
        execution_id = execution.id
        self.execution_id = execution_id
        self._task = asyncio.current_task()
        self._tokens = {"prompt": 0, "completion": 0, "total": 0}
        self._log_sequence = 0

        set_trace_context(
            trace_id=uuid.uuid4().hex,
            execution_id=execution_id,
            workflow_id=self.workflow_id,
        )
        node_ids = [n.id for n in self.config.nodes]
        self.event_bus.init_execution(execution_id, self.workflow_id, node_ids)
        results: dict[str, NodeResult] = {}

        try:
            # Graph integrity is checked before the row ever reaches RUNNING
            try:
                self.config.validate_graph()
                self._order_index = {nid: i for i, nid in enumerate(self.config.execution_order())}
                if checkpoint is not None:
                    reason = CheckpointManager.validate(checkpoint, self.config)
                    if reason:
                        raise ResumeError(reason)
            except (WorkflowValidationError, ResumeError) as e:
                return await self._reject(execution_id, str(e), start)

            if checkpoint is not None:
                results = CheckpointManager.restore(checkpoint)
                logger.info(f"📥 Seeded execution with {len(results)} completed node(s) from checkpoint")

            now = datetime.now()
            await self.store.update_execution(
                execution_id, status=ExecutionStatus.RUNNING, started_at=now, heartbeat_at=now
            )
            logger.info(f"▶ Execution started ({len(node_ids)} nodes, parallel={self.parallel})")

            timeout = self.config.settings.timeout
            try:
                async with asyncio.timeout(timeout):
                    failure = await self._traverse(None, results, initial_input, None)
            except TimeoutError:
                message = f"Execution timed out after {timeout:g}s"
                return await self._finish_failed(execution_id, results, None, message, start)

            if failure is not None:
                return await self._finish_failed(
                    execution_id, results, failure, format_node_failure(failure), start
                )
            return await self._finish_completed(execution_id, results, start)

        except asyncio.CancelledError:
            logger.info("⏹ Execution cancelled")
            return await self._finish_cancelled(execution_id, results, start)

        except Exception as e:
            logger.exception(f"Orchestration fault: {e}")
            message = f"{INTERNAL_ERROR_PREFIX}: {e}"
            try:
                return await self._finish_failed(execution_id, results, None, message, start)
            except Exception as persist_error:
                logger.error(f"Failed to persist failure of {execution_id}: {persist_error}")
                return ExecutionResult(
                    status=ExecutionStatus.FAILED,
                    execution_id=execution_id,
                    error=message,
                    duration=self._elapsed_ms(start),
                    node_results=results,
                )

        finally:
            self._task = None
            clear_trace_context()

    async def prepare_resume(
        self,
        original_execution_id: str,
        initial_input: dict[str, Any] | None = None,
    ) -> tuple[Execution, Checkpoint, dict[str, Any]]:
        """
        Consume a failed execution's checkpoint and create the row that continues it.

        Returns:
            (new PENDING execution, checkpoint to seed it with, input payload)

        Raises:
            ExecutionNotFoundError: if the original does not exist
            ResumeError: with the block reason when resume is refused
        """
        status = await get_resume_status(self.store, original_execution_id, self.config)
        if not status["canResume"]:
            raise ResumeError(status["resumeBlockReason"])

        original = await self.store.get_execution(original_execution_id)
        if original is None or original.checkpoint is None:
            raise ExecutionNotFoundError(f"Execution not found: {original_execution_id}")

        # Single-use: only one caller can flip can_resume from true to false
        if not await self.store.consume_resume(original_execution_id):
            raise ResumeError("Execution has already been resumed")

        payload = dict(initial_input) if initial_input is not None else dict(original.input)
        execution = await self.create_execution(
            payload,
            resumed_from_id=original_execution_id,
            checkpoint=original.checkpoint,
        )
        logger.info(
            f"🔄 Resuming {original_execution_id} as {execution.id} "
            f"({original.checkpoint.completed_count} completed, failed at {original.checkpoint.failed_node_id})"
        )
        return execution, original.checkpoint, payload

    async def resume(
        self,
        original_execution_id: str,
        initial_input: dict[str, Any] | None = None,
    ) -> ExecutionResult:
        """Resume a failed execution from its checkpoint as a new execution."""
        execution, checkpoint, payload = await self.prepare_resume(original_execution_id, initial_input)
        return await self.execute(payload, execution=execution, checkpoint=checkpoint)

    # === TRAVERSAL ===

    def _scope_edges(self, members: list[str]) -> list[Edge]:
        member_set = set(members)
        return [
            e
            for e in self.config.edges
            if e.source in member_set and e.target in member_set and not self.config.is_back_edge(e)
        ]

    def _decide(self, node: NodeConfig, tr: _Traversal) -> MergeDecision:
        """Whether a pending node can run, must wait, or is skipped."""
        states = tr.states_into(node.id)
        if node.type == NodeType.MERGE and states:
            try:
                settings = MergeSettings.from_config(node.config)
            except NodeExecutionError:
                # Let the node run once everything arrived so the bad config surfaces as its error
                return MergeDecision.WAIT if EdgeState.PENDING in states else MergeDecision.FIRE
            return merge_readiness(settings, states)

        if not states:
            return MergeDecision.FIRE
        if EdgeState.PENDING in states:
            return MergeDecision.WAIT
        if EdgeState.LIVE in states:
            return MergeDecision.FIRE
        return MergeDecision.SKIP

    def _resolve_outgoing(self, node: NodeConfig, result: NodeResult, tr: _Traversal) -> None:
        edges = tr.outgoing[node.id]
        match result.status:
            case NodeStatus.SUCCESS:
                live = live_edge_ids(node, result, edges)
                states = {e.id: EdgeState.LIVE if e.id in live else EdgeState.DEAD for e in edges}
            case NodeStatus.ERROR:
                states = {e.id: EdgeState.ERRORED for e in edges}
            case NodeStatus.SKIPPED:
                states = {e.id: EdgeState.DEAD for e in edges}

        for edge in edges:
            tr.edge_state[edge.id] = states[edge.id]
            target = self.config.get_node(edge.target)
            if target is not None and target.type == NodeType.MERGE and states[edge.id] != EdgeState.DEAD:
                pending = tr.arrivals.setdefault(edge.target, [])
                if all(r.node_id != result.node_id for r in pending):
                    pending.append(result)

    def _is_contained(self, node_id: str, tr: _Traversal) -> bool:
        """An error is contained when every outgoing edge feeds an error-tolerant MERGE."""
        edges = tr.outgoing[node_id]
        if not edges:
            return False
        for edge in edges:
            target = self.config.get_node(edge.target)
            if target is None or target.type != NodeType.MERGE:
                return False
            try:
                if not MergeSettings.from_config(target.config).tolerates_errors:
                    return False
            except NodeExecutionError:
                return False
        return True

    def _is_discarded(self, node_id: str, tr: _Traversal) -> bool:
        """A late branch is discarded when every outgoing edge feeds a race/any MERGE that already fired."""
        edges = tr.outgoing[node_id]
        if not edges:
            return False
        for edge in edges:
            target = self.config.get_node(edge.target)
            if target is None or target.type != NodeType.MERGE:
                return False
            fired = tr.results.get(edge.target)
            if edge.target not in tr.done or fired is None or fired.status != NodeStatus.SUCCESS:
                return False
            try:
                strategy = MergeSettings.from_config(target.config).strategy
            except NodeExecutionError:
                return False
            if strategy not in (MergeStrategy.RACE, MergeStrategy.ANY):
                return False
        return True

    def _priority(self, node_id: str) -> tuple[int, int]:
        node = self.config.get_node(node_id)
        is_merge = node is not None and node.type == NodeType.MERGE
        return (0 if is_merge else 1, self._order_index.get(node_id, len(self._order_index)))

    async def _traverse(
        self,
        scope: list[str] | None,
        results: dict[str, NodeResult],
        initial_input: dict[str, Any],
        loop_scope: dict[str, Any] | None,
    ) -> NodeResult | None:
        """
        Drive every node of ``scope`` (None = the whole workflow) to a terminal state.

        ``results`` is updated in place. Nodes already present in it (seeded
        from a checkpoint) are not re-run; their outgoing edges are replayed.

        Returns:
            The first uncontained error result, or None when the scope finished
        """
        members = self.config.scope_members(scope)
        tr = _Traversal(
            members=sorted(members, key=lambda nid: self._order_index.get(nid, 0)),
            edges=self._scope_edges(members),
            results=results,
            loop_scope=loop_scope,
        )

        # Replay seeded results in dependency order
        for node_id in tr.members:
            seeded = results.get(node_id)
            node = self.config.get_node(node_id)
            if seeded is not None and node is not None:
                tr.done.add(node_id)
                self._resolve_outgoing(node, seeded, tr)

        running: dict[asyncio.Task, str] = {}
        try:
            while True:
                if self._cancel_requested:
                    raise asyncio.CancelledError()

                fire: list[str] = []
                skipped_any = False
                for node_id in tr.members:
                    if node_id in tr.done or node_id in running.values():
                        continue
                    node = self.config.get_node(node_id)
                    decision = self._decide(node, tr)
                    if decision == MergeDecision.SKIP:
                        await self._record_skip(node, tr)
                        skipped_any = True
                    elif decision == MergeDecision.FIRE:
                        fire.append(node_id)
                if skipped_any:
                    # Skips can arm or skip further nodes; settle them first
                    continue

                fire.sort(key=self._priority)
                if self.parallel:
                    launch = fire
                else:
                    launch = fire[:1] if not running else []
                for node_id in launch:
                    node = self.config.get_node(node_id)
                    task = asyncio.create_task(
                        self._run_node(node, tr, initial_input),
                        name=f"node:{node_id}",
                    )
                    running[task] = node_id

                if not running:
                    break

                finished, _ = await asyncio.wait(running, return_when=asyncio.FIRST_COMPLETED)
                for task in sorted(finished, key=lambda t: self._priority(running[t])):
                    node_id = running.pop(task)
                    node = self.config.get_node(node_id)
                    result = task.result()
                    results[node_id] = result
                    tr.done.add(node_id)
                    await self._record(result, node)

                    if result.status == NodeStatus.ERROR:
                        if self._is_discarded(node_id, tr):
                            logger.info(f"Late error in '{node.name}' discarded by merge that already fired")
                        elif self._is_contained(node_id, tr):
                            logger.info(f"Error in '{node.name}' contained by downstream merge")
                        else:
                            return result
                    self._resolve_outgoing(node, result, tr)

                    if scope is None and self.engine_config.checkpoint_every_node:
                        await self._save_progress_checkpoint(results)
        finally:
            for task in running:
                task.cancel()
            if running:
                await asyncio.gather(*running, return_exceptions=True)

        return None

    async def _run_node(self, node: NodeConfig, tr: _Traversal, initial_input: dict[str, Any]) -> NodeResult:
        set_trace_context(node_id=node.id)
        await self.event_bus.node_start(self.execution_id, node.id, node.name, str(node.type))

        run_subgraph = None
        if node.type == NodeType.LOOP:

            async def run_subgraph(body: list[str], scope_vars: dict[str, Any]) -> dict[str, NodeResult]:
                # Each iteration sees the outer results plus its own, never earlier iterations'
                iteration_results = dict(tr.results)
                await self._traverse(
                    body, iteration_results, initial_input, {**(tr.loop_scope or {}), **scope_vars}
                )
                return {nid: iteration_results[nid] for nid in body if nid in iteration_results}

        return await self.node_executor.execute(
            node,
            self.config,
            tr.results,
            execution_id=self.execution_id,
            initial_input=initial_input,
            loop_scope=tr.loop_scope,
            arrivals=tr.arrivals.get(node.id),
            run_subgraph=run_subgraph,
        )

    # === RECORDING ===

    def _next_sequence(self) -> int:
        self._log_sequence += 1
        return self._log_sequence

    async def _record(self, result: NodeResult, node: NodeConfig) -> None:
        """Persist the log row, heartbeat and event for an executed node."""
        if node.type in TOKEN_BEARING_TYPES:
            self._tokens["prompt"] += result.prompt_tokens
            self._tokens["completion"] += result.completion_tokens
            self._tokens["total"] += result.total_tokens

        await self.store.append_log(ExecutionLog.from_result(self.execution_id, result, self._next_sequence()))
        await self.store.update_execution(self.execution_id, heartbeat_at=datetime.now())

        if result.status == NodeStatus.ERROR:
            await self.event_bus.node_error(
                self.execution_id, node.id, node.name, str(node.type), result.error or ""
            )
        else:
            await self.event_bus.node_complete(
                self.execution_id, node.id, node.name, str(node.type), output=result.data
            )

    async def _record_skip(self, node: NodeConfig, tr: _Traversal) -> None:
        result = NodeResult.skipped(node, "branch not taken")
        tr.results[node.id] = result
        tr.done.add(node.id)
        self._resolve_outgoing(node, result, tr)
        await self.store.append_log(ExecutionLog.from_result(self.execution_id, result, self._next_sequence()))
        logger.debug(f"Skipped '{node.name}' (only reachable through untaken branches)")

    async def _save_progress_checkpoint(self, results: dict[str, NodeResult]) -> None:
        checkpoint = CheckpointManager.build(
            results, None, self.config.workflow_hash(), self.config.global_variables
        )
        await self.store.update_execution(self.execution_id, checkpoint=checkpoint)

    # === TERMINAL STATES ===

    @staticmethod
    def _elapsed_ms(start: float) -> int:
        return int((time.perf_counter() - start) * 1000)

    def _final_output(self, results: dict[str, NodeResult]) -> Any:
        outputs = [
            r
            for r in results.values()
            if r.node_type == NodeType.OUTPUT and r.status == NodeStatus.SUCCESS
        ]
        terminal = [r for r in outputs if not self.config.outgoing(r.node_id)] or outputs
        if len(terminal) == 1:
            return terminal[0].data
        if terminal:
            return {r.node_name: r.data for r in terminal}

        succeeded = [r for r in results.values() if r.status == NodeStatus.SUCCESS]
        if not succeeded:
            return None
        return max(succeeded, key=lambda r: r.completed_at).data

    async def _finalize(
        self, execution_id: str, expected: tuple[ExecutionStatus, ...], **fields: Any
    ) -> Execution | None:
        """
        Move the row to a terminal state unless another writer already did.

        Returns:
            None if this call finalized the row, else the row as it stands
        """
        applied, row = await self.store.finish_execution(execution_id, expected, **fields)
        if applied:
            return None
        if row is None:
            raise ExecutionNotFoundError(f"Execution not found: {execution_id}")
        logger.warning(f"✗ Execution {execution_id} already finalized as {row.status}; keeping that state")
        return row

    def _kept_result(self, row: Execution, results: dict[str, NodeResult], start: float) -> ExecutionResult:
        return ExecutionResult(
            status=row.status,
            execution_id=row.id,
            output=row.output,
            error=row.error,
            duration=self._elapsed_ms(start),
            total_tokens=self._tokens["total"],
            node_results=dict(results),
        )

    async def _reject(self, execution_id: str, message: str, start: float) -> ExecutionResult:
        """Fail an execution that never started (invalid graph or unusable checkpoint)."""
        logger.error(f"✗ {message}")
        duration = self._elapsed_ms(start)
        kept = await self._finalize(
            execution_id,
            OPEN_STATUSES,
            status=ExecutionStatus.FAILED,
            error=message,
            completed_at=datetime.now(),
            duration=duration,
        )
        if kept is not None:
            return self._kept_result(kept, {}, start)
        await self.event_bus.execution_error(execution_id, message)
        return ExecutionResult(
            status=ExecutionStatus.FAILED, execution_id=execution_id, error=message, duration=duration
        )

    async def _finish_completed(
        self, execution_id: str, results: dict[str, NodeResult], start: float
    ) -> ExecutionResult:
        output = self._final_output(results)
        duration = self._elapsed_ms(start)
        kept = await self._finalize(
            execution_id,
            (ExecutionStatus.RUNNING,),
            status=ExecutionStatus.COMPLETED,
            output=output,
            error=None,
            checkpoint=None,
            can_resume=False,
            completed_at=datetime.now(),
            duration=duration,
            total_tokens=self._tokens["total"],
            prompt_tokens=self._tokens["prompt"],
            completion_tokens=self._tokens["completion"],
        )
        if kept is not None:
            return self._kept_result(kept, results, start)
        await self.event_bus.execution_complete(execution_id)
        logger.info(f"✓ Execution completed in {duration}ms ({self._tokens['total']} tokens)")
        return ExecutionResult(
            status=ExecutionStatus.COMPLETED,
            execution_id=execution_id,
            output=output,
            duration=duration,
            total_tokens=self._tokens["total"],
            node_results=dict(results),
        )

    async def _finish_failed(
        self,
        execution_id: str,
        results: dict[str, NodeResult],
        failure: NodeResult | None,
        message: str,
        start: float,
    ) -> ExecutionResult:
        checkpoint = CheckpointManager.build(
            results,
            failure.node_id if failure else None,
            self.config.workflow_hash(),
            self.config.global_variables,
        )
        can_resume = checkpoint.completed_count > 0
        duration = self._elapsed_ms(start)
        kept = await self._finalize(
            execution_id,
            OPEN_STATUSES,
            status=ExecutionStatus.FAILED,
            error=message,
            checkpoint=checkpoint,
            can_resume=can_resume,
            completed_at=datetime.now(),
            duration=duration,
            total_tokens=self._tokens["total"],
            prompt_tokens=self._tokens["prompt"],
            completion_tokens=self._tokens["completion"],
        )
        if kept is not None:
            return self._kept_result(kept, results, start)
        await self.event_bus.execution_error(execution_id, message)
        logger.error(f"✗ {message} (checkpoint: {checkpoint.completed_count} node(s), resumable={can_resume})")
        return ExecutionResult(
            status=ExecutionStatus.FAILED,
            execution_id=execution_id,
            error=message,
            duration=duration,
            total_tokens=self._tokens["total"],
            node_results=dict(results),
        )

    async def _finish_cancelled(
        self, execution_id: str, results: dict[str, NodeResult], start: float
    ) -> ExecutionResult:
        duration = self._elapsed_ms(start)
        kept = await self._finalize(
            execution_id,
            OPEN_STATUSES,
            status=ExecutionStatus.CANCELLED,
            error=CANCELLED_MESSAGE,
            completed_at=datetime.now(),
            duration=duration,
            total_tokens=self._tokens["total"],
            prompt_tokens=self._tokens["prompt"],
            completion_tokens=self._tokens["completion"],
        )
        if kept is not None:
            return self._kept_result(kept, results, start)
        await self.event_bus.execution_error(execution_id, CANCELLED_MESSAGE)
        return ExecutionResult(
            status=ExecutionStatus.CANCELLED,
            execution_id=execution_id,
            error=CANCELLED_MESSAGE,
            duration=duration,
            total_tokens=self._tokens["total"],
            node_results=dict(results),
        )


# === RESUME STATUS ===


async def get_resume_status(
    store: ExecutionStore,
    execution_id: str,
    config: WorkflowConfig,
) -> dict[str, Any]:
    """
    Describe whether an execution can be resumed against ``config``.

    Block reasons are checked in order: not failed, resume flag cleared,
    no checkpoint, checkpoint unusable (graph changed).

    Raises:
        ExecutionNotFoundError: if the execution does not exist
    """
    execution = await store.get_execution(execution_id)
    if execution is None:
        raise ExecutionNotFoundError(f"Execution not found: {execution_id}")

    checkpoint = execution.checkpoint
    reason: str | None = None
    if execution.status != ExecutionStatus.FAILED:
        reason = f"Only failed executions can be resumed (status is {execution.status})"
    elif not execution.can_resume:
        reason = "Execution has already been resumed or has no resumable progress"
    elif checkpoint is None:
        reason = "No checkpoint available for this execution"
    else:
        reason = CheckpointManager.validate(checkpoint, config)

    payload: dict[str, Any] = {
        "executionId": execution.id,
        "status": str(execution.status),
        "canResume": reason is None,
        "lastCheckpoint": checkpoint.created_at.isoformat() if checkpoint else None,
        "checkpointInfo": checkpoint.info() if checkpoint else None,
    }
    if reason is not None:
        payload["resumeBlockReason"] = reason
    if execution.resumed_from_id:
        payload["resumedFromId"] = execution.resumed_from_id
    if execution.error:
        payload["error"] = execution.error
    return payload
