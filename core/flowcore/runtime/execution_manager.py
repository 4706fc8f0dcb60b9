"""
Execution Manager - runs executions as background tasks.

Each execution gets its own WorkflowEngine and asyncio task; the manager
tracks them so callers can wait on, cancel or resume executions by id.

Example:
    manager = ExecutionManager(store, event_bus)
    exec_id = await manager.start(workflow, {"text": "hi"}, workflow_id="wf_1")
    result = await manager.wait(exec_id)
"""

import asyncio
import logging
from collections import OrderedDict
from collections.abc import Callable
from datetime import datetime
from typing import Any

from flowcore.graph.errors import ExecutionNotFoundError
from flowcore.graph.executor import CANCELLED_MESSAGE, WorkflowEngine
from flowcore.graph.workflow import WorkflowConfig
from flowcore.runtime.event_bus import ExecutionEventBus, get_default_bus
from flowcore.schemas.execution import ExecutionResult, ExecutionStatus
from flowcore.storage.execution_store import ExecutionStore

logger = logging.getLogger(__name__)

# (workflow config, workflow id) -> engine
EngineFactory = Callable[[WorkflowConfig, str], WorkflowEngine]


class ExecutionManager:
    """Tracks running executions and their engines."""

    def __init__(
        self,
        store: ExecutionStore,
        event_bus: ExecutionEventBus | None = None,
        engine_factory: EngineFactory | None = None,
        max_concurrent: int = 10,
        result_retention_max: int = 1000,
    ):
        """
        Initialize execution manager.

        Args:
            store: Execution persistence shared by every engine
            event_bus: Progress bus (process-wide default when None)
            engine_factory: Builds an engine for a workflow; must use ``store``
            max_concurrent: Maximum executions running at once
            result_retention_max: Finished results kept for ``wait``
        """
        self.store = store
        self.event_bus = event_bus or get_default_bus()
        self._engine_factory = engine_factory
        self._semaphore = asyncio.Semaphore(max_concurrent)
        self._result_retention_max = result_retention_max

        self._tasks: dict[str, asyncio.Task] = {}
        self._engines: dict[str, WorkflowEngine] = {}
        self._results: OrderedDict[str, ExecutionResult] = OrderedDict()

    def _make_engine(self, config: WorkflowConfig, workflow_id: str) -> WorkflowEngine:
        if self._engine_factory is not None:
            return self._engine_factory(config, workflow_id)
        return WorkflowEngine(workflow_id, "", "", config, store=self.store, event_bus=self.event_bus)

    def _spawn(self, execution_id: str, engine: WorkflowEngine, run: Callable[[], Any]) -> None:
        async def _run() -> ExecutionResult:
            async with self._semaphore:
                result = await run()
            self._results[execution_id] = result
            self._results.move_to_end(execution_id)
            while len(self._results) > self._result_retention_max:
                self._results.popitem(last=False)
            return result

        task = asyncio.create_task(_run(), name=f"execution:{execution_id}")
        self._tasks[execution_id] = task
        self._engines[execution_id] = engine

        def _done(_: asyncio.Task) -> None:
            self._tasks.pop(execution_id, None)
            self._engines.pop(execution_id, None)

        task.add_done_callback(_done)

    async def start(
        self,
        config: WorkflowConfig,
        initial_input: dict[str, Any] | None = None,
        *,
        workflow_id: str = "workflow",
    ) -> str:
        """
        Create an execution and run it in the background.

        Returns:
            Execution ID for tracking
        """
        engine = self._make_engine(config, workflow_id)
        execution = await engine.create_execution(initial_input)
        payload = dict(initial_input or {})
        self._spawn(execution.id, engine, lambda: engine.execute(payload, execution=execution))
        logger.debug(f"Queued execution {execution.id} for workflow {workflow_id}")
        return execution.id

    async def resume(
        self,
        execution_id: str,
        config: WorkflowConfig,
        initial_input: dict[str, Any] | None = None,
    ) -> str:
        """
        Resume a failed execution in the background.

        Returns:
            ID of the new execution

        Raises:
            ExecutionNotFoundError: if the execution does not exist
            ResumeError: if resume is refused
        """
        original = await self.store.get_execution(execution_id)
        if original is None:
            raise ExecutionNotFoundError(f"Execution not found: {execution_id}")

        engine = self._make_engine(config, original.workflow_id)
        execution, checkpoint, payload = await engine.prepare_resume(execution_id, initial_input)
        self._spawn(
            execution.id,
            engine,
            lambda: engine.execute(payload, execution=execution, checkpoint=checkpoint),
        )
        return execution.id

    async def cancel(self, execution_id: str) -> bool:
        """
        Cancel a running execution and wait for it to settle as CANCELLED.

        Returns:
            True if cancelled, False if not running here
        """
        task = self._tasks.get(execution_id)
        engine = self._engines.get(execution_id)
        if task is None or task.done():
            return False
        if engine is not None and engine.running:
            engine.cancel()
            await asyncio.gather(task, return_exceptions=True)
            return True

        # Still queued behind the concurrency limit: the engine never started
        task.cancel()
        await asyncio.gather(task, return_exceptions=True)
        applied, _ = await self.store.finish_execution(
            execution_id,
            (ExecutionStatus.PENDING,),
            status=ExecutionStatus.CANCELLED,
            error=CANCELLED_MESSAGE,
            completed_at=datetime.now(),
        )
        if applied:
            await self.event_bus.execution_error(execution_id, CANCELLED_MESSAGE)
        return True

    async def wait(self, execution_id: str, timeout: float | None = None) -> ExecutionResult | None:
        """
        Wait for an execution to finish.

        Returns:
            ExecutionResult, or None on timeout or if the id is unknown
        """
        task = self._tasks.get(execution_id)
        if task is None:
            return self._results.get(execution_id)
        try:
            return await asyncio.wait_for(asyncio.shield(task), timeout=timeout)
        except TimeoutError:
            return None
        except asyncio.CancelledError:
            if task.cancelled():
                return None
            raise

    def get_engine(self, execution_id: str) -> WorkflowEngine | None:
        return self._engines.get(execution_id)

    def active_count(self) -> int:
        return sum(1 for task in self._tasks.values() if not task.done())

    async def shutdown(self) -> None:
        """Cancel every running execution and wait for them to settle."""
        for execution_id in list(self._tasks):
            await self.cancel(execution_id)
        self._tasks.clear()
        self._engines.clear()
        logger.info("Execution manager shut down")
