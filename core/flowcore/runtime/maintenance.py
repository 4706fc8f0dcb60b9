"""
Maintenance - sweeps executions left RUNNING by a crashed process.

Crash recovery at the process level is best effort: an execution whose
heartbeat is older than the timeout is forced to FAILED so nothing stays
RUNNING forever. A swept execution that had saved progress stays
resumable.
"""

import asyncio
import logging
from datetime import datetime, timedelta

from flowcore.schemas.execution import ExecutionStatus
from flowcore.storage.execution_store import ExecutionStore

logger = logging.getLogger(__name__)

DEFAULT_STUCK_TIMEOUT_MS = 600_000


def stuck_error_message(timeout_ms: int) -> str:
    minutes = f"{timeout_ms / 60_000:g}"
    return (
        f"Execution timed out: no progress for more than {minutes} minutes "
        "(process may have crashed)"
    )


async def cleanup_stuck_executions(
    store: ExecutionStore,
    timeout_ms: int = DEFAULT_STUCK_TIMEOUT_MS,
    now: datetime | None = None,
) -> list[str]:
    """
    Fail every RUNNING execution with no progress for ``timeout_ms``.

    Args:
        store: Execution store to sweep
        timeout_ms: Silence threshold
        now: Current time (injectable for tests)

    Returns:
        IDs of the executions that were swept
    """
    now = now or datetime.now()
    cutoff = now - timedelta(milliseconds=timeout_ms)
    message = stuck_error_message(timeout_ms)

    swept: list[str] = []
    for execution in await store.list_executions(ExecutionStatus.RUNNING):
        if execution.last_progress_at > cutoff:
            continue
        checkpoint = execution.checkpoint
        applied, _ = await store.finish_execution(
            execution.id,
            (ExecutionStatus.RUNNING,),
            status=ExecutionStatus.FAILED,
            error=message,
            completed_at=now,
            can_resume=checkpoint is not None and checkpoint.completed_count > 0,
        )
        if not applied:
            # Finished between the listing and the write
            continue
        swept.append(execution.id)
        logger.warning(f"Swept stuck execution {execution.id} (last progress {execution.last_progress_at})")

    if swept:
        logger.info(f"Cleanup marked {len(swept)} stuck execution(s) as failed")
    return swept


class MaintenanceLoop:
    """
    Periodically runs the stuck-execution sweep.

    Lifecycle:
        loop = MaintenanceLoop(store, interval_s=60)
        loop.start()
        # ...
        await loop.stop()
    """

    def __init__(
        self,
        store: ExecutionStore,
        interval_s: float = 60.0,
        timeout_ms: int = DEFAULT_STUCK_TIMEOUT_MS,
    ):
        self.store = store
        self.interval_s = interval_s
        self.timeout_ms = timeout_ms
        self._task: asyncio.Task | None = None

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.is_running:
            return
        self._task = asyncio.create_task(self._run(), name="flowcore-maintenance")
        logger.info(f"Maintenance loop started (every {self.interval_s:g}s)")

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        logger.info("Maintenance loop stopped")

    async def run_once(self) -> list[str]:
        return await cleanup_stuck_executions(self.store, self.timeout_ms)

    async def _run(self) -> None:
        while True:
            try:
                await self.run_once()
            except Exception as e:
                logger.error(f"Stuck-execution sweep failed: {e}")
            await asyncio.sleep(self.interval_s)
