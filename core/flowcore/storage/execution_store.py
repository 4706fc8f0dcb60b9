"""
Execution Store - persistence for Execution records and ExecutionLog rows.

Two implementations share one async interface:

    InMemoryExecutionStore   dict-backed, for tests and embedding
    FileExecutionStore       one JSON file per execution plus a JSONL log

Directory structure (FileExecutionStore):
    {base_path}/
        executions/{execution_id}.json
        logs/{execution_id}.jsonl

``finish_execution`` is the compare-and-set used for terminal transitions.
``consume_resume`` is the test-and-clear on ``can_resume`` that makes a
checkpoint single-use; both stores hold a lock across the read and the
write so concurrent resume attempts cannot both succeed.
"""

import asyncio
import json
import logging
from abc import ABC, abstractmethod
from collections.abc import Collection
from pathlib import Path
from typing import Any

from flowcore.graph.errors import ExecutionNotFoundError
from flowcore.schemas.execution import Execution, ExecutionLog, ExecutionStatus
from flowcore.utils.io import atomic_write

logger = logging.getLogger(__name__)


class ExecutionStore(ABC):
    """Async persistence interface used by the engine and the runtime."""

    @abstractmethod
    async def create_execution(self, execution: Execution) -> Execution:
        """Persist a new execution record."""

    @abstractmethod
    async def get_execution(self, execution_id: str) -> Execution | None:
        """Load an execution, or None if it does not exist."""

    @abstractmethod
    async def update_execution(self, execution_id: str, **fields: Any) -> Execution:
        """
        Apply field updates to an execution and return the stored result.

        Raises:
            ExecutionNotFoundError: if the execution does not exist
        """

    @abstractmethod
    async def finish_execution(
        self, execution_id: str, expected: Collection[ExecutionStatus], **fields: Any
    ) -> tuple[bool, Execution | None]:
        """
        Apply ``fields`` only if the stored status is one of ``expected``.

        The check and the write happen under the store lock, so of two
        writers racing to finalize an execution exactly one wins.

        Returns:
            (applied, row) where row is the stored record after the call,
            or None if the execution does not exist
        """

    @abstractmethod
    async def list_executions(self, status: ExecutionStatus | None = None) -> list[Execution]:
        """All executions, optionally filtered by status, oldest first."""

    @abstractmethod
    async def append_log(self, log: ExecutionLog) -> None:
        """Append one node log row."""

    @abstractmethod
    async def list_logs(self, execution_id: str) -> list[ExecutionLog]:
        """Node log rows of an execution ordered by ``started_at``."""

    @abstractmethod
    async def consume_resume(self, execution_id: str) -> bool:
        """
        Atomically flip ``can_resume`` from true to false.

        Returns:
            True if this call consumed the flag, False if it was already false
        """


def _sort_logs(logs: list[ExecutionLog]) -> list[ExecutionLog]:
    return sorted(logs, key=lambda log: (log.started_at, log.sequence))


class InMemoryExecutionStore(ExecutionStore):
    """Dict-backed store. Returns copies so callers never share state with it."""

    def __init__(self) -> None:
        self._executions: dict[str, Execution] = {}
        self._logs: dict[str, list[ExecutionLog]] = {}
        self._lock = asyncio.Lock()

    async def create_execution(self, execution: Execution) -> Execution:
        async with self._lock:
            self._executions[execution.id] = execution.model_copy(deep=True)
        return execution.model_copy(deep=True)

    async def get_execution(self, execution_id: str) -> Execution | None:
        execution = self._executions.get(execution_id)
        return execution.model_copy(deep=True) if execution else None

    async def update_execution(self, execution_id: str, **fields: Any) -> Execution:
        async with self._lock:
            current = self._executions.get(execution_id)
            if current is None:
                raise ExecutionNotFoundError(f"Execution not found: {execution_id}")
            updated = current.model_copy(update=fields, deep=True)
            self._executions[execution_id] = updated
        return updated.model_copy(deep=True)

    async def finish_execution(
        self, execution_id: str, expected: Collection[ExecutionStatus], **fields: Any
    ) -> tuple[bool, Execution | None]:
        async with self._lock:
            current = self._executions.get(execution_id)
            if current is None:
                return False, None
            if current.status not in expected:
                return False, current.model_copy(deep=True)
            updated = current.model_copy(update=fields, deep=True)
            self._executions[execution_id] = updated
        return True, updated.model_copy(deep=True)

    async def list_executions(self, status: ExecutionStatus | None = None) -> list[Execution]:
        items = [e for e in self._executions.values() if status is None or e.status == status]
        return [e.model_copy(deep=True) for e in sorted(items, key=lambda e: e.created_at)]

    async def append_log(self, log: ExecutionLog) -> None:
        async with self._lock:
            self._logs.setdefault(log.execution_id, []).append(log.model_copy(deep=True))

    async def list_logs(self, execution_id: str) -> list[ExecutionLog]:
        return [log.model_copy(deep=True) for log in _sort_logs(self._logs.get(execution_id, []))]

    async def consume_resume(self, execution_id: str) -> bool:
        async with self._lock:
            current = self._executions.get(execution_id)
            if current is None or not current.can_resume:
                return False
            self._executions[execution_id] = current.model_copy(update={"can_resume": False})
            return True


class FileExecutionStore(ExecutionStore):
    """
    File-backed store with atomic writes.

    Record writes go through a temp file + rename; blocking I/O runs in a
    worker thread. One lock serialises read-modify-write cycles within the
    process.
    """

    def __init__(self, base_path: str | Path):
        self.base_path = Path(base_path)
        self.executions_dir = self.base_path / "executions"
        self.logs_dir = self.base_path / "logs"
        self._lock = asyncio.Lock()

    # ---- paths ----

    @staticmethod
    def _validate_id(execution_id: str) -> None:
        """Reject IDs that could escape the storage directory."""
        if not execution_id or any(c in execution_id for c in ("/", "\\", "\0")) or ".." in execution_id:
            raise ValueError(f"Invalid execution id: {execution_id!r}")

    def _execution_path(self, execution_id: str) -> Path:
        self._validate_id(execution_id)
        return self.executions_dir / f"{execution_id}.json"

    def _log_path(self, execution_id: str) -> Path:
        self._validate_id(execution_id)
        return self.logs_dir / f"{execution_id}.jsonl"

    # ---- blocking helpers (run in a thread) ----

    def _write_sync(self, execution: Execution) -> None:
        with atomic_write(self._execution_path(execution.id)) as f:
            f.write(execution.model_dump_json(by_alias=True, indent=2))

    def _read_sync(self, execution_id: str) -> Execution | None:
        path = self._execution_path(execution_id)
        if not path.exists():
            return None
        return Execution.model_validate_json(path.read_text(encoding="utf-8"))

    def _list_sync(self) -> list[Execution]:
        if not self.executions_dir.exists():
            return []
        out = []
        for path in self.executions_dir.glob("*.json"):
            try:
                out.append(Execution.model_validate_json(path.read_text(encoding="utf-8")))
            except (OSError, ValueError) as e:
                logger.warning(f"Skipping unreadable execution file {path.name}: {e}")
        return out

    # ---- interface ----

    async def create_execution(self, execution: Execution) -> Execution:
        async with self._lock:
            await asyncio.to_thread(self._write_sync, execution)
        logger.debug(f"Created execution record {execution.id}")
        return execution.model_copy(deep=True)

    async def get_execution(self, execution_id: str) -> Execution | None:
        return await asyncio.to_thread(self._read_sync, execution_id)

    async def update_execution(self, execution_id: str, **fields: Any) -> Execution:
        async with self._lock:
            current = await asyncio.to_thread(self._read_sync, execution_id)
            if current is None:
                raise ExecutionNotFoundError(f"Execution not found: {execution_id}")
            updated = current.model_copy(update=fields, deep=True)
            await asyncio.to_thread(self._write_sync, updated)
        return updated

    async def finish_execution(
        self, execution_id: str, expected: Collection[ExecutionStatus], **fields: Any
    ) -> tuple[bool, Execution | None]:
        async with self._lock:
            current = await asyncio.to_thread(self._read_sync, execution_id)
            if current is None or current.status not in expected:
                return False, current
            updated = current.model_copy(update=fields, deep=True)
            await asyncio.to_thread(self._write_sync, updated)
        return True, updated

    async def list_executions(self, status: ExecutionStatus | None = None) -> list[Execution]:
        items = await asyncio.to_thread(self._list_sync)
        items = [e for e in items if status is None or e.status == status]
        return sorted(items, key=lambda e: e.created_at)

    async def append_log(self, log: ExecutionLog) -> None:
        path = self._log_path(log.execution_id)
        line = log.model_dump_json(by_alias=True) + "\n"

        def _append() -> None:
            path.parent.mkdir(parents=True, exist_ok=True)
            with open(path, "a", encoding="utf-8") as f:
                f.write(line)

        async with self._lock:
            await asyncio.to_thread(_append)

    async def list_logs(self, execution_id: str) -> list[ExecutionLog]:
        path = self._log_path(execution_id)

        def _read() -> list[ExecutionLog]:
            if not path.exists():
                return []
            logs = []
            for line in path.read_text(encoding="utf-8").splitlines():
                if not line.strip():
                    continue
                try:
                    logs.append(ExecutionLog.model_validate(json.loads(line)))
                except ValueError as e:
                    logger.warning(f"Skipping malformed log line for {execution_id}: {e}")
            return logs

        return _sort_logs(await asyncio.to_thread(_read))

    async def consume_resume(self, execution_id: str) -> bool:
        async with self._lock:
            current = await asyncio.to_thread(self._read_sync, execution_id)
            if current is None or not current.can_resume:
                return False
            current.can_resume = False
            await asyncio.to_thread(self._write_sync, current)
            return True
