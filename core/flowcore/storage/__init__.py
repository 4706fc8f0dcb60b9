"""Execution persistence and checkpoint handling."""

from flowcore.storage.checkpoint_store import GRAPH_CHANGED_REASON, CheckpointManager
from flowcore.storage.execution_store import (
    ExecutionStore,
    FileExecutionStore,
    InMemoryExecutionStore,
)

__all__ = [
    "GRAPH_CHANGED_REASON",
    "CheckpointManager",
    "ExecutionStore",
    "FileExecutionStore",
    "InMemoryExecutionStore",
]
