"""Persisted record types: executions, node logs and checkpoints."""

from flowcore.schemas.checkpoint import CHECKPOINT_VERSION, Checkpoint
from flowcore.schemas.execution import (
    Execution,
    ExecutionLog,
    ExecutionResult,
    ExecutionStatus,
    generate_execution_id,
)

__all__ = [
    "CHECKPOINT_VERSION",
    "Checkpoint",
    "Execution",
    "ExecutionLog",
    "ExecutionResult",
    "ExecutionStatus",
    "generate_execution_id",
]
