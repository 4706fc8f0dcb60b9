"""
Execution Schema - Persisted execution records and per-node logs.

An Execution moves PENDING -> RUNNING -> one terminal state exactly once.
ExecutionLog rows are append-only, one per visited node, ordered by
``started_at``.
"""

import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, Field
from pydantic.alias_generators import to_camel

from flowcore.graph.node import NodeResult
from flowcore.schemas.checkpoint import Checkpoint


class ExecutionStatus(StrEnum):
    """Lifecycle state of an execution."""

    PENDING = "PENDING"
    RUNNING = "RUNNING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"

    @property
    def is_terminal(self) -> bool:
        return self in (ExecutionStatus.COMPLETED, ExecutionStatus.FAILED, ExecutionStatus.CANCELLED)


def generate_execution_id() -> str:
    """Execution ID in format exec_YYYYMMDD_HHMMSS_{uuid}."""
    return f"exec_{datetime.now():%Y%m%d_%H%M%S}_{uuid.uuid4().hex[:8]}"


class Execution(BaseModel):
    """One run of a workflow."""

    id: str = Field(default_factory=generate_execution_id)
    workflow_id: str
    organization_id: str = ""
    user_id: str = ""

    status: ExecutionStatus = ExecutionStatus.PENDING
    input: dict[str, Any] = Field(default_factory=dict)  # redacted before storage
    output: Any = None
    error: str | None = None
    duration: int | None = None  # milliseconds

    total_tokens: int = 0
    prompt_tokens: int = 0
    completion_tokens: int = 0

    checkpoint: Checkpoint | None = None
    can_resume: bool = False
    resumed_from_id: str | None = None

    created_at: datetime = Field(default_factory=datetime.now)
    started_at: datetime | None = None
    completed_at: datetime | None = None
    heartbeat_at: datetime | None = None

    model_config = {"extra": "allow", "populate_by_name": True, "alias_generator": to_camel}

    @property
    def last_progress_at(self) -> datetime:
        """Most recent sign of life: heartbeat, else start, else creation."""
        return self.heartbeat_at or self.started_at or self.created_at


class ExecutionLog(BaseModel):
    """One row per visited node, mirroring its NodeResult."""

    id: str = Field(default_factory=lambda: f"log_{uuid.uuid4().hex[:12]}")
    execution_id: str
    sequence: int = 0

    node_id: str
    node_name: str
    node_type: str
    status: str
    output: dict[str, Any] = Field(default_factory=dict)
    error: str | None = None
    error_detail: dict[str, Any] | None = None

    started_at: datetime
    completed_at: datetime
    duration: int = 0

    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0

    model_config = {"extra": "allow", "populate_by_name": True, "alias_generator": to_camel}

    @classmethod
    def from_result(cls, execution_id: str, result: NodeResult, sequence: int = 0) -> "ExecutionLog":
        return cls(
            execution_id=execution_id,
            sequence=sequence,
            node_id=result.node_id,
            node_name=result.node_name,
            node_type=result.node_type,
            status=str(result.status),
            output=result.data,
            error=result.error,
            error_detail=result.error_detail,
            started_at=result.started_at,
            completed_at=result.completed_at,
            duration=result.duration,
            prompt_tokens=result.prompt_tokens,
            completion_tokens=result.completion_tokens,
            total_tokens=result.total_tokens,
        )


@dataclass
class ExecutionResult:
    """What WorkflowEngine.execute returns."""

    status: ExecutionStatus
    execution_id: str
    output: Any = None
    error: str | None = None
    duration: int = 0  # milliseconds
    total_tokens: int = 0
    node_results: dict[str, NodeResult] = field(default_factory=dict)

    @property
    def success(self) -> bool:
        return self.status == ExecutionStatus.COMPLETED
