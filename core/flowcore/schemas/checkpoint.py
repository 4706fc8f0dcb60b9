"""
Checkpoint Schema - Completed-node snapshot for resumable executions.

A checkpoint is a plain value: the successful NodeResults of a run, the
node that failed (if any) and the hash of the graph they were produced
against. Resume rebuilds state from it without touching the run that
wrote it.
"""

from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field
from pydantic.alias_generators import to_camel

from flowcore.graph.node import NodeResult

CHECKPOINT_VERSION = 1


class Checkpoint(BaseModel):
    """Snapshot embedded on an Execution record."""

    completed_nodes: dict[str, NodeResult] = Field(default_factory=dict)
    failed_node_id: str | None = None
    workflow_hash: str
    version: int = CHECKPOINT_VERSION
    created_at: datetime = Field(default_factory=datetime.now)

    # Global variables at checkpoint time
    variables: dict[str, Any] = Field(default_factory=dict)

    model_config = {"extra": "allow", "populate_by_name": True, "alias_generator": to_camel}

    @property
    def completed_count(self) -> int:
        return len(self.completed_nodes)

    def info(self) -> dict[str, Any]:
        """Summary used by the resume status payload."""
        return {
            "completedNodesCount": self.completed_count,
            "failedNodeId": self.failed_node_id,
        }
