"""
Checkpoint Manager - builds, serializes, restores and validates checkpoints.

Checkpoints are value snapshots: ``restore`` returns fresh NodeResult
objects parsed from JSON, never references into the run that wrote them.
"""

import logging
from typing import Any

from flowcore.graph.node import NodeResult, NodeStatus
from flowcore.graph.workflow import WorkflowConfig
from flowcore.schemas.checkpoint import CHECKPOINT_VERSION, Checkpoint

logger = logging.getLogger(__name__)

GRAPH_CHANGED_REASON = (
    "Workflow has been modified since the failure (nodes or edges changed); "
    "resume is not possible. Start a new execution instead."
)


class CheckpointManager:
    """Stateless helpers around the Checkpoint value type."""

    @staticmethod
    def build(
        completed: dict[str, NodeResult],
        failed_node_id: str | None,
        workflow_hash: str,
        variables: dict[str, Any] | None = None,
    ) -> Checkpoint:
        """
        Snapshot the successful results of a run.

        Args:
            completed: Results by node id; only ``success`` entries are kept
            failed_node_id: The node that failed, if any
            workflow_hash: Hash of the graph the results were produced against
            variables: Global variables in effect

        Returns:
            New Checkpoint
        """
        kept = {
            node_id: result.model_copy(deep=True)
            for node_id, result in completed.items()
            if result.status == NodeStatus.SUCCESS
        }
        return Checkpoint(
            completed_nodes=kept,
            failed_node_id=failed_node_id,
            workflow_hash=workflow_hash,
            variables=dict(variables or {}),
        )

    @staticmethod
    def serialize(checkpoint: Checkpoint) -> dict[str, Any]:
        """JSON-safe dict in the persisted (camelCase) shape."""
        return checkpoint.model_dump(mode="json", by_alias=True)

    @staticmethod
    def load(data: Checkpoint | dict[str, Any]) -> Checkpoint:
        if isinstance(data, Checkpoint):
            return data
        return Checkpoint.model_validate(data)

    @classmethod
    def restore(cls, data: Checkpoint | dict[str, Any]) -> dict[str, NodeResult]:
        """Rebuild the completed-node map from a checkpoint or its serialized form."""
        checkpoint = cls.load(data)
        return {
            node_id: NodeResult.model_validate(result.model_dump(mode="json", by_alias=True))
            for node_id, result in checkpoint.completed_nodes.items()
        }

    @staticmethod
    def validate(checkpoint: Checkpoint, workflow: WorkflowConfig) -> str | None:
        """
        Check that ``checkpoint`` can seed a run of ``workflow``.

        Returns:
            None when usable, otherwise the reason it is not
        """
        if checkpoint.version != CHECKPOINT_VERSION:
            return f"Checkpoint version {checkpoint.version} is not supported"
        if checkpoint.workflow_hash != workflow.workflow_hash():
            logger.info("Checkpoint hash does not match the current workflow graph")
            return GRAPH_CHANGED_REASON
        missing = [nid for nid in checkpoint.completed_nodes if workflow.get_node(nid) is None]
        if missing:
            return f"Checkpoint references nodes missing from the workflow: {', '.join(missing)}"
        return None
