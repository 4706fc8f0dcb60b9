"""
Node results and the context handed to node processors.

``NodeResult`` is the value type the engine records for every node it
visits (executed, failed or skipped). It is plain data: checkpoints store
it verbatim and resume rebuilds it from JSON without any reference back to
the run that produced it.
"""

from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime
from enum import StrEnum
from typing import TYPE_CHECKING, Any

from pydantic import BaseModel, Field
from pydantic.alias_generators import to_camel

if TYPE_CHECKING:
    import httpx

    from flowcore.config import EngineConfig
    from flowcore.graph.variables import VariableResolver
    from flowcore.graph.workflow import NodeConfig, WorkflowConfig
    from flowcore.llm.provider import LLMProvider


class NodeStatus(StrEnum):
    """Terminal state of one node."""

    SUCCESS = "success"
    ERROR = "error"
    SKIPPED = "skipped"


class NodeResult(BaseModel):
    """The outcome of visiting one node."""

    node_id: str
    node_name: str
    node_type: str
    status: NodeStatus
    data: dict[str, Any] = Field(default_factory=dict)
    error: str | None = None
    started_at: datetime = Field(default_factory=datetime.now)
    completed_at: datetime = Field(default_factory=datetime.now)
    duration: int = 0  # milliseconds

    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0

    # ErrorAnalyzer output for failed nodes; not part of the serialized result
    error_detail: dict[str, Any] | None = Field(default=None, exclude=True)

    model_config = {"extra": "allow", "populate_by_name": True, "alias_generator": to_camel}

    @property
    def output(self) -> dict[str, Any]:
        return self.data

    @property
    def success(self) -> bool:
        return self.status == NodeStatus.SUCCESS

    @classmethod
    def skipped(cls, node: "NodeConfig", reason: str = "") -> "NodeResult":
        now = datetime.now()
        return cls(
            node_id=node.id,
            node_name=node.name,
            node_type=str(node.type),
            status=NodeStatus.SKIPPED,
            data={"skipped": True, "reason": reason} if reason else {"skipped": True},
            started_at=now,
            completed_at=now,
        )


@dataclass
class NodeOutput:
    """What a processor returns on success."""

    data: dict[str, Any] = field(default_factory=dict)
    prompt_tokens: int = 0
    completion_tokens: int = 0

    @property
    def total_tokens(self) -> int:
        return self.prompt_tokens + self.completion_tokens


# Runs a loop body once: (body node ids, loop scope) -> results by node id
SubgraphRunner = Callable[[list[str], dict[str, Any]], Awaitable[dict[str, NodeResult]]]

# Optional retrieval hook for PROCESS nodes: (query, node config) -> text chunks
Retriever = Callable[[str, dict[str, Any]], Awaitable[list[str]]]


@dataclass
class NodeContext:
    """
    Everything a processor may use while executing one node.

    ``config`` is already variable-resolved (except for node types that
    resolve lazily, see the dispatcher); ``raw_config`` is the node's
    configuration as authored.
    """

    node: "NodeConfig"
    config: dict[str, Any]
    raw_config: dict[str, Any]
    workflow: "WorkflowConfig"
    resolver: "VariableResolver"
    results: dict[str, NodeResult]
    execution_id: str
    initial_input: dict[str, Any] = field(default_factory=dict)
    llm: "LLMProvider | None" = None
    http_client: "httpx.AsyncClient | None" = None
    engine_config: "EngineConfig | None" = None
    retriever: Retriever | None = None
    run_subgraph: SubgraphRunner | None = None
    # Predecessor results a MERGE node fires with, in arrival order
    arrivals: list[NodeResult] = field(default_factory=list)
    loop_scope: dict[str, Any] | None = None

    def upstream_results(self) -> list[NodeResult]:
        """Results of this node's direct predecessors that succeeded, in edge order."""
        out: list[NodeResult] = []
        for pred_id in self.workflow.predecessor_ids(self.node.id):
            result = self.results.get(pred_id)
            if result is not None and result.status == NodeStatus.SUCCESS:
                out.append(result)
        return out
