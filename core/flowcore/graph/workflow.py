"""
Workflow graph model.

A workflow is an immutable graph of typed nodes connected by edges:

- ``NodeConfig``: one unit of work; ``type`` selects the processor and
  ``config`` is the type-specific payload (opaque to the core loop)
- ``Edge``: directed connection, optionally tagged with a ``sourceHandle``
  ("true"/"false" on CONDITION, a case id/label on SWITCH, "body" on LOOP)
- ``WorkflowConfig``: nodes + edges + global variables + settings

The JSON form uses camelCase keys (``sourceHandle``, ``globalVariables``);
both camelCase and snake_case are accepted on input.

LOOP bodies are sub-graphs re-entered once per iteration. Body nodes are
either listed explicitly in ``config.bodyNodeIds`` or are everything
reachable from the loop's ``"body"`` handle. An edge from a body node back
to its loop node is a back-edge and is ignored for ordering and cycle
detection; any other cycle is a validation error.
"""

import hashlib
import heapq
import json
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, Field, field_validator

from flowcore.graph.errors import WorkflowValidationError

LOOP_BODY_HANDLE = "body"


class NodeType(StrEnum):
    """Every node type a workflow may contain."""

    INPUT = "INPUT"
    PROCESS = "PROCESS"
    CODE = "CODE"
    OUTPUT = "OUTPUT"
    CONDITION = "CONDITION"
    LOOP = "LOOP"
    SWITCH = "SWITCH"
    MERGE = "MERGE"
    HTTP = "HTTP"
    DATA = "DATA"
    IMAGE = "IMAGE"
    VIDEO = "VIDEO"
    AUDIO = "AUDIO"
    IMAGE_GEN = "IMAGE_GEN"
    NOTIFICATION = "NOTIFICATION"
    TRIGGER = "TRIGGER"
    GROUP = "GROUP"
    APPROVAL = "APPROVAL"


# Node types whose token usage counts toward the execution total
TOKEN_BEARING_TYPES = frozenset({NodeType.PROCESS, NodeType.CODE})


class NodeConfig(BaseModel):
    """A single node in a workflow graph."""

    id: str
    type: NodeType
    name: str
    config: dict[str, Any] = Field(default_factory=dict)
    position: dict[str, float] | None = None  # layout only

    model_config = {"extra": "allow", "populate_by_name": True}

    @field_validator("type", mode="before")
    @classmethod
    def _normalise_type(cls, value: Any) -> Any:
        if isinstance(value, str):
            return value.upper()
        return value


class Edge(BaseModel):
    """Directed connection between two nodes."""

    id: str
    source: str
    target: str
    source_handle: str | None = Field(default=None, alias="sourceHandle")
    target_handle: str | None = Field(default=None, alias="targetHandle")

    model_config = {"extra": "allow", "populate_by_name": True}


class WorkflowSettings(BaseModel):
    """Execution settings attached to a workflow."""

    enable_parallel_execution: bool | None = Field(default=None, alias="enableParallelExecution")
    timeout: float | None = None  # seconds, whole execution

    model_config = {"extra": "allow", "populate_by_name": True}


class WorkflowConfig(BaseModel):
    """
    An executable workflow: nodes, edges, global variables and settings.

    Treated as immutable by the engine.
    """

    nodes: list[NodeConfig] = Field(default_factory=list)
    edges: list[Edge] = Field(default_factory=list)
    global_variables: dict[str, Any] = Field(default_factory=dict, alias="globalVariables")
    version: int = 1
    settings: WorkflowSettings = Field(default_factory=WorkflowSettings)

    model_config = {"extra": "allow", "populate_by_name": True}

    # ---- lookups ----

    def get_node(self, node_id: str) -> NodeConfig | None:
        """Get a node by ID."""
        for node in self.nodes:
            if node.id == node_id:
                return node
        return None

    def find_node(self, name_or_id: str) -> NodeConfig | None:
        """Find a node by name first, then by ID."""
        for node in self.nodes:
            if node.name == name_or_id:
                return node
        return self.get_node(name_or_id)

    def incoming(self, node_id: str) -> list[Edge]:
        return [e for e in self.edges if e.target == node_id]

    def outgoing(self, node_id: str) -> list[Edge]:
        return [e for e in self.edges if e.source == node_id]

    def predecessor_ids(self, node_id: str) -> list[str]:
        return list(dict.fromkeys(e.source for e in self.incoming(node_id)))

    def successor_ids(self, node_id: str) -> list[str]:
        return list(dict.fromkeys(e.target for e in self.outgoing(node_id)))

    # ---- loop bodies ----

    def loop_body(self, loop_id: str) -> list[str]:
        """
        Node IDs forming the body of a LOOP node, in declaration order.

        Uses ``config.bodyNodeIds`` when present, otherwise everything
        reachable from the loop's ``"body"`` edges without passing back
        through the loop node itself.
        """
        loop = self.get_node(loop_id)
        if loop is None or loop.type != NodeType.LOOP:
            return []

        explicit = loop.config.get("bodyNodeIds")
        if explicit:
            wanted = set(explicit) - {loop_id}
            return [n.id for n in self.nodes if n.id in wanted]

        reached: set[str] = set()
        frontier = [
            e.target
            for e in self.outgoing(loop_id)
            if e.source_handle == LOOP_BODY_HANDLE and e.target != loop_id
        ]
        while frontier:
            current = frontier.pop()
            if current in reached or current == loop_id:
                continue
            reached.add(current)
            frontier.extend(self.successor_ids(current))
        return [n.id for n in self.nodes if n.id in reached]

    def loop_bodies(self) -> dict[str, list[str]]:
        return {n.id: self.loop_body(n.id) for n in self.nodes if n.type == NodeType.LOOP}

    def is_back_edge(self, edge: Edge) -> bool:
        """True for an edge from a loop body node back to its loop node."""
        target = self.get_node(edge.target)
        if target is None or target.type != NodeType.LOOP:
            return False
        return edge.source in self.loop_body(target.id)

    def scope_members(self, scope: list[str] | None = None) -> list[str]:
        """
        Nodes driven directly by a traversal over ``scope``.

        ``None`` means the whole workflow. Bodies of LOOP nodes inside the
        scope are excluded; they are run by their loop node.
        """
        scope_ids = [n.id for n in self.nodes] if scope is None else list(scope)
        scope_set = set(scope_ids)
        nested: set[str] = set()
        for node_id in scope_ids:
            node = self.get_node(node_id)
            if node is not None and node.type == NodeType.LOOP:
                nested.update(b for b in self.loop_body(node_id) if b in scope_set)
        return [n for n in scope_ids if n not in nested]

    # ---- ordering and validation ----

    def execution_order(self) -> list[str]:
        """
        Deterministic topological order of every node (Kahn's algorithm).

        Ties are broken by declaration order. Back-edges into LOOP nodes are
        ignored.

        Raises:
            WorkflowValidationError: if the graph has a cycle
        """
        position = {n.id: i for i, n in enumerate(self.nodes)}
        in_degree = {n.id: 0 for n in self.nodes}
        adjacency: dict[str, list[str]] = {n.id: [] for n in self.nodes}

        for edge in self.edges:
            if edge.source not in position or edge.target not in position:
                continue
            if self.is_back_edge(edge):
                continue
            adjacency[edge.source].append(edge.target)
            in_degree[edge.target] += 1

        heap = [(position[nid], nid) for nid, deg in in_degree.items() if deg == 0]
        heapq.heapify(heap)
        order: list[str] = []
        while heap:
            _, node_id = heapq.heappop(heap)
            order.append(node_id)
            for target in adjacency[node_id]:
                in_degree[target] -= 1
                if in_degree[target] == 0:
                    heapq.heappush(heap, (position[target], target))

        if len(order) != len(self.nodes):
            stuck = sorted(nid for nid, deg in in_degree.items() if deg > 0)
            raise WorkflowValidationError(
                f"Workflow contains a cycle involving nodes: {', '.join(stuck)}"
            )
        return order

    def validate_graph(self) -> None:
        """
        Check graph integrity before execution.

        Raises:
            WorkflowValidationError: listing every problem found
        """
        problems: list[str] = []

        seen: set[str] = set()
        for node in self.nodes:
            if node.id in seen:
                problems.append(f"Duplicate node id '{node.id}'")
            seen.add(node.id)

        names: dict[str, str] = {}
        for node in self.nodes:
            if node.name in names and names[node.name] != node.id:
                problems.append(f"Duplicate node name '{node.name}'")
            names[node.name] = node.id

        for edge in self.edges:
            if edge.source not in seen:
                problems.append(f"Edge '{edge.id}' references missing source node '{edge.source}'")
            if edge.target not in seen:
                problems.append(f"Edge '{edge.id}' references missing target node '{edge.target}'")
            if edge.source == edge.target:
                problems.append(f"Edge '{edge.id}' is a self-loop on '{edge.source}'")

        for node in self.nodes:
            if node.type != NodeType.LOOP:
                continue
            for node_id in node.config.get("bodyNodeIds") or []:
                if node_id not in seen:
                    problems.append(f"Loop '{node.id}' lists missing body node '{node_id}'")

        if not problems:
            try:
                self.execution_order()
            except WorkflowValidationError as e:
                problems.append(str(e))

        if problems:
            raise WorkflowValidationError(
                f"Invalid workflow: {'; '.join(problems)}", problems=problems
            )

    # ---- hashing ----

    def workflow_hash(self) -> str:
        """
        Content hash of the executable graph.

        Covers node ids, types, names and configs plus edge endpoints and
        handles. Layout (positions), global variables and edge ids are
        excluded.
        """
        canonical = {
            "nodes": sorted(
                (
                    {"id": n.id, "type": str(n.type), "name": n.name, "config": n.config}
                    for n in self.nodes
                ),
                key=lambda n: n["id"],
            ),
            "edges": sorted(
                (
                    {
                        "source": e.source,
                        "target": e.target,
                        "sourceHandle": e.source_handle,
                        "targetHandle": e.target_handle,
                    }
                    for e in self.edges
                ),
                key=lambda e: (e["source"], e["target"], e["sourceHandle"] or "", e["targetHandle"] or ""),
            ),
        }
        payload = json.dumps(canonical, sort_keys=True, separators=(",", ":"), default=str)
        return hashlib.sha256(payload.encode("utf-8")).hexdigest()
