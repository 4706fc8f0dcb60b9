"""Workflow graphs: configuration, node results, variable resolution and branching."""

from flowcore.graph.branching import EdgeState, MergeSettings
from flowcore.graph.errors import (
    ErrorAnalyzer,
    ExecutionNotFoundError,
    LoopLimitExceededError,
    NodeExecutionError,
    NodeTimeoutError,
    ResumeError,
    UnresolvedReferenceError,
    WorkflowError,
    WorkflowValidationError,
)
from flowcore.graph.node import NodeContext, NodeOutput, NodeResult, NodeStatus
from flowcore.graph.variables import NOT_EXECUTED, VariableResolver
from flowcore.graph.workflow import Edge, NodeConfig, NodeType, WorkflowConfig, WorkflowSettings

__all__ = [
    "NOT_EXECUTED",
    "Edge",
    "EdgeState",
    "ErrorAnalyzer",
    "ExecutionNotFoundError",
    "LoopLimitExceededError",
    "MergeSettings",
    "NodeConfig",
    "NodeContext",
    "NodeExecutionError",
    "NodeOutput",
    "NodeResult",
    "NodeStatus",
    "NodeTimeoutError",
    "NodeType",
    "ResumeError",
    "UnresolvedReferenceError",
    "VariableResolver",
    "WorkflowConfig",
    "WorkflowError",
    "WorkflowSettings",
    "WorkflowValidationError",
]
