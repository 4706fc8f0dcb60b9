"""
Error taxonomy for workflow execution.

Node processors raise these (or any other exception); the node dispatcher
turns them into ``error`` NodeResults so nothing a node does can crash the
orchestrator. Graph-integrity and resume errors are raised to callers
before an execution ever reaches RUNNING.

``ErrorAnalyzer`` turns a raw failure message into something a person can
act on: a stable code, a friendly message, suggestions and a retryable flag.
"""

from dataclasses import asdict, dataclass, field
from typing import Any


class WorkflowError(Exception):
    """Base class for engine errors."""


class WorkflowValidationError(WorkflowError):
    """The workflow graph is malformed (missing node refs, cycles, duplicate ids)."""

    def __init__(self, message: str, problems: list[str] | None = None):
        super().__init__(message)
        self.problems = problems or [message]


class UnresolvedReferenceError(WorkflowError):
    """A ``{{Node.field}}`` reference names no node, loop variable or global."""

    def __init__(self, reference: str):
        super().__init__(f"Unresolved variable reference: {reference}")
        self.reference = reference


class NodeExecutionError(WorkflowError):
    """A node failed in an expected way (bad config, provider failure, ...)."""


class NodeTimeoutError(NodeExecutionError):
    """A node did not finish within its timeout."""


class LoopLimitExceededError(NodeExecutionError):
    """A LOOP node would exceed its iteration cap."""


class ResumeError(WorkflowError):
    """A resume request was refused; ``reason`` is user-facing."""

    def __init__(self, reason: str):
        super().__init__(reason)
        self.reason = reason


class ExecutionNotFoundError(WorkflowError):
    """No execution record with the given id."""


# ---------------------------------------------------------------------------
# Error analysis
# ---------------------------------------------------------------------------


@dataclass
class ErrorAnalysis:
    """Diagnosis of a node failure."""

    code: str
    friendly_message: str
    suggestions: list[str] = field(default_factory=list)
    is_retryable: bool = False

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


_LLM_NODE_TYPES = {"PROCESS", "IMAGE_GEN", "DATA", "IMAGE", "VIDEO", "AUDIO"}


class ErrorAnalyzer:
    """Keyword-based classifier for node failure messages."""

    LLM_KEYWORDS = ("api key", "auth", "rate limit", "quota", "model", "token", "context length")
    NETWORK_KEYWORDS = ("connect", "connection", "network", "dns", "econnrefused", "unreachable")

    @classmethod
    def analyze(cls, error: str | BaseException, node_type: str | None = None) -> ErrorAnalysis:
        message = str(error)
        lower = message.lower()

        if "unresolved variable reference" in lower:
            return ErrorAnalysis(
                code="VARIABLE_ERROR",
                friendly_message="A variable reference could not be resolved",
                suggestions=[
                    "Check that the referenced node name is spelled exactly as in the graph",
                    "Make sure the referenced node runs before this one",
                ],
            )

        if node_type == "CODE" or "traceback" in lower:
            return cls._analyze_code(message, lower)

        if node_type in _LLM_NODE_TYPES or any(k in lower for k in cls.LLM_KEYWORDS):
            analysis = cls._analyze_llm(lower)
            if analysis is not None:
                return analysis

        if "timeout" in lower or "timed out" in lower:
            return ErrorAnalysis(
                code="TIMEOUT",
                friendly_message="The operation took too long and was aborted",
                suggestions=["Increase the node timeout", "Check the responsiveness of the remote service"],
                is_retryable=True,
            )

        if any(k in lower for k in cls.NETWORK_KEYWORDS) or lower.startswith("http 5"):
            return ErrorAnalysis(
                code="NETWORK_ERROR",
                friendly_message="A network request failed",
                suggestions=["Check the URL and network connectivity", "Retry later"],
                is_retryable=True,
            )

        if "required" in lower or "invalid" in lower or "missing" in lower:
            return ErrorAnalysis(
                code="VALIDATION_ERROR",
                friendly_message="The node configuration or input is invalid",
                suggestions=["Review the node configuration and the workflow input"],
            )

        return ErrorAnalysis(
            code="UNKNOWN_ERROR",
            friendly_message=message or "Unknown error",
            suggestions=["Inspect the node logs for details"],
        )

    @staticmethod
    def _analyze_llm(lower: str) -> ErrorAnalysis | None:
        if "api key" in lower or "auth" in lower or "credential" in lower or "401" in lower:
            return ErrorAnalysis(
                code="AUTH_ERROR",
                friendly_message="The AI provider rejected the credentials",
                suggestions=["Check that the API key is set and valid"],
            )
        if "rate limit" in lower or "too many requests" in lower or "429" in lower:
            return ErrorAnalysis(
                code="RATE_LIMIT",
                friendly_message="The AI provider is rate limiting requests",
                suggestions=["Wait a moment and resume the execution"],
                is_retryable=True,
            )
        if "quota" in lower or "insufficient" in lower:
            return ErrorAnalysis(
                code="QUOTA_EXCEEDED",
                friendly_message="The AI provider quota is exhausted",
                suggestions=["Top up the provider account or switch provider"],
            )
        if "context length" in lower or "max tokens" in lower or "maximum context" in lower:
            return ErrorAnalysis(
                code="CONTEXT_LIMIT",
                friendly_message="The prompt is longer than the model allows",
                suggestions=["Shorten the prompt or knowledge items", "Use a model with a larger context"],
            )
        if "timeout" in lower or "timed out" in lower:
            return ErrorAnalysis(
                code="TIMEOUT",
                friendly_message="The AI provider did not answer in time",
                suggestions=["Retry, or lower max tokens"],
                is_retryable=True,
            )
        return None

    @staticmethod
    def _analyze_code(message: str, lower: str) -> ErrorAnalysis:
        analysis = ErrorAnalysis(
            code="CODE_EXECUTION_ERROR",
            friendly_message="The code node raised an error",
            suggestions=["Check the script against the shape of `inputs`"],
        )
        if "nameerror" in lower or "is not defined" in lower:
            analysis.suggestions = ["A name is used before it is defined"]
        elif "syntaxerror" in lower:
            analysis.suggestions = ["The script has a syntax error"]
        elif "typeerror" in lower or "keyerror" in lower:
            analysis.suggestions = ["Check the types and keys of the values read from `inputs`"]
        elif "timeout" in lower or "timed out" in lower:
            analysis.code = "CODE_TIMEOUT"
            analysis.friendly_message = "The code node ran past its time limit"
            analysis.suggestions = ["Look for unbounded loops", "Raise the node timeout"]
            analysis.is_retryable = True
        return analysis
