"""
Structured logging with trace context for workflow executions.

Every log line written while an execution is running carries the
execution's identifiers without the caller passing them around:

    WorkflowEngine.execute()  -> sets trace_id, execution_id, workflow_id
        | (ContextVar propagates through awaits and spawned tasks)
    node dispatch             -> adds node_id / node_type
        |
    processor code            -> logger.info("...") gets all of the above

Two output modes:
- JSON (one object per line) for production and log shippers
- colourised human-readable lines for local runs
"""

import json
import logging
import os
import re
from contextvars import ContextVar
from datetime import UTC, datetime
from typing import Any

trace_context: ContextVar[dict[str, Any] | None] = ContextVar("trace_context", default=None)

ANSI_ESCAPE_PATTERN = re.compile(r"\x1b\[[0-9;]*m")

# Optional attributes picked up from ``logger.x(..., extra={...})``
_EXTRA_FIELDS = ("event", "node_id", "latency_ms", "tokens_used", "model", "status")


def strip_ansi_codes(text: str) -> str:
    """Remove ANSI escape codes from text."""
    return ANSI_ESCAPE_PATTERN.sub("", text)


class StructuredFormatter(logging.Formatter):
    """JSON formatter: standard fields, trace context, then ``extra`` fields."""

    def format(self, record: logging.LogRecord) -> str:
        context = trace_context.get() or {}

        log_entry: dict[str, Any] = {
            "timestamp": datetime.now(UTC).isoformat(),
            "level": record.levelname.lower(),
            "logger": record.name,
            "message": strip_ansi_codes(record.getMessage()),
        }
        log_entry.update(context)

        for name in _EXTRA_FIELDS:
            value = getattr(record, name, None)
            if value is not None:
                log_entry[name] = strip_ansi_codes(value) if isinstance(value, str) else value

        if record.exc_info:
            log_entry["exception"] = strip_ansi_codes(self.formatException(record.exc_info))

        return json.dumps(log_entry, default=str)


class HumanReadableFormatter(logging.Formatter):
    """Colourised single-line formatter with a short execution/node prefix."""

    COLORS = {
        "DEBUG": "\033[36m",
        "INFO": "\033[32m",
        "WARNING": "\033[33m",
        "ERROR": "\033[31m",
        "CRITICAL": "\033[35m",
    }
    RESET = "\033[0m"

    def format(self, record: logging.LogRecord) -> str:
        context = trace_context.get() or {}

        prefix_parts = []
        if context.get("execution_id"):
            prefix_parts.append(f"exec:{str(context['execution_id'])[-8:]}")
        if context.get("workflow_id"):
            prefix_parts.append(f"wf:{context['workflow_id']}")
        if context.get("node_id"):
            prefix_parts.append(f"node:{context['node_id']}")
        context_prefix = f"[{' | '.join(prefix_parts)}] " if prefix_parts else ""

        color = self.COLORS.get(record.levelname, "")
        level = f"{record.levelname:<8}"

        event = getattr(record, "event", None)
        event_suffix = f" [{event}]" if event is not None else ""

        message = f"{color}[{level}]{self.RESET} {context_prefix}{record.getMessage()}{event_suffix}"
        if record.exc_info:
            message = f"{message}\n{self.formatException(record.exc_info)}"
        return message


def configure_logging(
    level: str = "INFO",
    format: str = "auto",  # "json", "human", or "auto"
) -> None:
    """
    Configure root logging once at process start (CLI, server, test fixture).

    Args:
        level: Log level name (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        format: "json", "human", or "auto". Auto selects JSON when
            LOG_FORMAT=json or ENV=production, otherwise human.
    """
    if format == "auto":
        log_format_env = os.getenv("LOG_FORMAT", "").lower()
        env = os.getenv("ENV", "development").lower()
        format = "json" if log_format_env == "json" or env == "production" else "human"

    if format == "json":
        formatter: logging.Formatter = StructuredFormatter()
        _disable_third_party_colors()
    else:
        formatter = HumanReadableFormatter()

    handler = logging.StreamHandler()
    handler.setFormatter(formatter)

    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    root_logger.addHandler(handler)
    root_logger.setLevel(level.upper())

    if format == "json":
        # Route chatty client libraries through the root JSON handler
        for logger_name in ("LiteLLM", "httpcore", "httpx", "aiohttp.access"):
            third_party = logging.getLogger(logger_name)
            third_party.handlers.clear()
            third_party.propagate = True


def _disable_third_party_colors() -> None:
    os.environ["NO_COLOR"] = "1"
    os.environ["FORCE_COLOR"] = "0"

    import litellm

    litellm.suppress_debug_info = True


def set_trace_context(**kwargs: Any) -> None:
    """
    Merge fields into the current trace context.

    The context is a ContextVar, so values set inside a task are visible to
    everything that task awaits and to tasks it creates, but never leak into
    sibling executions.
    """
    current = trace_context.get() or {}
    trace_context.set({**current, **kwargs})


def get_trace_context() -> dict:
    """Return a copy of the current trace context (empty dict if unset)."""
    return dict(trace_context.get() or {})


def clear_trace_context() -> None:
    """Reset the trace context (mostly for tests)."""
    trace_context.set(None)
