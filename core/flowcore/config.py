"""Shared flowcore configuration utilities.

Centralises reading of ~/.flowcore/configuration.json so the CLI, the SSE
server and embedding applications resolve engine limits and LLM settings
the same way.
"""

import json
import os
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any

# ---------------------------------------------------------------------------
# Low-level config file access
# ---------------------------------------------------------------------------

FLOWCORE_CONFIG_FILE = Path.home() / ".flowcore" / "configuration.json"

DEFAULT_MODEL = "openai/gpt-4o-mini"

# Absolute ceiling on loop iterations; user configuration can lower it, never raise it
HARD_MAX_LOOP_ITERATIONS = 1000


def get_flowcore_config() -> dict[str, Any]:
    """Load configuration from ~/.flowcore/configuration.json."""
    if not FLOWCORE_CONFIG_FILE.exists():
        return {}
    try:
        with open(FLOWCORE_CONFIG_FILE, encoding="utf-8-sig") as f:
            return json.load(f)
    except (json.JSONDecodeError, OSError):
        return {}


# ---------------------------------------------------------------------------
# Derived helpers
# ---------------------------------------------------------------------------


def get_preferred_model() -> str:
    """Return the preferred LLM model string (e.g. 'openai/gpt-4o-mini')."""
    llm = get_flowcore_config().get("llm", {})
    if llm.get("provider") and llm.get("model"):
        return f"{llm['provider']}/{llm['model']}"
    return DEFAULT_MODEL


def get_api_key() -> str | None:
    """Return the API key from the environment variable named in configuration."""
    llm = get_flowcore_config().get("llm", {})
    api_key_env_var = llm.get("api_key_env_var")
    if api_key_env_var:
        return os.environ.get(api_key_env_var)
    return None


def get_storage_path() -> Path:
    """Return the directory used by the file-backed execution store."""
    configured = get_flowcore_config().get("storage_path")
    if configured:
        return Path(configured).expanduser()
    return Path.home() / ".flowcore" / "executions"


# ---------------------------------------------------------------------------
# EngineConfig - limits and defaults for WorkflowEngine
# ---------------------------------------------------------------------------


@dataclass
class EngineConfig:
    """Engine limits, loaded from the ``engine`` section of the config file."""

    max_loop_iterations: int = HARD_MAX_LOOP_ITERATIONS
    stuck_timeout_ms: int = 600_000
    heartbeat_interval_s: float = 15.0
    default_node_timeout_s: float = 300.0
    enable_parallel_execution: bool = False
    checkpoint_every_node: bool = False
    event_state_ttl_s: float = 60.0
    max_tracked_executions: int = 1000
    model: str = field(default_factory=get_preferred_model)
    api_key: str | None = field(default_factory=get_api_key)
    output_dir: Path = field(default_factory=lambda: Path.home() / ".flowcore" / "outputs")

    def __post_init__(self) -> None:
        self.max_loop_iterations = min(self.max_loop_iterations, HARD_MAX_LOOP_ITERATIONS)
        self.output_dir = Path(self.output_dir)

    @classmethod
    def load(cls, **overrides: Any) -> "EngineConfig":
        """Build from the config file's ``engine`` section, then apply overrides."""
        known = {f.name for f in fields(cls)}
        values = {
            k: v for k, v in get_flowcore_config().get("engine", {}).items() if k in known
        }
        values.update(overrides)
        return cls(**values)
