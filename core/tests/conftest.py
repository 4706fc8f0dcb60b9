"""Shared fixtures for flowcore tests."""

import asyncio
from typing import Any

import pytest

from flowcore.config import EngineConfig
from flowcore.graph.executor import WorkflowEngine
from flowcore.graph.workflow import WorkflowConfig
from flowcore.llm.mock import MockLLMProvider
from flowcore.runtime.event_bus import ExecutionEventBus, reset_default_bus
from flowcore.storage.execution_store import InMemoryExecutionStore


class DelayedLLM(MockLLMProvider):
    """MockLLMProvider that sleeps before answering; delay looked up by prompt text."""

    def __init__(self, delays: dict[str, float] | None = None, default_delay: float = 0.0, **kwargs: Any):
        super().__init__(**kwargs)
        self.delays = delays or {}
        self.default_delay = default_delay

    async def complete(self, messages, *args, **kwargs):
        prompt = messages[0]["content"] if messages else ""
        await asyncio.sleep(self.delays.get(prompt, self.default_delay))
        return await super().complete(messages, *args, **kwargs)


@pytest.fixture(autouse=True)
def _fresh_default_bus():
    yield
    reset_default_bus()


@pytest.fixture
def store() -> InMemoryExecutionStore:
    return InMemoryExecutionStore()


@pytest.fixture
def event_bus() -> ExecutionEventBus:
    bus = ExecutionEventBus(state_ttl_s=5.0)
    yield bus
    bus.shutdown()


@pytest.fixture
def engine_config(tmp_path) -> EngineConfig:
    return EngineConfig(
        model="mock-model",
        api_key=None,
        default_node_timeout_s=10.0,
        output_dir=tmp_path / "outputs",
    )


@pytest.fixture
def make_engine(store, event_bus, engine_config):
    """Factory: make_engine(workflow_dict_or_config, llm=..., http_client=...)."""

    def _make(config: WorkflowConfig | dict, llm=None, **kwargs: Any) -> WorkflowEngine:
        return WorkflowEngine(
            kwargs.pop("workflow_id", "wf_test"),
            "org_test",
            "user_test",
            config,
            store=kwargs.pop("store", store),
            event_bus=event_bus,
            llm=llm if llm is not None else MockLLMProvider(),
            engine_config=kwargs.pop("engine_config", engine_config),
            **kwargs,
        )

    return _make


@pytest.fixture
def delayed_llm():
    """The DelayedLLM class, for tests that need a slow provider."""
    return DelayedLLM
