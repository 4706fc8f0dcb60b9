"""
Tests for the SSE server: real aiohttp server on an ephemeral port,
driven with an aiohttp client session.
"""

import contextlib
import json

import aiohttp
import pytest

from flowcore.graph.executor import WorkflowEngine
from flowcore.graph.workflow import WorkflowConfig
from flowcore.llm.mock import MockLLMProvider
from flowcore.runtime.execution_manager import ExecutionManager
from flowcore.runtime.sse_server import SSEServer, SSEServerConfig
from flowcore.schemas.execution import ExecutionStatus

WORKFLOW = WorkflowConfig.model_validate(
    {
        "nodes": [
            {"id": "input", "type": "INPUT", "name": "Input"},
            {"id": "process", "type": "PROCESS", "name": "Summarize", "config": {"userPrompt": "{{Input.text}}"}},
            {"id": "output", "type": "OUTPUT", "name": "Output", "config": {"prompt": "{{Summarize}}"}},
        ],
        "edges": [
            {"id": "e1", "source": "input", "target": "process"},
            {"id": "e2", "source": "process", "target": "output"},
        ],
    }
)


@contextlib.asynccontextmanager
async def serve(store, event_bus, engine_config, llm):
    def engine_factory(config, workflow_id):
        return WorkflowEngine(
            workflow_id,
            "org_test",
            "user_test",
            config,
            store=store,
            event_bus=event_bus,
            llm=llm,
            engine_config=engine_config,
        )

    manager = ExecutionManager(store, event_bus, engine_factory=engine_factory)
    server = SSEServer(
        store,
        event_bus,
        manager,
        {"wf_test": WORKFLOW},
        SSEServerConfig(port=0, heartbeat_interval_s=0.05),
    )
    await server.start()
    try:
        async with aiohttp.ClientSession(base_url=f"http://127.0.0.1:{server.port}") as session:
            yield session, manager
    finally:
        await manager.shutdown()
        await server.stop()


def data_frames(body: str) -> list[dict]:
    return [json.loads(line[len("data: "):]) for line in body.splitlines() if line.startswith("data: ")]


async def _start(session, payload=None) -> str:
    async with session.post("/workflows/wf_test/executions", json=payload or {"text": "hi"}) as resp:
        assert resp.status == 202
        return (await resp.json())["executionId"]


class TestStartAndGet:
    @pytest.mark.asyncio
    async def test_start_then_fetch_record(self, store, event_bus, engine_config):
        async with serve(store, event_bus, engine_config, MockLLMProvider(responses=["short"])) as (session, manager):
            execution_id = await _start(session)
            result = await manager.wait(execution_id, timeout=5)
            assert result.status == ExecutionStatus.COMPLETED

            async with session.get(f"/executions/{execution_id}") as resp:
                assert resp.status == 200
                body = await resp.json()

        assert body["execution"]["status"] == "COMPLETED"
        assert body["execution"]["output"]["result"] == "short"
        assert body["execution"]["workflowId"] == "wf_test"
        assert [log["nodeId"] for log in body["logs"]] == ["input", "process", "output"]

    @pytest.mark.asyncio
    async def test_start_rejects_bad_requests(self, store, event_bus, engine_config):
        async with serve(store, event_bus, engine_config, MockLLMProvider()) as (session, _):
            async with session.post("/workflows/unknown/executions", json={}) as resp:
                assert resp.status == 404
            async with session.post("/workflows/wf_test/executions", data=b"{broken") as resp:
                assert resp.status == 400
            async with session.post("/workflows/wf_test/executions", json=[1, 2]) as resp:
                assert resp.status == 400
                assert (await resp.json())["error"] == "Request body must be a JSON object"

    @pytest.mark.asyncio
    async def test_unknown_execution(self, store, event_bus, engine_config):
        async with serve(store, event_bus, engine_config, MockLLMProvider()) as (session, _):
            for path in ("/executions/exec_missing", "/executions/exec_missing/stream"):
                async with session.get(path) as resp:
                    assert resp.status == 404


class TestStream:
    @pytest.mark.asyncio
    async def test_live_stream_ends_with_terminal_event(self, store, event_bus, engine_config, delayed_llm):
        llm = delayed_llm(default_delay=0.3)
        async with serve(store, event_bus, engine_config, llm) as (session, _):
            execution_id = await _start(session)
            async with session.get(f"/executions/{execution_id}/stream") as resp:
                assert resp.status == 200
                assert resp.headers["Content-Type"].startswith("text/event-stream")
                body = await resp.text()

        frames = data_frames(body)
        assert frames[-1]["type"] == "execution_complete"
        assert frames[-1]["progress"] == 100
        assert any(f["type"] == "node_complete" and f.get("nodeId") == "process" for f in frames)
        assert ": heartbeat" in body

    @pytest.mark.asyncio
    async def test_stream_of_finished_execution(self, store, event_bus, engine_config):
        llm = MockLLMProvider(responses=[RuntimeError("provider down")])
        async with serve(store, event_bus, engine_config, llm) as (session, manager):
            execution_id = await _start(session)
            await manager.wait(execution_id, timeout=5)

            async with session.get(f"/executions/{execution_id}/stream") as resp:
                body = await resp.text()

        (frame,) = data_frames(body)
        assert frame["type"] == "execution_error"
        assert frame["error"] == 'Node "Summarize" failed: provider down'


class TestResumeAndCancel:
    @pytest.mark.asyncio
    async def test_resume_flow(self, store, event_bus, engine_config):
        llm = MockLLMProvider(responses=[RuntimeError("provider down")], default_response="recovered")
        async with serve(store, event_bus, engine_config, llm) as (session, manager):
            failed_id = await _start(session)
            await manager.wait(failed_id, timeout=5)

            async with session.get(f"/executions/{failed_id}/resume") as resp:
                status = await resp.json()
            assert status["canResume"] is True
            assert status["checkpointInfo"]["failedNodeId"] == "process"

            async with session.post(f"/executions/{failed_id}/resume") as resp:
                assert resp.status == 202
                body = await resp.json()
            assert body["resumedFromId"] == failed_id
            result = await manager.wait(body["executionId"], timeout=5)
            assert result.status == ExecutionStatus.COMPLETED
            assert result.output["result"] == "recovered"

            async with session.post(f"/executions/{failed_id}/resume") as resp:
                assert resp.status == 400
                assert "already been resumed" in (await resp.json())["error"]

    @pytest.mark.asyncio
    async def test_cancel_running_execution(self, store, event_bus, engine_config, delayed_llm):
        async with serve(store, event_bus, engine_config, delayed_llm(default_delay=5)) as (session, _):
            execution_id = await _start(session)

            async with session.post(f"/executions/{execution_id}/cancel") as resp:
                assert resp.status == 200
                assert await resp.json() == {"cancelled": True}

            async with session.post(f"/executions/{execution_id}/cancel") as resp:
                assert resp.status == 409
                assert (await resp.json())["status"] == "CANCELLED"

        execution = await store.get_execution(execution_id)
        assert execution.status == ExecutionStatus.CANCELLED
        assert execution.error == "Execution cancelled"
