"""Tests for the stuck-execution sweep."""

import asyncio
from datetime import datetime, timedelta

import pytest

from flowcore.graph.node import NodeResult, NodeStatus
from flowcore.runtime.maintenance import MaintenanceLoop, cleanup_stuck_executions, stuck_error_message
from flowcore.schemas.checkpoint import Checkpoint
from flowcore.schemas.execution import Execution, ExecutionStatus

NOW = datetime(2026, 3, 1, 12, 0, 0)


async def _running(store, heartbeat_minutes_ago: float, **fields) -> Execution:
    beat = NOW - timedelta(minutes=heartbeat_minutes_ago)
    return await store.create_execution(
        Execution(
            workflow_id="wf",
            status=ExecutionStatus.RUNNING,
            created_at=beat,
            started_at=beat,
            heartbeat_at=beat,
            **fields,
        )
    )


def test_stuck_error_message():
    assert stuck_error_message(600_000) == (
        "Execution timed out: no progress for more than 10 minutes (process may have crashed)"
    )


class TestCleanup:
    @pytest.mark.asyncio
    async def test_stale_execution_is_failed(self, store):
        stale = await _running(store, heartbeat_minutes_ago=11)

        swept = await cleanup_stuck_executions(store, now=NOW)

        assert swept == [stale.id]
        execution = await store.get_execution(stale.id)
        assert execution.status == ExecutionStatus.FAILED
        assert execution.error == stuck_error_message(600_000)
        assert execution.completed_at == NOW
        assert execution.can_resume is False

    @pytest.mark.asyncio
    async def test_recent_heartbeat_is_left_alone(self, store):
        fresh = await _running(store, heartbeat_minutes_ago=2)

        assert await cleanup_stuck_executions(store, now=NOW) == []
        assert (await store.get_execution(fresh.id)).status == ExecutionStatus.RUNNING

    @pytest.mark.asyncio
    async def test_terminal_executions_are_ignored(self, store):
        old = NOW - timedelta(hours=5)
        done = await store.create_execution(
            Execution(workflow_id="wf", status=ExecutionStatus.COMPLETED, created_at=old, heartbeat_at=old)
        )
        assert await cleanup_stuck_executions(store, now=NOW) == []
        assert (await store.get_execution(done.id)).status == ExecutionStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_saved_progress_stays_resumable(self, store):
        result = NodeResult(node_id="a", node_name="A", node_type="INPUT", status=NodeStatus.SUCCESS)
        stale = await _running(
            store,
            heartbeat_minutes_ago=30,
            checkpoint=Checkpoint(workflow_hash="h", completed_nodes={"a": result}),
        )

        await cleanup_stuck_executions(store, now=NOW)

        execution = await store.get_execution(stale.id)
        assert execution.status == ExecutionStatus.FAILED
        assert execution.can_resume is True

    @pytest.mark.asyncio
    async def test_custom_timeout(self, store):
        stale = await _running(store, heartbeat_minutes_ago=2)

        swept = await cleanup_stuck_executions(store, timeout_ms=60_000, now=NOW)

        assert swept == [stale.id]
        assert "more than 1 minutes" in (await store.get_execution(stale.id)).error


class TestMaintenanceLoop:
    @pytest.mark.asyncio
    async def test_loop_sweeps_periodically(self, store):
        stale = await store.create_execution(
            Execution(
                workflow_id="wf",
                status=ExecutionStatus.RUNNING,
                heartbeat_at=datetime.now() - timedelta(hours=1),
            )
        )
        loop = MaintenanceLoop(store, interval_s=0.05)
        loop.start()
        assert loop.is_running

        for _ in range(40):
            if (await store.get_execution(stale.id)).status == ExecutionStatus.FAILED:
                break
            await asyncio.sleep(0.05)

        await loop.stop()
        assert not loop.is_running
        assert (await store.get_execution(stale.id)).status == ExecutionStatus.FAILED

    @pytest.mark.asyncio
    async def test_stop_without_start(self, store):
        await MaintenanceLoop(store).stop()


class TestSweepAgainstLiveEngine:
    @pytest.mark.asyncio
    async def test_swept_execution_stays_failed_after_engine_finishes(self, make_engine, delayed_llm, store):
        workflow = {
            "nodes": [
                {"id": "input", "type": "INPUT", "name": "Input", "config": {}},
                {"id": "slow", "type": "PROCESS", "name": "Slow", "config": {"userPrompt": "slow"}},
            ],
            "edges": [{"id": "input->slow", "source": "input", "target": "slow"}],
        }
        engine = make_engine(workflow, llm=delayed_llm(default_delay=0.4))
        execution = await engine.create_execution({})
        run = asyncio.create_task(engine.execute({}, execution=execution))

        for _ in range(40):
            if (await store.get_execution(execution.id)).status == ExecutionStatus.RUNNING:
                break
            await asyncio.sleep(0.01)
        swept = await cleanup_stuck_executions(store, now=datetime.now() + timedelta(hours=1))
        result = await run

        assert swept == [execution.id]
        assert result.status == ExecutionStatus.FAILED
        assert result.error == stuck_error_message(600_000)
        stored = await store.get_execution(execution.id)
        assert stored.status == ExecutionStatus.FAILED
        assert stored.error == stuck_error_message(600_000)
