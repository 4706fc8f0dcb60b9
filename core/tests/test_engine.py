"""
Tests for WorkflowEngine execution paths: linear runs, branching, merge
joins, loops, failures, timeouts and orchestration faults.
"""

import asyncio
import dataclasses

import pytest

from flowcore.graph.executor import INTERNAL_ERROR_PREFIX
from flowcore.graph.node import NodeStatus
from flowcore.llm.mock import MockLLMProvider
from flowcore.runtime.event_bus import EventType
from flowcore.schemas.execution import ExecutionStatus
from flowcore.storage.execution_store import FileExecutionStore


def _node(node_id: str, node_type: str, name: str | None = None, **config) -> dict:
    return {"id": node_id, "type": node_type, "name": name or node_id.title(), "config": config}


def _edge(source: str, target: str, handle: str | None = None) -> dict:
    edge = {"id": f"{source}->{target}", "source": source, "target": target}
    if handle:
        edge["sourceHandle"] = handle
    return edge


def linear_workflow() -> dict:
    return {
        "nodes": [
            _node("input", "INPUT", "Input"),
            _node("process", "PROCESS", "Summarize", userPrompt="Summarize: {{Input.text}}"),
            _node("output", "OUTPUT", "Output", prompt="{{Summarize}}"),
        ],
        "edges": [_edge("input", "process"), _edge("process", "output")],
    }


def branching_workflow(**merge_config) -> dict:
    return {
        "nodes": [
            _node("input", "INPUT"),
            _node(
                "check",
                "CONDITION",
                "Check",
                conditions=[{"variable": "{{input.value}}", "operator": "equals", "value": "A"}],
            ),
            _node("a", "PROCESS", "Process A", userPrompt="path A"),
            _node("b", "PROCESS", "Process B", userPrompt="path B"),
            _node("after_b", "PROCESS", "After B", userPrompt="after B"),
            _node("merge", "MERGE", "Merge", **merge_config),
            _node("output", "OUTPUT", "Output", format="json"),
        ],
        "edges": [
            _edge("input", "check"),
            _edge("check", "a", "true"),
            _edge("check", "b", "false"),
            _edge("b", "after_b"),
            _edge("a", "merge"),
            _edge("after_b", "merge"),
            _edge("merge", "output"),
        ],
    }


def fan_out_workflow(merge_config: dict, parallel: bool = True) -> dict:
    return {
        "nodes": [
            _node("input", "INPUT"),
            _node("fast", "PROCESS", "Fast", userPrompt="fast"),
            _node("slow", "PROCESS", "Slow", userPrompt="slow"),
            _node("merge", "MERGE", "Merge", **merge_config),
        ],
        "edges": [
            _edge("input", "fast"),
            _edge("input", "slow"),
            _edge("fast", "merge"),
            _edge("slow", "merge"),
        ],
        "settings": {"enableParallelExecution": parallel},
    }


# === LINEAR ===


class TestLinearWorkflow:
    @pytest.mark.asyncio
    async def test_completes_with_output_from_output_node(self, make_engine, store):
        llm = MockLLMProvider(responses=["a short summary"])
        engine = make_engine(linear_workflow(), llm=llm)

        result = await engine.execute({"text": "hi"})

        assert result.status == ExecutionStatus.COMPLETED
        assert result.success
        assert {r.status for r in result.node_results.values()} == {NodeStatus.SUCCESS}
        assert result.output["result"] == "a short summary"
        assert llm.calls[0]["messages"][0]["content"] == "Summarize: hi"

        execution = await store.get_execution(result.execution_id)
        assert execution.status == ExecutionStatus.COMPLETED
        assert execution.output == result.output
        assert execution.total_tokens == 15
        assert execution.prompt_tokens == 10
        assert execution.completion_tokens == 5
        assert execution.started_at is not None and execution.completed_at is not None
        assert execution.checkpoint is None
        assert execution.can_resume is False

        logs = await store.list_logs(result.execution_id)
        assert [log.node_id for log in logs] == ["input", "process", "output"]
        assert [log.sequence for log in logs] == [1, 2, 3]

    @pytest.mark.asyncio
    async def test_input_is_redacted_in_record(self, make_engine, store):
        engine = make_engine(linear_workflow())
        result = await engine.execute({"text": "hi", "apiKey": "sk-123"})

        execution = await store.get_execution(result.execution_id)
        assert execution.input == {"text": "hi", "apiKey": "[REDACTED]"}
        # Nodes still see the real payload
        assert result.node_results["input"].data["apiKey"] == "sk-123"

    @pytest.mark.asyncio
    async def test_events_in_order(self, make_engine, event_bus):
        engine = make_engine(linear_workflow())
        execution = await engine.create_execution({"text": "hi"})

        events = []

        async def on_event(event):
            events.append(event)

        event_bus.subscribe(execution.id, on_event)
        await engine.execute({"text": "hi"}, execution=execution)

        assert [e.type for e in events] == [
            EventType.NODE_START,
            EventType.NODE_COMPLETE,
            EventType.NODE_START,
            EventType.NODE_COMPLETE,
            EventType.NODE_START,
            EventType.NODE_COMPLETE,
            EventType.EXECUTION_COMPLETE,
        ]
        assert events[-1].progress == 100
        assert events[1].to_dict()["completedNodes"] == 1
        assert events[3].node_name == "Summarize"

    @pytest.mark.asyncio
    async def test_file_store_round_trip(self, make_engine, tmp_path):
        store = FileExecutionStore(tmp_path / "store")
        engine = make_engine(linear_workflow(), store=store)

        result = await engine.execute({"text": "hi"})

        execution = await store.get_execution(result.execution_id)
        assert execution.status == ExecutionStatus.COMPLETED
        assert len(await store.list_logs(result.execution_id)) == 3

    @pytest.mark.asyncio
    async def test_final_output_without_output_node(self, make_engine):
        workflow = {
            "nodes": [_node("input", "INPUT"), _node("p", "PROCESS", "P", userPrompt="x")],
            "edges": [_edge("input", "p")],
        }
        result = await make_engine(workflow, llm=MockLLMProvider(responses=["last"])).execute({})
        assert result.output == {"result": "last", "model": "mock-model"}


# === BRANCHING ===


class TestBranching:
    @pytest.mark.asyncio
    async def test_true_branch_runs_false_branch_skipped(self, make_engine):
        llm = MockLLMProvider(default_response="from A")
        result = await make_engine(branching_workflow(), llm=llm).execute({"value": "A"})

        assert result.status == ExecutionStatus.COMPLETED
        statuses = {nid: r.status for nid, r in result.node_results.items()}
        assert statuses["a"] == NodeStatus.SUCCESS
        assert statuses["b"] == NodeStatus.SKIPPED
        assert statuses["after_b"] == NodeStatus.SKIPPED
        assert statuses["merge"] == NodeStatus.SUCCESS

        merge = result.node_results["merge"].data
        assert merge["result"] == "from A"
        assert merge["_merge"]["successfulBranches"] == 1
        assert merge["_merge"]["skippedBranches"] == 1
        assert len(llm.calls) == 1

    @pytest.mark.asyncio
    async def test_false_branch(self, make_engine):
        llm = MockLLMProvider(default_response="from B")
        result = await make_engine(branching_workflow(), llm=llm).execute({"value": "other"})

        assert result.node_results["a"].status == NodeStatus.SKIPPED
        assert result.node_results["b"].status == NodeStatus.SUCCESS
        assert result.node_results["after_b"].status == NodeStatus.SUCCESS
        assert result.node_results["merge"].status == NodeStatus.SUCCESS

    @pytest.mark.asyncio
    async def test_branch_selection_is_deterministic(self, make_engine):
        for _ in range(3):
            result = await make_engine(branching_workflow()).execute({"value": "A"})
            skipped = {nid for nid, r in result.node_results.items() if r.status == NodeStatus.SKIPPED}
            errored = {nid for nid, r in result.node_results.items() if r.status == NodeStatus.ERROR}
            assert skipped == {"b", "after_b"}
            assert errored == set()

    @pytest.mark.asyncio
    async def test_skipped_nodes_are_logged(self, make_engine, store):
        result = await make_engine(branching_workflow()).execute({"value": "A"})
        logs = await store.list_logs(result.execution_id)
        skipped = [log for log in logs if log.status == "skipped"]
        assert {log.node_id for log in skipped} == {"b", "after_b"}
        assert skipped[0].output["reason"] == "branch not taken"

    @pytest.mark.asyncio
    async def test_switch_routes_to_matching_case(self, make_engine):
        workflow = {
            "nodes": [
                _node("input", "INPUT"),
                _node(
                    "route",
                    "SWITCH",
                    "Route",
                    switchVariable="{{input.tier}}",
                    cases=[
                        {"id": "gold", "label": "Gold", "value": "gold"},
                        {"id": "other", "label": "Other", "isDefault": True},
                    ],
                ),
                _node("vip", "PROCESS", "Vip", userPrompt="vip"),
                _node("std", "PROCESS", "Std", userPrompt="std"),
            ],
            "edges": [
                _edge("input", "route"),
                _edge("route", "vip", "gold"),
                _edge("route", "std", "default"),
            ],
        }
        result = await make_engine(workflow).execute({"tier": "bronze"})
        assert result.node_results["route"].data["isDefault"] is True
        assert result.node_results["vip"].status == NodeStatus.SKIPPED
        assert result.node_results["std"].status == NodeStatus.SUCCESS


# === MERGE ===


class TestMerge:
    @pytest.mark.asyncio
    async def test_all_waits_for_every_predecessor(self, make_engine, delayed_llm):
        llm = delayed_llm(delays={"slow": 0.2})
        result = await make_engine(fan_out_workflow({"mergeStrategy": "all"}), llm=llm).execute({})

        merge = result.node_results["merge"]
        assert merge.status == NodeStatus.SUCCESS
        for pred in ("fast", "slow"):
            assert merge.started_at >= result.node_results[pred].completed_at
        assert merge.data["_merge"]["successfulBranches"] == 2

    @pytest.mark.asyncio
    async def test_race_fires_once_on_first_arrival(self, make_engine, delayed_llm, store):
        llm = delayed_llm(delays={"slow": 0.3}, responses=[lambda m: m[0]["content"]] * 2)
        result = await make_engine(fan_out_workflow({"mergeStrategy": "race"}), llm=llm).execute({})

        merge = result.node_results["merge"]
        assert merge.status == NodeStatus.SUCCESS
        assert merge.data["result"] == "fast"
        assert merge.data["_merge"]["branchNames"] == ["Fast"]
        assert merge.started_at < result.node_results["slow"].completed_at
        # The slower branch still finishes
        assert result.node_results["slow"].status == NodeStatus.SUCCESS

        logs = await store.list_logs(result.execution_id)
        assert [log.node_id for log in logs].count("merge") == 1

    @pytest.mark.asyncio
    @pytest.mark.parametrize("strategy", ["race", "any"])
    async def test_late_branch_error_after_merge_fired_is_discarded(self, make_engine, delayed_llm, store, strategy):
        workflow = fan_out_workflow({"mergeStrategy": strategy})
        workflow["nodes"].append(_node("out", "OUTPUT", "Out", prompt="{{Merge}}"))
        workflow["edges"].append(_edge("merge", "out"))
        llm = delayed_llm(delays={"slow": 0.3}, responses=["fast ok", RuntimeError("late boom")])

        result = await make_engine(workflow, llm=llm).execute({})

        assert result.status == ExecutionStatus.COMPLETED
        assert result.error is None
        assert result.node_results["slow"].status == NodeStatus.ERROR
        assert result.node_results["slow"].error == "late boom"
        assert result.node_results["merge"].status == NodeStatus.SUCCESS
        assert result.node_results["out"].status == NodeStatus.SUCCESS
        assert (await store.get_execution(result.execution_id)).status == ExecutionStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_error_before_race_fires_still_fails(self, make_engine, delayed_llm):
        llm = delayed_llm(delays={"fast": 0.2}, responses=[RuntimeError("early boom"), "late ok"])
        result = await make_engine(fan_out_workflow({"mergeStrategy": "race"}), llm=llm).execute({})

        assert result.status == ExecutionStatus.FAILED
        assert result.error == 'Node "Slow" failed: early boom'

    @pytest.mark.asyncio
    async def test_parallel_branches_overlap(self, make_engine, delayed_llm):
        llm = delayed_llm(default_delay=0.15)
        result = await make_engine(fan_out_workflow({}), llm=llm).execute({})

        fast, slow = result.node_results["fast"], result.node_results["slow"]
        assert fast.started_at < slow.completed_at
        assert slow.started_at < fast.completed_at

    @pytest.mark.asyncio
    async def test_sequential_mode_runs_one_at_a_time(self, make_engine, delayed_llm):
        llm = delayed_llm(default_delay=0.05)
        result = await make_engine(fan_out_workflow({}, parallel=False), llm=llm).execute({})

        fast, slow = result.node_results["fast"], result.node_results["slow"]
        assert fast.completed_at <= slow.started_at

    @pytest.mark.asyncio
    async def test_fail_fast_merge_fails_execution(self, make_engine):
        llm = MockLLMProvider(responses=[RuntimeError("fast broke"), "slow ok"])
        workflow = fan_out_workflow({"errorStrategy": "fail_fast"}, parallel=False)
        result = await make_engine(workflow, llm=llm).execute({})

        assert result.status == ExecutionStatus.FAILED
        assert 'Node "Fast" failed: fast broke' == result.error

    @pytest.mark.asyncio
    async def test_collect_merge_contains_branch_error(self, make_engine):
        llm = MockLLMProvider(responses=[RuntimeError("fast broke"), "slow ok"])
        workflow = fan_out_workflow({"errorStrategy": "collect"}, parallel=False)
        result = await make_engine(workflow, llm=llm).execute({})

        assert result.status == ExecutionStatus.COMPLETED
        assert result.node_results["fast"].status == NodeStatus.ERROR
        merge = result.node_results["merge"].data
        assert merge["result"] == "slow ok"
        by_node = {b["nodeId"]: b for b in merge["_branches"]}
        assert by_node["fast"]["status"] == "error"
        assert by_node["fast"]["error"] == "fast broke"
        assert by_node["slow"]["status"] == "success"

    @pytest.mark.asyncio
    async def test_merge_skipped_when_every_branch_skipped(self, make_engine):
        workflow = branching_workflow()
        # Route both branches off the false handle so a true result kills both
        workflow["edges"][1] = _edge("check", "a", "false")
        result = await make_engine(workflow).execute({"value": "A"})

        assert result.node_results["merge"].status == NodeStatus.SKIPPED
        assert result.node_results["output"].status == NodeStatus.SKIPPED
        assert result.status == ExecutionStatus.COMPLETED


# === LOOPS ===


def loop_workflow(loop_config: dict, body: bool = True) -> dict:
    nodes = [
        _node("input", "INPUT", "Input"),
        _node("loop", "LOOP", "Each", **loop_config),
        _node("output", "OUTPUT", "Output", format="json"),
    ]
    edges = [_edge("input", "loop"), _edge("loop", "output")]
    if body:
        nodes.append(_node("shout", "PROCESS", "Shout", userPrompt="{{loop.item}}"))
        edges += [_edge("loop", "shout", "body"), _edge("shout", "loop")]
    return {"nodes": nodes, "edges": edges}


class TestLoops:
    @pytest.mark.asyncio
    async def test_for_loop_over_three_items(self, make_engine, store):
        llm = MockLLMProvider(responses=[lambda m: m[0]["content"].upper()] * 3)
        workflow = loop_workflow({"loopType": "FOR", "forConfig": {"arrayVariable": "{{Input.items}}"}})

        result = await make_engine(workflow, llm=llm).execute({"items": ["a", "b", "c"]})

        assert result.status == ExecutionStatus.COMPLETED
        loop = result.node_results["loop"]
        assert loop.status == NodeStatus.SUCCESS
        assert loop.data["iterations"] == 3
        assert [item["result"] for item in loop.data["result"]] == ["A", "B", "C"]
        assert loop.data["allSucceeded"] is True
        # Body nodes are run by the loop, not by the outer traversal
        assert "shout" not in result.node_results

        execution = await store.get_execution(result.execution_id)
        assert execution.total_tokens == 45
        logs = await store.list_logs(result.execution_id)
        assert [log.node_id for log in logs].count("shout") == 3

    @pytest.mark.asyncio
    async def test_loop_scope_variables(self, make_engine):
        seen = []

        def record(messages):
            seen.append(messages[0]["content"])
            return "ok"

        llm = MockLLMProvider(responses=[record] * 2)
        workflow = loop_workflow({"loopType": "FOR", "forConfig": {"arrayVariable": "{{Input.items}}", "itemName": "word"}})
        workflow["nodes"][3]["config"]["userPrompt"] = "{{word}} {{loop.iteration}}/{{loop.total}} {{Each.isLast}}"

        await make_engine(workflow, llm=llm).execute({"items": ["x", "y"]})
        assert seen == ["x 1/2 false", "y 2/2 true"]

    @pytest.mark.asyncio
    async def test_for_loop_over_cap_fails(self, make_engine):
        workflow = loop_workflow(
            {"loopType": "FOR", "maxIterations": 2, "forConfig": {"arrayVariable": "{{Input.items}}"}}
        )
        result = await make_engine(workflow).execute({"items": [1, 2, 3]})

        assert result.status == ExecutionStatus.FAILED
        assert "exceeds the maximum of 2 iterations" in result.error

    @pytest.mark.asyncio
    async def test_while_loop_stops_on_condition(self, make_engine):
        workflow = loop_workflow(
            {
                "loopType": "WHILE",
                "whileConfig": {"condition": [{"variable": "{{loop.index}}", "operator": "lessThan", "value": 2}]},
            },
            body=False,
        )
        result = await make_engine(workflow).execute({})

        assert result.status == ExecutionStatus.COMPLETED
        assert result.node_results["loop"].data["iterations"] == 2

    @pytest.mark.asyncio
    async def test_while_loop_always_terminates(self, make_engine):
        workflow = loop_workflow(
            {
                "loopType": "WHILE",
                "maxIterations": 5,
                "whileConfig": {"condition": [{"variable": "x", "operator": "equals", "value": "x"}]},
            },
            body=False,
        )
        result = await asyncio.wait_for(make_engine(workflow).execute({}), timeout=5)

        assert result.status == ExecutionStatus.FAILED
        assert "maximum of 5 iterations" in result.error

    @pytest.mark.asyncio
    async def test_engine_limit_caps_user_limit(self, make_engine, engine_config):
        engine_config.max_loop_iterations = 3
        workflow = loop_workflow(
            {
                "loopType": "WHILE",
                "maxIterations": 500,
                "whileConfig": {"condition": [{"variable": "x", "operator": "equals", "value": "x"}]},
            },
            body=False,
        )
        result = await make_engine(workflow).execute({})
        assert "maximum of 3 iterations" in result.error

    @pytest.mark.asyncio
    async def test_body_failure_fails_loop(self, make_engine):
        llm = MockLLMProvider(responses=["ok", RuntimeError("item 2 broke")])
        workflow = loop_workflow({"loopType": "FOR", "forConfig": {"arrayVariable": "{{Input.items}}"}})

        result = await make_engine(workflow, llm=llm).execute({"items": ["a", "b", "c"]})

        assert result.status == ExecutionStatus.FAILED
        assert 'Iteration 2 failed at node "Shout": item 2 broke' in result.error

    @pytest.mark.asyncio
    async def test_continue_on_error_records_failed_iterations(self, make_engine):
        llm = MockLLMProvider(responses=["ok", RuntimeError("nope"), "ok"])
        workflow = loop_workflow(
            {"loopType": "FOR", "continueOnError": True, "forConfig": {"arrayVariable": "{{Input.items}}"}}
        )

        result = await make_engine(workflow, llm=llm).execute({"items": ["a", "b", "c"]})

        loop = result.node_results["loop"].data
        assert result.status == ExecutionStatus.COMPLETED
        assert loop["allSucceeded"] is False
        assert loop["result"][1] is None
        assert [d["success"] for d in loop["iterationDetails"]] == [True, False, True]

    @pytest.mark.asyncio
    async def test_loop_outlasts_default_node_timeout(self, make_engine, delayed_llm, engine_config):
        # Each iteration fits the per-node limit, the whole loop does not
        config = dataclasses.replace(engine_config, default_node_timeout_s=0.1)
        workflow = loop_workflow({"loopType": "FOR", "forConfig": {"arrayVariable": "{{Input.items}}"}})

        result = await make_engine(workflow, llm=delayed_llm(default_delay=0.05), engine_config=config).execute(
            {"items": ["a", "b", "c", "d"]}
        )

        assert result.status == ExecutionStatus.COMPLETED
        assert result.node_results["loop"].data["iterations"] == 4


# === FAILURES ===


class TestFailures:
    @pytest.mark.asyncio
    async def test_failing_node_stops_execution_with_checkpoint(self, make_engine, store):
        llm = MockLLMProvider(responses=[RuntimeError("provider exploded")])
        result = await make_engine(linear_workflow(), llm=llm).execute({"text": "hi"})

        assert result.status == ExecutionStatus.FAILED
        assert result.error == 'Node "Summarize" failed: provider exploded'
        assert "output" not in result.node_results

        execution = await store.get_execution(result.execution_id)
        assert execution.status == ExecutionStatus.FAILED
        assert execution.can_resume is True
        assert set(execution.checkpoint.completed_nodes) == {"input"}
        assert execution.checkpoint.failed_node_id == "process"

        logs = await store.list_logs(result.execution_id)
        assert logs[-1].status == "error"
        assert logs[-1].error_detail["code"]

    @pytest.mark.asyncio
    async def test_first_node_failure_is_not_resumable(self, make_engine, store):
        workflow = {
            "nodes": [_node("input", "INPUT", fields=[{"name": "email", "required": True}])],
            "edges": [],
        }
        result = await make_engine(workflow).execute({})

        execution = await store.get_execution(result.execution_id)
        assert execution.status == ExecutionStatus.FAILED
        assert execution.can_resume is False
        assert "Missing required input field 'email'" in result.error

    @pytest.mark.asyncio
    async def test_invalid_graph_never_runs(self, make_engine, store, event_bus):
        workflow = {
            "nodes": [_node("a", "PROCESS", userPrompt="x"), _node("b", "PROCESS", userPrompt="y")],
            "edges": [_edge("a", "b"), _edge("b", "a")],
        }
        llm = MockLLMProvider()
        engine = make_engine(workflow, llm=llm)
        result = await engine.execute({})

        assert result.status == ExecutionStatus.FAILED
        assert "cycle" in result.error
        execution = await store.get_execution(result.execution_id)
        assert execution.status == ExecutionStatus.FAILED
        assert execution.started_at is None
        assert llm.calls == []

    @pytest.mark.asyncio
    async def test_node_timeout(self, make_engine, delayed_llm):
        workflow = linear_workflow()
        workflow["nodes"][1]["config"]["nodeTimeout"] = 0.05
        result = await make_engine(workflow, llm=delayed_llm(default_delay=2)).execute({"text": "hi"})

        assert result.status == ExecutionStatus.FAILED
        assert result.error == 'Node "Summarize" failed: Node timed out after 0.05s'

    @pytest.mark.asyncio
    async def test_execution_timeout(self, make_engine, delayed_llm, store):
        workflow = linear_workflow()
        workflow["settings"] = {"timeout": 0.1}
        result = await make_engine(workflow, llm=delayed_llm(default_delay=2)).execute({"text": "hi"})

        assert result.status == ExecutionStatus.FAILED
        assert result.error == "Execution timed out after 0.1s"
        execution = await store.get_execution(result.execution_id)
        assert execution.status == ExecutionStatus.FAILED

    @pytest.mark.asyncio
    async def test_orchestration_fault_never_leaves_running(self, make_engine, store, monkeypatch):
        engine = make_engine(linear_workflow())

        def explode(results):
            raise RuntimeError("disk on fire")

        monkeypatch.setattr(engine, "_final_output", explode)
        result = await engine.execute({"text": "hi"})

        assert result.status == ExecutionStatus.FAILED
        assert result.error.startswith(INTERNAL_ERROR_PREFIX)
        assert "disk on fire" in result.error
        execution = await store.get_execution(result.execution_id)
        assert execution.status == ExecutionStatus.FAILED

    @pytest.mark.asyncio
    async def test_unresolved_reference_is_a_node_error(self, make_engine, store):
        workflow = linear_workflow()
        workflow["nodes"][1]["config"]["userPrompt"] = "{{Nobody.text}}"
        result = await make_engine(workflow).execute({"text": "hi"})

        assert result.status == ExecutionStatus.FAILED
        assert "Unresolved variable reference: {{Nobody.text}}" in result.error
        logs = await store.list_logs(result.execution_id)
        assert logs[-1].error_detail["code"] == "VARIABLE_ERROR"

    @pytest.mark.asyncio
    async def test_cancel_marks_cancelled(self, make_engine, delayed_llm, store, event_bus):
        engine = make_engine(linear_workflow(), llm=delayed_llm(default_delay=5))
        execution = await engine.create_execution({"text": "hi"})
        started = asyncio.Event()

        async def on_event(event):
            if event.type == EventType.NODE_START and event.node_id == "process":
                started.set()

        event_bus.subscribe(execution.id, on_event)
        task = asyncio.create_task(engine.execute({"text": "hi"}, execution=execution))
        await asyncio.wait_for(started.wait(), timeout=2)
        assert engine.running

        engine.cancel()
        result = await task

        assert result.status == ExecutionStatus.CANCELLED
        assert result.error == "Execution cancelled"
        stored = await store.get_execution(execution.id)
        assert stored.status == ExecutionStatus.CANCELLED
        assert not engine.running
