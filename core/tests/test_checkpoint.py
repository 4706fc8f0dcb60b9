"""Tests for CheckpointManager."""

import json

from flowcore.graph.node import NodeResult, NodeStatus
from flowcore.graph.workflow import WorkflowConfig
from flowcore.schemas.checkpoint import Checkpoint
from flowcore.storage.checkpoint_store import GRAPH_CHANGED_REASON, CheckpointManager

WORKFLOW = WorkflowConfig.model_validate(
    {
        "nodes": [
            {"id": "a", "type": "INPUT", "name": "A"},
            {"id": "b", "type": "PROCESS", "name": "B", "config": {"userPrompt": "{{A.text}}"}},
            {"id": "c", "type": "CONDITION", "name": "C"},
        ],
        "edges": [{"id": "ab", "source": "a", "target": "b"}, {"id": "bc", "source": "b", "target": "c"}],
    }
)


def _results() -> dict[str, NodeResult]:
    return {
        "a": NodeResult(node_id="a", node_name="A", node_type="INPUT", status=NodeStatus.SUCCESS, data={"text": "hi"}),
        "b": NodeResult(
            node_id="b",
            node_name="B",
            node_type="PROCESS",
            status=NodeStatus.SUCCESS,
            data={"result": "done", "nested": {"items": [1, 2]}},
            prompt_tokens=10,
            completion_tokens=5,
            total_tokens=15,
        ),
        "c": NodeResult(node_id="c", node_name="C", node_type="CONDITION", status=NodeStatus.ERROR, error="bad"),
    }


class TestBuild:
    def test_keeps_only_successful_results(self):
        checkpoint = CheckpointManager.build(_results(), "c", WORKFLOW.workflow_hash(), {"k": 1})
        assert set(checkpoint.completed_nodes) == {"a", "b"}
        assert checkpoint.failed_node_id == "c"
        assert checkpoint.variables == {"k": 1}
        assert checkpoint.info() == {"completedNodesCount": 2, "failedNodeId": "c"}

    def test_snapshot_is_independent_of_source(self):
        results = _results()
        checkpoint = CheckpointManager.build(results, None, WORKFLOW.workflow_hash())
        results["b"].data["nested"]["items"].append(3)
        assert checkpoint.completed_nodes["b"].data["nested"]["items"] == [1, 2]


class TestRoundTrip:
    def test_serialize_restore_through_json(self):
        original = CheckpointManager.build(_results(), "c", WORKFLOW.workflow_hash())

        wire = json.loads(json.dumps(CheckpointManager.serialize(original)))
        assert "completedNodes" in wire
        assert "failedNodeId" in wire

        restored = CheckpointManager.restore(wire)
        assert set(restored) == {"a", "b"}
        for node_id, result in restored.items():
            source = original.completed_nodes[node_id]
            assert result.status == source.status
            assert result.data == source.data
            assert result.total_tokens == source.total_tokens
            assert result.started_at == source.started_at

    def test_restore_returns_fresh_objects(self):
        checkpoint = CheckpointManager.build(_results(), None, WORKFLOW.workflow_hash())
        restored = CheckpointManager.restore(checkpoint)
        restored["b"].data["result"] = "changed"
        assert checkpoint.completed_nodes["b"].data["result"] == "done"


class TestValidate:
    def test_matching_graph(self):
        checkpoint = CheckpointManager.build(_results(), "c", WORKFLOW.workflow_hash())
        assert CheckpointManager.validate(checkpoint, WORKFLOW) is None

    def test_changed_graph(self):
        checkpoint = CheckpointManager.build(_results(), "c", "stale-hash")
        assert CheckpointManager.validate(checkpoint, WORKFLOW) == GRAPH_CHANGED_REASON

    def test_unsupported_version(self):
        checkpoint = Checkpoint(workflow_hash=WORKFLOW.workflow_hash(), version=99)
        assert CheckpointManager.validate(checkpoint, WORKFLOW) == "Checkpoint version 99 is not supported"

    def test_missing_node(self):
        ghost = NodeResult(node_id="ghost", node_name="Ghost", node_type="PROCESS", status=NodeStatus.SUCCESS)
        checkpoint = Checkpoint(workflow_hash=WORKFLOW.workflow_hash(), completed_nodes={"ghost": ghost})
        reason = CheckpointManager.validate(checkpoint, WORKFLOW)
        assert reason == "Checkpoint references nodes missing from the workflow: ghost"
