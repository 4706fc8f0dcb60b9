"""Tests for {{Node.field}} reference resolution."""

import pytest

from flowcore.graph.errors import UnresolvedReferenceError
from flowcore.graph.node import NodeResult, NodeStatus
from flowcore.graph.variables import (
    NOT_EXECUTED,
    VariableResolver,
    extract_references,
    parse_json_like,
)
from flowcore.graph.workflow import WorkflowConfig


def _result(node_id: str, name: str, data: dict, status: NodeStatus = NodeStatus.SUCCESS) -> NodeResult:
    return NodeResult(node_id=node_id, node_name=name, node_type="PROCESS", status=status, data=data)


@pytest.fixture
def resolver() -> VariableResolver:
    workflow = WorkflowConfig.model_validate(
        {
            "nodes": [
                {"id": "in", "type": "INPUT", "name": "Input"},
                {"id": "ai", "type": "PROCESS", "name": "Writer"},
                {"id": "skip", "type": "PROCESS", "name": "Skipped"},
            ],
            "globalVariables": {"company": "Acme", "limits": {"max": 3}},
        }
    )
    results = {
        "in": _result("in", "Input", {"text": "hi", "count": 4, "tags": ["a", "b"], "meta": {"lang": "en"}}),
        "ai": _result("ai", "Writer", {"result": '```json\n{"title": "Hello"}\n```', "model": "m"}),
        "skip": _result("skip", "Skipped", {"skipped": True}, NodeStatus.SKIPPED),
    }
    return VariableResolver(workflow, results)


class TestLookup:
    def test_whole_reference_keeps_native_type(self, resolver):
        assert resolver.resolve_string("{{Input.count}}") == 4
        assert resolver.resolve_string("{{Input.tags}}") == ["a", "b"]

    def test_embedded_reference_renders_text(self, resolver):
        assert resolver.resolve_string("Say {{Input.text}} x{{Input.count}}") == "Say hi x4"

    def test_containers_render_as_json_in_text(self, resolver):
        text = resolver.resolve_string("meta: {{Input.meta}}")
        assert '"lang": "en"' in text

    def test_nested_path_and_list_index(self, resolver):
        assert resolver.resolve_string("{{Input.meta.lang}}") == "en"
        assert resolver.resolve_string("{{Input.tags.1}}") == "b"

    def test_lookup_by_node_id(self, resolver):
        assert resolver.resolve_string("{{in.text}}") == "hi"

    def test_default_value_is_result_field(self, resolver):
        assert resolver.resolve_string("{{Writer}}").startswith("```json")

    def test_field_from_embedded_json_result(self, resolver):
        assert resolver.resolve_string("{{Writer.title}}") == "Hello"

    def test_missing_field_resolves_empty(self, resolver):
        assert resolver.resolve_string("{{Input.nope}}") == ""
        assert resolver.resolve_string("[{{Input.nope}}]") == "[]"

    def test_unknown_name_raises(self, resolver):
        with pytest.raises(UnresolvedReferenceError) as exc:
            resolver.resolve_string("{{Ghost.value}}")
        assert "{{Ghost.value}}" in str(exc.value)

    def test_optional_unknown_name_is_empty(self, resolver):
        assert resolver.resolve_string("{{Ghost.value?}}") == ""

    def test_skipped_node_yields_marker(self, resolver):
        assert resolver.resolve_string("{{Skipped.result}}") == NOT_EXECUTED

    def test_global_variables(self, resolver):
        assert resolver.resolve_string("{{company}}") == "Acme"
        assert resolver.resolve_string("{{limits.max}}") == 3

    def test_loop_scope_shadows_results(self, resolver):
        scoped = resolver.with_loop_scope({"loop": {"item": "x", "index": 2}, "Input": {"text": "inner"}})
        assert scoped.resolve_string("{{loop.item}}") == "x"
        assert scoped.resolve_string("{{loop.index}}") == 2
        assert scoped.resolve_string("{{Input.text}}") == "inner"
        assert resolver.resolve_string("{{Input.text}}") == "hi"


class TestResolveConfig:
    def test_walks_nested_structures_without_mutating(self, resolver):
        config = {"prompt": "{{Input.text}}", "items": ["{{Input.count}}", 7], "nested": {"k": "{{company}}"}}
        resolved = resolver.resolve_config(config)
        assert resolved == {"prompt": "hi", "items": [4, 7], "nested": {"k": "Acme"}}
        assert config["prompt"] == "{{Input.text}}"

    def test_skip_keys_are_copied_verbatim(self, resolver):
        resolved = resolver.resolve_config({"code": "return '{{Input.text}}'", "x": "{{Input.text}}"}, skip_keys=("code",))
        assert resolved == {"code": "return '{{Input.text}}'", "x": "hi"}


def test_extract_references():
    assert extract_references("a {{ One.x }} b {{Two}}") == ["One.x", "Two"]


@pytest.mark.parametrize(
    "text,expected",
    [
        ('{"a": 1}', {"a": 1}),
        ('```json\n{"a": 1}\n```', {"a": 1}),
        ('Sure! Here it is: {"a": 1} hope that helps', {"a": 1}),
        ("not json", None),
        ("", None),
    ],
)
def test_parse_json_like(text, expected):
    assert parse_json_like(text) == expected
