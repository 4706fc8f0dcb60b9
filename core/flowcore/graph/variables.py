"""
Variable Resolver - materialises ``{{Node.field}}`` references.

Reference forms:
    {{Name}}              default value of a node's output (``result`` field,
                          else its only field, else the whole output)
    {{Name.field.path}}   nested field; list indices are numeric segments
    {{Name.field?}}       optional: resolves to empty instead of failing
    {{loop.item}}         loop scope (item, index, iteration, isFirst,
                          isLast, total, plus configured item/index names)

``Name`` is looked up in the loop scope, then among node results by name,
then by node id, then in the workflow's global variables. A name that
matches none of those raises ``UnresolvedReferenceError`` unless the
reference is optional. A field missing from an existing output resolves to
empty. Any reference to a skipped node yields the ``NOT_EXECUTED`` marker.

A string consisting of exactly one reference resolves to the referenced
value itself (so numbers, lists and dicts keep their type); references
embedded in longer text are rendered as text, with containers rendered as
indented JSON.
"""

import json
import logging
import re
from collections.abc import Iterable
from typing import Any

from flowcore.graph.errors import UnresolvedReferenceError
from flowcore.graph.node import NodeResult, NodeStatus
from flowcore.graph.workflow import WorkflowConfig

logger = logging.getLogger(__name__)

VARIABLE_PATTERN = re.compile(r"\{\{\s*([^{}]+?)\s*\}\}")

NOT_EXECUTED = "[not executed]"

_MISSING = object()


def _strip_code_fence(text: str) -> str:
    trimmed = text.strip()
    if not trimmed.startswith("```"):
        return trimmed
    lines = trimmed.split("\n")
    if len(lines) < 3 or not lines[-1].startswith("```"):
        return trimmed
    return "\n".join(lines[1:-1]).strip()


def parse_json_like(text: str) -> Any:
    """Parse JSON from LLM-style text (code fences, surrounding prose). None if impossible."""
    candidate = _strip_code_fence(text)
    if not candidate:
        return None
    try:
        return json.loads(candidate)
    except ValueError:
        start, end = candidate.find("{"), candidate.rfind("}")
        if start == -1 or end <= start:
            return None
        try:
            return json.loads(candidate[start : end + 1])
        except ValueError:
            return None


def get_path(value: Any, path: list[str]) -> Any:
    """Walk ``path`` through dicts and lists; ``_MISSING`` when a segment is absent."""
    current = value
    for part in path:
        if isinstance(current, dict):
            if part not in current:
                return _MISSING
            current = current[part]
        elif isinstance(current, list) and part.lstrip("-").isdigit():
            index = int(part)
            if not -len(current) <= index < len(current):
                return _MISSING
            current = current[index]
        else:
            return _MISSING
    return current


def default_output_value(data: dict[str, Any]) -> Any:
    """The value ``{{Name}}`` stands for."""
    if "result" in data:
        return data["result"]
    if len(data) == 1:
        return next(iter(data.values()))
    return data


def format_value(value: Any) -> str:
    """Render a resolved value for embedding in text."""
    if value is None or value is _MISSING:
        return ""
    if isinstance(value, str):
        return value
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, dict | list):
        return json.dumps(value, indent=2, ensure_ascii=False, default=str)
    return str(value)


def extract_references(text: str) -> list[str]:
    """Return the raw reference expressions found in ``text``."""
    return [m.group(1) for m in VARIABLE_PATTERN.finditer(text)]


class VariableResolver:
    """Resolves references against node results, loop scopes and globals."""

    def __init__(
        self,
        workflow: WorkflowConfig,
        results: dict[str, NodeResult],
        global_variables: dict[str, Any] | None = None,
        loop_scope: dict[str, Any] | None = None,
    ):
        self.workflow = workflow
        self.results = results
        self.global_variables = (
            global_variables if global_variables is not None else workflow.global_variables
        )
        self.loop_scope = loop_scope or {}

    def with_loop_scope(self, scope: dict[str, Any]) -> "VariableResolver":
        """A resolver whose loop scope layers ``scope`` over this one's."""
        return VariableResolver(
            self.workflow,
            self.results,
            global_variables=self.global_variables,
            loop_scope={**self.loop_scope, **scope},
        )

    def _result_for(self, name: str) -> NodeResult | None:
        for result in self.results.values():
            if result.node_name == name:
                return result
        return self.results.get(name)

    def lookup(self, expression: str) -> Any:
        """
        Resolve one reference expression (the text between the braces).

        Raises:
            UnresolvedReferenceError: if the name is unknown and the
                reference is not optional
        """
        optional = expression.endswith("?")
        expr = expression[:-1].strip() if optional else expression.strip()
        name, _, field_path = expr.partition(".")
        name = name.strip()
        path = [p.strip() for p in field_path.split(".")] if field_path else []

        if name in self.loop_scope:
            value = self.loop_scope[name]
            return get_path(value, path) if path else value

        result = self._result_for(name)
        if result is not None:
            if result.status == NodeStatus.SKIPPED:
                return NOT_EXECUTED
            if not path:
                return default_output_value(result.data)
            value = get_path(result.data, path)
            if value is _MISSING:
                value = self._from_embedded_json(result.data, path)
            if value is _MISSING:
                logger.debug(f"Field not found in output of '{name}': {expr}")
            return value

        if name in self.global_variables:
            value = self.global_variables[name]
            return get_path(value, path) if path else value

        if optional:
            return _MISSING
        raise UnresolvedReferenceError(f"{{{{{expr}}}}}")

    @staticmethod
    def _from_embedded_json(data: dict[str, Any], path: list[str]) -> Any:
        # LLM nodes often return JSON as text in ``result``
        raw = data.get("result")
        if not isinstance(raw, str):
            return _MISSING
        parsed = parse_json_like(raw)
        if not isinstance(parsed, dict | list):
            return _MISSING
        return get_path(parsed, path)

    def resolve_string(self, text: str) -> Any:
        """Resolve every reference in ``text``."""
        match = VARIABLE_PATTERN.fullmatch(text)
        if match is not None:
            value = self.lookup(match.group(1))
            return "" if value is _MISSING or value is None else value

        return VARIABLE_PATTERN.sub(lambda m: format_value(self.lookup(m.group(1))), text)

    def resolve_text(self, text: str) -> str:
        """Resolve ``text`` and always return a string."""
        return format_value(self.resolve_string(text))

    def resolve_config(self, tree: Any, skip_keys: Iterable[str] = ()) -> Any:
        """
        Return a copy of ``tree`` with every string leaf resolved.

        Dict values under ``skip_keys`` are copied untouched.
        """
        skip = frozenset(skip_keys)
        return self._walk(tree, skip)

    def _walk(self, value: Any, skip: frozenset[str]) -> Any:
        if isinstance(value, str):
            return self.resolve_string(value) if "{{" in value else value
        if isinstance(value, dict):
            return {k: (v if k in skip else self._walk(v, skip)) for k, v in value.items()}
        if isinstance(value, list):
            return [self._walk(v, skip) for v in value]
        return value
