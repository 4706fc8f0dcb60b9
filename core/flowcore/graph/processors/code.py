"""
CODE nodes: run a user script in a separate interpreter process.

The script body runs as the body of a function of ``inputs`` (a dict of
upstream outputs keyed by node name, plus ``input`` for the invocation
payload), so it may ``return`` a value. Anything it prints is captured.
The child process gets the payload on stdin, runs in isolated mode, and is
killed when the timeout expires or the node is cancelled; nothing the
script does can raise inside the engine process.
"""

import asyncio
import json
import logging
import sys
import textwrap
from typing import Any

from flowcore.graph.errors import NodeExecutionError, NodeTimeoutError
from flowcore.graph.node import NodeContext, NodeOutput

logger = logging.getLogger(__name__)

DEFAULT_CODE_TIMEOUT_S = 30.0
MAX_CAPTURED_OUTPUT = 64 * 1024

_RUNNER = r"""
import contextlib, io, json, sys, traceback

payload = json.loads(sys.stdin.read())
buffer = io.StringIO()
response = {"ok": True}
try:
    namespace = {"__name__": "__flowcore_code__"}
    exec(compile(payload["source"], "<code-node>", "exec"), namespace)
    with contextlib.redirect_stdout(buffer):
        response["result"] = namespace["__flowcore_main__"](payload["inputs"])
except BaseException as exc:
    response = {
        "ok": False,
        "error": f"{type(exc).__name__}: {exc}",
        "traceback": traceback.format_exc(limit=5),
    }
response["stdout"] = buffer.getvalue()
sys.stdout.write(json.dumps(response, default=repr))
"""


def wrap_source(code: str) -> str:
    """Turn a script body into a ``__flowcore_main__(inputs)`` function definition."""
    body = textwrap.indent(textwrap.dedent(code), "    ") if code.strip() else "    pass"
    return f"def __flowcore_main__(inputs):\n{body}\n    return None\n"


def build_inputs(ctx: NodeContext) -> dict[str, Any]:
    """Upstream successful outputs keyed by node name, plus the invocation payload."""
    inputs: dict[str, Any] = {"input": ctx.initial_input}
    for result in ctx.results.values():
        if result.success:
            inputs[result.node_name] = result.data
    if ctx.loop_scope:
        inputs.update(ctx.loop_scope)
    extra = ctx.config.get("inputs")
    if isinstance(extra, dict):
        inputs.update(extra)
    return inputs


async def run_python(code: str, inputs: dict[str, Any], timeout: float) -> dict[str, Any]:
    """
    Execute ``code`` in a child interpreter and return the runner's response.

    Raises:
        NodeTimeoutError: if the child does not finish within ``timeout``
        NodeExecutionError: if the child crashes or its output is unreadable
    """
    try:
        payload = json.dumps({"source": wrap_source(code), "inputs": inputs}, default=str)
    except (TypeError, ValueError) as e:
        raise NodeExecutionError(f"Inputs are not serialisable: {e}") from e

    proc = await asyncio.create_subprocess_exec(
        sys.executable,
        "-I",
        "-c",
        _RUNNER,
        stdin=asyncio.subprocess.PIPE,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
    )
    try:
        stdout, stderr = await asyncio.wait_for(proc.communicate(payload.encode("utf-8")), timeout)
    except TimeoutError as e:
        raise NodeTimeoutError(f"Code execution timed out after {timeout:g}s") from e
    finally:
        if proc.returncode is None:
            proc.kill()
            await proc.wait()

    try:
        return json.loads(stdout.decode("utf-8", errors="replace"))
    except ValueError as e:
        tail = stderr.decode("utf-8", errors="replace")[-500:].strip()
        raise NodeExecutionError(
            f"Code process exited with status {proc.returncode}: {tail or 'no output'}"
        ) from e


async def run_code(ctx: NodeContext) -> NodeOutput:
    config = ctx.config
    language = str(config.get("language", "python")).lower()
    if language != "python":
        raise NodeExecutionError(f"Unsupported code language: {language}")

    code = str(config.get("code") or "")
    timeout = float(config.get("timeout") or DEFAULT_CODE_TIMEOUT_S)

    response = await run_python(code, build_inputs(ctx), timeout)
    stdout = str(response.get("stdout", ""))[:MAX_CAPTURED_OUTPUT]

    if not response.get("ok"):
        logger.info(f"Code node '{ctx.node.name}' raised: {response.get('error')}")
        raise NodeExecutionError(str(response.get("error") or "Code execution failed"))

    return NodeOutput(
        data={"result": response.get("result"), "stdout": stdout, "logs": stdout.splitlines()}
    )
