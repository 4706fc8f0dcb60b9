"""
Command-line interface for flowcore.

Usage:
    flowcore run workflow.json --input '{"text": "hello"}'
    flowcore resume exec_20260101_120000_ab12cd34 workflow.json
    flowcore status exec_20260101_120000_ab12cd34 workflow.json
    flowcore cleanup --timeout-ms 600000
    flowcore serve workflow.json --port 8080
    flowcore validate workflow.json
"""

import argparse
import asyncio
import json
import sys
from pathlib import Path
from typing import Any

from pydantic import ValidationError


def _load_workflow(path: str):
    from flowcore.graph.workflow import WorkflowConfig

    with open(path, encoding="utf-8-sig") as f:
        return WorkflowConfig.model_validate(json.load(f))


def _workflow_id(args: argparse.Namespace) -> str:
    return args.workflow_id or Path(args.workflow).stem


def _parse_input(raw: str | None) -> dict[str, Any]:
    if not raw:
        return {}
    payload = json.loads(raw)
    if not isinstance(payload, dict):
        raise ValueError("--input must be a JSON object")
    return payload


def _store(args: argparse.Namespace):
    from flowcore.config import get_storage_path
    from flowcore.storage.execution_store import FileExecutionStore

    return FileExecutionStore(Path(args.store).expanduser() if args.store else get_storage_path())


def _engine_factory(args: argparse.Namespace, store, event_bus):
    from flowcore.config import EngineConfig
    from flowcore.graph.executor import WorkflowEngine
    from flowcore.llm.litellm import LiteLLMProvider

    engine_config = EngineConfig.load(**({"model": args.model} if args.model else {}))
    llm = LiteLLMProvider(model=engine_config.model, api_key=engine_config.api_key)

    def build(config, workflow_id: str) -> WorkflowEngine:
        return WorkflowEngine(
            workflow_id,
            args.organization,
            args.user,
            config,
            store=store,
            event_bus=event_bus,
            llm=llm,
            engine_config=engine_config,
        )

    return build


def _print_json(payload: Any) -> None:
    print(json.dumps(payload, indent=2, ensure_ascii=False, default=str))


def _print_result(result) -> int:
    _print_json(
        {
            "executionId": result.execution_id,
            "status": str(result.status),
            "output": result.output,
            "error": result.error,
            "duration": result.duration,
            "totalTokens": result.total_tokens,
        }
    )
    return 0 if result.success else 1


# === COMMANDS ===


def cmd_run(args: argparse.Namespace) -> int:
    """Run a workflow once and print the result."""
    from flowcore.runtime.event_bus import get_default_bus

    try:
        config = _load_workflow(args.workflow)
        payload = _parse_input(args.input)
    except (OSError, ValueError, ValidationError) as e:
        print(f"Error: {e}", file=sys.stderr)
        return 2

    async def _run():
        store = _store(args)
        engine = _engine_factory(args, store, get_default_bus())(config, _workflow_id(args))
        return await engine.execute(payload)

    return _print_result(asyncio.run(_run()))


def cmd_resume(args: argparse.Namespace) -> int:
    """Resume a failed execution from its checkpoint."""
    from flowcore.graph.errors import ExecutionNotFoundError, ResumeError
    from flowcore.runtime.event_bus import get_default_bus

    try:
        config = _load_workflow(args.workflow)
        payload = _parse_input(args.input) if args.input else None
    except (OSError, ValueError, ValidationError) as e:
        print(f"Error: {e}", file=sys.stderr)
        return 2

    async def _resume():
        store = _store(args)
        original = await store.get_execution(args.execution_id)
        if original is None:
            raise ExecutionNotFoundError(f"Execution not found: {args.execution_id}")
        engine = _engine_factory(args, store, get_default_bus())(config, original.workflow_id)
        return await engine.resume(args.execution_id, payload)

    try:
        result = asyncio.run(_resume())
    except ResumeError as e:
        print(f"Cannot resume: {e.reason}", file=sys.stderr)
        return 1
    except ExecutionNotFoundError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    return _print_result(result)


def cmd_status(args: argparse.Namespace) -> int:
    """Print an execution's resume status."""
    from flowcore.graph.errors import ExecutionNotFoundError
    from flowcore.graph.executor import get_resume_status

    try:
        config = _load_workflow(args.workflow)
    except (OSError, ValueError, ValidationError) as e:
        print(f"Error: {e}", file=sys.stderr)
        return 2

    try:
        status = asyncio.run(get_resume_status(_store(args), args.execution_id, config))
    except ExecutionNotFoundError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    _print_json(status)
    return 0


def cmd_cleanup(args: argparse.Namespace) -> int:
    """Fail executions that stopped making progress."""
    from flowcore.runtime.maintenance import cleanup_stuck_executions

    swept = asyncio.run(cleanup_stuck_executions(_store(args), args.timeout_ms))
    _print_json({"cleaned": len(swept), "executionIds": swept})
    return 0


def cmd_serve(args: argparse.Namespace) -> int:
    """Serve one workflow over HTTP with SSE progress streaming."""
    from flowcore.config import EngineConfig
    from flowcore.runtime.event_bus import ExecutionEventBus
    from flowcore.runtime.execution_manager import ExecutionManager
    from flowcore.runtime.maintenance import MaintenanceLoop
    from flowcore.runtime.sse_server import SSEServer, SSEServerConfig

    try:
        config = _load_workflow(args.workflow)
    except (OSError, ValueError, ValidationError) as e:
        print(f"Error: {e}", file=sys.stderr)
        return 2

    async def _serve() -> None:
        engine_config = EngineConfig.load()
        store = _store(args)
        event_bus = ExecutionEventBus(
            max_tracked=engine_config.max_tracked_executions,
            state_ttl_s=engine_config.event_state_ttl_s,
        )
        manager = ExecutionManager(
            store,
            event_bus,
            engine_factory=_engine_factory(args, store, event_bus),
            max_concurrent=args.max_concurrent,
        )
        server = SSEServer(
            store,
            event_bus,
            manager,
            {_workflow_id(args): config},
            SSEServerConfig(
                host=args.host,
                port=args.port,
                heartbeat_interval_s=engine_config.heartbeat_interval_s,
            ),
        )
        maintenance = MaintenanceLoop(store, timeout_ms=engine_config.stuck_timeout_ms)

        await server.start()
        maintenance.start()
        print(f"Serving '{_workflow_id(args)}' on http://{args.host}:{server.port}")
        try:
            await asyncio.Event().wait()
        finally:
            await maintenance.stop()
            await manager.shutdown()
            await server.stop()
            event_bus.shutdown()

    try:
        asyncio.run(_serve())
    except KeyboardInterrupt:
        pass
    return 0


def cmd_validate(args: argparse.Namespace) -> int:
    """Check a workflow file without running it."""
    from flowcore.graph.errors import WorkflowValidationError

    try:
        config = _load_workflow(args.workflow)
        config.validate_graph()
    except (OSError, ValueError, ValidationError, WorkflowValidationError) as e:
        print(f"✗ Invalid workflow: {e}", file=sys.stderr)
        return 1

    print(f"✓ Valid workflow: {len(config.nodes)} nodes, {len(config.edges)} edges")
    print(f"  Execution order: {' -> '.join(config.execution_order())}")
    return 0


# === PARSER ===


def _add_store(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--store", default=None, help="Execution store directory")


def register_commands(subparsers: argparse._SubParsersAction) -> None:
    """Register the flowcore subcommands."""
    run = subparsers.add_parser("run", help="Run a workflow")
    run.add_argument("workflow", help="Path to workflow JSON")
    run.add_argument("--input", "-i", default=None, help="Input payload as a JSON object")
    run.add_argument("--workflow-id", default=None, help="Workflow id (default: file stem)")
    _add_store(run)
    run.set_defaults(func=cmd_run)

    resume = subparsers.add_parser("resume", help="Resume a failed execution")
    resume.add_argument("execution_id")
    resume.add_argument("workflow", help="Path to workflow JSON")
    resume.add_argument("--input", "-i", default=None, help="Replacement input payload")
    _add_store(resume)
    resume.set_defaults(func=cmd_resume)

    status = subparsers.add_parser("status", help="Show resume status of an execution")
    status.add_argument("execution_id")
    status.add_argument("workflow", help="Path to workflow JSON")
    _add_store(status)
    status.set_defaults(func=cmd_status)

    cleanup = subparsers.add_parser("cleanup", help="Fail stuck executions")
    cleanup.add_argument("--timeout-ms", type=int, default=600_000, help="No-progress threshold")
    _add_store(cleanup)
    cleanup.set_defaults(func=cmd_cleanup)

    serve = subparsers.add_parser("serve", help="Serve a workflow over HTTP/SSE")
    serve.add_argument("workflow", help="Path to workflow JSON")
    serve.add_argument("--workflow-id", default=None, help="Workflow id (default: file stem)")
    serve.add_argument("--host", default="127.0.0.1")
    serve.add_argument("--port", type=int, default=8080)
    serve.add_argument("--max-concurrent", type=int, default=10)
    _add_store(serve)
    serve.set_defaults(func=cmd_serve)

    validate = subparsers.add_parser("validate", help="Validate a workflow file")
    validate.add_argument("workflow", help="Path to workflow JSON")
    validate.set_defaults(func=cmd_validate)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="flowcore",
        description="flowcore - run declarative node workflows",
    )
    parser.add_argument("--model", default=None, help="LLM model (litellm provider/model form)")
    parser.add_argument("--log-level", default="INFO", help="DEBUG, INFO, WARNING, ERROR")
    parser.add_argument(
        "--log-format", default="auto", choices=["auto", "json", "human"], help="Log output format"
    )
    parser.add_argument("--organization", default="local", help=argparse.SUPPRESS)
    parser.add_argument("--user", default="cli", help=argparse.SUPPRESS)

    subparsers = parser.add_subparsers(dest="command", required=True)
    register_commands(subparsers)
    return parser


def main(argv: list[str] | None = None):
    from flowcore.observability import configure_logging

    args = build_parser().parse_args(argv)
    configure_logging(level=args.log_level, format=args.log_format)

    if hasattr(args, "func"):
        sys.exit(args.func(args))


if __name__ == "__main__":
    main()
