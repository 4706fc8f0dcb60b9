"""
SSE HTTP Server - streams execution progress and exposes execution control.

Uses aiohttp for a lightweight embedded HTTP server that runs within the
existing asyncio loop. Progress events come from the ExecutionEventBus and
are written verbatim as ``data: <json>\\n\\n`` frames, with a comment-line
heartbeat to keep proxies from closing idle connections.

Routes:
    POST /workflows/{workflow_id}/executions   start an execution
    GET  /executions/{execution_id}            record plus node logs
    GET  /executions/{execution_id}/stream     text/event-stream progress
    GET  /executions/{execution_id}/resume     resume status
    POST /executions/{execution_id}/resume     resume a failed execution
    POST /executions/{execution_id}/cancel     cancel a running execution
"""

import asyncio
import json
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from aiohttp import web

from flowcore.graph.errors import ExecutionNotFoundError, ResumeError
from flowcore.graph.executor import get_resume_status
from flowcore.graph.workflow import WorkflowConfig
from flowcore.runtime.event_bus import EventType, ExecutionEvent, ExecutionEventBus
from flowcore.runtime.execution_manager import ExecutionManager
from flowcore.schemas.execution import Execution, ExecutionStatus
from flowcore.storage.execution_store import ExecutionStore

logger = logging.getLogger(__name__)

HEARTBEAT_FRAME = b": heartbeat\n\n"


def sse_frame(payload: dict[str, Any]) -> bytes:
    return f"data: {json.dumps(payload, ensure_ascii=False, default=str)}\n\n".encode()


def terminal_event(execution: Execution, snapshot: dict[str, Any] | None) -> dict[str, Any]:
    """Closing event for a stream opened after the execution already finished."""
    completed = execution.status == ExecutionStatus.COMPLETED
    event = ExecutionEvent(
        execution_id=execution.id,
        type=EventType.EXECUTION_COMPLETE if completed else EventType.EXECUTION_ERROR,
        progress=100 if completed else (snapshot or {}).get("progress", 0),
        completed_nodes=(snapshot or {}).get("completedNodes", 0),
        total_nodes=(snapshot or {}).get("totalNodes", 0),
        current_node_index=(snapshot or {}).get("currentNodeIndex", -1),
        timestamp=execution.completed_at or datetime.now(),
        error=None if completed else (execution.error or str(execution.status)),
    )
    return event.to_dict()


@dataclass
class SSEServerConfig:
    """Configuration for the SSE HTTP server."""

    host: str = "127.0.0.1"
    port: int = 8080
    heartbeat_interval_s: float = 15.0


class SSEServer:
    """
    Embedded HTTP server for execution streaming and control.

    Lifecycle:
        server = SSEServer(store, event_bus, manager, {"wf_1": workflow})
        await server.start()
        # ... server running ...
        await server.stop()
    """

    def __init__(
        self,
        store: ExecutionStore,
        event_bus: ExecutionEventBus,
        manager: ExecutionManager,
        workflows: dict[str, WorkflowConfig] | None = None,
        config: SSEServerConfig | None = None,
    ):
        self._store = store
        self._event_bus = event_bus
        self._manager = manager
        self._workflows = dict(workflows or {})
        self._config = config or SSEServerConfig()
        self._app: web.Application | None = None
        self._runner: web.AppRunner | None = None
        self._site: web.TCPSite | None = None

    def add_workflow(self, workflow_id: str, config: WorkflowConfig) -> None:
        """Register a workflow that executions can be started and resumed against."""
        self._workflows[workflow_id] = config

    def build_app(self) -> web.Application:
        app = web.Application()
        app.router.add_post("/workflows/{workflow_id}/executions", self._handle_start)
        app.router.add_get("/executions/{execution_id}", self._handle_get)
        app.router.add_get("/executions/{execution_id}/stream", self._handle_stream)
        app.router.add_get("/executions/{execution_id}/resume", self._handle_resume_status)
        app.router.add_post("/executions/{execution_id}/resume", self._handle_resume)
        app.router.add_post("/executions/{execution_id}/cancel", self._handle_cancel)
        return app

    async def start(self) -> None:
        """Start the HTTP server."""
        self._app = self.build_app()
        self._runner = web.AppRunner(self._app)
        await self._runner.setup()
        self._site = web.TCPSite(self._runner, self._config.host, self._config.port)
        await self._site.start()
        logger.info(
            f"SSE server started on {self._config.host}:{self.port} "
            f"with {len(self._workflows)} workflow(s)"
        )

    async def stop(self) -> None:
        """Stop the HTTP server gracefully."""
        if self._runner:
            await self._runner.cleanup()
            self._runner = None
            self._app = None
            self._site = None
            logger.info("SSE server stopped")

    @property
    def is_running(self) -> bool:
        """Check if the server is running."""
        return self._site is not None

    @property
    def port(self) -> int | None:
        """Return the actual listening port (useful when configured with port=0)."""
        if self._site and self._site._server and self._site._server.sockets:
            return self._site._server.sockets[0].getsockname()[1]
        return None

    # ---- helpers ----

    async def _load(self, request: web.Request) -> Execution:
        execution_id = request.match_info["execution_id"]
        try:
            execution = await self._store.get_execution(execution_id)
        except ValueError:
            execution = None
        if execution is None:
            raise web.HTTPNotFound(
                text=json.dumps({"error": f"Execution not found: {execution_id}"}),
                content_type="application/json",
            )
        return execution

    def _workflow_for(self, execution: Execution) -> WorkflowConfig:
        config = self._workflows.get(execution.workflow_id)
        if config is None:
            raise web.HTTPNotFound(
                text=json.dumps({"error": f"Workflow not registered: {execution.workflow_id}"}),
                content_type="application/json",
            )
        return config

    # ---- handlers ----

    async def _handle_start(self, request: web.Request) -> web.Response:
        workflow_id = request.match_info["workflow_id"]
        config = self._workflows.get(workflow_id)
        if config is None:
            return web.json_response({"error": f"Workflow not registered: {workflow_id}"}, status=404)

        try:
            body = await request.read()
            payload = json.loads(body) if body else {}
        except (json.JSONDecodeError, ValueError):
            return web.json_response({"error": "Request body must be JSON"}, status=400)
        if not isinstance(payload, dict):
            return web.json_response({"error": "Request body must be a JSON object"}, status=400)

        execution_id = await self._manager.start(config, payload, workflow_id=workflow_id)
        return web.json_response({"executionId": execution_id}, status=202)

    async def _handle_get(self, request: web.Request) -> web.Response:
        execution = await self._load(request)
        logs = await self._store.list_logs(execution.id)
        return web.json_response(
            {
                "execution": execution.model_dump(mode="json", by_alias=True),
                "logs": [log.model_dump(mode="json", by_alias=True) for log in logs],
            }
        )

    async def _handle_resume_status(self, request: web.Request) -> web.Response:
        execution = await self._load(request)
        config = self._workflow_for(execution)
        return web.json_response(await get_resume_status(self._store, execution.id, config))

    async def _handle_resume(self, request: web.Request) -> web.Response:
        execution = await self._load(request)
        config = self._workflow_for(execution)
        try:
            new_id = await self._manager.resume(execution.id, config)
        except ResumeError as e:
            return web.json_response({"error": e.reason}, status=400)
        except ExecutionNotFoundError as e:
            return web.json_response({"error": str(e)}, status=404)
        return web.json_response({"executionId": new_id, "resumedFromId": execution.id}, status=202)

    async def _handle_cancel(self, request: web.Request) -> web.Response:
        execution = await self._load(request)
        cancelled = await self._manager.cancel(execution.id)
        if not cancelled:
            return web.json_response(
                {"cancelled": False, "status": str(execution.status)}, status=409
            )
        return web.json_response({"cancelled": True})

    async def _handle_stream(self, request: web.Request) -> web.StreamResponse:
        execution_id = request.match_info["execution_id"]
        queue: asyncio.Queue[dict[str, Any] | None] = asyncio.Queue()

        async def on_event(event: ExecutionEvent) -> None:
            await queue.put(event.to_dict())

        # Subscribe before reading the record so no terminal event slips between
        sub_id = self._event_bus.subscribe(execution_id, on_event)
        heartbeat: asyncio.Task | None = None
        try:
            execution = await self._load(request)

            response = web.StreamResponse(
                headers={
                    "Content-Type": "text/event-stream",
                    "Cache-Control": "no-cache",
                    "Connection": "keep-alive",
                    "X-Accel-Buffering": "no",
                }
            )
            await response.prepare(request)

            snapshot = self._event_bus.get_state(execution_id)
            if execution.status.is_terminal:
                await response.write(sse_frame(terminal_event(execution, snapshot)))
                return response
            if snapshot is not None:
                await response.write(sse_frame({**snapshot, "type": "progress"}))

            heartbeat = asyncio.create_task(self._heartbeat(response, queue))
            while True:
                payload = await queue.get()
                if payload is None:
                    break
                await response.write(sse_frame(payload))
                if EventType(payload["type"]).is_terminal:
                    break
            return response

        except ConnectionResetError:
            logger.debug(f"SSE client for {execution_id} disconnected")
            return response
        finally:
            self._event_bus.unsubscribe(sub_id)
            if heartbeat is not None:
                heartbeat.cancel()

    async def _heartbeat(self, response: web.StreamResponse, queue: asyncio.Queue) -> None:
        while True:
            await asyncio.sleep(self._config.heartbeat_interval_s)
            try:
                await response.write(HEARTBEAT_FRAME)
            except (ConnectionResetError, RuntimeError):
                # Client went away; wake the writer so the stream tears down
                await queue.put(None)
                return
