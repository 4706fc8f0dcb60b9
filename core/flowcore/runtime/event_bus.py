"""
Execution Event Bus - per-execution pub/sub for live progress.

The engine publishes node and execution lifecycle events; observers (the
SSE endpoint, tests, embedding applications) subscribe by execution id.

The bus keeps, per execution, a subscriber list and a small progress
snapshot so late subscribers can catch up. Entries live in a bounded
ordered map: the oldest idle entry is evicted when the bound is reached,
and progress state is dropped a short while after a terminal event.
"""

import asyncio
import logging
import time
from collections import OrderedDict
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime
from enum import StrEnum
from typing import Any

logger = logging.getLogger(__name__)


class EventType(StrEnum):
    """Types of events published for an execution."""

    NODE_START = "node_start"
    NODE_COMPLETE = "node_complete"
    NODE_ERROR = "node_error"
    EXECUTION_COMPLETE = "execution_complete"
    EXECUTION_ERROR = "execution_error"

    @property
    def is_terminal(self) -> bool:
        return self in (EventType.EXECUTION_COMPLETE, EventType.EXECUTION_ERROR)


@dataclass
class ExecutionEvent:
    """One progress event, serialized verbatim onto the SSE stream."""

    execution_id: str
    type: EventType
    progress: int
    completed_nodes: int
    total_nodes: int
    current_node_index: int
    timestamp: datetime = field(default_factory=datetime.now)
    error: str | None = None

    # Node events only
    node_id: str | None = None
    node_name: str | None = None
    node_type: str | None = None
    status: str | None = None
    output: Any = None

    def to_dict(self) -> dict[str, Any]:
        """Convert to the wire shape (camelCase, optional fields omitted)."""
        out: dict[str, Any] = {
            "executionId": self.execution_id,
            "type": self.type.value,
            "progress": self.progress,
            "completedNodes": self.completed_nodes,
            "totalNodes": self.total_nodes,
            "currentNodeIndex": self.current_node_index,
            "timestamp": self.timestamp.isoformat(),
        }
        if self.error is not None:
            out["error"] = self.error
        for key, value in (
            ("nodeId", self.node_id),
            ("nodeName", self.node_name),
            ("nodeType", self.node_type),
            ("status", self.status),
            ("output", self.output),
        ):
            if value is not None:
                out[key] = value
        return out


# Type for event handlers
EventHandler = Callable[[ExecutionEvent], Awaitable[None]]


@dataclass
class Subscription:
    """A subscription to one execution's events."""

    id: str
    execution_id: str
    handler: EventHandler


@dataclass
class ExecutionProgress:
    """Progress snapshot of one execution."""

    execution_id: str
    workflow_id: str
    node_ids: list[str]
    finished: set[str] = field(default_factory=set)
    current_node_index: int = -1
    status: str = "running"
    error: str | None = None
    finished_at: float | None = None  # monotonic time of the terminal event

    @property
    def total_nodes(self) -> int:
        return len(self.node_ids)

    @property
    def progress(self) -> int:
        if self.status == "completed":
            return 100
        if not self.node_ids:
            return 0
        return round(len(self.finished) / len(self.node_ids) * 100)

    def index_of(self, node_id: str) -> int:
        try:
            return self.node_ids.index(node_id)
        except ValueError:
            return self.current_node_index

    def snapshot(self) -> dict[str, Any]:
        out = {
            "executionId": self.execution_id,
            "workflowId": self.workflow_id,
            "status": self.status,
            "progress": self.progress,
            "completedNodes": len(self.finished),
            "totalNodes": self.total_nodes,
            "currentNodeIndex": self.current_node_index,
        }
        if self.error is not None:
            out["error"] = self.error
        return out


@dataclass
class _Channel:
    progress: ExecutionProgress | None = None
    subscriptions: dict[str, Subscription] = field(default_factory=dict)

    @property
    def idle(self) -> bool:
        return not self.subscriptions

    @property
    def running(self) -> bool:
        return self.progress is not None and self.progress.status == "running"


class ExecutionEventBus:
    """
    Bounded map of execution id -> subscribers and progress.

    Example:
        bus = ExecutionEventBus()

        async def on_event(event: ExecutionEvent):
            print(event.to_dict())

        sub_id = bus.subscribe("exec_123", on_event)
        bus.init_execution("exec_123", "wf_1", ["input", "process", "output"])
        await bus.node_start("exec_123", "input", "Input", "INPUT")
        ...
        bus.unsubscribe(sub_id)
    """

    def __init__(
        self,
        max_tracked: int = 1000,
        state_ttl_s: float = 60.0,
        max_concurrent_handlers: int = 10,
    ):
        """
        Initialize event bus.

        Args:
            max_tracked: Maximum executions tracked at once
            state_ttl_s: Seconds progress state is kept after a terminal event
            max_concurrent_handlers: Maximum concurrent handler executions
        """
        self._channels: OrderedDict[str, _Channel] = OrderedDict()
        self._subscription_index: dict[str, str] = {}  # sub id -> execution id
        self._cleanup_handles: dict[str, asyncio.TimerHandle] = {}
        self._max_tracked = max_tracked
        self._state_ttl_s = state_ttl_s
        self._semaphore = asyncio.Semaphore(max_concurrent_handlers)
        self._subscription_counter = 0

    # === CHANNELS ===

    def _channel(self, execution_id: str) -> _Channel:
        channel = self._channels.get(execution_id)
        if channel is None:
            channel = _Channel()
            self._channels[execution_id] = channel
            self._evict(keep=execution_id)
        return channel

    def _evict(self, keep: str) -> None:
        while len(self._channels) > self._max_tracked:
            candidates = [eid for eid, ch in self._channels.items() if ch.idle and eid != keep]
            # Prefer entries whose execution already finished
            victim = next(
                (eid for eid in candidates if not self._channels[eid].running), None
            ) or next(iter(candidates), None)
            if victim is None:
                logger.warning(
                    f"Event bus tracking {len(self._channels)} executions, all with live subscribers"
                )
                return
            self._drop(victim)

    def _drop(self, execution_id: str) -> None:
        self._channels.pop(execution_id, None)
        handle = self._cleanup_handles.pop(execution_id, None)
        if handle is not None:
            handle.cancel()

    def _expire(self, execution_id: str) -> None:
        self._cleanup_handles.pop(execution_id, None)
        channel = self._channels.get(execution_id)
        if channel is None:
            return
        if channel.idle:
            self._channels.pop(execution_id, None)
        else:
            channel.progress = None
        logger.debug(f"Expired event state for {execution_id}")

    def _schedule_expiry(self, execution_id: str) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return
        previous = self._cleanup_handles.pop(execution_id, None)
        if previous is not None:
            previous.cancel()
        self._cleanup_handles[execution_id] = loop.call_later(
            self._state_ttl_s, self._expire, execution_id
        )

    def tracked_count(self) -> int:
        return len(self._channels)

    # === SUBSCRIPTIONS ===

    def subscribe(self, execution_id: str, handler: EventHandler) -> str:
        """
        Subscribe to one execution's events.

        Args:
            execution_id: Execution to follow
            handler: Async function called for each event

        Returns:
            Subscription ID (use to unsubscribe)
        """
        self._subscription_counter += 1
        sub_id = f"sub_{self._subscription_counter}"
        self._channel(execution_id).subscriptions[sub_id] = Subscription(
            id=sub_id, execution_id=execution_id, handler=handler
        )
        self._subscription_index[sub_id] = execution_id
        logger.debug(f"Subscription {sub_id} registered for {execution_id}")
        return sub_id

    def unsubscribe(self, subscription_id: str) -> bool:
        """
        Unsubscribe from events.

        Returns:
            True if subscription was found and removed
        """
        execution_id = self._subscription_index.pop(subscription_id, None)
        if execution_id is None:
            return False
        channel = self._channels.get(execution_id)
        if channel is not None:
            channel.subscriptions.pop(subscription_id, None)
            if channel.idle and channel.progress is None:
                self._drop(execution_id)
        logger.debug(f"Subscription {subscription_id} removed")
        return True

    def subscriber_count(self, execution_id: str) -> int:
        channel = self._channels.get(execution_id)
        return len(channel.subscriptions) if channel else 0

    def get_state(self, execution_id: str) -> dict[str, Any] | None:
        """Current progress snapshot, or None if the execution is not tracked."""
        channel = self._channels.get(execution_id)
        if channel is None or channel.progress is None:
            return None
        return channel.progress.snapshot()

    # === PUBLISHING ===

    async def publish(self, event: ExecutionEvent) -> None:
        """Deliver an event to every subscriber of its execution."""
        channel = self._channels.get(event.execution_id)
        if channel is None or not channel.subscriptions:
            return
        handlers = [s.handler for s in channel.subscriptions.values()]

        async def run_handler(handler: EventHandler) -> None:
            async with self._semaphore:
                try:
                    await handler(event)
                except Exception as e:
                    logger.error(f"Handler error for {event.type} on {event.execution_id}: {e}")

        await asyncio.gather(*[run_handler(h) for h in handlers], return_exceptions=True)

    def _event(self, progress: ExecutionProgress, event_type: EventType, **fields: Any) -> ExecutionEvent:
        return ExecutionEvent(
            execution_id=progress.execution_id,
            type=event_type,
            progress=progress.progress,
            completed_nodes=len(progress.finished),
            total_nodes=progress.total_nodes,
            current_node_index=progress.current_node_index,
            **fields,
        )

    def _progress(self, execution_id: str) -> ExecutionProgress:
        channel = self._channel(execution_id)
        if channel.progress is None:
            # Events for an execution that was never initialised (or already expired)
            channel.progress = ExecutionProgress(execution_id=execution_id, workflow_id="", node_ids=[])
        return channel.progress

    # === CONVENIENCE PUBLISHERS ===

    def init_execution(self, execution_id: str, workflow_id: str, node_ids: list[str]) -> None:
        """Start tracking progress for an execution."""
        channel = self._channel(execution_id)
        channel.progress = ExecutionProgress(
            execution_id=execution_id, workflow_id=workflow_id, node_ids=list(node_ids)
        )
        self._channels.move_to_end(execution_id)
        handle = self._cleanup_handles.pop(execution_id, None)
        if handle is not None:
            handle.cancel()

    async def node_start(self, execution_id: str, node_id: str, node_name: str, node_type: str) -> None:
        progress = self._progress(execution_id)
        progress.current_node_index = progress.index_of(node_id)
        await self.publish(
            self._event(
                progress,
                EventType.NODE_START,
                node_id=node_id,
                node_name=node_name,
                node_type=node_type,
                status="running",
            )
        )

    async def node_complete(
        self,
        execution_id: str,
        node_id: str,
        node_name: str,
        node_type: str,
        output: dict[str, Any] | None = None,
    ) -> None:
        progress = self._progress(execution_id)
        progress.finished.add(node_id)
        progress.current_node_index = progress.index_of(node_id)
        await self.publish(
            self._event(
                progress,
                EventType.NODE_COMPLETE,
                node_id=node_id,
                node_name=node_name,
                node_type=node_type,
                status="success",
                output=output,
            )
        )

    async def node_error(
        self, execution_id: str, node_id: str, node_name: str, node_type: str, error: str
    ) -> None:
        progress = self._progress(execution_id)
        progress.finished.add(node_id)
        progress.current_node_index = progress.index_of(node_id)
        await self.publish(
            self._event(
                progress,
                EventType.NODE_ERROR,
                node_id=node_id,
                node_name=node_name,
                node_type=node_type,
                status="error",
                error=error,
            )
        )

    async def execution_complete(self, execution_id: str) -> None:
        progress = self._progress(execution_id)
        progress.status = "completed"
        progress.finished_at = time.monotonic()
        await self.publish(self._event(progress, EventType.EXECUTION_COMPLETE))
        self._schedule_expiry(execution_id)

    async def execution_error(self, execution_id: str, error: str) -> None:
        progress = self._progress(execution_id)
        progress.status = "failed"
        progress.error = error
        progress.finished_at = time.monotonic()
        await self.publish(self._event(progress, EventType.EXECUTION_ERROR, error=error))
        self._schedule_expiry(execution_id)

    # === LIFECYCLE ===

    def shutdown(self) -> None:
        """Drop every subscriber and progress entry and cancel pending expiries."""
        for handle in self._cleanup_handles.values():
            handle.cancel()
        self._cleanup_handles.clear()
        self._channels.clear()
        self._subscription_index.clear()
        logger.info("Execution event bus shut down")


_default_bus: ExecutionEventBus | None = None


def get_default_bus() -> ExecutionEventBus:
    """Process-wide bus shared by engines and the SSE server unless one is injected."""
    global _default_bus
    if _default_bus is None:
        _default_bus = ExecutionEventBus()
    return _default_bus


def reset_default_bus() -> None:
    """Shut down and forget the process-wide bus."""
    global _default_bus
    if _default_bus is not None:
        _default_bus.shutdown()
    _default_bus = None
