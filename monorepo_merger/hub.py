"""
Background task runner with replayable progress streams.

Each submitted task gets an id, an advisory cancellation token and an
append-only event buffer. Subscribers see the whole buffer before live events,
so attaching late (or again) never loses history. Every task ends with exactly
one ``result`` or ``error`` event followed by one ``done`` event; the buffer is
dropped after a retention period.
"""

from __future__ import annotations

import asyncio
import contextvars
import json
import logging
import threading
import uuid
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, List, Mapping, Optional, Union

DEFAULT_RETENTION = 300.0
TERMINAL_EVENTS = ("result", "error")

Event = Dict[str, Any]
Subscriber = Callable[[Event], Any]
Work = Callable[["OperationContext"], Awaitable[Any]]

# Hub bookkeeping goes to its own logger so forwarding never feeds on itself.
logger = logging.getLogger(__name__)

_current_task: contextvars.ContextVar[Optional[str]] = contextvars.ContextVar(
    "monorepo_merger_task", default=None
)


def current_task_id() -> Optional[str]:
    return _current_task.get()


class CancelToken:
    """Cancellation flag readable from worker threads and awaitable on the loop."""

    def __init__(self, loop: asyncio.AbstractEventLoop) -> None:
        self._loop = loop
        self._flag = threading.Event()
        self._event = asyncio.Event()

    @property
    def cancelled(self) -> bool:
        return self._flag.is_set()

    def cancel(self) -> None:
        self._flag.set()
        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None
        if running is self._loop:
            self._event.set()
        elif not self._loop.is_closed():
            self._loop.call_soon_threadsafe(self._event.set)

    async def wait(self) -> None:
        await self._event.wait()


@dataclass
class _Operation:
    task_id: str
    token: CancelToken
    events: List[Event] = field(default_factory=list)
    subscribers: List[Subscriber] = field(default_factory=list)
    task: Optional[asyncio.Task] = None
    terminal: bool = False
    done: bool = False
    purge_handle: Optional[asyncio.TimerHandle] = None


class OperationContext:
    def __init__(self, hub: "OperationHub", task_id: str, token: CancelToken) -> None:
        self._hub = hub
        self.task_id = task_id
        self.token = token

    @property
    def cancelled(self) -> bool:
        return self.token.cancelled

    def log(self, level: str, message: str) -> None:
        self._hub.post(self.task_id, {"type": "log", "level": level, "message": message})

    async def run_sync(self, fn: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
        # to_thread copies the context, so log forwarding still knows the task id.
        return await asyncio.to_thread(fn, *args, **kwargs)


class HubLogHandler(logging.Handler):
    """Mirror log records produced while a hub task runs into that task's stream."""

    def __init__(self, hub: "OperationHub", level: int = logging.INFO) -> None:
        super().__init__(level)
        self._hub = hub
        self.setFormatter(logging.Formatter("%(message)s"))

    def emit(self, record: logging.LogRecord) -> None:
        task_id = _current_task.get()
        if task_id is None or record.name == logger.name:
            return
        try:
            message = self.format(record)
        except Exception:
            self.handleError(record)
            return
        self._hub.post(
            task_id,
            {"type": "log", "level": record.levelname.lower(), "message": message},
        )


class OperationHub:
    def __init__(self, retention: float = DEFAULT_RETENTION) -> None:
        self.retention = retention
        self._operations: Dict[str, _Operation] = {}
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._loop_thread: Optional[int] = None
        self._log_handler: Optional[HubLogHandler] = None

    def submit(self, work: Work, task_id: str | None = None) -> str:
        """Schedule ``work`` and return its task id without waiting for it."""
        loop = asyncio.get_running_loop()
        if self._loop is None:
            self._loop = loop
            self._loop_thread = threading.get_ident()
        task_id = task_id or uuid.uuid4().hex
        if task_id in self._operations:
            raise ValueError(f"Task id already in use: {task_id}")
        operation = _Operation(task_id=task_id, token=CancelToken(loop))
        self._operations[task_id] = operation
        operation.task = loop.create_task(self._run(operation, work), name=f"hub-{task_id}")
        logger.debug("Submitted task %s", task_id)
        return task_id

    async def _run(self, operation: _Operation, work: Work) -> None:
        _current_task.set(operation.task_id)
        context = OperationContext(self, operation.task_id, operation.token)
        try:
            data = await work(context)
        except asyncio.CancelledError:
            self.emit(operation.task_id, {"type": "error", "message": "Task was cancelled"})
            self.emit(operation.task_id, {"type": "done"})
            raise
        except Exception as exc:
            logger.warning("Task %s failed: %s", operation.task_id, exc)
            self.emit(operation.task_id, {"type": "error", "message": str(exc)})
        else:
            self.emit(operation.task_id, {"type": "result", "data": data})
        self.emit(operation.task_id, {"type": "done"})

    def post(self, task_id: str, event: Mapping[str, Any]) -> None:
        """Emit from any thread."""
        if self._loop is None or threading.get_ident() == self._loop_thread:
            self.emit(task_id, event)
        elif not self._loop.is_closed():
            self._loop.call_soon_threadsafe(self.emit, task_id, dict(event))

    def emit(self, task_id: str, event: Mapping[str, Any]) -> bool:
        operation = self._operations.get(task_id)
        if operation is None or operation.done:
            logger.debug("Dropping %s event for task %s", event.get("type"), task_id)
            return False
        kind = event.get("type")
        if kind in TERMINAL_EVENTS:
            if operation.terminal:
                logger.debug("Dropping extra %s event for task %s", kind, task_id)
                return False
            operation.terminal = True
        elif kind == "done" and not operation.terminal:
            # Keep the result/error-before-done contract even for direct emits.
            self.emit(task_id, {"type": "error", "message": "Task finished without a result"})

        payload: Event = {"task_id": task_id, **event}
        operation.events.append(payload)
        if kind == "done":
            operation.done = True
            self._schedule_purge(operation)
        for subscriber in list(operation.subscribers):
            self._deliver(operation, subscriber, payload)
        return True

    def _deliver(self, operation: _Operation, subscriber: Subscriber, event: Event) -> None:
        try:
            subscriber(event)
        except Exception as exc:
            logger.warning(
                "Detaching subscriber from task %s after delivery failure: %s",
                operation.task_id,
                exc,
            )
            if subscriber in operation.subscribers:
                operation.subscribers.remove(subscriber)

    def _schedule_purge(self, operation: _Operation) -> None:
        if self._loop is None:
            return
        operation.purge_handle = self._loop.call_later(
            self.retention, self._purge, operation.task_id
        )

    def _purge(self, task_id: str) -> None:
        if self._operations.pop(task_id, None) is not None:
            logger.debug("Purged task %s", task_id)

    def subscribe(self, task_id: str, subscriber: Subscriber) -> None:
        operation = self._operations.get(task_id)
        if operation is None:
            raise KeyError(task_id)
        for event in list(operation.events):
            self._deliver(operation, subscriber, event)
        if not operation.done and subscriber not in operation.subscribers:
            operation.subscribers.append(subscriber)

    def unsubscribe(self, task_id: str, subscriber: Subscriber) -> None:
        operation = self._operations.get(task_id)
        if operation is not None and subscriber in operation.subscribers:
            operation.subscribers.remove(subscriber)

    def cancel(self, task_id: str) -> bool:
        operation = self._operations.get(task_id)
        if operation is None or operation.done:
            return False
        operation.token.cancel()
        logger.info("Cancellation requested for task %s", task_id)
        return True

    def events(self, task_id: str) -> List[Event]:
        operation = self._operations.get(task_id)
        return list(operation.events) if operation else []

    def is_done(self, task_id: str) -> bool:
        operation = self._operations.get(task_id)
        return bool(operation and operation.done)

    async def stream(self, task_id: str) -> AsyncIterator[Event]:
        queue: asyncio.Queue[Event] = asyncio.Queue()
        self.subscribe(task_id, queue.put_nowait)
        try:
            while True:
                event = await queue.get()
                yield event
                if event.get("type") == "done":
                    return
        finally:
            self.unsubscribe(task_id, queue.put_nowait)

    async def wait(self, task_id: str) -> List[Event]:
        async for _ in self.stream(task_id):
            pass
        return self.events(task_id)

    def handle_message(self, subscriber: Subscriber, message: Union[str, Mapping[str, Any]]) -> bool:
        """Apply one client message: subscribe, unsubscribe or cancel."""
        if isinstance(message, str):
            try:
                message = json.loads(message)
            except json.JSONDecodeError as exc:
                logger.warning("Ignoring malformed hub message: %s", exc)
                return False
        if not isinstance(message, Mapping):
            logger.warning("Ignoring hub message that is not an object: %r", message)
            return False
        kind = message.get("type")
        task_id = message.get("task_id")
        if not isinstance(task_id, str) or not task_id:
            logger.warning("Ignoring hub message without task_id: %r", message)
            return False
        if task_id not in self._operations:
            logger.warning("Ignoring %s for unknown task %s", kind, task_id)
            return False
        if kind == "subscribe":
            self.subscribe(task_id, subscriber)
            return True
        if kind == "unsubscribe":
            self.unsubscribe(task_id, subscriber)
            return True
        if kind == "cancel":
            return self.cancel(task_id)
        logger.warning("Ignoring unknown hub message type %r", kind)
        return False

    def attach_logging(self, level: int = logging.INFO) -> HubLogHandler:
        if self._log_handler is None:
            self._log_handler = HubLogHandler(self, level)
            logging.getLogger().addHandler(self._log_handler)
        return self._log_handler

    def detach_logging(self) -> None:
        if self._log_handler is not None:
            logging.getLogger().removeHandler(self._log_handler)
            self._log_handler = None

    async def close(self) -> None:
        self.detach_logging()
        tasks = []
        for operation in self._operations.values():
            if operation.task is not None and not operation.task.done():
                operation.task.cancel()
                tasks.append(operation.task)
        await asyncio.gather(*tasks, return_exceptions=True)
        for operation in list(self._operations.values()):
            if not operation.done:
                # Cancelled before its first step ran.
                self.emit(operation.task_id, {"type": "error", "message": "Task was cancelled"})
                self.emit(operation.task_id, {"type": "done"})
            if operation.purge_handle is not None:
                operation.purge_handle.cancel()
        self._operations.clear()
