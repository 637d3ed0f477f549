"""In-process event emitter used for discovery, membership and task events."""

from __future__ import annotations

import asyncio
import inspect
from typing import Any, Callable

import structlog

logger = structlog.get_logger(__name__)


class EventEmitter:
    """Named events with plain or coroutine listeners.

    Listeners run in registration order. A listener that raises is logged
    and skipped; it never breaks the emitter or the other listeners.
    Coroutine listeners are scheduled on the running loop; without one
    they are logged and dropped.
    """

    def __init__(self) -> None:
        self.listeners: dict[str, list[Callable[..., Any]]] = {}
        self._listener_tasks: set[asyncio.Task] = set()

    def on(self, event: str, callback: Callable[..., Any]) -> None:
        """Register ``callback`` for ``event``."""
        self.listeners.setdefault(event, []).append(callback)

    def off(self, event: str, callback: Callable[..., Any]) -> bool:
        """Remove ``callback`` from ``event``. Returns True if it was registered."""
        callbacks = self.listeners.get(event, [])
        if callback in callbacks:
            callbacks.remove(callback)
            if not callbacks:
                del self.listeners[event]
            return True
        return False

    def emit(self, event: str, *args: Any) -> int:
        """Call every listener of ``event``. Returns how many were called."""
        callbacks = list(self.listeners.get(event, []))
        for callback in callbacks:
            try:
                outcome = callback(*args)
            except Exception as exc:
                logger.error(
                    "event_listener_failed",
                    event_name=event,
                    listener=getattr(callback, "__qualname__", repr(callback)),
                    error=str(exc),
                    exc_info=True,
                )
                continue
            if inspect.isawaitable(outcome):
                self._schedule(event, outcome)
        return len(callbacks)

    def _schedule(self, event: str, awaitable: Any) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError as exc:
            # No running loop to run a coroutine listener on
            if inspect.iscoroutine(awaitable):
                awaitable.close()
            logger.error("event_listener_not_scheduled", event_name=event, error=str(exc))
            return
        task = asyncio.ensure_future(awaitable, loop=loop)
        self._listener_tasks.add(task)

        def _done(finished: asyncio.Task) -> None:
            self._listener_tasks.discard(finished)
            if finished.cancelled():
                return
            exc = finished.exception()
            if exc is not None:
                logger.error("event_listener_failed", event_name=event, error=str(exc))

        task.add_done_callback(_done)
