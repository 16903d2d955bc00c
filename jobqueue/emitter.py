"""
Observable capability shared by queues and jobs.

Listeners may be plain callables or coroutine functions; coroutine results
are scheduled on the running loop so emit() never blocks the caller.
"""

import asyncio
import inspect
import logging
from collections import defaultdict
from collections.abc import Callable
from typing import Any

logger = logging.getLogger(__name__)

Listener = Callable[..., Any]


class Observable:
    """Named-event subscribe/emit."""

    def __init__(self) -> None:
        self._listeners: dict[str, list[Listener]] = defaultdict(list)
        self._pending: set[asyncio.Task] = set()

    def on(self, event: str, listener: Listener) -> Listener:
        """Register `listener` for `event`; returns the listener."""
        self._listeners[event].append(listener)
        return listener

    def once(self, event: str, listener: Listener) -> Listener:
        """
        Register `listener` for the next `event` only.

        The listener is wrapped, so the same callable may also be registered
        with on(); off(event, listener) removes the wrapper.
        """

        def wrapper(*args: Any) -> Any:
            self.off(event, wrapper)
            return listener(*args)

        wrapper.listener = listener  # type: ignore[attr-defined]
        self.on(event, wrapper)
        return listener

    def off(self, event: str, listener: Listener | None = None) -> None:
        """Remove one listener, or every listener of `event`."""
        if listener is None:
            self._listeners.pop(event, None)
            return
        listeners = self._listeners.get(event, [])
        for registered in listeners:
            if registered == listener or getattr(registered, "listener", None) == listener:
                listeners.remove(registered)
                return

    def listeners(self, event: str) -> list[Listener]:
        return list(self._listeners.get(event, []))

    def emit(self, event: str, *args: Any) -> bool:
        """
        Invoke every listener of `event` with `args`.

        A raising listener is logged and does not stop the others.

        Returns:
            True if the event had listeners.
        """
        listeners = self.listeners(event)
        for listener in listeners:
            try:
                result = listener(*args)
            except Exception:
                logger.exception("Event listener raised", extra={"event": event})
                continue
            if inspect.isawaitable(result):
                task = asyncio.ensure_future(result)
                self._pending.add(task)
                task.add_done_callback(self._finish)
        return bool(listeners)

    def _finish(self, task: asyncio.Task) -> None:
        self._pending.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error(
                "Async event listener raised",
                exc_info=task.exception(),
            )
