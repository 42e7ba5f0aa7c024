"""Event bus for SpecPilot.

In-process pub/sub. The stage router, agent context and runtime publish
events; loggers, the CLI and tests consume them. Handlers can listen
to one event type, to every event, or to everything one session emits.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from collections import defaultdict, deque
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

logger = logging.getLogger(__name__)


@dataclass
class Event:
    event_type: str
    session_id: str
    data: dict = field(default_factory=dict)
    timestamp: str = ""

    def __post_init__(self):
        if not self.timestamp:
            self.timestamp = datetime.now().isoformat()

    def to_dict(self) -> dict:
        return {
            "event_type": self.event_type,
            "session_id": self.session_id,
            "data": self.data,
            "timestamp": self.timestamp,
        }


# Sync or async callable taking an Event
EventHandler = Callable[[Event], Any]


def _handler_name(handler: EventHandler) -> str:
    return getattr(handler, "__name__", repr(handler))


class EventBus:
    """In-process event bus with a bounded history."""

    def __init__(self, max_history: int = 1000) -> None:
        self._by_type: dict[str, list[EventHandler]] = defaultdict(list)
        self._by_session: dict[str, list[EventHandler]] = defaultdict(list)
        self._wildcard: list[EventHandler] = []
        self._history: deque[Event] = deque(maxlen=max_history)
        self._tasks: set[asyncio.Task[Any]] = set()

    # ------------------------------------------------------------------
    # Subscription
    # ------------------------------------------------------------------

    def subscribe(self, event_type: str, handler: EventHandler) -> None:
        self._by_type[event_type].append(handler)

    def subscribe_all(self, handler: EventHandler) -> None:
        self._wildcard.append(handler)

    def subscribe_session(self, session_id: str, handler: EventHandler) -> None:
        """Receive every event emitted for ``session_id``."""
        self._by_session[session_id].append(handler)

    def unsubscribe(self, event_type: str, handler: EventHandler) -> None:
        handlers = self._by_type.get(event_type, [])
        if handler in handlers:
            handlers.remove(handler)

    def unsubscribe_session(self, session_id: str) -> None:
        self._by_session.pop(session_id, None)

    # ------------------------------------------------------------------
    # Dispatch
    # ------------------------------------------------------------------

    def emit(self, event: Event) -> None:
        """Deliver ``event``.

        Sync handlers run inline and their errors are logged. Async
        handlers become tasks on the running loop and are skipped when
        no loop is running.
        """
        self._history.append(event)
        for handler in self._handlers_for(event):
            if inspect.iscoroutinefunction(handler):
                self._schedule(handler, event)
                continue
            try:
                handler(event)
            except Exception as e:
                logger.warning(
                    "Event handler %s failed for %s: %s",
                    _handler_name(handler), event.event_type, e,
                )

    def _handlers_for(self, event: Event) -> list[EventHandler]:
        handlers = list(self._wildcard)
        handlers.extend(self._by_type.get(event.event_type, ()))
        if event.session_id:
            handlers.extend(self._by_session.get(event.session_id, ()))
        return handlers

    def _schedule(self, handler: EventHandler, event: Event) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.debug("No running loop; async handler %s skipped", _handler_name(handler))
            return
        task = loop.create_task(handler(event))
        self._tasks.add(task)
        task.add_done_callback(self._task_finished)

    def _task_finished(self, task: asyncio.Task[Any]) -> None:
        self._tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.warning("Async event handler failed: %s", task.exception())

    # ------------------------------------------------------------------
    # History and lifecycle
    # ------------------------------------------------------------------

    def recent_events(
        self,
        limit: int = 50,
        event_type: str | None = None,
        session_id: str | None = None,
    ) -> list[Event]:
        events = [
            e for e in self._history
            if (event_type is None or e.event_type == event_type)
            and (session_id is None or e.session_id == session_id)
        ]
        return events[-limit:]

    def clear(self) -> None:
        """Drop handlers and history and cancel in-flight handler tasks."""
        self._by_type.clear()
        self._by_session.clear()
        self._wildcard.clear()
        self._history.clear()
        for task in list(self._tasks):
            task.cancel()
        self._tasks.clear()

    async def drain(self, timeout: float | None = None) -> None:
        """Wait for in-flight async handlers."""
        if not self._tasks:
            return
        pending = list(self._tasks)
        try:
            await asyncio.wait_for(asyncio.gather(*pending, return_exceptions=True), timeout)
        except TimeoutError:
            logger.warning("Timed out draining %d event handler task(s)", len(self._tasks))
