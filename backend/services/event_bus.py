"""In-process event bus.

Every component publishes its state changes here; the gateway, the log
subscriber and any local listener subscribe. Emission is synchronous and in
subscription order, so a listener observes events in the order they were
emitted. Coroutine results are scheduled on the running loop.
"""

from __future__ import annotations

import asyncio
from collections import Counter
from typing import Any, Callable, Iterable, Optional

from models.events import BusEvent, EventName
from utils.logger import get_logger

logger = get_logger("event_bus")

Listener = Callable[[BusEvent], Any]


def _exception_text(exc: BaseException) -> str:
    """Return a non-empty exception string for structured logging."""
    text = str(exc).strip()
    return text if text else repr(exc)


class EventBus:
    def __init__(self) -> None:
        self._listeners: list[tuple[Listener, Optional[frozenset[EventName]]]] = []
        self._counts: Counter[str] = Counter()
        self._pending: set[asyncio.Task] = set()

    def subscribe(
        self,
        listener: Listener,
        names: Optional[Iterable[EventName]] = None,
    ) -> Callable[[], None]:
        """Register ``listener`` for ``names`` (all events when omitted).

        Returns a callable that removes the subscription.
        """
        entry = (listener, frozenset(EventName(n) for n in names) if names is not None else None)
        self._listeners.append(entry)

        def _unsubscribe() -> None:
            try:
                self._listeners.remove(entry)
            except ValueError:
                pass

        return _unsubscribe

    def unsubscribe(self, listener: Listener) -> None:
        self._listeners = [entry for entry in self._listeners if entry[0] is not listener]

    def emit(self, name: EventName | str, data: Any = None) -> BusEvent:
        event = BusEvent(name=EventName(name), data=data)
        self._counts[event.name.value] += 1

        for listener, names in list(self._listeners):
            if names is not None and event.name not in names:
                continue
            try:
                result = listener(event)
                if asyncio.iscoroutine(result):
                    task = asyncio.get_running_loop().create_task(result)
                    self._pending.add(task)
                    task.add_done_callback(self._on_listener_done)
            except Exception as e:
                logger.error(
                    "Event listener error",
                    event=event.name.value,
                    error_type=type(e).__name__,
                    error=_exception_text(e),
                    listener=getattr(listener, "__name__", str(listener)),
                )
        return event

    def _on_listener_done(self, task: asyncio.Task) -> None:
        self._pending.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error(
                "Async event listener error",
                error_type=type(exc).__name__,
                error=_exception_text(exc),
            )

    def stats(self) -> dict[str, int]:
        return dict(self._counts)
