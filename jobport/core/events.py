"""
EventChannel — typed, synchronous lifecycle notifications.

Two registration modes
----------------------
on(event, listener)       fail-fast: a listener exception propagates to the
                          caller of emit() and later listeners are skipped.
on_safe(event, listener)  safe: a listener exception is classified with the
                          error mapper and re-published as `queue.error`.

Re-entrancy guard
-----------------
An exception raised by a safe listener while a `queue.error` dispatch is in
progress is re-raised rather than captured again. The guard is an explicit
flag on the channel, so it holds however the failing listener was reached.

Listeners are plain callables invoked synchronously, in registration order.
"""

from __future__ import annotations

import dataclasses
import logging
from collections.abc import Callable

from jobport.core.error_mapper import ErrorMapper
from jobport.domain.events import (
    EVENT_PAYLOADS,
    ErrorInfo,
    EventPayload,
    QueueErrorPayload,
    QueueEvent,
)

logger = logging.getLogger(__name__)

Listener = Callable[[EventPayload], object]


@dataclasses.dataclass(frozen=True)
class _Registration:
    listener: Listener
    safe: bool


@dataclasses.dataclass
class EventChannel:
    """
    Per-queue event channel.

    Parameters
    ----------
    queue_name : stamped on the `queue.error` payloads the channel creates
    mapper     : classifies listener exceptions captured in safe mode
    """

    queue_name: str
    mapper: ErrorMapper = dataclasses.field(default_factory=ErrorMapper)

    _listeners: dict[QueueEvent, list[_Registration]] = dataclasses.field(
        default_factory=dict, init=False, repr=False
    )
    _dispatching_error: bool = dataclasses.field(default=False, init=False, repr=False)

    # ------------------------------------------------------------------ #
    # Registration                                                         #
    # ------------------------------------------------------------------ #

    def on(self, event: QueueEvent | str, listener: Listener) -> Callable[[], None]:
        """Register a fail-fast listener. Returns an unsubscribe callable."""
        return self._register(QueueEvent(event), listener, safe=False)

    def on_safe(self, event: QueueEvent | str, listener: Listener) -> Callable[[], None]:
        """Register a listener whose failures are re-published as `queue.error`."""
        return self._register(QueueEvent(event), listener, safe=True)

    def off(self, event: QueueEvent | str, listener: Listener) -> None:
        regs = self._listeners.get(QueueEvent(event), [])
        self._listeners[QueueEvent(event)] = [r for r in regs if r.listener != listener]

    def listener_count(self, event: QueueEvent | str) -> int:
        return len(self._listeners.get(QueueEvent(event), []))

    def clear(self) -> None:
        self._listeners.clear()

    def _register(
        self, event: QueueEvent, listener: Listener, *, safe: bool
    ) -> Callable[[], None]:
        self._listeners.setdefault(event, []).append(_Registration(listener, safe))
        return lambda: self.off(event, listener)

    # ------------------------------------------------------------------ #
    # Delivery                                                             #
    # ------------------------------------------------------------------ #

    def emit(self, event: QueueEvent | str, payload: EventPayload) -> None:
        event = QueueEvent(event)
        expected = EVENT_PAYLOADS[event]
        if not isinstance(payload, expected):
            raise TypeError(
                f"{event.value!r} expects {expected.__name__}, got {type(payload).__name__}"
            )

        is_error_event = event is QueueEvent.QUEUE_ERROR
        previous = self._dispatching_error
        if is_error_event:
            self._dispatching_error = True
        try:
            # Snapshot: listeners may unsubscribe themselves while running.
            for reg in list(self._listeners.get(event, [])):
                if not reg.safe:
                    reg.listener(payload)
                    continue
                try:
                    reg.listener(payload)
                except Exception as exc:
                    if self._dispatching_error:
                        raise
                    self._capture(event, payload, exc)
        finally:
            self._dispatching_error = previous

    def _capture(self, event: QueueEvent, payload: EventPayload, exc: Exception) -> None:
        error = self.mapper.map(exc)
        if not self._listeners.get(QueueEvent.QUEUE_ERROR):
            logger.exception(
                "Listener for %r on queue %r failed (no queue.error listener)",
                event.value,
                self.queue_name,
            )
            return
        self.emit(
            QueueEvent.QUEUE_ERROR,
            QueueErrorPayload(
                queue_name=self.queue_name,
                error=ErrorInfo.from_error(error),
                source_event=event.value,
                job_id=getattr(payload, "job_id", None),
            ),
        )
