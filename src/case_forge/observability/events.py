"""
case-forge — event bus

File: src/case_forge/observability/events.py
Last updated: 2026-10-18

Purpose
- Fan pipeline events out to in-process observers (CLI progress, tests,
  metrics hooks) and keep a bounded history for replay.

Functional requirements
- A failing subscriber is recorded as a DispatchError; it never interrupts
  the pipeline or the other subscribers.
- Payloads are redacted before any subscriber sees them.
- Async subscribers are awaited by ``publish_async``; the synchronous
  ``publish`` reports them as dispatch errors.
"""

from __future__ import annotations

import inspect
import itertools
import threading
from collections import deque
from collections.abc import Callable, Coroutine, Iterator, Mapping
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Final, cast

from case_forge.domain.events import EventType, JSONValue, PipelineEvent, redact_sensitive
from case_forge.domain.ids import generate_event_id

Subscriber = Callable[[PipelineEvent], object]

_ERROR_HISTORY: Final[int] = 1024


@dataclass(frozen=True, slots=True)
class DispatchError:
    event_id: str
    target: str
    error_type: str
    message: str

    @classmethod
    def capture(cls, event: PipelineEvent, callback: Subscriber, exc: Exception) -> DispatchError:
        return cls(
            event_id=event.event_id,
            target=getattr(callback, "__name__", None) or type(callback).__name__,
            error_type=type(exc).__name__,
            message=str(exc),
        )


class EventBus:
    """Thread-safe subscriber registry with a replay buffer of ``buffer_size`` events."""

    def __init__(self, *, buffer_size: int = 512) -> None:
        if isinstance(buffer_size, bool) or not isinstance(buffer_size, int) or buffer_size <= 0:
            raise ValueError(f"buffer_size must be a positive integer, got {buffer_size!r}")
        self._history: deque[PipelineEvent] = deque(maxlen=buffer_size)
        self._errors: deque[DispatchError] = deque(maxlen=_ERROR_HISTORY)
        self._subscribers: dict[int, tuple[EventType | None, Subscriber]] = {}
        self._tokens = itertools.count(1)
        self._lock = threading.RLock()

    def subscribe(self, event_type: str | EventType | None, callback: Subscriber) -> int:
        """Register ``callback`` for one event type, or for every event when ``None``."""
        if not callable(callback):
            raise ValueError("callback must be callable")
        wanted = None if event_type is None else _event_type(event_type)
        with self._lock:
            token = next(self._tokens)
            self._subscribers[token] = (wanted, callback)
        return token

    def unsubscribe(self, token: int) -> bool:
        with self._lock:
            return self._subscribers.pop(token, None) is not None

    def publish(self, event: PipelineEvent) -> tuple[DispatchError, ...]:
        errors: list[DispatchError] = []
        for callback in self._deliveries(event):
            try:
                result = callback(event)
                if inspect.isawaitable(result):
                    if inspect.iscoroutine(result):
                        cast("Coroutine[object, object, object]", result).close()
                    raise TypeError("async subscriber requires publish_async or emit_async")
            except Exception as exc:  # noqa: BLE001
                errors.append(DispatchError.capture(event, callback, exc))
        return self._keep(errors)

    async def publish_async(self, event: PipelineEvent) -> tuple[DispatchError, ...]:
        errors: list[DispatchError] = []
        for callback in self._deliveries(event):
            try:
                result = callback(event)
                if inspect.isawaitable(result):
                    await result
            except Exception as exc:  # noqa: BLE001
                errors.append(DispatchError.capture(event, callback, exc))
        return self._keep(errors)

    def emit(
        self,
        event_type: str | EventType,
        payload: Mapping[str, object],
        *,
        correlation_id: str | None = None,
    ) -> tuple[PipelineEvent, tuple[DispatchError, ...]]:
        event = build_event(event_type, payload, correlation_id=correlation_id)
        return event, self.publish(event)

    async def emit_async(
        self,
        event_type: str | EventType,
        payload: Mapping[str, object],
        *,
        correlation_id: str | None = None,
    ) -> tuple[PipelineEvent, tuple[DispatchError, ...]]:
        event = build_event(event_type, payload, correlation_id=correlation_id)
        return event, await self.publish_async(event)

    def replay(
        self,
        *,
        since: datetime | None = None,
        event_type: str | EventType | None = None,
        limit: int | None = None,
    ) -> tuple[PipelineEvent, ...]:
        """Buffered events in publish order, newest ``limit`` kept."""
        if since is not None and since.utcoffset() is None:
            raise ValueError("since datetime must be timezone-aware")
        wanted = None if event_type is None else _event_type(event_type)
        with self._lock:
            matching = [
                event
                for event in self._history
                if (since is None or event.timestamp > since)
                and (wanted is None or event.event_type is wanted)
            ]
        if limit is None:
            return tuple(matching)
        return tuple(matching[-limit:]) if limit > 0 else ()

    def dispatch_errors(self) -> tuple[DispatchError, ...]:
        with self._lock:
            return tuple(self._errors)

    def _deliveries(self, event: PipelineEvent) -> Iterator[Subscriber]:
        if not isinstance(event, PipelineEvent):
            raise ValueError(f"event must be PipelineEvent, got {type(event).__name__}")
        with self._lock:
            self._history.append(event)
            subscribers = list(self._subscribers.values())
        return (callback for wanted, callback in subscribers if wanted in (None, event.event_type))

    def _keep(self, errors: list[DispatchError]) -> tuple[DispatchError, ...]:
        if errors:
            with self._lock:
                self._errors.extend(errors)
        return tuple(errors)


def build_event(
    event_type: str | EventType,
    payload: Mapping[str, object],
    *,
    correlation_id: str | None = None,
) -> PipelineEvent:
    """New event stamped now, with secret-looking payload keys redacted."""
    event = PipelineEvent(
        event_id=generate_event_id(),
        event_type=_event_type(event_type),
        timestamp=datetime.now(tz=UTC),
        correlation_id=correlation_id,
        payload=cast("dict[str, JSONValue]", dict(payload)),
    )
    return redact_sensitive(event)


def _event_type(value: str | EventType) -> EventType:
    try:
        return EventType(value.strip())
    except ValueError:
        raise ValueError(f"unknown event type {value!r}") from None


__all__ = ["DispatchError", "EventBus", "Subscriber", "build_event"]
