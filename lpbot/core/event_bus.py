"""
Event Bus: notification channel for engine lifecycle events.

The engine publishes through the EventSink contract (`publish(name, payload)`);
BusEventSink adapts that to the queued EventBus below. Delivery is strictly
best-effort: publishing never raises into the caller and handlers run on the
bus task, so nothing a subscriber does can influence a retry outcome or a
state transition.

Features:
- Event kinds keyed by their wire names (retry.*, stoploss.triggered, ...)
- Async or sync handlers with priority ordering
- Error isolation (one failing handler doesn't stop the others)
- Bounded event history for debugging
- Counters for published/processed/dropped events
"""

from __future__ import annotations

import asyncio
import inspect
import logging
import time
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Coroutine, Deque, Dict, List, Optional, Set, Union

log = logging.getLogger("lpbot")


class EventType(str, Enum):
    """Published event kinds. Values are the names seen by sinks."""
    RETRY_STARTED = "retry.started"
    RETRY_ATTEMPT = "retry.attempt"
    RETRY_SUCCESS = "retry.success"
    RETRY_FAILED = "retry.failed"
    STOPLOSS_TRIGGERED = "stoploss.triggered"
    RECREATION_TRIGGERED = "recreation.triggered"
    INSTANCE_STATUS_CHANGED = "instance.status-changed"


@dataclass
class Event:
    """
    Event container.

    `instance_id` is lifted out of the payload when present so subscribers
    can filter per instance without digging into data.
    """
    type: EventType
    data: Dict[str, Any]
    timestamp_ms: int = field(default_factory=lambda: int(time.time() * 1000))
    source: Optional[str] = None

    @property
    def instance_id(self) -> Optional[str]:
        return self.data.get("instance_id")

    def __str__(self) -> str:
        return f"Event({self.type.value}, ts={self.timestamp_ms}, instance={self.instance_id})"


Handler = Union[
    Callable[[Event], Coroutine[Any, Any, None]],
    Callable[[Event], None],
]


@dataclass
class Subscription:
    handler: Handler
    priority: int = 0  # higher runs first
    filter_fn: Optional[Callable[[Event], bool]] = None
    name: Optional[str] = None


class EventBus:
    """
    Queued pub/sub bus.

    Usage:
        bus = EventBus()
        bus.subscribe(EventType.STOPLOSS_TRIGGERED, on_stop_loss)
        task = asyncio.create_task(bus.start())
        ...
        bus.stop()
    """

    DEFAULT_HISTORY_SIZE = 1000

    def __init__(
        self,
        history_size: int = DEFAULT_HISTORY_SIZE,
        queue_size: int = 0,
        log_event: Optional[Callable[..., None]] = None,
    ) -> None:
        self._log = log_event or self._default_log
        self._subscribers: Dict[EventType, List[Subscription]] = {}
        self._global_subscribers: List[Subscription] = []
        self._queue: asyncio.Queue[Event] = asyncio.Queue(maxsize=max(queue_size, 0))
        self._running = False
        self._history: Deque[Event] = deque(maxlen=history_size if history_size > 0 else None)
        self._history_enabled = history_size > 0
        self._stats = {
            "events_published": 0,
            "events_processed": 0,
            "events_dropped": 0,
            "handler_errors": 0,
        }

    def _default_log(self, event: str, **kwargs: Any) -> None:
        log.debug(f'{{"event":"{event}",{",".join(f"{k}:{v}" for k, v in kwargs.items())}}}')

    # ------------------------------------------------------------------
    # Subscriptions
    # ------------------------------------------------------------------

    @staticmethod
    def _insert_by_priority(subs: List[Subscription], sub: Subscription) -> None:
        idx = len(subs)
        for i, existing in enumerate(subs):
            if existing.priority < sub.priority:
                idx = i
                break
        subs.insert(idx, sub)

    def subscribe(
        self,
        event_type: EventType,
        handler: Handler,
        priority: int = 0,
        filter_fn: Optional[Callable[[Event], bool]] = None,
        name: Optional[str] = None,
    ) -> Subscription:
        sub = Subscription(handler=handler, priority=priority, filter_fn=filter_fn, name=name)
        self._insert_by_priority(self._subscribers.setdefault(event_type, []), sub)
        self._log(
            "event_bus_subscribe",
            event_type=event_type.value,
            handler_name=name or getattr(handler, "__name__", "handler"),
            priority=priority,
        )
        return sub

    def subscribe_all(
        self,
        handler: Handler,
        priority: int = 0,
        filter_fn: Optional[Callable[[Event], bool]] = None,
        name: Optional[str] = None,
    ) -> Subscription:
        """Receive every event. Global subscribers run before type-specific ones."""
        sub = Subscription(handler=handler, priority=priority, filter_fn=filter_fn, name=name)
        self._insert_by_priority(self._global_subscribers, sub)
        return sub

    def unsubscribe(self, event_type: Optional[EventType], subscription: Subscription) -> bool:
        subs = self._global_subscribers if event_type is None else self._subscribers.get(event_type, [])
        if subscription in subs:
            subs.remove(subscription)
            return True
        return False

    # ------------------------------------------------------------------
    # Publishing
    # ------------------------------------------------------------------

    def publish_nowait(self, event: Event) -> bool:
        """Queue an event without awaiting. Returns False if the queue is full."""
        try:
            self._queue.put_nowait(event)
        except asyncio.QueueFull:
            self._stats["events_dropped"] += 1
            self._log("event_bus_queue_full", event_type=event.type.value)
            return False
        self._stats["events_published"] += 1
        return True

    async def publish(self, event: Event) -> bool:
        return self.publish_nowait(event)

    async def emit(self, event_type: EventType, source: Optional[str] = None, **data: Any) -> bool:
        return await self.publish(Event(type=event_type, data=data, source=source))

    # ------------------------------------------------------------------
    # Processing
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Process events until stop(). Run as a background task."""
        self._running = True
        self._log("event_bus_started")
        while self._running:
            try:
                event = await asyncio.wait_for(self._queue.get(), timeout=1.0)
            except asyncio.TimeoutError:
                continue
            except asyncio.CancelledError:
                self._log("event_bus_cancelled")
                break
            await self._process_event(event)
        self._log("event_bus_stopped")

    async def _process_event(self, event: Event) -> None:
        if self._history_enabled:
            self._history.append(event)

        handlers = list(self._global_subscribers) + list(self._subscribers.get(event.type, []))
        for sub in handlers:
            if sub.filter_fn and not sub.filter_fn(event):
                continue
            try:
                result = sub.handler(event)
                if asyncio.iscoroutine(result):
                    await result
            except Exception as e:
                self._stats["handler_errors"] += 1
                self._log(
                    "event_bus_handler_error",
                    event_type=event.type.value,
                    handler_name=sub.name or "unknown",
                    error=str(e),
                    error_type=type(e).__name__,
                )
        self._stats["events_processed"] += 1

    def stop(self) -> None:
        self._running = False

    async def drain(self, timeout: float = 5.0) -> int:
        """Process everything currently queued. Returns the number processed."""
        count = 0
        deadline = time.time() + timeout
        while not self._queue.empty() and time.time() < deadline:
            try:
                event = self._queue.get_nowait()
            except asyncio.QueueEmpty:
                break
            await self._process_event(event)
            count += 1
        return count

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_history(self, event_type: Optional[EventType] = None, limit: int = 100) -> List[Event]:
        events = list(self._history)
        if event_type:
            events = [e for e in events if e.type == event_type]
        return events[-limit:]

    def get_stats(self) -> Dict[str, Any]:
        return {
            **self._stats,
            "queue_size": self._queue.qsize(),
            "history_size": len(self._history),
            "subscriber_count": sum(len(s) for s in self._subscribers.values()),
            "global_subscriber_count": len(self._global_subscribers),
            "running": self._running,
        }


class BusEventSink:
    """
    EventSink adapter over EventBus.

    Unknown event names are dropped with a debug line; a full queue is
    counted by the bus. Neither case raises.
    """

    def __init__(self, bus: EventBus, source: str = "engine") -> None:
        self._bus = bus
        self._source = source

    def publish(self, event_name: str, payload: Dict[str, Any]) -> bool:
        try:
            event_type = EventType(event_name)
        except ValueError:
            log.debug(f'{{"event":"event_sink_unknown","name":"{event_name}"}}')
            return False
        return self._bus.publish_nowait(Event(type=event_type, data=dict(payload), source=self._source))


_pending_publishes: Set[asyncio.Future] = set()


def publish_safely(
    sink: Optional[Any],
    event_name: str,
    payload: Dict[str, Any],
    on_error: Optional[Callable[[str, BaseException], None]] = None,
) -> None:
    """
    Fire-and-forget publish to an EventSink.

    Sync and async sinks are both accepted. Failures, raised or from an
    awaited result, go to `on_error` and never reach the caller.
    """
    if sink is None:
        return

    def _report(exc: BaseException) -> None:
        if on_error is not None:
            on_error(event_name, exc)
        else:
            log.warning(f'{{"event":"event_publish_failed","event_name":"{event_name}","error":"{exc}"}}')

    def _done(fut: asyncio.Future) -> None:
        _pending_publishes.discard(fut)
        if not fut.cancelled() and fut.exception() is not None:
            _report(fut.exception())

    try:
        result = sink.publish(event_name, payload)
        if inspect.isawaitable(result):
            fut = asyncio.ensure_future(result)
            _pending_publishes.add(fut)
            fut.add_done_callback(_done)
    except Exception as exc:
        _report(exc)
