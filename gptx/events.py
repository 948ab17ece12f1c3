"""Typed publish/subscribe for conversation lifecycle events.

Emitting never blocks the caller: every subscription owns a bounded queue
drained by its own daemon worker thread, so a slow or failing handler only
delays itself. A subscription sees payloads in emission order, across all
of the event types it covers. Separate subscriptions are not ordered
relative to each other.
"""

import enum
import logging
import queue
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, Mapping

logger = logging.getLogger(__name__)

DEFAULT_QUEUE_SIZE = 1024
_POLL_INTERVAL = 0.05  # seconds between cancellation checks while idle


class EventType(str, enum.Enum):
    START = "start"
    REPLY = "reply"
    REASONING = "reasoning"
    TOOL_CALL = "tool_call"
    TOOL_RESULT = "tool_result"
    ERROR = "error"
    DONE = "done"


@dataclass(frozen=True)
class Payload:
    type: EventType
    data: Any


Handler = Callable[[Any], None]


class Subscription:
    """Handlers for one or more event types, sharing one delivery worker.

    ``cancel`` is only read: setting it stops delivery, but the bus never
    sets it. ``Subscription.cancel()`` uses a private stop flag.
    """

    def __init__(
        self,
        handlers: Mapping[EventType, Handler],
        cancel: threading.Event | None = None,
        queue_size: int = DEFAULT_QUEUE_SIZE,
    ):
        self.handlers = dict(handlers)
        self._cancel = cancel
        self._stop = threading.Event()
        self._queue: queue.Queue[Payload] = queue.Queue(maxsize=queue_size)
        self._idle = threading.Condition()
        self._pending = 0
        self._closed = False
        name = "+".join(t.value for t in self.handlers)
        self._thread = threading.Thread(
            target=self._run,
            name=f"gptx-{name}-subscriber",
            daemon=True,
        )
        self._thread.start()

    @property
    def cancelled(self) -> bool:
        return self._stopping() or self._closed

    def cancel(self) -> None:
        """Stop delivery. Queued payloads are discarded."""
        self._stop.set()

    def _stopping(self) -> bool:
        return self._stop.is_set() or (
            self._cancel is not None and self._cancel.is_set()
        )

    def offer(self, payload: Payload) -> bool:
        """Queue a payload without blocking. Returns False if it was dropped."""
        with self._idle:
            if self._closed or self._stopping():
                return False
            try:
                self._queue.put_nowait(payload)
            except queue.Full:
                logger.warning(
                    "dropping %s event: subscriber queue is full",
                    payload.type.value,
                )
                return False
            self._pending += 1
        return True

    def wait_idle(self, timeout: float | None = None) -> bool:
        """Block until every queued payload was handled or discarded."""
        deadline = None if timeout is None else time.monotonic() + timeout
        with self._idle:
            while self._pending:
                remaining = None if deadline is None else deadline - time.monotonic()
                if remaining is not None and remaining <= 0:
                    return False
                self._idle.wait(remaining)
        return True

    def _run(self) -> None:
        while not self._stopping():
            try:
                payload = self._queue.get(timeout=_POLL_INTERVAL)
            except queue.Empty:
                continue
            if not self._stopping():
                self._deliver(payload)
            with self._idle:
                self._pending -= 1
                self._idle.notify_all()
        self._shutdown()

    def _deliver(self, payload: Payload) -> None:
        handler = self.handlers[payload.type]
        try:
            handler(payload.data)
        except Exception:
            logger.exception("%s handler %r failed", payload.type.value, handler)

    def _shutdown(self) -> None:
        with self._idle:
            self._closed = True
            while True:
                try:
                    self._queue.get_nowait()
                except queue.Empty:
                    break
            self._pending = 0
            self._idle.notify_all()


class EventBus:
    """Fan-out of lifecycle payloads to zero or more subscribers per type."""

    def __init__(self, queue_size: int = DEFAULT_QUEUE_SIZE):
        self._queue_size = queue_size
        self._lock = threading.Lock()
        self._subscriptions: dict[EventType, list[Subscription]] = {
            t: [] for t in EventType
        }

    def subscribe(
        self,
        event_type: EventType | str,
        handler: Handler,
        cancel: threading.Event | None = None,
    ) -> Subscription:
        """Invoke handler(data) for every future emission of event_type.

        Setting ``cancel`` (or calling ``Subscription.cancel()``) ends the
        subscription; payloads still queued for it are discarded.
        """
        return self.subscribe_many({event_type: handler}, cancel)

    def subscribe_many(
        self,
        handlers: Mapping[EventType | str, Handler],
        cancel: threading.Event | None = None,
    ) -> Subscription:
        """Like subscribe(), for several types delivered by one worker.

        Handlers run one at a time, in emission order across all the
        types, so a TOOL_CALL is always handled before its TOOL_RESULT.
        """
        if not handlers:
            raise ValueError("no handlers given")
        typed = {EventType(t): h for t, h in handlers.items()}
        sub = Subscription(typed, cancel, self._queue_size)
        with self._lock:
            for event_type in typed:
                self._subscriptions[event_type].append(sub)
        return sub

    def emit(self, event_type: EventType | str, data: Any = None) -> None:
        payload = Payload(EventType(event_type), data)
        with self._lock:
            subs = self._subscriptions[payload.type]
            subs[:] = [s for s in subs if not s.cancelled]
            targets = list(subs)
        for sub in targets:
            sub.offer(payload)

    def subscribers(self, event_type: EventType | str) -> int:
        with self._lock:
            return sum(
                1 for s in self._subscriptions[EventType(event_type)] if not s.cancelled
            )

    def _all(self) -> list[Subscription]:
        with self._lock:
            unique = {
                id(s): s for group in self._subscriptions.values() for s in group
            }
        return list(unique.values())

    def flush(self, timeout: float | None = None) -> bool:
        """Wait until all queued payloads were delivered. False on timeout."""
        deadline = None if timeout is None else time.monotonic() + timeout
        for sub in self._all():
            remaining = None if deadline is None else max(0.0, deadline - time.monotonic())
            if not sub.wait_idle(remaining):
                return False
        return True

    def close(self, timeout: float | None = None) -> None:
        """Deliver what is queued (up to timeout), then stop every worker.

        Cancel events passed to subscribe() are left untouched.
        """
        self.flush(timeout)
        subs = self._all()
        with self._lock:
            for group in self._subscriptions.values():
                group.clear()
        for sub in subs:
            sub.cancel()
