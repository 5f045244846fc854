"""Per-job publish/subscribe of progress and terminal events.

Every subscriber owns a queue; publishing only enqueues, so a slow reader
(e.g. a stalled SSE client) never holds up delivery to the others.
"""

import logging
import queue
import threading
from types import TracebackType
from typing import Any

logger = logging.getLogger(__name__)

JobEvent = dict[str, Any]

EVENT_PROGRESS = "progress"
EVENT_COMPLETE = "complete"
EVENT_ERROR = "error"
TERMINAL_EVENTS = (EVENT_COMPLETE, EVENT_ERROR)


def progress_event(progress: int) -> JobEvent:
    return {"type": EVENT_PROGRESS, "progress": progress}


def complete_event(result: dict[str, Any]) -> JobEvent:
    return {"type": EVENT_COMPLETE, "progress": 100, "result": result}


def error_event(message: str) -> JobEvent:
    return {"type": EVENT_ERROR, "error": message}


def is_terminal(event: JobEvent) -> bool:
    return event.get("type") in TERMINAL_EVENTS


class Subscription:
    """One listener's mailbox for a job's events."""

    def __init__(self, events: "JobEvents", maxsize: int = 0) -> None:
        self._events = events
        self._queue: queue.Queue[JobEvent] = queue.Queue(maxsize)
        self.closed = False

    @property
    def job_id(self) -> str:
        return self._events.job_id

    def deliver(self, event: JobEvent) -> None:
        """Enqueue an event without blocking.

        Raises:
            queue.Full: If the subscriber is bounded and not keeping up
        """
        self._queue.put_nowait(event)

    def get(self, timeout: float | None = None) -> JobEvent | None:
        """Next event, or None if none arrives within the timeout or the
        subscription has been closed."""
        if self.closed:
            return None
        try:
            return self._queue.get(timeout=timeout)
        except queue.Empty:
            return None

    def close(self) -> None:
        """Unsubscribe. Safe to call more than once."""
        self._events.remove(self)

    def __enter__(self) -> "Subscription":
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        self.close()


class JobEvents:
    """Subscriber registry for one job.

    The owning job serializes state changes with :meth:`add` and
    :meth:`publish` under its own lock, so a new subscriber's snapshot and
    later events never overlap or leave a gap.
    """

    def __init__(self, job_id: str) -> None:
        self.job_id = job_id
        self._subscribers: list[Subscription] = []
        self._lock = threading.Lock()

    def add(self, snapshot: JobEvent, maxsize: int = 0) -> Subscription:
        """Register a subscriber, seeding its queue with the current state."""
        subscription = Subscription(self, maxsize)
        subscription.deliver(snapshot)
        with self._lock:
            self._subscribers.append(subscription)
        return subscription

    def remove(self, subscription: Subscription) -> None:
        with self._lock:
            if subscription in self._subscribers:
                self._subscribers.remove(subscription)
            subscription.closed = True

    def publish(self, event: JobEvent) -> int:
        """Deliver an event to every current subscriber.

        Returns:
            Number of subscribers the event was delivered to
        """
        with self._lock:
            subscribers = list(self._subscribers)

        delivered = 0
        for subscription in subscribers:
            try:
                subscription.deliver(event)
                delivered += 1
            except Exception:
                logger.warning(
                    "Dropped %s event for a subscriber of job %s",
                    event.get("type"),
                    self.job_id,
                    exc_info=True,
                )
        return delivered

    def __len__(self) -> int:
        with self._lock:
            return len(self._subscribers)
