from __future__ import annotations

import logging
import threading
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Callable

from .canonical import to_canonical_json
from .models import Clock, utc_now

logger = logging.getLogger(__name__)

JOB_STARTED = "job:started"
JOB_PAUSED = "job:paused"
JOB_CANCELLED = "job:cancelled"
JOB_DONE = "job:done"
JOB_ERROR = "job:error"
ITEM_RUNNING = "item:running"
ITEM_PROGRESS = "item:progress"
ITEM_BUILT = "item:built"
ITEM_FAILED = "item:failed"

EVENT_NAMES: frozenset[str] = frozenset(
    {
        JOB_STARTED,
        JOB_PAUSED,
        JOB_CANCELLED,
        JOB_DONE,
        JOB_ERROR,
        ITEM_RUNNING,
        ITEM_PROGRESS,
        ITEM_BUILT,
        ITEM_FAILED,
    }
)


@dataclass(frozen=True)
class BatchEvent:
    name: str
    job_id: str
    payload: dict[str, Any] = field(default_factory=dict)
    ts: datetime = field(default_factory=utc_now)

    def to_dict(self) -> dict[str, Any]:
        return {"event": self.name, "jobId": self.job_id, "ts": self.ts.isoformat(), **self.payload}


EventHandler = Callable[[BatchEvent], None]
Emitter = Callable[..., BatchEvent]


@dataclass(frozen=True)
class Subscription:
    """Handle returned by ``subscribe``; pass it back to ``unsubscribe``."""

    token: str
    job_id: str | None
    handler: EventHandler


class EventBroadcaster:
    """Synchronous per-job fan-out of progress events.

    Delivery is at-most-once with no replay: a subscriber sees only events
    published after it subscribed.  Handlers run on the publishing thread,
    outside the registry lock, and a handler that raises is logged and skipped.
    """

    def __init__(self, *, clock: Clock = utc_now) -> None:
        self._lock = threading.RLock()
        self._by_job: dict[str, dict[str, Subscription]] = {}
        self._global: dict[str, Subscription] = {}
        self._clock = clock

    def subscribe(self, job_id: str, handler: EventHandler) -> Subscription:
        subscription = Subscription(token=uuid.uuid4().hex, job_id=job_id, handler=handler)
        with self._lock:
            self._by_job.setdefault(job_id, {})[subscription.token] = subscription
        return subscription

    def subscribe_all(self, handler: EventHandler) -> Subscription:
        subscription = Subscription(token=uuid.uuid4().hex, job_id=None, handler=handler)
        with self._lock:
            self._global[subscription.token] = subscription
        return subscription

    def unsubscribe(self, subscription: Subscription) -> bool:
        with self._lock:
            if subscription.job_id is None:
                return self._global.pop(subscription.token, None) is not None
            handlers = self._by_job.get(subscription.job_id)
            if not handlers or handlers.pop(subscription.token, None) is None:
                return False
            if not handlers:
                del self._by_job[subscription.job_id]
            return True

    def subscriber_count(self, job_id: str) -> int:
        with self._lock:
            return len(self._by_job.get(job_id, {}))

    def clear(self) -> None:
        with self._lock:
            self._by_job.clear()
            self._global.clear()

    def publish(self, name: str, job_id: str, payload: dict[str, Any] | None = None) -> BatchEvent:
        """Deliver one event to the job's subscribers and to global subscribers.

        Raises:
            ValueError: If ``name`` is not a known event name.
        """
        if name not in EVENT_NAMES:
            raise ValueError(f"Unknown batch event name: {name!r}")
        event = BatchEvent(name=name, job_id=job_id, payload=dict(payload or {}), ts=self._clock())
        with self._lock:
            targets = list(self._by_job.get(job_id, {}).values()) + list(self._global.values())
        for subscription in targets:
            try:
                subscription.handler(event)
            except Exception:
                logger.exception("Event handler failed for %s on job %s", name, job_id)
        return event

    def emitter_for(self, job_id: str) -> Emitter:
        """Bind ``publish`` to one job: ``emit(name, **payload)``."""

        def emit(name: str, **payload: Any) -> BatchEvent:
            return self.publish(name, job_id, payload)

        return emit


class EventJournal:
    """Subscriber that appends every event to ``events-YYYY-MM-DD.jsonl``.

    Write failures are logged and dropped; journaling never interrupts a run.
    """

    def __init__(self, log_dir: Path) -> None:
        self.log_dir = log_dir

    def path_for(self, event: BatchEvent) -> Path:
        return self.log_dir / f"events-{event.ts.strftime('%Y-%m-%d')}.jsonl"

    def __call__(self, event: BatchEvent) -> None:
        try:
            line = to_canonical_json(event.to_dict())
            self.log_dir.mkdir(parents=True, exist_ok=True)
            with self.path_for(event).open("a", encoding="utf-8") as handle:
                handle.write(line + "\n")
        except (OSError, TypeError, ValueError) as exc:
            logger.error("Failed to journal event %s for job %s: %s", event.name, event.job_id, exc)

    def attach(self, broadcaster: EventBroadcaster) -> Subscription:
        return broadcaster.subscribe_all(self)
