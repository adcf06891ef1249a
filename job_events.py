"""Job events and the best-effort bus that delivers them to listeners.

Wire names match what the desktop front end subscribes to:
``pipeline_log``, ``pipeline_stage``, ``pipeline_progress``, ``pipeline_done``.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import asdict, dataclass
from typing import Any, Callable, Optional, Union

logger = logging.getLogger(__name__)

ELLIPSIS = "…"
DEFAULT_LOG_LIMIT = 400


@dataclass(frozen=True)
class LogEvent:
    job_id: str
    text: str
    name = "pipeline_log"


@dataclass(frozen=True)
class StageEvent:
    job_id: str
    label: str
    name = "pipeline_stage"


@dataclass(frozen=True)
class ProgressEvent:
    job_id: str
    percent: float
    name = "pipeline_progress"


@dataclass(frozen=True)
class DoneEvent:
    job_id: str
    ok: bool
    message: str
    frames_dir: str
    frame_pattern: str
    name = "pipeline_done"


Event = Union[LogEvent, StageEvent, ProgressEvent, DoneEvent]
Listener = Callable[[Event], None]


def event_payload(event: Event) -> dict[str, Any]:
    """Flatten an event into a JSON-friendly dict including its wire name."""
    payload = asdict(event)
    payload["event"] = event.name
    return payload


def truncate_log_line(text: str, limit: int = DEFAULT_LOG_LIMIT) -> str:
    """Trim whitespace and cut to ``limit`` characters, ellipsis included."""
    line = text.strip()
    if len(line) > limit:
        line = line[: max(limit - len(ELLIPSIS), 0)] + ELLIPSIS
    return line


class EventBus:
    """Fan events out to subscribers.

    Delivery is local and synchronous on the publishing thread. A listener
    that raises is logged and skipped; it never affects the job.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._listeners: list[Listener] = []

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        with self._lock:
            self._listeners.append(listener)

        def unsubscribe() -> None:
            with self._lock:
                if listener in self._listeners:
                    self._listeners.remove(listener)

        return unsubscribe

    def publish(self, event: Event) -> None:
        with self._lock:
            listeners = list(self._listeners)
        for listener in listeners:
            try:
                listener(event)
            except Exception:
                logger.debug("Listener %r failed on %s", listener, event.name, exc_info=True)


class JobReporter:
    """Per-job publishing facade over an ``EventBus``.

    Enforces the per-job event contract: progress never goes backwards and
    stays in ``[0, 100]``, and ``done`` is published once, after which
    everything else is dropped. Reader threads and the job thread both
    publish through one reporter, so its state is lock-guarded.
    """

    def __init__(self, bus: EventBus, job_id: str, log_limit: int = DEFAULT_LOG_LIMIT) -> None:
        self.bus = bus
        self.job_id = job_id
        self.log_limit = log_limit
        self._lock = threading.RLock()
        self._last_percent: Optional[float] = None
        self._finished = False
        self.outcome: Optional[DoneEvent] = None

    @property
    def finished(self) -> bool:
        return self._finished

    @property
    def last_percent(self) -> Optional[float]:
        return self._last_percent

    def log(self, text: str) -> None:
        line = truncate_log_line(text, self.log_limit)
        if not line:
            return
        with self._lock:
            if self._finished:
                return
            self.bus.publish(LogEvent(self.job_id, line))

    def stage(self, label: str) -> None:
        with self._lock:
            if self._finished:
                return
            self.bus.publish(StageEvent(self.job_id, label))

    def progress(self, percent: float) -> None:
        value = max(0.0, min(100.0, float(percent)))
        with self._lock:
            if self._finished:
                return
            if self._last_percent is not None and value < self._last_percent:
                return
            self._last_percent = value
            self.bus.publish(ProgressEvent(self.job_id, value))

    def done(self, ok: bool, message: str, frames_dir: str, frame_pattern: str) -> bool:
        with self._lock:
            if self._finished:
                return False
            self._finished = True
            self.outcome = DoneEvent(self.job_id, ok, message, frames_dir, frame_pattern)
            self.bus.publish(self.outcome)
        return True
