"""Run state machine, per-run broadcast channel, and the process-wide registry.

All Run mutation happens on the event loop that owns the run's task, through
Run.emit(): fields are updated, one event is appended and the event is
published to every subscriber without an await in between, so observers never
see a field change without its event (or the reverse).
"""

from __future__ import annotations

import asyncio
import logging
import threading
import uuid
from collections import deque
from typing import Optional

from .errors import RunFailure, RunNotFound
from .models import EventType, Job, LogLevel, RunEvent, RunMode, RunStatus, utc_now

logger = logging.getLogger(__name__)

_TERMINAL = {RunStatus.completed, RunStatus.failed}


class Subscription:
    """One observer's view of a run: the latest snapshot, then every later event.

    Iterate with `async for`; iteration stops once the run reaches a terminal
    state (after the terminal event) or the subscription is closed.
    """

    def __init__(self, broadcaster: "Broadcaster", maxsize: int = 0):
        self._broadcaster = broadcaster
        self._queue: asyncio.Queue[Optional[dict]] = asyncio.Queue(maxsize=maxsize)
        self.closed = False

    def _put(self, message: Optional[dict]) -> None:
        # A slow reader loses its oldest messages, never the newest or end-of-stream
        if self._queue.full():
            self._queue.get_nowait()
        self._queue.put_nowait(message)

    def push(self, message: Optional[dict]) -> None:
        if not self.closed:
            self._put(message)

    def end(self) -> None:
        """Signal end-of-stream after any queued messages."""
        self.push(None)

    async def get(self) -> Optional[dict]:
        """Next message, or None at end of stream or once closed."""
        if self.closed:
            return None
        return await self._queue.get()

    def close(self) -> None:
        """Detach from the run. Non-blocking; safe to call more than once."""
        if self.closed:
            return
        self._broadcaster.detach(self)
        self.closed = True
        self._put(None)

    def __aiter__(self):
        return self

    async def __anext__(self) -> dict:
        message = await self.get()
        if message is None:
            raise StopAsyncIteration
        return message


class Broadcaster:
    """Fan-out of run messages to a dynamic set of subscriptions."""

    def __init__(self, maxsize: int = 0):
        self._subscribers: set[Subscription] = set()
        self._closed = False
        self.maxsize = maxsize

    def attach(self, initial: dict) -> Subscription:
        sub = Subscription(self, maxsize=self.maxsize)
        sub.push(initial)
        if self._closed:
            sub.end()
        else:
            self._subscribers.add(sub)
        return sub

    def detach(self, sub: Subscription) -> None:
        self._subscribers.discard(sub)

    def publish(self, message: dict) -> None:
        for sub in list(self._subscribers):
            sub.push(message)

    def close(self) -> None:
        self._closed = True
        for sub in list(self._subscribers):
            sub.end()
        self._subscribers.clear()

    def __len__(self) -> int:
        return len(self._subscribers)


class Run:
    """A single execution of the crawl pipeline."""

    def __init__(self, run_id: str, mode: RunMode, max_events: int = 150):
        self.id = run_id
        self.mode = mode
        self.status = RunStatus.running
        self.progress = 0
        self.stage = "Queued"
        self.events: deque[RunEvent] = deque(maxlen=max_events)
        self.jobs: list[Job] = []
        self.created_at = utc_now()
        self.updated_at = self.created_at
        # Per-subscriber buffer matches the event retention cap
        self.broadcaster = Broadcaster(maxsize=max_events)

    @property
    def terminal(self) -> bool:
        return self.status in _TERMINAL

    def emit(
        self,
        event_type: EventType,
        *,
        stage: Optional[str] = None,
        progress: Optional[int] = None,
        message: str = "",
        level: LogLevel = LogLevel.info,
        status: Optional[RunStatus] = None,
        jobs: Optional[list[Job]] = None,
    ) -> RunEvent:
        """Apply an update, record it as an event and notify observers."""
        if self.terminal:
            raise RunFailure(f"Run {self.id} is already {self.status.value}")

        if progress is not None:
            # Never roll back
            self.progress = max(self.progress, min(100, int(progress)))
        if stage is not None:
            self.stage = stage
        if status is not None:
            self.status = status
        if jobs is not None:
            self.jobs = list(jobs)

        event = RunEvent(
            type=event_type,
            progress=self.progress,
            stage=self.stage,
            status=self.status,
            message=message,
            level=level,
        )
        self.events.append(event)
        self.updated_at = event.at

        payload = {"runId": self.id, **event.to_wire()}
        if event_type in (EventType.done, EventType.error):
            payload["jobs"] = [job.to_wire() for job in self.jobs]
        self.broadcaster.publish(payload)
        if self.terminal:
            self.broadcaster.close()
        return event

    def advance(self, stage: str, progress: int, jobs: Optional[list[Job]] = None) -> RunEvent:
        return self.emit(EventType.progress, stage=stage, progress=progress, jobs=jobs)

    def log(self, message: str, level: LogLevel = LogLevel.info) -> RunEvent:
        return self.emit(EventType.log, message=message, level=level)

    def complete(self, jobs: list[Job], message: str = "") -> RunEvent:
        return self.emit(
            EventType.done,
            stage="Completed",
            progress=100,
            status=RunStatus.completed,
            jobs=jobs,
            message=message or f"Completed with {len(jobs)} jobs.",
        )

    def fail(self, message: str) -> RunEvent:
        return self.emit(
            EventType.error,
            stage="Failed",
            status=RunStatus.failed,
            message=message,
            level=LogLevel.error,
        )

    def snapshot(self) -> dict:
        """Full current state, safe to serialize."""
        events = [event.to_wire() for event in self.events]
        return {
            "id": self.id,
            "mode": self.mode.value,
            "status": self.status.value,
            "progress": self.progress,
            "stage": self.stage,
            "createdAt": self.created_at.isoformat(),
            "updatedAt": self.updated_at.isoformat(),
            "events": events,
            "logs": [
                {"at": e["at"], "message": e["message"], "level": e["level"]}
                for e in events if e["message"]
            ],
            "jobs": [job.to_wire() for job in self.jobs],
        }

    def summary(self) -> dict:
        return {
            "id": self.id,
            "mode": self.mode.value,
            "status": self.status.value,
            "progress": self.progress,
            "stage": self.stage,
            "createdAt": self.created_at.isoformat(),
            "jobCount": len(self.jobs),
        }

    def subscribe(self) -> Subscription:
        """Attach an observer. The first message is always the current snapshot."""
        return self.broadcaster.attach({"type": "snapshot", **self.snapshot()})


class RunRegistry:
    """In-memory store of runs for the process lifetime."""

    def __init__(self, max_events: int = 150):
        self.max_events = max_events
        self._runs: dict[str, Run] = {}
        self._lock = threading.Lock()

    def create(self, mode: RunMode) -> Run:
        with self._lock:
            run_id = uuid.uuid4().hex[:12]
            while run_id in self._runs:
                run_id = uuid.uuid4().hex[:12]
            run = Run(run_id, mode, max_events=self.max_events)
            self._runs[run_id] = run
        logger.info("Created %s run %s", mode.value, run_id)
        return run

    def get(self, run_id: str) -> Run:
        with self._lock:
            run = self._runs.get(run_id)
        if run is None:
            raise RunNotFound(run_id)
        return run

    def list_runs(self) -> list[Run]:
        """All runs, newest first."""
        with self._lock:
            runs = list(self._runs.values())
        return sorted(runs, key=lambda r: r.created_at, reverse=True)

    def __contains__(self, run_id: object) -> bool:
        with self._lock:
            return run_id in self._runs

    def __len__(self) -> int:
        with self._lock:
            return len(self._runs)
