"""
Log Broadcaster
===============

Per-job progress log with a single live subscriber.

Every line is kept in the job's log. A subscriber receives ``connected``,
the backlog, live ``log`` events and exactly one terminal event
(``complete`` or ``error``). Delivery to the subscriber never blocks the
job: when its queue is full, live lines are dropped for that subscriber
(they remain in the stored log).
"""

import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import AsyncIterator, Optional

import structlog

from proxyforge.core.config import settings

logger = structlog.get_logger()

TERMINAL_EVENTS = ("complete", "error")


@dataclass(frozen=True)
class LogLine:
    """One line of job progress."""
    text: str
    level: str = "info"
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_event(self) -> dict:
        return {
            "type": "log",
            "message": self.text,
            "level": self.level,
            "timestamp": self.timestamp.isoformat(),
        }


class LogStream:
    """Event stream handed to one subscriber."""

    _END = object()

    def __init__(self, job_id: str, maxsize: int):
        self.job_id = job_id
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=maxsize)
        self.dropped = 0
        self.finished = False

    def _offer(self, event: dict) -> bool:
        try:
            self._queue.put_nowait(event)
            return True
        except asyncio.QueueFull:
            self.dropped += 1
            return False

    def _force(self, item) -> None:
        # Terminal items must always land, even on a full queue
        if self._queue.full():
            self._queue.get_nowait()
            self.dropped += 1
        self._queue.put_nowait(item)

    def _finish(self, event: Optional[dict]) -> None:
        if self.finished:
            return
        self.finished = True
        self._force(event if event is not None else self._END)

    async def __aiter__(self) -> AsyncIterator[dict]:
        while True:
            item = await self._queue.get()
            if item is self._END:
                return
            yield item
            if item.get("type") in TERMINAL_EVENTS:
                return


class LogBroadcaster:
    """
    Stores job logs and fans them out to live subscribers.

    Features:
    - Append-only per-job log, readable at any time
    - One live subscriber per job; a new subscription replaces the old one
    - Terminal event emitted exactly once, also to late subscribers
    """

    def __init__(self, queue_size: int = settings.STREAM_QUEUE_SIZE):
        self.queue_size = queue_size
        self._logs: dict[str, list[LogLine]] = {}
        self._subscribers: dict[str, LogStream] = {}
        self._terminal: dict[str, dict] = {}
        self._lock = asyncio.Lock()

    async def append(self, job_id: str, text: str, level: str = "info") -> LogLine:
        """Record a line and forward it to the live subscriber, if any."""
        line = LogLine(text=text, level=level)
        async with self._lock:
            self._logs.setdefault(job_id, []).append(line)
            stream = self._subscribers.get(job_id)
            if stream and not stream._offer(line.to_event()):
                logger.debug("Subscriber queue full, line dropped", job_id=job_id)
        return line

    async def subscribe(self, job_id: str) -> LogStream:
        """
        Open a live stream for a job.

        The backlog is queued under the lock, so no line can slip between
        the backlog and the live feed.
        """
        async with self._lock:
            backlog = list(self._logs.get(job_id, []))
            stream = LogStream(job_id, maxsize=max(self.queue_size, len(backlog) + 2))
            stream._offer({"type": "connected", "job_id": job_id})
            for line in backlog:
                stream._offer(line.to_event())

            terminal = self._terminal.get(job_id)
            if terminal:
                stream._finish(terminal)
                return stream

            previous = self._subscribers.get(job_id)
            if previous:
                previous._finish(None)
                logger.info("Subscriber replaced", job_id=job_id)
            self._subscribers[job_id] = stream

        return stream

    async def unsubscribe(self, job_id: str, stream: Optional[LogStream] = None) -> None:
        """Detach the live subscriber (only ``stream`` if given)."""
        async with self._lock:
            current = self._subscribers.get(job_id)
            if current is None or (stream is not None and current is not stream):
                return
            del self._subscribers[job_id]
            current._finish(None)

    async def close(self, job_id: str, event: dict) -> bool:
        """
        Emit the job's terminal event.

        Args:
            job_id: Job identifier
            event: ``{"type": "complete", ...}`` or ``{"type": "error", ...}``

        Returns:
            False if the job was already closed
        """
        if event.get("type") not in TERMINAL_EVENTS:
            raise ValueError(f"Not a terminal event: {event.get('type')}")

        async with self._lock:
            if job_id in self._terminal:
                return False
            self._terminal[job_id] = event
            stream = self._subscribers.pop(job_id, None)
            if stream:
                stream._finish(event)

        logger.debug("Log stream closed", job_id=job_id, terminal=event["type"])
        return True

    def get_log(self, job_id: str) -> list[LogLine]:
        return list(self._logs.get(job_id, []))

    def is_closed(self, job_id: str) -> bool:
        return job_id in self._terminal

    def has_subscriber(self, job_id: str) -> bool:
        return job_id in self._subscribers

    async def forget(self, job_id: str) -> None:
        """Drop a job's stored log and terminal event."""
        async with self._lock:
            self._logs.pop(job_id, None)
            self._terminal.pop(job_id, None)
            stream = self._subscribers.pop(job_id, None)
            if stream:
                stream._finish(None)
