#!/usr/bin/env python3
"""Processing events emitted while indexing

Listeners are plain callables taking one event. The dispatcher either calls
them synchronously on the indexing thread, or puts events on a queue the
caller drains on its own thread.
"""
from __future__ import annotations

import dataclasses
import enum
import logging
import queue
import threading
import typing

logger = logging.getLogger(__name__)


class FileStatus(enum.StrEnum):
    """Switch for what happened to one file"""

    INGESTED = "ingested"
    SKIPPED = "skipped"
    FAILED = "failed"


class DispatchMode(enum.StrEnum):
    """Switch for synchronous or queued event delivery"""

    SYNC = "sync"
    QUEUED = "queued"


@dataclasses.dataclass(frozen=True)
class ProcessingEvent:
    """Progress message of an indexing run"""

    source: str
    message: str
    percentage: float
    level: int = logging.INFO


@dataclasses.dataclass(frozen=True)
class FileProcessingEvent(ProcessingEvent):
    """Outcome of processing one file"""

    path: str = ""
    status: FileStatus = FileStatus.INGESTED

    @property
    def ingested(self) -> bool:
        return self.status == FileStatus.INGESTED


@dataclasses.dataclass(frozen=True)
class ExceptionEvent(ProcessingEvent):
    """Error raised while processing"""

    exception: BaseException | None = None


Listener = typing.Callable[[ProcessingEvent], None]


class EventDispatcher:
    """Fans processing events out to listeners or onto a queue"""

    def __init__(self, mode: DispatchMode = DispatchMode.SYNC):
        self.mode = DispatchMode(mode)
        self.channel: queue.Queue[ProcessingEvent] = queue.Queue()
        self._listeners: list[Listener] = []
        self._lock = threading.Lock()

    def add_listener(self, listener: Listener):
        with self._lock:
            self._listeners.append(listener)

    def remove_listener(self, listener: Listener):
        with self._lock:
            self._listeners.remove(listener)

    def clear(self):
        with self._lock:
            self._listeners.clear()

    def fire(self, event: ProcessingEvent):
        logger.log(event.level, "%s (%.0f%%)", event.message, event.percentage)
        if self.mode == DispatchMode.QUEUED:
            self.channel.put(event)
            return
        with self._lock:
            listeners = list(self._listeners)
        for listener in listeners:
            listener(event)

    def drain(self) -> list[ProcessingEvent]:
        """Remove and return every queued event"""
        events = []
        while True:
            try:
                events.append(self.channel.get_nowait())
            except queue.Empty:
                return events
