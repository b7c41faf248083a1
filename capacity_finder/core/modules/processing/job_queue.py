"""
Job queue module for capacity_finder.

This module holds the unit of encode work and the queue workers pull it from:
- Job / JobStatus with a strictly enforced lifecycle
- JobQueue: mutex-protected FIFO the workers of one level pull from
"""

import threading
import time
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from typing import Deque, List, Optional


class JobStatus(Enum):
    QUEUED = "queued"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    TIMED_OUT = "timed_out"

    @property
    def is_terminal(self) -> bool:
        return self in (JobStatus.SUCCEEDED, JobStatus.FAILED, JobStatus.TIMED_OUT)


class InvalidJobTransition(RuntimeError):
    """A job was moved between states in an order its lifecycle forbids."""


class QueueClosedError(RuntimeError):
    """enqueue() was called after the queue was closed."""


@dataclass
class Job:
    """One encode job for a load level."""
    id: str
    source: str
    target_duration: float
    index: int = 0
    status: JobStatus = JobStatus.QUEUED
    worker_id: Optional[int] = None
    start_time: Optional[float] = None
    end_time: Optional[float] = None
    return_code: Optional[int] = None
    error: Optional[str] = None
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False, compare=False)

    def mark_running(self, worker_id: int):
        with self._lock:
            if self.status is not JobStatus.QUEUED:
                raise InvalidJobTransition(f"{self.id}: {self.status.value} -> running")
            self.status = JobStatus.RUNNING
            self.worker_id = worker_id
            self.start_time = time.time()

    def finish(self, status: JobStatus, return_code: Optional[int] = None,
               error: Optional[str] = None):
        """Move a running job to its terminal status (exactly once)."""
        with self._lock:
            if not status.is_terminal:
                raise InvalidJobTransition(f"{self.id}: {status.value} is not a terminal status")
            if self.status is not JobStatus.RUNNING:
                raise InvalidJobTransition(f"{self.id}: {self.status.value} -> {status.value}")
            self.status = status
            self.return_code = return_code
            self.error = error
            self.end_time = time.time()

    @property
    def duration(self) -> Optional[float]:
        if self.start_time is None or self.end_time is None:
            return None
        return self.end_time - self.start_time


class JobQueue:
    """
    Ordered, lock-protected list of pending jobs.

    dequeue() is linearizable: reading and removing the head happen under
    one mutex, so no two callers can ever receive the same job. The queue
    never infers "no more work" from being empty; the producer calls
    close() once it has enqueued everything.
    """

    def __init__(self, jobs: Optional[List[Job]] = None):
        self._items: Deque[Job] = deque()
        self._lock = threading.Lock()
        self._closed = False
        for job in jobs or []:
            self.enqueue(job)

    def enqueue(self, job: Job):
        with self._lock:
            if self._closed:
                raise QueueClosedError(f"cannot enqueue {job.id}: queue is closed")
            self._items.append(job)

    def dequeue(self) -> Optional[Job]:
        """Remove and return the head, or None when nothing is queued."""
        with self._lock:
            if not self._items:
                return None
            return self._items.popleft()

    def close(self):
        """Signal that no further jobs will be enqueued."""
        with self._lock:
            self._closed = True

    @property
    def closed(self) -> bool:
        with self._lock:
            return self._closed

    def is_exhausted(self) -> bool:
        """True once the queue is closed and empty: workers may exit."""
        with self._lock:
            return self._closed and not self._items

    def is_empty(self) -> bool:
        with self._lock:
            return not self._items

    def drain(self) -> List[Job]:
        """Remove every remaining job (used at level teardown)."""
        with self._lock:
            remaining = list(self._items)
            self._items.clear()
            return remaining

    def __len__(self) -> int:
        with self._lock:
            return len(self._items)

