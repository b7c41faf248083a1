"""
Worker pool module for capacity_finder.

This module executes queued encode jobs with a fixed number of workers:
- JobCounters: lock-protected success/failure tallies
- Worker: long-lived loop pulling jobs and supervising one EncodeTask at a time
- WorkerPool: starts workers, replaces those retired after their lifetime,
  and cancels everything when the level deadline passes
"""

import subprocess
import threading
import time
from pathlib import Path
from typing import Callable, Dict, List, Optional, Tuple

from ....utils.logging import get_logger
from ..system.system_utils import (
    DEFAULT_KILL_GRACE, terminate_process, track_process, untrack_process,
)
from .encode_task import EncodeTask
from .job_queue import Job, JobQueue, JobStatus

logger = get_logger("worker_pool")

DEFAULT_GRACE_PERIOD = 10.0
DEFAULT_POLL_INTERVAL = 0.5
DEFAULT_MAX_LIFETIME = 300.0


class JobCounters:
    """Monotonic per-level tallies; every finished job is recorded exactly once."""

    def __init__(self):
        self._lock = threading.Lock()
        self._succeeded = 0
        self._failed = 0
        self._timed_out = 0

    def record(self, status: JobStatus):
        with self._lock:
            if status is JobStatus.SUCCEEDED:
                self._succeeded += 1
            elif status is JobStatus.FAILED:
                self._failed += 1
            elif status is JobStatus.TIMED_OUT:
                # Timeouts are failures with extra detail
                self._failed += 1
                self._timed_out += 1
            else:
                raise ValueError(f"cannot count non-terminal status {status.value}")

    @property
    def succeeded(self) -> int:
        with self._lock:
            return self._succeeded

    @property
    def failed(self) -> int:
        with self._lock:
            return self._failed

    @property
    def timed_out(self) -> int:
        with self._lock:
            return self._timed_out

    @property
    def completed(self) -> int:
        with self._lock:
            return self._succeeded + self._failed

    def snapshot(self) -> Dict[str, int]:
        with self._lock:
            return {
                "succeeded": self._succeeded,
                "failed": self._failed,
                "timed_out": self._timed_out,
            }


class Worker:
    """
    One long-lived job loop.

    The loop dequeues a job, launches it through the EncodeTask and waits for
    it with a hard deadline of target duration + grace period. Past the
    deadline (or when the pool is cancelled) the process is terminated,
    gracefully first. Job-level errors never escape the loop; they end up
    in the shared counters.
    """

    def __init__(self, worker_id: int, queue: JobQueue, encode_task: EncodeTask,
                 counters: JobCounters, sink_root: Path, stop_event: threading.Event,
                 grace_period: float = DEFAULT_GRACE_PERIOD,
                 kill_grace: float = DEFAULT_KILL_GRACE,
                 max_lifetime: Optional[float] = DEFAULT_MAX_LIFETIME,
                 poll_interval: float = DEFAULT_POLL_INTERVAL,
                 on_job_done: Optional[Callable[[Job], None]] = None):
        self.id = worker_id
        self.queue = queue
        self.encode_task = encode_task
        self.counters = counters
        self.sink_root = Path(sink_root)
        self.grace_period = grace_period
        self.kill_grace = kill_grace
        self.max_lifetime = max_lifetime
        self.poll_interval = poll_interval
        self.on_job_done = on_job_done
        self._stop = stop_event

        self.started_at = time.monotonic()
        self.current_job: Optional[Job] = None
        self.process_handle = None
        self.jobs_done = 0
        # busy is raised before dequeue() so "queue empty and nobody busy"
        # can never observe a job in between the queue and a worker
        self.busy = False
        self.retired = False
        self.exited = False

    def lifetime_exceeded(self) -> bool:
        if not self.max_lifetime:
            return False
        return time.monotonic() - self.started_at >= self.max_lifetime

    def run(self):
        logger.worker(f"Worker {self.id} started")
        try:
            while not self._stop.is_set():
                if self.lifetime_exceeded():
                    self.retired = True
                    logger.worker(f"Worker {self.id} retiring after {self.max_lifetime:.0f}s "
                                  f"({self.jobs_done} jobs)")
                    break

                self.busy = True
                job = self.queue.dequeue()
                if job is None:
                    self.busy = False
                    if self.queue.is_exhausted():
                        break
                    self._stop.wait(self.poll_interval)
                    continue

                try:
                    self._execute(job)
                finally:
                    self.current_job = None
                    self.busy = False
        finally:
            self.busy = False
            self.exited = True
            logger.worker(f"Worker {self.id} exiting")

    def _execute(self, job: Job):
        job.mark_running(self.id)
        self.current_job = job
        sink = self.sink_root / f"job_{job.id}"
        deadline = time.monotonic() + job.target_duration + self.grace_period
        logger.worker(f"Worker {self.id} processing job {job.id}")

        try:
            handle = self.encode_task.launch(job, sink)
        except Exception as e:
            logger.warn(f"Job {job.id} failed to launch: {e}")
            self._finish(job, JobStatus.FAILED, error=f"launch failed: {e}")
            return

        self.process_handle = handle
        track_process(handle)
        try:
            status, return_code, error = self._wait(job, handle, deadline, sink)
        except Exception as e:
            logger.warn(f"Job {job.id} lost its process handle: {e}")
            status, return_code, error = JobStatus.FAILED, None, f"process error: {e}"
            self._abandon(handle)
        finally:
            untrack_process(handle)
            self.process_handle = None

        self._finish(job, status, return_code, error)

    def _abandon(self, handle):
        try:
            terminate_process(handle, self.kill_grace)
        except Exception as e:
            logger.debug(f"Worker {self.id} could not terminate process: {e}")

    def _wait(self, job: Job, handle, deadline: float,
              sink: Path) -> Tuple[JobStatus, Optional[int], Optional[str]]:
        while True:
            if self._stop.is_set():
                return_code = terminate_process(handle, self.kill_grace)
                return JobStatus.TIMED_OUT, return_code, "cancelled at level deadline"

            remaining = deadline - time.monotonic()
            if remaining <= 0:
                return_code = terminate_process(handle, self.kill_grace)
                limit = job.target_duration + self.grace_period
                logger.warn(f"Job {job.id} exceeded its {limit:.1f}s deadline, terminated")
                return JobStatus.TIMED_OUT, return_code, f"exceeded {limit:.1f}s deadline"

            try:
                return_code = handle.wait(timeout=min(remaining, self.poll_interval))
                break
            except subprocess.TimeoutExpired:
                continue

        try:
            ok = self.encode_task.is_success(job, sink, return_code)
        except Exception as e:
            return JobStatus.FAILED, return_code, f"output check failed: {e}"

        if ok:
            return JobStatus.SUCCEEDED, return_code, None
        return JobStatus.FAILED, return_code, f"exit code {return_code}"

    def _finish(self, job: Job, status: JobStatus, return_code: Optional[int] = None,
                error: Optional[str] = None):
        job.finish(status, return_code, error)
        self.counters.record(status)
        self.jobs_done += 1
        if status is JobStatus.SUCCEEDED:
            logger.worker(f"Worker {self.id} completed job {job.id} in {job.duration:.1f}s")
        else:
            logger.debug(f"Worker {self.id} job {job.id} {status.value}: {error}")
        if self.on_job_done:
            try:
                self.on_job_done(job)
            except Exception as e:
                logger.warn(f"Job callback failed for job {job.id}: {e}")


class WorkerPool:
    """
    Fixed-size set of workers for one load level.

    start(size) launches `size` worker threads plus a supervisor thread.
    Workers that retire after max_lifetime, or whose thread dies, are replaced
    by fresh ones while the queue still has (or may still receive) work, so
    the number of live workers, and therefore of running jobs, never exceeds
    `size`.
    """

    def __init__(self, queue: JobQueue, encode_task: EncodeTask, sink_root: Path,
                 capacity: int = 200,
                 grace_period: float = DEFAULT_GRACE_PERIOD,
                 kill_grace: float = DEFAULT_KILL_GRACE,
                 max_worker_lifetime: Optional[float] = DEFAULT_MAX_LIFETIME,
                 poll_interval: float = DEFAULT_POLL_INTERVAL,
                 on_job_done: Optional[Callable[[Job], None]] = None):
        self.queue = queue
        self.encode_task = encode_task
        self.sink_root = Path(sink_root)
        self.capacity = capacity
        self.grace_period = grace_period
        self.kill_grace = kill_grace
        self.max_worker_lifetime = max_worker_lifetime
        self.poll_interval = poll_interval
        self.on_job_done = on_job_done

        self.counters = JobCounters()
        self.size = 0
        self.replacements = 0
        self._stop = threading.Event()
        self._lock = threading.Lock()
        self._next_id = 1
        self._workers: List[Worker] = []
        self._threads: List[threading.Thread] = []
        self._supervisor: Optional[threading.Thread] = None

    def start(self, size: int):
        if size < 1:
            raise ValueError(f"pool size must be positive, got {size}")
        if size > self.capacity:
            raise ValueError(f"pool size {size} exceeds configured capacity {self.capacity}")
        if self._supervisor is not None:
            raise RuntimeError("worker pool already started")

        self.size = size
        with self._lock:
            for _ in range(size):
                self._spawn()

        self._supervisor = threading.Thread(target=self._supervise, name="pool-supervisor",
                                            daemon=True)
        self._supervisor.start()
        logger.debug(f"Started {size} workers")

    def _spawn(self) -> Worker:
        # Caller holds self._lock
        worker = Worker(
            self._next_id, self.queue, self.encode_task, self.counters, self.sink_root,
            self._stop,
            grace_period=self.grace_period,
            kill_grace=self.kill_grace,
            max_lifetime=self.max_worker_lifetime,
            poll_interval=self.poll_interval,
            on_job_done=self.on_job_done,
        )
        self._next_id += 1
        thread = threading.Thread(target=worker.run, name=f"worker-{worker.id}", daemon=True)
        self._workers.append(worker)
        self._threads.append(thread)
        thread.start()
        return worker

    def _supervise(self):
        while not self._stop.is_set():
            with self._lock:
                live = [w for w, t in zip(self._workers, self._threads) if t.is_alive()]
                finished = [w for w, t in zip(self._workers, self._threads) if not t.is_alive()]

                if not live and self.queue.is_exhausted():
                    break

                for worker in finished:
                    # Retired workers and workers that died are both replaced
                    if not self.queue.is_exhausted():
                        index = self._workers.index(worker)
                        del self._workers[index]
                        del self._threads[index]
                        replacement = self._spawn()
                        self.replacements += 1
                        if not worker.retired:
                            logger.warn(f"Worker {worker.id} exited unexpectedly, "
                                        f"replaced by worker {replacement.id}")
                        else:
                            logger.worker(f"Worker {worker.id} replaced by worker {replacement.id}")

            self._stop.wait(self.poll_interval)

    @property
    def workers(self) -> List[Worker]:
        with self._lock:
            return list(self._workers)

    def running_count(self) -> int:
        """Number of jobs currently in Running state across the pool."""
        return sum(1 for w in self.workers if w.current_job is not None)

    def is_idle(self) -> bool:
        """True when no worker holds (or is about to hold) a job."""
        return not any(w.busy for w in self.workers)

    def cancel(self):
        """Stop all workers; running encodes are terminated graceful-then-forced."""
        self._stop.set()

    def join(self, timeout: Optional[float] = None) -> bool:
        """Wait for the supervisor and every worker; returns True if all exited."""
        end = None if timeout is None else time.monotonic() + timeout

        def _remaining():
            return None if end is None else max(0.0, end - time.monotonic())

        if self._supervisor is not None:
            self._supervisor.join(_remaining())
        with self._lock:
            threads = list(self._threads)
        for thread in threads:
            thread.join(_remaining())
        return not any(t.is_alive() for t in threads)
