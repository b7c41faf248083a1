"""
In-process fakes shared by the capacity_finder tests.

FakeProcess mimics the subprocess.Popen subset workers use, FakeEncodeTask
hands them out, and ScriptedMetricsProvider plays back resource snapshots.
"""

import subprocess
import threading
import time
from typing import Callable, List, Optional

from capacity_finder.core.modules.processing.encode_task import EncodeTask
from capacity_finder.core.modules.processing.job_queue import Job
from capacity_finder.core.modules.system.metrics_provider import (
    MetricsProvider, MetricsUnavailableError, ResourceSnapshot,
)


class FakeProcess:
    """Finishes with `exit_code` after `duration` seconds unless stopped first."""

    def __init__(self, duration: float, exit_code: int = 0, ignore_terminate: bool = False,
                 wait_error: Optional[Exception] = None):
        self.pid = id(self)
        self.returncode: Optional[int] = None
        self.terminated = False
        self.killed = False
        self._exit_code = exit_code
        self._ignore_terminate = ignore_terminate
        self._wait_error = wait_error
        self._finish_at = time.monotonic() + duration
        self._lock = threading.Lock()
        self._signal = threading.Event()

    def poll(self) -> Optional[int]:
        with self._lock:
            if self.returncode is None and time.monotonic() >= self._finish_at:
                self.returncode = self._exit_code
            return self.returncode

    def wait(self, timeout: Optional[float] = None) -> int:
        if self._wait_error is not None:
            raise self._wait_error
        end = None if timeout is None else time.monotonic() + timeout
        while self.poll() is None:
            now = time.monotonic()
            if end is not None and now >= end:
                raise subprocess.TimeoutExpired("fake-encode", timeout)
            step = self._finish_at - now
            if end is not None:
                step = min(step, end - now)
            self._signal.wait(max(step, 0.001))
        return self.returncode

    def terminate(self):
        self.terminated = True
        if self._ignore_terminate:
            return
        with self._lock:
            if self.returncode is None:
                self.returncode = -15
        self._signal.set()

    def kill(self):
        self.killed = True
        with self._lock:
            if self.returncode is None:
                self.returncode = -9
        self._signal.set()


class FakeEncodeTask(EncodeTask):
    """EncodeTask whose encodes are FakeProcess timers."""

    def __init__(self, duration: float = 0.05,
                 exit_code_for: Optional[Callable[[Job], int]] = None,
                 duration_for: Optional[Callable[[Job], float]] = None,
                 ignore_terminate: bool = False,
                 launch_error: Optional[Exception] = None,
                 wait_error_for: Optional[Callable[[Job], Optional[Exception]]] = None):
        self.duration = duration
        self.exit_code_for = exit_code_for or (lambda job: 0)
        self.duration_for = duration_for or (lambda job: self.duration)
        self.ignore_terminate = ignore_terminate
        self.launch_error = launch_error
        self.wait_error_for = wait_error_for or (lambda job: None)
        self.launched: List[Job] = []
        self.handles: List[FakeProcess] = []
        self._lock = threading.Lock()

    def launch(self, job, sink):
        if self.launch_error is not None:
            raise self.launch_error
        handle = FakeProcess(self.duration_for(job), self.exit_code_for(job),
                             ignore_terminate=self.ignore_terminate,
                             wait_error=self.wait_error_for(job))
        with self._lock:
            self.launched.append(job)
            self.handles.append(handle)
        return handle


def max_overlap(jobs: List[Job]) -> int:
    """Largest number of jobs whose [start, end] intervals overlap."""
    events = []
    for job in jobs:
        if job.start_time is None:
            continue
        events.append((job.start_time, 1))
        events.append((job.end_time if job.end_time is not None else float("inf"), -1))
    # Ends sort before starts at equal timestamps
    events.sort(key=lambda e: (e[0], e[1]))
    current = peak = 0
    for _, delta in events:
        current += delta
        peak = max(peak, current)
    return peak


def make_snapshot(gpu_util: float = 30.0, gpu_mem_used: float = 2000.0,
                  gpu_mem_total: float = 10000.0, encoder_sessions: int = 2,
                  cpu_pct: float = 20.0, load_avg: float = 0.5,
                  ram_used: float = 4000.0, ram_total: float = 16000.0) -> ResourceSnapshot:
    return ResourceSnapshot(gpu_util, gpu_mem_used, gpu_mem_total, encoder_sessions,
                            cpu_pct, load_avg, ram_used, ram_total)


class ScriptedMetricsProvider(MetricsProvider):
    """Returns snapshots from `script(call_number)`; exceptions are raised as-is."""

    def __init__(self, script: Optional[Callable[[int], ResourceSnapshot]] = None,
                 delay: float = 0.0):
        self.script = script or (lambda n: make_snapshot())
        self.delay = delay
        self.calls = 0
        self._lock = threading.Lock()

    def snapshot(self) -> ResourceSnapshot:
        with self._lock:
            self.calls += 1
            n = self.calls
        if self.delay:
            time.sleep(self.delay)
        return self.script(n)


class FailingMetricsProvider(MetricsProvider):
    def snapshot(self) -> ResourceSnapshot:
        raise MetricsUnavailableError("no GPU")
