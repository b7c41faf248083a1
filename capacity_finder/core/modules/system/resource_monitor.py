"""
Resource monitor for capacity_finder.

Samples a MetricsProvider on its own thread, independently of the workers.
Provider calls run on a daemon helper thread and are awaited for at most one
sampling interval (or provider_timeout, if shorter): a call that fails or
hangs produces a sentinel sample instead of stalling the sampling loop.
A call that never returns is abandoned and cannot hold up interpreter exit.
"""

import concurrent.futures
import queue
import threading
import time
from dataclasses import dataclass, asdict
from typing import Callable, List, Optional

from ....utils.logging import get_logger
from .metrics_provider import MetricsProvider, ResourceSnapshot

logger = get_logger("resource_monitor")

DEFAULT_SAMPLE_INTERVAL = 1.0
DEFAULT_PROVIDER_TIMEOUT = 5.0


@dataclass(frozen=True)
class MetricSample:
    """One row of a level's time series. valid=False marks a sentinel."""
    timestamp: float
    elapsed: float
    active_jobs: int
    gpu_util: float = 0.0
    gpu_mem_used: float = 0.0
    gpu_mem_total: float = 0.0
    encoder_sessions: int = 0
    cpu_pct: float = 0.0
    load_avg: float = 0.0
    ram_used: float = 0.0
    ram_total: float = 0.0
    valid: bool = True

    @property
    def gpu_mem_pct(self) -> float:
        if self.gpu_mem_total <= 0:
            return 0.0
        return self.gpu_mem_used * 100.0 / self.gpu_mem_total

    @property
    def ram_pct(self) -> float:
        if self.ram_total <= 0:
            return 0.0
        return self.ram_used * 100.0 / self.ram_total

    @classmethod
    def from_snapshot(cls, snapshot: ResourceSnapshot, timestamp: float, elapsed: float,
                      active_jobs: int) -> "MetricSample":
        return cls(timestamp=timestamp, elapsed=elapsed, active_jobs=active_jobs,
                   **asdict(snapshot))

    @classmethod
    def sentinel(cls, timestamp: float, elapsed: float, active_jobs: int) -> "MetricSample":
        return cls(timestamp=timestamp, elapsed=elapsed, active_jobs=active_jobs, valid=False)


class ResourceMonitor:
    """
    Periodic sampler producing a level's MetricSample time series.

    The sampling thread pushes samples onto a channel; samples() drains the
    channel into the ordered series. Timestamps are taken when each sample
    is recorded and are authoritative; the interval is only approximate.
    """

    def __init__(self, provider: MetricsProvider,
                 active_jobs: Optional[Callable[[], int]] = None,
                 provider_timeout: float = DEFAULT_PROVIDER_TIMEOUT):
        self.provider = provider
        self.active_jobs = active_jobs or (lambda: 0)
        self.provider_timeout = provider_timeout

        self.interval = DEFAULT_SAMPLE_INTERVAL
        self.failures = 0
        self._channel: "queue.Queue[MetricSample]" = queue.Queue()
        self._series: List[MetricSample] = []
        self._series_lock = threading.Lock()
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._pending: Optional[concurrent.futures.Future] = None
        self._start_time = 0.0
        self._last_timestamp = 0.0

    def start(self, interval: float = DEFAULT_SAMPLE_INTERVAL, started_at: Optional[float] = None):
        """Begin sampling every `interval` seconds; elapsed is measured from `started_at`."""
        if interval <= 0:
            raise ValueError(f"sample interval must be positive, got {interval}")
        if self._thread is not None:
            raise RuntimeError("resource monitor already started")

        self.interval = interval
        self._start_time = started_at if started_at is not None else time.time()
        self._thread = threading.Thread(target=self._run, name="resource-monitor", daemon=True)
        self._thread.start()
        logger.debug(f"Resource monitor sampling every {interval:.2f}s")

    def stop(self) -> List[MetricSample]:
        """Stop sampling and return the complete series."""
        self._stop.set()
        if self._thread is not None:
            self._thread.join()
        if self.failures:
            logger.monitor(f"{self.failures} sample(s) recorded as sentinels "
                           f"(metrics provider unavailable)")
        return self.samples()

    def samples(self) -> List[MetricSample]:
        with self._series_lock:
            while True:
                try:
                    self._series.append(self._channel.get_nowait())
                except queue.Empty:
                    break
            return list(self._series)

    def _run(self):
        next_tick = time.monotonic()
        while not self._stop.is_set():
            self._channel.put(self._take_sample())
            next_tick += self.interval
            delay = next_tick - time.monotonic()
            if delay < 0:
                # Fell behind (slow provider): resync rather than burst
                next_tick = time.monotonic()
                delay = 0
            self._stop.wait(delay)

    def _take_sample(self) -> MetricSample:
        snapshot = self._query_provider()
        timestamp = max(time.time(), self._last_timestamp)
        self._last_timestamp = timestamp
        elapsed = timestamp - self._start_time

        try:
            active = int(self.active_jobs())
        except Exception as e:
            logger.debug(f"Active job count unavailable: {e}")
            active = 0

        if snapshot is None:
            self.failures += 1
            return MetricSample.sentinel(timestamp, elapsed, active)
        return MetricSample.from_snapshot(snapshot, timestamp, elapsed, active)

    def _query_provider(self) -> Optional[ResourceSnapshot]:
        # Never queue a second call behind one that is still hanging
        if self._pending is not None and not self._pending.done():
            return None

        wait = min(self.provider_timeout, self.interval)
        self._pending = self._submit()
        try:
            return self._pending.result(timeout=wait)
        except concurrent.futures.TimeoutError:
            logger.debug(f"Metrics provider exceeded {wait:.2f}s")
            return None
        except Exception as e:
            if self.failures == 0:
                logger.monitor(f"Metrics provider error: {e}")
            else:
                logger.debug(f"Metrics provider error: {e}")
            return None

    def _submit(self) -> concurrent.futures.Future:
        future: concurrent.futures.Future = concurrent.futures.Future()

        def _call():
            if not future.set_running_or_notify_cancel():
                return
            try:
                future.set_result(self.provider.snapshot())
            except Exception as e:
                future.set_exception(e)

        threading.Thread(target=_call, name="metrics-provider", daemon=True).start()
        return future
