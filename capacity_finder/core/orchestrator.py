"""
Load orchestrator for capacity_finder.

Drives a sequence of concurrency levels. For each level it fills a job
queue, starts a worker pool and a resource monitor, waits for the queue to
drain (or the level deadline to pass), classifies the recorded samples and
decides whether to escalate to the next level, hold, or stop.
"""

import math
import threading
import time
from dataclasses import dataclass, field, asdict
from enum import Enum
from pathlib import Path
from typing import Callable, Dict, List, Optional

from ..utils.logging import get_logger, create_progress_bar
from .modules.analysis.bottleneck_classifier import (
    BottleneckClassifier, ResourceVerdict, ScalingRecommendation,
    find_bottlenecks, scaling_recommendation,
)
from .modules.analysis.report_writer import ReportWriter, STREAMS_DIR, level_dir_name
from .modules.processing.encode_task import EncodeTask
from .modules.processing.job_queue import Job, JobQueue
from .modules.processing.worker_pool import WorkerPool
from .modules.system.metrics_provider import MetricsProvider
from .modules.system.resource_monitor import MetricSample, ResourceMonitor
from .modules.system.system_utils import format_duration, interruptible_sleep

logger = get_logger("orchestrator")


class Decision(Enum):
    ESCALATE = "escalate"
    HOLD = "hold"
    STOP = "stop"


class LevelState(Enum):
    PENDING = "pending"
    LAUNCHING = "launching"
    MONITORING = "monitoring"
    COMPLETED = "completed"


_LEVEL_ORDER = [LevelState.PENDING, LevelState.LAUNCHING, LevelState.MONITORING,
                LevelState.COMPLETED]


@dataclass
class CapacityConfig:
    """Everything a capacity run needs to know. Durations are in seconds."""
    levels: List[int] = field(default_factory=lambda: [10, 20, 30, 40, 50])
    output_dir: Path = Path(".")
    target_duration: float = 45.0
    grace_period: float = 10.0
    kill_grace: float = 5.0
    level_safety_margin: float = 30.0
    cooldown: float = 15.0
    sample_interval: float = 1.0
    provider_timeout: float = 5.0
    poll_interval: float = 0.5
    high_success: float = 90.0
    low_success: float = 50.0
    pool_capacity: int = 200
    jobs_per_level: Optional[int] = None
    worker_max_lifetime: Optional[float] = 300.0
    hold_action: str = "repeat"
    max_hold_repeats: int = 1

    def validate(self):
        if not self.levels:
            raise ValueError("at least one concurrency level is required")
        if any(level < 1 for level in self.levels):
            raise ValueError(f"concurrency levels must be positive: {self.levels}")
        for name in ("high_success", "low_success"):
            value = getattr(self, name)
            if not 0 <= value <= 100:
                raise ValueError(f"{name} must be within 0..100, got {value}")
        if self.low_success > self.high_success:
            raise ValueError(f"low_success {self.low_success} above high_success {self.high_success}")
        for name in ("target_duration", "sample_interval", "poll_interval", "provider_timeout"):
            if getattr(self, name) <= 0:
                raise ValueError(f"{name} must be positive, got {getattr(self, name)}")
        for name in ("grace_period", "kill_grace", "level_safety_margin", "cooldown"):
            if getattr(self, name) < 0:
                raise ValueError(f"{name} must not be negative, got {getattr(self, name)}")
        if self.pool_capacity < 1:
            raise ValueError(f"pool_capacity must be positive, got {self.pool_capacity}")
        if self.jobs_per_level is not None and self.jobs_per_level < 1:
            raise ValueError(f"jobs_per_level must be positive, got {self.jobs_per_level}")
        if self.hold_action not in ("repeat", "stop"):
            raise ValueError(f"hold_action must be 'repeat' or 'stop', got {self.hold_action!r}")

    def level_deadline(self, jobs: int, pool_size: int) -> float:
        """Seconds a level may run before its remaining jobs are cancelled."""
        waves = math.ceil(jobs / pool_size)
        return waves * (self.target_duration + self.grace_period) + self.level_safety_margin

    def to_dict(self) -> Dict:
        data = asdict(self)
        data["output_dir"] = str(self.output_dir)
        return data


@dataclass
class LoadLevel:
    """Outcome of one attempted concurrency value."""
    concurrency: int
    pool_size: int
    jobs: int
    attempt: int = 1
    state: LevelState = LevelState.PENDING
    succeeded: int = 0
    failed: int = 0
    timed_out: int = 0
    unstarted: int = 0
    deadline_exceeded: bool = False
    interrupted: bool = False
    verdicts: List[ResourceVerdict] = field(default_factory=list)
    recommendation: Optional[ScalingRecommendation] = None
    decision: Optional[Decision] = None
    started_at: Optional[float] = None
    ended_at: Optional[float] = None
    samples: List[MetricSample] = field(default_factory=list, repr=False)
    job_records: List[Job] = field(default_factory=list, repr=False)

    def advance(self, state: LevelState):
        if _LEVEL_ORDER.index(state) != _LEVEL_ORDER.index(self.state) + 1:
            raise RuntimeError(f"level {self.concurrency}: {self.state.value} -> {state.value}")
        self.state = state

    @property
    def success_rate(self) -> float:
        """Percentage of the level's jobs that succeeded."""
        if self.jobs == 0:
            return 0.0
        return self.succeeded * 100.0 / self.jobs

    @property
    def wall_time(self) -> Optional[float]:
        if self.started_at is None or self.ended_at is None:
            return None
        return self.ended_at - self.started_at

    @property
    def peak_encoder_sessions(self) -> int:
        return max((s.encoder_sessions for s in self.samples if s.valid), default=0)

    @property
    def peak_active_jobs(self) -> int:
        return max((s.active_jobs for s in self.samples), default=0)

    def to_dict(self) -> Dict:
        return {
            "target_concurrency": self.concurrency,
            "attempt": self.attempt,
            "pool_size": self.pool_size,
            "jobs": self.jobs,
            "succeeded": self.succeeded,
            "failed": self.failed,
            "timed_out": self.timed_out,
            "unstarted": self.unstarted,
            "success_rate": self.success_rate,
            "deadline_exceeded": self.deadline_exceeded,
            "interrupted": self.interrupted,
            "wall_time": self.wall_time,
            "samples": len(self.samples),
            "peak_encoder_sessions": self.peak_encoder_sessions,
            "peak_active_jobs": self.peak_active_jobs,
            "verdicts": [v.to_dict() for v in self.verdicts],
            "bottlenecks": [r.value for r in find_bottlenecks(self.verdicts)],
            "recommendation": self.recommendation.value if self.recommendation else None,
            "decision": self.decision.value if self.decision else None,
        }


@dataclass
class CapacityReport:
    levels: List[LoadLevel]
    recommended: Optional[LoadLevel]
    stop_reason: str
    high_success: float

    @property
    def recommended_concurrency(self) -> Optional[int]:
        return self.recommended.concurrency if self.recommended else None

    def to_dict(self) -> Dict:
        return {
            "recommended_concurrency": self.recommended_concurrency,
            "high_success_threshold": self.high_success,
            "verdicts": [v.to_dict() for v in self.recommended.verdicts] if self.recommended else [],
            "stop_reason": self.stop_reason,
            "levels_attempted": [
                {"target_concurrency": lvl.concurrency, "attempt": lvl.attempt,
                 "success_rate": lvl.success_rate,
                 "decision": lvl.decision.value if lvl.decision else None}
                for lvl in self.levels
            ],
        }


def decide_escalation(success_rate: float, recommendation: ScalingRecommendation,
                      high_success: float, low_success: float) -> Decision:
    """
    Escalation policy for a completed level.

    Escalate when the level was healthy and no resource demands scaling
    down; stop when too many jobs failed; hold otherwise.
    """
    if success_rate < low_success:
        return Decision.STOP
    if success_rate >= high_success and recommendation in (
            ScalingRecommendation.SCALE_UP, ScalingRecommendation.HOLD):
        return Decision.ESCALATE
    return Decision.HOLD


def select_recommendation(levels: List[LoadLevel], high_success: float) -> Optional[LoadLevel]:
    """Highest concurrency whose success rate met the high-success threshold."""
    best = None
    for level in levels:
        if level.interrupted or level.success_rate < high_success:
            continue
        if best is None or level.concurrency >= best.concurrency:
            best = level
    return best


class LoadOrchestrator:
    """Runs the level sequence and reports the recommended concurrency."""

    def __init__(self, config: CapacityConfig, encode_task: EncodeTask,
                 metrics_provider: MetricsProvider,
                 classifier: Optional[BottleneckClassifier] = None,
                 writer: Optional[ReportWriter] = None,
                 confirm_escalation: Optional[Callable[[LoadLevel], bool]] = None,
                 show_progress: bool = True):
        config.validate()
        self.config = config
        self.encode_task = encode_task
        self.metrics_provider = metrics_provider
        self.classifier = classifier or BottleneckClassifier()
        self.writer = writer
        self.confirm_escalation = confirm_escalation
        self.show_progress = show_progress
        self._stop = threading.Event()

    def request_stop(self):
        """Cancel the running level and end the sequence after it."""
        self._stop.set()

    def _sink_root(self, concurrency: int, attempt: int) -> Path:
        if self.writer is not None:
            return self.writer.streams_dir(concurrency, attempt)
        return Path(self.config.output_dir) / level_dir_name(concurrency, attempt) / STREAMS_DIR

    def _build_jobs(self, concurrency: int, attempt: int, count: int) -> List[Job]:
        return [
            Job(
                id=f"c{concurrency:03d}a{attempt}_{index:04d}",
                source=self.encode_task.source_for(index),
                target_duration=self.config.target_duration,
                index=index,
            )
            for index in range(count)
        ]

    def run_level(self, concurrency: int, job_count: Optional[int] = None,
                  attempt: int = 1) -> LoadLevel:
        cfg = self.config
        jobs_total = job_count or cfg.jobs_per_level or concurrency
        level = LoadLevel(
            concurrency=concurrency,
            pool_size=min(concurrency, cfg.pool_capacity),
            jobs=jobs_total,
            attempt=attempt,
        )

        # Launching: the queue is complete and closed before any worker runs
        level.advance(LevelState.LAUNCHING)
        level.job_records = self._build_jobs(concurrency, attempt, jobs_total)
        queue = JobQueue(level.job_records)
        queue.close()
        logger.level(f"Level {concurrency} (attempt {attempt}): {jobs_total} jobs, "
                     f"{level.pool_size} workers")

        progress = None
        progress_lock = threading.Lock()
        if self.show_progress:
            progress = create_progress_bar(total=jobs_total, desc=f"Level {concurrency}", unit="jobs")

        def _job_done(job: Job):
            if progress is not None:
                with progress_lock:
                    progress.update(1)

        pool = WorkerPool(
            queue, self.encode_task, self._sink_root(concurrency, attempt),
            capacity=cfg.pool_capacity,
            grace_period=cfg.grace_period,
            kill_grace=cfg.kill_grace,
            max_worker_lifetime=cfg.worker_max_lifetime,
            poll_interval=cfg.poll_interval,
            on_job_done=_job_done,
        )
        monitor = ResourceMonitor(self.metrics_provider, active_jobs=pool.running_count,
                                  provider_timeout=cfg.provider_timeout)

        level.started_at = time.time()
        try:
            pool.start(level.pool_size)
            monitor.start(cfg.sample_interval, started_at=level.started_at)
            level.advance(LevelState.MONITORING)

            deadline = time.monotonic() + cfg.level_deadline(jobs_total, level.pool_size)
            drained = self._wait_for_drain(queue, pool, deadline)
            if not drained:
                level.interrupted = self._stop.is_set()
                level.deadline_exceeded = not level.interrupted
                reason = "interrupted" if level.interrupted else "deadline exceeded"
                logger.warn(f"Level {concurrency}: {reason}, cancelling "
                            f"{pool.running_count()} running job(s)")
                pool.cancel()
            pool.join()
        finally:
            # A pool that failed to start still needs the monitor stopped
            pool.cancel()
            level.samples = monitor.stop()
            level.ended_at = time.time()
            if progress is not None:
                progress.close()

        level.advance(LevelState.COMPLETED)
        level.unstarted = len(queue.drain())
        counts = pool.counters.snapshot()
        level.succeeded = counts["succeeded"]
        level.failed = counts["failed"]
        level.timed_out = counts["timed_out"]
        level.verdicts = self.classifier.classify(level.samples)
        level.recommendation = scaling_recommendation(level.verdicts)

        logger.level(
            f"Level {concurrency} completed in {format_duration(level.wall_time)}: "
            f"{level.succeeded}/{level.jobs} succeeded ({level.success_rate:.1f}%), "
            f"{level.failed} failed ({level.timed_out} timed out), "
            f"recommendation: {level.recommendation.value}"
        )
        for verdict in level.verdicts:
            logger.debug(f"  {verdict.resource.value:<17} peak {verdict.peak:8.1f} "
                         f"avg {verdict.average:8.1f} risk {verdict.risk.value}")
        return level

    def _wait_for_drain(self, queue: JobQueue, pool: WorkerPool, deadline: float) -> bool:
        """Block until the queue is empty and no worker is busy; False on deadline or stop."""
        while True:
            if queue.is_empty() and pool.is_idle():
                return True
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                return False
            if self._stop.wait(min(self.config.poll_interval, remaining)):
                return False

    def run(self) -> CapacityReport:
        cfg = self.config
        levels: List[LoadLevel] = []
        sequence = list(cfg.levels)
        index = 0
        holds = 0
        stop_reason = "sequence completed"

        while index < len(sequence):
            if self._stop.is_set():
                stop_reason = "interrupted"
                break

            concurrency = sequence[index]
            level = self.run_level(concurrency, attempt=holds + 1)
            levels.append(level)

            if level.interrupted:
                level.decision = Decision.STOP
                stop_reason = "interrupted"
                self._persist(level)
                break

            level.decision = decide_escalation(level.success_rate, level.recommendation,
                                               cfg.high_success, cfg.low_success)
            self._persist(level)

            if level.decision is Decision.STOP:
                stop_reason = (f"level {concurrency} success rate {level.success_rate:.1f}% "
                               f"below {cfg.low_success:.0f}%")
                break

            if level.decision is Decision.ESCALATE:
                is_last = index + 1 >= len(sequence)
                if not is_last and self.confirm_escalation and not self.confirm_escalation(level):
                    stop_reason = "escalation declined"
                    break
                index += 1
                holds = 0
            elif cfg.hold_action == "repeat" and holds < cfg.max_hold_repeats:
                holds += 1
                logger.level(f"Level {concurrency}: HOLD, repeating (repeat {holds}/{cfg.max_hold_repeats})")
            else:
                stop_reason = f"held at level {concurrency}"
                break

            if index < len(sequence) and cfg.cooldown > 0:
                logger.level(f"Cooling down for {cfg.cooldown:.0f}s")
                if interruptible_sleep(cfg.cooldown, self._stop):
                    stop_reason = "interrupted"
                    break

        report = CapacityReport(
            levels=levels,
            recommended=select_recommendation(levels, cfg.high_success),
            stop_reason=stop_reason,
            high_success=cfg.high_success,
        )
        if self.writer is not None:
            self.writer.write_recommendation(report.to_dict())

        if report.recommended is not None:
            logger.result(f"Recommended concurrency: {report.recommended_concurrency} "
                          f"({report.recommended.success_rate:.1f}% success) - {stop_reason}")
        else:
            logger.result(f"No level met the {cfg.high_success:.0f}% success threshold - {stop_reason}")
        return report

    def _persist(self, level: LoadLevel):
        if self.writer is None:
            return
        try:
            self.writer.write_level(level)
        except OSError as e:
            logger.error(f"Could not write artifacts for level {level.concurrency}: {e}")
