"""
Persisted run artifacts for capacity_finder.

Layout of a run directory:

    capacity_run_YYYYmmdd_HHMMSS/
        config.json                 run configuration
        capacity_results.csv        one row per attempted level
        recommendation.json         final recommendation
        level_020_a1/
            metrics.csv             MetricSample time series
            summary.json            level summary with resource verdicts
            jobs.csv                per-job worker, timing, exit code and error
            streams/job_<id>/       encode outputs (written by the EncodeTask)
"""

import csv
import json
import threading
import time
from dataclasses import asdict, fields
from pathlib import Path
from typing import Any, Dict, List, Optional

from ....utils.logging import get_logger
from ..processing.job_queue import Job
from ..system.resource_monitor import MetricSample

logger = get_logger("report_writer")

METRICS_FILE = "metrics.csv"
SUMMARY_FILE = "summary.json"
JOBS_FILE = "jobs.csv"
RESULTS_FILE = "capacity_results.csv"
RECOMMENDATION_FILE = "recommendation.json"
CONFIG_FILE = "config.json"
STREAMS_DIR = "streams"

SAMPLE_COLUMNS = [f.name for f in fields(MetricSample)]

JOB_COLUMNS = [
    "id", "worker", "status", "start", "end", "duration", "return_code", "error",
]

RESULTS_COLUMNS = [
    "target_concurrency", "attempt", "pool_size", "jobs", "succeeded", "failed",
    "timed_out", "unstarted", "success_rate", "peak_gpu_util", "peak_gpu_mem_pct",
    "peak_encoder_sessions", "peak_active_jobs", "recommendation", "decision",
]


def level_dir_name(concurrency: int, attempt: int = 1) -> str:
    return f"level_{concurrency:03d}_a{attempt}"


def _format_time(value: Optional[float]) -> str:
    return "" if value is None else f"{value:.3f}"


def _verdict_peak(summary: Dict[str, Any], resource: str) -> Optional[float]:
    for verdict in summary.get("verdicts", []):
        if verdict.get("resource") == resource:
            return verdict.get("peak")
    return None


class ReportWriter:
    """Writes every artifact of one capacity run below `run_dir`."""

    def __init__(self, run_dir: Path):
        self.run_dir = Path(run_dir)
        self.run_dir.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()

    def level_dir(self, concurrency: int, attempt: int = 1) -> Path:
        return self.run_dir / level_dir_name(concurrency, attempt)

    def streams_dir(self, concurrency: int, attempt: int = 1) -> Path:
        return self.level_dir(concurrency, attempt) / STREAMS_DIR

    def write_config(self, config: Dict[str, Any]) -> Path:
        path = self.run_dir / CONFIG_FILE
        self._write_json(path, config)
        return path

    def write_timeseries(self, level_dir: Path, samples: List[MetricSample]) -> Path:
        level_dir.mkdir(parents=True, exist_ok=True)
        path = level_dir / METRICS_FILE
        with open(path, "w", newline="", encoding="utf-8") as f:
            writer = csv.DictWriter(f, fieldnames=SAMPLE_COLUMNS)
            writer.writeheader()
            for sample in samples:
                row = asdict(sample)
                row["timestamp"] = f"{sample.timestamp:.3f}"
                row["elapsed"] = f"{sample.elapsed:.3f}"
                writer.writerow(row)
        return path

    def write_jobs(self, level_dir: Path, jobs: List[Job]) -> Path:
        """One row per job; jobs that never started keep empty worker and timing cells."""
        level_dir.mkdir(parents=True, exist_ok=True)
        path = level_dir / JOBS_FILE
        with open(path, "w", newline="", encoding="utf-8") as f:
            writer = csv.DictWriter(f, fieldnames=JOB_COLUMNS)
            writer.writeheader()
            for job in jobs:
                writer.writerow({
                    "id": job.id,
                    "worker": job.worker_id if job.worker_id is not None else "",
                    "status": job.status.value,
                    "start": _format_time(job.start_time),
                    "end": _format_time(job.end_time),
                    "duration": _format_time(job.duration),
                    "return_code": job.return_code if job.return_code is not None else "",
                    "error": job.error or "",
                })
        return path

    def write_level_summary(self, level_dir: Path, summary: Dict[str, Any]) -> Path:
        level_dir.mkdir(parents=True, exist_ok=True)
        path = level_dir / SUMMARY_FILE
        self._write_json(path, summary)
        return path

    def append_results_row(self, summary: Dict[str, Any]) -> Path:
        path = self.run_dir / RESULTS_FILE
        row = {
            "target_concurrency": summary["target_concurrency"],
            "attempt": summary.get("attempt", 1),
            "pool_size": summary.get("pool_size"),
            "jobs": summary.get("jobs"),
            "succeeded": summary["succeeded"],
            "failed": summary["failed"],
            "timed_out": summary.get("timed_out", 0),
            "unstarted": summary.get("unstarted", 0),
            "success_rate": f"{summary['success_rate']:.1f}",
            "peak_gpu_util": _verdict_peak(summary, "GPU_UTILIZATION"),
            "peak_gpu_mem_pct": _verdict_peak(summary, "GPU_MEMORY"),
            "peak_encoder_sessions": summary.get("peak_encoder_sessions"),
            "peak_active_jobs": summary.get("peak_active_jobs"),
            "recommendation": summary.get("recommendation"),
            "decision": summary.get("decision"),
        }
        with self._lock:
            new_file = not path.exists()
            with open(path, "a", newline="", encoding="utf-8") as f:
                writer = csv.DictWriter(f, fieldnames=RESULTS_COLUMNS)
                if new_file:
                    writer.writeheader()
                writer.writerow(row)
        return path

    def write_level(self, level) -> Path:
        """Persist the time series, job records, summary and results row of a finished level."""
        level_dir = self.level_dir(level.concurrency, level.attempt)
        summary = level.to_dict()
        self.write_timeseries(level_dir, level.samples)
        self.write_jobs(level_dir, level.job_records)
        self.write_level_summary(level_dir, summary)
        self.append_results_row(summary)
        logger.debug(f"Level {level.concurrency} artifacts written to {level_dir}")
        return level_dir

    def write_recommendation(self, report: Dict[str, Any]) -> Path:
        path = self.run_dir / RECOMMENDATION_FILE
        self._write_json(path, report)
        return path

    def _write_json(self, path: Path, data: Dict[str, Any]):
        payload = dict(data)
        payload.setdefault("saved_at", time.time())
        tmp_path = path.with_name(path.name + ".tmp")
        with open(tmp_path, "w", encoding="utf-8") as f:
            json.dump(payload, f, indent=2)
        tmp_path.replace(path)


def load_level_summaries(run_dir: Path) -> List[Dict[str, Any]]:
    """Read every level summary of a run, ordered by concurrency then attempt."""
    summaries = []
    for path in sorted(Path(run_dir).glob(f"level_*/{SUMMARY_FILE}")):
        try:
            with open(path, "r", encoding="utf-8") as f:
                summaries.append(json.load(f))
        except (OSError, json.JSONDecodeError) as e:
            logger.warn(f"Skipping unreadable summary {path}: {e}")
    summaries.sort(key=lambda s: (s.get("target_concurrency", 0), s.get("attempt", 1)))
    return summaries


def load_recommendation(run_dir: Path) -> Optional[Dict[str, Any]]:
    path = Path(run_dir) / RECOMMENDATION_FILE
    if not path.exists():
        return None
    with open(path, "r", encoding="utf-8") as f:
        return json.load(f)


def load_timeseries(path: Path) -> List[MetricSample]:
    """Read a metrics.csv back into MetricSample rows."""
    converters = {f.name: f.type for f in fields(MetricSample)}
    samples = []
    with open(path, "r", newline="", encoding="utf-8") as f:
        for row in csv.DictReader(f):
            values = {}
            for name, raw in row.items():
                kind = converters.get(name)
                if kind in (bool, "bool"):
                    values[name] = raw == "True"
                elif kind in (int, "int"):
                    values[name] = int(float(raw))
                else:
                    values[name] = float(raw)
            samples.append(MetricSample(**values))
    return samples


def load_jobs(path: Path) -> List[Dict[str, str]]:
    """Read a jobs.csv back as raw rows; a missing file yields no rows."""
    if not Path(path).exists():
        return []
    with open(path, "r", newline="", encoding="utf-8") as f:
        return list(csv.DictReader(f))
