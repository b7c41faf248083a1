"""
Resource snapshot providers for capacity_finder.

A MetricsProvider answers one question: what does the machine look like
right now. The NVIDIA implementation reads GPU counters through nvidia-smi
and host counters through psutil.
"""

import subprocess
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import List

import psutil

from ....utils.logging import get_logger
from .system_utils import run_command

logger = get_logger("metrics_provider")

MB = 1024 * 1024

NVIDIA_SMI_FIELDS = [
    "utilization.gpu",
    "memory.used",
    "memory.total",
    "encoder.stats.sessionCount",
]


class MetricsUnavailableError(RuntimeError):
    """The provider could not produce a snapshot."""


@dataclass
class ResourceSnapshot:
    """Point-in-time resource state. Memory figures are in MB."""
    gpu_util: float
    gpu_mem_used: float
    gpu_mem_total: float
    encoder_sessions: int
    cpu_pct: float
    load_avg: float
    ram_used: float
    ram_total: float


class MetricsProvider(ABC):
    """Source of ResourceSnapshots. snapshot() should bound its own running time."""

    @abstractmethod
    def snapshot(self) -> ResourceSnapshot:
        """Return current resource state or raise MetricsUnavailableError."""


def _parse_number(value: str) -> float:
    value = value.strip()
    # nvidia-smi prints "[N/A]" / "[Not Supported]" for missing counters
    if not value or value.startswith("["):
        return 0.0
    return float(value)


def parse_nvidia_smi(output: str, gpu_index: int = 0) -> List[float]:
    """Parse one GPU row of `nvidia-smi --query-gpu=... --format=csv,noheader,nounits`."""
    rows = [line for line in output.strip().splitlines() if line.strip()]
    if not rows:
        raise MetricsUnavailableError("nvidia-smi returned no GPU rows")
    if gpu_index >= len(rows):
        raise MetricsUnavailableError(f"GPU {gpu_index} not found ({len(rows)} present)")

    parts = rows[gpu_index].split(",")
    if len(parts) != len(NVIDIA_SMI_FIELDS):
        raise MetricsUnavailableError(f"unexpected nvidia-smi row: {rows[gpu_index]!r}")
    try:
        return [_parse_number(p) for p in parts]
    except ValueError as e:
        raise MetricsUnavailableError(f"unparseable nvidia-smi row {rows[gpu_index]!r}: {e}")


class NvidiaMetricsProvider(MetricsProvider):
    """nvidia-smi for GPU counters, psutil for CPU, load and RAM."""

    def __init__(self, gpu_index: int = 0, timeout: float = 3.0, nvidia_smi: str = "nvidia-smi"):
        self.gpu_index = gpu_index
        self.timeout = timeout
        self.nvidia_smi = nvidia_smi
        # Prime psutil so the first non-blocking cpu_percent() is meaningful
        psutil.cpu_percent(interval=None)

    def _query_gpu(self) -> List[float]:
        cmd = [
            self.nvidia_smi,
            f"--query-gpu={','.join(NVIDIA_SMI_FIELDS)}",
            "--format=csv,noheader,nounits",
        ]
        try:
            result = run_command(cmd, timeout=self.timeout)
        except subprocess.TimeoutExpired:
            raise MetricsUnavailableError(f"nvidia-smi timed out after {self.timeout}s")
        except OSError as e:
            raise MetricsUnavailableError(f"nvidia-smi not available: {e}")

        if result.returncode != 0:
            raise MetricsUnavailableError(
                f"nvidia-smi exited {result.returncode}: {(result.stderr or '').strip()[:200]}"
            )
        return parse_nvidia_smi(result.stdout, self.gpu_index)

    def snapshot(self) -> ResourceSnapshot:
        gpu_util, gpu_mem_used, gpu_mem_total, sessions = self._query_gpu()

        memory = psutil.virtual_memory()
        load_1m = psutil.getloadavg()[0]
        return ResourceSnapshot(
            gpu_util=gpu_util,
            gpu_mem_used=gpu_mem_used,
            gpu_mem_total=gpu_mem_total,
            encoder_sessions=int(sessions),
            cpu_pct=psutil.cpu_percent(interval=None),
            load_avg=load_1m,
            ram_used=(memory.total - memory.available) / MB,
            ram_total=memory.total / MB,
        )
