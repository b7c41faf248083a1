"""
Bottleneck classification for capacity_finder.

Turns a level's MetricSample series into per-resource risk verdicts:
- peak and average of each tracked resource over the valid samples
- risk from the peak against a warning and a critical threshold
  (peak >= critical -> HIGH, peak >= warning -> MEDIUM, else LOW)
- an overall scaling recommendation derived from the verdicts

Everything here is a pure function of the samples and the fixed
thresholds the classifier was built with.
"""

import math
import os
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Dict, Iterable, List, Optional, Sequence, Tuple

from ..system.resource_monitor import MetricSample


class RiskLevel(Enum):
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"


class ScalingRecommendation(Enum):
    SCALE_UP = "scale up"
    HOLD = "hold"
    SCALE_DOWN = "scale down"


class Resource(Enum):
    GPU_UTILIZATION = "GPU_UTILIZATION"
    GPU_MEMORY = "GPU_MEMORY"
    CPU_USAGE = "CPU_USAGE"
    SYSTEM_LOAD = "SYSTEM_LOAD"
    RAM_USAGE = "RAM_USAGE"
    ENCODER_SESSIONS = "ENCODER_SESSIONS"


@dataclass(frozen=True)
class Thresholds:
    warning: float
    critical: float

    def __post_init__(self):
        if self.warning > self.critical:
            raise ValueError(f"warning {self.warning} above critical {self.critical}")


# Percent thresholds; SYSTEM_LOAD and ENCODER_SESSIONS depend on the host
DEFAULT_THRESHOLDS: Dict[Resource, Thresholds] = {
    Resource.GPU_UTILIZATION: Thresholds(80.0, 95.0),
    Resource.GPU_MEMORY: Thresholds(70.0, 90.0),
    Resource.CPU_USAGE: Thresholds(70.0, 90.0),
    Resource.RAM_USAGE: Thresholds(70.0, 90.0),
}

ENCODER_SESSION_WARNING_RATIO = 0.8

EXTRACTORS: Dict[Resource, Callable[[MetricSample], float]] = {
    Resource.GPU_UTILIZATION: lambda s: s.gpu_util,
    Resource.GPU_MEMORY: lambda s: s.gpu_mem_pct,
    Resource.CPU_USAGE: lambda s: s.cpu_pct,
    Resource.SYSTEM_LOAD: lambda s: s.load_avg,
    Resource.RAM_USAGE: lambda s: s.ram_pct,
    Resource.ENCODER_SESSIONS: lambda s: float(s.encoder_sessions),
}


@dataclass(frozen=True)
class ResourceVerdict:
    resource: Resource
    peak: float
    average: float
    warning: float
    critical: float
    risk: RiskLevel
    samples: int = 0
    samples_over_warning: int = 0

    @property
    def threshold(self) -> float:
        """The threshold the peak was judged against for its risk level."""
        return self.critical if self.risk is RiskLevel.HIGH else self.warning

    def to_dict(self) -> dict:
        return {
            "resource": self.resource.value,
            "peak": self.peak,
            "average": self.average,
            "threshold": self.threshold,
            "warning": self.warning,
            "critical": self.critical,
            "risk": self.risk.value,
            "samples": self.samples,
            "samples_over_warning": self.samples_over_warning,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "ResourceVerdict":
        return cls(
            resource=Resource(data["resource"]),
            peak=float(data["peak"]),
            average=float(data["average"]),
            warning=float(data["warning"]),
            critical=float(data["critical"]),
            risk=RiskLevel(data["risk"]),
            samples=int(data.get("samples", 0)),
            samples_over_warning=int(data.get("samples_over_warning", 0)),
        )


def peak_and_average(values: Sequence[float]) -> Tuple[float, float]:
    if not values:
        return 0.0, 0.0
    return max(values), math.fsum(values) / len(values)


def assign_risk(peak: float, thresholds: Thresholds) -> RiskLevel:
    if peak >= thresholds.critical:
        return RiskLevel.HIGH
    if peak >= thresholds.warning:
        return RiskLevel.MEDIUM
    return RiskLevel.LOW


class BottleneckClassifier:
    """
    Classify resource risk for a sample series.

    System load thresholds scale with the core count (warning = cores,
    critical = 2 x cores). Encoder sessions are only judged when a session
    limit is known (warning at 80% of it, critical at the limit).
    """

    def __init__(self, thresholds: Optional[Dict[Resource, Thresholds]] = None,
                 cpu_count: Optional[int] = None,
                 encoder_session_limit: Optional[int] = None):
        cores = cpu_count or os.cpu_count() or 1
        self.cpu_count = cores
        self.encoder_session_limit = encoder_session_limit

        self.thresholds: Dict[Resource, Thresholds] = dict(DEFAULT_THRESHOLDS)
        self.thresholds[Resource.SYSTEM_LOAD] = Thresholds(float(cores), float(cores * 2))
        if encoder_session_limit:
            self.thresholds[Resource.ENCODER_SESSIONS] = Thresholds(
                encoder_session_limit * ENCODER_SESSION_WARNING_RATIO,
                float(encoder_session_limit),
            )
        if thresholds:
            self.thresholds.update(thresholds)

    @property
    def tracked_resources(self) -> List[Resource]:
        return [r for r in Resource if r in self.thresholds]

    def classify_resource(self, resource: Resource,
                          samples: Iterable[MetricSample]) -> ResourceVerdict:
        thresholds = self.thresholds[resource]
        extract = EXTRACTORS[resource]
        values = [extract(s) for s in samples if s.valid]
        peak, average = peak_and_average(values)
        return ResourceVerdict(
            resource=resource,
            peak=peak,
            average=average,
            warning=thresholds.warning,
            critical=thresholds.critical,
            risk=assign_risk(peak, thresholds),
            samples=len(values),
            samples_over_warning=sum(1 for v in values if v >= thresholds.warning),
        )

    def classify(self, samples: Iterable[MetricSample]) -> List[ResourceVerdict]:
        series = list(samples)
        return [self.classify_resource(r, series) for r in self.tracked_resources]


def scaling_recommendation(verdicts: Iterable[ResourceVerdict]) -> ScalingRecommendation:
    risks = [v.risk for v in verdicts]
    if any(r is RiskLevel.HIGH for r in risks):
        return ScalingRecommendation.SCALE_DOWN
    if all(r is RiskLevel.LOW for r in risks):
        return ScalingRecommendation.SCALE_UP
    return ScalingRecommendation.HOLD


def find_bottlenecks(verdicts: Iterable[ResourceVerdict]) -> List[Resource]:
    """Resources whose verdict is HIGH."""
    return [v.resource for v in verdicts if v.risk is RiskLevel.HIGH]
