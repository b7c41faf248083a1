"""
Unit tests for the bottleneck classifier module.

Tests risk assignment against the warning/critical thresholds, host
dependent thresholds and the overall scaling recommendation.
"""

import unittest

from capacity_finder.core.modules.analysis.bottleneck_classifier import (
    BottleneckClassifier, Resource, ResourceVerdict, RiskLevel, ScalingRecommendation,
    Thresholds, assign_risk, find_bottlenecks, peak_and_average, scaling_recommendation,
)
from capacity_finder.core.modules.system.resource_monitor import MetricSample


def _samples(**series):
    """Build MetricSamples from equal-length lists of field values."""
    length = len(next(iter(series.values())))
    base = dict(gpu_mem_total=10000.0, ram_total=16000.0)
    samples = []
    for i in range(length):
        values = dict(base)
        values.update({name: seq[i] for name, seq in series.items()})
        samples.append(MetricSample(timestamp=float(i), elapsed=float(i), active_jobs=0, **values))
    return samples


def _verdict(verdicts, resource):
    return next(v for v in verdicts if v.resource is resource)


class TestRiskAssignment(unittest.TestCase):

    def setUp(self):
        self.classifier = BottleneckClassifier(cpu_count=4)

    def test_gpu_utilization_levels(self):
        for peak, expected in ((96.0, RiskLevel.HIGH), (82.0, RiskLevel.MEDIUM), (50.0, RiskLevel.LOW)):
            verdicts = self.classifier.classify(_samples(gpu_util=[10.0, peak, 20.0]))
            self.assertEqual(_verdict(verdicts, Resource.GPU_UTILIZATION).risk, expected, peak)

    def test_thresholds_are_inclusive(self):
        thresholds = Thresholds(80.0, 95.0)
        self.assertEqual(assign_risk(80.0, thresholds), RiskLevel.MEDIUM)
        self.assertEqual(assign_risk(95.0, thresholds), RiskLevel.HIGH)
        self.assertEqual(assign_risk(79.99, thresholds), RiskLevel.LOW)

    def test_gpu_memory_uses_percentage(self):
        verdicts = self.classifier.classify(_samples(gpu_mem_used=[9000.0, 8000.0]))
        verdict = _verdict(verdicts, Resource.GPU_MEMORY)
        self.assertAlmostEqual(verdict.peak, 90.0)
        self.assertEqual(verdict.risk, RiskLevel.HIGH)

    def test_load_thresholds_scale_with_cores(self):
        medium = self.classifier.classify(_samples(load_avg=[5.0]))
        high = self.classifier.classify(_samples(load_avg=[8.0]))
        self.assertEqual(_verdict(medium, Resource.SYSTEM_LOAD).risk, RiskLevel.MEDIUM)
        self.assertEqual(_verdict(high, Resource.SYSTEM_LOAD).risk, RiskLevel.HIGH)
        self.assertEqual(self.classifier.thresholds[Resource.SYSTEM_LOAD], Thresholds(4.0, 8.0))

    def test_peak_and_average(self):
        verdict = _verdict(self.classifier.classify(_samples(cpu_pct=[10.0, 20.0, 30.5])),
                           Resource.CPU_USAGE)
        self.assertAlmostEqual(verdict.peak, 30.5, delta=1e-6)
        self.assertAlmostEqual(verdict.average, 60.5 / 3, delta=1e-6)
        self.assertEqual(verdict.samples, 3)

    def test_samples_over_warning(self):
        verdict = _verdict(self.classifier.classify(_samples(gpu_util=[70.0, 80.0, 90.0, 99.0])),
                           Resource.GPU_UTILIZATION)
        self.assertEqual(verdict.samples_over_warning, 3)
        self.assertEqual(verdict.threshold, 95.0)

    def test_sentinels_are_excluded(self):
        samples = _samples(gpu_util=[90.0, 90.0])
        samples.insert(1, MetricSample.sentinel(timestamp=0.5, elapsed=0.5, active_jobs=0))
        verdict = _verdict(self.classifier.classify(samples), Resource.GPU_UTILIZATION)
        self.assertAlmostEqual(verdict.average, 90.0)
        self.assertEqual(verdict.samples, 2)

    def test_empty_series_is_low_risk(self):
        verdicts = self.classifier.classify([])
        self.assertTrue(all(v.risk is RiskLevel.LOW and v.samples == 0 for v in verdicts))
        self.assertEqual(peak_and_average([]), (0.0, 0.0))

    def test_encoder_sessions_only_with_limit(self):
        self.assertNotIn(Resource.ENCODER_SESSIONS, self.classifier.tracked_resources)

        limited = BottleneckClassifier(cpu_count=4, encoder_session_limit=10)
        verdict = _verdict(limited.classify(_samples(encoder_sessions=[3, 8, 6])),
                           Resource.ENCODER_SESSIONS)
        self.assertEqual(verdict.peak, 8.0)
        self.assertEqual(verdict.risk, RiskLevel.MEDIUM)

    def test_invalid_thresholds(self):
        with self.assertRaises(ValueError):
            Thresholds(90.0, 80.0)

    def test_threshold_override(self):
        classifier = BottleneckClassifier(
            thresholds={Resource.GPU_UTILIZATION: Thresholds(50.0, 60.0)}, cpu_count=4)
        verdict = _verdict(classifier.classify(_samples(gpu_util=[65.0])), Resource.GPU_UTILIZATION)
        self.assertEqual(verdict.risk, RiskLevel.HIGH)

    def test_verdict_dict_keeps_fields(self):
        verdict = _verdict(self.classifier.classify(_samples(gpu_util=[85.0])),
                           Resource.GPU_UTILIZATION)
        data = verdict.to_dict()
        self.assertEqual(data["resource"], "GPU_UTILIZATION")
        self.assertEqual(data["risk"], "MEDIUM")
        self.assertEqual(ResourceVerdict.from_dict(data), verdict)


class TestScalingRecommendation(unittest.TestCase):

    def _verdicts(self, *risks):
        return [ResourceVerdict(resource, 0.0, 0.0, 1.0, 2.0, risk)
                for resource, risk in zip(Resource, risks)]

    def test_any_high_scales_down(self):
        verdicts = self._verdicts(RiskLevel.LOW, RiskLevel.HIGH, RiskLevel.MEDIUM)
        self.assertEqual(scaling_recommendation(verdicts), ScalingRecommendation.SCALE_DOWN)
        self.assertEqual(find_bottlenecks(verdicts), [Resource.GPU_MEMORY])

    def test_all_low_scales_up(self):
        verdicts = self._verdicts(RiskLevel.LOW, RiskLevel.LOW)
        self.assertEqual(scaling_recommendation(verdicts), ScalingRecommendation.SCALE_UP)

    def test_medium_holds(self):
        verdicts = self._verdicts(RiskLevel.LOW, RiskLevel.MEDIUM)
        self.assertEqual(scaling_recommendation(verdicts), ScalingRecommendation.HOLD)


if __name__ == '__main__':
    unittest.main()
