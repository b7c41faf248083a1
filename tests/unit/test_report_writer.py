"""
Unit tests for the report writer module.
"""

import csv
import shutil
import tempfile
import unittest
from pathlib import Path

from capacity_finder.core.modules.analysis.bottleneck_classifier import BottleneckClassifier
from capacity_finder.core.modules.analysis.report_writer import (
    CONFIG_FILE, JOB_COLUMNS, JOBS_FILE, METRICS_FILE, RESULTS_COLUMNS, RESULTS_FILE, SUMMARY_FILE,
    ReportWriter, level_dir_name, load_jobs, load_level_summaries, load_recommendation,
    load_timeseries,
)
from capacity_finder.core.modules.processing.job_queue import Job, JobStatus
from capacity_finder.core.modules.system.resource_monitor import MetricSample
from capacity_finder.core.orchestrator import Decision, LoadLevel

from tests.helpers import make_snapshot


def _level(concurrency, attempt=1, gpu_util=55.0):
    samples = [
        MetricSample.from_snapshot(make_snapshot(gpu_util=gpu_util), timestamp=100.0 + i,
                                   elapsed=float(i), active_jobs=concurrency)
        for i in range(3)
    ]
    samples.append(MetricSample.sentinel(timestamp=103.0, elapsed=3.0, active_jobs=0))
    level = LoadLevel(concurrency=concurrency, pool_size=concurrency, jobs=concurrency,
                      attempt=attempt, succeeded=concurrency - 1, failed=1, samples=samples)
    level.verdicts = BottleneckClassifier(cpu_count=8).classify(samples)
    level.decision = Decision.HOLD
    return level


class TestReportWriter(unittest.TestCase):

    def setUp(self):
        self.test_dir = Path(tempfile.mkdtemp())
        self.writer = ReportWriter(self.test_dir / "run")

    def tearDown(self):
        shutil.rmtree(self.test_dir, ignore_errors=True)

    def test_level_dir_name(self):
        self.assertEqual(level_dir_name(20), "level_020_a1")
        self.assertEqual(level_dir_name(150, 2), "level_150_a2")

    def test_write_level_artifacts(self):
        level_dir = self.writer.write_level(_level(10))

        self.assertTrue((level_dir / METRICS_FILE).exists())
        self.assertTrue((level_dir / SUMMARY_FILE).exists())
        self.assertTrue((level_dir / JOBS_FILE).exists())

        with open(self.writer.run_dir / RESULTS_FILE, newline="", encoding="utf-8") as f:
            rows = list(csv.DictReader(f))
        self.assertEqual(len(rows), 1)
        self.assertEqual(list(rows[0].keys()), RESULTS_COLUMNS)
        self.assertEqual(rows[0]["target_concurrency"], "10")
        self.assertEqual(rows[0]["success_rate"], "90.0")
        self.assertEqual(float(rows[0]["peak_gpu_util"]), 55.0)
        self.assertEqual(rows[0]["decision"], "hold")

    def test_job_records_written_per_level(self):
        level = _level(3)
        done, failed, unstarted = [
            Job(id=f"c003a1_{i:04d}", source=f"src{i}", target_duration=1.0, index=i)
            for i in range(3)
        ]
        done.mark_running(1)
        done.finish(JobStatus.SUCCEEDED, return_code=0)
        failed.mark_running(2)
        failed.finish(JobStatus.TIMED_OUT, return_code=-15, error="exceeded 11.0s deadline")
        level.job_records = [done, failed, unstarted]

        level_dir = self.writer.write_level(level)
        rows = load_jobs(level_dir / JOBS_FILE)

        self.assertEqual(len(rows), 3)
        self.assertEqual(list(rows[0].keys()), JOB_COLUMNS)
        self.assertEqual(rows[0]["status"], "succeeded")
        self.assertEqual(rows[0]["worker"], "1")
        self.assertGreaterEqual(float(rows[0]["duration"]), 0.0)
        self.assertEqual(rows[1]["status"], "timed_out")
        self.assertEqual(rows[1]["return_code"], "-15")
        self.assertEqual(rows[1]["error"], "exceeded 11.0s deadline")
        self.assertEqual(rows[2]["status"], "queued")
        self.assertEqual(rows[2]["worker"], "")
        self.assertEqual(rows[2]["start"], "")

    def test_missing_jobs_file_reads_empty(self):
        self.assertEqual(load_jobs(self.test_dir / "nowhere" / JOBS_FILE), [])

    def test_results_header_written_once(self):
        self.writer.write_level(_level(10))
        self.writer.write_level(_level(20))
        with open(self.writer.run_dir / RESULTS_FILE, encoding="utf-8") as f:
            lines = f.read().strip().splitlines()
        self.assertEqual(len(lines), 3)

    def test_timeseries_read_back(self):
        level = _level(5)
        level_dir = self.writer.write_level(level)
        samples = load_timeseries(level_dir / METRICS_FILE)

        self.assertEqual(len(samples), 4)
        self.assertFalse(samples[-1].valid)
        self.assertEqual(samples[0].active_jobs, 5)
        self.assertAlmostEqual(samples[1].timestamp, 101.0, places=3)
        self.assertEqual(samples[0].gpu_util, level.samples[0].gpu_util)

    def test_summaries_sorted_by_level_and_attempt(self):
        self.writer.write_level(_level(20))
        self.writer.write_level(_level(10, attempt=2))
        self.writer.write_level(_level(10))

        summaries = load_level_summaries(self.writer.run_dir)
        self.assertEqual([(s["target_concurrency"], s["attempt"]) for s in summaries],
                         [(10, 1), (10, 2), (20, 1)])
        self.assertIn("saved_at", summaries[0])

    def test_unreadable_summary_is_skipped(self):
        self.writer.write_level(_level(10))
        broken = self.writer.level_dir(20)
        broken.mkdir(parents=True)
        (broken / SUMMARY_FILE).write_text("{not json", encoding="utf-8")

        self.assertEqual(len(load_level_summaries(self.writer.run_dir)), 1)

    def test_config_and_recommendation(self):
        self.writer.write_config({"levels": [10, 20]})
        self.assertTrue((self.writer.run_dir / CONFIG_FILE).exists())

        self.assertIsNone(load_recommendation(self.writer.run_dir))
        self.writer.write_recommendation({"recommended_concurrency": 20})
        self.assertEqual(load_recommendation(self.writer.run_dir)["recommended_concurrency"], 20)
        self.assertEqual(list(self.writer.run_dir.glob("*.tmp")), [])


if __name__ == '__main__':
    unittest.main()
