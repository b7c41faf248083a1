"""
Results analysis for capacity_finder.

Re-reads a finished run directory (per-level summaries and the final
recommendation) and prints the level table, the resource verdicts of the
recommended level, any bottlenecks seen along the way and the jobs that
did not succeed.
"""

import argparse
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional

from ..utils.logging import get_logger, print_section_header, print_separator, set_debug_mode
from .modules.analysis.bottleneck_classifier import ResourceVerdict
from .modules.analysis.report_writer import (
    JOBS_FILE, load_jobs, load_level_summaries, load_recommendation,
)

logger = get_logger("analyze")

TABLE_WIDTH = 90


def format_level_table(summaries: List[Dict[str, Any]]) -> List[str]:
    """Render level summaries as fixed-width table lines."""
    header = (f"{'Level':>6} {'Try':>3} {'Pool':>5} {'Jobs':>5} {'OK':>5} {'Fail':>5} "
              f"{'T/O':>4} {'Unst':>5} {'Rate%':>6} {'PeakGPU':>8} {'Rec':>10} {'Decision':>9}")
    lines = [header, "-" * len(header)]
    for s in summaries:
        gpu_peak = None
        for verdict in s.get("verdicts", []):
            if verdict.get("resource") == "GPU_UTILIZATION":
                gpu_peak = verdict.get("peak")
        gpu = f"{gpu_peak:.1f}" if gpu_peak is not None else "-"
        lines.append(
            f"{s.get('target_concurrency', 0):>6} {s.get('attempt', 1):>3} "
            f"{s.get('pool_size') or 0:>5} {s.get('jobs') or 0:>5} "
            f"{s.get('succeeded', 0):>5} {s.get('failed', 0):>5} "
            f"{s.get('timed_out', 0):>4} {s.get('unstarted', 0):>5} "
            f"{s.get('success_rate', 0.0):>6.1f} {gpu:>8} "
            f"{s.get('recommendation') or '-':>10} {s.get('decision') or '-':>9}"
        )
    return lines


def format_verdicts(verdicts: List[ResourceVerdict]) -> List[str]:
    lines = []
    for v in verdicts:
        lines.append(
            f"  {v.resource.value:<17} peak {v.peak:8.1f}  avg {v.average:8.1f}  "
            f"threshold {v.threshold:7.1f}  risk {v.risk.value:<6} "
            f"({v.samples_over_warning}/{v.samples} samples over warning)"
        )
    return lines


def format_failed_jobs(level_name: str, rows: List[Dict[str, str]]) -> List[str]:
    """One line per job of a level that did not succeed."""
    lines = []
    for row in rows:
        if row.get("status") == "succeeded":
            continue
        worker = row.get("worker") or "-"
        code = row.get("return_code") or "-"
        error = row.get("error") or "never started"
        lines.append(f"  {level_name} {row.get('id', '?'):<16} {row.get('status', '?'):<9} "
                     f"worker {worker:>3}  exit {code:>4}  {error}")
    return lines


def print_report(summaries: List[Dict[str, Any]], recommendation: Optional[Dict[str, Any]]):
    print_section_header("CAPACITY RESULTS", TABLE_WIDTH)
    for line in format_level_table(summaries):
        print(line)
    print_separator(TABLE_WIDTH)

    bottlenecks = sorted({b for s in summaries for b in s.get("bottlenecks", [])})
    if bottlenecks:
        print(f"Bottlenecks observed: {', '.join(bottlenecks)}")

    if recommendation is None:
        print("No recommendation recorded (run incomplete?)")
        return

    recommended = recommendation.get("recommended_concurrency")
    threshold = recommendation.get("high_success_threshold", 0.0)
    if recommended is None:
        print(f"No level met the {threshold:.0f}% success threshold")
    else:
        print(f"Recommended concurrency: {recommended}")
        verdicts = [ResourceVerdict.from_dict(v) for v in recommendation.get("verdicts", [])]
        for line in format_verdicts(verdicts):
            print(line)
    print(f"Stop reason: {recommendation.get('stop_reason', '-')}")


def analyze_run(run_dir: Path) -> int:
    if not run_dir.is_dir():
        logger.error(f"Run directory does not exist: {run_dir}")
        return 1

    summaries = load_level_summaries(run_dir)
    if not summaries:
        logger.error(f"No level summaries found in {run_dir}")
        return 1

    print_report(summaries, load_recommendation(run_dir))

    failures = []
    for path in sorted(run_dir.glob(f"level_*/{JOBS_FILE}")):
        failures.extend(format_failed_jobs(path.parent.name, load_jobs(path)))
    if failures:
        print_separator(TABLE_WIDTH)
        print(f"Jobs that did not succeed ({len(failures)}):")
        for line in failures:
            print(line)
    return 0


def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(
        description="Summarize a finished capacity run directory"
    )
    parser.add_argument("run_dir", help="capacity_run_* directory to analyze")
    parser.add_argument("--debug", action="store_true", help="Enable debug output")
    args = parser.parse_args(argv)

    if args.debug:
        set_debug_mode(True)

    return analyze_run(Path(args.run_dir).resolve())


if __name__ == "__main__":
    sys.exit(main())
