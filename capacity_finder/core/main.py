"""
Main capacity run module for capacity_finder.

This module wires the components of a capacity run together:
- Configuration from .env, environment and command line flags
- FFmpeg/NVENC encode task and nvidia-smi metrics provider
- Load orchestration with graceful Ctrl+C handling
- Result table and recommendation output
"""

import argparse
import sys
from dataclasses import asdict
from pathlib import Path
from typing import Any, Dict, List, Optional

from ..config import get_config, parse_levels, generate_levels
from ..utils.logging import get_logger, set_debug_mode, set_quiet_mode
from .analyze import print_report
from .orchestrator import CapacityConfig, LoadLevel, LoadOrchestrator
from .modules.analysis.bottleneck_classifier import BottleneckClassifier
from .modules.analysis.report_writer import ReportWriter
from .modules.processing.encode_task import EncodeSettings, FFmpegEncodeTask
from .modules.system.interrupt_handler import InterruptHandler
from .modules.system.metrics_provider import NvidiaMetricsProvider
from .modules.system.system_utils import cleanup_processes, get_next_run_dir

logger = get_logger("capacity_main")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Find the highest number of concurrent GPU encodes this host sustains"
    )

    # Level sequence
    levels_group = parser.add_argument_group("levels")
    levels_group.add_argument("--levels",
                              help="Comma separated concurrency levels (default: 10,20,30,40,50)")
    levels_group.add_argument("--start", type=int, help="First level of a generated sequence")
    levels_group.add_argument("--max", type=int, dest="max_level",
                              help="Last level of a generated sequence")
    levels_group.add_argument("--increment", type=int, default=10,
                              help="Step of a generated sequence (default: 10)")
    levels_group.add_argument("--jobs-per-level", type=int,
                              help="Jobs enqueued per level (default: the level's concurrency)")
    levels_group.add_argument("--pool-capacity", type=int,
                              help="Upper bound on workers per level (default: 200)")

    # Timing
    timing_group = parser.add_argument_group("timing")
    timing_group.add_argument("--duration", type=float,
                              help="Target encode duration per job in seconds (default: 45)")
    timing_group.add_argument("--grace", type=float,
                              help="Extra seconds a job may run past its duration (default: 10)")
    timing_group.add_argument("--kill-grace", type=float, default=5.0,
                              help="Seconds between SIGTERM and SIGKILL (default: 5)")
    timing_group.add_argument("--cooldown", type=float,
                              help="Pause between levels in seconds (default: 15)")
    timing_group.add_argument("--sample-interval", type=float,
                              help="Resource sampling interval in seconds (default: 1.0)")
    timing_group.add_argument("--safety-margin", type=float, default=30.0,
                              help="Slack added to each level deadline in seconds (default: 30)")
    timing_group.add_argument("--worker-max-lifetime", type=float,
                              help="Recycle workers after this many seconds, 0 disables (default: 300)")

    # Escalation policy
    policy_group = parser.add_argument_group("escalation policy")
    policy_group.add_argument("--high-success", type=float,
                              help="Success rate %% needed to escalate (default: 90)")
    policy_group.add_argument("--low-success", type=float,
                              help="Success rate %% below which the run stops (default: 50)")
    policy_group.add_argument("--hold", choices=["repeat", "stop"], default="repeat",
                              help="What a HOLD decision does (default: repeat)")
    policy_group.add_argument("--max-hold-repeats", type=int, default=1,
                              help="Repeats of a held level before stopping (default: 1)")
    policy_group.add_argument("--interactive", action="store_true",
                              help="Ask before escalating to the next level")

    # Encoder settings
    encode_group = parser.add_argument_group("encoder")
    encode_group.add_argument("--preset", default="p4", help="NVENC preset (default: p4)")
    encode_group.add_argument("--cq", type=int, default=36, help="Constant quality value (default: 36)")
    encode_group.add_argument("--bitrate", default="2M", help="Target bitrate (default: 2M)")
    encode_group.add_argument("--maxrate", default="3M", help="Maximum bitrate (default: 3M)")
    encode_group.add_argument("--bufsize", default="6M", help="Rate control buffer (default: 6M)")
    encode_group.add_argument("--resolution", default="1280x720",
                              help="Synthetic source resolution (default: 1280x720)")
    encode_group.add_argument("--ffmpeg", default="ffmpeg", help="ffmpeg executable")

    # Monitoring
    monitor_group = parser.add_argument_group("monitoring")
    monitor_group.add_argument("--gpu-index", type=int, default=0, help="GPU to sample (default: 0)")
    monitor_group.add_argument("--encoder-session-limit", type=int,
                               help="NVENC session limit; enables the ENCODER_SESSIONS verdict")
    monitor_group.add_argument("--cpu-count", type=int,
                               help="Cores used for load thresholds (default: detected)")
    monitor_group.add_argument("--provider-timeout", type=float, default=5.0,
                               help="Longest wait for one metrics snapshot (default: 5)")

    # Output
    parser.add_argument("--output-dir", help="Directory receiving capacity_run_* (default: .)")
    parser.add_argument("--debug", action="store_true", help="Enable debug output")
    parser.add_argument("--quiet", action="store_true", help="Only print warnings and results")
    return parser


def _pick(value, default):
    return default if value is None else value


def resolve_levels(args: argparse.Namespace, env_config: Dict[str, Any]) -> List[int]:
    if args.levels and args.start is not None:
        raise ValueError("--levels and --start/--max are mutually exclusive")
    if args.start is not None:
        if args.max_level is None:
            raise ValueError("--start requires --max")
        return generate_levels(args.start, args.max_level, args.increment)
    if args.max_level is not None:
        raise ValueError("--max requires --start")
    if args.levels:
        return parse_levels(args.levels)
    return env_config['levels']


def build_config(args: argparse.Namespace, env_config: Dict[str, Any]) -> CapacityConfig:
    """Merge flags over .env/environment values; raises ValueError if invalid."""
    lifetime = env_config['worker_max_lifetime']
    if args.worker_max_lifetime is not None:
        lifetime = args.worker_max_lifetime if args.worker_max_lifetime > 0 else None

    config = CapacityConfig(
        levels=resolve_levels(args, env_config),
        output_dir=Path(_pick(args.output_dir, env_config['output_root'])),
        target_duration=_pick(args.duration, env_config['target_duration']),
        grace_period=_pick(args.grace, env_config['grace_period']),
        kill_grace=args.kill_grace,
        level_safety_margin=args.safety_margin,
        cooldown=_pick(args.cooldown, env_config['cooldown']),
        sample_interval=_pick(args.sample_interval, env_config['sample_interval']),
        provider_timeout=args.provider_timeout,
        high_success=_pick(args.high_success, env_config['high_success']),
        low_success=_pick(args.low_success, env_config['low_success']),
        pool_capacity=_pick(args.pool_capacity, env_config['pool_capacity']),
        jobs_per_level=args.jobs_per_level,
        worker_max_lifetime=lifetime,
        hold_action=args.hold,
        max_hold_repeats=args.max_hold_repeats,
    )
    config.validate()
    return config


def build_encode_settings(args: argparse.Namespace) -> EncodeSettings:
    settings = EncodeSettings(
        preset=args.preset,
        cq=args.cq,
        bitrate=args.bitrate,
        maxrate=args.maxrate,
        bufsize=args.bufsize,
        resolution=args.resolution,
    )
    try:
        width, height = settings.dimensions
    except ValueError:
        raise ValueError(f"invalid resolution {args.resolution!r}, expected WIDTHxHEIGHT")
    if width <= 0 or height <= 0:
        raise ValueError(f"invalid resolution {args.resolution!r}")
    return settings


def prompt_continue(level: LoadLevel) -> bool:
    """Ask whether to escalate past a level that passed."""
    message = (f"Level {level.concurrency} passed ({level.success_rate:.1f}% success). "
               f"Continue to the next level?")
    while True:
        try:
            response = input(f"{message} [Y/n]: ").strip().lower()
        except EOFError:
            return False
        if response in ('', 'y', 'yes'):
            return True
        if response in ('n', 'no'):
            return False
        print("Please enter 'y' or 'n'")


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.debug:
        set_debug_mode(True)
    if args.quiet:
        set_quiet_mode(True)

    try:
        env_config = get_config()
        if env_config['debug']:
            set_debug_mode(True)
        config = build_config(args, env_config)
        settings = build_encode_settings(args)
    except ValueError as e:
        logger.error(f"Invalid configuration: {e}")
        return 1

    run_dir = get_next_run_dir(Path(config.output_dir).resolve())
    config.output_dir = run_dir
    writer = ReportWriter(run_dir)
    writer.write_config({
        **config.to_dict(),
        "encode": asdict(settings),
        "gpu_index": args.gpu_index,
        "encoder_session_limit": args.encoder_session_limit,
    })

    logger.info(f"Levels: {', '.join(str(level) for level in config.levels)}")
    logger.info(f"Run directory: {run_dir}")

    orchestrator = LoadOrchestrator(
        config,
        FFmpegEncodeTask(settings, ffmpeg=args.ffmpeg),
        NvidiaMetricsProvider(gpu_index=args.gpu_index,
                              timeout=min(3.0, config.provider_timeout)),
        classifier=BottleneckClassifier(cpu_count=args.cpu_count,
                                        encoder_session_limit=args.encoder_session_limit),
        writer=writer,
        confirm_escalation=prompt_continue if args.interactive else None,
    )

    with InterruptHandler(orchestrator.request_stop):
        report = orchestrator.run()

    print_report([level.to_dict() for level in report.levels], report.to_dict())
    print(f"[OUTPUT] Results in: {run_dir}")
    return 0


def run():
    """Console entry point: exit codes and last-resort cleanup."""
    try:
        sys.exit(main())
    except KeyboardInterrupt:
        print("\n[INTERRUPTED] Cleaning up...")
        cleanup_processes()
        sys.exit(1)


if __name__ == "__main__":
    run()
