"""
System utilities for capacity_finder.

This module provides system-level utilities including:
- Subprocess execution with timeouts
- Graceful-then-forced process termination
- Tracking of live encode processes with cleanup on exit
- Run directory naming
"""

import atexit
import shlex
import subprocess
import threading
from datetime import datetime
from pathlib import Path
from typing import Optional

from ....utils.logging import get_logger

logger = get_logger("system_utils")

DEFAULT_KILL_GRACE = 5.0

# Live EncodeTask handles, keyed by id() so duck-typed fakes work too
ACTIVE_PROCESSES: dict = {}
_ACTIVE_LOCK = threading.Lock()


def track_process(handle) -> None:
    """Register a running process handle for cleanup on exit."""
    with _ACTIVE_LOCK:
        ACTIVE_PROCESSES[id(handle)] = handle


def untrack_process(handle) -> None:
    """Forget a process handle once it has exited."""
    with _ACTIVE_LOCK:
        ACTIVE_PROCESSES.pop(id(handle), None)


def terminate_process(handle, grace: float = DEFAULT_KILL_GRACE) -> Optional[int]:
    """
    Stop a process handle: graceful signal first, forced kill after `grace` seconds.

    The handle only needs the Popen subset poll/terminate/kill/wait.
    Returns the exit code observed after termination.
    """
    if handle.poll() is not None:
        return handle.poll()

    try:
        handle.terminate()
    except ProcessLookupError:
        return handle.poll()

    try:
        return handle.wait(timeout=grace)
    except subprocess.TimeoutExpired:
        logger.warn(f"Process did not exit {grace:.1f}s after SIGTERM, killing")

    try:
        handle.kill()
    except ProcessLookupError:
        pass
    return handle.wait()


def _cleanup():
    """Terminate any encode processes still alive at interpreter exit"""
    with _ACTIVE_LOCK:
        handles = list(ACTIVE_PROCESSES.values())
        ACTIVE_PROCESSES.clear()

    for handle in handles:
        try:
            if handle.poll() is None:
                terminate_process(handle, grace=1.0)
                logger.cleanup(f"terminated leftover process {getattr(handle, 'pid', '?')}")
        except OSError as e:
            logger.debug(f"Cleanup of process failed: {e}")


def cleanup_processes():
    """Public cleanup function (wrapper around _cleanup)."""
    _cleanup()


# Register cleanup on exit
atexit.register(_cleanup)


def run_command(cmd: list[str], timeout: float = 30, capture_output: bool = True,
                text: bool = True, check: bool = False) -> subprocess.CompletedProcess:
    """
    Standardized subprocess command runner with consistent error handling.

    Args:
        cmd: Command as list of strings
        timeout: Timeout in seconds (default: 30)
        capture_output: Whether to capture stdout/stderr (default: True)
        text: Whether to use text mode (default: True)
        check: Whether to raise exception on non-zero exit (default: False)

    Returns:
        CompletedProcess object
    """
    logger.cmd(" ".join(shlex.quote(c) for c in cmd))
    try:
        return subprocess.run(
            cmd,
            capture_output=capture_output,
            text=text,
            timeout=timeout,
            check=check
        )
    except subprocess.TimeoutExpired:
        logger.debug(f"Command timed out after {timeout}s: {' '.join(cmd[:3])}...")
        raise


def format_duration(seconds: float) -> str:
    """Format duration in human readable format"""
    if seconds < 60:
        return f"{seconds:.1f}s"
    elif seconds < 3600:
        return f"{int(seconds//60)}m {int(seconds%60)}s"
    else:
        return f"{int(seconds//3600)}h {int((seconds%3600)//60)}m"


def get_next_run_dir(base_path: Path, now: Optional[datetime] = None) -> Path:
    """
    Get the next available run directory name.

    Returns 'capacity_run_YYYYmmdd_HHMMSS'; if that already exists,
    '_2', '_3', etc. are appended.
    """
    stamp = (now or datetime.now()).strftime("%Y%m%d_%H%M%S")
    candidate = base_path / f"capacity_run_{stamp}"
    if not candidate.exists():
        return candidate

    counter = 2
    while True:
        numbered = base_path / f"capacity_run_{stamp}_{counter}"
        if not numbered.exists():
            return numbered
        counter += 1


def interruptible_sleep(seconds: float, stop_event: threading.Event) -> bool:
    """Sleep up to `seconds`, returning True early if stop_event is set."""
    if seconds <= 0:
        return stop_event.is_set()
    return stop_event.wait(timeout=seconds)
