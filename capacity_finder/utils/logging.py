"""
Centralized logging utilities for capacity_finder

Provides consistent logging patterns with configurable debug levels:
- [INFO] for general information
- [WARN] for warnings
- [ERROR] for errors
- [RESULT] for final results
- [DEBUG] for debug information
- [LEVEL] for load level transitions
- [WORKER] for worker lifecycle messages
- [MONITOR] for resource sampling messages
- [CLEANUP] for cleanup operations

Usage:
    from capacity_finder.utils.logging import get_logger, set_debug_mode

    # Configure logging globally
    set_debug_mode(True)  # Enable debug messages

    # Get a logger for your module
    logger = get_logger("worker_pool")
    logger.info("This is an info message")
    logger.debug("This is a debug message")  # Only shows if debug enabled
    logger.level("Level 20: MONITORING")
"""

import os
import threading
from enum import Enum
from typing import Optional

from tqdm import tqdm

# Global logging configuration
_DEBUG_ENABLED = False
_QUIET_MODE = False
_LOG_LEVEL = "INFO"

# Workers, the monitor and the orchestrator all log concurrently
_OUTPUT_LOCK = threading.Lock()


class LogLevel(Enum):
    DEBUG = 0
    INFO = 1
    WARN = 2
    ERROR = 3


def _init_debug_mode():
    global _DEBUG_ENABLED
    if os.getenv('DEBUG', '').lower() in ('1', 'true', 'yes'):
        _DEBUG_ENABLED = True

_init_debug_mode()


def set_debug_mode(enabled: bool):
    """Enable or disable debug mode globally"""
    global _DEBUG_ENABLED
    _DEBUG_ENABLED = enabled


def set_quiet_mode(enabled: bool):
    """Enable or disable quiet mode (suppress INFO and DEBUG messages)"""
    global _QUIET_MODE
    _QUIET_MODE = enabled


def set_log_level(level: str):
    """Set the global log level: DEBUG, INFO, WARN, ERROR"""
    global _LOG_LEVEL
    _LOG_LEVEL = level.upper()


def _emit(line: str):
    # tqdm.write keeps an active progress bar intact below the message
    with _OUTPUT_LOCK:
        tqdm.write(line)


class Logger:
    """Centralized logger with consistent formatting and configurable output"""

    def __init__(self, module_name: str = ""):
        self.module_name = module_name
        self.prefix = f"[{module_name}] " if module_name else ""

    def _should_log(self, level: LogLevel) -> bool:
        """Check if message should be logged based on current settings"""
        if _QUIET_MODE and level in (LogLevel.DEBUG, LogLevel.INFO):
            return False
        if level is LogLevel.DEBUG:
            return _DEBUG_ENABLED

        level_hierarchy = {
            "DEBUG": LogLevel.DEBUG,
            "INFO": LogLevel.INFO,
            "WARN": LogLevel.WARN,
            "ERROR": LogLevel.ERROR
        }

        current_level = level_hierarchy.get(_LOG_LEVEL, LogLevel.INFO)
        return level.value >= current_level.value

    def _log(self, level: str, message: str, prefix: str = ""):
        """Internal logging function"""
        log_level = LogLevel.INFO
        if level == "DEBUG":
            log_level = LogLevel.DEBUG
        elif level == "WARN":
            log_level = LogLevel.WARN
        elif level == "ERROR":
            log_level = LogLevel.ERROR

        if not self._should_log(log_level):
            return

        full_prefix = f"{self.prefix}{prefix}" if prefix else self.prefix
        _emit(f"[{level}] {full_prefix}{message}")

    def debug(self, message: str):
        """Log debug message (only if debug mode enabled)"""
        if _DEBUG_ENABLED:
            self._log("DEBUG", message)

    def info(self, message: str):
        """Log informational message"""
        self._log("INFO", message)

    def warn(self, message: str):
        """Log warning message"""
        self._log("WARN", message)

    def error(self, message: str):
        """Log error message"""
        self._log("ERROR", message)

    def result(self, message: str):
        """Log result message"""
        if self._should_log(LogLevel.INFO):
            _emit(f"[RESULT] {self.prefix}{message}")

    # Domain-specific logging methods
    def level(self, message: str):
        """Log a load level transition"""
        if self._should_log(LogLevel.INFO):
            _emit(f"[LEVEL] {message}")

    def worker(self, message: str):
        """Log worker lifecycle message"""
        if _DEBUG_ENABLED and self._should_log(LogLevel.DEBUG):
            _emit(f"[WORKER] {message}")

    def monitor(self, message: str):
        """Log resource monitor message"""
        if self._should_log(LogLevel.INFO):
            _emit(f"[MONITOR] {message}")

    def cleanup(self, message: str):
        """Log cleanup operation"""
        if self._should_log(LogLevel.INFO):
            _emit(f"[CLEANUP] {message}")

    def cmd(self, message: str):
        """Log command execution message"""
        if _DEBUG_ENABLED and self._should_log(LogLevel.DEBUG):
            _emit(f"[CMD] {message}")


def get_logger(module_name: str = "") -> Logger:
    """Get a logger instance for a module"""
    return Logger(module_name)


def create_progress_bar(total: Optional[int] = None, desc: str = "", unit: str = "it",
                        position: Optional[int] = None, leave: bool = True):
    """Create a progress bar with consistent styling"""
    return tqdm(total=total, desc=desc, unit=unit, position=position, leave=leave,
                disable=_QUIET_MODE)


def print_section_header(title: str, width: int = 90):
    """Print a section header with consistent formatting"""
    with _OUTPUT_LOCK:
        print("=" * width)
        print(title)
        print("=" * width)


def print_separator(width: int = 90):
    """Print a separator line"""
    with _OUTPUT_LOCK:
        print("-" * width)
