"""
Capacity Finder - find how many concurrent GPU encodes a host sustains.
"""

__version__ = "1.0.0"

from .config import get_config, load_env_file, parse_levels, generate_levels
from .core.orchestrator import (
    CapacityConfig, CapacityReport, Decision, LoadLevel, LoadOrchestrator,
)

__all__ = [
    "get_config",
    "load_env_file",
    "parse_levels",
    "generate_levels",
    "CapacityConfig",
    "CapacityReport",
    "Decision",
    "LoadLevel",
    "LoadOrchestrator",
]
