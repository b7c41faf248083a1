"""Core orchestration and command line modules."""

from .orchestrator import LoadOrchestrator, CapacityConfig

__all__ = ["LoadOrchestrator", "CapacityConfig"]
