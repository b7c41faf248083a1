"""
Interrupt handling for capacity runs.

- First Ctrl+C: graceful stop; the running level is cancelled, its encodes
  terminated and the artifacts gathered so far are still written
- Second Ctrl+C: immediate exit via KeyboardInterrupt
"""

import signal
from typing import Callable

from ....utils.logging import get_logger

logger = get_logger("interrupt_handler")


class InterruptHandler:
    """Installs a SIGINT handler that calls `on_stop` once, then escalates."""

    def __init__(self, on_stop: Callable[[], None]):
        self.on_stop = on_stop
        self._interrupt_count = 0
        self._original_handler = None

    @property
    def interrupted(self) -> bool:
        return self._interrupt_count > 0

    def install(self):
        self._original_handler = signal.signal(signal.SIGINT, self._handle_interrupt)
        logger.debug("Press Ctrl+C once for a graceful stop, twice for immediate exit.")

    def restore(self):
        if self._original_handler is not None:
            signal.signal(signal.SIGINT, self._original_handler)
            self._original_handler = None

    def __enter__(self):
        self.install()
        return self

    def __exit__(self, exc_type, exc, tb):
        self.restore()
        return False

    def _handle_interrupt(self, signum, frame):
        # Handlers run on the main thread and may nest; no lock here
        self._interrupt_count += 1
        count = self._interrupt_count

        if count == 1:
            logger.info("Interrupt received. Stopping the current level...")
            logger.info("Press Ctrl+C again for immediate exit.")
            self.on_stop()
        else:
            logger.warn("Second interrupt received. Exiting immediately...")
            self.restore()
            raise KeyboardInterrupt("Immediate exit requested")
