"""
Trailing-edge debounce on a timer thread.

Each call to ``trigger()`` cancels any pending run and re-arms the
timer, so a burst of triggers collapses into one call after the quiet
period.
"""

from __future__ import annotations

import logging
import threading
from typing import Callable, Optional

logger = logging.getLogger("pagenote.sync.scheduler")

PUSH_DEBOUNCE_SECONDS = 5.0
AUTOSAVE_DEBOUNCE_SECONDS = 0.6


class Debouncer:
    """Run ``action`` once ``delay`` seconds after the last trigger.

    Args:
        action: Callable to run on expiry. Exceptions are logged.
        delay: Quiet period in seconds.
        name: Thread name prefix, for logs.
    """

    def __init__(
        self,
        action: Callable[[], object],
        delay: float = PUSH_DEBOUNCE_SECONDS,
        name: str = "debounce",
    ) -> None:
        self._action = action
        self.delay = delay
        self._name = name
        self._lock = threading.Lock()
        self._timer: Optional[threading.Timer] = None
        self._generation = 0

    @property
    def pending(self) -> bool:
        """Whether a run is armed and has not fired yet."""
        with self._lock:
            return self._timer is not None

    def trigger(self) -> None:
        """Arm the timer, replacing any pending run."""
        with self._lock:
            if self._timer is not None:
                self._timer.cancel()
            self._generation += 1
            timer = threading.Timer(self.delay, self._fire, args=(self._generation,))
            timer.name = f"{self._name}-{self._generation}"
            timer.daemon = True
            self._timer = timer
            timer.start()

    def cancel(self) -> bool:
        """Drop the pending run, if any.

        Returns:
            True if a run was pending.
        """
        with self._lock:
            if self._timer is None:
                return False
            self._timer.cancel()
            self._timer = None
            self._generation += 1
            return True

    def flush(self) -> bool:
        """Run the pending action now instead of waiting.

        Returns:
            True if there was a pending run.
        """
        if not self.cancel():
            return False
        self._run()
        return True

    def _fire(self, generation: int) -> None:
        with self._lock:
            # A re-arm between expiry and here supersedes this run.
            if generation != self._generation:
                return
            self._timer = None
        self._run()

    def _run(self) -> None:
        try:
            self._action()
        except Exception as exc:
            logger.error("Debounced action %s failed: %s", self._name, exc)
