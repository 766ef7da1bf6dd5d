"""
Background interval timers.

Used for the rate-limit window sweep, the permission cache sweep and the
critical audit queue drain.
"""

import logging
import threading
from collections.abc import Callable

logger = logging.getLogger("fieldops.timers")


class PeriodicTask:
    """Run a callback every ``interval_seconds`` on a daemon thread."""

    def __init__(self, name: str, interval_seconds: float, callback: Callable[[], object]):
        self.name = name
        self.interval_seconds = interval_seconds
        self._callback = callback
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        if self.is_running:
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._run, name=self.name, daemon=True)
        self._thread.start()
        logger.debug(f"[TIMER] Started {self.name} every {self.interval_seconds}s")

    def stop(self, timeout: float | None = 5.0) -> None:
        self._stop.set()
        thread = self._thread
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout)
        self._thread = None

    def _run(self) -> None:
        while not self._stop.wait(self.interval_seconds):
            try:
                self._callback()
            except Exception:
                logger.exception(f"[TIMER] {self.name} tick failed")
