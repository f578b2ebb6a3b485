"""Cancellable periodic background tasks."""

import logging
import threading
from typing import Callable

logger = logging.getLogger(__name__)


class PeriodicTask:
    """Run `func` every `interval` seconds on a daemon thread until stopped.

    An exception raised by one pass is logged and the next pass still runs.
    """

    def __init__(self, name: str, interval: float, func: Callable[[], object]):
        self.name = name
        self.interval = interval
        self.func = func
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self):
        if self.running:
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._loop, name=self.name, daemon=True)
        self._thread.start()
        logger.info(f"Started periodic task {self.name} (every {self.interval}s)")

    def run_once(self):
        try:
            self.func()
        except Exception:
            logger.exception(f"Periodic task {self.name} failed")

    def _loop(self):
        while not self._stop.wait(self.interval):
            self.run_once()

    def stop(self, timeout: float = 10.0):
        """Signal the loop to exit and wait for an in-flight pass to finish."""
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)
            if self._thread.is_alive():
                logger.warning(f"Periodic task {self.name} did not stop within {timeout}s")
            self._thread = None
