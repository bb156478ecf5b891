"""Periodic background tasks."""

import logging
import threading
from typing import Callable

logger = logging.getLogger(__name__)


class PeriodicTask:
    """Runs ``func`` every ``interval`` seconds on a daemon thread.

    Exceptions raised by ``func`` are logged and the schedule continues.
    """

    def __init__(self, name: str, interval: float, func: Callable[[], object]):
        self.name = name
        self.interval = interval
        self.func = func
        self.runs = 0
        self.failures = 0
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None

    def _loop(self):
        while not self._stop_event.wait(timeout=self.interval):
            self.run_once()

    def run_once(self):
        try:
            self.func()
        except Exception:
            self.failures += 1
            logger.exception("Periodic task %s failed", self.name)
        finally:
            self.runs += 1

    def start(self):
        if self._thread is not None:
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._loop, daemon=True, name=self.name)
        self._thread.start()
        logger.debug("Started %s (every %.1fs)", self.name, self.interval)

    def stop(self, timeout: float = 5.0):
        self._stop_event.set()
        if self._thread is not None:
            self._thread.join(timeout=timeout)
            self._thread = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()
