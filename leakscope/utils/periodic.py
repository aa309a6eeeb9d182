# leakscope/utils/periodic.py - Cancellable periodic workers
"""
Background thread that runs a task on a fixed interval until stopped.
"""

from typing import Optional
import logging
import threading

from leakscope.errors import InvariantViolation


class PeriodicWorker:
    """
    Runs run_once() every interval seconds on a daemon thread.

    stop() sets an event the task can poll through should_stop(), so a
    long pass can end early without being forcibly interrupted.
    """

    name = 'periodic-worker'

    def __init__(self, interval: float):
        """
        Initialize the worker.

        Args:
            interval: Seconds between the end of one run and the next
        """
        if interval <= 0:
            raise ValueError("interval must be positive")
        self.interval = interval
        self.runs = 0
        self.failures = 0

        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self.logger = logging.getLogger(__name__)

    def run_once(self):
        raise NotImplementedError

    def should_stop(self) -> bool:
        return self._stop_event.is_set()

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self):
        """Start the background thread"""
        if self.running:
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._loop, name=self.name, daemon=True)
        self._thread.start()
        self.logger.info(f"Started {self.name} (every {self.interval}s)")

    def stop(self, timeout: Optional[float] = None):
        """
        Signal the worker to stop and wait for the thread.

        Args:
            timeout: Maximum seconds to wait for the current run to finish
        """
        self._stop_event.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None
        self.logger.info(f"Stopped {self.name}")

    def _loop(self):
        while not self._stop_event.wait(self.interval):
            try:
                self.run_once()
                self.runs += 1
            except InvariantViolation:
                self.logger.critical(f"{self.name} stopping on invariant violation", exc_info=True)
                raise
            except Exception as e:
                self.failures += 1
                self.logger.error(f"{self.name} run failed: {e}", exc_info=True)
