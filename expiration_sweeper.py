"""Background release of holds whose deadline has passed."""

from typing import Optional
import logging
import threading

from reservation_manager import ReservationManager

logger = logging.getLogger(__name__)


class ExpirationSweeper:
    """Periodically calls ``sweep_expired`` on a daemon thread without blocking request handling.

    Several instances may run against the same database: each hold is expired by a
    check-and-set on its status, so overlapping sweeps release it once.
    """

    def __init__(self, manager: ReservationManager, interval_seconds: float = 60.0):
        self.manager = manager
        self.interval_seconds = interval_seconds
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def run_once(self) -> int:
        released = self.manager.sweep_expired()
        if released > 0:
            logger.info(f"Background sweep: {released} holds released")
        return released

    def _run(self):
        while not self._stop.is_set():
            try:
                self.run_once()
            except Exception as e:
                logger.error(f"Background sweep error: {e}")
            self._stop.wait(self.interval_seconds)
        logger.info("Sweeper thread terminated gracefully.")

    def start(self):
        if self.running:
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._run, name="expiration-sweeper", daemon=True)
        self._thread.start()

    def stop(self, *args, timeout: Optional[float] = 5.0):
        """Signal the loop to exit; safe to use as a signal handler."""
        if self._thread is None:
            return
        if not self._stop.is_set():
            logger.info("Stopping expiration sweeper...")
            self._stop.set()
        if self._thread is not threading.current_thread():
            self._thread.join(timeout)

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()
