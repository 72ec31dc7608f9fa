"""
Service host - the narrow seam onto the host service manager.

The service manager starts the process and asks it to stop with a
signal. ServiceHost runs the start hook on a worker thread and turns the
first termination signal into a single call of the stop hook; the
worker's return value becomes the process exit status.
"""
import logging
import signal
import threading
from typing import Callable, List

from warden.logging_utils import start_thread

logger = logging.getLogger(__name__)


def _stop_signals() -> List[int]:
    signals = [signal.SIGINT, signal.SIGTERM]
    if hasattr(signal, "SIGBREAK"):
        signals.append(signal.SIGBREAK)
    return signals


class ServiceHost:
    """Runs one service body under signal-driven stop control."""

    def __init__(self, name: str, join_interval: float = 0.5):
        """
        Initialize host.

        Args:
            name: Service name used in logs
            join_interval: How often the main thread wakes to handle signals
        """
        self.name = name
        self.join_interval = join_interval
        self._stop_lock = threading.Lock()
        self._stop_called = False
        self._exit_status = 1

    def stop(self, stop_hook: Callable[[], None]) -> bool:
        """
        Call stop_hook unless it was already called.

        Returns:
            True if stop_hook ran
        """
        with self._stop_lock:
            if self._stop_called:
                logger.info(f"Stop already requested for {self.name}")
                return False
            self._stop_called = True

        logger.info(f"Stopping {self.name}")
        try:
            stop_hook()
        except Exception as e:
            logger.error(f"Stop hook for {self.name} failed: {e}", exc_info=True)
        return True

    def run(
        self,
        start_hook: Callable[[], int],
        stop_hook: Callable[[], None],
        install_signals: bool = True
    ) -> int:
        """
        Run start_hook until it returns.

        Must be called from the main thread when install_signals is True.

        Args:
            start_hook: Service body; returns the exit status
            stop_hook: Asks the service body to finish
            install_signals: Install SIGINT/SIGTERM handlers

        Returns:
            Exit status from start_hook, or 1 if it raised
        """
        previous = {}
        if install_signals:
            def handle(signum, frame):
                logger.info(f"Received {signal.Signals(signum).name}")
                start_thread(lambda: self.stop(stop_hook), name=f"{self.name}-stop")

            for signum in _stop_signals():
                previous[signum] = signal.signal(signum, handle)

        logger.info(f"Starting {self.name}")
        worker = start_thread(lambda: self._body(start_hook), name=self.name)

        try:
            while worker.is_alive():
                worker.join(self.join_interval)
        finally:
            for signum, handler in previous.items():
                signal.signal(signum, handler)

        logger.info(f"{self.name} exited with status {self._exit_status}")
        return self._exit_status

    def _body(self, start_hook: Callable[[], int]) -> None:
        try:
            self._exit_status = start_hook()
        except Exception as e:
            logger.error(f"{self.name} failed: {e}", exc_info=True)
            self._exit_status = 1
