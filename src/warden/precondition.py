"""
Precondition waiting - block until an install directory or share appears.
"""
import logging
from pathlib import Path
from typing import Union

logger = logging.getLogger(__name__)


class PreconditionWaiter:
    """
    Polls for a filesystem path at a fixed interval.

    There is no deadline: the path (a mounted share, an unpacked install)
    is expected to show up eventually. Only cancellation ends the wait
    early.
    """

    def __init__(self, interval: float = 5.0):
        """
        Initialize waiter.

        Args:
            interval: Seconds between checks
        """
        if interval <= 0:
            raise ValueError(f"interval must be positive, got {interval}")
        self.interval = interval
        self.ticks = 0

    def wait(self, path: Union[str, Path], cancel) -> bool:
        """
        Wait until path exists.

        Args:
            path: Path that must exist
            cancel: threading.Event or StopSignal, waited on between checks;
                a truthy wait() result cancels

        Returns:
            True if the path exists, False if canceled first
        """
        target = Path(path)
        self.ticks = 0

        if target.exists():
            logger.info(f"Found install directory: {target}")
            return True

        while True:
            if cancel.wait(self.interval):
                logger.info(f"Stopped waiting for {target} (canceled)")
                return False

            self.ticks += 1
            if target.exists():
                logger.info(f"Found install directory after {self.ticks} checks: {target}")
                return True

            logger.warning(f"Install not available at {target}; waiting")
