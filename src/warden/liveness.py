"""
Liveness polling - watch the scheduled job and the local node.

Each tick checks, in order:
1. The job still exists. Absence is definitive and ends the run.
2. The node is not drained. Lookup errors are network noise and only
   logged; a successful lookup reporting drain ends the run.
"""
import logging
import threading
from typing import Optional

from warden.logging_utils import start_thread
from warden.scheduler import SchedulerGateway, SchedulerError, JobNotFoundError
from warden.stop_signal import StopSignal, StopReason

logger = logging.getLogger(__name__)


class LivenessPoller:
    """
    Ticks at a fixed interval and fires a StopSignal when liveness is lost.

    The signal may be shared with other producers (an external stop
    request, for example). The poller stops ticking as soon as the signal
    fires, whoever fired it.
    """

    def __init__(self, gateway: SchedulerGateway, interval: float = 5.0):
        """
        Initialize poller.

        Args:
            gateway: Scheduler gateway used for both checks
            interval: Seconds between ticks
        """
        if interval <= 0:
            raise ValueError(f"interval must be positive, got {interval}")
        self.gateway = gateway
        self.interval = interval
        self.ticks = 0
        self._signal: Optional[StopSignal] = None
        self._halted = threading.Event()
        self._thread: Optional[threading.Thread] = None

    @property
    def signal(self) -> Optional[StopSignal]:
        return self._signal

    def start(
        self,
        job_name: str,
        hostname: str,
        signal: Optional[StopSignal] = None
    ) -> StopSignal:
        """
        Start polling in a background thread.

        Args:
            job_name: Scheduler job that must stay present
            hostname: Node name that must stay undrained
            signal: Signal to fire; a new one is created if omitted

        Returns:
            The terminal signal
        """
        if self._thread is not None:
            raise RuntimeError("LivenessPoller already started")

        self._signal = signal or StopSignal("liveness")
        logger.info(
            f"Polling liveness every {self.interval}s "
            f"(job={job_name}, node={hostname})"
        )
        self._thread = start_thread(
            lambda: self._loop(job_name, hostname),
            name=f"liveness-{job_name}"
        )
        return self._signal

    def stop(self, timeout: Optional[float] = None) -> None:
        """Stop ticking without firing the signal; returns within one interval."""
        self._halted.set()
        if self._thread is not None:
            self._thread.join(timeout if timeout is not None else self.interval * 2)

    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def _loop(self, job_name: str, hostname: str) -> None:
        while not self._signal.wait(self.interval):
            if self._halted.is_set():
                logger.debug("Liveness poller halted")
                return
            self.ticks += 1
            if self.tick(job_name, hostname, self._signal):
                return

    def tick(self, job_name: str, hostname: str, signal: StopSignal) -> bool:
        """
        Run one round of checks, firing signal if liveness is lost.

        Returns:
            True if liveness was lost (the signal has fired), False otherwise
        """
        try:
            self.gateway.find_job(job_name)
        except JobNotFoundError:
            logger.error(f"Job {job_name} not found")
            signal.fire(StopReason.JOB_LOST, job_name)
            return True
        except SchedulerError as e:
            logger.warning(f"Error checking job {job_name}: {e}")

        try:
            node = self.gateway.host_id(hostname)
        except SchedulerError as e:
            logger.warning(f"Error retrieving node {hostname}: {e}")
            return False

        if node.drained:
            logger.info(f"Node drained (name={node.name}, id={node.id})")
            signal.fire(StopReason.NODE_DRAINED, node.name)
            return True

        logger.debug(f"Liveness ok (job={job_name}, node={node.name})")
        return False
