"""
One-shot terminal signal shared by competing producers.

Job loss, node drain, process exit and an external stop request can all
end a supervised run. Whichever fires first wins; every later fire is a
no-op that reports it lost the race.
"""
import logging
import threading
from dataclasses import dataclass
from enum import Enum
from typing import Optional

logger = logging.getLogger(__name__)


class StopReason(Enum):
    """Why a supervised run ended."""
    JOB_LOST = "job_lost"
    NODE_DRAINED = "node_drained"
    STOP_REQUESTED = "stop_requested"
    PROCESS_EXITED = "process_exited"


@dataclass(frozen=True)
class StopEvent:
    """The winning fire of a StopSignal."""
    reason: StopReason
    detail: Optional[str] = None


class StopSignal:
    """
    Exactly-once completion marker.

    fire() is safe to call from any thread, any number of times. Only the
    first call records a StopEvent and wakes waiters.

    Example:
        signal = StopSignal("run")
        signal.fire(StopReason.JOB_LOST, "clarify")      # True
        signal.fire(StopReason.STOP_REQUESTED)           # False
        signal.wait().reason                             # StopReason.JOB_LOST
    """

    def __init__(self, name: str = "stop"):
        self.name = name
        self._lock = threading.Lock()
        self._fired = threading.Event()
        self._event: Optional[StopEvent] = None

    def fire(self, reason: StopReason, detail: Optional[str] = None) -> bool:
        """
        Fire the signal.

        Args:
            reason: Why the run is ending
            detail: Optional free-form detail for logs

        Returns:
            True if this call fired the signal, False if it was already fired
        """
        with self._lock:
            if self._event is not None:
                logger.debug(
                    f"Signal '{self.name}' already fired ({self._event.reason.value}); "
                    f"ignoring {reason.value}"
                )
                return False
            self._event = StopEvent(reason=reason, detail=detail)
            self._fired.set()

        logger.info(f"Signal '{self.name}' fired: {reason.value}" + (f" ({detail})" if detail else ""))
        return True

    def is_fired(self) -> bool:
        return self._fired.is_set()

    @property
    def event(self) -> Optional[StopEvent]:
        """The winning StopEvent, or None if not fired yet."""
        with self._lock:
            return self._event

    def wait(self, timeout: Optional[float] = None) -> Optional[StopEvent]:
        """
        Block until the signal fires or timeout elapses.

        The return value is truthy exactly when the signal has fired, so
        a StopSignal can be used wherever a threading.Event is waited on.

        Returns:
            The winning StopEvent, or None on timeout
        """
        if not self._fired.wait(timeout):
            return None
        return self.event
