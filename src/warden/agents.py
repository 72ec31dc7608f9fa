"""
Agent groups - run several agent processes as one service.

The first agent to exit ends the group: the remaining agents are
stopped and the exit is reported so the service manager can restart
everything. A stop request ends the group the same way, but is not
reported as an exit.
"""
import logging
from typing import Dict, List, Optional

from warden.process_supervisor import (
    AgentSpec,
    ExitEvent,
    ProcessSupervisor,
    Terminator,
)
from warden.stop_signal import StopSignal, StopReason

logger = logging.getLogger(__name__)


class AgentGroup:
    """Supervises a fixed set of agents sharing one StopSignal."""

    def __init__(
        self,
        specs: List[AgentSpec],
        terminator: Optional[Terminator] = None,
        stop_timeout: float = 30.0
    ):
        """
        Initialize group.

        Args:
            specs: Agents to launch, in start order
            terminator: Termination strategy shared by all supervisors
            stop_timeout: Seconds to wait for each agent after stopping it;
                an agent still running then is killed
        """
        if not specs:
            raise ValueError("AgentGroup needs at least one agent")
        self.specs = specs
        self.terminator = terminator
        self.stop_timeout = stop_timeout
        self.signal = StopSignal("agents")
        self.supervisors: Dict[str, ProcessSupervisor] = {}

    def start(self) -> None:
        """
        Launch every agent.

        If one fails to launch, the ones already running are stopped and
        the ProcessLaunchError propagates.
        """
        for spec in self.specs:
            supervisor = ProcessSupervisor(terminator=self.terminator, on_exit=self._on_exit)
            self.supervisors[spec.name] = supervisor
            try:
                supervisor.start(spec)
            except Exception:
                del self.supervisors[spec.name]
                self.signal.fire(StopReason.STOP_REQUESTED, f"{spec.name} failed to launch")
                self._stop_all()
                raise

    def request_stop(self) -> None:
        """Deliberate stop, e.g. from the service manager."""
        self.signal.fire(StopReason.STOP_REQUESTED)

    def run(self) -> Optional[ExitEvent]:
        """
        Start the agents and block until the group ends.

        Returns:
            The first unexpected ExitEvent, or None for a deliberate stop
        """
        self.start()
        event = self.signal.wait()

        self._stop_all()

        if event.reason == StopReason.PROCESS_EXITED:
            return self.supervisors[event.detail].exit_event
        return None

    def _on_exit(self, exit_event: ExitEvent) -> None:
        self.signal.fire(StopReason.PROCESS_EXITED, exit_event.name)

    def _stop_all(self) -> None:
        for supervisor in self.supervisors.values():
            supervisor.stop()
        for name, supervisor in self.supervisors.items():
            if supervisor.wait(self.stop_timeout) is not None:
                continue
            logger.error(f"{name} did not exit within {self.stop_timeout}s; killing it")
            supervisor.kill()
            if supervisor.wait(self.stop_timeout) is None:
                logger.error(f"{name} still running after kill")
