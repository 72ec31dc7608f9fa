"""
Process supervision for agent binaries.

A ProcessSupervisor owns exactly one child process: it launches it,
waits for it on a dedicated thread, and terminates it on request. The
exit is classified once, with a stop request that precedes the exit
turning the classification into KILLED.

Termination is platform dependent. POSIX children get an interrupt so
they can shut down cleanly; platforms that cannot deliver an interrupt
to a child process are killed outright.
"""
import logging
import os
import signal
import subprocess
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, List, Optional

from warden.logging_utils import start_thread

logger = logging.getLogger(__name__)


class ProcessLaunchError(Exception):
    """The agent process could not be started."""
    pass


class ExitState(Enum):
    """Lifecycle states of a supervised process."""
    RUNNING = "running"
    EXITED_GRACEFUL = "exited_graceful"
    EXITED_WITH_ERROR = "exited_with_error"
    KILLED = "killed"


@dataclass
class AgentSpec:
    """What to launch."""
    name: str
    executable: str
    args: List[str] = field(default_factory=list)
    verbose: bool = False

    @property
    def command(self) -> List[str]:
        return [self.executable, *self.args]


@dataclass
class AgentProcess:
    """A launched agent. The handle is only valid while RUNNING."""
    spec: AgentSpec
    handle: Optional[subprocess.Popen]
    exit_state: ExitState = ExitState.RUNNING
    returncode: Optional[int] = None

    @property
    def pid(self) -> Optional[int]:
        return self.handle.pid if self.handle is not None else None


@dataclass(frozen=True)
class ExitEvent:
    """Reported once when a supervised process is gone."""
    name: str
    pid: int
    state: ExitState
    returncode: Optional[int]

    @property
    def unexpected(self) -> bool:
        """True unless the exit was caused by a stop request."""
        return self.state != ExitState.KILLED


class Terminator(ABC):
    """How a running child is asked to go away."""

    name = "terminator"

    @abstractmethod
    def terminate(self, handle: subprocess.Popen) -> None:
        """Send the termination request to the child."""


class GracefulInterrupt(Terminator):
    """SIGINT, letting the agent leave its cluster cleanly."""

    name = "interrupt"

    def terminate(self, handle: subprocess.Popen) -> None:
        handle.send_signal(signal.SIGINT)


class ForceKill(Terminator):
    """Hard kill, for platforms without interrupt delivery to children."""

    name = "kill"

    def terminate(self, handle: subprocess.Popen) -> None:
        handle.kill()


def select_terminator() -> Terminator:
    """Pick the terminator this platform can actually deliver."""
    if os.name == "posix":
        return GracefulInterrupt()
    return ForceKill()


class ProcessSupervisor:
    """
    Owns one agent process from launch to reap.

    Example:
        supervisor = ProcessSupervisor(on_exit=lambda event: print(event.state))
        supervisor.start(AgentSpec(name="nomad", executable="/opt/nomad",
                                   args=["agent", "-config=/etc/nomad.hcl"]))
        ...
        supervisor.stop()
        event = supervisor.wait()   # ExitEvent(state=ExitState.KILLED, ...)
    """

    def __init__(
        self,
        terminator: Optional[Terminator] = None,
        on_exit: Optional[Callable[[ExitEvent], None]] = None
    ):
        """
        Initialize supervisor.

        Args:
            terminator: Termination strategy (default: select_terminator())
            on_exit: Called once, from the waiter thread, with the ExitEvent
        """
        self.terminator = terminator or select_terminator()
        self.on_exit = on_exit
        self.process: Optional[AgentProcess] = None
        self._lock = threading.Lock()
        self._stop_requested = False
        self._done = threading.Event()
        self._exit_event: Optional[ExitEvent] = None
        self._thread: Optional[threading.Thread] = None

    def start(self, spec: AgentSpec) -> AgentProcess:
        """
        Launch the agent and start waiting for it.

        Raises:
            ProcessLaunchError: If the process cannot be started
            RuntimeError: If this supervisor already started a process
        """
        if self.process is not None:
            raise RuntimeError(f"Supervisor already started {self.process.spec.name}")

        output = None if spec.verbose else subprocess.DEVNULL
        logger.info(f"Starting {spec.name} (exe={spec.executable}, args={spec.args})")

        try:
            handle = subprocess.Popen(
                spec.command,
                stdin=subprocess.DEVNULL,
                stdout=output,
                stderr=output,
            )
        except (OSError, ValueError) as e:
            raise ProcessLaunchError(f"Failed to start {spec.name}: {e}")

        self.process = AgentProcess(spec=spec, handle=handle)
        logger.info(f"Started {spec.name} (pid={handle.pid}, terminator={self.terminator.name})")

        self._thread = start_thread(self._wait_for_exit, name=f"wait-{spec.name}")
        return self.process

    def stop(self) -> bool:
        """
        Request termination.

        Returns:
            True if a termination request was sent, False if the process
            had already exited or a stop was already requested
        """
        if self.process is None:
            return False

        name = self.process.spec.name
        with self._lock:
            if self._stop_requested or self.process.exit_state != ExitState.RUNNING:
                return False
            if self.process.handle.poll() is not None:
                logger.debug(f"{name} already exited; not sending {self.terminator.name}")
                return False
            self._stop_requested = True

            logger.info(f"Sending {name} process {self.terminator.name}")
            try:
                self.terminator.terminate(self.process.handle)
            except OSError as e:
                logger.error(f"Error terminating {name}: {e}")
        return True

    def kill(self) -> bool:
        """
        Kill the process outright, whatever the terminator.

        For agents that ignored the stop request. The exit is classified
        as KILLED.

        Returns:
            True if the kill was sent, False if the process had already exited
        """
        if self.process is None:
            return False

        name = self.process.spec.name
        with self._lock:
            if self.process.exit_state != ExitState.RUNNING or self.process.handle.poll() is not None:
                return False
            self._stop_requested = True

            logger.warning(f"Killing {name} process")
            try:
                ForceKill().terminate(self.process.handle)
            except OSError as e:
                logger.error(f"Error killing {name}: {e}")
        return True

    def wait(self, timeout: Optional[float] = None) -> Optional[ExitEvent]:
        """
        Wait for the exit classification.

        Returns:
            ExitEvent, or None if timeout elapsed first
        """
        if not self._done.wait(timeout):
            return None
        return self._exit_event

    @property
    def exit_event(self) -> Optional[ExitEvent]:
        return self._exit_event

    def _wait_for_exit(self) -> None:
        process = self.process
        returncode = process.handle.wait()

        with self._lock:
            if self._stop_requested:
                state = ExitState.KILLED
            elif returncode != 0:
                state = ExitState.EXITED_WITH_ERROR
            else:
                state = ExitState.EXITED_GRACEFUL
            process.exit_state = state
            process.returncode = returncode
            self._exit_event = ExitEvent(
                name=process.spec.name,
                pid=process.handle.pid,
                state=state,
                returncode=returncode,
            )

        name = process.spec.name
        if state == ExitState.EXITED_WITH_ERROR:
            logger.error(f"{name} process exited with status {returncode}")
        elif state == ExitState.EXITED_GRACEFUL:
            logger.info(f"{name} process exited gracefully")
        else:
            logger.info(f"{name} process stopped (status {returncode})")

        self._done.set()

        if self.on_exit is not None:
            try:
                self.on_exit(self._exit_event)
            except Exception as e:
                logger.error(f"Exit callback for {name} failed: {e}", exc_info=True)
