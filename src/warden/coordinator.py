"""
Lifecycle coordinator - the top-level supervised run.

Sequence:
    IDLE -> WAITING_FOR_INSTALL -> DISCOVERING
         -> LAUNCHING | RECONCILING_DRAIN
         -> POLLING -> DRAINING -> STOPPED

A run ends one of three ways:
- STOPPED: a stop request arrived; the node was drained on the way out
- LIVENESS_LOST: the job vanished or the node was drained remotely
- ABORTED: stopped before the install appeared

Unrecoverable failures raise FatalRunError. The caller is expected to
exit non-zero so the service manager restarts the process.
"""
import logging
import socket
import uuid
from enum import Enum
from pathlib import Path
from typing import List, Optional, Union

from warden.liveness import LivenessPoller
from warden.logging_utils import correlation_context, log_with_fields
from warden.models import WardenConfig
from warden.precondition import PreconditionWaiter
from warden.scheduler import (
    HTTP_OK,
    JobNotFoundError,
    Node,
    NomadGateway,
    SchedulerError,
    SchedulerGateway,
)
from warden.stop_signal import StopSignal, StopReason

logger = logging.getLogger(__name__)


class FatalRunError(Exception):
    """The run cannot continue; the process should exit and be restarted."""
    pass


class LifecycleState(Enum):
    """Coordinator states."""
    IDLE = "idle"
    WAITING_FOR_INSTALL = "waiting_for_install"
    DISCOVERING = "discovering"
    LAUNCHING = "launching"
    RECONCILING_DRAIN = "reconciling_drain"
    POLLING = "polling"
    DRAINING = "draining"
    STOPPED = "stopped"


class RunOutcome(Enum):
    """How a run ended."""
    STOPPED = "stopped"
    LIVENESS_LOST = "liveness_lost"
    ABORTED = "aborted"


def resolve_hostname(configured: Optional[str] = None) -> str:
    """
    Hostname this node is registered under.

    Raises:
        FatalRunError: If no hostname is configured and none can be read
    """
    if configured:
        return configured
    try:
        hostname = socket.gethostname()
    except OSError as e:
        raise FatalRunError(f"Unable to retrieve hostname: {e}")
    if not hostname:
        raise FatalRunError("Unable to retrieve hostname")
    return hostname


class LifecycleCoordinator:
    """Drives one supervised run of the scheduled job on this node."""

    def __init__(
        self,
        gateway: SchedulerGateway,
        install_path: Union[str, Path],
        job_name: str = "clarify",
        launch_spec: str = "launch_clarify.json",
        hostname: Optional[str] = None,
        install_interval: float = 5.0,
        poll_interval: float = 5.0
    ):
        """
        Initialize coordinator.

        Args:
            gateway: Scheduler gateway
            install_path: Install directory that must exist before anything runs
            job_name: Scheduler job kept alive on this node
            launch_spec: Job spec filename inside install_path
            hostname: Node hostname (default: local hostname)
            install_interval: Seconds between install checks
            poll_interval: Seconds between liveness ticks

        Raises:
            FatalRunError: If the hostname cannot be determined
        """
        self.gateway = gateway
        self.install_path = Path(install_path)
        self.job_name = job_name
        self.launch_spec = launch_spec
        self.hostname = resolve_hostname(hostname)

        self.run_id = uuid.uuid4().hex[:12]
        self.signal = StopSignal("run")
        self.waiter = PreconditionWaiter(interval=install_interval)
        self.poller = LivenessPoller(gateway, interval=poll_interval)

        self.state = LifecycleState.IDLE
        self.history: List[LifecycleState] = [LifecycleState.IDLE]

    @classmethod
    def from_config(
        cls,
        config: WardenConfig,
        gateway: Optional[SchedulerGateway] = None
    ) -> "LifecycleCoordinator":
        """Build a coordinator from configuration."""
        if not config.install.path:
            raise ValueError("install.path must be configured")

        return cls(
            gateway=gateway or NomadGateway(config.scheduler),
            install_path=config.install.path,
            job_name=config.liveness.job_name,
            launch_spec=config.install.launch_spec,
            hostname=config.hostname,
            install_interval=config.install.poll_interval,
            poll_interval=config.liveness.interval,
        )

    @property
    def launch_spec_path(self) -> Path:
        return self.install_path / self.launch_spec

    def request_stop(self) -> bool:
        """
        Ask the run to drain and stop. Safe to call from any thread.

        Returns:
            True if this request ended the run, False if it had already ended
        """
        return self.signal.fire(StopReason.STOP_REQUESTED)

    def run(self) -> RunOutcome:
        """
        Execute the run until it ends.

        Raises:
            FatalRunError: On unrecoverable failure
        """
        with correlation_context(run_id=self.run_id, node=self.hostname):
            logger.info(f"Starting run (job={self.job_name}, install={self.install_path})")
            try:
                return self._run()
            finally:
                self.poller.stop()

    def _run(self) -> RunOutcome:
        self._transition(LifecycleState.WAITING_FOR_INSTALL)
        if not self.waiter.wait(self.install_path, self.signal):
            logger.error(f"Install not available at {self.install_path}; aborting run")
            self._transition(LifecycleState.STOPPED)
            return RunOutcome.ABORTED

        self._transition(LifecycleState.DISCOVERING)
        if self._job_exists():
            logger.info(f"Job {self.job_name} found")
            self._transition(LifecycleState.RECONCILING_DRAIN)
            self._reconcile_drain()
        elif self.signal.is_fired():
            logger.info(f"Stop requested; not launching job {self.job_name}")
        else:
            logger.info(f"Launching job {self.job_name}")
            self._transition(LifecycleState.LAUNCHING)
            self._launch()

        self._transition(LifecycleState.POLLING)
        self.poller.start(self.job_name, self.hostname, signal=self.signal)
        event = self.signal.wait()
        self.poller.stop()

        if event.reason != StopReason.STOP_REQUESTED:
            log_with_fields(
                logger, logging.ERROR, "Run ended unexpectedly",
                reason=event.reason.value, detail=event.detail
            )
            self._transition(LifecycleState.STOPPED)
            return RunOutcome.LIVENESS_LOST

        self._transition(LifecycleState.DRAINING)
        self._enable_drain()
        self._transition(LifecycleState.STOPPED)
        logger.info("Run stopped")
        return RunOutcome.STOPPED

    def _transition(self, new_state: LifecycleState) -> None:
        old_state = self.state
        self.state = new_state
        self.history.append(new_state)
        log_with_fields(
            logger, logging.INFO, f"State: {old_state.value} → {new_state.value}",
            state=new_state.value
        )

    def _job_exists(self) -> bool:
        try:
            self.gateway.find_job(self.job_name)
        except JobNotFoundError:
            return False
        except SchedulerError as e:
            raise FatalRunError(f"Unable to look up job {self.job_name}: {e}")
        return True

    def _node(self) -> Node:
        """Authoritative node lookup; failure is fatal."""
        try:
            return self.gateway.host_id(self.hostname)
        except SchedulerError as e:
            raise FatalRunError(f"Error retrieving node {self.hostname}: {e}")

    def _launch(self) -> None:
        spec_path = self.launch_spec_path
        try:
            status = self.gateway.submit_job(spec_path)
        except SchedulerError as e:
            raise FatalRunError(f"Failed to submit {spec_path}: {e}")

        if status != HTTP_OK:
            raise FatalRunError(f"Job submission returned http status: {status}")

        logger.info(f"Job {self.job_name} submitted from {spec_path}")

    def _reconcile_drain(self) -> None:
        node = self._node()
        if not node.drained:
            logger.info(f"Node eligible (name={node.name}, id={node.id})")
            return
        logger.info("Disabling drain left over from a previous shutdown")
        if self._set_drain(node, enable=False):
            logger.info(f"Drain disabled (name={node.name}, id={node.id})")

    def _enable_drain(self) -> None:
        node = self._node()
        if self._set_drain(node, enable=True):
            logger.info(f"Drain enabled (name={node.name}, id={node.id})")

    def _set_drain(self, node: Node, enable: bool) -> bool:
        """Best-effort drain toggle; failures are logged, not raised."""
        action = "enabling" if enable else "disabling"
        try:
            status = self.gateway.drain(node.id, enable)
        except SchedulerError as e:
            logger.error(f"Error {action} node drain: {e}")
            return False

        if status != HTTP_OK:
            logger.error(f"Error {action} node drain; returned {status} status code")
            return False
        return True
