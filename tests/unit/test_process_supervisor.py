"""
Unit tests for ProcessSupervisor.

Children are short Python scripts run with the current interpreter.
"""
import os
import sys
import threading
from pathlib import Path

import pytest

# Add src to path
sys.path.insert(0, str(Path(__file__).parent.parent.parent / "src"))

from warden.process_supervisor import (
    AgentSpec,
    ExitState,
    ForceKill,
    GracefulInterrupt,
    ProcessLaunchError,
    ProcessSupervisor,
    select_terminator,
)

SLEEPER = "import time; time.sleep(30)"


def python_agent(name: str, script: str) -> AgentSpec:
    return AgentSpec(name=name, executable=sys.executable, args=["-c", script])


class TestAgentSpec:

    def test_command(self):
        spec = AgentSpec(name="nomad", executable="/opt/nomad", args=["agent", "-dev"])
        assert spec.command == ["/opt/nomad", "agent", "-dev"]
        assert spec.verbose is False


class TestTerminatorSelection:

    @pytest.mark.skipif(os.name != "posix", reason="POSIX only")
    def test_posix_uses_interrupt(self):
        assert isinstance(select_terminator(), GracefulInterrupt)

    @pytest.mark.skipif(os.name == "posix", reason="non-POSIX only")
    def test_other_platforms_kill(self):
        assert isinstance(select_terminator(), ForceKill)


class TestExitClassification:
    """Tests for how an exit is classified."""

    def test_graceful_exit(self):
        supervisor = ProcessSupervisor()
        supervisor.start(python_agent("ok", "pass"))

        event = supervisor.wait(10)
        assert event.state == ExitState.EXITED_GRACEFUL
        assert event.returncode == 0
        assert event.unexpected is True
        assert supervisor.process.exit_state == ExitState.EXITED_GRACEFUL

    def test_error_exit(self):
        supervisor = ProcessSupervisor()
        supervisor.start(python_agent("bad", "import sys; sys.exit(3)"))

        event = supervisor.wait(10)
        assert event.state == ExitState.EXITED_WITH_ERROR
        assert event.returncode == 3
        assert event.unexpected is True

    def test_stop_classifies_as_killed(self):
        supervisor = ProcessSupervisor(terminator=ForceKill())
        process = supervisor.start(python_agent("sleeper", SLEEPER))
        assert process.exit_state == ExitState.RUNNING

        assert supervisor.stop() is True
        event = supervisor.wait(10)
        assert event.state == ExitState.KILLED
        assert event.unexpected is False
        assert event.pid == process.pid

    @pytest.mark.skipif(os.name != "posix", reason="SIGINT delivery is POSIX only")
    def test_interrupt_classifies_as_killed(self):
        """A child exiting non-zero after the interrupt is still KILLED."""
        supervisor = ProcessSupervisor(terminator=GracefulInterrupt())
        supervisor.start(python_agent("sleeper", SLEEPER))

        assert supervisor.stop() is True
        event = supervisor.wait(10)
        assert event.state == ExitState.KILLED
        assert event.returncode != 0


class TestStop:
    """Tests for stop request semantics."""

    def test_stop_before_start(self):
        assert ProcessSupervisor().stop() is False

    def test_second_stop_is_noop(self):
        supervisor = ProcessSupervisor(terminator=ForceKill())
        supervisor.start(python_agent("sleeper", SLEEPER))

        assert supervisor.stop() is True
        assert supervisor.stop() is False
        assert supervisor.wait(10).state == ExitState.KILLED

    def test_stop_after_exit_sends_nothing(self):
        """Stopping an exited child leaves the classification alone."""
        supervisor = ProcessSupervisor(terminator=ForceKill())
        supervisor.start(python_agent("bad", "import sys; sys.exit(2)"))
        assert supervisor.wait(10) is not None

        assert supervisor.stop() is False
        assert supervisor.exit_event.state == ExitState.EXITED_WITH_ERROR

    def test_kill_after_stop(self):
        """kill() still works when the stop request was already sent."""
        supervisor = ProcessSupervisor(terminator=GracefulInterrupt())
        supervisor.start(python_agent("sleeper", SLEEPER))
        supervisor.stop()

        supervisor.kill()
        assert supervisor.wait(10).state == ExitState.KILLED
        assert supervisor.kill() is False

    def test_wait_timeout(self):
        supervisor = ProcessSupervisor(terminator=ForceKill())
        supervisor.start(python_agent("sleeper", SLEEPER))
        try:
            assert supervisor.wait(0.05) is None
            assert supervisor.exit_event is None
        finally:
            supervisor.stop()
            supervisor.wait(10)


class TestLaunch:
    """Tests for launching."""

    def test_missing_executable(self, temp_dir):
        supervisor = ProcessSupervisor()
        spec = AgentSpec(name="ghost", executable=str(temp_dir / "does-not-exist"))

        with pytest.raises(ProcessLaunchError, match="ghost"):
            supervisor.start(spec)
        assert supervisor.process is None

    def test_start_twice(self):
        supervisor = ProcessSupervisor(terminator=ForceKill())
        supervisor.start(python_agent("sleeper", SLEEPER))
        try:
            with pytest.raises(RuntimeError, match="already started"):
                supervisor.start(python_agent("sleeper", SLEEPER))
        finally:
            supervisor.stop()
            supervisor.wait(10)

    def test_arguments_are_passed(self, temp_dir):
        marker = temp_dir / "marker.txt"
        script = "import sys; open(sys.argv[1], 'w').write(sys.argv[2])"
        spec = AgentSpec(
            name="writer",
            executable=sys.executable,
            args=["-c", script, str(marker), "-config=agent.hcl"],
        )

        supervisor = ProcessSupervisor()
        supervisor.start(spec)
        assert supervisor.wait(10).state == ExitState.EXITED_GRACEFUL
        assert marker.read_text() == "-config=agent.hcl"


class TestExitCallback:

    def test_on_exit_called_once(self):
        events = []
        called = threading.Event()

        def on_exit(event):
            events.append(event)
            called.set()

        supervisor = ProcessSupervisor(on_exit=on_exit)
        supervisor.start(python_agent("ok", "pass"))

        assert called.wait(10)
        assert supervisor.wait(10) is events[0]
        assert len(events) == 1
        assert events[0].name == "ok"

    def test_failing_callback_does_not_break_wait(self):
        def on_exit(event):
            raise RuntimeError("callback failure")

        supervisor = ProcessSupervisor(on_exit=on_exit)
        supervisor.start(python_agent("ok", "pass"))

        assert supervisor.wait(10).state == ExitState.EXITED_GRACEFUL
