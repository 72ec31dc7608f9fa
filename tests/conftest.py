"""
Pytest fixtures for Warden tests.

Provides an in-memory scheduler for unit tests and a local HTTP stub of
the scheduler API, served on a random port, for integration tests.
"""
import json
import logging
import sys
import time
import socket
import shutil
import tempfile
import threading
from dataclasses import replace
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from pathlib import Path
from contextlib import closing
from typing import Callable, List, Tuple
from urllib.parse import unquote

import pytest

# Add src to path
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from warden.logging_utils import StructuredFormatter  # noqa: E402
from warden.scheduler import (  # noqa: E402
    Job,
    JobNotFoundError,
    Node,
    NodeNotFoundError,
    SchedulerError,
    SchedulerGateway,
)


def find_free_port() -> int:
    """Find a free TCP port."""
    with closing(socket.socket(socket.AF_INET, socket.SOCK_STREAM)) as s:
        s.bind(('127.0.0.1', 0))
        s.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        return s.getsockname()[1]


def wait_for(predicate: Callable[[], bool], timeout: float = 5.0, interval: float = 0.01) -> bool:
    """Poll predicate until it is true or timeout elapses."""
    deadline = time.time() + timeout
    while time.time() < deadline:
        if predicate():
            return True
        time.sleep(interval)
    return predicate()


class FakeScheduler(SchedulerGateway):
    """
    In-memory scheduler with scripted failures.

    Attributes tests flip:
        job_present: find_job answer
        job_errors: exceptions raised, one per find_job call, before answering
        host_errors: exceptions raised, one per host_id call, before answering
        host_always_fails: every host_id call raises SchedulerError
        submit_status / drain_status: status codes returned
    """

    def __init__(self, hostname: str = "node-1"):
        self.lock = threading.Lock()
        self.job_present = True
        self.job_errors: List[Exception] = []
        self.node = Node(id="9f0c1d2e", name=hostname, drained=False)
        self.host_errors: List[Exception] = []
        self.host_always_fails = False
        self.submit_status = 200
        self.submit_error = None
        self.drain_status = 200
        self.drain_error = None
        self.calls: List[Tuple[str, object]] = []

    def find_job(self, name: str) -> Job:
        with self.lock:
            self.calls.append(("find_job", name))
            if self.job_errors:
                raise self.job_errors.pop(0)
            if not self.job_present:
                raise JobNotFoundError(f"Job not found: {name}")
        return Job(name=name)

    def submit_job(self, spec_path) -> int:
        with self.lock:
            self.calls.append(("submit_job", str(spec_path)))
            if self.submit_error is not None:
                raise self.submit_error
            if self.submit_status == 200:
                self.job_present = True
            return self.submit_status

    def host_id(self, hostname: str) -> Node:
        with self.lock:
            self.calls.append(("host_id", hostname))
            if self.host_errors:
                raise self.host_errors.pop(0)
            if self.host_always_fails:
                raise SchedulerError("connection refused")
            if hostname != self.node.name:
                raise NodeNotFoundError(f"No node registered with name: {hostname}")
            return replace(self.node)

    def drain(self, node_id: str, enable: bool) -> int:
        with self.lock:
            self.calls.append(("drain", (node_id, enable)))
            if self.drain_error is not None:
                raise self.drain_error
            if self.drain_status == 200:
                self.node.drained = enable
            return self.drain_status

    def count(self, operation: str) -> int:
        with self.lock:
            return sum(1 for op, _ in self.calls if op == operation)

    def drain_calls(self) -> List[Tuple[str, bool]]:
        with self.lock:
            return [arg for op, arg in self.calls if op == "drain"]


@pytest.fixture
def fake_scheduler() -> FakeScheduler:
    """In-memory scheduler; node is registered as 'node-1'."""
    return FakeScheduler()


@pytest.fixture
def install_dir():
    """Create a temporary install directory with a launch spec."""
    path = Path(tempfile.mkdtemp(prefix="warden_install_"))
    (path / "launch_clarify.json").write_text(json.dumps({
        "ID": "clarify",
        "Name": "clarify",
        "Type": "service",
        "Datacenters": ["dc1"],
    }))
    yield path
    shutil.rmtree(path, ignore_errors=True)


@pytest.fixture
def temp_dir():
    """Create a temporary directory for tests."""
    path = Path(tempfile.mkdtemp(prefix="warden_test_"))
    yield path
    shutil.rmtree(path, ignore_errors=True)


class SchedulerStubState:
    """Mutable state behind the HTTP scheduler stub."""

    def __init__(self):
        self.lock = threading.Lock()
        self.jobs = set()
        self.nodes = [
            {"ID": "9f0c1d2e-aaaa", "Name": "node-1", "Drain": False,
             "SchedulingEligibility": "eligible", "Status": "ready"},
            {"ID": "1b2c3d4e-bbbb", "Name": "node-2", "Drain": False,
             "SchedulingEligibility": "eligible", "Status": "ready"},
        ]
        self.job_status = None
        self.submit_status = 200
        self.submitted: List[dict] = []
        self.drain_requests: List[Tuple[str, dict]] = []

    def node(self, name: str) -> dict:
        with self.lock:
            return next(dict(n) for n in self.nodes if n["Name"] == name)


class SchedulerStubHandler(BaseHTTPRequestHandler):
    """Answers the subset of the Nomad HTTP API that Warden uses."""

    def log_message(self, format, *args):
        pass

    def _send_json(self, status: int, payload) -> None:
        body = json.dumps(payload).encode()
        self.send_response(status)
        self.send_header("Content-Type", "application/json")
        self.send_header("Content-Length", str(len(body)))
        self.end_headers()
        self.wfile.write(body)

    def _send_text(self, status: int, text: str) -> None:
        body = text.encode()
        self.send_response(status)
        self.send_header("Content-Type", "text/plain")
        self.send_header("Content-Length", str(len(body)))
        self.end_headers()
        self.wfile.write(body)

    def _read_json(self):
        length = int(self.headers.get("Content-Length", 0))
        raw = self.rfile.read(length) if length else b""
        return json.loads(raw) if raw else None

    def do_GET(self):
        state: SchedulerStubState = self.server.state

        if self.path.startswith("/v1/job/"):
            name = unquote(self.path[len("/v1/job/"):])
            with state.lock:
                forced = state.job_status
                present = name in state.jobs
            if forced is not None:
                self._send_text(forced, "internal error")
            elif present:
                self._send_json(200, {"ID": name, "Name": name, "Status": "running"})
            else:
                self._send_text(404, "job not found")
        elif self.path == "/v1/nodes":
            with state.lock:
                nodes = [dict(n) for n in state.nodes]
            self._send_json(200, nodes)
        else:
            self._send_text(404, "not found")

    def do_POST(self):
        state: SchedulerStubState = self.server.state
        body = self._read_json()

        if self.path == "/v1/jobs":
            with state.lock:
                state.submitted.append(body)
                status = state.submit_status
                if status == 200:
                    job = body.get("Job", {})
                    state.jobs.add(job.get("ID") or job.get("Name"))
            self._send_json(status, {"EvalID": "eval-1", "JobModifyIndex": 1})
        elif self.path.startswith("/v1/node/") and self.path.endswith("/drain"):
            node_id = self.path.split("/")[3]
            with state.lock:
                state.drain_requests.append((node_id, body))
                matched = [n for n in state.nodes if n["ID"] == node_id]
                for node in matched:
                    node["Drain"] = body.get("DrainSpec") is not None
            if matched:
                self._send_json(200, {"EvalIDs": [], "NodeModifyIndex": 2})
            else:
                self._send_text(404, "node not found")
        else:
            self._send_text(404, "not found")


@pytest.fixture
def scheduler_stub():
    """
    Serve a scheduler API stub on a random local port.

    Yields:
        dict with 'address' (host:port) and 'state' (SchedulerStubState)
    """
    port = find_free_port()
    server = ThreadingHTTPServer(('127.0.0.1', port), SchedulerStubHandler)
    server.daemon_threads = True
    server.state = SchedulerStubState()

    thread = threading.Thread(target=server.serve_forever, daemon=True)
    thread.start()

    yield {
        'address': f'127.0.0.1:{port}',
        'state': server.state,
    }

    server.shutdown()
    server.server_close()
    thread.join(timeout=2)


@pytest.fixture
def restore_logging():
    """Undo setup_logging: drop its handlers and reset touched levels."""
    root = logging.getLogger()
    level = root.level
    yield
    for handler in list(root.handlers):
        if isinstance(handler.formatter, StructuredFormatter):
            root.removeHandler(handler)
            handler.close()
    root.setLevel(level)
    for name in list(logging.root.manager.loggerDict):
        if name.startswith("warden."):
            logging.getLogger(name).setLevel(logging.NOTSET)
