"""
Scheduler gateway - the four remote operations the supervisor depends on.

SchedulerGateway is the contract; NomadGateway implements it against the
Nomad HTTP API:
- Job lookup (presence only)
- Job submission from a JSON job specification
- Node lookup by hostname
- Node drain toggle
"""
import json
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Optional, Union
from urllib.parse import quote

import requests

from warden.models import WardenConfig

logger = logging.getLogger(__name__)

HTTP_OK = 200


class SchedulerError(Exception):
    """Error talking to the scheduler."""
    pass


class JobNotFoundError(SchedulerError):
    """The scheduler does not know the job."""
    pass


class NodeNotFoundError(SchedulerError):
    """No scheduler node is registered under the hostname."""
    pass


@dataclass
class Node:
    """Point-in-time view of a scheduler node."""
    id: str
    name: str
    drained: bool


@dataclass
class Job:
    """Point-in-time view of a scheduler job."""
    name: str
    present: bool = True


class SchedulerGateway(ABC):
    """Remote scheduler operations consumed by the supervisor."""

    @abstractmethod
    def find_job(self, name: str) -> Job:
        """
        Look up a job by name.

        Raises:
            JobNotFoundError: If the job does not exist
            SchedulerError: On transport or protocol failure
        """

    @abstractmethod
    def submit_job(self, spec_path: Union[str, Path]) -> int:
        """
        Submit the job specification stored at spec_path.

        Returns:
            HTTP status code of the submission
        """

    @abstractmethod
    def host_id(self, hostname: str) -> Node:
        """
        Look up the node registered under hostname.

        Raises:
            NodeNotFoundError: If no node has that name
            SchedulerError: On transport or protocol failure
        """

    @abstractmethod
    def drain(self, node_id: str, enable: bool) -> int:
        """
        Enable or disable drain on a node.

        Returns:
            HTTP status code of the drain update
        """


class NomadGateway(SchedulerGateway):
    """SchedulerGateway backed by the Nomad HTTP API."""

    def __init__(
        self,
        config: WardenConfig.SchedulerConfig,
        session: Optional[requests.Session] = None
    ):
        """
        Initialize gateway.

        Args:
            config: Scheduler configuration
            session: Optional requests session (one is created if omitted)
        """
        self.config = config
        self.base_url = config.base_url
        self.timeout = config.timeout
        self.session = session or requests.Session()
        logger.info(f"Scheduler gateway: {self.base_url}")

    def _request(self, method: str, path: str, **kwargs) -> requests.Response:
        url = f"{self.base_url}{path}"
        try:
            response = self.session.request(method, url, timeout=self.timeout, **kwargs)
        except requests.RequestException as e:
            raise SchedulerError(f"{method} {path} failed: {e}")

        logger.debug(f"{method} {path} -> {response.status_code}")
        return response

    def find_job(self, name: str) -> Job:
        response = self._request("GET", f"/v1/job/{quote(name, safe='')}")

        if response.status_code == 404:
            raise JobNotFoundError(f"Job not found: {name}")
        if response.status_code != HTTP_OK:
            raise SchedulerError(
                f"Job lookup for {name} returned status {response.status_code}: "
                f"{response.text.strip()}"
            )

        return Job(name=name, present=True)

    def submit_job(self, spec_path: Union[str, Path]) -> int:
        payload = load_job_spec(spec_path)
        response = self._request("POST", "/v1/jobs", json=payload)

        if response.status_code == HTTP_OK:
            logger.info(f"Submitted job spec {spec_path}")
        else:
            logger.warning(
                f"Job submission returned status {response.status_code}: "
                f"{response.text.strip()}"
            )
        return response.status_code

    def host_id(self, hostname: str) -> Node:
        response = self._request("GET", "/v1/nodes")

        if response.status_code != HTTP_OK:
            raise SchedulerError(f"Node listing returned status {response.status_code}")

        try:
            nodes = response.json()
        except ValueError as e:
            raise SchedulerError(f"Node listing is not valid JSON: {e}")

        if not isinstance(nodes, list):
            raise SchedulerError("Node listing is not a list")

        for stub in nodes:
            if isinstance(stub, dict) and stub.get("Name") == hostname:
                try:
                    return Node(
                        id=stub["ID"],
                        name=stub["Name"],
                        drained=bool(stub.get("Drain", False)),
                    )
                except KeyError as e:
                    raise SchedulerError(f"Node entry for {hostname} missing field {e}")

        raise NodeNotFoundError(f"No node registered with name: {hostname}")

    def drain(self, node_id: str, enable: bool) -> int:
        if enable:
            body: Dict[str, Any] = {
                "DrainSpec": {
                    "Deadline": self.config.drain_deadline * 1_000_000_000,
                    "IgnoreSystemJobs": False,
                },
                "MarkEligible": False,
            }
        else:
            body = {"DrainSpec": None, "MarkEligible": True}

        response = self._request("POST", f"/v1/node/{node_id}/drain", json=body)
        return response.status_code


def load_job_spec(spec_path: Union[str, Path]) -> Dict[str, Any]:
    """
    Load a JSON job specification for submission.

    Accepts either a bare job object or one already wrapped in {"Job": ...}.

    Raises:
        SchedulerError: If the file is missing or not a JSON object
    """
    path = Path(spec_path)
    try:
        with open(path, 'r') as f:
            data = json.load(f)
    except OSError as e:
        raise SchedulerError(f"Cannot read job spec {path}: {e}")
    except ValueError as e:
        raise SchedulerError(f"Job spec {path} is not valid JSON: {e}")

    if not isinstance(data, dict):
        raise SchedulerError(f"Job spec {path} must be a JSON object")

    if "Job" in data:
        return data
    return {"Job": data}
