"""
Configuration models for Warden.
"""
from typing import List, Dict, Optional, Tuple
from pydantic import BaseModel, Field, field_validator, model_validator


def parse_address(address: str) -> Tuple[str, int]:
    """
    Split a scheduler address into host and port.

    Accepts "host:port", ":port" (host defaults to localhost) and an
    optional "http://" or "https://" prefix.

    Args:
        address: Address string

    Returns:
        (host, port) tuple

    Raises:
        ValueError: If the address has no usable port
    """
    value = address.strip()
    for prefix in ("http://", "https://"):
        if value.startswith(prefix):
            value = value[len(prefix):]
    value = value.rstrip("/")

    host, sep, port_str = value.rpartition(":")
    if not sep:
        raise ValueError(f"Scheduler address must be host:port, got: {address!r}")

    try:
        port = int(port_str)
    except ValueError:
        raise ValueError(f"Invalid port in scheduler address: {address!r}")

    if not 0 < port < 65536:
        raise ValueError(f"Port out of range in scheduler address: {address!r}")

    return host or "localhost", port


class WardenConfig(BaseModel):
    """Warden configuration."""

    class SchedulerConfig(BaseModel):
        address: str = Field(default=":4646", description="Address:Port of the scheduler HTTP API")
        scheme: str = "http"
        timeout: float = Field(default=10.0, gt=0, description="HTTP request timeout in seconds")
        drain_deadline: int = Field(
            default=3600,
            description="Seconds allocations get to migrate when draining (-1 forces)"
        )

        @field_validator('address')
        @classmethod
        def validate_address(cls, v: str) -> str:
            """Reject addresses without a port."""
            parse_address(v)
            return v

        @field_validator('scheme')
        @classmethod
        def validate_scheme(cls, v: str) -> str:
            if v not in ('http', 'https'):
                raise ValueError(f"Invalid scheme: {v}. Must be 'http' or 'https'")
            return v

        @property
        def base_url(self) -> str:
            host, port = parse_address(self.address)
            return f"{self.scheme}://{host}:{port}"

    class InstallConfig(BaseModel):
        path: Optional[str] = Field(default=None, description="Install directory that must exist before launch")
        launch_spec: str = Field(
            default="launch_clarify.json",
            description="Job specification filename, relative to the install directory"
        )
        poll_interval: float = Field(default=5.0, gt=0, description="Seconds between install checks")

    class LivenessConfig(BaseModel):
        job_name: str = "clarify"
        interval: float = Field(default=5.0, gt=0, description="Seconds between liveness ticks")

    class AgentConfig(BaseModel):
        """A child agent process supervised by the agent command."""
        name: str
        executable: Optional[str] = None
        executable_pattern: Optional[str] = Field(
            default=None,
            description="Glob used to find the executable under search_dir"
        )
        search_dir: Optional[str] = None
        config: Optional[str] = None
        config_pattern: Optional[str] = None
        args: List[str] = Field(
            default_factory=list,
            description="Arguments; {config} and {data_dir} are substituted"
        )
        verbose: bool = False
        data_dir: Optional[str] = None
        reset_data_dir: bool = Field(
            default=False,
            description="Remove client alloc dir and identity files before start"
        )

        @model_validator(mode='after')
        def validate_executable_source(self):
            if not self.executable and not self.executable_pattern:
                raise ValueError(
                    f"Agent '{self.name}' needs either executable or executable_pattern"
                )
            if self.reset_data_dir and not self.data_dir:
                raise ValueError(f"Agent '{self.name}' sets reset_data_dir without data_dir")
            return self

    class LoggingConfig(BaseModel):
        level: str = Field(
            default="INFO",
            description="Global log level: DEBUG, INFO, WARNING, ERROR"
        )
        file: Optional[str] = Field(
            default=None,
            description="Optional log file path (in addition to stdout)"
        )
        json_format: bool = Field(
            default=False,
            description="Output logs in JSON format for machine parsing"
        )
        module_levels: Dict[str, str] = Field(
            default_factory=dict,
            description="Per-module log levels, e.g. {'liveness': 'DEBUG'}"
        )

    hostname: Optional[str] = Field(
        default=None,
        description="Node hostname as known to the scheduler (default: local hostname)"
    )
    scheduler: SchedulerConfig = Field(default_factory=SchedulerConfig)
    install: InstallConfig = Field(default_factory=InstallConfig)
    liveness: LivenessConfig = Field(default_factory=LivenessConfig)
    agents: List[AgentConfig] = Field(default_factory=list)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    @field_validator('agents')
    @classmethod
    def validate_unique_agent_names(cls, v: List["WardenConfig.AgentConfig"]):
        names = [agent.name for agent in v]
        duplicates = sorted({name for name in names if names.count(name) > 1})
        if duplicates:
            raise ValueError(f"Duplicate agent names: {', '.join(duplicates)}")
        return v


class WardenConfigFile(BaseModel):
    """Root structure of the warden config file."""
    warden: WardenConfig = Field(default_factory=WardenConfig)
