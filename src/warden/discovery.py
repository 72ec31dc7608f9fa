"""
Agent discovery - locate executables and config files, reset client state.
"""
import logging
import os
import shutil
import sys
from pathlib import Path
from typing import List, Optional, Union

from warden.models import WardenConfig
from warden.process_supervisor import AgentSpec

logger = logging.getLogger(__name__)


class DiscoveryError(Exception):
    """Error locating or preparing an agent."""
    pass


def find_file(
    directory: Union[str, Path],
    pattern: str,
    recursive: bool = True
) -> Optional[Path]:
    """
    Find the first file whose name matches a glob pattern.

    Directories are walked in sorted order so the result is stable.
    Directory names never match.

    Args:
        directory: Root directory to search
        pattern: Glob pattern matched against file names (e.g. "nomad*")
        recursive: Descend into subdirectories

    Returns:
        Path of the first match, or None
    """
    root = Path(directory)

    if not root.is_dir():
        logger.warning(f"Search directory does not exist: {root}")
        return None

    candidates = root.rglob(pattern) if recursive else root.glob(pattern)
    matches = sorted(p for p in candidates if p.is_file())

    if not matches:
        logger.debug(f"No file matching {pattern} under {root}")
        return None

    logger.debug(f"Found {matches[0]} for pattern {pattern}")
    return matches[0]


def reset_client_state(data_dir: Union[str, Path]) -> None:
    """
    Make a scheduler client agent register as a brand-new client.

    Removes the client allocation directory along with the persisted
    client-id and secret-id files.

    Raises:
        DiscoveryError: If any of them cannot be removed
    """
    client_dir = Path(data_dir) / "client"

    alloc_dir = client_dir / "alloc"
    if alloc_dir.exists():
        try:
            shutil.rmtree(alloc_dir)
        except OSError as e:
            raise DiscoveryError(f"Unable to remove alloc dir ({alloc_dir}): {e}")
        logger.info(f"Removed alloc dir: {alloc_dir}")

    for name in ("client-id", "secret-id"):
        identity = client_dir / name
        if identity.exists():
            try:
                identity.unlink()
            except OSError as e:
                raise DiscoveryError(f"Unable to remove {name} ({identity}): {e}")
            logger.info(f"Removed {name}: {identity}")


def resolve_agent(
    agent: WardenConfig.AgentConfig,
    base_dir: Union[str, Path],
    verbose: bool = False
) -> AgentSpec:
    """
    Turn an agent configuration into a launchable AgentSpec.

    Explicit executable/config paths win over patterns. Patterns are
    searched under agent.search_dir, or base_dir when unset.
    Arguments may reference {config} and {data_dir}; any other braces,
    such as Go templates in consul flags, are passed through untouched.

    Raises:
        DiscoveryError: If the executable cannot be found
    """
    search_dir = Path(agent.search_dir or base_dir)

    executable = agent.executable
    if not executable:
        found = find_file(search_dir, agent.executable_pattern)
        if found is None:
            raise DiscoveryError(
                f"No executable matching {agent.executable_pattern} under {search_dir}"
            )
        executable = str(found)

    config = agent.config
    if not config and agent.config_pattern:
        found = find_file(search_dir, agent.config_pattern)
        if found is None:
            logger.warning(
                f"No config matching {agent.config_pattern} under {search_dir} "
                f"for {agent.name}"
            )
        else:
            config = str(found)

    data_dir = ""
    if agent.data_dir:
        data_dir = str(Path(base_dir) / agent.data_dir)  # absolute data_dir wins
    args: List[str] = [
        arg.replace("{config}", config or "").replace("{data_dir}", data_dir)
        for arg in agent.args
    ]

    if agent.reset_data_dir:
        reset_client_state(data_dir)

    return AgentSpec(
        name=agent.name,
        executable=executable,
        args=args,
        verbose=verbose or agent.verbose,
    )


def default_base_dir() -> Path:
    """Directory of the running program, the default search root."""
    return Path(os.path.abspath(os.path.dirname(sys.argv[0]) or "."))
