#!/usr/bin/env python3
"""
Warden - Main entry point.
"""
import sys
import logging
from pathlib import Path
from typing import Optional, Tuple

import click
import yaml
from pydantic import ValidationError

from warden.agents import AgentGroup
from warden.coordinator import (
    FatalRunError,
    LifecycleCoordinator,
    RunOutcome,
    resolve_hostname,
)
from warden.discovery import DiscoveryError, default_base_dir, resolve_agent
from warden.logging_utils import setup_logging
from warden.models import WardenConfig, WardenConfigFile
from warden.process_supervisor import ProcessLaunchError
from warden.scheduler import JobNotFoundError, NomadGateway, SchedulerError
from warden.service import ServiceHost

logger = logging.getLogger(__name__)


def load_config(config_path: Optional[str]) -> WardenConfig:
    """
    Load warden configuration.

    Args:
        config_path: Path to YAML config, or None for defaults

    Raises:
        click.ClickException: If the file cannot be read or is invalid
    """
    if config_path is None:
        return WardenConfig()

    try:
        with open(config_path, 'r') as f:
            data = yaml.safe_load(f) or {}
    except (OSError, yaml.YAMLError) as e:
        raise click.ClickException(f"Failed to load configuration: {e}")

    try:
        return WardenConfigFile(**data).warden
    except ValidationError as e:
        raise click.ClickException(f"Invalid configuration in {config_path}:\n{e}")


def run_coordinator(coordinator: LifecycleCoordinator) -> int:
    """Service body for the run command; maps the outcome to an exit status."""
    try:
        outcome = coordinator.run()
    except FatalRunError as e:
        logger.error(f"Fatal: {e}")
        return 1

    if outcome == RunOutcome.STOPPED:
        return 0
    logger.error(f"Run ended with outcome {outcome.value}; exiting so the service restarts")
    return 1


def run_agents(group: AgentGroup) -> int:
    """Service body for the agent command."""
    try:
        exit_event = group.run()
    except ProcessLaunchError as e:
        logger.error(str(e))
        return 1

    if exit_event is None:
        return 0
    logger.error(
        f"{exit_event.name} exited unexpectedly "
        f"({exit_event.state.value}, status {exit_event.returncode})"
    )
    return 1


@click.group()
@click.option(
    '--config', '-c',
    default=None,
    type=click.Path(exists=True, dir_okay=False),
    help='Path to warden configuration file'
)
@click.option(
    '--log-level', '-l',
    type=click.Choice(['DEBUG', 'INFO', 'WARNING', 'ERROR'], case_sensitive=False),
    help='Override log level from config'
)
@click.pass_context
def cli(ctx, config, log_level):
    """Warden - node-local workload supervisor."""
    warden_config = load_config(config)
    logging_config = warden_config.logging

    setup_logging(
        level=log_level or logging_config.level,
        json_output=logging_config.json_format,
        log_file=logging_config.file,
        module_levels=logging_config.module_levels
    )

    ctx.ensure_object(dict)
    ctx.obj['config'] = warden_config


@cli.command()
@click.option('--install', 'install_path', help='Location of the install directory')
@click.option('--scheduler', 'address', help='Address:Port of the scheduler')
@click.option('--launch', 'launch_spec', help='Filename of the job specification')
@click.option('--job', 'job_name', help='Name of the scheduler job to keep alive')
@click.option('--hostname', help='Node name as registered with the scheduler')
@click.pass_context
def run(ctx, install_path, address, launch_spec, job_name, hostname):
    """Wait for the install, keep the job alive, drain on stop."""
    config: WardenConfig = ctx.obj['config']

    try:
        config = apply_run_overrides(config, install_path, address, launch_spec, job_name, hostname)
    except ValidationError as e:
        raise click.BadParameter(str(e))

    if not config.install.path:
        raise click.UsageError("Install location must be provided (--install or install.path)")

    try:
        coordinator = LifecycleCoordinator.from_config(config)
    except FatalRunError as e:
        logger.error(f"Fatal: {e}")
        sys.exit(1)

    host = ServiceHost("warden")
    status = host.run(lambda: run_coordinator(coordinator), coordinator.request_stop)
    sys.exit(status)


def apply_run_overrides(
    config: WardenConfig,
    install_path: Optional[str] = None,
    address: Optional[str] = None,
    launch_spec: Optional[str] = None,
    job_name: Optional[str] = None,
    hostname: Optional[str] = None
) -> WardenConfig:
    """Return a copy of config with command line values applied."""
    install = config.install.model_dump()
    scheduler = config.scheduler.model_dump()
    liveness = config.liveness.model_dump()

    if install_path:
        install['path'] = install_path
    if launch_spec:
        install['launch_spec'] = launch_spec
    if address:
        scheduler['address'] = address
    if job_name:
        liveness['job_name'] = job_name

    data = config.model_dump()
    data.update(install=install, scheduler=scheduler, liveness=liveness)
    if hostname:
        data['hostname'] = hostname
    return WardenConfig(**data)


@cli.command()
@click.option('--exe', 'executable', help='Agent executable (instead of configured agents)')
@click.option('--name', default='agent', show_default=True, help='Agent name for --exe')
@click.option('--arg', 'args', multiple=True, help='Argument passed to --exe (repeatable)')
@click.option('--cfg', 'config_path', help='Agent config file for --exe; substituted for {config}')
@click.option('--base-dir', type=click.Path(file_okay=False), help='Search root for agent files')
@click.option('-v', '--verbose', is_flag=True, help='Pass agent output through')
@click.pass_context
def agent(ctx, executable, name, args, config_path, base_dir, verbose):
    """Run agent processes until one exits or a stop arrives."""
    config: WardenConfig = ctx.obj['config']

    if executable:
        agent_args = list(args)
        if config_path and not agent_args:
            agent_args = ["agent", "-config={config}"]
        agent_configs = [WardenConfig.AgentConfig(
            name=name, executable=executable, config=config_path, args=agent_args
        )]
    else:
        agent_configs = config.agents

    if not agent_configs:
        raise click.UsageError("No agents configured (use --exe or the agents section)")

    base = Path(base_dir) if base_dir else default_base_dir()
    try:
        specs = [resolve_agent(a, base, verbose=verbose) for a in agent_configs]
    except DiscoveryError as e:
        logger.error(str(e))
        sys.exit(1)

    group = AgentGroup(specs)
    host = ServiceHost("warden-agents")
    status = host.run(lambda: run_agents(group), group.request_stop)
    sys.exit(status)


@cli.command()
@click.pass_context
def status(ctx):
    """Show configuration and the scheduler's view of this node."""
    config: WardenConfig = ctx.obj['config']

    click.echo("=" * 60)
    click.echo("Warden Status")
    click.echo("=" * 60)
    click.echo(f"Scheduler: {config.scheduler.base_url}")
    click.echo(f"Install directory: {config.install.path or '(not set)'}")
    click.echo(f"Launch spec: {config.install.launch_spec}")
    click.echo(f"Job: {config.liveness.job_name}")
    click.echo(f"Agents: {len(config.agents)}")
    for agent_config in config.agents:
        click.echo(f"  - {agent_config.name}: {agent_config.executable or agent_config.executable_pattern}")
    click.echo("")

    gateway = NomadGateway(config.scheduler)
    job_state, node_state = describe_scheduler_state(gateway, config)
    click.echo(f"Job state: {job_state}")
    click.echo(f"Node state: {node_state}")


def describe_scheduler_state(gateway, config: WardenConfig) -> Tuple[str, str]:
    """Human-readable job and node state; errors are reported, not raised."""
    try:
        gateway.find_job(config.liveness.job_name)
        job_state = "present"
    except JobNotFoundError:
        job_state = "not found"
    except SchedulerError as e:
        job_state = f"unknown ({e})"

    try:
        hostname = resolve_hostname(config.hostname)
        node = gateway.host_id(hostname)
        node_state = f"{node.name} ({node.id}) {'drained' if node.drained else 'eligible'}"
    except (SchedulerError, FatalRunError) as e:
        node_state = f"unknown ({e})"

    return job_state, node_state


def main():
    """Main entry point."""
    cli(obj={})


if __name__ == "__main__":
    main()
