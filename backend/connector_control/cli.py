"""CLI tool for connector configuration and status management."""

from __future__ import annotations

import asyncio
import json
import logging
import sys
from typing import Any, Callable, Dict, Optional

import click

from connector_control.commands import ConnectorCommandService
from connector_control.config import BURST_REFRESH_DELAYS, KAFKA_CONNECT_URL, LOG_LEVEL, REGISTRY_URL
from connector_control.database.session import SessionLocal, engine, init_db
from connector_control.exceptions import ConnectorControlError
from connector_control.kafka_connect_client import KafkaConnectClient
from connector_control.monitor import PipelineMonitor
from connector_control.pending_changes import PendingChangeManager
from connector_control.progress_tracker import ProgressTracker
from connector_control.registry import build_registry
from connector_control.repository import PipelineRepository

logger = logging.getLogger(__name__)


class CliContext:
    """Collaborators shared by all commands of one invocation."""

    def __init__(self, session_factory: Callable = SessionLocal, registry=None, kafka_client=None, bind=None):
        self.session_factory = session_factory
        self.bind = bind or engine
        self._registry = registry
        self._kafka_client = kafka_client
        self._db = None

    @property
    def registry(self):
        if self._registry is None:
            self._registry = build_registry(REGISTRY_URL, self.session_factory)
        return self._registry

    @property
    def kafka_client(self):
        if self._kafka_client is None:
            self._kafka_client = KafkaConnectClient(base_url=KAFKA_CONNECT_URL)
        return self._kafka_client

    @property
    def db(self):
        if self._db is None:
            self._db = self.session_factory()
        return self._db

    def repository(self) -> PipelineRepository:
        return PipelineRepository(self.db)

    def pending_manager(self) -> PendingChangeManager:
        return PendingChangeManager(self.repository(), self.registry)

    def close(self) -> None:
        if self._db is not None:
            self._db.close()
            self._db = None


def _echo_json(data: Any) -> None:
    click.echo(json.dumps(data, indent=2, default=str))


def _fail(message: str) -> None:
    click.echo(f"✗ {message}", err=True)
    sys.exit(1)


def _parse_assignments(assignments) -> Dict[str, Any]:
    config = {}
    for assignment in assignments:
        if "=" not in assignment:
            raise click.BadParameter(f"expected key=value, got {assignment!r}", param_hint="--set")
        key, value = assignment.split("=", 1)
        config[key.strip()] = value
    return config


@click.group()
@click.option('--verbose', '-v', is_flag=True, help='Enable debug logging')
@click.pass_context
def cli(ctx, verbose):
    """Connector configuration lifecycle and runtime status CLI."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else getattr(logging, LOG_LEVEL.upper(), logging.INFO),
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )
    obj = ctx.ensure_object(CliContext)
    ctx.call_on_close(obj.close)


@cli.command('init-db')
@click.pass_obj
def init_db_command(obj: CliContext):
    """Create database tables."""
    init_db(bind=obj.bind)
    click.echo("✓ Database tables created")


@cli.command()
@click.argument('name')
@click.pass_obj
def versions(obj: CliContext, name):
    """List registry versions of a connector."""
    try:
        found = obj.registry.list_versions(name)
    except ConnectorControlError as e:
        _fail(str(e))
        return
    if not found:
        click.echo(f"No versions found for {name}.")
        return
    for version in found:
        marker = "*" if version.is_active else " "
        click.echo(f" {marker} v{version.version}  {version.checksum[:12]}  {version.created_by or '-'}  {version.created_at}")


@cli.command()
@click.argument('name')
@click.argument('version', type=int)
@click.pass_obj
def activate(obj: CliContext, name, version):
    """Point a registry connector at an existing version."""
    try:
        obj.registry.activate_version(name, version)
    except ConnectorControlError as e:
        _fail(str(e))
        return
    click.echo(f"✓ Activated {name} v{version}")


@cli.command()
@click.argument('connector_id')
@click.option('--config-file', type=click.File('r'), help='JSON file with the full proposed config')
@click.option('--set', 'assignments', multiple=True, help='key=value override on top of the resolved config')
@click.option('--by', 'updated_by', help='Author of the change')
@click.pass_obj
def stage(obj: CliContext, connector_id, config_file, assignments, updated_by):
    """Stage a pending configuration change."""
    manager = obj.pending_manager()
    try:
        if config_file is not None:
            new_config = json.load(config_file)
        else:
            connector = obj.repository().get_connector(connector_id)
            new_config = dict(connector.pending_config or manager.resolver.resolve(connector).config)
        new_config.update(_parse_assignments(assignments))
        connector = manager.stage_change(connector_id, new_config, updated_by=updated_by)
    except ConnectorControlError as e:
        _fail(str(e))
        return
    click.echo(f"✓ Staged pending config for {connector.name}")


@cli.command()
@click.argument('connector_id')
@click.pass_obj
def diff(obj: CliContext, connector_id):
    """Show the masked diff between active and pending config."""
    try:
        changes = obj.pending_manager().get_diff(connector_id)
    except ConnectorControlError as e:
        _fail(str(e))
        return
    if not changes:
        click.echo("No differences.")
        return
    for change in changes:
        entry = change.to_dict()
        click.echo(f"  {entry['change_type']:<8} {entry['field']}: {entry['old_value']!r} -> {entry['new_value']!r}")


def _run_command(obj: CliContext, pipeline_id: str, action, wait: bool) -> Optional[Dict[str, Any]]:
    """Run an async command with a burst refresh and return the final view."""

    async def runner():
        monitor = PipelineMonitor(obj.session_factory, obj.registry, obj.kafka_client)
        await monitor.track(pipeline_id)
        service = ConnectorCommandService(
            obj.kafka_client,
            monitor.burst_refresher,
            obj.pending_manager(),
            on_deployed=monitor.reload,
        )
        try:
            result = await action(service)
            if wait and monitor.burst_refresher.delays:
                await asyncio.sleep(max(monitor.burst_refresher.delays) + 0.1)
                await monitor.scheduler.drain()
            return result, monitor.snapshot(pipeline_id)
        finally:
            monitor.close(pipeline_id)

    return asyncio.run(runner())


@cli.command()
@click.argument('connector_id')
@click.option('--by', 'deployed_by', help='Actor recorded on the version')
@click.option('--apply/--no-apply', default=True, help='Push the config to Kafka Connect')
@click.option('--wait/--no-wait', default=False, help=f'Wait for the burst refresh ({BURST_REFRESH_DELAYS}s)')
@click.pass_obj
def deploy(obj: CliContext, connector_id, deployed_by, apply, wait):
    """Deploy a connector's pending config as a new active version."""
    try:
        connector = obj.repository().get_connector(connector_id)
        result, snapshot = _run_command(
            obj,
            connector.pipeline_id,
            lambda service: service.deploy_pending(connector.pipeline_id, connector_id, deployed_by, apply),
            wait,
        )
    except ConnectorControlError as e:
        _fail(str(e))
        return
    if result.degraded:
        click.echo(f"⚠ Deployed {result.connector_name} without a registry version (registry unavailable)")
    else:
        click.echo(f"✓ Deployed {result.connector_name} as v{result.version}")
    for warning in result.warnings:
        click.echo(f"  warning: {warning}")
    if wait:
        _echo_json(snapshot)


@cli.command()
@click.argument('connector_id')
@click.pass_obj
def dismiss(obj: CliContext, connector_id):
    """Discard a connector's pending config."""
    try:
        connector = obj.pending_manager().dismiss(connector_id)
    except ConnectorControlError as e:
        _fail(str(e))
        return
    click.echo(f"✓ Dismissed pending config of {connector.name}")


def _connector_command(obj: CliContext, name: str, command: str, wait: bool, **kwargs) -> None:
    try:
        connector = obj.repository().get_connector_by_name(name)
        method = getattr(ConnectorCommandService, command)
        _, snapshot = _run_command(
            obj,
            connector.pipeline_id,
            lambda service: method(service, connector.pipeline_id, name, **kwargs),
            wait,
        )
    except ConnectorControlError as e:
        _fail(str(e))
        return
    click.echo(f"✓ {command.replace('_', ' ')} accepted for {name}")
    _echo_json(snapshot)


@cli.command()
@click.argument('name')
@click.option('--wait/--no-wait', default=True, help='Wait for the burst refresh to settle')
@click.pass_obj
def pause(obj: CliContext, name, wait):
    """Pause a connector."""
    _connector_command(obj, name, "pause_connector", wait)


@cli.command()
@click.argument('name')
@click.option('--wait/--no-wait', default=True, help='Wait for the burst refresh to settle')
@click.pass_obj
def resume(obj: CliContext, name, wait):
    """Resume a connector."""
    _connector_command(obj, name, "resume_connector", wait)


@cli.command('restart-task')
@click.argument('name')
@click.argument('task_number', type=int)
@click.option('--wait/--no-wait', default=True, help='Wait for the burst refresh to settle')
@click.pass_obj
def restart_task(obj: CliContext, name, task_number, wait):
    """Restart one task of a connector."""
    _connector_command(obj, name, "restart_task", wait, task_number=task_number)


@cli.command()
@click.pass_obj
def pipelines(obj: CliContext):
    """List pipelines with their connectors."""
    for pipeline in obj.repository().list_pipelines():
        connectors = [c.name for c in (pipeline.source_connector, pipeline.sink_connector) if c]
        click.echo(f"{pipeline.id}  {pipeline.name:<20} {pipeline.status:<10} {', '.join(connectors) or '-'}")


@cli.command()
@click.argument('pipeline_id')
@click.pass_obj
def status(obj: CliContext, pipeline_id):
    """Show derived pipeline and table status."""

    async def runner():
        monitor = PipelineMonitor(obj.session_factory, obj.registry, obj.kafka_client)
        await monitor.track(pipeline_id)
        try:
            await monitor.poller.refresh(pipeline_id, explicit=True)
            return monitor.snapshot(pipeline_id)
        finally:
            monitor.close(pipeline_id)

    try:
        snapshot = asyncio.run(runner())
    except ConnectorControlError as e:
        _fail(str(e))
        return
    click.echo(f"Pipeline {pipeline_id}: {snapshot['pipeline_status']}")
    if snapshot['last_error']:
        click.echo(f"  last error: {snapshot['last_error']}")
    for task in snapshot['tasks']:
        click.echo(f"  task {task['id']}: {task['state']} ({task['worker_id'] or '-'})")
    for table in snapshot['tables']:
        click.echo(f"  table {table['schema_name']}.{table['table_name']}: {table['status']}")


@cli.command()
@click.argument('pipeline_id')
@click.option('--capture', is_flag=True, help='Record milestones from live connector status first')
@click.pass_obj
def progress(obj: CliContext, pipeline_id, capture):
    """Show bootstrap milestones of a pipeline."""
    tracker = ProgressTracker(obj.repository(), obj.kafka_client)
    try:
        if capture:
            milestones = asyncio.run(tracker.capture(pipeline_id))
        else:
            obj.repository().get_pipeline(pipeline_id)
            milestones = tracker.get_progress(pipeline_id)
    except ConnectorControlError as e:
        _fail(str(e))
        return
    for milestone in milestones:
        click.echo(f"  {milestone.name:<18} {milestone.event_status}")


@cli.command()
@click.option('--host', default='0.0.0.0', help='Bind address')
@click.option('--port', default=8000, type=int, help='Port')
def serve(host, port):
    """Run the REST API."""
    from connector_control.api import run

    run(host=host, port=port)


if __name__ == '__main__':
    cli()
