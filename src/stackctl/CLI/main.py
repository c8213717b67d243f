"""
Command Line Interface for stackctl.
"""
import json
import os
import threading
import time

import click

from ..BACKENDS.base import ServiceBackend
from ..BACKENDS.docker_backend import DockerBackend
from ..BACKENDS.process_backend import ProcessBackend
from ..BUILDERS.image_builder import ImageBuilder
from ..BUILDERS.stage_executor import create_stage_executor
from ..config import Settings, load_settings
from ..errors import StackctlError
from ..MANAGERS.service_orchestrator import ServiceOrchestrator
from ..MODELS.orchestration_config import ServiceTopology
from ..PARSERS.compose_parser import ComposeParser
from ..UTILS.logging_setup import setup_logging


def create_backend(settings: Settings, project_name: str, base_dir: str) -> ServiceBackend:
    """Returns the backend named by the ``backend`` setting."""
    if settings.backend == "docker":
        return DockerBackend(project_name, base_dir=base_dir)
    return ProcessBackend(project_name, base_dir=base_dir, state_dir=settings.state_dir)


def _fail(ctx: click.Context, error: Exception) -> None:
    click.echo(f"Error: {error}", err=True)
    for other in getattr(error, "also_failed", []):
        click.echo(f"Error: {other}", err=True)
    ctx.exit(1)


def _load_topology(ctx: click.Context) -> ServiceTopology:
    settings: Settings = ctx.obj['settings']
    path = ctx.obj['file']
    if not os.path.exists(path):
        raise click.ClickException(f"{path} not found.")
    parser = ComposeParser(project_name=settings.project_name)
    return parser.parse(path)


def _orchestrator(ctx: click.Context) -> ServiceOrchestrator:
    """
    Builds the orchestrator for the compose file. Paths in the state dir
    are relative to the directory holding the compose file.
    """
    if 'orchestrator' in ctx.obj:
        return ctx.obj['orchestrator']
    settings: Settings = ctx.obj['settings']
    topology = _load_topology(ctx)
    base_dir = os.path.dirname(os.path.abspath(ctx.obj['file']))
    state_dir = os.path.join(base_dir, settings.state_dir)
    executor = create_stage_executor(settings.executor)

    orchestrator = ServiceOrchestrator(
        topology,
        create_backend(settings, topology.project_name, base_dir),
        base_dir=base_dir,
        state_dir=settings.state_dir,
        builder_factory=lambda context: ImageBuilder(
            context, state_dir=state_dir, executor=executor, use_cache=settings.build_cache),
        max_concurrency=settings.max_concurrency,
        readiness_timeout=settings.readiness_timeout,
        readiness_interval=settings.readiness_interval,
        stop_timeout=settings.stop_timeout,
    )
    ctx.obj['orchestrator'] = orchestrator
    return orchestrator


def _print_status(services) -> None:
    click.echo(f"{'SERVICE':15} {'STATUS':10} {'PORTS':20}")
    click.echo("-" * 47)
    for name, record in services.items():
        ports = ', '.join(f"{h}->{c}" for c, h in sorted(record.ports.items()))
        click.echo(f"{name:15} {record.state.value:10} {ports:20}")


@click.group()
@click.option('--file', '-f', default=None, help='Compose file path')
@click.option('--project-name', '-p', default=None, help='Project name')
@click.option('--backend', type=click.Choice(['process', 'docker']), default=None,
              help='Run services as native processes or containers')
@click.option('--log-level', default=None, help='DEBUG, INFO, WARNING or ERROR')
@click.pass_context
def cli(ctx, file, project_name, backend, log_level):
    """
    stackctl - builds multi-stage artifacts and runs service topologies.

    Services start in dependency order and each one must pass its
    readiness probe before its dependents are started.
    """
    ctx.ensure_object(dict)
    try:
        settings = load_settings(project_name=project_name, backend=backend, log_level=log_level)
    except StackctlError as e:
        _fail(ctx, e)
    setup_logging(settings.log_level)
    ctx.obj['settings'] = settings
    ctx.obj['file'] = file or settings.compose_file


@cli.command()
@click.option('--file', 'stage_file', default=None, help='Stage definition file, relative to the context')
@click.option('--tag', '-t', default=None, help='Name to store the artifact under')
@click.option('--context', 'context_dir', default='.', help='Build context directory')
@click.option('--no-cache', is_flag=True, help='Run every stage even if its inputs are unchanged')
@click.option('--executor', type=click.Choice(['local', 'docker']), default=None,
              help='Run stage commands on the host or in containers')
@click.option('--build-arg', 'build_args', multiple=True, help='KEY=VALUE for an ARG instruction')
@click.pass_context
def build(ctx, stage_file, tag, context_dir, no_cache, executor, build_args):
    """Build a runtime artifact from a stage definition."""
    settings: Settings = ctx.obj['settings']
    args = {}
    for item in build_args:
        key, sep, value = item.partition('=')
        args[key] = value if sep else os.environ.get(key, '')

    context_dir = os.path.abspath(context_dir)
    tag = tag or settings.project_name or os.path.basename(context_dir) or "artifact"
    builder = ImageBuilder(
        context_dir,
        state_dir=os.path.abspath(settings.state_dir),
        executor=create_stage_executor(executor or settings.executor),
        use_cache=settings.build_cache and not no_cache,
    )
    try:
        artifact = builder.build_file(stage_file or settings.stage_file, tag, args)
    except StackctlError as e:
        _fail(ctx, e)
    click.echo(f"Built {artifact.tag} {artifact.digest}")
    click.echo(f"  content: {artifact.content_path} ({artifact.size} bytes)")


@cli.command()
@click.option('--build', 'rebuild', is_flag=True, help='Rebuild artifacts before starting')
@click.option('--detach', '-d', is_flag=True, help='Run in background')
@click.pass_context
def up(ctx, rebuild, detach):
    """Start services defined in the compose file."""
    try:
        orchestrator = _orchestrator(ctx)
        services = orchestrator.up(build=rebuild, cancel=threading.Event())
    except StackctlError as e:
        _fail(ctx, e)

    click.echo("Services started.")
    _print_status(services)
    if detach:
        return

    click.echo("Running... Press Ctrl+C to stop.")
    try:
        while True:
            time.sleep(1)
    except KeyboardInterrupt:
        click.echo("\nStopping services...")
        for failure in orchestrator.down():
            click.echo(f"Warning: could not stop {failure}", err=True)


@cli.command()
@click.option('--volumes', '-v', 'remove_volumes', is_flag=True, help='Remove named volumes')
@click.option('--remove-images', is_flag=True, help='Remove built artifacts and images')
@click.pass_context
def down(ctx, remove_volumes, remove_images):
    """Stop all running services."""
    try:
        failures = _orchestrator(ctx).down(remove_volumes=remove_volumes, remove_images=remove_images)
    except StackctlError as e:
        _fail(ctx, e)
    for failure in failures:
        click.echo(f"Warning: could not stop {failure}", err=True)
    click.echo("Services stopped.")


@cli.command()
@click.argument('services', nargs=-1)
@click.option('--json', 'as_json', is_flag=True, help='Print as JSON')
@click.pass_context
def inspect(ctx, services, as_json):
    """Show the start plan and the state of services."""
    try:
        report = _orchestrator(ctx).inspect(list(services))
    except StackctlError as e:
        _fail(ctx, e)

    if as_json:
        click.echo(json.dumps(report, indent=2))
        return

    click.echo(f"Project: {report['project']}")
    click.echo("Start plan:")
    for wave, names in enumerate(report['plan'], start=1):
        click.echo(f"  {wave}. {', '.join(names)}")
    for name, info in report['services'].items():
        click.echo(f"\n{name}")
        click.echo(f"  state:      {info['state']}")
        click.echo(f"  source:     {info['build'] or info['image'] or ' '.join(info['command'])}")
        if info['depends_on']:
            click.echo(f"  depends_on: {', '.join(info['depends_on'])}")
        if info['readiness']:
            click.echo(f"  readiness:  {info['readiness']}")
        if info['error']:
            click.echo(f"  error:      {info['error']}")


@cli.command()
@click.pass_context
def ps(ctx):
    """List service status"""
    try:
        services = _orchestrator(ctx).ps()
    except StackctlError as e:
        _fail(ctx, e)
    _print_status(services)


@cli.command()
@click.argument('services', nargs=-1)
@click.option('--follow', '-F', is_flag=True, help='Keep printing new output')
@click.pass_context
def logs(ctx, services, follow):
    """Show service logs"""
    try:
        orchestrator = _orchestrator(ctx)
    except StackctlError as e:
        _fail(ctx, e)
    names = list(services) or orchestrator.topology.service_names()
    backend = orchestrator.backend

    if isinstance(backend, ProcessBackend):
        if follow:
            try:
                backend.log_aggregator.tail_logs(names, click.echo)
            except KeyboardInterrupt:
                click.echo("")
        else:
            backend.log_aggregator.dump(names, click.echo)
        return

    try:
        running = backend.discover()
    except StackctlError as e:
        _fail(ctx, e)
    for name in names:
        if name in running:
            for line in backend.logs(running[name]).splitlines():
                click.echo(f"{name:15} | {line}")


def main():
    """
    Main entry point for the CLI.
    """
    cli(obj={})


if __name__ == '__main__':
    main()
