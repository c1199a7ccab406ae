# Copyright 2024 Michael Maillet, Damien Davison, Sacha Davison
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

"""
Command Line Interface for homestack.
"""
import os
from typing import Optional

import click
import yaml

from ..exceptions import HomestackError
from ..PARSERS.compose_parser import ComposeParser, config_to_dict
from ..MANAGERS.service_orchestrator import ServiceOrchestrator
from ..MANAGERS.log_aggregator import LogAggregator
from ..MANAGERS.backup_manager import BackupManager
from ..CONVERTERS.to_systemd import SystemdConverter
from ..CONVERTERS.to_reverse_proxy import ReverseProxyConverter
from ..LINTERS.markdown_linter import MarkdownLinter
from ..UTILS.logging_setup import setup_logging
from ..UTILS.settings import Settings

DEFAULT_FILES = ('docker-compose.yml', 'docker-compose.yaml', 'compose.yml', 'compose.yaml')


class HomestackGroup(click.Group):
    """Reports homestack errors as clean CLI failures."""

    def invoke(self, ctx):
        try:
            return super().invoke(ctx)
        except HomestackError as e:
            raise click.ClickException(str(e)) from e


def _find_compose_file(file: Optional[str]) -> str:
    if file:
        return file
    for candidate in DEFAULT_FILES:
        if os.path.exists(candidate):
            return candidate
    return DEFAULT_FILES[0]


def _config(ctx):
    if 'config' not in ctx.obj:
        file = ctx.obj['file']
        if not os.path.exists(file):
            raise click.ClickException(f"{file} not found.")
        parser = ComposeParser(project_name=ctx.obj['settings'].project_name)
        ctx.obj['config'] = parser.parse(file)
    return ctx.obj['config']


def _orchestrator(ctx) -> ServiceOrchestrator:
    if 'orchestrator' not in ctx.obj:
        ctx.obj['orchestrator'] = ServiceOrchestrator(_config(ctx), settings=ctx.obj['settings'])
    return ctx.obj['orchestrator']


def _format_uptime(seconds: Optional[float]) -> str:
    if seconds is None:
        return "-"
    seconds = int(seconds)
    if seconds < 60:
        return f"{seconds}s"
    if seconds < 3600:
        return f"{seconds // 60}m{seconds % 60:02d}s"
    return f"{seconds // 3600}h{(seconds % 3600) // 60:02d}m"


def _format_bytes(size: Optional[int]) -> str:
    if size is None:
        return "-"
    for unit in ("B", "KiB", "MiB"):
        if size < 1024:
            return f"{size:.0f}{unit}"
        size /= 1024
    return f"{size:.1f}GiB"


@click.group(cls=HomestackGroup)
@click.option('--file', '-f', default=None, help='Compose file path')
@click.option('--project-name', '-p', default=None, help='Project name')
@click.option('--verbose', '-v', is_flag=True, help='Enable debug logging')
@click.pass_context
def cli(ctx, file, project_name, verbose):
    """
    homestack - run a compose-style home server stack as native processes.
    """
    ctx.ensure_object(dict)
    settings = Settings.from_env().with_overrides(
        project_name=project_name,
        log_level="DEBUG" if verbose else None,
    )
    setup_logging(settings.log_level)
    ctx.obj['settings'] = settings
    ctx.obj['file'] = _find_compose_file(file)


@cli.command()
@click.option('--detach', '-d', is_flag=True, help='Run in background')
@click.argument('services', nargs=-1)
@click.pass_context
def up(ctx, detach, services):
    """Start services and their dependencies."""
    orchestrator = _orchestrator(ctx)
    selected = list(services) or None
    try:
        order = orchestrator.up(selected, supervise=not detach)
        click.echo(f"Services started: {', '.join(order)}")
        if detach:
            return
        click.echo("Running... Press Ctrl+C to stop.")
        orchestrator.supervise()
    except KeyboardInterrupt:
        click.echo("\nStopping services...")
        orchestrator.down(selected)
        click.echo("Services stopped.")


@cli.command()
@click.option('--volumes', '-v', is_flag=True, help='Also remove named and anonymous volumes')
@click.argument('services', nargs=-1)
@click.pass_context
def down(ctx, volumes, services):
    """Stop services. Without arguments the whole project is torn down."""
    _orchestrator(ctx).down(list(services) or None, remove_volumes=volumes)
    click.echo("Services stopped.")


@cli.command()
@click.argument('services', nargs=-1)
@click.pass_context
def stop(ctx, services):
    """Stop services without removing networks or state."""
    _orchestrator(ctx).stop(list(services) or None)
    click.echo("Services stopped.")


@cli.command()
@click.argument('services', nargs=-1)
@click.pass_context
def restart(ctx, services):
    """Restart services."""
    _orchestrator(ctx).restart(list(services) or None)
    click.echo("Services restarted.")


@cli.command()
@click.pass_context
def ps(ctx):
    """List service status"""
    rows = _orchestrator(ctx).ps_detailed()
    click.echo(f"{'SERVICE':15} {'STATUS':12} {'PID':>7} {'HEALTH':10} {'RESTARTS':>8} "
               f"{'ADDRESS':15} {'UPTIME':>8} {'MEM':>8}  PORTS")
    click.echo("-" * 100)
    for row in rows:
        click.echo(
            f"{row['name']:15} {row['status']:12} {row['pid'] or '-':>7} {row['health']:10} "
            f"{row['restarts']:>8} {row['address'] or '-':15} {_format_uptime(row['uptime']):>8} "
            f"{_format_bytes(row['memory_rss']):>8}  {', '.join(row['ports'])}"
        )


@cli.command()
@click.option('--follow', '-f', is_flag=True, help='Follow log output')
@click.option('--tail', type=click.IntRange(min=0), default=None, help='Number of lines to show per service')
@click.option('--no-color', is_flag=True, help='Do not colorize service prefixes')
@click.argument('services', nargs=-1)
@click.pass_context
def logs(ctx, follow, tail, no_color, services):
    """Show service logs"""
    orchestrator = _orchestrator(ctx)
    names = list(services) or orchestrator.config.service_names
    unknown = [n for n in names if n not in orchestrator.config.services]
    if unknown:
        raise click.ClickException(f"No such service: {', '.join(unknown)}")
    aggregator = LogAggregator(orchestrator.log_dir, color=not no_color)
    aggregator.tail_logs(names, follow=follow, tail=tail)


@cli.command()
@click.option('--services', 'services_only', is_flag=True, help='Print the service names only')
@click.pass_context
def config(ctx, services_only):
    """Validate and print the resolved compose file."""
    parsed = _config(ctx)
    if services_only:
        for name in parsed.service_names:
            click.echo(name)
        return
    click.echo(yaml.safe_dump(config_to_dict(parsed), sort_keys=False), nl=False)


@cli.command()
@click.option('--type', '-t', 'target', type=click.Choice(['systemd', 'nginx']), default='systemd')
@click.option('--out', '-o', default=None, help='Output directory')
@click.option('--listen', type=int, default=80, help='Port the reverse proxy listens on')
@click.pass_context
def convert(ctx, target, out, listen):
    """Convert to native format"""
    if target == 'systemd':
        converter = SystemdConverter(_config(ctx), stop_timeout=ctx.obj['settings'].stop_timeout)
        for path in converter.convert(out or 'systemd'):
            click.echo(path)
    else:
        orchestrator = _orchestrator(ctx)
        converter = ReverseProxyConverter(orchestrator.config, listen=listen,
                                          network_manager=orchestrator.network_manager)
        click.echo(converter.convert(out or 'nginx'))


@cli.group()
@click.pass_context
def backup(ctx):
    """Archive and restore volumes and data directories."""


def _backup_manager(ctx) -> BackupManager:
    orchestrator = _orchestrator(ctx)
    return BackupManager(
        orchestrator.volume_manager,
        os.path.join(orchestrator.state_dir, "backups"),
        orchestrator.project,
        base_dir=orchestrator.base_dir,
    )


@backup.command('create')
@click.option('--volume', 'volumes', multiple=True, help='Volume to archive (repeatable, default all)')
@click.option('--path', 'paths', multiple=True, help='Extra file or directory to archive (repeatable)')
@click.option('--out', '-o', default=None, help='Directory to write the archive to')
@click.pass_context
def backup_create(ctx, volumes, paths, out):
    """Create a backup archive."""
    archive = _backup_manager(ctx).create_backup(list(volumes) or None, paths=paths, destination=out)
    click.echo(archive)


@backup.command('list')
@click.pass_context
def backup_list(ctx):
    """List backup archives."""
    for info in _backup_manager(ctx).list_backups():
        click.echo(f"{info.name:45} {_format_bytes(info.size):>8}  {info.created_at}")


@backup.command('restore')
@click.argument('archive', type=click.Path(exists=True, dir_okay=False))
@click.option('--target', default=None, help='Extract into this directory instead')
@click.pass_context
def backup_restore(ctx, archive, target):
    """Restore a backup archive."""
    for entry in _backup_manager(ctx).restore_backup(archive, target_dir=target):
        click.echo(f"restored {entry}")


@backup.command('prune')
@click.option('--keep', type=int, required=True, help='Number of newest archives to keep')
@click.pass_context
def backup_prune(ctx, keep):
    """Delete old backup archives."""
    for name in _backup_manager(ctx).prune_backups(keep):
        click.echo(f"removed {name}")


@cli.command('lint-docs')
@click.argument('paths', nargs=-1, required=True, type=click.Path(exists=True))
def lint_docs(paths):
    """Check that code blocks in Markdown files are valid."""
    issues = MarkdownLinter().lint_paths(paths)
    for issue in issues:
        click.echo(str(issue))
    if issues:
        raise click.ClickException(f"{len(issues)} problem(s) found")
    click.echo("All code blocks are valid.")


def main():
    """
    Main entry point for the CLI.
    """
    cli(obj={})


if __name__ == '__main__':
    main()
