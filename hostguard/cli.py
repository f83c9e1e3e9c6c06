"""
Command-line interface for hostguard.

Commands:
- setup: resolve configuration, verify artifacts, run the installation plan
- verify: read-only end-state checks of the installation plan
- backup / restore / list / sync / prune / cycle: backup-set lifecycle
- schedule: run the backup cycle on BACKUP_SCHEDULE in the foreground
"""

import functools
import os
import sys
from typing import Optional

import click
from rich.console import Console
from rich.table import Table

from hostguard import __version__, configure_logging, init_db, close_db
from hostguard.config import Config, ConfigurationError, ConfigurationResolver, load_snapshot
from hostguard.backup.backupset import BackupSetError
from hostguard.backup.catalog import sync_catalog
from hostguard.backup.compression import CompressionError
from hostguard.backup.executor import BackupError, run_backup
from hostguard.backup.replicator import sync_pending_archives
from hostguard.backup.restore import RestoreError, RestoreExecutor
from hostguard.backup.retention import enforce_retention
from hostguard.backup.storage import LocalStorage, StorageError
from hostguard.setup.fetcher import IntegrityError
from hostguard.setup.installer import run_installation, write_setup_report
from hostguard.setup.orchestrator import PhaseOrchestrator, PlanError, StepFailure
from hostguard.setup.steps import default_steps
from hostguard.utils.runlock import RunLock, RunLockError

console = Console()

FATAL_ERRORS = (
    ConfigurationError,
    IntegrityError,
    PlanError,
    RunLockError,
    BackupError,
    RestoreError,
    StorageError,
    BackupSetError,
    CompressionError,
)


class CliContext:
    def __init__(self, non_interactive: bool, debug: bool, state_file: str):
        self.non_interactive = non_interactive
        self.debug = debug
        self.state_file = state_file
        self.config = None
        self.log_path = None

    def load(self, interactive: bool = False, catalog: bool = True):
        """
        Resolve the configuration snapshot, then set up logging and the catalog.
        """
        if interactive and not self.non_interactive:
            resolver = ConfigurationResolver(self.state_file, interactive=True)
        else:
            resolver = ConfigurationResolver(self.state_file, interactive=False)
        self.config = resolver.resolve_all()
        self.log_path = configure_logging(self.config.get('LOG_DIR', Config.LOG_DIR), debug=self.debug,
                                          also_console=self.debug)
        if catalog:
            init_db(self.config.catalog_url)
        return resolver

    def lock(self) -> RunLock:
        return RunLock(self.config.get('RUN_LOCK', '/run/hostguard.lock'))


def handle_errors(func):
    """Map fatal errors to a one-line message and exit status 1."""

    @functools.wraps(func)
    def wrapper(*args, **kwargs):
        try:
            return func(*args, **kwargs)
        except FATAL_ERRORS as e:
            raise click.ClickException(str(e))
        finally:
            close_db()

    return wrapper


def _format_size(size: Optional[int]) -> str:
    if size is None:
        return '-'
    return f"{size / 1024 / 1024:.2f} MB"


@click.group()
@click.version_option(__version__, prog_name='hostguard')
@click.option('--non-interactive', '--yes', '-y', 'non_interactive', is_flag=True,
              default=Config.NON_INTERACTIVE, help='Never prompt; use environment, saved state and defaults')
@click.option('--debug', is_flag=True, help='Verbose logging on the console')
@click.option('--state-file', default=Config.STATE_FILE, show_default=True,
              type=click.Path(dir_okay=False), help='Persisted configuration and progress')
@click.pass_context
def cli(ctx: click.Context, non_interactive: bool, debug: bool, state_file: str):
    """Harden a single host and manage its backups."""
    ctx.obj = CliContext(non_interactive, debug, state_file)


@cli.command()
@click.pass_obj
@handle_errors
def setup(obj: CliContext):
    """Resolve configuration, verify artifacts and run the installation."""
    resolver = obj.load(interactive=True, catalog=False)
    resolver.validate_required(obj.config)
    resolver.persist(obj.config)

    with obj.lock():
        try:
            report = run_installation(obj.config, state_path=obj.state_file, log_path=obj.log_path)
        except StepFailure as e:
            console.print(e.result.summary())
            raise click.ClickException(str(e))

    console.print(report.orchestration.summary())
    path = write_setup_report(obj.config.get('REPORT_PATH', '/root/setup-report.txt'), obj.config, report)
    console.print(f"[green]Setup complete.[/green] Report: {path}")
    for warning in report.orchestration.warnings:
        console.print(f"[yellow]Warning:[/yellow] {warning.step_id}: {warning.message}")


@cli.command()
@click.pass_obj
@handle_errors
def verify(obj: CliContext):
    """Check the end state of every planned step (read-only)."""
    obj.load(catalog=False)
    checks = PhaseOrchestrator(default_steps(), obj.config).verify()

    table = Table(title='Verification')
    table.add_column('Step')
    table.add_column('Result')
    for check in checks:
        style = {'PASS': 'green', 'FAIL': 'red'}.get(check.label, 'dim')
        table.add_row(check.step_id, f"[{style}]{check.label}[/{style}]")
    console.print(table)

    if any(check.passed is False for check in checks):
        sys.exit(1)


@cli.command()
@click.pass_obj
@handle_errors
def backup(obj: CliContext):
    """Capture this host into a new archive."""
    obj.load()
    with obj.lock():
        result = run_backup(obj.config)

    console.print(result.summary())
    if not result.ok:
        console.print('[red]Backup failed[/red]')
        sys.exit(1)
    console.print('[green]Backup complete[/green]' if not result.problems
                  else '[yellow]Backup completed with warnings[/yellow]')


def _archive_table(config) -> Table:
    table = Table(title=f"Archives in {config.get('BACKUP_DIR')}")
    for column in ('Name', 'Status', 'State', 'Size', 'Remote key'):
        table.add_column(column)
    for record in sync_catalog(config.get('BACKUP_DIR', '/opt/backups')):
        table.add_row(record.name, record.status, record.state,
                      _format_size(record.file_size_bytes), record.remote_key or '-')
    return table


@cli.command()
@click.argument('archive', required=False)
@click.option('--dry-run', is_flag=True, help='Validate the archive structure only')
@click.pass_obj
@handle_errors
def restore(obj: CliContext, archive: Optional[str], dry_run: bool):
    """Restore ARCHIVE onto this host (lists archives when omitted)."""
    obj.load()
    if not archive:
        console.print(_archive_table(obj.config))
        console.print('Usage: hostguard restore ARCHIVE')
        return

    if not os.path.exists(archive):
        candidates = [a for a in LocalStorage(obj.config.get('BACKUP_DIR', '/opt/backups')).list_archives()
                      if a['name'] == archive or os.path.basename(a['path']) == archive]
        if candidates:
            archive = candidates[0]['path']

    confirm = None if obj.non_interactive else (lambda prompt: click.confirm(prompt, default=False))
    executor = RestoreExecutor(archive, confirm=confirm, dry_run=dry_run)

    if dry_run:
        result = executor.execute()
    else:
        with obj.lock():
            result = executor.execute()

    console.print(result.summary())


@cli.command(name='list')
@click.pass_obj
@handle_errors
def list_archives(obj: CliContext):
    """List local archives and their catalog state."""
    obj.load()
    console.print(_archive_table(obj.config))


@cli.command()
@click.pass_obj
@handle_errors
def sync(obj: CliContext):
    """Upload every archive not yet uploaded."""
    obj.load()
    with obj.lock():
        result = sync_pending_archives(obj.config)

    console.print(result.summary())
    if result.failures and obj.config.flag('UPLOAD_STRICT'):
        sys.exit(1)


@cli.command()
@click.pass_obj
@handle_errors
def prune(obj: CliContext):
    """Delete archives older than BACKUP_RETENTION_DAYS (keeps the newest good one)."""
    obj.load()
    with obj.lock():
        summary = enforce_retention(obj.config)

    console.print(f"Deleted {len(summary['deleted'])} archive(s); kept {summary['kept'] or 'nothing'}")
    for error in summary['errors']:
        console.print(f"[red]{error}[/red]")
    if summary['errors']:
        sys.exit(1)


@cli.command()
@click.pass_obj
@handle_errors
def cycle(obj: CliContext):
    """Backup, sync and prune in one locked run (used by cron)."""
    from hostguard.scheduler import run_cycle

    obj.load()
    with obj.lock():
        result = run_cycle(obj.config)

    console.print(result.backup.summary())
    console.print(result.replication.summary())
    console.print(f"Pruned {len(result.retention['deleted'])} archive(s)")
    if not result.ok:
        sys.exit(1)


@cli.command()
@click.pass_obj
@handle_errors
def schedule(obj: CliContext):
    """Run the backup cycle on BACKUP_SCHEDULE until interrupted."""
    from hostguard.scheduler import init_scheduler, start_scheduler, stop_scheduler

    obj.load()
    try:
        init_scheduler(obj.config)
    except ValueError as e:
        raise click.ClickException(f"Invalid BACKUP_SCHEDULE: {e}")

    console.print(f"Backup cycle scheduled: {obj.config.get('BACKUP_SCHEDULE')} (Ctrl+C to stop)")
    try:
        start_scheduler()
    except (KeyboardInterrupt, SystemExit):
        stop_scheduler()


def main():
    cli(prog_name='hostguard')


if __name__ == '__main__':
    main()
