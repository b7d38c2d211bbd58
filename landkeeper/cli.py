"""
Command-line runners for Landkeeper.

Console scripts:
- landkeeper-backup: run one backup cycle
- landkeeper-restore: restore from an artifact, or list artifacts
- landkeeper-health: print the backup health report
- landkeeper-scheduler: run the backup cron in the foreground

Every command that opens a database session closes it before exiting,
including on unexpected errors (exit code 1).
"""

import logging
import sys

import click

from landkeeper import configure_run_logging
from landkeeper.backup.executor import BackupManager
from landkeeper.backup.health import BackupHealthChecker, CRITICAL, HEALTHY
from landkeeper.backup.mongo import redact_uri
from landkeeper.backup.restore import RestoreManager, RestoreSettings
from landkeeper.backup.storage import LocalStorage, StorageError
from landkeeper.config import get_config
from landkeeper.database import DatabaseSession


logger = logging.getLogger(__name__)

CONTEXT_SETTINGS = dict(help_option_names=['-h', '--help'])
BANNER_WIDTH = 50


def _open_session(config):
    return DatabaseSession(
        config.MONGODB_URI,
        server_selection_timeout_ms=config.MONGO_SERVER_SELECTION_TIMEOUT_MS
    )


def _require_uri(config):
    if not config.MONGODB_URI:
        click.echo(click.style("Missing MONGODB_URI (or MONGODB) in the environment", fg='red'), err=True)
        sys.exit(1)


@click.command(context_settings=CONTEXT_SETTINGS)
@click.option('--debug', is_flag=True, help='Log at DEBUG level.')
def backup_command(debug):
    """Run one full backup cycle: dump, snapshot, compress, upload, prune."""
    config = get_config()
    configure_run_logging('backup', config.BACKUP_LOGS_DIR, debug=debug)
    _require_uri(config)

    logger.info(f"Backup requested for {redact_uri(config.MONGODB_URI)}")
    session = _open_session(config)
    try:
        result = BackupManager(config, session).create_backup()
    except Exception as e:
        logger.exception("Unexpected error during backup run")
        click.echo(click.style(f"Error: {e}", fg='red'), err=True)
        sys.exit(1)
    finally:
        session.close()

    if not result['success']:
        click.echo(click.style(f"Error: {result['error']}", fg='red'), err=True)
        sys.exit(1)

    click.echo("\n" + "=" * BANNER_WIDTH)
    click.echo(click.style("BACKUP COMPLETED SUCCESSFULLY!", fg='green'))
    click.echo("=" * BANNER_WIDTH)
    click.echo(f"File: {result['backup']}")
    click.echo(f"Size: {result['size']}")
    click.echo(f"Time: {result['timestamp']}")
    click.echo(f"Duration: {result['duration_ms']}ms")
    click.echo(f"Collections: {len(result['collections'])}")
    for warning in result['warnings']:
        click.echo(click.style(f"Warning ({warning['stage']}): {warning['message']}", fg='yellow'))
    click.echo("=" * BANNER_WIDTH)


@click.command(context_settings=CONTEXT_SETTINGS)
@click.argument('identifier', required=False)
@click.option('--list', '-l', 'list_backups', is_flag=True, help='List available backups and exit.')
@click.option('--drop', is_flag=True, help='Drop target collections before restoring.')
@click.option('--skip-verify', is_flag=True, help='Skip the post-restore count verification.')
@click.option('--new-ids', is_flag=True, help='Do not preserve document ObjectIds.')
@click.option('--database', default=None, help='Restore into this database instead of the original.')
@click.option('--nsFrom', 'ns_from', default=None, help='Source namespace pattern, e.g. "db.*".')
@click.option('--nsTo', 'ns_to', default=None, help='Target namespace pattern, e.g. "copy.*".')
@click.option('--nsInclude', 'ns_include', default=None, help='Only restore this namespace pattern.')
@click.option('--dry-run', is_flag=True, help='Validate the backup and print the plan only.')
@click.option('--with-media-inventory', is_flag=True, help='Report the media inventory stored in the backup.')
@click.option('--debug', is_flag=True, help='Log at DEBUG level.')
def restore_command(identifier, list_backups, drop, skip_verify, new_ids, database, ns_from, ns_to,
                    ns_include, dry_run, with_media_inventory, debug):
    """
    Restore a backup.

    IDENTIFIER is 'latest', a backup name (or part of one), s3://bucket/key,
    remote:<name> or an http(s) URL.
    """
    config = get_config()

    if list_backups:
        _print_backup_list(config)
        return

    if not identifier:
        click.echo("Usage: landkeeper-restore <backup-file|latest|s3://bucket/key|remote:name> [--drop]", err=True)
        sys.exit(1)

    configure_run_logging('restore', config.BACKUP_LOGS_DIR, debug=debug)
    if not dry_run:
        _require_uri(config)

    settings = RestoreSettings(
        target_database=database,
        drop=drop,
        skip_verification=skip_verify,
        preserve_ids=not new_ids,
        ns_from=ns_from,
        ns_to=ns_to,
        ns_include=ns_include,
        dry_run=dry_run,
        include_media_inventory=with_media_inventory
    )

    session = _open_session(config)
    try:
        result = RestoreManager(config, session).restore(identifier, settings)
    except Exception as e:
        logger.exception("Unexpected error during restore run")
        click.echo(click.style(f"Error: {e}", fg='red'), err=True)
        sys.exit(1)
    finally:
        session.close()

    if not result['success']:
        click.echo(click.style("RESTORE FAILED", fg='red'), err=True)
        click.echo(f"Error: {result['error']}", err=True)
        sys.exit(1)

    if result.get('dry_run'):
        click.echo("DRY RUN - nothing was restored")
        click.echo(f"Backup: {result['backup_used']}")
        click.echo(f"Database: {result['source_database']} -> {result['target_database']}")
        click.echo(f"Collections: {', '.join(result['collections']) or 'none'}")
        click.echo(f"Namespaces: {' '.join(result['plan']['namespaces'])}")
    else:
        click.echo(click.style("RESTORE COMPLETED", fg='green'))
        click.echo(f"Backup: {result['backup_used']}")
        click.echo(f"Database: {result['source_database']} -> {result['target_database']}")
        click.echo(f"Collections: {len(result['collections_restored'])}")
        click.echo(f"Documents: {result['documents_restored']}")
        click.echo(f"Duration: {result['duration_ms']}ms")

    if result.get('media_inventory'):
        inventory = result['media_inventory']
        click.echo(f"Media inventory: {inventory['total_count']} resources ({inventory['total_size']}), not restored")

    for warning in result['warnings']:
        click.echo(click.style(f"Warning ({warning['stage']}): {warning['message']}", fg='yellow'))


def _print_backup_list(config):
    storage = LocalStorage(config.BACKUP_STORAGE_PATH, create=False)
    try:
        backups = RestoreManager(config, session=None, local_storage=storage).list_backups()
    except StorageError as e:
        click.echo(f"Failed to list backups: {e}", err=True)
        sys.exit(1)

    if not backups:
        click.echo("No backup files found")
        return

    click.echo("Available backups:")
    for index, backup in enumerate(backups, start=1):
        modified = backup['modified'].replace('T', ' ')[:19]
        click.echo(f"{index}. {backup['name']} ({backup['size']}) - {modified}")


@click.command(context_settings=CONTEXT_SETTINGS)
def health_command():
    """Print the backup health report; exit 1 when critical."""
    config = get_config()
    report = BackupHealthChecker.from_config(config).check()

    click.echo(f"\nBackup Health Check - {report['timestamp']}")
    click.echo(f"Overall Status: {report['status'].upper()}")
    click.echo("\nChecks:")

    for check in report['checks']:
        color = 'green' if check['status'] == HEALTHY else 'red' if check['status'] == CRITICAL else 'yellow'
        click.echo(f"  [{click.style(check['status'], fg=color)}] {check['check']}: {check['message']}")

    click.echo("\nRecent Backups:")
    if not report['backups']:
        click.echo("  No backups found")
    for backup in report['backups']:
        click.echo(f"  {backup['name']} ({backup['formatted_size']}) - {backup['modified']}")

    sys.exit(1 if report['status'] == CRITICAL else 0)


@click.command(context_settings=CONTEXT_SETTINGS)
@click.option('--debug', is_flag=True, help='Log at DEBUG level.')
def scheduler_command(debug):
    """Run the backup schedule in the foreground."""
    from landkeeper.scheduler import init_scheduler, start_scheduler, stop_scheduler

    config = get_config()
    configure_run_logging('backup', config.BACKUP_LOGS_DIR, debug=debug)
    _require_uri(config)

    init_scheduler(config, blocking=True)
    click.echo(f"Backup scheduler running ({config.BACKUP_SCHEDULE_CRON} {config.SCHEDULER_TIMEZONE}), Ctrl+C to stop")
    try:
        start_scheduler()
    except (KeyboardInterrupt, SystemExit):
        logger.info("Scheduler interrupted")
    finally:
        stop_scheduler()


@click.group(context_settings=CONTEXT_SETTINGS)
def cli():
    """Landkeeper MongoDB backup and restore."""


cli.add_command(backup_command, 'backup')
cli.add_command(restore_command, 'restore')
cli.add_command(health_command, 'health')
cli.add_command(scheduler_command, 'scheduler')


if __name__ == '__main__':
    cli()
