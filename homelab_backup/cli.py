"""
Operator commands, registered on the Flask CLI.

    homelab-backup backup [--dry-run]
    homelab-backup restore --list | --latest [--category C] | --backup ID [--secrets-only]
    homelab-backup rotate-key
    homelab-backup hash-token TOKEN
"""

import os
import signal

import click
from flask import current_app
from flask.cli import FlaskGroup, with_appcontext

from homelab_backup.auth import hash_token
from homelab_backup.credentials import (
    load_credentials,
    next_rotation_due,
    previous_env_path,
    ConfigurationError,
)
from homelab_backup.backup.executor import execute_backup, execute_restore, execute_rotation, remote_storage
from homelab_backup.backup.restore import RestoreResolver, RestoreManifest, SnapshotNotFound, RestoreError
from homelab_backup.backup.retention import RETENTION_CLASSES
from homelab_backup.backup.sealer import DecryptionError
from homelab_backup.backup.session import AuthError
from homelab_backup.backup.storage import StorageError

# Errors that end an operator command with exit code 1
FATAL_ERRORS = (
    ConfigurationError,
    AuthError,
    StorageError,
    SnapshotNotFound,
    RestoreError,
    DecryptionError,
)

env_file_option = click.option(
    '--env-file',
    type=click.Path(dir_okay=False),
    default=None,
    help='Credential record (defaults to BACKUP_ENV_FILE).'
)


def _raise_system_exit(signum, frame):
    raise SystemExit(128 + signum)


def install_signal_handlers():
    """Turn SIGTERM and SIGHUP into SystemExit so cleanup handlers run."""
    signal.signal(signal.SIGTERM, _raise_system_exit)
    signal.signal(signal.SIGHUP, _raise_system_exit)


def _env_file(env_file):
    return env_file or current_app.config['BACKUP_ENV_FILE']


def _load(env_file):
    try:
        return load_credentials(_env_file(env_file))
    except ConfigurationError as e:
        raise click.ClickException(str(e))


def _restore_staging_dir(record) -> str:
    return record.get('RESTORE_TEMP_DIR') or os.path.join(current_app.config['TEMP_DIR'], 'restore-staging')


def _echo_snapshots(snapshots_by_class):
    click.echo("=== Available Backups ===")
    for retention_class in RETENTION_CLASSES:
        click.echo("")
        click.echo(f"{retention_class.upper()}:")
        snapshots = snapshots_by_class.get(retention_class) or []
        if not snapshots:
            click.echo("  (none)")
        for snapshot in snapshots:
            click.echo(f"  {snapshot.timestamp}  {snapshot.name}  ({snapshot.size / 1024 / 1024:.2f} MB)")


def _echo_manifest(manifest: RestoreManifest):
    staging = manifest.staging_dir
    click.echo("")
    click.echo("=== RESTORE SUMMARY ===")
    click.echo(f"Backup: {manifest.snapshot.name} ({manifest.snapshot.retention_class})")
    if manifest.key_version is not None:
        suffix = " (previous password)" if manifest.used_previous_key else ""
        click.echo(f"Secrets decrypted with key v{manifest.key_version}{suffix}")

    if not manifest.secrets_only:
        click.echo("")
        click.echo("Database dumps:")
        for name, size in manifest.databases:
            click.echo(f"  - {name} ({size / 1024:.1f} KB)")
        if not manifest.databases:
            click.echo("  (none)")

        click.echo("")
        click.echo("Stacks:")
        for stack in manifest.stacks:
            click.echo(f"  - {stack}")
        if not manifest.stacks:
            click.echo("  (none)")

        if manifest.additional:
            click.echo("")
            click.echo("Additional paths:")
            for entry in manifest.additional:
                click.echo(f"  - {entry}")

    click.echo("")
    click.echo("Decrypted .env files:")
    for path in manifest.env_files:
        click.echo(f"  - {path}")
    if not manifest.env_files:
        click.echo("  (none)")

    click.echo("")
    click.echo("=== MANUAL RESTORE STEPS ===")
    click.echo(f"1. Review the extracted files in: {staging}")
    if not manifest.secrets_only:
        click.echo("2. Restore a database dump:")
        click.echo(f"   docker exec -i <container> mariadb -u <user> -p <database> < {staging}/databases/<dump>.sql")
        click.echo("3. Restore stack data:")
        click.echo(f"   cp -a {staging}/stacks/<stack>/* $DOCKER_HOMELAB_PATH/stacks/<stack>/")
    click.echo("4. Restore secrets:")
    click.echo(f"   cp -a {staging}/decrypted/* $DOCKER_HOMELAB_PATH/")
    click.echo("5. Redeploy the affected stacks.")
    click.echo("")
    click.echo(f"Remove {staging} when done; it contains decrypted secrets.")


@click.command('backup')
@click.option('--dry-run', is_flag=True, help='Decide everything but copy, encrypt, transfer and prune nothing.')
@env_file_option
@with_appcontext
def backup_command(dry_run, env_file):
    """Run one backup."""
    install_signal_handlers()
    record = _load(env_file)

    history = execute_backup(record, dry_run=dry_run, temp_dir=current_app.config['TEMP_DIR'])

    for warning in history.warning_list:
        click.echo(f"WARN: {warning}", err=True)

    if history.status != 'success':
        raise click.ClickException(history.error_message or f"Backup {history.status}")

    if dry_run:
        click.echo(f"Dry run complete: would create {history.archive_name} ({history.retention_class})")
    else:
        click.echo(f"Backup complete: {history.remote_path}")


@click.command('restore')
@click.option('--list', 'list_only', is_flag=True, help='List all available backups on the remote store.')
@click.option('--latest', is_flag=True, help='Restore the most recent backup.')
@click.option('--backup', 'identifier', metavar='ID', help='Restore a specific backup (timestamp or archive name).')
@click.option('--category', type=click.Choice(RETENTION_CLASSES), help='Retention class for --latest.')
@click.option('--secrets-only', is_flag=True, help='Only extract and decrypt the sealed secrets.')
@env_file_option
@with_appcontext
def restore_command(list_only, latest, identifier, category, secrets_only, env_file):
    """Prepare a backup for manual restore (never writes into live paths)."""
    if sum([list_only, latest, identifier is not None]) != 1:
        raise click.UsageError("Specify exactly one of --list, --latest or --backup ID")
    if category and not latest:
        raise click.UsageError("--category is only valid with --latest")

    install_signal_handlers()
    record = _load(env_file)
    staging_dir = _restore_staging_dir(record)

    try:
        if list_only:
            record.validate('restore')
            with remote_storage(record) as storage:
                resolver = RestoreResolver(storage, record.decryption_keys, staging_dir)
                _echo_snapshots(resolver.list_snapshots())
            return

        manifest = execute_restore(
            record,
            staging_dir,
            identifier=identifier,
            retention_class=category,
            secrets_only=secrets_only
        )
    except FATAL_ERRORS as e:
        raise click.ClickException(str(e))

    _echo_manifest(manifest)


@click.command('rotate-key')
@env_file_option
@with_appcontext
def rotate_key_command(env_file):
    """Rotate the backup encryption password."""
    install_signal_handlers()
    path = _env_file(env_file)

    try:
        previous = load_credentials(path)
        record = execute_rotation(path)
    except ConfigurationError as e:
        raise click.ClickException(str(e))

    due = next_rotation_due(record)

    click.echo("=== ROTATION SUMMARY ===")
    if previous.current_key is not None:
        click.echo(f"  Previous version: {previous.current_key.version}")
    click.echo(f"  New version:      {record.current_key.version}")
    click.echo(f"  Rotation date:    {record.current_key.created}")
    click.echo("")
    click.echo(f"The previous password is saved in: {previous_env_path(path)}")
    click.echo("Existing backups stay encrypted with the previous password; restore tries both.")
    click.echo("Test a restore before the next backup (restore --latest).")
    if due:
        click.echo(f"Next rotation due: {due.isoformat()}")


@click.command('hash-token')
@click.argument('token')
def hash_token_command(token):
    """Print the STATUS_API_TOKEN_HASH value for a bearer token."""
    click.echo(hash_token(token))


def register_commands(app):
    for command in (backup_command, restore_command, rotate_key_command, hash_token_command):
        app.cli.add_command(command)


def _create_app():
    from homelab_backup import create_app
    return create_app()


# Console script entry point
main = FlaskGroup(create_app=_create_app, help='Homelab backup orchestration.')
