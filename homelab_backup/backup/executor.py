"""
Backup executor - orchestrates the complete backup workflow.

Workflow:
1. Create RunHistory record (status: running)
2. Validate the credential record, ping monitoring start
3. Open the credential session (SFTP backend)
4. Run source collectors into the staging area
5. Seal the secrets tree
6. Create the snapshot archive
7. Upload into the retention bucket, then prune every bucket
8. Remove staging, stop the agent (on every exit path)
9. Update RunHistory (status: success/failed/cancelled), ping monitoring
"""

import os
import json
import logging
from contextlib import ExitStack, contextmanager, nullcontext
from datetime import datetime
from typing import Callable, List, Optional

from homelab_backup import db
from homelab_backup.credentials import CredentialRecord, load_credentials, rotate_key
from homelab_backup.models import RunHistory
from homelab_backup.notifier import Notifier
from .context import RunContext, StagingArea
from .session import CredentialSession
from .sources import create_collectors, CollectorError
from .sealer import SecretSealer, SecretsNotFound
from .compression import build_archive, generate_archive_filename, get_archive_size
from .storage import create_storage
from .retention import RetentionManager
from .restore import RestoreResolver, RestoreManifest

logger = logging.getLogger(__name__)


class BackupExecutor:
    """
    Orchestrates one backup run for a credential record.
    """

    def __init__(
        self,
        record: CredentialRecord,
        dry_run: bool = False,
        now: Optional[datetime] = None,
        temp_dir: Optional[str] = None,
        notifier: Optional[Notifier] = None,
        storage_factory: Callable = create_storage,
        session_factory: Callable = CredentialSession
    ):
        """
        Initialize backup executor.

        Args:
            record: Loaded credential record
            dry_run: Decide and classify everything, but copy/encrypt/transfer/prune nothing
            now: Run start time (defaults to now)
            temp_dir: Parent directory for the staging area (BACKUP_TEMP_DIR wins if set)
            notifier: Monitoring notifier (built from the record if None)
            storage_factory: Callable(record, session) -> RemoteStorage
            session_factory: Callable(key_path, passphrase) -> CredentialSession
        """
        self.record = record
        self.dry_run = dry_run
        self.now = now
        self.temp_dir = record.get('BACKUP_TEMP_DIR', temp_dir)
        self.notifier = notifier or Notifier.from_record(record)
        self.storage_factory = storage_factory
        self.session_factory = session_factory

        self.context: Optional[RunContext] = None
        self.history_record: Optional[RunHistory] = None
        self.archive_path: Optional[str] = None
        self.warnings: List[str] = []
        self.logs: List[str] = []
        self._log_flush_counter = 0

    def execute(self) -> RunHistory:
        """
        Execute the backup.

        Returns:
            RunHistory record with execution results (status success or failed)

        Raises:
            KeyboardInterrupt, SystemExit: Re-raised after cleanup and a failure notification
        """
        self.history_record = RunHistory(
            operation='backup',
            status='running',
            dry_run=self.dry_run,
            hostname=self.record.hostname,
            started_at=datetime.utcnow()
        )
        db.session.add(self.history_record)
        db.session.commit()

        self._log("Starting backup process...")

        try:
            self._execute_workflow()

            self.history_record.status = 'success'
            self.history_record.completed_at = datetime.utcnow()
            if self.dry_run:
                self._log("Dry run completed successfully")
            else:
                self._log("Backup completed successfully!")
                self.notifier.success(self._summary())

        except (KeyboardInterrupt, SystemExit) as e:
            self.history_record.status = 'cancelled'
            self.history_record.completed_at = datetime.utcnow()
            self.history_record.error_message = f"Interrupted ({type(e).__name__})"
            self._log("Backup interrupted")
            self.notifier.fail("Backup interrupted")
            raise

        except Exception as e:
            self.history_record.status = 'failed'
            self.history_record.completed_at = datetime.utcnow()
            self.history_record.error_message = str(e)
            self._log(f"Backup failed: {e}", level=logging.ERROR)
            self.notifier.fail(f"Backup failed: {e}")

        finally:
            self.history_record.warnings = json.dumps(self.warnings) if self.warnings else None
            self.history_record.logs = '\n'.join(self.logs)
            db.session.commit()

        return self.history_record

    def _execute_workflow(self):
        """Execute the main backup workflow steps."""
        record = self.record

        # Step 1: Pre-flight
        record.validate('backup')
        if record.current_key is None:
            raise ValueError("Required variable not set: BACKUP_ENCRYPTION_PASSWORD")
        self.notifier.start()

        with ExitStack() as stack:
            # Step 2: Credential session (released on every exit path)
            if record.backend == 'sftp':
                self._log("Starting ssh-agent...")
                session = stack.enter_context(
                    self.session_factory(record.ssh_key_path, record.get('SSH_KEY_PASSPHRASE'))
                )
            else:
                session = stack.enter_context(nullcontext())

            # Step 3: Staging area (removed on every exit path)
            staging_root = stack.enter_context(StagingArea(self.temp_dir))

            self.context = RunContext(
                hostname=record.hostname,
                started_at=self.now or datetime.now(),
                staging_root=staging_root,
                dry_run=self.dry_run,
                compression_format=record.get('BACKUP_ARCHIVE_FORMAT', 'tar.gz')
            )
            retention_class = self.context.retention_class
            self.history_record.retention_class = retention_class
            self.history_record.key_version = record.current_key.version

            self._log("Backup configuration validated")
            self._log(f"  Local hostname: {record.hostname}")
            self._log(f"  Remote backend: {record.backend} ({record.remote_path})")
            self._log(f"  Timestamp: {self.context.timestamp}")
            self._log(f"  Category: {retention_class}")
            self._flush_logs_to_db()

            # Step 4: Collect sources
            self._collect_sources()
            self._flush_logs_to_db()

            # Step 5: Seal secrets
            self._seal_secrets()

            # Step 6: Create archive
            archive_name = generate_archive_filename(
                record.hostname, self.context.timestamp, self.context.compression_format
            )
            self.history_record.archive_name = archive_name

            if self.dry_run:
                self._log(f"[DRY-RUN] Would create archive: {archive_name}")
                self._log(f"[DRY-RUN] Would transfer to: {record.remote_path}/{retention_class}/")
                for name, keep in record.retention_policy.items():
                    self._log(f"[DRY-RUN] Would apply {name} retention: keep {keep}")
                return

            self._log("Creating final backup archive...")
            self.archive_path = build_archive(
                staging_root, record.hostname, self.context.timestamp, self.context.compression_format
            )
            file_size = get_archive_size(self.archive_path)
            self.history_record.file_size_bytes = file_size
            self._log(f"Archive created: {archive_name} ({file_size / 1024 / 1024:.2f} MB)")
            self._flush_logs_to_db()

            # Step 7: Transfer
            storage = stack.enter_context(self.storage_factory(record, session))
            self._log("Transferring backup to remote server...")
            storage.ensure_buckets()
            snapshot = storage.upload(self.archive_path, retention_class)
            self.history_record.remote_path = snapshot.path
            self._log(f"Backup transferred to: {snapshot.path}")
            self._flush_logs_to_db()

            # Step 8: Retention
            self._log("Applying retention policy...")
            retention = RetentionManager()
            summary = retention.enforce_all(storage, record.retention_policy)
            self.logs.extend(retention.logs)
            for error in summary['errors']:
                self._warn(error)
            self._log("Retention policy applied")

    def _collect_sources(self):
        """Run every collector; failures become warnings."""
        self._log("Collecting sources...")

        for subtree, collector in create_collectors(self.record):
            try:
                result = collector.collect(self.context.subtree(subtree), self.context)
            except CollectorError as e:
                self._warn(f"{collector.name}: {e}")
                continue

            for warning in result.warnings:
                self._warn(warning)
            if result.files_copied:
                self._log(f"  {collector.name}: {result.files_copied} files")

    def _seal_secrets(self):
        """Seal the secrets tree; a missing tree is a warning, anything else is fatal."""
        self._log("Backing up and encrypting secrets...")
        sealer = SecretSealer()
        try:
            blob = sealer.seal(
                self.record.get('HOMELAB_SECRETS_PATH'),
                self.context.subtree('secrets'),
                self.record.current_key,
                self.context
            )
        except SecretsNotFound as e:
            self._warn(str(e))
            return

        if not self.dry_run:
            self._log(f"  Secrets encrypted (key v{self.record.current_key.version}): {os.path.basename(blob)}")

    def _summary(self) -> str:
        record = self.history_record
        size_mb = (record.file_size_bytes or 0) / 1024 / 1024
        summary = f"Backup completed: {record.archive_name} ({size_mb:.2f} MB) -> {record.retention_class}"
        if self.warnings:
            summary += f" with {len(self.warnings)} warning(s): " + '; '.join(self.warnings)
        return summary

    def _warn(self, message: str):
        self.warnings.append(message)
        self._log(f"WARN: {message}", level=logging.WARNING)

    def _log(self, message: str, level: int = logging.INFO):
        """
        Add a log message with timestamp.

        Args:
            message: Log message
            level: logging level for the module logger
        """
        timestamp = datetime.utcnow().strftime('%Y-%m-%d %H:%M:%S UTC')
        self.logs.append(f"[{timestamp}] {message}")
        logger.log(level, message)

        # Flush logs every 5 entries
        self._log_flush_counter += 1
        if self._log_flush_counter >= 5:
            self._flush_logs_to_db()

    def _flush_logs_to_db(self):
        """Flush accumulated logs to database for real-time visibility."""
        if self.history_record:
            self.history_record.logs = '\n'.join(self.logs)
            db.session.commit()
            self._log_flush_counter = 0


def execute_backup(record: CredentialRecord, dry_run: bool = False, **kwargs) -> RunHistory:
    """
    Run one backup for a loaded credential record.

    Returns:
        RunHistory record with execution results
    """
    executor = BackupExecutor(record, dry_run=dry_run, **kwargs)
    return executor.execute()


@contextmanager
def remote_storage(record: CredentialRecord, session_factory: Callable = CredentialSession,
                   storage_factory: Callable = create_storage):
    """
    Open the remote store for a credential record.

    For the SFTP backend the credential session is started first and stopped
    after the storage connection is closed.
    """
    with ExitStack() as stack:
        session = None
        if record.backend == 'sftp':
            session = stack.enter_context(
                session_factory(record.ssh_key_path, record.get('SSH_KEY_PASSPHRASE'))
            )
        yield stack.enter_context(storage_factory(record, session))


def _start_history(operation: str, hostname: Optional[str]) -> RunHistory:
    history = RunHistory(operation=operation, status='running', hostname=hostname, started_at=datetime.utcnow())
    db.session.add(history)
    db.session.commit()
    return history


def _finish_history(history: RunHistory, status: str, error: Optional[BaseException] = None):
    history.status = status
    history.completed_at = datetime.utcnow()
    if error is not None:
        history.error_message = str(error) or type(error).__name__
    db.session.commit()


def execute_restore(
    record: CredentialRecord,
    staging_dir,
    identifier: Optional[str] = None,
    retention_class: Optional[str] = None,
    secrets_only: bool = False,
    **factories
) -> RestoreManifest:
    """
    Resolve and prepare one snapshot for manual restore, recording the run.

    Args:
        record: Loaded credential record
        staging_dir: Restore staging directory
        identifier: Timestamp or snapshot name; latest snapshot if None
        retention_class: Restrict the latest-snapshot search to one class
        secrets_only: Only extract and decrypt the sealed secrets

    Returns:
        RestoreManifest of the prepared staging directory

    Raises:
        ConfigurationError, AuthError, StorageError, SnapshotNotFound,
        RestoreError, DecryptionError: Recorded as a failed run, then re-raised
    """
    history = _start_history('restore', record.hostname)

    try:
        record.validate('restore')
        with remote_storage(record, **factories) as storage:
            resolver = RestoreResolver(storage, record.decryption_keys, staging_dir)
            if identifier:
                snapshot = resolver.find_by_identifier(identifier)
            else:
                snapshot = resolver.find_latest(retention_class)

            history.archive_name = snapshot.name
            history.retention_class = snapshot.retention_class
            history.remote_path = snapshot.path
            history.file_size_bytes = snapshot.size

            manifest = resolver.restore(snapshot, secrets_only=secrets_only)

    except (KeyboardInterrupt, SystemExit) as e:
        _finish_history(history, 'cancelled', e)
        raise
    except Exception as e:
        logger.error(f"Restore failed: {e}")
        _finish_history(history, 'failed', e)
        raise

    history.key_version = manifest.key_version
    if manifest.used_previous_key:
        history.warnings = json.dumps(["Secrets decrypted with previous password"])
    _finish_history(history, 'success')
    return manifest


def execute_rotation(env_path, notifier: Optional[Notifier] = None, now: Optional[datetime] = None) -> CredentialRecord:
    """
    Rotate the encryption password and record the run.

    Returns:
        Reloaded CredentialRecord carrying the new key generation
    """
    history = _start_history('rotate', None)

    try:
        if notifier is None:
            notifier = Notifier.from_record(load_credentials(env_path))
        record = rotate_key(env_path, notifier=notifier, now=now)
    except Exception as e:
        logger.error(f"Key rotation failed: {e}")
        _finish_history(history, 'failed', e)
        raise

    history.hostname = record.hostname
    history.key_version = record.current_key.version
    _finish_history(history, 'success')
    return record
