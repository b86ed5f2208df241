"""
Restore resolver - locates a snapshot on the remote store and prepares a
decrypted local copy of it.

Workflow:
1. Resolve the snapshot (latest, or by timestamp/name) across retention classes
2. Clear the restore staging directory
3. Download and extract the archive
4. Decrypt sealed secrets (current key, then the previous generation)
5. Return a manifest of what is present

Nothing is written into live application paths; applying the restored
data is a separate, manual step.
"""

import os
import shutil
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional, Tuple

from homelab_backup.credentials import KeyGeneration
from .compression import extract_archive, CompressionError
from .retention import RETENTION_CLASSES
from .sealer import SecretSealer, DecryptionError, SEALED_SUFFIX
from .storage import RemoteSnapshot, StorageError

logger = logging.getLogger(__name__)

DECRYPTED_DIR = 'decrypted'


class SnapshotNotFound(Exception):
    """Raised when no snapshot matches the request."""
    pass


class RestoreError(Exception):
    """Raised when a resolved snapshot cannot be prepared for restore."""
    pass


@dataclass
class RestoreManifest:
    """What a prepared restore staging directory contains."""
    snapshot: RemoteSnapshot
    staging_dir: Path
    secrets_only: bool = False
    databases: List[Tuple[str, int]] = field(default_factory=list)
    stacks: List[str] = field(default_factory=list)
    additional: List[str] = field(default_factory=list)
    secrets: List[str] = field(default_factory=list)
    key_version: Optional[int] = None
    used_previous_key: bool = False

    @property
    def env_files(self) -> List[str]:
        return [path for path in self.secrets if path.endswith('.env')]

    def to_dict(self) -> Dict[str, object]:
        return {
            'snapshot': self.snapshot.name,
            'retention_class': self.snapshot.retention_class,
            'staging_dir': str(self.staging_dir),
            'secrets_only': self.secrets_only,
            'databases': [{'name': name, 'size': size} for name, size in self.databases],
            'stacks': self.stacks,
            'additional': self.additional,
            'secrets': self.secrets,
            'key_version': self.key_version,
            'used_previous_key': self.used_previous_key,
        }


class RestoreResolver:
    """
    Finds, fetches and unpacks snapshots.
    """

    def __init__(self, storage, keys: List[KeyGeneration], staging_dir, sealer: Optional[SecretSealer] = None):
        """
        Args:
            storage: RemoteStorage backend
            keys: Key generations to try, current first (at most current + previous)
            staging_dir: Restore staging directory (wiped before each restore)
            sealer: SecretSealer (default instance if None)
        """
        self.storage = storage
        self.keys = list(keys)
        self.staging_dir = Path(staging_dir)
        self.sealer = sealer or SecretSealer()

        if len(self.keys) < 2:
            logger.warning("No previous encryption password available - only the current key will be tried")

    def list_snapshots(self) -> Dict[str, List[RemoteSnapshot]]:
        """
        Every class with its snapshots (newest first); empty classes map to [].

        Raises:
            StorageError: If listing fails
        """
        return {
            retention_class: self.storage.list_snapshots(retention_class)
            for retention_class in RETENTION_CLASSES
        }

    def find_latest(self, retention_class: Optional[str] = None) -> RemoteSnapshot:
        """
        Newest snapshot of the first non-empty class in daily, weekly, monthly order.

        Args:
            retention_class: Restrict the search to one class

        Raises:
            ValueError: If retention_class is invalid
            SnapshotNotFound: If no class holds a snapshot
        """
        if retention_class is not None and retention_class not in RETENTION_CLASSES:
            raise ValueError(f"Invalid retention class: {retention_class}")

        classes = (retention_class,) if retention_class else RETENTION_CLASSES
        for candidate in classes:
            snapshots = self.storage.list_snapshots(candidate)
            if snapshots:
                return snapshots[0]

        raise SnapshotNotFound("No backups found on remote server")

    def find_by_identifier(self, identifier: str) -> RemoteSnapshot:
        """
        Snapshot whose timestamp or full name equals identifier.

        Raises:
            SnapshotNotFound: If no class holds a match
        """
        for retention_class in RETENTION_CLASSES:
            for snapshot in self.storage.list_snapshots(retention_class):
                if identifier in (snapshot.timestamp, snapshot.name):
                    return snapshot

        raise SnapshotNotFound(f"Backup not found with identifier: {identifier}")

    def restore(self, snapshot: RemoteSnapshot, secrets_only: bool = False) -> RestoreManifest:
        """
        Download, extract and decrypt a snapshot into the staging directory.

        On failure the staging directory is removed so no partial plaintext
        is left behind.

        Raises:
            RestoreError: If download or extraction fails
            DecryptionError: If no key opens the sealed secrets
        """
        logger.info(f"Restoring backup: {snapshot.name}")
        self._reset_staging()

        try:
            logger.info("Downloading backup from remote server...")
            archive_path = self.storage.download(snapshot, self.staging_dir)
            logger.info("Backup downloaded")

            logger.info("Extracting backup archive...")
            extract_archive(archive_path, self.staging_dir, members_prefix='secrets' if secrets_only else None)
            logger.info("Backup extracted")

            manifest = RestoreManifest(snapshot=snapshot, staging_dir=self.staging_dir, secrets_only=secrets_only)
            self._decrypt_secrets(manifest)
            self._describe(manifest)

        except (StorageError, CompressionError) as e:
            self._discard_staging()
            raise RestoreError(str(e))
        except BaseException:
            self._discard_staging()
            raise

        logger.info(f"Backup prepared for restore in: {self.staging_dir}")
        return manifest

    def _reset_staging(self):
        if self.staging_dir.exists():
            shutil.rmtree(self.staging_dir)
        self.staging_dir.mkdir(parents=True)
        os.chmod(self.staging_dir, 0o700)

    def _discard_staging(self):
        shutil.rmtree(self.staging_dir, ignore_errors=True)

    def _decrypt_secrets(self, manifest: RestoreManifest):
        secrets_dir = self.staging_dir / 'secrets'
        blobs = sorted(secrets_dir.glob(f'*{SEALED_SUFFIX}')) if secrets_dir.is_dir() else []
        if not blobs:
            logger.info("No sealed secrets in this snapshot")
            return

        if not self.keys:
            raise DecryptionError("No encryption password configured to decrypt secrets")

        logger.info("Decrypting secrets...")
        decrypted_dir = self.staging_dir / DECRYPTED_DIR
        for blob in blobs:
            key = self.sealer.unseal(blob, decrypted_dir, self.keys)
            manifest.key_version = key.version
            manifest.used_previous_key = manifest.used_previous_key or key is not self.keys[0]

    def _describe(self, manifest: RestoreManifest):
        databases = self.staging_dir / 'databases'
        if databases.is_dir():
            manifest.databases = [
                (entry.name, entry.stat().st_size)
                for entry in sorted(databases.iterdir()) if entry.is_file()
            ]

        stacks = self.staging_dir / 'stacks'
        if stacks.is_dir():
            manifest.stacks = [entry.name for entry in sorted(stacks.iterdir()) if entry.is_dir()]

        additional = self.staging_dir / 'additional'
        if additional.is_dir():
            manifest.additional = [entry.name for entry in sorted(additional.iterdir())]

        decrypted = self.staging_dir / DECRYPTED_DIR
        if decrypted.is_dir():
            manifest.secrets = sorted(
                str(path.relative_to(decrypted)) for path in decrypted.rglob('*') if path.is_file()
            )
