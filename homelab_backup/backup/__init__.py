"""
Backup module for homelab-backup.

This module handles the core backup functionality including:
- Credential session (ssh-agent lifecycle)
- Source collection (database dumps, stack data, extra paths)
- Secret sealing
- Archiving
- Storage (SFTP, S3 and local)
- Retention policy enforcement
- Restore resolution
- Execution orchestration
"""

from .executor import BackupExecutor, execute_backup, execute_restore, execute_rotation
from .session import CredentialSession, AuthError
from .sources import DatabaseCollector, StackCollector, PathCollector, CollectorError
from .sealer import SecretSealer, SealError, SecretsNotFound, DecryptionError
from .compression import build_archive, CompressionError
from .storage import SFTPStorage, S3Storage, LocalStorage, StorageError
from .retention import RetentionManager, classify_retention
from .restore import RestoreResolver, SnapshotNotFound, RestoreError

__all__ = [
    'BackupExecutor',
    'execute_backup',
    'execute_restore',
    'execute_rotation',
    'CredentialSession',
    'AuthError',
    'DatabaseCollector',
    'StackCollector',
    'PathCollector',
    'CollectorError',
    'SecretSealer',
    'SealError',
    'SecretsNotFound',
    'DecryptionError',
    'build_archive',
    'CompressionError',
    'SFTPStorage',
    'S3Storage',
    'LocalStorage',
    'StorageError',
    'RetentionManager',
    'classify_retention',
    'RestoreResolver',
    'SnapshotNotFound',
    'RestoreError',
]
