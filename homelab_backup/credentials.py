"""
Credential record loading, validation and key rotation.

The credential record is a dotenv file (secrets/backup.env) holding remote
coordinates, the SSH key path and passphrase, the backup encryption
password with its version, retention counts and monitoring URLs. A sibling
backup.env.previous keeps exactly one prior key generation for restore
fallback.
"""

import os
import base64
import shutil
import logging
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from pathlib import Path
from typing import Dict, List, Optional

from dotenv import dotenv_values, set_key

logger = logging.getLogger(__name__)

PREVIOUS_SUFFIX = '.previous'
ROTATION_INTERVAL_DAYS = 90

REMOTE_BACKENDS = ('sftp', 's3', 'local')

# Fields every operation needs, before backend-specific ones
_BACKUP_REQUIRED = (
    'LOCAL_HOSTNAME',
    'DOCKER_HOMELAB_PATH',
    'HOMELAB_SECRETS_PATH',
    'BACKUP_REMOTE_PATH',
    'BACKUP_ENCRYPTION_PASSWORD',
)
_RESTORE_REQUIRED = (
    'LOCAL_HOSTNAME',
    'BACKUP_REMOTE_PATH',
    'BACKUP_ENCRYPTION_PASSWORD',
)
_BACKEND_REQUIRED = {
    'sftp': ('BACKUP_REMOTE_USER', 'BACKUP_REMOTE_HOST', 'SSH_KEY_PATH', 'SSH_KEY_PASSPHRASE'),
    's3': ('BACKUP_S3_BUCKET',),
    'local': (),
}


class ConfigurationError(Exception):
    """Raised when the credential record is missing or invalid."""
    pass


@dataclass(frozen=True)
class KeyGeneration:
    """A symmetric encryption password and its generation number."""
    password: str
    version: int
    created: Optional[str] = None

    def __repr__(self):
        # Never print the password
        return f'<KeyGeneration v{self.version} created={self.created}>'


@dataclass(frozen=True)
class DatabaseDumpSpec:
    """One database to dump from a running container."""
    label: str
    container: str
    database: str
    user: str
    password_env: str = 'MYSQL_PASSWORD'


@dataclass
class CredentialRecord:
    """Parsed view of backup.env (plus backup.env.previous if present)."""
    env_path: Path
    values: Dict[str, str]
    current_key: Optional[KeyGeneration]
    previous_key: Optional[KeyGeneration] = None
    databases: List[DatabaseDumpSpec] = field(default_factory=list)

    def get(self, name: str, default: Optional[str] = None) -> Optional[str]:
        value = self.values.get(name)
        if value is None or value == '':
            return default
        return value

    @property
    def hostname(self) -> Optional[str]:
        return self.get('LOCAL_HOSTNAME')

    @property
    def backend(self) -> str:
        return self.get('BACKUP_REMOTE_BACKEND', 'sftp').lower()

    @property
    def remote_path(self) -> Optional[str]:
        return self.get('BACKUP_REMOTE_PATH')

    @property
    def remote_port(self) -> int:
        return _parse_int(self, 'BACKUP_REMOTE_PORT', 22)

    @property
    def ssh_key_path(self) -> Optional[Path]:
        """SSH key path; relative paths resolve against the backup directory (parent of secrets/)."""
        raw = self.get('SSH_KEY_PATH')
        if raw is None:
            return None
        path = Path(raw).expanduser()
        if not path.is_absolute():
            path = self.env_path.parent.parent / path
        return path

    @property
    def stacks(self) -> List[str]:
        return _split(self.get('BACKUP_STACKS', ''), ',')

    @property
    def stack_excludes(self) -> List[str]:
        return _split(self.get('BACKUP_STACK_EXCLUDES', ''), ',')

    @property
    def additional_paths(self) -> List[str]:
        return _split(self.get('ADDITIONAL_BACKUP_PATHS', ''), None)

    @property
    def retention_policy(self) -> Dict[str, int]:
        return {
            'daily': _parse_int(self, 'BACKUP_RETENTION_DAILY', 7),
            'weekly': _parse_int(self, 'BACKUP_RETENTION_WEEKLY', 4),
            'monthly': _parse_int(self, 'BACKUP_RETENTION_MONTHLY', 3),
        }

    @property
    def decryption_keys(self) -> List[KeyGeneration]:
        """Keys to try on restore: current first, then the single previous generation."""
        keys = []
        if self.current_key is not None:
            keys.append(self.current_key)
        if self.previous_key is not None and self.previous_key.password:
            keys.append(self.previous_key)
        return keys

    def validate(self, purpose: str = 'backup'):
        """
        Check that every field needed for an operation is set.

        Args:
            purpose: 'backup' or 'restore'

        Raises:
            ConfigurationError: Naming the first missing or invalid field
        """
        if self.backend not in REMOTE_BACKENDS:
            raise ConfigurationError(
                f"Invalid BACKUP_REMOTE_BACKEND: {self.backend}. Valid options: {list(REMOTE_BACKENDS)}"
            )

        required = _BACKUP_REQUIRED if purpose == 'backup' else _RESTORE_REQUIRED
        for name in required + _BACKEND_REQUIRED[self.backend]:
            if not self.get(name):
                raise ConfigurationError(f"Required variable not set: {name}")

        # Numeric fields raise on parse
        self.remote_port
        for retention_class, keep in self.retention_policy.items():
            if keep < 1:
                raise ConfigurationError(
                    f"Retention count for {retention_class} must be a positive integer, got: {keep}"
                )

        if self.backend == 'sftp':
            key_path = self.ssh_key_path
            if not key_path.is_file():
                raise ConfigurationError(f"SSH key not found: {key_path}")

        if purpose == 'backup':
            homelab = Path(self.get('DOCKER_HOMELAB_PATH'))
            if not homelab.is_dir():
                raise ConfigurationError(f"Docker homelab path not found: {homelab}")


def _split(raw: str, sep: Optional[str]) -> List[str]:
    return [item.strip() for item in raw.split(sep) if item.strip()]


def _parse_int(record: CredentialRecord, name: str, default: int) -> int:
    raw = record.get(name)
    if raw is None:
        return default
    try:
        return int(raw)
    except ValueError:
        raise ConfigurationError(f"{name} must be an integer, got: {raw!r}")


def _parse_databases(values: Dict[str, str]) -> List[DatabaseDumpSpec]:
    """
    Parse BACKUP_DATABASES and the legacy PHPIPAM_DB_* variables.

    BACKUP_DATABASES is a comma list of label=container:database:user[:password_env]
    """
    specs = []

    raw = values.get('BACKUP_DATABASES') or ''
    for entry in _split(raw, ','):
        label, sep, target = entry.partition('=')
        parts = target.split(':') if sep else []
        if not sep or len(parts) not in (3, 4) or not all(parts) or not label.strip():
            raise ConfigurationError(
                f"Invalid BACKUP_DATABASES entry {entry!r}. "
                "Expected label=container:database:user[:password_env]"
            )
        specs.append(DatabaseDumpSpec(label.strip(), *parts))

    container = values.get('PHPIPAM_DB_CONTAINER')
    if container:
        specs.append(DatabaseDumpSpec(
            label='phpipam',
            container=container,
            database=values.get('PHPIPAM_DB_NAME') or 'phpipam',
            user=values.get('PHPIPAM_DB_USER') or 'phpipam',
        ))

    for spec in specs:
        if not spec.password_env.isidentifier():
            raise ConfigurationError(f"Invalid password variable name for {spec.label}: {spec.password_env}")

    return specs


def _key_from_values(values: Dict[str, str], source: str) -> Optional[KeyGeneration]:
    password = values.get('BACKUP_ENCRYPTION_PASSWORD')
    if not password:
        return None

    raw_version = values.get('BACKUP_PASSWORD_VERSION') or '1'
    try:
        version = int(raw_version)
    except ValueError:
        raise ConfigurationError(f"BACKUP_PASSWORD_VERSION in {source} must be an integer, got: {raw_version!r}")
    if version < 1:
        raise ConfigurationError(f"BACKUP_PASSWORD_VERSION in {source} must be positive, got: {version}")

    return KeyGeneration(password=password, version=version, created=values.get('BACKUP_PASSWORD_CREATED'))


def previous_env_path(env_path) -> Path:
    env_path = Path(env_path)
    return env_path.with_name(env_path.name + PREVIOUS_SUFFIX)


def load_credentials(env_path) -> CredentialRecord:
    """
    Load the credential record and the previous key generation.

    Args:
        env_path: Path to backup.env

    Returns:
        CredentialRecord (not yet validated for a specific purpose)

    Raises:
        ConfigurationError: If the file is missing or malformed
    """
    env_path = Path(env_path)
    if not env_path.is_file():
        raise ConfigurationError(
            f"Environment file not found: {env_path}. "
            "Run setup first or copy backup.env.example to secrets/backup.env"
        )

    values = {k: v for k, v in dotenv_values(env_path).items() if v is not None}

    previous_key = None
    prev_path = previous_env_path(env_path)
    if prev_path.is_file():
        previous_key = _key_from_values(dotenv_values(prev_path), prev_path.name)

    return CredentialRecord(
        env_path=env_path,
        values=values,
        current_key=_key_from_values(values, env_path.name),
        previous_key=previous_key,
        databases=_parse_databases(values),
    )


def generate_password() -> str:
    """32 random bytes, base64 encoded (same shape as `openssl rand -base64 32`)."""
    return base64.b64encode(os.urandom(32)).decode()


def rotate_key(env_path, notifier=None, now: Optional[datetime] = None) -> CredentialRecord:
    """
    Rotate the backup encryption password.

    The current record is archived as backup.env.previous (replacing any
    older previous generation), a new password is generated and the
    version incremented. Existing remote snapshots are left untouched.

    Args:
        env_path: Path to backup.env
        notifier: Optional Notifier; its rotation check is pinged on success
        now: Rotation time (defaults to now)

    Returns:
        Reloaded CredentialRecord with the new current key

    Raises:
        ConfigurationError: If the env file is missing or has no encryption password
    """
    env_path = Path(env_path)
    record = load_credentials(env_path)
    if record.current_key is None:
        raise ConfigurationError("Required variable not set: BACKUP_ENCRYPTION_PASSWORD")

    now = now or datetime.now()
    current_version = record.current_key.version
    new_version = current_version + 1

    logger.info(f"Current password version: {current_version}")
    logger.info(f"New password version: {new_version}")

    # Archive current generation, overwriting the older one
    prev_path = previous_env_path(env_path)
    shutil.copy2(env_path, prev_path)
    os.chmod(prev_path, 0o600)
    logger.info(f"Archived {env_path.name} to {prev_path.name}")

    new_date = now.date().isoformat()
    set_key(env_path, 'BACKUP_ENCRYPTION_PASSWORD', generate_password(), quote_mode='always')
    set_key(env_path, 'BACKUP_PASSWORD_VERSION', str(new_version), quote_mode='always')
    set_key(env_path, 'BACKUP_PASSWORD_CREATED', new_date, quote_mode='always')
    os.chmod(env_path, 0o600)
    logger.info("New password generated and saved")

    if notifier is not None:
        notifier.rotation()

    return load_credentials(env_path)


def next_rotation_due(record: CredentialRecord) -> Optional[date]:
    """Date the current key should be rotated, or None if its creation date is unknown."""
    if record.current_key is None or not record.current_key.created:
        return None
    try:
        created = date.fromisoformat(record.current_key.created)
    except ValueError:
        return None
    return created + timedelta(days=ROTATION_INTERVAL_DAYS)
