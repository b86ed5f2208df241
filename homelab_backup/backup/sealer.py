"""
Secret sealer: packs the homelab secrets tree into one encrypted blob and
opens such blobs again on restore.

The tree is tarred and gzipped in memory and encrypted with a key derived
from the current backup encryption password; neither the plaintext tarball
nor the password ever touches the disk.
"""

import io
import os
import tarfile
import logging
from pathlib import Path
from typing import Iterable, List

from homelab_backup.credentials import KeyGeneration
from homelab_backup.utils.crypto import (
    seal_bytes,
    unseal_bytes,
    read_blob_header,
    BlobFormatError,
    InvalidToken,
)
from .context import RunContext

logger = logging.getLogger(__name__)

SEALED_SUFFIX = '.tar.gz.enc'


class SealError(Exception):
    """Raised when the secrets tree cannot be sealed."""
    pass


class SecretsNotFound(SealError):
    """Raised when the secrets tree does not exist (recoverable)."""
    pass


class DecryptionError(Exception):
    """Raised when no available key generation opens a sealed blob."""
    pass


def sealed_blob_name(secret_tree: Path, timestamp: str) -> str:
    return f"{secret_tree.name}-secrets-{timestamp}{SEALED_SUFFIX}"


class SecretSealer:
    """Seals and unseals secret trees."""

    def seal(self, secret_tree, dest_dir, key: KeyGeneration, context: RunContext) -> Path:
        """
        Encrypt a secrets tree into dest_dir.

        Args:
            secret_tree: Directory to seal
            dest_dir: Staging secrets/ subtree (created if needed)
            key: Current key generation
            context: Run context (timestamp, dry-run)

        Returns:
            Path of the sealed blob (would-be path in dry-run)

        Raises:
            SecretsNotFound: If secret_tree does not exist
            SealError: If packing or encryption fails
        """
        secret_tree = Path(secret_tree)
        dest_dir = Path(dest_dir)

        if not secret_tree.is_dir():
            raise SecretsNotFound(f"Secrets path not found: {secret_tree}")

        blob_path = dest_dir / sealed_blob_name(secret_tree, context.timestamp)

        if context.dry_run:
            logger.info(f"[DRY-RUN] Would encrypt: {secret_tree}")
            return blob_path

        try:
            buffer = io.BytesIO()
            with tarfile.open(fileobj=buffer, mode='w:gz') as tar:
                tar.add(secret_tree, arcname=secret_tree.name, recursive=True)
            blob = seal_bytes(key.password, buffer.getvalue(), key.version)
        except (OSError, tarfile.TarError, ValueError) as e:
            raise SealError(f"Failed to encrypt secrets: {e}")

        try:
            dest_dir.mkdir(parents=True, exist_ok=True)
            fd = os.open(blob_path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
            with os.fdopen(fd, 'wb') as f:
                f.write(blob)
        except OSError as e:
            if blob_path.exists():
                blob_path.unlink()
            raise SealError(f"Failed to write sealed secrets: {e}")

        logger.info(f"Secrets sealed with key v{key.version}: {blob_path.name}")
        return blob_path

    def unseal(self, blob_path, dest_dir, keys: Iterable[KeyGeneration]) -> KeyGeneration:
        """
        Decrypt a sealed blob into dest_dir, trying each key in order.

        Args:
            blob_path: Sealed blob
            dest_dir: Extraction directory (created if needed)
            keys: Key generations to try, current first

        Returns:
            The key generation that opened the blob

        Raises:
            DecryptionError: If no key opens the blob or the blob is malformed
        """
        blob_path = Path(blob_path)
        blob = blob_path.read_bytes()

        try:
            sealed_version, _ = read_blob_header(blob)
        except BlobFormatError as e:
            raise DecryptionError(f"{blob_path.name}: {e}")

        keys = list(keys)
        attempts: List[str] = []
        for index, key in enumerate(keys):
            label = 'current' if index == 0 else 'previous'
            logger.info(f"Attempting decryption with {label} password (v{key.version})...")
            try:
                plaintext = unseal_bytes(key.password, blob)
            except InvalidToken:
                attempts.append(f"v{key.version}")
                logger.warning(f"{label.capitalize()} password (v{key.version}) failed for {blob_path.name}")
                continue

            self._extract(plaintext, Path(dest_dir))
            if index > 0:
                logger.warning("Secrets decrypted with previous password. "
                               "Consider re-encrypting with current password after restore")
            else:
                logger.info("Secrets decrypted with current password")
            return key

        tried = ', '.join(attempts) or 'none available'
        raise DecryptionError(
            f"Failed to decrypt {blob_path.name} with any available password "
            f"(tried: {tried}; blob sealed with key v{sealed_version}). "
            "Check which key generation encrypted this snapshot; only the current "
            "and the immediately previous generation are retained."
        )

    def _extract(self, plaintext: bytes, dest_dir: Path):
        dest_dir.mkdir(parents=True, exist_ok=True)
        os.chmod(dest_dir, 0o700)
        try:
            with tarfile.open(fileobj=io.BytesIO(plaintext), mode='r:gz') as tar:
                tar.extractall(dest_dir, filter='tar')
        except (tarfile.TarError, OSError) as e:
            raise DecryptionError(f"Decrypted secrets are not a valid archive: {e}")
