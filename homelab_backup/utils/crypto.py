"""
Encryption utilities for sealing secret bundles.
Uses Fernet symmetric encryption with a key derived from the backup
encryption password. Sealed blobs carry a small header so the key
generation that produced them can be reported on decryption failure.
"""

import os
import base64
import struct
from typing import Tuple

from cryptography.fernet import Fernet, InvalidToken
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC


# Blob layout: MAGIC | format (1 byte) | key version (uint32 BE) | salt (16) | Fernet token
MAGIC = b'HLBSEAL'
FORMAT_VERSION = 1
SALT_SIZE = 16
_HEADER = struct.Struct('>7sBI16s')


class BlobFormatError(ValueError):
    """Raised when a sealed blob has an unknown or truncated header."""
    pass


class CryptoManager:
    """Handles encryption and decryption of sealed secret bundles."""

    def __init__(self):
        self._fernet = None
        self._salt = None

    def initialize(self, password: str, salt: bytes = None) -> bytes:
        """
        Initialize the encryption manager with a password.

        Args:
            password: Backup encryption password to derive the key from
            salt: Optional salt (if None, generates new one)

        Returns:
            The salt used
        """
        if salt is None:
            salt = os.urandom(SALT_SIZE)

        self._salt = salt

        # Derive a 32-byte key from password using PBKDF2
        kdf = PBKDF2HMAC(
            algorithm=hashes.SHA256(),
            length=32,
            salt=salt,
            iterations=480000,  # OWASP recommended iterations for 2023+
        )
        key = base64.urlsafe_b64encode(kdf.derive(password.encode()))

        self._fernet = Fernet(key)
        return salt

    def encrypt(self, plaintext: bytes) -> bytes:
        """
        Encrypt bytes.

        Raises:
            RuntimeError: If crypto manager not initialized
        """
        if not self._fernet:
            raise RuntimeError("CryptoManager not initialized. Call initialize() first.")

        return self._fernet.encrypt(plaintext)

    def decrypt(self, token: bytes) -> bytes:
        """
        Decrypt a Fernet token.

        Raises:
            RuntimeError: If crypto manager not initialized
            cryptography.fernet.InvalidToken: If decryption fails
        """
        if not self._fernet:
            raise RuntimeError("CryptoManager not initialized. Call initialize() first.")

        return self._fernet.decrypt(token)


def seal_bytes(password: str, plaintext: bytes, key_version: int) -> bytes:
    """
    Encrypt plaintext into a self-describing sealed blob.

    Args:
        password: Encryption password
        plaintext: Data to encrypt
        key_version: Key generation number recorded in the header

    Returns:
        Blob bytes (header + Fernet token)
    """
    cm = CryptoManager()
    salt = cm.initialize(password)
    header = _HEADER.pack(MAGIC, FORMAT_VERSION, key_version, salt)
    return header + cm.encrypt(plaintext)


def read_blob_header(blob: bytes) -> Tuple[int, bytes]:
    """
    Parse a sealed blob header.

    Returns:
        Tuple of (key_version, salt)

    Raises:
        BlobFormatError: If the blob is not a sealed blob
    """
    if len(blob) < _HEADER.size:
        raise BlobFormatError("Sealed blob is truncated")

    magic, fmt, key_version, salt = _HEADER.unpack_from(blob)
    if magic != MAGIC:
        raise BlobFormatError("Not a sealed secrets blob (bad magic)")
    if fmt != FORMAT_VERSION:
        raise BlobFormatError(f"Unsupported sealed blob format: {fmt}")

    return key_version, salt


def unseal_bytes(password: str, blob: bytes) -> bytes:
    """
    Decrypt a sealed blob.

    Raises:
        BlobFormatError: If the header is invalid
        cryptography.fernet.InvalidToken: If the password is wrong or data was tampered with
    """
    _, salt = read_blob_header(blob)
    cm = CryptoManager()
    cm.initialize(password, salt=salt)
    return cm.decrypt(blob[_HEADER.size:])


__all__ = [
    'CryptoManager',
    'BlobFormatError',
    'InvalidToken',
    'seal_bytes',
    'unseal_bytes',
    'read_blob_header',
]
