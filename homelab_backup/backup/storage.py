"""
Storage handlers for backup snapshots.

Supports:
- SFTPStorage: Remote server over SSH/SFTP, authenticated by the credential session agent
- S3Storage: AWS S3 (or compatible) bucket
- LocalStorage: Local directory, e.g. a mounted NAS share

All backends share one layout: {root}/{daily|weekly|monthly}/{hostname}-backup-{timestamp}.{ext}
"""

import os
import shutil
import logging
import posixpath
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional

import boto3
import paramiko
from boto3.exceptions import S3UploadFailedError
from botocore.exceptions import ClientError, BotoCoreError
from paramiko import SSHClient, AutoAddPolicy

from .compression import parse_snapshot_name
from .retention import RETENTION_CLASSES

logger = logging.getLogger(__name__)


class StorageError(Exception):
    """Raised when a storage operation fails."""
    pass


@dataclass(frozen=True)
class RemoteSnapshot:
    """One snapshot archive on the remote store."""
    name: str
    retention_class: str
    timestamp: str
    size: int
    path: str


class RemoteStorage:
    """
    Common behaviour of the storage backends.

    Subclasses implement _list_names, _put, _remove and _get.
    """

    def __init__(self, root: str, hostname: str):
        self.root = root
        self.hostname = hostname

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()
        return False

    def bucket_path(self, retention_class: str) -> str:
        if retention_class not in RETENTION_CLASSES:
            raise StorageError(f"Invalid retention class: {retention_class}")
        return posixpath.join(self.root, retention_class)

    def ensure_buckets(self):
        """Create the daily/weekly/monthly buckets if missing. Idempotent."""
        pass

    def upload(self, local_path: str, retention_class: str) -> RemoteSnapshot:
        """
        Upload a snapshot archive into a retention bucket.

        Raises:
            StorageError: If the file is missing, not a snapshot of this host, or upload fails
        """
        if not os.path.exists(local_path):
            raise StorageError(f"Local file not found: {local_path}")

        name = os.path.basename(local_path)
        timestamp = parse_snapshot_name(name, self.hostname)
        if timestamp is None:
            raise StorageError(f"Not a snapshot archive of {self.hostname}: {name}")

        remote_path = posixpath.join(self.bucket_path(retention_class), name)
        self._put(local_path, remote_path)

        return RemoteSnapshot(
            name=name,
            retention_class=retention_class,
            timestamp=timestamp,
            size=os.path.getsize(local_path),
            path=remote_path
        )

    def list_snapshots(self, retention_class: str) -> List[RemoteSnapshot]:
        """
        List this host's snapshots in a bucket, newest first.

        Ordering uses the timestamp in the name. A missing bucket is empty.

        Raises:
            StorageError: If listing fails
        """
        bucket = self.bucket_path(retention_class)
        snapshots = []

        for name, size in self._list_names(bucket):
            timestamp = parse_snapshot_name(name, self.hostname)
            if timestamp is None:
                continue
            snapshots.append(RemoteSnapshot(
                name=name,
                retention_class=retention_class,
                timestamp=timestamp,
                size=size,
                path=posixpath.join(bucket, name)
            ))

        snapshots.sort(key=lambda s: s.timestamp, reverse=True)
        return snapshots

    def delete(self, snapshot: RemoteSnapshot):
        """
        Raises:
            StorageError: If deletion fails
        """
        self._remove(snapshot.path)

    def download(self, snapshot: RemoteSnapshot, dest_dir) -> str:
        """
        Download a snapshot into dest_dir.

        Returns:
            Local path of the downloaded archive

        Raises:
            StorageError: If download fails
        """
        local_path = os.path.join(str(dest_dir), snapshot.name)
        self._get(snapshot.path, local_path)
        return local_path

    def close(self):
        pass

    def _list_names(self, bucket: str):
        raise NotImplementedError

    def _put(self, local_path: str, remote_path: str):
        raise NotImplementedError

    def _remove(self, remote_path: str):
        raise NotImplementedError

    def _get(self, remote_path: str, local_path: str):
        raise NotImplementedError


class SFTPStorage(RemoteStorage):
    """
    Handler for a remote backup server over SFTP.

    Authenticates with the key held by the run's credential session agent.
    Unknown host keys are accepted and remembered; a changed host key is
    rejected by paramiko.
    """

    def __init__(
        self,
        host: str,
        username: str,
        root: str,
        hostname: str,
        session=None,
        port: int = 22,
        known_hosts: Optional[str] = None,
        timeout: int = 30
    ):
        super().__init__(root, hostname)
        self.host = host
        self.port = port
        self.username = username
        self.session = session
        self.known_hosts = Path(known_hosts).expanduser() if known_hosts else Path('~/.ssh/known_hosts').expanduser()
        self.timeout = timeout

        self.ssh_client = None
        self.sftp_client = None

    def _connect(self):
        """
        Establish SSH connection (lazily, on first use).

        Raises:
            StorageError: If connection or authentication fails
        """
        if self.sftp_client is not None:
            return

        try:
            self.ssh_client = SSHClient()
            if self.known_hosts.exists():
                self.ssh_client.load_host_keys(str(self.known_hosts))
            self.ssh_client.set_missing_host_key_policy(AutoAddPolicy())

            connect_kwargs = {
                'hostname': self.host,
                'port': self.port,
                'username': self.username,
                'timeout': self.timeout,
                'allow_agent': False,
                'look_for_keys': False
            }

            if self.session is not None:
                keys = self.session.agent().get_keys()
                if not keys:
                    raise StorageError("Credential session agent holds no keys")
                connect_kwargs['pkey'] = keys[0]

            self.ssh_client.connect(**connect_kwargs)
            self.sftp_client = self.ssh_client.open_sftp()
            self._save_host_keys()

        except StorageError:
            self.close()
            raise
        except paramiko.BadHostKeyException as e:
            self.close()
            raise StorageError(f"Host key for {self.host} has changed: {e}")
        except paramiko.AuthenticationException as e:
            self.close()
            raise StorageError(f"SSH authentication failed: {e}")
        except paramiko.SSHException as e:
            self.close()
            raise StorageError(f"SSH connection failed: {e}")
        except Exception as e:
            self.close()
            raise StorageError(f"Failed to connect to {self.host}: {e}")

    def _save_host_keys(self):
        try:
            self.known_hosts.parent.mkdir(parents=True, exist_ok=True)
            self.ssh_client.save_host_keys(str(self.known_hosts))
        except OSError as e:
            logger.warning(f"Could not save host keys to {self.known_hosts}: {e}")

    def _mkdir_p(self, remote_dir: str):
        current = '/' if remote_dir.startswith('/') else ''
        for part in [p for p in remote_dir.split('/') if p]:
            current = posixpath.join(current, part) if current else part
            try:
                self.sftp_client.stat(current)
            except FileNotFoundError:
                self.sftp_client.mkdir(current)

    def ensure_buckets(self):
        """
        Raises:
            StorageError: If connection or directory creation fails
        """
        self._connect()
        try:
            for retention_class in RETENTION_CLASSES:
                self._mkdir_p(self.bucket_path(retention_class))
        except (IOError, paramiko.SSHException) as e:
            raise StorageError(f"Failed to create remote directories under {self.root}: {e}")

    def _put(self, local_path: str, remote_path: str):
        self._connect()
        directory, name = posixpath.split(remote_path)
        partial_path = posixpath.join(directory, f'.{name}.partial')

        try:
            self.sftp_client.put(local_path, partial_path)
            self._commit(partial_path, remote_path)
        except (IOError, paramiko.SSHException) as e:
            try:
                self.sftp_client.remove(partial_path)
            except (IOError, paramiko.SSHException):
                pass
            raise StorageError(f"SFTP upload of {name} failed: {e}")

    def _commit(self, partial_path: str, remote_path: str):
        """Move a finished upload into place, overwriting any existing snapshot."""
        try:
            self.sftp_client.posix_rename(partial_path, remote_path)
            return
        except IOError as e:
            # Servers without the posix-rename@openssh.com extension
            logger.debug(f"posix_rename unavailable ({e}), falling back to remove + rename")

        try:
            self.sftp_client.remove(remote_path)
        except FileNotFoundError:
            pass
        self.sftp_client.rename(partial_path, remote_path)

    def _list_names(self, bucket: str):
        self._connect()
        try:
            return [(attr.filename, attr.st_size or 0) for attr in self.sftp_client.listdir_attr(bucket)]
        except FileNotFoundError:
            return []
        except (IOError, paramiko.SSHException) as e:
            raise StorageError(f"Failed to list {bucket}: {e}")

    def _remove(self, remote_path: str):
        self._connect()
        try:
            self.sftp_client.remove(remote_path)
        except FileNotFoundError:
            pass
        except (IOError, paramiko.SSHException) as e:
            raise StorageError(f"Failed to delete {remote_path}: {e}")

    def _get(self, remote_path: str, local_path: str):
        self._connect()
        try:
            self.sftp_client.get(remote_path, local_path)
        except FileNotFoundError:
            raise StorageError(f"Remote file not found: {remote_path}")
        except (IOError, paramiko.SSHException) as e:
            raise StorageError(f"Failed to download {remote_path}: {e}")

    def close(self):
        """Close SSH/SFTP connections."""
        if self.sftp_client:
            self.sftp_client.close()
            self.sftp_client = None

        if self.ssh_client:
            self.ssh_client.close()
            self.ssh_client = None


class S3Storage(RemoteStorage):
    """
    Handler for snapshots in AWS S3.

    Keys follow the shared layout: {prefix}/{class}/{name}
    """

    def __init__(
        self,
        bucket_name: str,
        root: str,
        hostname: str,
        access_key: Optional[str] = None,
        secret_key: Optional[str] = None,
        region: str = 'us-east-1'
    ):
        super().__init__(root.strip('/'), hostname)
        self.bucket_name = bucket_name
        self.region = region

        try:
            self.s3_client = boto3.client(
                's3',
                aws_access_key_id=access_key,
                aws_secret_access_key=secret_key,
                region_name=region
            )
        except Exception as e:
            raise StorageError(f"Failed to initialize S3 client: {e}")

    def ensure_buckets(self):
        """
        S3 has no directories; verify bucket access instead.

        Raises:
            StorageError: If the bucket is missing or not accessible
        """
        try:
            self.s3_client.head_bucket(Bucket=self.bucket_name)
        except ClientError as e:
            error_code = e.response.get('Error', {}).get('Code', 'Unknown')
            if error_code == '404':
                raise StorageError(f"Bucket does not exist: {self.bucket_name}")
            elif error_code == '403':
                raise StorageError(f"Access denied to bucket: {self.bucket_name}")
            raise StorageError(f"S3 connection test failed ({error_code}): {e}")
        except BotoCoreError as e:
            raise StorageError(f"Failed to connect to S3: {e}")

    def _put(self, local_path: str, remote_path: str):
        try:
            # upload_file switches to multipart for large archives
            self.s3_client.upload_file(local_path, self.bucket_name, remote_path)
        except ClientError as e:
            error_code = e.response.get('Error', {}).get('Code', 'Unknown')
            raise StorageError(f"S3 upload failed ({error_code}): {e}")
        except (BotoCoreError, S3UploadFailedError) as e:
            raise StorageError(f"S3 upload failed: {e}")

    def _list_names(self, bucket: str):
        prefix = f"{bucket}/"
        try:
            names = []
            paginator = self.s3_client.get_paginator('list_objects_v2')
            for page in paginator.paginate(Bucket=self.bucket_name, Prefix=prefix):
                for obj in page.get('Contents', []):
                    name = obj['Key'][len(prefix):]
                    if '/' not in name:
                        names.append((name, obj['Size']))
            return names
        except ClientError as e:
            error_code = e.response.get('Error', {}).get('Code', 'Unknown')
            raise StorageError(f"S3 list failed ({error_code}): {e}")
        except BotoCoreError as e:
            raise StorageError(f"Failed to list S3 objects: {e}")

    def _remove(self, remote_path: str):
        try:
            self.s3_client.delete_object(Bucket=self.bucket_name, Key=remote_path)
        except ClientError as e:
            error_code = e.response.get('Error', {}).get('Code', 'Unknown')
            raise StorageError(f"S3 delete failed ({error_code}): {e}")
        except BotoCoreError as e:
            raise StorageError(f"Failed to delete from S3: {e}")

    def _get(self, remote_path: str, local_path: str):
        try:
            self.s3_client.download_file(self.bucket_name, remote_path, local_path)
        except ClientError as e:
            error_code = e.response.get('Error', {}).get('Code', 'Unknown')
            raise StorageError(f"S3 download failed ({error_code}): {e}")
        except BotoCoreError as e:
            raise StorageError(f"Failed to download from S3: {e}")


class LocalStorage(RemoteStorage):
    """
    Handler for snapshots in a local directory.

    Stores archives with the same layout as the remote backends:
    {base_path}/{class}/{name}
    """

    def __init__(self, base_path: str, hostname: str):
        super().__init__(str(base_path), hostname)
        self.base_path = Path(base_path)

    def ensure_buckets(self):
        """
        Raises:
            StorageError: If the directories cannot be created
        """
        try:
            for retention_class in RETENTION_CLASSES:
                Path(self.bucket_path(retention_class)).mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise StorageError(f"Failed to create local storage directory: {e}")

    def _put(self, local_path: str, remote_path: str):
        dest = Path(remote_path)
        partial = dest.with_name(f'.{dest.name}.partial')
        try:
            dest.parent.mkdir(parents=True, exist_ok=True)
            shutil.copy2(local_path, partial)
            os.replace(partial, dest)
        except OSError as e:
            if partial.exists():
                partial.unlink()
            if isinstance(e, PermissionError):
                raise StorageError(f"Permission denied writing to {dest}: {e}")
            raise StorageError(f"Failed to store locally: {e}")

    def _list_names(self, bucket: str):
        path = Path(bucket)
        if not path.is_dir():
            return []
        try:
            return [(entry.name, entry.stat().st_size) for entry in path.iterdir() if entry.is_file()]
        except OSError as e:
            raise StorageError(f"Failed to list local files: {e}")

    def _remove(self, remote_path: str):
        try:
            Path(remote_path).unlink()
        except FileNotFoundError:
            pass
        except OSError as e:
            raise StorageError(f"Failed to delete local file: {e}")

    def _get(self, remote_path: str, local_path: str):
        try:
            shutil.copy2(remote_path, local_path)
        except FileNotFoundError:
            raise StorageError(f"Snapshot not found: {remote_path}")
        except OSError as e:
            raise StorageError(f"Failed to copy {remote_path}: {e}")


def create_storage(record, session=None) -> RemoteStorage:
    """
    Factory function to create the storage backend for a credential record.

    Args:
        record: CredentialRecord
        session: Open CredentialSession (required for the sftp backend)

    Returns:
        RemoteStorage instance

    Raises:
        ValueError: If the backend is invalid
    """
    backend = record.backend
    hostname = record.hostname
    root = record.remote_path

    if backend == 'sftp':
        return SFTPStorage(
            host=record.get('BACKUP_REMOTE_HOST'),
            username=record.get('BACKUP_REMOTE_USER'),
            root=root,
            hostname=hostname,
            session=session,
            port=record.remote_port,
            known_hosts=record.get('SSH_KNOWN_HOSTS')
        )
    elif backend == 's3':
        return S3Storage(
            bucket_name=record.get('BACKUP_S3_BUCKET'),
            root=root,
            hostname=hostname,
            access_key=record.get('AWS_ACCESS_KEY_ID'),
            secret_key=record.get('AWS_SECRET_ACCESS_KEY'),
            region=record.get('BACKUP_S3_REGION', 'us-east-1')
        )
    elif backend == 'local':
        return LocalStorage(root, hostname)
    else:
        raise ValueError(f"Invalid storage backend: {backend}")
