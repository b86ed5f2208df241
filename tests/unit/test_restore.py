"""
Unit tests for the restore resolver (homelab_backup/backup/restore.py).
"""

import stat
import tarfile
from datetime import datetime
from unittest.mock import MagicMock

import pytest

from homelab_backup.backup.context import RunContext
from homelab_backup.backup.restore import (
    RestoreResolver,
    SnapshotNotFound,
    RestoreError,
    DECRYPTED_DIR,
)
from homelab_backup.backup.sealer import SecretSealer, DecryptionError
from homelab_backup.backup.storage import LocalStorage, StorageError
from homelab_backup.credentials import KeyGeneration

KEY_V2 = KeyGeneration(password='second-generation-password', version=2)
KEY_V3 = KeyGeneration(password='third-generation-password', version=3)


@pytest.fixture
def storage(tmp_path):
    storage = LocalStorage(tmp_path / 'remote', 'testhost')
    storage.ensure_buckets()
    return storage


@pytest.fixture
def staging_dir(tmp_path):
    return tmp_path / 'restore-staging'


@pytest.fixture
def full_snapshot(tmp_path, homelab, storage, key_v1):
    """
    A realistic daily snapshot: one dump, one stack, sealed secrets (key v1)
    and an additional path.
    """
    timestamp = '20260119-020000'
    root = tmp_path / 'build'
    (root / 'databases').mkdir(parents=True)
    (root / 'databases' / f'phpipam-{timestamp}.sql').write_text('-- dump\n')
    (root / 'stacks' / 'phpipam' / 'data').mkdir(parents=True)
    (root / 'stacks' / 'phpipam' / 'data' / 'ipam.db').write_bytes(b'db')
    (root / 'additional' / 'nginx').mkdir(parents=True)
    (root / 'additional' / 'nginx' / 'site.conf').write_text('server {}')

    context = RunContext('testhost', datetime(2026, 1, 19, 2), root)
    SecretSealer().seal(homelab / 'secrets', root / 'secrets', key_v1, context)

    archive = tmp_path / f'testhost-backup-{timestamp}.tar.gz'
    with tarfile.open(archive, 'w:gz') as tar:
        for name in ('databases', 'stacks', 'secrets', 'additional'):
            tar.add(root / name, arcname=name)

    return storage.upload(str(archive), 'daily')


class TestFindSnapshots:

    def test_list_snapshots_reports_empty_classes(self, storage, make_archive, key_v1, staging_dir):
        storage.upload(str(make_archive('20260119-020000')), 'daily')
        resolver = RestoreResolver(storage, [key_v1], staging_dir)

        listing = resolver.list_snapshots()

        assert list(listing) == ['daily', 'weekly', 'monthly']
        assert [s.timestamp for s in listing['daily']] == ['20260119-020000']
        assert listing['weekly'] == []
        assert listing['monthly'] == []

    def test_latest_prefers_daily(self, storage, make_archive, key_v1, staging_dir):
        storage.upload(str(make_archive('20260118-020000')), 'weekly')
        storage.upload(str(make_archive('20260116-020000')), 'daily')
        storage.upload(str(make_archive('20260117-020000')), 'daily')

        latest = RestoreResolver(storage, [key_v1], staging_dir).find_latest()

        assert latest.retention_class == 'daily'
        assert latest.timestamp == '20260117-020000'

    def test_latest_falls_through_empty_classes(self, storage, make_archive, key_v1, staging_dir):
        storage.upload(str(make_archive('20260201-020000')), 'monthly')

        latest = RestoreResolver(storage, [key_v1], staging_dir).find_latest()

        assert latest.retention_class == 'monthly'

    def test_latest_in_category(self, storage, make_archive, key_v1, staging_dir):
        storage.upload(str(make_archive('20260118-020000')), 'weekly')
        storage.upload(str(make_archive('20260119-020000')), 'daily')

        latest = RestoreResolver(storage, [key_v1], staging_dir).find_latest('weekly')

        assert latest.timestamp == '20260118-020000'

    def test_latest_nothing_to_restore(self, storage, key_v1, staging_dir):
        with pytest.raises(SnapshotNotFound, match="No backups found"):
            RestoreResolver(storage, [key_v1], staging_dir).find_latest()

    def test_latest_invalid_category(self, storage, key_v1, staging_dir):
        with pytest.raises(ValueError):
            RestoreResolver(storage, [key_v1], staging_dir).find_latest('yearly')

    @pytest.mark.parametrize('identifier', ['20260118-020000', 'testhost-backup-20260118-020000.tar.gz'])
    def test_find_by_identifier(self, storage, make_archive, key_v1, staging_dir, identifier):
        storage.upload(str(make_archive('20260119-020000')), 'daily')
        storage.upload(str(make_archive('20260118-020000')), 'weekly')

        snapshot = RestoreResolver(storage, [key_v1], staging_dir).find_by_identifier(identifier)

        assert snapshot.retention_class == 'weekly'

    def test_find_by_identifier_missing(self, storage, key_v1, staging_dir):
        with pytest.raises(SnapshotNotFound, match="20990101-000000"):
            RestoreResolver(storage, [key_v1], staging_dir).find_by_identifier('20990101-000000')


class TestRestore:

    def test_full_restore_manifest(self, storage, full_snapshot, key_v1, staging_dir):
        manifest = RestoreResolver(storage, [key_v1], staging_dir).restore(full_snapshot)

        assert manifest.databases == [('phpipam-20260119-020000.sql', len('-- dump\n'))]
        assert manifest.stacks == ['phpipam']
        assert manifest.additional == ['nginx']
        assert manifest.secrets == ['secrets/certs/server.key', 'secrets/phpipam.env']
        assert manifest.env_files == ['secrets/phpipam.env']
        assert manifest.key_version == 1
        assert manifest.used_previous_key is False
        assert (staging_dir / DECRYPTED_DIR / 'secrets' / 'phpipam.env').read_text() == 'MYSQL_PASSWORD=hunter2\n'
        assert stat.S_IMODE(staging_dir.stat().st_mode) == 0o700

    def test_restore_after_rotation_uses_previous_key(self, storage, full_snapshot, key_v1, staging_dir):
        manifest = RestoreResolver(storage, [KEY_V2, key_v1], staging_dir).restore(full_snapshot)

        assert manifest.key_version == 1
        assert manifest.used_previous_key is True

    def test_restore_after_two_rotations_fails_clean(self, storage, full_snapshot, staging_dir):
        resolver = RestoreResolver(storage, [KEY_V3, KEY_V2], staging_dir)

        with pytest.raises(DecryptionError, match="key v1"):
            resolver.restore(full_snapshot)

        # No plaintext left behind
        assert not staging_dir.exists()

    def test_secrets_only(self, storage, full_snapshot, key_v1, staging_dir):
        manifest = RestoreResolver(storage, [key_v1], staging_dir).restore(full_snapshot, secrets_only=True)

        assert sorted(p.name for p in staging_dir.iterdir()) == [
            DECRYPTED_DIR, 'secrets', full_snapshot.name
        ]
        assert manifest.databases == []
        assert manifest.stacks == []
        assert manifest.env_files == ['secrets/phpipam.env']

    def test_staging_is_reset(self, storage, full_snapshot, key_v1, staging_dir):
        staging_dir.mkdir()
        (staging_dir / 'leftover.txt').write_text('old')

        RestoreResolver(storage, [key_v1], staging_dir).restore(full_snapshot)

        assert not (staging_dir / 'leftover.txt').exists()

    def test_snapshot_without_secrets(self, storage, make_archive, key_v1, staging_dir):
        snapshot = storage.upload(str(make_archive('20260119-020000')), 'daily')

        manifest = RestoreResolver(storage, [key_v1], staging_dir).restore(snapshot)

        assert manifest.secrets == []
        assert manifest.key_version is None
        assert manifest.stacks == ['app']

    def test_download_failure_wrapped(self, key_v1, staging_dir, full_snapshot):
        storage = MagicMock()
        storage.download.side_effect = StorageError("connection lost")

        with pytest.raises(RestoreError, match="connection lost"):
            RestoreResolver(storage, [key_v1], staging_dir).restore(full_snapshot)

        assert not staging_dir.exists()

    def test_manifest_to_dict(self, storage, full_snapshot, key_v1, staging_dir):
        data = RestoreResolver(storage, [key_v1], staging_dir).restore(full_snapshot).to_dict()

        assert data['snapshot'] == full_snapshot.name
        assert data['retention_class'] == 'daily'
        assert data['databases'][0]['name'] == 'phpipam-20260119-020000.sql'
