"""
Unit tests for archive handling (homelab_backup/backup/compression.py).
"""

import stat
import tarfile

import pytest

from homelab_backup.backup.compression import (
    build_archive,
    extract_archive,
    generate_archive_filename,
    parse_snapshot_name,
    get_archive_size,
    CompressionError,
)


@pytest.fixture
def staging(tmp_path):
    root = tmp_path / 'staging'
    (root / 'databases').mkdir(parents=True)
    (root / 'databases' / 'phpipam-20260119-020000.sql').write_text('-- dump')
    (root / 'stacks' / 'phpipam' / 'data').mkdir(parents=True)
    (root / 'stacks' / 'phpipam' / 'data' / 'ipam.db').write_bytes(b'db')
    (root / 'secrets').mkdir()
    (root / 'secrets' / 'blob.tar.gz.enc').write_bytes(b'sealed')
    return root


class TestBuildArchive:

    def test_archive_layout(self, staging):
        path = build_archive(staging, 'testhost', '20260119-020000')

        assert path.endswith('testhost-backup-20260119-020000.tar.gz')
        with tarfile.open(path, 'r:gz') as tar:
            names = tar.getnames()

        top_level = sorted({name.split('/')[0] for name in names})
        assert top_level == ['databases', 'secrets', 'stacks']
        assert 'stacks/phpipam/data/ipam.db' in names

    def test_only_existing_subtrees(self, tmp_path):
        root = tmp_path / 'staging'
        (root / 'stacks' / 'app').mkdir(parents=True)
        (root / 'stacks' / 'app' / 'f').write_text('x')

        path = build_archive(root, 'testhost', '20260119-020000')

        with tarfile.open(path) as tar:
            assert {name.split('/')[0] for name in tar.getnames()} == {'stacks'}

    def test_nothing_staged(self, tmp_path):
        with pytest.raises(CompressionError, match="Nothing staged"):
            build_archive(tmp_path, 'testhost', '20260119-020000')

    @pytest.mark.parametrize('fmt,mode', [('tar.bz2', 'r:bz2'), ('tar.xz', 'r:xz')])
    def test_other_formats(self, staging, fmt, mode):
        path = build_archive(staging, 'testhost', '20260119-020000', fmt)

        assert path.endswith(f'.{fmt}')
        with tarfile.open(path, mode) as tar:
            assert tar.getnames()

    def test_invalid_format(self, staging):
        with pytest.raises(ValueError, match="Invalid compression format"):
            build_archive(staging, 'testhost', '20260119-020000', 'zip')


class TestNaming:

    def test_generate_archive_filename(self):
        assert generate_archive_filename('nas', '20260201-020000') == 'nas-backup-20260201-020000.tar.gz'
        assert generate_archive_filename('nas', '20260201-020000', 'tar.xz') == 'nas-backup-20260201-020000.tar.xz'

    @pytest.mark.parametrize('name,expected', [
        ('nas-backup-20260201-020000.tar.gz', '20260201-020000'),
        ('nas-backup-20260201-020000.tar.xz', '20260201-020000'),
        ('nas-backup-20260201-0200.tar.gz', None),
        ('other-backup-20260201-020000.tar.gz', None),
        ('nas-backup-20260201-020000.tar.gz.partial', None),
        ('.nas-backup-20260201-020000.tar.gz.partial', None),
        ('nas-01-backup-20260201-020000.tar.gz', None),
    ])
    def test_parse_snapshot_name(self, name, expected):
        assert parse_snapshot_name(name, 'nas') == expected

    def test_hostname_with_regex_characters(self):
        assert parse_snapshot_name('a.b-backup-20260201-020000.tar.gz', 'a.b') == '20260201-020000'
        assert parse_snapshot_name('axb-backup-20260201-020000.tar.gz', 'a.b') is None

    def test_get_archive_size(self, tmp_path):
        f = tmp_path / 'a.tar.gz'
        f.write_bytes(b'x' * 1234)

        assert get_archive_size(str(f)) == 1234
        with pytest.raises(CompressionError, match="Archive not found"):
            get_archive_size(str(tmp_path / 'missing'))


class TestExtractArchive:

    def test_extract_all(self, staging, tmp_path):
        path = build_archive(staging, 'testhost', '20260119-020000')
        dest = tmp_path / 'restore'
        dest.mkdir()

        extract_archive(path, dest)

        assert (dest / 'databases' / 'phpipam-20260119-020000.sql').read_text() == '-- dump'
        assert (dest / 'stacks' / 'phpipam' / 'data' / 'ipam.db').exists()

    def test_extract_prefix_only(self, staging, tmp_path):
        path = build_archive(staging, 'testhost', '20260119-020000')
        dest = tmp_path / 'restore'
        dest.mkdir()

        extract_archive(path, dest, members_prefix='secrets')

        assert sorted(p.name for p in dest.iterdir()) == ['secrets']

    def test_modes_survive_round_trip(self, tmp_path):
        """Group-shared bind mounts come back with setgid and group write intact."""
        staging = tmp_path / 'staging'
        data = staging / 'stacks' / 'app' / 'data'
        data.mkdir(parents=True)
        shared = data / 'shared.db'
        shared.write_bytes(b'rows')
        shared.chmod(0o664)
        data.chmod(0o2775)
        path = build_archive(staging, 'testhost', '20260119-020000')
        dest = tmp_path / 'restore'
        dest.mkdir()

        extract_archive(path, dest)

        restored = dest / 'stacks' / 'app' / 'data'
        assert stat.S_IMODE(restored.stat().st_mode) == 0o2775
        assert stat.S_IMODE((restored / 'shared.db').stat().st_mode) == 0o664

    def test_refuses_path_traversal(self, tmp_path):
        evil = tmp_path / 'evil.tar.gz'
        payload = tmp_path / 'payload'
        payload.write_text('pwned')
        with tarfile.open(evil, 'w:gz') as tar:
            tar.add(payload, arcname='../escaped.txt')
        dest = tmp_path / 'restore'
        dest.mkdir()

        with pytest.raises(CompressionError):
            extract_archive(evil, dest)

        assert not (tmp_path / 'escaped.txt').exists()

    def test_corrupt_archive(self, tmp_path):
        bad = tmp_path / 'bad.tar.gz'
        bad.write_bytes(b'not an archive')

        with pytest.raises(CompressionError, match="Failed to extract"):
            extract_archive(bad, tmp_path)
