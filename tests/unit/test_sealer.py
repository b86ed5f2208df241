"""
Unit tests for the secret sealer (homelab_backup/backup/sealer.py).

Tests sealing, dual-key unsealing and key-generation failure reporting.
"""

import stat
from dataclasses import replace

import pytest

from homelab_backup.backup.sealer import (
    SecretSealer,
    SecretsNotFound,
    DecryptionError,
    sealed_blob_name,
)
from homelab_backup.credentials import KeyGeneration


@pytest.fixture
def sealer():
    return SecretSealer()


@pytest.fixture
def key_v2():
    return KeyGeneration(password='second-generation-password', version=2)


@pytest.fixture
def key_v3():
    return KeyGeneration(password='third-generation-password', version=3)


class TestSeal:

    def test_seal_writes_encrypted_blob(self, sealer, homelab, run_context, key_v1):
        dest = run_context.subtree('secrets')

        blob = sealer.seal(homelab / 'secrets', dest, key_v1, run_context)

        assert blob.name == 'secrets-secrets-20260119-020000.tar.gz.enc'
        assert blob.parent == dest
        assert stat.S_IMODE(blob.stat().st_mode) == 0o600
        assert b'hunter2' not in blob.read_bytes()

    def test_no_plaintext_left_in_staging(self, sealer, homelab, run_context, key_v1):
        sealer.seal(homelab / 'secrets', run_context.subtree('secrets'), key_v1, run_context)

        names = sorted(p.name for p in run_context.staging_root.rglob('*'))
        assert names == ['secrets', 'secrets-secrets-20260119-020000.tar.gz.enc']

    def test_missing_tree(self, sealer, tmp_path, run_context, key_v1):
        with pytest.raises(SecretsNotFound, match="Secrets path not found"):
            sealer.seal(tmp_path / 'nope', run_context.subtree('secrets'), key_v1, run_context)

        assert not run_context.subtree('secrets').exists()

    def test_dry_run_writes_nothing(self, sealer, homelab, run_context, key_v1):
        context = replace(run_context, dry_run=True)

        blob = sealer.seal(homelab / 'secrets', context.subtree('secrets'), key_v1, context)

        assert blob.name == sealed_blob_name(homelab / 'secrets', '20260119-020000')
        assert not blob.exists()


class TestUnseal:

    @pytest.fixture
    def sealed_v1(self, sealer, homelab, run_context, key_v1):
        return sealer.seal(homelab / 'secrets', run_context.subtree('secrets'), key_v1, run_context)

    def test_round_trip_with_current_key(self, sealer, sealed_v1, tmp_path, key_v1, key_v2):
        out = tmp_path / 'out'

        used = sealer.unseal(sealed_v1, out, [key_v1, key_v2])

        assert used is key_v1
        assert (out / 'secrets' / 'phpipam.env').read_text() == 'MYSQL_PASSWORD=hunter2\n'
        assert (out / 'secrets' / 'certs' / 'server.key').exists()
        assert stat.S_IMODE(out.stat().st_mode) == 0o700

    def test_falls_back_to_previous_key(self, sealer, sealed_v1, tmp_path, key_v1, key_v2):
        # After one rotation: current is v2, previous is v1
        used = sealer.unseal(sealed_v1, tmp_path / 'out', [key_v2, key_v1])

        assert used is key_v1
        assert (tmp_path / 'out' / 'secrets' / 'phpipam.env').exists()

    def test_two_rotations_make_old_blob_unreadable(self, sealer, sealed_v1, tmp_path, key_v2, key_v3):
        with pytest.raises(DecryptionError) as exc_info:
            sealer.unseal(sealed_v1, tmp_path / 'out', [key_v3, key_v2])

        message = str(exc_info.value)
        assert 'key v1' in message
        assert 'v3, v2' in message
        assert not (tmp_path / 'out').exists()

    def test_no_keys(self, sealer, sealed_v1, tmp_path):
        with pytest.raises(DecryptionError, match="none available"):
            sealer.unseal(sealed_v1, tmp_path / 'out', [])

    def test_not_a_sealed_blob(self, sealer, tmp_path, key_v1):
        bogus = tmp_path / 'bogus.tar.gz.enc'
        bogus.write_bytes(b'-----BEGIN PGP MESSAGE-----\n' + b'x' * 64)

        with pytest.raises(DecryptionError, match="bad magic"):
            sealer.unseal(bogus, tmp_path / 'out', [key_v1])
