"""
Unit tests for monitoring pings (homelab_backup/notifier.py).
"""

from unittest.mock import MagicMock, patch

import pytest
import requests

from homelab_backup.notifier import Notifier


@pytest.fixture
def notifier():
    n = Notifier('https://hc.example.com/ping/abc/', 'https://hc.example.com/ping/rot')
    n.session = MagicMock()
    return n


class TestNotifier:

    def test_start_pings_start_endpoint(self, notifier):
        assert notifier.start() is True

        notifier.session.get.assert_called_once_with('https://hc.example.com/ping/abc/start', timeout=10)

    def test_success_posts_summary(self, notifier):
        notifier.success('Backup completed: host-backup-20260119-020000.tar.gz')

        url = notifier.session.post.call_args[0][0]
        body = notifier.session.post.call_args[1]['data']
        assert url == 'https://hc.example.com/ping/abc'
        assert b'host-backup-20260119-020000' in body

    def test_success_without_summary_uses_get(self, notifier):
        notifier.success()

        notifier.session.get.assert_called_once_with('https://hc.example.com/ping/abc', timeout=10)
        notifier.session.post.assert_not_called()

    def test_fail_endpoint(self, notifier):
        notifier.fail('Backup failed: disk full')

        assert notifier.session.post.call_args[0][0] == 'https://hc.example.com/ping/abc/fail'

    def test_rotation_uses_rotation_url(self, notifier):
        notifier.rotation()

        notifier.session.get.assert_called_once_with('https://hc.example.com/ping/rot', timeout=10)

    def test_network_error_is_swallowed(self, notifier):
        notifier.session.get.side_effect = requests.ConnectionError("unreachable")

        assert notifier.start() is False

    def test_http_error_is_swallowed(self, notifier):
        response = MagicMock()
        response.raise_for_status.side_effect = requests.HTTPError("500")
        notifier.session.post.return_value = response

        assert notifier.fail('boom') is False

    def test_disabled_without_urls(self):
        n = Notifier()

        with patch.object(n, 'session') as session:
            assert n.enabled is False
            assert n.start() is False
            assert n.success('ok') is False
            assert n.fail('bad') is False
            assert n.rotation() is False
            session.get.assert_not_called()
            session.post.assert_not_called()

    def test_from_record(self, write_env):
        from homelab_backup.credentials import load_credentials

        record = load_credentials(write_env(HEALTHCHECK_BACKUP_URL='https://hc/1', HEALTHCHECK_ROTATION_URL=None))
        n = Notifier.from_record(record)

        assert n.backup_url == 'https://hc/1'
        assert n.rotation_url is None

    def test_retry_adapter_mounted(self):
        n = Notifier('https://hc/1', retries=3)

        adapter = n.session.get_adapter('https://hc/1')
        assert adapter.max_retries.total == 3
        assert 503 in adapter.max_retries.status_forcelist
