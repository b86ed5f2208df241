"""
Shared pytest fixtures for homelab-backup tests.

This module provides fixtures for:
- Flask app and test client on in-memory SQLite
- A fake homelab tree (stacks, secrets, extra paths)
- Credential record (backup.env) writers
- Mock fixtures for external services (S3, SSH, docker)
- Sample snapshot archives
"""

import tarfile
from datetime import datetime
from unittest.mock import MagicMock, patch

import pytest
import boto3
from moto import mock_aws

from homelab_backup import create_app, db as _db
from homelab_backup.credentials import load_credentials, KeyGeneration
from homelab_backup.backup.context import RunContext

HOSTNAME = 'testhost'
PASSWORD_V1 = 'first-generation-password'

# Monday, not the 1st: classified daily
RUN_TIME = datetime(2026, 1, 19, 2, 0, 0)


@pytest.fixture(scope='function')
def app(tmp_path):
    """
    Create Flask app with test configuration.

    Uses in-memory SQLite database for fast, isolated tests.
    """
    data_dir = tmp_path / 'data'
    app = create_app('testing', overrides={
        'SECRET_KEY': 'test-secret-key',
        'DATA_DIR': str(data_dir),
        'TEMP_DIR': str(data_dir / 'temp'),
        'BACKUP_ENV_FILE': str(tmp_path / 'secrets' / 'backup.env'),
    })

    yield app


@pytest.fixture(scope='function')
def db(app):
    """
    Database with all tables.

    Each test gets a fresh database.
    """
    with app.app_context():
        _db.create_all()
        yield _db
        _db.session.remove()
        _db.drop_all()


@pytest.fixture(scope='function')
def client(app):
    """Flask test client for making HTTP requests."""
    return app.test_client()


@pytest.fixture(scope='function')
def runner(app):
    """Flask CLI test runner."""
    return app.test_cli_runner()


@pytest.fixture
def homelab(tmp_path):
    """
    Create a fake Docker homelab.

    Creates:
    - stacks/phpipam/docker-compose.yml (descriptor, never backed up)
    - stacks/phpipam/config.yaml (descriptor, never backed up)
    - stacks/phpipam/data/ipam.db
    - stacks/phpipam/settings.ini
    - secrets/phpipam.env
    - secrets/certs/server.key
    """
    root = tmp_path / 'homelab'
    stack = root / 'stacks' / 'phpipam'
    (stack / 'data').mkdir(parents=True)
    (stack / 'docker-compose.yml').write_text('services: {}\n')
    (stack / 'config.yaml').write_text('key: value\n')
    (stack / 'data' / 'ipam.db').write_bytes(b'sqlite data')
    (stack / 'settings.ini').write_text('[main]\n')

    secrets = root / 'secrets'
    (secrets / 'certs').mkdir(parents=True)
    (secrets / 'phpipam.env').write_text('MYSQL_PASSWORD=hunter2\n')
    (secrets / 'certs' / 'server.key').write_text('-----BEGIN KEY-----\n')

    return root


@pytest.fixture
def env_values(tmp_path, homelab):
    """Baseline credential record using the local storage backend."""
    return {
        'LOCAL_HOSTNAME': HOSTNAME,
        'DOCKER_HOMELAB_PATH': str(homelab),
        'HOMELAB_SECRETS_PATH': str(homelab / 'secrets'),
        'BACKUP_REMOTE_BACKEND': 'local',
        'BACKUP_REMOTE_PATH': str(tmp_path / 'remote'),
        'BACKUP_ENCRYPTION_PASSWORD': PASSWORD_V1,
        'BACKUP_PASSWORD_VERSION': '1',
        'BACKUP_PASSWORD_CREATED': '2026-01-01',
        'BACKUP_STACKS': 'phpipam',
        'BACKUP_RETENTION_DAILY': '7',
        'BACKUP_RETENTION_WEEKLY': '4',
        'BACKUP_RETENTION_MONTHLY': '3',
    }


@pytest.fixture
def write_env(tmp_path, env_values):
    """
    Factory writing secrets/backup.env.

    Usage: write_env(BACKUP_STACKS='a,b', ADDITIONAL_BACKUP_PATHS=None)
    A value of None drops the variable.
    """
    def _write(path=None, **overrides):
        path = path or tmp_path / 'secrets' / 'backup.env'
        path.parent.mkdir(parents=True, exist_ok=True)
        values = dict(env_values)
        values.update(overrides)
        lines = [f'{key}="{value}"' for key, value in values.items() if value is not None]
        path.write_text('\n'.join(lines) + '\n')
        path.chmod(0o600)
        return path

    return _write


@pytest.fixture
def env_file(write_env):
    return write_env()


@pytest.fixture
def credential_record(env_file):
    return load_credentials(env_file)


@pytest.fixture
def key_v1():
    return KeyGeneration(password=PASSWORD_V1, version=1, created='2026-01-01')


@pytest.fixture
def run_context(tmp_path):
    """RunContext for a daily run with its staging root created."""
    staging = tmp_path / 'staging'
    staging.mkdir()
    return RunContext(hostname=HOSTNAME, started_at=RUN_TIME, staging_root=staging)


@pytest.fixture
def make_archive(tmp_path):
    """
    Factory for snapshot archives named like real ones.

    Usage: make_archive('20260119-020000', files={'stacks/app/a.txt': b'..'})
    """
    def _make(timestamp, files=None, hostname=HOSTNAME, directory=None):
        directory = directory or tmp_path / 'archives'
        directory.mkdir(parents=True, exist_ok=True)
        content = directory / f'content-{timestamp}'
        for rel, data in (files or {'stacks/app/file.txt': b'data'}).items():
            target = content / rel
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_bytes(data)

        archive = directory / f'{hostname}-backup-{timestamp}.tar.gz'
        with tarfile.open(archive, 'w:gz') as tar:
            for entry in sorted(content.iterdir()):
                tar.add(entry, arcname=entry.name)
        return archive

    return _make


@pytest.fixture
def mock_s3():
    """
    Mock AWS S3 service using moto.

    Creates a test bucket 'test-bucket' in us-east-1 region.
    """
    with mock_aws():
        s3 = boto3.resource('s3', region_name='us-east-1')
        s3.create_bucket(Bucket='test-bucket')
        yield s3


@pytest.fixture
def mock_ssh_client():
    """
    Mock paramiko SSHClient for SFTP testing.

    Returns the mocked class; its return_value.open_sftp() is the SFTP client.
    """
    with patch('homelab_backup.backup.storage.SSHClient') as mock_ssh:
        mock_sftp = MagicMock()
        mock_ssh.return_value.open_sftp.return_value = mock_sftp
        mock_ssh.return_value.connect.return_value = None
        yield mock_ssh


@pytest.fixture
def mock_docker():
    """
    Mock subprocess.run for docker calls in the collectors.

    `running` lists the containers `docker ps` reports; `dump_rc` is the
    exit status of the dump. Successful dumps write a line of SQL.
    """
    state = {'running': [], 'dump_rc': 0, 'calls': []}

    def fake_run(cmd, **kwargs):
        state['calls'].append(cmd)
        if cmd[:2] == ['docker', 'ps']:
            return MagicMock(returncode=0, stdout='\n'.join(state['running']) + '\n', stderr='')
        if cmd[:2] == ['docker', 'exec']:
            if state['dump_rc'] == 0:
                kwargs['stdout'].write(b'-- MariaDB dump\nCREATE TABLE t (id INT);\n')
            return MagicMock(returncode=state['dump_rc'], stderr=b'dump error')
        raise AssertionError(f"Unexpected command: {cmd}")

    with patch('homelab_backup.backup.sources.subprocess.run', side_effect=fake_run):
        yield state


@pytest.fixture(scope='function')
def mock_scheduler():
    """
    Mock APScheduler for testing scheduler functionality.
    """
    with patch('homelab_backup.scheduler.BackgroundScheduler') as mock_sched:
        scheduler_instance = MagicMock()
        mock_sched.return_value = scheduler_instance

        scheduler_instance.running = False
        scheduler_instance.state = 0
        scheduler_instance.get_jobs.return_value = []

        yield scheduler_instance
