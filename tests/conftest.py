"""
Shared pytest fixtures for restorekit tests.

This module provides fixtures for:
- Settings with local storage
- State store on a temporary SQLite file
- Storage registry and password provider
- Mock fixtures for external services (S3, SSH, APScheduler)
- Project tree and archive fixtures
"""

import io
import tarfile
from unittest.mock import MagicMock, patch

import pytest
import boto3
from moto import mock_aws

from restorekit.backup.storage import default_registry
from restorekit.config import RetentionPolicy, Settings, WatchTarget
from restorekit.state import StateStore
from restorekit.utils.passwords import StaticPasswordProvider


@pytest.fixture
def storage_dir(tmp_path):
    """Base directory of the local storage backend."""
    path = tmp_path / 'storage'
    path.mkdir()
    return path


@pytest.fixture
def source_dir(tmp_path):
    """
    Directory to back up.

    Creates:
    - notes.txt
    - data/report.csv
    - data/nested/deep.txt
    """
    root = tmp_path / 'documents'
    (root / 'data' / 'nested').mkdir(parents=True)
    (root / 'notes.txt').write_text('Remember the milk')
    (root / 'data' / 'report.csv').write_text('a,b,c\n1,2,3\n')
    (root / 'data' / 'nested' / 'deep.txt').write_text('Deep content')
    return root


@pytest.fixture
def settings(source_dir, storage_dir):
    """Settings backing up source_dir to local storage (zip, no encryption)."""
    return Settings(
        global_storage_type='local',
        watch_targets=[WatchTarget(path=str(source_dir))],
        storage_options={'local': {'path': str(storage_dir)}},
        archive_format='zip',
        retention=RetentionPolicy(enabled=False),
        debounce_seconds=0.05
    )


@pytest.fixture
def state(tmp_path):
    """Loaded state store; closed after the test."""
    store = StateStore(str(tmp_path / 'state' / 'state.db'))
    store.load()
    yield store
    store.close()


@pytest.fixture
def registry():
    """Registry with every built-in backend."""
    return default_registry()


@pytest.fixture
def password_provider():
    """
    Static password provider.

    Password: test_password_123
    """
    return StaticPasswordProvider('test_password_123')


@pytest.fixture
def work_dir(tmp_path):
    """Parent directory for engine temporary files."""
    path = tmp_path / 'work'
    path.mkdir()
    return path


@pytest.fixture
def mock_s3():
    """
    S3 served by moto with an empty 'test-bucket' (us-east-1).

    Yields the boto3 resource so tests can inspect stored objects.
    """
    with mock_aws():
        resource = boto3.resource('s3', region_name='us-east-1')
        resource.create_bucket(Bucket='test-bucket')
        yield resource


@pytest.fixture
def s3_options():
    return {
        'accessKeyId': 'test_access_key',
        'secretAccessKey': 'test_secret_key',
        'region': 'us-east-1',
        'bucketName': 'test-bucket'
    }


@pytest.fixture
def mock_ssh_client():
    """
    Patched paramiko SSHClient class used by the SFTP backend.

    ``mock_ssh_client.return_value.open_sftp.return_value`` is the SFTP
    session the backend talks to.
    """
    with patch('restorekit.backup.storage.sftp.SSHClient') as ssh_class:
        ssh_class.return_value.open_sftp.return_value = MagicMock(name='sftp')
        yield ssh_class


@pytest.fixture
def temp_files(tmp_path):
    """
    Small project tree for archive tests.

    Creates (under tmp_path/project):
    - readme.txt
    - build.log
    - nested/settings.ini
    - module.pyc (excluded by '*.pyc' patterns)
    """
    root = tmp_path / 'project'
    (root / 'nested').mkdir(parents=True)
    (root / 'readme.txt').write_text('Project readme')
    (root / 'build.log').write_text('build ok')
    (root / 'nested' / 'settings.ini').write_text('[core]\nname = demo\n')
    (root / 'module.pyc').write_bytes(b'\x00compiled')
    return root


@pytest.fixture
def sample_archive(tmp_path):
    """
    tar.gz snapshot holding notes.txt and data/values.csv.
    """
    members = {
        'notes.txt': b'Snapshot notes',
        'data/values.csv': b'x,y\n1,2\n'
    }
    archive_path = tmp_path / 'snapshot.tar.gz'
    with tarfile.open(archive_path, 'w:gz') as tar:
        for name, content in members.items():
            info = tarfile.TarInfo(name)
            info.size = len(content)
            tar.addfile(info, io.BytesIO(content))
    return archive_path


@pytest.fixture
def mock_scheduler():
    """
    Patched AsyncIOScheduler; yields the instance MaintenanceScheduler creates.

    The instance reports itself stopped and without jobs.
    """
    with patch('restorekit.scheduler.AsyncIOScheduler') as scheduler_class:
        instance = scheduler_class.return_value
        instance.running = False
        instance.state = 0
        instance.get_jobs.return_value = []
        yield instance
