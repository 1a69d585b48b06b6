"""
Unit tests for backup execution (restorekit/backup/executor.py).

Tests the full backup workflow against local storage, failure stages,
cleanup of temporary files and backend release.
"""

import os
from dataclasses import replace
from unittest.mock import MagicMock, patch

import pytest

from restorekit.backup.executor import BackupEngine, remote_backup_path
from restorekit.backup.retention import RetentionManager
from restorekit.backup.storage import StorageRegistry
from restorekit.config import RetentionPolicy, WatchTarget
from restorekit.errors import BackupCancelled, ConfigurationError, NotFoundError, TransferError
from restorekit.utils.passwords import StaticPasswordProvider


def make_engine(settings, registry, state, work_dir, password_provider=None, retention=None):
    return BackupEngine(
        settings,
        registry,
        state,
        password_provider=password_provider,
        temp_dir=str(work_dir),
        retention=retention
    )


def fake_registry(backend):
    registry = StorageRegistry()
    registry.register('fake', lambda: backend)
    return registry


class TestBackupDirectory:
    """Test successful backups."""

    def test_backup_to_local_storage(self, settings, registry, state, work_dir, source_dir, storage_dir):
        """Test that a backup is uploaded and recorded."""
        engine = make_engine(settings, registry, state, work_dir)

        record = engine.backup_directory(str(source_dir))

        assert record.remote_path.startswith('backups/documents/backup_documents_')
        assert record.remote_path.endswith('.zip')
        assert (storage_dir / record.remote_path).is_file()
        assert record.storage_type == 'local'
        assert record.file_count == 3
        assert record.size_original > 0
        assert record.encrypted is False
        assert state.last_record(str(source_dir)) == record

    def test_backup_tar_with_compression(self, settings, registry, state, work_dir, source_dir, storage_dir):
        """Test that an uncompressed tar gets the extra gzip stage."""
        settings = replace(settings, archive_format='tar', compress=True)
        engine = make_engine(settings, registry, state, work_dir)

        record = engine.backup_directory(str(source_dir))

        assert record.remote_path.endswith('.tar.gz')
        assert (storage_dir / record.remote_path).is_file()

    def test_backup_encrypted(self, settings, registry, state, work_dir, source_dir, storage_dir, password_provider):
        """Test that encrypted backups get the .enc suffix."""
        settings = replace(settings, encryption_enabled=True)
        engine = make_engine(settings, registry, state, work_dir, password_provider=password_provider)

        record = engine.backup_directory(str(source_dir))

        assert record.remote_path.endswith('.zip.enc')
        assert record.encrypted is True
        assert (storage_dir / record.remote_path).read_bytes()[:4] == b'RKE1'

    def test_backup_cleans_temp_files(self, settings, registry, state, work_dir, source_dir):
        """Test that temporary files are removed after a backup."""
        engine = make_engine(settings, registry, state, work_dir)

        engine.backup_directory(str(source_dir))

        assert os.listdir(work_dir) == []

    def test_backup_uses_per_path_storage(self, settings, state, work_dir, source_dir):
        """Test that a watch target's storage type wins over the global default."""
        backend = MagicMock(name='gdrive_backend')
        registry = StorageRegistry()
        registry.register('gdrive', lambda: backend)
        registry.register('s3', MagicMock(side_effect=AssertionError('s3 must not be used')))

        settings = replace(
            settings,
            global_storage_type='s3',
            watch_targets=[WatchTarget(path=str(source_dir), storage_type='gdrive')],
            storage_options={'gdrive': {'client_id': 'x'}}
        )
        engine = make_engine(settings, registry, state, work_dir)

        record = engine.backup_directory(str(source_dir))

        assert record.storage_type == 'gdrive'
        backend.initialize.assert_called_once_with({'client_id': 'x'})
        backend.upload.assert_called_once()
        assert backend.upload.call_args[0][1] == record.remote_path

    def test_backup_storage_override(self, settings, state, work_dir, source_dir):
        """Test that an explicit storage override wins over settings."""
        backend = MagicMock()
        engine = make_engine(settings, fake_registry(backend), state, work_dir)

        record = engine.backup_directory(str(source_dir), storage_override='FAKE')

        assert record.storage_type == 'fake'
        backend.release.assert_called_once()

    def test_backup_applies_retention(self, settings, registry, state, work_dir, source_dir, storage_dir):
        """Test that retention runs after each successful backup."""
        settings = replace(settings, retention=RetentionPolicy(enabled=True, keep_last=1, max_age_days=0))
        retention = RetentionManager(settings, registry, state)
        engine = make_engine(settings, registry, state, work_dir, retention=retention)

        for _ in range(3):
            engine.backup_directory(str(source_dir))

        history = state.history(str(source_dir))
        assert len(history) == 1
        stored = os.listdir(storage_dir / 'backups' / 'documents')
        assert stored == [os.path.basename(history[0].remote_path)]

    def test_remote_backup_path(self):
        """Test remote path layout."""
        assert remote_backup_path('my docs', 'backup.zip') == 'backups/my_docs/backup.zip'


class TestBackupFailures:
    """Test failure stages; a failed backup never leaves a record."""

    def test_missing_source(self, settings, registry, state, work_dir, tmp_path):
        """Test that a missing directory fails validation."""
        engine = make_engine(settings, registry, state, work_dir)

        with pytest.raises(NotFoundError) as exc_info:
            engine.backup_directory(str(tmp_path / 'missing'))

        assert exc_info.value.stage == 'validate'
        assert state.paths() == []

    def test_encryption_without_password(self, settings, registry, state, work_dir, source_dir, storage_dir):
        """Test that encryption without a password fails before any upload."""
        settings = replace(settings, encryption_enabled=True)
        engine = make_engine(settings, registry, state, work_dir, password_provider=StaticPasswordProvider(None))

        with pytest.raises(ConfigurationError) as exc_info:
            engine.backup_directory(str(source_dir))

        assert exc_info.value.stage == 'validate'
        assert list(storage_dir.iterdir()) == []

    def test_unknown_storage_type(self, settings, registry, state, work_dir, source_dir):
        """Test that an unknown backend fails at resolve."""
        engine = make_engine(settings, registry, state, work_dir)

        with pytest.raises(ConfigurationError) as exc_info:
            engine.backup_directory(str(source_dir), storage_override='floppy')

        assert exc_info.value.stage == 'resolve'
        assert 'local' in str(exc_info.value)

    def test_missing_storage_options(self, settings, registry, state, work_dir, source_dir):
        """Test that missing backend options are reported at resolve."""
        settings = replace(settings, storage_options={})
        engine = make_engine(settings, registry, state, work_dir)

        with pytest.raises(ConfigurationError) as exc_info:
            engine.backup_directory(str(source_dir))

        assert exc_info.value.stage == 'resolve'
        assert exc_info.value.missing_keys == ['path']

    def test_upload_failure(self, settings, state, work_dir, source_dir):
        """Test that an upload failure leaves no record, no temp files and releases the backend."""
        backend = MagicMock()
        backend.upload.side_effect = TransferError("connection reset")
        engine = make_engine(settings, fake_registry(backend), state, work_dir)

        with pytest.raises(TransferError) as exc_info:
            engine.backup_directory(str(source_dir), storage_override='fake')

        assert exc_info.value.stage == 'upload'
        assert state.paths() == []
        assert os.listdir(work_dir) == []
        backend.release.assert_called_once()

    def test_archive_failure(self, settings, state, work_dir, source_dir):
        """Test that an archive failure is tagged with the archive stage."""
        backend = MagicMock()
        engine = make_engine(settings, fake_registry(backend), state, work_dir)

        with patch('restorekit.backup.executor.create_archive', side_effect=OSError("disk full")):
            with pytest.raises(OSError) as exc_info:
                engine.backup_directory(str(source_dir), storage_override='fake')

        assert exc_info.value.stage == 'archive'
        backend.upload.assert_not_called()
        backend.release.assert_called_once()

    def test_cancelled_backup(self, settings, state, work_dir, source_dir):
        """Test that a cancellation check abandons the backup without a record."""
        backend = MagicMock()
        engine = make_engine(settings, fake_registry(backend), state, work_dir)

        def cancel():
            raise BackupCancelled("shutting down")

        with pytest.raises(BackupCancelled):
            engine.backup_directory(str(source_dir), storage_override='fake', cancellation_check=cancel)

        backend.upload.assert_not_called()
        backend.release.assert_called_once()
        assert state.paths() == []

    def test_record_failure_after_upload(self, settings, state, work_dir, source_dir):
        """Test that a state write failure is tagged with the record stage."""
        from restorekit.errors import StateError

        backend = MagicMock()
        engine = make_engine(settings, fake_registry(backend), state, work_dir)

        with patch.object(state, 'record', side_effect=StateError("database is locked")):
            with pytest.raises(StateError) as exc_info:
                engine.backup_directory(str(source_dir), storage_override='fake')

        assert exc_info.value.stage == 'record'
        assert os.listdir(work_dir) == []
