"""
Unit tests for restoring backups (restorekit/backup/restore.py).
"""

import os
from dataclasses import replace

import pytest

from restorekit.backup.executor import BackupEngine
from restorekit.backup.restore import RestoreEngine
from restorekit.errors import AuthenticationError, NotFoundError
from restorekit.utils.passwords import EnvironmentPasswordProvider, StaticPasswordProvider


def backup(settings, registry, state, work_dir, source_dir, password_provider=None):
    engine = BackupEngine(settings, registry, state, password_provider=password_provider, temp_dir=str(work_dir))
    return engine.backup_directory(str(source_dir))


def read_tree(root):
    tree = {}
    for dirpath, _, files in os.walk(root):
        for name in files:
            full = os.path.join(dirpath, name)
            with open(full, 'rb') as f:
                tree[os.path.relpath(full, root)] = f.read()
    return tree


class TestRestoreFromBackup:
    """Test backup -> restore round trips."""

    @pytest.mark.parametrize("archive_format", ['zip', 'tar', 'tar.bz2', 'tar.xz'])
    def test_round_trip(self, settings, registry, state, work_dir, source_dir, tmp_path, archive_format):
        """Test that restoring reproduces the backed-up tree."""
        settings = replace(settings, archive_format=archive_format)
        record = backup(settings, registry, state, work_dir, source_dir)

        target = tmp_path / 'restored'
        result = RestoreEngine(settings, registry, temp_dir=str(work_dir)).restore_from_backup(
            record.remote_path, str(target)
        )

        assert read_tree(target) == read_tree(source_dir)
        assert result.files_restored == 3
        assert result.bytes_restored == record.size_original
        assert os.listdir(work_dir) == []

    def test_encrypted_round_trip(self, settings, registry, state, work_dir, source_dir, tmp_path, password_provider):
        """Test restoring an encrypted backup with the right password."""
        settings = replace(settings, encryption_enabled=True)
        record = backup(settings, registry, state, work_dir, source_dir, password_provider)

        target = tmp_path / 'restored'
        engine = RestoreEngine(settings, registry, password_provider=password_provider, temp_dir=str(work_dir))
        engine.restore_from_backup(record.remote_path, str(target))

        assert read_tree(target) == read_tree(source_dir)

    def test_wrong_password_extracts_nothing(self, settings, registry, state, work_dir, source_dir, tmp_path,
                                             password_provider):
        """Test that a wrong password fails and leaves the target untouched."""
        settings = replace(settings, encryption_enabled=True)
        record = backup(settings, registry, state, work_dir, source_dir, password_provider)

        target = tmp_path / 'restored'
        wrong = StaticPasswordProvider('not the password')
        engine = RestoreEngine(settings, registry, password_provider=wrong, temp_dir=str(work_dir))

        with pytest.raises(AuthenticationError) as exc_info:
            engine.restore_from_backup(record.remote_path, str(target))

        assert exc_info.value.stage == 'decrypt'
        assert not target.exists() or list(target.iterdir()) == []
        assert os.listdir(work_dir) == []

    def test_backup_after_wrong_password(self, settings, registry, state, work_dir, source_dir, tmp_path,
                                         monkeypatch):
        """Test a failed restore leaves the shared provider usable for backups."""
        settings = replace(settings, encryption_enabled=True)
        old = backup(settings, registry, state, work_dir, source_dir, StaticPasswordProvider('old password'))

        monkeypatch.setenv('RESTOREKIT_PASSWORD', 'current password')
        shared = EnvironmentPasswordProvider()
        engine = RestoreEngine(settings, registry, password_provider=shared, temp_dir=str(work_dir))

        with pytest.raises(AuthenticationError):
            engine.restore_from_backup(old.remote_path, str(tmp_path / 'first'))

        record = backup(settings, registry, state, work_dir, source_dir, shared)
        target = tmp_path / 'second'
        engine.restore_from_backup(record.remote_path, str(target))

        assert record.encrypted
        assert read_tree(target) == read_tree(source_dir)

    def test_encrypted_without_password(self, settings, registry, state, work_dir, source_dir, tmp_path,
                                        password_provider):
        """Test that restoring an encrypted backup without a password fails."""
        settings = replace(settings, encryption_enabled=True)
        record = backup(settings, registry, state, work_dir, source_dir, password_provider)

        engine = RestoreEngine(settings, registry, temp_dir=str(work_dir))

        with pytest.raises(AuthenticationError):
            engine.restore_from_backup(record.remote_path, str(tmp_path / 'restored'))

    def test_missing_backup(self, settings, registry, work_dir, tmp_path):
        """Test that a missing backup raises NotFoundError at download."""
        engine = RestoreEngine(settings, registry, temp_dir=str(work_dir))

        with pytest.raises(NotFoundError) as exc_info:
            engine.restore_from_backup('backups/documents/missing.zip', str(tmp_path / 'restored'))

        assert exc_info.value.stage == 'download'
        assert os.listdir(work_dir) == []

    def test_restore_overwrites_existing(self, settings, registry, state, work_dir, source_dir, tmp_path):
        """Test that files in the target directory are overwritten."""
        record = backup(settings, registry, state, work_dir, source_dir)
        target = tmp_path / 'restored'
        target.mkdir()
        (target / 'notes.txt').write_text('stale')

        RestoreEngine(settings, registry, temp_dir=str(work_dir)).restore_from_backup(record.remote_path, str(target))

        assert (target / 'notes.txt').read_text() == 'Remember the milk'
