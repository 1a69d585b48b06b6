"""
Unit tests for the storage registry (restorekit/backup/storage/registry.py).
"""

from unittest.mock import MagicMock

import pytest

from restorekit.backup.storage import StorageBackend, StorageRegistry, default_registry, scoped
from restorekit.backup.storage.local import LocalStorage
from restorekit.errors import ConfigurationError, TransferError


class TestStorageRegistry:
    """Test backend lookup and lifecycle."""

    def test_default_registry_names(self):
        """Test that every built-in backend is registered."""
        assert default_registry().names() == [
            'azure', 'b2', 'dropbox', 'gcp', 'gdrive', 'github', 'local', 's3', 'sftp'
        ]

    def test_lookup_is_case_insensitive(self, storage_dir):
        """Test that names match in any case."""
        registry = default_registry()

        storage = registry.create(' Local ', {'path': str(storage_dir)})

        assert isinstance(storage, LocalStorage)
        assert 'LOCAL' in registry

    def test_unknown_name_lists_valid_types(self):
        """Test that an unknown name reports the valid ones."""
        with pytest.raises(ConfigurationError) as exc_info:
            default_registry().create('tape', {})

        message = str(exc_info.value)
        assert "Unknown storage type 'tape'" in message
        for name in ('local', 's3', 'sftp', 'github'):
            assert name in message

    def test_create_copies_options(self, storage_dir):
        """Test that the caller's option map is not handed to the backend."""
        backend = MagicMock()
        registry = StorageRegistry()
        registry.register('fake', lambda: backend)
        options = {'path': str(storage_dir)}

        registry.create('fake', options)

        passed = backend.initialize.call_args[0][0]
        assert passed == options
        assert passed is not options

    def test_release_on_initialize_failure(self):
        """Test that a backend failing to initialize is released."""
        backend = MagicMock()
        backend.initialize.side_effect = TransferError("unreachable")
        registry = StorageRegistry()
        registry.register('fake', lambda: backend)

        with pytest.raises(TransferError):
            registry.create('fake', {})

        backend.release.assert_called_once()

    def test_open_releases_on_error(self):
        """Test that open() releases when the block raises."""
        backend = MagicMock()
        registry = StorageRegistry()
        registry.register('fake', lambda: backend)

        with pytest.raises(RuntimeError):
            with registry.open('fake', {}) as storage:
                assert storage is backend
                raise RuntimeError("boom")

        backend.release.assert_called_once()

    def test_supports_sharing_without_initialize(self):
        """Test that the sharing capability is read without opening a session."""
        registry = default_registry()

        assert registry.supports_sharing('s3') is True
        assert registry.supports_sharing('azure') is True
        assert registry.supports_sharing('gcp') is True
        assert registry.supports_sharing('dropbox') is True
        assert registry.supports_sharing('local') is False
        assert registry.supports_sharing('sftp') is False
        assert registry.supports_sharing('gdrive') is False
        assert registry.supports_sharing('github') is False

    def test_scoped_releases(self):
        """Test the scoped helper releases on normal exit."""
        backend = MagicMock()

        with scoped(backend):
            pass

        backend.release.assert_called_once()

    def test_backends_satisfy_protocol(self):
        """Test that every built-in backend satisfies the StorageBackend protocol."""
        registry = default_registry()
        for name in registry.names():
            backend = registry._factory(name)()
            assert isinstance(backend, StorageBackend)
            assert backend.name == name
            backend.release()
