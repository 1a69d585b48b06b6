"""
Name -> constructor registry for storage backends.
"""

import logging
from contextlib import contextmanager
from typing import Callable, Dict, List, Optional

from restorekit.errors import ConfigurationError
from .base import StorageBackend, scoped
from .azure_blob import AzureBlobStorage
from .b2 import B2Storage
from .dropbox_storage import DropboxStorage
from .gcs import GCSStorage
from .gdrive import GoogleDriveStorage
from .github import GitHubStorage
from .local import LocalStorage
from .s3 import S3Storage
from .sftp import SFTPStorage

logger = logging.getLogger(__name__)


class StorageRegistry:
    """
    Maps backend names to constructors. Lookup is case-insensitive.

    ``create`` returns an initialized, caller-owned backend; the caller must
    release it (or use ``open``).
    """

    def __init__(self):
        self._factories: Dict[str, Callable[[], StorageBackend]] = {}

    def register(self, name: str, factory: Callable[[], StorageBackend]):
        self._factories[name.strip().lower()] = factory

    def names(self) -> List[str]:
        return sorted(self._factories)

    def __contains__(self, name: str) -> bool:
        return (name or '').strip().lower() in self._factories

    def create(self, name: str, options: Optional[Dict[str, str]] = None) -> StorageBackend:
        """
        Instantiate and initialize a backend.

        Args:
            name: Backend name (any case)
            options: Backend option map; copied before use

        Returns:
            Initialized backend

        Raises:
            ConfigurationError: If the name is unknown or options are invalid
        """
        storage = self._factory(name)()
        try:
            storage.initialize(dict(options or {}))
        except Exception:
            storage.release()
            raise

        logger.debug(f"Initialized '{storage.name}' storage")
        return storage

    def supports_sharing(self, name: str) -> bool:
        """Whether a backend can issue share links, without opening a session."""
        storage = self._factory(name)()
        try:
            return bool(storage.supports_sharing)
        finally:
            storage.release()

    def _factory(self, name: str) -> Callable[[], StorageBackend]:
        factory = self._factories.get((name or '').strip().lower())
        if factory is None:
            raise ConfigurationError(
                f"Unknown storage type '{name}'. Valid types: {', '.join(self.names())}"
            )
        return factory

    @contextmanager
    def open(self, name: str, options: Optional[Dict[str, str]] = None):
        """Create a backend and release it when the block exits."""
        with scoped(self.create(name, options)) as storage:
            yield storage


def default_registry() -> StorageRegistry:
    """Registry holding every built-in backend."""
    registry = StorageRegistry()
    registry.register('local', LocalStorage)
    registry.register('s3', S3Storage)
    registry.register('b2', B2Storage)
    registry.register('sftp', SFTPStorage)
    registry.register('azure', AzureBlobStorage)
    registry.register('gcp', GCSStorage)
    registry.register('gdrive', GoogleDriveStorage)
    registry.register('dropbox', DropboxStorage)
    registry.register('github', GitHubStorage)
    return registry
