"""
Storage backend contract.

Every adapter is a plain class satisfying the StorageBackend protocol. An
instance owns one session with its remote service, is created per unit of
work through the StorageRegistry and must be released on every exit path
(use ``scoped`` or ``StorageRegistry.open``).
"""

from contextlib import contextmanager
from datetime import timedelta
from typing import Dict, Iterable, Optional, Protocol, runtime_checkable

from restorekit.errors import ConfigurationError, UnsupportedOperationError


@runtime_checkable
class StorageBackend(Protocol):
    """Operations every storage adapter provides."""

    name: str
    supports_sharing: bool

    def initialize(self, options: Dict[str, str]) -> None:
        """Validate options and open the session."""
        ...

    def upload(self, local_path: str, remote_path: str) -> None:
        """Store a local file at remote_path, replacing any existing object."""
        ...

    def download(self, remote_path: str, local_path: str) -> None:
        """Fetch remote_path into local_path, creating parent directories."""
        ...

    def exists(self, remote_path: str) -> bool:
        ...

    def delete(self, remote_path: str) -> None:
        """Remove remote_path; a missing object is not an error."""
        ...

    def generate_share_link(self, remote_path: str, expiration: timedelta) -> str:
        ...

    def release(self) -> None:
        """Close the session. Idempotent."""
        ...


def require_options(backend_name: str, options: Dict[str, str], required: Iterable[str]):
    """
    Check that every required option is present and non-empty.

    All missing keys are reported together.

    Raises:
        ConfigurationError: If any required key is missing or blank
    """
    missing = [key for key in required if not str(options.get(key) or '').strip()]
    if missing:
        raise ConfigurationError(
            f"Missing required option(s) for '{backend_name}' storage: {', '.join(missing)}",
            missing_keys=missing
        )


def ensure_sharing(backend: StorageBackend):
    """
    Raises:
        UnsupportedOperationError: If the backend cannot issue share links
    """
    if not backend.supports_sharing:
        raise UnsupportedOperationError(f"Storage '{backend.name}' does not support share links")


def expiration_seconds(expiration: timedelta, maximum: Optional[int] = None) -> int:
    """Validate a share-link lifetime and return it in whole seconds."""
    seconds = int(expiration.total_seconds())
    if seconds <= 0:
        raise ConfigurationError("Share link expiration must be positive")
    if maximum is not None and seconds > maximum:
        raise ConfigurationError(f"Share link expiration exceeds the backend maximum of {maximum} seconds")
    return seconds


@contextmanager
def scoped(storage: StorageBackend):
    """Yield the backend and release it however the block exits."""
    try:
        yield storage
    finally:
        storage.release()
