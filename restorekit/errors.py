"""
Error taxonomy for restorekit.

Every failure raised by the storage adapters, the backup/restore engines
and the state store is one of the classes below. Engines attach the name
of the failing stage to the error (``error.stage``) before re-raising it.
"""

from contextlib import contextmanager
from typing import Iterable, Optional


class RestoreKitError(Exception):
    """Base class for all restorekit errors."""

    def __init__(self, message: str = '', stage: Optional[str] = None):
        super().__init__(message)
        self.stage = stage


class ConfigurationError(RestoreKitError):
    """Raised when settings or backend options are missing or invalid."""

    def __init__(self, message: str = '', missing_keys: Optional[Iterable[str]] = None,
                 stage: Optional[str] = None):
        super().__init__(message, stage=stage)
        self.missing_keys = list(missing_keys or [])


class NotFoundError(RestoreKitError):
    """Raised when a local path or remote object does not exist."""
    pass


class TransferError(RestoreKitError):
    """Raised when a network or storage operation fails."""
    pass


class AuthenticationError(RestoreKitError):
    """Raised on rejected credentials or a wrong decryption password."""
    pass


class UnsupportedOperationError(RestoreKitError):
    """Raised when a backend does not support the requested operation."""
    pass


class ArchiveError(RestoreKitError):
    """Raised when an archive cannot be created, read or extracted."""
    pass


class StateError(RestoreKitError):
    """Raised when the state store cannot be read or written."""
    pass


class StateCorruptionError(StateError):
    """Raised internally when the persisted state is unreadable."""
    pass


class BackupCancelled(RestoreKitError):
    """Raised when a running backup is abandoned at a stage boundary."""
    pass


@contextmanager
def attach_stage(stage: str):
    """
    Tag any exception escaping the block with the stage it failed in.

    The exception is re-raised unchanged; a stage set by an inner block
    is kept.
    """
    try:
        yield
    except Exception as e:
        if getattr(e, 'stage', None) is None:
            e.stage = stage
        raise
