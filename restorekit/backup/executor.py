"""
Backup engine - orchestrates the complete backup workflow for a directory.

Workflow:
1. Resolve the storage backend (override > per-path setting > global default)
2. Validate the source directory and obtain the password if encrypting
3. Create the archive in a temporary directory
4. Gzip it when the format is plain tar and compression is on
5. Encrypt it when encryption is enabled
6. Upload to backups/{dir}/{filename}
7. Record the backup in the state store
8. Apply retention for the path
9. Cleanup temporary files (always)

A failure at any step raises with ``error.stage`` set and records nothing.
"""

import logging
import os
import shutil
import tempfile
import time
from datetime import datetime, timezone
from typing import Callable, Optional

from restorekit.config import Settings, normalize_path
from restorekit.errors import (
    ConfigurationError,
    NotFoundError,
    RestoreKitError,
    attach_stage
)
from restorekit.models import BackupRecord
from restorekit.state import StateStore
from restorekit.utils.crypto import encrypt_file
from restorekit.utils.passwords import PasswordProvider
from .compression import (
    create_archive,
    generate_archive_filename,
    get_archive_size,
    gzip_file,
    sanitize_name,
    strip_archive_extension
)
from .storage import StorageRegistry, scoped

logger = logging.getLogger(__name__)


def remote_backup_path(dir_name: str, filename: str) -> str:
    """Remote location of a backup: backups/{dir}/{filename}"""
    return f"backups/{sanitize_name(dir_name)}/{filename}"


class BackupEngine:
    """
    Runs backups of directories to the configured storage backends.

    Synchronous; the watch orchestrator runs it in worker threads. One
    backend instance is created per backup and released on every path.
    """

    def __init__(
        self,
        settings: Settings,
        registry: StorageRegistry,
        state: StateStore,
        password_provider: Optional[PasswordProvider] = None,
        temp_dir: Optional[str] = None,
        retention=None
    ):
        """
        Args:
            settings: Resolved settings
            registry: Storage registry used to create backends
            state: State store receiving successful backups
            password_provider: Source of the encryption password
            temp_dir: Parent directory for temporary artifacts
            retention: Optional RetentionManager applied after each backup
        """
        self.settings = settings
        self.registry = registry
        self.state = state
        self.password_provider = password_provider
        self.temp_dir = temp_dir
        self.retention = retention

    def resolve_storage_type(self, source_path: str, storage_override: Optional[str] = None) -> str:
        if storage_override:
            return storage_override.lower()
        return self.settings.storage_type_for(source_path)

    def backup_directory(
        self,
        source_path: str,
        storage_override: Optional[str] = None,
        cancellation_check: Optional[Callable[[], None]] = None
    ) -> BackupRecord:
        """
        Back up a directory.

        Args:
            source_path: Directory to back up
            storage_override: Backend name taking precedence over settings
            cancellation_check: Called between stages; raises BackupCancelled
                to abandon the backup

        Returns:
            The BackupRecord stored in the state store

        Raises:
            RestoreKitError: Any failure, with ``stage`` set
        """
        started = time.monotonic()
        source = normalize_path(source_path)
        dir_name = os.path.basename(source) or 'root'

        with attach_stage('resolve'):
            storage_type = self.resolve_storage_type(source, storage_override)
            options = self.settings.options_for(storage_type)

        with attach_stage('validate'):
            if not os.path.isdir(source):
                raise NotFoundError(f"Source directory does not exist: {source}")
            password = self._password() if self.settings.encryption_enabled else None

        logger.info(f"Starting backup of {source} to '{storage_type}' storage")

        temp_dir = None
        try:
            with attach_stage('resolve'):
                storage = self.registry.create(storage_type, options)

            with scoped(storage):
                temp_dir = tempfile.mkdtemp(prefix='restorekit_backup_', dir=self.temp_dir)

                with attach_stage('archive'):
                    _check(cancellation_check)
                    filename = generate_archive_filename(dir_name, self.settings.archive_format)
                    archive = create_archive(
                        source,
                        os.path.join(temp_dir, strip_archive_extension(filename)),
                        self.settings.archive_format,
                        exclude_patterns=self.settings.excluded_patterns,
                        excluded_paths=self.settings.excluded_paths,
                        max_file_size=self.settings.max_file_size_bytes,
                        cancellation_check=cancellation_check
                    )
                    artifact = archive.path
                    logger.info(
                        f"Archive created: {os.path.basename(artifact)} "
                        f"({archive.file_count} files, {archive.original_size / 1024 / 1024:.2f} MB)"
                    )

                if self.settings.compress and self.settings.archive_format == 'tar':
                    with attach_stage('compress'):
                        _check(cancellation_check)
                        artifact = gzip_file(artifact)

                if password is not None:
                    with attach_stage('encrypt'):
                        _check(cancellation_check)
                        encrypted = f"{artifact}.enc"
                        encrypt_file(artifact, encrypted, password)
                        os.remove(artifact)
                        artifact = encrypted

                remote_path = remote_backup_path(dir_name, os.path.basename(artifact))

                with attach_stage('upload'):
                    _check(cancellation_check)
                    stored_size = get_archive_size(artifact)
                    storage.upload(artifact, remote_path)
                    logger.info(f"Uploaded to '{storage_type}': {remote_path}")

            with attach_stage('record'):
                record = self.state.record(source, BackupRecord(
                    source_path=source,
                    remote_path=remote_path,
                    timestamp=datetime.now(timezone.utc),
                    size_original=archive.original_size,
                    size_stored=stored_size,
                    storage_type=storage_type,
                    encrypted=password is not None,
                    file_count=archive.file_count
                ))

        except Exception as e:
            logger.error(f"Backup of {source} failed at stage '{getattr(e, 'stage', None)}': {e}")
            raise

        finally:
            self._cleanup(temp_dir)

        elapsed = time.monotonic() - started
        logger.info(
            f"Backup of {source} completed in {elapsed:.2f}s "
            f"(original {record.size_original / 1024 / 1024:.2f} MB, "
            f"stored {record.size_stored / 1024 / 1024:.2f} MB)"
        )

        self._apply_retention(source)
        return record

    def _password(self) -> str:
        password = self.password_provider.get_password() if self.password_provider else None
        if not password:
            raise ConfigurationError("Encryption is enabled but no password is available")
        return password

    def _apply_retention(self, source: str):
        if self.retention is None:
            return
        try:
            self.retention.apply(source)
        except RestoreKitError as e:
            logger.warning(f"Retention for {source} failed: {e}")

    def _cleanup(self, temp_dir: Optional[str]):
        """Remove temporary directory and files."""
        if temp_dir and os.path.exists(temp_dir):
            try:
                shutil.rmtree(temp_dir)
            except OSError as e:
                logger.warning(f"Failed to cleanup temp directory {temp_dir}: {e}")


def _check(cancellation_check: Optional[Callable[[], None]]):
    if cancellation_check:
        cancellation_check()
