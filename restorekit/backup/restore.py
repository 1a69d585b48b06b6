"""
Restore engine - fetches a backup and extracts it into a directory.

Encrypted backups (".enc") are decrypted completely into a temporary file
before anything is extracted, so a wrong password leaves the target
directory untouched.
"""

import logging
import os
import shutil
import tempfile
import time
from typing import Optional

from restorekit.config import Settings
from restorekit.errors import AuthenticationError, attach_stage
from restorekit.models import RestoreResult
from restorekit.utils.crypto import decrypt_file
from restorekit.utils.passwords import PasswordProvider
from .compression import ENCRYPTED_SUFFIX, extract_archive, is_encrypted
from .storage import StorageRegistry

logger = logging.getLogger(__name__)


class RestoreEngine:
    """Restores backups from the configured storage backends."""

    def __init__(
        self,
        settings: Settings,
        registry: StorageRegistry,
        password_provider: Optional[PasswordProvider] = None,
        temp_dir: Optional[str] = None
    ):
        self.settings = settings
        self.registry = registry
        self.password_provider = password_provider
        self.temp_dir = temp_dir

    def restore_from_backup(
        self,
        backup_path: str,
        target_dir: str,
        storage_override: Optional[str] = None
    ) -> RestoreResult:
        """
        Download a backup and extract it into target_dir.

        Existing files in target_dir are overwritten.

        Args:
            backup_path: Remote path of the backup
            target_dir: Directory to extract into (created if missing)
            storage_override: Backend name (default: global storage type)

        Returns:
            RestoreResult with the number of files and bytes restored

        Raises:
            NotFoundError: If the backup does not exist
            AuthenticationError: If the password is wrong (nothing extracted)
            ArchiveError: If the archive is damaged or unsafe
        """
        started = time.monotonic()
        storage_type = (storage_override or self.settings.global_storage_type).lower()
        filename = os.path.basename(backup_path.rstrip('/'))

        logger.info(f"Restoring {backup_path} from '{storage_type}' storage into {target_dir}")

        temp_dir = tempfile.mkdtemp(prefix='restorekit_restore_', dir=self.temp_dir)
        try:
            local_path = os.path.join(temp_dir, filename)

            with attach_stage('resolve'):
                options = self.settings.options_for(storage_type)

            with attach_stage('download'):
                with self.registry.open(storage_type, options) as storage:
                    storage.download(backup_path, local_path)

            if is_encrypted(filename):
                with attach_stage('decrypt'):
                    local_path = self._decrypt(local_path)

            with attach_stage('extract'):
                files_restored, bytes_restored = extract_archive(local_path, target_dir)

        finally:
            self._cleanup(temp_dir)

        logger.info(
            f"Restored {files_restored} files ({bytes_restored / 1024 / 1024:.2f} MB) "
            f"in {time.monotonic() - started:.2f}s"
        )

        return RestoreResult(
            backup_path=backup_path,
            target_dir=os.path.abspath(target_dir),
            files_restored=files_restored,
            bytes_restored=bytes_restored
        )

    def _decrypt(self, encrypted_path: str) -> str:
        password = self.password_provider.get_password() if self.password_provider else None
        if not password:
            raise AuthenticationError("Backup is encrypted but no password is available")

        decrypted_path = encrypted_path[:-len(ENCRYPTED_SUFFIX)]
        try:
            decrypt_file(encrypted_path, decrypted_path, password)
        except AuthenticationError:
            self.password_provider.clear()
            logger.warning("Decryption failed: invalid password or corrupted backup")
            raise

        os.remove(encrypted_path)
        return decrypted_path

    def _cleanup(self, temp_dir: str):
        """Remove temporary directory and files."""
        if temp_dir and os.path.exists(temp_dir):
            try:
                shutil.rmtree(temp_dir)
            except OSError as e:
                logger.warning(f"Failed to cleanup temp directory {temp_dir}: {e}")
