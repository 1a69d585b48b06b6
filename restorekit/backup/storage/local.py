"""
Local filesystem storage.

Stores objects under a base directory, using the remote path as the
relative file path: {base_path}/backups/{dir}/{filename}
"""

import os
import shutil
from datetime import timedelta
from pathlib import Path
from typing import Dict

from restorekit.errors import NotFoundError, TransferError
from .base import ensure_sharing, require_options


class LocalStorage:
    """Handler for storing backups in a local (or mounted) directory."""

    name = 'local'
    supports_sharing = False

    def __init__(self):
        self.base_path = None

    def initialize(self, options: Dict[str, str]):
        """
        Args:
            options: Must contain 'path', the base directory for stored objects

        Raises:
            ConfigurationError: If 'path' is missing
            TransferError: If the base directory cannot be created
        """
        require_options(self.name, options, ('path',))
        self.base_path = Path(options['path']).expanduser()

        try:
            self.base_path.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise TransferError(f"Failed to create local storage directory: {e}") from e

    def _full_path(self, remote_path: str) -> Path:
        return self.base_path / remote_path.lstrip('/')

    def upload(self, local_path: str, remote_path: str):
        if not os.path.exists(local_path):
            raise NotFoundError(f"Local file not found: {local_path}")

        dest_path = self._full_path(remote_path)

        try:
            dest_path.parent.mkdir(parents=True, exist_ok=True)
            shutil.copy2(local_path, dest_path)
        except PermissionError as e:
            raise TransferError(f"Permission denied writing to {dest_path}: {e}") from e
        except OSError as e:
            raise TransferError(f"Failed to store locally: {e}") from e

    def download(self, remote_path: str, local_path: str):
        source_path = self._full_path(remote_path)
        if not source_path.is_file():
            raise NotFoundError(f"Backup not found in local storage: {remote_path}")

        try:
            Path(local_path).parent.mkdir(parents=True, exist_ok=True)
            shutil.copy2(source_path, local_path)
        except OSError as e:
            raise TransferError(f"Failed to copy {remote_path} from local storage: {e}") from e

    def exists(self, remote_path: str) -> bool:
        return self._full_path(remote_path).is_file()

    def delete(self, remote_path: str):
        full_path = self._full_path(remote_path)

        try:
            if full_path.exists():
                full_path.unlink()
        except PermissionError as e:
            raise TransferError(f"Permission denied deleting {full_path}: {e}") from e
        except OSError as e:
            raise TransferError(f"Failed to delete local file: {e}") from e

    def generate_share_link(self, remote_path: str, expiration: timedelta) -> str:
        ensure_sharing(self)

    def release(self):
        """Local storage holds no connections."""
        pass

    def get_full_path(self, remote_path: str) -> str:
        """
        Get full filesystem path of a stored object.

        Args:
            remote_path: Path relative to the base directory

        Returns:
            Full filesystem path
        """
        return str(self._full_path(remote_path))
