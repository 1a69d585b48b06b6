"""
Share links for single files.

A file is uploaded (unencrypted) to shared/{random id}/{filename} and a
time-limited link to it is returned. If the link cannot be produced the
uploaded object is removed again.
"""

import logging
import os
import uuid
from datetime import timedelta

from restorekit.config import Settings
from restorekit.errors import NotFoundError, UnsupportedOperationError
from restorekit.models import ShareLink
from restorekit.backup.storage import StorageRegistry

logger = logging.getLogger(__name__)

DEFAULT_EXPIRATION = timedelta(days=7)


class ShareLinkIssuer:
    """Uploads files and issues expiring share links for them."""

    def __init__(self, settings: Settings, registry: StorageRegistry):
        self.settings = settings
        self.registry = registry

    def share_file(self, local_path: str, storage_type: str, expiration: timedelta = DEFAULT_EXPIRATION) -> ShareLink:
        """
        Upload a file and return a link to it.

        Args:
            local_path: File to share
            storage_type: Backend name; must support sharing
            expiration: Link lifetime

        Returns:
            ShareLink with the remote path, URL and expiry time

        Raises:
            NotFoundError: If local_path is not a file
            UnsupportedOperationError: If the backend cannot share (nothing uploaded)
        """
        if not os.path.isfile(local_path):
            raise NotFoundError(f"File not found: {local_path}")

        if not self.registry.supports_sharing(storage_type):
            raise UnsupportedOperationError(f"Storage '{storage_type}' does not support share links")

        filename = os.path.basename(local_path)
        remote_path = f"shared/{uuid.uuid4().hex}/{filename}"

        with self.registry.open(storage_type, self.settings.options_for(storage_type)) as storage:
            storage.upload(local_path, remote_path)
            logger.info(f"Uploaded {filename} for sharing to '{storage.name}': {remote_path}")

            try:
                url = storage.generate_share_link(remote_path, expiration)
            except Exception:
                self._discard(storage, remote_path)
                raise

        return ShareLink.expiring_in(remote_path, url, expiration)

    def _discard(self, storage, remote_path: str):
        try:
            storage.delete(remote_path)
        except Exception as e:
            logger.warning(f"Failed to remove shared upload {remote_path}: {e}")
