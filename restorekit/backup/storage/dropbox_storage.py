"""
Dropbox storage.

Authenticates with a long-lived access token, or with a refresh token plus
app key/secret. Paths are rooted at "/" inside the app folder.
"""

import logging
import os
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Dict

import dropbox
from dropbox.exceptions import ApiError, AuthError, DropboxException
from dropbox.files import CommitInfo, UploadSessionCursor, WriteMode
from dropbox.sharing import SharedLinkSettings
from requests.exceptions import RequestException

from restorekit.errors import (
    AuthenticationError,
    ConfigurationError,
    NotFoundError,
    TransferError
)
from .base import expiration_seconds

logger = logging.getLogger(__name__)

UPLOAD_CHUNK_SIZE = 8 * 1024 * 1024  # 8MB
SINGLE_UPLOAD_LIMIT = 150 * 1024 * 1024  # Dropbox limit for files_upload


def _is_not_found(error: ApiError) -> bool:
    """Whether an ApiError is a path lookup 'not_found' for any endpoint."""
    err = error.error
    for check, getter in (('is_path', 'get_path'), ('is_path_lookup', 'get_path_lookup')):
        if hasattr(err, check) and getattr(err, check)():
            lookup = getattr(err, getter)()
            return hasattr(lookup, 'is_not_found') and lookup.is_not_found()
    return False


class DropboxStorage:
    """
    Handler for backups stored in Dropbox.

    Options: accessToken, or refreshToken + appKey + appSecret.
    """

    name = 'dropbox'
    supports_sharing = True

    def __init__(self):
        self.client = None

    def initialize(self, options: Dict[str, str]):
        if options.get('accessToken'):
            self.client = dropbox.Dropbox(oauth2_access_token=options['accessToken'])
        else:
            refresh_keys = ('refreshToken', 'appKey', 'appSecret')
            missing = [key for key in refresh_keys if not options.get(key)]
            if missing:
                raise ConfigurationError(
                    f"Missing required option(s) for '{self.name}' storage: "
                    f"accessToken, or {', '.join(missing)}",
                    missing_keys=['accessToken'] + missing
                )
            self.client = dropbox.Dropbox(
                oauth2_refresh_token=options['refreshToken'],
                app_key=options['appKey'],
                app_secret=options['appSecret']
            )

        try:
            self.client.users_get_current_account()
        except AuthError as e:
            raise AuthenticationError(f"Dropbox authentication failed: {e}") from e
        except (DropboxException, RequestException) as e:
            raise TransferError(f"Failed to connect to Dropbox: {e}") from e

    def _path(self, remote_path: str) -> str:
        return '/' + remote_path.lstrip('/')

    def upload(self, local_path: str, remote_path: str):
        path = self._path(remote_path)

        try:
            file_size = os.path.getsize(local_path)
            with open(local_path, 'rb') as f:
                if file_size <= SINGLE_UPLOAD_LIMIT:
                    self.client.files_upload(f.read(), path, mode=WriteMode.overwrite)
                else:
                    self._session_upload(f, path, file_size)
        except FileNotFoundError as e:
            raise NotFoundError(f"Local file not found: {local_path}") from e
        except AuthError as e:
            raise AuthenticationError(f"Dropbox authentication failed: {e}") from e
        except (DropboxException, RequestException, OSError) as e:
            raise TransferError(f"Dropbox upload failed for {path}: {e}") from e

    def _session_upload(self, f, path: str, file_size: int):
        session = self.client.files_upload_session_start(f.read(UPLOAD_CHUNK_SIZE))
        cursor = UploadSessionCursor(session_id=session.session_id, offset=f.tell())
        commit = CommitInfo(path=path, mode=WriteMode.overwrite)

        while file_size - f.tell() > UPLOAD_CHUNK_SIZE:
            self.client.files_upload_session_append_v2(f.read(UPLOAD_CHUNK_SIZE), cursor)
            cursor.offset = f.tell()

        self.client.files_upload_session_finish(f.read(UPLOAD_CHUNK_SIZE), cursor, commit)

    def download(self, remote_path: str, local_path: str):
        path = self._path(remote_path)

        try:
            Path(local_path).parent.mkdir(parents=True, exist_ok=True)
            self.client.files_download_to_file(local_path, path)
        except ApiError as e:
            if _is_not_found(e):
                raise NotFoundError(f"Backup not found in Dropbox: {path}") from e
            raise TransferError(f"Dropbox download failed for {path}: {e}") from e
        except (DropboxException, RequestException, OSError) as e:
            raise TransferError(f"Dropbox download failed for {path}: {e}") from e

    def exists(self, remote_path: str) -> bool:
        try:
            self.client.files_get_metadata(self._path(remote_path))
            return True
        except ApiError as e:
            if _is_not_found(e):
                return False
            raise TransferError(f"Dropbox lookup failed for {remote_path}: {e}") from e
        except (DropboxException, RequestException) as e:
            raise TransferError(f"Dropbox lookup failed for {remote_path}: {e}") from e

    def delete(self, remote_path: str):
        try:
            self.client.files_delete_v2(self._path(remote_path))
        except ApiError as e:
            if _is_not_found(e):
                return
            raise TransferError(f"Dropbox delete failed for {remote_path}: {e}") from e
        except (DropboxException, RequestException) as e:
            raise TransferError(f"Dropbox delete failed for {remote_path}: {e}") from e

    def generate_share_link(self, remote_path: str, expiration: timedelta) -> str:
        """
        Create a shared link for a file, reusing an existing one if present.

        Expiry is requested on the link; Dropbox only honours it on plans
        that support link expiration.
        """
        expiration_seconds(expiration)
        path = self._path(remote_path)
        expires = (datetime.now(timezone.utc) + expiration).replace(tzinfo=None, microsecond=0)

        try:
            try:
                link = self.client.sharing_create_shared_link_with_settings(
                    path, settings=SharedLinkSettings(expires=expires)
                )
                return link.url
            except ApiError as e:
                err = e.error
                if not (hasattr(err, 'is_shared_link_already_exists') and err.is_shared_link_already_exists()):
                    raise
                links = self.client.sharing_list_shared_links(path=path, direct_only=True).links
                if not links:
                    raise
                return links[0].url
        except (DropboxException, RequestException) as e:
            raise TransferError(f"Failed to create Dropbox share link for {path}: {e}") from e

    def release(self):
        if self.client is not None:
            self.client.close()
            self.client = None
