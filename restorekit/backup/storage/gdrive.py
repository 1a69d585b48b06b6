"""Google Drive storage over OAuth."""

import logging
from contextlib import contextmanager
from datetime import timedelta
from pathlib import Path
from typing import Dict, List, Optional

import httplib2
from google.auth import exceptions as auth_exceptions
from google.oauth2.credentials import Credentials
from googleapiclient.discovery import build
from googleapiclient.errors import HttpError
from googleapiclient.http import MediaFileUpload, MediaIoBaseDownload

from restorekit.errors import AuthenticationError, NotFoundError, TransferError
from .base import ensure_sharing, require_options

logger = logging.getLogger(__name__)

DRIVE_SCOPES = ['https://www.googleapis.com/auth/drive.file']
TOKEN_URI = 'https://oauth2.googleapis.com/token'
FOLDER_MIME_TYPE = 'application/vnd.google-apps.folder'
DEFAULT_FOLDER_NAME = 'ReStore Backups'


def _quote(value: str) -> str:
    return value.replace('\\', '\\\\').replace("'", "\\'")


class GoogleDriveStorage:
    """
    Backups stored as files in a Drive folder tree.

    The remote path maps to nested folders under a root folder
    (``backup_folder_name``); an upload to an existing name replaces the
    file content.

    Required options: client_id, client_secret, refresh_token.
    """

    name = 'gdrive'
    supports_sharing = False

    def __init__(self):
        self.service = None
        self.root_folder_id = None

    def initialize(self, options: Dict[str, str]):
        require_options(self.name, options, ('client_id', 'client_secret', 'refresh_token'))

        creds = Credentials(
            token=options.get('access_token') or None,
            refresh_token=options['refresh_token'],
            client_id=options['client_id'],
            client_secret=options['client_secret'],
            token_uri=TOKEN_URI,
            scopes=DRIVE_SCOPES,
        )

        folder_name = options.get('backup_folder_name') or DEFAULT_FOLDER_NAME

        with self._errors('open backup folder'):
            self.service = build('drive', 'v3', credentials=creds, cache_discovery=False)
            self.root_folder_id = self._ensure_folder('root', folder_name)

    @contextmanager
    def _errors(self, action: str):
        """Translate Drive API, OAuth and transport errors raised in the block."""
        try:
            yield
        except auth_exceptions.RefreshError as e:
            raise AuthenticationError(f"Google Drive token refresh failed: {e}") from e
        except HttpError as e:
            if getattr(e.resp, 'status', None) in (401, 403):
                raise AuthenticationError(f"Google Drive refused to {action}: {e}") from e
            raise TransferError(f"Google Drive failed to {action}: {e}") from e
        except (auth_exceptions.TransportError, httplib2.HttpLib2Error, OSError) as e:
            raise TransferError(f"Google Drive failed to {action}: {e}") from e

    def _find(self, parent_id: str, name: str, folder: bool = False) -> Optional[str]:
        query = f"name='{_quote(name)}' and '{parent_id}' in parents and trashed=false"
        if folder:
            query += f" and mimeType='{FOLDER_MIME_TYPE}'"
        else:
            query += f" and mimeType!='{FOLDER_MIME_TYPE}'"

        result = self.service.files().list(q=query, fields='files(id)', spaces='drive').execute()
        files = result.get('files', [])
        return files[0]['id'] if files else None

    def _ensure_folder(self, parent_id: str, name: str) -> str:
        """Find or create a folder in Google Drive. Returns folder ID."""
        folder_id = self._find(parent_id, name, folder=True)
        if folder_id:
            return folder_id

        metadata = {
            'name': name,
            'mimeType': FOLDER_MIME_TYPE,
            'parents': [parent_id],
        }
        folder = self.service.files().create(body=metadata, fields='id').execute()
        return folder['id']

    def _split(self, remote_path: str) -> List[str]:
        return [part for part in remote_path.strip('/').split('/') if part]

    def _resolve_folder(self, folders: List[str], create: bool) -> Optional[str]:
        parent_id = self.root_folder_id
        for name in folders:
            if create:
                parent_id = self._ensure_folder(parent_id, name)
            else:
                parent_id = self._find(parent_id, name, folder=True)
                if parent_id is None:
                    return None
        return parent_id

    def _file_id(self, remote_path: str) -> Optional[str]:
        parts = self._split(remote_path)
        parent_id = self._resolve_folder(parts[:-1], create=False)
        if parent_id is None:
            return None
        return self._find(parent_id, parts[-1])

    def upload(self, local_path: str, remote_path: str):
        if not Path(local_path).is_file():
            raise NotFoundError(f"Local file not found: {local_path}")

        parts = self._split(remote_path)

        with self._errors(f"upload {remote_path}"):
            parent_id = self._resolve_folder(parts[:-1], create=True)
            existing_id = self._find(parent_id, parts[-1])
            media = MediaFileUpload(local_path, resumable=True)

            if existing_id:
                self.service.files().update(fileId=existing_id, media_body=media).execute()
            else:
                metadata = {'name': parts[-1], 'parents': [parent_id]}
                self.service.files().create(body=metadata, media_body=media, fields='id').execute()

    def download(self, remote_path: str, local_path: str):
        with self._errors(f"download {remote_path}"):
            file_id = self._file_id(remote_path)
            if file_id is None:
                raise NotFoundError(f"Backup not found in Google Drive: {remote_path}")

            Path(local_path).parent.mkdir(parents=True, exist_ok=True)
            request = self.service.files().get_media(fileId=file_id)
            with open(local_path, 'wb') as fh:
                downloader = MediaIoBaseDownload(fh, request)
                done = False
                while not done:
                    _, done = downloader.next_chunk()

    def exists(self, remote_path: str) -> bool:
        with self._errors(f"look up {remote_path}"):
            return self._file_id(remote_path) is not None

    def delete(self, remote_path: str):
        with self._errors(f"delete {remote_path}"):
            file_id = self._file_id(remote_path)
            if file_id is None:
                return
            try:
                self.service.files().delete(fileId=file_id).execute()
            except HttpError as e:
                # Already gone
                if getattr(e.resp, 'status', None) != 404:
                    raise

    def generate_share_link(self, remote_path: str, expiration: timedelta) -> str:
        ensure_sharing(self)

    def release(self):
        if self.service is not None:
            self.service.close()
            self.service = None
