"""
Google Cloud Storage.

Uses Application Default Credentials unless a service account JSON file is
given. V4 signed URLs can only be produced with that explicit key file.
"""

import logging
from datetime import timedelta
from pathlib import Path
from typing import Dict

from google.api_core import exceptions as gcloud_exceptions
from google.auth import exceptions as auth_exceptions
from google.cloud import storage as gcs

from restorekit.errors import (
    AuthenticationError,
    ConfigurationError,
    NotFoundError,
    TransferError
)
from .base import expiration_seconds, require_options

logger = logging.getLogger(__name__)

SIGNED_URL_MAX_SECONDS = 7 * 24 * 3600


class GCSStorage:
    """
    Handler for backups stored in a Google Cloud Storage bucket.

    Required options: bucketName. Optional: credentialPath, projectId.
    """

    name = 'gcp'
    supports_sharing = True

    def __init__(self):
        self.storage_client = None
        self.bucket = None
        self.has_signing_key = False

    def initialize(self, options: Dict[str, str]):
        require_options(self.name, options, ('bucketName',))

        credential_path = options.get('credentialPath')
        project_id = options.get('projectId') or None

        try:
            if credential_path:
                self.storage_client = gcs.Client.from_service_account_json(
                    str(Path(credential_path).expanduser()), project=project_id
                )
                self.has_signing_key = True
            else:
                self.storage_client = gcs.Client(project=project_id)
        except FileNotFoundError as e:
            raise ConfigurationError(f"GCP credential file not found: {credential_path}") from e
        except auth_exceptions.DefaultCredentialsError as e:
            raise AuthenticationError(f"GCP credentials unavailable: {e}") from e
        except ValueError as e:
            raise ConfigurationError(f"Invalid GCP credentials: {e}") from e

        self.bucket = self.storage_client.bucket(options['bucketName'])

    def upload(self, local_path: str, remote_path: str):
        try:
            self.bucket.blob(remote_path).upload_from_filename(local_path)
        except FileNotFoundError as e:
            raise NotFoundError(f"Local file not found: {local_path}") from e
        except (gcloud_exceptions.Unauthorized, gcloud_exceptions.Forbidden) as e:
            raise AuthenticationError(f"GCP access denied: {e}") from e
        except (gcloud_exceptions.GoogleAPIError, OSError) as e:
            raise TransferError(f"GCP upload failed for {remote_path}: {e}") from e

    def download(self, remote_path: str, local_path: str):
        try:
            Path(local_path).parent.mkdir(parents=True, exist_ok=True)
            self.bucket.blob(remote_path).download_to_filename(local_path)
        except gcloud_exceptions.NotFound as e:
            raise NotFoundError(f"Backup not found in GCP: {remote_path}") from e
        except (gcloud_exceptions.GoogleAPIError, OSError) as e:
            raise TransferError(f"GCP download failed for {remote_path}: {e}") from e

    def exists(self, remote_path: str) -> bool:
        try:
            return self.bucket.blob(remote_path).exists()
        except gcloud_exceptions.GoogleAPIError as e:
            raise TransferError(f"GCP lookup failed for {remote_path}: {e}") from e

    def delete(self, remote_path: str):
        try:
            self.bucket.blob(remote_path).delete()
        except gcloud_exceptions.NotFound:
            return
        except gcloud_exceptions.GoogleAPIError as e:
            raise TransferError(f"GCP delete failed for {remote_path}: {e}") from e

    def generate_share_link(self, remote_path: str, expiration: timedelta) -> str:
        """
        V4 signed GET URL for a blob.

        Raises:
            ConfigurationError: If no credentialPath was configured
        """
        expiration_seconds(expiration, SIGNED_URL_MAX_SECONDS)

        if not self.has_signing_key:
            raise ConfigurationError("GCP share links need 'credentialPath' pointing to a service account key")

        try:
            return self.bucket.blob(remote_path).generate_signed_url(
                version='v4',
                expiration=expiration,
                method='GET',
            )
        except (gcloud_exceptions.GoogleAPIError, auth_exceptions.GoogleAuthError) as e:
            raise TransferError(f"Failed to sign GCP URL for {remote_path}: {e}") from e

    def release(self):
        if self.storage_client is not None:
            self.storage_client.close()
            self.storage_client = None
            self.bucket = None
