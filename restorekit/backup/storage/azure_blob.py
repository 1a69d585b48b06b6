"""
Azure Blob Storage.

The container is created on initialize when it does not exist. Share links
are SAS URLs and need the account key from the connection string.
"""

import logging
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Dict

from azure.core.exceptions import (
    AzureError,
    ClientAuthenticationError,
    ResourceExistsError,
    ResourceNotFoundError
)
from azure.storage.blob import BlobSasPermissions, BlobServiceClient, generate_blob_sas

from restorekit.errors import (
    AuthenticationError,
    ConfigurationError,
    NotFoundError,
    TransferError
)
from .base import expiration_seconds, require_options

logger = logging.getLogger(__name__)


class AzureBlobStorage:
    """
    Handler for backups stored in an Azure blob container.

    Required options: connectionString, containerName.
    """

    name = 'azure'
    supports_sharing = True

    def __init__(self):
        self.blob_service_client = None
        self.container_client = None
        self.container = None

    def initialize(self, options: Dict[str, str]):
        require_options(self.name, options, ('connectionString', 'containerName'))
        self.container = options['containerName']

        try:
            self.blob_service_client = BlobServiceClient.from_connection_string(options['connectionString'])
        except ValueError as e:
            raise ConfigurationError(f"Invalid Azure connection string: {e}") from e

        self.container_client = self.blob_service_client.get_container_client(self.container)

        try:
            self.container_client.create_container()
            logger.info(f"Created Azure container: {self.container}")
        except ResourceExistsError:
            pass
        except ClientAuthenticationError as e:
            raise AuthenticationError(f"Azure authentication failed: {e}") from e
        except AzureError as e:
            raise TransferError(f"Failed to open Azure container {self.container}: {e}") from e

    def upload(self, local_path: str, remote_path: str):
        try:
            with open(local_path, 'rb') as f:
                self.container_client.upload_blob(name=remote_path, data=f, overwrite=True)
        except FileNotFoundError as e:
            raise NotFoundError(f"Local file not found: {local_path}") from e
        except ClientAuthenticationError as e:
            raise AuthenticationError(f"Azure authentication failed: {e}") from e
        except (AzureError, OSError) as e:
            raise TransferError(f"Azure upload failed for {remote_path}: {e}") from e

    def download(self, remote_path: str, local_path: str):
        blob_client = self.container_client.get_blob_client(remote_path)

        try:
            stream = blob_client.download_blob()
            Path(local_path).parent.mkdir(parents=True, exist_ok=True)
            with open(local_path, 'wb') as f:
                stream.readinto(f)
        except ResourceNotFoundError as e:
            raise NotFoundError(f"Backup not found in Azure: {remote_path}") from e
        except (AzureError, OSError) as e:
            raise TransferError(f"Azure download failed for {remote_path}: {e}") from e

    def exists(self, remote_path: str) -> bool:
        try:
            return self.container_client.get_blob_client(remote_path).exists()
        except AzureError as e:
            raise TransferError(f"Azure lookup failed for {remote_path}: {e}") from e

    def delete(self, remote_path: str):
        try:
            self.container_client.delete_blob(remote_path)
        except ResourceNotFoundError:
            return
        except AzureError as e:
            raise TransferError(f"Azure delete failed for {remote_path}: {e}") from e

    def generate_share_link(self, remote_path: str, expiration: timedelta) -> str:
        """
        Read-only SAS URL for a blob.

        Raises:
            ConfigurationError: If the connection string carries no account key
        """
        expiration_seconds(expiration)

        credential = self.blob_service_client.credential
        account_key = getattr(credential, 'account_key', None)
        if not account_key:
            raise ConfigurationError("Azure share links need an AccountKey in the connection string")

        blob_client = self.container_client.get_blob_client(remote_path)
        sas_token = generate_blob_sas(
            account_name=self.blob_service_client.account_name,
            container_name=self.container,
            blob_name=remote_path,
            account_key=account_key,
            permission=BlobSasPermissions(read=True),
            expiry=datetime.now(timezone.utc) + expiration,
        )

        return f"{blob_client.url}?{sas_token}"

    def release(self):
        if self.blob_service_client is not None:
            self.blob_service_client.close()
            self.blob_service_client = None
            self.container_client = None
