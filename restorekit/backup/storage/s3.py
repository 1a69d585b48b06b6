"""
AWS S3 storage.

Objects are stored with the remote path as key. Files above 100MB are sent
with a multipart upload in 10MB parts.
"""

import logging
import os
from datetime import timedelta
from pathlib import Path
from typing import Dict

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from restorekit.errors import AuthenticationError, ConfigurationError, NotFoundError, TransferError
from .base import expiration_seconds, require_options

logger = logging.getLogger(__name__)

MULTIPART_THRESHOLD = 100 * 1024 * 1024  # 100MB
MULTIPART_CHUNK_SIZE = 10 * 1024 * 1024  # 10MB
PRESIGN_MAX_SECONDS = 7 * 24 * 3600

_NOT_FOUND_CODES = ('404', 'NoSuchKey', 'NotFound')


def _error_code(error: ClientError) -> str:
    return str(error.response.get('Error', {}).get('Code', 'Unknown'))


class S3Storage:
    """
    Handler for backups stored in an AWS S3 bucket.

    Required options: accessKeyId, secretAccessKey, region, bucketName.
    """

    name = 's3'
    supports_sharing = True
    required_options = ('accessKeyId', 'secretAccessKey', 'region', 'bucketName')

    def __init__(self):
        self.s3_client = None
        self.bucket_name = None

    def initialize(self, options: Dict[str, str]):
        """
        Create the S3 client and verify the bucket is reachable.

        Raises:
            ConfigurationError: If options are missing or the bucket does not exist
            AuthenticationError: If access to the bucket is denied
            TransferError: If the service cannot be reached
        """
        require_options(self.name, options, self.required_options)
        self.bucket_name = options['bucketName']

        try:
            self.s3_client = self._create_client(options)
        except (BotoCoreError, ValueError) as e:
            raise ConfigurationError(f"Failed to initialize {self.name} client: {e}") from e

        self._verify_bucket()

    def _create_client(self, options: Dict[str, str]):
        return boto3.client(
            's3',
            aws_access_key_id=options['accessKeyId'],
            aws_secret_access_key=options['secretAccessKey'],
            region_name=options['region']
        )

    def _verify_bucket(self):
        try:
            self.s3_client.head_bucket(Bucket=self.bucket_name)
        except ClientError as e:
            error_code = _error_code(e)
            if error_code in ('404', 'NoSuchBucket'):
                raise ConfigurationError(f"Bucket does not exist: {self.bucket_name}") from e
            elif error_code in ('403', 'AccessDenied', 'InvalidAccessKeyId', 'SignatureDoesNotMatch'):
                raise AuthenticationError(f"Access denied to bucket: {self.bucket_name}") from e
            raise TransferError(f"{self.name} connection test failed ({error_code}): {e}") from e
        except BotoCoreError as e:
            raise TransferError(f"Failed to connect to {self.name}: {e}") from e

    def upload(self, local_path: str, remote_path: str):
        """
        Upload a file, replacing any object at the same key.

        Raises:
            NotFoundError: If the local file does not exist
            TransferError: If the upload fails
        """
        if not os.path.exists(local_path):
            raise NotFoundError(f"Local file not found: {local_path}")

        try:
            file_size = os.path.getsize(local_path)

            if file_size > MULTIPART_THRESHOLD:
                self._multipart_upload(local_path, remote_path)
            else:
                self._simple_upload(local_path, remote_path)

        except ClientError as e:
            raise TransferError(f"{self.name} upload failed ({_error_code(e)}): {e}") from e
        except (BotoCoreError, OSError) as e:
            raise TransferError(f"{self.name} upload failed: {e}") from e

    def _simple_upload(self, local_path: str, key: str):
        with open(local_path, 'rb') as f:
            self.s3_client.put_object(
                Bucket=self.bucket_name,
                Key=key,
                Body=f
            )

    def _multipart_upload(self, local_path: str, key: str):
        response = self.s3_client.create_multipart_upload(
            Bucket=self.bucket_name,
            Key=key
        )
        upload_id = response['UploadId']

        parts = []

        try:
            with open(local_path, 'rb') as f:
                part_number = 1

                while True:
                    data = f.read(MULTIPART_CHUNK_SIZE)
                    if not data:
                        break

                    response = self.s3_client.upload_part(
                        Bucket=self.bucket_name,
                        Key=key,
                        PartNumber=part_number,
                        UploadId=upload_id,
                        Body=data
                    )

                    parts.append({
                        'PartNumber': part_number,
                        'ETag': response['ETag']
                    })

                    part_number += 1

            self.s3_client.complete_multipart_upload(
                Bucket=self.bucket_name,
                Key=key,
                UploadId=upload_id,
                MultipartUpload={'Parts': parts}
            )

        except Exception:
            try:
                self.s3_client.abort_multipart_upload(
                    Bucket=self.bucket_name,
                    Key=key,
                    UploadId=upload_id
                )
            except (ClientError, BotoCoreError) as abort_error:
                logger.warning(f"Failed to abort multipart upload {upload_id}: {abort_error}")
            raise

    def download(self, remote_path: str, local_path: str):
        """
        Raises:
            NotFoundError: If no object exists at remote_path
            TransferError: If the download fails
        """
        try:
            response = self.s3_client.get_object(Bucket=self.bucket_name, Key=remote_path)
        except ClientError as e:
            if _error_code(e) in _NOT_FOUND_CODES:
                raise NotFoundError(f"Backup not found in {self.name}: {remote_path}") from e
            raise TransferError(f"{self.name} download failed ({_error_code(e)}): {e}") from e
        except BotoCoreError as e:
            raise TransferError(f"{self.name} download failed: {e}") from e

        try:
            Path(local_path).parent.mkdir(parents=True, exist_ok=True)
            with open(local_path, 'wb') as f:
                for chunk in response['Body'].iter_chunks(MULTIPART_CHUNK_SIZE):
                    f.write(chunk)
        except (BotoCoreError, OSError) as e:
            raise TransferError(f"{self.name} download failed: {e}") from e

    def exists(self, remote_path: str) -> bool:
        try:
            self.s3_client.head_object(Bucket=self.bucket_name, Key=remote_path)
            return True
        except ClientError as e:
            if _error_code(e) in _NOT_FOUND_CODES:
                return False
            raise TransferError(f"{self.name} lookup failed ({_error_code(e)}): {e}") from e
        except BotoCoreError as e:
            raise TransferError(f"{self.name} lookup failed: {e}") from e

    def delete(self, remote_path: str):
        """Delete an object. S3 treats a missing key as success."""
        try:
            self.s3_client.delete_object(
                Bucket=self.bucket_name,
                Key=remote_path
            )
        except ClientError as e:
            if _error_code(e) in _NOT_FOUND_CODES:
                return
            raise TransferError(f"{self.name} delete failed ({_error_code(e)}): {e}") from e
        except BotoCoreError as e:
            raise TransferError(f"Failed to delete from {self.name}: {e}") from e

    def generate_share_link(self, remote_path: str, expiration: timedelta) -> str:
        """
        Presigned GET URL for an object.

        Raises:
            ConfigurationError: If the expiration is not within 7 days
            TransferError: If signing fails
        """
        expires_in = expiration_seconds(expiration, PRESIGN_MAX_SECONDS)

        try:
            return self.s3_client.generate_presigned_url(
                'get_object',
                Params={'Bucket': self.bucket_name, 'Key': remote_path},
                ExpiresIn=expires_in
            )
        except (ClientError, BotoCoreError) as e:
            raise TransferError(f"Failed to generate {self.name} share link: {e}") from e

    def release(self):
        if self.s3_client is not None:
            self.s3_client.close()
            self.s3_client = None
