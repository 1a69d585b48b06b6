"""
Backblaze B2 storage through its S3-compatible API.
"""

from typing import Dict
from urllib.parse import urlparse

import boto3
from botocore.config import Config as BotoConfig

from .s3 import S3Storage


def _region_from_endpoint(service_url: str) -> str:
    """s3.us-west-004.backblazeb2.com -> us-west-004"""
    host = urlparse(service_url).hostname or service_url
    parts = host.split('.')
    if len(parts) > 2 and parts[0] == 's3':
        return parts[1]
    return 'us-east-1'


class B2Storage(S3Storage):
    """
    Handler for backups stored in a Backblaze B2 bucket.

    Required options: keyId, applicationKey, serviceUrl, bucketName.
    Addressing is path style, as B2 expects.
    """

    name = 'b2'
    required_options = ('keyId', 'applicationKey', 'serviceUrl', 'bucketName')

    def _create_client(self, options: Dict[str, str]):
        service_url = options['serviceUrl']
        if '://' not in service_url:
            service_url = f'https://{service_url}'

        return boto3.client(
            's3',
            endpoint_url=service_url,
            aws_access_key_id=options['keyId'],
            aws_secret_access_key=options['applicationKey'],
            region_name=options.get('region') or _region_from_endpoint(service_url),
            config=BotoConfig(s3={'addressing_style': 'path'})
        )
