"""
Storage backends for backup archives.

Supports:
- local: Local or mounted directory
- s3: AWS S3
- b2: Backblaze B2 (S3-compatible API)
- sftp: SSH server
- azure: Azure Blob Storage
- gcp: Google Cloud Storage
- gdrive: Google Drive
- dropbox: Dropbox
- github: GitHub repository contents
"""

from .base import StorageBackend, require_options, ensure_sharing, scoped
from .registry import StorageRegistry, default_registry

__all__ = [
    'StorageBackend',
    'StorageRegistry',
    'default_registry',
    'require_options',
    'ensure_sharing',
    'scoped'
]
