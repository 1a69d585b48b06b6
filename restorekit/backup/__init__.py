"""
Backup module for restorekit.

This module handles the core backup functionality including:
- Archiving and compression
- Storage backends and their registry
- Backup and restore orchestration
- Retention policy enforcement
"""

from .executor import BackupEngine
from .restore import RestoreEngine
from .compression import create_archive, extract_archive
from .storage import StorageRegistry, default_registry
from .retention import RetentionManager

__all__ = [
    'BackupEngine',
    'RestoreEngine',
    'create_archive',
    'extract_archive',
    'StorageRegistry',
    'default_registry',
    'RetentionManager'
]
