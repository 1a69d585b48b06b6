"""
Retention policy enforcement for backups.

Deletes old backups of each source path from their storage backend and
drops them from the state store. For every path the newest
``keep_last`` backups are kept, plus any younger than ``max_age_days``;
the newest backup is never deleted.
"""

import logging
from collections import defaultdict
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

from restorekit.config import RetentionPolicy, Settings
from restorekit.errors import RestoreKitError
from restorekit.models import BackupRecord
from restorekit.state import StateStore
from .storage import StorageRegistry

logger = logging.getLogger(__name__)


def select_backups_to_delete(
    records: List[BackupRecord],
    policy: RetentionPolicy,
    now: Optional[datetime] = None
) -> List[BackupRecord]:
    """
    Pick the backups a policy allows to delete.

    Args:
        records: Backups of one source path, any order
        policy: Retention policy
        now: Reference time (default: current UTC time)

    Returns:
        Records to delete, newest first
    """
    ordered = sorted((r for r in records if r.remote_path), key=lambda r: r.timestamp, reverse=True)
    if len(ordered) <= 1:
        return []

    keep_last = max(1, policy.keep_last)
    keep = {r.remote_path for r in ordered[:keep_last]}

    if policy.max_age_days > 0:
        cutoff = (now or datetime.now(timezone.utc)) - timedelta(days=policy.max_age_days)
        keep.update(r.remote_path for r in ordered if r.timestamp >= cutoff)

    return [r for r in ordered if r.remote_path not in keep]


class RetentionManager:
    """
    Manages retention policy enforcement for backed-up paths.

    Deletions are grouped by storage type with one backend instance per
    group. A backup already missing from storage is simply dropped from
    state.
    """

    def __init__(self, settings: Settings, registry: StorageRegistry, state: StateStore):
        self.settings = settings
        self.registry = registry
        self.state = state

    @property
    def policy(self) -> RetentionPolicy:
        return self.settings.retention

    def apply(self, source_path: str, now: Optional[datetime] = None) -> int:
        """
        Enforce the retention policy for one path.

        Returns:
            Number of backups removed from state
        """
        if not self.policy.enabled:
            return 0

        to_delete = select_backups_to_delete(self.state.history(source_path), self.policy, now)
        if not to_delete:
            return 0

        logger.info(f"Retention: {source_path} will delete {len(to_delete)} backup(s)")

        by_storage: Dict[str, List[BackupRecord]] = defaultdict(list)
        for record in to_delete:
            by_storage[(record.storage_type or self.settings.global_storage_type).lower()].append(record)

        removed = []
        for storage_type, records in by_storage.items():
            try:
                with self.registry.open(storage_type, self.settings.options_for(storage_type)) as storage:
                    for record in records:
                        if self._delete_backup(storage, record):
                            removed.append(record.remote_path)
            except RestoreKitError as e:
                logger.error(f"Retention: failed to open '{storage_type}' storage for {source_path}: {e}")

        return self.state.remove(source_path, removed)

    def _delete_backup(self, storage, record: BackupRecord) -> bool:
        try:
            if storage.exists(record.remote_path):
                storage.delete(record.remote_path)
                logger.info(f"Retention: deleted backup: {record.remote_path}")
            else:
                logger.warning(f"Retention: backup missing in storage (will drop from state): {record.remote_path}")
            return True
        except RestoreKitError as e:
            logger.warning(f"Retention: failed deleting {record.remote_path}: {e}")
            return False

    def apply_all(self, now: Optional[datetime] = None) -> Dict[str, Any]:
        """
        Enforce retention for every recorded path.

        Returns:
            Dict with summary of cleanup operations:
            {
                'paths_processed': int,
                'deleted': int,
                'errors': List[str]
            }
        """
        summary = {
            'paths_processed': 0,
            'deleted': 0,
            'errors': []
        }

        if not self.policy.enabled:
            return summary

        for path in self.state.paths():
            try:
                summary['deleted'] += self.apply(path, now)
                summary['paths_processed'] += 1
            except RestoreKitError as e:
                error_msg = f"Failed to enforce retention for {path}: {e}"
                logger.error(error_msg)
                summary['errors'].append(error_msg)

        logger.info(
            f"Retention enforcement complete. "
            f"Paths: {summary['paths_processed']}, "
            f"Deleted: {summary['deleted']}, "
            f"Errors: {len(summary['errors'])}"
        )

        return summary
