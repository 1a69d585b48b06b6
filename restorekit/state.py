"""
Persisted backup state.

The StateStore keeps one row per successful backup in a SQLite database.
All rows are read once at startup into an in-memory view; every write is a
single transaction, so a crash can never leave a partially written record.
An unreadable database is moved aside and replaced by an empty one.
"""

import logging
import os
import threading
from dataclasses import replace
from datetime import timedelta
from typing import Dict, Iterable, List, Optional

from sqlalchemy import create_engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from restorekit.config import normalize_path
from restorekit.errors import StateCorruptionError, StateError
from restorekit.migrations import init_database_schema
from restorekit.models import BackupHistory, BackupRecord

logger = logging.getLogger(__name__)


class StateStore:
    """
    Durable record of the last successful backups per source path.

    Safe to share between threads: writes are serialized by a lock and the
    in-memory view is only replaced while holding it.
    """

    def __init__(self, db_path: str, echo: bool = False):
        """
        Args:
            db_path: Path of the SQLite database file
            echo: Log emitted SQL (development only)
        """
        self.db_path = db_path
        self.echo = echo
        self._engine = None
        self._session_factory = None
        self._records: Dict[str, List[BackupRecord]] = {}
        self._lock = threading.Lock()
        self._loaded = False

    def load(self):
        """
        Read the persisted state. Safe to call more than once.

        A corrupt or unreadable database never fails startup: it is renamed
        to ``<db_path>.corrupt`` and the store starts empty.
        """
        with self._lock:
            self._load_locked()

    def _load_locked(self):
        if self._loaded:
            return

        try:
            self._open()
            self._records = self._read_all()
        except StateCorruptionError as e:
            logger.warning(f"State database unreadable, starting with empty state: {e}")
            self._recover()

        self._loaded = True
        logger.info(f"Loaded state for {len(self._records)} path(s) from {self.db_path}")

    def _open(self):
        directory = os.path.dirname(os.path.abspath(self.db_path))
        os.makedirs(directory, exist_ok=True)

        self._engine = create_engine(f'sqlite:///{self.db_path}', echo=self.echo)
        self._session_factory = sessionmaker(bind=self._engine, expire_on_commit=False)

        try:
            init_database_schema(self._engine)
        except SQLAlchemyError as e:
            raise StateCorruptionError(f"Failed to open state database: {e}") from e

    def _read_all(self) -> Dict[str, List[BackupRecord]]:
        session = self._session_factory()
        try:
            rows = session.query(BackupHistory).order_by(BackupHistory.created_at, BackupHistory.id).all()
            records: Dict[str, List[BackupRecord]] = {}
            for row in rows:
                records.setdefault(row.source_path, []).append(BackupRecord.from_row(row))
            return records
        except (SQLAlchemyError, AttributeError, TypeError) as e:
            raise StateCorruptionError(f"Failed to read state database: {e}") from e
        finally:
            session.close()

    def _recover(self):
        if self._engine is not None:
            self._engine.dispose()
            self._engine = None

        if os.path.exists(self.db_path):
            os.replace(self.db_path, f"{self.db_path}.corrupt")

        try:
            self._open()
        except StateCorruptionError as e:
            raise StateError(f"Failed to create fresh state database: {e}") from e
        self._records = {}

    def record(self, source_path: str, record: BackupRecord) -> BackupRecord:
        """
        Persist a successful backup for a path.

        The stored timestamp is forced strictly after the path's previous
        record so history stays time-ordered.

        Returns:
            The record as stored

        Raises:
            StateError: If the write fails (nothing is stored)
        """
        key = normalize_path(source_path)

        with self._lock:
            self._load_locked()

            history = self._records.get(key, [])
            if record.source_path != key:
                record = replace(record, source_path=key)
            if history and record.timestamp <= history[-1].timestamp:
                record = replace(record, timestamp=history[-1].timestamp + timedelta(microseconds=1))

            session = self._session_factory()
            try:
                session.add(record.to_row())
                session.commit()
            except SQLAlchemyError as e:
                session.rollback()
                raise StateError(f"Failed to record backup for {key}: {e}") from e
            finally:
                session.close()

            self._records[key] = history + [record]

        return record

    def last_record(self, source_path: str) -> Optional[BackupRecord]:
        """Most recent successful backup for a path, or None."""
        history = self.history(source_path)
        return history[-1] if history else None

    def history(self, source_path: str) -> List[BackupRecord]:
        """All recorded backups for a path, oldest first."""
        with self._lock:
            self._load_locked()
            return list(self._records.get(normalize_path(source_path), []))

    def paths(self) -> List[str]:
        """Source paths that have at least one recorded backup."""
        with self._lock:
            self._load_locked()
            return [path for path, history in self._records.items() if history]

    def remove(self, source_path: str, remote_paths: Iterable[str]) -> int:
        """
        Drop records whose remote objects were deleted.

        Returns:
            Number of records removed
        """
        key = normalize_path(source_path)
        targets = set(remote_paths)
        if not targets:
            return 0

        with self._lock:
            self._load_locked()

            session = self._session_factory()
            try:
                removed = session.query(BackupHistory).filter(
                    BackupHistory.source_path == key,
                    BackupHistory.remote_path.in_(targets)
                ).delete(synchronize_session=False)
                session.commit()
            except SQLAlchemyError as e:
                session.rollback()
                raise StateError(f"Failed to remove records for {key}: {e}") from e
            finally:
                session.close()

            self._records[key] = [r for r in self._records.get(key, []) if r.remote_path not in targets]

        return removed

    def close(self):
        """Release the database engine."""
        with self._lock:
            if self._engine is not None:
                self._engine.dispose()
                self._engine = None
            self._loaded = False
