from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional

from sqlalchemy import BigInteger, Boolean, Column, DateTime, Integer, String
from sqlalchemy.orm import declarative_base


Base = declarative_base()


class BackupHistory(Base):
    """One successful backup of a watched directory"""
    __tablename__ = 'backup_history'

    id = Column(Integer, primary_key=True)
    source_path = Column(String(1024), nullable=False, index=True)
    remote_path = Column(String(1024), nullable=False)
    storage_type = Column(String(32), nullable=False)
    created_at = Column(DateTime, nullable=False)  # UTC, stored naive
    size_original = Column(BigInteger, nullable=False, default=0)
    size_stored = Column(BigInteger, nullable=False, default=0)
    encrypted = Column(Boolean, nullable=False, default=False)
    file_count = Column(Integer)

    def __repr__(self):
        return f'<BackupHistory {self.source_path} -> {self.remote_path}>'


@dataclass(frozen=True)
class BackupRecord:
    """Result of a fully successful backup."""
    source_path: str
    remote_path: str
    timestamp: datetime
    size_original: int
    size_stored: int
    storage_type: str
    encrypted: bool = False
    file_count: Optional[int] = None

    @classmethod
    def from_row(cls, row: BackupHistory) -> 'BackupRecord':
        return cls(
            source_path=row.source_path,
            remote_path=row.remote_path,
            timestamp=row.created_at.replace(tzinfo=timezone.utc),
            size_original=row.size_original or 0,
            size_stored=row.size_stored or 0,
            storage_type=row.storage_type,
            encrypted=bool(row.encrypted),
            file_count=row.file_count
        )

    def to_row(self) -> BackupHistory:
        return BackupHistory(
            source_path=self.source_path,
            remote_path=self.remote_path,
            storage_type=self.storage_type,
            created_at=self.timestamp.astimezone(timezone.utc).replace(tzinfo=None),
            size_original=self.size_original,
            size_stored=self.size_stored,
            encrypted=self.encrypted,
            file_count=self.file_count
        )


@dataclass(frozen=True)
class ShareLink:
    remote_path: str
    url: str
    expires_at: datetime

    @classmethod
    def expiring_in(cls, remote_path: str, url: str, expiration: timedelta) -> 'ShareLink':
        return cls(remote_path=remote_path, url=url, expires_at=datetime.now(timezone.utc) + expiration)


@dataclass(frozen=True)
class RestoreResult:
    backup_path: str
    target_dir: str
    files_restored: int
    bytes_restored: int
