import os
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional

from restorekit.errors import ConfigurationError


ARCHIVE_FORMATS = ('zip', 'tar', 'tar.gz', 'tar.bz2', 'tar.xz')


def normalize_path(path: str) -> str:
    """Return an absolute, user-expanded path without a trailing separator."""
    return os.path.abspath(os.path.expanduser(str(path)))


class Config:
    """Base configuration"""

    DEBUG = False

    # Storage locations
    DATA_DIR = os.environ.get('RESTOREKIT_DATA_DIR') or os.path.join(os.path.expanduser('~'), '.restorekit')
    STATE_DB = os.environ.get('RESTOREKIT_STATE_DB') or os.path.join(DATA_DIR, 'state.db')
    TEMP_DIR = os.environ.get('RESTOREKIT_TEMP_DIR') or os.path.join(DATA_DIR, 'temp')
    LOG_DIR = os.environ.get('RESTOREKIT_LOG_DIR') or os.path.join(DATA_DIR, 'logs')

    # Database
    SQLALCHEMY_ECHO = False

    # Watch mode
    DEBOUNCE_SECONDS = float(os.environ.get('RESTOREKIT_DEBOUNCE_SECONDS', '10'))

    # Scheduler
    SCHEDULER_TIMEZONE = 'UTC'
    RETENTION_CRON_HOUR = 2


class DevelopmentConfig(Config):
    """Development configuration"""
    DEBUG = True
    SQLALCHEMY_ECHO = True

    # Use local data directory for development
    BASE_DIR = os.path.abspath(os.path.dirname(os.path.dirname(__file__)))
    DATA_DIR = os.path.join(BASE_DIR, 'data')
    STATE_DB = os.path.join(DATA_DIR, 'state.db')
    TEMP_DIR = os.path.join(DATA_DIR, 'temp')
    LOG_DIR = os.path.join(DATA_DIR, 'logs')
    DEBOUNCE_SECONDS = 2.0


class ProductionConfig(Config):
    """Production configuration"""
    DEBUG = False


# Configuration dictionary
config = {
    'development': DevelopmentConfig,
    'production': ProductionConfig,
    'default': ProductionConfig
}


@dataclass(frozen=True)
class WatchTarget:
    """A watched directory and the backend its backups go to."""
    path: str
    storage_type: Optional[str] = None


@dataclass(frozen=True)
class RetentionPolicy:
    enabled: bool = False
    keep_last: int = 10
    max_age_days: int = 30


@dataclass
class Settings:
    """
    Resolved settings consumed by the engines.

    Built by the caller, usually from an already-parsed JSON document via
    ``Settings.from_mapping``. Storage option maps are keyed by backend name.
    """
    global_storage_type: str = 'local'
    watch_targets: List[WatchTarget] = field(default_factory=list)
    component_storage: Dict[str, str] = field(default_factory=dict)
    encryption_enabled: bool = False
    storage_options: Dict[str, Dict[str, str]] = field(default_factory=dict)
    archive_format: str = 'zip'
    compress: bool = True
    excluded_patterns: List[str] = field(default_factory=list)
    excluded_paths: List[str] = field(default_factory=list)
    max_file_size_mb: Optional[int] = None
    retention: RetentionPolicy = field(default_factory=RetentionPolicy)
    debounce_seconds: float = 10.0

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> 'Settings':
        """
        Build settings from a plain mapping.

        Args:
            data: Parsed settings document

        Returns:
            Settings instance

        Raises:
            ConfigurationError: If a value has the wrong shape
        """
        targets = []
        for item in data.get('watch', []) or []:
            if isinstance(item, str):
                targets.append(WatchTarget(path=normalize_path(item)))
            elif isinstance(item, Mapping) and item.get('path'):
                targets.append(WatchTarget(
                    path=normalize_path(item['path']),
                    storage_type=item.get('storage_type') or None
                ))
            else:
                raise ConfigurationError(f"Invalid watch entry: {item!r}")

        storage_options = {}
        for name, options in (data.get('storage') or {}).items():
            if not isinstance(options, Mapping):
                raise ConfigurationError(f"Options for storage '{name}' must be a mapping")
            storage_options[name.lower()] = {k: str(v) for k, v in options.items() if v is not None}

        archive_format = str(data.get('archive_format', 'zip')).lower()
        if archive_format == 'none':
            archive_format = 'tar'
        if archive_format not in ARCHIVE_FORMATS:
            raise ConfigurationError(
                f"Invalid archive format: {archive_format}. "
                f"Valid options: {list(ARCHIVE_FORMATS)}"
            )

        retention_data = data.get('retention') or {}
        try:
            retention = RetentionPolicy(
                enabled=bool(retention_data.get('enabled', False)),
                keep_last=int(retention_data.get('keep_last', 10)),
                max_age_days=int(retention_data.get('max_age_days', 30))
            )
            max_file_size_mb = data.get('max_file_size_mb')
            if max_file_size_mb is not None:
                max_file_size_mb = int(max_file_size_mb)
            debounce_seconds = float(data.get('debounce_seconds', Config.DEBOUNCE_SECONDS))
        except (TypeError, ValueError) as e:
            raise ConfigurationError(f"Invalid numeric setting: {e}") from e

        return cls(
            global_storage_type=str(data.get('global_storage_type', 'local')).lower(),
            watch_targets=targets,
            component_storage={k: str(v).lower() for k, v in (data.get('component_storage') or {}).items()},
            encryption_enabled=bool(data.get('encryption_enabled', False)),
            storage_options=storage_options,
            archive_format=archive_format,
            compress=bool(data.get('compress', True)),
            excluded_patterns=list(data.get('excluded_patterns') or []),
            excluded_paths=[normalize_path(p) for p in data.get('excluded_paths') or []],
            max_file_size_mb=max_file_size_mb,
            retention=retention,
            debounce_seconds=debounce_seconds
        )

    def storage_type_for(self, path: str) -> str:
        """Backend configured for a watched path, falling back to the global default."""
        target_path = normalize_path(path)
        for target in self.watch_targets:
            if normalize_path(target.path) == target_path and target.storage_type:
                return target.storage_type.lower()
        return self.global_storage_type.lower()

    def options_for(self, storage_type: str) -> Dict[str, str]:
        """Copy of the option map for a backend (empty if none configured)."""
        return dict(self.storage_options.get(storage_type.lower(), {}))

    @property
    def max_file_size_bytes(self) -> Optional[int]:
        if self.max_file_size_mb is None or self.max_file_size_mb <= 0:
            return None
        return self.max_file_size_mb * 1024 * 1024
