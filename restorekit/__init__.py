import os
import logging
from dataclasses import dataclass
from logging.handlers import RotatingFileHandler
from typing import Optional

from restorekit.config import Settings, config
from restorekit.state import StateStore
from restorekit.backup.executor import BackupEngine
from restorekit.backup.restore import RestoreEngine
from restorekit.backup.retention import RetentionManager
from restorekit.backup.storage import StorageRegistry, default_registry
from restorekit.scheduler import MaintenanceScheduler
from restorekit.sharing import ShareLinkIssuer
from restorekit.watcher import WatchOrchestrator


def configure_logging(log_dir: Optional[str] = None, debug: bool = False):
    """Configure application logging"""

    log_level = logging.DEBUG if debug else logging.INFO

    # Console handler
    console_handler = logging.StreamHandler()
    console_handler.setLevel(log_level)
    console_handler.setFormatter(logging.Formatter(
        '[%(asctime)s] %(levelname)s in %(module)s: %(message)s'
    ))
    handlers = [console_handler]

    # File handler
    if log_dir:
        os.makedirs(log_dir, exist_ok=True)
        file_handler = RotatingFileHandler(
            os.path.join(log_dir, 'restorekit.log'),
            maxBytes=10485760,  # 10MB
            backupCount=10
        )
        file_handler.setLevel(log_level)
        file_handler.setFormatter(logging.Formatter(
            '[%(asctime)s] %(levelname)s [%(name)s.%(funcName)s:%(lineno)d] %(message)s'
        ))
        handlers.append(file_handler)

    logging.basicConfig(level=log_level, handlers=handlers, force=True)

    logging.getLogger(__name__).info(f"Logging configured (level: {logging.getLevelName(log_level)})")


@dataclass
class AppContext:
    """Everything a running restorekit process needs, wired together."""
    settings: Settings
    config: type
    registry: StorageRegistry
    state: StateStore
    backup_engine: BackupEngine
    restore_engine: RestoreEngine
    retention: RetentionManager
    share_issuer: ShareLinkIssuer
    orchestrator: WatchOrchestrator
    maintenance: MaintenanceScheduler

    def close(self):
        self.state.close()


def create_context(settings: Settings, config_obj=None, password_provider=None,
                   registry: Optional[StorageRegistry] = None) -> AppContext:
    """
    Application factory.

    Args:
        settings: Resolved settings
        config_obj: Config class (default: chosen by RESTOREKIT_ENV)
        password_provider: Source of the encryption password
        registry: Storage registry (default: every built-in backend)

    Returns:
        AppContext with a loaded state store
    """
    if config_obj is None:
        config_obj = config[os.environ.get('RESTOREKIT_ENV', 'production')]

    # Ensure required directories exist
    os.makedirs(config_obj.TEMP_DIR, exist_ok=True)
    os.makedirs(os.path.dirname(os.path.abspath(config_obj.STATE_DB)), exist_ok=True)

    registry = registry or default_registry()

    state = StateStore(config_obj.STATE_DB, echo=config_obj.SQLALCHEMY_ECHO)
    state.load()

    retention = RetentionManager(settings, registry, state)
    backup_engine = BackupEngine(
        settings,
        registry,
        state,
        password_provider=password_provider,
        temp_dir=config_obj.TEMP_DIR,
        retention=retention
    )
    restore_engine = RestoreEngine(
        settings,
        registry,
        password_provider=password_provider,
        temp_dir=config_obj.TEMP_DIR
    )

    def backup_fn(path, cancellation_check):
        return backup_engine.backup_directory(path, cancellation_check=cancellation_check)

    orchestrator = WatchOrchestrator(
        settings,
        backup_fn,
        state=state,
        ignore_paths=[config_obj.DATA_DIR, config_obj.TEMP_DIR]
    )

    return AppContext(
        settings=settings,
        config=config_obj,
        registry=registry,
        state=state,
        backup_engine=backup_engine,
        restore_engine=restore_engine,
        retention=retention,
        share_issuer=ShareLinkIssuer(settings, registry),
        orchestrator=orchestrator,
        maintenance=MaintenanceScheduler(
            retention,
            hour=config_obj.RETENTION_CRON_HOUR,
            timezone=config_obj.SCHEDULER_TIMEZONE
        )
    )
