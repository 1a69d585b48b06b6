"""
Unit tests for configuration (restorekit/config.py) and the application
factory (restorekit/__init__.py).
"""

import logging
import os

import pytest

from restorekit import AppContext, configure_logging, create_context
from restorekit.backup.storage import StorageRegistry
from restorekit.config import Config, RetentionPolicy, Settings, WatchTarget, normalize_path
from restorekit.errors import ConfigurationError


class TestSettingsFromMapping:
    """Test building Settings from a parsed document."""

    def test_defaults(self):
        """Test an empty document gives the defaults."""
        settings = Settings.from_mapping({})

        assert settings.global_storage_type == 'local'
        assert settings.watch_targets == []
        assert settings.archive_format == 'zip'
        assert settings.compress is True
        assert settings.encryption_enabled is False
        assert settings.retention == RetentionPolicy()
        assert settings.max_file_size_mb is None

    def test_full_document(self, tmp_path):
        """Test every section of a document is read."""
        settings = Settings.from_mapping({
            'global_storage_type': 'S3',
            'watch': [
                str(tmp_path / 'docs'),
                {'path': str(tmp_path / 'photos'), 'storage_type': 'gdrive'}
            ],
            'component_storage': {'database': 'SFTP'},
            'encryption_enabled': True,
            'storage': {
                'S3': {'bucketName': 'backups', 'region': 'eu-west-1', 'endpoint': None},
                'sftp': {'host': 'nas.local', 'port': 2222}
            },
            'archive_format': 'TAR.XZ',
            'compress': False,
            'excluded_patterns': ['*.tmp'],
            'excluded_paths': [str(tmp_path / 'docs' / 'cache')],
            'max_file_size_mb': '50',
            'retention': {'enabled': True, 'keep_last': 3, 'max_age_days': '7'},
            'debounce_seconds': 1.5
        })

        assert settings.global_storage_type == 's3'
        assert settings.watch_targets == [
            WatchTarget(path=str(tmp_path / 'docs')),
            WatchTarget(path=str(tmp_path / 'photos'), storage_type='gdrive')
        ]
        assert settings.component_storage == {'database': 'sftp'}
        assert settings.encryption_enabled is True
        assert settings.storage_options == {
            's3': {'bucketName': 'backups', 'region': 'eu-west-1'},
            'sftp': {'host': 'nas.local', 'port': '2222'}
        }
        assert settings.archive_format == 'tar.xz'
        assert settings.compress is False
        assert settings.excluded_paths == [str(tmp_path / 'docs' / 'cache')]
        assert settings.max_file_size_mb == 50
        assert settings.retention == RetentionPolicy(enabled=True, keep_last=3, max_age_days=7)
        assert settings.debounce_seconds == 1.5

    def test_none_archive_format_means_tar(self):
        """Test that 'none' selects an uncompressed tar."""
        assert Settings.from_mapping({'archive_format': 'none'}).archive_format == 'tar'

    def test_invalid_archive_format(self):
        """Test an unknown archive format is rejected."""
        with pytest.raises(ConfigurationError, match="Invalid archive format: rar"):
            Settings.from_mapping({'archive_format': 'rar'})

    @pytest.mark.parametrize('entry', [42, {'storage_type': 's3'}, {'path': ''}])
    def test_invalid_watch_entry(self, entry):
        """Test malformed watch entries are rejected."""
        with pytest.raises(ConfigurationError, match="Invalid watch entry"):
            Settings.from_mapping({'watch': [entry]})

    def test_storage_options_must_be_mapping(self):
        """Test a non-mapping option block is rejected."""
        with pytest.raises(ConfigurationError, match="must be a mapping"):
            Settings.from_mapping({'storage': {'s3': 'bucket'}})

    def test_invalid_number(self):
        """Test a non-numeric retention value is rejected."""
        with pytest.raises(ConfigurationError, match="Invalid numeric setting"):
            Settings.from_mapping({'retention': {'keep_last': 'many'}})


class TestSettingsLookups:
    """Test per-path storage and option lookups."""

    def test_storage_type_for(self, tmp_path):
        """Test the per-path override wins over the global default."""
        settings = Settings(
            global_storage_type='S3',
            watch_targets=[
                WatchTarget(path=str(tmp_path / 'docs')),
                WatchTarget(path=str(tmp_path / 'photos'), storage_type='GDrive')
            ]
        )

        assert settings.storage_type_for(str(tmp_path / 'photos') + os.sep) == 'gdrive'
        assert settings.storage_type_for(str(tmp_path / 'docs')) == 's3'
        assert settings.storage_type_for('/not/watched') == 's3'

    def test_options_for_returns_copy(self):
        """Test the returned option map can be changed freely."""
        settings = Settings(storage_options={'local': {'path': '/srv'}})

        options = settings.options_for('LOCAL')
        options['path'] = '/elsewhere'

        assert settings.options_for('local') == {'path': '/srv'}
        assert settings.options_for('s3') == {}

    @pytest.mark.parametrize('size_mb,expected', [
        (None, None),
        (0, None),
        (-1, None),
        (2, 2 * 1024 * 1024),
    ])
    def test_max_file_size_bytes(self, size_mb, expected):
        """Test the size cap conversion."""
        assert Settings(max_file_size_mb=size_mb).max_file_size_bytes == expected

    def test_normalize_path(self, tmp_path):
        """Test paths are made absolute without trailing separators."""
        assert normalize_path(str(tmp_path) + os.sep) == str(tmp_path)
        assert normalize_path('~') == os.path.expanduser('~')


@pytest.fixture
def restore_root_logging():
    root = logging.getLogger()
    handlers, level = root.handlers[:], root.level
    yield
    for handler in root.handlers:
        if handler not in handlers:
            handler.close()
    root.handlers[:] = handlers
    root.setLevel(level)


@pytest.fixture
def isolated_config(tmp_path):
    """Config class rooted in a temporary data directory."""
    data_dir = tmp_path / 'data'

    class IsolatedConfig(Config):
        DATA_DIR = str(data_dir)
        STATE_DB = str(data_dir / 'state.db')
        TEMP_DIR = str(data_dir / 'temp')
        LOG_DIR = str(data_dir / 'logs')

    return IsolatedConfig


class TestApplicationFactory:
    """Test create_context and configure_logging."""

    def test_create_context(self, settings, isolated_config, password_provider):
        """Test that the context is wired and its directories exist."""
        context = create_context(settings, isolated_config, password_provider)
        try:
            assert isinstance(context, AppContext)
            assert os.path.isdir(isolated_config.TEMP_DIR)
            assert os.path.exists(isolated_config.STATE_DB)
            assert context.backup_engine.state is context.state
            assert context.orchestrator.state is context.state
            assert normalize_path(isolated_config.DATA_DIR) in context.orchestrator.ignore_paths
            assert context.maintenance.hour == isolated_config.RETENTION_CRON_HOUR
            assert 'local' in context.registry
        finally:
            context.close()

    def test_create_context_custom_registry(self, settings, isolated_config):
        """Test that a supplied registry is used as is."""
        registry = StorageRegistry()

        context = create_context(settings, isolated_config, registry=registry)
        try:
            assert context.registry is registry
            assert context.share_issuer.registry is registry
        finally:
            context.close()

    def test_context_backup_round_trip(self, settings, isolated_config, source_dir, tmp_path):
        """Test a backup and restore through a created context."""
        context = create_context(settings, isolated_config)
        try:
            result = context.backup_engine.backup_directory(str(source_dir))
            target = tmp_path / 'restored'
            context.restore_engine.restore_from_backup(result.remote_path, str(target))
        finally:
            context.close()

        assert (target / 'notes.txt').read_text() == 'Remember the milk'

    def test_configure_logging(self, tmp_path, restore_root_logging):
        """Test console and rotating file handlers."""
        log_dir = tmp_path / 'logs'

        configure_logging(str(log_dir), debug=True)
        logging.getLogger('restorekit.test').debug("written to file")

        root = logging.getLogger()
        assert root.level == logging.DEBUG
        assert len(root.handlers) == 2
        for handler in root.handlers:
            handler.flush()
        assert 'written to file' in (log_dir / 'restorekit.log').read_text()

    def test_configure_logging_console_only(self, restore_root_logging):
        """Test that no file handler is added without a log directory."""
        configure_logging()

        root = logging.getLogger()
        assert root.level == logging.INFO
        assert len(root.handlers) == 1
