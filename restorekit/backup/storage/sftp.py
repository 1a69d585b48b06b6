"""
SFTP storage over SSH (paramiko).

Remote paths are placed under an optional base directory on the server;
missing directories are created on upload.
"""

import logging
import posixpath
import stat
from datetime import timedelta
from pathlib import Path
from typing import Dict

import paramiko
from paramiko import AutoAddPolicy, SSHClient

from restorekit.errors import (
    AuthenticationError,
    ConfigurationError,
    NotFoundError,
    TransferError
)
from .base import ensure_sharing

logger = logging.getLogger(__name__)


class SFTPStorage:
    """
    Handler for backups stored on an SSH server.

    Options:
        host, username: required
        password or privateKeyPath (+ optional passphrase): one is required
        port: default 22
        basePath: remote directory prefix (default: login directory)
    """

    name = 'sftp'
    supports_sharing = False

    def __init__(self):
        self.ssh_client = None
        self.sftp_client = None
        self.base_path = ''

    def initialize(self, options: Dict[str, str]):
        """
        Connect and open the SFTP channel.

        Raises:
            ConfigurationError: If options are missing or invalid
            AuthenticationError: If the server rejects the credentials
            TransferError: If the connection fails
        """
        password = options.get('password')
        private_key_path = options.get('privateKeyPath')

        missing = [key for key in ('host', 'username') if not str(options.get(key) or '').strip()]
        if not password and not private_key_path:
            missing += ['password', 'privateKeyPath']
        if missing:
            raise ConfigurationError(
                f"Missing required option(s) for '{self.name}' storage: {', '.join(missing)}",
                missing_keys=missing
            )

        try:
            port = int(options.get('port') or 22)
        except ValueError as e:
            raise ConfigurationError(f"Invalid SFTP port: {options.get('port')}") from e

        self.base_path = (options.get('basePath') or '').rstrip('/')

        connect_kwargs = {
            'hostname': options['host'],
            'port': port,
            'username': options['username'],
            'timeout': 30
        }

        if password:
            connect_kwargs['password'] = password
        else:
            key_path = Path(private_key_path).expanduser()
            if not key_path.exists():
                raise ConfigurationError(f"Private key not found: {private_key_path}")
            connect_kwargs['key_filename'] = str(key_path)
            if options.get('passphrase'):
                connect_kwargs['passphrase'] = options['passphrase']

        try:
            self.ssh_client = SSHClient()
            self.ssh_client.set_missing_host_key_policy(AutoAddPolicy())
            self.ssh_client.connect(**connect_kwargs)
            self.sftp_client = self.ssh_client.open_sftp()
        except paramiko.AuthenticationException as e:
            raise AuthenticationError(f"SSH authentication failed: {e}") from e
        except (paramiko.SSHException, OSError) as e:
            raise TransferError(f"Failed to connect to {options['host']}: {e}") from e

    def _remote(self, remote_path: str) -> str:
        remote_path = remote_path.lstrip('/')
        if self.base_path:
            return f"{self.base_path}/{remote_path}"
        return remote_path

    def _makedirs(self, directory: str):
        """Create a remote directory and its parents (mkdir -p)."""
        if not directory or directory == '/':
            return

        current = '/' if directory.startswith('/') else ''
        for part in directory.strip('/').split('/'):
            current = posixpath.join(current, part) if current else part
            try:
                attrs = self.sftp_client.stat(current)
                if not stat.S_ISDIR(attrs.st_mode):
                    raise TransferError(f"Remote path exists and is not a directory: {current}")
            except FileNotFoundError:
                self.sftp_client.mkdir(current)

    def upload(self, local_path: str, remote_path: str):
        target = self._remote(remote_path)

        try:
            self._makedirs(posixpath.dirname(target))
            self.sftp_client.put(local_path, target)
        except FileNotFoundError as e:
            raise NotFoundError(f"Local file not found: {local_path}") from e
        except PermissionError as e:
            raise TransferError(f"Permission denied writing {target}: {e}") from e
        except (paramiko.SSHException, OSError) as e:
            raise TransferError(f"Failed to upload {target}: {e}") from e

    def download(self, remote_path: str, local_path: str):
        source = self._remote(remote_path)

        try:
            self.sftp_client.stat(source)
        except FileNotFoundError as e:
            raise NotFoundError(f"Remote file not found: {source}") from e
        except (paramiko.SSHException, OSError) as e:
            raise TransferError(f"Failed to stat {source}: {e}") from e

        try:
            Path(local_path).parent.mkdir(parents=True, exist_ok=True)
            self.sftp_client.get(source, local_path)
        except (paramiko.SSHException, OSError) as e:
            raise TransferError(f"Failed to download {source}: {e}") from e

    def exists(self, remote_path: str) -> bool:
        try:
            self.sftp_client.stat(self._remote(remote_path))
            return True
        except FileNotFoundError:
            return False
        except (paramiko.SSHException, OSError) as e:
            raise TransferError(f"Failed to stat {remote_path}: {e}") from e

    def delete(self, remote_path: str):
        target = self._remote(remote_path)

        try:
            self.sftp_client.remove(target)
        except FileNotFoundError:
            return
        except (paramiko.SSHException, OSError) as e:
            raise TransferError(f"Failed to delete {target}: {e}") from e

    def generate_share_link(self, remote_path: str, expiration: timedelta) -> str:
        ensure_sharing(self)

    def release(self):
        """Close SSH/SFTP connections."""
        if self.sftp_client:
            try:
                self.sftp_client.close()
            except (paramiko.SSHException, OSError) as e:
                logger.warning(f"Failed to close SFTP channel: {e}")
            self.sftp_client = None

        if self.ssh_client:
            try:
                self.ssh_client.close()
            except (paramiko.SSHException, OSError) as e:
                logger.warning(f"Failed to close SSH connection: {e}")
            self.ssh_client = None
