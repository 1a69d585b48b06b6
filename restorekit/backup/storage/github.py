"""
GitHub repository as storage, through the contents REST API.

Each object is a file in the repository; an upload is a commit. Files are
limited to 100MB by GitHub.
"""

import base64
import logging
import os
from datetime import timedelta
from pathlib import Path
from typing import Dict, Optional
from urllib.parse import quote

import httpx

from restorekit.errors import (
    AuthenticationError,
    ConfigurationError,
    NotFoundError,
    TransferError
)
from .base import ensure_sharing, require_options

logger = logging.getLogger(__name__)

API_URL = 'https://api.github.com'
MAX_FILE_SIZE = 100 * 1024 * 1024  # 100MB


class GitHubStorage:
    """
    Handler for backups committed to a GitHub repository.

    Required options: token, owner, repo. Optional: branch.
    """

    name = 'github'
    supports_sharing = False

    def __init__(self, transport: Optional[httpx.BaseTransport] = None):
        """
        Args:
            transport: Optional httpx transport (used to stub the API)
        """
        self.transport = transport
        self.client = None
        self.owner = None
        self.repo = None
        self.branch = None

    def initialize(self, options: Dict[str, str]):
        require_options(self.name, options, ('token', 'owner', 'repo'))
        self.owner = options['owner']
        self.repo = options['repo']
        self.branch = options.get('branch') or None

        self.client = httpx.Client(
            base_url=API_URL,
            headers={
                'Authorization': f"Bearer {options['token']}",
                'Accept': 'application/vnd.github+json',
                'X-GitHub-Api-Version': '2022-11-28',
            },
            timeout=60.0,
            transport=self.transport,
        )

        response = self._request('GET', f'/repos/{self.owner}/{self.repo}')
        if response.status_code == 404:
            raise ConfigurationError(f"GitHub repository not found: {self.owner}/{self.repo}")
        self._check(response, 'open repository')

    def _contents_url(self, remote_path: str) -> str:
        return f"/repos/{self.owner}/{self.repo}/contents/{quote(remote_path.lstrip('/'))}"

    def _request(self, method: str, url: str, **kwargs) -> httpx.Response:
        try:
            return self.client.request(method, url, **kwargs)
        except httpx.HTTPError as e:
            raise TransferError(f"GitHub request failed ({method} {url}): {e}") from e

    def _check(self, response: httpx.Response, action: str):
        if response.status_code in (401, 403):
            raise AuthenticationError(f"GitHub refused to {action} ({response.status_code}): {response.text}")
        if response.is_error:
            raise TransferError(f"GitHub failed to {action} ({response.status_code}): {response.text}")

    def _ref_params(self) -> Dict[str, str]:
        return {'ref': self.branch} if self.branch else {}

    def _get_sha(self, remote_path: str) -> Optional[str]:
        response = self._request('GET', self._contents_url(remote_path), params=self._ref_params())
        if response.status_code == 404:
            return None
        self._check(response, f"look up {remote_path}")
        return response.json().get('sha')

    def upload(self, local_path: str, remote_path: str):
        """
        Create or update a file in the repository.

        Raises:
            TransferError: If the file exceeds 100MB or the commit fails
        """
        if not os.path.exists(local_path):
            raise NotFoundError(f"Local file not found: {local_path}")

        file_size = os.path.getsize(local_path)
        if file_size > MAX_FILE_SIZE:
            raise TransferError(
                f"File size ({file_size / 1024 / 1024:.2f} MB) exceeds GitHub's 100 MB limit"
            )

        with open(local_path, 'rb') as f:
            content = base64.b64encode(f.read()).decode('ascii')

        body = {
            'message': f"Backup {os.path.basename(remote_path)}",
            'content': content,
        }
        sha = self._get_sha(remote_path)
        if sha:
            body['sha'] = sha
        if self.branch:
            body['branch'] = self.branch

        response = self._request('PUT', self._contents_url(remote_path), json=body)
        self._check(response, f"upload {remote_path}")

    def download(self, remote_path: str, local_path: str):
        url = self._contents_url(remote_path)
        headers = {'Accept': 'application/vnd.github.raw+json'}

        try:
            with self.client.stream('GET', url, params=self._ref_params(), headers=headers) as response:
                if response.status_code == 404:
                    raise NotFoundError(f"Backup not found in GitHub: {remote_path}")
                if response.is_error:
                    response.read()
                    self._check(response, f"download {remote_path}")

                Path(local_path).parent.mkdir(parents=True, exist_ok=True)
                with open(local_path, 'wb') as f:
                    for chunk in response.iter_bytes():
                        f.write(chunk)
        except httpx.HTTPError as e:
            raise TransferError(f"GitHub download failed for {remote_path}: {e}") from e
        except OSError as e:
            raise TransferError(f"Failed to write {local_path}: {e}") from e

    def exists(self, remote_path: str) -> bool:
        return self._get_sha(remote_path) is not None

    def delete(self, remote_path: str):
        sha = self._get_sha(remote_path)
        if sha is None:
            return

        body = {'message': f"Delete {os.path.basename(remote_path)}", 'sha': sha}
        if self.branch:
            body['branch'] = self.branch

        response = self._request('DELETE', self._contents_url(remote_path), json=body)
        if response.status_code == 404:
            return
        self._check(response, f"delete {remote_path}")

    def generate_share_link(self, remote_path: str, expiration: timedelta) -> str:
        ensure_sharing(self)

    def release(self):
        if self.client is not None:
            self.client.close()
            self.client = None
