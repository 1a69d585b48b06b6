"""
Password providers for encrypted backups.

The engines ask a provider for the password when a backup is encrypted or
an encrypted backup is restored, and call ``clear`` after a wrong password.
Only the prompt provider caches an answer, so only it asks again; the
static and environment providers keep returning their password.

Passwords are never logged or persisted.
"""

import getpass
import os
from typing import Optional, Protocol


class PasswordProvider(Protocol):

    def get_password(self) -> Optional[str]:
        ...

    def clear(self) -> None:
        ...


class StaticPasswordProvider:
    """Password supplied by the caller."""

    def __init__(self, password: Optional[str]):
        self._password = password

    def get_password(self) -> Optional[str]:
        return self._password

    def clear(self):
        # Caller-supplied; nothing to forget
        pass

    def __repr__(self):
        return '<StaticPasswordProvider>'


class EnvironmentPasswordProvider:
    """Password read from an environment variable (RESTOREKIT_PASSWORD by default)."""

    def __init__(self, variable: str = 'RESTOREKIT_PASSWORD'):
        self.variable = variable

    def get_password(self) -> Optional[str]:
        return os.environ.get(self.variable) or None

    def clear(self):
        # Re-read on every call; nothing cached
        pass


class PromptPasswordProvider:
    """Asks on the terminal once and caches the answer until cleared."""

    def __init__(self, prompt: str = 'Backup password: '):
        self.prompt = prompt
        self._password = None

    def get_password(self) -> Optional[str]:
        if self._password is None:
            self._password = getpass.getpass(self.prompt) or None
        return self._password

    def clear(self):
        self._password = None
