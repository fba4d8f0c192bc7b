"""Credential storage behind an injectable interface.

The sync engine never talks to the OS secret store directly; it receives a
``SecretVault`` so platforms (or tests) can substitute their own.
"""

from abc import ABC, abstractmethod
from typing import Optional

import keyring
from keyring.errors import KeyringError, PasswordDeleteError
from loguru import logger

# Service name under which secrets are stored in the system keyring
KEYRING_SERVICE = "xynoxa-desktop-client"
AUTH_TOKEN_KEY = "auth-token"


class SecretVault(ABC):
    """Opaque key/value secret storage."""

    @abstractmethod
    def store_secret(self, key: str, value: str) -> None:
        """Store a secret, replacing any previous value."""

    @abstractmethod
    def load_secret(self, key: str) -> Optional[str]:
        """Return the secret or None if it is not stored."""

    @abstractmethod
    def delete_secret(self, key: str) -> None:
        """Remove a secret. Removing a missing secret is not an error."""


class KeyringVault(SecretVault):
    """Credential storage using system keyring."""

    def __init__(self, service: str = KEYRING_SERVICE):
        self.service = service

    def store_secret(self, key: str, value: str) -> None:
        keyring.set_password(self.service, key, value)
        logger.debug(f"Stored secret '{key}' in keyring service '{self.service}'")

    def load_secret(self, key: str) -> Optional[str]:
        try:
            return keyring.get_password(self.service, key)
        except KeyringError as e:
            logger.warning(f"Failed to read secret '{key}' from keyring: {e}")
            return None

    def delete_secret(self, key: str) -> None:
        try:
            keyring.delete_password(self.service, key)
        except PasswordDeleteError:
            logger.debug(f"No secret '{key}' to delete")
