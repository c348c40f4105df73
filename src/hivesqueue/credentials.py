"""Secret storage interface for SSH passwords."""

from abc import ABC, abstractmethod

from hivesqueue.config_schema import HiveSqueueConfig
from hivesqueue.models import ConnectionSettings


class KeychainError(Exception):
    """Raised when the secret store cannot save or delete a secret."""


class SecretStore(ABC):
    """Narrow interface to a platform secret store (keychain, keyring, ...)."""

    @abstractmethod
    def save(self, secret: str, service: str, account: str) -> None:
        """Store *secret*, replacing any existing value.

        Raises:
            KeychainError: If the secret could not be stored.
        """
        ...

    @abstractmethod
    def load(self, service: str, account: str) -> str | None:
        """Return the stored secret, or None if there is none."""
        ...

    @abstractmethod
    def delete(self, service: str, account: str) -> None:
        """Remove the stored secret. Deleting a missing secret is not an error.

        Raises:
            KeychainError: If the secret could not be removed.
        """
        ...


class InMemorySecretStore(SecretStore):
    """Process-local secret store."""

    def __init__(self) -> None:
        self._secrets: dict[tuple[str, str], str] = {}

    def save(self, secret: str, service: str, account: str) -> None:
        if not service or not account:
            raise KeychainError("Service and account are required.")
        self._secrets[(service, account)] = secret

    def load(self, service: str, account: str) -> str | None:
        return self._secrets.get((service, account))

    def delete(self, service: str, account: str) -> None:
        self._secrets.pop((service, account), None)


def load_connection_settings(
    config: HiveSqueueConfig,
    store: SecretStore | None = None,
) -> ConnectionSettings:
    """Build ConnectionSettings from configuration and the secret store.

    Passwords are stored per host. A password in the config file takes
    precedence over the store; empty values count as unset.
    """
    host = config.host
    password = config.ssh.password
    if not password and store is not None:
        password = store.load(config.settings.keychain_service, host)

    key_path = config.ssh.key_path_resolved
    return ConnectionSettings(
        host=host,
        username=config.ssh.user,
        identity_file_path=str(key_path) if key_path else None,
        password=password or None,
    )


def update_stored_password(
    store: SecretStore,
    service: str,
    host: str,
    password: str | None,
) -> str | None:
    """Apply a password change for *host* and return the password now in effect.

    A non-empty password replaces the stored one, an empty string deletes it
    and None leaves the store untouched (the stored password for *host*, if
    any, is returned).

    Raises:
        KeychainError: If the store rejects the change.
    """
    if password:
        store.save(password, service, host)
    elif password is not None:
        store.delete(service, host)
    return store.load(service, host) or None
