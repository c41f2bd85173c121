"""
Remote storage provider interface.

Every backend the engine can push snapshots to implements CloudProvider.
The engine only depends on this contract; it never sees vendor APIs.

Remote layout, relative to the provider's root:

    cobalt-backup/manifest.json
    cobalt-backup/fits_files/{id}_{sanitized filename}
    cobalt-backup/thumbnails/{fileId}.jpg

Design Principles:
    - Providers are connected explicitly and hold their own credentials
    - Transient failures (connection errors, OSError) are retried with
      exponential backoff; authentication failures never are
    - download_manifest() returns None both when no backup exists and when
      the stored manifest cannot be parsed
"""

from __future__ import annotations

import logging
import time
from abc import ABC, abstractmethod
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from cobaltsync.backup.errors import BackupError, NotAuthenticatedError
from cobaltsync.backup.types import (
    BACKUP_DIR,
    FITS_SUBDIR,
    MANIFEST_FILENAME,
    THUMBNAIL_SUBDIR,
    BackupManifest,
    RemoteFile,
)

# Tokens are treated as expired this many seconds early
TOKEN_EXPIRY_MARGIN_SECONDS = 60


# -----------------------------------------------------------------------------
# Error Classes
# -----------------------------------------------------------------------------


class ProviderError(BackupError):
    """Base exception for provider errors."""

    def __init__(self, message: str, provider: str | None = None) -> None:
        self.message = message
        self.provider = provider
        super().__init__(f"[{provider}] {message}" if provider else message)


class TransferError(ProviderError):
    """Raised when an upload, download or delete is refused by the backend."""

    pass


class ProviderConnectionError(ProviderError):
    """
    Raised when the backend cannot be reached.

    This includes network errors, DNS failures and timeouts. Named
    ProviderConnectionError to avoid shadowing the built-in ConnectionError.
    """

    pass


# -----------------------------------------------------------------------------
# Configuration
# -----------------------------------------------------------------------------


@dataclass
class ProviderConfig:
    """
    Connection parameters for a provider.

    Attributes:
        kind: Provider identifier ("webdav", "local-dir", ...).
        access_token: OAuth access token for token-based backends.
        refresh_token: OAuth refresh token.
        token_expiry: Access token expiry as a Unix timestamp.
        webdav_url: WebDAV server base URL.
        webdav_username: WebDAV user.
        webdav_password: WebDAV password.
        root: Root directory for the local-directory provider.
        timeout: Per-request timeout in seconds.
    """

    kind: str = "local-dir"
    access_token: str | None = None
    refresh_token: str | None = None
    token_expiry: float | None = None
    webdav_url: str | None = None
    webdav_username: str | None = None
    webdav_password: str | None = None
    root: str | None = None
    timeout: float = 60.0


# -----------------------------------------------------------------------------
# Retry
# -----------------------------------------------------------------------------


@dataclass
class RetryPolicy:
    """
    Exponential backoff for transient provider failures.

    Attributes:
        max_retries: Retries after the first attempt.
        base_delay: Delay before the first retry, in seconds.
        max_delay: Upper bound for any single delay.
        sleep: Sleep function, replaceable in tests.
    """

    max_retries: int = 3
    base_delay: float = 1.0
    max_delay: float = 60.0
    sleep: Callable[[float], None] = time.sleep

    def delay_for(self, attempt: int) -> float:
        """Delay after the given zero-based failed attempt."""
        return min(self.base_delay * (2**attempt), self.max_delay)

    def call(self, func: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
        """
        Execute a function with retry logic and exponential backoff.

        Retries connection errors and OSError, but not authentication
        errors or other permanent failures.

        Returns:
            The return value of the function.

        Raises:
            The last exception if all retries are exhausted.
        """
        logger = logging.getLogger("cobaltsync.providers.retry")
        last_exception: Exception | None = None

        for attempt in range(self.max_retries + 1):
            try:
                return func(*args, **kwargs)
            except NotAuthenticatedError:
                raise
            except (ProviderConnectionError, OSError) as e:
                last_exception = e
                if attempt < self.max_retries:
                    delay = self.delay_for(attempt)
                    logger.warning(
                        f"Connection error, retrying in {delay:.1f}s "
                        f"(attempt {attempt + 1}/{self.max_retries}): {e}"
                    )
                    self.sleep(delay)

        if last_exception:
            raise last_exception
        raise ProviderError("Unknown error during retry")


# -----------------------------------------------------------------------------
# Provider
# -----------------------------------------------------------------------------


class CloudProvider(ABC):
    """
    Abstract base class for remote storage backends.

    Subclasses set ``name`` and ``display_name`` and implement the transfer
    methods. Paths passed to transfer methods are relative to the backend
    root and use forward slashes.
    """

    name: str = "base"
    display_name: str = "Base"

    def __init__(self, retry_policy: RetryPolicy | None = None) -> None:
        self.retry_policy = retry_policy or RetryPolicy()
        self.logger = logging.getLogger(f"cobaltsync.providers.{self.name}")
        self._connected = False
        self._access_token: str | None = None
        self._refresh_token: str | None = None
        self._token_expiry: float | None = None

    def is_connected(self) -> bool:
        return self._connected

    def is_token_expired(self) -> bool:
        """Return True if an access token exists and is about to expire."""
        if not self._token_expiry:
            return False
        return time.time() >= self._token_expiry - TOKEN_EXPIRY_MARGIN_SECONDS

    def refresh_token_if_needed(self) -> None:
        """
        Make sure the credentials are usable for the next request.

        Backends without tokens do nothing. Token backends without a
        refresh flow raise when the token has expired.

        Raises:
            NotAuthenticatedError: If the token has expired.
        """
        if self.is_token_expired():
            raise NotAuthenticatedError(f"{self.display_name} access token has expired")

    def backup_path(self, *parts: str) -> str:
        return "/".join([BACKUP_DIR, *parts])

    @property
    def manifest_remote_path(self) -> str:
        return self.backup_path(MANIFEST_FILENAME)

    @property
    def backup_subdirs(self) -> tuple[str, str]:
        return (self.backup_path(FITS_SUBDIR), self.backup_path(THUMBNAIL_SUBDIR))

    @abstractmethod
    def connect(self, config: ProviderConfig | None = None) -> None:
        """
        Authenticate with the backend.

        Raises:
            NotAuthenticatedError: If no usable credentials are available.
        """
        pass

    @abstractmethod
    def disconnect(self) -> None:
        pass

    @abstractmethod
    def test_connection(self) -> bool:
        """Return True if the backend answers with the stored credentials."""
        pass

    @abstractmethod
    def upload_file(self, local_path: str | Path, remote_path: str) -> None:
        pass

    @abstractmethod
    def download_file(self, remote_path: str, local_path: str | Path) -> None:
        pass

    @abstractmethod
    def delete_file(self, remote_path: str) -> None:
        pass

    @abstractmethod
    def list_files(self, dir_path: str) -> list[RemoteFile]:
        """List the direct children of a remote directory; [] if it is missing."""
        pass

    @abstractmethod
    def file_exists(self, remote_path: str) -> bool:
        pass

    @abstractmethod
    def upload_manifest(self, manifest: BackupManifest) -> None:
        pass

    @abstractmethod
    def download_manifest(self) -> BackupManifest | None:
        """Fetch and parse the stored manifest; None if absent or invalid."""
        pass

    @abstractmethod
    def get_quota(self) -> dict[str, int] | None:
        """Return {"used": bytes, "total": bytes}, or None if unknown."""
        pass

    @abstractmethod
    def get_user_info(self) -> dict[str, Any] | None:
        pass

    @abstractmethod
    def ensure_backup_dir(self) -> None:
        """Create the backup directory and its subdirectories if missing."""
        pass

    def _require_connected(self) -> None:
        if not self._connected:
            raise NotAuthenticatedError(f"{self.display_name} is not connected")


# -----------------------------------------------------------------------------
# Registries
# -----------------------------------------------------------------------------


class ProviderRegistry:
    """
    Registry mapping provider kinds to provider classes.

    Example:
        @ProviderRegistry.register
        class MyProvider(CloudProvider):
            name = "my-provider"

        provider = ProviderRegistry.create("my-provider")
    """

    _providers: dict[str, type[CloudProvider]] = {}

    @classmethod
    def register(cls, provider_class: type[CloudProvider]) -> type[CloudProvider]:
        """
        Register a provider class; usable as a decorator.

        Raises:
            ValueError: If the class does not define ``name``.
        """
        kind = provider_class.name
        if kind == "base":
            raise ValueError(f"Provider class {provider_class.__name__} must define 'name'")
        cls._providers[kind] = provider_class
        logging.getLogger("cobaltsync.providers.registry").debug(
            f"Registered provider: {kind} -> {provider_class.__name__}"
        )
        return provider_class

    @classmethod
    def get_kinds(cls) -> list[str]:
        return sorted(cls._providers.keys())

    @classmethod
    def get_provider_class(cls, kind: str) -> type[CloudProvider] | None:
        return cls._providers.get(kind)

    @classmethod
    def create(cls, kind: str, retry_policy: RetryPolicy | None = None) -> CloudProvider:
        """
        Instantiate a provider by kind.

        Raises:
            ValueError: If the kind is not registered.
        """
        provider_class = cls._providers.get(kind)
        if provider_class is None:
            available = ", ".join(cls.get_kinds())
            raise ValueError(f"Unknown provider: {kind}. Available: {available}")
        return provider_class(retry_policy=retry_policy)


class ProviderConnections:
    """
    Provider instances owned by one caller.

    Holds at most one instance per kind, so a backup and a later restore
    against the same kind reuse the same authenticated connection.
    """

    def __init__(self, retry_policy: RetryPolicy | None = None) -> None:
        self.retry_policy = retry_policy
        self._instances: dict[str, CloudProvider] = {}

    def add(self, provider: CloudProvider) -> CloudProvider:
        """Adopt an already constructed provider instance."""
        self._instances[provider.name] = provider
        return provider

    def get(self, kind: str) -> CloudProvider | None:
        return self._instances.get(kind)

    def get_or_create(self, kind: str) -> CloudProvider:
        provider = self._instances.get(kind)
        if provider is None:
            provider = ProviderRegistry.create(kind, retry_policy=self.retry_policy)
            self._instances[kind] = provider
        return provider

    def connect(self, kind: str, config: ProviderConfig | None = None) -> CloudProvider:
        provider = self.get_or_create(kind)
        provider.connect(config)
        return provider

    def disconnect(self, kind: str) -> None:
        provider = self._instances.pop(kind, None)
        if provider is not None:
            provider.disconnect()

    def connected(self) -> list[str]:
        """Kinds whose provider is currently connected."""
        return sorted(kind for kind, p in self._instances.items() if p.is_connected())
