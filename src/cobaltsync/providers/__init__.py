"""
Storage providers for backup snapshots.

Every provider implements the CloudProvider contract and registers itself
with the ProviderRegistry for discovery.

Supported providers:
    - local-dir: A directory on a local disk or mounted share
    - webdav: Any WebDAV server (Nextcloud, ownCloud, Synology, ...)
"""

# Import providers to trigger registration
from cobaltsync.providers.base import (
    CloudProvider,
    ProviderConfig,
    ProviderConnectionError,
    ProviderConnections,
    ProviderError,
    ProviderRegistry,
    RetryPolicy,
    TransferError,
)
from cobaltsync.providers.local_dir import LocalDirectoryProvider
from cobaltsync.providers.webdav import WebDAVProvider

__all__ = [
    "CloudProvider",
    "LocalDirectoryProvider",
    "ProviderConfig",
    "ProviderConnectionError",
    "ProviderConnections",
    "ProviderError",
    "ProviderRegistry",
    "RetryPolicy",
    "TransferError",
    "WebDAVProvider",
]
