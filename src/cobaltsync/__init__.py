"""
cobaltsync - backup and restore for astrophotography libraries

Snapshots a library of FITS/raster frames and everything built on top of
them (albums, targets, observing sessions and plans, log entries, file
groups, astrometry jobs, trash, settings) to a storage provider or to a
portable local package, and restores it with a chosen conflict strategy.

Key Features:
    - Versioned JSON manifest describing every domain of the library
    - Per-domain conflict resolution (skip, overwrite, merge)
    - SHA-256 verified file and thumbnail transfers
    - Local packages as zip or password-protected AES-GCM envelope
    - Pluggable providers (local directory, WebDAV)
"""

__version__ = "0.1.0"

from cobaltsync.config.settings import Settings, load_config

__all__ = [
    "__version__",
    "Settings",
    "load_config",
]
