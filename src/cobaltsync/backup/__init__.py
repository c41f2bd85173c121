"""
Backup and restore engine.

The engine snapshots a library described by a BackupDataSource into a
versioned manifest, pushes it with its file payloads to a CloudProvider or
into a local package, and restores it into a RestoreTarget.

Usage:
    from cobaltsync.backup import BackupService, BackupOptions

    service = BackupService(connections, store, store, store.files_dir)
    result = service.backup("webdav", BackupOptions(include_thumbnails=True))

    # Restore, merging with whatever is already there
    result = service.restore("webdav", BackupOptions(restore_conflict_strategy="merge"))
"""

from cobaltsync.backup.errors import (
    BackupError,
    CancelledError,
    EncryptionError,
    IntegrityMismatchError,
    InvalidManifestError,
    NoBackupFoundError,
    NotAuthenticatedError,
    OperationInProgressError,
    UnsupportedFormatError,
)
from cobaltsync.backup.manifest import (
    create_manifest,
    get_manifest_summary,
    load_manifest,
    parse_manifest,
    serialize_manifest,
)
from cobaltsync.backup.service import BackupService, OperationResult
from cobaltsync.backup.types import (
    BackupInfo,
    BackupManifest,
    BackupOptions,
    BackupPhase,
    BackupProgress,
    ConflictStrategy,
)

__all__ = [
    # Service
    "BackupService",
    "OperationResult",
    # Types
    "BackupInfo",
    "BackupManifest",
    "BackupOptions",
    "BackupPhase",
    "BackupProgress",
    "ConflictStrategy",
    # Manifest
    "create_manifest",
    "get_manifest_summary",
    "load_manifest",
    "parse_manifest",
    "serialize_manifest",
    # Errors
    "BackupError",
    "CancelledError",
    "EncryptionError",
    "IntegrityMismatchError",
    "InvalidManifestError",
    "NoBackupFoundError",
    "NotAuthenticatedError",
    "OperationInProgressError",
    "UnsupportedFormatError",
]
