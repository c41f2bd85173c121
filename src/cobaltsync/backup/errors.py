"""
Error taxonomy for backup and restore operations.

Every engine failure is a BackupError subclass so callers can catch the
whole family at a result boundary while still telling a user cancellation
apart from a real transfer failure.
"""

from __future__ import annotations


class BackupError(Exception):
    """Base exception for backup and restore errors."""

    pass


class NotAuthenticatedError(BackupError):
    """
    Raised when a provider has no credentials or they are stale.

    The engine surfaces this error and never retries it.
    """

    pass


class NoBackupFoundError(BackupError):
    """Raised when the remote store holds no manifest to restore from."""

    pass


class InvalidManifestError(BackupError):
    """Raised when a manifest fails to parse or validate."""

    pass


class IntegrityMismatchError(BackupError):
    """
    Raised when a transferred payload does not match its manifest entry.

    Attributes:
        path: Local path of the payload that was checked.
        expected_size: Size recorded in the manifest.
        actual_size: Size measured on disk.
        expected_hash: SHA-256 recorded in the manifest.
        actual_hash: SHA-256 computed from the local bytes.
    """

    def __init__(
        self,
        message: str,
        path: str | None = None,
        expected_size: int | None = None,
        actual_size: int | None = None,
        expected_hash: str | None = None,
        actual_hash: str | None = None,
    ) -> None:
        super().__init__(message)
        self.path = path
        self.expected_size = expected_size
        self.actual_size = actual_size
        self.expected_hash = expected_hash
        self.actual_hash = actual_hash


class CancelledError(BackupError):
    """Raised when the caller cancels a backup or restore."""

    pass


class EncryptionError(BackupError):
    """
    Raised for a wrong password, a missing password or a corrupt envelope.

    Messages never include decrypted content.
    """

    pass


class UnsupportedFormatError(BackupError):
    """Raised when an import source is not a manifest, package or envelope."""

    pass


class OperationInProgressError(BackupError):
    """Raised when a second backup or restore is started on one service."""

    pass
