"""
Backup service: the single entry point used by the CLI and other callers.

The service owns the in-flight guard and turns engine exceptions into
OperationResult objects, so callers never need to know the error taxonomy
to report an outcome.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from cobaltsync.backup.errors import (
    BackupError,
    CancelledError,
    NotAuthenticatedError,
    OperationInProgressError,
)
from cobaltsync.backup.local_package import (
    LocalBackupPreview,
    export_local_backup,
    import_local_backup,
)
from cobaltsync.backup.orchestrator import (
    CancellationToken,
    ThumbnailResolver,
    auto_backup_due,
    get_backup_info,
    perform_backup,
    perform_restore,
)
from cobaltsync.backup.sources import BackupDataSource, RestoreTarget
from cobaltsync.backup.types import BackupInfo, BackupOptions, BackupPhase, BackupProgress
from cobaltsync.providers.base import CloudProvider, ProviderConnections

logger = logging.getLogger(__name__)

OPERATION_IN_PROGRESS = "Operation in progress"


@dataclass
class OperationResult:
    """
    Outcome of a backup, restore, export or import.

    Attributes:
        success: True if the operation completed.
        error: Failure message, if any.
        cancelled: True if the caller cancelled the operation.
        report: Engine report (BackupReport, RestoreReport) or output path.
    """

    success: bool
    error: str | None = None
    cancelled: bool = False
    report: Any = None
    started_at: datetime = field(default_factory=lambda: datetime.now(UTC))


class BackupService:
    """
    Runs backup and restore operations one at a time.

    Example:
        connections = ProviderConnections()
        connections.connect("local-dir", ProviderConfig(root="/mnt/nas"))
        service = BackupService(connections, store, store, store.files_dir)
        result = service.backup("local-dir")
    """

    def __init__(
        self,
        connections: ProviderConnections,
        data_source: BackupDataSource,
        restore_target: RestoreTarget,
        files_dir: str | Path,
        thumbnail_resolver: ThumbnailResolver | None = None,
        device_name: str | None = None,
    ) -> None:
        self.connections = connections
        self.data_source = data_source
        self.restore_target = restore_target
        self.files_dir = Path(files_dir)
        self.thumbnail_resolver = thumbnail_resolver
        self.device_name = device_name

        self._lock = threading.Lock()
        self._cancel_token: CancellationToken | None = None
        self._progress = BackupProgress()
        self._last_error: str | None = None
        self.last_auto_backup_check: datetime | None = None

    @property
    def progress(self) -> BackupProgress:
        return self._progress

    @property
    def last_error(self) -> str | None:
        return self._last_error

    @property
    def in_progress(self) -> bool:
        return self._lock.locked()

    def _on_progress(self, progress: BackupProgress) -> None:
        self._progress = progress

    @contextmanager
    def _exclusive(self) -> Iterator[CancellationToken]:
        """
        Hold the in-flight guard for one operation.

        Raises:
            OperationInProgressError: If another operation is running.
        """
        if not self._lock.acquire(blocking=False):
            raise OperationInProgressError(OPERATION_IN_PROGRESS)
        self._cancel_token = CancellationToken()
        self._last_error = None
        try:
            yield self._cancel_token
        finally:
            self._cancel_token = None
            self._progress = BackupProgress(phase=BackupPhase.IDLE)
            self._lock.release()

    def _run(self, name: str, func: Callable[[CancellationToken], Any]) -> OperationResult:
        try:
            with self._exclusive() as token:
                report = func(token)
        except OperationInProgressError:
            logger.warning(f"{name} rejected: another operation is in progress")
            return OperationResult(success=False, error=OPERATION_IN_PROGRESS)
        except CancelledError as e:
            logger.info(f"{name} cancelled")
            self._last_error = str(e)
            return OperationResult(success=False, error=str(e), cancelled=True)
        except (BackupError, OSError, ValueError) as e:
            logger.exception(f"{name} failed")
            self._last_error = str(e)
            return OperationResult(success=False, error=str(e))

        return OperationResult(success=True, report=report)

    def _connected_provider(self, kind: str) -> CloudProvider:
        provider = self.connections.get(kind)
        if provider is None or not provider.is_connected():
            raise NotAuthenticatedError(f"Provider {kind} is not connected")
        return provider

    def backup(self, kind: str, options: BackupOptions | None = None) -> OperationResult:
        """Back up to a connected provider."""

        def run(token: CancellationToken) -> Any:
            provider = self._connected_provider(kind)
            return perform_backup(
                provider,
                self.data_source,
                options,
                on_progress=self._on_progress,
                cancel_token=token,
                thumbnail_resolver=self.thumbnail_resolver,
                device_name=self.device_name,
            )

        return self._run("Backup", run)

    def restore(self, kind: str, options: BackupOptions | None = None) -> OperationResult:
        """Restore from a connected provider."""

        def run(token: CancellationToken) -> Any:
            provider = self._connected_provider(kind)
            return perform_restore(
                provider,
                self.restore_target,
                options,
                files_dir=self.files_dir,
                thumbnail_resolver=self.thumbnail_resolver,
                on_progress=self._on_progress,
                cancel_token=token,
            )

        return self._run("Restore", run)

    def export_local(
        self, output_dir: str | Path, options: BackupOptions | None = None
    ) -> OperationResult:
        """Write a local backup file; the report is its path."""
        return self._run(
            "Export",
            lambda token: export_local_backup(
                self.data_source,
                output_dir,
                options,
                on_progress=self._on_progress,
                thumbnail_resolver=self.thumbnail_resolver,
            ),
        )

    def import_local(
        self,
        source: str | Path | LocalBackupPreview,
        options: BackupOptions | None = None,
    ) -> OperationResult:
        """Restore from a local backup file or a preview of one."""
        return self._run(
            "Import",
            lambda token: import_local_backup(
                self.restore_target,
                source,
                options,
                files_dir=self.files_dir,
                thumbnail_resolver=self.thumbnail_resolver,
                on_progress=self._on_progress,
            ),
        )

    def cancel(self) -> None:
        """Ask the running operation to stop at the next entity boundary."""
        token = self._cancel_token
        if token is not None:
            logger.info("Cancellation requested")
            token.cancel()

    def get_backup_info(self, kind: str) -> BackupInfo | None:
        provider = self.connections.get(kind)
        if provider is None or not provider.is_connected():
            return None
        return get_backup_info(provider)

    def test_connection(self, kind: str) -> bool:
        provider = self.connections.get(kind)
        if provider is None or not provider.is_connected():
            return False
        return provider.test_connection()

    def maybe_auto_backup(
        self,
        options: BackupOptions | None = None,
        now: datetime | None = None,
    ) -> OperationResult | None:
        """
        Run an automatic backup when one is due.

        The preferred provider is used when it is connected, otherwise the
        first connected provider. Returns None when nothing was started.
        """
        prefs = self.data_source.get_backup_prefs()
        now = now or datetime.now(UTC)
        if self.in_progress or not auto_backup_due(prefs, self.last_auto_backup_check, now):
            return None

        connected = self.connections.connected()
        kind = prefs.active_provider if prefs.active_provider in connected else None
        kind = kind or (connected[0] if connected else None)
        if kind is None:
            logger.debug("No connected provider for auto backup")
            return None

        logger.info(f"Starting auto backup to {kind}")
        self.last_auto_backup_check = now
        result = self.backup(kind, options)
        if result.success:
            logger.info("Auto backup completed successfully")
        else:
            logger.warning(f"Auto backup failed: {result.error}")
        return result
