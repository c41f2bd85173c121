"""
Backup and restore transfer orchestration.

This module drives a full snapshot to or from a CloudProvider:

    backup:  preparing -> uploading (files, thumbnails) -> finalizing
             (manifest upload, prune) -> idle
    restore: preparing -> downloading (manifest, metadata, files,
             thumbnails) -> idle

Transfer Rules:
    - Transfers are sequential, one entity at a time
    - Cancellation is cooperative and checked before every entity and
      before the manifest is published; work already committed persists
    - Any upload failure aborts the backup before the manifest is
      published, so the remote manifest always describes payloads that
      exist
    - A failed or corrupt download skips that entity and the restore
      carries on; payloads are verified in a temp file and only then
      moved into place
"""

from __future__ import annotations

import logging
import os
import threading
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any

from cobaltsync.backup.errors import (
    BackupError,
    CancelledError,
    IntegrityMismatchError,
    InvalidManifestError,
    NoBackupFoundError,
)
from cobaltsync.backup.integrity import (
    describe_file,
    legacy_remote_file_path,
    remote_file_name,
    remote_file_path,
    remote_thumbnail_path,
    sanitize_filename,
    thumbnail_file_name,
    verify_file,
)
from cobaltsync.backup.manifest import create_manifest
from cobaltsync.backup.sources import BackupDataSource, RestoreTarget, collect_manifest_data
from cobaltsync.backup.types import (
    MANIFEST_FILENAME,
    BackupBinaryInfo,
    BackupInfo,
    BackupManifest,
    BackupOptions,
    BackupPhase,
    BackupPrefs,
    BackupProgress,
    BackupThumbnailRecord,
    ConflictStrategy,
)
from cobaltsync.providers.base import CloudProvider

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[BackupProgress], None]
ThumbnailResolver = Callable[[str], Path | None]


class CancellationToken:
    """
    Cooperative cancellation flag shared between a caller and a transfer.

    Safe to trigger from another thread.
    """

    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def raise_if_cancelled(self, what: str = "Operation") -> None:
        """
        Raises:
            CancelledError: If cancel() has been called.
        """
        if self._event.is_set():
            raise CancelledError(f"{what} cancelled")


@dataclass
class BackupReport:
    """What a completed backup transferred."""

    manifest: BackupManifest
    uploaded_files: list[str] = field(default_factory=list)
    uploaded_thumbnails: list[str] = field(default_factory=list)
    pruned: list[str] = field(default_factory=list)


@dataclass
class RestoreReport:
    """What a completed restore applied."""

    restored_files: list[str] = field(default_factory=list)
    skipped_files: list[str] = field(default_factory=list)
    integrity_failures: list[str] = field(default_factory=list)
    restored_thumbnails: list[str] = field(default_factory=list)


def emit_progress(
    on_progress: ProgressCallback | None,
    phase: BackupPhase,
    current: int = 0,
    total: int = 0,
    current_file: str | None = None,
) -> None:
    if on_progress is not None:
        on_progress(
            BackupProgress(phase=phase, current=current, total=total, current_file=current_file)
        )


# -----------------------------------------------------------------------------
# Backup
# -----------------------------------------------------------------------------


def _existing_path(value: Any) -> Path | None:
    if not value:
        return None
    path = Path(str(value))
    return path if path.is_file() else None


def _prune_remote(provider: CloudProvider, manifest: BackupManifest) -> list[str]:
    """Delete payloads under the backup subdirectories that the manifest no longer references."""
    referenced = {
        str(record["binary"]["remotePath"]).strip("/")
        for record in manifest.files
        if isinstance(record.get("binary"), dict) and record["binary"].get("remotePath")
    }
    referenced.update(thumb.remote_path.strip("/") for thumb in manifest.thumbnails)

    pruned: list[str] = []
    for directory in provider.backup_subdirs:
        try:
            entries = provider.list_files(directory)
        except (BackupError, OSError) as e:
            logger.warning(f"Could not list {directory} for pruning: {e}")
            continue

        for entry in entries:
            if entry.is_directory:
                continue
            path = entry.path.strip("/")
            if path in referenced:
                continue
            try:
                provider.delete_file(path)
                pruned.append(path)
                logger.debug(f"Pruned unreferenced object: {path}")
            except (BackupError, OSError) as e:
                logger.warning(f"Failed to prune {path}: {e}")

    return pruned


def perform_backup(
    provider: CloudProvider,
    data_source: BackupDataSource,
    options: BackupOptions | None = None,
    *,
    on_progress: ProgressCallback | None = None,
    cancel_token: CancellationToken | None = None,
    thumbnail_resolver: ThumbnailResolver | None = None,
    device_name: str | None = None,
) -> BackupReport:
    """
    Push a full snapshot to a provider.

    Args:
        provider: Connected provider.
        data_source: Where the snapshot is read from.
        options: Domains to include.
        on_progress: Progress callback.
        cancel_token: Cancellation flag checked between entities.
        thumbnail_resolver: Maps a file id to its thumbnail path.
        device_name: Device name recorded in the manifest.

    Returns:
        BackupReport with the published manifest.

    Raises:
        CancelledError: If cancelled before the manifest was published.
        BackupError: If an upload fails; no manifest is published.
    """
    options = options or BackupOptions()
    token = cancel_token or CancellationToken()
    report_files: list[str] = []
    report_thumbnails: list[str] = []

    logger.info(f"Starting backup to {provider.display_name}")
    emit_progress(on_progress, BackupPhase.PREPARING)

    provider.refresh_token_if_needed()
    provider.ensure_backup_dir()

    manifest = create_manifest(
        collect_manifest_data(data_source), options, device_name=device_name
    )

    uploads = []
    if options.include_files:
        for index, record in enumerate(manifest.files):
            local_path = _existing_path(record.get("filepath"))
            if local_path is not None:
                uploads.append((index, record, local_path))

    thumbnails = []
    if options.include_thumbnails and thumbnail_resolver is not None:
        for record in manifest.files:
            thumb_path = thumbnail_resolver(str(record["id"]))
            if thumb_path is not None and Path(thumb_path).is_file():
                thumbnails.append((record, Path(thumb_path)))

    total = len(uploads) + len(thumbnails) + 1
    current = 0

    for index, record, local_path in uploads:
        token.raise_if_cancelled("Backup")
        remote_path = remote_file_path(record)
        try:
            info = describe_file(local_path, remote_path)
            provider.upload_file(local_path, remote_path)
        except (BackupError, OSError) as e:
            logger.error(f"Failed to upload {record.get('filename')}: {e}")
            raise

        manifest.files[index] = {**record, "binary": info.to_dict()}
        report_files.append(str(record["id"]))
        current += 1
        logger.debug(f"Uploaded file {record['id']} -> {remote_path}")
        emit_progress(on_progress, BackupPhase.UPLOADING, current, total, record.get("filename"))

    for record, thumb_path in thumbnails:
        token.raise_if_cancelled("Backup")
        file_id = str(record["id"])
        remote_path = remote_thumbnail_path(file_id)
        try:
            info = describe_file(thumb_path, remote_path)
            provider.upload_file(thumb_path, remote_path)
        except (BackupError, OSError) as e:
            logger.error(f"Failed to upload thumbnail for {file_id}: {e}")
            raise

        manifest.thumbnails.append(
            BackupThumbnailRecord(
                file_id=file_id,
                filename=thumbnail_file_name(file_id),
                remote_path=remote_path,
                size=info.size,
                content_hash=info.content_hash,
                hash_algorithm=info.hash_algorithm,
            )
        )
        report_thumbnails.append(file_id)
        current += 1
        emit_progress(on_progress, BackupPhase.UPLOADING, current, total, thumbnail_file_name(file_id))

    token.raise_if_cancelled("Backup")
    emit_progress(on_progress, BackupPhase.FINALIZING, total - 1, total, MANIFEST_FILENAME)
    provider.upload_manifest(manifest)

    pruned = _prune_remote(provider, manifest)

    emit_progress(on_progress, BackupPhase.IDLE, total, total)
    logger.info(
        f"Backup complete: {len(report_files)} files, {len(report_thumbnails)} thumbnails, "
        f"{len(pruned)} pruned"
    )
    return BackupReport(
        manifest=manifest,
        uploaded_files=report_files,
        uploaded_thumbnails=report_thumbnails,
        pruned=pruned,
    )


# -----------------------------------------------------------------------------
# Restore
# -----------------------------------------------------------------------------


def restore_metadata_domains(
    restore_target: RestoreTarget,
    manifest: BackupManifest,
    options: BackupOptions,
) -> None:
    """
    Hand every metadata domain of a manifest to the restore target.

    Targets are applied before plans so plan target links resolve against
    the restored catalog. The housekeeping domains are always restored.
    """
    strategy = options.restore_conflict_strategy

    if options.include_albums and manifest.albums:
        restore_target.set_albums(manifest.albums, strategy)
    if options.include_targets:
        if manifest.targets:
            restore_target.set_targets(manifest.targets, strategy)
        if manifest.target_groups:
            restore_target.set_target_groups(manifest.target_groups, strategy)
    if options.include_sessions:
        if manifest.sessions:
            restore_target.set_sessions(manifest.sessions, strategy)
        if manifest.plans:
            restore_target.set_plans(manifest.plans, strategy)
        if manifest.log_entries:
            restore_target.set_log_entries(manifest.log_entries, strategy)
    if options.include_settings and manifest.settings:
        restore_target.set_settings(manifest.settings)

    if manifest.file_groups.groups or manifest.file_groups.file_group_map:
        restore_target.set_file_groups(manifest.file_groups, strategy)
    restore_target.set_astrometry(manifest.astrometry, strategy)
    if manifest.trash:
        restore_target.set_trash(manifest.trash, strategy)
    if manifest.session_runtime.active_session is not None:
        restore_target.set_active_session(manifest.session_runtime.active_session, strategy)
    restore_target.set_backup_prefs(manifest.backup_prefs)


def local_file_path(files_dir: Path, record: dict[str, Any]) -> Path:
    """
    Where a restored payload is stored locally.

    Named like the remote object, prefixed with the file id, so records
    that share a filename never share a payload.
    """
    return files_dir / sanitize_filename(remote_file_name(record))


def _download_verified(
    provider: CloudProvider,
    remote_paths: list[str],
    dest: Path,
    expected: BackupBinaryInfo | None,
) -> None:
    """
    Download to a temp sibling, verify, then move into place.

    Each remote path is tried in turn; the first successful download is
    verified against the expected size and hash.

    Raises:
        IntegrityMismatchError: If the payload does not match.
        BackupError: If every remote path fails.
    """
    dest.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = dest.with_name(f".{dest.name}.partial")
    last_error: Exception | None = None

    try:
        for remote_path in remote_paths:
            try:
                provider.download_file(remote_path, tmp_path)
                last_error = None
                break
            except (BackupError, OSError) as e:
                last_error = e
                logger.debug(f"Download of {remote_path} failed: {e}")
        if last_error is not None:
            raise last_error

        verify_file(
            tmp_path,
            expected.size if expected else None,
            expected.content_hash if expected else None,
        )
        os.replace(tmp_path, dest)
    finally:
        if tmp_path.exists():
            tmp_path.unlink()


def _restore_files(
    provider: CloudProvider,
    restore_target: RestoreTarget,
    manifest: BackupManifest,
    strategy: ConflictStrategy,
    files_dir: Path,
    token: CancellationToken,
    on_progress: ProgressCallback | None,
    report: RestoreReport,
) -> None:
    total = len(manifest.files)
    restored: list[dict[str, Any]] = []
    emit_progress(on_progress, BackupPhase.DOWNLOADING, 0, total)

    # Payloads already moved into place are committed even when cancelled.
    try:
        for current, record in enumerate(manifest.files, start=1):
            token.raise_if_cancelled("Restore")
            file_id = str(record.get("id"))
            dest = local_file_path(files_dir, record)

            try:
                if dest.exists() and strategy is not ConflictStrategy.OVERWRITE_EXISTING:
                    logger.debug(f"Keeping existing local copy of {file_id}")
                else:
                    binary = BackupBinaryInfo.from_dict(record.get("binary"))
                    primary = (binary.remote_path if binary else None) or remote_file_path(record)
                    candidates = [primary]
                    legacy = legacy_remote_file_path(record)
                    if legacy != primary:
                        candidates.append(legacy)
                    _download_verified(provider, candidates, dest, binary)
            except IntegrityMismatchError as e:
                logger.warning(f"Skipping file {file_id}: {e}")
                report.integrity_failures.append(file_id)
                report.skipped_files.append(file_id)
                continue
            except (BackupError, OSError) as e:
                logger.warning(f"Failed to download {record.get('filename')}: {e}")
                report.skipped_files.append(file_id)
                continue

            entry = {key: value for key, value in record.items() if key != "binary"}
            entry["filepath"] = str(dest)
            restored.append(entry)
            report.restored_files.append(file_id)
            emit_progress(
                on_progress, BackupPhase.DOWNLOADING, current, total, record.get("filename")
            )
    finally:
        if restored:
            restore_target.set_files(restored, strategy)


def _restore_thumbnails(
    provider: CloudProvider,
    manifest: BackupManifest,
    strategy: ConflictStrategy,
    thumbnail_resolver: ThumbnailResolver,
    token: CancellationToken,
    on_progress: ProgressCallback | None,
    report: RestoreReport,
) -> None:
    total = len(manifest.thumbnails)
    for current, thumb in enumerate(manifest.thumbnails, start=1):
        token.raise_if_cancelled("Restore")
        dest = thumbnail_resolver(thumb.file_id)
        if dest is None:
            continue
        dest = Path(dest)
        if dest.exists() and strategy is not ConflictStrategy.OVERWRITE_EXISTING:
            continue

        expected = BackupBinaryInfo(
            remote_path=thumb.remote_path,
            size=thumb.size,
            content_hash=thumb.content_hash,
        )
        try:
            _download_verified(provider, [thumb.remote_path], dest, expected)
        except (BackupError, OSError) as e:
            logger.warning(f"Skipping thumbnail for {thumb.file_id}: {e}")
            continue

        report.restored_thumbnails.append(thumb.file_id)
        emit_progress(on_progress, BackupPhase.DOWNLOADING, current, total, thumb.filename)


def perform_restore(
    provider: CloudProvider,
    restore_target: RestoreTarget,
    options: BackupOptions | None = None,
    *,
    files_dir: str | Path,
    thumbnail_resolver: ThumbnailResolver | None = None,
    on_progress: ProgressCallback | None = None,
    cancel_token: CancellationToken | None = None,
) -> RestoreReport:
    """
    Pull the provider's snapshot into the restore target.

    Args:
        provider: Connected provider.
        restore_target: Where restored data is written.
        options: Domains to restore and the conflict strategy.
        files_dir: Directory restored payloads are written to.
        thumbnail_resolver: Maps a file id to its local thumbnail path.
        on_progress: Progress callback.
        cancel_token: Cancellation flag checked between entities.

    Returns:
        RestoreReport describing restored and skipped entities.

    Raises:
        NoBackupFoundError: If the provider holds no manifest.
        InvalidManifestError: If the stored manifest is rejected.
        CancelledError: If cancelled; entities already committed persist.
    """
    options = options or BackupOptions()
    token = cancel_token or CancellationToken()
    strategy = options.restore_conflict_strategy
    report = RestoreReport()

    logger.info(f"Starting restore from {provider.display_name} ({strategy.value})")
    emit_progress(on_progress, BackupPhase.PREPARING)
    provider.refresh_token_if_needed()

    emit_progress(on_progress, BackupPhase.DOWNLOADING, 0, 1, MANIFEST_FILENAME)
    manifest = provider.download_manifest()
    if manifest is None:
        if provider.file_exists(provider.manifest_remote_path):
            raise InvalidManifestError("Remote manifest is invalid or unsupported")
        raise NoBackupFoundError(f"No backup found on {provider.display_name}")

    token.raise_if_cancelled("Restore")
    restore_metadata_domains(restore_target, manifest, options)

    if options.include_files and manifest.files:
        _restore_files(
            provider,
            restore_target,
            manifest,
            strategy,
            Path(files_dir),
            token,
            on_progress,
            report,
        )

    if options.include_thumbnails and manifest.thumbnails and thumbnail_resolver is not None:
        _restore_thumbnails(
            provider, manifest, strategy, thumbnail_resolver, token, on_progress, report
        )

    emit_progress(on_progress, BackupPhase.IDLE)
    logger.info(
        f"Restore complete: {len(report.restored_files)} files restored, "
        f"{len(report.skipped_files)} skipped"
    )
    return report


# -----------------------------------------------------------------------------
# Info
# -----------------------------------------------------------------------------


def get_backup_info(provider: CloudProvider) -> BackupInfo | None:
    """Describe the snapshot a provider holds, or None if there is none."""
    try:
        manifest = provider.download_manifest()
    except (BackupError, OSError) as e:
        logger.warning(f"Could not read backup info from {provider.display_name}: {e}")
        return None
    if manifest is None:
        return None

    total_size = 0
    for record in manifest.files:
        size = record.get("fileSize")
        if isinstance(size, int) and not isinstance(size, bool):
            total_size += size

    return BackupInfo(
        provider=provider.name,
        manifest_date=manifest.created_at,
        file_count=len(manifest.files),
        total_size=total_size,
        device_name=manifest.device_name,
        app_version=manifest.app_version,
    )


def _as_datetime(value: datetime | str | float) -> datetime:
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=UTC)
    if isinstance(value, (int, float)):
        return datetime.fromtimestamp(value, UTC)
    parsed = datetime.fromisoformat(value)
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=UTC)


def auto_backup_due(
    prefs: BackupPrefs,
    last_attempt: datetime | str | float | None,
    now: datetime | None = None,
) -> bool:
    """
    Decide whether an automatic backup should run.

    Args:
        prefs: Backup preferences.
        last_attempt: Time of the last automatic attempt, if any.
        now: Current time (defaults to now, UTC).

    Returns:
        True if auto backup is enabled and the interval has elapsed.
    """
    if not prefs.auto_backup_enabled:
        return False
    if last_attempt is None:
        return True
    now = now or datetime.now(UTC)
    if now.tzinfo is None:
        now = now.replace(tzinfo=UTC)
    elapsed = now - _as_datetime(last_attempt)
    return elapsed >= timedelta(hours=prefs.auto_backup_interval_hours)
