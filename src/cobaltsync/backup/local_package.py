"""
Single-file local backups.

Three package flavours are written and read:

    cobalt-backup-{ts}.json       metadata-only manifest, no payloads
    cobalt-backup-{ts}.zip        full package: manifest.json, files/,
                                  thumbnails/
    cobalt-backup-{ts}.cobaltbak  either of the above sealed in a
                                  password-protected JSON envelope

Full packages record each payload's size and SHA-256 in the manifest
before archiving. Import verifies every payload against those values
before it is copied into place; a mismatching payload is skipped.
"""

from __future__ import annotations

import io
import json
import logging
import os
import shutil
import tempfile
import zipfile
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from cobaltsync.backup.crypto import (
    EncryptedBackupEnvelope,
    decrypt_backup_payload,
    encrypt_backup_payload,
    is_encrypted_envelope,
)
from cobaltsync.backup.errors import (
    BackupError,
    EncryptionError,
    IntegrityMismatchError,
    InvalidManifestError,
    UnsupportedFormatError,
)
from cobaltsync.backup.integrity import (
    describe_file,
    is_zip_payload,
    remote_file_name,
    thumbnail_file_name,
    verify_file,
)
from cobaltsync.backup.manifest import (
    ManifestSummary,
    create_manifest,
    get_manifest_summary,
    load_manifest,
    serialize_manifest,
)
from cobaltsync.backup.orchestrator import (
    ProgressCallback,
    RestoreReport,
    ThumbnailResolver,
    emit_progress,
    local_file_path,
    restore_metadata_domains,
)
from cobaltsync.backup.sources import BackupDataSource, RestoreTarget, collect_manifest_data
from cobaltsync.backup.types import (
    MANIFEST_FILENAME,
    BackupBinaryInfo,
    BackupManifest,
    BackupOptions,
    BackupPhase,
    BackupThumbnailRecord,
    ConflictStrategy,
)

logger = logging.getLogger(__name__)

PACKAGE_PREFIX = "cobalt-backup"
PACKAGE_FILES_DIR = "files"
PACKAGE_THUMBNAILS_DIR = "thumbnails"
ENCRYPTED_SUFFIX = ".cobaltbak"

SOURCE_MANIFEST_JSON = "manifest-json"
SOURCE_FULL_PACKAGE = "full-package"
SOURCE_ENCRYPTED_PACKAGE = "encrypted-package"


@dataclass
class LocalBackupPreview:
    """
    What a local backup file contains, read without restoring anything.

    Encrypted packages are previewed from their plaintext summary, so
    ``manifest`` is None for them until the package is decrypted.
    """

    file_name: str
    source_path: Path
    source_type: str
    encrypted: bool
    summary: ManifestSummary
    manifest: BackupManifest | None = None
    envelope: EncryptedBackupEnvelope | None = None


# -----------------------------------------------------------------------------
# Export
# -----------------------------------------------------------------------------


def _output_path(output_dir: Path, suffix: str) -> Path:
    timestamp = datetime.now(UTC).strftime("%Y%m%d-%H%M%S")
    path = output_dir / f"{PACKAGE_PREFIX}-{timestamp}{suffix}"
    counter = 1
    while path.exists():
        path = output_dir / f"{PACKAGE_PREFIX}-{timestamp}-{counter}{suffix}"
        counter += 1
    return path


def build_full_package(
    manifest: BackupManifest,
    options: BackupOptions,
    work_dir: Path,
    thumbnail_resolver: ThumbnailResolver | None = None,
) -> Path:
    """
    Stage payloads and the manifest in work_dir and zip them.

    The manifest is annotated in place: file records gain a ``binary``
    entry pointing into the package and thumbnails are rebuilt from what
    was actually packaged.

    Args:
        manifest: Manifest to package.
        options: Backup options.
        work_dir: Scratch directory owned by the caller.
        thumbnail_resolver: Maps a file id to its thumbnail path.

    Returns:
        Path of the zip archive inside work_dir.
    """
    staging = work_dir / "package"
    files_dir = staging / PACKAGE_FILES_DIR
    thumbnails_dir = staging / PACKAGE_THUMBNAILS_DIR
    files_dir.mkdir(parents=True, exist_ok=True)
    thumbnails_dir.mkdir(parents=True, exist_ok=True)

    if options.include_files:
        for index, record in enumerate(manifest.files):
            filepath = record.get("filepath")
            if not filepath or not Path(str(filepath)).is_file():
                continue
            packaged_name = remote_file_name(record)
            packaged = files_dir / packaged_name
            shutil.copyfile(str(filepath), packaged)
            info = describe_file(packaged, f"{PACKAGE_FILES_DIR}/{packaged_name}")
            manifest.files[index] = {**record, "binary": info.to_dict()}

    manifest.thumbnails = []
    if options.include_thumbnails and thumbnail_resolver is not None:
        for record in manifest.files:
            file_id = str(record["id"])
            source = thumbnail_resolver(file_id)
            if source is None or not Path(source).is_file():
                continue
            thumb_name = thumbnail_file_name(file_id)
            packaged = thumbnails_dir / thumb_name
            shutil.copyfile(source, packaged)
            info = describe_file(packaged)
            manifest.thumbnails.append(
                BackupThumbnailRecord(
                    file_id=file_id,
                    filename=thumb_name,
                    remote_path=f"{PACKAGE_THUMBNAILS_DIR}/{thumb_name}",
                    size=info.size,
                    content_hash=info.content_hash,
                    hash_algorithm=info.hash_algorithm,
                )
            )

    (staging / MANIFEST_FILENAME).write_text(serialize_manifest(manifest), encoding="utf-8")

    zip_path = work_dir / "package.zip"
    with zipfile.ZipFile(zip_path, "w", compression=zipfile.ZIP_DEFLATED) as zf:
        for path in sorted(staging.rglob("*")):
            if path.is_file():
                zf.write(path, arcname=path.relative_to(staging).as_posix())
    return zip_path


def export_local_backup(
    data_source: BackupDataSource,
    output_dir: str | Path,
    options: BackupOptions | None = None,
    *,
    on_progress: ProgressCallback | None = None,
    thumbnail_resolver: ThumbnailResolver | None = None,
) -> Path:
    """
    Write a local backup file.

    Args:
        data_source: Where the snapshot is read from.
        output_dir: Directory the backup file is written to.
        options: Payload mode, encryption and domain selection.
        on_progress: Progress callback.
        thumbnail_resolver: Maps a file id to its thumbnail path.

    Returns:
        Path of the written backup file.

    Raises:
        EncryptionError: If encryption is enabled without a password.
    """
    options = options or BackupOptions()
    encryption = options.local_encryption
    if encryption.enabled and not encryption.password:
        raise EncryptionError("Password required for encrypted backup")

    output_dir = Path(output_dir)
    output_dir.mkdir(parents=True, exist_ok=True)

    emit_progress(on_progress, BackupPhase.PREPARING)
    manifest = create_manifest(collect_manifest_data(data_source), options)

    with tempfile.TemporaryDirectory(prefix="cobaltsync_pkg_") as tmp:
        if options.local_payload_mode == "full":
            emit_progress(on_progress, BackupPhase.UPLOADING, 1, 4, "packaging.zip")
            zip_path = build_full_package(manifest, options, Path(tmp), thumbnail_resolver)
            payload = zip_path.read_bytes()
            suffix = ".zip"
        else:
            manifest.capabilities.local_payload_mode = "metadata-only"
            manifest.thumbnails = []
            manifest.files = [
                {key: value for key, value in record.items() if key != "binary"}
                for record in manifest.files
            ]
            payload = serialize_manifest(manifest).encode("utf-8")
            suffix = ".json"

    if encryption.enabled:
        emit_progress(on_progress, BackupPhase.FINALIZING, 2, 4, "encrypting")
        summary = get_manifest_summary(manifest).to_dict()
        envelope = encrypt_backup_payload(payload, encryption.password or "", summary)
        output_path = _output_path(output_dir, ENCRYPTED_SUFFIX)
        output_path.write_text(envelope.to_json(), encoding="utf-8")
    else:
        output_path = _output_path(output_dir, suffix)
        output_path.write_bytes(payload)

    emit_progress(on_progress, BackupPhase.FINALIZING, 3, 4, output_path.name)
    emit_progress(on_progress, BackupPhase.IDLE)
    logger.info(f"Local backup exported: {output_path} ({len(payload):,} bytes)")
    return output_path


# -----------------------------------------------------------------------------
# Preview
# -----------------------------------------------------------------------------


def _preview_from_zip(path: Path) -> LocalBackupPreview | None:
    if not zipfile.is_zipfile(path):
        return None
    with zipfile.ZipFile(path) as zf:
        if MANIFEST_FILENAME not in zf.namelist():
            return None
        manifest = load_manifest(zf.read(MANIFEST_FILENAME))
    return LocalBackupPreview(
        file_name=path.name,
        source_path=path,
        source_type=SOURCE_FULL_PACKAGE,
        encrypted=False,
        summary=get_manifest_summary(manifest),
        manifest=manifest,
    )


def _preview_from_json(path: Path) -> LocalBackupPreview | None:
    raw = path.read_bytes()
    try:
        data = json.loads(raw)
    except (json.JSONDecodeError, UnicodeDecodeError):
        return None

    if is_encrypted_envelope(data):
        envelope = EncryptedBackupEnvelope.from_dict(data)
        return LocalBackupPreview(
            file_name=path.name,
            source_path=path,
            source_type=SOURCE_ENCRYPTED_PACKAGE,
            encrypted=True,
            summary=ManifestSummary.from_dict(envelope.summary),
            envelope=envelope,
        )

    if not isinstance(data, dict) or "version" not in data:
        return None

    manifest = load_manifest(raw)
    return LocalBackupPreview(
        file_name=path.name,
        source_path=path,
        source_type=SOURCE_MANIFEST_JSON,
        encrypted=False,
        summary=get_manifest_summary(manifest),
        manifest=manifest,
    )


def preview_local_backup(path: str | Path) -> LocalBackupPreview:
    """
    Identify a local backup file and summarize it without restoring.

    A ``.zip`` name is tried as a package first; then the file is read as
    JSON (a manifest, then an encrypted envelope); an unrecognized file is
    finally tried as a zip package whatever its name.

    Raises:
        FileNotFoundError: If the file does not exist.
        InvalidManifestError: If the file holds a manifest that is rejected.
        UnsupportedFormatError: If the file is none of the known formats.
    """
    path = Path(path)
    if not path.is_file():
        raise FileNotFoundError(f"Backup file not found: {path}")

    if path.suffix.lower() == ".zip":
        preview = _preview_from_zip(path)
        if preview is not None:
            return preview

    preview = _preview_from_json(path)
    if preview is not None:
        return preview

    preview = _preview_from_zip(path)
    if preview is not None:
        return preview

    raise UnsupportedFormatError(f"Invalid backup file format: {path.name}")


# -----------------------------------------------------------------------------
# Import
# -----------------------------------------------------------------------------


def _strip_binary(record: dict[str, Any]) -> dict[str, Any]:
    return {key: value for key, value in record.items() if key != "binary"}


def _import_manifest_only(
    restore_target: RestoreTarget,
    manifest: BackupManifest,
    options: BackupOptions,
    report: RestoreReport,
) -> None:
    restore_metadata_domains(restore_target, manifest, options)
    if options.include_files and manifest.files:
        restore_target.set_files(
            [_strip_binary(record) for record in manifest.files],
            options.restore_conflict_strategy,
        )
        report.restored_files.extend(str(record.get("id")) for record in manifest.files)


def _extract_verified(
    zf: zipfile.ZipFile,
    member: str,
    dest: Path,
    expected: BackupBinaryInfo | None,
) -> None:
    """Extract one archive member next to dest, verify it, then move it into place."""
    dest.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = dest.with_name(f".{dest.name}.partial")
    try:
        with zf.open(member) as src, open(tmp_path, "wb") as dst:
            shutil.copyfileobj(src, dst)
        verify_file(
            tmp_path,
            expected.size if expected else None,
            expected.content_hash if expected else None,
        )
        os.replace(tmp_path, dest)
    finally:
        if tmp_path.exists():
            tmp_path.unlink()


def _import_package(
    zf: zipfile.ZipFile,
    restore_target: RestoreTarget,
    options: BackupOptions,
    files_dir: Path,
    thumbnail_resolver: ThumbnailResolver | None,
    on_progress: ProgressCallback | None,
    report: RestoreReport,
) -> None:
    members = set(zf.namelist())
    if MANIFEST_FILENAME not in members:
        raise InvalidManifestError("Invalid package: manifest.json missing")
    manifest = load_manifest(zf.read(MANIFEST_FILENAME))
    strategy = options.restore_conflict_strategy

    restore_metadata_domains(restore_target, manifest, options)

    if options.include_files and manifest.files:
        restored: list[dict[str, Any]] = []
        total = len(manifest.files)
        for current, record in enumerate(manifest.files, start=1):
            file_id = str(record.get("id"))
            binary = BackupBinaryInfo.from_dict(record.get("binary"))
            member = (
                binary.remote_path.lstrip("/")
                if binary and binary.remote_path
                else f"{PACKAGE_FILES_DIR}/{remote_file_name(record)}"
            )
            if member not in members:
                report.skipped_files.append(file_id)
                continue

            dest = local_file_path(files_dir, record)
            if not (dest.exists() and strategy is ConflictStrategy.SKIP_EXISTING):
                try:
                    _extract_verified(zf, member, dest, binary)
                except IntegrityMismatchError as e:
                    logger.warning(f"Skipping file {file_id}: {e}")
                    report.integrity_failures.append(file_id)
                    report.skipped_files.append(file_id)
                    continue
                except (BackupError, OSError, zipfile.BadZipFile) as e:
                    logger.warning(f"Failed to extract {member}: {e}")
                    report.skipped_files.append(file_id)
                    continue

            entry = _strip_binary(record)
            entry["filepath"] = str(dest)
            restored.append(entry)
            report.restored_files.append(file_id)
            emit_progress(on_progress, BackupPhase.DOWNLOADING, current, total, record.get("filename"))

        if restored:
            restore_target.set_files(restored, strategy)

    if options.include_thumbnails and manifest.thumbnails and thumbnail_resolver is not None:
        for thumb in manifest.thumbnails:
            member = (thumb.remote_path or f"{PACKAGE_THUMBNAILS_DIR}/{thumb.filename}").lstrip("/")
            dest = thumbnail_resolver(thumb.file_id)
            if member not in members or dest is None:
                continue
            dest = Path(dest)
            if dest.exists() and strategy is ConflictStrategy.SKIP_EXISTING:
                continue
            expected = BackupBinaryInfo(size=thumb.size, content_hash=thumb.content_hash)
            try:
                _extract_verified(zf, member, dest, expected)
            except (BackupError, OSError, zipfile.BadZipFile) as e:
                logger.warning(f"Skipping thumbnail for {thumb.file_id}: {e}")
                continue
            report.restored_thumbnails.append(thumb.file_id)


def import_local_backup(
    restore_target: RestoreTarget,
    source: str | Path | LocalBackupPreview,
    options: BackupOptions | None = None,
    *,
    files_dir: str | Path,
    thumbnail_resolver: ThumbnailResolver | None = None,
    on_progress: ProgressCallback | None = None,
) -> RestoreReport:
    """
    Restore from a local backup file.

    Args:
        restore_target: Where restored data is written.
        source: Backup file path or a preview returned by preview_local_backup().
        options: Domains, conflict strategy and, for encrypted packages,
            the password in ``local_encryption.password``.
        files_dir: Directory restored payloads are written to.
        thumbnail_resolver: Maps a file id to its local thumbnail path.
        on_progress: Progress callback.

    Returns:
        RestoreReport describing restored and skipped entities.

    Raises:
        EncryptionError: On a missing or wrong password.
        InvalidManifestError: If the package manifest is rejected.
        UnsupportedFormatError: If the source is not a backup file.
    """
    options = options or BackupOptions()
    preview = source if isinstance(source, LocalBackupPreview) else preview_local_backup(source)
    files_dir = Path(files_dir)
    report = RestoreReport()

    emit_progress(on_progress, BackupPhase.PREPARING)
    emit_progress(on_progress, BackupPhase.DOWNLOADING, 1, 3, preview.file_name)
    logger.info(f"Importing local backup {preview.file_name} ({preview.source_type})")

    if preview.source_type == SOURCE_MANIFEST_JSON:
        if preview.manifest is None:
            raise UnsupportedFormatError("Invalid backup file format")
        _import_manifest_only(restore_target, preview.manifest, options, report)

    elif preview.source_type == SOURCE_FULL_PACKAGE:
        with zipfile.ZipFile(preview.source_path) as zf:
            _import_package(
                zf, restore_target, options, files_dir, thumbnail_resolver, on_progress, report
            )

    elif preview.source_type == SOURCE_ENCRYPTED_PACKAGE:
        if preview.envelope is None:
            raise EncryptionError("Encrypted backup payload not found")
        password = options.local_encryption.password
        if not password:
            raise EncryptionError("Password required for encrypted backup")

        emit_progress(on_progress, BackupPhase.DOWNLOADING, 2, 4, "decrypting")
        payload = decrypt_backup_payload(preview.envelope, password)

        if is_zip_payload(payload):
            with zipfile.ZipFile(io.BytesIO(payload)) as zf:
                _import_package(
                    zf, restore_target, options, files_dir, thumbnail_resolver, on_progress, report
                )
        else:
            try:
                manifest = load_manifest(payload)
            except InvalidManifestError as e:
                raise InvalidManifestError(f"Invalid decrypted backup payload: {e}") from e
            _import_manifest_only(restore_target, manifest, options, report)

    else:
        raise UnsupportedFormatError(f"Unsupported backup format: {preview.source_type}")

    emit_progress(on_progress, BackupPhase.IDLE)
    logger.info(
        f"Import complete: {len(report.restored_files)} files restored, "
        f"{len(report.skipped_files)} skipped"
    )
    return report
