"""
Remote naming and content-integrity checks.

Remote object names are derived from the file id plus a sanitized filename
so two files with the same name never collide. Older snapshots stored
payloads under the raw filename; restore falls back to that legacy name.
"""

from __future__ import annotations

import hashlib
import re
from pathlib import Path
from typing import Any

from cobaltsync.backup.errors import IntegrityMismatchError
from cobaltsync.backup.types import (
    BACKUP_DIR,
    FITS_SUBDIR,
    HASH_ALGORITHM,
    MANIFEST_FILENAME,
    THUMBNAIL_SUBDIR,
    BackupBinaryInfo,
)

CHUNK_SIZE = 1024 * 1024

_UNSAFE_CHARS_RE = re.compile(r"[^A-Za-z0-9._-]")

# Local file headers, empty archives and spanned archives
_ZIP_SIGNATURES = (b"PK\x03\x04", b"PK\x05\x06", b"PK\x07\x08")


def sanitize_filename(name: str) -> str:
    """Replace every character outside [A-Za-z0-9._-] with an underscore."""
    return _UNSAFE_CHARS_RE.sub("_", name)


def remote_file_name(record: dict[str, Any]) -> str:
    return f"{record['id']}_{sanitize_filename(str(record.get('filename', '')))}"


def thumbnail_file_name(file_id: str) -> str:
    return f"{file_id}.jpg"


def remote_file_path(record: dict[str, Any]) -> str:
    """Remote path of a file payload under the current layout."""
    return f"{BACKUP_DIR}/{FITS_SUBDIR}/{remote_file_name(record)}"


def legacy_remote_file_path(record: dict[str, Any]) -> str:
    """Remote path used by snapshots written before id-prefixed names."""
    return f"{BACKUP_DIR}/{FITS_SUBDIR}/{record.get('filename', '')}"


def remote_thumbnail_path(file_id: str) -> str:
    return f"{BACKUP_DIR}/{THUMBNAIL_SUBDIR}/{thumbnail_file_name(file_id)}"


def manifest_path() -> str:
    return f"{BACKUP_DIR}/{MANIFEST_FILENAME}"


def sha256_file(path: str | Path) -> str:
    """Compute the SHA-256 hex digest of a file, reading it in chunks."""
    digest = hashlib.sha256()
    with open(path, "rb") as f:
        for chunk in iter(lambda: f.read(CHUNK_SIZE), b""):
            digest.update(chunk)
    return digest.hexdigest()


def sha256_bytes(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


def describe_file(path: str | Path, remote_path: str | None = None) -> BackupBinaryInfo:
    """
    Measure a local payload for its manifest entry.

    Args:
        path: Local file.
        remote_path: Where the payload is (or will be) stored.

    Returns:
        BackupBinaryInfo with size and SHA-256.
    """
    path = Path(path)
    return BackupBinaryInfo(
        remote_path=remote_path,
        size=path.stat().st_size,
        content_hash=sha256_file(path),
        hash_algorithm=HASH_ALGORITHM,
    )


def verify_file(
    path: str | Path,
    expected_size: int | None = None,
    expected_hash: str | None = None,
) -> None:
    """
    Check a local payload against the size and hash recorded in a manifest.

    Expectations that are None are not checked; manifests written before
    integrity data existed carry neither.

    Raises:
        IntegrityMismatchError: If the size or hash differs.
    """
    path = Path(path)

    if expected_size is not None:
        actual_size = path.stat().st_size
        if actual_size != expected_size:
            raise IntegrityMismatchError(
                f"Size mismatch for {path.name}: expected {expected_size}, got {actual_size}",
                path=str(path),
                expected_size=expected_size,
                actual_size=actual_size,
            )

    if expected_hash:
        actual_hash = sha256_file(path)
        if actual_hash.lower() != expected_hash.lower():
            raise IntegrityMismatchError(
                f"Hash mismatch for {path.name}",
                path=str(path),
                expected_hash=expected_hash,
                actual_hash=actual_hash,
            )


def is_zip_payload(data: bytes) -> bool:
    """Return True if the bytes start with a zip signature."""
    return data[:4] in _ZIP_SIGNATURES
