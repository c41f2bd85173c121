"""
Manifest generation, parsing and validation.

The parser accepts every manifest version from 1 up to MANIFEST_VERSION and
fills fields introduced by later versions with empty defaults, so restore
code can treat every domain unconditionally. Newer versions are refused:
a manifest written by a future release may carry data this release would
silently drop.
"""

from __future__ import annotations

import json
import logging
import platform
import socket
import uuid
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any

from cobaltsync.backup.errors import InvalidManifestError
from cobaltsync.backup.types import (
    DEFAULT_ASTROMETRY_CONFIG,
    HOUSEKEEPING_DOMAINS,
    MANIFEST_VERSION,
    BackupAstrometryState,
    BackupCapabilities,
    BackupDomain,
    BackupFileGroupState,
    BackupManifest,
    BackupOptions,
    BackupPrefs,
    BackupSessionRuntimeState,
    BackupThumbnailRecord,
    ManifestData,
)

logger = logging.getLogger(__name__)

_SCALE_UNITS = ("degwidth", "arcminwidth", "arcsecperpix")


def infer_media_kind(record: dict[str, Any]) -> str:
    """Infer a file's media kind from its source type."""
    source_type = record.get("sourceType")
    if source_type == "video":
        return "video"
    if source_type == "audio":
        return "audio"
    return "image"


def normalize_file_record(record: dict[str, Any]) -> dict[str, Any]:
    """Return the record with a mediaKind, inferring one for legacy entries."""
    if record.get("mediaKind"):
        return record
    return {**record, "mediaKind": infer_media_kind(record)}


def build_domains(options: BackupOptions) -> list[str]:
    """
    Compute the domain tags a backup with these options includes.

    Targets imply target groups and sessions imply plans and log entries.
    The housekeeping domains are always included.
    """
    domains: list[BackupDomain] = []
    if options.include_files:
        domains.append(BackupDomain.FILES)
    if options.include_thumbnails:
        domains.append(BackupDomain.THUMBNAILS)
    if options.include_albums:
        domains.append(BackupDomain.ALBUMS)
    if options.include_targets:
        domains.extend([BackupDomain.TARGETS, BackupDomain.TARGET_GROUPS])
    if options.include_sessions:
        domains.extend([BackupDomain.SESSIONS, BackupDomain.PLANS, BackupDomain.LOG_ENTRIES])
    if options.include_settings:
        domains.append(BackupDomain.SETTINGS)
    domains.extend(HOUSEKEEPING_DOMAINS)
    return [domain.value for domain in domains]


def _get_app_version() -> str:
    try:
        from cobaltsync import __version__

        return __version__
    except ImportError:
        return "unknown"


def create_manifest(
    data: ManifestData,
    options: BackupOptions,
    *,
    app_version: str | None = None,
    device_name: str | None = None,
    platform_name: str | None = None,
) -> BackupManifest:
    """
    Build a fresh manifest from the data source's current state.

    Domains not selected by the options are emitted as empty collections.
    Thumbnails always start empty; the transfer code appends a record for
    each thumbnail it actually stores.

    Args:
        data: Snapshot of every domain.
        options: Backup options selecting domains.
        app_version: Version string recorded in the manifest.
        device_name: Device name recorded in the manifest.
        platform_name: Platform recorded in the manifest.

    Returns:
        New BackupManifest with a fresh snapshot id.
    """
    file_groups = data.file_groups or BackupFileGroupState()
    astrometry = data.astrometry or BackupAstrometryState()

    return BackupManifest(
        version=MANIFEST_VERSION,
        snapshot_id=str(uuid.uuid4()),
        app_version=app_version or _get_app_version(),
        created_at=datetime.now(UTC).isoformat(),
        device_name=device_name or socket.gethostname() or "Unknown Device",
        platform=platform_name or platform.system().lower() or "unknown",
        capabilities=BackupCapabilities(
            supports_binary=options.include_files,
            supports_thumbnails=options.include_thumbnails,
            local_payload_mode=options.local_payload_mode,
            encrypted_local_package=options.local_encryption.enabled,
        ),
        domains=build_domains(options),
        files=[normalize_file_record(f) for f in data.files] if options.include_files else [],
        thumbnails=[],
        albums=list(data.albums) if options.include_albums else [],
        targets=list(data.targets) if options.include_targets else [],
        target_groups=list(data.target_groups) if options.include_targets else [],
        sessions=list(data.sessions) if options.include_sessions else [],
        plans=list(data.plans) if options.include_sessions else [],
        log_entries=list(data.log_entries) if options.include_sessions else [],
        settings=dict(data.settings) if options.include_settings else {},
        file_groups=BackupFileGroupState(
            groups=list(file_groups.groups or []),
            file_group_map=dict(file_groups.file_group_map or {}),
        ),
        astrometry=BackupAstrometryState(
            config=dict(astrometry.config or DEFAULT_ASTROMETRY_CONFIG),
            jobs=list(astrometry.jobs or []),
        ),
        trash=list(data.trash or []),
        session_runtime=data.session_runtime or BackupSessionRuntimeState(),
        backup_prefs=data.backup_prefs or BackupPrefs(),
    )


def serialize_manifest(manifest: BackupManifest) -> str:
    """Serialize a manifest to indented JSON."""
    return json.dumps(manifest.to_dict(), indent=2, ensure_ascii=False)


def _as_object(value: Any) -> dict[str, Any] | None:
    return value if isinstance(value, dict) else None


def _as_list(value: Any) -> list[Any]:
    return list(value) if isinstance(value, list) else []


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def parse_astrometry_config(value: Any) -> dict[str, Any]:
    """Overlay type-checked stored values on the default astrometry config."""
    config = _as_object(value)
    defaults = dict(DEFAULT_ASTROMETRY_CONFIG)
    if config is None:
        return defaults

    def pick(key: str, check: Any) -> Any:
        candidate = config.get(key)
        return candidate if check(candidate) else defaults[key]

    return {
        "apiKey": pick("apiKey", lambda v: isinstance(v, str)),
        "serverUrl": pick("serverUrl", lambda v: isinstance(v, str)),
        "useCustomServer": pick("useCustomServer", lambda v: isinstance(v, bool)),
        "maxConcurrent": pick("maxConcurrent", _is_number),
        "autoSolve": pick("autoSolve", lambda v: isinstance(v, bool)),
        "defaultScaleUnits": pick("defaultScaleUnits", lambda v: v in _SCALE_UNITS),
        "defaultScaleLower": config.get("defaultScaleLower")
        if _is_number(config.get("defaultScaleLower"))
        else None,
        "defaultScaleUpper": config.get("defaultScaleUpper")
        if _is_number(config.get("defaultScaleUpper"))
        else None,
    }


def _capabilities_from_dict(data: dict[str, Any], thumbnails: list[Any]) -> BackupCapabilities:
    capabilities = BackupCapabilities(
        supports_binary=True,
        supports_thumbnails=len(thumbnails) > 0,
        local_payload_mode="metadata-only",
        encrypted_local_package=False,
    )
    stored = _as_object(data.get("capabilities")) or {}
    if isinstance(stored.get("supportsBinary"), bool):
        capabilities.supports_binary = stored["supportsBinary"]
    if isinstance(stored.get("supportsThumbnails"), bool):
        capabilities.supports_thumbnails = stored["supportsThumbnails"]
    if stored.get("localPayloadMode") in ("full", "metadata-only"):
        capabilities.local_payload_mode = stored["localPayloadMode"]
    if isinstance(stored.get("encryptedLocalPackage"), bool):
        capabilities.encrypted_local_package = stored["encryptedLocalPackage"]
    return capabilities


def manifest_from_dict(data: dict[str, Any]) -> BackupManifest:
    """
    Build a manifest from decoded JSON, filling every missing field.

    Does not check the version or cross-references; use parse_manifest for
    untrusted input.
    """
    file_groups_raw = _as_object(data.get("fileGroups")) or {}
    astrometry_raw = _as_object(data.get("astrometry")) or {}
    runtime_raw = _as_object(data.get("sessionRuntime")) or {}
    raw_thumbnails = [t for t in _as_list(data.get("thumbnails")) if isinstance(t, dict)]
    created_at = str(data.get("createdAt", ""))

    group_map_raw = _as_object(file_groups_raw.get("fileGroupMap")) or {}
    file_group_map = {
        str(file_id): [str(g) for g in group_ids] if isinstance(group_ids, list) else []
        for file_id, group_ids in group_map_raw.items()
    }

    return BackupManifest(
        version=data.get("version", MANIFEST_VERSION),
        snapshot_id=str(data.get("snapshotId") or f"legacy-{created_at}"),
        app_version=str(data.get("appVersion") or "unknown"),
        created_at=created_at,
        device_name=str(data.get("deviceName") or "Unknown Device"),
        platform=str(data.get("platform") or "unknown"),
        capabilities=_capabilities_from_dict(data, raw_thumbnails),
        domains=[str(d) for d in _as_list(data.get("domains"))],
        files=[
            normalize_file_record(f) for f in _as_list(data.get("files")) if isinstance(f, dict)
        ],
        thumbnails=[BackupThumbnailRecord.from_dict(t) for t in raw_thumbnails],
        albums=_as_list(data.get("albums")),
        targets=_as_list(data.get("targets")),
        target_groups=_as_list(data.get("targetGroups")),
        sessions=_as_list(data.get("sessions")),
        plans=_as_list(data.get("plans")),
        log_entries=_as_list(data.get("logEntries")),
        settings=_as_object(data.get("settings")) or {},
        file_groups=BackupFileGroupState(
            groups=_as_list(file_groups_raw.get("groups")),
            file_group_map=file_group_map,
        ),
        astrometry=BackupAstrometryState(
            config=parse_astrometry_config(astrometry_raw.get("config")),
            jobs=_as_list(astrometry_raw.get("jobs")),
        ),
        trash=_as_list(data.get("trash")),
        session_runtime=BackupSessionRuntimeState(
            active_session=_as_object(runtime_raw.get("activeSession")),
        ),
        backup_prefs=BackupPrefs.from_dict(_as_object(data.get("backupPrefs"))),
    )


def _reference_id(value: Any) -> str | None:
    """Return a reference as a string id, or None when it cannot be one."""
    if isinstance(value, bool):
        return None
    if isinstance(value, str):
        return value
    if isinstance(value, int):
        return str(value)
    return None


def validate_cross_references(manifest: BackupManifest) -> list[str]:
    """
    Check that every file reference in the manifest resolves.

    Covers album imageIds, file-group membership (file ids and group ids),
    thumbnail fileIds and astrometry job fileIds. Ids are compared as
    strings so numeric ids match their string form. A reference that is
    not a string or integer, or an imageIds value that is not a list, is
    reported rather than raised.

    Returns:
        List of problems; empty when the manifest is consistent.
    """
    errors: list[str] = []
    file_ids = {
        ref
        for ref in (_reference_id(f.get("id")) for f in manifest.files if isinstance(f, dict))
        if ref is not None
    }
    group_ids = {
        ref
        for ref in (
            _reference_id(group.get("id"))
            for group in manifest.file_groups.groups
            if isinstance(group, dict)
        )
        if ref is not None
    }

    for album in manifest.albums:
        if not isinstance(album, dict):
            errors.append("Album record is not an object")
            continue
        image_ids = album.get("imageIds")
        if image_ids is None:
            continue
        if not isinstance(image_ids, list):
            errors.append(f"Album {album.get('id')} has malformed imageIds")
            continue
        for image_id in image_ids:
            ref = _reference_id(image_id)
            if ref is None:
                errors.append(f"Album {album.get('id')} has a malformed image id")
            elif ref not in file_ids:
                errors.append(f"Album {album.get('id')} references unknown file {ref}")

    for file_id, mapped_group_ids in manifest.file_groups.file_group_map.items():
        file_ref = _reference_id(file_id)
        if file_ref is None or file_ref not in file_ids:
            errors.append(f"File group map references unknown file {file_id!r}")
        if not isinstance(mapped_group_ids, list):
            errors.append(f"File {file_id!r} has malformed group membership")
            continue
        for group_id in mapped_group_ids:
            group_ref = _reference_id(group_id)
            if group_ref is None or group_ref not in group_ids:
                errors.append(f"File {file_id!r} mapped to unknown group {group_id!r}")

    for job in manifest.astrometry.jobs:
        if not isinstance(job, dict):
            errors.append("Astrometry job record is not an object")
            continue
        job_file_id = _reference_id(job.get("fileId"))
        if not job_file_id or job_file_id not in file_ids:
            errors.append(
                f"Astrometry job {job.get('id')} references unknown file {job.get('fileId')!r}"
            )

    for thumb in manifest.thumbnails:
        thumb_ref = _reference_id(thumb.file_id)
        if thumb_ref is None or thumb_ref not in file_ids:
            errors.append(f"Thumbnail references unknown file {thumb.file_id!r}")

    return errors


def load_manifest(text: str | bytes) -> BackupManifest:
    """
    Parse and validate a manifest.

    Args:
        text: Manifest JSON.

    Returns:
        The validated manifest.

    Raises:
        InvalidManifestError: If the JSON is invalid, a required field is
            missing, the version is unsupported or a reference dangles.
    """
    try:
        data = json.loads(text)
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        raise InvalidManifestError(f"Manifest is not valid JSON: {e}") from e

    if not isinstance(data, dict):
        raise InvalidManifestError("Manifest must be a JSON object")

    version = data.get("version")
    if not version or not data.get("createdAt"):
        raise InvalidManifestError("Manifest is missing version or createdAt")
    if not isinstance(version, int) or isinstance(version, bool) or version < 1:
        raise InvalidManifestError(f"Invalid manifest version: {version!r}")
    if version > MANIFEST_VERSION:
        raise InvalidManifestError(
            f"Manifest version {version} is newer than supported version {MANIFEST_VERSION}"
        )

    try:
        manifest = manifest_from_dict(data)
    except (TypeError, ValueError, AttributeError) as e:
        raise InvalidManifestError(f"Manifest has a malformed field: {e}") from e

    if manifest.version >= 4:
        errors = validate_cross_references(manifest)
        if errors:
            raise InvalidManifestError(
                f"Manifest failed cross-reference validation: {'; '.join(errors[:5])}"
            )

    return manifest


def parse_manifest(text: str | bytes) -> BackupManifest | None:
    """
    Parse and validate a manifest, returning None when it is invalid.

    Args:
        text: Manifest JSON.

    Returns:
        The manifest, or None if it must be rejected.
    """
    try:
        return load_manifest(text)
    except InvalidManifestError as e:
        logger.warning(f"Rejected manifest: {e}")
        return None


@dataclass
class ManifestSummary:
    """Entity counts for a snapshot; contains no entity content."""

    file_count: int = 0
    thumbnail_count: int = 0
    album_count: int = 0
    target_count: int = 0
    target_group_count: int = 0
    session_count: int = 0
    plan_count: int = 0
    log_entry_count: int = 0
    file_group_count: int = 0
    trash_count: int = 0
    astrometry_job_count: int = 0
    has_settings: bool = False
    created_at: str = ""
    device_name: str = "Unknown Device"
    app_version: str = "unknown"

    _KEYS = (
        ("file_count", "fileCount"),
        ("thumbnail_count", "thumbnailCount"),
        ("album_count", "albumCount"),
        ("target_count", "targetCount"),
        ("target_group_count", "targetGroupCount"),
        ("session_count", "sessionCount"),
        ("plan_count", "planCount"),
        ("log_entry_count", "logEntryCount"),
        ("file_group_count", "fileGroupCount"),
        ("trash_count", "trashCount"),
        ("astrometry_job_count", "astrometryJobCount"),
    )

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {wire: getattr(self, attr) for attr, wire in self._KEYS}
        data["hasSettings"] = self.has_settings
        data["createdAt"] = self.created_at
        data["deviceName"] = self.device_name
        data["appVersion"] = self.app_version
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> ManifestSummary:
        """Rebuild a summary from an envelope, defaulting anything malformed."""
        data = data if isinstance(data, dict) else {}
        summary = cls()
        for attr, wire in cls._KEYS:
            value = data.get(wire)
            if isinstance(value, int) and not isinstance(value, bool):
                setattr(summary, attr, value)
        summary.has_settings = data.get("hasSettings") is True
        if isinstance(data.get("createdAt"), str):
            summary.created_at = data["createdAt"]
        else:
            summary.created_at = datetime.now(UTC).isoformat()
        if isinstance(data.get("deviceName"), str):
            summary.device_name = data["deviceName"]
        if isinstance(data.get("appVersion"), str):
            summary.app_version = data["appVersion"]
        return summary


def get_manifest_summary(manifest: BackupManifest) -> ManifestSummary:
    """Count the entities in each domain of a manifest."""
    return ManifestSummary(
        file_count=len(manifest.files),
        thumbnail_count=len(manifest.thumbnails),
        album_count=len(manifest.albums),
        target_count=len(manifest.targets),
        target_group_count=len(manifest.target_groups),
        session_count=len(manifest.sessions),
        plan_count=len(manifest.plans),
        log_entry_count=len(manifest.log_entries),
        file_group_count=len(manifest.file_groups.groups),
        trash_count=len(manifest.trash),
        astrometry_job_count=len(manifest.astrometry.jobs),
        has_settings=len(manifest.settings) > 0,
        created_at=manifest.created_at,
        device_name=manifest.device_name,
        app_version=manifest.app_version,
    )
