"""
Data model for backup manifests, options and transfer progress.

Schema Design Decisions:
    - The manifest is JSON with camelCase keys so snapshots written by
      earlier releases stay readable; Python attributes are snake_case and
      to_dict()/from_dict() translate between the two
    - Domain entities (files, albums, targets, ...) belong to the
      application and travel as plain dicts; the engine only reads the
      fields it reconciles
    - Every collection has a safe empty default so restore code never has
      to test for missing domains
    - Hashes are SHA-256 hex strings
"""

from __future__ import annotations

import copy
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

# Remote layout
BACKUP_DIR = "cobalt-backup"
MANIFEST_FILENAME = "manifest.json"
FITS_SUBDIR = "fits_files"
THUMBNAIL_SUBDIR = "thumbnails"

# Current manifest schema version. Parsers refuse anything newer.
MANIFEST_VERSION = 4

HASH_ALGORITHM = "SHA-256"

PROVIDER_KINDS = ("google-drive", "onedrive", "dropbox", "webdav", "local-dir")

DEFAULT_ASTROMETRY_CONFIG: dict[str, Any] = {
    "apiKey": "",
    "serverUrl": "https://nova.astrometry.net",
    "useCustomServer": False,
    "maxConcurrent": 3,
    "autoSolve": False,
    "defaultScaleUnits": "degwidth",
    "defaultScaleLower": None,
    "defaultScaleUpper": None,
}


class ConflictStrategy(str, Enum):
    """How incoming entities are reconciled against existing local ones."""

    SKIP_EXISTING = "skip-existing"
    OVERWRITE_EXISTING = "overwrite-existing"
    MERGE = "merge"

    @classmethod
    def parse(cls, value: ConflictStrategy | str | None) -> ConflictStrategy:
        """
        Resolve a strategy from an enum member, its string value or None.

        None resolves to SKIP_EXISTING.

        Raises:
            ValueError: If the string is not a known strategy.
        """
        if value is None:
            return cls.SKIP_EXISTING
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value))
        except ValueError:
            valid = ", ".join(s.value for s in cls)
            raise ValueError(f"Unknown conflict strategy: {value}. Must be one of: {valid}")


class BackupPhase(str, Enum):
    """Phases of the transfer state machine."""

    PREPARING = "preparing"
    UPLOADING = "uploading"
    DOWNLOADING = "downloading"
    FINALIZING = "finalizing"
    IDLE = "idle"


class BackupDomain(str, Enum):
    """Categories of backed-up data."""

    FILES = "files"
    THUMBNAILS = "thumbnails"
    ALBUMS = "albums"
    TARGETS = "targets"
    TARGET_GROUPS = "targetGroups"
    SESSIONS = "sessions"
    PLANS = "plans"
    LOG_ENTRIES = "logEntries"
    SETTINGS = "settings"
    FILE_GROUPS = "fileGroups"
    ASTROMETRY = "astrometry"
    TRASH = "trash"
    SESSION_RUNTIME = "sessionRuntime"
    BACKUP_PREFS = "backupPrefs"


HOUSEKEEPING_DOMAINS = (
    BackupDomain.FILE_GROUPS,
    BackupDomain.ASTROMETRY,
    BackupDomain.TRASH,
    BackupDomain.SESSION_RUNTIME,
    BackupDomain.BACKUP_PREFS,
)


@dataclass
class BackupProgress:
    """Progress report passed to the caller's callback."""

    phase: BackupPhase = BackupPhase.IDLE
    current: int = 0
    total: int = 0
    current_file: str | None = None


@dataclass
class LocalEncryption:
    """Password protection settings for local packages."""

    enabled: bool = False
    password: str | None = None


@dataclass
class BackupOptions:
    """
    Options controlling what a backup or restore covers.

    Attributes:
        include_files: Back up file metadata and payloads.
        include_settings: Back up the opaque settings map.
        include_albums: Back up albums.
        include_targets: Back up targets and target groups.
        include_sessions: Back up sessions, plans and log entries.
        include_thumbnails: Back up cached thumbnails.
        local_payload_mode: "full" (zip with payloads) or "metadata-only".
        local_encryption: Envelope settings for local packages.
        restore_conflict_strategy: Strategy applied to every restored domain.
    """

    include_files: bool = True
    include_settings: bool = True
    include_albums: bool = True
    include_targets: bool = True
    include_sessions: bool = True
    include_thumbnails: bool = False
    local_payload_mode: str = "full"
    local_encryption: LocalEncryption = field(default_factory=LocalEncryption)
    restore_conflict_strategy: ConflictStrategy = ConflictStrategy.SKIP_EXISTING

    def __post_init__(self) -> None:
        if self.local_payload_mode not in ("full", "metadata-only"):
            raise ValueError(
                f"Invalid local_payload_mode: {self.local_payload_mode}. "
                "Must be 'full' or 'metadata-only'"
            )
        self.restore_conflict_strategy = ConflictStrategy.parse(self.restore_conflict_strategy)


@dataclass
class BackupBinaryInfo:
    """Location and integrity data for a transferred file payload."""

    remote_path: str | None = None
    size: int | None = None
    content_hash: str | None = None
    hash_algorithm: str | None = HASH_ALGORITHM

    def to_dict(self) -> dict[str, Any]:
        """Convert to the manifest's wire shape, dropping unset fields."""
        data = {
            "remotePath": self.remote_path,
            "size": self.size,
            "contentHash": self.content_hash,
            "hashAlgorithm": self.hash_algorithm,
        }
        return {key: value for key, value in data.items() if value is not None}

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> BackupBinaryInfo | None:
        """Create from the wire shape; returns None for missing or non-dict input."""
        if not isinstance(data, dict):
            return None
        size = data.get("size")
        return cls(
            remote_path=data.get("remotePath"),
            size=size if isinstance(size, int) else None,
            content_hash=data.get("contentHash"),
            hash_algorithm=data.get("hashAlgorithm"),
        )


@dataclass
class BackupThumbnailRecord:
    """A cached thumbnail carried alongside its file."""

    file_id: str
    filename: str
    remote_path: str
    size: int | None = None
    content_hash: str | None = None
    hash_algorithm: str | None = HASH_ALGORITHM

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "fileId": self.file_id,
            "filename": self.filename,
            "remotePath": self.remote_path,
        }
        if self.size is not None:
            data["size"] = self.size
        if self.content_hash is not None:
            data["contentHash"] = self.content_hash
            data["hashAlgorithm"] = self.hash_algorithm or HASH_ALGORITHM
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> BackupThumbnailRecord:
        file_id = str(data.get("fileId", ""))
        return cls(
            file_id=file_id,
            filename=str(data.get("filename") or f"{file_id}.jpg"),
            remote_path=str(data.get("remotePath") or ""),
            size=data.get("size") if isinstance(data.get("size"), int) else None,
            content_hash=data.get("contentHash"),
            hash_algorithm=data.get("hashAlgorithm"),
        )


@dataclass
class BackupCapabilities:
    """What a snapshot carries besides metadata."""

    supports_binary: bool = True
    supports_thumbnails: bool = False
    local_payload_mode: str = "metadata-only"
    encrypted_local_package: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "supportsBinary": self.supports_binary,
            "supportsThumbnails": self.supports_thumbnails,
            "localPayloadMode": self.local_payload_mode,
            "encryptedLocalPackage": self.encrypted_local_package,
        }


@dataclass
class BackupFileGroupState:
    """File groups plus the file -> group membership map."""

    groups: list[dict[str, Any]] = field(default_factory=list)
    file_group_map: dict[str, list[str]] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {"groups": self.groups, "fileGroupMap": self.file_group_map}


@dataclass
class BackupAstrometryState:
    """Plate-solving configuration and job history."""

    config: dict[str, Any] = field(default_factory=lambda: dict(DEFAULT_ASTROMETRY_CONFIG))
    jobs: list[dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {"config": self.config, "jobs": self.jobs}


@dataclass
class BackupSessionRuntimeState:
    """The observation session running at backup time, if any."""

    active_session: dict[str, Any] | None = None

    def to_dict(self) -> dict[str, Any]:
        return {"activeSession": self.active_session}


@dataclass
class BackupPrefs:
    """Backup preferences that travel with the snapshot."""

    active_provider: str | None = None
    auto_backup_enabled: bool = False
    auto_backup_interval_hours: float = 24
    auto_backup_network: str = "wifi"

    def to_dict(self) -> dict[str, Any]:
        return {
            "activeProvider": self.active_provider,
            "autoBackupEnabled": self.auto_backup_enabled,
            "autoBackupIntervalHours": self.auto_backup_interval_hours,
            "autoBackupNetwork": self.auto_backup_network,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> BackupPrefs:
        """Create from the wire shape, replacing bad values with defaults."""
        data = data if isinstance(data, dict) else {}
        provider = data.get("activeProvider")
        interval = data.get("autoBackupIntervalHours")
        return cls(
            active_provider=provider if provider in PROVIDER_KINDS else None,
            auto_backup_enabled=data.get("autoBackupEnabled") is True,
            auto_backup_interval_hours=(
                interval
                if isinstance(interval, (int, float)) and not isinstance(interval, bool)
                else 24
            ),
            auto_backup_network="any" if data.get("autoBackupNetwork") == "any" else "wifi",
        )


@dataclass
class ManifestData:
    """Everything a data source hands over to build one manifest."""

    files: list[dict[str, Any]] = field(default_factory=list)
    albums: list[dict[str, Any]] = field(default_factory=list)
    targets: list[dict[str, Any]] = field(default_factory=list)
    target_groups: list[dict[str, Any]] = field(default_factory=list)
    sessions: list[dict[str, Any]] = field(default_factory=list)
    plans: list[dict[str, Any]] = field(default_factory=list)
    log_entries: list[dict[str, Any]] = field(default_factory=list)
    settings: dict[str, Any] = field(default_factory=dict)
    file_groups: BackupFileGroupState = field(default_factory=BackupFileGroupState)
    astrometry: BackupAstrometryState = field(default_factory=BackupAstrometryState)
    trash: list[dict[str, Any]] = field(default_factory=list)
    session_runtime: BackupSessionRuntimeState = field(default_factory=BackupSessionRuntimeState)
    backup_prefs: BackupPrefs = field(default_factory=BackupPrefs)


@dataclass
class BackupManifest:
    """
    Versioned description of one backup snapshot.

    A manifest is built fresh for every backup and never mutated after it
    is published. File records are dicts; a record's optional "binary" key
    holds BackupBinaryInfo.to_dict() output once its payload is transferred.
    """

    version: int
    snapshot_id: str
    app_version: str
    created_at: str
    device_name: str
    platform: str
    capabilities: BackupCapabilities = field(default_factory=BackupCapabilities)
    domains: list[str] = field(default_factory=list)
    files: list[dict[str, Any]] = field(default_factory=list)
    thumbnails: list[BackupThumbnailRecord] = field(default_factory=list)
    albums: list[dict[str, Any]] = field(default_factory=list)
    targets: list[dict[str, Any]] = field(default_factory=list)
    target_groups: list[dict[str, Any]] = field(default_factory=list)
    sessions: list[dict[str, Any]] = field(default_factory=list)
    plans: list[dict[str, Any]] = field(default_factory=list)
    log_entries: list[dict[str, Any]] = field(default_factory=list)
    settings: dict[str, Any] = field(default_factory=dict)
    file_groups: BackupFileGroupState = field(default_factory=BackupFileGroupState)
    astrometry: BackupAstrometryState = field(default_factory=BackupAstrometryState)
    trash: list[dict[str, Any]] = field(default_factory=list)
    session_runtime: BackupSessionRuntimeState = field(default_factory=BackupSessionRuntimeState)
    backup_prefs: BackupPrefs = field(default_factory=BackupPrefs)

    def to_dict(self) -> dict[str, Any]:
        """Convert the manifest to its JSON wire shape."""
        return {
            "version": self.version,
            "snapshotId": self.snapshot_id,
            "appVersion": self.app_version,
            "createdAt": self.created_at,
            "deviceName": self.device_name,
            "platform": self.platform,
            "capabilities": self.capabilities.to_dict(),
            "domains": list(self.domains),
            "files": self.files,
            "thumbnails": [thumb.to_dict() for thumb in self.thumbnails],
            "albums": self.albums,
            "targets": self.targets,
            "targetGroups": self.target_groups,
            "sessions": self.sessions,
            "plans": self.plans,
            "logEntries": self.log_entries,
            "settings": self.settings,
            "fileGroups": self.file_groups.to_dict(),
            "astrometry": self.astrometry.to_dict(),
            "trash": self.trash,
            "sessionRuntime": self.session_runtime.to_dict(),
            "backupPrefs": self.backup_prefs.to_dict(),
        }

    def copy(self) -> BackupManifest:
        """Deep copy, used when a package builder needs to annotate entries."""
        return copy.deepcopy(self)

    def file_ids(self) -> set[str]:
        return {str(record.get("id")) for record in self.files if record.get("id") is not None}


@dataclass
class RemoteFile:
    """An object listed in a remote directory."""

    name: str
    path: str
    size: int = 0
    last_modified: str | None = None
    is_directory: bool = False
    id: str | None = None


@dataclass
class BackupInfo:
    """Short description of the snapshot a provider currently holds."""

    provider: str
    manifest_date: str
    file_count: int
    total_size: int
    device_name: str
    app_version: str
