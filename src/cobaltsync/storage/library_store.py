"""
Local library storage for cobaltsync.

LibraryStore keeps the application's library in one SQLite database and
the payload files in plain directories:

    data/
        library.db          # SQLite database
        files/              # image payloads
        thumbnails/         # {fileId}.jpg

Design Decisions:
    - Entities are stored as JSON documents keyed by (domain, id); the
      engine treats them as opaque dicts, so no per-domain schema is kept
    - Collection order is preserved through an explicit position column
    - Single-value state (settings, file group map, astrometry config,
      active session, backup preferences) lives in a key/value table
    - Every restore setter reconciles through the conflict engine and
      rewrites the domain in one transaction

Thread Safety:
    Connection-per-operation. Multiple processes should use separate
    LibraryStore instances.
"""

from __future__ import annotations

import json
import logging
import sqlite3
from collections.abc import Generator
from contextlib import contextmanager
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from cobaltsync.backup.conflict import (
    ReconcileResult,
    apply_settings_patch,
    merge_overlay,
    reconcile,
    reconcile_active_session,
    reconcile_albums,
    reconcile_astrometry,
    reconcile_file_groups,
    reconcile_files,
    reconcile_log_entries,
    reconcile_plans,
    reconcile_sessions,
    reconcile_target_groups,
    reconcile_targets,
    reconcile_trash,
)
from cobaltsync.backup.integrity import thumbnail_file_name
from cobaltsync.backup.types import (
    DEFAULT_ASTROMETRY_CONFIG,
    BackupAstrometryState,
    BackupFileGroupState,
    BackupPrefs,
    ConflictStrategy,
)

logger = logging.getLogger(__name__)

SCHEMA_VERSION = 1

DOMAIN_FILES = "files"
DOMAIN_ALBUMS = "albums"
DOMAIN_TARGETS = "targets"
DOMAIN_TARGET_GROUPS = "targetGroups"
DOMAIN_SESSIONS = "sessions"
DOMAIN_PLANS = "plans"
DOMAIN_LOG_ENTRIES = "logEntries"
DOMAIN_FILE_GROUPS = "fileGroups"
DOMAIN_ASTROMETRY_JOBS = "astrometryJobs"
DOMAIN_TRASH = "trash"

COLLECTION_DOMAINS = (
    DOMAIN_FILES,
    DOMAIN_ALBUMS,
    DOMAIN_TARGETS,
    DOMAIN_TARGET_GROUPS,
    DOMAIN_SESSIONS,
    DOMAIN_PLANS,
    DOMAIN_LOG_ENTRIES,
    DOMAIN_FILE_GROUPS,
    DOMAIN_ASTROMETRY_JOBS,
    DOMAIN_TRASH,
)

KEY_SETTINGS = "settings"
KEY_FILE_GROUP_MAP = "fileGroupMap"
KEY_ASTROMETRY_CONFIG = "astrometryConfig"
KEY_ACTIVE_SESSION = "activeSession"
KEY_BACKUP_PREFS = "backupPrefs"
KEY_LAST_BACKUP_AT = "lastBackupAt"

CREATE_TABLES_SQL = """
CREATE TABLE IF NOT EXISTS schema_version (
    version INTEGER PRIMARY KEY,
    applied_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS records (
    domain TEXT NOT NULL,
    id TEXT NOT NULL,
    position INTEGER NOT NULL,
    data_json TEXT NOT NULL,
    PRIMARY KEY (domain, id)
);

CREATE INDEX IF NOT EXISTS idx_records_domain_position ON records(domain, position);

CREATE TABLE IF NOT EXISTS kv (
    key TEXT PRIMARY KEY,
    value TEXT NOT NULL
);
"""


class StorageError(Exception):
    """Base exception for storage errors."""

    pass


class LibraryStore:
    """
    SQLite-backed library that is both a backup data source and a restore target.

    Example:
        store = LibraryStore(data_dir=Path("./data"))
        store.upsert("files", [{"id": "f1", "filename": "m31.fits", ...}])

        # Restore setters reconcile with the chosen strategy
        store.set_albums(incoming_albums, ConflictStrategy.MERGE)

    Attributes:
        data_dir: Base directory for all data storage.
        db_path: Path to the SQLite database file.
        files_dir: Directory for payload files.
        thumbnails_dir: Directory for cached thumbnails.
    """

    def __init__(self, data_dir: Path | str | None = None) -> None:
        """
        Initialize the library store.

        Args:
            data_dir: Base directory for data storage. Defaults to ~/.cobaltsync/data
        """
        if data_dir is None:
            data_dir = Path.home() / ".cobaltsync" / "data"
        elif isinstance(data_dir, str):
            data_dir = Path(data_dir)

        self.data_dir = data_dir
        self.db_path = data_dir / "library.db"
        self.files_dir = data_dir / "files"
        self.thumbnails_dir = data_dir / "thumbnails"

        self.data_dir.mkdir(parents=True, exist_ok=True)
        self.files_dir.mkdir(parents=True, exist_ok=True)
        self.thumbnails_dir.mkdir(parents=True, exist_ok=True)

        self._init_database()

    def _init_database(self) -> None:
        """Initialize the database schema."""
        with self._get_connection() as conn:
            conn.executescript(CREATE_TABLES_SQL)
            row = conn.execute(
                "SELECT version FROM schema_version ORDER BY version DESC LIMIT 1"
            ).fetchone()
            if row is None:
                conn.execute(
                    "INSERT INTO schema_version (version, applied_at) VALUES (?, ?)",
                    (SCHEMA_VERSION, datetime.now(UTC).isoformat()),
                )
                logger.info(f"Initialized library schema version {SCHEMA_VERSION}")
            elif row[0] > SCHEMA_VERSION:
                raise StorageError(
                    f"Library schema version {row[0]} is newer than supported "
                    f"version {SCHEMA_VERSION}"
                )
            conn.commit()

    @contextmanager
    def _get_connection(self) -> Generator[sqlite3.Connection, None, None]:
        """
        Get a database connection.

        Yields:
            SQLite connection with row factory set.
        """
        conn = sqlite3.connect(str(self.db_path), check_same_thread=False)
        conn.row_factory = sqlite3.Row
        try:
            yield conn
        finally:
            conn.close()

    # -------------------------------------------------------------------------
    # Low-level access
    # -------------------------------------------------------------------------

    def _load(self, domain: str) -> list[dict[str, Any]]:
        with self._get_connection() as conn:
            rows = conn.execute(
                "SELECT data_json FROM records WHERE domain = ? ORDER BY position",
                (domain,),
            ).fetchall()
        return [json.loads(row["data_json"]) for row in rows]

    def _replace(self, domain: str, items: list[dict[str, Any]]) -> None:
        """Rewrite a whole domain collection in one transaction."""
        with self._get_connection() as conn:
            conn.execute("DELETE FROM records WHERE domain = ?", (domain,))
            conn.executemany(
                "INSERT OR REPLACE INTO records (domain, id, position, data_json) "
                "VALUES (?, ?, ?, ?)",
                [
                    (domain, str(item.get("id")), position, json.dumps(item))
                    for position, item in enumerate(items)
                ],
            )
            conn.commit()

    def _apply(self, domain: str, result: ReconcileResult) -> None:
        self._replace(domain, result.items)
        logger.debug(
            f"Restored {domain}: {len(result.inserted)} inserted, "
            f"{len(result.updated)} updated, {len(result.skipped)} skipped"
        )

    def get_kv(self, key: str, default: Any = None) -> Any:
        with self._get_connection() as conn:
            row = conn.execute("SELECT value FROM kv WHERE key = ?", (key,)).fetchone()
        return json.loads(row["value"]) if row is not None else default

    def set_kv(self, key: str, value: Any) -> None:
        with self._get_connection() as conn:
            conn.execute(
                "INSERT OR REPLACE INTO kv (key, value) VALUES (?, ?)",
                (key, json.dumps(value)),
            )
            conn.commit()

    def upsert(self, domain: str, records: list[dict[str, Any]]) -> None:
        """
        Insert or replace records by id, keeping existing positions.

        Raises:
            ValueError: If the domain is unknown.
        """
        if domain not in COLLECTION_DOMAINS:
            raise ValueError(f"Unknown domain: {domain}")
        result = reconcile(
            self._load(domain), records, ConflictStrategy.OVERWRITE_EXISTING, merge_overlay
        )
        self._replace(domain, result.items)

    def thumbnail_path(self, file_id: str) -> Path:
        return self.thumbnails_dir / thumbnail_file_name(file_id)

    def record_backup(self, timestamp: datetime | None = None) -> None:
        self.set_kv(KEY_LAST_BACKUP_AT, (timestamp or datetime.now(UTC)).isoformat())

    def last_backup_at(self) -> datetime | None:
        value = self.get_kv(KEY_LAST_BACKUP_AT)
        return datetime.fromisoformat(value) if value else None

    def get_statistics(self) -> dict[str, Any]:
        """
        Get library statistics.

        Returns:
            Dictionary with record counts per domain and storage sizes.
        """
        with self._get_connection() as conn:
            rows = conn.execute(
                "SELECT domain, COUNT(*) AS count FROM records GROUP BY domain"
            ).fetchall()
        counts = {domain: 0 for domain in COLLECTION_DOMAINS}
        counts.update({row["domain"]: row["count"] for row in rows})

        files_size = sum(p.stat().st_size for p in self.files_dir.rglob("*") if p.is_file())
        return {
            "records_by_domain": counts,
            "database_size_bytes": self.db_path.stat().st_size if self.db_path.exists() else 0,
            "files_size_bytes": files_size,
            "last_backup_at": self.get_kv(KEY_LAST_BACKUP_AT),
        }

    # -------------------------------------------------------------------------
    # BackupDataSource
    # -------------------------------------------------------------------------

    def get_files(self) -> list[dict[str, Any]]:
        return self._load(DOMAIN_FILES)

    def get_albums(self) -> list[dict[str, Any]]:
        return self._load(DOMAIN_ALBUMS)

    def get_targets(self) -> list[dict[str, Any]]:
        return self._load(DOMAIN_TARGETS)

    def get_target_groups(self) -> list[dict[str, Any]]:
        return self._load(DOMAIN_TARGET_GROUPS)

    def get_sessions(self) -> list[dict[str, Any]]:
        return self._load(DOMAIN_SESSIONS)

    def get_plans(self) -> list[dict[str, Any]]:
        return self._load(DOMAIN_PLANS)

    def get_log_entries(self) -> list[dict[str, Any]]:
        return self._load(DOMAIN_LOG_ENTRIES)

    def get_settings(self) -> dict[str, Any]:
        return self.get_kv(KEY_SETTINGS, {})

    def get_file_groups(self) -> BackupFileGroupState:
        return BackupFileGroupState(
            groups=self._load(DOMAIN_FILE_GROUPS),
            file_group_map=self.get_kv(KEY_FILE_GROUP_MAP, {}),
        )

    def get_astrometry(self) -> BackupAstrometryState:
        return BackupAstrometryState(
            config=self.get_kv(KEY_ASTROMETRY_CONFIG) or dict(DEFAULT_ASTROMETRY_CONFIG),
            jobs=self._load(DOMAIN_ASTROMETRY_JOBS),
        )

    def get_trash(self) -> list[dict[str, Any]]:
        return self._load(DOMAIN_TRASH)

    def get_active_session(self) -> dict[str, Any] | None:
        return self.get_kv(KEY_ACTIVE_SESSION)

    def get_backup_prefs(self) -> BackupPrefs:
        return BackupPrefs.from_dict(self.get_kv(KEY_BACKUP_PREFS))

    # -------------------------------------------------------------------------
    # RestoreTarget
    # -------------------------------------------------------------------------

    def set_files(self, files: list[dict[str, Any]], strategy: ConflictStrategy) -> None:
        self._apply(DOMAIN_FILES, reconcile_files(self.get_files(), files, strategy))

    def set_albums(self, albums: list[dict[str, Any]], strategy: ConflictStrategy) -> None:
        self._apply(DOMAIN_ALBUMS, reconcile_albums(self.get_albums(), albums, strategy))

    def set_targets(self, targets: list[dict[str, Any]], strategy: ConflictStrategy) -> None:
        self._apply(DOMAIN_TARGETS, reconcile_targets(self.get_targets(), targets, strategy))

    def set_target_groups(self, groups: list[dict[str, Any]], strategy: ConflictStrategy) -> None:
        self._apply(
            DOMAIN_TARGET_GROUPS,
            reconcile_target_groups(self.get_target_groups(), groups, strategy),
        )

    def set_sessions(self, sessions: list[dict[str, Any]], strategy: ConflictStrategy) -> None:
        self._apply(DOMAIN_SESSIONS, reconcile_sessions(self.get_sessions(), sessions, strategy))

    def set_plans(self, plans: list[dict[str, Any]], strategy: ConflictStrategy) -> None:
        self._apply(
            DOMAIN_PLANS,
            reconcile_plans(self.get_plans(), plans, strategy, self.get_targets()),
        )

    def set_log_entries(self, entries: list[dict[str, Any]], strategy: ConflictStrategy) -> None:
        self._apply(
            DOMAIN_LOG_ENTRIES,
            reconcile_log_entries(self.get_log_entries(), entries, strategy),
        )

    def set_settings(self, settings: dict[str, Any]) -> None:
        self.set_kv(KEY_SETTINGS, apply_settings_patch(self.get_settings(), settings))

    def set_file_groups(self, state: BackupFileGroupState, strategy: ConflictStrategy) -> None:
        merged = reconcile_file_groups(self.get_file_groups(), state, strategy)
        self._replace(DOMAIN_FILE_GROUPS, merged.groups)
        self.set_kv(KEY_FILE_GROUP_MAP, merged.file_group_map)

    def set_astrometry(self, state: BackupAstrometryState, strategy: ConflictStrategy) -> None:
        local = BackupAstrometryState(
            config=self.get_kv(KEY_ASTROMETRY_CONFIG) or {},
            jobs=self._load(DOMAIN_ASTROMETRY_JOBS),
        )
        merged = reconcile_astrometry(local, state, strategy)
        self._replace(DOMAIN_ASTROMETRY_JOBS, merged.jobs)
        self.set_kv(KEY_ASTROMETRY_CONFIG, merged.config)

    def set_trash(self, records: list[dict[str, Any]], strategy: ConflictStrategy) -> None:
        self._apply(DOMAIN_TRASH, reconcile_trash(self.get_trash(), records, strategy))

    def set_active_session(
        self, session: dict[str, Any] | None, strategy: ConflictStrategy
    ) -> None:
        self.set_kv(
            KEY_ACTIVE_SESSION,
            reconcile_active_session(self.get_active_session(), session, strategy),
        )

    def set_backup_prefs(self, prefs: BackupPrefs) -> None:
        current = self.get_backup_prefs().to_dict()
        self.set_kv(KEY_BACKUP_PREFS, apply_settings_patch(current, prefs.to_dict()))
