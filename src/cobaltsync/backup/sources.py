"""
Contracts between the backup engine and the application's stores.

The engine never owns application data. A backup reads everything through
a BackupDataSource; a restore hands each domain to a RestoreTarget
together with the conflict strategy and lets the target apply it.
"""

from __future__ import annotations

from typing import Any, Protocol, runtime_checkable

from cobaltsync.backup.types import (
    BackupAstrometryState,
    BackupFileGroupState,
    BackupPrefs,
    BackupSessionRuntimeState,
    ConflictStrategy,
    ManifestData,
)

Records = list[dict[str, Any]]


@runtime_checkable
class BackupDataSource(Protocol):
    """Read access to every backed-up domain."""

    def get_files(self) -> Records: ...

    def get_albums(self) -> Records: ...

    def get_targets(self) -> Records: ...

    def get_target_groups(self) -> Records: ...

    def get_sessions(self) -> Records: ...

    def get_plans(self) -> Records: ...

    def get_log_entries(self) -> Records: ...

    def get_settings(self) -> dict[str, Any]: ...

    def get_file_groups(self) -> BackupFileGroupState: ...

    def get_astrometry(self) -> BackupAstrometryState: ...

    def get_trash(self) -> Records: ...

    def get_active_session(self) -> dict[str, Any] | None: ...

    def get_backup_prefs(self) -> BackupPrefs: ...


@runtime_checkable
class RestoreTarget(Protocol):
    """
    Write access used by restore.

    Collection setters receive the incoming records and the strategy and
    are responsible for reconciling them with what is already stored.
    Settings and backup preferences are applied as patches.
    """

    def set_files(self, files: Records, strategy: ConflictStrategy) -> None: ...

    def set_albums(self, albums: Records, strategy: ConflictStrategy) -> None: ...

    def set_targets(self, targets: Records, strategy: ConflictStrategy) -> None: ...

    def set_target_groups(self, groups: Records, strategy: ConflictStrategy) -> None: ...

    def set_sessions(self, sessions: Records, strategy: ConflictStrategy) -> None: ...

    def set_plans(self, plans: Records, strategy: ConflictStrategy) -> None: ...

    def set_log_entries(self, entries: Records, strategy: ConflictStrategy) -> None: ...

    def set_settings(self, settings: dict[str, Any]) -> None: ...

    def set_file_groups(self, state: BackupFileGroupState, strategy: ConflictStrategy) -> None: ...

    def set_astrometry(self, state: BackupAstrometryState, strategy: ConflictStrategy) -> None: ...

    def set_trash(self, records: Records, strategy: ConflictStrategy) -> None: ...

    def set_active_session(
        self, session: dict[str, Any] | None, strategy: ConflictStrategy
    ) -> None: ...

    def set_backup_prefs(self, prefs: BackupPrefs) -> None: ...


def collect_manifest_data(data_source: BackupDataSource) -> ManifestData:
    """Snapshot every domain of a data source."""
    return ManifestData(
        files=list(data_source.get_files()),
        albums=list(data_source.get_albums()),
        targets=list(data_source.get_targets()),
        target_groups=list(data_source.get_target_groups()),
        sessions=list(data_source.get_sessions()),
        plans=list(data_source.get_plans()),
        log_entries=list(data_source.get_log_entries()),
        settings=dict(data_source.get_settings()),
        file_groups=data_source.get_file_groups(),
        astrometry=data_source.get_astrometry(),
        trash=list(data_source.get_trash()),
        session_runtime=BackupSessionRuntimeState(
            active_session=data_source.get_active_session()
        ),
        backup_prefs=data_source.get_backup_prefs(),
    )
