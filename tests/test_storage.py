"""
Tests for the library storage engine.

Uses Python's unittest module.
Tests record persistence, restore setters with each conflict strategy,
and library statistics.
"""

from __future__ import annotations

import shutil
import sqlite3
import tempfile
import unittest
from datetime import UTC, datetime
from pathlib import Path

from cobaltsync.backup.sources import BackupDataSource, RestoreTarget
from cobaltsync.backup.types import (
    DEFAULT_ASTROMETRY_CONFIG,
    BackupAstrometryState,
    BackupFileGroupState,
    BackupPrefs,
    ConflictStrategy,
)
from cobaltsync.storage import LibraryStore, StorageError
from cobaltsync.storage.library_store import SCHEMA_VERSION


class TestLibraryStoreBasics(unittest.TestCase):
    """Tests for LibraryStore initialization and raw access."""

    def setUp(self) -> None:
        self.temp_dir = tempfile.mkdtemp()
        self.store = LibraryStore(data_dir=Path(self.temp_dir) / "data")

    def tearDown(self) -> None:
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def test_initialization_creates_layout(self) -> None:
        """Test the database and payload directories are created."""
        self.assertTrue(self.store.db_path.exists())
        self.assertTrue(self.store.files_dir.is_dir())
        self.assertTrue(self.store.thumbnails_dir.is_dir())

    def test_string_data_dir(self) -> None:
        """Test a string data_dir is accepted."""
        store = LibraryStore(data_dir=str(Path(self.temp_dir) / "other"))

        self.assertEqual(store.db_path, Path(self.temp_dir) / "other" / "library.db")

    def test_implements_contracts(self) -> None:
        """Test the store is both a data source and a restore target."""
        self.assertIsInstance(self.store, BackupDataSource)
        self.assertIsInstance(self.store, RestoreTarget)

    def test_newer_schema_rejected(self) -> None:
        """Test a database written by a newer release is refused."""
        conn = sqlite3.connect(str(self.store.db_path))
        conn.execute(
            "INSERT INTO schema_version (version, applied_at) VALUES (?, ?)",
            (SCHEMA_VERSION + 1, datetime.now(UTC).isoformat()),
        )
        conn.commit()
        conn.close()

        with self.assertRaises(StorageError):
            LibraryStore(data_dir=self.store.data_dir)

    def test_upsert_preserves_order(self) -> None:
        """Test upsert replaces by id and appends new records."""
        self.store.upsert("albums", [{"id": "a1", "name": "One"}, {"id": "a2", "name": "Two"}])
        self.store.upsert("albums", [{"id": "a3", "name": "Three"}, {"id": "a1", "name": "Uno"}])

        albums = self.store.get_albums()

        self.assertEqual([a["id"] for a in albums], ["a1", "a2", "a3"])
        self.assertEqual(albums[0]["name"], "Uno")

    def test_upsert_unknown_domain(self) -> None:
        """Test an unknown domain is rejected."""
        with self.assertRaises(ValueError):
            self.store.upsert("comets", [{"id": "c1"}])

    def test_kv_round_trip(self) -> None:
        """Test JSON values survive the key/value table."""
        self.store.set_kv("custom", {"nested": [1, 2, 3]})

        self.assertEqual(self.store.get_kv("custom"), {"nested": [1, 2, 3]})
        self.assertEqual(self.store.get_kv("missing", "fallback"), "fallback")

    def test_defaults_when_empty(self) -> None:
        """Test an empty library reports empty domains and defaults."""
        self.assertEqual(self.store.get_files(), [])
        self.assertEqual(self.store.get_settings(), {})
        self.assertIsNone(self.store.get_active_session())
        self.assertEqual(self.store.get_astrometry().config, DEFAULT_ASTROMETRY_CONFIG)
        self.assertFalse(self.store.get_backup_prefs().auto_backup_enabled)

    def test_thumbnail_path(self) -> None:
        """Test thumbnails are addressed by file id."""
        self.assertEqual(self.store.thumbnail_path("f9"), self.store.thumbnails_dir / "f9.jpg")

    def test_record_backup(self) -> None:
        """Test the last backup time is persisted."""
        when = datetime(2026, 2, 3, 4, 5, tzinfo=UTC)
        self.assertIsNone(self.store.last_backup_at())

        self.store.record_backup(when)

        self.assertEqual(self.store.last_backup_at(), when)

    def test_statistics(self) -> None:
        """Test statistics count records and payload bytes."""
        (self.store.files_dir / "a.fits").write_bytes(b"x" * 10)
        self.store.upsert("files", [{"id": "f1"}, {"id": "f2"}])
        self.store.upsert("targets", [{"id": "t1"}])

        stats = self.store.get_statistics()

        self.assertEqual(stats["records_by_domain"]["files"], 2)
        self.assertEqual(stats["records_by_domain"]["targets"], 1)
        self.assertEqual(stats["records_by_domain"]["albums"], 0)
        self.assertEqual(stats["files_size_bytes"], 10)
        self.assertGreater(stats["database_size_bytes"], 0)
        self.assertIsNone(stats["last_backup_at"])


class TestRestoreSetters(unittest.TestCase):
    """Tests for the RestoreTarget side of LibraryStore."""

    def setUp(self) -> None:
        self.temp_dir = tempfile.mkdtemp()
        self.store = LibraryStore(data_dir=Path(self.temp_dir))
        self.store.upsert(
            "targets",
            [{"id": "t-local", "name": "M 31", "aliases": ["Andromeda"], "tags": ["galaxy"]}],
        )

    def tearDown(self) -> None:
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def test_targets_skip(self) -> None:
        """Test skip-existing leaves a matched target untouched."""
        self.store.set_targets(
            [{"id": "t-remote", "name": "M31", "tags": ["showpiece"]}],
            ConflictStrategy.SKIP_EXISTING,
        )

        targets = self.store.get_targets()
        self.assertEqual(len(targets), 1)
        self.assertEqual(targets[0]["tags"], ["galaxy"])

    def test_targets_merge_by_name(self) -> None:
        """Test a target with a different id but the same name is merged."""
        self.store.set_targets(
            [{"id": "t-remote", "name": "M31", "tags": ["showpiece"]}],
            ConflictStrategy.MERGE,
        )

        targets = self.store.get_targets()
        self.assertEqual(len(targets), 1)
        self.assertEqual(targets[0]["id"], "t-local")
        self.assertEqual(targets[0]["tags"], ["galaxy", "showpiece"])

    def test_settings_patch(self) -> None:
        """Test settings are applied as a patch."""
        self.store.set_settings({"theme": "dark", "units": "metric"})
        self.store.set_settings({"theme": "red", "units": None})

        self.assertEqual(self.store.get_settings(), {"theme": "red", "units": "metric"})

    def test_file_groups(self) -> None:
        """Test file groups and the membership map are restored together."""
        self.store.set_file_groups(
            BackupFileGroupState(groups=[{"id": "g1", "name": "Flats"}], file_group_map={"f1": ["g1"]}),
            ConflictStrategy.MERGE,
        )

        state = self.store.get_file_groups()
        self.assertEqual(state.groups, [{"id": "g1", "name": "Flats"}])
        self.assertEqual(state.file_group_map, {"f1": ["g1"]})

    def test_astrometry(self) -> None:
        """Test astrometry jobs and config are restored."""
        config = dict(DEFAULT_ASTROMETRY_CONFIG, apiKey="remote-key")
        self.store.set_astrometry(
            BackupAstrometryState(config=config, jobs=[{"id": "j1", "fileId": "f1"}]),
            ConflictStrategy.SKIP_EXISTING,
        )

        state = self.store.get_astrometry()
        self.assertEqual(state.config["apiKey"], "remote-key")
        self.assertEqual(state.jobs, [{"id": "j1", "fileId": "f1"}])

    def test_active_session(self) -> None:
        """Test a restored active session is adopted when none is running."""
        self.store.set_active_session({"id": "s1", "notes": []}, ConflictStrategy.SKIP_EXISTING)
        self.store.set_active_session({"id": "s2", "notes": []}, ConflictStrategy.SKIP_EXISTING)

        self.assertEqual(self.store.get_active_session()["id"], "s1")

    def test_backup_prefs(self) -> None:
        """Test backup preferences round-trip through the store."""
        self.store.set_backup_prefs(
            BackupPrefs(active_provider="webdav", auto_backup_enabled=True, auto_backup_network="any")
        )

        prefs = self.store.get_backup_prefs()
        self.assertEqual(prefs.active_provider, "webdav")
        self.assertTrue(prefs.auto_backup_enabled)
        self.assertEqual(prefs.auto_backup_network, "any")

    def test_plans_relinked_to_local_target(self) -> None:
        """Test a restored plan is linked to the matching local target."""
        self.store.set_plans(
            [{"id": "p1", "targetId": "t-remote", "targetName": "M31"}],
            ConflictStrategy.SKIP_EXISTING,
        )

        self.assertEqual(self.store.get_plans()[0]["targetId"], "t-local")


if __name__ == "__main__":
    unittest.main()
