"""
Tests for manifest generation, parsing and validation.

Tests cover:
- Manifest creation from a data snapshot
- Serialization round trip
- Version handling and legacy defaults
- Cross-reference validation
- Summaries
"""

from __future__ import annotations

import json
import unittest

from cobaltsync.backup.errors import InvalidManifestError
from cobaltsync.backup.manifest import (
    ManifestSummary,
    build_domains,
    create_manifest,
    get_manifest_summary,
    infer_media_kind,
    load_manifest,
    manifest_from_dict,
    parse_astrometry_config,
    parse_manifest,
    serialize_manifest,
    validate_cross_references,
)
from cobaltsync.backup.types import (
    DEFAULT_ASTROMETRY_CONFIG,
    MANIFEST_VERSION,
    BackupAstrometryState,
    BackupFileGroupState,
    BackupOptions,
    BackupPrefs,
    BackupSessionRuntimeState,
    ManifestData,
)


def sample_data() -> ManifestData:
    return ManifestData(
        files=[
            {"id": "f1", "filename": "m31_L_001.fits", "sourceType": "fits", "fileSize": 100},
            {"id": "f2", "filename": "clip.mp4", "sourceType": "video", "fileSize": 50},
        ],
        albums=[{"id": "a1", "name": "Andromeda", "imageIds": ["f1", "f2"]}],
        targets=[{"id": "t1", "name": "M31", "aliases": ["Andromeda Galaxy"]}],
        target_groups=[{"id": "g1", "name": "Galaxies", "targetIds": ["t1"]}],
        sessions=[{"id": "s1", "date": "2026-01-10", "targets": ["M31"], "imageIds": ["f1"]}],
        plans=[{"id": "p1", "targetId": "t1", "targetName": "M31"}],
        log_entries=[{"id": "l1", "sessionId": "s1", "text": "Focus run"}],
        settings={"theme": "dark"},
        file_groups=BackupFileGroupState(
            groups=[{"id": "fg1", "name": "Lights"}],
            file_group_map={"f1": ["fg1"]},
        ),
        astrometry=BackupAstrometryState(
            config=dict(DEFAULT_ASTROMETRY_CONFIG, apiKey="secret"),
            jobs=[{"id": "j1", "fileId": "f1", "status": "solved"}],
        ),
        trash=[{"id": "tr1", "fileId": "gone"}],
        session_runtime=BackupSessionRuntimeState(active_session={"id": "s1", "notes": []}),
        backup_prefs=BackupPrefs(active_provider="webdav", auto_backup_enabled=True),
    )


class TestCreateManifest(unittest.TestCase):
    """Tests for create_manifest()."""

    def test_full_snapshot(self) -> None:
        """Test a default backup carries every metadata domain."""
        manifest = create_manifest(sample_data(), BackupOptions(), device_name="scope-pc")

        self.assertEqual(manifest.version, MANIFEST_VERSION)
        self.assertEqual(manifest.device_name, "scope-pc")
        self.assertTrue(manifest.snapshot_id)
        self.assertEqual(len(manifest.files), 2)
        self.assertEqual(manifest.thumbnails, [])
        self.assertEqual(manifest.albums[0]["id"], "a1")
        self.assertEqual(manifest.settings, {"theme": "dark"})
        self.assertEqual(manifest.file_groups.file_group_map, {"f1": ["fg1"]})
        self.assertEqual(manifest.backup_prefs.active_provider, "webdav")
        self.assertIn("files", manifest.domains)
        self.assertIn("backupPrefs", manifest.domains)
        self.assertNotIn("thumbnails", manifest.domains)

    def test_media_kind_inferred(self) -> None:
        """Test file records gain a mediaKind from their source type."""
        manifest = create_manifest(sample_data(), BackupOptions())

        kinds = {record["id"]: record["mediaKind"] for record in manifest.files}
        self.assertEqual(kinds, {"f1": "image", "f2": "video"})
        self.assertEqual(infer_media_kind({"sourceType": "audio"}), "audio")

    def test_excluded_domains_are_empty(self) -> None:
        """Test excluded domains are emitted as empty collections."""
        options = BackupOptions(
            include_files=False,
            include_albums=False,
            include_sessions=False,
            include_settings=False,
        )
        manifest = create_manifest(sample_data(), options)

        self.assertEqual(manifest.files, [])
        self.assertEqual(manifest.albums, [])
        self.assertEqual(manifest.sessions, [])
        self.assertEqual(manifest.plans, [])
        self.assertEqual(manifest.log_entries, [])
        self.assertEqual(manifest.settings, {})
        self.assertEqual(len(manifest.targets), 1)
        self.assertFalse(manifest.capabilities.supports_binary)

    def test_build_domains_implied(self) -> None:
        """Test targets imply target groups and sessions imply plans and logs."""
        domains = build_domains(
            BackupOptions(
                include_files=False,
                include_albums=False,
                include_settings=False,
                include_thumbnails=True,
            )
        )

        self.assertIn("thumbnails", domains)
        self.assertIn("targetGroups", domains)
        self.assertIn("plans", domains)
        self.assertIn("logEntries", domains)
        self.assertNotIn("files", domains)
        self.assertIn("trash", domains)


class TestManifestParsing(unittest.TestCase):
    """Tests for load_manifest() and parse_manifest()."""

    def test_round_trip(self) -> None:
        """Test a serialized manifest parses back to the same content."""
        manifest = create_manifest(sample_data(), BackupOptions())

        parsed = load_manifest(serialize_manifest(manifest))

        self.assertEqual(parsed.to_dict(), manifest.to_dict())

    def test_newer_version_rejected(self) -> None:
        """Test a manifest from a newer release is refused."""
        data = create_manifest(sample_data(), BackupOptions()).to_dict()
        data["version"] = MANIFEST_VERSION + 1

        with self.assertRaises(InvalidManifestError):
            load_manifest(json.dumps(data))
        self.assertIsNone(parse_manifest(json.dumps(data)))

    def test_missing_required_fields(self) -> None:
        """Test version and createdAt are required."""
        with self.assertRaises(InvalidManifestError):
            load_manifest(json.dumps({"version": 4}))
        with self.assertRaises(InvalidManifestError):
            load_manifest(json.dumps({"createdAt": "2026-01-01T00:00:00"}))

    def test_invalid_json(self) -> None:
        """Test malformed JSON is rejected."""
        with self.assertRaises(InvalidManifestError):
            load_manifest("{not json")
        with self.assertRaises(InvalidManifestError):
            load_manifest("[1, 2]")

    def test_legacy_manifest_defaults(self) -> None:
        """Test a version 1 manifest is filled with empty defaults."""
        legacy = {
            "version": 1,
            "createdAt": "2023-05-01T20:00:00Z",
            "files": [{"id": "f1", "filename": "a.fits"}],
            "albums": [{"id": "a1", "imageIds": ["missing"]}],
        }

        manifest = load_manifest(json.dumps(legacy))

        self.assertEqual(manifest.snapshot_id, "legacy-2023-05-01T20:00:00Z")
        self.assertEqual(manifest.device_name, "Unknown Device")
        self.assertEqual(manifest.thumbnails, [])
        self.assertEqual(manifest.trash, [])
        self.assertEqual(manifest.astrometry.config, DEFAULT_ASTROMETRY_CONFIG)
        self.assertIsNone(manifest.session_runtime.active_session)
        self.assertFalse(manifest.backup_prefs.auto_backup_enabled)
        self.assertEqual(manifest.files[0]["mediaKind"], "image")

    def test_bad_backup_prefs_use_defaults(self) -> None:
        """Test unknown providers and bad intervals fall back to defaults."""
        data = create_manifest(sample_data(), BackupOptions()).to_dict()
        data["backupPrefs"] = {
            "activeProvider": "ftp",
            "autoBackupIntervalHours": "daily",
            "autoBackupNetwork": "cellular",
        }

        manifest = manifest_from_dict(data)

        self.assertIsNone(manifest.backup_prefs.active_provider)
        self.assertEqual(manifest.backup_prefs.auto_backup_interval_hours, 24)
        self.assertEqual(manifest.backup_prefs.auto_backup_network, "wifi")


class TestCrossReferences(unittest.TestCase):
    """Tests for validate_cross_references()."""

    def test_consistent_manifest(self) -> None:
        """Test a manifest built from consistent data validates."""
        manifest = create_manifest(sample_data(), BackupOptions())

        self.assertEqual(validate_cross_references(manifest), [])

    def test_dangling_album_reference(self) -> None:
        """Test an album pointing at a missing file is rejected."""
        data = create_manifest(sample_data(), BackupOptions()).to_dict()
        data["albums"][0]["imageIds"].append("nope")

        with self.assertRaises(InvalidManifestError) as ctx:
            load_manifest(json.dumps(data))
        self.assertIn("nope", str(ctx.exception))

    def test_dangling_group_reference(self) -> None:
        """Test a membership entry pointing at a missing group is rejected."""
        manifest = create_manifest(sample_data(), BackupOptions())
        manifest.file_groups.file_group_map["f2"] = ["fg-missing"]

        errors = validate_cross_references(manifest)

        self.assertEqual(len(errors), 1)
        self.assertIn("fg-missing", errors[0])

    def test_dangling_astrometry_job(self) -> None:
        """Test an astrometry job for a missing file is reported."""
        manifest = create_manifest(sample_data(), BackupOptions())
        manifest.astrometry.jobs.append({"id": "j2", "fileId": "ghost"})

        errors = validate_cross_references(manifest)

        self.assertTrue(any("ghost" in error for error in errors))

    def test_files_domain_excluded_still_checked(self) -> None:
        """Test leaving files out of the domains does not disable reference checks."""
        manifest = create_manifest(sample_data(), BackupOptions(include_files=False))

        self.assertTrue(validate_cross_references(manifest))
        self.assertIsNone(parse_manifest(serialize_manifest(manifest)))

        data = {
            "version": 4,
            "createdAt": "2026-01-01T00:00:00+00:00",
            "domains": ["albums"],
            "files": [],
            "albums": [{"id": "a1", "imageIds": ["ghost"]}],
        }
        self.assertIsNone(parse_manifest(json.dumps(data)))

    def test_malformed_references_rejected(self) -> None:
        """Test wrongly shaped references are reported instead of raising."""
        base = create_manifest(sample_data(), BackupOptions()).to_dict()
        shapes = [
            ("albums", lambda d: d["albums"][0].update(imageIds=5)),
            ("albums", lambda d: d["albums"][0].update(imageIds=[{"x": 1}])),
            ("jobs", lambda d: d["astrometry"]["jobs"].append({"id": "j2", "fileId": ["f1"]})),
            ("jobs", lambda d: d["astrometry"]["jobs"].append("j3")),
            ("groups", lambda d: d["fileGroups"]["fileGroupMap"].update(f1=[{"id": 1}])),
        ]

        for domain, corrupt in shapes:
            with self.subTest(domain=domain):
                data = json.loads(json.dumps(base))
                corrupt(data)

                self.assertIsNone(parse_manifest(json.dumps(data)))
                with self.assertRaises(InvalidManifestError):
                    load_manifest(json.dumps(data))

    def test_malformed_group_membership(self) -> None:
        """Test a membership entry that is not a list is reported."""
        manifest = create_manifest(sample_data(), BackupOptions())
        manifest.file_groups.file_group_map["f1"] = "fg1"

        errors = validate_cross_references(manifest)

        self.assertEqual(len(errors), 1)
        self.assertIn("malformed", errors[0])

    def test_numeric_ids_match(self) -> None:
        """Test integer ids resolve against the same integer references."""
        data = {
            "version": 4,
            "createdAt": "2026-01-01T00:00:00+00:00",
            "files": [{"id": 1, "filename": "a.fits"}],
            "albums": [{"id": "a1", "imageIds": [1]}],
            "astrometry": {"jobs": [{"id": "j1", "fileId": 1}]},
            "fileGroups": {"groups": [{"id": 7}], "fileGroupMap": {"1": [7]}},
        }

        manifest = load_manifest(json.dumps(data))

        self.assertEqual(manifest.albums[0]["imageIds"], [1])

    def test_old_versions_not_cross_checked(self) -> None:
        """Test version 3 manifests are accepted with dangling references."""
        data = create_manifest(sample_data(), BackupOptions()).to_dict()
        data["version"] = 3
        data["albums"][0]["imageIds"].append("nope")

        manifest = load_manifest(json.dumps(data))

        self.assertEqual(manifest.version, 3)


class TestAstrometryConfig(unittest.TestCase):
    """Tests for parse_astrometry_config()."""

    def test_bad_values_replaced(self) -> None:
        """Test wrongly typed values are replaced with defaults."""
        config = parse_astrometry_config(
            {
                "apiKey": 42,
                "serverUrl": "https://solver.local",
                "maxConcurrent": "many",
                "defaultScaleUnits": "furlongs",
                "defaultScaleLower": 0.5,
            }
        )

        self.assertEqual(config["apiKey"], "")
        self.assertEqual(config["serverUrl"], "https://solver.local")
        self.assertEqual(config["maxConcurrent"], 3)
        self.assertEqual(config["defaultScaleUnits"], "degwidth")
        self.assertEqual(config["defaultScaleLower"], 0.5)
        self.assertIsNone(config["defaultScaleUpper"])

    def test_non_object(self) -> None:
        """Test a non-object yields the defaults."""
        self.assertEqual(parse_astrometry_config("nope"), DEFAULT_ASTROMETRY_CONFIG)


class TestManifestSummary(unittest.TestCase):
    """Tests for manifest summaries."""

    def test_counts(self) -> None:
        """Test summary counts every domain."""
        summary = get_manifest_summary(create_manifest(sample_data(), BackupOptions()))

        self.assertEqual(summary.file_count, 2)
        self.assertEqual(summary.album_count, 1)
        self.assertEqual(summary.target_count, 1)
        self.assertEqual(summary.file_group_count, 1)
        self.assertEqual(summary.astrometry_job_count, 1)
        self.assertEqual(summary.trash_count, 1)
        self.assertTrue(summary.has_settings)

    def test_from_dict_tolerates_garbage(self) -> None:
        """Test malformed summary fields fall back to defaults."""
        summary = ManifestSummary.from_dict({"fileCount": "7", "albumCount": 3, "hasSettings": 1})

        self.assertEqual(summary.file_count, 0)
        self.assertEqual(summary.album_count, 3)
        self.assertFalse(summary.has_settings)
        self.assertTrue(summary.created_at)


if __name__ == "__main__":
    unittest.main()
