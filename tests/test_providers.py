"""
Tests for storage providers.

Tests cover:
- Retry policy backoff and error classification
- Provider registry and connection management
- Local directory provider operations
- WebDAV provider request handling (HTTP mocked)
"""

from __future__ import annotations

import base64
import json
import shutil
import tempfile
import time
import unittest
from pathlib import Path
from unittest.mock import MagicMock, patch

import requests

from cobaltsync.backup.errors import NotAuthenticatedError
from cobaltsync.backup.manifest import create_manifest
from cobaltsync.backup.types import BackupOptions, ManifestData
from cobaltsync.providers import (
    LocalDirectoryProvider,
    ProviderConfig,
    ProviderConnectionError,
    ProviderConnections,
    ProviderRegistry,
    RetryPolicy,
    TransferError,
    WebDAVProvider,
)


def no_sleep_policy(max_retries=3):
    return RetryPolicy(max_retries=max_retries, base_delay=1.0, max_delay=4.0, sleep=MagicMock())


class TestRetryPolicy(unittest.TestCase):
    """Tests for RetryPolicy."""

    def test_delay_for(self) -> None:
        """Test delays double and are capped."""
        policy = RetryPolicy(base_delay=1.0, max_delay=5.0)

        self.assertEqual([policy.delay_for(n) for n in range(4)], [1.0, 2.0, 4.0, 5.0])

    def test_retries_connection_errors(self) -> None:
        """Test transient errors are retried with backoff."""
        policy = no_sleep_policy()
        func = MagicMock(
            side_effect=[ProviderConnectionError("down"), OSError("reset"), "ok"]
        )

        self.assertEqual(policy.call(func, "a", key="b"), "ok")
        self.assertEqual(func.call_count, 3)
        func.assert_called_with("a", key="b")
        self.assertEqual([c.args[0] for c in policy.sleep.call_args_list], [1.0, 2.0])

    def test_gives_up_after_max_retries(self) -> None:
        """Test the last error is raised once retries are exhausted."""
        policy = no_sleep_policy(max_retries=2)
        func = MagicMock(side_effect=ProviderConnectionError("down"))

        with self.assertRaises(ProviderConnectionError):
            policy.call(func)
        self.assertEqual(func.call_count, 3)

    def test_auth_errors_not_retried(self) -> None:
        """Test authentication failures surface immediately."""
        policy = no_sleep_policy()
        func = MagicMock(side_effect=NotAuthenticatedError("expired"))

        with self.assertRaises(NotAuthenticatedError):
            policy.call(func)
        self.assertEqual(func.call_count, 1)
        policy.sleep.assert_not_called()

    def test_permanent_errors_not_retried(self) -> None:
        """Test other errors propagate without retry."""
        policy = no_sleep_policy()
        func = MagicMock(side_effect=TransferError("refused"))

        with self.assertRaises(TransferError):
            policy.call(func)
        self.assertEqual(func.call_count, 1)


class TestProviderRegistry(unittest.TestCase):
    """Tests for ProviderRegistry and ProviderConnections."""

    def test_builtin_providers_registered(self) -> None:
        """Test the bundled providers are discoverable."""
        kinds = ProviderRegistry.get_kinds()

        self.assertIn("local-dir", kinds)
        self.assertIn("webdav", kinds)
        self.assertIs(ProviderRegistry.get_provider_class("webdav"), WebDAVProvider)

    def test_unknown_kind(self) -> None:
        """Test creating an unknown provider fails."""
        with self.assertRaises(ValueError):
            ProviderRegistry.create("carrier-pigeon")

    def test_connections(self) -> None:
        """Test connecting, listing and disconnecting providers."""
        temp_dir = tempfile.mkdtemp()
        self.addCleanup(shutil.rmtree, temp_dir, True)
        connections = ProviderConnections(retry_policy=no_sleep_policy())

        provider = connections.connect("local-dir", ProviderConfig(root=temp_dir))

        self.assertIs(connections.get("local-dir"), provider)
        self.assertIs(connections.get_or_create("local-dir"), provider)
        self.assertEqual(connections.connected(), ["local-dir"])
        self.assertIs(provider.retry_policy, connections.retry_policy)

        connections.disconnect("local-dir")
        self.assertEqual(connections.connected(), [])
        self.assertIsNone(connections.get("local-dir"))


class TestLocalDirectoryProvider(unittest.TestCase):
    """Tests for LocalDirectoryProvider."""

    def setUp(self) -> None:
        self.temp_dir = tempfile.mkdtemp()
        self.root = Path(self.temp_dir) / "remote"
        self.provider = LocalDirectoryProvider(retry_policy=no_sleep_policy())
        self.provider.connect(ProviderConfig(root=str(self.root)))
        self.source = Path(self.temp_dir) / "frame.fits"
        self.source.write_bytes(b"frame data")

    def tearDown(self) -> None:
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def test_connect_requires_root(self) -> None:
        """Test connecting without a root directory fails."""
        with self.assertRaises(NotAuthenticatedError):
            LocalDirectoryProvider().connect(ProviderConfig())

    def test_not_connected(self) -> None:
        """Test operations on a disconnected provider fail."""
        self.provider.disconnect()

        with self.assertRaises(NotAuthenticatedError):
            self.provider.file_exists("cobalt-backup/manifest.json")

    def test_upload_download(self) -> None:
        """Test a payload survives an upload and download."""
        self.provider.upload_file(self.source, "cobalt-backup/fits_files/f1_frame.fits")
        dest = Path(self.temp_dir) / "restored" / "frame.fits"

        self.provider.download_file("cobalt-backup/fits_files/f1_frame.fits", dest)

        self.assertEqual(dest.read_bytes(), b"frame data")
        self.assertTrue(self.provider.file_exists("cobalt-backup/fits_files/f1_frame.fits"))

    def test_download_missing(self) -> None:
        """Test downloading a missing object raises TransferError."""
        with self.assertRaises(TransferError):
            self.provider.download_file("cobalt-backup/fits_files/nope", Path(self.temp_dir) / "x")

    def test_list_and_delete(self) -> None:
        """Test listing returns relative paths and delete removes the object."""
        self.provider.ensure_backup_dir()
        self.provider.upload_file(self.source, "cobalt-backup/fits_files/f1_frame.fits")

        entries = self.provider.list_files("cobalt-backup/fits_files")

        self.assertEqual([e.path for e in entries], ["cobalt-backup/fits_files/f1_frame.fits"])
        self.assertEqual(entries[0].size, len(b"frame data"))

        self.provider.delete_file("cobalt-backup/fits_files/f1_frame.fits")
        self.assertEqual(self.provider.list_files("cobalt-backup/fits_files"), [])

    def test_path_escape_rejected(self) -> None:
        """Test remote paths cannot leave the root."""
        with self.assertRaises(TransferError):
            self.provider.upload_file(self.source, "../outside.fits")

    def test_manifest_round_trip(self) -> None:
        """Test a manifest uploads atomically and downloads intact."""
        manifest = create_manifest(ManifestData(), BackupOptions())

        self.provider.upload_manifest(manifest)
        downloaded = self.provider.download_manifest()

        self.assertEqual(downloaded.snapshot_id, manifest.snapshot_id)
        leftovers = [p.name for p in (self.root / "cobalt-backup").iterdir() if p.suffix == ".tmp"]
        self.assertEqual(leftovers, [])

    def test_invalid_manifest_reads_as_none(self) -> None:
        """Test an unparseable manifest is reported as absent."""
        self.provider.ensure_backup_dir()
        (self.root / "cobalt-backup" / "manifest.json").write_text("{broken")

        self.assertIsNone(self.provider.download_manifest())
        self.assertTrue(self.provider.file_exists(self.provider.manifest_remote_path))

    def test_expired_token(self) -> None:
        """Test an expired token is reported as not authenticated."""
        self.provider._token_expiry = time.time() - 10

        with self.assertRaises(NotAuthenticatedError):
            self.provider.refresh_token_if_needed()


def make_response(status, content=b""):
    response = MagicMock()
    response.status_code = status
    response.ok = 200 <= status < 400
    response.content = content
    response.text = content.decode("utf-8")
    response.iter_content.return_value = [content]
    return response


MULTISTATUS = """<?xml version="1.0" encoding="utf-8"?>
<d:multistatus xmlns:d="DAV:">
  <d:response>
    <d:href>/remote.php/dav/files/alice/cobalt-backup/fits_files/</d:href>
    <d:propstat><d:prop><d:resourcetype><d:collection/></d:resourcetype></d:prop></d:propstat>
  </d:response>
  <d:response>
    <d:href>/remote.php/dav/files/alice/cobalt-backup/fits_files/f1_m31%20L.fits</d:href>
    <d:propstat><d:prop>
      <d:resourcetype/>
      <d:getcontentlength>123</d:getcontentlength>
      <d:getlastmodified>Sat, 10 Jan 2026 21:00:00 GMT</d:getlastmodified>
    </d:prop></d:propstat>
  </d:response>
</d:multistatus>"""

QUOTA = """<?xml version="1.0" encoding="utf-8"?>
<d:multistatus xmlns:d="DAV:">
  <d:response>
    <d:href>/remote.php/dav/files/alice/</d:href>
    <d:propstat><d:prop>
      <d:quota-used-bytes>1000</d:quota-used-bytes>
      <d:quota-available-bytes>9000</d:quota-available-bytes>
    </d:prop></d:propstat>
  </d:response>
</d:multistatus>"""


class TestWebDAVProvider(unittest.TestCase):
    """Tests for WebDAVProvider with a mocked HTTP session."""

    def setUp(self) -> None:
        self.session = MagicMock()
        patcher = patch("cobaltsync.providers.webdav.requests.Session", return_value=self.session)
        patcher.start()
        self.addCleanup(patcher.stop)

        self.provider = WebDAVProvider(retry_policy=no_sleep_policy(max_retries=2))
        self.provider.connect(
            ProviderConfig(
                kind="webdav",
                webdav_url="https://dav.example.com/remote.php/dav/files/alice/",
                webdav_username="alice",
                webdav_password="s3cret",
            )
        )
        self.temp_dir = tempfile.mkdtemp()

    def tearDown(self) -> None:
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def test_connect_requires_credentials(self) -> None:
        """Test a missing URL or username is rejected."""
        with self.assertRaises(NotAuthenticatedError):
            WebDAVProvider().connect(ProviderConfig(kind="webdav", webdav_url="https://x"))

    def test_basic_auth_header(self) -> None:
        """Test requests carry a Basic authorization header."""
        self.session.request.return_value = make_response(207)

        self.assertTrue(self.provider.test_connection())

        token = base64.b64encode(b"alice:s3cret").decode()
        self.session.headers.update.assert_called_once_with({"Authorization": f"Basic {token}"})

    def test_auth_failure_not_retried(self) -> None:
        """Test a 401 raises NotAuthenticatedError after one request."""
        self.session.request.return_value = make_response(401)

        with self.assertRaises(NotAuthenticatedError):
            self.provider.delete_file("cobalt-backup/fits_files/x")
        self.assertEqual(self.session.request.call_count, 1)

    def test_connection_error_retried(self) -> None:
        """Test connection errors are retried and then surfaced."""
        self.session.request.side_effect = requests.exceptions.ConnectionError("refused")

        with self.assertRaises(ProviderConnectionError):
            self.provider.file_exists("cobalt-backup/manifest.json")
        self.assertEqual(self.session.request.call_count, 3)

    def test_upload_file(self) -> None:
        """Test uploads PUT the file bytes to the quoted URL."""
        source = Path(self.temp_dir) / "m31 L.fits"
        source.write_bytes(b"pixels")
        self.session.request.return_value = make_response(201)

        self.provider.upload_file(source, "cobalt-backup/fits_files/f1_m31_L.fits")

        args, kwargs = self.session.request.call_args
        self.assertEqual(args[0], "PUT")
        self.assertEqual(
            args[1],
            "https://dav.example.com/remote.php/dav/files/alice/cobalt-backup/fits_files/f1_m31_L.fits",
        )
        self.assertEqual(kwargs["data"], b"pixels")

    def test_upload_refused(self) -> None:
        """Test a refused upload raises TransferError."""
        source = Path(self.temp_dir) / "a.fits"
        source.write_bytes(b"x")
        self.session.request.return_value = make_response(507)

        with self.assertRaises(TransferError):
            self.provider.upload_file(source, "cobalt-backup/fits_files/a.fits")

    def test_download_file(self) -> None:
        """Test downloads stream the body to disk."""
        self.session.request.return_value = make_response(200, b"pixels")
        dest = Path(self.temp_dir) / "out" / "a.fits"

        self.provider.download_file("cobalt-backup/fits_files/a.fits", dest)

        self.assertEqual(dest.read_bytes(), b"pixels")

    def test_ensure_backup_dir_tolerates_existing(self) -> None:
        """Test MKCOL on an existing collection is not an error."""
        self.session.request.return_value = make_response(405)

        self.provider.ensure_backup_dir()

        methods = [c.args[0] for c in self.session.request.call_args_list]
        self.assertEqual(methods, ["MKCOL", "MKCOL", "MKCOL"])

    def test_list_files(self) -> None:
        """Test PROPFIND listings become relative RemoteFile entries."""
        self.session.request.return_value = make_response(207, MULTISTATUS.encode())

        entries = self.provider.list_files("cobalt-backup/fits_files")

        self.assertEqual(len(entries), 1)
        self.assertEqual(entries[0].name, "f1_m31 L.fits")
        self.assertEqual(entries[0].path, "cobalt-backup/fits_files/f1_m31 L.fits")
        self.assertEqual(entries[0].size, 123)
        self.assertFalse(entries[0].is_directory)

    def test_download_manifest_missing(self) -> None:
        """Test a 404 manifest means no backup."""
        self.session.request.return_value = make_response(404)

        self.assertIsNone(self.provider.download_manifest())

    def test_manifest_round_trip(self) -> None:
        """Test an uploaded manifest body parses back."""
        manifest = create_manifest(ManifestData(), BackupOptions())
        self.session.request.return_value = make_response(201)
        self.provider.upload_manifest(manifest)
        body = self.session.request.call_args.kwargs["data"]

        self.session.request.return_value = make_response(200, body)
        downloaded = self.provider.download_manifest()

        self.assertEqual(downloaded.snapshot_id, manifest.snapshot_id)
        self.assertEqual(json.loads(body)["version"], 4)

    def test_quota(self) -> None:
        """Test quota properties are summed into a total."""
        self.session.request.return_value = make_response(207, QUOTA.encode())

        self.assertEqual(self.provider.get_quota(), {"used": 1000, "total": 10000})


if __name__ == "__main__":
    unittest.main()
