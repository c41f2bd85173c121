"""
Provider backed by a directory on the local filesystem.

Useful for NAS mounts, removable drives and tests. The "remote" paths are
resolved below a root directory and may never escape it.
"""

from __future__ import annotations

import os
import shutil
import tempfile
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from cobaltsync.backup.errors import NotAuthenticatedError
from cobaltsync.backup.manifest import parse_manifest, serialize_manifest
from cobaltsync.backup.types import BackupManifest, RemoteFile
from cobaltsync.providers.base import (
    CloudProvider,
    ProviderConfig,
    ProviderRegistry,
    RetryPolicy,
    TransferError,
)


@ProviderRegistry.register
class LocalDirectoryProvider(CloudProvider):
    """Stores snapshots below a local directory."""

    name = "local-dir"
    display_name = "Local Directory"

    def __init__(
        self, retry_policy: RetryPolicy | None = None, root: str | Path | None = None
    ) -> None:
        super().__init__(retry_policy=retry_policy)
        self.root: Path | None = Path(root).expanduser() if root else None

    def connect(self, config: ProviderConfig | None = None) -> None:
        if config is not None and config.root:
            self.root = Path(config.root).expanduser()
        if self.root is None:
            raise NotAuthenticatedError("Local directory provider requires a root directory")
        self.root.mkdir(parents=True, exist_ok=True)
        self._connected = True
        self.logger.info(f"Connected to local directory: {self.root}")

    def disconnect(self) -> None:
        self._connected = False
        self.logger.info("Disconnected from local directory")

    def test_connection(self) -> bool:
        return self._connected and self.root is not None and os.access(self.root, os.W_OK)

    def _resolve(self, remote_path: str) -> Path:
        self._require_connected()
        assert self.root is not None
        root = self.root.resolve()
        resolved = (root / remote_path.lstrip("/")).resolve()
        if resolved != root and root not in resolved.parents:
            raise TransferError(f"Path escapes backup root: {remote_path}", provider=self.name)
        return resolved

    def upload_file(self, local_path: str | Path, remote_path: str) -> None:
        source = Path(local_path)
        if not source.exists():
            raise TransferError(f"Local file not found: {local_path}", provider=self.name)
        dest = self._resolve(remote_path)
        dest.parent.mkdir(parents=True, exist_ok=True)
        self.retry_policy.call(shutil.copyfile, source, dest)
        self.logger.debug(f"Uploaded: {remote_path}")

    def download_file(self, remote_path: str, local_path: str | Path) -> None:
        source = self._resolve(remote_path)
        if not source.is_file():
            raise TransferError(f"Remote file not found: {remote_path}", provider=self.name)
        dest = Path(local_path)
        dest.parent.mkdir(parents=True, exist_ok=True)
        self.retry_policy.call(shutil.copyfile, source, dest)
        self.logger.debug(f"Downloaded: {remote_path}")

    def delete_file(self, remote_path: str) -> None:
        target = self._resolve(remote_path)
        if target.is_file():
            target.unlink()

    def list_files(self, dir_path: str) -> list[RemoteFile]:
        directory = self._resolve(dir_path)
        if not directory.is_dir():
            return []
        files = []
        for entry in sorted(directory.iterdir()):
            stat = entry.stat()
            files.append(
                RemoteFile(
                    name=entry.name,
                    path=f"{dir_path.rstrip('/')}/{entry.name}",
                    size=stat.st_size if entry.is_file() else 0,
                    last_modified=datetime.fromtimestamp(stat.st_mtime, UTC).isoformat(),
                    is_directory=entry.is_dir(),
                )
            )
        return files

    def file_exists(self, remote_path: str) -> bool:
        return self._resolve(remote_path).exists()

    def upload_manifest(self, manifest: BackupManifest) -> None:
        """Write the manifest atomically so readers never see a partial file."""
        self.ensure_backup_dir()
        dest = self._resolve(self.manifest_remote_path)
        fd, tmp_path = tempfile.mkstemp(dir=dest.parent, prefix=".manifest_", suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(serialize_manifest(manifest))
            os.replace(tmp_path, dest)
        except BaseException:
            if os.path.exists(tmp_path):
                os.unlink(tmp_path)
            raise
        self.logger.debug(f"Uploaded manifest {manifest.snapshot_id}")

    def download_manifest(self) -> BackupManifest | None:
        path = self._resolve(self.manifest_remote_path)
        if not path.is_file():
            return None
        return parse_manifest(path.read_text(encoding="utf-8"))

    def get_quota(self) -> dict[str, int] | None:
        self._require_connected()
        assert self.root is not None
        usage = shutil.disk_usage(self.root)
        return {"used": usage.used, "total": usage.total}

    def get_user_info(self) -> dict[str, Any] | None:
        if self.root is None:
            return None
        return {"name": str(self.root)}

    def ensure_backup_dir(self) -> None:
        for subdir in self.backup_subdirs:
            self._resolve(subdir).mkdir(parents=True, exist_ok=True)
