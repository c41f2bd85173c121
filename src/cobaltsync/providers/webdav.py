"""
WebDAV provider.

Talks plain WebDAV over HTTP Basic auth, so it works with Nextcloud,
ownCloud, Synology, Apache mod_dav and similar servers.

Required configuration:
    - webdav_url: Server base URL, including any DAV path prefix
      (e.g. https://cloud.example.com/remote.php/dav/files/alice)
    - webdav_username: Account name
    - webdav_password: Account or app password

Status handling:
    - 401/403 raise NotAuthenticatedError and are never retried
    - Connection errors and timeouts raise ProviderConnectionError and are
      retried by the provider's RetryPolicy
    - MKCOL answering 405 or 301 means the collection already exists
"""

from __future__ import annotations

import base64
import xml.etree.ElementTree as ET
from pathlib import Path
from typing import Any
from urllib.parse import quote, unquote, urlparse

import requests

from cobaltsync.backup.errors import NotAuthenticatedError
from cobaltsync.backup.manifest import parse_manifest, serialize_manifest
from cobaltsync.backup.types import BACKUP_DIR, BackupManifest, RemoteFile
from cobaltsync.providers.base import (
    CloudProvider,
    ProviderConfig,
    ProviderConnectionError,
    ProviderRegistry,
    RetryPolicy,
    TransferError,
)

DAV_NS = "{DAV:}"

QUOTA_PROPFIND_BODY = """<?xml version="1.0" encoding="UTF-8"?>
<d:propfind xmlns:d="DAV:">
  <d:prop>
    <d:quota-used-bytes/>
    <d:quota-available-bytes/>
  </d:prop>
</d:propfind>"""

DOWNLOAD_CHUNK_SIZE = 1024 * 1024


@ProviderRegistry.register
class WebDAVProvider(CloudProvider):
    """Stores snapshots on a WebDAV server."""

    name = "webdav"
    display_name = "WebDAV"

    def __init__(self, retry_policy: RetryPolicy | None = None) -> None:
        super().__init__(retry_policy=retry_policy)
        self._server_url: str | None = None
        self._username: str | None = None
        self._password: str | None = None
        self._timeout: float = 60.0
        self._session: requests.Session | None = None

    @property
    def server_url(self) -> str | None:
        return self._server_url

    def connect(self, config: ProviderConfig | None = None) -> None:
        """
        Store the server URL and credentials.

        Raises:
            NotAuthenticatedError: If the URL or username is missing.
        """
        if config is None or not config.webdav_url or not config.webdav_username:
            raise NotAuthenticatedError("WebDAV requires server URL and credentials.")

        self._server_url = config.webdav_url.rstrip("/")
        self._username = config.webdav_username
        self._password = config.webdav_password or ""
        self._timeout = config.timeout
        self._session = None
        self._connected = True
        self.logger.info(f"Connected to WebDAV: {self._server_url}")

    def disconnect(self) -> None:
        if self._session is not None:
            self._session.close()
        self._session = None
        self._server_url = None
        self._username = None
        self._password = None
        self._connected = False
        self.logger.info("Disconnected from WebDAV")

    def _get_session(self) -> requests.Session:
        """
        Get or create a requests session with Basic auth.

        Raises:
            NotAuthenticatedError: If the provider is not connected.
        """
        self._require_connected()
        if self._session is not None:
            return self._session

        auth_string = f"{self._username}:{self._password}"
        auth_bytes = base64.b64encode(auth_string.encode()).decode()

        self._session = requests.Session()
        self._session.headers.update({"Authorization": f"Basic {auth_bytes}"})
        return self._session

    def _dav_path(self, remote_path: str) -> str:
        return "/" + quote(remote_path.lstrip("/"))

    def _request_once(
        self,
        method: str,
        remote_path: str,
        headers: dict[str, str] | None = None,
        data: Any = None,
        stream: bool = False,
    ) -> requests.Response:
        session = self._get_session()
        url = f"{self._server_url}{self._dav_path(remote_path)}"

        try:
            response = session.request(
                method,
                url,
                headers=headers,
                data=data,
                stream=stream,
                timeout=self._timeout,
            )
        except requests.exceptions.ConnectionError as e:
            raise ProviderConnectionError(
                f"Failed to connect to WebDAV server: {e}", provider=self.name
            )
        except requests.exceptions.Timeout as e:
            raise ProviderConnectionError(f"WebDAV request timed out: {e}", provider=self.name)

        if response.status_code == 401:
            raise NotAuthenticatedError("WebDAV authentication failed. Check username and password.")
        if response.status_code == 403:
            raise NotAuthenticatedError("WebDAV permission denied. Check account permissions.")

        return response

    def _request(
        self,
        method: str,
        remote_path: str,
        headers: dict[str, str] | None = None,
        data: Any = None,
        stream: bool = False,
    ) -> requests.Response:
        return self.retry_policy.call(
            self._request_once, method, remote_path, headers, data, stream
        )

    def test_connection(self) -> bool:
        try:
            response = self._request("PROPFIND", "/", headers={"Depth": "0"})
        except (NotAuthenticatedError, ProviderConnectionError) as e:
            self.logger.warning(f"WebDAV connection test failed: {e}")
            return False
        return response.ok or response.status_code == 207

    def _create_dir_if_missing(self, remote_path: str) -> None:
        response = self._request("MKCOL", remote_path)
        if not response.ok and response.status_code not in (405, 301):
            self.logger.warning(f"Failed to create dir: {remote_path} ({response.status_code})")

    def ensure_backup_dir(self) -> None:
        self._create_dir_if_missing(BACKUP_DIR)
        for subdir in self.backup_subdirs:
            self._create_dir_if_missing(subdir)

    def upload_file(self, local_path: str | Path, remote_path: str) -> None:
        source = Path(local_path)
        if not source.exists():
            raise TransferError(f"Local file not found: {local_path}", provider=self.name)

        content = source.read_bytes()
        response = self._request(
            "PUT",
            remote_path,
            headers={"Content-Type": "application/octet-stream"},
            data=content,
        )
        if not response.ok:
            raise TransferError(
                f"Upload failed: {response.status_code} {response.text}", provider=self.name
            )
        self.logger.debug(f"Uploaded: {remote_path}")

    def download_file(self, remote_path: str, local_path: str | Path) -> None:
        response = self._request("GET", remote_path, stream=True)
        if not response.ok:
            raise TransferError(f"Download failed: {response.status_code}", provider=self.name)

        dest = Path(local_path)
        dest.parent.mkdir(parents=True, exist_ok=True)
        with open(dest, "wb") as f:
            for chunk in response.iter_content(chunk_size=DOWNLOAD_CHUNK_SIZE):
                if chunk:
                    f.write(chunk)
        self.logger.debug(f"Downloaded: {remote_path}")

    def delete_file(self, remote_path: str) -> None:
        response = self._request("DELETE", remote_path)
        if not response.ok and response.status_code != 404:
            raise TransferError(f"Delete failed: {response.status_code}", provider=self.name)

    def list_files(self, dir_path: str) -> list[RemoteFile]:
        response = self._request(
            "PROPFIND",
            dir_path.rstrip("/") + "/",
            headers={"Depth": "1", "Content-Type": "application/xml"},
        )
        if not response.ok and response.status_code != 207:
            return []
        return self._parse_multistatus(response.text, dir_path)

    def file_exists(self, remote_path: str) -> bool:
        response = self._request("PROPFIND", remote_path, headers={"Depth": "0"})
        return response.ok or response.status_code == 207

    def upload_manifest(self, manifest: BackupManifest) -> None:
        self.ensure_backup_dir()
        response = self._request(
            "PUT",
            self.manifest_remote_path,
            headers={"Content-Type": "application/json"},
            data=serialize_manifest(manifest).encode("utf-8"),
        )
        if not response.ok:
            raise TransferError(
                f"Manifest upload failed: {response.status_code}", provider=self.name
            )
        self.logger.debug(f"Uploaded manifest {manifest.snapshot_id}")

    def download_manifest(self) -> BackupManifest | None:
        response = self._request("GET", self.manifest_remote_path)
        if response.status_code == 404:
            return None
        if not response.ok:
            raise TransferError(
                f"Manifest download failed: {response.status_code}", provider=self.name
            )
        return parse_manifest(response.content)

    def get_quota(self) -> dict[str, int] | None:
        try:
            response = self._request(
                "PROPFIND",
                "/",
                headers={"Depth": "0", "Content-Type": "application/xml"},
                data=QUOTA_PROPFIND_BODY,
            )
        except ProviderConnectionError as e:
            self.logger.warning(f"Could not read WebDAV quota: {e}")
            return None
        if not response.ok and response.status_code != 207:
            return None

        try:
            root = ET.fromstring(response.content)
        except ET.ParseError:
            return None
        used = root.find(f".//{DAV_NS}quota-used-bytes")
        available = root.find(f".//{DAV_NS}quota-available-bytes")
        if used is None or available is None:
            return None
        try:
            used_bytes = int(used.text or "")
            available_bytes = int(available.text or "")
        except ValueError:
            return None
        return {"used": used_bytes, "total": used_bytes + available_bytes}

    def get_user_info(self) -> dict[str, Any] | None:
        if not self._username or not self._server_url:
            return None
        return {"name": self._username}

    def _parse_multistatus(self, xml_text: str, dir_path: str) -> list[RemoteFile]:
        """
        Parse a Depth 1 PROPFIND response into RemoteFile entries.

        The entry for the listed directory itself is skipped. Paths are
        returned relative to the provider root.
        """
        try:
            root = ET.fromstring(xml_text)
        except ET.ParseError as e:
            self.logger.warning(f"Unparseable PROPFIND response for {dir_path}: {e}")
            return []

        base_prefix = urlparse(self._server_url or "").path.rstrip("/")
        listed = f"{base_prefix}/{dir_path.strip('/')}".rstrip("/")
        results: list[RemoteFile] = []

        for response in root.iter(f"{DAV_NS}response"):
            href_el = response.find(f"{DAV_NS}href")
            if href_el is None or not href_el.text:
                continue
            href = unquote(urlparse(href_el.text).path).rstrip("/")
            if href == listed or href == unquote(listed):
                continue

            name = href.rsplit("/", 1)[-1]
            if not name:
                continue

            is_directory = response.find(f".//{DAV_NS}collection") is not None
            size_el = response.find(f".//{DAV_NS}getcontentlength")
            modified_el = response.find(f".//{DAV_NS}getlastmodified")
            try:
                size = int(size_el.text) if size_el is not None and size_el.text else 0
            except ValueError:
                size = 0

            results.append(
                RemoteFile(
                    name=name,
                    path=f"{dir_path.strip('/')}/{name}",
                    size=size,
                    last_modified=modified_el.text if modified_el is not None else None,
                    is_directory=is_directory,
                )
            )

        return results
