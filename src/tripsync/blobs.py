"""
Raw binary transfers against presigned URLs.

The metadata service never proxies file bytes: once a presigned URL is
in hand, bytes go straight between the device and object storage.
``http(s)://`` URLs go through requests, ``file://`` URLs (the local
directory server) are plain file copies.
"""

from __future__ import annotations

import logging
import shutil
from pathlib import Path
from typing import Optional
from urllib.parse import unquote, urlparse

import requests

from .errors import AuthRejectedError, SyncError, TransientNetworkError, URLExpiredError

logger = logging.getLogger("tripsync.blobs")

STREAM_CHUNK = 256 * 1024

MIME_TYPES = {
    ".jpg": "image/jpeg",
    ".jpeg": "image/jpeg",
    ".png": "image/png",
    ".heic": "image/heic",
    ".mov": "video/quicktime",
    ".mp4": "video/mp4",
    ".gpx": "application/gpx+xml",
}


def mime_type_for(path: Path) -> str:
    """Content type of a local file, by extension."""
    return MIME_TYPES.get(Path(path).suffix.lower(), "application/octet-stream")


class BlobClient:
    """Uploads and downloads single objects through presigned URLs.

    Args:
        timeout: Per-request timeout in seconds.
        session: Optional preconfigured requests session.
    """

    def __init__(self, timeout: float = 120.0, session: Optional[requests.Session] = None):
        self._timeout = timeout
        self._session = session or requests.Session()

    def upload(self, url: str, source: Path) -> int:
        """PUT a local file to a presigned URL.

        Returns:
            Number of bytes sent.

        Raises:
            FileNotFoundError: If the local file is missing.
            TransientNetworkError: On timeouts, connection errors, 5xx.
            URLExpiredError: If storage refuses the (expired) signature.
        """
        source = Path(source)
        if not source.exists():
            raise FileNotFoundError(f"File not found: {source}")

        parsed = urlparse(url)
        if parsed.scheme == "file":
            dest = Path(unquote(parsed.path))
            dest.parent.mkdir(parents=True, exist_ok=True)
            try:
                shutil.copyfile(source, dest)
            except OSError as exc:
                raise TransientNetworkError(f"Local upload failed: {exc}") from exc
            return dest.stat().st_size

        size = source.stat().st_size
        with open(source, "rb") as fh:
            try:
                resp = self._session.put(
                    url,
                    data=fh,
                    headers={"Content-Type": mime_type_for(source)},
                    timeout=self._timeout,
                )
            except (requests.Timeout, requests.ConnectionError) as exc:
                raise TransientNetworkError(f"Upload failed: {exc}") from exc
        self._check(resp, "upload")
        return size

    def download(self, url: str, dest: Path) -> int:
        """GET a presigned URL into a local file.

        The file appears at ``dest`` only once fully written.

        Returns:
            Number of bytes received.
        """
        dest = Path(dest)
        dest.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = dest.parent / f".{dest.name}.part"

        parsed = urlparse(url)
        if parsed.scheme == "file":
            source = Path(unquote(parsed.path))
            try:
                shutil.copyfile(source, tmp_path)
            except FileNotFoundError as exc:
                raise TransientNetworkError(f"Object not yet in storage: {source.name}") from exc
            except OSError as exc:
                raise TransientNetworkError(f"Local download failed: {exc}") from exc
            tmp_path.replace(dest)
            return dest.stat().st_size

        try:
            with self._session.get(url, stream=True, timeout=self._timeout) as resp:
                self._check(resp, "download")
                received = 0
                with open(tmp_path, "wb") as fh:
                    for chunk in resp.iter_content(chunk_size=STREAM_CHUNK):
                        fh.write(chunk)
                        received += len(chunk)
        except (requests.Timeout, requests.ConnectionError) as exc:
            tmp_path.unlink(missing_ok=True)
            raise TransientNetworkError(f"Download failed: {exc}") from exc
        except SyncError:
            tmp_path.unlink(missing_ok=True)
            raise

        tmp_path.replace(dest)
        return received

    @staticmethod
    def _check(resp: requests.Response, action: str) -> None:
        if resp.status_code < 400:
            return
        if resp.status_code == 403:
            raise URLExpiredError(f"Storage refused {action} URL (403)")
        if resp.status_code == 401:
            raise AuthRejectedError(f"Storage rejected {action} credentials")
        if resp.status_code == 404 and action == "download":
            # The owner may not have uploaded the bytes yet.
            raise TransientNetworkError("Storage object not found (404)")
        if resp.status_code == 429 or resp.status_code >= 500:
            raise TransientNetworkError(f"Storage {action} error {resp.status_code}")
        raise SyncError(f"Storage {action} failed: {resp.status_code} {resp.text[:200]}")
