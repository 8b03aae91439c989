"""Upload client for binary song artifacts."""
from __future__ import annotations

import asyncio
import logging
import mimetypes
import re
import time
from pathlib import Path
from typing import Optional
from urllib.parse import quote

import requests

from content_store import ContentImportError


LOGGER = logging.getLogger(__name__)

mimetypes.add_type("audio/midi", ".mid")
mimetypes.add_type("audio/midi", ".midi")
mimetypes.add_type("text/x-lilypond", ".ly")
mimetypes.add_type("application/vnd.recordare.musicxml+xml", ".musicxml")
mimetypes.add_type("application/vnd.recordare.musicxml", ".mxl")
mimetypes.add_type("application/x-musescore", ".mscz")
mimetypes.add_type("text/plain", ".cho")
mimetypes.add_type("text/plain", ".ugc")


class BlobUploadError(ContentImportError):
    pass


def guess_content_type(file_name: str) -> str:
    content_type, _ = mimetypes.guess_type(file_name)
    return content_type or "application/octet-stream"


def slugify(text: str) -> str:
    slug = re.sub(r"[^a-z0-9]+", "-", text.lower()).strip("-")
    return slug[:50]


def blob_key(song_id: str, song_title: Optional[str], file_name: str, now_ms: Optional[int] = None) -> str:
    if now_ms is None:
        now_ms = int(time.time() * 1000)
    prefix = f"{slugify(song_title)}-{song_id}" if song_title else f"song-{song_id}"
    safe_name = file_name.replace("/", "-").replace("\\", "-")
    return f"{prefix}/import-{now_ms}-{safe_name}"


class BlobStore:
    async def upload(self, data: bytes, *, song_id: str, song_title: Optional[str], file_name: str) -> str:
        raise NotImplementedError


class HttpBlobStore(BlobStore):
    """Stores blobs with a bearer-authenticated ``PUT`` and returns their public URL."""

    def __init__(self, base_url: Optional[str], token: Optional[str] = None, timeout: float = 120.0) -> None:
        self.base_url = (base_url or "").rstrip("/")
        self.token = token
        self.timeout = timeout

    async def upload(self, data: bytes, *, song_id: str, song_title: Optional[str], file_name: str) -> str:
        if not self.base_url:
            raise BlobUploadError("Blob storage is not configured (SONGBOOK_BLOB_BASEURL)")
        key = blob_key(song_id, song_title, file_name)
        content_type = guess_content_type(Path(file_name).name)
        return await asyncio.to_thread(self._put, key, data, content_type)

    def _put(self, key: str, data: bytes, content_type: str) -> str:
        url = f"{self.base_url}/{quote(key)}"
        headers = {"Content-Type": content_type}
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        try:
            resp = requests.put(url, data=data, headers=headers, timeout=self.timeout)
        except requests.RequestException as exc:
            raise BlobUploadError(f"Upload of {key} failed: {exc}") from exc
        if resp.status_code not in (200, 201):
            raise BlobUploadError(f"Invalid response from {url} (status code {resp.status_code})")
        try:
            payload = resp.json()
        except ValueError:
            payload = {}
        blob_url = payload.get("url") if isinstance(payload, dict) else None
        LOGGER.debug("Uploaded %d bytes to %s", len(data), blob_url or url)
        return blob_url or url
