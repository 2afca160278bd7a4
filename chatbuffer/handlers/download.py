"""Attachment download helpers: URL repair, ``data:`` decoding, HTTP fetch."""

from __future__ import annotations

import base64
import binascii
import logging
import os
from dataclasses import dataclass
from typing import Any, Dict, Mapping
from urllib.parse import unquote_to_bytes, urlparse

import requests

from ..buffering.classify import AUDIO_EXTENSIONS, IMAGE_EXTENSIONS, extension_of
from ..errors import DownloadError

logger = logging.getLogger(__name__)

USER_AGENT = "chatbuffer/1.0"

_AUDIO_TYPES = {
    "audio/ogg": "ogg",
    "audio/mpeg": "mp3",
    "audio/mp3": "mp3",
    "audio/wav": "wav",
    "audio/x-wav": "wav",
    "audio/mp4": "m4a",
    "audio/aac": "aac",
    "audio/opus": "opus",
}
_IMAGE_TYPES = {
    "image/jpeg": "jpg",
    "image/jpg": "jpg",
    "image/png": "png",
    "image/gif": "gif",
    "image/webp": "webp",
    "image/bmp": "bmp",
}


@dataclass
class Downloaded:
    data: bytes
    content_type: str | None
    url: str


def attachment_location(attachment: Mapping[str, Any]) -> str | None:
    return attachment.get("data_url") or attachment.get("url") or attachment.get("file_url")


def pick_content_type(*candidates: str | None, default: str) -> str:
    """First candidate that is a full MIME type; bare words like ``audio`` are skipped."""

    for candidate in candidates:
        if candidate and "/" in candidate:
            return candidate
    return default


def repair_url(url: str | None, base_url: str | None) -> str | None:
    """Return an absolute URL for ``url`` or ``None`` when it cannot be fetched.

    ``data:`` URLs pass through. ``http:///path`` and scheme-less paths are
    resolved against ``base_url``.
    """

    if not url:
        return None
    url = url.strip()
    if url.startswith("data:"):
        return url
    if url.startswith("http:///") or url.startswith("https:///"):
        relative = url.split(":///", 1)[1]
    elif "://" not in url:
        relative = url
    else:
        return url
    if not base_url:
        logger.warning("Incomplete attachment URL %s and no CHAT_BASE_URL configured", url)
        return None
    return f"{base_url.rstrip('/')}/{relative.lstrip('/')}"


def is_downloadable(url: str | None) -> bool:
    if not url:
        return False
    if url.startswith("data:"):
        return True
    return urlparse(url).scheme in {"http", "https"} and bool(urlparse(url).netloc)


def decode_data_url(url: str) -> Downloaded:
    """Decode an RFC 2397 ``data:`` URL."""

    try:
        header, payload = url[len("data:"):].split(",", 1)
    except ValueError as exc:
        raise DownloadError("malformed data URL") from exc
    parts = header.split(";")
    content_type = parts[0] or "text/plain"
    try:
        if "base64" in parts[1:]:
            data = base64.b64decode(payload, validate=False)
        else:
            data = unquote_to_bytes(payload)
    except (binascii.Error, ValueError) as exc:
        raise DownloadError("undecodable data URL") from exc
    return Downloaded(data=data, content_type=content_type, url="data:")


def ensure_extension(
    file_name: str, kind: str, *, content_type: str | None = None, url: str | None = None
) -> str:
    """Append an extension to ``file_name`` when it has none.

    Audio defaults to ``ogg`` and images to ``jpg``; other files keep the URL
    extension when there is one.
    """

    if os.path.splitext(file_name)[1]:
        return file_name
    lowered = (content_type or "").lower()
    url_ext = extension_of(url) if url and not url.startswith("data:") else None
    if kind == "audio":
        ext = _AUDIO_TYPES.get(lowered) or (url_ext if url_ext in AUDIO_EXTENSIONS else None) or "ogg"
    elif kind == "image":
        ext = _IMAGE_TYPES.get(lowered) or (url_ext if url_ext in IMAGE_EXTENSIONS else None) or "jpg"
    else:
        ext = url_ext
    return f"{file_name}.{ext}" if ext else file_name


class Downloader:
    """Fetch attachments with a bounded timeout.

    Every failure, including an unrepairable URL, surfaces as
    :class:`DownloadError` so callers can fall back to metadata.
    """

    def __init__(
        self,
        base_url: str | None = None,
        *,
        timeout: float = 30.0,
        session: requests.Session | None = None,
    ) -> None:
        self.base_url = base_url
        self.timeout = timeout
        self.http = session or requests.Session()

    def resolve(self, attachment: Mapping[str, Any]) -> str | None:
        url = repair_url(attachment_location(attachment), self.base_url)
        return url if is_downloadable(url) else None

    def fetch_url(self, url: str) -> Downloaded:
        if url.startswith("data:"):
            return decode_data_url(url)
        try:
            response = self.http.get(
                url, headers={"User-Agent": USER_AGENT}, timeout=self.timeout
            )
            response.raise_for_status()
        except requests.RequestException as exc:
            raise DownloadError(f"download of {url} failed: {exc}") from exc
        if not response.content:
            raise DownloadError(f"download of {url} returned no data")
        content_type = response.headers.get("Content-Type")
        if content_type:
            content_type = content_type.split(";", 1)[0].strip()
        return Downloaded(data=response.content, content_type=content_type, url=url)

    def fetch(self, attachment: Mapping[str, Any]) -> Downloaded:
        url = self.resolve(attachment)
        if url is None:
            raise DownloadError(
                f"attachment URL not downloadable: {attachment_location(attachment) or 'missing'}"
            )
        return self.fetch_url(url)


class DownloadCache(Downloader):
    """Downloader for a single processing pass.

    Each URL is fetched at most once; later calls replay the stored result,
    failures included.
    """

    def __init__(self, downloader: Downloader) -> None:
        super().__init__(downloader.base_url, timeout=downloader.timeout, session=downloader.http)
        self.downloader = downloader
        self._results: Dict[str, Downloaded | DownloadError] = {}

    def fetch_url(self, url: str) -> Downloaded:
        if url not in self._results:
            try:
                self._results[url] = self.downloader.fetch_url(url)
            except DownloadError as exc:
                self._results[url] = exc
        result = self._results[url]
        if isinstance(result, DownloadError):
            raise DownloadError(str(result))
        return result


__all__ = [
    "DownloadCache",
    "Downloaded",
    "Downloader",
    "attachment_location",
    "decode_data_url",
    "ensure_extension",
    "is_downloadable",
    "pick_content_type",
    "repair_url",
]
