"""Map declared message types and attachment metadata onto :class:`MessageType`."""

from __future__ import annotations

import os
from typing import Iterable, Mapping
from urllib.parse import urlparse

from .types import AttachmentPayload, MessageType

_DECLARED_ALIASES: Mapping[str, MessageType] = {
    "text": MessageType.TEXT,
    "incoming": MessageType.TEXT,
    "audio": MessageType.AUDIO,
    "voice": MessageType.AUDIO,
    "image": MessageType.IMAGE,
    "photo": MessageType.IMAGE,
    "picture": MessageType.IMAGE,
    "file": MessageType.FILE,
    "document": MessageType.FILE,
    "attachment": MessageType.FILE,
    "video": MessageType.FILE,
}

AUDIO_EXTENSIONS = frozenset({"ogg", "mp3", "wav", "m4a", "aac", "opus", "oga", "webm"})
IMAGE_EXTENSIONS = frozenset({"jpg", "jpeg", "png", "gif", "webp", "bmp"})


def normalize_declared_type(declared: str | None) -> MessageType:
    """Normalise the platform's declared type; unknown values become text."""

    if not declared:
        return MessageType.TEXT
    return _DECLARED_ALIASES.get(declared.strip().lower(), MessageType.TEXT)


def type_from_content_type(content_type: str | None) -> MessageType | None:
    if not content_type:
        return None
    lowered = content_type.strip().lower()
    if lowered.startswith("audio/") or lowered == "audio":
        return MessageType.AUDIO
    if lowered.startswith("image/") or lowered == "image":
        return MessageType.IMAGE
    if (
        lowered.startswith("video/")
        or lowered.startswith("application/")
        or "document" in lowered
        or lowered in {"file", "video"}
    ):
        return MessageType.FILE
    return None


def extension_of(name: str | None) -> str | None:
    """Lower-cased extension of a filename or URL path, without the dot."""

    if not name:
        return None
    path = urlparse(name).path if "://" in name else name
    _, ext = os.path.splitext(path)
    ext = ext.lstrip(".").lower()
    return ext or None


def type_from_filename(name: str | None) -> MessageType | None:
    ext = extension_of(name)
    if ext is None:
        return None
    if ext in AUDIO_EXTENSIONS:
        return MessageType.AUDIO
    if ext in IMAGE_EXTENSIONS:
        return MessageType.IMAGE
    return MessageType.FILE


def classify_message_type(
    declared: str | None, attachments: Iterable[AttachmentPayload] = ()
) -> MessageType:
    """Return the message type used to pick a handler.

    The first attachment wins over the declared type: its content type when
    that is recognisable, otherwise the extension of its filename or URL.
    """

    first = next(iter(attachments), None)
    if first is not None:
        content_type = first.content_type or getattr(first, "file_type", None)
        detected = type_from_content_type(content_type)
        if detected is None and not content_type:
            detected = type_from_filename(first.filename) or type_from_filename(first.url)
        if detected is not None:
            return detected
    return normalize_declared_type(declared)


__all__ = [
    "AUDIO_EXTENSIONS",
    "IMAGE_EXTENSIONS",
    "classify_message_type",
    "extension_of",
    "normalize_declared_type",
    "type_from_content_type",
    "type_from_filename",
]
