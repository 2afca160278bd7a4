"""Message handler registry keyed by :class:`MessageType`."""

from __future__ import annotations

from typing import Any, Dict

from ..buffering.types import MessageType
from .audio import AudioHandler, TranscriptionService
from .base import MessageHandler
from .download import Downloader
from .media import FileHandler, ImageHandler
from .text import TextHandler

_REGISTRY: dict[MessageType, type[MessageHandler]] = {}


def register_handler(handler: type[MessageHandler]) -> None:
    """Register a handler class for its message type."""
    _REGISTRY[handler.message_type] = handler


def get_handler(message_type: MessageType | str) -> type[MessageHandler]:
    """Retrieve the handler class for ``message_type`` or raise ``KeyError``."""
    key = MessageType(message_type)
    if key not in _REGISTRY:
        raise KeyError(f"No handler registered for '{key.value}' messages")
    return _REGISTRY[key]


def build_handlers(**dependencies: Any) -> Dict[MessageType, MessageHandler]:
    """Instantiate every registered handler with shared dependencies."""
    return {key: cls(**dependencies) for key, cls in _REGISTRY.items()}


# Pre-register built-in handlers
register_handler(TextHandler)
register_handler(AudioHandler)
register_handler(ImageHandler)
register_handler(FileHandler)

__all__ = [
    "Downloader",
    "MessageHandler",
    "TranscriptionService",
    "build_handlers",
    "get_handler",
    "register_handler",
]
