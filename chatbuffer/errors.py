"""Exception taxonomy shared by the buffering pipeline."""

from __future__ import annotations


class BufferingError(Exception):
    """Base class for all pipeline errors."""


class UserResolutionError(BufferingError):
    """Raised when a sender cannot be mapped to an internal user.

    This is fatal for the message being handled: it is surfaced to the caller
    and the message is not buffered.
    """


class StaleBufferError(BufferingError):
    """Raised when a compare-and-swap on buffer state loses a race."""


class DownloadError(BufferingError):
    """Raised when an attachment cannot be fetched."""


class TranscriptionError(BufferingError):
    """Raised when the transcription service fails or is unavailable."""


class ContentStoreError(BufferingError):
    """Raised when the content store rejects or fails a write."""


class AcknowledgmentError(BufferingError):
    """Raised when a reply cannot be delivered to the conversation."""


__all__ = [
    "AcknowledgmentError",
    "BufferingError",
    "ContentStoreError",
    "DownloadError",
    "StaleBufferError",
    "TranscriptionError",
    "UserResolutionError",
]
