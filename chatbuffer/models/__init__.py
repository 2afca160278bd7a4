"""SQLAlchemy declarative base and pipeline models.

This package hosts the SQLAlchemy models shared by the buffer manager, the
poller and the processor. It exposes a single declarative ``Base`` so tests
and deployment scripts can call ``Base.metadata.create_all``. Individual
models live in dedicated modules within this package.
"""

from __future__ import annotations

from sqlalchemy.orm import DeclarativeBase


class Base(DeclarativeBase):
    """Base class for all SQLAlchemy declarative models."""


# Re-export the models so callers can write ``from chatbuffer.models import
# MessageBuffer`` instead of touching private modules.
from .buffer import (  # noqa: E402
    BufferedMessage,
    ConversationState,
    MessageBuffer,
    ProcessingJob,
    Transcription,
    UTCDateTime,
)


__all__ = [
    "Base",
    "BufferedMessage",
    "ConversationState",
    "MessageBuffer",
    "ProcessingJob",
    "Transcription",
    "UTCDateTime",
]
