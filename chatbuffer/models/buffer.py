"""Buffer, message, job, conversation and transcription models.

Status columns hold the string values of the enums in
:mod:`chatbuffer.buffering.types`. Every status change goes through a
conditional ``UPDATE ... WHERE status = :expected`` in
:mod:`chatbuffer.buffering.store`; the ORM objects are read models only.
"""

from __future__ import annotations

import datetime as dt
import uuid
from typing import Any, List

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    text as sql_text,
)
from sqlalchemy.dialects.postgresql import JSONB, UUID
from sqlalchemy.orm import Mapped, mapped_column, relationship
from sqlalchemy.types import TypeDecorator

from ..buffering.types import (
    BufferStatus,
    ConversationPhase,
    JobStatus,
    TranscriptionStatus,
)
from . import Base

JsonType = JSON().with_variant(JSONB(), "postgresql")

_OPEN_JOB_CLAUSE = "status IN ('scheduled', 'running')"


def _utcnow() -> dt.datetime:
    """Return the current UTC timestamp with timezone awareness."""

    return dt.datetime.now(dt.timezone.utc)


class UTCDateTime(TypeDecorator):
    """Timezone-aware UTC timestamps on every backend.

    SQLite drops offsets on write, so values are normalised to UTC before
    binding and re-tagged as UTC when read back.
    """

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value: dt.datetime | None, dialect: Any):
        if value is None:
            return None
        if value.tzinfo is None:
            value = value.replace(tzinfo=dt.timezone.utc)
        value = value.astimezone(dt.timezone.utc)
        if dialect.name == "sqlite":
            return value.replace(tzinfo=None)
        return value

    def process_result_value(self, value: dt.datetime | None, dialect: Any):
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=dt.timezone.utc)
        return value.astimezone(dt.timezone.utc)


class MessageBuffer(Base):
    """A coalescing window of messages for one conversation.

    Attributes:
        conversation_id: External chat thread identifier.
        user_id: Internal user the sender resolved to.
        buffer_start_time: Time of the first message in the window.
        last_message_time: Time of the most recent message.
        status: ``active`` while collecting, ``processing`` once claimed,
            ``completed`` when finalized (terminal).
        message_count: Number of messages appended so far.
    """

    __tablename__ = "message_buffers"
    __table_args__ = (
        Index("ix_message_buffers_conversation_status", "conversation_id", "status"),
        Index("ix_message_buffers_last_message", "last_message_time"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    conversation_id: Mapped[str] = mapped_column(String(length=255), nullable=False)
    user_id: Mapped[str] = mapped_column(String(length=255), nullable=False)
    buffer_start_time: Mapped[dt.datetime] = mapped_column(UTCDateTime(), nullable=False)
    last_message_time: Mapped[dt.datetime] = mapped_column(UTCDateTime(), nullable=False)
    buffer_end_time: Mapped[dt.datetime | None] = mapped_column(UTCDateTime())
    status: Mapped[str] = mapped_column(
        String(length=32),
        nullable=False,
        default=BufferStatus.ACTIVE.value,
        server_default=sql_text("'active'"),
    )
    message_count: Mapped[int] = mapped_column(
        Integer, nullable=False, default=0, server_default=sql_text("0")
    )
    processed_at: Mapped[dt.datetime | None] = mapped_column(UTCDateTime())
    created_at: Mapped[dt.datetime] = mapped_column(
        UTCDateTime(), nullable=False, default=_utcnow
    )
    updated_at: Mapped[dt.datetime] = mapped_column(
        UTCDateTime(), nullable=False, default=_utcnow, onupdate=_utcnow
    )

    messages: Mapped[List["BufferedMessage"]] = relationship(
        back_populates="buffer",
        cascade="all, delete-orphan",
        passive_deletes=True,
        order_by="BufferedMessage.received_at",
    )
    jobs: Mapped[List["ProcessingJob"]] = relationship(
        back_populates="buffer",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )


class BufferedMessage(Base):
    """Immutable record of one inbound message; only ``processed`` changes."""

    __tablename__ = "buffered_messages"
    __table_args__ = (
        Index("ix_buffered_messages_buffer", "buffer_id"),
        Index("ix_buffered_messages_external", "external_message_id"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    buffer_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("message_buffers.id", ondelete="CASCADE"),
        nullable=False,
    )
    external_message_id: Mapped[str] = mapped_column(String(length=255), nullable=False)
    content: Mapped[str | None] = mapped_column(Text())
    message_type: Mapped[str] = mapped_column(String(length=16), nullable=False)
    declared_type: Mapped[str | None] = mapped_column(String(length=64))
    content_type: Mapped[str | None] = mapped_column(String(length=255))
    attachments: Mapped[list] = mapped_column(JsonType, nullable=False, default=list)
    sender_info: Mapped[dict] = mapped_column(JsonType, nullable=False, default=dict)
    conversation_info: Mapped[dict] = mapped_column(
        JsonType, nullable=False, default=dict
    )
    received_at: Mapped[dt.datetime] = mapped_column(UTCDateTime(), nullable=False)
    sent_at: Mapped[dt.datetime | None] = mapped_column(UTCDateTime())
    processed: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=False, server_default=sql_text("false")
    )
    created_at: Mapped[dt.datetime] = mapped_column(
        UTCDateTime(), nullable=False, default=_utcnow
    )

    buffer: Mapped[MessageBuffer] = relationship(back_populates="messages")


class ProcessingJob(Base):
    """Scheduling record polled by workers.

    At most one job per buffer may be ``scheduled`` or ``running``; the partial
    unique index enforces it at the database level.
    """

    __tablename__ = "processing_jobs"
    __table_args__ = (
        Index("ix_processing_jobs_due", "status", "scheduled_for"),
        Index(
            "uq_processing_jobs_open_buffer",
            "buffer_id",
            unique=True,
            postgresql_where=sql_text(_OPEN_JOB_CLAUSE),
            sqlite_where=sql_text(_OPEN_JOB_CLAUSE),
        ),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    buffer_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("message_buffers.id", ondelete="CASCADE"),
        nullable=False,
    )
    scheduled_for: Mapped[dt.datetime] = mapped_column(UTCDateTime(), nullable=False)
    status: Mapped[str] = mapped_column(
        String(length=32),
        nullable=False,
        default=JobStatus.SCHEDULED.value,
        server_default=sql_text("'scheduled'"),
    )
    attempts: Mapped[int] = mapped_column(
        Integer, nullable=False, default=0, server_default=sql_text("0")
    )
    error_message: Mapped[str | None] = mapped_column(Text())
    processed_at: Mapped[dt.datetime | None] = mapped_column(UTCDateTime())
    created_at: Mapped[dt.datetime] = mapped_column(
        UTCDateTime(), nullable=False, default=_utcnow
    )

    buffer: Mapped[MessageBuffer] = relationship(back_populates="jobs")


class ConversationState(Base):
    """Per-conversation pointer to the buffer currently collecting messages.

    ``active_buffer_id`` is swapped with a conditional update so concurrent
    workers cannot both open a buffer for the same conversation. ``user_id``
    doubles as the identity fallback when the resolver is unavailable.
    """

    __tablename__ = "conversation_states"

    conversation_id: Mapped[str] = mapped_column(String(length=255), primary_key=True)
    user_id: Mapped[str | None] = mapped_column(String(length=255))
    active_buffer_id: Mapped[uuid.UUID | None] = mapped_column(UUID(as_uuid=True))
    state: Mapped[str] = mapped_column(
        String(length=32),
        nullable=False,
        default=ConversationPhase.IDLE.value,
        server_default=sql_text("'idle'"),
    )
    last_message_at: Mapped[dt.datetime | None] = mapped_column(UTCDateTime())
    message_count: Mapped[int] = mapped_column(
        Integer, nullable=False, default=0, server_default=sql_text("0")
    )
    updated_at: Mapped[dt.datetime] = mapped_column(
        UTCDateTime(), nullable=False, default=_utcnow, onupdate=_utcnow
    )


class Transcription(Base):
    """Transcript of an audio message, cached by external message id."""

    __tablename__ = "transcriptions"
    __table_args__ = (
        Index("ix_transcriptions_external_unique", "external_message_id", unique=True),
        Index("ix_transcriptions_status", "status"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    external_message_id: Mapped[str] = mapped_column(String(length=255), nullable=False)
    user_id: Mapped[str | None] = mapped_column(String(length=255))
    conversation_id: Mapped[str | None] = mapped_column(String(length=255))
    source_url: Mapped[str | None] = mapped_column(Text())
    filename: Mapped[str | None] = mapped_column(String(length=512))
    content_type: Mapped[str | None] = mapped_column(String(length=255))
    status: Mapped[str] = mapped_column(
        String(length=32),
        nullable=False,
        default=TranscriptionStatus.PENDING.value,
        server_default=sql_text("'pending'"),
    )
    text: Mapped[str | None] = mapped_column(Text())
    attempts: Mapped[int] = mapped_column(
        Integer, nullable=False, default=0, server_default=sql_text("0")
    )
    last_attempt_at: Mapped[dt.datetime | None] = mapped_column(UTCDateTime())
    error_message: Mapped[str | None] = mapped_column(Text())
    created_at: Mapped[dt.datetime] = mapped_column(
        UTCDateTime(), nullable=False, default=_utcnow
    )
    updated_at: Mapped[dt.datetime] = mapped_column(
        UTCDateTime(), nullable=False, default=_utcnow, onupdate=_utcnow
    )


__all__ = [
    "BufferedMessage",
    "ConversationState",
    "MessageBuffer",
    "ProcessingJob",
    "Transcription",
    "UTCDateTime",
]
