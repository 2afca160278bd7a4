"""Enums, inbound payload models and result containers for the pipeline."""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Dict, List, Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, field_validator


# ---------------------------------------------------------------------------
# Enumerations
# ---------------------------------------------------------------------------


class BufferStatus(str, Enum):
    """Lifecycle of a buffer: active -> processing -> completed."""

    ACTIVE = "active"
    PROCESSING = "processing"
    COMPLETED = "completed"


class JobStatus(str, Enum):
    """States of a scheduled processing job."""

    SCHEDULED = "scheduled"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


OPEN_JOB_STATUSES = (JobStatus.SCHEDULED.value, JobStatus.RUNNING.value)


class MessageType(str, Enum):
    """Closed set of message variants, one handler per variant."""

    TEXT = "text"
    AUDIO = "audio"
    IMAGE = "image"
    FILE = "file"


class ConversationPhase(str, Enum):
    IDLE = "idle"
    BUFFERING = "buffering"
    PROCESSING = "processing"


class TranscriptionStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"


# ---------------------------------------------------------------------------
# Inbound payload
# ---------------------------------------------------------------------------


def _as_str(value: Any) -> Any:
    if isinstance(value, (int, UUID)):
        return str(value)
    return value


class AttachmentPayload(BaseModel):
    """Descriptor of one attachment as delivered by the chat platform."""

    url: str | None = None
    data_url: str | None = None
    filename: str | None = None
    content_type: str | None = None
    size: int | None = None

    model_config = ConfigDict(extra="allow")

    @property
    def location(self) -> str | None:
        return self.data_url or self.url


class SenderInfo(BaseModel):
    id: str
    name: str | None = None
    phone: str | None = None
    identifier: str | None = None

    model_config = ConfigDict(extra="allow")

    @field_validator("id", mode="before")
    @classmethod
    def _coerce_id(cls, value: Any) -> Any:
        return _as_str(value)


class ConversationInfo(BaseModel):
    id: str
    status: str | None = None
    channel: str | None = None

    model_config = ConfigDict(extra="allow")

    @field_validator("id", mode="before")
    @classmethod
    def _coerce_id(cls, value: Any) -> Any:
        return _as_str(value)


class InboundMessage(BaseModel):
    """Normalized inbound message handed to the buffer manager."""

    external_message_id: str
    content: str | None = None
    declared_type: str = "text"
    content_type: str | None = None
    attachments: List[AttachmentPayload] = Field(default_factory=list)
    sender: SenderInfo
    conversation: ConversationInfo
    account_id: str | None = None
    received_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    model_config = ConfigDict(extra="forbid")

    @field_validator("external_message_id", "account_id", mode="before")
    @classmethod
    def _coerce_ids(cls, value: Any) -> Any:
        return _as_str(value)

    @field_validator("received_at")
    @classmethod
    def _ensure_aware(cls, value: datetime) -> datetime:
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)


# ---------------------------------------------------------------------------
# Results
# ---------------------------------------------------------------------------


@dataclass
class BufferResult:
    """Returned by the buffer manager for every accepted message."""

    buffer_id: UUID
    job_id: UUID
    action: str  # "created" or "appended"
    message_count: int
    scheduled_for: datetime
    message_type: MessageType = MessageType.TEXT


@dataclass
class AttachmentInfo:
    type: str
    url: str | None = None
    filename: str | None = None
    content_type: str | None = None
    size: int | None = None
    transcription: str | None = None


@dataclass
class AggregatedContext:
    """Derived view of one buffer, built once per processing pass."""

    message_count: int
    time_span: timedelta
    combined_text: str
    audio_transcripts: List[str] = field(default_factory=list)
    attachments: List[AttachmentInfo] = field(default_factory=list)
    conversation_history: List[Dict[str, Any]] = field(default_factory=list)
    user_context: Dict[str, Any] = field(default_factory=dict)
    urgency_score: int = 5


@dataclass
class HandlerReport:
    """What a handler persisted for a single message."""

    documents: int = 0
    uploads: int = 0
    degraded: int = 0

    def merge(self, other: "HandlerReport") -> "HandlerReport":
        return HandlerReport(
            documents=self.documents + other.documents,
            uploads=self.uploads + other.uploads,
            degraded=self.degraded + other.degraded,
        )


@dataclass
class ProcessingOutcome:
    buffer_id: UUID
    job_id: Optional[UUID] = None
    status: str = "completed"  # completed | skipped | failed
    action: str = "acknowledged"
    reason: str | None = None
    message_count: int = 0
    processed_count: int = 0
    failed_message_ids: List[str] = field(default_factory=list)
    degraded_attachments: int = 0
    urgency_score: int | None = None
    acknowledgment_sent: bool = False
    error: str | None = None

    @property
    def success(self) -> bool:
        return self.status != "failed"

    def to_dict(self) -> Dict[str, Any]:
        payload = asdict(self)
        payload["buffer_id"] = str(self.buffer_id)
        payload["job_id"] = str(self.job_id) if self.job_id else None
        return payload


@dataclass
class PollSummary:
    processed: int = 0
    failed: int = 0
    skipped: int = 0
    results: List[ProcessingOutcome] = field(default_factory=list)


def summarize(outcomes: List[ProcessingOutcome]) -> PollSummary:
    """Collapse poll outcomes into processed/failed/skipped counters."""

    summary = PollSummary(results=list(outcomes))
    for outcome in outcomes:
        if outcome.status == "failed":
            summary.failed += 1
        elif outcome.status == "skipped":
            summary.skipped += 1
        else:
            summary.processed += 1
    return summary
