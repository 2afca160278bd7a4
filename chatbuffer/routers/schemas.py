"""Pydantic schemas for the buffering HTTP API."""

from __future__ import annotations

from datetime import datetime
from typing import Any
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field


class BufferAccepted(BaseModel):
    buffer_id: UUID
    job_id: UUID
    action: str
    message_count: int
    scheduled_for: datetime
    message_type: str


class WebhookAccepted(BaseModel):
    accepted: int
    results: list[BufferAccepted] = Field(default_factory=list)


class JobSummary(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    status: str
    scheduled_for: datetime
    attempts: int
    error_message: str | None = None
    processed_at: datetime | None = None


class BufferDetail(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    conversation_id: str
    user_id: str
    status: str
    message_count: int
    buffer_start_time: datetime
    last_message_time: datetime
    buffer_end_time: datetime | None = None
    processed_at: datetime | None = None
    jobs: list[JobSummary] = Field(default_factory=list)


class BufferedMessageOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    external_message_id: str
    message_type: str
    content: str | None = None
    content_type: str | None = None
    attachments: list[dict[str, Any]] = Field(default_factory=list)
    sender_info: dict[str, Any] = Field(default_factory=dict)
    received_at: datetime
    processed: bool


class BufferedMessageList(BaseModel):
    buffer_id: UUID
    items: list[BufferedMessageOut]
    total: int


class PollResult(BaseModel):
    processed: int
    failed: int
    skipped: int
    transcriptions_retried: int = 0
    results: list[dict[str, Any]] = Field(default_factory=list)
