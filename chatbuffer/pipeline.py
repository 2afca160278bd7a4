"""Assemble the manager, processor and poller from settings."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from functools import lru_cache
from typing import Callable

from sqlalchemy.orm import Session, sessionmaker

from .buffering.manager import BufferManager
from .buffering.processor import BufferProcessor
from .buffering.scheduler import JobPoller
from .collaborators import Collaborators, build_collaborators
from .config import BufferSettings, get_settings
from .handlers import TranscriptionService
from .handlers.download import Downloader
from .models.session import get_sessionmaker


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class Pipeline:
    session_factory: sessionmaker[Session]
    manager: BufferManager
    processor: BufferProcessor
    poller: JobPoller
    transcriptions: TranscriptionService


def build_pipeline(
    settings: BufferSettings,
    *,
    session_factory: sessionmaker[Session] | None = None,
    collaborators: Collaborators | None = None,
    downloader: Downloader | None = None,
    clock: Callable[[], datetime] = _utcnow,
) -> Pipeline:
    """Wire every component against one session factory and clock."""

    session_factory = session_factory or get_sessionmaker(settings.database_url)
    collaborators = collaborators or build_collaborators(settings)
    downloader = downloader or Downloader(
        settings.chat_base_url, timeout=settings.download_timeout_seconds
    )
    transcriptions = TranscriptionService(
        session_factory,
        collaborators.transcriber,
        downloader,
        content_store=collaborators.content_store,
        clock=clock,
        backoff_minutes=settings.retry_backoff_minutes,
        max_attempts=settings.max_job_attempts,
    )
    manager = BufferManager(
        session_factory, collaborators.identity, settings=settings, clock=clock
    )
    processor = BufferProcessor(
        session_factory,
        content_store=collaborators.content_store,
        acknowledgment=collaborators.acknowledgment,
        downloader=downloader,
        transcriptions=transcriptions,
        settings=settings,
        clock=clock,
    )
    poller = JobPoller(
        session_factory,
        processor,
        transcriptions=transcriptions,
        settings=settings,
        clock=clock,
    )
    return Pipeline(
        session_factory=session_factory,
        manager=manager,
        processor=processor,
        poller=poller,
        transcriptions=transcriptions,
    )


@lru_cache(maxsize=1)
def get_pipeline() -> Pipeline:
    """Process-wide pipeline built from the environment."""

    return build_pipeline(get_settings())


def reset_pipeline_cache() -> None:
    get_pipeline.cache_clear()


__all__ = ["Pipeline", "build_pipeline", "get_pipeline", "reset_pipeline_cache"]
