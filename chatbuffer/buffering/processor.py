"""Buffer processor: claim a due buffer, persist its content, acknowledge."""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Callable, Dict, List
from uuid import UUID

from sqlalchemy.orm import Session, sessionmaker

from ..collaborators.acknowledgment import AcknowledgmentChannel
from ..collaborators.content_store import ContentStore
from ..config import BufferSettings, get_settings
from ..errors import AcknowledgmentError, ContentStoreError
from ..handlers import MessageHandler, build_handlers
from ..handlers.audio import TranscriptionService
from ..handlers.download import DownloadCache, Downloader
from ..models import BufferedMessage, MessageBuffer
from . import store
from .context import build_context
from .documents import combined_context_document, has_combined_content
from .types import (
    AggregatedContext,
    ConversationPhase,
    HandlerReport,
    JobStatus,
    MessageType,
    ProcessingOutcome,
)

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class BufferProcessor:
    """Turn one claimed buffer into stored documents and a reply.

    Failures of a single message are isolated: the message stays unprocessed
    and the rest of the buffer continues. Anything else raised while
    processing fails the job and finalizes the buffer so it is never picked
    up again.
    """

    def __init__(
        self,
        session_factory: sessionmaker[Session],
        *,
        content_store: ContentStore,
        acknowledgment: AcknowledgmentChannel,
        downloader: Downloader | None = None,
        transcriptions: TranscriptionService | None = None,
        handlers: Dict[MessageType, MessageHandler] | None = None,
        settings: BufferSettings | None = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.session_factory = session_factory
        self.settings = settings or get_settings()
        self.content_store = content_store
        self.acknowledgment = acknowledgment
        self.clock = clock
        self.downloader = downloader or Downloader(
            self.settings.chat_base_url, timeout=self.settings.download_timeout_seconds
        )
        self.transcriptions = transcriptions
        self.handlers = handlers or build_handlers(
            content_store=content_store,
            downloader=self.downloader,
            transcriptions=transcriptions,
        )

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def process_buffer(self, buffer_id: UUID, job_id: UUID | None = None) -> ProcessingOutcome:
        """Claim and process ``buffer_id``.

        ``job_id`` names the scheduled job to claim; when omitted the buffer's
        open job is used. Losing the claim returns a ``skipped`` outcome with
        reason ``not_claimed`` and changes nothing.
        """

        claimed = self._claim(buffer_id, job_id)
        if claimed is None:
            logger.info("Buffer %s was not claimed", buffer_id)
            return ProcessingOutcome(
                buffer_id=buffer_id,
                job_id=job_id,
                status="skipped",
                action="skipped",
                reason="not_claimed",
            )
        buffer, job_id = claimed

        try:
            return self._process(buffer, job_id)
        except Exception as exc:
            logger.exception("Processing of buffer %s failed", buffer_id)
            self._fail(buffer, job_id, exc)
            return ProcessingOutcome(
                buffer_id=buffer_id,
                job_id=job_id,
                status="failed",
                action="failed",
                reason="pipeline_error",
                error=str(exc),
            )

    # ------------------------------------------------------------------
    # Steps
    # ------------------------------------------------------------------

    def _claim(
        self, buffer_id: UUID, job_id: UUID | None
    ) -> tuple[MessageBuffer, UUID] | None:
        now = self.clock()
        with self.session_factory.begin() as session:
            job = store.get_job(session, job_id) if job_id else store.get_open_job(session, buffer_id)
            if job is None or job.buffer_id != buffer_id or job.status != JobStatus.SCHEDULED.value:
                return None
            if not store.claim(session, job.id, buffer_id):
                return None
            buffer = store.get_buffer(session, buffer_id)
            if buffer is None:  # pragma: no cover - FK guarantees the row
                return None
            store.set_conversation_phase(
                session, buffer.conversation_id, buffer_id, ConversationPhase.PROCESSING, now
            )
            return buffer, job.id

    def _process(self, buffer: MessageBuffer, job_id: UUID | None) -> ProcessingOutcome:
        with self.session_factory() as session:
            messages = store.list_buffered_messages(session, buffer.id, unprocessed_only=True)

        if not messages:
            self._finalize(buffer, job_id)
            return ProcessingOutcome(
                buffer_id=buffer.id,
                job_id=job_id,
                status="skipped",
                action="skipped",
                reason="no_messages",
            )

        downloads = DownloadCache(self.downloader)
        context = self._aggregate(buffer, messages, downloads)

        report = HandlerReport()
        handled: List[UUID] = []
        failed: List[str] = []
        for message in messages:
            try:
                handler = self.handlers[MessageType(message.message_type)]
                report = report.merge(handler.handle(message, buffer.user_id, downloads))
            except Exception:
                logger.exception(
                    "Handler failed for message %s in buffer %s",
                    message.external_message_id,
                    buffer.id,
                )
                failed.append(message.external_message_id)
                continue
            handled.append(message.id)

        with self.session_factory.begin() as session:
            store.mark_messages_processed(session, handled)

        summary_stored = self._store_summary(buffer, context)
        partial = bool(failed) or report.degraded > 0 or not summary_stored
        acknowledged = self._acknowledge(buffer, partial)

        self._finalize(buffer, job_id)
        logger.info(
            "Processed buffer %s: %s/%s messages, %s degraded, urgency %s",
            buffer.id,
            len(handled),
            len(messages),
            report.degraded,
            context.urgency_score,
        )
        return ProcessingOutcome(
            buffer_id=buffer.id,
            job_id=job_id,
            status="completed",
            action="acknowledged" if acknowledged else "no_acknowledgment",
            reason="partial" if partial else None,
            message_count=len(messages),
            processed_count=len(handled),
            failed_message_ids=failed,
            degraded_attachments=report.degraded,
            urgency_score=context.urgency_score,
            acknowledgment_sent=acknowledged,
        )

    def _aggregate(
        self,
        buffer: MessageBuffer,
        messages: List[BufferedMessage],
        downloads: Downloader | None = None,
    ) -> AggregatedContext:
        transcripts: Dict[str, str] = {}
        if self.transcriptions is not None:
            for message in messages:
                if message.message_type != MessageType.AUDIO.value:
                    continue
                text = self.transcriptions.transcript_for(message, buffer.user_id, downloads)
                if text:
                    transcripts[message.external_message_id] = text

        with self.session_factory() as session:
            history = store.recent_history(
                session,
                buffer.conversation_id,
                exclude_buffer_id=buffer.id,
                limit=self.settings.history_limit,
            )
        return build_context(
            messages,
            transcripts=transcripts,
            history=history,
            user_context={
                "user_id": buffer.user_id,
                "conversation_id": buffer.conversation_id,
                "buffer_id": str(buffer.id),
            },
        )

    def _store_summary(self, buffer: MessageBuffer, context: AggregatedContext) -> bool:
        if not has_combined_content(context):
            return True
        document = combined_context_document(
            context,
            buffer_id=str(buffer.id),
            conversation_id=buffer.conversation_id,
            started_at=buffer.buffer_start_time,
        )
        try:
            self.content_store.store_document(
                buffer.user_id,
                document.file_name,
                document.file_type,
                document.content,
                document.metadata,
            )
        except ContentStoreError:
            logger.exception("Summary for buffer %s could not be stored", buffer.id)
            return False
        return True

    def _acknowledge(self, buffer: MessageBuffer, partial: bool) -> bool:
        text = self.settings.ack_partial_message if partial else self.settings.ack_message
        try:
            self.acknowledgment.send_reply(buffer.conversation_id, text)
        except AcknowledgmentError as exc:
            logger.warning("Acknowledgment for buffer %s not sent: %s", buffer.id, exc)
            return False
        return True

    def _finalize(self, buffer: MessageBuffer, job_id: UUID | None) -> None:
        now = self.clock()
        with self.session_factory.begin() as session:
            store.complete_buffer(session, buffer.id, now)
            if job_id is not None:
                store.complete_job(session, job_id, now)
            store.set_conversation_phase(
                session, buffer.conversation_id, buffer.id, ConversationPhase.IDLE, now
            )

    def _fail(self, buffer: MessageBuffer, job_id: UUID | None, exc: Exception) -> None:
        now = self.clock()
        with self.session_factory.begin() as session:
            if job_id is not None:
                store.fail_job(session, job_id, str(exc) or exc.__class__.__name__, now)
            store.complete_buffer(session, buffer.id, now)
            store.set_conversation_phase(
                session, buffer.conversation_id, buffer.id, ConversationPhase.IDLE, now
            )


__all__ = ["BufferProcessor"]
