"""Audio handling: cached transcripts, transcription attempts and retries."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Sequence

from sqlalchemy.orm import Session, sessionmaker

from ..buffering import store
from ..buffering.backoff import DEFAULT_BACKOFF_MINUTES, DEFAULT_MAX_ATTEMPTS, should_retry
from ..buffering.documents import (
    attachment_metadata_document,
    audio_placeholder_document,
    transcript_document,
)
from ..buffering.types import HandlerReport, MessageType, TranscriptionStatus
from ..collaborators.content_store import ContentStore
from ..collaborators.transcription import TranscriptionProvider
from ..errors import ContentStoreError, DownloadError, TranscriptionError
from ..models import BufferedMessage, Transcription
from .base import MessageHandler
from .download import (
    Downloaded,
    Downloader,
    attachment_location,
    ensure_extension,
    pick_content_type,
)

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class TranscriptionAttempt:
    """Result of one pass over a transcription record."""

    external_message_id: str
    status: str
    text: str | None = None
    error: str | None = None
    attempted: bool = False


class TranscriptionService:
    """Owns the ``transcriptions`` table.

    Every attempt is gated by :func:`should_retry` and claimed with a
    conditional counter bump, so the processor and any number of pollers can
    call :meth:`attempt` concurrently without transcribing twice.
    """

    def __init__(
        self,
        session_factory: sessionmaker[Session],
        transcriber: TranscriptionProvider | None,
        downloader: Downloader,
        *,
        content_store: ContentStore | None = None,
        clock: Callable[[], datetime] = _utcnow,
        backoff_minutes: Sequence[int] = DEFAULT_BACKOFF_MINUTES,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
    ) -> None:
        self.session_factory = session_factory
        self.transcriber = transcriber
        self.downloader = downloader
        self.content_store = content_store
        self.clock = clock
        self.backoff_minutes = tuple(backoff_minutes)
        self.max_attempts = max_attempts

    def cached(self, external_message_id: str) -> Transcription | None:
        """Return the completed transcription for a message, if any."""

        with self.session_factory() as session:
            record = store.get_transcription(session, external_message_id)
        if record is not None and record.status == TranscriptionStatus.COMPLETED.value:
            return record
        return None

    def transcript_for(
        self, message: BufferedMessage, user_id: str, downloads: Downloader | None = None
    ) -> str | None:
        """Transcript used for aggregation: cached text or one attempt."""

        cached = self.cached(message.external_message_id)
        if cached is not None:
            return cached.text
        for attachment in message.attachments or []:
            if self.downloader.resolve(attachment):
                result = self.attempt(
                    message, user_id, attachment=attachment, downloads=downloads
                )
                return result.text
        return None

    def attempt(
        self,
        message: BufferedMessage,
        user_id: str,
        *,
        attachment: Dict[str, Any],
        downloaded: Downloaded | None = None,
        downloads: Downloader | None = None,
    ) -> TranscriptionAttempt:
        """Transcribe the message's audio if the record is due for an attempt."""

        now = self.clock()
        with self.session_factory.begin() as session:
            record = store.ensure_transcription(
                session,
                message.external_message_id,
                user_id=user_id,
                conversation_id=(message.conversation_info or {}).get("id"),
                source_url=self.downloader.resolve(attachment),
                filename=attachment.get("filename"),
                content_type=attachment.get("content_type"),
                now=now,
            )
        return self._run(record, downloaded=downloaded, downloads=downloads)

    def retry_pending(self, *, limit: int = 50) -> List[TranscriptionAttempt]:
        """Re-attempt pending records that the backoff policy allows.

        Successful transcripts are also written to the content store since the
        message that produced them has already been finalized.
        """

        if self.transcriber is None:
            return []
        with self.session_factory() as session:
            records = store.list_pending_transcriptions(
                session, limit=limit, max_attempts=self.max_attempts
            )
        results: List[TranscriptionAttempt] = []
        for record in records:
            result = self._run(record)
            if result.attempted:
                results.append(result)
            if result.text and self.content_store is not None and record.user_id:
                self._store_retried_transcript(record, result.text)
        return results

    def _store_retried_transcript(self, record: Transcription, text: str) -> None:
        day = (record.created_at or self.clock()).date().isoformat()
        try:
            self.content_store.store_document(  # type: ignore[union-attr]
                record.user_id,  # type: ignore[arg-type]
                f"Chat Audio Transcript - {day} - {record.external_message_id}.md",
                "audio",
                text,
                {
                    "source": "chat_audio_transcript",
                    "message_id": record.external_message_id,
                    "conversation_id": record.conversation_id,
                    "audio_reference": record.source_url,
                },
            )
        except ContentStoreError:
            logger.exception(
                "Transcript for %s could not be stored", record.external_message_id
            )

    def _run(
        self,
        record: Transcription,
        *,
        downloaded: Downloaded | None = None,
        downloads: Downloader | None = None,
    ) -> TranscriptionAttempt:
        key = record.external_message_id
        if record.status != TranscriptionStatus.PENDING.value:
            return TranscriptionAttempt(key, record.status, text=record.text)
        if self.transcriber is None:
            return TranscriptionAttempt(key, record.status)

        now = self.clock()
        decision = should_retry(
            record.attempts,
            record.last_attempt_at,
            now=now,
            table=self.backoff_minutes,
            max_attempts=self.max_attempts,
        )
        if decision.exhausted:
            with self.session_factory.begin() as session:
                store.record_transcription_error(
                    session,
                    record.id,
                    record.error_message or "retry attempts exhausted",
                    now,
                    exhausted=True,
                )
            return TranscriptionAttempt(key, TranscriptionStatus.FAILED.value)
        if not decision.retry:
            logger.debug("Transcription %s waits %s more minute(s)", key, decision.wait_minutes)
            return TranscriptionAttempt(key, record.status)

        with self.session_factory.begin() as session:
            claimed = store.begin_transcription_attempt(
                session, record.id, expected_attempts=record.attempts, now=now
            )
        if not claimed:
            return TranscriptionAttempt(key, record.status)
        attempts = record.attempts + 1

        try:
            if downloaded is None:
                if not record.source_url:
                    raise DownloadError("no downloadable audio URL")
                downloaded = (downloads or self.downloader).fetch_url(record.source_url)
        except DownloadError as exc:
            logger.warning("Audio for %s could not be downloaded: %s", key, exc)
            with self.session_factory.begin() as session:
                store.record_transcription_error(
                    session, record.id, str(exc), now, exhausted=True
                )
            return TranscriptionAttempt(
                key, TranscriptionStatus.FAILED.value, error=str(exc), attempted=True
            )

        content_type = pick_content_type(
            record.content_type, downloaded.content_type, default="audio/ogg"
        )
        filename = ensure_extension(
            record.filename or f"audio_{key}",
            "audio",
            content_type=content_type,
            url=record.source_url,
        )
        try:
            text = self.transcriber.transcribe(downloaded.data, filename, content_type)
        except TranscriptionError as exc:
            exhausted = should_retry(
                attempts, now, now=now, table=self.backoff_minutes, max_attempts=self.max_attempts
            ).exhausted
            logger.warning(
                "Transcription attempt %s for %s failed%s: %s",
                attempts,
                key,
                " permanently" if exhausted else "",
                exc,
            )
            with self.session_factory.begin() as session:
                store.record_transcription_error(
                    session, record.id, str(exc), now, exhausted=exhausted
                )
            status = (
                TranscriptionStatus.FAILED.value if exhausted else TranscriptionStatus.PENDING.value
            )
            return TranscriptionAttempt(key, status, error=str(exc), attempted=True)

        with self.session_factory.begin() as session:
            store.complete_transcription(session, record.id, text, now)
        logger.info("Transcribed audio for message %s", key)
        return TranscriptionAttempt(
            key, TranscriptionStatus.COMPLETED.value, text=text, attempted=True
        )


class AudioHandler(MessageHandler):
    """Store a transcript when one exists, otherwise upload the audio itself.

    Uploaded audio is flagged ``needs_transcription`` and its record stays
    pending so the poller can finish it later. Without any attachment a
    placeholder document records that the transcript is unavailable.
    """

    message_type = MessageType.AUDIO

    def handle(
        self, message: BufferedMessage, user_id: str, downloads: Downloader | None = None
    ) -> HandlerReport:
        cached = self.transcriptions.cached(message.external_message_id) if self.transcriptions else None
        if cached is not None and cached.text:
            self.store(
                user_id,
                transcript_document(
                    message, cached.text, reference=cached.source_url, file_name=cached.filename
                ),
            )
            return HandlerReport(documents=1)

        attachments = message.attachments or []
        if not attachments:
            self.store(user_id, audio_placeholder_document(message))
            return HandlerReport(documents=1)

        report = HandlerReport()
        for index, attachment in enumerate(attachments):
            report = report.merge(
                self._handle_attachment(message, user_id, attachment, index, downloads)
            )
        return report

    def _handle_attachment(
        self,
        message: BufferedMessage,
        user_id: str,
        attachment: dict,
        index: int,
        downloads: Downloader | None = None,
    ) -> HandlerReport:
        try:
            downloaded = self.fetcher(downloads).fetch(attachment)
        except DownloadError as exc:
            logger.warning(
                "Audio attachment %s of message %s not downloadable: %s",
                index,
                message.external_message_id,
                exc,
            )
            return self._metadata_fallback(message, user_id, attachment, index, exc)

        content_type = pick_content_type(
            attachment.get("content_type"), downloaded.content_type, default="audio/ogg"
        )
        file_name = ensure_extension(
            attachment.get("filename") or f"audio_{message.external_message_id}_{index}",
            "audio",
            content_type=content_type,
            url=downloaded.url,
        )
        metadata = self.source_metadata(message, attachment, index, attachment_location(attachment))
        metadata["needs_transcription"] = True
        try:
            self.content_store.upload_file(
                user_id, file_name, content_type, downloaded.data, metadata
            )
            report = HandlerReport(uploads=1)
        except ContentStoreError as exc:
            logger.warning(
                "Audio attachment %s of message %s not uploaded: %s",
                index,
                message.external_message_id,
                exc,
            )
            report = self._metadata_fallback(message, user_id, attachment, index, exc)

        if self.transcriptions is not None and index == 0:
            result = self.transcriptions.attempt(
                message, user_id, attachment=attachment, downloaded=downloaded
            )
            if result.text:
                self.store(
                    user_id,
                    transcript_document(
                        message,
                        result.text,
                        reference=attachment_location(attachment),
                        file_name=file_name,
                    ),
                )
                report = report.merge(HandlerReport(documents=1))
        return report

    def _metadata_fallback(
        self,
        message: BufferedMessage,
        user_id: str,
        attachment: dict,
        index: int,
        exc: Exception,
    ) -> HandlerReport:
        self.store(
            user_id,
            attachment_metadata_document("audio", message, attachment, index, reason=str(exc)),
        )
        return HandlerReport(documents=1, degraded=1)


__all__ = ["AudioHandler", "TranscriptionAttempt", "TranscriptionService"]
