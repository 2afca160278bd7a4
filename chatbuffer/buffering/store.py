"""Database helpers for buffers, jobs, conversation state and transcriptions.

Every status transition is a conditional ``UPDATE`` guarded by the expected
prior value; callers inspect the returned row count (or boolean) to find out
whether they won. Functions take an open :class:`~sqlalchemy.orm.Session` and
never commit, the caller owns the transaction.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Iterable, Sequence, cast
from uuid import UUID

from sqlalchemy import delete, select, update
from sqlalchemy.engine import CursorResult
from sqlalchemy.orm import Session, selectinload

from ..models import (
    BufferedMessage,
    ConversationState,
    MessageBuffer,
    ProcessingJob,
    Transcription,
)
from .types import (
    BufferStatus,
    ConversationPhase,
    InboundMessage,
    JobStatus,
    MessageType,
    TranscriptionStatus,
)

logger = logging.getLogger(__name__)


def _rowcount(result: Any) -> int:
    cursor_result = cast(CursorResult[Any], result)
    return int(cursor_result.rowcount or 0)


# ---------------------------------------------------------------------------
# Conversation state
# ---------------------------------------------------------------------------


def get_conversation_state(session: Session, conversation_id: str) -> ConversationState | None:
    return session.get(ConversationState, conversation_id)


def ensure_conversation_state(
    session: Session, conversation_id: str, user_id: str, now: datetime
) -> ConversationState:
    """Return the state row for ``conversation_id``, inserting it when missing.

    A concurrent insert surfaces as :class:`~sqlalchemy.exc.IntegrityError` on
    flush; the caller rolls back and retries.
    """

    state = session.get(ConversationState, conversation_id)
    if state is None:
        state = ConversationState(
            conversation_id=conversation_id,
            user_id=user_id,
            state=ConversationPhase.IDLE.value,
            message_count=0,
            updated_at=now,
        )
        session.add(state)
        session.flush()
    elif state.user_id != user_id:
        state.user_id = user_id
    return state


def swing_active_buffer(
    session: Session,
    conversation_id: str,
    *,
    expected: UUID | None,
    new: UUID,
    now: datetime,
) -> bool:
    """Point the conversation at ``new`` if it still points at ``expected``."""

    guard = (
        ConversationState.active_buffer_id.is_(None)
        if expected is None
        else ConversationState.active_buffer_id == expected
    )
    result = session.execute(
        update(ConversationState)
        .where(ConversationState.conversation_id == conversation_id, guard)
        .values(
            active_buffer_id=new,
            state=ConversationPhase.BUFFERING.value,
            updated_at=now,
        )
        .execution_options(synchronize_session=False)
    )
    return _rowcount(result) == 1


def record_conversation_message(session: Session, conversation_id: str, now: datetime) -> None:
    session.execute(
        update(ConversationState)
        .where(ConversationState.conversation_id == conversation_id)
        .values(
            message_count=ConversationState.message_count + 1,
            last_message_at=now,
            state=ConversationPhase.BUFFERING.value,
            updated_at=now,
        )
        .execution_options(synchronize_session=False)
    )


def set_conversation_phase(
    session: Session,
    conversation_id: str,
    buffer_id: UUID,
    phase: ConversationPhase,
    now: datetime,
) -> bool:
    """Move the conversation to ``phase`` while it still points at ``buffer_id``.

    Going back to ``idle`` also clears the active buffer pointer.
    """

    values: dict[str, Any] = {"state": phase.value, "updated_at": now}
    if phase is ConversationPhase.IDLE:
        values["active_buffer_id"] = None
    result = session.execute(
        update(ConversationState)
        .where(
            ConversationState.conversation_id == conversation_id,
            ConversationState.active_buffer_id == buffer_id,
        )
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    return _rowcount(result) == 1


# ---------------------------------------------------------------------------
# Buffers and messages
# ---------------------------------------------------------------------------


def find_open_buffer(
    session: Session, conversation_id: str, *, started_after: datetime
) -> MessageBuffer | None:
    """Return the newest active buffer younger than the safety ceiling."""

    stmt = (
        select(MessageBuffer)
        .where(
            MessageBuffer.conversation_id == conversation_id,
            MessageBuffer.status == BufferStatus.ACTIVE.value,
            MessageBuffer.buffer_start_time > started_after,
        )
        .order_by(MessageBuffer.buffer_start_time.desc())
        .limit(1)
    )
    return session.scalars(stmt).first()


def create_buffer(
    session: Session, conversation_id: str, user_id: str, now: datetime
) -> MessageBuffer:
    buffer = MessageBuffer(
        conversation_id=conversation_id,
        user_id=user_id,
        buffer_start_time=now,
        last_message_time=now,
        status=BufferStatus.ACTIVE.value,
        message_count=1,
        created_at=now,
        updated_at=now,
    )
    session.add(buffer)
    session.flush()
    return buffer


def touch_buffer(session: Session, buffer_id: UUID, now: datetime) -> bool:
    """Extend an active buffer by one message; ``False`` when it is no longer active."""

    result = session.execute(
        update(MessageBuffer)
        .where(
            MessageBuffer.id == buffer_id,
            MessageBuffer.status == BufferStatus.ACTIVE.value,
        )
        .values(
            last_message_time=now,
            message_count=MessageBuffer.message_count + 1,
            updated_at=now,
        )
        .execution_options(synchronize_session=False)
    )
    return _rowcount(result) == 1


def add_message(
    session: Session,
    buffer_id: UUID,
    message: InboundMessage,
    message_type: MessageType,
    received_at: datetime,
) -> BufferedMessage:
    row = BufferedMessage(
        buffer_id=buffer_id,
        external_message_id=message.external_message_id,
        content=message.content,
        message_type=message_type.value,
        declared_type=message.declared_type,
        content_type=message.content_type,
        attachments=[a.model_dump(exclude_none=True) for a in message.attachments],
        sender_info=message.sender.model_dump(exclude_none=True),
        conversation_info=message.conversation.model_dump(exclude_none=True),
        received_at=received_at,
        sent_at=message.received_at,
        processed=False,
        created_at=received_at,
    )
    session.add(row)
    session.flush()
    return row


def get_buffer(
    session: Session, buffer_id: UUID, *, with_jobs: bool = False
) -> MessageBuffer | None:
    options = [selectinload(MessageBuffer.jobs)] if with_jobs else []
    return session.get(MessageBuffer, buffer_id, options=options)


def list_buffered_messages(
    session: Session, buffer_id: UUID, *, unprocessed_only: bool = False
) -> list[BufferedMessage]:
    stmt = select(BufferedMessage).where(BufferedMessage.buffer_id == buffer_id)
    if unprocessed_only:
        stmt = stmt.where(BufferedMessage.processed.is_(False))
    stmt = stmt.order_by(BufferedMessage.received_at.asc(), BufferedMessage.created_at.asc())
    return list(session.scalars(stmt))


def mark_messages_processed(session: Session, message_ids: Iterable[UUID]) -> int:
    ids = list(message_ids)
    if not ids:
        return 0
    result = session.execute(
        update(BufferedMessage)
        .where(BufferedMessage.id.in_(ids), BufferedMessage.processed.is_(False))
        .values(processed=True)
        .execution_options(synchronize_session=False)
    )
    return _rowcount(result)


def complete_buffer(session: Session, buffer_id: UUID, now: datetime) -> bool:
    """Finalize a claimed buffer. ``completed`` is terminal."""

    result = session.execute(
        update(MessageBuffer)
        .where(
            MessageBuffer.id == buffer_id,
            MessageBuffer.status == BufferStatus.PROCESSING.value,
        )
        .values(
            status=BufferStatus.COMPLETED.value,
            buffer_end_time=now,
            processed_at=now,
            updated_at=now,
        )
        .execution_options(synchronize_session=False)
    )
    return _rowcount(result) == 1


def recent_history(
    session: Session,
    conversation_id: str,
    *,
    exclude_buffer_id: UUID,
    limit: int,
) -> list[dict[str, Any]]:
    """Last ``limit`` messages from the conversation's completed buffers, oldest first."""

    if limit <= 0:
        return []
    stmt = (
        select(BufferedMessage)
        .join(MessageBuffer, BufferedMessage.buffer_id == MessageBuffer.id)
        .where(
            MessageBuffer.conversation_id == conversation_id,
            MessageBuffer.status == BufferStatus.COMPLETED.value,
            MessageBuffer.id != exclude_buffer_id,
        )
        .order_by(BufferedMessage.received_at.desc())
        .limit(limit)
    )
    rows = list(session.scalars(stmt))
    rows.reverse()
    return [
        {
            "message_id": row.external_message_id,
            "message_type": row.message_type,
            "content": row.content,
            "received_at": row.received_at.isoformat(),
        }
        for row in rows
    ]


def purge_completed_buffers(session: Session, older_than: datetime) -> int:
    """Delete completed buffers processed before ``older_than`` with their rows."""

    buffer_ids = list(
        session.scalars(
            select(MessageBuffer.id).where(
                MessageBuffer.status == BufferStatus.COMPLETED.value,
                MessageBuffer.processed_at < older_than,
            )
        )
    )
    if not buffer_ids:
        return 0
    session.execute(
        delete(BufferedMessage)
        .where(BufferedMessage.buffer_id.in_(buffer_ids))
        .execution_options(synchronize_session=False)
    )
    session.execute(
        delete(ProcessingJob)
        .where(ProcessingJob.buffer_id.in_(buffer_ids))
        .execution_options(synchronize_session=False)
    )
    result = session.execute(
        delete(MessageBuffer)
        .where(MessageBuffer.id.in_(buffer_ids))
        .execution_options(synchronize_session=False)
    )
    removed = _rowcount(result)
    logger.info("Purged %s completed buffers older than %s", removed, older_than.isoformat())
    return removed


# ---------------------------------------------------------------------------
# Processing jobs
# ---------------------------------------------------------------------------


def reschedule_job(
    session: Session, buffer_id: UUID, scheduled_for: datetime, now: datetime
) -> ProcessingJob:
    """Cancel the buffer's scheduled job(s) and insert a fresh one.

    Runs inside the caller's transaction so the cancel and the insert are
    atomic; the partial unique index rejects a second open job.
    """

    cancelled = session.execute(
        update(ProcessingJob)
        .where(
            ProcessingJob.buffer_id == buffer_id,
            ProcessingJob.status == JobStatus.SCHEDULED.value,
        )
        .values(status=JobStatus.CANCELLED.value)
        .execution_options(synchronize_session=False)
    )
    if _rowcount(cancelled):
        logger.debug("Cancelled %s scheduled job(s) for buffer %s", _rowcount(cancelled), buffer_id)
    job = ProcessingJob(
        buffer_id=buffer_id,
        scheduled_for=scheduled_for,
        status=JobStatus.SCHEDULED.value,
        attempts=0,
        created_at=now,
    )
    session.add(job)
    session.flush()
    return job


def get_job(session: Session, job_id: UUID) -> ProcessingJob | None:
    return session.get(ProcessingJob, job_id)


def get_open_job(session: Session, buffer_id: UUID) -> ProcessingJob | None:
    stmt = select(ProcessingJob).where(
        ProcessingJob.buffer_id == buffer_id,
        ProcessingJob.status.in_([JobStatus.SCHEDULED.value, JobStatus.RUNNING.value]),
    )
    return session.scalars(stmt).first()


def list_jobs(session: Session, buffer_id: UUID) -> list[ProcessingJob]:
    stmt = (
        select(ProcessingJob)
        .where(ProcessingJob.buffer_id == buffer_id)
        .order_by(ProcessingJob.created_at.asc())
    )
    return list(session.scalars(stmt))


def list_due_jobs(
    session: Session, now: datetime, *, limit: int, max_attempts: int
) -> list[ProcessingJob]:
    stmt = (
        select(ProcessingJob)
        .where(
            ProcessingJob.status == JobStatus.SCHEDULED.value,
            ProcessingJob.scheduled_for <= now,
            ProcessingJob.attempts < max_attempts,
        )
        .order_by(ProcessingJob.scheduled_for.asc())
        .limit(limit)
    )
    return list(session.scalars(stmt))


def claim(session: Session, job_id: UUID, buffer_id: UUID) -> bool:
    """Move the job to ``running`` and the buffer to ``processing``.

    Both updates are conditional and run in the caller's transaction. When
    the buffer guard fails the job update is reverted before returning, so a
    failed claim leaves both rows as they were.
    """

    job_result = session.execute(
        update(ProcessingJob)
        .where(
            ProcessingJob.id == job_id,
            ProcessingJob.status == JobStatus.SCHEDULED.value,
        )
        .values(status=JobStatus.RUNNING.value)
        .execution_options(synchronize_session=False)
    )
    if _rowcount(job_result) != 1:
        return False
    buffer_result = session.execute(
        update(MessageBuffer)
        .where(
            MessageBuffer.id == buffer_id,
            MessageBuffer.status == BufferStatus.ACTIVE.value,
        )
        .values(status=BufferStatus.PROCESSING.value)
        .execution_options(synchronize_session=False)
    )
    if _rowcount(buffer_result) != 1:
        session.execute(
            update(ProcessingJob)
            .where(
                ProcessingJob.id == job_id,
                ProcessingJob.status == JobStatus.RUNNING.value,
            )
            .values(status=JobStatus.SCHEDULED.value)
            .execution_options(synchronize_session=False)
        )
        return False
    return True


def complete_job(session: Session, job_id: UUID, now: datetime) -> bool:
    result = session.execute(
        update(ProcessingJob)
        .where(
            ProcessingJob.id == job_id,
            ProcessingJob.status == JobStatus.RUNNING.value,
        )
        .values(status=JobStatus.COMPLETED.value, processed_at=now)
        .execution_options(synchronize_session=False)
    )
    return _rowcount(result) == 1


def fail_job(session: Session, job_id: UUID, error: str, now: datetime) -> bool:
    result = session.execute(
        update(ProcessingJob)
        .where(
            ProcessingJob.id == job_id,
            ProcessingJob.status == JobStatus.RUNNING.value,
        )
        .values(
            status=JobStatus.FAILED.value,
            attempts=ProcessingJob.attempts + 1,
            error_message=error,
            processed_at=now,
        )
        .execution_options(synchronize_session=False)
    )
    return _rowcount(result) == 1


# ---------------------------------------------------------------------------
# Transcriptions
# ---------------------------------------------------------------------------


def get_transcription(session: Session, external_message_id: str) -> Transcription | None:
    stmt = select(Transcription).where(
        Transcription.external_message_id == external_message_id
    )
    return session.scalars(stmt).first()


def ensure_transcription(
    session: Session,
    external_message_id: str,
    *,
    user_id: str | None,
    conversation_id: str | None,
    source_url: str | None,
    filename: str | None,
    content_type: str | None,
    now: datetime,
) -> Transcription:
    """Return the transcription record for a message, creating a pending one."""

    record = get_transcription(session, external_message_id)
    if record is not None:
        return record
    record = Transcription(
        external_message_id=external_message_id,
        user_id=user_id,
        conversation_id=conversation_id,
        source_url=source_url,
        filename=filename,
        content_type=content_type,
        status=TranscriptionStatus.PENDING.value,
        attempts=0,
        created_at=now,
        updated_at=now,
    )
    session.add(record)
    session.flush()
    return record


def begin_transcription_attempt(
    session: Session, record_id: UUID, *, expected_attempts: int, now: datetime
) -> bool:
    """Claim one attempt on a pending record by bumping its counter."""

    result = session.execute(
        update(Transcription)
        .where(
            Transcription.id == record_id,
            Transcription.status == TranscriptionStatus.PENDING.value,
            Transcription.attempts == expected_attempts,
        )
        .values(
            attempts=Transcription.attempts + 1,
            last_attempt_at=now,
            updated_at=now,
        )
        .execution_options(synchronize_session=False)
    )
    return _rowcount(result) == 1


def complete_transcription(
    session: Session, record_id: UUID, text: str, now: datetime
) -> bool:
    result = session.execute(
        update(Transcription)
        .where(
            Transcription.id == record_id,
            Transcription.status == TranscriptionStatus.PENDING.value,
        )
        .values(
            status=TranscriptionStatus.COMPLETED.value,
            text=text,
            error_message=None,
            updated_at=now,
        )
        .execution_options(synchronize_session=False)
    )
    return _rowcount(result) == 1


def record_transcription_error(
    session: Session,
    record_id: UUID,
    error: str,
    now: datetime,
    *,
    exhausted: bool,
) -> bool:
    """Keep the last error; ``exhausted`` makes the failure permanent."""

    status = (
        TranscriptionStatus.FAILED.value
        if exhausted
        else TranscriptionStatus.PENDING.value
    )
    result = session.execute(
        update(Transcription)
        .where(
            Transcription.id == record_id,
            Transcription.status == TranscriptionStatus.PENDING.value,
        )
        .values(status=status, error_message=error, updated_at=now)
        .execution_options(synchronize_session=False)
    )
    return _rowcount(result) == 1


def list_pending_transcriptions(
    session: Session, *, limit: int, max_attempts: int
) -> Sequence[Transcription]:
    stmt = (
        select(Transcription)
        .where(
            Transcription.status == TranscriptionStatus.PENDING.value,
            Transcription.attempts < max_attempts,
        )
        .order_by(Transcription.created_at.asc())
        .limit(limit)
    )
    return list(session.scalars(stmt))


__all__ = [
    "add_message",
    "begin_transcription_attempt",
    "claim",
    "complete_buffer",
    "complete_job",
    "complete_transcription",
    "create_buffer",
    "ensure_conversation_state",
    "ensure_transcription",
    "fail_job",
    "find_open_buffer",
    "get_buffer",
    "get_conversation_state",
    "get_job",
    "get_open_job",
    "get_transcription",
    "list_buffered_messages",
    "list_due_jobs",
    "list_jobs",
    "list_pending_transcriptions",
    "mark_messages_processed",
    "purge_completed_buffers",
    "recent_history",
    "record_conversation_message",
    "record_transcription_error",
    "reschedule_job",
    "set_conversation_phase",
    "swing_active_buffer",
    "touch_buffer",
]
