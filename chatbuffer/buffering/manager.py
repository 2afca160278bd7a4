"""Buffer manager: accept inbound messages and keep one job per open buffer."""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Callable
from uuid import UUID

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker

from ..collaborators.identity import IdentityResolver
from ..config import BufferSettings, get_settings
from ..errors import StaleBufferError, UserResolutionError
from ..models import BufferedMessage, MessageBuffer
from . import store
from .classify import classify_message_type
from .types import BufferResult, InboundMessage, MessageType

logger = logging.getLogger(__name__)

MAX_APPEND_RETRIES = 3


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class BufferManager:
    """Coalesce bursts of messages per conversation into buffers.

    Each accepted message lands in the conversation's open buffer (or a new
    one) and pushes the buffer's processing job to
    ``min(last_message + debounce, buffer_start + max_age)``.
    """

    def __init__(
        self,
        session_factory: sessionmaker[Session],
        identity: IdentityResolver | None = None,
        *,
        settings: BufferSettings | None = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.session_factory = session_factory
        self.identity = identity
        self.settings = settings or get_settings()
        self.clock = clock

    @property
    def debounce(self) -> timedelta:
        return timedelta(seconds=self.settings.debounce_seconds)

    @property
    def max_age(self) -> timedelta:
        return timedelta(seconds=self.settings.max_buffer_age_seconds)

    def scheduled_for(self, buffer_start: datetime, last_message: datetime) -> datetime:
        return min(last_message + self.debounce, buffer_start + self.max_age)

    def resolve_user(self, message: InboundMessage) -> str:
        """Resolve the sender, falling back to the conversation's recorded owner."""

        conversation_id = message.conversation.id
        if self.identity is not None:
            try:
                user_id = self.identity.resolve_user(
                    message.sender, message.conversation, account_id=message.account_id
                )
                if user_id:
                    return user_id
            except UserResolutionError as exc:
                logger.warning(
                    "Identity lookup failed for conversation %s: %s", conversation_id, exc
                )

        with self.session_factory() as session:
            state = store.get_conversation_state(session, conversation_id)
        if state is not None and state.user_id:
            logger.info("Using recorded owner for conversation %s", conversation_id)
            return state.user_id
        raise UserResolutionError(
            f"could not resolve a user for conversation {conversation_id}"
        )

    def handle_incoming_message(self, message: InboundMessage) -> BufferResult:
        """Buffer ``message`` and reschedule its buffer's job.

        Raises:
            UserResolutionError: the sender maps to no user; nothing is stored.
            StaleBufferError: concurrent writers kept winning the race.
        """

        user_id = self.resolve_user(message)
        message_type = classify_message_type(message.declared_type, message.attachments)

        for attempt in range(1, MAX_APPEND_RETRIES + 1):
            try:
                result = self._append(message, user_id, message_type)
            except (StaleBufferError, IntegrityError) as exc:
                logger.info(
                    "Buffer race for conversation %s (attempt %s/%s): %s",
                    message.conversation.id,
                    attempt,
                    MAX_APPEND_RETRIES,
                    exc.__class__.__name__,
                )
                continue
            logger.info(
                "Message %s %s buffer %s (%s messages, due %s)",
                message.external_message_id,
                result.action,
                result.buffer_id,
                result.message_count,
                result.scheduled_for.isoformat(),
            )
            return result

        raise StaleBufferError(
            f"could not buffer message {message.external_message_id} after "
            f"{MAX_APPEND_RETRIES} attempts"
        )

    def _append(
        self, message: InboundMessage, user_id: str, message_type: MessageType
    ) -> BufferResult:
        now = self.clock()
        conversation_id = message.conversation.id
        with self.session_factory.begin() as session:
            state = store.ensure_conversation_state(session, conversation_id, user_id, now)
            observed = state.active_buffer_id

            buffer = store.find_open_buffer(
                session, conversation_id, started_after=now - self.max_age
            )
            if buffer is not None and store.touch_buffer(session, buffer.id, now):
                session.refresh(buffer)
                action = "appended"
            else:
                buffer = store.create_buffer(session, conversation_id, user_id, now)
                if not store.swing_active_buffer(
                    session, conversation_id, expected=observed, new=buffer.id, now=now
                ):
                    raise StaleBufferError(
                        f"conversation {conversation_id} moved past buffer {observed}"
                    )
                action = "created"

            store.record_conversation_message(session, conversation_id, now)
            store.add_message(session, buffer.id, message, message_type, now)
            due = self.scheduled_for(buffer.buffer_start_time, buffer.last_message_time)
            job = store.reschedule_job(session, buffer.id, due, now)

            return BufferResult(
                buffer_id=buffer.id,
                job_id=job.id,
                action=action,
                message_count=buffer.message_count,
                scheduled_for=job.scheduled_for,
                message_type=message_type,
            )

    def get_buffer(self, buffer_id: UUID) -> MessageBuffer | None:
        with self.session_factory() as session:
            return store.get_buffer(session, buffer_id, with_jobs=True)

    def list_buffered_messages(self, buffer_id: UUID) -> list[BufferedMessage]:
        with self.session_factory() as session:
            return store.list_buffered_messages(session, buffer_id)


__all__ = ["BufferManager", "MAX_APPEND_RETRIES"]
