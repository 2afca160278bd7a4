"""External collaborators reached through narrow contracts.

:func:`build_collaborators` wires the HTTP implementations from
:class:`~chatbuffer.config.BufferSettings`. Tests pass fakes directly to the
manager and processor instead.
"""

from __future__ import annotations

from dataclasses import dataclass

from ..config import BufferSettings
from .acknowledgment import AcknowledgmentChannel, ChatwootReplyChannel
from .content_store import ContentStore, HttpContentStore
from .identity import HttpIdentityResolver, IdentityResolver
from .transcription import (
    HttpTranscriptionProvider,
    MockTranscriptionProvider,
    TranscriptionProvider,
)


@dataclass
class Collaborators:
    identity: IdentityResolver | None
    content_store: ContentStore
    transcriber: TranscriptionProvider | None
    acknowledgment: AcknowledgmentChannel


def build_collaborators(settings: BufferSettings) -> Collaborators:
    """Instantiate collaborators for ``settings``.

    Identity and transcription are optional: without them the manager relies
    on the recorded conversation owner and audio stays pending.
    """

    if not settings.content_store_url:
        raise RuntimeError("CONTENT_STORE_URL is not configured.")

    identity = None
    if settings.identity_service_url:
        identity = HttpIdentityResolver(
            settings.identity_service_url, token=settings.service_token
        )
    transcriber = None
    if settings.transcription_api_url:
        transcriber = HttpTranscriptionProvider(
            settings.transcription_api_url,
            settings.transcription_api_key,
            model=settings.transcription_model,
            timeout=settings.transcription_timeout_seconds,
        )
    return Collaborators(
        identity=identity,
        content_store=HttpContentStore(
            settings.content_store_url, token=settings.service_token
        ),
        transcriber=transcriber,
        acknowledgment=ChatwootReplyChannel(
            settings.chat_base_url, settings.chat_account_id, settings.chat_api_token
        ),
    )


__all__ = [
    "AcknowledgmentChannel",
    "ChatwootReplyChannel",
    "Collaborators",
    "ContentStore",
    "HttpContentStore",
    "HttpIdentityResolver",
    "HttpTranscriptionProvider",
    "IdentityResolver",
    "MockTranscriptionProvider",
    "TranscriptionProvider",
    "build_collaborators",
]
