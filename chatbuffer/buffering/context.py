"""Aggregation of a buffer's messages into one :class:`AggregatedContext`."""

from __future__ import annotations

from datetime import timedelta
from typing import Any, Dict, List, Mapping, Sequence

from ..models import BufferedMessage
from .types import AggregatedContext, AttachmentInfo, MessageType

URGENT_KEYWORDS = ("urgent", "emergency", "help", "problem", "issue", "asap", "immediately")
BASE_URGENCY = 5
MAX_URGENCY = 10
TRANSCRIPT_PENDING = "[Audio message - transcription pending]"


def urgency_score(message_count: int, combined_text: str) -> int:
    """Heuristic 1-10 score; informational only, never used for ordering."""

    score = BASE_URGENCY
    if message_count > 3:
        score += 1
    if message_count > 5:
        score += 1
    lowered = combined_text.lower()
    if any(keyword in lowered for keyword in URGENT_KEYWORDS):
        score += 2
    score += min(combined_text.count("?"), 2)
    return min(score, MAX_URGENCY)


def combine_text(messages: Sequence[BufferedMessage]) -> str:
    return "\n".join(
        message.content
        for message in messages
        if message.message_type == MessageType.TEXT.value and message.content
    )


def collect_attachments(
    messages: Sequence[BufferedMessage], transcripts: Mapping[str, str]
) -> List[AttachmentInfo]:
    attachments: List[AttachmentInfo] = []
    for message in messages:
        for raw in message.attachments or []:
            transcription = None
            if message.message_type == MessageType.AUDIO.value:
                transcription = transcripts.get(message.external_message_id)
            attachments.append(
                AttachmentInfo(
                    type=message.message_type,
                    url=raw.get("data_url") or raw.get("url"),
                    filename=raw.get("filename"),
                    content_type=raw.get("content_type"),
                    size=raw.get("size"),
                    transcription=transcription,
                )
            )
    return attachments


def build_context(
    messages: Sequence[BufferedMessage],
    *,
    transcripts: Mapping[str, str],
    history: List[Dict[str, Any]],
    user_context: Dict[str, Any],
) -> AggregatedContext:
    """Build the context for ``messages`` (ordered by ``received_at``).

    ``transcripts`` maps external message ids of audio messages to their
    transcript; audio messages without one get the pending placeholder.
    """

    if messages:
        time_span = messages[-1].received_at - messages[0].received_at
    else:
        time_span = timedelta(0)
    combined = combine_text(messages)
    audio_transcripts = [
        transcripts.get(message.external_message_id) or TRANSCRIPT_PENDING
        for message in messages
        if message.message_type == MessageType.AUDIO.value
    ]
    return AggregatedContext(
        message_count=len(messages),
        time_span=time_span,
        combined_text=combined,
        audio_transcripts=audio_transcripts,
        attachments=collect_attachments(messages, transcripts),
        conversation_history=history,
        user_context=user_context,
        urgency_score=urgency_score(len(messages), combined),
    )


__all__ = [
    "TRANSCRIPT_PENDING",
    "URGENT_KEYWORDS",
    "build_context",
    "collect_attachments",
    "combine_text",
    "urgency_score",
]
