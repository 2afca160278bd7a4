"""Markdown renderers for the documents written to the content store."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Mapping

from ..models import BufferedMessage
from .types import AggregatedContext

FOOTER = "---\n*Captured from chat via chatbuffer*"


@dataclass
class Document:
    """A text document ready for :meth:`ContentStore.store_document`."""

    file_name: str
    content: str
    file_type: str = "file"
    metadata: Dict[str, Any] = field(default_factory=dict)


def _day(value: datetime) -> str:
    return value.date().isoformat()


def _header(title: str, message: BufferedMessage) -> List[str]:
    sender = message.sender_info or {}
    return [
        f"# {title}",
        "",
        f"**From:** {sender.get('name') or 'Unknown'}",
        f"**Phone:** {sender.get('phone') or 'Unknown'}",
        f"**Date:** {message.received_at.isoformat()}",
        f"**Message ID:** {message.external_message_id}",
        "",
    ]


def base_metadata(message: BufferedMessage, source: str) -> Dict[str, Any]:
    return {
        "source": source,
        "message_id": message.external_message_id,
        "conversation_id": (message.conversation_info or {}).get("id"),
        "sender_info": message.sender_info or {},
    }


def text_document(message: BufferedMessage) -> Document:
    lines = _header("Chat Text Message", message)
    lines += ["## Content", "", message.content or "", "", FOOTER]
    return Document(
        file_name=f"Chat Text - {_day(message.received_at)} - {message.external_message_id}.md",
        content="\n".join(lines),
        metadata=base_metadata(message, "chat_text"),
    )


def transcript_document(
    message: BufferedMessage, transcript: str, *, reference: str | None, file_name: str | None
) -> Document:
    metadata = base_metadata(message, "chat_audio_transcript")
    metadata["audio_reference"] = reference
    return Document(
        file_name=file_name
        or f"Chat Audio - {_day(message.received_at)} - {message.external_message_id}.ogg",
        content=transcript,
        file_type="audio",
        metadata=metadata,
    )


def attachment_metadata_document(
    kind: str,
    message: BufferedMessage,
    attachment: Mapping[str, Any],
    index: int,
    *,
    reason: str,
) -> Document:
    """Metadata-only stand-in for an attachment that could not be fetched."""

    label = kind.capitalize()
    lines = _header(f"Chat {label} Metadata", message)
    lines += [
        f"## {label} Information",
        "",
        f"**Filename:** {attachment.get('filename') or 'Unknown'}",
        f"**Type:** {attachment.get('content_type') or kind}",
        f"**Size:** {attachment.get('size') or 'Unknown'}",
        f"**URL:** {attachment.get('data_url') or attachment.get('url') or 'Not available'}",
        "",
    ]
    if message.content and message.content.strip():
        lines += [f"**Caption:** {message.content}", ""]
    lines += [
        "## Note",
        f"This {kind} could not be downloaded automatically ({reason}). "
        "The metadata has been preserved for reference.",
        "",
    ]
    if kind == "audio":
        lines += ["Transcription pending or unavailable.", ""]
    lines.append(FOOTER)
    metadata = base_metadata(message, f"chat_{kind}_metadata")
    metadata.update({"attachment": dict(attachment), "attachment_index": index})
    return Document(
        file_name=(
            f"Chat {label} Metadata - {_day(message.received_at)} - "
            f"{message.external_message_id}_{index}.md"
        ),
        content="\n".join(lines),
        metadata=metadata,
    )


def audio_placeholder_document(message: BufferedMessage) -> Document:
    lines = _header("Chat Audio Message", message)
    lines += [
        "## Status",
        "Transcription pending or unavailable: no downloadable audio was attached.",
        "",
    ]
    if message.attachments:
        lines += ["## Attachments"]
        for i, att in enumerate(message.attachments, start=1):
            lines.append(
                f"- File {i}: {att.get('filename') or 'Unknown'} "
                f"({att.get('content_type') or 'Unknown type'})"
            )
        lines.append("")
    lines.append(FOOTER)
    return Document(
        file_name=f"Chat Audio - {_day(message.received_at)} - {message.external_message_id}.md",
        content="\n".join(lines),
        metadata=base_metadata(message, "chat_audio_placeholder"),
    )


def attachment_summary_document(kind: str, message: BufferedMessage) -> Document:
    """Human-readable listing of every attachment of an image or file message."""

    label = kind.capitalize()
    attachments = message.attachments or []
    lines = _header(f"Chat {label} Message Summary", message)
    lines += ["## Message Summary", ""]
    if message.content and message.content.strip():
        lines += [f"**Caption:** {message.content}", ""]
    if attachments:
        lines += [f"## {label}s ({len(attachments)})", ""]
        for i, att in enumerate(attachments, start=1):
            lines += [
                f"**{label} {i}:**",
                f"- Filename: {att.get('filename') or 'Unknown'}",
                f"- Type: {att.get('content_type') or kind}",
                f"- Size: {att.get('size') or 'Unknown'}",
                "",
            ]
    lines.append(FOOTER)
    metadata = base_metadata(message, f"chat_{kind}_summary")
    metadata["attachments"] = list(attachments)
    return Document(
        file_name=(
            f"Chat {label} Summary - {_day(message.received_at)} - "
            f"{message.external_message_id}.md"
        ),
        content="\n".join(lines),
        metadata=metadata,
    )


def has_combined_content(context: AggregatedContext) -> bool:
    return bool(context.combined_text.strip() or context.audio_transcripts or context.attachments)


def combined_context_document(
    context: AggregatedContext, *, buffer_id: str, conversation_id: str, started_at: datetime
) -> Document:
    """One document per buffer with text, transcripts and the attachment list."""

    lines = [
        "# Chat Conversation Summary",
        "",
        f"**Conversation:** {conversation_id}",
        f"**Started:** {started_at.isoformat()}",
        f"**Messages:** {context.message_count}",
        f"**Time span:** {int(context.time_span.total_seconds())} seconds",
        f"**Urgency:** {context.urgency_score}/10",
        "",
    ]
    if context.combined_text.strip():
        lines += ["## Text", "", context.combined_text, ""]
    if context.audio_transcripts:
        lines += ["## Audio Transcripts", ""]
        for i, transcript in enumerate(context.audio_transcripts, start=1):
            lines += [f"**Audio {i}:** {transcript}", ""]
    if context.attachments:
        lines += [f"## Attachments ({len(context.attachments)})", ""]
        for att in context.attachments:
            lines.append(
                f"- {att.type}: {att.filename or 'Unknown'} "
                f"({att.content_type or 'Unknown type'})"
            )
        lines.append("")
    lines.append(FOOTER)
    return Document(
        file_name=f"Chat Summary - {_day(started_at)} - {buffer_id}.md",
        content="\n".join(lines),
        metadata={
            "source": "chat_buffer_summary",
            "buffer_id": buffer_id,
            "conversation_id": conversation_id,
            "message_count": context.message_count,
            "urgency_score": context.urgency_score,
        },
    )


__all__ = [
    "Document",
    "attachment_metadata_document",
    "attachment_summary_document",
    "audio_placeholder_document",
    "base_metadata",
    "combined_context_document",
    "has_combined_content",
    "text_document",
    "transcript_document",
]
