"""Chatwoot channel adapter."""

from __future__ import annotations

import hmac
from collections.abc import Iterable, Mapping
from datetime import datetime, timezone
from typing import Any

from ..buffering.types import InboundMessage
from .base import ChannelAdapter


def _parse_timestamp(value: Any) -> datetime:
    if isinstance(value, (int, float)):
        return datetime.fromtimestamp(value, tz=timezone.utc)
    if isinstance(value, str) and value:
        try:
            parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            return datetime.now(timezone.utc)
        if parsed.tzinfo is None:
            parsed = parsed.replace(tzinfo=timezone.utc)
        return parsed
    return datetime.now(timezone.utc)


def _attachment(raw: Mapping[str, Any]) -> dict[str, Any]:
    return {
        "url": raw.get("data_url") or raw.get("file_url") or raw.get("url"),
        "filename": raw.get("file_name") or raw.get("filename"),
        "content_type": raw.get("content_type") or raw.get("file_type"),
        "size": raw.get("file_size") or raw.get("size"),
    }


class ChatwootAdapter(ChannelAdapter):
    """Map ``message_created`` webhooks for incoming messages."""

    channel_name = "chatwoot"

    def verify_signature(
        self,
        body: bytes,
        headers: Mapping[str, str],
        config: Mapping[str, Any],
    ) -> bool:
        token = (config or {}).get("webhook_token")
        if not token:
            return True
        received = headers.get("X-Chatwoot-Token") or headers.get("x-chatwoot-token")
        if not received:
            return False
        return hmac.compare_digest(received, token)

    def parse_incoming(
        self,
        payload: Mapping[str, Any],
        headers: Mapping[str, str],
        config: Mapping[str, Any],
    ) -> Iterable[InboundMessage]:
        event = payload.get("event")
        if event and event != "message_created":
            return
        if payload.get("message_type") not in {"incoming", 0, "0"}:
            return
        if payload.get("private"):
            return

        sender = payload.get("sender") or {}
        conversation = payload.get("conversation") or {}
        account = payload.get("account") or {}
        if payload.get("id") is None or sender.get("id") is None or conversation.get("id") is None:
            return

        yield InboundMessage(
            external_message_id=payload["id"],
            content=payload.get("content"),
            declared_type=str(payload.get("content_type") or "text"),
            content_type=payload.get("content_type"),
            attachments=[_attachment(a) for a in payload.get("attachments") or []],
            sender={
                "id": sender["id"],
                "name": sender.get("name"),
                "phone": sender.get("phone_number"),
                "identifier": sender.get("identifier"),
            },
            conversation={
                "id": conversation["id"],
                "status": conversation.get("status"),
                "channel": conversation.get("channel"),
            },
            account_id=account.get("id"),
            received_at=_parse_timestamp(payload.get("created_at")),
        )
