"""Replies sent back to the originating conversation."""

from __future__ import annotations

import logging
from typing import Protocol

import requests

from ..errors import AcknowledgmentError

logger = logging.getLogger(__name__)


class AcknowledgmentChannel(Protocol):
    def send_reply(self, conversation_id: str, text: str) -> None:
        ...


class ChatwootReplyChannel:
    """Post an outgoing message through the Chatwoot conversations API."""

    def __init__(
        self,
        base_url: str | None,
        account_id: str | None,
        api_token: str | None,
        *,
        timeout: float = 15.0,
        session: requests.Session | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/") if base_url else None
        self.account_id = account_id
        self.api_token = api_token
        self.timeout = timeout
        self.http = session or requests.Session()

    def send_reply(self, conversation_id: str, text: str) -> None:
        if not (self.base_url and self.account_id and self.api_token):
            raise AcknowledgmentError("chat reply channel is not configured")
        url = (
            f"{self.base_url}/api/v1/accounts/{self.account_id}"
            f"/conversations/{conversation_id}/messages"
        )
        try:
            response = self.http.post(
                url,
                json={"content": text, "message_type": "outgoing"},
                headers={"api_access_token": self.api_token},
                timeout=self.timeout,
            )
            response.raise_for_status()
        except requests.RequestException as exc:
            raise AcknowledgmentError(
                f"reply to conversation {conversation_id} failed: {exc}"
            ) from exc
        logger.info("Sent acknowledgment to conversation %s", conversation_id)


__all__ = ["AcknowledgmentChannel", "ChatwootReplyChannel"]
