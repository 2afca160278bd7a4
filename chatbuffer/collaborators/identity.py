"""Identity resolution: map a chat sender onto an internal user id."""

from __future__ import annotations

import logging
from typing import Protocol

import requests

from ..buffering.types import ConversationInfo, SenderInfo
from ..errors import UserResolutionError

logger = logging.getLogger(__name__)


class IdentityResolver(Protocol):
    """Resolve a sender to a user id, raising :class:`UserResolutionError`."""

    def resolve_user(
        self,
        sender: SenderInfo,
        conversation: ConversationInfo,
        *,
        account_id: str | None = None,
    ) -> str:
        ...


def contact_id(sender: SenderInfo, account_id: str | None) -> str:
    return f"contact_{sender.id}_account_{account_id or 'unknown'}"


class HttpIdentityResolver:
    """Identity service client using the ``identify-and-ensure-bucket`` action."""

    def __init__(
        self,
        base_url: str,
        *,
        token: str | None = None,
        timeout: float = 15.0,
        session: requests.Session | None = None,
    ) -> None:
        self.base_url = base_url
        self.token = token
        self.timeout = timeout
        self.http = session or requests.Session()

    def resolve_user(
        self,
        sender: SenderInfo,
        conversation: ConversationInfo,
        *,
        account_id: str | None = None,
    ) -> str:
        headers = {"Content-Type": "application/json"}
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        payload = {
            "action": "identify-and-ensure-bucket",
            "whatsappNumber": sender.phone or sender.identifier,
            "contactId": contact_id(sender, account_id),
        }
        try:
            response = self.http.post(
                self.base_url, json=payload, headers=headers, timeout=self.timeout
            )
            response.raise_for_status()
            body = response.json()
        except (requests.RequestException, ValueError) as exc:
            raise UserResolutionError(
                f"identity service failed for conversation {conversation.id}: {exc}"
            ) from exc

        data = body.get("data") if isinstance(body, dict) else None
        user_id = (data or {}).get("userId") or (data or {}).get("user_id")
        if not user_id:
            raise UserResolutionError(
                f"identity service returned no user for conversation {conversation.id}"
            )
        logger.debug("Resolved conversation %s to user %s", conversation.id, user_id)
        return str(user_id)


__all__ = ["HttpIdentityResolver", "IdentityResolver", "contact_id"]
