"""Base abstractions for chat channel adapters."""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Iterable, Mapping
from typing import Any

from ..buffering.types import InboundMessage


class ChannelAdapter(ABC):
    """Abstract base class encapsulating channel-specific webhook parsing."""

    #: Lowercase channel identifier used in routes and configuration.
    channel_name: str

    @abstractmethod
    def parse_incoming(
        self,
        payload: Mapping[str, Any],
        headers: Mapping[str, str],
        config: Mapping[str, Any],
    ) -> Iterable[InboundMessage]:
        """Convert a webhook payload into inbound messages.

        Payloads that carry no customer message (outgoing replies, status
        events) yield nothing.
        """

    def verify_signature(
        self,
        body: bytes,
        headers: Mapping[str, str],
        config: Mapping[str, Any],
    ) -> bool:
        """Validate authenticity of the webhook payload.

        Adapters can override this to implement signature checks. The default
        implementation returns ``True``.
        """

        return True
