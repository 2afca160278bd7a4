"""Base abstractions for per-type message handlers."""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from typing import TYPE_CHECKING, Any, Dict

from ..buffering.documents import Document
from ..buffering.types import HandlerReport, MessageType
from ..collaborators.content_store import ContentStore
from ..models import BufferedMessage
from .download import Downloader

if TYPE_CHECKING:
    from .audio import TranscriptionService

logger = logging.getLogger(__name__)


class MessageHandler(ABC):
    """Persist one buffered message to the content store."""

    #: Message variant handled by this class; the registry key.
    message_type: MessageType

    def __init__(
        self,
        *,
        content_store: ContentStore,
        downloader: Downloader,
        transcriptions: "TranscriptionService | None" = None,
    ) -> None:
        self.content_store = content_store
        self.downloader = downloader
        self.transcriptions = transcriptions

    @abstractmethod
    def handle(
        self,
        message: BufferedMessage,
        user_id: str,
        downloads: Downloader | None = None,
    ) -> HandlerReport:
        """Store what ``message`` carries and report what was written.

        ``downloads`` is the processing pass's :class:`DownloadCache`; without
        one the handler's own downloader is used.
        """

    def fetcher(self, downloads: Downloader | None) -> Downloader:
        return downloads if downloads is not None else self.downloader

    def store(self, user_id: str, document: Document) -> str | None:
        return self.content_store.store_document(
            user_id,
            document.file_name,
            document.file_type,
            document.content,
            document.metadata,
        )

    def source_metadata(
        self, message: BufferedMessage, attachment: Dict[str, Any], index: int, url: str | None
    ) -> Dict[str, Any]:
        return {
            "source": f"chat_{self.message_type.value}_attachment",
            "message_id": message.external_message_id,
            "conversation_id": (message.conversation_info or {}).get("id"),
            "sender_info": message.sender_info or {},
            "original_url": url,
            "attachment_index": index,
            "caption": message.content or None,
        }
