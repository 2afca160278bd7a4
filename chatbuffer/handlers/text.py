"""Text message handler."""

from __future__ import annotations

import logging

from ..buffering.documents import text_document
from ..buffering.types import HandlerReport, MessageType
from ..models import BufferedMessage
from .base import MessageHandler
from .download import Downloader

logger = logging.getLogger(__name__)

MIN_TEXT_LENGTH = 10


class TextHandler(MessageHandler):
    message_type = MessageType.TEXT

    def handle(
        self, message: BufferedMessage, user_id: str, downloads: Downloader | None = None
    ) -> HandlerReport:
        content = (message.content or "").strip()
        if len(content) < MIN_TEXT_LENGTH:
            logger.debug("Skipping short text message %s", message.external_message_id)
            return HandlerReport()
        self.store(user_id, text_document(message))
        return HandlerReport(documents=1)
