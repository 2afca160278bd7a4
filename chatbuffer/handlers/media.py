"""Image and file handlers: upload each attachment, then a summary document."""

from __future__ import annotations

import logging

from ..buffering.documents import attachment_metadata_document, attachment_summary_document
from ..buffering.types import HandlerReport, MessageType
from ..errors import ContentStoreError, DownloadError
from ..models import BufferedMessage
from .base import MessageHandler
from .download import Downloader, attachment_location, ensure_extension, pick_content_type

logger = logging.getLogger(__name__)


class AttachmentHandler(MessageHandler):
    """Shared flow for messages whose attachments are stored as binaries."""

    kind = "file"

    def handle(
        self, message: BufferedMessage, user_id: str, downloads: Downloader | None = None
    ) -> HandlerReport:
        report = HandlerReport()
        for index, attachment in enumerate(message.attachments or []):
            report = report.merge(
                self._handle_attachment(message, user_id, attachment, index, downloads)
            )
        self.store(user_id, attachment_summary_document(self.kind, message))
        return report.merge(HandlerReport(documents=1))

    def _handle_attachment(
        self,
        message: BufferedMessage,
        user_id: str,
        attachment: dict,
        index: int,
        downloads: Downloader | None = None,
    ) -> HandlerReport:
        default_name = f"{self.kind}_{message.external_message_id}_{index}"
        try:
            downloaded = self.fetcher(downloads).fetch(attachment)
            content_type = pick_content_type(
                attachment.get("content_type"),
                downloaded.content_type,
                default="application/octet-stream",
            )
            file_name = ensure_extension(
                attachment.get("filename") or default_name,
                self.kind,
                content_type=content_type,
                url=downloaded.url,
            )
            self.content_store.upload_file(
                user_id,
                file_name,
                content_type,
                downloaded.data,
                self.source_metadata(
                    message, attachment, index, attachment_location(attachment)
                ),
            )
        except (DownloadError, ContentStoreError) as exc:
            logger.warning(
                "Falling back to metadata for %s attachment %s of message %s: %s",
                self.kind,
                index,
                message.external_message_id,
                exc,
            )
            self.store(
                user_id,
                attachment_metadata_document(
                    self.kind, message, attachment, index, reason=str(exc)
                ),
            )
            return HandlerReport(documents=1, degraded=1)
        logger.info("Uploaded %s %s for message %s", self.kind, file_name, message.external_message_id)
        return HandlerReport(uploads=1)


class ImageHandler(AttachmentHandler):
    message_type = MessageType.IMAGE
    kind = "image"


class FileHandler(AttachmentHandler):
    message_type = MessageType.FILE
    kind = "file"
