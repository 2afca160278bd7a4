"""Content store client: text documents and binary uploads per user."""

from __future__ import annotations

import base64
import logging
from typing import Any, Dict, Mapping, Protocol

import requests

from ..errors import ContentStoreError

logger = logging.getLogger(__name__)


class ContentStore(Protocol):
    def store_document(
        self,
        user_id: str,
        file_name: str,
        file_type: str,
        content: str,
        metadata: Mapping[str, Any],
    ) -> str | None:
        ...

    def upload_file(
        self,
        user_id: str,
        file_name: str,
        content_type: str,
        data: bytes,
        metadata: Mapping[str, Any],
    ) -> str | None:
        ...


class HttpContentStore:
    """Client for the storage function.

    Documents are posted with the ``whatsapp_content`` action; binaries are
    base64 encoded and posted with the ``upload`` action. Both return the
    stored path when the service reports one.
    """

    def __init__(
        self,
        base_url: str,
        *,
        token: str | None = None,
        timeout: float = 30.0,
        session: requests.Session | None = None,
    ) -> None:
        self.base_url = base_url
        self.token = token
        self.timeout = timeout
        self.http = session or requests.Session()

    def _post(self, payload: Dict[str, Any], label: str) -> str | None:
        headers = {"Content-Type": "application/json"}
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        try:
            response = self.http.post(
                self.base_url, json=payload, headers=headers, timeout=self.timeout
            )
            response.raise_for_status()
        except requests.RequestException as exc:
            raise ContentStoreError(f"content store rejected {label}: {exc}") from exc
        try:
            body = response.json()
        except ValueError:
            return None
        data = body.get("data") if isinstance(body, dict) else None
        reference = (data or {}).get("path") or (data or {}).get("id")
        return str(reference) if reference else None

    def store_document(
        self,
        user_id: str,
        file_name: str,
        file_type: str,
        content: str,
        metadata: Mapping[str, Any],
    ) -> str | None:
        reference = self._post(
            {
                "userId": user_id,
                "action": "whatsapp_content",
                "file_name": file_name,
                "file_type": file_type,
                "content": content,
                "metadata": dict(metadata),
            },
            file_name,
        )
        logger.info("Stored document %s for user %s", file_name, user_id)
        return reference

    def upload_file(
        self,
        user_id: str,
        file_name: str,
        content_type: str,
        data: bytes,
        metadata: Mapping[str, Any],
    ) -> str | None:
        reference = self._post(
            {
                "userId": user_id,
                "action": "upload",
                "file": {
                    "name": file_name,
                    "type": content_type,
                    "content": base64.b64encode(data).decode("ascii"),
                },
                "metadata": dict(metadata),
            },
            file_name,
        )
        logger.info("Uploaded %s (%s bytes) for user %s", file_name, len(data), user_id)
        return reference


__all__ = ["ContentStore", "HttpContentStore"]
