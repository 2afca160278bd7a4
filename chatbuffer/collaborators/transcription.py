"""Transcription providers turning downloaded audio into text."""

from __future__ import annotations

import logging
from typing import List, Protocol

import requests

from ..errors import TranscriptionError

logger = logging.getLogger(__name__)


class TranscriptionProvider(Protocol):
    """Protocol describing a transcription provider implementation."""

    name: str

    def transcribe(self, audio: bytes, filename: str, content_type: str | None = None) -> str:
        ...


class HttpTranscriptionProvider:
    """Provider for OpenAI-compatible ``/audio/transcriptions`` endpoints."""

    name = "http"

    def __init__(
        self,
        api_url: str,
        api_key: str | None = None,
        *,
        model: str = "whisper-1",
        timeout: float = 60.0,
        session: requests.Session | None = None,
    ) -> None:
        self.endpoint = api_url.rstrip("/") + "/audio/transcriptions"
        self.api_key = api_key
        self.model = model
        self.timeout = timeout
        self.http = session or requests.Session()

    def transcribe(self, audio: bytes, filename: str, content_type: str | None = None) -> str:
        headers = {}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        files = {"file": (filename, audio, content_type or "application/octet-stream")}
        try:
            response = self.http.post(
                self.endpoint,
                headers=headers,
                files=files,
                data={"model": self.model},
                timeout=self.timeout,
            )
            response.raise_for_status()
            body = response.json()
        except (requests.RequestException, ValueError) as exc:
            raise TranscriptionError(f"transcription of {filename} failed: {exc}") from exc
        text = str(body.get("text") or "").strip() if isinstance(body, dict) else ""
        if not text:
            raise TranscriptionError(f"transcription of {filename} returned no text")
        return text


class MockTranscriptionProvider:
    """Provider primarily intended for tests and offline development.

    Returns ``transcript_text`` for every call, or raises
    :class:`TranscriptionError` for the first ``fail_times`` calls.
    """

    name = "mock"

    def __init__(self, transcript_text: str = "", *, fail_times: int = 0) -> None:
        self.transcript_text = transcript_text
        self.fail_times = fail_times
        self.calls: List[str] = []

    def transcribe(self, audio: bytes, filename: str, content_type: str | None = None) -> str:
        self.calls.append(filename)
        if self.fail_times > 0:
            self.fail_times -= 1
            raise TranscriptionError(f"mock transcription unavailable for {filename}")
        if not self.transcript_text:
            raise TranscriptionError(f"mock transcription has no text for {filename}")
        return self.transcript_text


__all__ = ["HttpTranscriptionProvider", "MockTranscriptionProvider", "TranscriptionProvider"]
