"""Runtime settings for the buffering pipeline.

Values come from the process environment; a ``.env`` file in the working
directory is loaded first so local development does not need exported
variables. Settings are cached, call :func:`reset_settings_cache` after
changing the environment (tests do this through ``monkeypatch``).
"""

from __future__ import annotations

import dataclasses
import os
from functools import lru_cache

from dotenv import load_dotenv

load_dotenv()

DEFAULT_ACK_MESSAGE = "✅ Got it! Your content was stored in your knowledge base."
DEFAULT_ACK_PARTIAL_MESSAGE = (
    "✅ Got it! Your content was stored, but some items could only be saved "
    "as references. We will keep trying where possible."
)


def _parse_minutes(raw: str) -> tuple[int, ...]:
    values = tuple(int(part.strip()) for part in raw.split(",") if part.strip())
    if not values:
        raise RuntimeError("RETRY_BACKOFF_MINUTES must list at least one value")
    return values


@dataclasses.dataclass(frozen=True)
class BufferSettings:
    """Configuration for buffering, polling and the external collaborators."""

    database_url: str | None = None
    debounce_seconds: int = 30
    max_buffer_age_seconds: int = 300  # 5 minutes safety ceiling
    poll_batch_size: int = 50
    poll_interval_seconds: float = 10.0
    max_job_attempts: int = 3
    retry_backoff_minutes: tuple[int, ...] = (1, 5, 15)
    history_limit: int = 10
    retention_days: int = 30
    chat_base_url: str | None = None
    chat_api_token: str | None = None
    chat_account_id: str | None = None
    chat_webhook_token: str | None = None
    identity_service_url: str | None = None
    content_store_url: str | None = None
    service_token: str | None = None
    transcription_api_url: str | None = None
    transcription_api_key: str | None = None
    transcription_model: str = "whisper-1"
    download_timeout_seconds: float = 30.0
    transcription_timeout_seconds: float = 60.0
    ack_message: str = DEFAULT_ACK_MESSAGE
    ack_partial_message: str = DEFAULT_ACK_PARTIAL_MESSAGE


@lru_cache(maxsize=1)
def get_settings() -> BufferSettings:
    """Load settings from the environment with development defaults."""

    chat_base_url = os.getenv("CHAT_BASE_URL") or None
    if chat_base_url:
        chat_base_url = chat_base_url.rstrip("/")
    return BufferSettings(
        database_url=os.getenv("DATABASE_URL") or None,
        debounce_seconds=int(os.getenv("BUFFER_DEBOUNCE_SECONDS", "30")),
        max_buffer_age_seconds=int(os.getenv("BUFFER_MAX_AGE_SECONDS", "300")),
        poll_batch_size=int(os.getenv("POLL_BATCH_SIZE", "50")),
        poll_interval_seconds=float(os.getenv("POLL_INTERVAL_SECONDS", "10")),
        max_job_attempts=int(os.getenv("MAX_JOB_ATTEMPTS", "3")),
        retry_backoff_minutes=_parse_minutes(
            os.getenv("RETRY_BACKOFF_MINUTES", "1,5,15")
        ),
        history_limit=int(os.getenv("HISTORY_LIMIT", "10")),
        retention_days=int(os.getenv("RETENTION_DAYS", "30")),
        chat_base_url=chat_base_url,
        chat_api_token=os.getenv("CHAT_API_TOKEN") or None,
        chat_account_id=os.getenv("CHAT_ACCOUNT_ID") or None,
        chat_webhook_token=os.getenv("CHAT_WEBHOOK_TOKEN") or None,
        identity_service_url=os.getenv("IDENTITY_SERVICE_URL") or None,
        content_store_url=os.getenv("CONTENT_STORE_URL") or None,
        service_token=os.getenv("SERVICE_TOKEN") or None,
        transcription_api_url=os.getenv("TRANSCRIPTION_API_URL") or None,
        transcription_api_key=os.getenv("TRANSCRIPTION_API_KEY") or None,
        transcription_model=os.getenv("TRANSCRIPTION_MODEL", "whisper-1"),
        download_timeout_seconds=float(os.getenv("DOWNLOAD_TIMEOUT_SECONDS", "30")),
        transcription_timeout_seconds=float(
            os.getenv("TRANSCRIPTION_TIMEOUT_SECONDS", "60")
        ),
        ack_message=os.getenv("ACK_MESSAGE") or DEFAULT_ACK_MESSAGE,
        ack_partial_message=os.getenv("ACK_PARTIAL_MESSAGE")
        or DEFAULT_ACK_PARTIAL_MESSAGE,
    )


def reset_settings_cache() -> None:
    """Clear cached settings; useful in tests when env vars change."""

    get_settings.cache_clear()


__all__ = ["BufferSettings", "get_settings", "reset_settings_cache"]
