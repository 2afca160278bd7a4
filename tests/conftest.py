import pathlib
import sys
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Callable

import pytest
from fastapi import FastAPI, Request
from sqlalchemy import create_engine, event
from sqlalchemy.orm import Session, sessionmaker

sys.path.append(str(pathlib.Path(__file__).resolve().parents[1]))
from chatbuffer.app_logging import init_logging
from chatbuffer.buffering.types import InboundMessage
from chatbuffer.collaborators import Collaborators, MockTranscriptionProvider
from chatbuffer.config import BufferSettings
from chatbuffer.errors import ContentStoreError, DownloadError, UserResolutionError
from chatbuffer.handlers.download import Downloaded, Downloader
from chatbuffer.models import Base
from chatbuffer.pipeline import Pipeline, build_pipeline

T0 = datetime(2024, 5, 1, 12, 0, 0, tzinfo=timezone.utc)
CHAT_BASE_URL = "https://chat.example.com"


class Clock:
    """Mutable clock shared by every pipeline component in a test."""

    def __init__(self, start: datetime = T0) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class FakeIdentity:
    def __init__(self, user_id: str | None = "user-1") -> None:
        self.user_id = user_id
        self.calls: list[str] = []

    def resolve_user(self, sender, conversation, *, account_id=None) -> str:
        self.calls.append(conversation.id)
        if self.user_id is None:
            raise UserResolutionError(f"unknown sender {sender.id}")
        return self.user_id


@dataclass
class RecordingContentStore:
    documents: list[dict[str, Any]] = field(default_factory=list)
    uploads: list[dict[str, Any]] = field(default_factory=list)
    fail_documents: Callable[[str], bool] | None = None
    fail_uploads: bool = False

    def store_document(self, user_id, file_name, file_type, content, metadata):
        if self.fail_documents is not None and self.fail_documents(file_name):
            raise ContentStoreError(f"rejected {file_name}")
        self.documents.append(
            {
                "user_id": user_id,
                "file_name": file_name,
                "file_type": file_type,
                "content": content,
                "metadata": dict(metadata),
            }
        )
        return f"{user_id}/{file_name}"

    def upload_file(self, user_id, file_name, content_type, data, metadata):
        if self.fail_uploads:
            raise ContentStoreError(f"rejected upload {file_name}")
        self.uploads.append(
            {
                "user_id": user_id,
                "file_name": file_name,
                "content_type": content_type,
                "data": data,
                "metadata": dict(metadata),
            }
        )
        return f"{user_id}/{file_name}"

    def sources(self) -> list[str]:
        return [doc["metadata"].get("source") for doc in self.documents]


@dataclass
class RecordingAcknowledgment:
    replies: list[tuple[str, str]] = field(default_factory=list)
    error: Exception | None = None

    def send_reply(self, conversation_id: str, text: str) -> None:
        if self.error is not None:
            raise self.error
        self.replies.append((conversation_id, text))


class FakeDownloader(Downloader):
    """Serve registered URLs from memory; everything else is unreachable."""

    def __init__(self, base_url: str | None = CHAT_BASE_URL) -> None:
        super().__init__(base_url)
        self.responses: dict[str, Downloaded] = {}
        self.requested: list[str] = []

    def add(self, url: str, data: bytes, content_type: str | None = None) -> None:
        self.responses[url] = Downloaded(data=data, content_type=content_type, url=url)

    def fetch_url(self, url: str) -> Downloaded:
        if url.startswith("data:"):
            return super().fetch_url(url)
        self.requested.append(url)
        if url not in self.responses:
            raise DownloadError(f"download of {url} failed: connection refused")
        return self.responses[url]


@pytest.fixture
def app_factory(monkeypatch):
    def _create_app(log_dir: str, log_request_bodies: bool = False):
        """Create a FastAPI app with logging initialised."""
        monkeypatch.setenv("LOG_DIR", str(log_dir))
        if log_request_bodies:
            monkeypatch.setenv("LOG_REQUEST_BODIES", "true")
        app = FastAPI()

        @app.post("/echo")
        async def echo(request: Request):
            return await request.json()

        init_logging(app)
        return app

    return _create_app


@pytest.fixture
def clock() -> Clock:
    return Clock()


@pytest.fixture
def db_url(tmp_path_factory: pytest.TempPathFactory) -> str:
    db_path = tmp_path_factory.mktemp("buffers") / "buffers.db"
    return f"sqlite+pysqlite:///{db_path}"


@pytest.fixture
def session_factory(db_url: str) -> sessionmaker[Session]:
    engine = create_engine(db_url, future=True)

    @event.listens_for(engine, "connect")
    def _foreign_keys(conn, _record) -> None:  # pragma: no cover - SQLite test helper
        conn.execute("PRAGMA foreign_keys=ON")

    Base.metadata.create_all(engine)
    yield sessionmaker(bind=engine, expire_on_commit=False, future=True)
    Base.metadata.drop_all(engine)
    engine.dispose()


@pytest.fixture
def settings(db_url: str) -> BufferSettings:
    return BufferSettings(
        database_url=db_url,
        debounce_seconds=30,
        max_buffer_age_seconds=300,
        chat_base_url=CHAT_BASE_URL,
        ack_message="stored",
        ack_partial_message="stored partially",
    )


@pytest.fixture
def identity() -> FakeIdentity:
    return FakeIdentity()


@pytest.fixture
def content_store() -> RecordingContentStore:
    return RecordingContentStore()


@pytest.fixture
def acknowledgment() -> RecordingAcknowledgment:
    return RecordingAcknowledgment()


@pytest.fixture
def transcriber() -> MockTranscriptionProvider:
    return MockTranscriptionProvider("please call me back tomorrow")


@pytest.fixture
def downloader() -> FakeDownloader:
    return FakeDownloader()


@pytest.fixture
def pipeline(
    settings,
    session_factory,
    identity,
    content_store,
    acknowledgment,
    transcriber,
    downloader,
    clock,
) -> Pipeline:
    collaborators = Collaborators(
        identity=identity,
        content_store=content_store,
        transcriber=transcriber,
        acknowledgment=acknowledgment,
    )
    return build_pipeline(
        settings,
        session_factory=session_factory,
        collaborators=collaborators,
        downloader=downloader,
        clock=clock,
    )


@pytest.fixture
def inbound() -> Callable[..., InboundMessage]:
    """Factory for inbound messages with sensible defaults."""

    def _make(
        message_id: str,
        content: str | None = "hello there, this is a message",
        *,
        conversation_id: str = "conv-1",
        declared_type: str = "text",
        attachments: list[dict[str, Any]] | None = None,
    ) -> InboundMessage:
        return InboundMessage(
            external_message_id=message_id,
            content=content,
            declared_type=declared_type,
            attachments=attachments or [],
            sender={"id": "42", "name": "Ana", "phone": "+5511999990000"},
            conversation={"id": conversation_id, "channel": "whatsapp"},
            account_id="7",
            received_at=T0,
        )

    return _make
