import base64

import pytest
import requests

from chatbuffer.buffering.types import ConversationInfo, SenderInfo
from chatbuffer.collaborators import (
    ChatwootReplyChannel,
    HttpContentStore,
    HttpIdentityResolver,
    HttpTranscriptionProvider,
    MockTranscriptionProvider,
    build_collaborators,
)
from chatbuffer.config import BufferSettings
from chatbuffer.errors import (
    AcknowledgmentError,
    ContentStoreError,
    TranscriptionError,
    UserResolutionError,
)


class FakeResponse:
    def __init__(self, payload=None, status_code=200):
        self.payload = payload
        self.status_code = status_code

    def raise_for_status(self):
        if self.status_code >= 400:
            raise requests.HTTPError(f"{self.status_code} error")

    def json(self):
        if self.payload is None:
            raise ValueError("no json")
        return self.payload


class FakeHttp:
    def __init__(self, response=None, exc=None):
        self.response = response or FakeResponse({})
        self.exc = exc
        self.posts = []

    def post(self, url, **kwargs):
        self.posts.append((url, kwargs))
        if self.exc is not None:
            raise self.exc
        return self.response


SENDER = SenderInfo(id="42", phone="+5511999990000")
CONVERSATION = ConversationInfo(id="conv-1")


class TestIdentity:
    def test_resolves_user_id(self):
        http = FakeHttp(FakeResponse({"data": {"userId": "user-7"}}))
        resolver = HttpIdentityResolver("https://id.example/fn", token="svc", session=http)

        assert resolver.resolve_user(SENDER, CONVERSATION, account_id="3") == "user-7"

        url, kwargs = http.posts[0]
        assert url == "https://id.example/fn"
        assert kwargs["json"] == {
            "action": "identify-and-ensure-bucket",
            "whatsappNumber": "+5511999990000",
            "contactId": "contact_42_account_3",
        }
        assert kwargs["headers"]["Authorization"] == "Bearer svc"
        assert kwargs["timeout"] == 15.0

    def test_missing_user_raises(self):
        resolver = HttpIdentityResolver(
            "https://id.example/fn", session=FakeHttp(FakeResponse({"data": {}}))
        )
        with pytest.raises(UserResolutionError):
            resolver.resolve_user(SENDER, CONVERSATION)

    def test_transport_error_raises(self):
        resolver = HttpIdentityResolver(
            "https://id.example/fn",
            session=FakeHttp(exc=requests.ConnectionError("refused")),
        )
        with pytest.raises(UserResolutionError):
            resolver.resolve_user(SENDER, CONVERSATION)


class TestContentStore:
    def test_store_document_payload(self):
        http = FakeHttp(FakeResponse({"data": {"path": "user-1/doc.md"}}))
        content_store = HttpContentStore("https://store.example/fn", token="svc", session=http)

        ref = content_store.store_document("user-1", "doc.md", "file", "# hi", {"k": "v"})

        assert ref == "user-1/doc.md"
        payload = http.posts[0][1]["json"]
        assert payload["action"] == "whatsapp_content"
        assert payload["userId"] == "user-1"
        assert payload["metadata"] == {"k": "v"}

    def test_upload_is_base64_encoded(self):
        http = FakeHttp(FakeResponse(None))
        content_store = HttpContentStore("https://store.example/fn", session=http)

        ref = content_store.upload_file("user-1", "a.ogg", "audio/ogg", b"OggS", {})

        assert ref is None
        payload = http.posts[0][1]["json"]
        assert payload["action"] == "upload"
        assert payload["file"] == {
            "name": "a.ogg",
            "type": "audio/ogg",
            "content": base64.b64encode(b"OggS").decode("ascii"),
        }
        assert "Authorization" not in http.posts[0][1]["headers"]

    def test_http_error_raises(self):
        content_store = HttpContentStore(
            "https://store.example/fn", session=FakeHttp(FakeResponse({}, status_code=500))
        )
        with pytest.raises(ContentStoreError):
            content_store.store_document("user-1", "doc.md", "file", "x", {})


class TestTranscription:
    def test_http_provider_posts_multipart(self):
        http = FakeHttp(FakeResponse({"text": "  hello world  "}))
        provider = HttpTranscriptionProvider(
            "https://api.example/v1/", "key", model="whisper-1", session=http
        )

        assert provider.transcribe(b"OggS", "a.ogg", "audio/ogg") == "hello world"

        url, kwargs = http.posts[0]
        assert url == "https://api.example/v1/audio/transcriptions"
        assert kwargs["files"]["file"] == ("a.ogg", b"OggS", "audio/ogg")
        assert kwargs["data"] == {"model": "whisper-1"}
        assert kwargs["headers"] == {"Authorization": "Bearer key"}

    def test_empty_text_raises(self):
        provider = HttpTranscriptionProvider(
            "https://api.example/v1", session=FakeHttp(FakeResponse({"text": ""}))
        )
        with pytest.raises(TranscriptionError):
            provider.transcribe(b"OggS", "a.ogg")

    def test_mock_provider_fails_then_succeeds(self):
        provider = MockTranscriptionProvider("done", fail_times=1)
        with pytest.raises(TranscriptionError):
            provider.transcribe(b"", "a.ogg")
        assert provider.transcribe(b"", "a.ogg") == "done"
        assert provider.calls == ["a.ogg", "a.ogg"]


class TestAcknowledgment:
    def test_reply_is_posted(self):
        http = FakeHttp()
        channel = ChatwootReplyChannel(
            "https://chat.example.com/", "3", "token", session=http
        )

        channel.send_reply("55", "thanks")

        url, kwargs = http.posts[0]
        assert url == "https://chat.example.com/api/v1/accounts/3/conversations/55/messages"
        assert kwargs["json"] == {"content": "thanks", "message_type": "outgoing"}
        assert kwargs["headers"] == {"api_access_token": "token"}

    def test_unconfigured_channel_raises(self):
        with pytest.raises(AcknowledgmentError):
            ChatwootReplyChannel(None, None, None).send_reply("55", "thanks")

    def test_transport_error_raises(self):
        channel = ChatwootReplyChannel(
            "https://chat.example.com",
            "3",
            "token",
            session=FakeHttp(exc=requests.Timeout("slow")),
        )
        with pytest.raises(AcknowledgmentError):
            channel.send_reply("55", "thanks")


def test_build_collaborators_requires_content_store():
    with pytest.raises(RuntimeError):
        build_collaborators(BufferSettings())


def test_build_collaborators_optional_services():
    collaborators = build_collaborators(
        BufferSettings(content_store_url="https://store.example/fn")
    )
    assert collaborators.identity is None
    assert collaborators.transcriber is None
    assert isinstance(collaborators.content_store, HttpContentStore)

    full = build_collaborators(
        BufferSettings(
            content_store_url="https://store.example/fn",
            identity_service_url="https://id.example/fn",
            transcription_api_url="https://api.example/v1",
        )
    )
    assert isinstance(full.identity, HttpIdentityResolver)
    assert isinstance(full.transcriber, HttpTranscriptionProvider)
