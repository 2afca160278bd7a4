from datetime import datetime, timezone

import pytest

from chatbuffer.channels import ChatwootAdapter, get_adapter


def _payload(**overrides):
    payload = {
        "event": "message_created",
        "id": 901,
        "content": "hello from whatsapp",
        "content_type": "text",
        "message_type": "incoming",
        "private": False,
        "created_at": "2024-05-01T12:00:00Z",
        "sender": {"id": 42, "name": "Ana", "phone_number": "+5511999990000"},
        "conversation": {"id": 55, "status": "open", "channel": "Channel::Whatsapp"},
        "account": {"id": 3},
        "attachments": [],
    }
    payload.update(overrides)
    return payload


def test_registry_lookup_is_case_insensitive():
    assert get_adapter("Chatwoot") is ChatwootAdapter
    with pytest.raises(KeyError):
        get_adapter("telegram")


def test_incoming_message_is_mapped():
    (message,) = ChatwootAdapter().parse_incoming(_payload(), {}, {})

    assert message.external_message_id == "901"
    assert message.content == "hello from whatsapp"
    assert message.sender.id == "42"
    assert message.sender.phone == "+5511999990000"
    assert message.conversation.id == "55"
    assert message.account_id == "3"
    assert message.received_at == datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)


def test_attachments_are_mapped():
    payload = _payload(
        content=None,
        created_at=1714564800,
        attachments=[
            {
                "data_url": "http:///rails/active_storage/blobs/voice.oga",
                "file_type": "audio",
                "file_size": 2048,
            }
        ],
    )

    (message,) = ChatwootAdapter().parse_incoming(payload, {}, {})

    attachment = message.attachments[0]
    assert attachment.url == "http:///rails/active_storage/blobs/voice.oga"
    assert attachment.content_type == "audio"
    assert attachment.size == 2048
    assert message.received_at == datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)


@pytest.mark.parametrize(
    "overrides",
    [
        {"event": "conversation_updated"},
        {"message_type": "outgoing"},
        {"message_type": 1},
        {"private": True},
        {"sender": {}},
    ],
)
def test_non_customer_payloads_are_ignored(overrides):
    assert list(ChatwootAdapter().parse_incoming(_payload(**overrides), {}, {})) == []


def test_signature_verification():
    adapter = ChatwootAdapter()
    config = {"webhook_token": "s3cret"}

    assert adapter.verify_signature(b"{}", {}, {})
    assert adapter.verify_signature(b"{}", {"X-Chatwoot-Token": "s3cret"}, config)
    assert not adapter.verify_signature(b"{}", {"X-Chatwoot-Token": "nope"}, config)
    assert not adapter.verify_signature(b"{}", {}, config)
