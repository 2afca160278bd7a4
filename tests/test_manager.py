from datetime import timedelta

import pytest

from chatbuffer.buffering import store
from chatbuffer.buffering.manager import BufferManager
from chatbuffer.buffering.types import BufferStatus, JobStatus, MessageType
from chatbuffer.errors import UserResolutionError
from chatbuffer.models import BufferedMessage, MessageBuffer

from conftest import T0, FakeIdentity


def test_burst_coalesces_into_one_buffer(pipeline, clock, inbound):
    first = pipeline.manager.handle_incoming_message(inbound("m1"))
    clock.advance(seconds=5)
    second = pipeline.manager.handle_incoming_message(inbound("m2"))
    clock.advance(seconds=5)
    third = pipeline.manager.handle_incoming_message(inbound("m3"))

    assert first.action == "created"
    assert second.action == third.action == "appended"
    assert first.buffer_id == second.buffer_id == third.buffer_id
    assert third.message_count == 3
    assert third.scheduled_for == T0 + timedelta(seconds=40)

    with pipeline.session_factory() as session:
        jobs = store.list_jobs(session, first.buffer_id)
        buffer = store.get_buffer(session, first.buffer_id)
        state = store.get_conversation_state(session, "conv-1")

    assert [job.status for job in jobs] == [
        JobStatus.CANCELLED.value,
        JobStatus.CANCELLED.value,
        JobStatus.SCHEDULED.value,
    ]
    assert jobs[-1].id == third.job_id
    assert buffer.status == BufferStatus.ACTIVE.value
    assert buffer.buffer_start_time == T0
    assert buffer.last_message_time == T0 + timedelta(seconds=10)
    assert state.active_buffer_id == first.buffer_id
    assert state.state == "buffering"
    assert state.message_count == 3
    assert state.user_id == "user-1"


def test_messages_are_kept_in_arrival_order(pipeline, clock, inbound):
    result = pipeline.manager.handle_incoming_message(inbound("m1", "first"))
    clock.advance(seconds=1)
    pipeline.manager.handle_incoming_message(inbound("m2", "second"))

    rows = pipeline.manager.list_buffered_messages(result.buffer_id)
    assert [row.external_message_id for row in rows] == ["m1", "m2"]
    assert [row.content for row in rows] == ["first", "second"]
    assert all(not row.processed for row in rows)
    assert rows[0].sent_at == T0
    assert rows[1].received_at == T0 + timedelta(seconds=1)


def test_deadline_is_clamped_to_safety_ceiling(pipeline, clock, inbound):
    result = None
    for index in range(12):
        result = pipeline.manager.handle_incoming_message(inbound(f"m{index}"))
        clock.advance(seconds=25)

    assert clock.now == T0 + timedelta(seconds=300)
    assert result.message_count == 12
    assert result.scheduled_for == T0 + timedelta(seconds=300)


def test_message_after_ceiling_opens_new_buffer(pipeline, clock, inbound):
    first = pipeline.manager.handle_incoming_message(inbound("m1"))
    clock.advance(seconds=300)
    second = pipeline.manager.handle_incoming_message(inbound("m2"))

    assert second.action == "created"
    assert second.buffer_id != first.buffer_id
    assert second.message_count == 1
    assert second.scheduled_for == T0 + timedelta(seconds=330)

    with pipeline.session_factory() as session:
        state = store.get_conversation_state(session, "conv-1")
    assert state.active_buffer_id == second.buffer_id


def test_conversations_are_buffered_independently(pipeline, inbound):
    a = pipeline.manager.handle_incoming_message(inbound("m1", conversation_id="a"))
    b = pipeline.manager.handle_incoming_message(inbound("m2", conversation_id="b"))

    assert a.buffer_id != b.buffer_id
    assert a.action == b.action == "created"


def test_attachment_type_overrides_declared_type(pipeline, inbound):
    result = pipeline.manager.handle_incoming_message(
        inbound(
            "m1",
            None,
            declared_type="text",
            attachments=[
                {"url": "https://cdn.example.com/voice.ogg", "content_type": "audio/ogg"}
            ],
        )
    )

    assert result.message_type is MessageType.AUDIO
    rows = pipeline.manager.list_buffered_messages(result.buffer_id)
    assert rows[0].message_type == "audio"
    assert rows[0].declared_type == "text"
    assert rows[0].attachments[0]["content_type"] == "audio/ogg"


def test_unresolvable_sender_is_rejected(pipeline, identity, inbound):
    identity.user_id = None

    with pytest.raises(UserResolutionError):
        pipeline.manager.handle_incoming_message(inbound("m1"))

    with pipeline.session_factory() as session:
        assert session.query(MessageBuffer).count() == 0
        assert session.query(BufferedMessage).count() == 0


def test_recorded_owner_is_used_when_identity_fails(pipeline, identity, inbound):
    first = pipeline.manager.handle_incoming_message(inbound("m1"))
    identity.user_id = None

    second = pipeline.manager.handle_incoming_message(inbound("m2"))

    assert second.buffer_id == first.buffer_id
    assert identity.calls == ["conv-1", "conv-1"]
    buffer = pipeline.manager.get_buffer(first.buffer_id)
    assert buffer.user_id == "user-1"


def test_manager_without_identity_needs_recorded_owner(
    session_factory, settings, clock, inbound
):
    manager = BufferManager(session_factory, None, settings=settings, clock=clock)

    with pytest.raises(UserResolutionError):
        manager.handle_incoming_message(inbound("m1"))

    BufferManager(
        session_factory, FakeIdentity("user-9"), settings=settings, clock=clock
    ).handle_incoming_message(inbound("m2"))
    result = manager.handle_incoming_message(inbound("m3"))
    assert result.message_count == 2


def test_get_buffer_includes_jobs(pipeline, clock, inbound):
    result = pipeline.manager.handle_incoming_message(inbound("m1"))
    clock.advance(seconds=3)
    pipeline.manager.handle_incoming_message(inbound("m2"))

    buffer = pipeline.manager.get_buffer(result.buffer_id)
    assert len(buffer.jobs) == 2
    assert pipeline.manager.get_buffer(result.job_id) is None
