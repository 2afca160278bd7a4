import json
import logging

import pytest
from sqlalchemy import create_engine, inspect

from chatbuffer import worker
from chatbuffer.app_logging import PIPELINE_LOGGER
from chatbuffer.buffering import store
from chatbuffer.config import reset_settings_cache

from conftest import T0


@pytest.fixture(autouse=True)
def worker_env(monkeypatch, tmp_path, db_url):
    monkeypatch.setenv("LOG_DIR", str(tmp_path / "logs"))
    monkeypatch.setenv("DATABASE_URL", db_url)
    reset_settings_cache()
    yield
    reset_settings_cache()
    logging.getLogger(PIPELINE_LOGGER).handlers.clear()


def test_init_db_creates_tables(monkeypatch, tmp_path):
    url = f"sqlite+pysqlite:///{tmp_path / 'fresh.db'}"
    monkeypatch.setenv("DATABASE_URL", url)
    reset_settings_cache()

    assert worker.main(["init-db"]) == 0

    tables = set(inspect(create_engine(url)).get_table_names())
    assert {
        "message_buffers",
        "buffered_messages",
        "processing_jobs",
        "conversation_states",
        "transcriptions",
    } <= tables


def test_once_prints_summary(monkeypatch, pipeline, clock, inbound, capsys):
    monkeypatch.setattr(worker, "get_pipeline", lambda: pipeline)
    pipeline.manager.handle_incoming_message(inbound("m1"))
    clock.advance(seconds=30)

    assert worker.main(["once"]) == 0

    summary = json.loads(capsys.readouterr().out)
    assert summary == {
        "processed": 1,
        "failed": 0,
        "skipped": 0,
        "transcriptions_retried": 0,
    }


def test_once_exit_code_reflects_failures(
    monkeypatch, pipeline, clock, inbound, acknowledgment, capsys
):
    monkeypatch.setattr(worker, "get_pipeline", lambda: pipeline)
    acknowledgment.error = RuntimeError("boom")
    pipeline.manager.handle_incoming_message(inbound("m1"))
    clock.advance(seconds=30)

    assert worker.main(["once"]) == 1
    assert json.loads(capsys.readouterr().out)["failed"] == 1


def test_purge_deletes_old_buffers(session_factory, capsys):
    with session_factory.begin() as session:
        buffer = store.create_buffer(session, "conv-1", "user-1", T0)
        job = store.reschedule_job(session, buffer.id, T0, T0)
        store.claim(session, job.id, buffer.id)
        store.complete_buffer(session, buffer.id, T0)
        buffer_id = buffer.id

    assert worker.main(["purge", "--days", "30"]) == 0

    assert json.loads(capsys.readouterr().out)["purged"] == 1
    with session_factory() as session:
        assert store.get_buffer(session, buffer_id) is None


def test_unknown_command_exits():
    with pytest.raises(SystemExit):
        worker.main(["explode"])
