import json
import logging
import tempfile
from logging.handlers import TimedRotatingFileHandler
from pathlib import Path

import pytest
from fastapi import FastAPI, Request
from starlette.testclient import TestClient

from chatbuffer.app_logging import PIPELINE_LOGGER, _install_access_logging, init_logging


def _clear_handlers(name: str) -> logging.Logger:
    logger = logging.getLogger(name)
    logger.handlers.clear()
    return logger


@pytest.fixture
def log_dir(monkeypatch):
    with tempfile.TemporaryDirectory() as tmpdir:
        monkeypatch.setenv("LOG_DIR", tmpdir)
        yield Path(tmpdir)


def test_worker_logging_has_no_access_handler(log_dir, monkeypatch):
    monkeypatch.setenv("LOG_RETENTION_DAYS", "5")
    pipeline_logger = _clear_handlers(PIPELINE_LOGGER)
    access_logger = _clear_handlers("uvicorn.access")

    returned = init_logging()

    assert returned is pipeline_logger
    handler = next(
        h for h in pipeline_logger.handlers if isinstance(h, TimedRotatingFileHandler)
    )
    assert handler.when == "MIDNIGHT"
    assert handler.backupCount == 5
    assert access_logger.handlers == []

    pipeline_logger.handlers.clear()


def test_init_logging_is_idempotent(log_dir):
    pipeline_logger = _clear_handlers(PIPELINE_LOGGER)

    init_logging()
    init_logging()

    assert len(pipeline_logger.handlers) == 1
    pipeline_logger.handlers.clear()


def test_app_logging_replaces_access_handlers(log_dir):
    access_logger = _clear_handlers("uvicorn.access")
    stream_handler = logging.StreamHandler()
    access_logger.addHandler(stream_handler)

    init_logging(FastAPI())

    assert stream_handler not in access_logger.handlers
    assert any(isinstance(h, TimedRotatingFileHandler) for h in access_logger.handlers)
    access_logger.handlers.clear()
    logging.getLogger(PIPELINE_LOGGER).handlers.clear()


def test_log_files_and_redaction(log_dir, app_factory):
    _clear_handlers(PIPELINE_LOGGER)
    _clear_handlers("uvicorn.access")
    app = app_factory(log_dir, log_request_bodies=True)

    child = logging.getLogger("chatbuffer.buffering.manager")
    child.info("buffered message m1")

    with TestClient(app) as client:
        resp = client.post(
            "/echo",
            json={"api_access_token": "secret", "value": 1},
            headers={"Authorization": "Bearer secret"},
        )
        assert resp.status_code == 200

    for name in (PIPELINE_LOGGER, "uvicorn.access"):
        for handler in logging.getLogger(name).handlers:
            handler.flush()

    pipeline_log = log_dir / "chatbuffer.log"
    access_log = log_dir / "access.log"

    assert "buffered message m1" in pipeline_log.read_text()
    access_line = access_log.read_text().splitlines()[-1]
    data = json.loads(access_line.split(": ", 1)[1])
    assert data["headers"]["authorization"] == "***"
    assert data["body"]["api_access_token"] == "***"
    assert data["body"]["value"] == 1

    logging.getLogger(PIPELINE_LOGGER).handlers.clear()
    logging.getLogger("uvicorn.access").handlers.clear()


def test_access_logging_request_id_and_skipped_paths(caplog):
    app = FastAPI()

    @app.post("/echo")
    async def echo(request: Request):
        return {"rid": request.state.request_id}

    @app.get("/api/health")
    async def health():  # pragma: no cover - simple
        return {"status": "ok"}

    _install_access_logging(app)

    with (
        TestClient(app) as client,
        caplog.at_level(logging.INFO, logger="uvicorn.access"),
    ):
        resp = client.post("/echo", json={}, headers={"X-Request-Id": "abc"})

        assert resp.headers["X-Request-Id"] == "abc"
        assert resp.json() == {"rid": "abc"}
        assert json.loads(caplog.records[0].getMessage())["request_id"] == "abc"

        caplog.clear()
        client.get("/api/health")
        assert len(caplog.records) == 0
