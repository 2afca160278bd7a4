"""FastAPI application wiring for the chat buffering service.

Routes:

- ``POST /api/buffer/messages`` and ``POST /api/webhooks/{channel}`` accept
  inbound messages and return the buffer they landed in.
- ``GET /api/buffer/{id}`` and ``GET /api/buffer/{id}/messages`` expose buffer
  state for operators.
- ``POST /api/buffer/process`` runs one polling pass, for deployments that
  trigger processing from an external scheduler instead of the worker.
- ``GET /api/health`` and ``GET /api/metrics`` (Prometheus).
"""

from __future__ import annotations

import logging

from fastapi import FastAPI
from prometheus_fastapi_instrumentator import Instrumentator

from .__version__ import __version__
from .app_logging import init_logging
from .routers import buffer, webhooks

logger = logging.getLogger(__name__)


def create_app() -> FastAPI:
    app = FastAPI(title="chatbuffer", version=__version__)
    init_logging(app)
    app.include_router(buffer.router)
    app.include_router(webhooks.router)

    # Expose Prometheus metrics
    Instrumentator().instrument(app).expose(
        app, include_in_schema=False, endpoint="/api/metrics"
    )
    return app


app = create_app()
