"""Message intake, buffer inspection and poll-trigger routes."""

from __future__ import annotations

import logging
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, status

from ..__version__ import __version__
from ..buffering.types import BufferResult, InboundMessage, summarize
from ..errors import StaleBufferError, UserResolutionError
from ..pipeline import Pipeline, get_pipeline
from . import schemas

logger = logging.getLogger(__name__)

router = APIRouter(tags=["buffer"])


def accepted(result: BufferResult) -> schemas.BufferAccepted:
    return schemas.BufferAccepted(
        buffer_id=result.buffer_id,
        job_id=result.job_id,
        action=result.action,
        message_count=result.message_count,
        scheduled_for=result.scheduled_for,
        message_type=result.message_type.value,
    )


def buffer_message(pipeline: Pipeline, message: InboundMessage) -> BufferResult:
    """Hand ``message`` to the manager, mapping pipeline errors to HTTP codes."""

    try:
        return pipeline.manager.handle_incoming_message(message)
    except UserResolutionError as exc:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc)
        ) from exc
    except StaleBufferError as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc


@router.post(
    "/api/buffer/messages",
    response_model=schemas.BufferAccepted,
    status_code=status.HTTP_202_ACCEPTED,
)
def submit_message(
    message: InboundMessage, pipeline: Pipeline = Depends(get_pipeline)
) -> schemas.BufferAccepted:
    return accepted(buffer_message(pipeline, message))


@router.get("/api/buffer/{buffer_id}", response_model=schemas.BufferDetail)
def get_buffer(buffer_id: UUID, pipeline: Pipeline = Depends(get_pipeline)) -> schemas.BufferDetail:
    buffer = pipeline.manager.get_buffer(buffer_id)
    if buffer is None:
        raise HTTPException(status_code=404, detail="Buffer not found")
    return schemas.BufferDetail.model_validate(buffer)


@router.get("/api/buffer/{buffer_id}/messages", response_model=schemas.BufferedMessageList)
def list_messages(
    buffer_id: UUID, pipeline: Pipeline = Depends(get_pipeline)
) -> schemas.BufferedMessageList:
    if pipeline.manager.get_buffer(buffer_id) is None:
        raise HTTPException(status_code=404, detail="Buffer not found")
    rows = pipeline.manager.list_buffered_messages(buffer_id)
    return schemas.BufferedMessageList(
        buffer_id=buffer_id,
        items=[schemas.BufferedMessageOut.model_validate(row) for row in rows],
        total=len(rows),
    )


@router.post("/api/buffer/process", response_model=schemas.PollResult)
def process_due(pipeline: Pipeline = Depends(get_pipeline)) -> schemas.PollResult:
    """Run one polling pass; meant for an external scheduler such as cron."""

    outcomes = pipeline.poller.poll_due_jobs()
    retried = pipeline.poller.retry_transcriptions()
    summary = summarize(outcomes)
    return schemas.PollResult(
        processed=summary.processed,
        failed=summary.failed,
        skipped=summary.skipped,
        transcriptions_retried=len(retried),
        results=[outcome.to_dict() for outcome in outcomes],
    )


@router.get("/api/health")
def health() -> dict[str, str]:
    return {"status": "ok", "version": __version__}
