"""Webhook ingestion routes for external chat platforms."""

from __future__ import annotations

import json
import logging

from fastapi import APIRouter, Depends, HTTPException, Request, status
from pydantic import ValidationError

from ..channels import get_adapter
from ..config import get_settings
from ..pipeline import Pipeline, get_pipeline
from . import schemas
from .buffer import accepted, buffer_message

logger = logging.getLogger(__name__)

router = APIRouter(tags=["webhooks"])


@router.post(
    "/api/webhooks/{channel}",
    response_model=schemas.WebhookAccepted,
    status_code=status.HTTP_202_ACCEPTED,
)
async def receive_webhook(
    channel: str, request: Request, pipeline: Pipeline = Depends(get_pipeline)
) -> schemas.WebhookAccepted:
    try:
        adapter = get_adapter(channel)()
    except KeyError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc

    body = await request.body()
    config = {"webhook_token": get_settings().chat_webhook_token}
    if not adapter.verify_signature(body, request.headers, config):
        raise HTTPException(status_code=401, detail="Invalid webhook signature")
    try:
        payload = json.loads(body or b"{}")
    except ValueError as exc:
        raise HTTPException(status_code=400, detail="Invalid JSON payload") from exc

    try:
        messages = list(adapter.parse_incoming(payload, request.headers, config))
    except ValidationError as exc:
        raise HTTPException(status_code=422, detail=str(exc)) from exc
    if not messages:
        logger.debug("Ignoring %s webhook without customer messages", channel)

    results = [accepted(buffer_message(pipeline, message)) for message in messages]
    return schemas.WebhookAccepted(accepted=len(results), results=results)
