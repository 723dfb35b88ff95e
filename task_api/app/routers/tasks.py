from __future__ import annotations

import json
from datetime import datetime, timezone
from typing import Any

from fastapi import APIRouter, Request, Response
from loguru import logger
from pydantic import ValidationError

from task_api.app.constants import ACCEPTED_MESSAGE, RejectionReason
from task_api.app.core import SERVICE_NAME
from task_api.app.routers.utils import internal_error_response, json_response, missing_or_blank
from task_api.app.schemas.tasks import (
    BadRequestResponse,
    ServiceUnavailableResponse,
    TaskSubmitRequest,
    TaskSubmitResponse,
)
from task_api.app.services.enqueue_task import enqueue_task


def _log(event: str, **kwargs: Any) -> None:
    logger.bind(service_name=SERVICE_NAME, event=event, **kwargs).info("")


tasks_router = APIRouter(prefix="/tasks", tags=["Tasks"])


def _bad_request(reason: str, message: str) -> Response:
    _log("submission_rejected", reason=reason)
    return json_response(400, BadRequestResponse(reason=reason, message=message))


def _unavailable(reason: str, **kwargs: Any) -> Response:
    logger.bind(service_name=SERVICE_NAME, event="publish_failed", reason=reason, **kwargs).warning("")
    return json_response(503, ServiceUnavailableResponse(reason=reason))


def _parse_submission(raw: bytes) -> TaskSubmitRequest | Response:
    try:
        body = json.loads(raw or b"{}")
    except (UnicodeDecodeError, json.JSONDecodeError):
        return _bad_request(RejectionReason.INVALID_JSON, "request body must be valid JSON")
    if not isinstance(body, dict):
        return _bad_request(RejectionReason.INVALID_BODY, "request body must be a JSON object")
    if missing_or_blank(body, "taskId"):
        return _bad_request(RejectionReason.TASK_ID_REQUIRED, "taskId is required")
    if "payload" not in body:
        return _bad_request(RejectionReason.PAYLOAD_REQUIRED, "payload is required and must be a valid JSON value")
    try:
        return TaskSubmitRequest.model_validate(body)
    except ValidationError:
        return _bad_request(RejectionReason.INVALID_BODY, "taskId must be a non-empty string")


@tasks_router.post(
    "",
    summary="Submit a task for asynchronous processing",
    description="Accepts {taskId, payload}, stamps submittedAt and enqueues the task. Returns 202 with the generated message id; processing and retries happen in the worker.",
    responses={
        202: {"description": "Task accepted and queued."},
        400: {"description": "Malformed body; `reason` says which check failed."},
        500: {"description": "Unexpected internal fault."},
        503: {"description": "Publisher or queue unavailable; try again later."},
    },
)
async def submit_task(request: Request) -> Response:
    try:
        parsed = _parse_submission(await request.body())
        if isinstance(parsed, Response):
            return parsed

        publisher = getattr(request.app.state, "publisher", None)
        if publisher is None:
            return _unavailable(RejectionReason.PUBLISHER_NOT_READY, task_id=parsed.task_id)

        outcome = await enqueue_task(parsed.task_id, parsed.payload, publisher)
        if outcome.success:
            _log("task_accepted", task_id=outcome.task_id, message_id=outcome.message_id)
            return json_response(
                202,
                TaskSubmitResponse(
                    message=ACCEPTED_MESSAGE,
                    task_id=outcome.task_id,
                    message_id=outcome.message_id or "",
                    timestamp=datetime.now(tz=timezone.utc).isoformat(),
                ),
            )
        if outcome.is_unavailable:
            return _unavailable(outcome.error or "", task_id=outcome.task_id, message_id=outcome.message_id)
        logger.error("publish failed for task {}: {}", outcome.task_id, outcome.error)
        return internal_error_response()
    except Exception as e:
        logger.exception("task submission failed: {}", e)
        return internal_error_response()
