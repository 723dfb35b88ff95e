from typing import Any

from fastapi import APIRouter, Request, Response
from loguru import logger

from task_api.app.core import SERVICE_NAME

health_router = APIRouter(tags=["Health"])


def _log(event: str, **kwargs: Any) -> None:
    logger.bind(service_name=SERVICE_NAME, event=event, **kwargs).info("")


@health_router.get(
    "/health/live",
    summary="Liveness probe",
    description="Returns 200 if the API process is running.",
    responses={200: {"description": "Service is alive."}},
)
async def live() -> dict:
    return {"status": "ok"}


@health_router.get(
    "/health/ready",
    summary="Readiness probe",
    description="Returns 200 only when the publisher is connected and the task queue is declared.",
    responses={
        200: {"description": "Publisher is ready."},
        503: {"description": "Publisher missing or not ready."},
    },
)
async def ready(request: Request) -> Response:
    publisher = getattr(request.app.state, "publisher", None)
    if publisher is None:
        _log("components_not_initialized")
        return Response(status_code=503, content="Not ready")
    if not publisher.ready:
        _log("publisher_not_ready")
        return Response(status_code=503, content="Publisher not ready")
    return Response(status_code=200, content="OK")
