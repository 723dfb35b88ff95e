"""Processor that hands each task to an HTTP endpoint (httpx)."""
from __future__ import annotations

import httpx

from task_worker.app.domain.models import TaskMessage
from task_worker.app.ports.task_processor import TaskProcessingError


class HttpTaskProcessor:
    """POSTs the task as JSON; any 2xx is success, everything else is a failure."""

    def __init__(
        self,
        client: httpx.AsyncClient,
        endpoint_url: str,
        *,
        connect_timeout_seconds: float = 5.0,
        read_timeout_seconds: float = 15.0,
    ) -> None:
        if not endpoint_url:
            raise ValueError("endpoint_url is required for the http processor")
        self._client = client
        self._endpoint_url = endpoint_url
        self._timeout = httpx.Timeout(
            connect=connect_timeout_seconds,
            read=read_timeout_seconds,
            write=read_timeout_seconds,
            pool=connect_timeout_seconds,
        )

    async def process(self, task: TaskMessage, *, attempt: int) -> None:
        body = dict(task.to_dict(), attempt=attempt)
        try:
            response = await self._client.post(
                self._endpoint_url,
                json=body,
                timeout=self._timeout,
                headers={"X-Task-Id": task.task_id, "X-Task-Attempt": str(attempt)},
            )
            response.raise_for_status()
        except httpx.TimeoutException as exc:
            raise TaskProcessingError(f"timeout while processing task {task.task_id}") from exc
        except httpx.HTTPStatusError as exc:
            raise TaskProcessingError(
                f"http status {exc.response.status_code} for task {task.task_id}"
            ) from exc
        except httpx.HTTPError as exc:
            raise TaskProcessingError(f"http processing failed for task {task.task_id}: {exc}") from exc

    async def close(self) -> None:
        await self._client.aclose()
