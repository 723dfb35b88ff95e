"""Opens the terminal failure record collection: connect, ping, ensure indexes."""
from __future__ import annotations

from typing import Any

from loguru import logger
from motor.motor_asyncio import AsyncIOMotorClient

from task_common.retry import RetrySchedule, retry_async
from task_worker.app.config.settings import Settings
from task_worker.app.core import SERVICE_NAME
from task_worker.app.infrastructure.persistence.mongo.mongo_failure_record_sink import MongoFailureRecordSink


def _log(event: str, **kwargs: Any) -> None:
    logger.bind(service_name=SERVICE_NAME, event=event, **kwargs).info("")


def mongo_uri(settings: Settings) -> str:
    host = f"{settings.database_host}:{settings.database_port}"
    if settings.database_user and settings.database_password:
        return f"mongodb://{settings.database_user}:{settings.database_password}@{host}"
    return f"mongodb://{host}"


async def open_failure_record_sink(
    settings: Settings,
    *,
    client_factory: Any = AsyncIOMotorClient,
) -> MongoFailureRecordSink:
    """
    Return a sink over DATABASE_NAME.DATABASE_COLLECTION with its indexes in place.

    Each attempt builds a fresh client and pings it; a client that fails the ping is
    closed before the next attempt. Attempts follow the connection retry settings.
    """

    async def _attempt() -> MongoFailureRecordSink:
        client = client_factory(
            mongo_uri(settings),
            serverSelectionTimeoutMS=settings.database_connection_timeout_ms,
            tz_aware=True,
        )
        sink = MongoFailureRecordSink(
            client[settings.database_name][settings.database_collection],
            client=client,
        )
        try:
            await client.admin.command("ping")
            await sink.ensure_indexes()
        except Exception:
            await sink.close()
            raise
        return sink

    def _on_retry(attempt: int, delay: float, exc: BaseException) -> None:
        logger.warning("mongo attempt {} failed, retrying in {}s: {}", attempt, delay, exc)

    _log("mongo_connecting", database=settings.database_name, collection=settings.database_collection)
    sink = await retry_async(_attempt, RetrySchedule.from_settings(settings), on_retry=_on_retry)
    _log("mongo_sink_ready", database=settings.database_name, collection=settings.database_collection)
    return sink
