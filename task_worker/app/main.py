"""Worker entrypoint: `python -m task_worker.app.main [--role processor|dead-letter-monitor]`."""
from __future__ import annotations

import argparse
import asyncio
import os
import signal
from typing import Any

from loguru import logger

from task_worker.app.composition import WorkerDependencies, create_worker_dependencies
from task_worker.app.constants import WorkerRole
from task_worker.app.core import SERVICE_NAME
from task_worker.app.core.logging import configure_logging


def _log(event: str, **kwargs: Any) -> None:
    logger.bind(service_name=SERVICE_NAME, event=event, **kwargs).info("")


async def run_worker(deps: WorkerDependencies) -> None:
    await deps.connect()
    consumer = deps.consumer
    consumer_task = asyncio.create_task(consumer.run())

    def request_shutdown() -> None:
        if not consumer.shutdown.is_set():
            _log("shutdown_signal")
            consumer.shutdown.set()

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, request_shutdown)
        except NotImplementedError:
            pass

    _log("worker_started", role=deps.role)
    try:
        await consumer_task
    finally:
        await deps.close()
        _log("worker_stopped", role=deps.role)


def _parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(prog="task-worker")
    parser.add_argument(
        "--role",
        choices=[WorkerRole.PROCESSOR, WorkerRole.DEAD_LETTER_MONITOR],
        default=os.environ.get("WORKER_ROLE", WorkerRole.PROCESSOR),
    )
    return parser.parse_args(argv)


def main(argv: list[str] | None = None) -> None:
    args = _parse_args(argv)
    deps = create_worker_dependencies(role=args.role)
    configure_logging(deps.settings.log_level, serialize=deps.settings.log_json)
    try:
        asyncio.run(run_worker(deps))
    except KeyboardInterrupt:
        _log("worker_interrupted")
    except Exception as e:
        logger.exception("worker failed: {}", e)
        raise


if __name__ == "__main__":
    main()
