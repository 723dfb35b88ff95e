"""ASGI entrypoint: `uvicorn task_api.app.main:app`."""
from contextlib import asynccontextmanager

from fastapi import FastAPI
from loguru import logger

from task_api.app.composition import AppDependencies, create_app_dependencies
from task_api.app.core import SERVICE_NAME
from task_api.app.core.logging import configure_logging
from task_api.app.routers.health import health_router
from task_api.app.routers.tasks import tasks_router


def create_app(deps: AppDependencies | None = None) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        dependencies = deps or create_app_dependencies()
        configure_logging(dependencies.settings.log_level, serialize=dependencies.settings.log_json)
        logger.bind(service_name=SERVICE_NAME, event="api_starting").info("")
        try:
            await dependencies.connect()
            app.state.settings = dependencies.settings
            app.state.publisher = dependencies.publisher
            yield
        finally:
            logger.bind(service_name=SERVICE_NAME, event="api_stopping").info("")
            await dependencies.close()

    app = FastAPI(
        title="Task Submission API",
        version="0.1.0",
        lifespan=lifespan,
    )
    app.include_router(health_router)
    app.include_router(tasks_router)
    return app


app = create_app()
