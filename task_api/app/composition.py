"""
Composition root: single place where concrete implementations are wired.

Builds settings and publisher from config; provides connect/close lifecycle. Used by
lifespan to populate app.state. Explicit wiring only; the backend
(e.g. publisher_backend=inmemory) is driven by settings.
"""

from task_api.app.config.settings import Settings
from task_api.app.infrastructure.messaging.factory import create_publisher
from task_api.app.ports.message_publisher import MessagePublisher


class AppDependencies:
    """Holds wired dependencies and their lifecycle. Built only in composition root."""

    def __init__(self, *, settings: Settings, publisher: MessagePublisher) -> None:
        self._settings = settings
        self._publisher = publisher
        self._publisher_connected = False

    @property
    def settings(self) -> Settings:
        return self._settings

    @property
    def publisher(self) -> MessagePublisher:
        return self._publisher

    async def connect(self) -> None:
        await self._publisher.connect()
        self._publisher_connected = True

    async def close(self) -> None:
        if self._publisher_connected:
            await self._publisher.close()
            self._publisher_connected = False


def create_app_dependencies(settings: Settings | None = None) -> AppDependencies:
    """Caller owns lifecycle (connect/close)."""
    _settings = settings or Settings()
    return AppDependencies(settings=_settings, publisher=create_publisher(_settings))
