"""Request-scoped access to the application's service container."""

from __future__ import annotations

from fastapi.requests import HTTPConnection

from ..services.container import ServiceContainer


def get_container(connection: HTTPConnection) -> ServiceContainer:
    return connection.app.state.container
