from datetime import datetime, timedelta, timezone

import pytest
from fastapi.testclient import TestClient

from src.cellmatch.config import Settings
from src.cellmatch.main import create_app
from src.cellmatch.services.container import build_container


class FakeClock:
    """Manually advanced clock shared by stores under test."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2025, 3, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> datetime:
        self.now = self.now + timedelta(seconds=seconds)
        return self.now


@pytest.fixture
def anyio_backend():
    return "asyncio"


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def fast_settings() -> Settings:
    """In-memory settings with short refresh and expansion windows for async tests."""
    return Settings(
        storage_backend="memory",
        sweeper_enabled=False,
        count_refresh_seconds=0.5,
        requests_refresh_seconds=0.5,
        expansion_wait_seconds=0.2,
    )


@pytest.fixture
def api_client(fast_settings: Settings) -> TestClient:
    app = create_app(fast_settings, build_container(fast_settings))
    return TestClient(app)
