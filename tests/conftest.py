"""Pytest configuration and fixtures."""

from collections.abc import AsyncGenerator, Generator
from typing import Any
from unittest.mock import AsyncMock, patch

import pytest
from httpx import ASGITransport, AsyncClient

from hzpp_delays.main import app
from hzpp_delays.services.delays.channel import reset_route_channel
from hzpp_delays.services.delays.supervisor import reset_supervisor
from hzpp_delays.services.timetable.ingestion import reset_ingestion_job


@pytest.fixture(autouse=True)
def _reset_singletons() -> Generator[None, None, None]:
    """Reset singletons between tests."""
    yield
    reset_ingestion_job()
    reset_supervisor()
    reset_route_channel()


@pytest.fixture
def mock_db_connection() -> Any:
    """Mock database connection check."""
    with patch("hzpp_delays.main.check_database_connection", new_callable=AsyncMock) as mock:
        mock.return_value = True
        yield mock


@pytest.fixture
async def client(mock_db_connection: Any) -> AsyncGenerator[AsyncClient, None]:  # noqa: ARG001
    """Async HTTP client for testing."""
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac
