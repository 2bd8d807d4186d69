"""Tests for health endpoint."""

from typing import Any

import pytest
from httpx import AsyncClient


@pytest.mark.asyncio
async def test_health_endpoint_returns_200(client: AsyncClient) -> None:
    """Test that health endpoint returns 200 with expected fields."""
    response = await client.get("/health")

    assert response.status_code == 200

    data = response.json()
    assert data["service"] == "HZPP Delay Stats"
    assert data["status"] == "healthy"
    assert "version" in data
    assert "environment" in data
    assert "timestamp" in data
    assert data["checks"]["database"] is True
    monitors = data["checks"]["monitors"]
    assert monitors["supervisorRunning"] is False
    assert monitors["activeMonitors"] == 0
    assert monitors["outcomes"] == {}
    assert monitors["queuedBatches"] == 0
    ingestion = data["checks"]["ingestion"]
    assert ingestion["jobRunning"] is False
    assert ingestion["runCount"] == 0
    assert ingestion["lastRunAt"] is None
    assert data["issues"] == []


@pytest.mark.asyncio
async def test_health_endpoint_includes_version(client: AsyncClient) -> None:
    response = await client.get("/health")

    assert response.json()["version"] == "0.1.0"


@pytest.mark.asyncio
async def test_health_degraded_without_database(
    client: AsyncClient, mock_db_connection: Any
) -> None:
    mock_db_connection.return_value = False

    response = await client.get("/health")
    data = response.json()

    assert data["status"] == "degraded"
    assert "Database is not reachable" in data["issues"]


@pytest.mark.asyncio
async def test_health_endpoint_has_request_id_header(client: AsyncClient) -> None:
    """Test that health endpoint response includes X-Request-ID header."""
    response = await client.get("/health")

    assert "X-Request-ID" in response.headers
    assert len(response.headers["X-Request-ID"]) > 0


@pytest.mark.asyncio
async def test_health_endpoint_echoes_request_id(client: AsyncClient) -> None:
    response = await client.get("/health", headers={"X-Request-ID": "abc-123"})

    assert response.headers["X-Request-ID"] == "abc-123"
