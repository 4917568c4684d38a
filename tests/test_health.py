import pytest
from unittest.mock import AsyncMock
from sqlalchemy.exc import OperationalError

from blood_logistics.main import app
from blood_logistics.models.database import get_db


@pytest.mark.asyncio
async def test_health_check_success(client):
    """Test successful health check."""
    response = await client.get("/api/v1/health/")

    assert response.status_code == 200
    data = response.json()
    assert data["status"] == "healthy"
    assert data["database_status"] == "healthy"
    assert "uptime_seconds" in data
    assert "version" in data


@pytest.mark.asyncio
async def test_health_check_database_failure(client):
    """Test health check with database failure."""
    async def _broken_db():
        session = AsyncMock()
        session.execute.side_effect = OperationalError("SELECT 1", {}, Exception("Database connection failed"))
        yield session

    app.dependency_overrides[get_db] = _broken_db

    response = await client.get("/api/v1/health/")
    assert response.status_code == 200
    data = response.json()
    assert data["status"] == "degraded"
    assert data["database_status"] == "unhealthy"
    assert "Database connection failed" not in response.text

    response = await client.get("/api/v1/health/ready")
    assert response.status_code == 503
    assert response.json() == {"status": "error", "message": "Service not ready"}


@pytest.mark.asyncio
async def test_liveness_and_readiness(client):
    response = await client.get("/api/v1/health/live")
    assert response.status_code == 200
    assert response.json()["status"] == "alive"

    response = await client.get("/api/v1/health/ready")
    assert response.status_code == 200
    assert response.json()["status"] == "ready"


@pytest.mark.asyncio
async def test_prometheus_metrics_exposed(client):
    await client.get("/api/v1/blood/units")

    response = await client.get("/api/v1/health/metrics")

    assert response.status_code == 200
    assert response.headers["content-type"].startswith("text/plain")
    assert "http_requests_total" in response.text
    assert "api_errors_total" in response.text


@pytest.mark.asyncio
async def test_version_and_root(client):
    response = await client.get("/api/v1/health/version")
    assert response.status_code == 200
    assert response.json()["api_version"] == "/api/v1"

    response = await client.get("/")
    assert response.json()["status"] == "running"
