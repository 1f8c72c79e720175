"""
Health Check API Tests
"""

import pytest
from httpx import AsyncClient

pytestmark = pytest.mark.api


class TestHealthCheck:
    """Test health check endpoints."""

    @pytest.mark.asyncio
    async def test_health_check(self, client: AsyncClient):
        """Test that health check endpoint returns 200."""
        response = await client.get("/api/v1/health")

        assert response.status_code == 200
        assert response.json()["service"] == "netyora-chat"

    @pytest.mark.asyncio
    async def test_root_health(self, client: AsyncClient):
        response = await client.get("/health")

        assert response.status_code == 200
        assert response.json()["status"] == "healthy"

    @pytest.mark.asyncio
    async def test_readiness(self, client: AsyncClient):
        response = await client.get("/api/v1/health/ready")

        assert response.status_code == 200
        data = response.json()
        assert data["ready"] is True
        assert data["checks"]["database"]["status"] == "healthy"

    @pytest.mark.asyncio
    async def test_liveness(self, client: AsyncClient):
        response = await client.get("/api/v1/health/live")

        assert response.json()["alive"] is True

    @pytest.mark.asyncio
    async def test_detailed_requires_auth(self, client: AsyncClient):
        response = await client.get("/api/v1/health/detailed")

        assert response.status_code == 401

    @pytest.mark.asyncio
    async def test_detailed(self, client: AsyncClient, auth_headers, mocker):
        mocker.patch(
            "api.health.check_http_service",
            new_callable=mocker.AsyncMock,
            return_value={"status": "healthy", "latency_ms": 1.0, "message": "OK"},
        )
        mocker.patch(
            "api.health.check_blob_store",
            new_callable=mocker.AsyncMock,
            return_value={"status": "unconfigured", "latency_ms": None, "message": "Blob store not configured"},
        )

        response = await client.get("/api/v1/health/detailed", headers=auth_headers)

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "healthy"
        assert set(data["services"]) == {"database", "blob_store", "identity", "notify"}
        assert data["realtime"]["connections"] == 0


class TestAPIInfo:
    """Test API info endpoints."""

    @pytest.mark.asyncio
    async def test_api_info(self, client: AsyncClient):
        response = await client.get("/api/v1")

        assert response.json()["endpoints"]["realtime"] == "/api/v1/chat/ws"

    @pytest.mark.asyncio
    async def test_openapi_json(self, client: AsyncClient):
        """Test that OpenAPI JSON is accessible."""
        response = await client.get("/openapi.json")

        assert response.status_code == 200
        data = response.json()
        assert "openapi" in data
        assert "info" in data
        assert "paths" in data
