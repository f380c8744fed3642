"""
Integration tests for health and utility endpoints.

Tests basic API health and functionality.
"""
from fastapi.testclient import TestClient


class TestHealthEndpoint:
    """Tests for /health and /ready endpoints."""

    def test_health_check(self, client: TestClient):
        """Test health endpoint returns OK."""
        response = client.get("/health")

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "healthy"
        assert data["version"] == "1.0.0"
        assert data["timestamp"].endswith("Z")

    def test_readiness_check(self, client: TestClient):
        """Test readiness checks the database."""
        response = client.get("/ready")

        assert response.status_code == 200
        assert response.json()["status"] == "ready"
        assert response.json()["database"] == "ok"


class TestDocsEndpoint:
    """Tests for documentation endpoints."""

    def test_docs_accessible(self, client: TestClient):
        """Test Swagger docs are accessible."""
        response = client.get("/docs")

        assert response.status_code == 200

    def test_openapi_json(self, client: TestClient):
        """Test OpenAPI JSON schema is accessible."""
        response = client.get("/openapi.json")

        assert response.status_code == 200
        data = response.json()
        assert data["info"]["title"] == "LoanSpread API"
        assert "/api/v1/integrity/verify" in data["paths"]


class TestCorrelationId:
    """Tests for correlation id propagation."""

    def test_correlation_id_in_response(self, client: TestClient):
        """Test that correlation ID is returned."""
        response = client.get("/health")

        assert len(response.headers["X-Correlation-ID"]) > 0

    def test_custom_correlation_id(self, client: TestClient):
        """Test that custom correlation ID is echoed."""
        response = client.get("/health", headers={"X-Correlation-ID": "test-correlation-123"})

        assert response.headers.get("X-Correlation-ID") == "test-correlation-123"
