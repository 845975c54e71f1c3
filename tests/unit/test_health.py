"""
Tests for health check endpoints.
"""

from unittest.mock import AsyncMock, patch

from fastapi.testclient import TestClient

from app.main import app

client = TestClient(app)

HEALTHY_POOL = {
    "healthy": True,
    "connection_time_ms": 1.2,
    "pool_stats": {"pool_size": 3, "pool_available": 2, "pool_utilization_percent": 33.3},
}


def test_healthz_endpoint():
    """Test the basic health check endpoint."""
    response = client.get("/healthz")

    assert response.status_code == 200
    data = response.json()
    assert data["status"] == "ok"
    assert data["service"] == "sequence-enrollment-engine"


def test_readyz_endpoint_all_services_healthy():
    """Test readiness endpoint when all services are healthy."""
    with (
        patch("app.routes.health.fast_redis.ping", new=AsyncMock(return_value=True)),
        patch("app.routes.health.db_health_check", new=AsyncMock(return_value=HEALTHY_POOL)),
    ):
        response = client.get("/readyz")

    assert response.status_code == 200
    data = response.json()
    assert data["overall_ok"] is True

    checks = data["checks"]
    assert checks["redis"]["ok"] is True
    assert checks["database"]["ok"] is True
    assert checks["database"]["pool_size"] == 3
    assert "stage_event_partitions" in checks["configuration"]


def test_readyz_endpoint_redis_unhealthy():
    """Redis down makes the service unready."""
    with (
        patch("app.routes.health.fast_redis.ping", new=AsyncMock(return_value=False)),
        patch("app.routes.health.db_health_check", new=AsyncMock(return_value=HEALTHY_POOL)),
    ):
        response = client.get("/readyz")

    assert response.status_code == 503
    data = response.json()
    assert data["overall_ok"] is False
    assert data["checks"]["redis"]["ok"] is False


def test_readyz_endpoint_database_unhealthy():
    unhealthy = {"healthy": False, "error": "Connection failed", "error_type": "OperationalError"}
    with (
        patch("app.routes.health.fast_redis.ping", new=AsyncMock(return_value=True)),
        patch("app.routes.health.db_health_check", new=AsyncMock(return_value=unhealthy)),
    ):
        response = client.get("/readyz")

    assert response.status_code == 503
    database = response.json()["checks"]["database"]
    assert database["ok"] is False
    assert database["error"] == "Connection failed"
    assert database["error_type"] == "OperationalError"


def test_readyz_reports_exceptions():
    with (
        patch("app.routes.health.fast_redis.ping", new=AsyncMock(side_effect=ConnectionError("refused"))),
        patch("app.routes.health.db_health_check", new=AsyncMock(return_value=HEALTHY_POOL)),
    ):
        response = client.get("/readyz")

    assert response.status_code == 503
    assert response.json()["checks"]["redis"]["error"] == "ConnectionError: refused"


def test_readyz_includes_latency_metrics():
    """Test that readiness checks include latency metrics."""
    with (
        patch("app.routes.health.fast_redis.ping", new=AsyncMock(return_value=True)),
        patch("app.routes.health.db_health_check", new=AsyncMock(return_value=HEALTHY_POOL)),
    ):
        response = client.get("/readyz")

    checks = response.json()["checks"]
    assert isinstance(checks["redis"]["latency_ms"], (int, float))
    assert isinstance(checks["database"]["latency_ms"], (int, float))
