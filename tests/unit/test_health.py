"""
Tests for health check endpoints.
"""

from unittest.mock import AsyncMock, patch

from fastapi.testclient import TestClient

from app.main import app

client = TestClient(app)


def test_healthz_endpoint():
    """Test the basic health check endpoint."""
    response = client.get("/healthz")

    assert response.status_code == 200
    data = response.json()
    assert data["status"] == "ok"
    assert data["service"] == "grooming-scheduler"


def test_readyz_memory_backend_skips_external_checks():
    with patch("app.routes.health.settings.SCHEDULING_BACKEND", "memory"):
        response = client.get("/readyz")

    assert response.status_code == 200
    data = response.json()
    assert data["overall_ok"] is True
    assert "redis" not in data["checks"]
    assert data["checks"]["configuration"]["timezone"] == "Asia/Jerusalem"


def test_readyz_endpoint_all_services_healthy():
    """Test readiness endpoint when Redis and Postgres are healthy."""
    db_health = {
        "healthy": True,
        "connection_time_ms": 3.2,
        "pool_stats": {"pool_size": 4, "pool_available": 3, "pool_utilization_percent": 25.0},
    }
    with (
        patch("app.routes.health.settings.SCHEDULING_BACKEND", "postgres"),
        patch("app.routes.health.fast_redis.ping", AsyncMock(return_value=True)),
        patch("app.routes.health.db_health_check", AsyncMock(return_value=db_health)),
    ):
        response = client.get("/readyz")

    assert response.status_code == 200
    data = response.json()
    assert data["overall_ok"] is True
    assert data["checks"]["redis"]["ok"] is True
    assert data["checks"]["database"]["ok"] is True
    assert data["checks"]["database"]["pool_size"] == 4


def test_readyz_endpoint_redis_unhealthy():
    """Test readiness endpoint when Redis is down."""
    with (
        patch("app.routes.health.settings.SCHEDULING_BACKEND", "postgres"),
        patch("app.routes.health.fast_redis.ping", AsyncMock(return_value=False)),
        patch("app.routes.health.db_health_check", AsyncMock(return_value={"healthy": True})),
    ):
        response = client.get("/readyz")

    # Should still return 200, but overall_ok should be False
    assert response.status_code == 200
    data = response.json()
    assert data["overall_ok"] is False
    assert data["checks"]["redis"]["ok"] is False


def test_readyz_endpoint_database_unhealthy():
    """Test readiness endpoint when the pool check raises."""
    with (
        patch("app.routes.health.settings.SCHEDULING_BACKEND", "postgres"),
        patch("app.routes.health.fast_redis.ping", AsyncMock(return_value=True)),
        patch("app.routes.health.db_health_check", AsyncMock(side_effect=RuntimeError("pool closed"))),
    ):
        response = client.get("/readyz")

    data = response.json()
    assert data["overall_ok"] is False
    assert data["checks"]["database"]["ok"] is False
    assert "pool closed" in data["checks"]["database"]["error"]


def test_database_health_reports_uninitialized_pool():
    response = client.get("/health/database")

    assert response.status_code == 200
    assert response.json()["healthy"] is False
