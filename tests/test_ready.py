"""
Tests for the health, readiness and version endpoints.
"""
from __future__ import annotations

from unittest.mock import patch


def test_ready_ok(app_client):
    """/ready reports ok when the database and Redis answer."""
    _app, client = app_client

    with patch("app.routes.core._ping_redis", return_value=True):
        res = client.get("/ready")
        assert res.status_code == 200

        body = res.get_json()
        assert body["status"] == "ok"
        assert body["checks"] == {"db": "ok", "redis": "ok"}


def test_ready_redis_down(app_client):
    """/ready degrades to 503 when Redis is configured but unreachable."""
    _app, client = app_client

    with patch("app.routes.core._ping_redis", return_value=False):
        res = client.get("/ready")
        assert res.status_code == 503

        body = res.get_json()
        assert body["status"] == "degraded"
        assert body["checks"]["redis"] == "error"
        assert body["checks"]["db"] == "ok"


def test_health_and_version(app_client):
    _app, client = app_client

    res = client.get("/health")
    assert res.status_code == 200
    body = res.get_json()
    assert body["ok"] is True
    assert body["data"]["status"] == "ok"
    assert body["data"]["db_pool"]["initialized"] is True

    res = client.get("/version")
    assert res.status_code == 200
    assert res.get_json()["env"] == "test"


def test_unknown_route_returns_error_envelope(app_client):
    _app, client = app_client
    res = client.get("/does-not-exist")
    assert res.status_code == 404
    body = res.get_json()
    assert body["ok"] is False
    assert body["error"]["code"] == "NOT_FOUND"
