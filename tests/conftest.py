from __future__ import annotations

import pytest

from cache_layer import cache_clear


@pytest.fixture()
def app_client(tmp_path, monkeypatch):
    db_path = tmp_path / "test.db"
    monkeypatch.setenv("DATABASE_URL", f"sqlite:///{db_path}")
    monkeypatch.setenv("APP_ENV", "test")
    monkeypatch.setenv("AUTH_ALLOW_TEST_TOKENS", "1")
    monkeypatch.setenv("CELERY_ENABLED", "0")
    monkeypatch.setenv("REDIS_URL", "")
    monkeypatch.setenv("SUPER_ADMIN_USER_ID", "")
    monkeypatch.setenv("RATE_LIMIT_GLOBAL", "100000/60")
    monkeypatch.setenv("RATE_LIMIT_DEFAULT", "100000/60")
    monkeypatch.setenv("RATE_LIMIT_LOGIN", "1000/60")
    monkeypatch.setenv("CERTIFICATE_OUTPUT_DIR", str(tmp_path / "certificates"))
    cache_clear()

    from app import create_app

    app = create_app()
    app.config["TESTING"] = True
    with app.test_client() as client:
        yield app, client
    cache_clear()
