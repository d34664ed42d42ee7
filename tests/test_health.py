import importlib

import mongomock
import pytest

from bardo import create_app
from bardo.db import Store
from helpers import FakeGateway


def test_health_reports_connected_database(client):
    resp = client.get("/api/health")

    assert resp.status_code == 200
    body = resp.get_json()
    assert body["status"] == "OK"
    assert body["database"] == "Connected"
    assert body["environment"] == "test"
    assert body["uptime"] >= 0
    assert resp.headers["X-Content-Type-Options"] == "nosniff"


def test_health_is_unavailable_without_database(client, monkeypatch):
    monkeypatch.setattr(Store, "ping", lambda self: False)

    resp = client.get("/api/health")

    assert resp.status_code == 503
    assert resp.get_json()["database"] == "Disconnected"


def test_root_and_unknown_routes(client):
    assert client.get("/").get_json()["ok"] is True

    resp = client.get("/api/nope")
    assert resp.status_code == 404
    assert resp.get_json()["code"] == "NOT_FOUND"


def test_request_id_is_echoed(client):
    resp = client.get("/api/health", headers={"X-Request-Id": "abc-123"})

    assert resp.headers["X-Request-Id"] == "abc-123"


def test_login_and_me(client, store):
    from bardo.auth import create_user

    create_user(store, "staff@bardo.test", "Secreto123!")
    assert client.get("/api/auth/me").get_json()["user"] is None

    bad = client.post("/api/auth/login", json={"email": "staff@bardo.test", "password": "nope"})
    assert bad.status_code == 401

    good = client.post("/api/auth/login", json={"email": "STAFF@bardo.test", "password": "Secreto123!"})
    assert good.status_code == 200
    assert client.get("/api/auth/me").get_json()["user"]["email"] == "staff@bardo.test"

    assert client.post("/api/auth/logout").status_code == 200
    assert client.get("/api/auth/me").get_json()["user"] is None


def test_unhandled_error_detail_only_in_development(app, client):
    def broken():
        raise RuntimeError("secret connection string")

    app.add_url_rule("/api/broken", "broken", broken)

    resp = client.get("/api/broken")
    assert resp.status_code == 500
    body = resp.get_json()
    assert body["code"] == "INTERNAL_ERROR"
    assert "details" not in body

    app.config["ENVIRONMENT"] = "development"
    details = client.get("/api/broken").get_json()["details"]
    assert details == {"detail": "secret connection string", "type": "RuntimeError"}


def test_environment_defaults_to_production(monkeypatch):
    monkeypatch.delenv("APP_ENV", raising=False)
    monkeypatch.delenv("NODE_ENV", raising=False)

    import bardo.config

    assert importlib.reload(bardo.config).Config.ENVIRONMENT == "production"


@pytest.mark.parametrize("run_at", ["25:00", "12:60", "noon", ""])
def test_bad_sweeper_schedule_fails_at_startup(run_at):
    with pytest.raises(ValueError, match="SWEEPER_RUN_AT"):
        create_app({"TESTING": True, "SWEEPER_RUN_AT": run_at}, mongo_client=mongomock.MongoClient(),
                   gateway=FakeGateway())
