import logging

import pytest
from fastapi.testclient import TestClient
from pymongo.errors import OperationFailure, ServerSelectionTimeoutError

import config
import database
from main import app


class BrokenCollection:
    def __init__(self, error):
        self.error = error

    def __getattr__(self, name):
        def fail(*args, **kwargs):
            raise self.error
        return fail


class BrokenDatabase:
    name = "broken"

    def __init__(self, error):
        self.error = error

    def __getitem__(self, name):
        return BrokenCollection(self.error)


def test_root(client):
    res = client.get("/")
    assert res.status_code == 200
    assert res.text == "Digital Life Lessons server is running"


def test_database_diagnostics(client, db):
    db["lessons"].insert_one({"title": "x"})
    body = client.get("/test").json()
    assert body["connection_status"] == "Connected"
    assert "lessons" in body["collections"]


def test_unknown_route_uses_error_shape(client):
    res = client.get("/nope")
    assert res.status_code == 404
    assert res.json() == {"message": "Not Found", "error": "Not Found"}


def test_store_failure_maps_to_bad_request(monkeypatch):
    monkeypatch.setattr(database, "db", BrokenDatabase(OperationFailure("boom")))
    res = TestClient(app).get("/public-lessons")
    assert res.status_code == 400
    assert res.json() == {"message": "Database operation failed", "error": "boom"}


def test_unconfigured_database(monkeypatch):
    monkeypatch.setattr(database, "db", None)
    res = TestClient(app).get("/users/a@x.com/role")
    assert res.status_code == 500
    assert res.json()["message"] == "Database not configured"


def test_startup_fails_without_configuration(monkeypatch):
    monkeypatch.delenv("DATABASE_URL")
    config.get_settings.cache_clear()
    with pytest.raises(RuntimeError):
        with TestClient(app):
            pass


def test_unreachable_store_is_internal_error(monkeypatch):
    refused = ServerSelectionTimeoutError("localhost:27017: connection refused")
    monkeypatch.setattr(database, "db", BrokenDatabase(refused))
    res = TestClient(app).get("/public-lessons")
    assert res.status_code == 500
    assert res.json() == {"message": "Database unavailable", "error": "ServerSelectionTimeoutError"}


def test_request_log_written_when_handler_raises(monkeypatch, caplog):
    monkeypatch.setattr(database, "db", BrokenDatabase(RuntimeError("boom")))
    with caplog.at_level(logging.INFO):
        res = TestClient(app, raise_server_exceptions=False).get("/public-lessons")
    assert res.status_code == 500
    lines = [r.getMessage() for r in caplog.records if "http_request" in r.getMessage()]
    assert len(lines) == 1
    assert '"status_code": 500' in lines[0]
    assert '"path": "/public-lessons"' in lines[0]
