from datetime import datetime, timezone, timedelta

import mongomock
import pytest
from fastapi.testclient import TestClient

import config
import database
from auth import verify_principal
from main import app

PROJECT_ID = "digital-life-lessons"


@pytest.fixture(autouse=True)
def env(monkeypatch):
    monkeypatch.setenv("DATABASE_URL", "mongodb://localhost:27017")
    monkeypatch.setenv("FIREBASE_PROJECT_ID", PROJECT_ID)
    monkeypatch.setenv("STRIPE_SECRET_KEY", "sk_test_123")
    monkeypatch.setenv("STRIPE_WEBHOOK_SECRET", "whsec_test_123")
    monkeypatch.setenv("CLIENT_URL", "http://localhost:5173/")
    config.get_settings.cache_clear()
    yield
    config.get_settings.cache_clear()


@pytest.fixture
def db(monkeypatch):
    mock_db = mongomock.MongoClient()["digital-life-lessons-test"]
    monkeypatch.setattr(database, "db", mock_db)
    return mock_db


@pytest.fixture
def client(db):
    app.dependency_overrides.clear()
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def login():
    """Act as the given verified email for subsequent requests."""
    def _login(email):
        app.dependency_overrides[verify_principal] = lambda: email
    return _login


@pytest.fixture
def add_user(db):
    def _add_user(email, role="user", **fields):
        doc = {
            "email": email,
            "name": email.split("@")[0].title(),
            "photoURL": None,
            "role": role,
            "isPremium": False,
            "create_at": datetime.now(timezone.utc),
        }
        doc.update(fields)
        return str(db["users"].insert_one(doc).inserted_id)
    return _add_user


@pytest.fixture
def add_lesson(db):
    def _add_lesson(title="A lesson", creator="alice@mail.com", age_days=0, **fields):
        doc = {
            "title": title,
            "description": "What I learned",
            "image": None,
            "category": "Mindset",
            "emotionalTone": "Motivational",
            "accessLevel": "free",
            "visibility": "public",
            "creator": {"email": creator, "name": creator.split("@")[0].title(), "photoURL": None},
            "createdAt": datetime.now(timezone.utc) - timedelta(days=age_days),
            "featured": False,
            "likes": [],
            "favorites": [],
            "comments": [],
        }
        doc.update(fields)
        return str(db["lessons"].insert_one(doc).inserted_id)
    return _add_lesson
