from datetime import datetime, timezone, timedelta

import pytest


@pytest.fixture
def admin(add_user, login):
    add_user("admin@mail.com", role="admin")
    login("admin@mail.com")
    return "admin@mail.com"


def test_overview_requires_admin(client, add_user, login):
    add_user("alice@mail.com")
    login("alice@mail.com")
    assert client.get("/admin/overview").status_code == 403


def test_overview_requires_known_user(client, login):
    login("stranger@mail.com")
    assert client.get("/admin/overview").status_code == 403


def test_overview_numbers(client, db, add_user, add_lesson, admin):
    add_user("alice@mail.com")
    add_lesson("Today 1", creator="alice@mail.com")
    add_lesson("Today 2", creator="bob@mail.com", visibility="private")
    reported = add_lesson("Three days", creator="alice@mail.com", age_days=3)
    add_lesson("Old", creator="alice@mail.com", age_days=10)
    db["reports"].insert_many([
        {"lessonId": reported, "reporterEmail": "bob@mail.com", "reason": "Spam"},
        {"lessonId": reported, "reporterEmail": "carol@mail.com", "reason": "Offensive"},
    ])

    body = client.get("/admin/overview").json()
    assert body["totalUsers"] == 2
    assert body["totalPublicLessons"] == 3
    assert body["totalReportedLessons"] == 1
    assert body["todayLessons"] == 2

    today = datetime.now(timezone.utc).date()
    expected_days = [(today - timedelta(days=i)).isoformat() for i in range(6, -1, -1)]
    per_day = body["lessonsPerDay"]
    assert [d["date"] for d in per_day] == expected_days
    counts = {d["date"]: d["count"] for d in per_day}
    assert counts[today.isoformat()] == 2
    assert counts[(today - timedelta(days=3)).isoformat()] == 1
    assert sum(counts.values()) == 3

    assert body["contributors"][0] == {"email": "alice@mail.com", "name": "Alice", "photoURL": None, "lessonCount": 3}


def test_reported_lessons_listing_and_dismiss(client, db, add_lesson, admin):
    once = add_lesson("Once")
    twice = add_lesson("Twice")
    db["reports"].insert_many([
        {"lessonId": once, "reporterEmail": "bob@mail.com", "reason": "Spam", "createdAt": datetime.now(timezone.utc)},
        {"lessonId": twice, "reporterEmail": "bob@mail.com", "reason": "Rude", "createdAt": datetime.now(timezone.utc)},
        {"lessonId": twice, "reporterEmail": "carol@mail.com", "reason": "Fake", "createdAt": datetime.now(timezone.utc)},
    ])

    result = client.get("/admin/reports").json()["result"]
    assert [(r["title"], r["count"]) for r in result] == [("Twice", 2), ("Once", 1)]
    assert sorted(r["reason"] for r in result[0]["reports"]) == ["Fake", "Rude"]

    res = client.delete(f"/admin/reports/{twice}")
    assert res.json()["deletedCount"] == 2
    assert db["lessons"].count_documents({}) == 2
    assert [r["title"] for r in client.get("/admin/reports").json()["result"]] == ["Once"]


def test_access_level_analytics(client, add_lesson):
    add_lesson(accessLevel="free")
    add_lesson(accessLevel="free", age_days=2)
    add_lesson(accessLevel="premium")
    add_lesson(accessLevel="premium", visibility="private")
    add_lesson(accessLevel="free", age_days=10)

    assert client.get("/analytics/accessLevel").json() == {"ok": True, "free": 2, "premium": 1}


def test_access_level_analytics_always_has_both_keys(client):
    assert client.get("/analytics/accessLevel").json() == {"ok": True, "free": 0, "premium": 0}
