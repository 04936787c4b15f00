"""
Tests for the HTTP surface: read routes and admin protection.
"""

from datetime import date, datetime, timedelta, timezone

import pytest
from sqlalchemy import select
from starlette.testclient import TestClient

from conftest import ADMIN_KEY, FakeAdapter, make_event
from pulse.main import app
from pulse.models.access_event import ENTRY, EXIT, SOURCE_UNIFI
from pulse.models.attendance import DailyAttendance, HourlyOccupancy
from pulse.models.presence_session import PresenceSession
from pulse.models.user import User
from pulse.services import sync as sync_service


@pytest.fixture
def client(db):
    # No context manager: lifespan (startup seeding, scheduler) stays off.
    return TestClient(app)


@pytest.fixture
def recent(db, user, office):
    now = datetime.now(timezone.utc)
    yesterday = now.date() - timedelta(days=1)
    db.add(PresenceSession(user_id=user.id, office_id=office.id, entry_time=now - timedelta(hours=1)))
    db.add(
        PresenceSession(
            user_id=user.id,
            office_id=office.id,
            entry_time=now - timedelta(days=1, hours=8),
            exit_time=now - timedelta(days=1),
            duration_minutes=480,
        )
    )
    db.add(DailyAttendance(office_id=office.id, date=yesterday, unique_visitors=4, total_entries=5,
                           average_duration_minutes=300, peak_occupancy=3))
    db.add(HourlyOccupancy(office_id=office.id, date=yesterday, hour=9, average_occupancy=3))
    db.commit()
    return yesterday


class TestReadRoutes:
    def test_health(self, client):
        r = client.get("/v1/health")
        assert r.status_code == 200
        assert r.json() == {"status": "ok"}

    def test_stats(self, client, recent):
        body = client.get("/v1/stats").json()

        assert body["currentOccupancy"] == 1
        assert body["totalCapacity"] == 60
        assert body["activeOffices"] == 1
        assert body["averageDailyAttendance"] == 4
        assert body["averageStayDuration"] == 480

    def test_attendance(self, client, office, recent):
        r = client.get("/v1/attendance", params={"officeId": str(office.id)})
        rows = r.json()["attendance"]

        assert r.status_code == 200
        assert len(rows) == 1
        assert rows[0]["officeName"] == "Minneapolis"
        assert rows[0]["uniqueVisitors"] == 4
        assert rows[0]["date"] == recent.isoformat()

    def test_attendance_rejects_bad_dates(self, client):
        assert client.get("/v1/attendance", params={"startDate": "yesterday"}).status_code == 400
        r = client.get("/v1/attendance", params={"startDate": "2026-10-10", "endDate": "2026-10-01"})
        assert r.status_code == 400

    def test_hourly_occupancy_by_weekday(self, client, recent):
        (row,) = client.get("/v1/hourly-occupancy").json()["occupancy"]

        assert row["hour"] == 9
        assert row["dayOfWeek"] == recent.isoweekday() % 7
        assert row["averageOccupancy"] == 3

    def test_offices(self, client, recent):
        (office,) = client.get("/v1/offices").json()["offices"]
        assert office["name"] == "Minneapolis"
        assert office["current_occupancy"] == 1

    def test_office_detail_routes(self, client, office, recent):
        base = f"/v1/office/{office.id}"

        assert client.get(base).json()["timezone"] == "UTC"
        assert client.get(f"{base}/occupancy").json() == {"current": 1}
        (day,) = client.get(f"{base}/daily", params={"days": 7}).json()["stats"]
        assert day["avg_duration_minutes"] == 300
        assert client.get(f"{base}/hourly").json()["stats"] == [{"hour": 9, "avg_occupancy": 3.0}]
        (visitor,) = client.get(f"{base}/top-visitors").json()["visitors"]
        assert visitor["visit_count"] == 2
        assert visitor["total_hours"] == 8.0

    def test_unknown_office(self, client):
        assert client.get("/v1/office/not-a-uuid").status_code == 404
        assert client.get("/v1/office/00000000-0000-0000-0000-000000000000").status_code == 404

    def test_users(self, client, user):
        body = client.get("/v1/users", params={"search": "jane"}).json()
        assert body["total"] == 1
        assert body["users"][0]["email"] == "jane.doe@example.com"

        body = client.get("/v1/users", params={"search": "nobody"}).json()
        assert body == {"users": [], "total": 0, "limit": 100, "offset": 0}

    def test_user_detail_routes(self, client, db, user, office):
        from pulse.services.ingest import EventIngestor

        ingestor = EventIngestor(db)
        ingestor.ingest(make_event("e1", ENTRY, datetime(2026, 10, 14, 9, tzinfo=timezone.utc)), user, office)
        ingestor.ingest(make_event("x1", EXIT, datetime(2026, 10, 14, 17, tzinfo=timezone.utc)), user, office)
        db.commit()

        assert client.get(f"/v1/user/{user.id}").json()["display_name"] == "Jane Doe"

        sessions = client.get(f"/v1/user/{user.id}/sessions").json()["sessions"]
        assert [s["event_type"] for s in sessions] == ["exit", "entry"]
        assert sessions[0]["office_name"] == "Minneapolis"

        stats = client.get(f"/v1/user/{user.id}/stats").json()
        assert stats["total_visits"] == 1
        assert stats["total_hours"] == 8.0
        assert stats["most_visited_office"] == "Minneapolis"

    def test_user_presence_orders_by_visits(self, client, db, user, office, recent):
        sam = User(external_id="entra-2", email="sam.roe@example.com", display_name="Sam Roe", is_active=True)
        db.add(sam)
        db.flush()
        db.add(
            PresenceSession(
                user_id=sam.id,
                office_id=office.id,
                entry_time=datetime(2026, 10, 1, 9, tzinfo=timezone.utc),
                exit_time=datetime(2026, 10, 1, 10, tzinfo=timezone.utc),
                duration_minutes=60,
            )
        )
        db.commit()

        rows = client.get("/v1/user-presence").json()["users"]

        assert [r["email"] for r in rows] == ["jane.doe@example.com", "sam.roe@example.com"]
        assert rows[0]["total_visits"] == 2
        assert rows[0]["total_hours"] == 8.0
        assert rows[0]["avg_duration_minutes"] == 480
        assert rows[0]["offices_visited"] == 1
        assert rows[1]["total_visits"] == 1

    def test_bad_integer_param(self, client, office):
        assert client.get(f"/v1/office/{office.id}/top-visitors", params={"limit": "ten"}).status_code == 400


class TestAdminRoutes:
    def test_missing_or_wrong_key_is_rejected(self, client, office):
        url = f"/v1/admin/offices/{office.id}/deactivate"
        assert client.post(url).status_code == 401
        assert client.post(url, headers={"x-admin-key": "nope"}).status_code == 401
        assert client.post("/v1/admin/sync/unifi_access").status_code == 401
        assert client.post("/v1/admin/aggregate").status_code == 401
        assert client.post("/v1/admin/directory/sync").status_code == 401

    def test_deactivate_office(self, client, db, office):
        r = client.post(f"/v1/admin/offices/{office.id}/deactivate", headers={"x-admin-key": ADMIN_KEY})

        assert r.status_code == 200
        assert r.json()["office"]["is_active"] is False
        assert client.get("/v1/offices").json()["offices"] == []

    def test_manual_sync(self, client, db, user, office, monkeypatch):
        adapter = FakeAdapter([make_event("e1", ENTRY, datetime.now(timezone.utc) - timedelta(hours=2))])
        monkeypatch.setattr(sync_service, "build_adapter", lambda source, settings: adapter)

        r = client.post("/v1/admin/sync/unifi_access", params={"days": 3}, headers={"x-admin-key": ADMIN_KEY})
        body = r.json()

        assert r.status_code == 200
        assert body["success"] is True
        assert body["processed"] == 1
        assert body["totalErrors"] == 0
        since = adapter.calls[0]
        assert timedelta(days=3) - timedelta(minutes=1) < datetime.now(timezone.utc) - since < timedelta(days=3, minutes=1)

        (status,) = client.get("/v1/sync/status").json()["sources"]
        assert status["source"] == SOURCE_UNIFI
        assert status["status"] == "success"

    def test_manual_sync_unknown_source(self, client):
        r = client.post("/v1/admin/sync/badgeco", headers={"x-admin-key": ADMIN_KEY})
        assert r.status_code == 404

    def test_manual_aggregate(self, client, db, office):
        r = client.post(
            "/v1/admin/aggregate",
            params={"date": "2026-10-14", "days": 2},
            headers={"x-admin-key": ADMIN_KEY},
        )
        body = r.json()

        assert r.status_code == 200
        assert body["dates"] == ["2026-10-14", "2026-10-13"]
        assert body["processed"] == 2
        row = db.scalar(select(DailyAttendance).where(DailyAttendance.date == date(2026, 10, 14)))
        assert row.unique_visitors == 0

    def test_directory_sync_not_configured(self, client):
        r = client.post("/v1/admin/directory/sync", headers={"x-admin-key": ADMIN_KEY})
        assert r.status_code == 400
