"""
Tests for a full source sync run: resolution, dedup, checkpointing and
failure isolation.
"""

import json
from datetime import date

import httpx
from sqlalchemy import func, select

from conftest import FakeAdapter, at, make_event
from pulse.core.config import UnifiController
from pulse.models.access_event import ENTRY, EXIT, SOURCE_UNIFI, AccessEvent
from pulse.models.presence_session import PresenceSession
from pulse.models.user import User
from pulse.services.aggregation import Aggregator
from pulse.services.checkpoints import SyncCheckpoints
from pulse.services.sessions import SessionReconciler
from pulse.services.sync import (
    SKIP_UNKNOWN_OFFICE,
    SKIP_UNKNOWN_USER,
    SKIP_UNMAPPED_KIND,
    run_source_sync,
)
from pulse.sources.unifi_access import UnifiAccessSource


def _count(db, model):
    return db.scalar(select(func.count()).select_from(model))


class TestEndToEnd:
    def test_duplicate_delivery_scenario(self, db, user, office):
        """entry e1, the same e1 again, exit e2: one closed 480-minute session."""
        adapter = FakeAdapter(
            [
                make_event("e1", ENTRY, at(9)),
                make_event("e1", ENTRY, at(9)),
                make_event("e2", EXIT, at(17)),
            ]
        )
        result = run_source_sync(db, SOURCE_UNIFI, adapter=adapter)

        assert result.status == "success"
        assert result.fetched == 3
        assert result.processed == 2
        assert result.duplicates == 1
        assert result.errors == []
        assert result.affected == {(office.id, date(2026, 10, 14))}

        assert _count(db, AccessEvent) == 2
        (session,) = db.scalars(select(PresenceSession)).all()
        assert session.duration_minutes == 480

        row = Aggregator(db).recompute(office, date(2026, 10, 14))
        db.commit()
        assert (row.unique_visitors, row.total_entries, row.peak_occupancy) == (1, 1, 1)

    def test_out_of_order_delivery_is_sorted(self, db, user, office):
        adapter = FakeAdapter([make_event("x1", EXIT, at(17)), make_event("e1", ENTRY, at(9))])
        result = run_source_sync(db, SOURCE_UNIFI, adapter=adapter)

        assert result.transitions == {"opened": 1, "closed": 1}
        (session,) = db.scalars(select(PresenceSession)).all()
        assert session.exit_time == at(17)

    def test_rerun_over_overlap_window_is_idempotent(self, db, user, office):
        events = [make_event("e1", ENTRY, at(9)), make_event("x1", EXIT, at(12))]
        run_source_sync(db, SOURCE_UNIFI, adapter=FakeAdapter(events))
        second = run_source_sync(db, SOURCE_UNIFI, adapter=FakeAdapter(events))

        assert second.processed == 0
        assert second.duplicates == 2
        assert _count(db, AccessEvent) == 2
        assert _count(db, PresenceSession) == 1


class TestSkips:
    def test_skip_reasons_are_counted(self, db, user, office):
        adapter = FakeAdapter(
            [
                make_event("r1", None, at(8), kind="access.doorbell.ring"),
                make_event("v1", ENTRY, at(9), hint="visitor@elsewhere.org"),
                make_event("o1", ENTRY, at(10), location_key="unknown-site"),
                make_event("e1", ENTRY, at(11)),
            ]
        )
        result = run_source_sync(db, SOURCE_UNIFI, adapter=adapter)

        assert result.skipped == 3
        assert dict(result.skipped_reasons) == {
            SKIP_UNMAPPED_KIND: 1,
            SKIP_UNKNOWN_USER: 1,
            SKIP_UNKNOWN_OFFICE: 1,
        }
        assert result.matched == 1
        assert result.processed == 1
        assert result.checkpoint == at(11)


class TestCheckpointing:
    def test_cursor_is_passed_to_adapter(self, db, user, office):
        SyncCheckpoints(db).record_success(SOURCE_UNIFI, at(7))
        adapter = FakeAdapter([])
        result = run_source_sync(db, SOURCE_UNIFI, adapter=adapter)

        assert adapter.calls == [at(7)]
        assert result.checkpoint == at(7)

    def test_empty_run_keeps_previous_cursor(self, db, user, office):
        run_source_sync(db, SOURCE_UNIFI, adapter=FakeAdapter([make_event("e1", ENTRY, at(9))]))
        result = run_source_sync(db, SOURCE_UNIFI, adapter=FakeAdapter([]))

        assert result.status == "success"
        assert result.checkpoint == at(9)

    def test_fetch_failure_records_error_and_keeps_cursor(self, db, user, office):
        SyncCheckpoints(db).record_success(SOURCE_UNIFI, at(7))
        adapter = FakeAdapter([make_event("e1", ENTRY, at(9))], fail_after=1)

        result = run_source_sync(db, SOURCE_UNIFI, adapter=adapter)

        assert result.status == "error"
        assert result.errors[0].startswith("Fetch failed")
        # events fetched before the failure are still ingested
        assert result.processed == 1
        status = SyncCheckpoints(db).all_statuses()[0]
        assert status.status == "error"
        assert "connection reset" in status.error_message
        assert SyncCheckpoints(db).get_cursor(SOURCE_UNIFI) == at(7)

    def test_failed_event_holds_back_cursor(self, db, user, office, monkeypatch):
        real_apply = SessionReconciler.apply

        def flaky_apply(self, event):
            if event.source_event_id == "x1":
                raise RuntimeError("storage hiccup")
            return real_apply(self, event)

        monkeypatch.setattr(SessionReconciler, "apply", flaky_apply)
        adapter = FakeAdapter(
            [
                make_event("e1", ENTRY, at(9)),
                make_event("x1", EXIT, at(12)),
                make_event("e2", ENTRY, at(13), hint="jane.doe@example.com"),
            ]
        )
        result = run_source_sync(db, SOURCE_UNIFI, adapter=adapter)

        assert result.status == "success"
        assert result.errors == ["Event x1: storage hiccup"]
        assert result.checkpoint == at(9)
        # the failed event left nothing behind
        assert db.scalar(select(AccessEvent).where(AccessEvent.source_event_id == "x1")) is None

        monkeypatch.setattr(SessionReconciler, "apply", real_apply)
        retry = run_source_sync(db, SOURCE_UNIFI, adapter=adapter)

        assert retry.errors == []
        assert retry.processed == 1
        assert retry.duplicates == 2
        assert retry.checkpoint == at(13)

    def test_cursor_monotonic_across_mixed_runs(self, db, user, office):
        runs = [
            FakeAdapter([make_event("a", ENTRY, at(9))]),
            FakeAdapter([], fail_after=0),
            FakeAdapter([make_event("b", EXIT, at(8))]),
            FakeAdapter([]),
            FakeAdapter([make_event("c", ENTRY, at(10))]),
        ]
        seen = []
        for adapter in runs:
            run_source_sync(db, SOURCE_UNIFI, adapter=adapter)
            seen.append(SyncCheckpoints(db).get_cursor(SOURCE_UNIFI))

        assert seen == sorted(seen)
        assert seen[-1] == at(10)


class TestConfiguration:
    def test_bad_location_override_fails_the_run(self, db, user, office):
        from dataclasses import replace

        from pulse.core.config import settings

        bad = replace(settings, office_location_map={SOURCE_UNIFI: {"minneapolis": "Atlantis"}})
        adapter = FakeAdapter([make_event("e1", ENTRY, at(9))])

        result = run_source_sync(db, SOURCE_UNIFI, adapter=adapter, settings=bad)

        assert result.status == "error"
        assert adapter.calls == []
        assert "Atlantis" in SyncCheckpoints(db).all_statuses()[0].error_message


def _door_log(log_id, kind, ts, actor):
    return {"_id": log_id, "event_type": kind, "event_time": int(ts.timestamp()), "actor_id": actor}


def _controllers_transport(logs_by_host, *, failing=()):
    """Controllers that page through their logs oldest first within the requested window."""
    users = [
        {"id": "jane", "user_email": "jane.doe@example.com"},
        {"id": "sam", "user_email": "sam.roe@example.com"},
    ]

    def handler(request: httpx.Request) -> httpx.Response:
        host = request.url.host
        if request.url.path.endswith("/users"):
            return httpx.Response(200, json={"code": "SUCCESS", "data": users})
        if host in failing:
            return httpx.Response(503)
        body = json.loads(request.content)
        window = [
            log
            for log in sorted(logs_by_host.get(host, []), key=lambda log: log["event_time"])
            if body["start_time"] <= log["event_time"] <= body["end_time"]
        ]
        first = (body["page_num"] - 1) * body["page_size"]
        return httpx.Response(200, json={"code": "SUCCESS", "data": window[first : first + body["page_size"]]})

    return httpx.MockTransport(handler)


def _two_controllers(transport, **kwargs):
    return UnifiAccessSource(
        [
            UnifiController(name="a", url="https://a.local", token="tok-a", location_key="minneapolis"),
            UnifiController(name="b", url="https://b.local", token="tok-b", location_key="minneapolis"),
        ],
        transport=transport,
        **kwargs,
    )


class TestControllerFanIn:
    def test_page_capped_controller_holds_back_the_cursor(self, db, user, office):
        db.add(User(external_id="entra-2", email="sam.roe@example.com", display_name="Sam Roe", is_active=True))
        db.commit()
        logs = {
            "a.local": [
                _door_log("1", "access.door.unlock", at(9), "jane"),
                _door_log("2", "access.door.unlock", at(9, 30), "jane"),
                _door_log("3", "access.door.exit", at(10), "jane"),
            ],
            "b.local": [_door_log("9", "access.door.unlock", at(11), "sam")],
        }
        source = _two_controllers(_controllers_transport(logs), page_size=2, max_pages=1)

        first = run_source_sync(db, SOURCE_UNIFI, at(8), adapter=source)

        assert first.processed == 3
        # a stopped at 09:30 with 10:00 still unread, so b's 11:00 cannot move the cursor
        assert first.checkpoint == at(9, 30)

        second = run_source_sync(db, SOURCE_UNIFI, adapter=source)

        assert second.status == "success"
        ids = db.scalars(select(AccessEvent.source_event_id).order_by(AccessEvent.source_event_id)).all()
        assert ids == ["a_1", "a_2", "a_3", "b_9"]
        session = db.scalar(select(PresenceSession).where(PresenceSession.user_id == user.id))
        assert session.exit_time == at(10)
        assert session.duration_minutes == 60
        assert second.checkpoint == at(10)

    def test_checkpoint_limit_caps_high_water(self, db, user, office):
        adapter = FakeAdapter(
            [make_event("e1", ENTRY, at(9)), make_event("x1", EXIT, at(11))],
            checkpoint_limit=at(10),
        )

        result = run_source_sync(db, SOURCE_UNIFI, adapter=adapter)

        assert result.processed == 2
        assert result.checkpoint == at(10)

    def test_healthy_controller_is_ingested_while_another_fails(self, db, user, office):
        SyncCheckpoints(db).record_success(SOURCE_UNIFI, at(8))
        logs = {"b.local": [_door_log("9", "access.door.unlock", at(9), "jane")]}
        source = _two_controllers(_controllers_transport(logs, failing={"a.local"}))

        result = run_source_sync(db, SOURCE_UNIFI, adapter=source)

        assert result.fetched == 1
        assert result.processed == 1
        assert result.status == "error"
        assert result.errors == ["Fetch failed: unifi_access: a: HTTP 503"]
        assert SyncCheckpoints(db).get_cursor(SOURCE_UNIFI) == at(8)
