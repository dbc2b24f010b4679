import pytest
import sqlite3
from unittest.mock import Mock

from activity_ledger.models.activity import ActivityEvent, ConsumptionMarker, Rollup
from activity_ledger.services.database import DatabaseManager
from activity_ledger.services.errors import DatabaseError
from activity_ledger.services.intervals import from_ms, iso_from_ms, to_ms
from conftest import NOW, at


def test_schema_created(db):
    """Test all tables exist after initialization"""
    tables = set(db.get_database_stats()["tables"])
    assert {
        "activities",
        "activity_rollups",
        "behavior_events",
        "behavioral_patterns",
        "consumption_log",
        "focus_sessions",
    } <= tables


def test_initialize_is_repeatable(db):
    db.initialize()
    assert db.verify_database_integrity()


def test_insert_and_extend_activity(db):
    """Test opening an interval and adding seconds to it"""
    event = ActivityEvent(timestamp=from_ms(at(10)), source="url", app_name="Browser",
                          domain="docs.com", category="productive")
    activity_id = db.insert_activity("laptop", event)

    db.add_activity_seconds(activity_id, at(10, 0, 30), 25, 5)
    db.add_activity_seconds(activity_id, at(10, 1), 30, 0)

    stored = db.get_activity(activity_id)
    assert stored.device_id == "laptop"
    assert stored.category.value == "productive"
    assert stored.seconds_active == 55
    assert stored.idle_seconds == 5
    assert to_ms(stored.ended_at) == at(10, 1)
    assert stored.started_at.tzinfo is not None


def test_open_activities(db):
    event = ActivityEvent(timestamp=from_ms(at(10)), source="app", app_name="Editor")
    activity_id = db.insert_activity("laptop", event)
    assert [a.id for a in db.get_open_activities("laptop")] == [activity_id]

    db.close_activity(activity_id, at(10, 5))
    assert db.get_open_activities("laptop") == []


def test_timestamps_stored_as_sortable_text(db):
    activity_id = db.store_activity(at(9, 50), at(10, 10), seconds_active=1200)
    row = db.conn.execute("SELECT started_at, ended_at FROM activities WHERE id = ?", [activity_id]).fetchone()
    assert row["started_at"] == "2024-01-01T09:50:00.000Z"
    assert row["ended_at"] == "2024-01-01T10:10:00.000Z"


def test_overlap_query(db):
    db.store_activity(at(8), at(8, 30), seconds_active=1800)
    inside = db.store_activity(at(9, 50), at(10, 10), seconds_active=1200)
    still_open = db.store_activity(at(10, 30), None, seconds_active=60)

    rows = db.get_activities_overlapping(at(10), NOW)
    assert [r["id"] for r in rows] == [inside, still_open]
    rows = db.get_activities_overlapping(at(10), NOW, newest_first=True)
    assert [r["id"] for r in rows] == [still_open, inside]


def test_recent_activities_skip_bad_rows(db):
    db.store_activity("garbage", None, seconds_active=10)
    good = db.store_activity(at(10), at(10, 1), seconds_active=60)

    assert [a.id for a in db.get_recent_activities(10)] == [good]


def test_unknown_category_reads_as_none(db):
    activity_id = db.store_activity(at(10), at(10, 1), seconds_active=60, category="mystery")
    assert db.get_activity(activity_id).category is None


def test_rollup_upsert_replaces(db):
    rollup = Rollup(device_id="laptop", hour_start=iso_from_ms(at(10)), productive=100,
                    updated_at=iso_from_ms(at(10, 30)))
    db.upsert_rollups([rollup])
    db.upsert_rollups([rollup.model_copy(update={"productive": 0, "idle": 50,
                                                  "updated_at": iso_from_ms(NOW)})])

    (stored,) = db.get_rollups(iso_from_ms(at(0)))
    assert stored.productive == 0
    assert stored.idle == 50
    assert stored.updated_at == iso_from_ms(NOW)


def test_rollup_rejects_negative_values(db):
    with pytest.raises(DatabaseError):
        with db.transaction() as conn:
            conn.execute(
                "INSERT INTO activity_rollups (device_id, hour_start, productive, updated_at) VALUES (?, ?, ?, ?)",
                ["laptop", iso_from_ms(at(10)), -5, iso_from_ms(NOW)]
            )
    assert db.get_rollups(iso_from_ms(at(0))) == []


def test_markers(db):
    db.store_marker(ConsumptionMarker(occurred_at=from_ms(at(10)), kind="library", title="Essay",
                                      meta={"price": 3}))
    (marker,) = db.get_markers_between(at(9), at(11))
    assert marker["kind"] == "library"
    assert marker["meta"] == {"price": 3}
    assert db.get_markers_between(at(11), NOW + 1) == []


def test_malformed_metadata_is_ignored(db):
    db.conn.execute(
        "INSERT INTO behavior_events (timestamp, domain, event_type, metadata) VALUES (?, ?, ?, ?)",
        [iso_from_ms(at(10)), "docs.com", "click", "{not json"]
    )
    (evt,) = db.get_behavior_events_between(at(9), at(11))
    assert evt["metadata"] is None


def test_database_stats(db):
    """Test getting database statistics"""
    db.store_activity(at(9), at(9, 10), seconds_active=600)
    db.store_activity(at(10), at(10, 10), seconds_active=600)

    stats = db.get_database_stats()
    assert stats["tables"]["activities"]["row_count"] == 2
    assert stats["tables"]["activities"]["index_count"] >= 3
    assert stats["time_range"]["oldest"] == iso_from_ms(at(9))
    assert stats["time_range"]["newest"] == iso_from_ms(at(10))
    assert stats["time_range"]["total_records"] == 2
    assert stats["database_size_mb"] == 0


def test_file_database(tmp_path):
    db = DatabaseManager(tmp_path / "nested" / "ledger.db")
    try:
        db.store_activity(at(10), at(10, 1), seconds_active=60)
        assert db.verify_database_integrity()
        assert db.get_database_stats()["tables"]["activities"]["row_count"] == 1
    finally:
        db.close()


def test_query_errors_are_wrapped(db):
    db.conn = Mock()
    db.conn.execute.side_effect = sqlite3.OperationalError("disk I/O error")
    with pytest.raises(DatabaseError):
        db.get_recent_activities()


def test_extended_interval_stays_open_until_closed(db):
    """Moving the end forward does not close an interval"""
    event = ActivityEvent(timestamp=from_ms(at(10)), source="app", app_name="Editor")
    activity_id = db.insert_activity("laptop", event)
    db.add_activity_seconds(activity_id, at(10, 1), 60, 0)
    assert [a.id for a in db.get_open_activities("laptop")] == [activity_id]

    db.close_activity(activity_id, at(10, 1))
    assert db.get_open_activities("laptop") == []
    assert not db.get_activity(activity_id).is_open


def test_backfilled_activities_are_closed_when_ended(db):
    finished = db.store_activity(at(9), at(9, 10), device_id="laptop", seconds_active=600)
    running = db.store_activity(at(10), None, device_id="laptop", seconds_active=60)

    assert not db.get_activity(finished).is_open
    assert [a.id for a in db.get_open_activities("laptop")] == [running]
