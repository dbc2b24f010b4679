import pytest

from activity_ledger.models.activity import Category, Rollup, TotalsKey
from activity_ledger.services.errors import AggregationError
from activity_ledger.services.intervals import iso_from_ms
from activity_ledger.services.rollups import RollupAggregator, dominant_of, rollup_field_for
from conftest import NOW, at


@pytest.fixture
def aggregator(db, clock):
    return RollupAggregator(db, clock=clock)


def test_rollup_field_for():
    assert rollup_field_for(Category.PRODUCTIVE) == "productive"
    assert rollup_field_for(Category.DRAINING) == "draining"
    assert rollup_field_for(Category.EMERGENCY) == "neutral"
    assert rollup_field_for(None) == "neutral"


def test_dominant_of_prefers_earlier_keys_on_ties():
    assert dominant_of({"productive": 10, "neutral": 10}) == TotalsKey.PRODUCTIVE
    assert dominant_of({"neutral": 5, "frivolity": 5, "idle": 5}) == TotalsKey.NEUTRAL
    assert dominant_of({"frivolity": 3, "idle": 9}) == TotalsKey.IDLE
    assert dominant_of({}) == TotalsKey.IDLE
    assert dominant_of({"productive": 0, "draining": 0}) == TotalsKey.IDLE


def test_activity_split_across_hours(aggregator, store):
    """A record straddling an hour boundary is split by overlap"""
    store(at(9, 50), at(10, 10), 1200, device_id="laptop", category="productive")

    rollups = aggregator.generate_rollups("laptop", at(9), at(11))
    assert [r.hour_start for r in rollups] == [iso_from_ms(at(9)), iso_from_ms(at(10))]
    assert [r.productive for r in rollups] == [600, 600]
    assert all(r.updated_at == iso_from_ms(NOW) for r in rollups)


def test_uncategorised_and_emergency_fold_into_neutral(aggregator, store):
    store(at(10), at(10, 10), 600, device_id="laptop")
    store(at(10, 10), at(10, 20), 300, 300, device_id="laptop", category="emergency")

    (rollup,) = aggregator.generate_rollups("laptop", at(10), at(11))
    assert rollup.neutral == 900
    assert rollup.idle == 300
    assert rollup.productive == 0


def test_generate_ignores_other_devices(aggregator, store):
    store(at(10), at(10, 10), 600, device_id="desktop", category="productive")
    assert aggregator.generate_rollups("laptop", at(10), at(11)) == []


def test_empty_range_generates_nothing(aggregator, store):
    store(at(10), at(10, 10), 600, device_id="laptop")
    assert aggregator.generate_rollups("laptop", at(11), at(10)) == []


def test_refresh_is_idempotent(db, aggregator, store):
    """Regenerating the same range with a fixed clock stores the same rows"""
    store(at(9, 30), at(10, 30), 3000, 600, device_id="laptop", category="frivolity")

    first = aggregator.refresh("laptop", at(9), at(11))
    second = aggregator.refresh("laptop", at(9), at(11))
    assert first == second

    stored = db.get_rollups(iso_from_ms(at(0)), device_id="laptop")
    assert stored == second
    assert db.get_database_stats()["tables"]["activity_rollups"]["row_count"] == 2


def test_refresh_replaces_stale_values(db, aggregator, store):
    activity_id = store(at(10), at(10, 10), 600, device_id="laptop", category="productive")
    aggregator.refresh("laptop", at(10), at(11))

    db.conn.execute("UPDATE activities SET category = 'draining' WHERE id = ?", [activity_id])
    aggregator.refresh("laptop", at(10), at(11))

    (rollup,) = db.get_rollups(iso_from_ms(at(10)), device_id="laptop")
    assert rollup.productive == 0
    assert rollup.draining == 600


def test_refresh_recent_covers_current_hour(db, aggregator, store):
    store(at(11), at(11, 0, 30), 30, device_id="laptop", category="productive")
    rollups = aggregator.refresh_recent("laptop", hours=2)
    assert [r.hour_start for r in rollups] == [iso_from_ms(at(11))]


def test_list_since(aggregator, store):
    store(at(10), at(10, 10), 600, device_id="laptop", category="productive")
    aggregator.refresh("laptop", at(10), at(11))

    assert len(aggregator.list_since("laptop", iso_from_ms(NOW))) == 1
    assert aggregator.list_since("laptop", NOW + 1) == []
    assert aggregator.list_since("desktop", iso_from_ms(at(0))) == []


def test_list_since_rejects_bad_timestamp(aggregator):
    with pytest.raises(AggregationError):
        aggregator.list_since("laptop", "2024-99-99T00:00:00Z")


def test_summary_from_rollups_merges_devices(aggregator, store):
    store(at(10), at(10, 20), 1200, device_id="laptop", category="productive")
    store(at(10, 30), at(10, 40), 600, device_id="desktop", category="frivolity")
    store(at(11), at(11, 0, 20), 0, 20, device_id="desktop")
    aggregator.refresh("laptop", at(10), at(12))
    aggregator.refresh("desktop", at(10), at(12))

    summary = aggregator.summary_from_rollups(2)
    assert summary.window_hours == 2
    assert summary.total_seconds == 1800
    assert summary.totals_by_category["productive"] == 1200
    assert summary.totals_by_category["frivolity"] == 600
    assert summary.totals_by_category["idle"] == 20

    hours = [bucket.start for bucket in summary.timeline]
    assert hours == [iso_from_ms(at(10)), iso_from_ms(at(11))]
    assert summary.timeline[0].dominant == TotalsKey.PRODUCTIVE
    assert summary.timeline[1].dominant == TotalsKey.IDLE

    laptop_only = aggregator.summary_from_rollups(2, device_id="laptop")
    assert laptop_only.total_seconds == 1200


def test_summary_from_rollups_skips_rows_after_last_bucket(db, aggregator):
    """Totals only count hours that appear on the timeline"""
    db.upsert_rollups([
        Rollup(device_id="laptop", hour_start=iso_from_ms(at(11)), productive=300,
               updated_at=iso_from_ms(NOW)),
        Rollup(device_id="laptop", hour_start=iso_from_ms(at(12)), frivolity=900,
               updated_at=iso_from_ms(NOW)),
    ])

    summary = aggregator.summary_from_rollups(2)
    assert summary.sample_count == 1
    assert summary.total_seconds == 300
    assert summary.totals_by_category["frivolity"] == 0
    assert sum(bucket.frivolity for bucket in summary.timeline) == 0
    assert sum(bucket.productive for bucket in summary.timeline) == 300
