import pytest

from activity_ledger.models.activity import TotalsKey
from activity_ledger.models.focus_session import FocusSession
from activity_ledger.services.intervals import from_ms, iso_from_ms
from activity_ledger.services.summary import SummaryProjector
from conftest import at


@pytest.fixture
def projector(db, clock):
    return SummaryProjector(db, clock=clock, excluded_keywords=[], top_context_limit=8)


def test_empty_window(projector):
    """Test an empty database gives a zeroed summary"""
    summary = projector.get_summary(3)

    assert summary.window_hours == 3
    assert summary.sample_count == 0
    assert summary.total_seconds == 0
    assert set(summary.totals_by_category) == {key.value for key in TotalsKey}
    assert summary.totals_by_source == {"app": 0, "url": 0}
    assert len(summary.timeline) == 3
    assert all(bucket.dominant == TotalsKey.IDLE for bucket in summary.timeline)


def test_record_split_across_hour_buckets(projector, store):
    """09:50-10:10 with 1200s active lands 600s in each hour"""
    store(at(9, 50), at(10, 10), 1200, category="productive")

    summary = projector.get_summary(2)
    assert [bucket.start for bucket in summary.timeline] == [iso_from_ms(at(9)), iso_from_ms(at(10))]
    assert [bucket.hour for bucket in summary.timeline] == ["09:00", "10:00"]
    assert [bucket.productive for bucket in summary.timeline] == [600, 600]
    assert summary.total_seconds == 1200
    assert summary.totals_by_category["productive"] == 1200
    assert all(bucket.dominant == TotalsKey.PRODUCTIVE for bucket in summary.timeline)


def test_record_clipped_at_window_start(projector, store):
    store(at(8, 30), at(9, 30), 3600, category="productive")

    summary = projector.get_summary(2)
    assert summary.total_seconds == 1800
    assert summary.sample_count == 1


def test_uncategorised_totals_but_neutral_timeline(projector, store):
    store(at(10), at(10, 10), 600)

    summary = projector.get_summary(2)
    assert summary.totals_by_category["uncategorised"] == 600
    assert summary.totals_by_category["neutral"] == 0
    assert summary.timeline[1].neutral == 600


def test_emergency_is_neutral_in_timeline(projector, store):
    store(at(10), at(10, 10), 600, category="emergency")

    summary = projector.get_summary(2)
    assert summary.totals_by_category["emergency"] == 600
    assert summary.timeline[1].neutral == 600


def test_idle_seconds_are_separate(projector, store):
    store(at(10), at(10, 10), 400, 200, category="productive")

    summary = projector.get_summary(2)
    assert summary.total_seconds == 400
    assert summary.totals_by_category["idle"] == 200
    assert summary.timeline[1].idle == 200


def test_timeline_conserves_active_seconds(projector, store):
    """Buckets add back up to the window total"""
    store(at(9, 5), at(9, 47), 2000, 100, category="productive")
    store(at(9, 47), at(10, 13), 1500, category="frivolity", source="url", domain="news.com")
    store(at(10, 13), at(10, 59), 2700, category="draining")

    summary = projector.get_summary(2)
    timeline_active = sum(
        b.productive + b.neutral + b.frivolity + b.draining for b in summary.timeline
    )
    assert abs(timeline_active - summary.total_seconds) <= len(summary.timeline)
    assert summary.totals_by_source["url"] == 1500


def test_unparseable_timestamps_are_skipped(db, projector, store):
    store("2024-01-01T10:99:00.000Z", None, 600, category="productive")
    store(at(10), at(10, 10), 600, category="productive")

    summary = projector.get_summary(2)
    assert summary.sample_count == 1
    assert summary.total_seconds == 600


def test_top_contexts_rank_and_alias(projector, store):
    store(at(10), at(10, 5), 300, source="url", app_name="Browser", domain="x.com", category="frivolity")
    store(at(10, 5), at(10, 25), 1200, category="productive")
    store(at(10, 25), at(10, 30), 300, source="url", app_name="Browser", domain="www.twitter.com",
          category="frivolity")

    summary = projector.get_summary(2)
    labels = [(ctx.label, ctx.seconds) for ctx in summary.top_contexts]
    assert labels == [("Editor", 1200), ("twitter.com", 600)]
    assert summary.timeline[1].top_context.label == "Editor"


def test_excluded_keywords_are_neutral_and_hidden(db, clock, store):
    projector = SummaryProjector(db, clock=clock, excluded_keywords=["Bank"])
    store(at(10), at(10, 10), 600, source="url", app_name="Browser", domain="mybank.com",
          category="productive")

    summary = projector.get_summary(2)
    assert summary.totals_by_category["productive"] == 0
    assert summary.totals_by_category["neutral"] == 600
    assert summary.top_contexts == []
    assert summary.timeline[1].top_context is None


def test_deep_work_from_focus_sessions(db, projector):
    db.store_focus_session(FocusSession(start_time=from_ms(at(10)), planned_duration_sec=1800))
    # Ended early, counts until the actual end
    db.store_focus_session(FocusSession(
        start_time=from_ms(at(9)), planned_duration_sec=3600, end_time=from_ms(at(9, 10))
    ))

    summary = projector.get_summary(2)
    assert summary.deep_work_seconds == 2400
    assert [bucket.deep_work for bucket in summary.timeline] == [600, 1800]


def test_window_hours_are_clamped(projector):
    assert projector.get_summary(0).window_hours == 1
    assert projector.get_summary(1000).window_hours == 168


def test_journey_merges_consecutive_segments(projector, store):
    store(at(10), at(10, 10), 600, category="productive")
    store(at(10, 10), at(10, 20), 600, category="productive")
    store(at(10, 20), at(10, 30), 300, 300, source="url", app_name="Browser", domain="docs.com")

    journey = projector.get_journey(2)
    summary = [(s.category, s.label, s.seconds) for s in journey.segments]
    assert summary == [
        (TotalsKey.PRODUCTIVE, "Editor", 1200),
        (TotalsKey.NEUTRAL, "docs.com", 300),
        (TotalsKey.IDLE, None, 300),
    ]
    assert journey.segments[0].end == iso_from_ms(at(10, 20))
    assert [(n.label, n.count) for n in journey.neutral_counts] == [("docs.com", 1)]


def test_recent_activities_blank_excluded_contexts(db, clock, store):
    projector = SummaryProjector(db, clock=clock, excluded_keywords=["bank"])
    store(at(10), at(10, 10), 600, source="url", app_name="Browser", domain="bank.com",
          url="https://bank.com/account", window_title="Balance")
    store(at(10, 10), at(10, 20), 600)

    recent = projector.get_recent(10)
    assert recent[0].app_name == "Editor"
    assert recent[1].domain is None
    assert recent[1].url is None
    assert recent[1].window_title is None


def test_summary_reads_a_single_device(db, clock, store):
    """Two devices busy in the same hour are not counted twice"""
    store(at(10), at(11), 3600, device_id="laptop", category="productive")
    store(at(10), at(11), 3600, device_id="desktop", source="url", app_name="Browser",
          domain="news.com", category="frivolity")

    laptop = SummaryProjector(db, clock=clock, excluded_keywords=[], device_id="laptop")
    summary = laptop.get_summary(1)
    assert summary.total_seconds == 3600
    assert summary.timeline[0].productive == 3600
    assert summary.timeline[0].frivolity == 0
    assert [ctx.label for ctx in summary.top_contexts] == ["Editor"]

    desktop = SummaryProjector(db, clock=clock, excluded_keywords=[], device_id="desktop")
    assert [s.label for s in desktop.get_journey(1).segments] == ["news.com"]
    assert [a.device_id for a in desktop.get_recent(10)] == ["desktop"]
