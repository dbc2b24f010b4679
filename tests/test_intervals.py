import pytest
from datetime import timedelta, timezone

from activity_ledger.services.errors import ConfigError
from activity_ledger.services.intervals import (
    HOUR_MS,
    bucket_fractions,
    clamp_window_hours,
    clip_span,
    hour_fractions,
    iso_from_ms,
    local_day_start_ms,
    local_hour_fractions,
    parse_iso_ms,
    resolve_timezone,
    round_half_up,
    shift_hour_to_day_start,
    unshift_hour_from_day_start,
)
from conftest import at


def test_round_half_up_matches_math_round():
    """Halves round up, including negative halves towards zero"""
    assert round_half_up(0.5) == 1
    assert round_half_up(1.5) == 2
    assert round_half_up(2.5) == 3
    assert round_half_up(2.49) == 2
    assert round_half_up(-0.5) == 0


def test_iso_round_trip():
    ts = at(9, 50)
    text = iso_from_ms(ts)
    assert text == "2024-01-01T09:50:00.000Z"
    assert parse_iso_ms(text) == ts


def test_parse_iso_rejects_garbage():
    """Lexically plausible but invalid timestamps are unusable"""
    assert parse_iso_ms("2024-13-45T99:99:99.000Z") is None
    assert parse_iso_ms("not a date") is None
    assert parse_iso_ms("") is None
    assert parse_iso_ms(None) is None


def test_clip_span_scales_seconds_by_overlap():
    span = clip_span(at(9, 50), at(10, 10), 1200, 0, at(10), at(11))
    assert span is not None
    assert span.overlap_start_ms == at(10)
    assert span.overlap_end_ms == at(10, 10)
    assert span.active_seconds == pytest.approx(600)


def test_clip_span_open_record_uses_recorded_seconds():
    """Records without an end last as long as their seconds"""
    span = clip_span(at(10), None, 60, 30, at(9), at(11))
    assert span.end_ms == at(10, 1, 30)
    assert span.active_seconds == 60
    assert span.idle_seconds == 30


def test_clip_span_skips_empty_and_disjoint_records():
    assert clip_span(at(10), at(10, 5), 0, 0, at(9), at(11)) is None
    assert clip_span(at(7), at(8), 3600, 0, at(9), at(11)) is None
    assert clip_span(None, at(10), 60, 0, at(9), at(11)) is None


def test_clip_span_never_exceeds_recorded_seconds():
    """Overlap ratio is capped at one"""
    span = clip_span(at(10), at(10, 0, 30), 60, 0, at(9), at(11))
    assert span.active_seconds == 60


def test_hour_fractions_sum_to_one():
    fractions = list(hour_fractions(at(9, 30), at(11, 15)))
    assert [hour for hour, _ in fractions] == [at(9), at(10), at(11)]
    assert sum(f for _, f in fractions) == pytest.approx(1.0)
    assert fractions[0][1] == pytest.approx(30 / 105)


def test_hour_fractions_empty_span():
    assert list(hour_fractions(at(10), at(10))) == []


def test_local_hour_fractions_cut_on_local_boundaries():
    """A UTC hour straddles two clock hours at a half-hour offset"""
    ist = timezone(timedelta(hours=5, minutes=30))
    fractions = list(local_hour_fractions(at(9), at(10), ist))
    assert fractions == [(14, 0.5), (15, 0.5)]

    utc = list(local_hour_fractions(at(9, 30), at(11, 15)))
    assert [hour for hour, _ in utc] == [9, 10, 11]
    assert [f for _, f in utc] == pytest.approx([30 / 105, 60 / 105, 15 / 105])
    assert list(local_hour_fractions(at(10), at(10), ist)) == []


def test_bucket_fractions_respect_window():
    """Parts of a span outside the bucket layout are dropped"""
    fractions = list(bucket_fractions(at(8, 30), at(10, 30), at(9), HOUR_MS, 1))
    assert fractions == [(0, pytest.approx(0.5))]


@pytest.mark.parametrize("raw, expected", [
    (24, 24),
    (0, 1),
    (-5, 1),
    (500, 168),
    ("abc", 24),
    (float("nan"), 24),
    (2.5, 3),
])
def test_clamp_window_hours(raw, expected):
    assert clamp_window_hours(raw) == expected


def test_day_start_shift_round_trip():
    for hour in range(24):
        shifted = shift_hour_to_day_start(hour, 4)
        assert 0 <= shifted < 24
        assert unshift_hour_from_day_start(shifted, 4) == hour
    assert shift_hour_to_day_start(4, 4) == 0
    assert shift_hour_to_day_start(3, 4) == 23


def test_local_day_start_before_and_after_boundary():
    assert local_day_start_ms(at(11), 4) == at(4)
    # 02:00 still belongs to the previous logical day
    assert local_day_start_ms(at(2, day=2), 4) == at(4, day=1)


def test_resolve_timezone():
    assert resolve_timezone("UTC") == timezone.utc
    assert resolve_timezone(None) == timezone.utc
    with pytest.raises(ConfigError):
        resolve_timezone("Mars/Olympus_Mons")
