"""Interval arithmetic shared by every aggregation

All times are integer milliseconds since the Unix epoch (UTC). Every
aggregation in the package clips records with these helpers so that
summaries, rollups and analytics attribute seconds the same way.
"""
import math
import time
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone, tzinfo
from typing import Iterator, List, Optional, Tuple
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from activity_ledger.services.errors import ConfigError

HOUR_MS = 60 * 60 * 1000
DAY_MS = 24 * HOUR_MS
MAX_WINDOW_HOURS = 168

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


@dataclass
class ClippedSpan:
    """A record restricted to the part that overlaps a query range"""
    start_ms: int
    end_ms: int
    overlap_start_ms: int
    overlap_end_ms: int
    active_seconds: float
    idle_seconds: float

    @property
    def overlap_span_ms(self) -> int:
        return self.overlap_end_ms - self.overlap_start_ms


@dataclass
class HourBucket:
    start_ms: int
    end_ms: int
    start_iso: str
    hour_label: str


def round_half_up(value: float) -> int:
    """Round .5 away from zero for positives, matching JavaScript Math.round"""
    return int(math.floor(value + 0.5))


def now_ms() -> int:
    return int(time.time() * 1000)


def to_ms(value: datetime) -> int:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return (value - _EPOCH) // timedelta(milliseconds=1)


def from_ms(value_ms: int) -> datetime:
    return _EPOCH + timedelta(milliseconds=value_ms)


def iso_from_ms(value_ms: int) -> str:
    """ISO-8601 UTC text with millisecond precision, e.g. 2024-01-01T09:50:00.000Z"""
    dt = from_ms(int(value_ms))
    return dt.strftime("%Y-%m-%dT%H:%M:%S.") + f"{dt.microsecond // 1000:03d}Z"


def parse_iso_ms(value: Optional[str]) -> Optional[int]:
    """Parse stored timestamp text, returning None when it is unusable"""
    if not value or not isinstance(value, str):
        return None
    text = value.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        return None
    return to_ms(parsed)


def overlap_ms(a_start: int, a_end: int, b_start: int, b_end: int) -> int:
    return max(0, min(a_end, b_end) - max(a_start, b_start))


def floor_to_hour_ms(value_ms: int) -> int:
    return value_ms - (value_ms % HOUR_MS)


def clip_ratio(overlap: float, duration: float) -> float:
    return min(1.0, overlap / max(1, duration))


def clip_span(
    start_ms: Optional[int],
    end_ms: Optional[int],
    seconds_active: float,
    idle_seconds: float,
    range_start_ms: int,
    range_end_ms: int,
) -> Optional[ClippedSpan]:
    """Clip a record to a range and scale its seconds by the overlap

    Returns None for records without a usable start, with zero total seconds,
    or that do not overlap the range. Open records (no end) are assumed to
    end after their recorded seconds have elapsed.
    """
    if start_ms is None:
        return None
    active = max(0.0, float(seconds_active or 0))
    idle = max(0.0, float(idle_seconds or 0))
    total = active + idle
    if total <= 0:
        return None
    if end_ms is None:
        end_ms = start_ms + int(total * 1000)
    overlap = overlap_ms(start_ms, end_ms, range_start_ms, range_end_ms)
    if overlap <= 0:
        return None
    ratio = clip_ratio(overlap, end_ms - start_ms)
    return ClippedSpan(
        start_ms=start_ms,
        end_ms=end_ms,
        overlap_start_ms=max(start_ms, range_start_ms),
        overlap_end_ms=min(end_ms, range_end_ms),
        active_seconds=active * ratio,
        idle_seconds=idle * ratio,
    )


def hour_fractions(span_start_ms: int, span_end_ms: int) -> Iterator[Tuple[int, float]]:
    """Yield (hour_start_ms, fraction) for every UTC hour a span touches

    Fractions are bucket overlap over the span length and sum to 1.
    """
    span = span_end_ms - span_start_ms
    if span <= 0:
        return
    hour_start = floor_to_hour_ms(span_start_ms)
    last_hour = floor_to_hour_ms(span_end_ms - 1)
    while hour_start <= last_hour:
        bucket_overlap = overlap_ms(span_start_ms, span_end_ms, hour_start, hour_start + HOUR_MS)
        if bucket_overlap > 0:
            yield hour_start, bucket_overlap / span
        hour_start += HOUR_MS


def local_hour_fractions(
    span_start_ms: int, span_end_ms: int, tz: tzinfo = timezone.utc
) -> Iterator[Tuple[int, float]]:
    """Yield (local_hour, fraction) for every clock hour of tz a span touches

    Spans are cut on local hour boundaries, which differ from UTC ones in
    zones with a fractional-hour offset.
    """
    span = span_end_ms - span_start_ms
    if span <= 0:
        return
    cursor = span_start_ms
    while cursor < span_end_ms:
        local = from_ms(cursor).astimezone(tz)
        hour_start = to_ms(local.replace(minute=0, second=0, microsecond=0))
        boundary = min(span_end_ms, hour_start + HOUR_MS)
        yield local.hour, (boundary - cursor) / span
        cursor = boundary


def bucket_fractions(
    span_start_ms: int,
    span_end_ms: int,
    window_start_ms: int,
    bucket_ms: int,
    bucket_count: int,
) -> Iterator[Tuple[int, float]]:
    """Yield (bucket_index, fraction) for fixed buckets laid out from window_start_ms"""
    span = span_end_ms - span_start_ms
    if span <= 0 or bucket_count <= 0:
        return
    start_idx = max(0, (span_start_ms - window_start_ms) // bucket_ms)
    end_idx = min(bucket_count - 1, (span_end_ms - 1 - window_start_ms) // bucket_ms)
    for idx in range(start_idx, end_idx + 1):
        bucket_start = window_start_ms + idx * bucket_ms
        bucket_overlap = overlap_ms(span_start_ms, span_end_ms, bucket_start, bucket_start + bucket_ms)
        if bucket_overlap > 0:
            yield idx, bucket_overlap / span


def clamp_window_hours(window_hours) -> int:
    try:
        hours = float(window_hours)
    except (TypeError, ValueError):
        hours = 24
    if not math.isfinite(hours):
        hours = 24
    return min(max(round_half_up(hours), 1), MAX_WINDOW_HOURS)


def resolve_timezone(name: Optional[str]) -> tzinfo:
    if not name or name.upper() == "UTC":
        return timezone.utc
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError) as e:
        raise ConfigError(f"Unknown time zone {name!r}: {e}")


def local_hour(value_ms: int, tz: tzinfo = timezone.utc) -> int:
    return from_ms(value_ms).astimezone(tz).hour


def hour_label(value_ms: int, tz: tzinfo = timezone.utc) -> str:
    return from_ms(value_ms).astimezone(tz).strftime("%H:%M")


def build_hour_buckets(window_start_ms: int, hours: int, tz: tzinfo = timezone.utc) -> List[HourBucket]:
    buckets = []
    for idx in range(hours):
        start = window_start_ms + idx * HOUR_MS
        buckets.append(HourBucket(
            start_ms=start,
            end_ms=start + HOUR_MS,
            start_iso=iso_from_ms(start),
            hour_label=hour_label(start, tz),
        ))
    return buckets


def shift_hour_to_day_start(hour: int, day_start_hour: int) -> int:
    """Index of an hour-of-day when the day begins at day_start_hour"""
    return (hour - day_start_hour) % 24


def unshift_hour_from_day_start(shifted_hour: int, day_start_hour: int) -> int:
    return (shifted_hour + day_start_hour) % 24


def local_day_start_ms(reference_ms: int, day_start_hour: int, tz: tzinfo = timezone.utc) -> int:
    """Start of the logical day containing reference_ms"""
    local = from_ms(reference_ms).astimezone(tz)
    if local.hour < day_start_hour:
        local = local - timedelta(days=1)
    start = local.replace(hour=day_start_hour, minute=0, second=0, microsecond=0)
    return to_ms(start)
