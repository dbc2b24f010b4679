import logging
from typing import Callable, Dict, List, Optional, Union

from activity_ledger.config.settings import settings
from activity_ledger.models.activity import Category, Rollup, TotalsKey
from activity_ledger.models.analytics import ActivitySummary, TimelineBucket
from activity_ledger.services.database import DatabaseManager
from activity_ledger.services.errors import AggregationError
from activity_ledger.services.intervals import (
    HOUR_MS,
    build_hour_buckets,
    clamp_window_hours,
    clip_span,
    floor_to_hour_ms,
    hour_fractions,
    iso_from_ms,
    now_ms,
    parse_iso_ms,
    resolve_timezone,
    round_half_up,
)

logger = logging.getLogger(__name__)

ROLLUP_FIELDS = ["productive", "neutral", "frivolity", "draining", "idle"]
DOMINANT_ORDER = [
    TotalsKey.PRODUCTIVE,
    TotalsKey.NEUTRAL,
    TotalsKey.FRIVOLITY,
    TotalsKey.DRAINING,
    TotalsKey.IDLE,
]


def rollup_field_for(category: Optional[Category]) -> str:
    """Rollup column receiving a category's active seconds"""
    if category in (Category.PRODUCTIVE, Category.FRIVOLITY, Category.DRAINING):
        return category.value
    return "neutral"


def dominant_of(values: Dict[str, float]) -> TotalsKey:
    """Largest total, earlier keys winning ties; all-zero is idle"""
    best = DOMINANT_ORDER[0]
    for key in DOMINANT_ORDER[1:]:
        if values.get(key.value, 0) > values.get(best.value, 0):
            best = key
    return best if values.get(best.value, 0) > 0 else TotalsKey.IDLE


class RollupAggregator:
    """Recomputes per-device, per-hour category snapshots"""

    def __init__(self, db: DatabaseManager, clock: Callable[[], int] = now_ms):
        self.db = db
        self.clock = clock

    def generate_rollups(self, device_id: str, range_start_ms: int, range_end_ms: int) -> List[Rollup]:
        """Clip the device's activities to the range and spread them over UTC hours"""
        if range_end_ms <= range_start_ms:
            return []

        buckets: Dict[int, Dict[str, float]] = {}
        rows = self.db.get_activities_overlapping(range_start_ms, range_end_ms, device_id=device_id)
        for row in rows:
            start_ms = parse_iso_ms(row["started_at"])
            if start_ms is None:
                logger.debug(f"Skipping activity {row['id']} with unparseable start")
                continue
            span = clip_span(
                start_ms,
                parse_iso_ms(row["ended_at"]),
                row["seconds_active"],
                row["idle_seconds"],
                range_start_ms,
                range_end_ms,
            )
            if span is None:
                continue

            field = rollup_field_for(Category.parse(row["category"]))
            for hour_start, fraction in hour_fractions(span.overlap_start_ms, span.overlap_end_ms):
                bucket = buckets.setdefault(hour_start, {name: 0.0 for name in ROLLUP_FIELDS})
                bucket[field] += span.active_seconds * fraction
                bucket["idle"] += span.idle_seconds * fraction

        updated_at = iso_from_ms(self.clock())
        return [
            Rollup(
                device_id=device_id,
                hour_start=iso_from_ms(hour_start),
                updated_at=updated_at,
                **{name: max(0, round_half_up(value)) for name, value in values.items()},
            )
            for hour_start, values in sorted(buckets.items())
        ]

    def upsert_rollups(self, rollups: List[Rollup]) -> int:
        """Replace stored rows with freshly generated snapshots"""
        written = self.db.upsert_rollups(rollups)
        logger.info(f"Stored {written} rollup rows")
        return written

    def refresh(self, device_id: str, range_start_ms: int, range_end_ms: int) -> List[Rollup]:
        rollups = self.generate_rollups(device_id, range_start_ms, range_end_ms)
        self.upsert_rollups(rollups)
        return rollups

    def refresh_recent(self, device_id: str, hours: int = 24) -> List[Rollup]:
        """Regenerate whole hours up to and including the current one"""
        end = floor_to_hour_ms(self.clock()) + HOUR_MS
        return self.refresh(device_id, end - clamp_window_hours(hours) * HOUR_MS, end)

    def list_since(self, device_id: str, updated_after: Union[str, int]) -> List[Rollup]:
        """Rollups updated at or after a timestamp, for sync hand-off"""
        if isinstance(updated_after, int):
            updated_after = iso_from_ms(updated_after)
        elif parse_iso_ms(updated_after) is None:
            raise AggregationError(f"Invalid timestamp: {updated_after}")
        return self.db.get_rollups_updated_since(device_id, updated_after)

    def summary_from_rollups(self, window_hours=24, device_id: Optional[str] = None) -> ActivitySummary:
        """Summary built from stored rollups, merging every device when device_id is None

        Buckets are aligned to whole UTC hours so that they line up with
        rollup rows; the last bucket is the current hour.
        """
        hours = clamp_window_hours(window_hours)
        window_start = floor_to_hour_ms(self.clock()) - (hours - 1) * HOUR_MS
        tz = resolve_timezone(settings.TIMEZONE)
        buckets = build_hour_buckets(window_start, hours, tz)
        slots: List[Dict[str, int]] = [{name: 0 for name in ROLLUP_FIELDS} for _ in buckets]

        totals = {key.value: 0 for key in TotalsKey}
        total_seconds = 0
        sample_count = 0
        rows = self.db.get_rollups(iso_from_ms(window_start), device_id=device_id)
        for rollup in rows:
            hour_ms = parse_iso_ms(rollup.hour_start)
            if hour_ms is None:
                continue
            idx = (hour_ms - window_start) // HOUR_MS
            if not 0 <= idx < hours:
                continue
            sample_count += 1
            values = rollup.values()
            for name, value in values.items():
                totals[name] += value
                slots[idx][name] += value
            total_seconds += sum(v for k, v in values.items() if k != "idle")

        timeline = [
            TimelineBucket(
                hour=bucket.hour_label,
                start=bucket.start_iso,
                dominant=dominant_of(slot),
                **slot,
            )
            for bucket, slot in zip(buckets, slots)
        ]
        return ActivitySummary(
            window_hours=hours,
            sample_count=sample_count,
            total_seconds=total_seconds,
            totals_by_category=totals,
            totals_by_source={"app": 0, "url": 0},
            top_contexts=[],
            timeline=timeline,
        )
