"""Window summaries computed straight from activity records

Unlike rollups, these views clip every record to an arbitrary window that
ends "now", so partial hours at both edges are attributed exactly. They read
one device's records; merging devices is left to the rollup summary.
"""
import logging
from typing import Callable, Dict, Iterable, List, Optional

from activity_ledger.config.settings import settings
from activity_ledger.models.activity import Activity, Category, Source, TotalsKey
from activity_ledger.models.analytics import (
    ActivityJourney,
    ActivitySummary,
    ContextTotal,
    JourneySegment,
    NeutralCount,
    TimelineBucket,
)
from activity_ledger.services.contexts import canonical_domain, context_label, is_suppressed
from activity_ledger.services.database import DatabaseManager
from activity_ledger.services.intervals import (
    HOUR_MS,
    bucket_fractions,
    build_hour_buckets,
    clamp_window_hours,
    clip_span,
    iso_from_ms,
    now_ms,
    parse_iso_ms,
    resolve_timezone,
    round_half_up,
    to_ms,
)
from activity_ledger.services.rollups import dominant_of

logger = logging.getLogger(__name__)

TIMELINE_FIELDS = ["productive", "neutral", "frivolity", "draining", "idle"]
NEUTRAL_COUNT_LIMIT = 6


class SummaryProjector:
    def __init__(
        self,
        db: DatabaseManager,
        clock: Callable[[], int] = now_ms,
        excluded_keywords: Optional[Iterable[str]] = None,
        device_id: Optional[str] = None,
        top_context_limit: Optional[int] = None,
    ):
        self.db = db
        self.clock = clock
        self.device_id = device_id or settings.DEVICE_ID
        self.excluded_keywords = (
            [k.lower() for k in excluded_keywords] if excluded_keywords is not None
            else settings.excluded_keywords()
        )
        self.top_context_limit = top_context_limit or settings.TOP_CONTEXT_LIMIT
        self.tz = resolve_timezone(settings.TIMEZONE)

    def _suppressed(self, domain: Optional[str], app_name: Optional[str]) -> bool:
        return is_suppressed(domain, app_name, self.excluded_keywords)

    def get_recent(self, limit: int = 50) -> List[Activity]:
        """Most recent activities with privacy-excluded contexts blanked out"""
        recent = []
        for activity in self.db.get_recent_activities(limit, device_id=self.device_id):
            domain = canonical_domain(activity.domain)
            if self._suppressed(domain, activity.app_name):
                activity = activity.model_copy(update={
                    "domain": None, "app_name": None, "url": None, "window_title": None
                })
            recent.append(activity)
        return recent

    def get_summary(self, window_hours=24) -> ActivitySummary:
        """Totals, hourly timeline and top contexts for the last window_hours"""
        hours = clamp_window_hours(window_hours)
        window_end = self.clock()
        window_start = window_end - hours * HOUR_MS
        buckets = build_hour_buckets(window_start, hours, self.tz)

        totals_by_category = {key.value: 0.0 for key in TotalsKey}
        totals_by_source = {source.value: 0.0 for source in Source}
        slots: List[Dict[str, float]] = [{name: 0.0 for name in TIMELINE_FIELDS} for _ in buckets]
        context_totals: Dict[str, ContextTotal] = {}
        slot_contexts: List[Dict[str, ContextTotal]] = [{} for _ in buckets]
        total_seconds = 0.0
        sample_count = 0

        rows = self.db.get_activities_overlapping(
            window_start, window_end, device_id=self.device_id, newest_first=True
        )
        for row in rows:
            start_ms = parse_iso_ms(row["started_at"])
            if start_ms is None:
                logger.debug(f"Skipping activity {row['id']} with unparseable start")
                continue
            span = clip_span(
                start_ms, parse_iso_ms(row["ended_at"]),
                row["seconds_active"], row["idle_seconds"],
                window_start, window_end,
            )
            if span is None:
                continue
            sample_count += 1

            domain = canonical_domain(row["domain"])
            app_name = row["app_name"]
            source = Source(row["source"])
            stored_category = Category.parse(row["category"])
            suppressed = self._suppressed(domain, app_name)
            if suppressed:
                total_key = TotalsKey.NEUTRAL.value
            elif stored_category is None:
                total_key = TotalsKey.UNCATEGORISED.value
            else:
                total_key = stored_category.value
            # Timeline buckets have no uncategorised or emergency column
            slot_key = total_key if total_key in TIMELINE_FIELDS else "neutral"

            total_seconds += span.active_seconds
            totals_by_category[total_key] += span.active_seconds
            totals_by_category[TotalsKey.IDLE.value] += span.idle_seconds
            totals_by_source[source.value] += span.active_seconds

            label = context_label(domain, app_name)
            if not suppressed:
                self._add_context(context_totals, label, stored_category, source, domain, app_name,
                                  span.active_seconds)

            for idx, fraction in bucket_fractions(
                span.overlap_start_ms, span.overlap_end_ms, window_start, HOUR_MS, hours
            ):
                active_slice = span.active_seconds * fraction
                slots[idx][slot_key] += active_slice
                slots[idx]["idle"] += span.idle_seconds * fraction
                if not suppressed:
                    self._add_context(slot_contexts[idx], label, stored_category, source, domain,
                                      app_name, active_slice)

        deep_work_total, deep_work_slots = self._deep_work(window_start, hours)

        timeline = []
        for idx, bucket in enumerate(buckets):
            rounded = {name: round_half_up(value) for name, value in slots[idx].items()}
            contexts = sorted(slot_contexts[idx].values(), key=lambda c: c.seconds, reverse=True)
            timeline.append(TimelineBucket(
                hour=bucket.hour_label,
                start=bucket.start_iso,
                deep_work=deep_work_slots[idx],
                dominant=dominant_of(rounded),
                top_context=contexts[0] if contexts else None,
                **rounded,
            ))

        top_contexts = sorted(context_totals.values(), key=lambda c: c.seconds, reverse=True)
        return ActivitySummary(
            window_hours=hours,
            sample_count=sample_count,
            total_seconds=round_half_up(total_seconds),
            deep_work_seconds=deep_work_total,
            totals_by_category={k: round_half_up(v) for k, v in totals_by_category.items()},
            totals_by_source={k: round_half_up(v) for k, v in totals_by_source.items()},
            top_contexts=top_contexts[:self.top_context_limit],
            timeline=timeline,
        )

    @staticmethod
    def _add_context(
        contexts: Dict[str, ContextTotal],
        label: str,
        category: Optional[Category],
        source: Source,
        domain: Optional[str],
        app_name: Optional[str],
        seconds: float,
    ) -> None:
        ctx = contexts.get(label)
        if ctx is None:
            ctx = ContextTotal(
                label=label, category=category, source=source, domain=domain, app_name=app_name
            )
            contexts[label] = ctx
        ctx.seconds += seconds

    def _deep_work(self, window_start: int, hours: int):
        """Focus-session seconds in the window, total and per bucket"""
        window_end = window_start + hours * HOUR_MS
        now = self.clock()
        per_slot = [0] * hours
        total = 0
        for session in self.db.get_focus_sessions_overlapping(window_start, window_end):
            start = to_ms(session.start_time)
            planned_end = start + max(0, session.planned_duration_sec) * 1000
            actual_end = to_ms(session.end_time) if session.end_time else now
            clipped_start = max(start, window_start)
            clipped_end = min(planned_end, actual_end, window_end)
            if clipped_end <= clipped_start:
                continue
            total += round_half_up((clipped_end - clipped_start) / 1000)
            span = clipped_end - clipped_start
            for idx, fraction in bucket_fractions(clipped_start, clipped_end, window_start, HOUR_MS, hours):
                per_slot[idx] += round_half_up(span * fraction / 1000)
        return total, per_slot

    def get_journey(self, window_hours=24) -> ActivityJourney:
        """Chronological category segments, merging consecutive repeats"""
        hours = clamp_window_hours(window_hours)
        window_end = self.clock()
        window_start = window_end - hours * HOUR_MS

        segments: List[JourneySegment] = []
        neutral_counts: Dict[str, NeutralCount] = {}

        def push(category: TotalsKey, label: Optional[str], source: Source, seg_start: int, seg_end: int):
            if seg_end <= seg_start:
                return
            seconds = (seg_end - seg_start) / 1000
            prev = segments[-1] if segments else None
            if prev is not None and prev.category == category and prev.label == label:
                prev.end = iso_from_ms(seg_end)
                prev.seconds += seconds
            else:
                segments.append(JourneySegment(
                    start=iso_from_ms(seg_start),
                    end=iso_from_ms(seg_end),
                    category=category,
                    label=label,
                    source=source,
                    seconds=seconds,
                ))
            if category == TotalsKey.NEUTRAL and label:
                entry = neutral_counts.get(label)
                if entry is None:
                    entry = NeutralCount(label=label, count=0, seconds=0.0, source=source)
                    neutral_counts[label] = entry
                entry.count += 1
                entry.seconds += seconds

        for row in self.db.get_activities_overlapping(window_start, window_end, device_id=self.device_id):
            start_ms = parse_iso_ms(row["started_at"])
            if start_ms is None:
                logger.debug(f"Skipping activity {row['id']} with unparseable start")
                continue
            active = max(0, row["seconds_active"] or 0)
            idle = max(0, row["idle_seconds"] or 0)
            total = active + idle
            if total <= 0:
                continue
            end_ms = parse_iso_ms(row["ended_at"])
            if end_ms is None:
                end_ms = start_ms + total * 1000
            if min(end_ms, window_end) <= max(start_ms, window_start):
                continue

            # Stretch the recorded seconds over the wall-clock span
            scale = max(1, end_ms - start_ms) / (total * 1000)
            active_end = start_ms + active * 1000 * scale
            idle_end = active_end + idle * 1000 * scale

            domain = canonical_domain(row["domain"])
            app_name = row["app_name"]
            source = Source(row["source"])
            suppressed = self._suppressed(domain, app_name)
            label = None if suppressed else (domain or app_name)
            category = Category.parse(row["category"])
            if suppressed or category is None:
                segment_category = TotalsKey.NEUTRAL
            else:
                segment_category = TotalsKey(category.value)

            if active > 0:
                push(segment_category, label, source,
                     max(start_ms, window_start), int(min(active_end, window_end)))
            if idle > 0:
                push(TotalsKey.IDLE, None, source,
                     int(max(active_end, window_start)), int(min(idle_end, window_end)))

        ranked = sorted(neutral_counts.values(), key=lambda n: n.count, reverse=True)
        return ActivityJourney(
            window_hours=hours,
            start=iso_from_ms(window_start),
            end=iso_from_ms(window_end),
            segments=segments,
            neutral_counts=ranked[:NEUTRAL_COUNT_LIMIT],
        )
