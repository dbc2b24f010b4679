"""Behavioural analytics derived from activity history

Time-of-day histograms, transition mining, per-domain engagement scoring,
episode segmentation and the overview/trend views all read raw activity
rows of a single device and clip them with the shared interval helpers.
"""
import logging
import math
from dataclasses import dataclass
from datetime import tzinfo
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple, Union

from pydantic import ValidationError

from activity_ledger.config.settings import settings
from activity_ledger.models.activity import BehaviorEvent, Category, TotalsKey
from activity_ledger.models.analytics import (
    AnalyticsOverview,
    AppSeconds,
    BehavioralPattern,
    BehaviorEpisode,
    BehaviorEpisodeMap,
    ContentSnapshot,
    DomainSeconds,
    EngagementLevel,
    EngagementMetrics,
    EpisodeContextSlice,
    EpisodeEventCounts,
    EpisodeMarker,
    EpisodeQuery,
    EpisodeRates,
    EpisodeSummary,
    EpisodeTimeBin,
    FocusTrend,
    SourceCoverage,
    TimeOfDayStats,
    TrendPoint,
)
from activity_ledger.services.contexts import context_label, is_suppressed
from activity_ledger.services.database import DatabaseManager
from activity_ledger.services.errors import AnalyticsError
from activity_ledger.services.intervals import (
    DAY_MS,
    HOUR_MS,
    ClippedSpan,
    bucket_fractions,
    clip_span,
    from_ms,
    iso_from_ms,
    local_day_start_ms,
    local_hour,
    local_hour_fractions,
    now_ms,
    overlap_ms,
    parse_iso_ms,
    resolve_timezone,
    round_half_up,
    shift_hour_to_day_start,
    to_ms,
    unshift_hour_from_day_start,
)

logger = logging.getLogger(__name__)

BREAKDOWN_ORDER = ["productive", "neutral", "frivolity", "draining", "emergency", "idle"]
TREND_GRANULARITIES = {
    "hour": (HOUR_MS, 24),
    "day": (DAY_MS, 30),
    "week": (7 * DAY_MS, 12),
}
PATTERN_LIMIT = 50
TOP_LIST_LIMIT = 8
SUMMARY_DOMAIN_LIMIT = 12
SNAPSHOT_LIMIT = 120
MAX_INSIGHTS = 5


def fixation_score(clicks_per_minute: float, keystrokes_per_minute: float, scroll_velocity: float) -> int:
    """Heuristic 0-100 fixation estimate; fast scrolling discounts input rates"""
    raw = (clicks_per_minute * 5 + keystrokes_per_minute * 2) * (1 - scroll_velocity / 1000)
    return min(100, round_half_up(raw))


def engagement_level_for(score: int) -> EngagementLevel:
    if score >= 80:
        return EngagementLevel.INTENSE
    if score >= 60:
        return EngagementLevel.HIGH
    if score >= 40:
        return EngagementLevel.MODERATE
    if score >= 20:
        return EngagementLevel.PASSIVE
    return EngagementLevel.LOW


def per_minute(count: float, minutes: float) -> float:
    """Rate rounded to one decimal"""
    return round_half_up(count / minutes * 10) / 10


def format_hour(hour: int) -> str:
    suffix = "PM" if hour >= 12 else "AM"
    return f"{hour % 12 or 12}{suffix}"


def empty_breakdown() -> Dict[str, float]:
    return {key: 0.0 for key in BREAKDOWN_ORDER}


@dataclass
class ActivitySlice:
    """An activity row clipped to a query range, with its effective context"""
    id: int
    span: ClippedSpan
    category: Category
    suppressed: bool
    domain: Optional[str]
    app_name: Optional[str]
    url: Optional[str]
    window_title: Optional[str]

    @property
    def label(self) -> str:
        return context_label(self.domain, self.app_name)


class AnalyticsEngine:
    def __init__(
        self,
        db: DatabaseManager,
        clock: Callable[[], int] = now_ms,
        excluded_keywords: Optional[Iterable[str]] = None,
        device_id: Optional[str] = None,
        day_start_hour: Optional[int] = None,
        tz: Optional[tzinfo] = None,
    ):
        self.db = db
        self.clock = clock
        self.device_id = device_id or settings.DEVICE_ID
        self.excluded_keywords = (
            [k.lower() for k in excluded_keywords] if excluded_keywords is not None
            else settings.excluded_keywords()
        )
        self.day_start_hour = day_start_hour if day_start_hour is not None else settings.DAY_START_HOUR
        self.tz = tz or resolve_timezone(settings.TIMEZONE)

    def _suppressed(self, domain: Optional[str], app_name: Optional[str]) -> bool:
        return is_suppressed(domain, app_name, self.excluded_keywords)

    def _slice(self, row, range_start: int, range_end: int) -> Optional[ActivitySlice]:
        start_ms = parse_iso_ms(row["started_at"])
        if start_ms is None:
            logger.debug(f"Skipping activity {row['id']} with unparseable start")
            return None
        span = clip_span(
            start_ms, parse_iso_ms(row["ended_at"]),
            row["seconds_active"], row["idle_seconds"],
            range_start, range_end,
        )
        if span is None:
            return None
        stored = Category.parse(row["category"])
        suppressed = self._suppressed(row["domain"], row["app_name"])
        return ActivitySlice(
            id=row["id"],
            span=span,
            category=Category.NEUTRAL if suppressed or stored is None else stored,
            suppressed=suppressed,
            domain=row["domain"],
            app_name=row["app_name"],
            url=row["url"],
            window_title=row["window_title"],
        )

    def _slices(self, range_start: int, range_end: int, **filters) -> List[ActivitySlice]:
        rows = self.db.get_activities_overlapping(range_start, range_end, device_id=self.device_id, **filters)
        return [s for s in (self._slice(row, range_start, range_end) for row in rows) if s is not None]

    # Ingestion

    def ingest_behavior_events(self, events: Iterable[Union[BehaviorEvent, Dict[str, Any]]]) -> int:
        """Insert a batch of behaviour events in one transaction"""
        try:
            parsed = [e if isinstance(e, BehaviorEvent) else BehaviorEvent.model_validate(e) for e in events]
        except ValidationError as e:
            logger.error(f"Rejected behavior event batch: {e}")
            raise AnalyticsError(f"Invalid behavior event: {e}")
        count = self.db.insert_behavior_events(parsed)
        logger.info(f"Ingested {count} behavior events")
        return count

    # Time of day

    def get_time_of_day_analysis(self, days: int = 7) -> List[TimeOfDayStats]:
        """24 hour-of-day buckets, ordered from the configured day start"""
        range_end = self.clock()
        range_start = range_end - days * DAY_MS

        totals = [empty_breakdown() for _ in range(24)]
        samples = [0] * 24
        domain_seconds: List[Dict[str, float]] = [{} for _ in range(24)]

        for item in self._slices(range_start, range_end, newest_first=True):
            span = item.span
            for hour, fraction in local_hour_fractions(
                span.overlap_start_ms, span.overlap_end_ms, self.tz
            ):
                idx = shift_hour_to_day_start(hour, self.day_start_hour)
                active_slice = span.active_seconds * fraction
                samples[idx] += 1
                totals[idx]["idle"] += span.idle_seconds * fraction
                totals[idx][item.category.value] += active_slice
                if not item.suppressed:
                    label = item.label
                    domain_seconds[idx][label] = domain_seconds[idx].get(label, 0.0) + active_slice

        stats = []
        for idx in range(24):
            bucket = totals[idx]
            best = BREAKDOWN_ORDER[0]
            for key in BREAKDOWN_ORDER[1:]:
                if bucket[key] > bucket[best]:
                    best = key
            dominant = TotalsKey(best) if bucket[best] > 0 else TotalsKey.IDLE

            dominant_domain = None
            max_seconds = 0.0
            for label, seconds in domain_seconds[idx].items():
                if seconds > max_seconds:
                    max_seconds = seconds
                    dominant_domain = label

            active = sum(v for k, v in bucket.items() if k != "idle")
            total = active + bucket["idle"]
            stats.append(TimeOfDayStats(
                hour=unshift_hour_from_day_start(idx, self.day_start_hour),
                dominant_category=dominant,
                dominant_domain=dominant_domain,
                avg_engagement=round_half_up(active / total * 100) if total > 0 else 0,
                sample_count=samples[idx],
                **{key: round_half_up(value) for key, value in bucket.items()},
            ))
        return stats

    # Transition patterns

    def compute_transition_patterns(self, days: int = 30) -> List[BehavioralPattern]:
        """Recompute the transition graph and replace the stored snapshot"""
        range_end = self.clock()
        range_start = range_end - days * DAY_MS
        rows = self.db.get_activities_overlapping(range_start, range_end, device_id=self.device_id)

        ordered: List[Tuple[int, Any]] = []
        for row in rows:
            start_ms = parse_iso_ms(row["started_at"])
            if start_ms is None:
                logger.debug(f"Skipping activity {row['id']} with unparseable start")
                continue
            ordered.append((start_ms, row))
        ordered.sort(key=lambda pair: pair[0])

        transitions: Dict[str, Dict[str, Any]] = {}
        for (_, prev), (curr_start, curr) in zip(ordered, ordered[1:]):
            prev_category, prev_domain = self._pattern_context(prev)
            curr_category, curr_domain = self._pattern_context(curr)
            key = (
                f"{prev_category or 'null'}:{prev_domain or 'null'}"
                f"->{curr_category or 'null'}:{curr_domain or 'null'}"
            )
            entry = transitions.get(key)
            if entry is None:
                entry = {
                    "from_category": prev_category,
                    "from_domain": prev_domain,
                    "to_category": curr_category,
                    "to_domain": curr_domain,
                    "count": 0,
                    "duration_before": 0,
                    "hours": {},
                }
                transitions[key] = entry
            entry["count"] += 1
            entry["duration_before"] += max(0, prev["seconds_active"] or 0)
            hour = local_hour(curr_start, self.tz)
            entry["hours"][hour] = entry["hours"].get(hour, 0) + 1

        computed_at = iso_from_ms(self.clock())
        patterns = []
        for entry in transitions.values():
            dominant_hour = 0
            max_count = 0
            for hour, count in entry["hours"].items():
                if count > max_count:
                    max_count = count
                    dominant_hour = hour
            patterns.append(BehavioralPattern(
                from_category=entry["from_category"],
                from_domain=entry["from_domain"],
                to_category=entry["to_category"],
                to_domain=entry["to_domain"],
                frequency=entry["count"],
                avg_time_before=entry["duration_before"] / entry["count"],
                correlation_strength=min(1.0, entry["count"] / 10),
                dominant_hour_bucket=dominant_hour,
                computed_at=computed_at,
            ))

        self.db.replace_patterns(patterns, computed_at)
        logger.info(f"Computed {len(patterns)} behavioral patterns")
        return patterns

    def _pattern_context(self, row) -> Tuple[Optional[str], Optional[str]]:
        if self._suppressed(row["domain"], row["app_name"]):
            return Category.NEUTRAL.value, None
        category = Category.parse(row["category"])
        return (category.value if category else None), (row["domain"] or row["app_name"] or None)

    def patterns_are_stale(self, stale_minutes: Optional[int] = None) -> bool:
        stale_minutes = stale_minutes or settings.PATTERN_STALE_MINUTES
        latest = parse_iso_ms(self.db.get_latest_pattern_computed_at())
        return latest is None or latest < self.clock() - stale_minutes * 60 * 1000

    def get_behavioral_patterns(self, days: int = 30) -> List[BehavioralPattern]:
        """Stored patterns, recomputed first when the snapshot is stale"""
        if self.patterns_are_stale():
            self.compute_transition_patterns(days)
        return self.db.get_patterns(PATTERN_LIMIT)

    # Engagement

    def get_engagement_metrics(self, domain: str, days: int = 7) -> EngagementMetrics:
        range_end = self.clock()
        range_start = range_end - days * DAY_MS

        slices = self._slices(range_start, range_end, domain=domain)
        total_seconds = sum(s.span.active_seconds for s in slices)
        total_minutes = max(1.0, total_seconds / 60)

        scroll_depth = 0
        scroll_velocity = 0.0
        scroll_count = 0
        clicks = 0
        keystrokes = 0
        for evt in self.db.get_behavior_events_between(range_start, range_end, domain=domain):
            event_type = evt["event_type"]
            if event_type == "scroll":
                if evt["value_int"] is not None:
                    scroll_depth += evt["value_int"]
                    scroll_count += 1
                if evt["value_float"] is not None:
                    scroll_velocity += evt["value_float"]
            elif event_type == "click":
                clicks += evt["value_int"] if evt["value_int"] is not None else 1
            elif event_type == "keystroke":
                keystrokes += evt["value_int"] if evt["value_int"] is not None else 1

        avg_depth = round_half_up(scroll_depth / scroll_count) if scroll_count else 0
        avg_velocity = round_half_up(scroll_velocity / scroll_count) if scroll_count else 0
        clicks_per_minute = per_minute(clicks, total_minutes)
        keystrokes_per_minute = per_minute(keystrokes, total_minutes)
        score = fixation_score(clicks_per_minute, keystrokes_per_minute, avg_velocity)

        return EngagementMetrics(
            domain=domain,
            total_seconds=total_seconds,
            avg_scroll_depth=avg_depth,
            avg_scroll_velocity=avg_velocity,
            avg_clicks_per_minute=clicks_per_minute,
            avg_keystrokes_per_minute=keystrokes_per_minute,
            fixation_score=score,
            engagement_level=engagement_level_for(score),
            session_count=len(slices),
        )

    # Episodes

    def get_behavior_episodes(
        self,
        hours=24,
        start: Optional[str] = None,
        end: Optional[str] = None,
        gap_minutes=None,
        bin_seconds=None,
        max_episodes=100,
    ) -> BehaviorEpisodeMap:
        """Cluster activity into episodes enriched with events, content and markers"""
        now = self.clock()
        hours = max(1, min(24 * 14, round_half_up(hours if hours is not None else 24)))
        parsed_end = parse_iso_ms(end)
        range_end = parsed_end if parsed_end is not None else now
        parsed_start = parse_iso_ms(start)
        range_start = parsed_start if parsed_start is not None else range_end - hours * HOUR_MS
        range_start, range_end = min(range_start, range_end), max(range_start, range_end)
        gap_minutes = max(1, min(120, round_half_up(
            gap_minutes if gap_minutes is not None else settings.EPISODE_GAP_MINUTES
        )))
        bin_seconds = max(5, min(300, round_half_up(
            bin_seconds if bin_seconds is not None else settings.EPISODE_BIN_SECONDS
        )))
        max_episodes = max(1, min(500, round_half_up(max_episodes if max_episodes is not None else 100)))
        gap_ms = gap_minutes * 60 * 1000

        slices = self._slices(range_start, range_end)
        events = []
        for evt in self.db.get_behavior_events_between(range_start, range_end):
            ts = parse_iso_ms(evt["timestamp"])
            if ts is None:
                continue
            events.append((ts, evt))
        markers = []
        for marker in self.db.get_markers_between(range_start, range_end):
            ts = parse_iso_ms(marker["occurred_at"])
            if ts is None:
                continue
            markers.append((ts, marker))

        clusters: List[Dict[str, Any]] = []
        for item in slices:
            current = clusters[-1] if clusters else None
            if current is None or item.span.overlap_start_ms - current["end"] > gap_ms:
                clusters.append({
                    "start": item.span.overlap_start_ms,
                    "end": item.span.overlap_end_ms,
                    "slices": [item],
                })
            else:
                current["slices"].append(item)
                current["end"] = max(current["end"], item.span.overlap_end_ms)

        episodes = [
            self._build_episode(index, cluster, events, markers, bin_seconds)
            for index, cluster in enumerate(clusters[-max_episodes:])
        ]

        domain_totals: Dict[str, int] = {}
        for episode in episodes:
            for entry in episode.top_domains:
                domain_totals[entry.domain] = domain_totals.get(entry.domain, 0) + entry.active_seconds
        top_domains = sorted(domain_totals.items(), key=lambda kv: kv[1], reverse=True)[:SUMMARY_DOMAIN_LIMIT]

        return BehaviorEpisodeMap(
            generated_at=iso_from_ms(now),
            query=EpisodeQuery(
                start=iso_from_ms(range_start),
                end=iso_from_ms(range_end),
                hours=hours,
                gap_minutes=gap_minutes,
                bin_seconds=bin_seconds,
                max_episodes=max_episodes,
            ),
            summary=EpisodeSummary(
                total_episodes=len(episodes),
                total_duration_seconds=sum(e.duration_seconds for e in episodes),
                total_active_seconds=sum(e.active_seconds for e in episodes),
                total_idle_seconds=sum(e.idle_seconds for e in episodes),
                top_domains=[DomainSeconds(domain=d, active_seconds=s) for d, s in top_domains],
                total_markers=sum(len(e.markers) for e in episodes),
                total_content_snapshots=sum(len(e.content_snapshots) for e in episodes),
            ),
            episodes=episodes,
        )

    def _build_episode(
        self,
        index: int,
        cluster: Dict[str, Any],
        events: List[Tuple[int, Dict[str, Any]]],
        markers: List[Tuple[int, Dict[str, Any]]],
        bin_seconds: int,
    ) -> BehaviorEpisode:
        start, end = cluster["start"], cluster["end"]
        slices: List[ActivitySlice] = cluster["slices"]
        duration_seconds = max(1, round_half_up((end - start) / 1000))

        breakdown = empty_breakdown()
        domain_seconds: Dict[str, float] = {}
        app_seconds: Dict[str, float] = {}
        active_seconds = 0.0
        idle_seconds = 0.0
        domain_switches = 0
        previous_domain = None
        context_slices = []
        for item in slices:
            active = item.span.active_seconds
            idle = item.span.idle_seconds
            active_seconds += active
            idle_seconds += idle
            breakdown["idle"] += idle
            breakdown[item.category.value] += active
            if not item.suppressed:
                key = item.domain or item.app_name or "unknown"
                domain_seconds[key] = domain_seconds.get(key, 0.0) + active
                if previous_domain and previous_domain != key:
                    domain_switches += 1
                previous_domain = key
            if item.app_name:
                app_seconds[item.app_name] = app_seconds.get(item.app_name, 0.0) + active
            context_slices.append(EpisodeContextSlice(
                activity_id=item.id,
                start=iso_from_ms(item.span.overlap_start_ms),
                end=iso_from_ms(item.span.overlap_end_ms),
                app_name=item.app_name,
                domain=item.domain,
                url=item.url,
                window_title=item.window_title,
                category=item.category,
                active_seconds=active,
                idle_seconds=idle,
            ))

        episode_events = [(ts, evt) for ts, evt in events if start <= ts <= end]
        event_counts = EpisodeEventCounts()
        for _, evt in episode_events:
            self._count_event(event_counts, evt)

        episode_markers = [
            EpisodeMarker(
                timestamp=marker["occurred_at"],
                kind=marker["kind"],
                title=marker["title"],
                domain=marker["domain"],
                url=marker["url"],
                meta=marker["meta"],
            )
            for ts, marker in markers if start <= ts <= end
        ]

        snapshots = self._content_snapshots(slices, episode_events)
        bins = self._timeline_bins(start, end, slices, episode_events, bin_seconds)

        # First category in breakdown order wins ties
        dominant = max(BREAKDOWN_ORDER, key=lambda key: breakdown[key])

        minutes = max(1 / 60, duration_seconds / 60)
        actions = event_counts.scroll + event_counts.click + event_counts.keystroke
        rates = EpisodeRates(
            actions_per_minute=per_minute(actions, minutes),
            scrolls_per_minute=per_minute(event_counts.scroll, minutes),
            clicks_per_minute=per_minute(event_counts.click, minutes),
            keystrokes_per_minute=per_minute(event_counts.keystroke, minutes),
            focus_events_per_minute=per_minute(event_counts.focus + event_counts.blur, minutes),
        )

        top_domains = sorted(domain_seconds.items(), key=lambda kv: kv[1], reverse=True)[:TOP_LIST_LIMIT]
        top_apps = sorted(app_seconds.items(), key=lambda kv: kv[1], reverse=True)[:TOP_LIST_LIMIT]
        return BehaviorEpisode(
            id=f"ep-{start}-{index + 1}",
            start=iso_from_ms(start),
            end=iso_from_ms(end),
            duration_seconds=duration_seconds,
            active_seconds=round_half_up(active_seconds),
            idle_seconds=round_half_up(idle_seconds),
            category_breakdown={key: round_half_up(value) for key, value in breakdown.items()},
            dominant_category=TotalsKey(dominant),
            top_domains=[DomainSeconds(domain=d, active_seconds=round_half_up(s)) for d, s in top_domains],
            top_apps=[AppSeconds(app_name=a, active_seconds=round_half_up(s)) for a, s in top_apps],
            event_counts=event_counts,
            rates=rates,
            domain_switches=domain_switches,
            context_slices=context_slices,
            content_snapshots=snapshots,
            markers=episode_markers,
            timeline_bins=bins,
            source_coverage=SourceCoverage(
                has_behavior_events=bool(episode_events),
                has_content_titles=any(s.title for s in snapshots),
                has_consumption_markers=bool(episode_markers),
            ),
        )

    @staticmethod
    def _count_event(counts: EpisodeEventCounts, evt: Dict[str, Any]) -> None:
        key = evt["event_type"]
        if key not in EpisodeEventCounts.model_fields:
            return
        value = evt["value_int"] if evt["value_int"] is not None else 1
        setattr(counts, key, getattr(counts, key) + max(1, round_half_up(value)))

    @staticmethod
    def _metadata_text(evt: Dict[str, Any], field: str) -> Optional[str]:
        value = (evt["metadata"] or {}).get(field)
        return value if isinstance(value, str) and value else None

    def _content_snapshots(
        self, slices: List[ActivitySlice], episode_events: List[Tuple[int, Dict[str, Any]]]
    ) -> List[ContentSnapshot]:
        raw: List[Tuple[int, ContentSnapshot]] = []
        for item in slices:
            if item.url or item.window_title:
                raw.append((item.span.overlap_start_ms, ContentSnapshot(
                    timestamp=iso_from_ms(item.span.overlap_start_ms),
                    domain=item.domain,
                    url=item.url,
                    title=item.window_title,
                    source="activity",
                    confidence=0.7,
                )))
        for ts, evt in episode_events:
            title = self._metadata_text(evt, "title")
            url = self._metadata_text(evt, "url")
            if not title and not url:
                continue
            raw.append((ts, ContentSnapshot(
                timestamp=evt["timestamp"],
                domain=evt["domain"],
                url=url,
                title=title,
                source="behavior-event",
                confidence=0.95,
            )))
        raw.sort(key=lambda pair: pair[0])

        snapshots: List[ContentSnapshot] = []
        last_key = None
        for _, snapshot in raw:
            key = (snapshot.domain or "", snapshot.url or "", snapshot.title or "")
            if key == last_key:
                continue
            last_key = key
            snapshots.append(snapshot)
            if len(snapshots) >= SNAPSHOT_LIMIT:
                break
        return snapshots

    def _timeline_bins(
        self,
        start: int,
        end: int,
        slices: List[ActivitySlice],
        episode_events: List[Tuple[int, Dict[str, Any]]],
        bin_seconds: int,
    ) -> List[EpisodeTimeBin]:
        bin_ms = bin_seconds * 1000
        bins = []
        bin_start = start
        while bin_start < end:
            bin_end = min(end, bin_start + bin_ms)
            breakdown = empty_breakdown()
            counts = EpisodeEventCounts()
            domain_seconds: Dict[str, float] = {}
            title_counts: Dict[str, int] = {}
            for item in slices:
                overlap = overlap_ms(item.span.overlap_start_ms, item.span.overlap_end_ms, bin_start, bin_end)
                if overlap <= 0:
                    continue
                fraction = overlap / max(1, item.span.overlap_span_ms)
                breakdown["idle"] += item.span.idle_seconds * fraction
                breakdown[item.category.value] += item.span.active_seconds * fraction
                if not item.suppressed and (item.domain or item.app_name):
                    key = item.domain or item.app_name
                    domain_seconds[key] = domain_seconds.get(key, 0.0) + item.span.active_seconds * fraction
                if item.window_title:
                    title_counts[item.window_title] = title_counts.get(item.window_title, 0) + 1
            for ts, evt in episode_events:
                if ts < bin_start or ts >= bin_end:
                    continue
                self._count_event(counts, evt)
                title = self._metadata_text(evt, "title")
                if title:
                    title_counts[title] = title_counts.get(title, 0) + 2
            bins.append(EpisodeTimeBin(
                start=iso_from_ms(bin_start),
                end=iso_from_ms(bin_end),
                active_seconds=max(0.0, sum(v for k, v in breakdown.items() if k != "idle")),
                idle_seconds=max(0.0, breakdown["idle"]),
                category_breakdown=breakdown,
                event_counts=counts,
                top_domain=max(domain_seconds, key=domain_seconds.get) if domain_seconds else None,
                top_title=max(title_counts, key=title_counts.get) if title_counts else None,
            ))
            bin_start += bin_ms
        return bins

    # Overview and trends

    def _deep_work_seconds(self, range_start: int, range_end: int) -> int:
        total = 0
        now = self.clock()
        for session in self.db.get_focus_sessions_overlapping(range_start, range_end):
            clipped_start = max(to_ms(session.start_time), range_start)
            clipped_end = min(to_ms(session.effective_end(from_ms(now))), range_end)
            if clipped_end > clipped_start:
                total += round_half_up((clipped_end - clipped_start) / 1000)
        return total

    def get_overview(self, days: int = 7) -> AnalyticsOverview:
        """Headline numbers, focus trend and insights for the last N days"""
        range_end = self.clock()
        range_start = range_end - days * DAY_MS
        rows = self.db.get_activities_overlapping(
            range_start, range_end, device_id=self.device_id, newest_first=True
        )

        totals = empty_breakdown()
        domain_totals: Dict[str, float] = {}
        hourly_productive: Dict[int, float] = {}
        hourly_distraction: Dict[int, float] = {}
        total_active = 0.0
        session_count = 0
        recent_rows = []

        for row in rows:
            item = self._slice(row, range_start, range_end)
            if parse_iso_ms(row["started_at"]) is not None:
                recent_rows.append(row)
            if item is None:
                continue
            session_count += 1
            total_active += item.span.active_seconds
            totals["idle"] += item.span.idle_seconds
            totals[item.category.value] += item.span.active_seconds
            if not item.suppressed:
                domain_totals[item.label] = domain_totals.get(item.label, 0.0) + item.span.active_seconds

            for hour, fraction in local_hour_fractions(
                item.span.overlap_start_ms, item.span.overlap_end_ms, self.tz
            ):
                active_slice = item.span.active_seconds * fraction
                if item.category == Category.PRODUCTIVE:
                    hourly_productive[hour] = hourly_productive.get(hour, 0.0) + active_slice
                elif item.category in (Category.FRIVOLITY, Category.DRAINING):
                    hourly_distraction[hour] = hourly_distraction.get(hour, 0.0) + active_slice

        top_domain = self._first_max(domain_totals, None)
        peak_hour = self._first_max(hourly_productive, 9)
        risk_hour = self._first_max(hourly_distraction, 15)

        categorised = sum(v for k, v in totals.items() if k != "idle")
        productivity_score = round_half_up(totals["productive"] / categorised * 100) if categorised > 0 else 50

        focus_trend = self._focus_trend(recent_rows)
        return AnalyticsOverview(
            period_days=days,
            total_active_hours=round_half_up(total_active / 3600 * 10) / 10,
            productivity_score=productivity_score,
            deep_work_seconds=self._deep_work_seconds(range_start, range_end),
            top_engagement_domain=top_domain,
            focus_trend=focus_trend,
            peak_productive_hour=peak_hour,
            risk_hour=risk_hour,
            avg_session_length=round_half_up(total_active / session_count) if session_count else 0,
            total_sessions=session_count,
            category_breakdown={k: round_half_up(v) for k, v in totals.items()},
            insights=self._insights(totals, peak_hour, risk_hour, focus_trend),
        )

    @staticmethod
    def _first_max(values: Dict[Any, float], default):
        best = default
        best_value = 0.0
        for key, value in values.items():
            if value > best_value:
                best_value = value
                best = key
        return best

    def _focus_trend(self, newest_first_rows: List[Any]) -> FocusTrend:
        """Compare productive seconds of the newer half against the older half"""
        midpoint = len(newest_first_rows) // 2

        def productive_seconds(rows):
            total = 0
            for row in rows:
                if self._suppressed(row["domain"], row["app_name"]):
                    continue
                if Category.parse(row["category"]) == Category.PRODUCTIVE:
                    total += max(0, row["seconds_active"] or 0)
            return total

        recent = productive_seconds(newest_first_rows[:midpoint])
        older = productive_seconds(newest_first_rows[midpoint:])
        if recent > older * 1.1:
            return FocusTrend.IMPROVING
        if recent < older * 0.9:
            return FocusTrend.DECLINING
        return FocusTrend.STABLE

    @staticmethod
    def _insights(totals: Dict[str, float], peak_hour: int, risk_hour: int, trend: FocusTrend) -> List[str]:
        insights = [f"Your peak focus hour is {format_hour(peak_hour)}; schedule deep work there"]

        distraction = totals["frivolity"] + totals["draining"]
        if distraction > totals["productive"] * 0.3:
            insights.append(f"{format_hour(risk_hour)} is your highest risk hour for distraction")

        if trend == FocusTrend.IMPROVING:
            insights.append("Your focus has been improving, keep it up")
        elif trend == FocusTrend.DECLINING:
            insights.append("Focus is trending down; consider a reset tomorrow")

        active = sum(v for k, v in totals.items() if k != "idle")
        idle_ratio = totals["idle"] / max(1, active + totals["idle"])
        if idle_ratio > 0.3:
            insights.append(f"{round_half_up(idle_ratio * 100)}% idle time detected; are you stepping away often?")

        distraction_ratio = distraction / max(1, active)
        if distraction_ratio > 0.25:
            insights.append(
                f"{round_half_up(distraction_ratio * 100)}% distraction (frivolity and draining) is higher than average"
            )
        elif distraction_ratio < 0.1:
            insights.append(f"Only {round_half_up(distraction_ratio * 100)}% distraction, excellent discipline")

        return insights[:MAX_INSIGHTS]

    def get_trends(self, granularity: str = "day") -> List[TrendPoint]:
        """Category, engagement and quality series at hour, day or week resolution"""
        if granularity not in TREND_GRANULARITIES:
            raise AnalyticsError(f"Unknown granularity: {granularity}")
        unit_ms, bucket_count = TREND_GRANULARITIES[granularity]
        now = self.clock()
        if granularity == "day":
            range_start = local_day_start_ms(now, self.day_start_hour, self.tz) - (bucket_count - 1) * unit_ms
        else:
            range_start = now - bucket_count * unit_ms
        range_end = now

        fields = ["productive", "neutral", "frivolity", "emergency", "idle"]
        buckets = [{name: 0.0 for name in fields} for _ in range(bucket_count)]
        for item in self._slices(range_start, range_end, newest_first=True):
            if item.category == Category.DRAINING:
                field = "frivolity"
            else:
                field = item.category.value
            for idx, fraction in bucket_fractions(
                item.span.overlap_start_ms, item.span.overlap_end_ms, range_start, unit_ms, bucket_count
            ):
                buckets[idx][field] += item.span.active_seconds * fraction
                buckets[idx]["idle"] += item.span.idle_seconds * fraction

        deep_work = [0] * bucket_count
        for session in self.db.get_focus_sessions_overlapping(range_start, range_end):
            clipped_start = max(to_ms(session.start_time), range_start)
            clipped_end = min(to_ms(session.effective_end(from_ms(now))), range_end)
            if clipped_end <= clipped_start:
                continue
            span = clipped_end - clipped_start
            for idx, fraction in bucket_fractions(clipped_start, clipped_end, range_start, unit_ms, bucket_count):
                deep_work[idx] += round_half_up(span * fraction / 1000)

        points = []
        for idx, bucket in enumerate(buckets):
            bucket_start = range_start + idx * unit_ms
            active = bucket["productive"] + bucket["neutral"] + bucket["frivolity"] + bucket["emergency"]
            total = active + bucket["idle"]
            points.append(TrendPoint(
                timestamp=iso_from_ms(bucket_start),
                label=self._trend_label(granularity, bucket_start, now),
                deep_work=deep_work[idx],
                engagement=round_half_up(active / total * 100) if total > 0 else 0,
                quality_score=round_half_up(bucket["productive"] / active * 100) if active > 0 else 50,
                **{name: round_half_up(value) for name, value in bucket.items()},
            ))
        return points

    def _trend_label(self, granularity: str, bucket_start: int, now: int) -> str:
        local = from_ms(bucket_start).astimezone(self.tz)
        if granularity == "hour":
            return local.strftime("%H:%M")
        if granularity == "day":
            return f"{local:%b} {local.day}"
        return f"Week {math.ceil((now - bucket_start) / (7 * DAY_MS))}"
