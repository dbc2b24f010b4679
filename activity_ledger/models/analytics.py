"""Derived views handed to the UI and economy collaborators"""
from enum import Enum
from typing import Any, Dict, List, Optional
from pydantic import BaseModel, Field

from activity_ledger.models.activity import Category, Source, TotalsKey


class ContextTotal(BaseModel):
    """Active seconds attributed to one domain or app label"""
    label: str
    category: Optional[Category] = None
    seconds: float = 0.0
    source: Source
    domain: Optional[str] = None
    app_name: Optional[str] = None


class TimelineBucket(BaseModel):
    """One hour of the summary timeline"""
    hour: str = Field(description="HH:MM label of the bucket start")
    start: str
    productive: int = 0
    neutral: int = 0
    frivolity: int = 0
    draining: int = 0
    idle: int = 0
    deep_work: int = 0
    dominant: TotalsKey = TotalsKey.IDLE
    top_context: Optional[ContextTotal] = None


class ActivitySummary(BaseModel):
    window_hours: int
    sample_count: int = 0
    total_seconds: int = 0
    deep_work_seconds: int = 0
    totals_by_category: Dict[str, int]
    totals_by_source: Dict[str, int]
    top_contexts: List[ContextTotal] = Field(default_factory=list)
    timeline: List[TimelineBucket] = Field(default_factory=list)


class JourneySegment(BaseModel):
    start: str
    end: str
    category: TotalsKey
    label: Optional[str] = None
    source: Source
    seconds: float


class NeutralCount(BaseModel):
    label: str
    count: int
    seconds: float
    source: Source


class ActivityJourney(BaseModel):
    """Compressed ordered sequence of category segments"""
    window_hours: int
    start: str
    end: str
    segments: List[JourneySegment] = Field(default_factory=list)
    neutral_counts: List[NeutralCount] = Field(default_factory=list)


class TimeOfDayStats(BaseModel):
    hour: int = Field(ge=0, le=23)
    productive: int = 0
    neutral: int = 0
    frivolity: int = 0
    draining: int = 0
    emergency: int = 0
    idle: int = 0
    avg_engagement: int = Field(default=0, ge=0, le=100)
    dominant_category: TotalsKey = TotalsKey.IDLE
    dominant_domain: Optional[str] = None
    sample_count: int = 0


class BehavioralPattern(BaseModel):
    """Mined transition edge between two contexts"""
    id: Optional[int] = None
    from_category: Optional[str] = None
    from_domain: Optional[str] = None
    to_category: Optional[str] = None
    to_domain: Optional[str] = None
    frequency: int
    avg_time_before: float
    correlation_strength: float = Field(ge=0.0, le=1.0)
    dominant_hour_bucket: int = Field(ge=0, le=23)
    computed_at: Optional[str] = None


class EngagementLevel(str, Enum):
    LOW = "low"
    PASSIVE = "passive"
    MODERATE = "moderate"
    HIGH = "high"
    INTENSE = "intense"


class EngagementMetrics(BaseModel):
    domain: str
    total_seconds: float = 0.0
    avg_scroll_depth: int = 0
    avg_scroll_velocity: int = 0
    avg_clicks_per_minute: float = 0.0
    avg_keystrokes_per_minute: float = 0.0
    fixation_score: int = Field(default=0, le=100)
    engagement_level: EngagementLevel = EngagementLevel.LOW
    session_count: int = 0


class EpisodeEventCounts(BaseModel):
    scroll: int = 0
    click: int = 0
    keystroke: int = 0
    focus: int = 0
    blur: int = 0
    idle_start: int = 0
    idle_end: int = 0
    visibility: int = 0


class EpisodeRates(BaseModel):
    actions_per_minute: float = 0.0
    scrolls_per_minute: float = 0.0
    clicks_per_minute: float = 0.0
    keystrokes_per_minute: float = 0.0
    focus_events_per_minute: float = 0.0


class EpisodeContextSlice(BaseModel):
    activity_id: int
    start: str
    end: str
    app_name: Optional[str] = None
    domain: Optional[str] = None
    url: Optional[str] = None
    window_title: Optional[str] = None
    category: Category
    active_seconds: float
    idle_seconds: float


class ContentSnapshot(BaseModel):
    timestamp: str
    domain: Optional[str] = None
    url: Optional[str] = None
    title: Optional[str] = None
    source: str
    confidence: float


class EpisodeMarker(BaseModel):
    timestamp: str
    kind: str
    title: Optional[str] = None
    domain: Optional[str] = None
    url: Optional[str] = None
    meta: Optional[Dict[str, Any]] = None
    source: str = "consumption-log"


class EpisodeTimeBin(BaseModel):
    start: str
    end: str
    active_seconds: float
    idle_seconds: float
    category_breakdown: Dict[str, float]
    event_counts: EpisodeEventCounts
    top_domain: Optional[str] = None
    top_title: Optional[str] = None


class DomainSeconds(BaseModel):
    domain: str
    active_seconds: int


class AppSeconds(BaseModel):
    app_name: str
    active_seconds: int


class SourceCoverage(BaseModel):
    has_behavior_events: bool = False
    has_content_titles: bool = False
    has_consumption_markers: bool = False


class BehaviorEpisode(BaseModel):
    """Cluster of temporally adjacent activities"""
    id: str
    start: str
    end: str
    duration_seconds: int
    active_seconds: int
    idle_seconds: int
    category_breakdown: Dict[str, int]
    dominant_category: TotalsKey
    top_domains: List[DomainSeconds] = Field(default_factory=list)
    top_apps: List[AppSeconds] = Field(default_factory=list)
    event_counts: EpisodeEventCounts
    rates: EpisodeRates
    domain_switches: int = 0
    context_slices: List[EpisodeContextSlice] = Field(default_factory=list)
    content_snapshots: List[ContentSnapshot] = Field(default_factory=list)
    markers: List[EpisodeMarker] = Field(default_factory=list)
    timeline_bins: List[EpisodeTimeBin] = Field(default_factory=list)
    source_coverage: SourceCoverage


class EpisodeQuery(BaseModel):
    start: str
    end: str
    hours: int
    gap_minutes: int
    bin_seconds: int
    max_episodes: int


class EpisodeSummary(BaseModel):
    total_episodes: int = 0
    total_duration_seconds: int = 0
    total_active_seconds: int = 0
    total_idle_seconds: int = 0
    top_domains: List[DomainSeconds] = Field(default_factory=list)
    total_markers: int = 0
    total_content_snapshots: int = 0


class BehaviorEpisodeMap(BaseModel):
    schema_version: int = 1
    generated_at: str
    query: EpisodeQuery
    summary: EpisodeSummary
    episodes: List[BehaviorEpisode] = Field(default_factory=list)


class FocusTrend(str, Enum):
    IMPROVING = "improving"
    STABLE = "stable"
    DECLINING = "declining"


class AnalyticsOverview(BaseModel):
    period_days: int
    total_active_hours: float
    productivity_score: int
    deep_work_seconds: int
    top_engagement_domain: Optional[str] = None
    focus_trend: FocusTrend
    peak_productive_hour: int
    risk_hour: int
    avg_session_length: int
    total_sessions: int
    category_breakdown: Dict[str, int]
    insights: List[str] = Field(default_factory=list)


class TrendPoint(BaseModel):
    timestamp: str
    label: str
    productive: int = 0
    neutral: int = 0
    frivolity: int = 0
    emergency: int = 0
    idle: int = 0
    deep_work: int = 0
    engagement: int = 0
    quality_score: int = 0
