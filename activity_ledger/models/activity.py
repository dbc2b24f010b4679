"""Persisted and ingested activity records"""
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional
from pydantic import BaseModel, Field, field_validator


class Category(str, Enum):
    """Closed set of attention categories"""
    PRODUCTIVE = "productive"
    NEUTRAL = "neutral"
    FRIVOLITY = "frivolity"
    DRAINING = "draining"
    EMERGENCY = "emergency"

    @classmethod
    def parse(cls, value: Optional[str]) -> Optional["Category"]:
        """Map a stored category string to the enum, unknown values to None"""
        if value is None:
            return None
        try:
            return cls(value)
        except ValueError:
            return None


class TotalsKey(str, Enum):
    """Keys of window-summary totals

    UNCATEGORISED is only used by the raw-window summary for records stored
    without a category. Timeline buckets, rollups and analytics fold those
    records into NEUTRAL instead.
    """
    PRODUCTIVE = "productive"
    NEUTRAL = "neutral"
    FRIVOLITY = "frivolity"
    DRAINING = "draining"
    EMERGENCY = "emergency"
    IDLE = "idle"
    UNCATEGORISED = "uncategorised"


class Source(str, Enum):
    APP = "app"
    URL = "url"


class BehaviorEventType(str, Enum):
    SCROLL = "scroll"
    CLICK = "click"
    KEYSTROKE = "keystroke"
    FOCUS = "focus"
    BLUR = "blur"
    IDLE_START = "idle_start"
    IDLE_END = "idle_end"
    VISIBILITY = "visibility"


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class ActivityEvent(BaseModel):
    """One telemetry tick describing what is focused right now"""
    timestamp: datetime = Field(description="When the sample was taken")
    source: Source
    app_name: str = Field(min_length=1)
    bundle_id: Optional[str] = None
    window_title: Optional[str] = None
    url: Optional[str] = None
    domain: Optional[str] = None
    category: Optional[Category] = None
    idle_seconds: Optional[float] = Field(default=None, ge=0)
    idle_threshold_seconds: Optional[float] = Field(default=None, ge=0)

    @field_validator("timestamp")
    @classmethod
    def _timestamp_utc(cls, value: datetime) -> datetime:
        return _as_utc(value)


class Activity(BaseModel):
    """One contiguous attention interval"""
    id: int
    device_id: str
    started_at: datetime
    ended_at: Optional[datetime] = None
    source: Source
    app_name: Optional[str] = None
    bundle_id: Optional[str] = None
    window_title: Optional[str] = None
    url: Optional[str] = None
    domain: Optional[str] = None
    category: Optional[Category] = None
    seconds_active: int = Field(default=0, ge=0)
    idle_seconds: int = Field(default=0, ge=0)
    closed: bool = True

    @property
    def is_open(self) -> bool:
        return not self.closed


class Rollup(BaseModel):
    """Per-device, per-hour snapshot of category seconds"""
    device_id: str
    hour_start: str = Field(description="ISO-8601 start of the UTC hour")
    productive: int = Field(default=0, ge=0)
    neutral: int = Field(default=0, ge=0)
    frivolity: int = Field(default=0, ge=0)
    draining: int = Field(default=0, ge=0)
    idle: int = Field(default=0, ge=0)
    updated_at: str

    def values(self) -> Dict[str, int]:
        return {
            "productive": self.productive,
            "neutral": self.neutral,
            "frivolity": self.frivolity,
            "draining": self.draining,
            "idle": self.idle,
        }


class BehaviorEvent(BaseModel):
    """Fine-grained interaction signal from the browser"""
    timestamp: datetime
    domain: str
    event_type: BehaviorEventType
    session_id: Optional[int] = None
    value_int: Optional[int] = None
    value_float: Optional[float] = None
    metadata: Optional[Dict[str, Any]] = None

    @field_validator("timestamp")
    @classmethod
    def _timestamp_utc(cls, value: datetime) -> datetime:
        return _as_utc(value)


class ConsumptionMarker(BaseModel):
    """Outcome marker written by the economy (paywall, library, emergency)"""
    occurred_at: datetime
    kind: str
    title: Optional[str] = None
    url: Optional[str] = None
    domain: Optional[str] = None
    meta: Optional[Dict[str, Any]] = None

    @field_validator("occurred_at")
    @classmethod
    def _occurred_utc(cls, value: datetime) -> datetime:
        return _as_utc(value)
