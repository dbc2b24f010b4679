import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional, Union

from pydantic import ValidationError

from activity_ledger.config.settings import settings
from activity_ledger.models.activity import Activity, ActivityEvent, Category
from activity_ledger.services.database import DatabaseManager
from activity_ledger.services.errors import RecorderError
from activity_ledger.services.intervals import now_ms, round_half_up, to_ms

logger = logging.getLogger(__name__)


@dataclass
class CurrentActivity:
    """Pointer to the open interval of one device"""
    id: int
    app_name: Optional[str]
    bundle_id: Optional[str]
    domain: Optional[str]
    category: Optional[Category]
    last_timestamp_ms: int


class ActivityRecorder:
    """Segments one device's telemetry stream into activity intervals

    Events must arrive serialized for the device; the recorder keeps its
    open-interval pointer as instance state and does no locking. An interval
    left open in the store by an earlier recorder for the same device is
    picked up on construction, so a device never has two open intervals.
    """

    def __init__(
        self,
        db: DatabaseManager,
        device_id: Optional[str] = None,
        clock: Callable[[], int] = now_ms,
        max_gap_seconds: Optional[int] = None,
        debounce_ms: Optional[int] = None,
        idle_threshold_seconds: Optional[int] = None,
    ):
        self.db = db
        self.device_id = device_id or settings.DEVICE_ID
        self.clock = clock
        self.max_gap_seconds = max_gap_seconds if max_gap_seconds is not None else settings.MAX_GAP_SECONDS
        self.debounce_ms = debounce_ms if debounce_ms is not None else settings.DEBOUNCE_MS
        self.idle_threshold_seconds = (
            idle_threshold_seconds if idle_threshold_seconds is not None
            else settings.IDLE_THRESHOLD_SECONDS
        )
        self.current: Optional[CurrentActivity] = self._resume_open()
        logger.info(f"Initialized ActivityRecorder for device {self.device_id}")

    def record_activity(self, event: Union[ActivityEvent, Dict[str, Any]]) -> None:
        """Fold one telemetry event into the interval stream"""
        event = self._coerce(event)
        ts = to_ms(event.timestamp)

        if self.current is None:
            self._open(event, ts)
            return

        if self._context_changed(event):
            if ts < self.current.last_timestamp_ms:
                logger.debug(f"Dropping out-of-order event for {event.app_name} at {ts}")
                return
            still_open = self._apply_delta(event, ts)
            if still_open and self.current is not None:
                self.db.close_activity(self.current.id, ts)
                self.current = None
            self._open(event, ts)
            return

        self._apply_delta(event, ts)

    def stop(self, now: Optional[int] = None) -> None:
        """Close the open interval, if any"""
        if self.current is None:
            return
        ended_at = now if now is not None else self.clock()
        self.db.close_activity(self.current.id, ended_at)
        logger.info(f"Closed activity {self.current.id} on stop")
        self.current = None

    def _resume_open(self) -> Optional[CurrentActivity]:
        """Adopt the device's newest open interval, closing any older strays"""
        open_activities = self.db.get_open_activities(self.device_id)
        if not open_activities:
            return None
        *stale, latest = open_activities
        for activity in stale:
            self.db.close_activity(activity.id, self._last_seen_ms(activity))
            logger.warning(f"Closed stray open activity {activity.id} for device {self.device_id}")
        logger.info(f"Resuming open activity {latest.id} for device {self.device_id}")
        return CurrentActivity(
            id=latest.id,
            app_name=latest.app_name,
            bundle_id=latest.bundle_id,
            domain=latest.domain,
            category=latest.category,
            last_timestamp_ms=self._last_seen_ms(latest),
        )

    @staticmethod
    def _last_seen_ms(activity: Activity) -> int:
        return to_ms(activity.ended_at or activity.started_at)

    @staticmethod
    def _coerce(event: Union[ActivityEvent, Dict[str, Any]]) -> ActivityEvent:
        if isinstance(event, ActivityEvent):
            return event
        try:
            return ActivityEvent.model_validate(event)
        except ValidationError as e:
            logger.error(f"Rejected invalid activity event: {e}")
            raise RecorderError(f"Invalid activity event: {e}")

    def _open(self, event: ActivityEvent, ts: int) -> None:
        activity_id = self.db.insert_activity(self.device_id, event)
        self.current = CurrentActivity(
            id=activity_id,
            app_name=event.app_name,
            bundle_id=event.bundle_id,
            domain=event.domain,
            category=event.category,
            last_timestamp_ms=ts,
        )
        logger.info(f"Tracking activity {event.app_name} {event.domain or ''}".rstrip())

    def _context_changed(self, event: ActivityEvent) -> bool:
        current = self.current
        if current is None:
            return True
        return (
            current.app_name != event.app_name
            or current.domain != event.domain
            or current.category != event.category
        )

    def _apply_delta(self, event: ActivityEvent, ts: int) -> bool:
        """Credit elapsed time to the open interval

        Returns False when the gap policy closed the interval, True otherwise.
        """
        current = self.current
        if current is None:
            return False

        delta_ms = ts - current.last_timestamp_ms
        if delta_ms < 0:
            logger.debug(f"Dropping out-of-order event for activity {current.id}")
            return True
        if delta_ms < self.debounce_ms:
            current.last_timestamp_ms = ts
            return True

        delta_seconds = max(0, round_half_up(delta_ms / 1000))
        reported_idle = max(0, round_half_up(event.idle_seconds or 0))
        threshold = (
            event.idle_threshold_seconds if event.idle_threshold_seconds is not None
            else self.idle_threshold_seconds
        )
        threshold = max(0, round_half_up(threshold))
        idle = min(delta_seconds, max(0, reported_idle - threshold))
        active = max(0, delta_seconds - idle)

        if delta_seconds > self.max_gap_seconds:
            # Sleep or lock: never credit the jump as engagement
            idle_applied = min(idle, self.max_gap_seconds)
            self.db.add_activity_seconds(current.id, ts, 0, idle_applied)
            self.db.close_activity(current.id, ts)
            logger.info(
                f"Gap of {delta_seconds}s closed activity {current.id} "
                f"(idle credited {idle_applied}s)"
            )
            self.current = None
            return False

        self.db.add_activity_seconds(current.id, ts, active, idle)
        current.last_timestamp_ms = ts
        return True
