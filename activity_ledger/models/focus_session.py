from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

@dataclass
class FocusSession:
    start_time: datetime
    planned_duration_sec: int
    activity_type: str = "pomodoro"
    end_time: Optional[datetime] = None  # None while the session is running
    id: Optional[int] = None
    
    def effective_end(self, now: datetime) -> datetime:
        """Earlier of the planned end and the actual (or current) end"""
        planned_end = self.start_time + timedelta(seconds=max(0, self.planned_duration_sec))
        actual_end = self.end_time or now
        return min(planned_end, actual_end)

    @property
    def is_running(self) -> bool:
        return self.end_time is None
