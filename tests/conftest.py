import pytest
from datetime import datetime, timezone

from activity_ledger.services.database import DatabaseManager
from activity_ledger.services.intervals import HOUR_MS, to_ms

# 2024-01-01T11:00:00Z
NOW = to_ms(datetime(2024, 1, 1, 11, 0, tzinfo=timezone.utc))
MINUTE_MS = 60 * 1000


def at(hour: int, minute: int = 0, second: int = 0, day: int = 1) -> int:
    """Epoch milliseconds for a UTC time on January 2024"""
    return to_ms(datetime(2024, 1, day, hour, minute, second, tzinfo=timezone.utc))


@pytest.fixture
def db():
    """Provide a test database instance"""
    db = DatabaseManager(":memory:")  # Use in-memory database for testing
    yield db
    db.close()


@pytest.fixture
def clock():
    """Fixed clock at 2024-01-01T11:00:00Z"""
    return lambda: NOW


@pytest.fixture
def store(db):
    """Insert a finished activity: store(start_ms, end_ms, active, idle=0, **fields)"""
    def _store(start_ms, end_ms, seconds_active, idle_seconds=0, **fields):
        fields.setdefault("app_name", "Editor")
        return db.store_activity(
            start_ms,
            end_ms,
            seconds_active=seconds_active,
            idle_seconds=idle_seconds,
            **fields
        )
    return _store


@pytest.fixture
def event():
    """Build ActivityEvent payloads at a millisecond timestamp"""
    def _event(ts_ms, app_name="Editor", **fields):
        payload = {
            "timestamp": datetime.fromtimestamp(ts_ms / 1000, tz=timezone.utc).isoformat(),
            "source": "app",
            "app_name": app_name,
        }
        payload.update(fields)
        return payload
    return _event

