import json
import logging
import sqlite3
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Iterable, Iterator, List, Optional, Union

from activity_ledger.config.settings import settings
from activity_ledger.models.activity import (
    Activity,
    ActivityEvent,
    BehaviorEvent,
    Category,
    ConsumptionMarker,
    Rollup,
)
from activity_ledger.models.analytics import BehavioralPattern
from activity_ledger.models.focus_session import FocusSession
from activity_ledger.services.errors import DatabaseError
from activity_ledger.services.intervals import from_ms, iso_from_ms, parse_iso_ms, to_ms

logger = logging.getLogger(__name__)

MIGRATIONS = [
    """
    -- Core activity intervals
    CREATE TABLE IF NOT EXISTS activities (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        device_id TEXT NOT NULL DEFAULT 'local',
        started_at TEXT NOT NULL,
        ended_at TEXT,
        source TEXT CHECK(source IN ('app', 'url')) NOT NULL,
        app_name TEXT,
        bundle_id TEXT,
        window_title TEXT,
        url TEXT,
        domain TEXT,
        category TEXT,
        seconds_active INTEGER NOT NULL DEFAULT 0,
        idle_seconds INTEGER NOT NULL DEFAULT 0,
        closed INTEGER NOT NULL DEFAULT 0 CHECK(closed IN (0, 1))
    );

    -- Hourly category snapshots, one row per device and hour
    CREATE TABLE IF NOT EXISTS activity_rollups (
        device_id TEXT NOT NULL,
        hour_start TEXT NOT NULL,
        productive INTEGER NOT NULL DEFAULT 0 CHECK(productive >= 0),
        neutral INTEGER NOT NULL DEFAULT 0 CHECK(neutral >= 0),
        frivolity INTEGER NOT NULL DEFAULT 0 CHECK(frivolity >= 0),
        draining INTEGER NOT NULL DEFAULT 0 CHECK(draining >= 0),
        idle INTEGER NOT NULL DEFAULT 0 CHECK(idle >= 0),
        updated_at TEXT NOT NULL,
        PRIMARY KEY (device_id, hour_start)
    );

    -- Fine-grained interaction signals
    CREATE TABLE IF NOT EXISTS behavior_events (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        timestamp TEXT NOT NULL,
        session_id INTEGER,
        domain TEXT NOT NULL,
        event_type TEXT NOT NULL,
        value_int INTEGER,
        value_float REAL,
        metadata TEXT
    );

    -- Mined transition edges, fully recomputed
    CREATE TABLE IF NOT EXISTS behavioral_patterns (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        computed_at TEXT NOT NULL,
        from_category TEXT,
        from_domain TEXT,
        to_category TEXT,
        to_domain TEXT,
        transition_count INTEGER NOT NULL,
        avg_duration_before REAL NOT NULL,
        correlation_strength REAL NOT NULL,
        time_of_day_bucket INTEGER NOT NULL
    );

    -- Economy outcome markers used to enrich episodes
    CREATE TABLE IF NOT EXISTS consumption_log (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        occurred_at TEXT NOT NULL,
        kind TEXT NOT NULL,
        title TEXT,
        url TEXT,
        domain TEXT,
        meta TEXT
    );

    -- Deep work sessions
    CREATE TABLE IF NOT EXISTS focus_sessions (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        start_time TEXT NOT NULL,
        end_time TEXT,
        planned_duration_sec INTEGER NOT NULL DEFAULT 0,
        activity_type TEXT NOT NULL DEFAULT 'pomodoro'
    );

    CREATE INDEX IF NOT EXISTS idx_activities_started ON activities(started_at);
    CREATE INDEX IF NOT EXISTS idx_activities_device ON activities(device_id, started_at);
    CREATE INDEX IF NOT EXISTS idx_activities_domain ON activities(domain);
    CREATE INDEX IF NOT EXISTS idx_rollups_hour ON activity_rollups(hour_start);
    CREATE INDEX IF NOT EXISTS idx_behavior_events_time ON behavior_events(timestamp);
    CREATE INDEX IF NOT EXISTS idx_behavior_events_domain ON behavior_events(domain, timestamp);
    CREATE INDEX IF NOT EXISTS idx_patterns_computed ON behavioral_patterns(computed_at);
    CREATE INDEX IF NOT EXISTS idx_consumption_time ON consumption_log(occurred_at);
    CREATE INDEX IF NOT EXISTS idx_focus_sessions_time ON focus_sessions(start_time);
    """
]

TimeLike = Union[datetime, int, str]


def _iso(value: Optional[TimeLike]) -> Optional[str]:
    """Normalise datetimes and epoch milliseconds to stored ISO text"""
    if value is None:
        return None
    if isinstance(value, datetime):
        return iso_from_ms(to_ms(value))
    if isinstance(value, int):
        return iso_from_ms(value)
    return value


def _load_json(value: Optional[str]) -> Optional[Dict[str, Any]]:
    if not value:
        return None
    try:
        parsed = json.loads(value)
    except (TypeError, ValueError):
        return None
    return parsed if isinstance(parsed, dict) else None


class DatabaseManager:
    def __init__(self, db_path=None):
        """Initialize database manager"""
        self.db_path = str(db_path or settings.DB_PATH)
        logger.info(f"Initialized DatabaseManager with db_path: {self.db_path}")
        self.conn = self._connect()
        self.initialize()

    def _connect(self) -> sqlite3.Connection:
        try:
            if self.db_path != ":memory:":
                Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
            conn = sqlite3.connect(self.db_path, check_same_thread=False)
            conn.row_factory = sqlite3.Row
            conn.execute("PRAGMA foreign_keys = ON")
            if self.db_path != ":memory:":
                conn.execute("PRAGMA journal_mode = WAL")
            conn.execute("PRAGMA synchronous = NORMAL")
            return conn
        except sqlite3.Error as e:
            logger.error(f"Failed to open database {self.db_path}: {e}")
            raise DatabaseError(f"Failed to open database: {e}")

    def initialize(self):
        """Initialize database schema"""
        try:
            for migration in MIGRATIONS:
                self.conn.executescript(migration)
            self.conn.commit()
            logger.debug("Database initialization complete")
        except sqlite3.Error as e:
            logger.error(f"Failed to initialize database: {e}")
            raise DatabaseError(f"Failed to initialize database: {e}")

    def close(self) -> None:
        try:
            self.conn.close()
        except sqlite3.Error as e:
            logger.error(f"Failed to close database: {e}")
            raise DatabaseError(f"Failed to close database: {e}")

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """Run statements atomically, rolling back and wrapping store errors"""
        try:
            with self.conn:
                yield self.conn
        except sqlite3.Error as e:
            logger.error(f"Database transaction failed: {e}")
            raise DatabaseError(f"Database transaction failed: {e}")

    def _query(self, sql: str, params: Iterable[Any] = ()) -> List[sqlite3.Row]:
        try:
            return self.conn.execute(sql, list(params)).fetchall()
        except sqlite3.Error as e:
            logger.error(f"Query failed: {e}")
            raise DatabaseError(f"Query failed: {e}")

    # Activities

    def insert_activity(self, device_id: str, event: ActivityEvent) -> int:
        """Open a new activity interval with zero seconds"""
        with self.transaction() as conn:
            cursor = conn.execute("""
                INSERT INTO activities (
                    device_id, started_at, source, app_name, bundle_id,
                    window_title, url, domain, category, seconds_active, idle_seconds
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, 0, 0)
            """, [
                device_id,
                _iso(event.timestamp),
                event.source.value,
                event.app_name,
                event.bundle_id,
                event.window_title,
                event.url,
                event.domain,
                event.category.value if event.category else None,
            ])
            return cursor.lastrowid

    def add_activity_seconds(self, activity_id: int, ended_at: TimeLike, active: int, idle: int) -> None:
        """Extend an open interval and move its end forward"""
        with self.transaction() as conn:
            conn.execute("""
                UPDATE activities
                SET ended_at = ?, seconds_active = seconds_active + ?, idle_seconds = idle_seconds + ?
                WHERE id = ?
            """, [_iso(ended_at), int(active), int(idle), activity_id])

    def close_activity(self, activity_id: int, ended_at: TimeLike) -> None:
        with self.transaction() as conn:
            conn.execute(
                "UPDATE activities SET ended_at = ?, closed = 1 WHERE id = ?",
                [_iso(ended_at), activity_id]
            )

    def store_activity(
        self,
        started_at: TimeLike,
        ended_at: Optional[TimeLike] = None,
        *,
        device_id: str = "local",
        source: str = "app",
        app_name: Optional[str] = None,
        bundle_id: Optional[str] = None,
        window_title: Optional[str] = None,
        url: Optional[str] = None,
        domain: Optional[str] = None,
        category: Optional[str] = None,
        seconds_active: int = 0,
        idle_seconds: int = 0,
    ) -> int:
        """Store a complete activity record (imports and backfills)"""
        with self.transaction() as conn:
            cursor = conn.execute("""
                INSERT INTO activities (
                    device_id, started_at, ended_at, source, app_name, bundle_id,
                    window_title, url, domain, category, seconds_active, idle_seconds, closed
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """, [
                device_id, _iso(started_at), _iso(ended_at), source, app_name, bundle_id,
                window_title, url, domain, category, seconds_active, idle_seconds,
                0 if ended_at is None else 1
            ])
            return cursor.lastrowid

    def get_activity(self, activity_id: int) -> Optional[Activity]:
        rows = self._query("SELECT * FROM activities WHERE id = ?", [activity_id])
        return self._row_to_activity(rows[0]) if rows else None

    def get_open_activities(self, device_id: str) -> List[Activity]:
        rows = self._query(
            "SELECT * FROM activities WHERE device_id = ? AND closed = 0 ORDER BY started_at, id",
            [device_id]
        )
        return [a for a in (self._row_to_activity(r) for r in rows) if a is not None]

    def get_recent_activities(self, limit: int = 50, device_id: Optional[str] = None) -> List[Activity]:
        """Most recent activities first, skipping rows with unusable timestamps"""
        if device_id is None:
            rows = self._query("SELECT * FROM activities ORDER BY started_at DESC LIMIT ?", [limit])
        else:
            rows = self._query(
                "SELECT * FROM activities WHERE device_id = ? ORDER BY started_at DESC LIMIT ?",
                [device_id, limit]
            )
        return [a for a in (self._row_to_activity(r) for r in rows) if a is not None]

    def get_activities_overlapping(
        self,
        start_ms: int,
        end_ms: int,
        device_id: Optional[str] = None,
        domain: Optional[str] = None,
        newest_first: bool = False,
    ) -> List[sqlite3.Row]:
        """Raw rows whose lifespan may overlap [start_ms, end_ms]

        Rows are returned unparsed so callers can skip unusable timestamps
        without failing the whole aggregation.
        """
        sql = """
            SELECT * FROM activities
            WHERE started_at <= ? AND (ended_at IS NULL OR ended_at >= ?)
        """
        params: List[Any] = [iso_from_ms(end_ms), iso_from_ms(start_ms)]
        if device_id is not None:
            sql += " AND device_id = ?"
            params.append(device_id)
        if domain is not None:
            sql += " AND domain = ?"
            params.append(domain)
        sql += " ORDER BY started_at DESC, id DESC" if newest_first else " ORDER BY started_at ASC, id ASC"
        return self._query(sql, params)

    @staticmethod
    def _row_to_activity(row: sqlite3.Row) -> Optional[Activity]:
        started_ms = parse_iso_ms(row["started_at"])
        if started_ms is None:
            logger.debug(f"Skipping activity {row['id']} with unparseable start {row['started_at']!r}")
            return None
        ended_ms = parse_iso_ms(row["ended_at"])
        return Activity(
            id=row["id"],
            device_id=row["device_id"],
            started_at=from_ms(started_ms),
            ended_at=from_ms(ended_ms) if ended_ms is not None else None,
            source=row["source"],
            app_name=row["app_name"],
            bundle_id=row["bundle_id"],
            window_title=row["window_title"],
            url=row["url"],
            domain=row["domain"],
            category=Category.parse(row["category"]),
            seconds_active=max(0, row["seconds_active"] or 0),
            idle_seconds=max(0, row["idle_seconds"] or 0),
            closed=bool(row["closed"]),
        )

    # Rollups

    def upsert_rollups(self, rollups: Iterable[Rollup]) -> int:
        """Write rollups, replacing any existing row for the same (device, hour)"""
        count = 0
        with self.transaction() as conn:
            for rollup in rollups:
                conn.execute("""
                    INSERT INTO activity_rollups (
                        device_id, hour_start, productive, neutral, frivolity, draining, idle, updated_at
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                    ON CONFLICT(device_id, hour_start) DO UPDATE SET
                        productive = excluded.productive,
                        neutral = excluded.neutral,
                        frivolity = excluded.frivolity,
                        draining = excluded.draining,
                        idle = excluded.idle,
                        updated_at = excluded.updated_at
                """, [
                    rollup.device_id, rollup.hour_start, rollup.productive, rollup.neutral,
                    rollup.frivolity, rollup.draining, rollup.idle, rollup.updated_at
                ])
                count += 1
        return count

    def get_rollups(self, hour_start_from: str, device_id: Optional[str] = None) -> List[Rollup]:
        if device_id is None:
            rows = self._query(
                "SELECT * FROM activity_rollups WHERE hour_start >= ? ORDER BY hour_start ASC, device_id ASC",
                [hour_start_from]
            )
        else:
            rows = self._query(
                "SELECT * FROM activity_rollups WHERE device_id = ? AND hour_start >= ? ORDER BY hour_start ASC",
                [device_id, hour_start_from]
            )
        return [self._row_to_rollup(r) for r in rows]

    def get_rollups_updated_since(self, device_id: str, updated_after: str) -> List[Rollup]:
        rows = self._query(
            "SELECT * FROM activity_rollups WHERE device_id = ? AND updated_at >= ? ORDER BY hour_start ASC",
            [device_id, updated_after]
        )
        return [self._row_to_rollup(r) for r in rows]

    @staticmethod
    def _row_to_rollup(row: sqlite3.Row) -> Rollup:
        return Rollup(
            device_id=row["device_id"],
            hour_start=row["hour_start"],
            productive=row["productive"],
            neutral=row["neutral"],
            frivolity=row["frivolity"],
            draining=row["draining"],
            idle=row["idle"],
            updated_at=row["updated_at"],
        )

    # Behavior events

    def insert_behavior_events(self, events: Iterable[BehaviorEvent]) -> int:
        count = 0
        with self.transaction() as conn:
            for evt in events:
                conn.execute("""
                    INSERT INTO behavior_events (
                        timestamp, session_id, domain, event_type, value_int, value_float, metadata
                    ) VALUES (?, ?, ?, ?, ?, ?, ?)
                """, [
                    _iso(evt.timestamp),
                    evt.session_id,
                    evt.domain,
                    evt.event_type.value,
                    evt.value_int,
                    evt.value_float,
                    json.dumps(evt.metadata) if evt.metadata else None,
                ])
                count += 1
        return count

    def get_behavior_events_between(
        self, start_ms: int, end_ms: int, domain: Optional[str] = None
    ) -> List[Dict[str, Any]]:
        sql = "SELECT * FROM behavior_events WHERE timestamp >= ? AND timestamp <= ?"
        params: List[Any] = [iso_from_ms(start_ms), iso_from_ms(end_ms)]
        if domain is not None:
            sql += " AND domain = ?"
            params.append(domain)
        sql += " ORDER BY timestamp ASC, id ASC"
        return [
            {
                "id": row["id"],
                "timestamp": row["timestamp"],
                "session_id": row["session_id"],
                "domain": row["domain"],
                "event_type": row["event_type"],
                "value_int": row["value_int"],
                "value_float": row["value_float"],
                "metadata": _load_json(row["metadata"]),
            }
            for row in self._query(sql, params)
        ]

    # Behavioral patterns

    def replace_patterns(self, patterns: Iterable[BehavioralPattern], computed_at: str) -> None:
        """Clear the pattern snapshot and insert a fresh one atomically"""
        with self.transaction() as conn:
            conn.execute("DELETE FROM behavioral_patterns")
            for p in patterns:
                conn.execute("""
                    INSERT INTO behavioral_patterns (
                        computed_at, from_category, from_domain, to_category, to_domain,
                        transition_count, avg_duration_before, correlation_strength, time_of_day_bucket
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                """, [
                    computed_at, p.from_category, p.from_domain, p.to_category, p.to_domain,
                    p.frequency, p.avg_time_before, p.correlation_strength, p.dominant_hour_bucket
                ])

    def get_latest_pattern_computed_at(self) -> Optional[str]:
        rows = self._query(
            "SELECT computed_at FROM behavioral_patterns ORDER BY computed_at DESC LIMIT 1"
        )
        return rows[0]["computed_at"] if rows else None

    def get_patterns(self, limit: int = 50) -> List[BehavioralPattern]:
        rows = self._query(
            "SELECT * FROM behavioral_patterns ORDER BY transition_count DESC, id ASC LIMIT ?",
            [limit]
        )
        return [
            BehavioralPattern(
                id=row["id"],
                from_category=row["from_category"],
                from_domain=row["from_domain"],
                to_category=row["to_category"],
                to_domain=row["to_domain"],
                frequency=row["transition_count"],
                avg_time_before=row["avg_duration_before"],
                correlation_strength=row["correlation_strength"],
                dominant_hour_bucket=row["time_of_day_bucket"],
                computed_at=row["computed_at"],
            )
            for row in rows
        ]

    # Consumption markers

    def store_marker(self, marker: ConsumptionMarker) -> int:
        with self.transaction() as conn:
            cursor = conn.execute("""
                INSERT INTO consumption_log (occurred_at, kind, title, url, domain, meta)
                VALUES (?, ?, ?, ?, ?, ?)
            """, [
                _iso(marker.occurred_at), marker.kind, marker.title, marker.url, marker.domain,
                json.dumps(marker.meta) if marker.meta else None
            ])
            return cursor.lastrowid

    def get_markers_between(self, start_ms: int, end_ms: int) -> List[Dict[str, Any]]:
        rows = self._query(
            "SELECT * FROM consumption_log WHERE occurred_at >= ? AND occurred_at <= ? ORDER BY occurred_at ASC",
            [iso_from_ms(start_ms), iso_from_ms(end_ms)]
        )
        return [
            {
                "id": row["id"],
                "occurred_at": row["occurred_at"],
                "kind": row["kind"],
                "title": row["title"],
                "url": row["url"],
                "domain": row["domain"],
                "meta": _load_json(row["meta"]),
            }
            for row in rows
        ]

    # Focus sessions

    def store_focus_session(self, session: FocusSession) -> int:
        """Store a focus session in the database"""
        with self.transaction() as conn:
            cursor = conn.execute("""
                INSERT INTO focus_sessions (start_time, end_time, planned_duration_sec, activity_type)
                VALUES (?, ?, ?, ?)
            """, [
                _iso(session.start_time),
                _iso(session.end_time),
                session.planned_duration_sec,
                session.activity_type,
            ])
            session.id = cursor.lastrowid
            return session.id

    def end_focus_session(self, session_id: int, end_time: TimeLike) -> None:
        with self.transaction() as conn:
            conn.execute(
                "UPDATE focus_sessions SET end_time = ? WHERE id = ?",
                [_iso(end_time), session_id]
            )

    def get_focus_sessions_overlapping(self, start_ms: int, end_ms: int) -> List[FocusSession]:
        rows = self._query("""
            SELECT * FROM focus_sessions
            WHERE start_time <= ? AND (end_time IS NULL OR end_time >= ?)
            ORDER BY start_time ASC
        """, [iso_from_ms(end_ms), iso_from_ms(start_ms)])
        sessions = []
        for row in rows:
            start = parse_iso_ms(row["start_time"])
            if start is None:
                continue
            end = parse_iso_ms(row["end_time"])
            sessions.append(FocusSession(
                id=row["id"],
                start_time=from_ms(start),
                end_time=from_ms(end) if end is not None else None,
                planned_duration_sec=row["planned_duration_sec"] or 0,
                activity_type=row["activity_type"],
            ))
        return sessions

    # Maintenance

    def get_database_stats(self) -> Dict[str, Any]:
        """Get database statistics"""
        try:
            cursor = self.conn.cursor()
            cursor.execute("""
                SELECT
                    name,
                    (SELECT COUNT(*) FROM sqlite_master WHERE type='index' AND tbl_name=m.name) as index_count
                FROM sqlite_master m
                WHERE type='table' AND name NOT LIKE 'sqlite_%'
            """)
            tables = {}
            for table_name, index_count in cursor.fetchall():
                cursor.execute(f"SELECT COUNT(*) FROM {table_name}")
                tables[table_name] = {
                    "row_count": cursor.fetchone()[0],
                    "index_count": index_count,
                }

            cursor.execute("""
                SELECT MIN(started_at) as oldest, MAX(started_at) as newest, COUNT(*) as total
                FROM activities
            """)
            time_range = cursor.fetchone()

            if self.db_path == ":memory:":
                db_size = 0
            else:
                db_size = Path(self.db_path).stat().st_size / (1024 * 1024)

            return {
                "tables": tables,
                "database_size_mb": db_size,
                "time_range": {
                    "oldest": time_range[0],
                    "newest": time_range[1],
                    "total_records": time_range[2],
                }
            }
        except sqlite3.Error as e:
            logger.error(f"Failed to get database stats: {e}")
            raise DatabaseError(f"Failed to get database stats: {e}")

    def verify_database_integrity(self) -> bool:
        """Run integrity check on the database

        Returns:
            bool: True if database is healthy

        Raises:
            DatabaseError: If integrity check fails
        """
        try:
            result = self.conn.execute("PRAGMA integrity_check").fetchone()[0]
            if result != "ok":
                logger.error(f"Database integrity check failed: {result}")
                return False

            if self.conn.execute("PRAGMA foreign_key_check").fetchone() is not None:
                logger.error("Foreign key violations found")
                return False

            return True
        except sqlite3.Error as e:
            logger.error(f"Failed to verify database integrity: {e}")
            raise DatabaseError(f"Integrity check failed: {e}")
