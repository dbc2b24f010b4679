import json
import pytest
from click.testing import CliRunner

from activity_ledger.cli import service
from activity_ledger.config.settings import settings
from activity_ledger.services.database import DatabaseManager
from activity_ledger.services.intervals import iso_from_ms, to_ms
from conftest import at


@pytest.fixture
def runner(tmp_path, monkeypatch):
    """CLI runner writing to a throwaway database"""
    monkeypatch.setattr(settings, "DATA_DIR", tmp_path / "data")
    monkeypatch.setattr(settings, "LOG_DIR", tmp_path / "logs")
    monkeypatch.setattr(settings, "DB_PATH", tmp_path / "data" / "ledger.db")
    monkeypatch.setattr(service, "setup_logging", lambda: None)
    return CliRunner()


def open_db():
    return DatabaseManager(settings.DB_PATH)


def event_line(ts_ms, app_name="Editor", **fields):
    payload = {"timestamp": iso_from_ms(ts_ms), "source": "app", "app_name": app_name}
    payload.update(fields)
    return json.dumps(payload)


def test_ingest_records_intervals(runner):
    """Test ingesting a JSON lines stream"""
    lines = [
        event_line(at(10), category="productive"),
        event_line(at(10, 0, 30), category="productive"),
        "{this is not json",
        event_line(at(10, 0, 40), app_name=""),
        event_line(at(10, 1), app_name="Browser", source="url", domain="docs.com"),
    ]
    result = runner.invoke(service.cli, ["ingest", "--device", "laptop"], input="\n".join(lines))
    assert result.exit_code == 0
    assert "Recorded 3 events" in result.output
    assert "Rejected 1 events" in result.output

    db = open_db()
    try:
        browser, editor = db.get_recent_activities(10, device_id="laptop")
        assert editor.seconds_active == 60
        assert browser.domain == "docs.com"
        assert to_ms(browser.ended_at) == at(10, 1)
    finally:
        db.close()


def test_keep_open_resumes_on_next_ingest(runner):
    """A second ingest continues the interval left open by the first"""
    first = "\n".join([event_line(at(10)), event_line(at(10, 0, 30))])
    second = event_line(at(10, 1))
    for lines in (first, second):
        result = runner.invoke(service.cli, ["ingest", "--device", "laptop", "--keep-open"], input=lines)
        assert result.exit_code == 0

    db = open_db()
    try:
        (activity,) = db.get_recent_activities(10, device_id="laptop")
        assert activity.is_open
        assert activity.seconds_active == 60
        assert [a.id for a in db.get_open_activities("laptop")] == [activity.id]
    finally:
        db.close()


def test_ingest_behavior_array(runner):
    payload = json.dumps([
        {"timestamp": iso_from_ms(at(10)), "domain": "docs.com", "event_type": "scroll", "value_int": 40},
        {"timestamp": iso_from_ms(at(10, 1)), "domain": "docs.com", "event_type": "click"},
    ])
    result = runner.invoke(service.cli, ["ingest-behavior"], input=payload)
    assert result.exit_code == 0
    assert "Stored 2 behavior events" in result.output


def test_ingest_behavior_rejects_bad_batch(runner):
    payload = json.dumps([{"timestamp": iso_from_ms(at(10)), "domain": "docs.com", "event_type": "teleport"}])
    result = runner.invoke(service.cli, ["ingest-behavior"], input=payload)
    assert result.exit_code == 1


def test_summary_json(runner):
    result = runner.invoke(service.cli, ["summary", "--hours", "3", "--json"])
    assert result.exit_code == 0
    data = json.loads(result.stdout)
    assert data["window_hours"] == 3
    assert len(data["timeline"]) == 3


def test_summary_table(runner):
    result = runner.invoke(service.cli, ["summary", "--hours", "2"])
    assert result.exit_code == 0
    assert "Timeline" in result.output


def test_rollups_commands(runner):
    result = runner.invoke(service.cli, ["rollups", "refresh", "--hours", "2", "--device", "laptop"])
    assert result.exit_code == 0
    assert "No rollups in range" in result.output

    result = runner.invoke(service.cli, ["rollups", "summary", "--json"])
    assert result.exit_code == 0
    assert json.loads(result.stdout)["window_hours"] == 24

    result = runner.invoke(service.cli, ["rollups", "since", "not-a-time"])
    assert result.exit_code == 1


def test_analytics_commands(runner):
    for args in (
        ["time-of-day", "--json"],
        ["patterns", "--recompute", "--json"],
        ["engagement", "docs.com", "--json"],
        ["episodes", "--hours", "2", "--json"],
        ["overview", "--json"],
        ["trends", "--granularity", "hour", "--json"],
    ):
        result = runner.invoke(service.cli, args)
        assert result.exit_code == 0, args
        json.loads(result.stdout)


def test_trends_rejects_unknown_granularity(runner):
    result = runner.invoke(service.cli, ["trends", "--granularity", "fortnight"])
    assert result.exit_code == 2


def test_db_commands(runner):
    runner.invoke(service.cli, ["ingest"], input=event_line(at(10)))

    result = runner.invoke(service.cli, ["db", "stats"])
    assert result.exit_code == 0
    assert "activities" in result.output

    result = runner.invoke(service.cli, ["db", "verify"])
    assert result.exit_code == 0
    assert "integrity check passed" in result.output
