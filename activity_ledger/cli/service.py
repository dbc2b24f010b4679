import click
import json
import sys
import logging
from typing import Any, Dict, Iterator, Optional
import uvicorn
from rich.console import Console
from rich.table import Table
from rich.panel import Panel
from rich.text import Text

from activity_ledger.config.logging_config import setup_logging
from activity_ledger.config.settings import settings
from activity_ledger.services.analytics import AnalyticsEngine
from activity_ledger.services.database import DatabaseManager
from activity_ledger.services.display import TerminalDisplay
from activity_ledger.services.errors import RecorderError, ServiceError
from activity_ledger.services.recorder import ActivityRecorder
from activity_ledger.services.rollups import RollupAggregator
from activity_ledger.services.summary import SummaryProjector

# Set up logging
logger = logging.getLogger(__name__)

# Initialize console
console = Console()


def _open_db() -> DatabaseManager:
    settings.validate_paths()
    return DatabaseManager(settings.DB_PATH)


def _read_json_lines(stream) -> Iterator[Dict[str, Any]]:
    """Yield objects from JSON lines, or from a single JSON array"""
    text = stream.read()
    stripped = text.strip()
    if stripped.startswith("["):
        yield from json.loads(stripped)
        return
    for line_no, line in enumerate(text.splitlines(), start=1):
        if not line.strip():
            continue
        try:
            yield json.loads(line)
        except json.JSONDecodeError as e:
            logger.warning(f"Skipping malformed line {line_no}: {e}")


def _emit(model, as_json: bool, render) -> None:
    if as_json:
        if isinstance(model, list):
            click.echo(json.dumps([m.model_dump(mode="json") for m in model], indent=2))
        else:
            click.echo(model.model_dump_json(indent=2))
    else:
        render(model)


@click.group()
def cli():
    """Activity Ledger: activity accounting and analytics"""
    # Set up logging before anything else
    setup_logging()


@cli.command()
@click.argument('source', type=click.File('r'), default='-')
@click.option('--device', default=None, help='Device id (defaults to DEVICE_ID)')
@click.option('--keep-open', is_flag=True, help='Leave the last interval open')
def ingest(source, device: Optional[str], keep_open: bool):
    """Record ActivityEvents from JSON lines"""
    try:
        db = _open_db()
        recorder = ActivityRecorder(db, device_id=device)
        recorded = 0
        rejected = 0
        last_ts = None
        for payload in _read_json_lines(source):
            try:
                recorder.record_activity(payload)
            except RecorderError as e:
                rejected += 1
                logger.warning(f"Rejected event: {e}")
                continue
            recorded += 1
            last_ts = recorder.current.last_timestamp_ms if recorder.current else last_ts
        if not keep_open:
            recorder.stop(now=last_ts)
        console.print(Panel(
            f"[green]Recorded {recorded} events[/green]\n"
            f"[yellow]Rejected {rejected} events[/yellow]",
            title=f"Ingest ({recorder.device_id})",
            expand=False
        ))
    except (ServiceError, ValueError) as e:
        logger.error(f"Ingest failed: {e}")
        console.print(f"[red]Ingest failed: {e}[/red]")
        sys.exit(1)


@cli.command('ingest-behavior')
@click.argument('source', type=click.File('r'), default='-')
def ingest_behavior(source):
    """Store BehaviorEvents from JSON lines or a JSON array"""
    try:
        db = _open_db()
        count = AnalyticsEngine(db).ingest_behavior_events(list(_read_json_lines(source)))
        console.print(f"[green]Stored {count} behavior events[/green]")
    except (ServiceError, ValueError) as e:
        logger.error(f"Behavior ingest failed: {e}")
        console.print(f"[red]Behavior ingest failed: {e}[/red]")
        sys.exit(1)


@cli.command()
@click.option('--hours', default=24, help='Window size in hours (1-168)')
@click.option('--device', default=None, help='Device id (defaults to DEVICE_ID)')
@click.option('--json', 'as_json', is_flag=True, help='Print JSON instead of tables')
def summary(hours: int, device: Optional[str], as_json: bool):
    """Show totals, hourly timeline and top contexts"""
    try:
        db = _open_db()
        projector = SummaryProjector(db, device_id=device)
        _emit(projector.get_summary(hours), as_json, TerminalDisplay(console).show_summary)
    except ServiceError as e:
        logger.error(f"Failed to build summary: {e}")
        sys.exit(1)


@cli.command()
@click.option('--hours', default=24, help='Window size in hours (1-168)')
@click.option('--device', default=None, help='Device id (defaults to DEVICE_ID)')
@click.option('--json', 'as_json', is_flag=True, help='Print JSON instead of tables')
def journey(hours: int, device: Optional[str], as_json: bool):
    """Show the compressed category journey"""
    try:
        db = _open_db()
        projector = SummaryProjector(db, device_id=device)
        _emit(projector.get_journey(hours), as_json, TerminalDisplay(console).show_journey)
    except ServiceError as e:
        logger.error(f"Failed to build journey: {e}")
        sys.exit(1)


@cli.group()
def rollups():
    """Hourly rollup commands"""
    pass


@rollups.command()
@click.option('--hours', default=24, help='Whole hours to regenerate')
@click.option('--device', default=None, help='Device id (defaults to DEVICE_ID)')
def refresh(hours: int, device: Optional[str]):
    """Regenerate rollups for recent hours"""
    try:
        db = _open_db()
        generated = RollupAggregator(db).refresh_recent(device or settings.DEVICE_ID, hours)
        TerminalDisplay(console).show_rollups(generated)
    except ServiceError as e:
        logger.error(f"Rollup refresh failed: {e}")
        sys.exit(1)


@rollups.command()
@click.argument('updated_after')
@click.option('--device', default=None, help='Device id (defaults to DEVICE_ID)')
@click.option('--json', 'as_json', is_flag=True, help='Print JSON instead of tables')
def since(updated_after: str, device: Optional[str], as_json: bool):
    """List rollups updated at or after an ISO timestamp"""
    try:
        db = _open_db()
        rows = RollupAggregator(db).list_since(device or settings.DEVICE_ID, updated_after)
        _emit(rows, as_json, TerminalDisplay(console).show_rollups)
    except ServiceError as e:
        logger.error(f"Failed to list rollups: {e}")
        console.print(f"[red]{e}[/red]")
        sys.exit(1)


@rollups.command('summary')
@click.option('--hours', default=24, help='Window size in hours (1-168)')
@click.option('--device', default=None, help='Limit to one device (default: all devices)')
@click.option('--json', 'as_json', is_flag=True, help='Print JSON instead of tables')
def rollup_summary(hours: int, device: Optional[str], as_json: bool):
    """Summary built from stored rollups"""
    try:
        db = _open_db()
        result = RollupAggregator(db).summary_from_rollups(hours, device_id=device)
        _emit(result, as_json, TerminalDisplay(console).show_summary)
    except ServiceError as e:
        logger.error(f"Failed to build rollup summary: {e}")
        sys.exit(1)


@cli.command('time-of-day')
@click.option('--days', default=7, help='Days of history')
@click.option('--json', 'as_json', is_flag=True, help='Print JSON instead of tables')
def time_of_day(days: int, as_json: bool):
    """Hour-of-day distribution"""
    try:
        db = _open_db()
        stats = AnalyticsEngine(db).get_time_of_day_analysis(days)
        _emit(stats, as_json, TerminalDisplay(console).show_time_of_day)
    except ServiceError as e:
        logger.error(f"Time-of-day analysis failed: {e}")
        sys.exit(1)


@cli.command()
@click.option('--days', default=30, help='Days of history')
@click.option('--recompute', is_flag=True, help='Recompute even if the snapshot is fresh')
@click.option('--json', 'as_json', is_flag=True, help='Print JSON instead of tables')
def patterns(days: int, recompute: bool, as_json: bool):
    """Behavioral transition patterns"""
    try:
        db = _open_db()
        engine = AnalyticsEngine(db)
        if recompute:
            engine.compute_transition_patterns(days)
        _emit(engine.get_behavioral_patterns(days), as_json, TerminalDisplay(console).show_patterns)
    except ServiceError as e:
        logger.error(f"Pattern mining failed: {e}")
        sys.exit(1)


@cli.command()
@click.argument('domain')
@click.option('--days', default=7, help='Days of history')
@click.option('--json', 'as_json', is_flag=True, help='Print JSON instead of tables')
def engagement(domain: str, days: int, as_json: bool):
    """Engagement metrics for one domain"""
    try:
        db = _open_db()
        metrics = AnalyticsEngine(db).get_engagement_metrics(domain, days)
        _emit(metrics, as_json, TerminalDisplay(console).show_engagement)
    except ServiceError as e:
        logger.error(f"Engagement scoring failed: {e}")
        sys.exit(1)


@cli.command()
@click.option('--hours', default=24, help='Hours of history (1-336)')
@click.option('--start', default=None, help='ISO start, overrides --hours')
@click.option('--end', default=None, help='ISO end (default: now)')
@click.option('--gap-minutes', default=None, type=int, help='Gap that splits episodes')
@click.option('--bin-seconds', default=None, type=int, help='Timeline bin size')
@click.option('--max-episodes', default=100, help='Keep the most recent N episodes')
@click.option('--json', 'as_json', is_flag=True, help='Print JSON instead of tables')
def episodes(hours, start, end, gap_minutes, bin_seconds, max_episodes, as_json):
    """Segment recent activity into episodes"""
    try:
        db = _open_db()
        episode_map = AnalyticsEngine(db).get_behavior_episodes(
            hours=hours, start=start, end=end, gap_minutes=gap_minutes,
            bin_seconds=bin_seconds, max_episodes=max_episodes,
        )
        _emit(episode_map, as_json, TerminalDisplay(console).show_episodes)
    except ServiceError as e:
        logger.error(f"Episode segmentation failed: {e}")
        sys.exit(1)


@cli.command()
@click.option('--days', default=7, help='Days of history')
@click.option('--json', 'as_json', is_flag=True, help='Print JSON instead of tables')
def overview(days: int, as_json: bool):
    """Headline analytics and insights"""
    try:
        db = _open_db()
        _emit(AnalyticsEngine(db).get_overview(days), as_json, TerminalDisplay(console).show_overview)
    except ServiceError as e:
        logger.error(f"Overview failed: {e}")
        sys.exit(1)


@cli.command()
@click.option('--granularity', type=click.Choice(['hour', 'day', 'week']), default='day')
@click.option('--json', 'as_json', is_flag=True, help='Print JSON instead of tables')
def trends(granularity: str, as_json: bool):
    """Category and quality trends"""
    try:
        db = _open_db()
        _emit(AnalyticsEngine(db).get_trends(granularity), as_json, TerminalDisplay(console).show_trends)
    except ServiceError as e:
        logger.error(f"Trend analysis failed: {e}")
        sys.exit(1)


@cli.group()
def db():
    """Database management commands"""
    pass


@db.command()
def stats():
    """Show database statistics"""
    try:
        db = _open_db()
        stats = db.get_database_stats()

        # Table statistics
        table = Table(title="Database Tables")
        table.add_column("Table", style="cyan")
        table.add_column("Rows", justify="right", style="green")
        table.add_column("Indexes", justify="right", style="yellow")

        for table_name, info in stats['tables'].items():
            table.add_row(
                table_name,
                str(info['row_count']),
                str(info['index_count'])
            )

        console.print(table)

        # Time range info
        time_range = stats['time_range']
        if time_range['oldest'] and time_range['newest']:
            time_panel = Panel(
                f"[green]Oldest Activity:[/green] {time_range['oldest'][:16]}\n"
                f"[green]Newest Activity:[/green] {time_range['newest'][:16]}\n"
                f"[yellow]Total Activities:[/yellow] {time_range['total_records']:,}",
                title="Data Overview"
            )
            console.print(time_panel)

        # Database size
        size_text = Text()
        size_text.append("\nDatabase Size: ", style="bold")
        size_text.append(f"{stats['database_size_mb']:.1f}MB", style="green")
        console.print(size_text)

    except ServiceError as e:
        logger.error(f"Failed to get database stats: {e}")
        sys.exit(1)


@db.command()
def verify():
    """Verify database integrity"""
    try:
        db = _open_db()
        if db.verify_database_integrity():
            console.print("[green]Database integrity check passed[/green]")
        else:
            console.print("[red]Database integrity check failed![/red]")
            sys.exit(1)
    except ServiceError as e:
        logger.error(f"Integrity check failed: {e}")
        sys.exit(1)


@cli.command()
@click.option('--host', default=None, help='Host to bind to')
@click.option('--port', default=None, type=int, help='Port to bind to')
@click.option('--reload', is_flag=True, help='Enable auto-reload')
def web(host: Optional[str], port: Optional[int], reload: bool):
    """Start the JSON API"""
    host = host or settings.WEB_HOST
    port = port or settings.WEB_PORT
    click.echo(f"Starting web interface on http://{host}:{port}")
    uvicorn.run(
        "activity_ledger.web.app:app",
        host=host,
        port=port,
        reload=reload
    )


if __name__ == '__main__':
    cli()
