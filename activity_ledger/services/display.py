from typing import List, Optional
from rich.console import Console
from rich.table import Table
from rich.panel import Panel
from rich.text import Text

from activity_ledger.models.activity import Rollup
from activity_ledger.models.analytics import (
    ActivityJourney,
    ActivitySummary,
    AnalyticsOverview,
    BehavioralPattern,
    BehaviorEpisodeMap,
    EngagementMetrics,
    TimeOfDayStats,
    TrendPoint,
)

CATEGORY_STYLES = {
    "productive": "green",
    "neutral": "blue",
    "frivolity": "yellow",
    "draining": "red",
    "emergency": "magenta",
    "idle": "dim",
    "uncategorised": "white",
}


def format_seconds(seconds: float) -> str:
    """Compact h/m/s rendering, e.g. 1h 05m"""
    seconds = int(round(seconds))
    hours, rem = divmod(seconds, 3600)
    minutes, secs = divmod(rem, 60)
    if hours:
        return f"{hours}h {minutes:02d}m"
    if minutes:
        return f"{minutes}m {secs:02d}s"
    return f"{secs}s"


def styled(category: str) -> str:
    style = CATEGORY_STYLES.get(category, "white")
    return f"[{style}]{category}[/{style}]"


class TerminalDisplay:
    def __init__(self, console: Optional[Console] = None):
        self.console = console or Console()

    def show_summary(self, summary: ActivitySummary):
        """Totals, hourly timeline and top contexts"""
        header = Text()
        header.append("Activity Ledger", style="bold cyan")
        header.append(f"\nLast {summary.window_hours} hours, {summary.sample_count} activities\n", style="dim")
        header.append(f"Active: {format_seconds(summary.total_seconds)}", style="bold green")
        header.append(f"  Deep work: {format_seconds(summary.deep_work_seconds)}", style="bold magenta")
        self.console.print(Panel(header, expand=False))

        totals = Table(title="Totals by Category")
        totals.add_column("Category", style="cyan")
        totals.add_column("Time", justify="right")
        for category, seconds in summary.totals_by_category.items():
            if seconds:
                totals.add_row(styled(category), format_seconds(seconds))
        self.console.print(totals)

        timeline = Table(title="Timeline")
        timeline.add_column("Hour", style="cyan")
        for column in ["productive", "neutral", "frivolity", "draining", "idle"]:
            timeline.add_column(column.title(), justify="right")
        timeline.add_column("Dominant")
        timeline.add_column("Top Context", style="dim")
        for bucket in summary.timeline:
            timeline.add_row(
                bucket.hour,
                format_seconds(bucket.productive),
                format_seconds(bucket.neutral),
                format_seconds(bucket.frivolity),
                format_seconds(bucket.draining),
                format_seconds(bucket.idle),
                styled(bucket.dominant.value),
                bucket.top_context.label if bucket.top_context else "",
            )
        self.console.print(timeline)

        if summary.top_contexts:
            contexts = Table(title="Top Contexts")
            contexts.add_column("Context", style="green")
            contexts.add_column("Category")
            contexts.add_column("Source", style="dim")
            contexts.add_column("Time", justify="right")
            for ctx in summary.top_contexts:
                contexts.add_row(
                    ctx.label,
                    styled(ctx.category.value) if ctx.category else "",
                    ctx.source.value,
                    format_seconds(ctx.seconds),
                )
            self.console.print(contexts)

    def show_journey(self, journey: ActivityJourney):
        table = Table(title=f"Journey {journey.start} - {journey.end}")
        table.add_column("Start", style="cyan")
        table.add_column("Category")
        table.add_column("Context", style="green")
        table.add_column("Duration", justify="right")
        for segment in journey.segments:
            table.add_row(
                segment.start[11:19],
                styled(segment.category.value),
                segment.label or "",
                format_seconds(segment.seconds),
            )
        self.console.print(table)

        if journey.neutral_counts:
            counts = "\n".join(
                f"• {n.label}: {n.count}x ({format_seconds(n.seconds)})" for n in journey.neutral_counts
            )
            self.console.print(Panel(counts, title="Frequent Neutral Contexts", expand=False))

    def show_rollups(self, rollups: List[Rollup]):
        if not rollups:
            self.console.print("[yellow]No rollups in range[/yellow]")
            return
        table = Table(title="Hourly Rollups")
        table.add_column("Device", style="dim")
        table.add_column("Hour", style="cyan")
        for column in ["productive", "neutral", "frivolity", "draining", "idle"]:
            table.add_column(column.title(), justify="right")
        for rollup in rollups:
            values = rollup.values()
            table.add_row(
                rollup.device_id,
                rollup.hour_start,
                *[format_seconds(values[name]) for name in ["productive", "neutral", "frivolity", "draining", "idle"]],
            )
        self.console.print(table)

    def show_time_of_day(self, stats: List[TimeOfDayStats]):
        table = Table(title="Time of Day")
        table.add_column("Hour", style="cyan", justify="right")
        table.add_column("Dominant")
        table.add_column("Top Domain", style="green")
        table.add_column("Engagement", justify="right")
        table.add_column("Samples", justify="right", style="dim")
        for bucket in stats:
            table.add_row(
                f"{bucket.hour:02d}:00",
                styled(bucket.dominant_category.value),
                bucket.dominant_domain or "",
                f"{bucket.avg_engagement}%",
                str(bucket.sample_count),
            )
        self.console.print(table)

    def show_patterns(self, patterns: List[BehavioralPattern]):
        if not patterns:
            self.console.print("[yellow]No transitions found[/yellow]")
            return
        table = Table(title="Behavioral Patterns")
        table.add_column("From", style="green")
        table.add_column("To", style="green")
        table.add_column("Count", justify="right")
        table.add_column("Avg Before", justify="right")
        table.add_column("Strength", justify="right")
        table.add_column("Hour", justify="right", style="cyan")
        for p in patterns:
            table.add_row(
                f"{p.from_category or '-'}:{p.from_domain or '-'}",
                f"{p.to_category or '-'}:{p.to_domain or '-'}",
                str(p.frequency),
                format_seconds(p.avg_time_before),
                f"{p.correlation_strength:.1f}",
                f"{p.dominant_hour_bucket:02d}:00",
            )
        self.console.print(table)

    def show_engagement(self, metrics: EngagementMetrics):
        text = Text.from_markup(
            f"[bold]{metrics.domain}[/bold]\n"
            f"Active time: {format_seconds(metrics.total_seconds)} over {metrics.session_count} sessions\n"
            f"Clicks/min: {metrics.avg_clicks_per_minute}  Keystrokes/min: {metrics.avg_keystrokes_per_minute}\n"
            f"Scroll depth: {metrics.avg_scroll_depth}  Scroll velocity: {metrics.avg_scroll_velocity}\n"
            f"Fixation score: [bold]{metrics.fixation_score}[/bold] ({metrics.engagement_level.value})"
        )
        self.console.print(Panel(text, title="Engagement", expand=False))

    def show_episodes(self, episode_map: BehaviorEpisodeMap):
        summary = episode_map.summary
        self.console.print(Panel(
            f"[cyan]Episodes:[/cyan] {summary.total_episodes}\n"
            f"[green]Active:[/green] {format_seconds(summary.total_active_seconds)}\n"
            f"[dim]Idle:[/dim] {format_seconds(summary.total_idle_seconds)}\n"
            f"[yellow]Markers:[/yellow] {summary.total_markers}  "
            f"[yellow]Snapshots:[/yellow] {summary.total_content_snapshots}",
            title=f"Episodes {episode_map.query.start[:16]} - {episode_map.query.end[:16]}",
            expand=False,
        ))
        table = Table()
        table.add_column("Start", style="cyan")
        table.add_column("Duration", justify="right")
        table.add_column("Dominant")
        table.add_column("Top Domains", style="green")
        table.add_column("Switches", justify="right")
        table.add_column("Actions/min", justify="right")
        for episode in episode_map.episodes:
            table.add_row(
                episode.start[:19],
                format_seconds(episode.duration_seconds),
                styled(episode.dominant_category.value),
                ", ".join(d.domain for d in episode.top_domains[:3]),
                str(episode.domain_switches),
                str(episode.rates.actions_per_minute),
            )
        self.console.print(table)

    def show_overview(self, overview: AnalyticsOverview):
        stats = Text()
        stats.append(f"Last {overview.period_days} days\n", style="bold yellow")
        stats.append(f"Active hours: {overview.total_active_hours}\n")
        stats.append(f"Productivity score: {overview.productivity_score}\n", style="bold green")
        stats.append(f"Deep work: {format_seconds(overview.deep_work_seconds)}\n")
        stats.append(f"Focus trend: {overview.focus_trend.value}\n")
        stats.append(f"Peak hour: {overview.peak_productive_hour:02d}:00  Risk hour: {overview.risk_hour:02d}:00\n")
        stats.append(f"Sessions: {overview.total_sessions} (avg {format_seconds(overview.avg_session_length)})")
        self.console.print(Panel(stats, title="Overview", expand=False))
        if overview.insights:
            self.console.print(Panel("\n".join(f"• {i}" for i in overview.insights), title="Insights"))

    def show_trends(self, points: List[TrendPoint]):
        table = Table(title="Trends")
        table.add_column("Period", style="cyan")
        table.add_column("Productive", justify="right")
        table.add_column("Frivolity", justify="right")
        table.add_column("Deep Work", justify="right")
        table.add_column("Engagement", justify="right")
        table.add_column("Quality", justify="right")
        for point in points:
            table.add_row(
                point.label,
                format_seconds(point.productive),
                format_seconds(point.frivolity),
                format_seconds(point.deep_work),
                f"{point.engagement}%",
                str(point.quality_score),
            )
        self.console.print(table)
