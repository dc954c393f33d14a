"""
Cadence CLI entry point.

Commands:
    cadence expand    — Preview the occurrences of a recurrence rule
    cadence gate      — Apply a quiet-hours window to an instant
    cadence best      — Pick the most engaging hour in a window
    cadence simulate  — Run a file of requests through the full governor
    cadence config    — Show the effective configuration
    cadence logs      — Show recent logs
"""

from __future__ import annotations

import asyncio
import json
import logging
from datetime import datetime, timedelta
from pathlib import Path

import typer
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from cadence.core.errors import CadenceError

app = typer.Typer(
    name="cadence",
    help="Cadence — decides when a notification is allowed to fire.",
    add_completion=False,
)

console = Console()

DATETIME_FORMATS = ["%Y-%m-%d", "%Y-%m-%dT%H:%M", "%Y-%m-%dT%H:%M:%S", "%Y-%m-%d %H:%M"]

STATE_STYLES = {
    "admitted": "green",
    "deferred": "yellow",
    "dropped": "red",
}


def get_cadence_home() -> Path:
    """Get the Cadence home directory."""
    return Path.home() / ".cadence"


def get_config_path() -> Path:
    """Get the user config file path."""
    return get_cadence_home() / "config.toml"


def _fail(error: CadenceError) -> None:
    console.print(f"[red]{type(error).__name__}:[/red] {error.message}")
    raise typer.Exit(1)


@app.command()
def expand(
    unit: str = typer.Argument(..., help="minute | hour | day | week | month | year"),
    start: datetime = typer.Argument(..., formats=DATETIME_FORMATS, help="Rule start"),
    at: str = typer.Option("00:00", "--at", "-a", help="Time of day, HH:MM[:SS]"),
    count: int = typer.Option(None, "--max", "-m", help="Max occurrences"),
    end: datetime = typer.Option(None, "--end", formats=DATETIME_FORMATS, help="Rule end"),
    weekday: str = typer.Option(None, "--weekday", "-w", help="Weekday for weekly rules"),
    now: datetime = typer.Option(None, "--now", formats=DATETIME_FORMATS, help="Reference time"),
) -> None:
    """Preview the occurrences of a recurrence rule."""
    from cadence.core.clock import FixedClock, SystemClock
    from cadence.core.config import CadenceConfig
    from cadence.scheduler.recurrence import RecurrenceExpander
    from cadence.scheduler.triggers import make_trigger

    try:
        config = CadenceConfig.load()
        trigger = make_trigger({
            "type": "recurrence",
            "unit": unit,
            "start": start,
            "at": at,
            "max_occurrences": count,
            "end": end,
            "weekday": weekday,
        })
        clock = FixedClock(now) if now is not None else SystemClock()
        expander = RecurrenceExpander(clock=clock, system_cap=config.governor.system_cap)
        instants = expander.expand(trigger.rule)
    except CadenceError as e:
        _fail(e)

    table = Table(title=trigger.description, show_lines=False)
    table.add_column("#", justify="right", style="dim")
    table.add_column("Instant")
    table.add_column("Weekday", style="dim")
    for i, instant in enumerate(instants):
        table.add_row(str(i), instant.strftime("%Y-%m-%d %H:%M:%S"), instant.strftime("%A"))
    console.print(table)
    console.print(f"[dim]{len(instants)} occurrence(s)[/dim]")


@app.command()
def gate(
    candidate: datetime = typer.Argument(..., formats=DATETIME_FORMATS, help="Candidate instant"),
    start: str = typer.Option(None, "--start", "-s", help="Window start, HH:MM"),
    end: str = typer.Option(None, "--end", "-e", help="Window end, HH:MM"),
    preset: str = typer.Option(None, "--preset", "-p", help="night_time | sleep_time | work_hours_only"),
) -> None:
    """Apply a quiet-hours window to an instant."""
    from cadence.core.config import CadenceConfig
    from cadence.policies.quiet_hours import QuietHoursGate

    overrides: dict = {}
    if preset:
        overrides["preset"] = preset
    if start or end:
        overrides.update({"enabled": True, "start": start or "22:00", "end": end or "08:00"})

    try:
        config = CadenceConfig.load(overrides={"quiet_hours": overrides} if overrides else None)
        policy = config.quiet_hours.to_policy()
    except CadenceError as e:
        _fail(e)

    if policy is None:
        console.print("[yellow]Quiet hours are not configured.[/yellow]")
        console.print("[dim]Pass --start/--end or --preset, or set [quiet_hours] in config.[/dim]")
        raise typer.Exit(1)

    gated = QuietHoursGate().apply(policy, candidate)
    window = f"{policy.window_start}-{policy.window_end}"
    if gated == candidate:
        console.print(f"{candidate.isoformat()} is outside quiet hours ({window})")
    else:
        console.print(f"{candidate.isoformat()} → [bold]{gated.isoformat()}[/bold] (quiet {window})")


@app.command()
def best(
    earliest: datetime = typer.Argument(..., formats=DATETIME_FORMATS, help="Window start"),
    latest: datetime = typer.Argument(..., formats=DATETIME_FORMATS, help="Window end"),
    heatmap: str = typer.Option(None, "--heatmap", help="Scores as 'hour=score,...'"),
) -> None:
    """Pick the most engaging hour in a window."""
    from cadence.core.config import CadenceConfig
    from cadence.core.types import EngagementHeatmap, TimeWindow
    from cadence.policies.optimizer import DeliveryOptimizer

    try:
        if heatmap:
            scores = EngagementHeatmap.from_mapping(_parse_scores(heatmap))
        else:
            scores = CadenceConfig.load().optimizer.to_heatmap()
        window = TimeWindow(earliest, latest)
    except CadenceError as e:
        _fail(e)

    optimizer = DeliveryOptimizer()
    chosen = optimizer.pick_best(window, scores)
    console.print(f"Best delivery: [bold]{chosen.isoformat()}[/bold] (score {scores[chosen.hour]:.2f})")
    for rec in optimizer.recommendations(scores):
        console.print(f"[dim]• {rec.description}[/dim]")


@app.command()
def simulate(
    path: Path = typer.Argument(..., exists=True, dir_okay=False, help="TOML file of [[request]] tables"),
    now: datetime = typer.Option(None, "--now", formats=DATETIME_FORMATS, help="Simulation start"),
    horizon: int = typer.Option(48, "--horizon", help="Hours of deferred retries to play out"),
    record: bool = typer.Option(False, "--record", help="Also append submissions to ~/.cadence/submissions.log"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Show debug output"),
) -> None:
    """Run a file of requests through the full governor with a simulated clock."""
    start = now or datetime.now().replace(microsecond=0)
    asyncio.run(_run_simulation(path, start, horizon, verbose, record))


async def _run_simulation(
    path: Path, start: datetime, horizon: int, verbose: bool, record: bool
) -> None:
    from cadence.core.bus import EventBus
    from cadence.core.clock import FixedClock
    from cadence.core.config import CadenceConfig, load_toml
    from cadence.core.events import Event, EventType
    from cadence.governor.engine import SchedulingGovernor
    from cadence.middleware.logging import EventLogger, setup_logging
    from cadence.notifications.base import MemorySink
    from cadence.notifications.file import FileSink
    from cadence.notifications.router import SinkRouter
    from cadence.scheduler.request import NotificationRequest

    clock = FixedClock(start)
    bus = EventBus()
    sink = MemorySink()
    router = SinkRouter()
    router.register(sink)
    if record:
        router.register(FileSink(get_cadence_home() / "submissions.log"))
    late_drops: list[Event] = []

    async def on_dropped(event: Event) -> None:
        late_drops.append(event)

    try:
        config = CadenceConfig.load()
        if verbose:
            setup_logging(config.logging, console_level=logging.DEBUG)
            bus.use(EventLogger.from_config(config.logging).middleware)
        requests = [NotificationRequest.from_dict(d) for d in load_toml(path).get("request", [])]
        governor = SchedulingGovernor.from_config(config, bus=bus, clock=clock, sink=router)
        results = await governor.schedule_batch(requests)
    except CadenceError as e:
        _fail(e)

    table = Table(title=f"Schedule at {start.isoformat()}")
    table.add_column("Identifier")
    table.add_column("Instant")
    table.add_column("State")
    table.add_column("Reason", style="dim")
    for occurrences in results.values():
        for occ in occurrences:
            style = STATE_STYLES.get(occ.state.value, "")
            table.add_row(
                occ.identifier,
                occ.instant.strftime("%Y-%m-%d %H:%M:%S"),
                f"[{style}]{occ.state.value}[/{style}]" if style else occ.state.value,
                occ.reason,
            )
    console.print(table)

    # Play the deferred queue forward
    bus.on(EventType.OCCURRENCE_DROPPED, on_dropped)
    end = start + timedelta(hours=horizon)
    next_retry = await governor.limiter.next_retry()
    while next_retry is not None and next_retry <= end:
        clock.set(max(next_retry, clock.now()))
        await governor.reevaluate()
        next_retry = await governor.limiter.next_retry()

    if sink.submitted:
        console.print()
        console.print(Panel(
            "\n".join(f"{s.instant.strftime('%Y-%m-%d %H:%M:%S')}  {s.identifier}" for s in sink.submitted),
            title="Submitted after retry",
            border_style="green",
        ))
    for event in late_drops:
        console.print(f"[red]dropped[/red] {event.data['identifier']}: {event.data['reason']}")
    remaining = (await governor.limiter.status()).deferred_count
    if remaining:
        console.print(f"[yellow]{remaining} occurrence(s) still deferred past the horizon[/yellow]")


def _parse_scores(text: str) -> dict[int, float]:
    scores: dict[int, float] = {}
    for pair in text.split(","):
        hour, _, score = pair.partition("=")
        try:
            scores[int(hour)] = float(score)
        except ValueError as e:
            raise typer.BadParameter(f"Expected hour=score, got {pair!r}") from e
    return scores


@app.command()
def version() -> None:
    """Show Cadence version."""
    from cadence import __version__
    console.print(f"Cadence v{__version__}")


@app.command()
def logs(
    lines: int = typer.Option(50, "--lines", "-n", help="Number of lines to show"),
    events: bool = typer.Option(False, "--events", "-e", help="Show events log instead"),
) -> None:
    """Show recent logs."""
    from cadence.core.config import CadenceConfig

    try:
        log_dir = CadenceConfig.load().get_log_dir()
    except CadenceError as e:
        _fail(e)
    if not log_dir.exists():
        console.print("[dim]No logs found.[/dim]")
        raise typer.Exit(0)

    date_str = datetime.now().strftime("%Y%m%d")
    if events:
        log_file = log_dir / f"events_{date_str}.jsonl"
    else:
        log_file = log_dir / f"cadence_{date_str}.log"

    if not log_file.exists():
        console.print(f"[dim]No log file for today: {log_file}[/dim]")
        raise typer.Exit(0)

    with open(log_file, "r", encoding="utf-8") as f:
        all_lines = f.readlines()
    for line in all_lines[-lines:]:
        console.print(line.rstrip(), markup=False)


@app.command()
def config() -> None:
    """Show the effective configuration."""
    from cadence.core.config import CadenceConfig

    config_path = get_config_path()
    console.print(Panel("[bold]Cadence Configuration[/bold]", border_style="cyan"))
    console.print()

    console.print(f"[bold]Config file:[/bold] {config_path}")
    if not config_path.exists():
        console.print("[dim]Not found, using defaults[/dim]")
    console.print()

    try:
        effective = CadenceConfig.load()
    except CadenceError as e:
        _fail(e)
    console.print(Panel(
        json.dumps(effective.model_dump(), indent=2, default=str),
        title="effective",
        border_style="dim",
    ))


if __name__ == "__main__":
    app()
