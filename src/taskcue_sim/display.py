"""Rich-based display for taskcue-sim.

This module provides visual output for the simulator using Rich library.
It's decoupled from the simulation logic - it just renders data.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from datetime import datetime

from rich.console import Console
from rich.layout import Layout
from rich.live import Live
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

WEI_PER_UNIT = 10**18


@dataclass
class WorkerStatus:
    """Status of one worker agent for display."""

    name: str
    identity: str
    claims_won: int = 0
    claims_lost: int = 0
    completed: int = 0
    abandoned: int = 0
    active: int = 0
    earned: int = 0
    funds: int = 0
    next_nonce: int | None = None
    resyncs: int = 0
    high_water_mark: int = 0


@dataclass
class EventRecord:
    """A recent event for display."""

    timestamp: datetime
    event_type: str
    task_id: str
    worker: str | None = None
    details: str = ""


@dataclass
class SimulationState:
    """Current state of the simulation for display.

    This is the data contract between the runner and display.
    The runner updates this; the display renders it.
    """

    # Board stats
    submitted: int = 0
    open: int = 0
    claimed: int = 0
    completed: int = 0
    abandoned: int = 0
    lost_races: int = 0
    resyncs: int = 0
    gas_price: int = 0
    block_number: int = 0

    # Timing
    start_time: float = 0.0
    elapsed: float = 0.0

    # Workers
    workers: dict[str, WorkerStatus] = field(default_factory=dict)

    # Recent events (most recent first)
    events: list[EventRecord] = field(default_factory=list)
    max_events: int = 10

    # Config display
    target_count: int = 0
    reward: int = 0
    error_rate: float = 0.0
    scenario_name: str = "contention"

    @property
    def throughput(self) -> float:
        """Tasks completed per second."""
        if self.elapsed > 0:
            return self.completed / self.elapsed
        return 0.0

    @property
    def progress(self) -> float:
        """Fraction settled (0.0 to 1.0)."""
        if self.submitted > 0:
            return (self.completed + self.abandoned) / self.submitted
        return 0.0

    def add_event(self, event_type: str, task_id: str, worker: str | None = None, details: str = "") -> None:
        """Add an event to the display log."""
        self.events.insert(0, EventRecord(
            timestamp=datetime.now(),
            event_type=event_type,
            task_id=task_id,
            worker=worker,
            details=details,
        ))
        if len(self.events) > self.max_events:
            self.events = self.events[:self.max_events]


class SimulatorDisplay:
    """Rich-based TUI display for the simulator.

    Sections:
    - Board stats panel
    - Workers table (wins, losses, earnings, nonce)
    - Recent events log
    - Config footer
    """

    def __init__(self, state: SimulationState, console: Console | None = None):
        self.state = state
        self.console = console or Console()
        self._live: Live | None = None

    def __enter__(self) -> SimulatorDisplay:
        self._live = Live(
            self._build_layout(),
            console=self.console,
            refresh_per_second=10,
            screen=False,
        )
        self._live.__enter__()
        return self

    def __exit__(self, *args) -> None:
        if self._live:
            self._live.__exit__(*args)
            self._live = None

    def refresh(self) -> None:
        """Update the display with current state."""
        if self._live:
            self._live.update(self._build_layout())

    def _build_layout(self) -> Panel:
        s = self.state

        layout = Layout()
        layout.split_column(
            Layout(name="board", size=4),
            Layout(name="workers", size=4 + len(s.workers)),
            Layout(name="events", size=7),
            Layout(name="controls", size=3),
        )
        layout["board"].update(self._build_board_section())
        layout["workers"].update(self._build_workers_section())
        layout["events"].update(self._build_events_section())
        layout["controls"].update(self._build_controls_section())

        return Panel(
            layout,
            title="[bold cyan]taskcue-sim[/bold cyan]",
            border_style="cyan",
        )

    def _build_board_section(self) -> Panel:
        s = self.state

        stats = Table.grid(expand=True, padding=(0, 2))
        for _ in range(4):
            stats.add_column(justify="left")
        stats.add_row(
            f"[dim]Open:[/dim] [bold]{s.open:,}[/bold]",
            f"[dim]Claimed:[/dim] [bold yellow]{s.claimed}[/bold yellow]",
            f"[dim]Completed:[/dim] [bold green]{s.completed:,}[/bold green]",
            f"[dim]Abandoned:[/dim] [bold red]{s.abandoned}[/bold red]",
        )

        stats2 = Table.grid(expand=True, padding=(0, 2))
        for _ in range(4):
            stats2.add_column(justify="left")
        stats2.add_row(
            f"[dim]Lost races:[/dim] [bold magenta]{s.lost_races}[/bold magenta]",
            f"[dim]Progress:[/dim] [bold]{s.progress * 100:.0f}%[/bold]",
            f"[dim]Throughput:[/dim] [bold]{s.throughput:.1f}/s[/bold]",
            f"[dim]Block:[/dim] [bold]{s.block_number}[/bold] "
            f"[dim]gas[/dim] {s.gas_price / 10**9:.2f} gwei",
        )

        content = Table.grid(expand=True)
        content.add_row(stats)
        content.add_row(stats2)
        return Panel(content, title="[bold]Board[/bold]", border_style="blue")

    def _build_workers_section(self) -> Panel:
        s = self.state

        table = Table(box=None, expand=True, padding=(0, 1))
        table.add_column("Worker", width=12)
        table.add_column("Won", justify="right")
        table.add_column("Lost", justify="right")
        table.add_column("Done", justify="right")
        table.add_column("Held", justify="right")
        table.add_column("Earned", justify="right")
        table.add_column("Funds", justify="right")
        table.add_column("Nonce", justify="right")
        table.add_column("Resyncs", justify="right")

        for worker in s.workers.values():
            funds_style = "red" if worker.funds < 10**16 else "white"
            table.add_row(
                f"[bold]{worker.name}[/bold]",
                f"[green]{worker.claims_won}[/green]",
                f"[magenta]{worker.claims_lost}[/magenta]",
                str(worker.completed),
                f"[yellow]{worker.active}[/yellow]" if worker.active else "0",
                f"{worker.earned / WEI_PER_UNIT:.4f}",
                f"[{funds_style}]{worker.funds / WEI_PER_UNIT:.4f}[/{funds_style}]",
                "-" if worker.next_nonce is None else str(worker.next_nonce),
                str(worker.resyncs),
            )

        if not s.workers:
            table.add_row("[dim]No workers[/dim]", "", "", "", "", "", "", "", "")

        return Panel(table, title="[bold]Workers[/bold]", border_style="blue")

    def _build_events_section(self) -> Panel:
        s = self.state

        table = Table(box=None, expand=True, padding=(0, 1), show_header=False)
        table.add_column("Time", width=10, style="dim")
        table.add_column("Event", width=12)
        table.add_column("Task", width=6)
        table.add_column("Worker", width=12)
        table.add_column("Details")

        event_styles = {
            "completed": "green",
            "abandoned": "red",
            "claimed": "yellow",
            "lost_race": "magenta",
            "submitted": "dim",
            "gas": "cyan",
        }
        for event in s.events[:5]:
            style = event_styles.get(event.event_type, "white")
            table.add_row(
                event.timestamp.strftime("%H:%M:%S"),
                f"[{style}]{event.event_type}[/{style}]",
                event.task_id,
                event.worker or "",
                event.details[:40] if event.details else "",
            )

        if not s.events:
            table.add_row("[dim]No events yet[/dim]", "", "", "", "")

        return Panel(table, title="[bold]Recent Events[/bold]", border_style="blue")

    def _build_controls_section(self) -> Panel:
        s = self.state

        text = Text()
        text.append("Scenario: ", style="dim")
        text.append(s.scenario_name, style="bold")
        text.append("  Reward: ", style="dim")
        text.append(f"{s.reward / WEI_PER_UNIT:g}", style="bold")
        text.append("  Error: ", style="dim")
        text.append(f"{s.error_rate * 100:.0f}%", style="bold red" if s.error_rate > 0 else "bold")
        text.append("  Target: ", style="dim")
        text.append(f"{s.target_count:,}", style="bold")
        text.append("    Ctrl+C to stop", style="dim")

        return Panel(text, title="[bold]Config[/bold]", border_style="dim")


def print_simple_stats(state: SimulationState) -> None:
    """Print a one-line progress update."""
    s = state
    done = s.completed + s.abandoned
    pct = (done / s.submitted * 100) if s.submitted > 0 else 0

    print(
        f"\r[{done}/{s.submitted}] "
        f"open:{s.open} held:{s.claimed} ok:{s.completed} abandoned:{s.abandoned} "
        f"lost:{s.lost_races} ({pct:.0f}%) {s.throughput:.1f}/s"
        f"  t={time.time() - s.start_time:.1f}s",
        end="",
        flush=True,
    )
