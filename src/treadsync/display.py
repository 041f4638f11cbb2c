"""
Display manager for Rich-based REPL output and live updates.

Handles all console output including the readings table, the daily
session summary, and the toggle-able live view.
"""

import logging
from typing import Optional

from rich.console import Console
from rich.live import Live
from rich.panel import Panel
from rich.table import Table

from .core import METERS_PER_MILE, MPS_PER_MPH
from .link import ConnectionState
from .protocol import SampleFrame
from .session import DailySession

logger = logging.getLogger(__name__)


class DisplayManager:
    """Manages console output with Rich library."""

    def __init__(self, console: Optional[Console] = None):
        """Initialize display manager.

        Args:
            console: Rich Console instance (creates one if None)
        """
        self.console = console or Console()
        self.live_enabled = False
        self._live: Optional[Live] = None
        self._live_state = ConnectionState.disconnected()
        self._live_sample = SampleFrame()

    def print_banner(self) -> None:
        """Print startup banner."""
        panel = Panel(
            "[bold cyan]TreadSync - LifeSpan Daily Steps[/bold cyan]\n"
            "[dim]Type 'help' for commands, 'quit' to exit[/dim]",
            expand=False,
        )
        self.console.print(panel)

    def print_status(self, state: ConnectionState, sample: SampleFrame) -> None:
        """Display one-time link state and readings table."""
        self.console.print(self.format_status_table(state, sample))

    def print_session(self, session: DailySession) -> None:
        """Display today's totals and the recorded segments."""
        totals = Table(title="Today's Session", show_header=True, header_style="bold cyan")
        totals.add_column("Metric", style="cyan")
        totals.add_column("Value", style="yellow")
        totals.add_row("Started", f"{session.start_date:%Y-%m-%d %H:%M}")
        totals.add_row(
            "Last update",
            f"{session.last_updated:%H:%M:%S}" if session.last_updated else "--",
        )
        totals.add_row("Duration", self.format_duration(session))
        totals.add_row("Steps", f"{session.total_steps:,}")
        totals.add_row("Distance", self.format_distance(session.total_distance))
        totals.add_row("Calories", self.format_energy(session.total_calories))
        self.console.print(totals)

        if not session.segments:
            self.console.print("[dim]No activity segments recorded yet[/dim]")
            return

        segments = Table(title="Activity Segments", show_header=True)
        segments.add_column("#", style="dim")
        segments.add_column("Start", style="cyan")
        segments.add_column("End", style="cyan")
        segments.add_column("Steps", style="yellow", justify="right")
        segments.add_column("Distance", style="yellow", justify="right")
        segments.add_column("Calories", style="yellow", justify="right")
        segments.add_column("Avg speed", style="magenta", justify="right")
        for index, segment in enumerate(session.segments, start=1):
            segments.add_row(
                str(index),
                f"{segment.start_time:%H:%M}",
                f"{segment.end_time:%H:%M}",
                f"{segment.steps:,}",
                self.format_distance(segment.distance),
                self.format_energy(segment.calories),
                self.format_speed(segment.avg_speed) if segment.avg_speed else "-",
            )
        self.console.print(segments)

    def print_error(self, message: str) -> None:
        """Print red error message."""
        self.console.print(f"[red]Error:[/red] {message}", highlight=False)

    def print_info(self, message: str) -> None:
        """Print blue info message."""
        self.console.print(f"[cyan]Info:[/cyan] {message}", highlight=False)

    def print_help(self, commands: list) -> None:
        """Display command reference.

        Args:
            commands: List of Command objects
        """
        table = Table(title="Available Commands", show_header=True)
        table.add_column("Command", style="cyan")
        table.add_column("Aliases", style="magenta")
        table.add_column("Description", style="white")
        table.add_column("Usage", style="yellow")

        for cmd in commands:
            aliases = ", ".join(cmd.aliases) if cmd.aliases else "-"
            table.add_row(cmd.name, aliases, cmd.description, cmd.usage)

        self.console.print(table)
        self.console.print(
            "[dim]Keyboard shortcuts: Ctrl+C to interrupt, Ctrl+D to exit[/dim]"
        )

    def start_live(self) -> None:
        """Start live display refresh mode."""
        if self.live_enabled:
            return

        self.live_enabled = True
        renderable = self.format_status_table(self._live_state, self._live_sample)
        self._live = Live(renderable, console=self.console, refresh_per_second=2)
        self._live.start()
        self.console.print("[dim]Live display enabled ['live' to disable][/dim]")

    def stop_live(self) -> None:
        """Stop live display refresh mode."""
        if not self.live_enabled:
            return

        self.live_enabled = False
        if self._live is not None:
            self._live.stop()
            self._live = None

    def update_live(
        self,
        state: Optional[ConnectionState] = None,
        sample: Optional[SampleFrame] = None,
    ) -> None:
        """Update live display with a new state and/or sample."""
        if state is not None:
            self._live_state = state
        if sample is not None:
            self._live_sample = sample

        if not self.live_enabled or self._live is None:
            return

        try:
            self._live.update(
                self.format_status_table(self._live_state, self._live_sample)
            )
        except Exception as e:
            logger.error(f"Live update error: {e}")

    def toggle_live(self) -> bool:
        """Toggle live display on/off.

        Returns:
            New live display state (True = on, False = off)
        """
        if self.live_enabled:
            self.stop_live()
        else:
            self.start_live()
        return self.live_enabled

    def format_status_table(self, state: ConnectionState, sample: SampleFrame) -> Table:
        """Create Rich Table for the link state and latest readings."""
        table = Table(show_header=True, header_style="bold cyan")
        table.add_column("Metric", style="cyan")
        table.add_column("Value", style="yellow")

        table.add_row("Status", str(state))
        table.add_row(
            "Speed", self.format_speed(sample.speed) if sample.speed is not None else "-"
        )
        table.add_row(
            "Distance",
            self.format_distance(sample.distance) if sample.distance is not None else "-",
        )
        table.add_row("Time", str(sample.time) if sample.time else "-")
        table.add_row("Steps", f"{sample.steps:,}" if sample.steps is not None else "-")
        table.add_row(
            "Calories",
            self.format_energy(sample.calories) if sample.calories is not None else "-",
        )

        return table

    @staticmethod
    def format_duration(session: DailySession) -> str:
        """Format session length as '1h 05m' or '12m'."""
        duration = session.duration
        if duration is None:
            return "--"
        total_minutes = int(duration.total_seconds()) // 60
        hours, minutes = divmod(total_minutes, 60)
        if hours > 0:
            return f"{hours}h {minutes:02d}m"
        return f"{minutes}m"

    @staticmethod
    def format_speed(mps: float) -> str:
        """Format a speed in m/s as mph."""
        return f"{mps / MPS_PER_MPH:.1f} mph"

    @staticmethod
    def format_distance(meters: float) -> str:
        """Format a distance in meters as miles."""
        return f"{meters / METERS_PER_MILE:.2f} mi"

    @staticmethod
    def format_energy(kcal: int) -> str:
        """Format energy value."""
        return f"{kcal} kcal"
