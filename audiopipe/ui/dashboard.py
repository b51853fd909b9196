import logging
import threading
from typing import Optional
from rich.console import Console, Group, RenderableType
from rich.live import Live
from rich.panel import Panel
from rich.progress_bar import ProgressBar
from rich.table import Table
from rich.text import Text
from audiopipe.domain.models import JobState
from audiopipe.ui.progress import ProgressSnapshot, ProgressTracker

STATE_STYLES = {
    JobState.QUEUED: "cyan",
    JobState.RUNNING: "bold blue",
    JobState.RETRYING: "yellow",
    JobState.SUCCEEDED: "green",
    JobState.FAILED: "bold red",
    JobState.SUPERSEDED: "dim",
    JobState.CANCELLED: "magenta",
}


def format_time(seconds: float) -> str:
    seconds = int(max(0, seconds))
    h, rem = divmod(seconds, 3600)
    m, s = divmod(rem, 60)
    if h:
        return f"{h:d}h {m:02d}m"
    return f"{m:02d}m {s:02d}s"


class Dashboard:
    """Live terminal view of a ProgressTracker, refreshed on its own thread."""

    def __init__(
        self,
        tracker: ProgressTracker,
        refresh_per_second: float = 4.0,
        max_active_jobs: int = 8,
        console: Optional[Console] = None,
    ):
        self.tracker = tracker
        self.refresh_per_second = refresh_per_second
        self.max_active_jobs = max_active_jobs
        self.console = console or Console(stderr=True)
        self.logger = logging.getLogger(__name__)
        self._live: Optional[Live] = None
        self._refresh_thread: Optional[threading.Thread] = None
        self._stop_refresh = threading.Event()
        self._ui_lock = threading.Lock()

    def _render_header(self, snap: ProgressSnapshot) -> Text:
        if snap.finished:
            status, style = "FINISHED", "bold green"
        elif snap.shutdown_requested:
            status, style = "SHUTTING DOWN", "bold yellow"
        else:
            status, style = "WATCHING", "bold cyan"
        header = Text()
        header.append(f"{status}", style=style)
        header.append(f"  mode={snap.watch_mode}", style="dim")
        header.append(f"  uptime {format_time(snap.uptime_seconds)}", style="dim")
        header.append(f"  {snap.throughput_per_minute:.1f} files/min", style="bold")
        return header

    def _render_counts(self, snap: ProgressSnapshot) -> Table:
        table = Table.grid(padding=(0, 2))
        row = []
        for state, style in STATE_STYLES.items():
            table.add_column(justify="right")
            row.append(Text(f"{state.value} {snap.counts.get(state, 0)}", style=style))
        table.add_row(*row)
        return table

    def _render_active(self, snap: ProgressSnapshot) -> RenderableType:
        if not snap.active:
            return Text("No active jobs", style="dim")
        table = Table.grid(padding=(0, 1), expand=True)
        table.add_column(ratio=3, no_wrap=True)
        table.add_column(ratio=4)
        table.add_column(justify="right", width=6)
        table.add_column(justify="right", width=4)
        for job in snap.active:
            table.add_row(
                Text(job.name, overflow="ellipsis"),
                ProgressBar(total=1.0, completed=job.progress),
                f"{job.progress * 100:.0f}%",
                f"#{job.attempts}",
            )
        return table

    def _render_footer(self, snap: ProgressSnapshot) -> Text:
        footer = Text()
        footer.append(f"reports delivered {snap.reports_delivered}", style="green")
        footer.append("  ")
        style = "red" if snap.reports_dropped else "dim"
        footer.append(f"dropped {snap.reports_dropped}", style=style)
        return footer

    def create_display(self) -> Panel:
        snap = self.tracker.snapshot(limit=self.max_active_jobs)
        body = Group(
            self._render_header(snap),
            self._render_counts(snap),
            Text(""),
            self._render_active(snap),
            Text(""),
            self._render_footer(snap),
        )
        return Panel(body, title="audiopipe", border_style="blue")

    def _refresh_loop(self):
        interval = 1.0 / self.refresh_per_second
        while not self._stop_refresh.wait(interval):
            if self._live is None:
                continue
            try:
                display = self.create_display()
                with self._ui_lock:
                    self._live.update(display)
            except Exception as e:
                self.logger.debug(f"Dashboard refresh failed: {e}")

    def start(self):
        self._live = Live(
            self.create_display(),
            console=self.console,
            refresh_per_second=self.refresh_per_second,
        )
        self._live.start()
        self._stop_refresh.clear()
        self._refresh_thread = threading.Thread(target=self._refresh_loop, name="dashboard", daemon=True)
        self._refresh_thread.start()
        return self

    def stop(self):
        self._stop_refresh.set()
        if self._refresh_thread:
            self._refresh_thread.join(timeout=1.0)
            self._refresh_thread = None
        if self._live:
            # Final frame shows the FINISHED / SHUTTING DOWN state
            with self._ui_lock:
                self._live.update(self.create_display())
            self._live.stop()
            self._live = None

    def __enter__(self):
        self.start()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.stop()
        return False
