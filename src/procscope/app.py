"""procscope terminal viewer (Textual)."""

from enum import Enum

import psutil
from textual.app import App, ComposeResult
from textual.containers import Container, Horizontal
from textual.widgets import DataTable, Footer, Static

from procscope.collectors import KillResult, send_kill_signal
from procscope.config import Settings
from procscope.models import ProcessSample, Snapshot
from procscope.pipeline import RefreshPipeline, RefreshScheduler
from procscope.push import PushHub, Subscription
from procscope.server import build_pipeline


class SortKey(Enum):
    """Sort keys for the process table."""

    SCORE = "score"
    CPU = "cpu"
    MEM = "mem"
    PID = "pid"
    USER = "user"


def format_mb(size_mb: float) -> str:
    """Format a size given in MiB as a human-readable string."""
    if size_mb < 1024:
        return f"{size_mb:6.1f}M"
    return f"{size_mb / 1024:6.2f}G"


def relative_cpu(cpu_percent: float, cores: int) -> float:
    """CPU% normalised to a single 0-100 scale across all cores."""
    return cpu_percent / max(1, cores)


def _bar(percent: float, colour: str) -> str:
    filled = min(int(percent / 5), 20)
    return f"[{colour}]█[/{colour}]" * filled + "[dim]░[/dim]" * (20 - filled)


class HeaderStats(Static):
    """Header widget showing host statistics and refresh counters."""

    DEFAULT_CSS = """
    HeaderStats {
        height: auto;
        min-height: 5;
        padding: 1;
        background: $surface;
    }
    """

    def __init__(self, *args, **kwargs) -> None:
        super().__init__(*args, **kwargs)
        self._snapshot: Snapshot | None = None

    def compose(self) -> ComposeResult:
        yield Horizontal(
            Static(self._get_host_info(), id="host-info"),
            Static(self._get_count_info(), id="count-info"),
        )

    def update_stats(self, snapshot: Snapshot) -> None:
        self._snapshot = snapshot
        try:
            self.query_one("#host-info", Static).update(self._get_host_info())
            self.query_one("#count-info", Static).update(self._get_count_info())
        except Exception:
            pass  # Widget not mounted yet

    def _get_host_info(self) -> str:
        if self._snapshot is None or self._snapshot.cycle == 0:
            return "Waiting for first refresh..."
        stats = self._snapshot.system_stats
        net_mb = stats.network_counter / (1024 * 1024)
        return (
            f"CPU \\[{_bar(stats.cpu_percent, 'green')}] {stats.cpu_percent:5.1f}%\n"
            f"Mem \\[{_bar(stats.memory_percent, 'cyan')}] {stats.memory_percent:5.1f}%\n"
            f"Dsk \\[{_bar(stats.disk_percent, 'yellow')}] {stats.disk_percent:5.1f}%\n"
            f"Net received: {net_mb:.1f}M"
        )

    def _get_count_info(self) -> str:
        if self._snapshot is None:
            return ""
        snap = self._snapshot
        return (
            f"Processes: {snap.monitored_processes} monitored / {snap.total_processes} listed\n"
            f"Anomalies: [red]{len(snap.anomalies)}[/red]\n"
            f"Refresh cycle: {snap.cycle}\n"
            f"Captured: {snap.system_stats.captured_at:%H:%M:%S}"
        )


class ProcessTable(Container):
    """Container for the process data table."""

    DEFAULT_CSS = """
    ProcessTable {
        height: 1fr;
        border: solid $primary;
    }
    """

    def __init__(self, cores: int = 1, *args, **kwargs) -> None:
        super().__init__(*args, **kwargs)
        self._cores = cores
        self._current_pids: set[int] = set()
        self._sort_key: SortKey = SortKey.SCORE
        self._sort_reverse: bool = True

    @property
    def sort_key(self) -> SortKey:
        return self._sort_key

    def cycle_sort(self) -> SortKey:
        """Cycle to the next sort key and return it."""
        keys = list(SortKey)
        self._sort_key = keys[(keys.index(self._sort_key) + 1) % len(keys)]
        self._sort_reverse = self._sort_key in (SortKey.SCORE, SortKey.CPU, SortKey.MEM)
        return self._sort_key

    def compose(self) -> ComposeResult:
        yield DataTable(id="process-table")

    def on_mount(self) -> None:
        table = self.query_one("#process-table", DataTable)
        table.cursor_type = "row"
        table.add_column("PID", key="pid", width=8)
        table.add_column("USER", key="user", width=10)
        table.add_column("NI", key="nice", width=4)
        table.add_column("S", key="status", width=9)
        table.add_column("CPU%", key="cpu", width=7)
        table.add_column("CORE%", key="core", width=7)
        table.add_column("MEM", key="mem", width=9)
        table.add_column("SCORE", key="score", width=6)
        table.add_column("!", key="anomaly", width=2)
        table.add_column("Command", key="command")

    @property
    def selected_pid(self) -> int | None:
        """PID of the row under the cursor, if any."""
        table = self.query_one("#process-table", DataTable)
        if table.row_count == 0:
            return None
        try:
            row_key = table.coordinate_to_cell_key(table.cursor_coordinate).row_key
        except Exception:
            return None
        return int(row_key.value) if row_key.value is not None else None

    def update_processes(self, processes: list[ProcessSample]) -> None:
        """
        Replace the table contents with a new snapshot's processes.

        The table is rebuilt in sorted order; the cursor stays on the same
        PID when that process is still present.
        """
        table = self.query_one("#process-table", DataTable)
        selected = self.selected_pid
        table.clear()
        ordered = self._sort_processes(processes)
        for proc in ordered:
            table.add_row(*self._cells(proc), key=str(proc.pid))
        self._current_pids = {proc.pid for proc in ordered}
        if selected in self._current_pids:
            table.move_cursor(row=table.get_row_index(str(selected)))

    def _cells(self, proc: ProcessSample) -> tuple[str, ...]:
        return (
            str(proc.pid),
            proc.user[:10],
            str(proc.priority),
            proc.status[:9],
            f"{proc.cpu_percent:5.1f}",
            f"{relative_cpu(proc.cpu_percent, self._cores):5.1f}",
            format_mb(proc.memory_mb),
            f"{proc.anomaly_score:.2f}",
            "[red]●[/red]" if proc.anomaly else "",
            proc.command[:60],
        )

    def _sort_processes(self, processes: list[ProcessSample]) -> list[ProcessSample]:
        key_func = {
            SortKey.SCORE: lambda p: p.anomaly_score,
            SortKey.CPU: lambda p: p.cpu_percent,
            SortKey.MEM: lambda p: p.memory_mb,
            SortKey.PID: lambda p: p.pid,
            SortKey.USER: lambda p: p.user.lower(),
        }
        return sorted(processes, key=key_func[self._sort_key], reverse=self._sort_reverse)


class ProcscopeApp(App):
    """Terminal viewer fed by an in-process push subscription."""

    TITLE = "procscope"
    SUB_TITLE = "Process anomaly monitor"

    CSS = """
    Screen {
        layout: vertical;
    }

    #header-stats {
        dock: top;
        height: auto;
        min-height: 6;
    }

    Horizontal {
        height: auto;
    }

    #host-info {
        width: 1fr;
        padding-right: 2;
    }

    #count-info {
        width: 1fr;
        padding-left: 2;
    }
    """

    BINDINGS = [
        ("q", "quit", "Quit"),
        ("f6", "sort", "Sort"),
        ("r", "refresh", "Refresh"),
        ("k", "kill", "Kill"),
    ]

    def __init__(
        self,
        settings: Settings | None = None,
        pipeline: RefreshPipeline | None = None,
        kill=send_kill_signal,
    ) -> None:
        super().__init__()
        self._settings = settings or Settings()
        self._pipeline = pipeline or build_pipeline(self._settings)
        self._scheduler = RefreshScheduler(self._pipeline, self._settings.refresh_interval or 2.0)
        self._hub = PushHub(self._pipeline.store, interval=self._settings.push_interval)
        self._subscription: Subscription | None = None
        self._kill = kill
        self._cores = psutil.cpu_count() or 1

    def compose(self) -> ComposeResult:
        yield HeaderStats(id="header-stats")
        yield ProcessTable(cores=self._cores)
        yield Footer()

    def on_mount(self) -> None:
        self._scheduler.start()
        self._subscription = self._hub.subscribe(self._on_push, name="terminal")
        self._update_ui(self._pipeline.store.read_current())

    async def on_unmount(self) -> None:
        self._scheduler.stop()
        await self._hub.close()
        self._pipeline.close()
        self._pipeline.store.close()

    async def _on_push(self, snapshot: Snapshot) -> None:
        self._update_ui(snapshot)

    def _update_ui(self, snapshot: Snapshot) -> None:
        try:
            self.query_one("#header-stats", HeaderStats).update_stats(snapshot)
            self.query_one(ProcessTable).update_processes(list(snapshot.processes))
        except Exception:
            pass  # Screen is being torn down

    def action_sort(self) -> None:
        key = self.query_one(ProcessTable).cycle_sort()
        self._update_ui(self._pipeline.store.read_current())
        self.notify(f"Sort: {key.value.upper()}")

    def action_refresh(self) -> None:
        self.run_worker(self._pipeline.refresh, thread=True, exclusive=True)

    def action_kill(self) -> None:
        pid = self.query_one(ProcessTable).selected_pid
        if pid is None:
            return
        result: KillResult = self._kill(pid)
        if result.success:
            self.notify(result.message)
        else:
            self.notify(result.error, severity="error")

    def action_quit(self) -> None:
        self._scheduler.stop()
        self.exit()


def main(settings: Settings | None = None) -> None:
    ProcscopeApp(settings).run()
