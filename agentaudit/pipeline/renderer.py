"""Rich-based pipeline renderer with a live stage table."""
import sys
import time
from pathlib import Path
from typing import TextIO

from rich.console import Console, ConsoleOptions, RenderResult
from rich.live import Live
from rich.table import Table

from agentaudit.events import PipelineObserver
from .ui import AUDIT_THEME


class DynamicTable:
    """Wrapper that builds a fresh table on each Rich render cycle.

    Rich calls __rich_console__ on each refresh (4x/second), so elapsed
    times for running stages tick without explicit updates.
    """

    def __init__(self, renderer: "RichRenderer"):
        self.renderer = renderer

    def __rich_console__(self, console: Console, options: ConsoleOptions) -> RenderResult:
        yield self.renderer._build_live_table()


class RichRenderer(PipelineObserver):
    """Live dashboard using Rich library.

    One row per stage; component analysis additionally shows a running
    done/failed count as units complete.
    """

    def __init__(self, quiet: bool = False, log_file: Path | None = None):
        self.quiet = quiet
        self.log_file: TextIO | None = None
        if log_file:
            log_file.parent.mkdir(parents=True, exist_ok=True)
            self.log_file = open(log_file, 'w', encoding='utf-8', buffering=1)

        self.is_tty = sys.stdout.isatty()
        self.console = Console(theme=AUDIT_THEME, force_terminal=self.is_tty)

        self._stages: dict[str, dict] = {}
        self._unit_counts: dict[str, int] = {"done": 0, "failed": 0, "timedOut": 0}
        self._run_label = ""

        self._live: Live | None = None

    def _build_live_table(self) -> Table:
        """Build fresh table with current elapsed times (called on each refresh)."""
        table = Table(title=f"Audit Progress {self._run_label}".strip(), expand=True)
        table.add_column("Stage", style="cyan", no_wrap=True)
        table.add_column("Status", style="green", width=12)
        table.add_column("Units", justify="right", width=16)
        table.add_column("Time", justify="right", width=8)

        now = time.time()
        for name, info in self._stages.items():
            status = info.get('status', 'pending')

            if status == "running":
                time_str = f"{now - info.get('start_time', now):.1f}s"
            elif info.get('elapsed', 0) > 0:
                time_str = f"{info['elapsed']:.1f}s"
            else:
                time_str = "-"

            units = ""
            if name == "Component Analysis":
                c = self._unit_counts
                units = f"{c['done']} ok / {c['failed'] + c['timedOut']} err"

            table.add_row(name, status, units, time_str)

        return table

    def _write(self, text: str, is_error: bool = False):
        """Central output handler."""
        if self.quiet and not is_error:
            return

        if self.log_file:
            self.log_file.write(text + "\n")
            self.log_file.flush()

        if self._live:
            # Print above the table; the table stays pinned at the bottom
            style = "bold red" if is_error else None
            self._live.console.print(text, style=style, markup=False)
        else:
            print(text, file=sys.stderr if is_error else sys.stdout, flush=True)

    def start(self):
        """Start the live display (call before the pipeline runs)."""
        if self.is_tty and not self.quiet:
            self._live = Live(DynamicTable(self), refresh_per_second=4, console=self.console)
            self._live.__enter__()

    def stop(self):
        """Stop the live display (call after the pipeline completes)."""
        if self._live:
            self._live.__exit__(None, None, None)
            self._live = None
        if self.log_file:
            self.log_file.close()
            self.log_file = None

    # PipelineObserver implementation

    def on_run_start(self, run_id: str, mode: str) -> None:
        self._run_label = f"[{run_id} {mode}]"
        self._stages.clear()
        self._unit_counts = {"done": 0, "failed": 0, "timedOut": 0}
        if not self._live:
            self._write(f"[RUN] {run_id} ({mode})")

    def on_stage_start(self, name: str, index: int, total: int) -> None:
        self._stages[name] = {'status': 'running', 'start_time': time.time()}
        if not self._live:
            self._write(f"\n[Stage {index}/{total}] {name}")

    def on_stage_complete(self, name: str, elapsed: float) -> None:
        self._stages[name] = {'status': 'done', 'elapsed': elapsed}
        if not self._live:
            self._write(f"[OK] {name} completed in {elapsed:.1f}s")

    def on_stage_skipped(self, name: str, reason: str) -> None:
        self._stages[name] = {'status': 'skipped', 'elapsed': 0}
        if not self._live:
            self._write(f"[SKIP] {name}: {reason}")

    def on_stage_failed(self, name: str, error: str) -> None:
        self._stages[name] = {'status': 'FAILED', 'elapsed': 0}
        self._write(f"[FAILED] {name}", is_error=True)
        if error:
            truncated = error[:200] + "..." if len(error) > 200 else error
            self._write(f"  Error: {truncated}", is_error=True)

    def on_unit_complete(self, unit_id: str, status: str, elapsed: float, detail: str = "") -> None:
        if status in self._unit_counts:
            self._unit_counts[status] += 1
        if status != "done":
            self._write(f"  [{status}] {unit_id}: {detail}", is_error=True)
        elif not self._live:
            self._write(f"  [done] {unit_id} ({elapsed:.1f}s) {detail}".rstrip())

    def on_log(self, message: str, is_error: bool = False) -> None:
        self._write(str(message) if message else "", is_error=is_error)
