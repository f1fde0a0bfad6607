"""Report writers: where a synthesized report goes.

Each writer receives the same SynthesisReport plus the run it came from.
A failing writer is logged by the orchestrator and does not stop the others.
"""

from datetime import UTC, datetime
from pathlib import Path
from typing import Any, Protocol

from rich.console import Console
from rich.markup import escape
from rich.table import Table

from agentaudit import __version__
from agentaudit.pipeline.structures import PipelineRun
from agentaudit.pipeline.synthesis import SynthesisReport
from agentaudit.utils.constants import REPORT_FILE_NAME
from agentaudit.utils.helpers import load_json_file, save_json_file
from agentaudit.utils.logging import get_request_id


class ReportWriter(Protocol):
    """Output target for a synthesized report."""

    name: str

    def write(self, report: SynthesisReport, run: PipelineRun) -> str | None:
        """Emit the report. Returns the persisted location, if any."""
        ...


def report_envelope(report: SynthesisReport, run: PipelineRun) -> dict[str, Any]:
    return {
        "tool": "agentaudit",
        "version": __version__,
        "generated_at": datetime.now(UTC).isoformat(),
        "request_id": get_request_id(),
        "run": run.to_dict(),
        "report": report.to_dict(),
    }


def load_report(path: Path | str) -> SynthesisReport:
    """Read back a report written by JsonReportWriter.

    Raises:
        OSError, ValueError, KeyError: missing or malformed report file.
    """
    data = load_json_file(path)
    if not isinstance(data, dict) or "report" not in data:
        raise ValueError(f"{path} is not an agentaudit report")
    return SynthesisReport.from_dict(data["report"])


class JsonReportWriter:
    """Writes <run_dir>/report.json and mirrors it to the latest-report path."""

    name = "json"

    def __init__(self, latest_path: Path | str | None = None):
        self.latest_path = Path(latest_path) if latest_path else None

    def write(self, report: SynthesisReport, run: PipelineRun) -> str | None:
        if run.run_dir is None:
            return None
        envelope = report_envelope(report, run)
        target = run.run_dir / REPORT_FILE_NAME
        save_json_file(envelope, target)
        if self.latest_path is not None:
            save_json_file(envelope, self.latest_path)
        return target.as_posix()


class ConsoleReportWriter:
    """Renders the report as Rich tables."""

    name = "console"

    def __init__(self, console: Console | None = None, max_issues: int = 20):
        if console is None:
            from agentaudit.pipeline.ui import console as shared_console
            console = shared_console
        self.console = console
        self.max_issues = max_issues

    def write(self, report: SynthesisReport, run: PipelineRun) -> str | None:
        c = self.console
        c.rule(f"[bold]AUDIT REPORT {run.run_id}[/bold]")

        verdict = report.verdict.value
        component_score = "-" if report.component_score is None else f"{report.component_score:.2f}"
        c.print(
            f"Composite score: [{verdict}]{report.composite_score:.2f}/10 ({verdict})[/{verdict}]  "
            f"components {component_score}  graph {report.graph_score:.2f}"
        )

        table = Table(title="Components", expand=False)
        table.add_column("Component", style="cyan", no_wrap=True)
        table.add_column("Score", justify="right", width=7)
        table.add_column("Verdict", width=12)
        table.add_column("Findings", justify="right", width=8)
        for row in report.components:
            score = "-" if row["score"] is None else f"{row['score']:.2f}"
            row_verdict = row["verdict"] or "-"
            style = row_verdict if row_verdict in ("excellent", "good", "needs_work", "poor") else "dim"
            table.add_row(escape(row["id"]), score, f"[{style}]{row_verdict}[/{style}]", str(len(row["findings"])))
        c.print(table)

        health = report.graph.get("health", {})
        if health:
            c.print(
                f"Graph: {health.get('cycle_count', 0)} cycles, "
                f"{health.get('orphan_count', 0)} orphans, "
                f"{health.get('broken_link_count', 0)} broken links, "
                f"max depth {health.get('max_depth', 0)}"
            )

        if report.issues:
            c.print(f"\n[bold]Issues[/bold] ({len(report.issues)})")
            for issue in report.issues[: self.max_issues]:
                sev = issue["severity"]
                c.print(f"  [{sev}]{sev.upper():<6}[/{sev}] {escape(issue['component'])}: {escape(issue['message'])}")
            if len(report.issues) > self.max_issues:
                c.print(f"  [dim]... {len(report.issues) - self.max_issues} more in report.json[/dim]")

        for note in report.notes:
            c.print(f"[warning]{escape(note)}[/warning]")
        return None
