"""Run the audit pipeline once."""

import json
import sys
from pathlib import Path

import click

from agentaudit.cache.run_cache import CacheDiff
from agentaudit.config_runtime import resolve_output_paths
from agentaudit.ledger import ProgressLedger
from agentaudit.pipeline.cancellation import (
    CancellationToken,
    install_signal_handlers,
    restore_signal_handlers,
)
from agentaudit.pipeline.orchestrator import AuditOrchestrator
from agentaudit.pipeline.structures import (
    PipelineOptions,
    RunMode,
    RunOutcome,
    RunResult,
    UnchangedDecision,
)
from agentaudit.pipeline.ui import console, print_error, print_status_panel, print_warning
from agentaudit.reporting import ConsoleReportWriter, JsonReportWriter
from agentaudit.retention import list_run_dirs
from agentaudit.utils.error_handler import handle_exceptions
from agentaudit.utils.exit_codes import ExitCodes
from agentaudit.utils.logging import logger

from ._common import live_display, load_config, make_observer, resolve_scope, scope_options, start_file_logging

FINISHED_STATUSES = {"completed", "completed_with_failures", "aborted"}


def find_resumable_ledger(runs_dir: Path) -> Path | None:
    """Newest run whose ledger did not reach a finished status."""
    for run_dir in reversed(list_run_dirs(runs_dir)):
        try:
            ledger = ProgressLedger.load(run_dir)
        except (OSError, ValueError):
            continue
        if ledger.metadata.get("status") not in FINISHED_STATUSES:
            return ledger.path
    return None


def ask_unchanged(diff: CacheDiff) -> UnchangedDecision:
    """Interactive decision point for an incremental run with nothing changed."""
    choice = click.prompt(
        f"No changes in {len(diff.unchanged)} components since the last run. Reuse, rerun or abort?",
        type=click.Choice([d.value for d in UnchangedDecision]),
        default=UnchangedDecision.REUSE.value,
    )
    return UnchangedDecision(choice)


def print_run_panel(result: RunResult) -> None:
    report = result.report
    score = f"{report.composite_score:.2f}/10 ({report.verdict.value})" if report else "n/a"
    location = result.run.outputs.get("json") or (str(result.run.run_dir) if result.run.run_dir else "-")

    if result.cancelled:
        print_status_panel(
            "CANCELLED",
            f"Run stopped early. Partial score: {score}",
            f"Ledger: {result.run.ledger_path}",
            level="medium",
        )
    elif result.outcome is RunOutcome.ABORTED:
        print_status_panel("ABORTED", result.error or "Run aborted", f"Run: {result.run.run_id}", level="high")
    elif result.outcome is RunOutcome.COMPLETED_WITH_FAILURES:
        failed = ", ".join(f.unit_id for f in result.failures[:3])
        more = f" (+{len(result.failures) - 3} more)" if len(result.failures) > 3 else ""
        print_status_panel(
            "INCOMPLETE",
            f"Score {score}. {len(result.failures)} unit(s) failed: {failed}{more}",
            f"Report: {location}. Re-run with --resume to retry failed units.",
            level="medium",
        )
    else:
        detail = "Reused cached report - nothing changed." if result.reused_cached_report else f"Report: {location}"
        print_status_panel("CLEAN", f"Audit complete. Score {score}", detail, level="success")

    if result.ledger_error:
        print_warning(f"Ledger not persisted ({result.ledger_error}); resume unavailable.")


@click.command("run")
@handle_exceptions
@scope_options
@click.option(
    "--mode",
    type=click.Choice([RunMode.FULL.value, RunMode.INCREMENTAL.value]),
    default=RunMode.INCREMENTAL.value,
    show_default=True,
    help="full re-analyzes everything; incremental only what changed",
)
@click.option(
    "--resume",
    is_flag=False,
    flag_value="latest",
    default=None,
    metavar="[LEDGER]",
    help="Resume an interrupted run (its ledger.md or run directory; newest unfinished if omitted)",
)
@click.option("--dry-run", is_flag=True, help="Discover and diff only; show what would be analyzed")
@click.option(
    "--on-unchanged",
    type=click.Choice([d.value for d in UnchangedDecision] + ["ask"]),
    default=None,
    help="What to do when an incremental run finds nothing changed (default: reuse)",
)
@click.option("--json", "as_json", is_flag=True, help="Print the run result as JSON")
def run(roots, kinds, layout_file, workers, timeout, quiet, mode, resume, dry_run, on_unchanged, as_json):
    """Audit agent configuration components and their dependency graph.

    Discovers commands, agents, skills, hooks and MCP servers under each ROOT
    (default: current directory), analyzes them concurrently, builds the
    reference graph and writes a composite report.

    \b
    Examples:
      agentaudit run                       # incremental run over ./
      agentaudit run .claude --mode full   # re-analyze everything
      agentaudit run --kind agent --dry-run
      agentaudit run --resume              # continue the last interrupted run

    \b
    Output Files:
      .agentaudit/runs/<run_id>/ledger.md     Progress ledger (resumable)
      .agentaudit/runs/<run_id>/report.json   Composite report
      .agentaudit/latest_report.json          Copy of the newest report
      .agentaudit/cache.json                  Incremental cache

    \b
    Exit Codes:
      0 = every unit completed
      1 = completed, some units failed or timed out
      2 = aborted (discovery error, or aborted on no changes)
      3 = resume ledger missing or unreadable
      130 = cancelled"""
    cfg = load_config(layout_file)
    roots, kind_list, explicit = resolve_scope(roots, kinds)

    ledger = None
    if resume:
        runs_dir = resolve_output_paths(cfg)["runs_dir"]
        ledger_path = find_resumable_ledger(runs_dir) if resume == "latest" else Path(resume)
        if ledger_path is None:
            print_error("No unfinished run to resume.")
            sys.exit(ExitCodes.TASK_INCOMPLETE)
        try:
            ledger = ProgressLedger.load(ledger_path)
        except (OSError, ValueError) as e:
            print_error(f"Cannot resume from {ledger_path}: {e}")
            sys.exit(ExitCodes.TASK_INCOMPLETE)
        roots = [Path(p) for p in ledger.metadata.get("target") or ["."]]
        kind_list = list(ledger.metadata.get("kinds") or [])
        mode = ledger.metadata.get("mode", mode)
        explicit = True
        logger.info(f"Resuming run {ledger.run_id} from {ledger.path}")

    decide = ask_unchanged if on_unchanged == "ask" else None
    options = PipelineOptions.from_config(
        cfg,
        roots,
        kind_list,
        mode=RunMode(mode),
        dry_run=dry_run,
        explicit_scope=explicit,
        max_workers=workers,
        unit_timeout=timeout,
        on_unchanged=UnchangedDecision(on_unchanged) if on_unchanged and on_unchanged != "ask" else None,
    )

    observer = make_observer(quiet or as_json)
    orchestrator = AuditOrchestrator(
        options,
        writers=[JsonReportWriter(options.latest_report)],
        observer=observer,
        decide_unchanged=decide,
    )
    token = CancellationToken()
    log_handler = start_file_logging(cfg)
    previous_handlers = install_signal_handlers(token)
    try:
        with live_display(observer):
            result = orchestrator.run_sync(token=token, ledger=ledger)
    finally:
        restore_signal_handlers(previous_handlers)
        if log_handler is not None:
            logger.remove(log_handler)

    if as_json:
        click.echo(json.dumps(result.to_dict(), indent=2, default=str))
    elif dry_run:
        console.print(f"[bold]Dry run[/bold]: {len(result.components)} components discovered")
        if result.diff is not None:
            d = result.diff
            console.print(
                f"  changed {len(d.changed)}, new {len(d.new)}, unchanged {len(d.unchanged)}, deleted {len(d.deleted)}"
            )
        console.print(f"  would dispatch {len(result.dispatched)} unit(s):")
        for unit_id in result.dispatched:
            console.print(f"    [cyan]{unit_id}[/cyan]")
    elif not quiet:
        if result.report is not None:
            # Printed after the live display has stopped
            ConsoleReportWriter(console).write(result.report, result.run)
        console.print()
        print_run_panel(result)

    exit_code = ExitCodes.CANCELLED if result.cancelled else ExitCodes.for_outcome(result.outcome)
    if exit_code != ExitCodes.SUCCESS:
        sys.exit(exit_code)
