"""Watch component trees and re-audit incrementally on change."""

import asyncio
import sys

import click

from agentaudit.inventory import ComponentInventory
from agentaudit.pipeline.cancellation import (
    CancellationToken,
    install_signal_handlers,
    restore_signal_handlers,
)
from agentaudit.pipeline.orchestrator import AuditOrchestrator
from agentaudit.pipeline.structures import PipelineOptions, RunMode, UnchangedDecision
from agentaudit.pipeline.ui import console, print_header, print_status_panel
from agentaudit.pipeline.watch import WatchLoop
from agentaudit.reporting import JsonReportWriter
from agentaudit.utils.error_handler import handle_exceptions
from agentaudit.utils.exit_codes import ExitCodes
from agentaudit.utils.logging import logger

from ._common import load_config, resolve_scope, scope_options, start_file_logging


@click.command("watch")
@handle_exceptions
@scope_options
@click.option("--interval", type=click.FloatRange(min=0, min_open=True), help="Poll interval (seconds)")
@click.option("--debounce", type=click.FloatRange(min=0), help="Quiet time before a change triggers a run (seconds)")
@click.option("--grace", type=click.FloatRange(min=0), help="Seconds an in-flight run may take to finish on exit")
def watch(roots, kinds, layout_file, workers, timeout, quiet, interval, debounce, grace):
    """Run once, then re-run incrementally whenever components change.

    Polls the component trees every --interval seconds. A change starts a
    debounce window; further changes restart it. Once quiet, an incremental
    run audits only what changed. Ctrl+C stops watching: an in-flight run
    gets --grace seconds to finish before it is cancelled.

    \b
    Examples:
      agentaudit watch
      agentaudit watch .claude --interval 1 --debounce 3"""
    cfg = load_config(layout_file)
    roots, kind_list, explicit = resolve_scope(roots, kinds)
    watch_cfg = cfg["watch"]

    inventory = ComponentInventory(cfg["layout"])

    async def run_pipeline(mode: RunMode, run_token: CancellationToken):
        # The first run is full; later ones diff against the cache it wrote
        options = PipelineOptions.from_config(
            cfg,
            roots,
            kind_list,
            mode=mode if mode is RunMode.FULL else RunMode.WATCH,
            explicit_scope=explicit,
            max_workers=workers,
            unit_timeout=timeout,
            on_unchanged=UnchangedDecision.REUSE,
        )
        orchestrator = AuditOrchestrator(options, writers=[JsonReportWriter(options.latest_report)])
        result = await orchestrator.run(token=run_token)
        score = f"{result.composite_score:.2f}" if result.composite_score is not None else "n/a"
        if not quiet:
            console.print(
                f"[info]{result.run.run_id}[/info] {mode.value}: {result.outcome.value}, "
                f"score {score}, {len(result.dispatched)} unit(s) analyzed, {len(result.failures)} failed"
            )
        return result

    def snapshot() -> dict[str, str]:
        return {c.id: c.content_hash for c in inventory.scan(roots, kind_list or None)}

    token = CancellationToken()
    loop = WatchLoop(
        run_pipeline,
        snapshot,
        poll_interval=interval or watch_cfg["poll_interval"],
        debounce=debounce if debounce is not None else watch_cfg["debounce"],
        grace_period=grace if grace is not None else watch_cfg["grace_period"],
        token=token,
    )

    if not quiet:
        print_header("WATCH MODE")
        console.print(f"[bold]Watching[/bold] {', '.join(str(r) for r in roots)} - Ctrl+C to stop")
    log_handler = start_file_logging(cfg)
    previous_handlers = install_signal_handlers(token)
    try:
        session = asyncio.run(loop.run(RunMode.FULL))
    except KeyboardInterrupt:
        console.print("\n[bold red][INFO] Watch stopped by user.[/bold red]")
        sys.exit(ExitCodes.CANCELLED)
    finally:
        restore_signal_handlers(previous_handlers)
        if log_handler is not None:
            logger.remove(log_handler)

    summary = session.summary()
    delta = summary["score_delta"]
    print_status_panel(
        "WATCH ENDED",
        f"{summary['run_count']} run(s) in {summary['duration_seconds']}s",
        f"Score {summary['initial_score']} -> {summary['final_score']}"
        + (f" ({delta:+.2f})" if delta is not None else ""),
        level="info",
    )
