"""Inspect or clear the incremental run cache."""

import json
import sys
from pathlib import Path

import click

from agentaudit.analyzers.registry import default_registry
from agentaudit.cache import RunCache
from agentaudit.config_runtime import resolve_output_paths
from agentaudit.errors import DiscoveryError
from agentaudit.inventory import ComponentInventory
from agentaudit.pipeline.ui import console, print_error, print_success, print_warning
from agentaudit.utils.error_handler import handle_exceptions
from agentaudit.utils.exit_codes import ExitCodes

from ._common import load_config, resolve_scope


@click.group()
@click.help_option("-h", "--help")
def cache():
    """Incremental cache management.

    \b
    The cache (.agentaudit/cache.json by default) maps every component to its
    last content hash, analysis result and extracted references. Incremental
    runs only re-analyze components whose hash changed."""
    pass


@cache.command("status")
@handle_exceptions
@click.argument("roots", nargs=-1, type=click.Path(file_okay=False, path_type=Path))
@click.option("--layout", "layout_file", type=click.Path(dir_okay=False, exists=True), help="YAML layout file")
@click.option("--json", "as_json", is_flag=True, help="Print status as JSON")
def cache_status(roots, layout_file, as_json):
    """Show what the next incremental run would re-analyze."""
    cfg = load_config(layout_file)
    root_paths, _, _ = resolve_scope(roots, ())
    run_cache = RunCache(resolve_output_paths(cfg)["cache_file"])
    index = run_cache.load()

    try:
        components = ComponentInventory(cfg["layout"]).scan(root_paths)
    except DiscoveryError as e:
        print_error(str(e))
        sys.exit(ExitCodes.ABORTED)
    registry = default_registry(cfg["scoring"]["merge_strategy"])
    uncovered = [c.id for c in components if not registry.covers(c)]
    diff = run_cache.diff(components, index, uncovered=uncovered)

    status = {
        "cache_file": str(run_cache.cache_path),
        "exists": run_cache.cache_path.exists(),
        "corrupt": str(run_cache.load_error) if run_cache.load_error else None,
        "last_run": index.run_id,
        "updated_at": index.updated_at,
        "report": index.report_location,
        "stats": run_cache.get_stats(),
        "diff": diff.to_dict(),
    }

    if as_json:
        click.echo(json.dumps(status, indent=2))
        return

    if not status["exists"]:
        print_warning(f"No cache at {run_cache.cache_path} - the next run is a full run")
    elif status["corrupt"]:
        print_error(f"{status['corrupt']} - the next run is a full run")
    else:
        stats = status["stats"]
        console.print(f"[bold]Cache[/bold] {run_cache.cache_path}")
        console.print(f"  Last run:   {index.run_id or '-'} ({index.updated_at or 'unknown'})")
        console.print(f"  Entries:    {stats['entries']} ({stats['with_results']} with results)")
        console.print(f"  References: {stats['references']}")

    console.print(
        f"\n[bold]Against the current tree:[/bold] "
        f"[success]{len(diff.unchanged)} unchanged[/success], "
        f"[warning]{len(diff.changed)} changed[/warning], "
        f"[info]{len(diff.new)} new[/info], "
        f"[dim]{len(diff.deleted)} deleted[/dim]"
    )
    for label, ids in (("changed", diff.changed), ("new", diff.new), ("deleted", diff.deleted)):
        for component_id in ids:
            console.print(f"  {label:8} {component_id}")


@cache.command("clear")
@handle_exceptions
@click.option("--layout", "layout_file", type=click.Path(dir_okay=False, exists=True), help="YAML layout file")
def cache_clear(layout_file):
    """Delete the cache so the next run analyzes everything."""
    cfg = load_config(layout_file)
    run_cache = RunCache(resolve_output_paths(cfg)["cache_file"])
    if run_cache.clear():
        print_success(f"Removed {run_cache.cache_path}")
    else:
        console.print(f"[dim]No cache at {run_cache.cache_path}[/dim]")
