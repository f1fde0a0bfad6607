"""Build and analyze the component reference graph without running analyzers."""

import json
import sys
from pathlib import Path

import click
from rich.table import Table
from rich.text import Text

from agentaudit.errors import DiscoveryError
from agentaudit.graph import DependencyGraph, default_extractors
from agentaudit.inventory import ComponentInventory
from agentaudit.pipeline.ui import console, print_error, print_status_panel
from agentaudit.utils.error_handler import handle_exceptions
from agentaudit.utils.exit_codes import ExitCodes

from ._common import KIND_CHOICES, load_config, resolve_scope


@click.command("graph")
@handle_exceptions
@click.argument("roots", nargs=-1, type=click.Path(file_okay=False, path_type=Path))
@click.option(
    "--kind",
    "kinds",
    multiple=True,
    type=click.Choice(KIND_CHOICES, case_sensitive=False),
    help="Restrict to a component kind (repeatable)",
)
@click.option("--layout", "layout_file", type=click.Path(dir_okay=False, exists=True), help="YAML layout file")
@click.option("--entry-kind", "entry_kinds", multiple=True, type=click.Choice(KIND_CHOICES), help="Graph root kind")
@click.option("--top", default=10, type=int, help="Number of most-connected components to list")
@click.option("--json", "as_json", is_flag=True, help="Print the full summary as JSON")
def graph(roots, kinds, layout_file, entry_kinds, top, as_json):
    """Show cycles, orphans, broken links and depth of the reference graph.

    Discovers components like `run` does, extracts their references and
    prints the graph health. No analyzers run and nothing is cached.

    \b
    Examples:
      agentaudit graph
      agentaudit graph .claude --json
      agentaudit graph --entry-kind command --entry-kind hook"""
    cfg = load_config(layout_file)
    root_paths, kind_list, explicit = resolve_scope(roots, kinds)
    max_depth_warning = cfg["graph"]["max_depth_warning"]

    try:
        components = ComponentInventory(cfg["layout"]).scan(root_paths, kind_list or None)
    except DiscoveryError as e:
        print_error(str(e))
        sys.exit(ExitCodes.ABORTED)
    if not components and explicit:
        print_error("No components found in the requested scope.")
        sys.exit(ExitCodes.ABORTED)

    dep_graph = DependencyGraph.build(
        components,
        default_extractors(),
        entry_kinds=list(entry_kinds) or cfg["graph"]["entry_kinds"],
    )
    summary = dep_graph.summary(max_depth_warning, top_n=top)

    if as_json:
        click.echo(json.dumps(summary, indent=2))
        return

    stats = summary["statistics"]
    health = summary["health"]
    console.print(
        f"[bold]Graph[/bold]: {stats['total_nodes']} components, {stats['total_edges']} references "
        f"(density {stats['graph_density']})"
    )

    if summary["cycles"]:
        console.print(f"\n[high]Cycles ({len(summary['cycles'])}):[/high]")
        for cycle in summary["cycles"]:
            console.print(f"  {' -> '.join(cycle + cycle[:1])}")

    if summary["broken_links"]:
        table = Table(title=f"Broken links ({len(summary['broken_links'])})", title_justify="left")
        table.add_column("Source", style="cyan")
        table.add_column("Target")
        table.add_column("Evidence", style="dim")
        for link in summary["broken_links"]:
            table.add_row(link["source"], Text(link["target"]), Text(link.get("evidence") or ""))
        console.print()
        console.print(table)

    if summary["orphans"]:
        console.print(f"\n[medium]Orphans ({len(summary['orphans'])}):[/medium] {', '.join(summary['orphans'])}")

    chain = summary["deepest_chain"]
    depth_style = "low" if health["max_depth"] > max_depth_warning else "dim"
    console.print(
        f"\n[{depth_style}]Max depth {health['max_depth']}[/{depth_style}]"
        + (f": {' -> '.join(chain)}" if chain else "")
    )

    if summary["top_connected_nodes"]:
        console.print("\n[bold]Most connected:[/bold]")
        for node in summary["top_connected_nodes"]:
            console.print(f"  {node['id']}  in={node['in_degree']} out={node['out_degree']}")

    level = "success" if health["score"] >= 8 else "medium" if health["score"] >= 5 else "high"
    console.print()
    print_status_panel(
        "GRAPH HEALTH",
        f"Score {health['score']:.2f}/10",
        f"{health['cycle_count']} cycle(s), {health['orphan_count']} orphan(s), "
        f"{health['broken_link_count']} broken link(s)",
        level=level,
    )
