"""agentaudit CLI - Main entry point and command registration hub."""
# ruff: noqa: E402 - Intentional lazy loading: commands imported after cli group definition

import click
from rich.table import Table

from agentaudit import __version__
from agentaudit.pipeline.ui import console


class VerboseGroup(click.Group):
    """Categorized help generated from the registered commands."""

    def format_commands(self, ctx, formatter):
        """Suppress the default listing; format_help prints categories instead."""
        pass

    COMMAND_CATEGORIES = {
        "AUDIT": {
            "title": "AUDIT",
            "description": "Staged analysis of commands, agents, skills, hooks and MCP servers",
            "commands": ["run", "watch"],
            "command_meta": {
                "run": {
                    "run_when": "After editing components, or in CI",
                },
                "watch": {
                    "use_when": "Iterating on components, want a live score",
                },
            },
        },
        "GRAPH": {
            "title": "DEPENDENCY GRAPH",
            "description": "Reference graph between components",
            "commands": ["graph"],
            "command_meta": {
                "graph": {
                    "use_when": "Need cycles, orphans or broken links only",
                },
            },
        },
        "MAINTENANCE": {
            "title": "MAINTENANCE",
            "description": "Incremental cache inspection",
            "commands": ["cache"],
            "command_meta": {
                "cache": {
                    "use_when": "Check what an incremental run would redo",
                },
            },
        },
    }

    def format_help(self, ctx, formatter):
        """Click's usage and options, then a Rich table per command category."""
        super().format_help(ctx, formatter)

        registered = {
            name: cmd
            for name, cmd in self.commands.items()
            if not name.startswith("_") and not getattr(cmd, "hidden", False)
        }

        console.print()
        console.rule("[bold]COMMANDS[/bold]")

        for category_data in self.COMMAND_CATEGORIES.values():
            console.print(f"\n[bold cyan]{category_data['title']}[/bold cyan]")
            console.print(f"[dim]{category_data['description']}[/dim]")

            table = Table(show_header=False, box=None, padding=(0, 2, 0, 0))
            table.add_column("Command", style="cmd", width=10)
            table.add_column("Description", style="white")
            table.add_column("When", style="dim", width=44)

            for cmd_name in category_data["commands"]:
                if cmd_name not in registered:
                    continue
                cmd = registered[cmd_name]

                first_line = (cmd.help or "").split("\n")[0].strip()
                period_idx = first_line.find(".")
                short_help = first_line[:period_idx] if period_idx > 0 else first_line
                if len(short_help) > 55:
                    short_help = short_help[:55].rsplit(" ", 1)[0] + "..."

                cmd_meta = category_data.get("command_meta", {}).get(cmd_name, {})
                hint = ""
                if "use_when" in cmd_meta:
                    hint = f"USE: {cmd_meta['use_when']}"
                elif "run_when" in cmd_meta:
                    hint = f"RUN: {cmd_meta['run_when']}"

                table.add_row(cmd_name, short_help, hint)

            console.print(table)

        console.print()
        console.rule()
        console.print("For detailed options: [cmd]agentaudit <command> --help[/cmd]")


@click.group(cls=VerboseGroup)
@click.version_option(version=__version__, prog_name="agentaudit")
@click.help_option("-h", "--help")
def cli():
    """agentaudit - Audit pipeline for AI assistant configuration

    \b
    QUICK START:
      agentaudit run                # Incremental audit of ./
      agentaudit run --mode full    # Re-analyze everything
      agentaudit watch              # Re-audit on every change

    \b
    For detailed options: agentaudit <command> --help"""
    pass


from agentaudit.commands.cache import cache
from agentaudit.commands.graph import graph
from agentaudit.commands.run import run
from agentaudit.commands.watch import watch

cli.add_command(run)
cli.add_command(watch)
cli.add_command(graph)
cli.add_command(cache)


def main():
    """Main entry point for console script."""
    cli()


if __name__ == "__main__":
    main()
