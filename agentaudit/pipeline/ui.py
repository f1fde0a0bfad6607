"""Central UI handler for agentaudit.

Single source of truth for Rich console styling. Import this instead of
instantiating Console() in every command file.

Usage:
    from agentaudit.pipeline.ui import console, print_header, print_error

    console.print("[success]All checks passed[/success]")
    print_header("AUDIT RESULTS")
"""

import sys

from rich.console import Console
from rich.panel import Panel
from rich.text import Text
from rich.theme import Theme

AUDIT_THEME = Theme({
    "info": "bold cyan",
    "warning": "bold yellow",
    "error": "bold red",
    "success": "bold green",
    "high": "bold red",
    "medium": "bold yellow",
    "low": "cyan",
    "excellent": "bold green",
    "good": "green",
    "needs_work": "yellow",
    "poor": "bold red",
    "cmd": "bold magenta",
    "path": "bold cyan",
    "dim": "dim white",
})

# Single console instance - import this, don't create your own
console = Console(
    theme=AUDIT_THEME,
    force_terminal=sys.stdout.isatty()
)


def print_header(title: str) -> None:
    """Print a styled section header with horizontal rules."""
    console.rule(f"[bold]{title}[/bold]")


def print_error(msg: str) -> None:
    console.print(f"[error]ERROR:[/error] {msg}")


def print_warning(msg: str) -> None:
    console.print(f"[warning]WARNING:[/warning] {msg}")


def print_success(msg: str) -> None:
    console.print(f"[success]OK:[/success] {msg}")


def print_status_panel(
    status: str,
    message: str,
    detail: str,
    level: str = "info"
) -> None:
    """Print a status panel with colored border.

    Args:
        status: Status label (e.g., "CLEAN", "FAILURES", "ABORTED")
        message: Main message line
        detail: Additional detail line
        level: One of "high", "medium", "low", "success", "info"
    """
    style_map = {
        "high": ("bold red", "red"),
        "medium": ("bold yellow", "yellow"),
        "low": ("cyan", "cyan"),
        "success": ("bold green", "green"),
        "info": ("bold cyan", "cyan"),
    }
    text_style, border_style = style_map.get(level, ("white", "white"))

    panel = Panel(
        Text.assemble(
            (f"STATUS: [{status}]\n", text_style),
            (f"{message}\n", border_style),
            (detail, border_style)
        ),
        border_style=border_style,
        expand=False
    )
    console.print(panel)
