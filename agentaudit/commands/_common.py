"""Shared option handling for agentaudit commands."""

import contextlib
import sys
from pathlib import Path

import click
import yaml
from rich.text import Text

from agentaudit.config_runtime import load_runtime_config, resolve_output_paths
from agentaudit.events import ConsoleLogger
from agentaudit.inventory import ComponentKind
from agentaudit.pipeline.renderer import RichRenderer
from agentaudit.utils.logging import configure_file_logging, restore_stderr_sink, swap_to_rich_sink

KIND_CHOICES = [k.value for k in ComponentKind]


def scope_options(func):
    """Roots argument plus the --kind / --layout / --workers / --timeout options."""
    decorators = [
        click.argument("roots", nargs=-1, type=click.Path(file_okay=False, path_type=Path)),
        click.option(
            "--kind",
            "kinds",
            multiple=True,
            type=click.Choice(KIND_CHOICES, case_sensitive=False),
            help="Restrict to a component kind (repeatable)",
        ),
        click.option(
            "--layout",
            "layout_file",
            type=click.Path(dir_okay=False, exists=True),
            help="YAML file mapping kinds to subdirectories",
        ),
        click.option("--workers", type=click.IntRange(min=1), help="Max concurrent analysis units"),
        click.option("--timeout", type=click.FloatRange(min=0, min_open=True), help="Per-unit timeout (seconds)"),
        click.option("--quiet", is_flag=True, help="Minimal output"),
    ]
    for decorator in reversed(decorators):
        func = decorator(func)
    return func


def load_config(layout_file: str | None):
    """Runtime config for the current directory; a bad --layout file is a usage error."""
    try:
        return load_runtime_config(".", layout_file)
    except (OSError, ValueError, yaml.YAMLError) as e:
        raise click.BadParameter(str(e), param_hint="--layout") from e


def resolve_scope(roots: tuple[Path, ...], kinds: tuple[str, ...]) -> tuple[list[Path], list[ComponentKind], bool]:
    """Default to the current directory; an explicitly given root or kind makes the scope explicit."""
    explicit = bool(roots) or bool(kinds)
    return (list(roots) or [Path(".")]), [ComponentKind.parse(k) for k in kinds], explicit


def start_file_logging(cfg) -> int | None:
    log_dir = resolve_output_paths(cfg)["log_dir"]
    try:
        return configure_file_logging(log_dir)
    except OSError:
        return None


def make_observer(quiet: bool):
    """RichRenderer on a terminal, plain ConsoleLogger otherwise."""
    if sys.stdout.isatty() and not quiet:
        return RichRenderer(quiet=quiet)
    return ConsoleLogger(quiet=quiet)


@contextlib.contextmanager
def live_display(observer):
    """Run the Rich live table (if any) with log lines printed above it."""
    if not isinstance(observer, RichRenderer):
        yield
        return

    observer.start()
    handler_id = swap_to_rich_sink(
        lambda message: observer.console.print(Text.from_ansi(str(message).rstrip("\n")))
    )
    try:
        yield
    finally:
        observer.stop()
        if handler_id is not None:
            restore_stderr_sink(handler_id)
