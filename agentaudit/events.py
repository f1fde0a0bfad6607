"""Event system for pipeline observers.

Decouples pipeline execution from presentation logic.
Observers must handle their own exceptions.
"""

import sys
from typing import Protocol


class PipelineObserver(Protocol):
    """Observer interface for pipeline events."""

    def on_run_start(self, run_id: str, mode: str) -> None:
        """Called once before the first stage."""
        ...

    def on_stage_start(self, name: str, index: int, total: int) -> None:
        """Called when a stage begins."""
        ...

    def on_stage_complete(self, name: str, elapsed: float) -> None:
        """Called when a stage succeeds."""
        ...

    def on_stage_skipped(self, name: str, reason: str) -> None:
        """Called when a stage is satisfied from the ledger or the cache."""
        ...

    def on_stage_failed(self, name: str, error: str) -> None:
        """Called when a stage ends the run."""
        ...

    def on_unit_complete(self, unit_id: str, status: str, elapsed: float, detail: str = "") -> None:
        """Called when one analysis unit reaches a terminal status."""
        ...

    def on_log(self, message: str, is_error: bool = False) -> None:
        """Called for generic log messages."""
        ...


class ConsoleLogger:
    """ASCII-safe console logger.

    This is the DEFAULT observer, used when output is not a terminal.
    """

    def __init__(self, quiet: bool = False):
        self.quiet = quiet

    def on_run_start(self, run_id: str, mode: str) -> None:
        if not self.quiet:
            print(f"[RUN] {run_id} ({mode})", flush=True)

    def on_stage_start(self, name: str, index: int, total: int) -> None:
        if not self.quiet:
            print(f"\n[Stage {index}/{total}] {name}", flush=True)

    def on_stage_complete(self, name: str, elapsed: float) -> None:
        if not self.quiet:
            print(f"[OK] {name} completed in {elapsed:.1f}s", flush=True)

    def on_stage_skipped(self, name: str, reason: str) -> None:
        if not self.quiet:
            print(f"[SKIP] {name}: {reason}", flush=True)

    def on_stage_failed(self, name: str, error: str) -> None:
        # Errors print even in quiet mode
        print(f"[FAILED] {name}", file=sys.stderr, flush=True)
        if error:
            display_err = error.strip()[:200]
            if len(error) > 200:
                display_err += "..."
            print(f"  Error: {display_err}", file=sys.stderr, flush=True)

    def on_unit_complete(self, unit_id: str, status: str, elapsed: float, detail: str = "") -> None:
        if status == "done":
            if not self.quiet:
                print(f"  [done] {unit_id} ({elapsed:.1f}s) {detail}".rstrip(), flush=True)
        else:
            print(f"  [{status}] {unit_id}: {detail}", file=sys.stderr, flush=True)

    def on_log(self, message: str, is_error: bool = False) -> None:
        if not self.quiet or is_error:
            msg = str(message) if message is not None else ""
            print(msg, file=sys.stderr if is_error else sys.stdout, flush=True)


class NullObserver:
    """Observer that ignores every event; used by library callers and tests."""

    def on_run_start(self, run_id: str, mode: str) -> None:
        pass

    def on_stage_start(self, name: str, index: int, total: int) -> None:
        pass

    def on_stage_complete(self, name: str, elapsed: float) -> None:
        pass

    def on_stage_skipped(self, name: str, reason: str) -> None:
        pass

    def on_stage_failed(self, name: str, error: str) -> None:
        pass

    def on_unit_complete(self, unit_id: str, status: str, elapsed: float, detail: str = "") -> None:
        pass

    def on_log(self, message: str, is_error: bool = False) -> None:
        pass
