"""Pipeline execution infrastructure."""
from .cancellation import CancellationToken
from .renderer import RichRenderer
from .structures import (
    PipelineOptions,
    PipelineRun,
    RunMode,
    RunOutcome,
    RunResult,
    Stage,
    UnchangedDecision,
    UnitFailure,
    UnitStatus,
)
from .ui import console, print_error, print_header, print_status_panel, print_success, print_warning

__all__ = [
    "CancellationToken", "RichRenderer",
    "PipelineOptions", "PipelineRun", "RunMode", "RunOutcome", "RunResult", "Stage",
    "UnchangedDecision", "UnitFailure", "UnitStatus",
    "console", "print_header", "print_error", "print_warning", "print_success", "print_status_panel",
]
