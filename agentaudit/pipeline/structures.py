"""Data contracts for pipeline execution."""

import copy
import os
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import TYPE_CHECKING, Any

from agentaudit.config_runtime import DEFAULTS, resolve_output_paths
from agentaudit.inventory import Component, ComponentKind

if TYPE_CHECKING:
    from agentaudit.cache.run_cache import CacheDiff
    from agentaudit.pipeline.synthesis import SynthesisReport


class Stage(Enum):
    """Pipeline stages, in execution order."""

    DISCOVERY = "discovery"
    CACHE_DIFF = "cache_diff"
    COMPONENT_ANALYSIS = "component_analysis"
    GRAPH_ANALYSIS = "graph_analysis"
    SYNTHESIS = "synthesis"
    REPORTING = "reporting"
    CLEANUP = "cleanup"

    @property
    def title(self) -> str:
        return self.value.replace("_", " ").title()


STAGE_ORDER = list(Stage)


class UnitStatus(Enum):
    """Status of one ledger unit."""

    PENDING = "pending"
    RUNNING = "running"
    DONE = "done"
    FAILED = "failed"
    TIMED_OUT = "timedOut"

    @property
    def terminal(self) -> bool:
        return self in (UnitStatus.DONE, UnitStatus.FAILED, UnitStatus.TIMED_OUT)


class RunMode(Enum):
    FULL = "full"
    INCREMENTAL = "incremental"
    WATCH = "watch"


class RunOutcome(Enum):
    """Tri-state completion signal returned to callers."""

    COMPLETED_CLEAN = "completed_clean"
    COMPLETED_WITH_FAILURES = "completed_with_failures"
    ABORTED = "aborted"


class UnchangedDecision(Enum):
    """Caller's choice when an incremental run finds nothing changed."""

    REUSE = "reuse"
    RERUN = "rerun"
    ABORT = "abort"


@dataclass
class PipelineOptions:
    """Configuration that flows through one pipeline run.

    Built from runtime config plus CLI overrides via from_config().
    """

    roots: list[Path]
    kinds: list[ComponentKind] = field(default_factory=list)
    mode: RunMode = RunMode.FULL
    dry_run: bool = False
    explicit_scope: bool = True
    layout: dict[str, Any] = field(default_factory=lambda: copy.deepcopy(DEFAULTS["layout"]))
    entry_kinds: list[ComponentKind] = field(default_factory=lambda: [ComponentKind.COMMAND])
    max_depth_warning: int = 4
    max_workers: int = os.cpu_count() or 4
    unit_timeout: float = 120.0
    soft_run_timeout: float = 1800.0
    on_unchanged: UnchangedDecision = UnchangedDecision.REUSE
    cache_path: Path = Path("./.agentaudit/cache.json")
    runs_dir: Path = Path("./.agentaudit/runs")
    latest_report: Path = Path("./.agentaudit/latest_report.json")
    keep_runs: int = 10
    max_age_days: int = 30
    merge_strategy: str = "weighted_average"
    component_weight: float = 0.8
    graph_weight: float = 0.2

    @property
    def uses_cache_diff(self) -> bool:
        return self.mode in (RunMode.INCREMENTAL, RunMode.WATCH)

    @classmethod
    def from_config(
        cls,
        cfg: dict[str, Any],
        roots: list[Path | str],
        kinds: list[ComponentKind | str] | None = None,
        base_dir: Path | str = ".",
        **overrides: Any,
    ) -> "PipelineOptions":
        """Build options from a load_runtime_config() dict plus explicit overrides."""
        paths = resolve_output_paths(cfg, base_dir)
        timeouts = cfg["timeouts"]
        stage_timeout = float(timeouts["component_analysis"])
        options = cls(
            roots=[Path(r) for r in roots],
            kinds=[ComponentKind.parse(k) for k in (kinds or [])],
            layout=dict(cfg["layout"]),
            entry_kinds=[ComponentKind.parse(k) for k in cfg["graph"]["entry_kinds"]],
            max_depth_warning=int(cfg["graph"]["max_depth_warning"]),
            max_workers=int(cfg["limits"]["max_workers"]),
            unit_timeout=stage_timeout if stage_timeout > 0 else float(timeouts["unit_timeout"]),
            soft_run_timeout=float(timeouts["soft_run_timeout"]),
            cache_path=paths["cache_file"],
            runs_dir=paths["runs_dir"],
            latest_report=paths["latest_report"],
            keep_runs=int(cfg["retention"]["keep_runs"]),
            max_age_days=int(cfg["retention"]["max_age_days"]),
            merge_strategy=cfg["scoring"]["merge_strategy"],
            component_weight=float(cfg["scoring"]["component_weight"]),
            graph_weight=float(cfg["scoring"]["graph_weight"]),
        )
        for key, value in overrides.items():
            if value is None:
                continue
            if not hasattr(options, key):
                raise TypeError(f"Unknown pipeline option: {key}")
            setattr(options, key, value)
        if options.max_workers < 1:
            options.max_workers = 1
        return options


@dataclass
class UnitFailure:
    """A unit that ended failed or timed out, with the reason recorded."""

    unit_id: str
    status: UnitStatus
    reason: str

    def to_dict(self) -> dict[str, str]:
        return {"unit": self.unit_id, "status": self.status.value, "reason": self.reason}


@dataclass
class PipelineRun:
    """One execution: identity, scope, and the artifacts it owns."""

    run_id: str
    mode: RunMode
    scope: dict[str, Any]
    run_dir: Path | None = None
    ledger_path: Path | None = None
    outputs: dict[str, str] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "run_id": self.run_id,
            "mode": self.mode.value,
            "scope": self.scope,
            "run_dir": str(self.run_dir) if self.run_dir else None,
            "ledger": str(self.ledger_path) if self.ledger_path else None,
            "outputs": dict(self.outputs),
        }


@dataclass
class RunResult:
    """What a run returns: tri-state outcome, report (possibly partial), failures."""

    run: PipelineRun
    outcome: RunOutcome
    report: "SynthesisReport | None" = None
    failures: list[UnitFailure] = field(default_factory=list)
    components: list[Component] = field(default_factory=list)
    diff: "CacheDiff | None" = None
    dispatched: list[str] = field(default_factory=list)
    reused_cached_report: bool = False
    cancelled: bool = False
    error: str | None = None
    ledger_error: str | None = None
    stage_timings: dict[str, float] = field(default_factory=dict)

    @property
    def composite_score(self) -> float | None:
        return self.report.composite_score if self.report else None

    def to_dict(self) -> dict[str, Any]:
        return {
            "run": self.run.to_dict(),
            "outcome": self.outcome.value,
            "composite_score": self.composite_score,
            "failures": [f.to_dict() for f in self.failures],
            "dispatched": list(self.dispatched),
            "diff": self.diff.to_dict() if self.diff else None,
            "reused_cached_report": self.reused_cached_report,
            "cancelled": self.cancelled,
            "error": self.error,
            "ledger_error": self.ledger_error,
            "stage_timings": {k: round(v, 3) for k, v in self.stage_timings.items()},
        }
