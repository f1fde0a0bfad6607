"""Run-directory retention for the cleanup stage.

Every run owns <runs_dir>/<run_id>/ (ledger, per-unit results, report).
Older run directories are pruned by count and by age; cache entries whose
analyzer_output pointed into a pruned directory are cleared so the cache
never references files that no longer exist.
"""

import shutil
import time
from collections.abc import Iterable
from dataclasses import dataclass, field
from pathlib import Path

from agentaudit.cache.run_cache import CacheIndex
from agentaudit.utils.constants import LEDGER_FILE_NAME
from agentaudit.utils.logging import logger


@dataclass
class PruneResult:
    removed: list[Path] = field(default_factory=list)
    kept: list[Path] = field(default_factory=list)
    failed: list[tuple[Path, str]] = field(default_factory=list)


def list_run_dirs(runs_dir: Path | str) -> list[Path]:
    """Run directories oldest first. Run ids sort chronologically."""
    runs_dir = Path(runs_dir)
    if not runs_dir.is_dir():
        return []
    return sorted(
        (p for p in runs_dir.iterdir() if p.is_dir() and (p / LEDGER_FILE_NAME).exists()),
        key=lambda p: p.name,
    )


def prune_runs(
    runs_dir: Path | str,
    keep_runs: int,
    max_age_days: int,
    protect: Iterable[str] = (),
    dry_run: bool = False,
    now: float | None = None,
) -> PruneResult:
    """
    Delete run directories beyond the newest keep_runs or older than max_age_days.

    A limit of 0 disables that limit. Protected run ids are never removed.
    With dry_run nothing is deleted; the would-be removals are reported.
    """
    now = time.time() if now is None else now
    protect = set(protect)
    runs = list_run_dirs(runs_dir)
    result = PruneResult()

    # Protected runs count as the newest even when run ids share a second
    newest_first = sorted(reversed(runs), key=lambda p: p.name not in protect)
    for position, run_dir in enumerate(newest_first):
        if run_dir.name in protect:
            result.kept.append(run_dir)
            continue

        too_many = keep_runs > 0 and position >= keep_runs
        try:
            age_days = (now - run_dir.stat().st_mtime) / 86400
        except OSError:
            age_days = 0.0
        too_old = max_age_days > 0 and age_days > max_age_days

        if not (too_many or too_old):
            result.kept.append(run_dir)
            continue

        if dry_run:
            result.removed.append(run_dir)
            continue

        try:
            shutil.rmtree(run_dir)
            result.removed.append(run_dir)
        except OSError as e:
            logger.warning(f"Could not remove old run {run_dir}: {e}")
            result.failed.append((run_dir, str(e)))

    if result.removed:
        verb = "Would prune" if dry_run else "Pruned"
        logger.info(f"{verb} {len(result.removed)} old run(s) from {runs_dir}")
    return result


def clear_dangling_outputs(index: CacheIndex) -> int:
    """Drop analyzer_output pointers to files that no longer exist."""
    cleared = 0
    for entry in index.entries.values():
        if entry.analyzer_output and not Path(entry.analyzer_output).exists():
            entry.analyzer_output = None
            cleared += 1
    if index.report_location and not Path(index.report_location).exists():
        index.report_location = None
        cleared += 1
    if cleared:
        logger.debug(f"Cleared {cleared} cache pointers into pruned runs")
    return cleared
