"""Durable progress ledger for resumable runs.

The ledger is a markdown checklist with YAML front matter, stored at
<runs_dir>/<run_id>/ledger.md. Front matter carries run metadata and the
component inventory captured at discovery; the body carries one line per
(stage, unit) record:

    - [x] component_analysis | agent:reviewer | done | results/agent_reviewer-1a2b3c4d.json | -

Every status transition rewrites the whole file through atomic_write_text,
so a crash at any moment leaves the previous consistent version on disk.
Writes are serialized by a lock because worker completions arrive from the
event loop while the ledger may also be read for display.

A write failure is not fatal: it is logged once, remembered in write_error,
and the run continues with in-memory state only. Resume is then no longer
possible from this ledger.
"""

import re
import secrets
import threading
from collections.abc import Iterable
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

import yaml

from agentaudit.errors import LedgerWriteError
from agentaudit.inventory import Component
from agentaudit.pipeline.structures import STAGE_ORDER, Stage, UnitStatus
from agentaudit.utils.constants import LEDGER_FILE_NAME
from agentaudit.utils.helpers import atomic_write_text, compute_bytes_hash
from agentaudit.utils.logging import logger

STAGE_UNIT = "*"
EMPTY_FIELD = "-"

_MARKS = {
    UnitStatus.PENDING: " ",
    UnitStatus.RUNNING: "~",
    UnitStatus.DONE: "x",
    UnitStatus.FAILED: "!",
    UnitStatus.TIMED_OUT: "t",
}

_FRONT_MATTER_RE = re.compile(r"\A---\n(.*?)\n---\n", re.DOTALL)
_RECORD_RE = re.compile(r"^- \[(?P<mark>.)\] (?P<rest>.+)$")


@dataclass
class LedgerRecord:
    """One (stage, unit) entry."""

    stage: Stage
    unit_id: str
    status: UnitStatus = UnitStatus.PENDING
    result_ref: str | None = None
    note: str | None = None

    def render(self) -> str:
        note = (self.note or EMPTY_FIELD).replace("\n", " ")
        return (
            f"- [{_MARKS[self.status]}] {self.stage.value} | {self.unit_id} | "
            f"{self.status.value} | {self.result_ref or EMPTY_FIELD} | {note}"
        )

    @classmethod
    def parse(cls, line: str) -> "LedgerRecord | None":
        match = _RECORD_RE.match(line)
        if not match:
            return None
        parts = match.group("rest").split(" | ", 4)
        if len(parts) != 5:
            return None
        stage, unit_id, status, ref, note = parts
        return cls(
            stage=Stage(stage),
            unit_id=unit_id,
            status=UnitStatus(status),
            result_ref=None if ref == EMPTY_FIELD else ref,
            note=None if note == EMPTY_FIELD else note,
        )


def new_run_id(now: datetime | None = None) -> str:
    """Sortable, unique-enough run id: UTC timestamp plus a short random suffix."""
    now = now or datetime.now(UTC)
    return f"{now.strftime('%Y%m%dT%H%M%S')}-{secrets.token_hex(3)}"


def result_file_name(unit_id: str) -> str:
    """Filesystem-safe, collision-free file name for a unit's result."""
    safe = re.sub(r"[^A-Za-z0-9_.-]+", "_", unit_id).strip("_") or "unit"
    digest = compute_bytes_hash(unit_id.encode("utf-8")).split(":", 1)[1][:8]
    return f"{safe}-{digest}.json"


class ProgressLedger:
    """Per-run record of stage and unit progress."""

    def __init__(
        self,
        path: Path | str,
        run_id: str,
        metadata: dict[str, Any] | None = None,
        records: Iterable[LedgerRecord] = (),
        inventory: list[dict[str, Any]] | None = None,
    ):
        self.path = Path(path)
        self.run_id = run_id
        self.metadata: dict[str, Any] = dict(metadata or {})
        self.metadata.setdefault("run_id", run_id)
        self.metadata.setdefault("started_at", datetime.now(UTC).isoformat())
        self.metadata.setdefault("status", "running")
        self._inventory = inventory
        self._records: dict[tuple[Stage, str], LedgerRecord] = {}
        for record in records:
            self._records[(record.stage, record.unit_id)] = record
        self._lock = threading.RLock()
        self.write_error: LedgerWriteError | None = None

    # ------------------------------------------------------------------
    # Construction
    # ------------------------------------------------------------------

    @classmethod
    def create(
        cls,
        runs_dir: Path | str,
        run_id: str,
        target: list[str],
        mode: str,
        kinds: list[str] | None = None,
    ) -> "ProgressLedger":
        """Start a fresh ledger for a new run and write it once."""
        path = Path(runs_dir) / run_id / LEDGER_FILE_NAME
        ledger = cls(
            path,
            run_id,
            metadata={
                "run_id": run_id,
                "target": list(target),
                "mode": mode,
                "kinds": list(kinds or []),
            },
        )
        ledger.flush()
        return ledger

    @classmethod
    def load(cls, path: Path | str) -> "ProgressLedger":
        """Read a ledger back for resume.

        A directory is accepted in place of the file path.

        Raises:
            OSError: the file cannot be read
            ValueError: the file is not a ledger
        """
        path = Path(path)
        if path.is_dir():
            path = path / LEDGER_FILE_NAME
        text = path.read_text(encoding="utf-8")

        match = _FRONT_MATTER_RE.match(text)
        if not match:
            raise ValueError(f"{path} has no ledger front matter")
        try:
            meta = yaml.safe_load(match.group(1)) or {}
        except yaml.YAMLError as e:
            raise ValueError(f"{path} has malformed front matter: {e}") from e
        if not isinstance(meta, dict) or "run_id" not in meta:
            raise ValueError(f"{path} front matter lacks run_id")

        inventory = meta.pop("inventory", None)
        records = []
        for line_no, line in enumerate(text[match.end():].splitlines(), 1):
            if not line.startswith("- ["):
                continue
            try:
                record = LedgerRecord.parse(line)
            except ValueError as e:
                raise ValueError(f"{path}: bad record on body line {line_no}: {e}") from e
            if record is None:
                raise ValueError(f"{path}: unparseable record on body line {line_no}")
            records.append(record)

        return cls(path, str(meta["run_id"]), meta, records, inventory)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    @property
    def run_dir(self) -> Path:
        return self.path.parent

    @property
    def writable(self) -> bool:
        return self.write_error is None

    def record_for(self, stage: Stage, unit_id: str = STAGE_UNIT) -> LedgerRecord | None:
        with self._lock:
            return self._records.get((stage, unit_id))

    def status_of(self, stage: Stage, unit_id: str = STAGE_UNIT) -> UnitStatus | None:
        record = self.record_for(stage, unit_id)
        return record.status if record else None

    def stage_done(self, stage: Stage) -> bool:
        return self.status_of(stage) is UnitStatus.DONE

    def units(self, stage: Stage) -> list[LedgerRecord]:
        """Unit-level records of a stage, sorted by unit id."""
        with self._lock:
            return sorted(
                (r for (s, u), r in self._records.items() if s is stage and u != STAGE_UNIT),
                key=lambda r: r.unit_id,
            )

    def unfinished_units(self, stage: Stage) -> list[str]:
        """Units to (re)dispatch on resume: pending, running, failed, or timed out."""
        return [r.unit_id for r in self.units(stage) if r.status is not UnitStatus.DONE]

    def inventory(self) -> list[Component] | None:
        if self._inventory is None:
            return None
        return [Component.from_dict(item) for item in self._inventory]

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def set_inventory(self, components: Iterable[Component]) -> bool:
        with self._lock:
            self._inventory = [c.to_dict() for c in components]
            return self.flush()

    def register_units(self, stage: Stage, unit_ids: Iterable[str]) -> bool:
        """Add pending records for units not yet in the ledger, in one write."""
        with self._lock:
            for unit_id in unit_ids:
                self._records.setdefault((stage, unit_id), LedgerRecord(stage, unit_id))
            return self.flush()

    def update(
        self,
        stage: Stage,
        unit_id: str,
        status: UnitStatus,
        result_ref: str | None = None,
        note: str | None = None,
    ) -> bool:
        """Record one status transition and persist it atomically."""
        with self._lock:
            record = self._records.get((stage, unit_id))
            if record is None:
                record = LedgerRecord(stage, unit_id)
                self._records[(stage, unit_id)] = record
            record.status = status
            if result_ref is not None:
                record.result_ref = result_ref
            record.note = note
            return self.flush()

    def mark_stage(self, stage: Stage, status: UnitStatus, note: str | None = None) -> bool:
        return self.update(stage, STAGE_UNIT, status, note=note)

    def finish(self, status: str) -> bool:
        with self._lock:
            self.metadata["status"] = status
            self.metadata["finished_at"] = datetime.now(UTC).isoformat()
            return self.flush()

    def flush(self) -> bool:
        """Rewrite the ledger file. Returns False (and keeps going) on failure."""
        with self._lock:
            try:
                atomic_write_text(self.path, self.render())
            except OSError as e:
                if self.write_error is None:
                    self.write_error = LedgerWriteError(self.path, str(e))
                    logger.warning(f"{self.write_error} - continuing in memory, resume will not be possible")
                return False
            return True

    def render(self) -> str:
        with self._lock:
            meta = dict(self.metadata)
            if self._inventory is not None:
                meta["inventory"] = self._inventory
            lines = [
                "---",
                yaml.safe_dump(meta, sort_keys=False, allow_unicode=True).rstrip("\n"),
                "---",
                "",
                f"# Audit run {self.run_id}",
            ]
            for stage in STAGE_ORDER:
                stage_records = [r for (s, _), r in self._records.items() if s is stage]
                if not stage_records:
                    continue
                lines.append("")
                lines.append(f"## {stage.title}")
                lines.append("")
                for record in sorted(stage_records, key=lambda r: (r.unit_id != STAGE_UNIT, r.unit_id)):
                    lines.append(record.render())
            return "\n".join(lines) + "\n"
