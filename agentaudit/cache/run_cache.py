"""Incremental cache for per-component analysis results.

This module implements the content-hash cache that lets incremental runs
re-analyze only what changed:
1. Load the persisted index (a bad or foreign-version file is a cache miss)
2. Diff current component hashes against it
3. Analyze only changed/new components
4. Merge fresh results with carried-forward ones and save atomically

Staleness is purely content based: a file touched but byte-identical is
unchanged. Each entry also keeps the raw references extracted from the
component, so the dependency graph can be rebuilt without re-reading
unchanged files.
"""

import json
import subprocess
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from agentaudit.analyzers.base import AnalysisResult
from agentaudit.errors import CacheCorrupt
from agentaudit.graph.types import RawReference
from agentaudit.inventory import MCP_PATH_SEPARATOR, Component
from agentaudit.utils.constants import CACHE_SCHEMA_VERSION
from agentaudit.utils.helpers import save_json_file
from agentaudit.utils.logging import logger


@dataclass
class CacheEntry:
    """Last known state of one component."""

    component_id: str
    path: str
    content_hash: str
    result: AnalysisResult | None = None
    analyzer_output: str | None = None
    references: list[RawReference] = field(default_factory=list)

    def has_current_result(self, content_hash: str) -> bool:
        return self.result is not None and self.result.source_hash == content_hash

    def path_exists(self) -> bool:
        return Path(self.path.split(MCP_PATH_SEPARATOR, 1)[0]).exists()

    def to_dict(self) -> dict[str, Any]:
        return {
            "path": self.path,
            "content_hash": self.content_hash,
            "result": self.result.to_dict() if self.result else None,
            "analyzer_output": self.analyzer_output,
            "references": [r.to_dict() for r in self.references],
        }

    @classmethod
    def from_dict(cls, component_id: str, data: Mapping[str, Any]) -> "CacheEntry":
        result = data.get("result")
        return cls(
            component_id=component_id,
            path=str(data["path"]),
            content_hash=str(data["content_hash"]),
            result=AnalysisResult.from_dict(result) if result else None,
            analyzer_output=data.get("analyzer_output"),
            references=[RawReference.from_dict(r) for r in data.get("references") or []],
        )


@dataclass
class CacheIndex:
    """The persisted cache document."""

    entries: dict[str, CacheEntry] = field(default_factory=dict)
    run_id: str | None = None
    updated_at: str | None = None
    revision: str | None = None
    report_location: str | None = None
    version: int = CACHE_SCHEMA_VERSION

    def to_dict(self) -> dict[str, Any]:
        return {
            "version": self.version,
            "run_id": self.run_id,
            "updated_at": self.updated_at,
            "revision": self.revision,
            "report_location": self.report_location,
            "entries": {key: self.entries[key].to_dict() for key in sorted(self.entries)},
        }

    def semantic_dict(self) -> dict[str, Any]:
        """to_dict without the write timestamp."""
        data = self.to_dict()
        data.pop("updated_at")
        return data

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "CacheIndex":
        entries = data.get("entries")
        if not isinstance(entries, dict):
            raise ValueError("entries is not a mapping")
        return cls(
            entries={key: CacheEntry.from_dict(key, value) for key, value in entries.items()},
            run_id=data.get("run_id"),
            updated_at=data.get("updated_at"),
            revision=data.get("revision"),
            report_location=data.get("report_location"),
            version=int(data["version"]),
        )


@dataclass
class CacheDiff:
    """Classification of the current inventory against the cache."""

    changed: list[str] = field(default_factory=list)
    unchanged: list[str] = field(default_factory=list)
    new: list[str] = field(default_factory=list)
    deleted: list[str] = field(default_factory=list)

    @property
    def needs_analysis(self) -> list[str]:
        return sorted(self.changed + self.new)

    @property
    def all_unchanged(self) -> bool:
        return not (self.changed or self.new or self.deleted)

    def to_dict(self) -> dict[str, list[str]]:
        return {
            "changed": self.changed,
            "unchanged": self.unchanged,
            "new": self.new,
            "deleted": self.deleted,
        }


def read_revision(root: Path | str) -> str | None:
    """HEAD commit of the git work tree at root, or None."""
    try:
        proc = subprocess.run(
            ["git", "rev-parse", "HEAD"],
            cwd=str(root),
            capture_output=True,
            text=True,
            timeout=5,
        )
    except (OSError, subprocess.TimeoutExpired):
        return None
    if proc.returncode != 0:
        return None
    return proc.stdout.strip() or None


class RunCache:
    """Persistent component-id -> last analysis cache, stored as one JSON file.

    Writes happen only from the orchestrator's single control thread, after
    the analysis stage has drained, so no locking is needed.
    """

    def __init__(self, cache_path: Path | str):
        self.cache_path = Path(cache_path)
        self.index = CacheIndex()
        self.load_error: CacheCorrupt | None = None

    def load(self) -> CacheIndex:
        """Read the persisted index; anything unusable is treated as absent."""
        self.load_error = None
        self.index = CacheIndex()

        if not self.cache_path.exists():
            logger.debug(f"No cache at {self.cache_path} - full analysis required")
            return self.index

        try:
            with open(self.cache_path, encoding="utf-8") as f:
                data = json.load(f)
            if not isinstance(data, dict):
                raise ValueError("top level is not an object")
            version = data.get("version")
            if version != CACHE_SCHEMA_VERSION:
                raise ValueError(f"schema version {version!r} != {CACHE_SCHEMA_VERSION}")
            self.index = CacheIndex.from_dict(data)
        except (OSError, ValueError, KeyError, TypeError) as e:
            self.load_error = CacheCorrupt(self.cache_path, str(e))
            logger.warning(f"{self.load_error} - falling back to a full run")
            self.index = CacheIndex()

        return self.index

    def diff(
        self,
        components: Iterable[Component],
        index: CacheIndex | None = None,
        uncovered: Iterable[str] = (),
    ) -> CacheDiff:
        """
        Compare live content hashes against the cached ones.

        A covered component also needs a result computed against its current
        hash, so a unit that failed last time counts as changed. Components in
        uncovered have no analyzer and never get a result; a hash match is
        enough for them.
        """
        index = index or self.index
        uncovered = set(uncovered)
        result = CacheDiff()
        current_ids = set()

        for component in sorted(components, key=lambda c: c.id):
            current_ids.add(component.id)
            entry = index.entries.get(component.id)
            if entry is None:
                result.new.append(component.id)
            elif entry.content_hash != component.content_hash:
                result.changed.append(component.id)
            elif component.id not in uncovered and not entry.has_current_result(component.content_hash):
                result.changed.append(component.id)
            else:
                result.unchanged.append(component.id)

        result.deleted = sorted(set(index.entries) - current_ids)
        return result

    def cached_results(self, ids: Iterable[str], index: CacheIndex | None = None) -> dict[str, AnalysisResult]:
        index = index or self.index
        return {
            key: index.entries[key].result
            for key in ids
            if key in index.entries and index.entries[key].result is not None
        }

    def cached_references(
        self,
        components: Iterable[Component],
        index: CacheIndex | None = None,
    ) -> dict[str, list[RawReference]]:
        """Raw references whose entry hash still matches the live component."""
        index = index or self.index
        reusable = {}
        for component in components:
            entry = index.entries.get(component.id)
            if entry is not None and entry.content_hash == component.content_hash:
                reusable[component.id] = list(entry.references)
        return reusable

    def merge(
        self,
        components: Iterable[Component],
        fresh_results: Mapping[str, AnalysisResult],
        unchanged_from_cache: Mapping[str, AnalysisResult],
        references: Mapping[str, list[RawReference]] | None = None,
        result_locations: Mapping[str, str] | None = None,
        run_id: str | None = None,
        revision: str | None = None,
        report_location: str | None = None,
    ) -> CacheIndex:
        """
        Build the index to persist after a run.

        Components absent from the current inventory are dropped. A component
        whose unit failed keeps its previous (now stale) result so the next
        incremental run retries it.
        """
        references = references or {}
        result_locations = result_locations or {}
        previous = self.index.entries
        entries: dict[str, CacheEntry] = {}

        for component in components:
            old = previous.get(component.id)
            if component.id in fresh_results:
                result = fresh_results[component.id]
                output = result_locations.get(component.id)
            elif component.id in unchanged_from_cache:
                result = unchanged_from_cache[component.id]
                output = old.analyzer_output if old else None
            else:
                result = old.result if old else None
                output = old.analyzer_output if old else None

            if component.id in references:
                refs = list(references[component.id])
            elif old is not None and old.content_hash == component.content_hash:
                refs = list(old.references)
            else:
                refs = []

            entries[component.id] = CacheEntry(
                component_id=component.id,
                path=component.path,
                content_hash=component.content_hash,
                result=result,
                analyzer_output=output,
                references=refs,
            )

        return CacheIndex(
            entries=entries,
            run_id=run_id,
            revision=revision,
            report_location=report_location or self.index.report_location,
        )

    def save(self, index: CacheIndex | None = None) -> bool:
        """Atomically persist the index; failure is a warning, never fatal."""
        index = index or self.index

        missing = [key for key, entry in index.entries.items() if not entry.path_exists()]
        for key in missing:
            del index.entries[key]
        if missing:
            logger.debug(f"Pruned {len(missing)} cache entries whose files are gone")

        index.updated_at = datetime.now(UTC).isoformat()
        try:
            save_json_file(index.to_dict(), self.cache_path)
        except OSError as e:
            logger.warning(f"Could not save cache to {self.cache_path}: {e}")
            return False

        self.index = index
        return True

    def clear(self) -> bool:
        """Delete the cache file. Returns True if something was removed."""
        self.index = CacheIndex()
        try:
            self.cache_path.unlink()
            return True
        except FileNotFoundError:
            return False

    def get_stats(self) -> dict[str, int]:
        entries = self.index.entries.values()
        return {
            "entries": len(self.index.entries),
            "with_results": sum(1 for e in entries if e.result is not None),
            "references": sum(len(e.references) for e in entries),
        }
