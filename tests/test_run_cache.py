"""Tests for the incremental run cache."""

import json

import pytest

from agentaudit.analyzers.base import AnalysisResult
from agentaudit.cache import CacheIndex, RunCache
from agentaudit.config_runtime import DEFAULTS
from agentaudit.graph import DependencyGraph, default_extractors
from agentaudit.inventory import ComponentInventory
from agentaudit.utils.constants import CACHE_SCHEMA_VERSION


def scan(root):
    return ComponentInventory(DEFAULTS["layout"]).scan([root])


def results_for(components, score=8.0):
    return {c.id: AnalysisResult(score=score, source_hash=c.content_hash) for c in components}


@pytest.fixture
def cache(state_dir):
    return RunCache(state_dir / "cache.json")


@pytest.fixture
def saved_cache(cache, component_tree):
    """A cache holding a full run over the fixture tree."""
    components = scan(component_tree)
    graph = DependencyGraph.build(components, default_extractors())
    cache.load()
    index = cache.merge(components, results_for(components), {}, references=graph.raw_references, run_id="run-1")
    assert cache.save(index)
    return cache


class TestLoad:
    def test_missing_file_is_empty(self, cache):
        index = cache.load()
        assert index.entries == {}
        assert cache.load_error is None

    def test_corrupt_file_is_a_miss(self, cache):
        cache.cache_path.write_text("{broken", encoding="utf-8")
        assert cache.load().entries == {}
        assert cache.load_error is not None

    def test_foreign_version_is_a_miss(self, cache):
        cache.cache_path.write_text(json.dumps({"version": CACHE_SCHEMA_VERSION + 1, "entries": {}}), encoding="utf-8")
        cache.load()
        assert cache.load_error is not None
        assert "schema version" in str(cache.load_error)

    def test_round_trip(self, saved_cache, component_tree):
        reloaded = RunCache(saved_cache.cache_path)
        index = reloaded.load()
        assert index.run_id == "run-1"
        assert index.semantic_dict() == saved_cache.index.semantic_dict()
        assert len(index.entries["command:review"].references) == 3


class TestDiff:
    def test_unchanged_tree(self, saved_cache, component_tree):
        diff = saved_cache.diff(scan(component_tree))
        assert diff.all_unchanged
        assert diff.needs_analysis == []
        assert len(diff.unchanged) == 6

    def test_touched_but_identical_is_unchanged(self, saved_cache, component_tree):
        target = component_tree / "agents" / "code-reviewer.md"
        target.write_text(target.read_text(encoding="utf-8"), encoding="utf-8")
        assert saved_cache.diff(scan(component_tree)).all_unchanged

    def test_classifies_changes(self, saved_cache, component_tree):
        (component_tree / "agents" / "code-reviewer.md").write_text("rewritten", encoding="utf-8")
        (component_tree / "agents" / "planner.md").write_text("new agent", encoding="utf-8")
        (component_tree / "hooks" / "pre-commit.sh").unlink()

        diff = saved_cache.diff(scan(component_tree))
        assert diff.changed == ["agent:code-reviewer"]
        assert diff.new == ["agent:planner"]
        assert diff.deleted == ["hook:pre-commit"]
        assert diff.needs_analysis == ["agent:code-reviewer", "agent:planner"]
        assert not diff.all_unchanged

    def test_missing_result_counts_as_changed(self, cache, component_tree):
        components = scan(component_tree)
        cache.load()
        index = cache.merge(components, {}, {})
        assert cache.diff(components, index).changed == [c.id for c in components]

    def test_uncovered_component_needs_only_a_hash_match(self, cache, component_tree):
        components = scan(component_tree)
        agents = [c for c in components if c.kind.value == "agent"]
        uncovered = [c.id for c in components if c.kind.value != "agent"]
        cache.load()
        index = cache.merge(components, results_for(agents), {})

        diff = cache.diff(components, index, uncovered=uncovered)
        assert diff.all_unchanged
        assert diff.unchanged == [c.id for c in components]

    def test_uncovered_component_with_new_content_is_changed(self, cache, component_tree):
        components = scan(component_tree)
        cache.load()
        index = cache.merge(components, {}, {})
        (component_tree / "hooks" / "pre-commit.sh").write_text("#!/bin/sh\nexit 1\n", encoding="utf-8")

        diff = cache.diff(scan(component_tree), index, uncovered=[c.id for c in components])
        assert diff.changed == ["hook:pre-commit"]


class TestMerge:
    def test_failed_unit_keeps_stale_result(self, saved_cache, component_tree):
        (component_tree / "agents" / "code-reviewer.md").write_text("rewritten", encoding="utf-8")
        components = scan(component_tree)
        unchanged = saved_cache.cached_results(c.id for c in components if c.id != "agent:code-reviewer")

        index = saved_cache.merge(components, {}, unchanged)
        entry = index.entries["agent:code-reviewer"]
        assert entry.result is not None
        assert entry.result.source_hash != entry.content_hash
        # ...so the next diff still asks for it
        assert "agent:code-reviewer" in saved_cache.diff(components, index).changed

    def test_deleted_components_are_dropped(self, saved_cache, component_tree):
        (component_tree / "hooks" / "pre-commit.sh").unlink()
        components = scan(component_tree)
        index = saved_cache.merge(components, {}, saved_cache.cached_results(c.id for c in components))
        assert "hook:pre-commit" not in index.entries

    def test_references_reused_only_for_matching_hash(self, saved_cache, component_tree):
        (component_tree / "commands" / "review.md").write_text("nothing here", encoding="utf-8")
        components = scan(component_tree)
        reusable = saved_cache.cached_references(components)
        assert "command:review" not in reusable
        assert "command:deploy" in reusable

    def test_report_location_carries_forward(self, saved_cache, component_tree):
        components = scan(component_tree)
        saved_cache.index.report_location = "/tmp/old/report.json"
        index = saved_cache.merge(components, {}, {})
        assert index.report_location == "/tmp/old/report.json"


class TestPersistence:
    def test_save_is_idempotent(self, saved_cache, component_tree):
        first = saved_cache.cache_path.read_text(encoding="utf-8")
        components = scan(component_tree)
        again = saved_cache.merge(
            components, {}, saved_cache.cached_results(c.id for c in components), run_id="run-1"
        )
        saved_cache.save(again)
        second = RunCache(saved_cache.cache_path)
        second.load()
        assert json.loads(first)["entries"] == second.index.to_dict()["entries"]

    def test_save_failure_is_not_fatal(self, tmp_path):
        blocker = tmp_path / "blocker"
        blocker.write_text("file, not a directory", encoding="utf-8")
        cache = RunCache(blocker / "cache.json")
        assert cache.save(CacheIndex()) is False

    def test_clear(self, saved_cache):
        assert saved_cache.clear() is True
        assert not saved_cache.cache_path.exists()
        assert saved_cache.clear() is False

    def test_stats(self, saved_cache):
        stats = saved_cache.get_stats()
        assert stats["entries"] == 6
        assert stats["with_results"] == 6
        assert stats["references"] == 4
