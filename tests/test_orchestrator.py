"""End-to-end tests for the staged audit pipeline.

Every test drives AuditOrchestrator over the fixture tree with test
analyzers, so outcomes do not depend on the built-in scoring rules.
"""

import asyncio
import json
import threading
import time

import pytest
from conftest import TREE_IDS, SlowAnalyzer, StaticAnalyzer, registry_with

from agentaudit.cache import RunCache
from agentaudit.events import NullObserver
from agentaudit.inventory import ComponentKind
from agentaudit.ledger import ProgressLedger
from agentaudit.pipeline.cancellation import CancellationToken
from agentaudit.pipeline.orchestrator import AuditOrchestrator
from agentaudit.pipeline.structures import RunMode, RunOutcome, Stage, UnchangedDecision, UnitStatus


class RecordingObserver(NullObserver):
    def __init__(self):
        self.events = []

    def on_stage_start(self, name, index, total):
        self.events.append(("start", name))

    def on_stage_skipped(self, name, reason):
        self.events.append(("skip", name))

    def on_unit_complete(self, unit_id, status, elapsed, detail=""):
        self.events.append(("unit", unit_id, status))


class FailingWriter:
    name = "broken"

    def write(self, report, run):
        raise OSError("disk full")


class CancellingObserver(RecordingObserver):
    """Cancels the run as soon as the named stage starts."""

    def __init__(self, token, stage):
        super().__init__()
        self.token = token
        self.stage = stage

    def on_stage_start(self, name, index, total):
        super().on_stage_start(name, index, total)
        if name == self.stage.title:
            self.token.cancel("test")


class BlockingAnalyzer(StaticAnalyzer):
    """Blocks on an event for the listed components, like a hung remote call."""

    def __init__(self, blocked_ids, release):
        super().__init__()
        self.blocked_ids = set(blocked_ids)
        self.release = release

    def analyze(self, component, context):
        if component.id in self.blocked_ids:
            self.release.wait(timeout=30)
        return super().analyze(component, context)


class ConcurrencyTracker(StaticAnalyzer):
    """Records the peak number of analyze calls running at once."""

    def __init__(self, hold):
        super().__init__()
        self.hold = hold
        self.active = 0
        self.peak = 0
        self._count_lock = threading.Lock()

    def analyze(self, component, context):
        with self._count_lock:
            self.active += 1
            self.peak = max(self.peak, self.active)
        try:
            time.sleep(self.hold)
            return super().analyze(component, context)
        finally:
            with self._count_lock:
                self.active -= 1


class TestFullRun:
    def test_clean_run(self, make_options, state_dir):
        analyzer = StaticAnalyzer(score=8.0)
        result = AuditOrchestrator(make_options(), registry=registry_with(analyzer)).run_sync()

        assert result.outcome is RunOutcome.COMPLETED_CLEAN
        assert result.failures == []
        assert sorted(analyzer.calls) == TREE_IDS
        assert result.dispatched == TREE_IDS
        assert result.report.component_score == 8.0
        assert result.report.coverage["analyzed"] == 6
        assert result.report.complete

    def test_artifacts(self, make_options, state_dir):
        result = AuditOrchestrator(make_options(), registry=registry_with(StaticAnalyzer())).run_sync()
        run_dir = result.run.run_dir

        assert (run_dir / "report.json").exists()
        assert (state_dir / "latest_report.json").exists()
        assert len(list((run_dir / "results").glob("*.json"))) == 6

        ledger = ProgressLedger.load(result.run.ledger_path)
        assert ledger.metadata["status"] == "completed"
        assert ledger.unfinished_units(Stage.COMPONENT_ANALYSIS) == []
        for stage in Stage:
            assert ledger.stage_done(stage), stage

        cache = RunCache(state_dir / "cache.json")
        index = cache.load()
        assert sorted(index.entries) == TREE_IDS
        assert index.report_location == (run_dir / "report.json").as_posix()

    def test_report_includes_graph_issues(self, make_options):
        result = AuditOrchestrator(make_options(), registry=registry_with(StaticAnalyzer())).run_sync()
        report = result.report
        assert report.graph["orphans"] == ["hook:pre-commit"]
        assert {"severity": "medium", "component": "hook:pre-commit",
                "message": "orphan: not referenced by any other component"} in report.issues

    def test_stage_events_in_order(self, make_options):
        observer = RecordingObserver()
        AuditOrchestrator(make_options(), registry=registry_with(StaticAnalyzer()), observer=observer).run_sync()
        starts = [e[1] for e in observer.events if e[0] == "start"]
        assert starts == [s.title for s in Stage]

    def test_writer_failure_does_not_change_outcome(self, make_options):
        result = AuditOrchestrator(
            make_options(), registry=registry_with(StaticAnalyzer()), writers=[FailingWriter()]
        ).run_sync()
        assert result.outcome is RunOutcome.COMPLETED_CLEAN
        assert "broken" not in result.run.outputs

    def test_components_without_analyzer_are_skipped(self, make_options):
        analyzer = StaticAnalyzer()
        analyzer.kinds = frozenset({ComponentKind.AGENT})
        result = AuditOrchestrator(make_options(), registry=registry_with(analyzer)).run_sync()
        assert result.dispatched == ["agent:code-reviewer"]
        assert result.outcome is RunOutcome.COMPLETED_CLEAN



class TestFailureIsolation:
    def test_failed_unit_does_not_stop_siblings(self, make_options):
        analyzer = StaticAnalyzer(fail_on={"agent:code-reviewer"})
        result = AuditOrchestrator(make_options(), registry=registry_with(analyzer)).run_sync()

        assert result.outcome is RunOutcome.COMPLETED_WITH_FAILURES
        assert [(f.unit_id, f.status) for f in result.failures] == [("agent:code-reviewer", UnitStatus.FAILED)]
        assert "rejected by test analyzer" in result.failures[0].reason
        assert result.report.coverage == {"total": 6, "analyzed": 5, "failed": 1, "timed_out": 0, "not_run": 0}
        assert result.report.notes[0].startswith("incomplete: agent:code-reviewer (failed:")

        ledger = ProgressLedger.load(result.run.ledger_path)
        assert ledger.metadata["status"] == "completed_with_failures"
        assert ledger.status_of(Stage.COMPONENT_ANALYSIS, "agent:code-reviewer") is UnitStatus.FAILED

    def test_timeout_is_isolated(self, make_options):
        analyzer = SlowAnalyzer({"skill:lint-rules"}, sleep_for=0.6)
        result = AuditOrchestrator(make_options(unit_timeout=0.1), registry=registry_with(analyzer)).run_sync()

        assert result.outcome is RunOutcome.COMPLETED_WITH_FAILURES
        assert [(f.unit_id, f.status) for f in result.failures] == [("skill:lint-rules", UnitStatus.TIMED_OUT)]
        assert result.report.coverage["timed_out"] == 1
        assert result.report.coverage["analyzed"] == 5

    def test_hung_unit_does_not_block_return(self, make_options):
        release = threading.Event()
        analyzer = BlockingAnalyzer({"agent:code-reviewer"}, release)
        orchestrator = AuditOrchestrator(make_options(unit_timeout=0.2), registry=registry_with(analyzer))
        start = time.monotonic()
        try:
            result = orchestrator.run_sync()
            elapsed = time.monotonic() - start
        finally:
            release.set()

        assert elapsed < 5.0
        assert [(f.unit_id, f.status) for f in result.failures] == [("agent:code-reviewer", UnitStatus.TIMED_OUT)]
        assert result.outcome is RunOutcome.COMPLETED_WITH_FAILURES

    def test_timed_out_units_keep_their_worker_slot(self, make_options):
        analyzer = ConcurrencyTracker(hold=0.2)
        result = AuditOrchestrator(
            make_options(max_workers=1, unit_timeout=0.05), registry=registry_with(analyzer)
        ).run_sync()

        assert analyzer.peak == 1
        assert len(result.failures) == 6
        assert {f.status for f in result.failures} == {UnitStatus.TIMED_OUT}

    def test_failed_unit_retried_next_incremental_run(self, make_options):
        AuditOrchestrator(
            make_options(), registry=registry_with(StaticAnalyzer(fail_on={"agent:code-reviewer"}))
        ).run_sync()

        analyzer = StaticAnalyzer()
        result = AuditOrchestrator(
            make_options(mode=RunMode.INCREMENTAL), registry=registry_with(analyzer)
        ).run_sync()
        assert analyzer.calls == ["agent:code-reviewer"]
        assert result.outcome is RunOutcome.COMPLETED_CLEAN
        assert result.report.coverage["analyzed"] == 6


class TestIncremental:
    def test_unchanged_tree_reuses_report(self, make_options):
        first = AuditOrchestrator(make_options(), registry=registry_with(StaticAnalyzer())).run_sync()

        analyzer = StaticAnalyzer()
        second = AuditOrchestrator(
            make_options(mode=RunMode.INCREMENTAL, on_unchanged=UnchangedDecision.REUSE),
            registry=registry_with(analyzer),
        ).run_sync()

        assert second.reused_cached_report
        assert analyzer.calls == []
        assert second.outcome is RunOutcome.COMPLETED_CLEAN
        assert second.report.to_dict() == first.report.to_dict()

    def test_unchanged_tree_with_partial_registry(self, make_options):
        def agents_only():
            analyzer = StaticAnalyzer()
            analyzer.kinds = frozenset({ComponentKind.AGENT})
            return analyzer

        options = make_options(mode=RunMode.INCREMENTAL, on_unchanged=UnchangedDecision.REUSE)
        AuditOrchestrator(options, registry=registry_with(agents_only())).run_sync()

        analyzer = agents_only()
        second = AuditOrchestrator(options, registry=registry_with(analyzer)).run_sync()

        assert second.diff.changed == []
        assert second.diff.new == []
        assert second.diff.all_unchanged
        assert second.reused_cached_report
        assert analyzer.calls == []

    def test_cache_is_stable_across_unchanged_runs(self, make_options, state_dir):
        AuditOrchestrator(make_options(), registry=registry_with(StaticAnalyzer())).run_sync()
        first = json.loads((state_dir / "cache.json").read_text(encoding="utf-8"))["entries"]

        AuditOrchestrator(
            make_options(mode=RunMode.INCREMENTAL), registry=registry_with(StaticAnalyzer())
        ).run_sync()
        second = json.loads((state_dir / "cache.json").read_text(encoding="utf-8"))["entries"]
        assert first == second

    def test_rerun_produces_identical_report(self, make_options):
        first = AuditOrchestrator(make_options(), registry=registry_with(StaticAnalyzer())).run_sync()

        analyzer = StaticAnalyzer()
        second = AuditOrchestrator(
            make_options(mode=RunMode.INCREMENTAL, on_unchanged=UnchangedDecision.RERUN),
            registry=registry_with(analyzer),
        ).run_sync()
        assert sorted(analyzer.calls) == TREE_IDS
        assert second.report.to_dict() == first.report.to_dict()

    def test_abort_decision(self, make_options):
        AuditOrchestrator(make_options(), registry=registry_with(StaticAnalyzer())).run_sync()
        result = AuditOrchestrator(
            make_options(mode=RunMode.INCREMENTAL),
            registry=registry_with(StaticAnalyzer()),
            decide_unchanged=lambda diff: UnchangedDecision.ABORT,
        ).run_sync()
        assert result.outcome is RunOutcome.ABORTED
        assert not result.cancelled
        assert result.report is None

    def test_only_changed_components_are_dispatched(self, make_options, component_tree):
        AuditOrchestrator(make_options(), registry=registry_with(StaticAnalyzer(score=8.0))).run_sync()
        (component_tree / "agents" / "code-reviewer.md").write_text("rewritten", encoding="utf-8")

        analyzer = StaticAnalyzer(score=4.0)
        result = AuditOrchestrator(
            make_options(mode=RunMode.INCREMENTAL), registry=registry_with(analyzer)
        ).run_sync()

        assert analyzer.calls == ["agent:code-reviewer"]
        assert result.diff.changed == ["agent:code-reviewer"]
        rows = {row["id"]: row["score"] for row in result.report.components}
        assert rows["agent:code-reviewer"] == 4.0
        assert rows["command:review"] == 8.0

    def test_missing_cached_report_falls_back_to_rerun(self, make_options, state_dir):
        first = AuditOrchestrator(make_options(), registry=registry_with(StaticAnalyzer())).run_sync()
        (first.run.run_dir / "report.json").unlink()

        analyzer = StaticAnalyzer()
        result = AuditOrchestrator(
            make_options(mode=RunMode.INCREMENTAL), registry=registry_with(analyzer)
        ).run_sync()
        assert not result.reused_cached_report
        assert sorted(analyzer.calls) == TREE_IDS


class TestCancellationAndResume:
    def test_cancel_stops_new_dispatch(self, make_options):
        token = CancellationToken()
        analyzer = StaticAnalyzer(on_call=lambda component: token.cancel("test"))
        result = AuditOrchestrator(
            make_options(max_workers=1), registry=registry_with(analyzer)
        ).run_sync(token=token)

        assert result.cancelled
        assert result.outcome is RunOutcome.ABORTED
        assert len(analyzer.calls) == 1
        assert result.report is not None
        assert result.report.coverage["not_run"] == 5
        assert ProgressLedger.load(result.run.ledger_path).metadata["status"] == "cancelled"

    def test_resume_skips_completed_units(self, make_options):
        token = CancellationToken()
        first_analyzer = StaticAnalyzer(on_call=lambda component: token.cancel("test"))
        interrupted = AuditOrchestrator(
            make_options(max_workers=1), registry=registry_with(first_analyzer)
        ).run_sync(token=token)
        done_unit = first_analyzer.calls[0]

        ledger = ProgressLedger.load(interrupted.run.ledger_path)
        analyzer = StaticAnalyzer()
        resumed = AuditOrchestrator(make_options(), registry=registry_with(analyzer)).run_sync(ledger=ledger)

        assert resumed.run.run_id == interrupted.run.run_id
        assert done_unit not in analyzer.calls
        assert sorted(analyzer.calls + [done_unit]) == TREE_IDS
        assert resumed.outcome is RunOutcome.COMPLETED_CLEAN
        assert resumed.report.coverage["analyzed"] == 6
        assert ProgressLedger.load(interrupted.run.ledger_path).metadata["status"] == "completed"

    def test_resume_retries_failed_units(self, make_options):
        failed = AuditOrchestrator(
            make_options(), registry=registry_with(StaticAnalyzer(fail_on={"command:deploy"}))
        ).run_sync()

        analyzer = StaticAnalyzer()
        resumed = AuditOrchestrator(make_options(), registry=registry_with(analyzer)).run_sync(
            ledger=ProgressLedger.load(failed.run.ledger_path)
        )
        assert analyzer.calls == ["command:deploy"]
        assert resumed.outcome is RunOutcome.COMPLETED_CLEAN

    def test_cancel_before_start(self, make_options):
        token = CancellationToken()
        token.cancel()
        analyzer = StaticAnalyzer()
        result = AuditOrchestrator(make_options(), registry=registry_with(analyzer)).run_sync(token=token)
        assert result.cancelled
        assert analyzer.calls == []

    @pytest.mark.parametrize("stage", [Stage.GRAPH_ANALYSIS, Stage.SYNTHESIS, Stage.REPORTING])
    def test_cancel_in_later_stage_halts_before_next(self, make_options, stage):
        token = CancellationToken()
        observer = CancellingObserver(token, stage)
        result = AuditOrchestrator(
            make_options(), registry=registry_with(StaticAnalyzer()), observer=observer
        ).run_sync(token=token)

        assert result.cancelled
        assert result.outcome is RunOutcome.ABORTED
        assert result.report is not None

        starts = [e[1] for e in observer.events if e[0] == "start"]
        assert starts[starts.index(stage.title) + 1:] == [Stage.CLEANUP.title]

        ledger = ProgressLedger.load(result.run.ledger_path)
        assert ledger.metadata["status"] == "cancelled"
        assert ledger.stage_done(Stage.CLEANUP)


class TestScopeAndDryRun:
    def test_dry_run_writes_nothing(self, make_options, state_dir):
        analyzer = StaticAnalyzer()
        result = AuditOrchestrator(make_options(dry_run=True), registry=registry_with(analyzer)).run_sync()

        assert result.outcome is RunOutcome.COMPLETED_CLEAN
        assert result.dispatched == TREE_IDS
        assert analyzer.calls == []
        assert result.run.run_dir is None
        assert not (state_dir / "cache.json").exists()
        assert not (state_dir / "runs").exists()

    def test_missing_root_aborts(self, make_options, tmp_path):
        result = AuditOrchestrator(
            make_options(roots=[tmp_path / "missing"]), registry=registry_with(StaticAnalyzer())
        ).run_sync()
        assert result.outcome is RunOutcome.ABORTED
        assert "does not exist" in result.error

    def test_empty_explicit_scope_aborts(self, make_options, tmp_path):
        empty = tmp_path / "empty"
        empty.mkdir()
        result = AuditOrchestrator(
            make_options(roots=[empty]), registry=registry_with(StaticAnalyzer())
        ).run_sync()
        assert result.outcome is RunOutcome.ABORTED

    def test_empty_default_scope_is_clean(self, make_options, tmp_path):
        empty = tmp_path / "empty"
        empty.mkdir()
        result = AuditOrchestrator(
            make_options(roots=[empty], explicit_scope=False), registry=registry_with(StaticAnalyzer())
        ).run_sync()
        assert result.outcome is RunOutcome.COMPLETED_CLEAN
        assert result.report.coverage["total"] == 0

    def test_retention_prunes_old_runs(self, make_options, state_dir):
        for _ in range(3):
            AuditOrchestrator(make_options(keep_runs=2), registry=registry_with(StaticAnalyzer())).run_sync()
        assert len(list((state_dir / "runs").iterdir())) == 2

    def test_async_entry_point(self, make_options):
        orchestrator = AuditOrchestrator(make_options(), registry=registry_with(StaticAnalyzer()))
        result = asyncio.run(orchestrator.run())
        assert result.outcome is RunOutcome.COMPLETED_CLEAN
