"""Audit pipeline orchestrator.

Runs the fixed stage sequence over one scope:

    Discovery -> CacheDiff -> ComponentAnalysis -> GraphAnalysis
        -> Synthesis -> Reporting -> Cleanup

Execution model:
- One control coroutine drives the stages in order.
- ComponentAnalysis fans out one unit per component onto a dedicated
  ThreadPoolExecutor of max_workers threads, wrapped in asyncio.wait_for for
  the per-unit timeout. A worker slot stays taken until its thread returns,
  so a timed-out unit still counts against max_workers. A unit that fails or
  times out is recorded and never aborts its siblings. Threads still running
  when the stage ends are abandoned, not joined.
- The dependency graph is built once before analysis starts and is
  read-only from then on, so analyzers can consult it concurrently.
- Every unit transition is written to the ProgressLedger; a resumed run
  skips units already marked done.
- Cancellation stops new dispatch; in-flight units drain, then the run
  returns ABORTED with whatever partial report can be synthesized.
- Cleanup runs in a finally block, whatever happened before it.
"""

import asyncio
import contextlib
import time
from collections.abc import Callable, Iterable
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Any

from agentaudit.analyzers.base import AnalysisContext, AnalysisResult
from agentaudit.analyzers.registry import AnalyzerRegistry, default_registry
from agentaudit.cache.run_cache import CacheDiff, CacheIndex, RunCache, read_revision
from agentaudit.errors import (
    AnalyzerError,
    AnalyzerTimeout,
    CancellationRequested,
    DiscoveryError,
    FatalDiscoveryError,
)
from agentaudit.events import NullObserver, PipelineObserver
from agentaudit.graph.builder import DependencyGraph
from agentaudit.graph.extractors import EdgeExtractor, default_extractors
from agentaudit.inventory import Component, ComponentInventory
from agentaudit.ledger import ProgressLedger, new_run_id, result_file_name
from agentaudit.reporting import JsonReportWriter, ReportWriter, load_report
from agentaudit.retention import clear_dangling_outputs, prune_runs
from agentaudit.utils.constants import RESULTS_DIR_NAME
from agentaudit.utils.helpers import load_json_file, save_json_file
from agentaudit.utils.logging import logger

from .cancellation import CancellationToken
from .structures import (
    STAGE_ORDER,
    PipelineOptions,
    PipelineRun,
    RunOutcome,
    RunResult,
    Stage,
    UnchangedDecision,
    UnitFailure,
    UnitStatus,
)
from .synthesis import SynthesisReport, synthesize

UnchangedCallback = Callable[[CacheDiff], UnchangedDecision]

_LEDGER_STATUS = {
    RunOutcome.COMPLETED_CLEAN: "completed",
    RunOutcome.COMPLETED_WITH_FAILURES: "completed_with_failures",
    RunOutcome.ABORTED: "aborted",
}


@dataclass
class _RunState:
    """Mutable bookkeeping for one run; owned by the control coroutine."""

    run: PipelineRun
    ledger: ProgressLedger | None
    resuming: bool
    started: float = field(default_factory=time.monotonic)
    components: list[Component] = field(default_factory=list)
    diff: CacheDiff | None = None
    graph: DependencyGraph | None = None
    graph_summary: dict[str, Any] | None = None
    fresh: dict[str, AnalysisResult] = field(default_factory=dict)
    resumed: dict[str, AnalysisResult] = field(default_factory=dict)
    cached: dict[str, AnalysisResult] = field(default_factory=dict)
    result_locations: dict[str, str] = field(default_factory=dict)
    failures: dict[str, UnitFailure] = field(default_factory=dict)
    not_run: set[str] = field(default_factory=set)
    dispatched: list[str] = field(default_factory=list)
    report: SynthesisReport | None = None
    report_location: str | None = None
    reused: bool = False
    force_rerun: bool = False
    pending_index: CacheIndex | None = None
    timings: dict[str, float] = field(default_factory=dict)
    soft_timeout_logged: bool = False

    def all_results(self) -> dict[str, AnalysisResult]:
        return {**self.cached, **self.resumed, **self.fresh}


class AuditOrchestrator:
    """Drives one audit run over a scope of component roots."""

    def __init__(
        self,
        options: PipelineOptions,
        registry: AnalyzerRegistry | None = None,
        cache: RunCache | None = None,
        extractors: Iterable[EdgeExtractor] | None = None,
        writers: Iterable[ReportWriter] | None = None,
        observer: PipelineObserver | None = None,
        decide_unchanged: UnchangedCallback | None = None,
        inventory: ComponentInventory | None = None,
    ):
        self.options = options
        self.registry = registry or default_registry(options.merge_strategy)
        self.cache = cache or RunCache(options.cache_path)
        self.extractors = list(extractors) if extractors is not None else default_extractors()
        self.writers = list(writers) if writers is not None else [JsonReportWriter(options.latest_report)]
        self.observer = observer or NullObserver()
        self.decide_unchanged = decide_unchanged
        self.inventory = inventory or ComponentInventory(options.layout)

    def run_sync(self, token: CancellationToken | None = None, ledger: ProgressLedger | None = None) -> RunResult:
        return asyncio.run(self.run(token=token, ledger=ledger))

    async def run(self, token: CancellationToken | None = None, ledger: ProgressLedger | None = None) -> RunResult:
        """
        Execute the pipeline.

        Args:
            token: Cooperative cancellation flag (a fresh one if omitted)
            ledger: An existing ledger to resume; a new one is created otherwise

        Returns:
            RunResult with the tri-state outcome. Only discovery errors,
            an "abort" unchanged-decision and cancellation produce ABORTED.
        """
        token = token or CancellationToken()
        opts = self.options
        state = self._start_run(ledger)
        self.observer.on_run_start(state.run.run_id, opts.mode.value)
        logger.info(
            f"Run {state.run.run_id} started ({opts.mode.value}"
            f"{', resumed' if state.resuming else ''}{', dry run' if opts.dry_run else ''})"
        )

        outcome: RunOutcome | None = None
        error: str | None = None
        cancelled = False

        try:
            with self._stage(state, Stage.DISCOVERY):
                await self._discover(state)
            token.raise_if_cancelled(Stage.DISCOVERY.value)

            with self._stage(state, Stage.CACHE_DIFF):
                decision = self._diff(state)
            token.raise_if_cancelled(Stage.CACHE_DIFF.value)

            if decision is UnchangedDecision.ABORT:
                outcome = RunOutcome.ABORTED
                error = "nothing changed since the last run; aborted by request"
                self._skip(state, Stage.COMPONENT_ANALYSIS, Stage.REPORTING, "aborted: nothing changed")
            elif opts.dry_run:
                state.dispatched = self._plan_units(state)
                outcome = RunOutcome.COMPLETED_CLEAN
                self._skip(state, Stage.COMPONENT_ANALYSIS, Stage.REPORTING, "dry run")
            elif state.reused:
                self._skip(state, Stage.COMPONENT_ANALYSIS, Stage.SYNTHESIS, "reused cached report")
                with self._stage(state, Stage.REPORTING):
                    self._report(state)
                outcome = RunOutcome.COMPLETED_CLEAN
                self._prepare_index(state)
            else:
                with self._stage(state, Stage.COMPONENT_ANALYSIS):
                    await self._analyze(state, token)

                with self._stage(state, Stage.GRAPH_ANALYSIS):
                    self._graph_analysis(state)
                token.raise_if_cancelled(Stage.GRAPH_ANALYSIS.value)

                with self._stage(state, Stage.SYNTHESIS):
                    state.report = self._synthesize(state)
                    self._mark_stage(state, Stage.SYNTHESIS)
                token.raise_if_cancelled(Stage.SYNTHESIS.value)

                with self._stage(state, Stage.REPORTING):
                    self._report(state)
                token.raise_if_cancelled(Stage.REPORTING.value)

                outcome = RunOutcome.COMPLETED_WITH_FAILURES if state.failures else RunOutcome.COMPLETED_CLEAN
                self._prepare_index(state)

        except CancellationRequested as e:
            cancelled = True
            outcome = RunOutcome.ABORTED
            error = str(e)
            logger.warning(f"Run {state.run.run_id} cancelled: {e}")
            self._partial_report(state)
            self._prepare_index(state)
        except (DiscoveryError, FatalDiscoveryError) as e:
            outcome = RunOutcome.ABORTED
            error = str(e)
            logger.error(f"Run {state.run.run_id} aborted: {e}")
        finally:
            self._cleanup(state, outcome, cancelled)

        return RunResult(
            run=state.run,
            outcome=outcome,
            report=state.report,
            failures=[state.failures[k] for k in sorted(state.failures)],
            components=state.components,
            diff=state.diff,
            dispatched=state.dispatched,
            reused_cached_report=state.reused,
            cancelled=cancelled,
            error=error,
            ledger_error=str(state.ledger.write_error) if state.ledger and state.ledger.write_error else None,
            stage_timings=state.timings,
        )

    # ------------------------------------------------------------------
    # Stage plumbing
    # ------------------------------------------------------------------

    def _start_run(self, ledger: ProgressLedger | None) -> _RunState:
        opts = self.options
        resuming = ledger is not None
        if ledger is None and not opts.dry_run:
            ledger = ProgressLedger.create(
                opts.runs_dir,
                new_run_id(),
                target=[str(r) for r in opts.roots],
                mode=opts.mode.value,
                kinds=[k.value for k in opts.kinds],
            )
        run_id = ledger.run_id if ledger else new_run_id()
        run = PipelineRun(
            run_id=run_id,
            mode=opts.mode,
            scope={"roots": [str(r) for r in opts.roots], "kinds": [k.value for k in opts.kinds]},
            run_dir=ledger.run_dir if ledger else None,
            ledger_path=ledger.path if ledger else None,
        )
        return _RunState(run=run, ledger=ledger, resuming=resuming)

    @contextlib.contextmanager
    def _stage(self, state: _RunState, stage: Stage):
        index = STAGE_ORDER.index(stage) + 1
        self.observer.on_stage_start(stage.title, index, len(STAGE_ORDER))
        logger.debug(f"[{state.run.run_id}] stage {stage.value} started")
        start = time.time()
        try:
            yield
        except Exception as e:
            self.observer.on_stage_failed(stage.title, str(e))
            raise
        elapsed = time.time() - start
        state.timings[stage.value] = elapsed
        self.observer.on_stage_complete(stage.title, elapsed)
        self._check_soft_timeout(state)

    def _skip(self, state: _RunState, first: Stage, last: Stage, reason: str) -> None:
        for stage in STAGE_ORDER[STAGE_ORDER.index(first): STAGE_ORDER.index(last) + 1]:
            self.observer.on_stage_skipped(stage.title, reason)
            self._mark_stage(state, stage, note=reason)

    def _mark_stage(self, state: _RunState, stage: Stage, note: str | None = None) -> None:
        if state.ledger is not None:
            state.ledger.mark_stage(stage, UnitStatus.DONE, note)

    def _check_soft_timeout(self, state: _RunState) -> None:
        elapsed = time.monotonic() - state.started
        if not state.soft_timeout_logged and elapsed > self.options.soft_run_timeout:
            state.soft_timeout_logged = True
            message = (
                f"Run {state.run.run_id} exceeded soft timeout of "
                f"{self.options.soft_run_timeout:g}s ({elapsed:.0f}s elapsed) - continuing"
            )
            logger.warning(message)
            self.observer.on_log(message, is_error=True)

    # ------------------------------------------------------------------
    # Stages
    # ------------------------------------------------------------------

    async def _discover(self, state: _RunState) -> None:
        opts = self.options
        ledger = state.ledger
        if state.resuming and ledger is not None and ledger.stage_done(Stage.DISCOVERY):
            restored = ledger.inventory()
            if restored is not None:
                state.components = restored
                logger.info(f"Restored {len(restored)} components from ledger")
                return

        components = await asyncio.to_thread(self.inventory.scan, opts.roots, opts.kinds or None)
        if not components and opts.explicit_scope:
            raise FatalDiscoveryError([str(r) for r in opts.roots], [k.value for k in opts.kinds])

        state.components = components
        logger.info(f"Discovered {len(components)} components under {len(opts.roots)} root(s)")
        if ledger is not None:
            ledger.set_inventory(components)
            ledger.mark_stage(Stage.DISCOVERY, UnitStatus.DONE)

    def _diff(self, state: _RunState) -> UnchangedDecision | None:
        self.cache.load()
        decision = None
        if self.options.uses_cache_diff:
            uncovered = [c.id for c in state.components if not self.registry.covers(c)]
            diff = self.cache.diff(state.components, uncovered=uncovered)
            state.diff = diff
            logger.info(
                f"Cache diff: {len(diff.changed)} changed, {len(diff.new)} new, "
                f"{len(diff.unchanged)} unchanged, {len(diff.deleted)} deleted"
            )
            if diff.all_unchanged and state.components and not state.resuming:
                decision = self._decide_unchanged(state, diff)
        self._mark_stage(state, Stage.CACHE_DIFF)
        return decision

    def _decide_unchanged(self, state: _RunState, diff: CacheDiff) -> UnchangedDecision:
        decision = self.decide_unchanged(diff) if self.decide_unchanged else self.options.on_unchanged
        logger.info(f"No changes since last run - decision: {decision.value}")

        if decision is UnchangedDecision.REUSE:
            location = self.cache.index.report_location
            if not location:
                logger.warning("No cached report to reuse - re-running analysis")
                decision = UnchangedDecision.RERUN
            else:
                try:
                    state.report = load_report(location)
                    state.reused = True
                except (OSError, ValueError, KeyError, TypeError) as e:
                    logger.warning(f"Cached report {location} unusable ({e}) - re-running analysis")
                    decision = UnchangedDecision.RERUN

        if decision is UnchangedDecision.RERUN:
            state.force_rerun = True
        return decision

    def _plan_units(self, state: _RunState) -> list[str]:
        """Decide which components need analysis this run; fills state.cached/resumed."""
        covered = {c.id for c in state.components if self.registry.covers(c)}
        skipped = sorted(c.id for c in state.components if c.id not in covered)
        if skipped:
            logger.debug(f"No analyzer registered for {len(skipped)} components: {', '.join(skipped)}")

        if self.options.uses_cache_diff and state.diff is not None and not state.force_rerun:
            pending = set(state.diff.needs_analysis) & covered
            state.cached = self.cache.cached_results(set(state.diff.unchanged) & covered)
        else:
            pending = set(covered)

        ledger = state.ledger
        if state.resuming and ledger is not None and ledger.units(Stage.COMPONENT_ANALYSIS):
            pending = set()
            for record in ledger.units(Stage.COMPONENT_ANALYSIS):
                if record.unit_id not in covered:
                    continue
                if record.status is UnitStatus.DONE and record.result_ref:
                    result = self._load_unit_result(state, record.result_ref)
                    if result is not None:
                        state.resumed[record.unit_id] = result
                        state.result_locations[record.unit_id] = (ledger.run_dir / record.result_ref).as_posix()
                        continue
                pending.add(record.unit_id)
            logger.info(
                f"Resuming: {len(state.resumed)} units already done, {len(pending)} to (re)dispatch"
            )

        return sorted(pending)

    def _load_unit_result(self, state: _RunState, result_ref: str) -> AnalysisResult | None:
        path = state.ledger.run_dir / result_ref
        try:
            return AnalysisResult.from_dict(load_json_file(path)["result"])
        except (OSError, ValueError, KeyError, TypeError) as e:
            logger.warning(f"Result file {path} unusable ({e}) - unit will be re-run")
            return None

    async def _analyze(self, state: _RunState, token: CancellationToken) -> None:
        opts = self.options
        units = self._plan_units(state)
        state.dispatched = units
        by_id = {c.id: c for c in state.components}

        cached_refs = None
        if opts.uses_cache_diff and not state.force_rerun:
            cached_refs = self.cache.cached_references(state.components)
        state.graph = await asyncio.to_thread(
            DependencyGraph.build, state.components, self.extractors, opts.entry_kinds, cached_refs
        )

        if state.ledger is not None:
            state.ledger.register_units(Stage.COMPONENT_ANALYSIS, units)

        base_context = AnalysisContext.for_graph(state.graph, run_id=state.run.run_id)
        completed: dict[str, AnalysisResult] = state.all_results()
        workers = max(1, opts.max_workers)
        slots = asyncio.Semaphore(workers)
        loop = asyncio.get_running_loop()
        executor = ThreadPoolExecutor(max_workers=workers, thread_name_prefix="agentaudit-unit")
        logger.info(f"Dispatching {len(units)} units on up to {workers} workers")

        def free_slot(_future: Future) -> None:
            # A closed loop means the stage is over and nobody waits for the slot
            with contextlib.suppress(RuntimeError):
                loop.call_soon_threadsafe(slots.release)

        async def run_unit(component: Component) -> None:
            await slots.acquire()
            if token.cancelled:
                slots.release()
                state.not_run.add(component.id)
                return
            context = base_context.with_siblings(completed)
            future = executor.submit(self.registry.analyze, component, context)
            future.add_done_callback(free_slot)
            await self._run_unit(state, component, future, completed)

        try:
            await asyncio.gather(*(run_unit(by_id[unit_id]) for unit_id in units))
        finally:
            executor.shutdown(wait=False, cancel_futures=True)

        token.raise_if_cancelled(Stage.COMPONENT_ANALYSIS.value)
        self._mark_stage(state, Stage.COMPONENT_ANALYSIS)

    async def _run_unit(
        self,
        state: _RunState,
        component: Component,
        future: Future,
        completed: dict[str, AnalysisResult],
    ) -> None:
        unit_id = component.id
        timeout = self.registry.unit_timeout(component, self.options.unit_timeout)
        if state.ledger is not None:
            state.ledger.update(Stage.COMPONENT_ANALYSIS, unit_id, UnitStatus.RUNNING)

        start = time.time()
        try:
            result = await asyncio.wait_for(asyncio.wrap_future(future), timeout=timeout)
        except TimeoutError:
            error = AnalyzerTimeout(unit_id, timeout)
            self._record_failure(state, unit_id, UnitStatus.TIMED_OUT, error.reason, time.time() - start)
            return
        except AnalyzerError as e:
            reason = f"[{e.analyzer}] {e.reason}" if e.analyzer else e.reason
            self._record_failure(state, unit_id, UnitStatus.FAILED, reason, time.time() - start)
            return
        except Exception as e:
            logger.opt(exception=True).debug(f"Unexpected failure analyzing {unit_id}")
            self._record_failure(
                state, unit_id, UnitStatus.FAILED, f"{type(e).__name__}: {e}", time.time() - start
            )
            return

        elapsed = time.time() - start
        state.fresh[unit_id] = result
        completed[unit_id] = result
        result_ref = self._write_unit_result(state, component, result)
        if state.ledger is not None:
            state.ledger.update(Stage.COMPONENT_ANALYSIS, unit_id, UnitStatus.DONE, result_ref)
        self.observer.on_unit_complete(unit_id, UnitStatus.DONE.value, elapsed, f"score {result.score:.1f}")

    def _record_failure(
        self, state: _RunState, unit_id: str, status: UnitStatus, reason: str, elapsed: float
    ) -> None:
        state.failures[unit_id] = UnitFailure(unit_id, status, reason)
        logger.warning(f"Unit {unit_id} {status.value}: {reason}")
        if state.ledger is not None:
            state.ledger.update(Stage.COMPONENT_ANALYSIS, unit_id, status, note=reason)
        self.observer.on_unit_complete(unit_id, status.value, elapsed, reason)

    def _write_unit_result(self, state: _RunState, component: Component, result: AnalysisResult) -> str | None:
        """Persist one unit's result under the run directory; returns the ledger ref."""
        if state.run.run_dir is None:
            return None
        result_ref = f"{RESULTS_DIR_NAME}/{result_file_name(component.id)}"
        path = state.run.run_dir / result_ref
        try:
            save_json_file({"unit": component.id, "path": component.path, "result": result.to_dict()}, path)
        except OSError as e:
            logger.warning(f"Could not write result for {component.id} to {path}: {e}")
            return None
        state.result_locations[component.id] = path.as_posix()
        return result_ref

    def _graph_analysis(self, state: _RunState) -> None:
        graph = state.graph or DependencyGraph.build(state.components, self.extractors, self.options.entry_kinds)
        state.graph = graph
        state.graph_summary = graph.summary(self.options.max_depth_warning)
        health = state.graph_summary["health"]
        logger.info(
            f"Graph: {health['cycle_count']} cycles, {health['orphan_count']} orphans, "
            f"{health['broken_link_count']} broken links, max depth {health['max_depth']}"
        )
        self._mark_stage(state, Stage.GRAPH_ANALYSIS)

    def _synthesize(self, state: _RunState) -> SynthesisReport:
        opts = self.options
        return synthesize(
            state.components,
            state.all_results(),
            state.graph_summary or {},
            failures=state.failures.values(),
            not_run=state.not_run,
            component_weight=opts.component_weight,
            graph_weight=opts.graph_weight,
            max_depth_warning=opts.max_depth_warning,
        )

    def _partial_report(self, state: _RunState) -> None:
        """Best-effort report from whatever completed before cancellation."""
        if state.report is not None or not state.components:
            return
        if state.graph is not None and state.graph_summary is None:
            state.graph_summary = state.graph.summary(self.options.max_depth_warning)
        analyzed = set(state.all_results()) | set(state.failures)
        state.not_run |= {u for u in state.dispatched if u not in analyzed}
        state.report = self._synthesize(state)

    def _report(self, state: _RunState) -> None:
        for writer in self.writers:
            try:
                location = writer.write(state.report, state.run)
            except Exception as e:
                logger.opt(exception=True).warning(f"Report writer '{writer.name}' failed: {e}")
                self.observer.on_log(f"Report writer '{writer.name}' failed: {e}", is_error=True)
                continue
            if location:
                state.run.outputs[writer.name] = location
                if state.report_location is None:
                    state.report_location = location
        self._mark_stage(state, Stage.REPORTING)

    def _prepare_index(self, state: _RunState) -> None:
        """Stage the cache index to persist during cleanup."""
        if self.options.dry_run or not state.components:
            return
        if state.reused:
            state.cached = self.cache.cached_results(c.id for c in state.components)
        state.pending_index = self.cache.merge(
            state.components,
            fresh_results={**state.resumed, **state.fresh},
            unchanged_from_cache=state.cached,
            references=state.graph.raw_references if state.graph else None,
            result_locations=state.result_locations,
            run_id=state.run.run_id,
            revision=read_revision(self.options.roots[0]) if self.options.roots else None,
            report_location=state.report_location,
        )

    def _cleanup(self, state: _RunState, outcome: RunOutcome | None, cancelled: bool) -> None:
        opts = self.options
        with self._stage(state, Stage.CLEANUP):
            try:
                prune_runs(
                    opts.runs_dir,
                    opts.keep_runs,
                    opts.max_age_days,
                    protect={state.run.run_id},
                    dry_run=opts.dry_run,
                )
            except OSError as e:
                logger.warning(f"Run retention skipped: {e}")

            if state.pending_index is not None:
                clear_dangling_outputs(state.pending_index)
                self.cache.save(state.pending_index)

            if state.ledger is not None:
                state.ledger.mark_stage(Stage.CLEANUP, UnitStatus.DONE)
                if cancelled:
                    status = "cancelled"
                elif outcome is None:
                    status = "interrupted"
                else:
                    status = _LEDGER_STATUS[outcome]
                state.ledger.finish(status)

        logger.info(
            f"Run {state.run.run_id} finished: "
            f"{outcome.value if outcome else 'interrupted'} in {time.monotonic() - state.started:.1f}s"
        )
