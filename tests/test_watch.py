"""Tests for the debounced watch loop.

The pipeline and the tree scan are replaced by fakes so every test runs in
well under a second.
"""

import asyncio

from agentaudit.inventory import Component, ComponentKind
from agentaudit.pipeline.cancellation import CancellationToken
from agentaudit.pipeline.structures import PipelineRun, RunMode, RunOutcome, RunResult
from agentaudit.pipeline.synthesis import SynthesisReport
from agentaudit.pipeline.watch import SessionContext, WatchLoop, WatchState


def components_for(hashes):
    return [
        Component(
            id=unit_id,
            kind=ComponentKind.AGENT,
            name=unit_id.split(":", 1)[1],
            path=f"/virtual/{unit_id}.md",
            content_hash=content_hash,
            last_modified=0.0,
        )
        for unit_id, content_hash in sorted(hashes.items())
    ]


def result_for(hashes, score=8.0, run_id="run"):
    return RunResult(
        run=PipelineRun(run_id=run_id, mode=RunMode.INCREMENTAL, scope={}),
        outcome=RunOutcome.COMPLETED_CLEAN,
        report=SynthesisReport(composite_score=score, component_score=score, graph_score=10.0),
        components=components_for(hashes),
    )


ORIGINAL = {"agent:a": "sha256:1", "agent:b": "sha256:2"}
EDITED = {"agent:a": "sha256:1", "agent:b": "sha256:3"}


class TestTriggering:
    def test_change_triggers_incremental_run(self):
        token = CancellationToken()
        modes = []

        async def run_pipeline(mode, run_token):
            modes.append(mode)
            if mode is RunMode.FULL:
                return result_for(ORIGINAL, score=6.0, run_id="first")
            token.cancel("done")
            return result_for(EDITED, score=7.5, run_id="second")

        loop = WatchLoop(
            run_pipeline, lambda: dict(EDITED), poll_interval=0.01, debounce=0.05, token=token
        )
        session = asyncio.run(loop.run(RunMode.FULL))

        assert modes == [RunMode.FULL, RunMode.INCREMENTAL]
        assert session.run_ids == ["first", "second"]
        assert session.score_delta == 1.5
        assert WatchState.DEBOUNCE_WAIT in loop.history
        assert WatchState.TRIGGERED in loop.history
        assert loop.state is WatchState.IDLE

    def test_reverted_change_does_not_run(self):
        token = CancellationToken()
        modes = []
        scans = {"count": 0}

        async def run_pipeline(mode, run_token):
            modes.append(mode)
            return result_for(ORIGINAL)

        def snapshot():
            scans["count"] += 1
            if scans["count"] == 1:
                return dict(EDITED)
            if scans["count"] >= 6:
                token.cancel("done")
            return dict(ORIGINAL)

        loop = WatchLoop(run_pipeline, snapshot, poll_interval=0.01, debounce=0.5, token=token)
        asyncio.run(loop.run(RunMode.FULL))

        assert modes == [RunMode.FULL]
        assert WatchState.DEBOUNCE_WAIT in loop.history
        assert WatchState.TRIGGERED not in loop.history

    def test_quiet_tree_never_runs_again(self):
        token = CancellationToken()
        modes = []
        scans = {"count": 0}

        async def run_pipeline(mode, run_token):
            modes.append(mode)
            return result_for(ORIGINAL)

        def snapshot():
            scans["count"] += 1
            if scans["count"] >= 3:
                token.cancel("done")
            return dict(ORIGINAL)

        asyncio.run(WatchLoop(run_pipeline, snapshot, poll_interval=0.01, token=token).run())
        assert modes == [RunMode.FULL]

    def test_failed_run_does_not_end_session(self):
        token = CancellationToken()
        calls = []

        async def run_pipeline(mode, run_token):
            calls.append(mode)
            if len(calls) == 1:
                raise RuntimeError("pipeline crashed")
            token.cancel("done")
            return result_for(EDITED)

        loop = WatchLoop(run_pipeline, lambda: dict(EDITED), poll_interval=0.01, debounce=0.0, token=token)
        session = asyncio.run(loop.run())
        assert calls == [RunMode.FULL, RunMode.INCREMENTAL]
        assert session.run_count == 1


class TestStopping:
    def test_in_flight_run_drains_within_grace(self):
        token = CancellationToken()
        token.cancel("stop")

        async def run_pipeline(mode, run_token):
            await asyncio.sleep(0.05)
            return result_for(ORIGINAL)

        loop = WatchLoop(run_pipeline, lambda: dict(ORIGINAL), grace_period=2.0, token=token)
        session = asyncio.run(loop.run())
        assert session.run_count == 1
        assert session.last_outcome is RunOutcome.COMPLETED_CLEAN

    def test_grace_period_expiry_cancels_the_run(self):
        token = CancellationToken()
        token.cancel("stop")
        run_tokens = []

        async def run_pipeline(mode, run_token):
            run_tokens.append(run_token)
            await asyncio.sleep(10)
            return result_for(ORIGINAL)

        loop = WatchLoop(run_pipeline, lambda: dict(ORIGINAL), grace_period=0.05, token=token)
        session = asyncio.run(loop.run())

        assert session.run_count == 0
        assert run_tokens[0].cancelled
        assert loop.state is WatchState.IDLE


class TestSessionContext:
    def test_score_delta(self):
        session = SessionContext(started_at=100.0)
        session.record(result_for(ORIGINAL, score=6.0, run_id="r1"))
        session.record(result_for(ORIGINAL, score=8.25, run_id="r2"))

        summary = session.summary(now=110.0)
        assert summary == {
            "duration_seconds": 10.0,
            "run_count": 2,
            "initial_score": 6.0,
            "final_score": 8.25,
            "score_delta": 2.25,
            "last_outcome": "completed_clean",
        }

    def test_runs_without_report_keep_previous_score(self):
        session = SessionContext()
        session.record(result_for(ORIGINAL, score=7.0))
        aborted = RunResult(
            run=PipelineRun(run_id="r", mode=RunMode.INCREMENTAL, scope={}),
            outcome=RunOutcome.ABORTED,
        )
        session.record(aborted)
        assert session.latest_score == 7.0
        assert session.last_outcome is RunOutcome.ABORTED
        assert session.score_delta == 0.0
