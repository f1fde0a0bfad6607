"""Watch mode: poll component trees and re-run incrementally on change.

State machine:

    idle -> pending_change -> debounce_wait -> triggered -> running -> idle

- idle: sleep one poll interval, rescan hashes, compare with the snapshot
  taken by the last run.
- debounce_wait: keep rescanning until the tree has been quiet for the
  debounce window; every further change restarts the window, and a change
  that reverts to the snapshot drops back to idle.
- running: one pipeline run; the snapshot is replaced by its inventory.

Stopping sets the loop token. An in-flight run gets grace_period seconds to
finish on its own, then its own token is cancelled and the run task is
cancelled (its cleanup still runs).
"""

import asyncio
import contextlib
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from agentaudit.errors import DiscoveryError
from agentaudit.utils.logging import logger

from .cancellation import CancellationToken
from .structures import RunMode, RunOutcome, RunResult

RunPipeline = Callable[[RunMode, CancellationToken], Awaitable[RunResult]]
Snapshot = Callable[[], dict[str, str]]


class WatchState(Enum):
    IDLE = "idle"
    PENDING_CHANGE = "pending_change"
    DEBOUNCE_WAIT = "debounce_wait"
    TRIGGERED = "triggered"
    RUNNING = "running"


@dataclass
class SessionContext:
    """Aggregates across every run of one watch session."""

    started_at: float = field(default_factory=time.time)
    run_count: int = 0
    initial_score: float | None = None
    latest_score: float | None = None
    last_outcome: RunOutcome | None = None
    run_ids: list[str] = field(default_factory=list)

    def record(self, result: RunResult) -> None:
        self.run_count += 1
        self.run_ids.append(result.run.run_id)
        self.last_outcome = result.outcome
        score = result.composite_score
        if score is not None:
            if self.initial_score is None:
                self.initial_score = score
            self.latest_score = score

    @property
    def score_delta(self) -> float | None:
        if self.initial_score is None or self.latest_score is None:
            return None
        return round(self.latest_score - self.initial_score, 2)

    def summary(self, now: float | None = None) -> dict[str, Any]:
        now = time.time() if now is None else now
        return {
            "duration_seconds": round(now - self.started_at, 1),
            "run_count": self.run_count,
            "initial_score": self.initial_score,
            "final_score": self.latest_score,
            "score_delta": self.score_delta,
            "last_outcome": self.last_outcome.value if self.last_outcome else None,
        }


class WatchLoop:
    """Debounced polling loop around a pipeline runner."""

    def __init__(
        self,
        run_pipeline: RunPipeline,
        snapshot: Snapshot,
        poll_interval: float = 2.0,
        debounce: float = 1.5,
        grace_period: float = 30.0,
        token: CancellationToken | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.run_pipeline = run_pipeline
        self.snapshot = snapshot
        self.poll_interval = max(0.01, poll_interval)
        self.debounce = max(0.0, debounce)
        self.grace_period = max(0.0, grace_period)
        self.token = token or CancellationToken()
        self.clock = clock

        self.state = WatchState.IDLE
        self.history: list[WatchState] = [WatchState.IDLE]
        self.session = SessionContext()
        self._hashes: dict[str, str] = {}
        self._pending: dict[str, str] | None = None
        self._last_change = 0.0

    async def run(self, initial_mode: RunMode = RunMode.FULL) -> SessionContext:
        """Run once in initial_mode, then watch until the token is set."""
        try:
            await self._execute(initial_mode)
            while not self.token.cancelled:
                await self._step()
        finally:
            summary = self.session.summary()
            delta = summary["score_delta"]
            logger.info(
                f"Watch session ended after {summary['duration_seconds']}s: "
                f"{summary['run_count']} run(s), score "
                f"{summary['initial_score']} -> {summary['final_score']}"
                + (f" ({delta:+.2f})" if delta is not None else "")
            )
        return self.session

    def _transition(self, new_state: WatchState) -> None:
        if new_state is not self.state:
            logger.debug(f"watch: {self.state.value} -> {new_state.value}")
            self.state = new_state
            self.history.append(new_state)

    async def _step(self) -> None:
        if self.state is WatchState.IDLE:
            if await self.token.sleep(self.poll_interval):
                return
            current = await self._scan()
            if current is not None and current != self._hashes:
                self._pending = current
                self._last_change = self.clock()
                self._transition(WatchState.PENDING_CHANGE)

        elif self.state is WatchState.PENDING_CHANGE:
            changed = sorted(
                key for key in set(self._hashes) | set(self._pending or {})
                if self._hashes.get(key) != (self._pending or {}).get(key)
            )
            logger.info(f"Change detected in {len(changed)} component(s): {', '.join(changed[:5])}")
            self._transition(WatchState.DEBOUNCE_WAIT)

        elif self.state is WatchState.DEBOUNCE_WAIT:
            quiet_for = self.clock() - self._last_change
            if quiet_for >= self.debounce:
                self._transition(WatchState.TRIGGERED)
                return
            if await self.token.sleep(min(self.poll_interval, self.debounce - quiet_for)):
                return
            current = await self._scan()
            if current is None:
                return
            if current == self._hashes:
                logger.debug("watch: change reverted during debounce")
                self._pending = None
                self._transition(WatchState.IDLE)
            elif current != self._pending:
                self._pending = current
                self._last_change = self.clock()

        elif self.state is WatchState.TRIGGERED:
            await self._execute(RunMode.INCREMENTAL)

    async def _scan(self) -> dict[str, str] | None:
        try:
            return await asyncio.to_thread(self.snapshot)
        except DiscoveryError as e:
            logger.warning(f"watch: scan failed ({e}) - will retry")
            return None

    async def _execute(self, mode: RunMode) -> RunResult | None:
        self._transition(WatchState.RUNNING)
        run_token = CancellationToken()
        task = asyncio.ensure_future(self.run_pipeline(mode, run_token))

        while not task.done():
            if self.token.cancelled:
                await self._drain(task, run_token)
                break
            await asyncio.wait({task}, timeout=0.1)

        result = None
        if not task.cancelled():
            exc = task.exception()
            if exc is not None:
                logger.opt(exception=exc).error(f"watch: {mode.value} run failed: {exc}")
            else:
                result = task.result()
                self.session.record(result)
                if result.components:
                    self._hashes = {c.id: c.content_hash for c in result.components}
                elif self._pending is not None:
                    self._hashes = self._pending

        self._pending = None
        self._transition(WatchState.IDLE)
        return result

    async def _drain(self, task: asyncio.Future, run_token: CancellationToken) -> None:
        logger.info(f"watch: waiting up to {self.grace_period:g}s for the in-flight run")
        done, _ = await asyncio.wait({task}, timeout=self.grace_period)
        if done:
            return
        logger.warning("watch: grace period elapsed - cancelling the in-flight run")
        run_token.cancel("watch stopped")
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task
