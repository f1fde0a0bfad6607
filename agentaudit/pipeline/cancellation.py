"""Cooperative cancellation shared by the orchestrator, workers and watch loop."""

import asyncio
import signal
import threading
import time

from agentaudit.errors import CancellationRequested
from agentaudit.utils.logging import logger


class CancellationToken:
    """Thread-safe stop flag.

    Setting it stops new work from being dispatched; work already running
    finishes or hits its own timeout. Safe to set from a signal handler.
    """

    def __init__(self):
        self._event = threading.Event()
        self.reason: str | None = None

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self, reason: str = "cancelled") -> None:
        if not self._event.is_set():
            self.reason = reason
            self._event.set()

    def raise_if_cancelled(self, stage: str | None = None) -> None:
        if self._event.is_set():
            raise CancellationRequested(stage)

    async def sleep(self, seconds: float, step: float = 0.1) -> bool:
        """Sleep up to seconds, waking early on cancellation. Returns cancelled."""
        deadline = time.monotonic() + max(0.0, seconds)
        while not self._event.is_set():
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                break
            await asyncio.sleep(min(step, remaining))
        return self._event.is_set()


def install_signal_handlers(token: CancellationToken) -> dict[int, object]:
    """Route SIGINT/SIGTERM to the token; a second SIGINT exits immediately.

    Returns the previous handlers so callers can restore them.
    """
    previous: dict[int, object] = {}

    def _handler(signum, frame):
        if token.cancelled and signum == signal.SIGINT:
            logger.warning("Second interrupt received - exiting immediately")
            raise KeyboardInterrupt
        logger.warning(
            f"Received signal {signal.Signals(signum).name} - "
            "finishing in-flight units, no new work will start"
        )
        token.cancel(signal.Signals(signum).name)

    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            previous[sig] = signal.signal(sig, _handler)
        except (ValueError, OSError):
            # Not on the main thread (e.g. under a test runner worker)
            continue
    return previous


def restore_signal_handlers(previous: dict[int, object]) -> None:
    for sig, handler in previous.items():
        signal.signal(sig, handler)
