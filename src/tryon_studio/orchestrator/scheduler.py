"""Background reconciliation scheduler with explicit start/stop lifecycle."""

from __future__ import annotations

import logging
import signal
import threading
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from datetime import datetime

from tryon_studio.orchestrator.models import ReconcileSummary
from tryon_studio.storage.common import utc_now

logger = logging.getLogger(__name__)

THREAD_JOIN_TIMEOUT_SECONDS = 15.0


class ReconciliationScheduler:
    """Run ``tick`` every ``interval_seconds`` until stopped.

    The clock and the wait function are injectable so tests can drive ticks
    deterministically with ``run_tick`` instead of a real thread.
    """

    def __init__(
        self,
        tick: Callable[[], ReconcileSummary],
        *,
        interval_seconds: float = 5.0,
        clock: Callable[[], datetime] = utc_now,
        wait: Callable[[float], bool] | None = None,
    ) -> None:
        self._tick = tick
        self.interval_seconds = interval_seconds
        self._clock = clock
        self._stop = threading.Event()
        self._wait = wait or self._stop.wait
        self._thread: threading.Thread | None = None
        self.tick_count = 0
        self.last_tick_at: datetime | None = None
        self.last_summary: ReconcileSummary | None = None

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        if self.is_running:
            return
        self._stop.clear()
        self._thread = threading.Thread(
            target=self._loop,
            daemon=True,
            name="tryon-reconciler",
        )
        self._thread.start()
        logger.info("Reconciliation scheduler started (interval %.1fs)", self.interval_seconds)

    def stop(self, timeout: float = THREAD_JOIN_TIMEOUT_SECONDS) -> None:
        self._stop.set()
        if self._thread is None:
            return
        self._thread.join(timeout=timeout)
        if self._thread.is_alive():
            # Keep the handle so start() cannot spawn a second loop.
            logger.warning(
                "Reconciliation scheduler did not stop within %.1fs; tick still running",
                timeout,
            )
            return
        self._thread = None
        logger.info("Reconciliation scheduler stopped")

    def run_tick(self) -> ReconcileSummary | None:
        """Run one tick; unexpected errors are logged and the loop goes on."""

        self.last_tick_at = self._clock()
        self.tick_count += 1
        try:
            summary = self._tick()
        except Exception:  # noqa: BLE001
            logger.exception("Reconciliation tick %d failed", self.tick_count)
            return None
        self.last_summary = summary
        return summary

    def run_forever(self, *, max_ticks: int | None = None) -> int:
        """Tick in the calling thread until SIGINT/SIGTERM or ``max_ticks``."""

        self._stop.clear()
        ticks = 0
        with self._signal_handlers():
            while not self._stop.is_set():
                self.run_tick()
                ticks += 1
                if max_ticks is not None and ticks >= max_ticks:
                    break
                if self._wait(self.interval_seconds):
                    break
        return ticks

    def _loop(self) -> None:
        while not self._stop.is_set():
            self.run_tick()
            if self._wait(self.interval_seconds):
                break

    @contextmanager
    def _signal_handlers(self) -> Iterator[None]:
        if threading.current_thread() is not threading.main_thread():
            yield
            return

        original_sigint = signal.getsignal(signal.SIGINT)
        original_sigterm = signal.getsignal(signal.SIGTERM)

        def _handler(signum: int, _: object | None) -> None:
            logger.info("Received %s, stopping reconciliation", signal.Signals(signum).name)
            self._stop.set()

        signal.signal(signal.SIGINT, _handler)
        signal.signal(signal.SIGTERM, _handler)
        try:
            yield
        finally:
            signal.signal(signal.SIGINT, original_sigint)
            signal.signal(signal.SIGTERM, original_sigterm)
