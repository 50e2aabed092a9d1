"""Media worker loop.

Each cycle keeps up to ``worker_concurrency`` claim_and_process calls in
flight per kind, refilling as they finish, until the backlog is drained.
Between cycles the worker sleeps for the poll interval. Any number of
worker processes can run side by side; the lease protocol keeps them from
processing the same capture.
"""

from __future__ import annotations

import asyncio
import logging
import signal
from collections import Counter

from cleo_shared.config.settings import Settings
from cleo_shared.models.media import MediaKind

from media_worker.claimer import MediaClaimer

logger = logging.getLogger(__name__)


class MediaWorker:
    def __init__(self, claimer: MediaClaimer, kinds: list[MediaKind], settings: Settings) -> None:
        self.claimer = claimer
        self.kinds = kinds
        self.concurrency = max(1, settings.worker_concurrency)
        self.poll_interval = settings.worker_poll_interval_seconds
        self._shutdown_event = asyncio.Event()

    async def run_cycle(self, kind: MediaKind) -> Counter:
        """Drain eligible captures of one kind. Returns counts per outcome status."""
        stats: Counter = Counter()
        drained = False
        in_flight: set[asyncio.Task] = set()

        while True:
            while not drained and len(in_flight) < self.concurrency and not self._shutdown_event.is_set():
                in_flight.add(asyncio.create_task(self.claimer.claim_and_process(kind)))
            if not in_flight:
                break

            done, in_flight = await asyncio.wait(in_flight, return_when=asyncio.FIRST_COMPLETED)
            for task in done:
                try:
                    outcome = task.result()
                except Exception:
                    # Claim or bookkeeping failed (e.g. DB unavailable); retry next cycle
                    logger.exception("%s claim failed", kind.value)
                    stats["errors"] += 1
                    drained = True
                    continue
                if outcome is None:
                    drained = True
                else:
                    stats[outcome.status.value] += 1

        if stats:
            logger.info(
                "[%s] cycle done: %s",
                kind.value,
                ", ".join(f"{k}={v}" for k, v in sorted(stats.items())),
            )
        return stats

    async def run(self, *, once: bool = False) -> None:
        """Poll until SIGTERM/SIGINT (or after one pass with ``once``)."""
        self._register_signals()
        logger.info(
            "Media worker starting | kinds=%s | concurrency=%d | poll=%.1fs",
            [k.value for k in self.kinds],
            self.concurrency,
            self.poll_interval,
        )
        while not self._shutdown_event.is_set():
            for kind in self.kinds:
                await self.run_cycle(kind)
            if once:
                break
            try:
                await asyncio.wait_for(self._shutdown_event.wait(), timeout=self.poll_interval)
            except asyncio.TimeoutError:
                pass
        logger.info("Media worker stopped")

    def stop(self) -> None:
        self._shutdown_event.set()

    def _register_signals(self) -> None:
        """Register signal handlers for graceful shutdown."""
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            try:
                loop.add_signal_handler(sig, self._handle_shutdown, sig)
            except (NotImplementedError, RuntimeError):
                # Not the main thread, or a platform without signal support
                return

    def _handle_shutdown(self, sig: signal.Signals) -> None:
        logger.info("Media worker received %s, finishing in-flight work...", sig.name)
        self._shutdown_event.set()
