"""Background poller that drains the remediation queue and sweeps incident escalations."""

from __future__ import annotations

import asyncio
import logging
import random
from dataclasses import dataclass
from typing import Callable

from app.config import Settings
from app.services import Services
from core.models import DrainSummary, SweepResult

logger = logging.getLogger(__name__)


@dataclass
class WorkerCycle:
    drain: DrainSummary
    sweep: SweepResult | None = None

    @property
    def did_work(self) -> bool:
        if self.drain.processed or self.drain.expired:
            return True
        return bool(self.sweep and self.sweep.escalated)


class OpsWorker:
    """Calls ``drain`` and ``sweep`` on a schedule.

    Delay policy
    ------------
    - after a cycle that processed something: ``interval``
    - after an idle cycle: ``idle_interval``
    - after consecutive failures: ``interval * 2**(failures-1)`` capped at
      ``max_backoff``

    Every delay is spread by +/- ``jitter_ratio`` so several workers polling the
    same store do not fire in lockstep.
    """

    def __init__(
        self,
        services: Services,
        limit: int = 5,
        interval: float = 15.0,
        idle_interval: float = 30.0,
        max_backoff: float = 120.0,
        jitter_ratio: float = 0.2,
        sweep_enabled: bool = True,
        sweep_limit: int = 25,
        rng: Callable[[], float] = random.random,
    ) -> None:
        self._services = services
        self.limit = limit
        self.interval = max(0.0, interval)
        self.idle_interval = max(0.0, idle_interval)
        self.max_backoff = max(self.interval, max_backoff)
        self.jitter_ratio = max(0.0, min(1.0, jitter_ratio))
        self.sweep_enabled = sweep_enabled
        self.sweep_limit = sweep_limit
        self._rng = rng
        self.failures = 0

    @classmethod
    def from_settings(cls, services: Services, settings: Settings | None = None) -> OpsWorker:
        s = settings or services.settings
        return cls(
            services,
            limit=s.worker_limit,
            interval=s.worker_interval_seconds,
            idle_interval=s.effective_idle_interval,
            max_backoff=s.worker_max_backoff_seconds,
            jitter_ratio=s.worker_jitter_ratio,
            sweep_enabled=s.worker_sweep_enabled,
            sweep_limit=s.worker_sweep_limit,
        )

    async def run_once(self) -> WorkerCycle:
        drain = await self._services.queue.drain(self.limit)
        logger.info(
            "Worker drain processed=%d requested_limit=%d ok=%s",
            drain.processed,
            drain.requested_limit,
            drain.ok,
        )
        sweep = None
        if self.sweep_enabled:
            sweep = await self._services.escalation.sweep(self.sweep_limit)
        return WorkerCycle(drain=drain, sweep=sweep)

    def _jitter(self, delay: float) -> float:
        if self.jitter_ratio == 0 or delay == 0:
            return delay
        spread = (self._rng() * 2 - 1) * self.jitter_ratio
        return max(0.0, delay * (1 + spread))

    def next_delay(self, did_work: bool) -> float:
        if self.failures > 0:
            base = min(self.max_backoff, self.interval * (2 ** (self.failures - 1)))
        elif did_work:
            base = self.interval
        else:
            base = self.idle_interval
        return self._jitter(base)

    async def run_forever(
        self, stop: asyncio.Event | None = None, max_cycles: int | None = None
    ) -> None:
        stop = stop or asyncio.Event()
        cycles = 0
        while not stop.is_set():
            did_work = False
            try:
                cycle = await self.run_once()
                did_work = cycle.did_work
                self.failures = 0
            except Exception:
                self.failures += 1
                logger.exception("Worker cycle failed (consecutive failures=%d)", self.failures)

            cycles += 1
            if max_cycles is not None and cycles >= max_cycles:
                break

            delay = self.next_delay(did_work)
            logger.debug("Worker sleeping %.1fs", delay)
            try:
                await asyncio.wait_for(stop.wait(), timeout=delay)
            except asyncio.TimeoutError:
                continue
