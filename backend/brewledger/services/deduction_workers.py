"""Deduction worker runtime.

A fixed pool of asyncio worker tasks drains the deduction queue and an
independent timer runs the low-stock sweep. All database work happens in
threads (``asyncio.to_thread``), each call with its own session.
"""

import asyncio
import logging
from collections import defaultdict
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from sqlalchemy.orm import sessionmaker

from brewledger.core.config import InventoryEngineSettings, settings
from brewledger.services.deduction_queue import DeductionQueue, ProcessOutcome
from brewledger.services.low_stock_monitor import LowStockMonitor, SweepResult
from brewledger.services.notification_service import Notifier, get_notifier

logger = logging.getLogger(__name__)

# Completed-job cleanup runs at most this often
CLEANUP_INTERVAL_SECONDS = 3600


class DeductionWorkerManager:
    """Starts and stops the queue workers and the low-stock timer."""

    def __init__(self, config: Optional[InventoryEngineSettings] = None):
        self.config = config or settings.inventory
        self.workers: List[asyncio.Task] = []
        self.timer: Optional[asyncio.Task] = None
        self.running = False
        self.queue: Optional[DeductionQueue] = None
        self.session_factory: Optional[sessionmaker] = None
        self.notifier: Optional[Notifier] = None
        self.stats = defaultdict(int)
        self.last_sweep_at: Optional[datetime] = None
        self._last_cleanup: Optional[float] = None

    async def start(self, session_factory: sessionmaker, notifier: Optional[Notifier] = None):
        """Start the worker pool and the sweep timer."""
        if self.running:
            return

        self.running = True
        self.session_factory = session_factory
        self.notifier = notifier or get_notifier()
        self.queue = DeductionQueue(session_factory, self.notifier, self.config)

        for i in range(self.config.deduction_workers):
            self.workers.append(asyncio.create_task(self._worker(f"deduction-worker-{i}")))
        self.timer = asyncio.create_task(self._sweep_timer())

        logger.info(
            f"Deduction worker runtime started with {self.config.deduction_workers} workers, "
            f"low-stock sweep every {self.config.low_stock_sweep_seconds:.0f}s"
        )

    async def stop(self):
        """Stop all tasks. An attempt already running in a thread finishes on its own."""
        if not self.running:
            return
        self.running = False

        tasks = list(self.workers)
        if self.timer is not None:
            tasks.append(self.timer)
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

        self.workers = []
        self.timer = None
        logger.info("Deduction worker runtime stopped")

    def get_stats(self) -> Dict[str, Any]:
        return {
            **dict(self.stats),
            "running": self.running,
            "active_workers": sum(1 for w in self.workers if not w.done()),
            "last_sweep_at": self.last_sweep_at.isoformat() if self.last_sweep_at else None,
        }

    async def run_sweep(self) -> SweepResult:
        """Run one low-stock sweep in a thread."""
        result = await asyncio.to_thread(self._sweep)
        self.last_sweep_at = datetime.now(timezone.utc)
        self.stats["sweeps"] += 1
        self.stats["low_stock_alerts"] += result.transitions
        return result

    async def _worker(self, worker_name: str):
        """Process jobs until stopped; sleep when the queue is empty."""
        logger.info(f"Worker {worker_name} started")
        consecutive_errors = 0

        while self.running:
            try:
                outcome: Optional[ProcessOutcome] = await asyncio.to_thread(
                    self.queue.process_next, worker_name
                )
                consecutive_errors = 0
            except asyncio.CancelledError:
                break
            except Exception as e:
                consecutive_errors += 1
                self.stats["worker_errors"] += 1
                # Exponential backoff: 10s, 20s, 40s, ... capped at 5 minutes
                delay = min(300, (2 ** (consecutive_errors - 1)) * 10)
                logger.error(f"Worker {worker_name} error: {e}, retrying in {delay}s")
                try:
                    await asyncio.sleep(delay)
                except asyncio.CancelledError:
                    break
                continue

            if outcome is None:
                try:
                    await asyncio.sleep(self.config.queue_poll_seconds)
                except asyncio.CancelledError:
                    break
                continue

            self.stats["jobs_processed"] += 1
            self.stats[f"jobs_{outcome.status}"] += 1

        logger.info(f"Worker {worker_name} stopped")

    async def _sweep_timer(self):
        """Fixed-interval low-stock sweep plus periodic queue cleanup."""
        logger.info("Low-stock sweep timer started")
        loop = asyncio.get_running_loop()

        while self.running:
            try:
                await self.run_sweep()
                if self._last_cleanup is None or loop.time() - self._last_cleanup >= CLEANUP_INTERVAL_SECONDS:
                    self._last_cleanup = loop.time()
                    removed = await asyncio.to_thread(self.queue.cleanup_completed)
                    self.stats["jobs_cleaned_up"] += removed
            except asyncio.CancelledError:
                break
            except Exception as e:
                self.stats["sweep_errors"] += 1
                logger.error(f"Low-stock sweep error: {e}")

            try:
                await asyncio.sleep(self.config.low_stock_sweep_seconds)
            except asyncio.CancelledError:
                break

        logger.info("Low-stock sweep timer stopped")

    def _sweep(self) -> SweepResult:
        with self.session_factory() as db:
            return LowStockMonitor(db, self.notifier).sweep()


deduction_workers = DeductionWorkerManager()
