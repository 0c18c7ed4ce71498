"""
Sample Retention Manager

Periodically deletes metric samples older than the retention period so the
metrics table does not grow without bound. Agents, alert rules and alerts are
left untouched.

Environment Variables:
    METRICS_RETENTION_DAYS: How long samples are kept (default 30)
    RETENTION_CHECK_INTERVAL: Hours between sweeps (default 24)
    RETENTION_INITIAL_DELAY: Seconds to wait after startup before the first sweep (default 300)
"""

import asyncio
import logging
import os
import time
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from fastapi.concurrency import run_in_threadpool

from utils import utcnow


# Configuration from environment
METRICS_RETENTION_DAYS = int(os.getenv("METRICS_RETENTION_DAYS", "30"))
RETENTION_CHECK_INTERVAL_HOURS = int(os.getenv("RETENTION_CHECK_INTERVAL", "24"))
RETENTION_INITIAL_DELAY_SECONDS = int(os.getenv("RETENTION_INITIAL_DELAY", "300"))

logger = logging.getLogger("vigil.retention")


@dataclass
class RetentionRunResult:
    """Result of a single retention sweep"""
    run_timestamp: datetime
    cutoff: datetime
    rows_deleted: int
    duration_ms: float

    def to_dict(self) -> dict:
        return {
            "run_timestamp": self.run_timestamp.isoformat(),
            "cutoff": self.cutoff.isoformat(),
            "rows_deleted": self.rows_deleted,
            "duration_ms": round(self.duration_ms, 2),
        }


class RetentionManager:
    """
    Deletes samples older than the retention period on a fixed interval.

    The store only needs delete_samples_before(cutoff) -> int; both the SQLite
    and PostgreSQL managers provide it.
    """

    def __init__(self, db_manager, retention: timedelta = None,
                 interval: timedelta = None, initial_delay: float = None):
        self.db = db_manager
        self.retention = retention or timedelta(days=METRICS_RETENTION_DAYS)
        self.interval = interval or timedelta(hours=RETENTION_CHECK_INTERVAL_HOURS)
        self.initial_delay = (
            RETENTION_INITIAL_DELAY_SECONDS if initial_delay is None else initial_delay
        )
        self._running = False
        self._task: Optional[asyncio.Task] = None
        self._last_run: Optional[RetentionRunResult] = None

    @property
    def running(self) -> bool:
        return self._running

    @property
    def last_run(self) -> Optional[RetentionRunResult]:
        return self._last_run

    async def start(self):
        """Start the background retention task"""
        if self._running:
            return

        self._running = True
        self._task = asyncio.create_task(self._retention_loop())
        print(f"✓ Retention manager started (keep {self.retention.days}d, check every {self.interval})")

    async def stop(self):
        """Stop the retention task"""
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        print("✓ Retention manager stopped")

    async def _retention_loop(self):
        """Background loop that runs cleanup periodically"""
        await asyncio.sleep(self.initial_delay)

        while self._running:
            try:
                result = await self.run_cleanup()
                logger.info(
                    f"Retention sweep removed {result.rows_deleted} samples older than "
                    f"{result.cutoff.isoformat()} in {result.duration_ms:.1f}ms"
                )
            except Exception as e:
                logger.error(f"Retention sweep failed: {e}")

            await asyncio.sleep(self.interval.total_seconds())

    async def run_cleanup(self, now: datetime = None) -> RetentionRunResult:
        """Delete every sample with a timestamp before now - retention."""
        start_time = time.time()
        run_timestamp = now or utcnow()
        cutoff = run_timestamp - self.retention

        deleted = await run_in_threadpool(self.db.delete_samples_before, cutoff)

        self._last_run = RetentionRunResult(
            run_timestamp=run_timestamp,
            cutoff=cutoff,
            rows_deleted=deleted,
            duration_ms=(time.time() - start_time) * 1000,
        )
        return self._last_run


# Global instance
_retention_manager: Optional[RetentionManager] = None


def get_retention_manager() -> Optional[RetentionManager]:
    """Get the global retention manager instance"""
    return _retention_manager


def init_retention_manager(db_manager, **kwargs) -> RetentionManager:
    """Initialize the global retention manager"""
    global _retention_manager
    _retention_manager = RetentionManager(db_manager, **kwargs)
    return _retention_manager
