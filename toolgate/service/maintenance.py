"""Background sweeps for the gateway.

Runs on a fixed interval and handles:
- expiring approval requests whose timers were lost
- dropping approval requests past the retention window
- removing expired sessions
- purging old terminal executions
"""

from __future__ import annotations

import asyncio
from datetime import timedelta
from typing import Dict, Optional

from toolgate.logging import get_logger
from toolgate.service.approvals import ApprovalCoordinator
from toolgate.service.executions import ExecutionRegistry
from toolgate.service.sessions import SessionRegistry

logger = get_logger(__name__)

DEFAULT_INTERVAL_SECONDS = 5 * 60
DEFAULT_HISTORY_RETENTION = timedelta(hours=24)
MAX_BACKOFF_SECONDS = 15 * 60


class MaintenanceWorker:
    def __init__(
        self,
        sessions: SessionRegistry,
        executions: ExecutionRegistry,
        approvals: ApprovalCoordinator,
        *,
        interval: float = DEFAULT_INTERVAL_SECONDS,
        history_retention: timedelta = DEFAULT_HISTORY_RETENTION,
    ) -> None:
        self.sessions = sessions
        self.executions = executions
        self.approvals = approvals
        self.interval = interval
        self.history_retention = history_retention
        self._running = False
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._running

    async def start(self) -> None:
        """Start the background worker."""
        if self._running:
            logger.warning("maintenance_worker_already_running")
            return

        self._running = True
        self._task = asyncio.create_task(self._run_loop())
        logger.info("maintenance_worker_started", interval=self.interval)

    async def stop(self) -> None:
        """Stop the background worker."""
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("maintenance_worker_stopped")

    async def run_once(self) -> Dict[str, int]:
        results = {
            "approvals_expired": await self.approvals.expire_overdue(),
            "approvals_cleaned": await self.approvals.cleanup_expired(),
            "sessions_cleaned": self.sessions.cleanup_expired(),
            "executions_purged": await self.executions.purge_history(self.history_retention),
        }
        if any(results.values()):
            logger.info("maintenance_pass_complete", **results)
        return results

    async def _run_loop(self) -> None:
        consecutive_errors = 0
        while self._running:
            try:
                await self.run_once()
                consecutive_errors = 0
            except Exception as exc:
                consecutive_errors += 1
                logger.error(
                    "maintenance_loop_error",
                    error=str(exc),
                    error_type=type(exc).__name__,
                    consecutive_errors=consecutive_errors,
                )
            delay = min(self.interval * (2 ** min(consecutive_errors, 4)), MAX_BACKOFF_SECONDS)
            await asyncio.sleep(delay if consecutive_errors else self.interval)
