"""
Background Workers

Housekeeping that keeps stored state honest without ever deciding
access. Validation and evaluation compare expiry against server time
on every call; these workers only bring the rows in line so listings
and reports read correctly.

Responsibilities:
1. Move overdue consent tokens to expired (one audit entry each)
2. Warn about break-glass sessions still waiting for a justification
"""

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Dict, Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from healthchain.api.config import settings

logger = logging.getLogger(__name__)


@dataclass
class WorkerStats:
    """Statistics for a background worker."""
    name: str
    started_at: datetime
    last_run_at: Optional[datetime] = None
    run_count: int = 0
    error_count: int = 0
    last_error: Optional[str] = None
    tokens_expired: int = 0
    overdue_sessions: int = 0


class PeriodicWorker:
    """
    Runs ``run_once`` every ``interval`` seconds until stopped.

    A failing run is logged and counted; the loop keeps going.
    """

    name = "worker"

    def __init__(self, interval_seconds: int):
        self.interval = interval_seconds
        self._running = False
        self._task: Optional[asyncio.Task] = None
        self._stats = WorkerStats(name=self.name, started_at=datetime.now(timezone.utc))

    async def start(self) -> None:
        if self._running:
            return
        self._running = True
        self._stats.started_at = datetime.now(timezone.utc)
        self._task = asyncio.create_task(self._run_loop())
        logger.info("%s worker started (every %ss)", self.name, self.interval)

    async def stop(self) -> None:
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("%s worker stopped", self.name)

    async def _run_loop(self) -> None:
        while self._running:
            try:
                await asyncio.sleep(self.interval)
                await self.run_once()
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.exception("%s run failed", self.name)
                self._stats.error_count += 1
                self._stats.last_error = str(e)

    async def run_once(self) -> int:
        raise NotImplementedError

    def _record_run(self) -> None:
        self._stats.run_count += 1
        self._stats.last_run_at = datetime.now(timezone.utc)

    def get_stats(self) -> WorkerStats:
        return self._stats


class ExpirySweepWorker(PeriodicWorker):
    """Expires overdue consent tokens and reports unjustified break-glass sessions."""

    name = "expiry_sweep"

    def __init__(
        self,
        interval_seconds: int = 60,
        session_maker: Optional[async_sessionmaker] = None,
    ):
        super().__init__(interval_seconds)
        self._session_maker = session_maker

    def _session(self) -> AsyncSession:
        if self._session_maker is None:
            from healthchain.api.db.session import get_session_maker
            self._session_maker = get_session_maker()
        return self._session_maker()

    async def run_once(self) -> int:
        """One sweep pass. Returns the number of tokens expired."""
        from healthchain.api.access.emergency import EmergencySessionController
        from healthchain.api.access.tokens import EphemeralCredentialIssuer

        async with self._session() as db:
            expired = await EphemeralCredentialIssuer(db).sweep_expired()
            overdue = await EmergencySessionController(db).overdue_justifications()

        for session in overdue:
            logger.warning(
                "Break-glass session %s by %s expired at %s without justification",
                session.id, session.activated_by, session.expires_at.isoformat(),
            )

        self._record_run()
        self._stats.tokens_expired += expired
        self._stats.overdue_sessions = len(overdue)
        return expired


class BackgroundWorkerManager:
    """Unified start/stop and status for all background workers."""

    def __init__(self):
        self.workers: Dict[str, PeriodicWorker] = {
            "expiry_sweep": ExpirySweepWorker(settings.EXPIRY_SWEEP_INTERVAL_SEC),
        }
        self._started = False

    async def start_all(self) -> None:
        if self._started:
            return
        for worker in self.workers.values():
            await worker.start()
        self._started = True

    async def stop_all(self) -> None:
        for worker in self.workers.values():
            await worker.stop()
        self._started = False

    def get_all_stats(self) -> Dict[str, WorkerStats]:
        return {name: w.get_stats() for name, w in self.workers.items()}


# Global worker manager
_worker_manager: Optional[BackgroundWorkerManager] = None


def get_worker_manager() -> BackgroundWorkerManager:
    """Get the global worker manager."""
    global _worker_manager
    if _worker_manager is None:
        _worker_manager = BackgroundWorkerManager()
    return _worker_manager


async def init_background_workers() -> None:
    """Start background workers, if enabled."""
    if not settings.EXPIRY_SWEEP_ENABLED:
        logger.info("Background workers disabled")
        return
    await get_worker_manager().start_all()


async def close_background_workers() -> None:
    """Stop background workers."""
    global _worker_manager
    if _worker_manager:
        await _worker_manager.stop_all()
        _worker_manager = None
