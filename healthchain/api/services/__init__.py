"""Background services for the HealthChain API."""

from healthchain.api.services.background_tasks import (
    BackgroundWorkerManager,
    ExpirySweepWorker,
    PeriodicWorker,
    WorkerStats,
    get_worker_manager,
    init_background_workers,
    close_background_workers,
)

__all__ = [
    "BackgroundWorkerManager",
    "ExpirySweepWorker",
    "PeriodicWorker",
    "WorkerStats",
    "get_worker_manager",
    "init_background_workers",
    "close_background_workers",
]
