"""Service container: builds every component and owns the lifecycle.

There are no module-level singletons. ``VideoJobService`` is constructed
explicitly (by the API lifespan hook, the CLI or a test), started, and shut
down; request handlers receive it through the application state.
"""

import logging
import threading
import time
from typing import Any, Callable, Dict, Optional

from .controller import JobController
from .models import ServiceConfig
from .monitoring import RequestMonitor
from .processing import build_task
from .queue.backends import JobStore
from .queue.manager import QueueManager
from .queue.memory_store import InMemoryJobStore
from .queue.sqlite_store import SQLiteJobStore
from .queue.worker import ProcessingTask, WorkerPool
from .security.auth import AuthGateway
from .security.rate_limit import RateLimiter
from .security.validator import SecurityValidator

logger = logging.getLogger(__name__)


def build_store(config: ServiceConfig) -> JobStore:
    if config.storage.backend == "memory":
        return InMemoryJobStore()
    return SQLiteJobStore(config.storage.db_path)


class VideoJobService:
    """All components of one running service instance.

    Args:
        config: Validated service configuration
        task: Processing task (default: resolved from ``config.processor``)
        store: Job store (default: built from ``config.storage``)
        clock: Wall clock shared by the queue, auth and rate limiting
    """

    def __init__(
        self,
        config: Optional[ServiceConfig] = None,
        task: Optional[ProcessingTask] = None,
        store: Optional[JobStore] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.config = config or ServiceConfig()
        self._clock = clock
        production = self.config.is_production

        self.store = store or build_store(self.config)
        self.queue = QueueManager(self.store, self.config.queue, clock=clock)
        self.pool = WorkerPool(
            self.queue,
            task or build_task(self.config.processor),
            self.config.worker,
            stall_timeout_s=self.config.stall_timeout_s,
        )

        self.auth = AuthGateway(self.config.auth, production=production, clock=clock)
        limits = self.config.rate_limit
        self.rate_limiter = RateLimiter(
            limits.window_s,
            self.config.effective_rate_limit,
            exempt_paths=limits.exempt_paths,
            clock=clock,
        )
        self.endpoint_limiters: Dict[str, RateLimiter] = {
            path: RateLimiter.for_endpoint(limit.window_s, limit.max_requests, clock=clock)
            for path, limit in limits.endpoints.items()
        }
        self.validator = SecurityValidator(self.config.security, production=production)
        self.monitor = RequestMonitor(self.config.monitoring, clock=clock)
        self.controller = JobController(
            self.queue,
            self.validator,
            concurrency=self.config.worker.concurrency,
            clock=clock,
        )

        self._stop = threading.Event()
        self._sweeper: Optional[threading.Thread] = None
        self._started_at: Optional[float] = None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------
    def start(self) -> "VideoJobService":
        if self._started_at is not None:
            return self
        self._started_at = time.monotonic()
        self.pool.start()
        self._sweeper = threading.Thread(target=self._sweep_loop, name="sweeper", daemon=True)
        self._sweeper.start()
        logger.info(
            "Video job service started (%s, %d workers, store=%s)",
            self.config.environment,
            self.config.worker.concurrency,
            self.config.storage.backend,
        )
        return self

    def shutdown(self, grace_s: Optional[float] = None) -> None:
        """Stop the sweeper, drain the worker pool and close the store."""
        logger.info("Shutting down video job service")
        self._stop.set()
        if self._sweeper is not None:
            self._sweeper.join(timeout=5)
        self.pool.shutdown(grace_s)
        self.store.close()
        logger.info("Video job service stopped")

    def __enter__(self):
        return self.start()

    def __exit__(self, *args):
        self.shutdown()

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------
    def _sweep_loop(self) -> None:
        while not self._stop.wait(self.config.auth.sweep_interval_s):
            try:
                self.sweep()
            except Exception:
                logger.exception("Maintenance sweep failed")

    def sweep(self) -> Dict[str, int]:
        """Purge expired auth failures and empty rate windows, clean old jobs
        and evaluate alert thresholds."""
        result = {
            "failures_purged": self.auth.purge_expired(),
            "rate_windows_purged": self.rate_limiter.purge()
            + sum(limiter.purge() for limiter in self.endpoint_limiters.values()),
            "jobs_cleaned": self.queue.clean(),
        }
        stats = self.queue.stats(fresh=True)
        self.monitor.check_thresholds(stats.waiting + stats.active)
        logger.debug("Maintenance sweep: %s", result)
        return result

    # ------------------------------------------------------------------
    # Reporting
    # ------------------------------------------------------------------
    @property
    def uptime_s(self) -> float:
        if self._started_at is None:
            return 0.0
        return time.monotonic() - self._started_at

    def health(self) -> Dict[str, Any]:
        """Liveness report; ``healthy`` is False if the store or workers are down."""
        store_ok = self.store.ping()
        workers = self.pool.status()
        workers_ok = self._started_at is None or workers["alive"] > 0
        stats = self.queue.stats()
        return {
            "status": "healthy" if store_ok and workers_ok else "unhealthy",
            "healthy": store_ok and workers_ok,
            "environment": self.config.environment,
            "uptime": round(self.uptime_s, 3),
            "checks": {
                "store": "ok" if store_ok else "unavailable",
                "workers": "ok" if workers_ok else "down",
            },
            "queue": {
                "paused": stats.paused,
                "waiting": stats.waiting,
                "active": stats.active,
            },
        }

    def metrics(self) -> Dict[str, Any]:
        stats = self.queue.stats(fresh=True)
        self.monitor.check_thresholds(stats.waiting + stats.active)
        return {
            "queue": JobController.stats_dict(stats),
            "workers": self.pool.status(),
            "averageJobDurationSeconds": round(self.queue.average_duration_s(), 3),
            "apiKeys": self.auth.key_stats(),
            "uptime": round(self.uptime_s, 3),
            **self.monitor.snapshot(),
        }
