"""Worker pool implementation using slot threads.

This module provides concurrent video processing with:
- A fixed number of slot threads, each running one job at a time
- Progress forwarding with cooperative cancellation checkpoints
- A monitor thread that fails stalled or expired jobs and replaces the
  wedged slot thread so capacity is restored
- Graceful shutdown with a grace period, after which jobs still running
  are failed as Interrupted
"""

import logging
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Tuple

from ..errors import JobCancelled
from ..models import WorkerConfig
from .manager import QueueManager
from .models import Job, JobOutcome

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[Any], None]
ProcessingTask = Callable[[Job, ProgressCallback], Optional[Dict[str, Any]]]


@dataclass
class _Slot:
    """One unit of concurrency. ``generation`` changes when the thread is replaced."""

    index: int
    generation: int = 0
    thread: Optional[threading.Thread] = None
    job_id: Optional[str] = None
    started_at: Optional[float] = None
    completed: int = 0

    @property
    def name(self) -> str:
        return f"worker-{self.index}"


class WorkerPool:
    """Thread-based worker pool bound to one QueueManager.

    Features:
    - ``concurrency`` slots; each job occupies exactly one slot
    - The task runs outside the queue lock
    - Context manager for start/shutdown
    """

    def __init__(
        self,
        queue: QueueManager,
        task: ProcessingTask,
        config: Optional[WorkerConfig] = None,
        stall_timeout_s: Optional[float] = None,
    ):
        """Initialize worker pool.

        Args:
            queue: Queue to pull jobs from
            task: Callable ``task(job, progress) -> dict``
            config: Slot count, polling and shutdown parameters
            stall_timeout_s: Silence after which an active job is failed
                as Stalled (default: config value, else the job TTL)
        """
        self.queue = queue
        self.task = task
        self.config = config or WorkerConfig()
        self.stall_timeout_s = (
            stall_timeout_s
            or self.config.stall_timeout_s
            or queue.config.job_ttl_s
        )

        self._lock = threading.Lock()
        self._slots: Dict[int, _Slot] = {
            i: _Slot(index=i) for i in range(self.config.concurrency)
        }
        self._stop = threading.Event()
        self._monitor: Optional[threading.Thread] = None
        self._started = False
        self._replaced = 0

    @property
    def concurrency(self) -> int:
        return self.config.concurrency

    def __enter__(self):
        self.start()
        return self

    def __exit__(self, *args):
        self.shutdown()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------
    def start(self) -> None:
        """Start slot threads and the monitor thread."""
        with self._lock:
            if self._started:
                return
            self._started = True
            for slot in self._slots.values():
                self._spawn(slot)

        self._monitor = threading.Thread(
            target=self._monitor_loop, name="worker-monitor", daemon=True
        )
        self._monitor.start()
        logger.info(
            "Worker pool started (concurrency=%d, stall_timeout=%ss)",
            self.concurrency,
            self.stall_timeout_s,
        )

    def _spawn(self, slot: _Slot) -> None:
        # Caller holds self._lock
        slot.generation += 1
        slot.job_id = None
        slot.started_at = None
        slot.thread = threading.Thread(
            target=self._run_slot,
            args=(slot.index, slot.generation),
            name=f"{slot.name}.{slot.generation}",
            daemon=True,
        )
        slot.thread.start()

    def shutdown(self, grace_s: Optional[float] = None) -> List[str]:
        """Stop dequeueing and wait for running jobs.

        Args:
            grace_s: Seconds to wait for in-flight jobs (default from config)

        Returns:
            IDs of jobs that were still running after the grace period and
            were failed as Interrupted
        """
        grace = self.config.shutdown_grace_s if grace_s is None else grace_s
        self._stop.set()
        self.queue.close()

        deadline = time.monotonic() + grace
        with self._lock:
            threads = [s.thread for s in self._slots.values() if s.thread is not None]
        for thread in threads:
            thread.join(timeout=max(0.0, deadline - time.monotonic()))

        if self._monitor is not None:
            self._monitor.join(timeout=1)

        interrupted = []
        with self._lock:
            running = [s.job_id for s in self._slots.values() if s.job_id]
        for job_id in running:
            if self.queue.fail_active(job_id, "Interrupted"):
                interrupted.append(job_id)

        if interrupted:
            logger.warning(
                "Worker pool shut down with %d job(s) interrupted: %s",
                len(interrupted),
                ", ".join(interrupted),
            )
        else:
            logger.info("Worker pool shut down cleanly")
        return interrupted

    # ------------------------------------------------------------------
    # Slot loop
    # ------------------------------------------------------------------
    def _is_current(self, index: int, generation: int) -> bool:
        with self._lock:
            return self._slots[index].generation == generation

    def _run_slot(self, index: int, generation: int) -> None:
        worker_id = f"worker-{index}"
        while not self._stop.is_set() and self._is_current(index, generation):
            job = self.queue.dequeue_next(worker_id=worker_id)
            if job is None:
                if not self.queue.wait_for_work(self.config.poll_interval_s):
                    break
                continue

            with self._lock:
                slot = self._slots[index]
                slot.job_id = job.job_id
                slot.started_at = time.monotonic()

            outcome = self.execute(job)
            self.queue.report_outcome(job.job_id, outcome, worker_id=worker_id)

            with self._lock:
                slot = self._slots[index]
                if slot.generation == generation:
                    slot.job_id = None
                    slot.started_at = None
                    slot.completed += 1

        logger.debug("%s (generation %d) exiting", worker_id, generation)

    def execute(self, job: Job) -> JobOutcome:
        """Run the task for one job and classify what happened.

        Never raises: every task error becomes a failure outcome.
        """
        start = time.monotonic()

        def progress(value: Any) -> None:
            if not self.queue.report_progress(job.job_id, value):
                current = self.queue.get_job(job.job_id)
                reason = current.cancel_reason if current else None
                raise JobCancelled(job.job_id, reason)

        try:
            result = self.task(job, progress)
        except JobCancelled as e:
            logger.info("Job %s stopped at progress checkpoint: %s", job.job_id, e)
            return JobOutcome.cancellation(duration_s=time.monotonic() - start)
        except Exception as e:
            logger.warning(
                "Job %s raised %s: %s", job.job_id, type(e).__name__, e, exc_info=True
            )
            return JobOutcome.failure(e, duration_s=time.monotonic() - start)

        if result is not None and not isinstance(result, dict):
            result = {"output": result}
        return JobOutcome.success(result, duration_s=time.monotonic() - start)

    # ------------------------------------------------------------------
    # Monitoring
    # ------------------------------------------------------------------
    def _monitor_loop(self) -> None:
        while not self._stop.wait(self.config.monitor_interval_s):
            try:
                self.sweep()
            except Exception:
                logger.exception("Worker monitor sweep failed")

    def sweep(self) -> List[Tuple[str, str]]:
        """Fail overdue active jobs and replace the slot threads running them.

        Returns:
            (job_id, reason) pairs that were finalized in this pass
        """
        finalized = []
        for job_id, reason in self.queue.overdue_jobs(self.stall_timeout_s):
            if not self.queue.fail_active(job_id, reason):
                continue
            finalized.append((job_id, reason))

            with self._lock:
                for slot in self._slots.values():
                    if slot.job_id == job_id:
                        logger.error(
                            "%s wedged on job %s (%s); starting replacement thread",
                            slot.name,
                            job_id,
                            reason,
                        )
                        if not self._stop.is_set():
                            self._spawn(slot)
                            self._replaced += 1
                        break
        return finalized

    def status(self) -> Dict[str, Any]:
        """Slot occupancy snapshot."""
        with self._lock:
            running = [s.job_id for s in self._slots.values() if s.job_id]
            alive = sum(
                1 for s in self._slots.values() if s.thread is not None and s.thread.is_alive()
            )
            completed = sum(s.completed for s in self._slots.values())
        return {
            "concurrency": self.concurrency,
            "busy": len(running),
            "idle": self.concurrency - len(running),
            "running": running,
            "alive": alive,
            "replaced": self._replaced,
            "completed": completed,
            "stopping": self._stop.is_set(),
        }
