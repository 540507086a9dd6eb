"""Priority job queue with retry/backoff and crash-restart recovery.

``QueueManager`` is the single owner of job state. Every mutation (enqueue,
dequeue, progress, outcome, cancel) runs under one condition variable, so no
two workers can claim the same job and no update is lost. The external task
itself never runs under the lock; workers only take it to dequeue and to
report back.

Ordering:
- Caller priority 0-10 (10 = most urgent) maps to an internal key
  ``max_priority - priority``; the ready heap pops the smallest key first.
- Ties are broken by a monotonically increasing submission sequence (FIFO).
- Retried jobs keep their original sequence, so after backoff they rejoin
  their tier in submission order.
"""

import heapq
import itertools
import logging
import random
import string
import threading
import time
from collections import Counter, deque
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional, Tuple

from ..errors import (
    CapacityExceeded,
    InvalidState,
    NotFound,
    StoreUnavailable,
    ValidationError,
)
from ..models import QueueConfig
from .backends import JobStore
from .models import (
    JOB_ID_PATTERN,
    Job,
    JobMetadata,
    JobOutcome,
    JobPayload,
    JobState,
    QueueStats,
    SubmitResult,
)
from .retry import backoff_delay, is_retryable

logger = logging.getLogger(__name__)

_ID_ALPHABET = string.ascii_lowercase + string.digits


class QueueManager:
    """Admits, orders, dispatches and finalizes jobs.

    Args:
        store: Durable job record; written through on every transition
        config: Queue parameters (capacity, retry policy, TTL)
        clock: Wall clock in epoch seconds (injectable for tests)
        rng: Uniform [0, 1) source for backoff jitter
    """

    def __init__(
        self,
        store: JobStore,
        config: Optional[QueueConfig] = None,
        clock: Callable[[], float] = time.time,
        rng: Callable[[], float] = random.random,
    ):
        self.store = store
        self.config = config or QueueConfig()
        self._clock = clock
        self._rng = rng

        self._cond = threading.Condition()
        self._jobs: Dict[str, Job] = {}
        self._counts: Counter = Counter()
        self._ready: List[Tuple[int, int, str]] = []
        self._delayed: List[Tuple[float, int, str]] = []
        self._attempt_progress: Dict[str, int] = {}
        self._durations: deque = deque(maxlen=50)
        self._seq = itertools.count(1)
        self._paused = False
        self._closed = False
        self._stats_cache: Optional[QueueStats] = None
        self._stats_at = 0.0

        self._recover()

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------
    def _now(self) -> datetime:
        return datetime.fromtimestamp(self._clock(), tz=timezone.utc)

    def internal_priority(self, caller_priority: int) -> int:
        """Map caller priority (higher = more urgent) to the heap key."""
        max_p = self.config.max_priority
        clamped = max(0, min(max_p, int(caller_priority)))
        return max_p - clamped

    def _generate_job_id(self) -> str:
        while True:
            suffix = "".join(random.choices(_ID_ALPHABET, k=6))
            job_id = f"video_{int(self._clock() * 1000)}_{suffix}"
            if job_id not in self._jobs:
                return job_id

    def _persist(
        self,
        job: Job,
        from_state: Optional[JobState],
        reason: Optional[str] = None,
        worker_id: Optional[str] = None,
        strict: bool = False,
    ) -> None:
        """Write the job through to the store.

        With ``strict`` a store failure propagates, and a new job whose row was
        written before the failure is deleted again. Otherwise the failure is
        logged and the in-memory state stays authoritative until the next write.
        """
        try:
            self.store.save(job)
            if from_state != job.state:
                self.store.record_transition(
                    job.job_id,
                    from_state.value if from_state else None,
                    job.state.value,
                    worker_id=worker_id,
                    reason=reason,
                )
        except StoreUnavailable:
            if strict:
                if from_state is None:
                    self._discard_row(job.job_id)
                raise
            logger.error("Failed to persist job %s (%s)", job.job_id, job.state.value, exc_info=True)

    def _discard_row(self, job_id: str) -> None:
        """Remove a half-written submission so recovery never runs it."""
        try:
            self.store.delete([job_id])
        except StoreUnavailable:
            logger.error("Could not remove rejected job %s from the store", job_id, exc_info=True)

    def _transition(
        self,
        job: Job,
        new_state: JobState,
        reason: Optional[str] = None,
        worker_id: Optional[str] = None,
    ) -> None:
        old_state = job.state
        self._counts[old_state] -= 1
        self._counts[new_state] += 1
        job.state = new_state
        self._persist(job, old_state, reason=reason, worker_id=worker_id)

    def _finish(self, job: Job, state: JobState, reason: Optional[str] = None) -> None:
        job.finished_at = self._now()
        job.available_at = None
        if state == JobState.FAILED:
            job.failure_reason = reason
        elif state == JobState.CANCELLED:
            job.cancel_reason = reason
        self._attempt_progress.pop(job.job_id, None)
        self._transition(job, state, reason=reason)

    def _position(self, job: Job) -> int:
        """1-based place in line among waiting jobs; 0 if not waiting."""
        if job.state != JobState.WAITING:
            return 0
        key = (job.priority, job.sequence)
        ahead = sum(
            1
            for other in self._jobs.values()
            if other.state == JobState.WAITING and (other.priority, other.sequence) < key
        )
        return ahead + 1

    def _promote_due(self, now_ts: float) -> int:
        promoted = 0
        while self._delayed and self._delayed[0][0] <= now_ts:
            _, seq, job_id = heapq.heappop(self._delayed)
            job = self._jobs.get(job_id)
            if job is None or job.state != JobState.DELAYED:
                continue
            job.available_at = None
            self._transition(job, JobState.WAITING, reason="Backoff elapsed")
            heapq.heappush(self._ready, (job.priority, seq, job_id))
            promoted += 1
        return promoted

    def _invalidate_stats(self) -> None:
        self._stats_cache = None

    # ------------------------------------------------------------------
    # Recovery
    # ------------------------------------------------------------------
    def _recover(self) -> None:
        """Rebuild the queue from the store after a (re)start.

        waiting/delayed jobs are resumed; active jobs cannot be resumed and
        are failed as Interrupted.
        """
        jobs = self.store.load_all()
        if not jobs:
            return

        max_seq = 0
        interrupted = 0
        for job in jobs:
            max_seq = max(max_seq, job.sequence)
            self._jobs[job.job_id] = job
            self._counts[job.state] += 1

            if job.state == JobState.WAITING:
                heapq.heappush(self._ready, (job.priority, job.sequence, job.job_id))
            elif job.state == JobState.DELAYED:
                due = job.available_at.timestamp() if job.available_at else self._clock()
                heapq.heappush(self._delayed, (due, job.sequence, job.job_id))
            elif job.state == JobState.ACTIVE:
                self._finish(job, JobState.FAILED, reason="Interrupted")
                interrupted += 1

        self._seq = itertools.count(max_seq + 1)
        logger.info(
            "Recovered %d jobs from store (%d waiting, %d delayed, %d interrupted)",
            len(jobs),
            self._counts[JobState.WAITING],
            self._counts[JobState.DELAYED],
            interrupted,
        )

    # ------------------------------------------------------------------
    # Admission
    # ------------------------------------------------------------------
    def submit(
        self,
        payload: JobPayload,
        metadata: JobMetadata,
        job_id: Optional[str] = None,
    ) -> SubmitResult:
        """Admit a job.

        Args:
            payload: What to process
            metadata: Submitter details
            job_id: Caller-chosen ID; generated when omitted

        Returns:
            SubmitResult with the job ID and its 1-based queue position

        Raises:
            ValidationError: Malformed job ID
            CapacityExceeded: waiting + delayed + active >= max_queue_size
            InvalidState: job_id belongs to a finished job
            StoreUnavailable: The job could not be persisted
        """
        if job_id is not None and not JOB_ID_PATTERN.match(job_id):
            raise ValidationError("Invalid job ID format")

        with self._cond:
            if self._closed:
                raise CapacityExceeded("Queue is shutting down. Please try again later.")

            if job_id is not None and job_id in self._jobs:
                existing = self._jobs[job_id]
                if existing.is_terminal:
                    raise InvalidState(
                        f"Job {job_id} already finished ({existing.state.value})"
                    )
                return SubmitResult(
                    job_id=job_id, position=self._position(existing), created=False
                )

            waiting = self._counts[JobState.WAITING] + self._counts[JobState.DELAYED]
            active = self._counts[JobState.ACTIVE]
            if waiting + active >= self.config.max_queue_size:
                logger.warning(
                    "Queue at capacity (waiting=%d active=%d max=%d)",
                    waiting,
                    active,
                    self.config.max_queue_size,
                )
                raise CapacityExceeded(
                    "Processing queue is at capacity. Please try again later.",
                    details={
                        "queueStats": {
                            "waiting": waiting,
                            "active": active,
                            "capacity": self.config.max_queue_size,
                        }
                    },
                )

            now = self._now()
            if metadata.submitted_at is None:
                metadata = metadata.model_copy(update={"submitted_at": now})

            job = Job(
                job_id=job_id or self._generate_job_id(),
                request_id=metadata.request_id,
                payload=payload,
                metadata=metadata,
                state=JobState.WAITING,
                priority=self.internal_priority(payload.options.priority),
                max_attempts=self.config.max_attempts,
                created_at=now,
                sequence=next(self._seq),
            )

            # Persist first: a store outage must leave no trace in the queue
            self._persist(job, None, reason="Submitted", strict=True)

            self._jobs[job.job_id] = job
            self._counts[JobState.WAITING] += 1
            heapq.heappush(self._ready, (job.priority, job.sequence, job.job_id))
            self._invalidate_stats()
            self._cond.notify()

            position = self._position(job)

        logger.info(
            "Job %s queued (priority=%d, position=%d, url=%s)",
            job.job_id,
            payload.options.priority,
            position,
            payload.video_url,
        )
        return SubmitResult(job_id=job.job_id, position=position, created=True)

    # ------------------------------------------------------------------
    # Dispatch
    # ------------------------------------------------------------------
    def dequeue_next(self, worker_id: Optional[str] = None) -> Optional[Job]:
        """Claim the most urgent, oldest waiting job.

        Returns:
            A copy of the claimed job (now active) or None if nothing is
            ready or the queue is paused
        """
        with self._cond:
            if self._paused or self._closed:
                return None

            now_ts = self._clock()
            self._promote_due(now_ts)

            while self._ready:
                _, _, job_id = heapq.heappop(self._ready)
                job = self._jobs.get(job_id)
                if job is None or job.state != JobState.WAITING:
                    # Cancelled or expired while queued
                    continue

                if now_ts - job.created_at.timestamp() > self.config.job_ttl_s:
                    self._finish(job, JobState.FAILED, reason="Expired")
                    logger.warning("Job %s expired before dispatch", job_id)
                    continue

                now = self._now()
                job.attempts += 1
                job.started_at = now
                job.last_progress_at = now
                self._attempt_progress[job_id] = 0
                self._transition(job, JobState.ACTIVE, worker_id=worker_id)

                logger.info(
                    "Job %s dispatched to %s (attempt %d/%d)",
                    job_id,
                    worker_id or "worker",
                    job.attempts,
                    job.max_attempts,
                )
                return job.model_copy(deep=True)

            return None

    def wait_for_work(self, timeout: float) -> bool:
        """Park the caller until a job may be ready, for at most ``timeout``.

        Returns:
            False once the queue is closed
        """
        with self._cond:
            if self._closed:
                return False
            if not self._paused:
                self._promote_due(self._clock())
                if self._counts[JobState.WAITING] > 0:
                    return True
                if self._delayed:
                    timeout = min(timeout, max(0.0, self._delayed[0][0] - self._clock()))
            self._cond.wait(timeout)
            return not self._closed

    def report_progress(self, job_id: str, progress) -> bool:
        """Record task progress for an active job.

        Stored progress never decreases. A value lower than one reported
        earlier in the same attempt is logged as anomalous and ignored.

        Returns:
            True if the task should keep going, False if the job was
            cancelled or is no longer active
        """
        try:
            value = int(progress)
        except (TypeError, ValueError):
            logger.warning("Job %s reported non-numeric progress %r", job_id, progress)
            value = None

        with self._cond:
            job = self._jobs.get(job_id)
            if job is None or job.state != JobState.ACTIVE:
                return False

            job.last_progress_at = self._now()
            if value is not None:
                if value < 0 or value > 100:
                    logger.warning("Job %s reported out-of-range progress %d", job_id, value)
                    value = max(0, min(100, value))

                last = self._attempt_progress.get(job_id, 0)
                if value < last:
                    logger.warning(
                        "Job %s progress went backwards (%d -> %d)", job_id, last, value
                    )
                else:
                    self._attempt_progress[job_id] = value
                if value > job.progress:
                    job.progress = value

            self._persist(job, job.state)
            logger.debug("Job %s progress %s%%", job_id, job.progress)
            return not job.cancel_requested

    def report_outcome(
        self, job_id: str, outcome: JobOutcome, worker_id: Optional[str] = None
    ) -> Optional[JobState]:
        """Finalize one execution attempt.

        Success completes the job. A cancelled outcome (or any failure after
        cancel was requested) cancels it. Other failures are retried with
        backoff while the error is retryable and attempts remain, and fail
        the job otherwise.

        Returns:
            The job's state after the report, or None for unknown jobs
        """
        with self._cond:
            job = self._jobs.get(job_id)
            if job is None:
                logger.warning("Outcome reported for unknown job %s", job_id)
                return None
            if job.state != JobState.ACTIVE:
                logger.warning(
                    "Ignoring late outcome for job %s (already %s)", job_id, job.state.value
                )
                return job.state

            if outcome.cancelled or (job.cancel_requested and not outcome.succeeded):
                self._finish(
                    job, JobState.CANCELLED, reason=job.cancel_reason or "Cancelled by user request"
                )
                logger.info("Job %s cancelled while running", job_id)

            elif outcome.succeeded:
                job.result = outcome.result or {}
                job.progress = 100
                if job.started_at is not None:
                    self._durations.append(
                        max(outcome.duration_s, self._clock() - job.started_at.timestamp())
                    )
                self._finish(job, JobState.COMPLETED)
                logger.info("Job %s completed (attempt %d)", job_id, job.attempts)

            else:
                error = outcome.error
                reason = f"{type(error).__name__}: {error}"[:500] if error else "Unknown error"
                job.failure_reason = reason

                if is_retryable(error) and job.attempts < job.max_attempts:
                    delay = backoff_delay(
                        job.attempts,
                        base_delay_s=self.config.backoff_base_s,
                        max_delay_s=self.config.backoff_max_s,
                        jitter=self.config.backoff_jitter,
                        rng=self._rng,
                    )
                    due = self._clock() + delay
                    job.available_at = datetime.fromtimestamp(due, tz=timezone.utc)
                    self._attempt_progress.pop(job_id, None)
                    self._transition(job, JobState.DELAYED, reason=reason, worker_id=worker_id)
                    heapq.heappush(self._delayed, (due, job.sequence, job_id))
                    self._cond.notify()
                    logger.warning(
                        "Job %s failed (attempt %d/%d), retrying in %.3fs: %s",
                        job_id,
                        job.attempts,
                        job.max_attempts,
                        delay,
                        reason,
                    )
                else:
                    self._finish(job, JobState.FAILED, reason=reason)
                    logger.error(
                        "Job %s failed permanently after %d attempt(s): %s",
                        job_id,
                        job.attempts,
                        reason,
                    )

            return job.state

    def fail_active(self, job_id: str, reason: str) -> bool:
        """Force-finalize an active job (stall, expiry, shutdown).

        Returns:
            True if the job was active and is now failed
        """
        with self._cond:
            job = self._jobs.get(job_id)
            if job is None or job.state != JobState.ACTIVE:
                return False
            self._finish(job, JobState.FAILED, reason=reason)
        logger.error("Job %s force-failed: %s", job_id, reason)
        return True

    def overdue_jobs(self, stall_timeout_s: float) -> List[Tuple[str, str]]:
        """Active jobs silent past the stall timeout or alive past the TTL.

        Returns:
            (job_id, reason) pairs with reason "Stalled" or "Expired"
        """
        now_ts = self._clock()
        overdue = []
        with self._cond:
            for job in self._jobs.values():
                if job.state != JobState.ACTIVE:
                    continue
                if now_ts - job.created_at.timestamp() > self.config.job_ttl_s:
                    overdue.append((job.job_id, "Expired"))
                    continue
                last = job.last_progress_at or job.started_at
                if last is not None and now_ts - last.timestamp() > stall_timeout_s:
                    overdue.append((job.job_id, "Stalled"))
        return overdue

    # ------------------------------------------------------------------
    # Cancellation and control
    # ------------------------------------------------------------------
    def cancel(self, job_id: str, reason: Optional[str] = None) -> Job:
        """Cancel a job.

        Waiting and delayed jobs are cancelled immediately. Active jobs are
        flagged; the worker observes the flag at its next progress report.

        Raises:
            NotFound: Unknown job ID
            InvalidState: The job already finished
        """
        with self._cond:
            job = self._jobs.get(job_id)
            if job is None:
                raise NotFound(f"No job found with ID: {job_id}")
            if job.is_terminal:
                raise InvalidState(
                    f"This job has already {job.state.value}",
                    error=f"Cannot cancel {job.state.value} job",
                )

            reason = reason or "Cancelled by user request"
            previous = job.state
            if job.state in (JobState.WAITING, JobState.DELAYED):
                self._finish(job, JobState.CANCELLED, reason=reason)
            elif not job.cancel_requested:
                job.cancel_requested = True
                job.cancel_reason = reason
                self._persist(job, job.state)

            self._invalidate_stats()
            snapshot = job.model_copy(deep=True)

        logger.info("Cancel requested for job %s (was %s): %s", job_id, previous.value, reason)
        return snapshot

    def pause(self) -> None:
        """Stop dequeueing. Active jobs keep running."""
        with self._cond:
            self._paused = True
            self._invalidate_stats()
        logger.info("Queue paused")

    def resume(self) -> None:
        with self._cond:
            self._paused = False
            self._invalidate_stats()
            self._cond.notify_all()
        logger.info("Queue resumed")

    @property
    def is_paused(self) -> bool:
        return self._paused

    def close(self) -> None:
        """Stop dispatching for good and wake all parked workers."""
        with self._cond:
            self._closed = True
            self._cond.notify_all()

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------
    def stats(self, fresh: bool = False) -> QueueStats:
        """Per-state counts.

        Args:
            fresh: Recompute now instead of returning a snapshot up to
                ``stats_refresh_s`` old
        """
        with self._cond:
            now_ts = self._clock()
            if (
                not fresh
                and self._stats_cache is not None
                and now_ts - self._stats_at < self.config.stats_refresh_s
            ):
                return self._stats_cache

            if not self._paused:
                self._promote_due(now_ts)
            snapshot = QueueStats(
                waiting=self._counts[JobState.WAITING],
                active=self._counts[JobState.ACTIVE],
                completed=self._counts[JobState.COMPLETED],
                failed=self._counts[JobState.FAILED],
                delayed=self._counts[JobState.DELAYED],
                cancelled=self._counts[JobState.CANCELLED],
                paused=self._paused,
                generated_at=self._now(),
            )
            self._stats_cache = snapshot
            self._stats_at = now_ts
            return snapshot

    def get_job(self, job_id: str) -> Optional[Job]:
        with self._cond:
            job = self._jobs.get(job_id)
            return job.model_copy(deep=True) if job else None

    def list_jobs(self, state: Optional[JobState] = None, limit: int = 10) -> List[Job]:
        """Newest first, optionally filtered by state."""
        with self._cond:
            jobs = [j for j in self._jobs.values() if state is None or j.state == state]
            jobs.sort(key=lambda j: j.sequence, reverse=True)
            return [j.model_copy(deep=True) for j in jobs[:limit]]

    def active_jobs(self) -> List[Job]:
        with self._cond:
            return [
                j.model_copy(deep=True)
                for j in self._jobs.values()
                if j.state == JobState.ACTIVE
            ]

    def average_duration_s(self) -> float:
        """Mean duration of recent successful jobs, or the configured default."""
        with self._cond:
            if not self._durations:
                return self.config.average_job_duration_s
            return sum(self._durations) / len(self._durations)

    def clean(self, grace_s: Optional[float] = None) -> int:
        """Forget finished jobs older than ``grace_s`` (default: retention).

        Returns:
            Number of jobs removed
        """
        grace = self.config.completed_retention_s if grace_s is None else grace_s
        cutoff = self._clock() - grace
        with self._cond:
            stale = [
                job_id
                for job_id, job in self._jobs.items()
                if job.is_terminal
                and job.finished_at is not None
                and job.finished_at.timestamp() <= cutoff
            ]
            if not stale:
                return 0
            try:
                self.store.delete(stale)
            except StoreUnavailable:
                logger.error("Queue clean failed", exc_info=True)
                return 0
            for job_id in stale:
                job = self._jobs.pop(job_id)
                self._counts[job.state] -= 1
            self._invalidate_stats()

        logger.info("Queue cleaned: removed %d finished jobs", len(stale))
        return len(stale)
