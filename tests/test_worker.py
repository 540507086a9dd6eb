"""Tests for the worker pool.

Tests cover:
- Outcome classification for a single execution
- End-to-end processing on slot threads
- Retry of transient failures
- Stall detection and slot replacement
- Shutdown with interrupted jobs
"""

import threading
import time

import pytest

from vidqueue.controller import JobController
from vidqueue.errors import PermanentTaskError, TransientTaskError
from vidqueue.models import QueueConfig, WorkerConfig
from vidqueue.queue import InMemoryJobStore, JobState, QueueManager, WorkerPool

from conftest import make_metadata, make_payload

FAST_WORKERS = WorkerConfig(
    concurrency=2, poll_interval_s=0.02, monitor_interval_s=60.0, shutdown_grace_s=2.0
)


def wait_for(predicate, timeout: float = 5.0) -> bool:
    """Poll ``predicate`` until it is truthy or the timeout passes."""
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return bool(predicate())


@pytest.fixture
def live_queue():
    """Queue on the real clock with near-instant retries."""
    config = QueueConfig(backoff_base_s=0.01, backoff_max_s=0.01, backoff_jitter=0.0)
    return QueueManager(InMemoryJobStore(), config)


class TestExecute:
    """Classification of one task run without threads."""

    def _active_job(self, queue):
        queue.submit(make_payload(), make_metadata())
        return queue.dequeue_next()

    def test_dict_result_is_success(self, queue):
        job = self._active_job(queue)
        pool = WorkerPool(queue, lambda j, progress: {"frames": 12})

        outcome = pool.execute(job)

        assert outcome.succeeded is True
        assert outcome.result == {"frames": 12}

    def test_non_dict_result_is_wrapped(self, queue):
        job = self._active_job(queue)
        pool = WorkerPool(queue, lambda j, progress: "done")

        assert pool.execute(job).result == {"output": "done"}

    def test_none_result_becomes_empty_dict(self, queue):
        job = self._active_job(queue)
        pool = WorkerPool(queue, lambda j, progress: None)

        assert pool.execute(job).result == {}

    def test_exception_is_failure(self, queue):
        job = self._active_job(queue)

        def task(j, progress):
            raise PermanentTaskError("Video unavailable")

        outcome = WorkerPool(queue, task).execute(job)

        assert outcome.succeeded is False
        assert isinstance(outcome.error, PermanentTaskError)
        assert outcome.cancelled is False

    def test_progress_forwarded_to_queue(self, queue):
        job = self._active_job(queue)

        def task(j, progress):
            progress(40)
            return {}

        WorkerPool(queue, task).execute(job)
        assert queue.get_job(job.job_id).progress == 40

    def test_cancel_observed_at_checkpoint(self, queue):
        job = self._active_job(queue)
        reached = []

        def task(j, progress):
            progress(10)
            queue.cancel(j.job_id, "user asked")
            progress(20)
            reached.append("after")
            return {}

        outcome = WorkerPool(queue, task).execute(job)

        assert outcome.cancelled is True
        assert reached == []
        assert queue.report_outcome(job.job_id, outcome) == JobState.CANCELLED
        assert queue.get_job(job.job_id).cancel_reason == "user asked"


class TestPoolProcessing:
    """Slot threads pulling from a live queue."""

    def test_processes_job_to_completion(self, live_queue):
        seen = []

        def task(job, progress):
            seen.append(job.job_id)
            progress(50)
            return {"ok": True}

        with WorkerPool(live_queue, task, FAST_WORKERS):
            job_id = live_queue.submit(make_payload(), make_metadata()).job_id
            assert wait_for(lambda: live_queue.get_job(job_id).state == JobState.COMPLETED)

        job = live_queue.get_job(job_id)
        assert seen == [job_id]
        assert job.result == {"ok": True}
        assert job.progress == 100
        assert job.attempts == 1

    def test_transient_failure_is_retried(self, live_queue):
        calls = []

        def task(job, progress):
            calls.append(job.attempts)
            if len(calls) == 1:
                raise TransientTaskError("ECONNRESET")
            return {}

        with WorkerPool(live_queue, task, FAST_WORKERS):
            job_id = live_queue.submit(make_payload(), make_metadata()).job_id
            assert wait_for(lambda: live_queue.get_job(job_id).state == JobState.COMPLETED)

        assert calls == [1, 2]
        assert live_queue.get_job(job_id).attempts == 2

    def test_attempts_exhausted_fails_job(self, live_queue):
        def task(job, progress):
            raise TransientTaskError("Service unavailable")

        with WorkerPool(live_queue, task, FAST_WORKERS):
            job_id = live_queue.submit(make_payload(), make_metadata()).job_id
            assert wait_for(lambda: live_queue.get_job(job_id).state == JobState.FAILED)

        job = live_queue.get_job(job_id)
        assert job.attempts == 3
        assert job.failure_reason == "TransientTaskError: Service unavailable"

    def test_each_job_runs_exactly_once(self, live_queue):
        counts = {}
        lock = threading.Lock()

        def task(job, progress):
            with lock:
                counts[job.job_id] = counts.get(job.job_id, 0) + 1
            return {}

        with WorkerPool(live_queue, task, FAST_WORKERS):
            ids = [
                live_queue.submit(make_payload(i % 11), make_metadata()).job_id
                for i in range(20)
            ]
            assert wait_for(lambda: live_queue.stats(fresh=True).completed == 20)

        assert sorted(counts) == sorted(ids)
        assert set(counts.values()) == {1}

    def test_paused_queue_is_not_drained(self, live_queue):
        live_queue.pause()
        with WorkerPool(live_queue, lambda job, progress: {}, FAST_WORKERS):
            job_id = live_queue.submit(make_payload(), make_metadata()).job_id
            time.sleep(0.1)
            assert live_queue.get_job(job_id).state == JobState.WAITING

            live_queue.resume()
            assert wait_for(lambda: live_queue.get_job(job_id).state == JobState.COMPLETED)

    def test_running_jobs_never_exceed_slot_count(self, live_queue):
        in_flight = {"now": 0, "peak": 0}
        lock = threading.Lock()

        def task(job, progress):
            with lock:
                in_flight["now"] += 1
                in_flight["peak"] = max(in_flight["peak"], in_flight["now"])
            time.sleep(0.02)
            with lock:
                in_flight["now"] -= 1
            return {}

        with WorkerPool(live_queue, task, FAST_WORKERS):
            ids = [live_queue.submit(make_payload(), make_metadata()).job_id for _ in range(8)]
            assert wait_for(lambda: live_queue.stats(fresh=True).completed == 8)

        assert 1 <= in_flight["peak"] <= FAST_WORKERS.concurrency
        assert all(live_queue.get_job(job_id).attempts == 1 for job_id in ids)

    def test_polled_progress_is_monotonic_and_final_state_stable(self, live_queue):
        controller = JobController(live_queue, concurrency=FAST_WORKERS.concurrency)

        def task(job, progress):
            for step in range(10, 100, 10):
                progress(step)
                time.sleep(0.005)
            return {"data": {"transcript": "done"}}

        with WorkerPool(live_queue, task, FAST_WORKERS):
            job_id = live_queue.submit(make_payload(), make_metadata()).job_id
            seen = []
            deadline = time.monotonic() + 5
            while time.monotonic() < deadline:
                data = controller.get_queue_status(job_id)["data"]
                seen.append(data["progress"])
                if data["status"] == "completed":
                    break
                time.sleep(0.002)

        assert seen == sorted(seen)
        assert seen[-1] == 100

        first = controller.get_queue_status(job_id)
        second = controller.get_queue_status(job_id)
        assert first == second
        assert first["data"]["result"]["transcript"] == "done"


class TestSupervision:
    """Stall sweeps and shutdown."""

    def test_stalled_job_failed_and_slot_replaced(self, make_queue, clock):
        queue = make_queue()
        release = threading.Event()
        config = WorkerConfig(concurrency=1, poll_interval_s=0.02, monitor_interval_s=60.0)
        pool = WorkerPool(queue, lambda job, progress: release.wait(5), config, stall_timeout_s=10)
        pool.start()
        try:
            job_id = queue.submit(make_payload(), make_metadata()).job_id
            assert wait_for(lambda: pool.status()["busy"] == 1)

            assert pool.sweep() == []
            clock.advance(11)
            assert pool.sweep() == [(job_id, "Stalled")]

            job = queue.get_job(job_id)
            assert job.state == JobState.FAILED
            assert job.failure_reason == "Stalled"
            status = pool.status()
            assert status["replaced"] == 1
            assert status["busy"] == 0

            # Replacement slot keeps serving the queue
            release.set()
            next_id = queue.submit(make_payload(), make_metadata()).job_id
            assert wait_for(lambda: queue.get_job(next_id).state == JobState.COMPLETED)
            # The late outcome from the wedged thread is ignored
            assert queue.get_job(job_id).state == JobState.FAILED
        finally:
            release.set()
            pool.shutdown(grace_s=1)

    def test_shutdown_interrupts_running_jobs(self, live_queue):
        release = threading.Event()
        pool = WorkerPool(live_queue, lambda job, progress: release.wait(5), FAST_WORKERS)
        pool.start()
        job_id = live_queue.submit(make_payload(), make_metadata()).job_id
        assert wait_for(lambda: pool.status()["busy"] == 1)

        interrupted = pool.shutdown(grace_s=0.1)
        release.set()

        assert interrupted == [job_id]
        job = live_queue.get_job(job_id)
        assert job.state == JobState.FAILED
        assert job.failure_reason == "Interrupted"
        assert pool.status()["stopping"] is True

    def test_clean_shutdown_returns_nothing(self, live_queue):
        pool = WorkerPool(live_queue, lambda job, progress: {}, FAST_WORKERS)
        pool.start()
        assert pool.shutdown(grace_s=1) == []
        # Closed queue refuses new work
        assert live_queue.dequeue_next() is None

    def test_status_shape(self, queue):
        pool = WorkerPool(queue, lambda job, progress: {}, FAST_WORKERS)
        status = pool.status()
        assert status["concurrency"] == 2
        assert status["idle"] == 2
        assert status["alive"] == 0
        assert status["running"] == []
