"""Dictionary-backed JobStore for tests and ephemeral deployments."""

import threading
from datetime import datetime, timezone
from typing import Dict, Iterable, List, Optional

from .backends import JobStore
from .models import Job, JobState


class InMemoryJobStore(JobStore):
    """Keeps deep copies so callers can never mutate stored state by reference."""

    def __init__(self):
        self._jobs: Dict[str, Job] = {}
        self._transitions: Dict[str, List[dict]] = {}
        self._lock = threading.Lock()

    def save(self, job: Job) -> None:
        with self._lock:
            self._jobs[job.job_id] = job.model_copy(deep=True)

    def get(self, job_id: str) -> Optional[Job]:
        with self._lock:
            job = self._jobs.get(job_id)
            return job.model_copy(deep=True) if job else None

    def load_all(self) -> List[Job]:
        with self._lock:
            return [job.model_copy(deep=True) for job in self._jobs.values()]

    def list_jobs(self, state: Optional[JobState] = None, limit: int = 10) -> List[Job]:
        with self._lock:
            jobs = [j for j in self._jobs.values() if state is None or j.state == state]
        jobs.sort(key=lambda j: (j.created_at, j.sequence), reverse=True)
        return [j.model_copy(deep=True) for j in jobs[:limit]]

    def delete(self, job_ids: Iterable[str]) -> int:
        removed = 0
        with self._lock:
            for job_id in job_ids:
                if self._jobs.pop(job_id, None) is not None:
                    removed += 1
                self._transitions.pop(job_id, None)
        return removed

    def record_transition(
        self,
        job_id: str,
        from_state: Optional[str],
        to_state: str,
        worker_id: Optional[str] = None,
        reason: Optional[str] = None,
    ) -> None:
        entry = {
            "job_id": job_id,
            "from_state": from_state,
            "to_state": to_state,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "worker_id": worker_id,
            "reason": reason[:200] if reason else None,
        }
        with self._lock:
            self._transitions.setdefault(job_id, []).append(entry)

    def transitions(self, job_id: str) -> List[dict]:
        with self._lock:
            return list(self._transitions.get(job_id, []))

    def ping(self) -> bool:
        return True
