"""Abstract base class for job storage backends.

The store is the durable record behind ``QueueManager``. The manager keeps the
authoritative in-memory view while the process runs and writes every state
transition through to the store, so a restarted process can rebuild its queue
from ``load_all()``. Implementations:

- ``InMemoryJobStore``: dictionary backed, for tests and ephemeral deployments
- ``SQLiteJobStore``: sqlite-utils over a WAL-mode database, survives restarts
"""

from abc import ABC, abstractmethod
from typing import TYPE_CHECKING, Iterable, List, Optional

if TYPE_CHECKING:
    from .models import Job, JobState


class JobStore(ABC):
    """Durable job record keyed by job ID.

    Implementations must provide:
    - Thread-safe reads and writes (workers and request handlers share it)
    - Upsert semantics for ``save`` (the same job is saved on every transition)
    - An append-only transition log for debugging
    """

    @abstractmethod
    def save(self, job: "Job") -> None:
        """Insert or replace the stored copy of ``job``.

        Args:
            job: Job snapshot to persist

        Raises:
            StoreUnavailable: If the backing store cannot accept the write
        """
        pass

    @abstractmethod
    def get(self, job_id: str) -> Optional["Job"]:
        """Return the stored job or None if unknown."""
        pass

    @abstractmethod
    def load_all(self) -> List["Job"]:
        """Return every stored job (used for crash-restart recovery).

        Implementation notes:
        - Order is not significant; the manager re-sorts by priority and
          sequence
        """
        pass

    @abstractmethod
    def list_jobs(self, state: Optional["JobState"] = None, limit: int = 10) -> List["Job"]:
        """Return up to ``limit`` jobs, newest first, optionally filtered by state."""
        pass

    @abstractmethod
    def delete(self, job_ids: Iterable[str]) -> int:
        """Remove jobs and their transition history. Returns count removed."""
        pass

    @abstractmethod
    def record_transition(
        self,
        job_id: str,
        from_state: Optional[str],
        to_state: str,
        worker_id: Optional[str] = None,
        reason: Optional[str] = None,
    ) -> None:
        """Append an entry to the audit trail."""
        pass

    @abstractmethod
    def transitions(self, job_id: str) -> List[dict]:
        """Return the audit trail of one job, oldest first."""
        pass

    @abstractmethod
    def ping(self) -> bool:
        """Cheap reachability check used by the health endpoint."""
        pass

    def close(self) -> None:
        """Release resources. Default: nothing to release."""
        pass
