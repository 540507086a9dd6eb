"""Durable priority job queue with retry, backoff and a worker pool."""

from .backends import JobStore
from .manager import QueueManager
from .memory_store import InMemoryJobStore
from .models import (
    Job,
    JobMetadata,
    JobOptions,
    JobOutcome,
    JobPayload,
    JobState,
    QueueStats,
    SubmitResult,
)
from .retry import backoff_delay, is_retryable
from .sqlite_store import SQLiteJobStore
from .worker import WorkerPool

__all__ = [
    "JobStore",
    "InMemoryJobStore",
    "SQLiteJobStore",
    "QueueManager",
    "WorkerPool",
    "Job",
    "JobMetadata",
    "JobOptions",
    "JobOutcome",
    "JobPayload",
    "JobState",
    "QueueStats",
    "SubmitResult",
    "backoff_delay",
    "is_retryable",
]
