"""Pydantic models for job queue data structures.

This module defines the type-safe models used throughout the queue system.
Request-facing models forbid unknown fields so that typos in client payloads
are rejected at the boundary instead of silently ignored.
"""

import re
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field

JOB_ID_PATTERN = re.compile(r"^[A-Za-z0-9_-]{1,50}$")


class JobState(str, Enum):
    """Job lifecycle states.

    State transitions:
        waiting → active       (worker dequeues)
        active → completed     (task returns a result)
        active → delayed       (retryable failure, attempts left)
        delayed → waiting      (backoff elapsed)
        active → failed        (terminal failure, stall, interrupt)
        waiting → failed       (TTL expired before dequeue)
        waiting → cancelled    (cancel request)
        delayed → cancelled    (cancel request)
        active → cancelled     (cancel observed at a progress checkpoint)
    """

    WAITING = "waiting"
    ACTIVE = "active"
    DELAYED = "delayed"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATES


TERMINAL_STATES = frozenset({JobState.COMPLETED, JobState.FAILED, JobState.CANCELLED})


class JobOptions(BaseModel):
    """Processing options supplied by the caller."""

    model_config = ConfigDict(extra="forbid", populate_by_name=True)

    priority: int = Field(default=0, ge=0, le=10, strict=True, description="10 = most urgent")
    include_transcript: bool = Field(default=True, alias="includeTranscript")
    include_analysis: bool = Field(default=True, alias="includeAnalysis")
    webhook: Optional[str] = Field(default=None, max_length=2048)


class JobPayload(BaseModel):
    """What to process."""

    model_config = ConfigDict(extra="forbid")

    video_url: str = Field(..., min_length=1, description="Normalized target URL")
    callback_url: Optional[str] = Field(default=None, description="Optional completion callback")
    options: JobOptions = Field(default_factory=JobOptions)


class JobMetadata(BaseModel):
    """Who submitted the job and from where."""

    request_id: str = Field(..., description="Per-HTTP-call correlation id")
    api_key_name: Optional[str] = Field(default=None)
    client_ip: Optional[str] = Field(default=None)
    user_agent: Optional[str] = Field(default=None)
    submitted_at: Optional[datetime] = Field(default=None)


class Job(BaseModel):
    """A queued unit of video processing work.

    Only ``QueueManager`` mutates instances of this model.
    """

    job_id: str = Field(..., pattern=JOB_ID_PATTERN.pattern)
    request_id: str = Field(...)
    payload: JobPayload
    metadata: JobMetadata
    state: JobState = Field(default=JobState.WAITING)
    priority: int = Field(default=10, ge=0, description="Internal key; lower dequeues first")
    attempts: int = Field(default=0, ge=0, description="Execution tries so far")
    max_attempts: int = Field(default=3, ge=1)
    progress: int = Field(default=0, ge=0, le=100)
    created_at: datetime
    started_at: Optional[datetime] = Field(default=None)
    finished_at: Optional[datetime] = Field(default=None)
    available_at: Optional[datetime] = Field(default=None, description="Retry due time")
    last_progress_at: Optional[datetime] = Field(default=None)
    cancel_requested: bool = Field(default=False)
    cancel_reason: Optional[str] = Field(default=None)
    result: Optional[Dict[str, Any]] = Field(default=None)
    failure_reason: Optional[str] = Field(default=None)
    sequence: int = Field(default=0, ge=0, description="FIFO tie-breaker within a tier")

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STATES

    @property
    def caller_priority(self) -> int:
        return self.payload.options.priority


class QueueStats(BaseModel):
    """Per-state job counts."""

    waiting: int = 0
    active: int = 0
    completed: int = 0
    failed: int = 0
    delayed: int = 0
    cancelled: int = 0
    paused: bool = False
    generated_at: Optional[datetime] = None

    @property
    def in_flight(self) -> int:
        return self.waiting + self.delayed + self.active


class SubmitResult(BaseModel):
    job_id: str
    position: int = Field(..., ge=0)
    created: bool = Field(default=True, description="False when an existing job was returned")


@dataclass
class JobOutcome:
    """Terminal outcome of one execution attempt, reported by the worker."""

    succeeded: bool
    result: Optional[Dict[str, Any]] = None
    error: Optional[BaseException] = None
    cancelled: bool = False
    duration_s: float = 0.0

    @classmethod
    def success(cls, result: Optional[Dict[str, Any]], duration_s: float = 0.0) -> "JobOutcome":
        return cls(succeeded=True, result=result or {}, duration_s=duration_s)

    @classmethod
    def failure(cls, error: BaseException, duration_s: float = 0.0) -> "JobOutcome":
        return cls(succeeded=False, error=error, duration_s=duration_s)

    @classmethod
    def cancellation(cls, duration_s: float = 0.0) -> "JobOutcome":
        return cls(succeeded=False, cancelled=True, duration_s=duration_s)
