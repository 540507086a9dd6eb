"""Public job operations: submit, query, cancel and queue administration.

The controller is transport-agnostic. It receives already-parsed request
fields, applies field-level validation, calls into the queue, and returns
JSON-ready dictionaries. Errors propagate as ``ServiceError`` subclasses.
"""

import logging
import math
import time
import uuid
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional, Union

from pydantic import ValidationError as PydanticValidationError

from .errors import NotFound, ValidationError
from .queue.manager import QueueManager
from .queue.models import Job, JobMetadata, JobOptions, JobPayload, JobState, QueueStats
from .security.validator import SecurityValidator

logger = logging.getLogger(__name__)


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


class JobController:
    """Composes validation, the queue and response formatting.

    Args:
        queue: The job queue
        validator: Field validator/sanitizer
        concurrency: Worker slot count, used for wait estimates
        clock: Wall clock in epoch seconds
    """

    def __init__(
        self,
        queue: QueueManager,
        validator: Optional[SecurityValidator] = None,
        concurrency: int = 4,
        clock: Callable[[], float] = time.time,
    ):
        self.queue = queue
        self.validator = validator or SecurityValidator()
        self.concurrency = max(1, concurrency)
        self._clock = clock

    # ------------------------------------------------------------------
    # Submit
    # ------------------------------------------------------------------
    @staticmethod
    def _parse_options(options: Union[None, JobOptions, Dict[str, Any]]) -> JobOptions:
        if options is None:
            return JobOptions()
        if isinstance(options, JobOptions):
            return options
        if not isinstance(options, dict):
            raise ValidationError("Options must be an object")
        try:
            return JobOptions.model_validate(options)
        except PydanticValidationError as e:
            first = e.errors()[0]
            field = ".".join(str(p) for p in first["loc"]) or "options"
            if first["type"] == "extra_forbidden":
                raise ValidationError(f"Invalid option: {field}")
            if field == "priority":
                raise ValidationError("Priority must be an integer between 0 and 10")
            raise ValidationError(f"Invalid option {field}: {first['msg']}")

    def estimated_wait_minutes(self, stats: QueueStats) -> int:
        """ceil((waiting + active) / concurrency) * average job minutes, at least 1."""
        in_line = stats.waiting + stats.active
        avg_minutes = self.queue.average_duration_s() / 60.0
        return max(1, math.ceil(math.ceil(in_line / self.concurrency) * avg_minutes))

    def process_video(
        self,
        video_url: Any,
        callback_url: Any = None,
        options: Union[None, JobOptions, Dict[str, Any]] = None,
        job_id: Optional[str] = None,
        source: Optional[str] = None,
        user_agent: Optional[str] = None,
        key_name: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Validate and enqueue a processing request.

        Raises:
            ValidationError: Missing or invalid fields
            CapacityExceeded: Queue full
            StoreUnavailable: The job could not be persisted
        """
        request_id = str(uuid.uuid4())
        if not video_url:
            raise ValidationError("videoUrl is required", error="Missing required field")

        self.validator.inspect([video_url, callback_url, job_id], source or "unknown", "process-video")
        if isinstance(options, dict):
            options = self.validator.sanitize_object(options, source or "unknown", "process-video")
        normalized_url = self.validator.validate_video_url(video_url)
        callback = self.validator.validate_callback_url(callback_url)
        parsed_options = self._parse_options(options)
        if job_id is not None:
            self.validator.validate_job_id(job_id)

        logger.info(
            "Video processing request %s received from %s (key=%s, url=%s)",
            request_id,
            source or "unknown",
            key_name or "-",
            normalized_url,
        )

        stats = self.queue.stats(fresh=True)
        wait_minutes = self.estimated_wait_minutes(stats)

        payload = JobPayload(video_url=normalized_url, callback_url=callback, options=parsed_options)
        metadata = JobMetadata(
            request_id=request_id,
            api_key_name=key_name,
            client_ip=source,
            user_agent=user_agent,
        )
        submitted = self.queue.submit(payload, metadata, job_id=job_id)

        if submitted.created:
            status = "queued"
            message = "Video processing request queued successfully"
        else:
            existing = self.queue.get_job(submitted.job_id)
            status = existing.state.value if existing else "queued"
            message = "Job already queued"

        after = self.queue.stats(fresh=True)
        return {
            "success": True,
            "message": message,
            "data": {
                "jobId": submitted.job_id,
                "requestId": request_id,
                "status": status,
                "position": submitted.position,
                "estimatedWaitTime": f"{wait_minutes} minutes",
                "endpoints": {
                    "status": f"/api/queue-status?jobId={submitted.job_id}",
                    "cancel": "/api/cancel-request",
                },
            },
            "queueInfo": {
                "waiting": after.waiting,
                "active": after.active,
                "completed": after.completed,
                "failed": after.failed,
            },
        }

    # ------------------------------------------------------------------
    # Query
    # ------------------------------------------------------------------
    def get_queue_status(
        self, job_id: Optional[str] = None, limit: Any = None, status: Any = None
    ) -> Dict[str, Any]:
        """Single job detail by ID, otherwise stats plus a bounded listing.

        Raises:
            ValidationError: Malformed job ID, limit or status filter
            NotFound: Unknown job ID
        """
        if job_id is not None and job_id != "":
            self.validator.validate_job_id(job_id)
            job = self.queue.get_job(job_id)
            if job is None:
                raise NotFound(f"No job found with ID: {job_id}")
            return {"success": True, "data": self.format_job(job)}

        limit_value = self.validator.validate_limit(limit)
        state = self.validator.validate_status_filter(status)
        jobs = self.queue.list_jobs(state=state, limit=limit_value)
        return {
            "success": True,
            "data": {
                "stats": self.stats_dict(self.queue.stats()),
                "jobs": [self.format_job(job) for job in jobs],
                "pagination": {"limit": limit_value, "count": len(jobs)},
            },
        }

    @staticmethod
    def stats_dict(stats: QueueStats) -> Dict[str, Any]:
        return {
            "waiting": stats.waiting,
            "active": stats.active,
            "completed": stats.completed,
            "failed": stats.failed,
            "delayed": stats.delayed,
            "cancelled": stats.cancelled,
            "paused": stats.paused,
        }

    def format_job(self, job: Job) -> Dict[str, Any]:
        status: Dict[str, Any] = {
            "jobId": job.job_id,
            "requestId": job.request_id,
            "status": job.state.value,
            "progress": job.progress,
            "priority": job.caller_priority,
            "attempts": job.attempts,
            "videoUrl": job.payload.video_url,
            "createdAt": _iso(job.created_at),
            "processedAt": _iso(job.started_at),
            "finishedAt": _iso(job.finished_at),
        }

        if job.state == JobState.COMPLETED and job.result is not None:
            data = job.result.get("data") or {}
            status["result"] = {
                "success": True,
                "analysis": data.get("analysis", job.result.get("analysis")),
                "transcript": data.get("transcript", job.result.get("transcript")),
                "metadata": job.result.get("metadata"),
            }
        elif job.state == JobState.FAILED:
            status["error"] = {
                "message": job.failure_reason,
                "failedAt": _iso(job.finished_at),
                "attempts": job.attempts,
            }
        elif job.state == JobState.CANCELLED:
            status["cancellation"] = {
                "reason": job.cancel_reason,
                "cancelledAt": _iso(job.finished_at),
            }
        elif job.state == JobState.ACTIVE:
            status["startedAt"] = _iso(job.started_at)
            status["estimatedCompletion"] = self.estimated_completion(job)
            if job.cancel_requested:
                status["cancelRequested"] = True
        elif job.state == JobState.DELAYED:
            status["retryAt"] = _iso(job.available_at)
            status["lastError"] = job.failure_reason

        return status

    def estimated_completion(self, job: Job) -> str:
        now = self._clock()
        start = (job.started_at or job.created_at).timestamp()
        elapsed = max(0.0, now - start)
        if job.progress > 0:
            remaining = elapsed / job.progress * 100 - elapsed
        else:
            remaining = self.queue.average_duration_s()
        return datetime.fromtimestamp(now + remaining, tz=timezone.utc).isoformat()

    # ------------------------------------------------------------------
    # Cancel and admin
    # ------------------------------------------------------------------
    def cancel_request(self, job_id: Any, reason: Any = None, key_name: Optional[str] = None) -> Dict[str, Any]:
        """Cancel a job.

        Raises:
            ValidationError: Missing/malformed job ID or reason
            NotFound: Unknown job ID
            InvalidState: Job already finished
        """
        if not job_id:
            raise ValidationError("jobId is required", error="Missing required field")
        self.validator.validate_job_id(job_id)
        clean_reason = self.validator.validate_reason(reason) or "Cancelled by user request"

        job = self.queue.cancel(job_id, clean_reason)
        immediate = job.state == JobState.CANCELLED
        logger.info(
            "Cancel request for %s by %s: %s",
            job_id,
            key_name or "-",
            "cancelled" if immediate else "cancelling",
        )
        return {
            "success": True,
            "message": "Job cancelled successfully" if immediate else "Cancellation requested",
            "data": {
                "jobId": job_id,
                "status": "cancelled" if immediate else "cancelling",
                "reason": clean_reason,
                "cancelledAt": datetime.fromtimestamp(self._clock(), tz=timezone.utc).isoformat(),
            },
        }

    def queue_stats(self) -> Dict[str, Any]:
        """Flat counts by state, always freshly computed."""
        return self.stats_dict(self.queue.stats(fresh=True))

    def pause(self) -> Dict[str, Any]:
        self.queue.pause()
        return {"success": True, "message": "Queue paused", "data": {"paused": True}}

    def resume(self) -> Dict[str, Any]:
        self.queue.resume()
        return {"success": True, "message": "Queue resumed", "data": {"paused": False}}
