"""Processing task contract and the built-in simulated video processor.

A processing task is any callable ``task(job, progress) -> dict``:

- ``job`` is a snapshot of the claimed ``Job``
- ``progress(value)`` forwards 0-100 progress to the queue and raises
  ``JobCancelled`` once the job was cancelled or finalized elsewhere
- the return value becomes the job result
- failures are signalled by raising; ``TransientTaskError`` and network-class
  errors are retried, ``PermanentTaskError`` and unknown errors are not

A real pipeline is plugged in with ``processor: "package.module:attribute"``
in configuration. If the attribute is a class it is instantiated with no
arguments.
"""

import importlib
import logging
import time
import uuid
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional
from urllib.parse import parse_qs, urlparse

from .queue.models import Job
from .queue.worker import ProcessingTask, ProgressCallback

logger = logging.getLogger(__name__)


def _video_id(url: str) -> Optional[str]:
    parsed = urlparse(url)
    return parse_qs(parsed.query).get("v", [None])[0]


class SimulatedVideoProcessor:
    """Stand-in for the download / transcribe / analyze pipeline.

    Walks the same stages and progress checkpoints as the real pipeline
    (metadata 15, download 40, audio 50, transcript 70, analysis 90,
    result 95, done 100) without touching the network.
    """

    def __init__(self, step_delay_s: float = 0.0, sleep: Callable[[float], None] = time.sleep):
        self.step_delay_s = step_delay_s
        self._sleep = sleep

    def _step(self, progress: ProgressCallback, value: int, stage: str, job: Job) -> None:
        if self.step_delay_s:
            self._sleep(self.step_delay_s)
        logger.debug("Job %s stage %s", job.job_id, stage)
        progress(value)

    def __call__(self, job: Job, progress: ProgressCallback) -> Dict[str, Any]:
        options = job.payload.options
        session_id = uuid.uuid4().hex[:12]

        progress(5)
        self._step(progress, 15, "metadata", job)
        video = {
            "url": job.payload.video_url,
            "id": _video_id(job.payload.video_url),
            "title": "Unknown Title",
            "duration": 0,
        }

        self._step(progress, 40, "download", job)

        transcript = None
        if options.include_transcript:
            self._step(progress, 50, "extract_audio", job)
            self._step(progress, 70, "transcribe", job)
            transcript = {"text": "", "segments": []}

        analysis = None
        if options.include_analysis:
            self._step(progress, 90, "analyze", job)
            analysis = {"summary": None, "topics": []}

        self._step(progress, 95, "prepare_result", job)
        result = {
            "success": True,
            "jobId": job.job_id,
            "sessionId": session_id,
            "processedAt": datetime.now(timezone.utc).isoformat(),
            "data": {
                "video": video,
                "transcript": transcript,
                "analysis": analysis,
            },
            "metadata": {
                "processing": {
                    "includeTranscript": options.include_transcript,
                    "includeAnalysis": options.include_analysis,
                    "hasWebhook": bool(options.webhook),
                },
                "simulated": True,
            },
        }
        progress(100)
        return result


def load_task(path: str) -> ProcessingTask:
    """Import a processing task from ``"module:attribute"``.

    Raises:
        ValueError: Malformed path or the target is not callable
        ImportError: The module cannot be imported
    """
    module_name, sep, attr = path.partition(":")
    if not sep or not module_name or not attr:
        raise ValueError(f"Processor must look like 'module:attribute', got {path!r}")

    module = importlib.import_module(module_name)
    target = module
    for part in attr.split("."):
        try:
            target = getattr(target, part)
        except AttributeError as e:
            raise ValueError(f"{module_name} has no attribute {attr!r}") from e

    if isinstance(target, type):
        target = target()
    if not callable(target):
        raise ValueError(f"Processor {path!r} is not callable")

    logger.info("Loaded processing task %s", path)
    return target


def build_task(processor: Optional[str]) -> ProcessingTask:
    """Resolve the configured processor, defaulting to the simulator."""
    if processor:
        return load_task(processor)
    logger.warning("No processor configured; using the simulated video processor")
    return SimulatedVideoProcessor()
