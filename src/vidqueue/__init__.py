"""Video processing job queue: admission, priority scheduling, retries and workers."""

__version__ = "0.1.0"
