import tempfile
from pathlib import Path

import pytest
from httpx import ASGITransport, AsyncClient

from vidqueue.api.app import create_app
from vidqueue.models import QueueConfig, ServiceConfig
from vidqueue.queue import InMemoryJobStore, JobMetadata, JobOptions, JobPayload, QueueManager
from vidqueue.service import VideoJobService

VIDEO_URL = "https://www.youtube.com/watch?v=dQw4w9WgXcQ"
ADMIN_KEY = "admin-secret-key"
CLIENT_KEY = "client-secret-key"


class FakeClock:
    """Manually advanced epoch clock."""

    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def make_payload(priority: int = 0, url: str = VIDEO_URL, **options) -> JobPayload:
    return JobPayload(video_url=url, options=JobOptions(priority=priority, **options))


def make_metadata(request_id: str = "req-1") -> JobMetadata:
    return JobMetadata(request_id=request_id, api_key_name="test", client_ip="127.0.0.1")


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def temp_db():
    """Create temporary database path for testing."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield str(Path(tmpdir) / "test_jobs.db")


@pytest.fixture
def store():
    return InMemoryJobStore()


@pytest.fixture
def make_queue(store, clock):
    """Factory for QueueManager over the shared store and fake clock."""

    def _make(**overrides) -> QueueManager:
        defaults = {"backoff_jitter": 0.0}
        defaults.update(overrides)
        return QueueManager(store, QueueConfig(**defaults), clock=clock, rng=lambda: 0.0)

    return _make


@pytest.fixture
def queue(make_queue):
    return make_queue()


def service_config(**overrides) -> ServiceConfig:
    data = {
        "environment": "test",
        "storage": {"backend": "memory"},
        "auth": {"api_keys": [CLIENT_KEY], "admin_key": ADMIN_KEY, "dev_key": None},
        "worker": {"concurrency": 2, "poll_interval_s": 0.05, "monitor_interval_s": 0.05},
        "rate_limit": {"endpoints": {}},
    }
    for key, value in overrides.items():
        if isinstance(value, dict) and isinstance(data.get(key), dict):
            data[key] = {**data[key], **value}
        else:
            data[key] = value
    return ServiceConfig.from_dict(data)


@pytest.fixture
def service(clock):
    """Service with an in-memory store; workers are not started."""
    return VideoJobService(service_config(), task=lambda job, progress: {}, clock=clock)


@pytest.fixture(scope="function")
async def client(service):
    app = create_app(service=service)
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac
