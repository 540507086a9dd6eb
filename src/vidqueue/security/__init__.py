"""Request gatekeeping: input validation, API key auth and rate limiting."""

from .auth import (
    AuthContext,
    AuthGateway,
    ApiKeyRecord,
    FailureRecord,
    KeyUsage,
    hash_api_key,
    required_permission,
)
from .rate_limit import RateLimiter
from .validator import SecurityValidator, normalize_video_url

__all__ = [
    "AuthContext",
    "AuthGateway",
    "ApiKeyRecord",
    "FailureRecord",
    "KeyUsage",
    "RateLimiter",
    "SecurityValidator",
    "hash_api_key",
    "normalize_video_url",
    "required_permission",
]
