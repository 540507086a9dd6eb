"""API key authentication, permissions and brute-force lockout.

Keys are provisioned from configuration at startup and stored only as
SHA-256 hashes. Every failed authentication is counted per source; a source
moves ``clear -> warned (>= 5) -> blocked (>= 10 within the window)`` and a
blocked source is rejected, even with a valid key, until the window that
started with its first failure has elapsed.
"""

import hashlib
import logging
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional

from ..errors import InvalidKey, MissingCredential, PermissionDenied, SourceBlocked
from ..models import AuthConfig

logger = logging.getLogger(__name__)

ALL_PERMISSIONS = "all"
STANDARD_PERMISSIONS = ["process-video", "queue-status"]

PERMISSION_MAP = {
    "process-video": "process-video",
    "queue-status": "queue-status",
    "cancel-request": "process-video",
    "queue/stats": "queue-admin",
    "queue/pause": "queue-admin",
    "queue/resume": "queue-admin",
}
DEFAULT_PERMISSION = "general"

SOURCE_CLEAR = "clear"
SOURCE_WARNED = "warned"
SOURCE_BLOCKED = "blocked"


def hash_api_key(raw_key: str) -> str:
    return hashlib.sha256(raw_key.encode("utf-8")).hexdigest()


def required_permission(path: str) -> str:
    """Static endpoint -> permission mapping (``/api/`` prefix optional)."""
    endpoint = path.split("?", 1)[0]
    if endpoint.startswith("/api/"):
        endpoint = endpoint[len("/api/"):]
    return PERMISSION_MAP.get(endpoint.strip("/"), DEFAULT_PERMISSION)


@dataclass
class KeyUsage:
    total_requests: int = 0
    last_used_at: Optional[datetime] = None
    errors: int = 0


@dataclass
class ApiKeyRecord:
    key_hash: str
    name: str
    permissions: List[str]
    rate_limit: int
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    usage: KeyUsage = field(default_factory=KeyUsage)

    def allows(self, permission: str) -> bool:
        return ALL_PERMISSIONS in self.permissions or permission in self.permissions


@dataclass(frozen=True)
class AuthContext:
    """What an authenticated request may do."""

    key_hash: str
    key_name: str
    permissions: tuple
    rate_limit: int

    def allows(self, permission: str) -> bool:
        return ALL_PERMISSIONS in self.permissions or permission in self.permissions


@dataclass
class FailureRecord:
    source: str
    count: int
    window_start: float
    last_attempt: float


class AuthGateway:
    """Credential validation and per-source failure tracking.

    The key table and the failure tracker each have their own lock; neither
    is shared with the job queue.
    """

    def __init__(
        self,
        config: Optional[AuthConfig] = None,
        production: bool = False,
        clock: Callable[[], float] = time.time,
    ):
        self.config = config or AuthConfig()
        self.production = production
        self._clock = clock
        self._keys: Dict[str, ApiKeyRecord] = {}
        self._keys_lock = threading.Lock()
        self._failures: Dict[str, FailureRecord] = {}
        self._failures_lock = threading.Lock()
        self._provision()

    # ------------------------------------------------------------------
    # Key table
    # ------------------------------------------------------------------
    def _provision(self) -> None:
        cfg = self.config
        if cfg.admin_key:
            self.add_key(cfg.admin_key, "admin", [ALL_PERMISSIONS], 1000)

        for index, raw in enumerate(cfg.api_keys, start=1):
            if raw.strip():
                self.add_key(raw.strip(), f"api-key-{index}", list(STANDARD_PERMISSIONS), 100)

        for entry in cfg.keys:
            self.add_key(entry.key, entry.name, list(entry.permissions), entry.rate_limit)

        if not self.production and cfg.dev_key:
            self.add_key(cfg.dev_key, "development", [ALL_PERMISSIONS], 1000)
            logger.warning("Development API key enabled (%s...)", cfg.dev_key[:8])

        logger.info(
            "Initialized %d API keys (admin key: %s)", len(self._keys), bool(cfg.admin_key)
        )

    def add_key(self, raw_key: str, name: str, permissions: List[str], rate_limit: int) -> ApiKeyRecord:
        record = ApiKeyRecord(
            key_hash=hash_api_key(raw_key),
            name=name,
            permissions=list(permissions),
            rate_limit=rate_limit,
        )
        with self._keys_lock:
            self._keys[record.key_hash] = record
        return record

    def validate(self, raw_key: Optional[str]) -> AuthContext:
        """Resolve a raw key to its context and count the use.

        Raises:
            MissingCredential: No key presented
            InvalidKey: Unknown key
        """
        if not raw_key:
            raise MissingCredential(
                "Please provide a valid API key in the Authorization header or X-API-Key header"
            )

        key_hash = hash_api_key(raw_key)
        with self._keys_lock:
            record = self._keys.get(key_hash)
            if record is None:
                raise InvalidKey("The provided API key is not valid")
            record.usage.total_requests += 1
            record.usage.last_used_at = datetime.fromtimestamp(self._clock(), tz=timezone.utc)
            return AuthContext(
                key_hash=record.key_hash,
                key_name=record.name,
                permissions=tuple(record.permissions),
                rate_limit=record.rate_limit,
            )

    @staticmethod
    def check_permission(ctx: AuthContext, permission: str) -> bool:
        return ctx.allows(permission)

    def require_permission(self, ctx: AuthContext, permission: str, source: str = "unknown") -> None:
        if not self.check_permission(ctx, permission):
            logger.warning(
                "Key %s from %s lacks permission %s", ctx.key_name, source, permission
            )
            raise PermissionDenied(f"API key does not have permission for {permission}")

    def record_error(self, ctx: AuthContext) -> None:
        """Count a failed request made with a valid key."""
        with self._keys_lock:
            record = self._keys.get(ctx.key_hash)
            if record is not None:
                record.usage.errors += 1

    def key_stats(self) -> Dict[str, dict]:
        with self._keys_lock:
            return {
                record.name: {
                    "name": record.name,
                    "permissions": list(record.permissions),
                    "rateLimit": record.rate_limit,
                    "createdAt": record.created_at.isoformat(),
                    "usage": {
                        "totalRequests": record.usage.total_requests,
                        "lastUsed": (
                            record.usage.last_used_at.isoformat()
                            if record.usage.last_used_at
                            else None
                        ),
                        "errors": record.usage.errors,
                    },
                }
                for record in self._keys.values()
            }

    # ------------------------------------------------------------------
    # Failure tracker
    # ------------------------------------------------------------------
    def _window_open(self, record: FailureRecord, now: float) -> bool:
        return now - record.window_start < self.config.failure_window_s

    def track_failure(self, source: str) -> FailureRecord:
        """Count one authentication failure; the window restarts once expired."""
        now = self._clock()
        with self._failures_lock:
            record = self._failures.get(source)
            if record is None or not self._window_open(record, now):
                record = FailureRecord(source=source, count=0, window_start=now, last_attempt=now)
                self._failures[source] = record
            record.count += 1
            record.last_attempt = now
            return FailureRecord(record.source, record.count, record.window_start, record.last_attempt)

    def source_state(self, source: str) -> str:
        now = self._clock()
        with self._failures_lock:
            record = self._failures.get(source)
            if record is None or not self._window_open(record, now):
                return SOURCE_CLEAR
            if record.count >= self.config.block_threshold:
                return SOURCE_BLOCKED
            if record.count >= self.config.warn_threshold:
                return SOURCE_WARNED
            return SOURCE_CLEAR

    def is_blocked(self, source: str) -> bool:
        return self.source_state(source) == SOURCE_BLOCKED

    def retry_after(self, source: str) -> int:
        """Seconds until a blocked source's window ends (0 if not blocked)."""
        now = self._clock()
        with self._failures_lock:
            record = self._failures.get(source)
            if record is None or record.count < self.config.block_threshold:
                return 0
            remaining = record.window_start + self.config.failure_window_s - now
        return max(0, int(remaining + 0.999))

    def check_source(self, source: str) -> None:
        """Raise SourceBlocked if the source is locked out."""
        if self.is_blocked(source):
            logger.error("Blocked source %s attempted access", source)
            raise SourceBlocked(
                "Too many authentication failures. Please try again later.",
                retry_after=self.retry_after(source) or self.config.failure_window_s,
            )

    def authenticate(self, raw_key: Optional[str], source: str, endpoint: str = "") -> AuthContext:
        """Lockout check, then key validation with failure tracking.

        Raises:
            SourceBlocked: Source is locked out (regardless of the key)
            MissingCredential, InvalidKey: Authentication failed
        """
        self.check_source(source)
        try:
            ctx = self.validate(raw_key)
        except (MissingCredential, InvalidKey):
            attempt = self.track_failure(source)
            logger.warning(
                "Authentication failure from %s on %s (%d in window)",
                source,
                endpoint or "-",
                attempt.count,
            )
            if attempt.count >= self.config.warn_threshold:
                logger.error(
                    "Potential brute force from %s: %d failed attempts", source, attempt.count
                )
            raise

        logger.debug("Authenticated %s from %s on %s", ctx.key_name, source, endpoint or "-")
        return ctx

    def purge_expired(self) -> int:
        """Drop failure records whose window has elapsed.

        Returns:
            Number of records removed
        """
        now = self._clock()
        with self._failures_lock:
            expired = [s for s, r in self._failures.items() if not self._window_open(r, now)]
            for source in expired:
                del self._failures[source]
            remaining = len(self._failures)
        logger.debug("Auth failure tracker purged %d entries (%d remain)", len(expired), remaining)
        return len(expired)

    def failure_count(self, source: str) -> int:
        with self._failures_lock:
            record = self._failures.get(source)
            return record.count if record else 0
