"""Stateless validation and sanitization of inbound request fields.

Suspicious input and scanner user agents are logged for monitoring but not
rejected; malformed or disallowed values raise ``ValidationError``.
"""

import html
import ipaddress
import logging
import re
from typing import Any, Iterable, List, Optional
from urllib.parse import parse_qs, urlparse

from pydantic import HttpUrl, TypeAdapter
from pydantic import ValidationError as PydanticValidationError

from ..errors import PayloadTooLarge, ValidationError
from ..models import SecurityConfig
from ..queue.models import JOB_ID_PATTERN, JobState

logger = logging.getLogger(__name__)

SUSPICIOUS_INPUT_PATTERNS = [
    # SQL keywords
    re.compile(r"\b(union|select|insert|update|delete|drop)\b", re.IGNORECASE),
    # Script tags
    re.compile(r"<script[^>]*>.*?</script>", re.IGNORECASE | re.DOTALL),
    # Shell metacharacters
    re.compile(r"(\||;|&|\$\(|`)"),
    # Path traversal
    re.compile(r"\.\./|\.\.\\|\.\.%2f|\.\.%5c", re.IGNORECASE),
]

SUSPICIOUS_USER_AGENTS = [
    re.compile(pattern, re.IGNORECASE)
    for pattern in (r"sqlmap", r"nikto", r"nmap", r"masscan", r"zap", r"burp", r"bot.*bot")
]

STATUS_FILTERS = frozenset(state.value for state in JobState)

_http_url = TypeAdapter(HttpUrl)


class SecurityValidator:
    """Input checks applied before a request reaches the controller."""

    def __init__(self, config: Optional[SecurityConfig] = None, production: bool = False):
        self.config = config or SecurityConfig()
        self.production = production

    # ------------------------------------------------------------------
    # Request-level checks
    # ------------------------------------------------------------------
    def check_request_size(self, content_length: Optional[str], source: str = "unknown") -> None:
        if not content_length:
            return
        try:
            size = int(content_length)
        except ValueError:
            raise ValidationError("Invalid Content-Length header")
        if size > self.config.max_request_bytes:
            logger.warning(
                "Oversized request from %s: %d bytes (limit %d)",
                source,
                size,
                self.config.max_request_bytes,
            )
            raise PayloadTooLarge("Request size exceeds the maximum allowed limit")

    @staticmethod
    def is_suspicious_user_agent(user_agent: Optional[str]) -> bool:
        if not user_agent:
            return False
        return any(p.search(user_agent) for p in SUSPICIOUS_USER_AGENTS)

    @staticmethod
    def find_suspicious_pattern(value: str) -> Optional[str]:
        for pattern in SUSPICIOUS_INPUT_PATTERNS:
            if pattern.search(value):
                return pattern.pattern
        return None

    def inspect(self, values: Iterable[Any], source: str, endpoint: str) -> List[str]:
        """Log suspicious patterns found in the given values.

        Returns:
            The patterns that matched
        """
        matched = []
        for value in values:
            if not isinstance(value, str):
                continue
            pattern = self.find_suspicious_pattern(value)
            if pattern:
                matched.append(pattern)
                logger.warning(
                    "Suspicious input from %s on %s (pattern %s): %r",
                    source,
                    endpoint,
                    pattern,
                    value[:100],
                )
        return matched

    def sanitize_string(self, value: str, source: str = "unknown", endpoint: str = "") -> str:
        """Escape HTML entities and drop angle brackets."""
        if not isinstance(value, str):
            return value
        self.inspect([value], source, endpoint)
        return html.escape(value, quote=True).replace("<", "").replace(">", "")

    def sanitize_object(self, obj: Any, source: str = "unknown", endpoint: str = "") -> Any:
        if isinstance(obj, str):
            return self.sanitize_string(obj, source, endpoint)
        if isinstance(obj, dict):
            return {k: self.sanitize_object(v, source, endpoint) for k, v in obj.items()}
        if isinstance(obj, list):
            return [self.sanitize_object(v, source, endpoint) for v in obj]
        return obj

    # ------------------------------------------------------------------
    # Field validators
    # ------------------------------------------------------------------
    @staticmethod
    def _parse_http_url(url: Any, message: str) -> str:
        if not isinstance(url, str) or not url.strip():
            raise ValidationError(message)
        try:
            _http_url.validate_python(url.strip())
        except PydanticValidationError:
            raise ValidationError(message)
        return url.strip()

    def _host_allowed(self, hostname: str) -> bool:
        return any(
            hostname == host or hostname.endswith("." + host)
            for host in self.config.allowed_video_hosts
        )

    def validate_video_url(self, url: Any) -> str:
        """Check the URL is from a supported platform and normalize it.

        Raises:
            ValidationError: Missing, malformed, or unsupported host
        """
        if url is None or url == "":
            raise ValidationError("Video URL is required")
        url = self._parse_http_url(url, "Invalid URL format")
        hostname = (urlparse(url).hostname or "").lower()
        if not self._host_allowed(hostname):
            raise ValidationError("URL must be from a supported video platform")
        return normalize_video_url(url)

    def validate_callback_url(self, url: Any) -> Optional[str]:
        if url is None:
            return None
        url = self._parse_http_url(url, "Invalid callback URL format")
        if self.production and is_internal_host(urlparse(url).hostname or ""):
            raise ValidationError("Callback URL cannot point to internal networks")
        return url

    @staticmethod
    def validate_job_id(job_id: Any) -> str:
        if not isinstance(job_id, str) or not JOB_ID_PATTERN.match(job_id):
            raise ValidationError("Invalid job ID format")
        return job_id

    @staticmethod
    def validate_limit(limit: Any, default: int = 10) -> int:
        if limit is None or limit == "":
            return default
        try:
            value = int(limit)
        except (TypeError, ValueError):
            raise ValidationError("Limit must be between 1 and 100")
        if value < 1 or value > 100:
            raise ValidationError("Limit must be between 1 and 100")
        return value

    @staticmethod
    def validate_status_filter(status: Any) -> Optional[JobState]:
        if status is None or status == "":
            return None
        if status not in STATUS_FILTERS:
            raise ValidationError("Invalid status filter")
        return JobState(status)

    def validate_reason(self, reason: Any) -> Optional[str]:
        """Cancel reasons: 1-200 characters, HTML-escaped."""
        if reason is None:
            return None
        max_len = self.config.max_reason_length
        if not isinstance(reason, str) or not (1 <= len(reason) <= max_len):
            raise ValidationError(f"Reason must be between 1 and {max_len} characters")
        return html.escape(reason, quote=True)


def normalize_video_url(url: str) -> str:
    """Rewrite YouTube watch/embed/short URLs to ``https://www.youtube.com/watch?v=<id>``.

    Other URLs are returned unchanged.
    """
    parsed = urlparse(url)
    hostname = (parsed.hostname or "").lower()
    video_id = None

    if "youtube.com" in hostname:
        if parsed.path == "/watch":
            video_id = parse_qs(parsed.query).get("v", [None])[0]
        elif parsed.path.startswith("/embed/"):
            video_id = parsed.path[len("/embed/"):]
        elif parsed.path.startswith("/v/"):
            video_id = parsed.path[len("/v/"):]
    elif hostname == "youtu.be":
        video_id = parsed.path.lstrip("/")

    if video_id:
        video_id = re.split(r"[?&/]", video_id)[0]
    if not video_id:
        return url
    return f"https://www.youtube.com/watch?v={video_id}"


def is_internal_host(hostname: str) -> bool:
    """localhost, loopback and private address ranges."""
    hostname = hostname.lower().strip("[]")
    if hostname in ("localhost", "localhost.localdomain") or hostname.endswith(".localhost"):
        return True
    try:
        address = ipaddress.ip_address(hostname)
    except ValueError:
        return False
    return address.is_private or address.is_loopback or address.is_link_local
