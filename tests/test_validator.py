"""Tests for request validation and sanitization."""

import pytest

from vidqueue.errors import PayloadTooLarge, ValidationError
from vidqueue.queue import JobState
from vidqueue.security.validator import SecurityValidator, is_internal_host, normalize_video_url


@pytest.fixture
def validator():
    return SecurityValidator()


class TestVideoUrl:
    @pytest.mark.parametrize(
        "url,expected",
        [
            ("https://www.youtube.com/watch?v=abc123&t=10", "https://www.youtube.com/watch?v=abc123"),
            ("https://youtu.be/abc123?t=3", "https://www.youtube.com/watch?v=abc123"),
            ("https://www.youtube.com/embed/abc123", "https://www.youtube.com/watch?v=abc123"),
            ("https://m.youtube.com/watch?v=abc123", "https://www.youtube.com/watch?v=abc123"),
            ("https://www.youtube.com/channel/xyz", "https://www.youtube.com/channel/xyz"),
        ],
    )
    def test_normalization(self, validator, url, expected):
        assert validator.validate_video_url(url) == expected

    def test_required(self, validator):
        with pytest.raises(ValidationError, match="Video URL is required"):
            validator.validate_video_url(None)
        with pytest.raises(ValidationError, match="Video URL is required"):
            validator.validate_video_url("")

    @pytest.mark.parametrize("url", ["not a url", "ftp://youtube.com/watch?v=a", 42])
    def test_malformed(self, validator, url):
        with pytest.raises(ValidationError, match="Invalid URL format"):
            validator.validate_video_url(url)

    @pytest.mark.parametrize(
        "url", ["https://vimeo.com/1234", "https://evil-youtube.com/watch?v=a"]
    )
    def test_unsupported_host(self, validator, url):
        with pytest.raises(ValidationError, match="supported video platform"):
            validator.validate_video_url(url)

    def test_non_youtube_urls_unchanged(self):
        assert normalize_video_url("https://example.com/v?id=1") == "https://example.com/v?id=1"


class TestCallbackUrl:
    def test_none_allowed(self, validator):
        assert validator.validate_callback_url(None) is None

    def test_malformed(self, validator):
        with pytest.raises(ValidationError, match="Invalid callback URL format"):
            validator.validate_callback_url("hook")

    def test_internal_hosts_allowed_outside_production(self, validator):
        assert validator.validate_callback_url("http://localhost:9000/hook")

    @pytest.mark.parametrize(
        "url", ["http://localhost/hook", "http://127.0.0.1/hook", "http://10.0.0.5/hook"]
    )
    def test_internal_hosts_rejected_in_production(self, url):
        with pytest.raises(ValidationError, match="internal networks"):
            SecurityValidator(production=True).validate_callback_url(url)

    def test_public_host_in_production(self):
        url = "https://hooks.example.com/done"
        assert SecurityValidator(production=True).validate_callback_url(url) == url

    def test_is_internal_host(self):
        assert is_internal_host("192.168.1.10")
        assert is_internal_host("[::1]")
        assert not is_internal_host("8.8.8.8")
        assert not is_internal_host("example.com")


class TestQueryFields:
    def test_limit(self, validator):
        assert validator.validate_limit(None) == 10
        assert validator.validate_limit("25") == 25
        for bad in ("0", "101", "abc"):
            with pytest.raises(ValidationError, match="between 1 and 100"):
                validator.validate_limit(bad)

    def test_status_filter(self, validator):
        assert validator.validate_status_filter(None) is None
        assert validator.validate_status_filter("delayed") == JobState.DELAYED
        assert validator.validate_status_filter("cancelled") == JobState.CANCELLED
        with pytest.raises(ValidationError, match="Invalid status filter"):
            validator.validate_status_filter("running")

    def test_job_id(self, validator):
        assert validator.validate_job_id("video_1700000000000_ab12cd") == "video_1700000000000_ab12cd"
        for bad in ("bad id", "a" * 51, "", None):
            with pytest.raises(ValidationError, match="Invalid job ID format"):
                validator.validate_job_id(bad)

    def test_reason(self, validator):
        assert validator.validate_reason(None) is None
        assert validator.validate_reason("<no longer needed>") == "&lt;no longer needed&gt;"
        for bad in ("", "x" * 201, 7):
            with pytest.raises(ValidationError, match="between 1 and 200"):
                validator.validate_reason(bad)


class TestSanitization:
    def test_sanitize_string(self, validator):
        assert validator.sanitize_string("<b>hi</b> & co") == "&lt;b&gt;hi&lt;/b&gt; &amp; co"

    def test_sanitize_object_recurses(self, validator):
        cleaned = validator.sanitize_object({"a": ["<x>"], "n": 3, "b": {"c": '"q"'}})
        assert cleaned == {"a": ["&lt;x&gt;"], "n": 3, "b": {"c": "&quot;q&quot;"}}

    def test_suspicious_input_logged_not_rejected(self, validator, caplog):
        matched = validator.inspect(["1; DROP TABLE jobs", 5, "fine"], "10.0.0.1", "/api/x")

        assert len(matched) == 1
        assert "Suspicious input" in caplog.text

    @pytest.mark.parametrize(
        "agent,suspicious",
        [
            ("sqlmap/1.7", True),
            ("Mozilla/5.0 (Nikto)", True),
            ("Mozilla/5.0 (X11; Linux x86_64)", False),
            ("Googlebot/2.1", False),
            (None, False),
        ],
    )
    def test_user_agents(self, agent, suspicious):
        assert SecurityValidator.is_suspicious_user_agent(agent) is suspicious


class TestRequestSize:
    def test_within_limit(self, validator):
        validator.check_request_size("1024")
        validator.check_request_size(None)

    def test_too_large(self, validator):
        with pytest.raises(PayloadTooLarge) as exc:
            validator.check_request_size(str(2 * 1024 * 1024))
        assert exc.value.status_code == 413

    def test_garbage_length(self, validator):
        with pytest.raises(ValidationError):
            validator.check_request_size("lots")
