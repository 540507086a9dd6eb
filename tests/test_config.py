import logging
from pathlib import Path

import pytest
from pydantic import ValidationError

from vidqueue.config import (
    configure_logging,
    env_overrides,
    load_yaml,
    merge_dicts,
    resolve_config,
)
from vidqueue.models import LoggingConfig, ServiceConfig

DEFAULT_YAML = Path(__file__).resolve().parents[1] / "config" / "default.yaml"


def _resolve(cli_args=None, environ=None):
    return resolve_config(cli_args, config_path=DEFAULT_YAML, environ=environ or {})


def test_default_config_loads():
    """Test default.yaml loads without errors."""
    config = _resolve()
    assert isinstance(config, ServiceConfig)
    assert config.environment == "development"
    assert config.queue.max_queue_size == 100
    assert config.monitoring.queue_size_warning == 50
    assert config.queue.max_attempts == 3
    assert config.worker.concurrency == 4
    assert config.rate_limit.endpoints["/api/process-video"].max_requests == 30


def test_cli_override_workers():
    """Test CLI args override YAML defaults."""
    config = _resolve({"workers": 8})
    assert config.worker.concurrency == 8


def test_cli_override_server_and_db():
    config = _resolve({"host": "127.0.0.1", "port": 9000, "db": "/tmp/jobs.db"})
    assert config.server.host == "127.0.0.1"
    assert config.server.port == 9000
    assert config.storage.db_path == "/tmp/jobs.db"


def test_cli_none_values_ignored():
    """Unset argparse options must not clobber YAML values."""
    config = _resolve({"workers": None, "port": None, "log_level": None})
    assert config.worker.concurrency == 4
    assert config.server.port == 8080
    assert config.logging.level == "INFO"


def test_env_overrides_applied():
    config = _resolve(environ={
        "VIDQUEUE_ENV": "production",
        "API_KEYS": "key-a, key-b,,",
        "ADMIN_API_KEY": "root",
        "MAX_CONCURRENT_JOBS": "2",
        "MAX_QUEUE_SIZE": "10",
        "LOG_LEVEL": "debug",
    })
    assert config.is_production
    assert config.auth.api_keys == ["key-a", "key-b"]
    assert config.auth.admin_key == "root"
    assert config.worker.concurrency == 2
    assert config.queue.max_queue_size == 10
    assert config.logging.level == "DEBUG"
    # Env keeps the rest of the YAML section
    assert config.auth.block_threshold == 10


def test_cli_beats_environment():
    config = _resolve({"workers": 6}, environ={"MAX_CONCURRENT_JOBS": "2"})
    assert config.worker.concurrency == 6


def test_env_overrides_empty():
    assert env_overrides({}) == {}
    assert env_overrides({"PORT": "8000"}) == {"server": {"port": 8000}}


def test_invalid_values_rejected():
    with pytest.raises(ValidationError):
        _resolve(environ={"MAX_CONCURRENT_JOBS": "0"})


def test_missing_yaml_returns_empty_dict():
    """Test graceful handling of missing config files."""
    result = load_yaml(Path("nonexistent.yaml"))
    assert result == {}


def test_missing_config_file_uses_model_defaults(tmp_path):
    config = resolve_config(config_path=tmp_path / "absent.yaml", environ={})
    assert config == ServiceConfig()


def test_merge_dicts_recursive():
    merged = merge_dicts({"a": {"b": 1, "c": 2}, "d": 1}, {"a": {"c": 3}, "e": 4})
    assert merged == {"a": {"b": 1, "c": 3}, "d": 1, "e": 4}


def test_configure_logging_sets_level():
    configure_logging(LoggingConfig(level="warning"))
    assert logging.getLogger().level == logging.WARNING
