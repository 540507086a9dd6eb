import logging
import os
from pathlib import Path
from typing import Any, Dict, Optional, Union

import yaml

from .models import LoggingConfig, ServiceConfig

DEFAULT_CONFIG_PATH = Path("config/default.yaml")
LOCAL_CONFIG_PATH = Path("config/local.yaml")

logger = logging.getLogger(__name__)


def load_yaml(path: Path) -> Dict[str, Any]:
    """Load YAML file, returning empty dict if not found."""
    if not path.exists():
        return {}
    with open(path, "r") as f:
        return yaml.safe_load(f) or {}


def merge_dicts(base: Dict, override: Dict) -> Dict:
    """Recursive merge of two dictionaries."""
    result = base.copy()
    for k, v in override.items():
        if k in result and isinstance(result[k], dict) and isinstance(v, dict):
            result[k] = merge_dicts(result[k], v)
        else:
            result[k] = v
    return result


def _split_keys(raw: str) -> list:
    return [k.strip() for k in raw.split(",") if k.strip()]


def env_overrides(environ: Optional[Dict[str, str]] = None) -> Dict[str, Any]:
    """Translate supported environment variables into a config fragment."""
    env = os.environ if environ is None else environ
    data: Dict[str, Any] = {}

    if env.get("VIDQUEUE_ENV"):
        data["environment"] = env["VIDQUEUE_ENV"]
    if env.get("API_KEYS"):
        data.setdefault("auth", {})["api_keys"] = _split_keys(env["API_KEYS"])
    if env.get("ADMIN_API_KEY"):
        data.setdefault("auth", {})["admin_key"] = env["ADMIN_API_KEY"]
    if env.get("DEV_API_KEY"):
        data.setdefault("auth", {})["dev_key"] = env["DEV_API_KEY"]
    if env.get("MAX_CONCURRENT_JOBS"):
        data.setdefault("worker", {})["concurrency"] = int(env["MAX_CONCURRENT_JOBS"])
    if env.get("MAX_QUEUE_SIZE"):
        data.setdefault("queue", {})["max_queue_size"] = int(env["MAX_QUEUE_SIZE"])
    if env.get("VIDQUEUE_DB_PATH"):
        data.setdefault("storage", {})["db_path"] = env["VIDQUEUE_DB_PATH"]
    if env.get("VIDQUEUE_PROCESSOR"):
        data["processor"] = env["VIDQUEUE_PROCESSOR"]
    if env.get("LOG_LEVEL"):
        data.setdefault("logging", {})["level"] = env["LOG_LEVEL"]
    if env.get("PORT"):
        data.setdefault("server", {})["port"] = int(env["PORT"])

    return data


def resolve_config(
    cli_args: Optional[Dict[str, Any]] = None,
    config_path: Optional[Union[str, Path]] = None,
    environ: Optional[Dict[str, str]] = None,
) -> ServiceConfig:
    """
    Resolve config: Default < Local < Environment < CLI
    Returns validated Pydantic ServiceConfig model.

    Raises:
        pydantic.ValidationError: If the merged configuration is invalid
    """
    cli_args = cli_args or {}

    # 1. Load default YAML (or the explicitly requested file)
    config_data = load_yaml(Path(config_path) if config_path else DEFAULT_CONFIG_PATH)

    # 2. Merge local overrides
    if config_path is None:
        config_data = merge_dicts(config_data, load_yaml(LOCAL_CONFIG_PATH))

    # 3. Environment variables
    config_data = merge_dicts(config_data, env_overrides(environ))

    # 4. Validate and apply CLI overrides
    config = ServiceConfig.from_dict(config_data)
    return config.merge_cli_overrides(cli_args)


def configure_logging(config: LoggingConfig) -> None:
    """Configure root logging once for the service process."""
    logging.basicConfig(
        level=getattr(logging, config.level),
        format=config.format,
        datefmt=config.datefmt,
        force=True,
    )
    logger.debug("Logging configured at %s", config.level)
