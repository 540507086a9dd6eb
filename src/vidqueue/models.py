"""Pydantic models for service configuration."""

from typing import Dict, List, Literal, Optional

from pydantic import BaseModel, Field, field_validator, model_validator

DEFAULT_VIDEO_HOSTS = [
    "youtube.com",
    "youtu.be",
    "www.youtube.com",
    "m.youtube.com",
    "music.youtube.com",
]


class QueueConfig(BaseModel):
    """Admission, priority and retry parameters."""

    max_queue_size: int = Field(
        default=100, gt=0, description="Maximum in-flight jobs (waiting + delayed + active)"
    )
    max_priority: int = Field(default=10, gt=0, description="Highest caller-facing priority")
    max_attempts: int = Field(default=3, ge=1, description="Execution tries before a job fails")
    backoff_base_s: float = Field(default=2.0, ge=0.0, description="Delay before the first retry")
    backoff_max_s: float = Field(default=60.0, ge=0.0, description="Upper bound on retry delay")
    backoff_jitter: float = Field(
        default=0.1, ge=0.0, le=1.0, description="Uniform jitter as a fraction of the delay"
    )
    job_ttl_s: int = Field(
        default=1800, gt=0, description="Total job lifetime including queue wait (30 min)"
    )
    stats_refresh_s: float = Field(
        default=5.0, ge=0.0, description="Maximum age of the cached stats snapshot"
    )
    completed_retention_s: int = Field(
        default=86400, gt=0, description="How long finished jobs are kept before cleaning"
    )
    average_job_duration_s: float = Field(
        default=300.0, gt=0.0, description="Fallback duration used for wait estimates"
    )

    @model_validator(mode="after")
    def max_delay_covers_base(self) -> "QueueConfig":
        if self.backoff_max_s < self.backoff_base_s:
            raise ValueError("backoff_max_s must be >= backoff_base_s")
        return self


class WorkerConfig(BaseModel):
    """Worker pool sizing and supervision."""

    concurrency: int = Field(default=4, ge=1, description="Number of worker slots")
    stall_timeout_s: Optional[float] = Field(
        default=None,
        gt=0.0,
        description="Silence tolerated from a running task (None = job TTL)",
    )
    shutdown_grace_s: float = Field(
        default=30.0, ge=0.0, description="Time active jobs get to finish on shutdown"
    )
    poll_interval_s: float = Field(
        default=1.0, gt=0.0, description="Longest time an idle worker parks between checks"
    )
    monitor_interval_s: float = Field(
        default=5.0, gt=0.0, description="How often the stall monitor sweeps active jobs"
    )


class ApiKeyConfig(BaseModel):
    """Explicit key declaration (alternative to the plain ``api_keys`` list)."""

    name: str
    key: str = Field(..., min_length=1)
    permissions: List[str] = Field(default_factory=lambda: ["process-video", "queue-status"])
    rate_limit: int = Field(default=100, gt=0)


class AuthConfig(BaseModel):
    """API key provisioning and brute-force lockout."""

    api_keys: List[str] = Field(default_factory=list, description="Standard client keys")
    keys: List[ApiKeyConfig] = Field(default_factory=list, description="Named keys")
    admin_key: Optional[str] = Field(default=None, description="Key with all permissions")
    dev_key: Optional[str] = Field(
        default="dev-key-12345", description="Development key (ignored in production)"
    )
    warn_threshold: int = Field(default=5, ge=1, description="Failures before a source is warned")
    block_threshold: int = Field(default=10, ge=1, description="Failures before lockout")
    failure_window_s: int = Field(default=3600, gt=0, description="Failure counting window")
    sweep_interval_s: float = Field(
        default=1800.0, gt=0.0, description="Period of the failure tracker purge"
    )
    allow_query_param: bool = Field(
        default=True, description="Accept ?api_key= (discouraged, logged)"
    )

    @model_validator(mode="after")
    def block_after_warn(self) -> "AuthConfig":
        if self.block_threshold < self.warn_threshold:
            raise ValueError("block_threshold must be >= warn_threshold")
        return self


class EndpointLimitConfig(BaseModel):
    window_s: float = Field(default=60.0, gt=0.0)
    max_requests: int = Field(default=30, gt=0)


class RateLimitConfig(BaseModel):
    """Sliding window admission control."""

    window_s: float = Field(default=900.0, gt=0.0, description="Window length (15 min)")
    max_requests: int = Field(default=100, gt=0, description="Budget in production")
    permissive_max_requests: int = Field(
        default=1000, gt=0, description="Budget outside production"
    )
    exempt_paths: List[str] = Field(default_factory=lambda: ["/health"])
    endpoints: Dict[str, EndpointLimitConfig] = Field(
        default_factory=dict, description="Per-endpoint budgets keyed by path"
    )


class SecurityConfig(BaseModel):
    """Inbound request validation."""

    allowed_video_hosts: List[str] = Field(default_factory=lambda: list(DEFAULT_VIDEO_HOSTS))
    max_request_bytes: int = Field(default=1048576, gt=0, description="Body size limit (1 MiB)")
    max_reason_length: int = Field(default=200, gt=0)

    @field_validator("allowed_video_hosts")
    @classmethod
    def lower_hosts(cls, v: List[str]) -> List[str]:
        return [h.strip().lower() for h in v if h.strip()]


class StorageConfig(BaseModel):
    backend: Literal["memory", "sqlite"] = Field(default="sqlite")
    db_path: str = Field(default="vidqueue.db", description="SQLite database file")


class LoggingConfig(BaseModel):
    level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = Field(default="INFO")
    format: str = Field(default="%(asctime)s  %(levelname)-8s  %(name)s  %(message)s")
    datefmt: str = Field(default="%H:%M:%S")

    @field_validator("level", mode="before")
    @classmethod
    def upper_level(cls, v):
        return v.upper() if isinstance(v, str) else v


class MonitoringConfig(BaseModel):
    """Request timing window and alert thresholds."""

    response_window: int = Field(default=100, gt=0, description="Recent response times kept")
    response_time_warning_ms: float = Field(default=5000.0, gt=0.0)
    response_time_critical_ms: float = Field(default=10000.0, gt=0.0)
    queue_size_warning: int = Field(default=50, gt=0, description="waiting + active")
    queue_size_critical: int = Field(default=100, gt=0)
    max_alerts: int = Field(default=100, gt=0, description="Alerts retained, newest first")

    @model_validator(mode="after")
    def critical_above_warning(self) -> "MonitoringConfig":
        if self.response_time_critical_ms < self.response_time_warning_ms:
            raise ValueError("response_time_critical_ms must be >= response_time_warning_ms")
        if self.queue_size_critical < self.queue_size_warning:
            raise ValueError("queue_size_critical must be >= queue_size_warning")
        return self


class ServerConfig(BaseModel):
    host: str = Field(default="0.0.0.0")
    port: int = Field(default=8080, gt=0, le=65535)


class ServiceConfig(BaseModel):
    """Complete service configuration with validation."""

    environment: Literal["development", "production", "test"] = Field(default="development")
    processor: Optional[str] = Field(
        default=None, description="module:attribute of the processing task (None = simulator)"
    )
    queue: QueueConfig = Field(default_factory=QueueConfig)
    worker: WorkerConfig = Field(default_factory=WorkerConfig)
    auth: AuthConfig = Field(default_factory=AuthConfig)
    rate_limit: RateLimitConfig = Field(default_factory=RateLimitConfig)
    security: SecurityConfig = Field(default_factory=SecurityConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)
    monitoring: MonitoringConfig = Field(default_factory=MonitoringConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    server: ServerConfig = Field(default_factory=ServerConfig)

    @property
    def is_production(self) -> bool:
        return self.environment == "production"

    @property
    def is_development(self) -> bool:
        return self.environment == "development"

    @property
    def effective_rate_limit(self) -> int:
        """Request budget per window for the current environment."""
        if self.is_production:
            return self.rate_limit.max_requests
        return self.rate_limit.permissive_max_requests

    @property
    def stall_timeout_s(self) -> float:
        if self.worker.stall_timeout_s is not None:
            return min(self.worker.stall_timeout_s, float(self.queue.job_ttl_s))
        return float(self.queue.job_ttl_s)

    @classmethod
    def from_dict(cls, data: dict) -> "ServiceConfig":
        """Create config from nested dict (YAML)."""
        return cls(**data)

    def merge_cli_overrides(self, cli_args: dict) -> "ServiceConfig":
        """Apply CLI overrides and return new config instance."""
        config_dict = self.model_dump()

        if cli_args.get("host") is not None:
            config_dict["server"]["host"] = cli_args["host"]
        if cli_args.get("port") is not None:
            config_dict["server"]["port"] = cli_args["port"]
        if cli_args.get("workers") is not None:
            config_dict["worker"]["concurrency"] = cli_args["workers"]
        if cli_args.get("db") is not None:
            config_dict["storage"]["db_path"] = cli_args["db"]
        if cli_args.get("log_level") is not None:
            config_dict["logging"]["level"] = cli_args["log_level"]
        if cli_args.get("environment") is not None:
            config_dict["environment"] = cli_args["environment"]

        return ServiceConfig.from_dict(config_dict)
