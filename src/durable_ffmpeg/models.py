"""Pydantic models for service configuration."""

from typing import Literal, Optional

from pydantic import BaseModel, Field, field_validator


class EncoderConfig(BaseModel):
    """Encoder process limits and invocation settings."""

    binary_path: Optional[str] = Field(
        default=None,
        description="ffmpeg executable (None = ffmpeg on PATH, else imageio-ffmpeg's bundled binary)",
    )
    probe_binary_path: Optional[str] = Field(
        default=None, description="ffprobe executable (None = derived from the encoder binary)"
    )
    concurrency_limit: int = Field(
        default=2, ge=1, description="Maximum simultaneously running encoder processes"
    )
    time_limit_s: float = Field(
        default=3600.0, gt=0.0, description="Wall-clock limit for one encoder invocation"
    )
    no_progress_timeout_s: float = Field(
        default=300.0, gt=0.0, description="Kill the encoder if no progress update in N seconds"
    )
    kill_grace_period_s: float = Field(
        default=5.0, gt=0.0, description="Grace period between SIGTERM and SIGKILL"
    )
    memory_limit_mb: Optional[int] = Field(
        default=None, gt=0, description="Address-space ceiling for the encoder (POSIX only)"
    )
    cpu_time_limit_s: Optional[int] = Field(
        default=None, gt=0, description="CPU-seconds ceiling for the encoder (POSIX only)"
    )
    loglevel: str = Field(
        default="info", description="ffmpeg log level: error, warning, info, verbose"
    )
    excerpt_limit: int = Field(
        default=2000, ge=100, description="Max characters of encoder output surfaced to callers"
    )
    probe_timeout_s: float = Field(default=30.0, gt=0.0, description="ffprobe timeout")


class RetryConfig(BaseModel):
    """Retry policy shared by the staging, invoking and publishing steps."""

    max_attempts: int = Field(
        default=3, ge=1, description="Total attempts per step before the job fails"
    )
    backoff_base_s: float = Field(
        default=1.0, ge=0.0, description="Backoff for the first retry (doubles per attempt)"
    )
    backoff_ceiling_s: float = Field(
        default=60.0, ge=0.0, description="Upper bound for any single backoff delay"
    )
    suspend_threshold_s: float = Field(
        default=30.0,
        ge=0.0,
        description="Backoff delays longer than this suspend the job instead of sleeping",
    )

    @field_validator("backoff_ceiling_s")
    @classmethod
    def ceiling_not_below_base(cls, v: float, info) -> float:
        """Validate that the ceiling is not below the base delay."""
        if "backoff_base_s" in info.data and v < info.data["backoff_base_s"]:
            raise ValueError(
                f"backoff_ceiling_s ({v}) must be >= backoff_base_s ({info.data['backoff_base_s']})"
            )
        return v


class S3Config(BaseModel):
    """MinIO/S3 credentials for s3:// sources and destinations."""

    endpoint: Optional[str] = Field(default=None, description="host[:port] of the S3 endpoint")
    access_key: Optional[str] = Field(default=None, description="Access key")
    secret_key: Optional[str] = Field(default=None, description="Secret key")
    secure: bool = Field(default=True, description="Use TLS")


class StorageConfig(BaseModel):
    """Working storage, output and journal locations."""

    work_root: str = Field(default="work", description="Per-request working directories live here")
    output_root: str = Field(
        default="outputs", description="Default publish destination when a request names none"
    )
    journal_path: str = Field(default="journal.db", description="SQLite step journal")
    http_timeout_s: float = Field(default=60.0, gt=0.0, description="Timeout for HTTP sources")
    s3: S3Config = Field(default_factory=S3Config)


class ServerConfig(BaseModel):
    """HTTP boundary the orchestrator calls into."""

    host: str = Field(default="0.0.0.0", description="Bind address")
    port: int = Field(default=9080, gt=0, lt=65536, description="Listen port")
    handle_wait_s: float = Field(
        default=25.0,
        ge=0.0,
        description="How long a handle call waits for the job before returning a suspension",
    )
    max_workers: int = Field(default=8, ge=1, description="Concurrent request activations")


class LoggingConfig(BaseModel):
    """Log output settings."""

    level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(default="INFO")
    format: Literal["text", "json"] = Field(default="text")

    @field_validator("level", mode="before")
    @classmethod
    def upper_level(cls, v):
        return v.upper() if isinstance(v, str) else v


class ServiceConfig(BaseModel):
    """Complete service configuration with validation."""

    encoder: EncoderConfig = Field(default_factory=EncoderConfig)
    retry: RetryConfig = Field(default_factory=RetryConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)
    server: ServerConfig = Field(default_factory=ServerConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

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
        if cli_args.get("journal") is not None:
            config_dict["storage"]["journal_path"] = cli_args["journal"]
        if cli_args.get("work_root") is not None:
            config_dict["storage"]["work_root"] = cli_args["work_root"]
        if cli_args.get("output_root") is not None:
            config_dict["storage"]["output_root"] = cli_args["output_root"]
        if cli_args.get("encoder") is not None:
            config_dict["encoder"]["binary_path"] = cli_args["encoder"]
        if cli_args.get("concurrency") is not None:
            config_dict["encoder"]["concurrency_limit"] = cli_args["concurrency"]
        if cli_args.get("log_level") is not None:
            config_dict["logging"]["level"] = cli_args["log_level"]

        return ServiceConfig.from_dict(config_dict)
