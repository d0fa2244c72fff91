"""
Configuration management for the asset tracking service.

This module provides centralized configuration loading and validation using
Pydantic settings. Secrets (the provider access token, Redis credentials) are
loaded from environment variables or .env files.

Settings cover:
- Enrichment providers: elevation tile template, geofence tileset, token
- Ingestion queue: backend, stream name, partitions, batch size
- State store and archive backends, buffering policy
- Pipeline variant: asset id filter and passthrough field allow-list
- Observability and API rate limiting
"""

import os
from enum import Enum
from pathlib import Path
from typing import Optional, List, Tuple

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Environment(str, Enum):
    """Supported deployment environments."""
    DEVELOPMENT = "development"
    STAGING = "staging"
    PRODUCTION = "production"


def _detect_environment() -> Environment:
    """
    Detect the current environment from the ENVIRONMENT variable.

    Returns:
        Environment: The detected environment, defaults to DEVELOPMENT if not set.
    """
    env_value = os.environ.get("ENVIRONMENT", "development").lower().strip()
    try:
        return Environment(env_value)
    except ValueError:
        return Environment.DEVELOPMENT


def _get_env_files(environment: Environment) -> Tuple[str, ...]:
    """
    Get the .env files to load for the given environment.

    The base .env file is loaded first, then the environment-specific file
    overrides it.
    """
    env_file_map = {
        Environment.DEVELOPMENT: ".env.development",
        Environment.STAGING: ".env.staging",
        Environment.PRODUCTION: ".env.production",
    }
    env_specific_file = env_file_map.get(environment, ".env.development")
    return (".env", env_specific_file)


DEFAULT_ELEVATION_TEMPLATE = (
    "https://api.mapbox.com/v4/mapbox.terrain-rgb/{z}/{x}/{y}.pngraw"
)


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.

    Only the provider access token is strictly required; every other field
    has a default suitable for a single-node development setup backed by
    in-memory queue and store. Non-development environments must point the
    Redis and S3 backends at real endpoints (see validate_backend_config).
    """

    # Environment
    environment: Environment = Field(
        default=Environment.DEVELOPMENT,
        description="Deployment environment (development, staging, production)"
    )

    # Enrichment providers
    mapbox_access_token: str = Field(
        ...,
        description="Access token sent to the elevation and geofence providers"
    )
    elevation_tile_template: str = Field(
        default=DEFAULT_ELEVATION_TEMPLATE,
        description="Terrain-RGB tile URL template with {z}/{x}/{y} placeholders"
    )
    elevation_zoom: int = Field(
        default=14,
        ge=0,
        le=22,
        description="Tile zoom level used for elevation lookups"
    )
    geofence_endpoint: str = Field(
        default="https://api.mapbox.com",
        description="Base URL of the tilequery geofence provider"
    )
    geofence_tileset_id: str = Field(
        default="mbxsolutions.cjzsxn0ae02jf2uma2dgyspwd-4snub",
        description="Tileset holding the geofence polygons"
    )
    provider_timeout_seconds: float = Field(
        default=10.0,
        gt=0,
        le=60,
        description="Timeout for a single elevation or geofence call"
    )

    # Pipeline behaviour
    ttl_minutes: int = Field(
        default=5,
        ge=1,
        le=60 * 24 * 7,
        description="Time-to-live of asset state rows in minutes"
    )
    live_channel: str = Field(
        default="frontend",
        description="Fan-out channel enriched records are republished on"
    )
    pipeline_name: str = Field(
        default="assets",
        description="Name of the pipeline instance, used in logs and archive keys"
    )
    pipeline_asset_ids: Optional[List[int]] = Field(
        default=None,
        description="Only process reports for these asset ids (all when unset)"
    )
    pipeline_output_fields: Optional[List[str]] = Field(
        default=None,
        description="Passthrough fields forwarded to outputs (all when unset)"
    )

    # Ingestion queue
    queue_backend: str = Field(
        default="memory",
        description="Ingestion queue backend: 'redis' or 'memory'"
    )
    queue_stream_name: str = Field(
        default="assetingest",
        description="Stream (topic) position reports are published to"
    )
    queue_partitions: int = Field(
        default=1,
        ge=1,
        le=64,
        description="Number of stream partitions (shards)"
    )
    queue_consumer_group: str = Field(
        default="enrichment",
        description="Consumer group name used for at-least-once delivery"
    )
    queue_batch_size: int = Field(
        default=25,
        ge=1,
        le=10000,
        description="Maximum number of messages handed to one invocation"
    )
    queue_poll_interval_seconds: float = Field(
        default=1.0,
        gt=0,
        description="Idle wait between empty polls"
    )
    invocation_timeout_seconds: float = Field(
        default=30.0,
        gt=0,
        le=900,
        description="Overall time budget of one batch invocation"
    )
    queue_claim_idle_seconds: float = Field(
        default=300.0,
        gt=0,
        description="Idle time after which a pending entry of another consumer is claimed"
    )

    # State store
    state_store_type: str = Field(
        default="memory",
        description="State store type: 'redis' or 'memory'"
    )
    redis_url: Optional[str] = Field(
        default=None,
        description="Redis connection URL for queue, state store and pub/sub"
    )

    # Archive sink
    archive_backend: str = Field(
        default="filesystem",
        description="Archive backend: 'filesystem' or 's3'"
    )
    archive_directory: str = Field(
        default="data/archive",
        description="Target directory for the filesystem archive"
    )
    archive_bucket: Optional[str] = Field(
        default=None,
        description="Bucket name for the S3 archive"
    )
    archive_prefix: str = Field(
        default="",
        description="Object key prefix for archive batches"
    )
    archive_buffer_interval_seconds: int = Field(
        default=120,
        ge=1,
        le=900,
        description="Flush the archive buffer at least this often"
    )
    archive_buffer_size_mb: int = Field(
        default=5,
        ge=1,
        le=128,
        description="Flush the archive buffer once it holds this many MB"
    )

    # Observability
    log_level: str = Field(
        default="INFO",
        description="Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)"
    )
    otel_endpoint: Optional[str] = Field(
        default=None,
        description="OpenTelemetry collector endpoint URL"
    )
    otel_service_name: str = Field(
        default="asset-tracking",
        description="Service name for OpenTelemetry traces"
    )

    # Query API
    rate_limit_requests_per_minute: int = Field(
        default=120,
        ge=1,
        le=10000,
        description="Maximum query requests per minute per IP"
    )

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    @field_validator("mapbox_access_token")
    @classmethod
    def validate_access_token(cls, v: str) -> str:
        """Validate that the access token is not empty."""
        if not v or not v.strip():
            raise ValueError("mapbox_access_token cannot be empty")
        return v.strip()

    @field_validator("elevation_tile_template")
    @classmethod
    def validate_elevation_tile_template(cls, v: str) -> str:
        """Validate the tile template is an HTTP(S) URL with {z}/{x}/{y} placeholders."""
        v = v.strip()
        if not (v.startswith("http://") or v.startswith("https://")):
            raise ValueError("elevation_tile_template must be a valid HTTP/HTTPS URL")
        missing = [p for p in ("{z}", "{x}", "{y}") if p not in v]
        if missing:
            raise ValueError(
                f"elevation_tile_template is missing placeholders: {', '.join(missing)}"
            )
        return v

    @field_validator("geofence_endpoint")
    @classmethod
    def validate_geofence_endpoint(cls, v: str) -> str:
        """Validate that geofence_endpoint is an HTTP(S) URL."""
        v = v.strip().rstrip("/")
        if not (v.startswith("http://") or v.startswith("https://")):
            raise ValueError("geofence_endpoint must be a valid HTTP/HTTPS URL")
        return v

    @field_validator("geofence_tileset_id", "queue_stream_name", "live_channel", "pipeline_name")
    @classmethod
    def validate_not_blank(cls, v: str) -> str:
        """Validate identifiers are not blank."""
        if not v or not v.strip():
            raise ValueError("value cannot be empty")
        return v.strip()

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate that log_level is a valid logging level."""
        valid_levels = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
        v = v.strip().upper()
        if v not in valid_levels:
            raise ValueError(f"log_level must be one of: {', '.join(sorted(valid_levels))}")
        return v

    @field_validator("queue_backend", "state_store_type")
    @classmethod
    def validate_redis_or_memory(cls, v: str) -> str:
        """Validate that the backend is either 'redis' or 'memory'."""
        v = v.strip().lower()
        if v not in {"redis", "memory"}:
            raise ValueError("backend must be 'redis' or 'memory'")
        return v

    @field_validator("archive_backend")
    @classmethod
    def validate_archive_backend(cls, v: str) -> str:
        """Validate that archive_backend is either 'filesystem' or 's3'."""
        v = v.strip().lower()
        if v not in {"filesystem", "s3"}:
            raise ValueError("archive_backend must be 'filesystem' or 's3'")
        return v

    @model_validator(mode="after")
    def validate_backend_config(self) -> "Settings":
        """Validate that the selected backends have their connection settings."""
        uses_redis = "redis" in (self.queue_backend, self.state_store_type)
        if uses_redis and not self.redis_url:
            raise ValueError(
                "redis_url is required when queue_backend or state_store_type is 'redis'"
            )
        if self.archive_backend == "s3" and not self.archive_bucket:
            raise ValueError("archive_bucket is required when archive_backend is 's3'")
        # A batch stays unacked until its archive flush; claiming earlier redelivers live work
        held_for = self.invocation_timeout_seconds + self.archive_buffer_interval_seconds
        if self.queue_claim_idle_seconds <= held_for:
            raise ValueError(
                "queue_claim_idle_seconds must exceed invocation_timeout_seconds "
                "plus archive_buffer_interval_seconds"
            )
        all_redis = self.queue_backend == "redis" and self.state_store_type == "redis"
        if self.environment != Environment.DEVELOPMENT and not all_redis:
            raise ValueError(
                "in-memory queue and state store are only allowed in development; "
                "set queue_backend and state_store_type to 'redis'"
            )
        return self

    @property
    def ttl_seconds(self) -> int:
        """Time-to-live of state rows in seconds."""
        return self.ttl_minutes * 60

    @property
    def archive_buffer_size_bytes(self) -> int:
        """Archive flush threshold in bytes."""
        return self.archive_buffer_size_mb * 1024 * 1024


class ConfigurationError(Exception):
    """Exception raised when configuration validation fails."""

    def __init__(self, message: str, missing_fields: Optional[List[str]] = None,
                 invalid_fields: Optional[dict] = None):
        self.message = message
        self.missing_fields = missing_fields or []
        self.invalid_fields = invalid_fields or {}
        super().__init__(self.format_error_message())

    def format_error_message(self) -> str:
        """Format a descriptive error message listing all issues."""
        parts = [self.message]

        if self.missing_fields:
            parts.append(f"\nMissing required fields: {', '.join(self.missing_fields)}")

        if self.invalid_fields:
            invalid_parts = [f"  - {field}: {error}" for field, error in self.invalid_fields.items()]
            parts.append("\nInvalid field values:\n" + "\n".join(invalid_parts))

        return "".join(parts)


def create_settings_for_environment(environment: Optional[Environment] = None) -> Settings:
    """
    Create Settings for a specific environment.

    Detects the environment from the ENVIRONMENT variable when not given and
    loads the matching .env files.

    Raises:
        ConfigurationError: If required settings are missing or invalid.
    """
    if environment is None:
        environment = _detect_environment()

    env_files = _get_env_files(environment)
    existing_env_files = [f for f in env_files if Path(f).exists()] or list(env_files)

    try:
        class EnvironmentSettings(Settings):
            model_config = SettingsConfigDict(
                env_file=tuple(existing_env_files),
                env_file_encoding="utf-8",
                case_sensitive=False,
                extra="ignore"
            )

        return EnvironmentSettings()
    except Exception as e:
        missing_fields = []
        invalid_fields = {}

        if hasattr(e, 'errors'):
            for error in e.errors():
                field_name = '.'.join(str(loc) for loc in error.get('loc', []))
                error_type = error.get('type', '')
                error_msg = error.get('msg', str(error))

                if error_type == 'missing':
                    missing_fields.append(field_name)
                else:
                    invalid_fields[field_name or "settings"] = error_msg

        raise ConfigurationError(
            f"Failed to load configuration for environment '{environment.value}'",
            missing_fields=missing_fields,
            invalid_fields=invalid_fields
        ) from e


_settings_cache: Optional[Settings] = None


def get_settings() -> Settings:
    """
    Get the application settings singleton.

    Raises:
        ConfigurationError: If required settings are missing or invalid.
    """
    global _settings_cache

    if _settings_cache is None:
        _settings_cache = create_settings_for_environment()

    return _settings_cache


def clear_settings_cache() -> None:
    """Clear the settings cache so the next get_settings() reloads."""
    global _settings_cache
    _settings_cache = None


def validate_startup() -> None:
    """
    Validate settings that can only be checked against the running host.

    Raises:
        ConfigurationError: If any check fails.
    """
    settings = get_settings()
    validation_errors = {}

    if settings.archive_backend == "filesystem":
        directory = Path(settings.archive_directory)
        if directory.exists() and not directory.is_dir():
            validation_errors["archive_directory"] = (
                f"Archive path exists and is not a directory: {directory}"
            )

    if validation_errors:
        raise ConfigurationError(
            "Configuration validation failed during startup",
            invalid_fields=validation_errors
        )


def get_environment_info() -> dict:
    """Information about the detected environment and loaded config files."""
    environment = _detect_environment()
    env_files = _get_env_files(environment)

    return {
        "environment": environment.value,
        "env_files_checked": list(env_files),
        "env_files_loaded": [f for f in env_files if Path(f).exists()],
    }
