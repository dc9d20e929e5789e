"""Configuration loading and Pydantic models for bucketsync."""

from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, ConfigDict, Field


class EndpointConfig(BaseModel):
    """Remote service endpoint and target bucket."""

    url: str = "https://s3.amazonaws.com"
    bucket: str = ""
    timeout: float = Field(default=30.0, gt=0)
    page_size: int = Field(default=1000, ge=1)


class AuthConfig(BaseModel):
    """Credential configuration."""

    access_key: str = ""
    secret_key: str = ""


class RetryConfig(BaseModel):
    """Backoff for transient transport failures inside a batch."""

    max_attempts: int = Field(default=3, ge=1)
    base_delay: float = Field(default=0.2, ge=0)
    max_delay: float = Field(default=5.0, ge=0)
    jitter: bool = True


class ExecutorConfig(BaseModel):
    """Batch executor configuration.

    Assignments are validated too, so CLI overrides obey the same limits.
    """

    model_config = ConfigDict(validate_assignment=True)

    max_workers: int = Field(default=4, ge=1)
    progress_interval: float = Field(default=0.2, gt=0)
    max_batch_size: int = Field(default=100, ge=1)
    retry: RetryConfig = Field(default_factory=RetryConfig)


class ObservabilityConfig(BaseModel):
    """Logging and metrics configuration."""

    log_level: str = "INFO"
    log_format: str = "text"
    metrics: bool = True
    metrics_file: str = ""


class SyncConfig(BaseModel):
    """Top-level bucketsync configuration."""

    endpoint: EndpointConfig = Field(default_factory=EndpointConfig)
    auth: AuthConfig = Field(default_factory=AuthConfig)
    executor: ExecutorConfig = Field(default_factory=ExecutorConfig)
    observability: ObservabilityConfig = Field(default_factory=ObservabilityConfig)


def _parse_endpoint(data: dict[str, Any] | None) -> dict[str, Any]:
    """Parse the endpoint section from YAML data into a dict for Pydantic."""
    if data is None:
        return {}
    return {
        "url": data.get("url", "https://s3.amazonaws.com"),
        "bucket": data.get("bucket", ""),
        "timeout": data.get("timeout", 30.0),
        "page_size": data.get("page_size", 1000),
    }


def _parse_auth(data: dict[str, Any] | None) -> dict[str, Any]:
    """Parse the auth section from YAML data."""
    if data is None:
        return {}
    return {
        "access_key": data.get("access_key", ""),
        "secret_key": data.get("secret_key", ""),
    }


def _parse_executor(data: dict[str, Any] | None) -> dict[str, Any]:
    """Parse the executor section from YAML data.

    Handles nested structure: executor.retry.max_attempts -> retry.max_attempts
    """
    if data is None:
        return {}
    result: dict[str, Any] = {
        "max_workers": data.get("max_workers", 4),
        "progress_interval": data.get("progress_interval", 0.2),
        "max_batch_size": data.get("max_batch_size", 100),
    }
    retry_section = data.get("retry")
    if isinstance(retry_section, dict):
        result["retry"] = RetryConfig(
            max_attempts=retry_section.get("max_attempts", 3),
            base_delay=retry_section.get("base_delay", 0.2),
            max_delay=retry_section.get("max_delay", 5.0),
            jitter=retry_section.get("jitter", True),
        )
    return result


def _parse_observability(data: dict[str, Any] | None) -> dict[str, Any]:
    """Parse the observability section from YAML data."""
    if data is None:
        return {}
    return {
        "log_level": data.get("log_level", "INFO"),
        "log_format": data.get("log_format", "text"),
        "metrics": data.get("metrics", True),
        "metrics_file": data.get("metrics_file", ""),
    }


def load_config(path: Path) -> SyncConfig:
    """Load a SyncConfig from a YAML file.

    Args:
        path: Path to the YAML configuration file.

    Returns:
        A fully populated SyncConfig validated by Pydantic.

    Raises:
        FileNotFoundError: If the config file does not exist.
        yaml.YAMLError: If the file is not valid YAML.
        pydantic.ValidationError: If a value is of the wrong type or out of range.
    """
    with open(path, "r") as fh:
        raw: dict[str, Any] = yaml.safe_load(fh) or {}

    return SyncConfig(
        endpoint=EndpointConfig(**_parse_endpoint(raw.get("endpoint"))),
        auth=AuthConfig(**_parse_auth(raw.get("auth"))),
        executor=ExecutorConfig(**_parse_executor(raw.get("executor"))),
        observability=ObservabilityConfig(**_parse_observability(raw.get("observability"))),
    )
