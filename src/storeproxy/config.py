"""Configuration loading and Pydantic models for storeproxy."""

import os
from collections.abc import Mapping
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field


class ServerConfig(BaseModel):
    """Server binding and runtime configuration."""

    host: str = "0.0.0.0"
    port: int = 8787
    log_level: str = "INFO"
    log_format: str = "text"
    shutdown_timeout: int = 30


class AuthConfig(BaseModel):
    """Shared-token authentication configuration."""

    token: str = ""


class StorageConfig(BaseModel):
    """Object storage backend configuration."""

    backend: str = "aws"
    aws_bucket: str = ""
    aws_region: str = "us-east-1"
    aws_prefix: str = ""
    aws_endpoint_url: str = ""
    aws_use_path_style: bool = False
    aws_access_key_id: str = ""
    aws_secret_access_key: str = ""


class ObservabilityConfig(BaseModel):
    """Metrics and health check toggles."""

    metrics: bool = False
    health_check: bool = False


class StoreProxyConfig(BaseModel):
    """Top-level storeproxy configuration."""

    server: ServerConfig = Field(default_factory=ServerConfig)
    auth: AuthConfig = Field(default_factory=AuthConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)
    observability: ObservabilityConfig = Field(default_factory=ObservabilityConfig)


# Environment variable -> (section, field)
ENV_OVERRIDES: dict[str, tuple[str, str]] = {
    "STOREPROXY_BACKEND": ("storage", "backend"),
    "STOREPROXY_BUCKET": ("storage", "aws_bucket"),
    "STOREPROXY_REGION": ("storage", "aws_region"),
    "STOREPROXY_PREFIX": ("storage", "aws_prefix"),
    "STOREPROXY_ENDPOINT_URL": ("storage", "aws_endpoint_url"),
    "STOREPROXY_ACCESS_KEY_ID": ("storage", "aws_access_key_id"),
    "STOREPROXY_SECRET_ACCESS_KEY": ("storage", "aws_secret_access_key"),
    "STOREPROXY_TOKEN": ("auth", "token"),
    "STOREPROXY_LOG_LEVEL": ("server", "log_level"),
    "STOREPROXY_LOG_FORMAT": ("server", "log_format"),
}


def _parse_server(data: dict[str, Any] | None) -> dict[str, Any]:
    """Parse the server section from YAML data into a dict for Pydantic."""
    if data is None:
        return {}
    return {
        "host": data.get("host", "0.0.0.0"),
        "port": data.get("port", 8787),
        "log_level": data.get("log_level", "INFO"),
        "log_format": data.get("log_format", "text"),
        "shutdown_timeout": data.get("shutdown_timeout", 30),
    }


def _parse_auth(data: dict[str, Any] | None) -> dict[str, Any]:
    """Parse the auth section from YAML data."""
    if data is None:
        return {}
    return {"token": data.get("token") or ""}


def _parse_storage(data: dict[str, Any] | None) -> dict[str, Any]:
    """Parse the storage section from YAML data.

    Handles nested structure: storage.aws.bucket -> aws_bucket, etc.
    """
    if data is None:
        return {}

    result: dict[str, Any] = {"backend": data.get("backend", "aws")}

    aws_section = data.get("aws")
    if isinstance(aws_section, dict):
        result["aws_bucket"] = aws_section.get("bucket", "")
        result["aws_region"] = aws_section.get("region", "us-east-1")
        result["aws_prefix"] = aws_section.get("prefix", "")
        result["aws_endpoint_url"] = aws_section.get("endpoint_url", "")
        result["aws_use_path_style"] = aws_section.get("use_path_style", False)
        result["aws_access_key_id"] = aws_section.get("access_key_id", "")
        result["aws_secret_access_key"] = aws_section.get("secret_access_key", "")

    return result


def _parse_observability(data: dict[str, Any] | None) -> dict[str, Any]:
    """Parse the observability section from YAML data."""
    if data is None:
        return {}
    return {
        "metrics": data.get("metrics", False),
        "health_check": data.get("health_check", False),
    }


def load_config(path: Path) -> StoreProxyConfig:
    """Load a StoreProxyConfig from a YAML file.

    Args:
        path: Path to the YAML configuration file.

    Returns:
        A fully populated StoreProxyConfig validated by Pydantic.

    Raises:
        FileNotFoundError: If the config file does not exist.
        yaml.YAMLError: If the file is not valid YAML.
    """
    with open(path, "r") as fh:
        raw: dict[str, Any] = yaml.safe_load(fh) or {}

    return StoreProxyConfig(
        server=ServerConfig(**_parse_server(raw.get("server"))),
        auth=AuthConfig(**_parse_auth(raw.get("auth"))),
        storage=StorageConfig(**_parse_storage(raw.get("storage"))),
        observability=ObservabilityConfig(**_parse_observability(raw.get("observability"))),
    )


def apply_env_overrides(
    config: StoreProxyConfig, environ: Mapping[str, str] | None = None
) -> StoreProxyConfig:
    """Overlay ``STOREPROXY_*`` environment variables onto a config.

    Unset and empty variables leave the configured value alone.

    Args:
        config: The config to update in place.
        environ: Environment mapping. Defaults to ``os.environ``.

    Returns:
        The same config object, for chaining.
    """
    env = os.environ if environ is None else environ
    for var, (section, field) in ENV_OVERRIDES.items():
        value = env.get(var)
        if value:
            setattr(getattr(config, section), field, value)
    return config
