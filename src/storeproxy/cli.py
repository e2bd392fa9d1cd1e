"""Command-line entry point: ``storeproxy [--config FILE] [overrides...]``."""

import argparse
import logging
import sys
from pathlib import Path

import uvicorn
import yaml

from storeproxy.config import StoreProxyConfig, apply_env_overrides, load_config
from storeproxy.logging_config import configure_logging
from storeproxy.server import create_app

logger = logging.getLogger("storeproxy")

# argparse dest -> (config section, field). Flags beat env and file.
CLI_OVERRIDES: dict[str, tuple[str, str]] = {
    "host": ("server", "host"),
    "port": ("server", "port"),
    "shutdown_timeout": ("server", "shutdown_timeout"),
    "log_level": ("server", "log_level"),
    "log_format": ("server", "log_format"),
    "backend": ("storage", "backend"),
    "bucket": ("storage", "aws_bucket"),
    "region": ("storage", "aws_region"),
    "endpoint_url": ("storage", "aws_endpoint_url"),
    "prefix": ("storage", "aws_prefix"),
}

# Fields never echoed back by --print-config.
_SECRET_FIELDS = {("auth", "token"), ("storage", "aws_secret_access_key")}


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    """Parse command-line arguments.

    Every override defaults to None so that unset flags leave the file and
    environment values alone.
    """
    parser = argparse.ArgumentParser(
        prog="storeproxy",
        description="HTTP front for a single S3-compatible bucket",
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="YAML configuration file (default: built-in defaults plus STOREPROXY_* env)",
    )
    parser.add_argument(
        "--print-config",
        action="store_true",
        help="Print the effective configuration with secrets redacted and exit",
    )

    server = parser.add_argument_group("server")
    server.add_argument("--host", default=None, help="Bind address")
    server.add_argument("--port", type=int, default=None, help="Listen port")
    server.add_argument(
        "--shutdown-timeout",
        type=int,
        default=None,
        help="Seconds to wait for in-flight requests on shutdown",
    )

    storage = parser.add_argument_group("storage")
    storage.add_argument("--backend", choices=["aws", "memory"], default=None)
    storage.add_argument("--bucket", default=None, help="Upstream bucket name")
    storage.add_argument("--region", default=None, help='Bucket region ("auto" for R2)')
    storage.add_argument("--endpoint-url", default=None, help="S3-compatible endpoint URL")
    storage.add_argument("--prefix", default=None, help="Key prefix inside the bucket")

    logs = parser.add_argument_group("logging")
    logs.add_argument(
        "--log-level",
        default=None,
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
    )
    logs.add_argument("--log-format", default=None, choices=["text", "json"])
    return parser.parse_args(argv)


def build_config(args: argparse.Namespace) -> StoreProxyConfig:
    """Resolve the effective config: file, then environment, then flags.

    Raises:
        FileNotFoundError: If ``--config`` names a missing file.
    """
    config = load_config(args.config) if args.config is not None else StoreProxyConfig()
    apply_env_overrides(config)

    for dest, (section, field) in CLI_OVERRIDES.items():
        value = getattr(args, dest, None)
        if value is not None:
            setattr(getattr(config, section), field, value)
    return config


def redacted(config: StoreProxyConfig) -> dict:
    """Dump a config as plain data with secrets masked."""
    data = config.model_dump()
    for section, field in _SECRET_FIELDS:
        if data[section][field]:
            data[section][field] = "***"
    return data


def main(argv: list[str] | None = None) -> None:
    """Load configuration and serve the app with uvicorn."""
    args = parse_args(argv)

    # Plain stderr logging until the configured handler is installed.
    logging.basicConfig(level=logging.INFO, stream=sys.stderr)

    try:
        config = build_config(args)
    except FileNotFoundError:
        logger.error("Config file not found: %s", args.config)
        sys.exit(1)
    except Exception as exc:
        logger.error("Failed to load config: %s", exc)
        sys.exit(1)

    if args.print_config:
        yaml.safe_dump(redacted(config), sys.stdout, sort_keys=False)
        return

    if config.storage.backend == "aws" and not config.storage.aws_bucket:
        logger.error("No bucket configured (storage.aws.bucket or STOREPROXY_BUCKET)")
        sys.exit(1)

    configure_logging(level=config.server.log_level, fmt=config.server.log_format)

    logger.info(
        "Starting storeproxy on %s:%d (backend=%s bucket=%s)",
        config.server.host,
        config.server.port,
        config.storage.backend,
        config.storage.aws_bucket or "-",
    )

    uvicorn.run(
        create_app(config),
        host=config.server.host,
        port=config.server.port,
        log_level=config.server.log_level.lower(),
        # The request middleware already logs one line per request.
        access_log=False,
        timeout_graceful_shutdown=config.server.shutdown_timeout,
        timeout_keep_alive=5,
    )


if __name__ == "__main__":
    main()
