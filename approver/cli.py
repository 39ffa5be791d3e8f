"""Command-line interface for the Approver service.

Provides argument parsing and configuration loading. Configuration can come
from a file, environment variables, and command-line arguments with the usual
precedence (CLI wins).
"""

import argparse
from pathlib import Path

from approver import __version__
from approver.config import Settings, load_settings_from_file


def create_argument_parser() -> argparse.ArgumentParser:
    """Create command-line argument parser.

    Returns:
        Configured ArgumentParser instance
    """
    parser = argparse.ArgumentParser(
        prog="approver",
        description="Approver - approval record lifecycle engine and timeout sweeper",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )

    parser.add_argument(
        "--config",
        "-c",
        type=Path,
        help="Path to configuration file (YAML or TOML)",
    )

    parser.add_argument(
        "--environment",
        choices=["lab", "staging", "prod"],
        help="Deployment environment",
    )

    parser.add_argument("--debug", action="store_true", help="Enable debug mode")

    parser.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        help="Logging level",
    )

    parser.add_argument(
        "--log-format",
        choices=["json", "text"],
        help="Log output format",
    )

    # Storage
    parser.add_argument(
        "--kv-backend",
        choices=["memory", "redis"],
        help="Backing key/value store",
    )

    parser.add_argument(
        "--redis-url",
        help="Redis connection URL",
    )

    # Sweeper
    parser.add_argument(
        "--timeout-seconds",
        type=int,
        help="Age in seconds after which pending requests are auto-canceled",
    )

    parser.add_argument(
        "--check-interval-seconds",
        type=int,
        help="Interval in seconds between timeout sweeps",
    )

    parser.add_argument(
        "--no-sweeper",
        action="store_true",
        help="Disable the timeout sweeper",
    )

    # Observability
    parser.add_argument(
        "--metrics-port",
        type=int,
        help="Serve Prometheus metrics on this port",
    )

    parser.add_argument(
        "--version",
        "-v",
        action="version",
        version=f"%(prog)s {__version__}",
    )

    return parser


def load_config_from_cli(args: list[str] | None = None) -> Settings:
    """Load configuration from CLI arguments and environment.

    Args:
        args: Command-line arguments (defaults to sys.argv[1:])

    Returns:
        Configured Settings instance

    Example:
        settings = load_config_from_cli(["--config", "config/prod.yaml"])
    """
    parser = create_argument_parser()
    parsed_args = parser.parse_args(args)

    settings = load_settings_from_file(parsed_args.config) if parsed_args.config else Settings()

    cli_overrides = {}

    if parsed_args.environment is not None:
        cli_overrides["environment"] = parsed_args.environment

    if parsed_args.debug:
        cli_overrides["debug"] = True

    if parsed_args.log_level is not None:
        cli_overrides["log_level"] = parsed_args.log_level

    if parsed_args.log_format is not None:
        cli_overrides["log_format"] = parsed_args.log_format

    if parsed_args.kv_backend is not None:
        cli_overrides["kv_backend"] = parsed_args.kv_backend

    if parsed_args.redis_url is not None:
        cli_overrides["redis_url"] = parsed_args.redis_url

    if parsed_args.timeout_seconds is not None:
        cli_overrides["approval_timeout_seconds"] = parsed_args.timeout_seconds

    if parsed_args.check_interval_seconds is not None:
        cli_overrides["timeout_check_interval_seconds"] = parsed_args.check_interval_seconds

    if parsed_args.no_sweeper:
        cli_overrides["timeout_sweeper_enabled"] = False

    if parsed_args.metrics_port is not None:
        cli_overrides["metrics_port"] = parsed_args.metrics_port

    if cli_overrides:
        settings = Settings(**{**settings.model_dump(), **cli_overrides})

    return settings
