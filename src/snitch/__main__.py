"""CLI entry point for snitch.

Usage:
    python -m snitch <command> [options]

Commands:
    config validate [--config PATH]
    send <metric> <value> [--tag KEY=VALUE ...] [--kind KIND] [--config PATH]
"""

from __future__ import annotations

import argparse
import logging
import sys
import time
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import NoReturn

from snitch import __version__

LOG_FORMAT = "[%(asctime)s] %(levelname)s: %(message)s"
LOG_DATE_FORMAT = "%Y-%m-%dT%H:%M:%S%z"


def create_parser() -> argparse.ArgumentParser:
    """Create the argument parser for the CLI."""
    parser = argparse.ArgumentParser(
        prog="snitch",
        description="Client-side metrics aggregation and dispatch",
    )
    parser.add_argument(
        "--version",
        action="version",
        version=f"%(prog)s {__version__}",
    )
    parser.add_argument(
        "--verbose",
        "-v",
        action="store_true",
        help="Enable debug logging",
    )
    parser.add_argument(
        "--log-file",
        type=Path,
        help="Write logs to a rotating file instead of stderr",
    )

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    # config command
    config_parser = subparsers.add_parser("config", help="Configuration management")
    config_subparsers = config_parser.add_subparsers(
        dest="config_command", help="Config subcommands"
    )

    # config validate
    validate_parser = config_subparsers.add_parser(
        "validate", help="Validate configuration"
    )
    validate_parser.add_argument(
        "--config", type=Path, help="Config file (default: ./snitch.toml)"
    )

    # send command
    send_parser = subparsers.add_parser(
        "send", help="Send a single point to the configured backend"
    )
    send_parser.add_argument("metric", help="Metric name")
    send_parser.add_argument("value", type=float, help="Metric value")
    send_parser.add_argument(
        "--tag",
        action="append",
        help="Point tag (key=value). Can be used multiple times.",
    )
    send_parser.add_argument(
        "--kind",
        default="sum",
        help="Aggregation kind (count, sum, avg, max, min). Default: sum",
    )
    send_parser.add_argument(
        "--config", type=Path, help="Config file (default: ./snitch.toml)"
    )

    return parser


def configure_logging(verbose: bool = False, log_file: Path | None = None) -> None:
    """Attach a handler to the snitch logger."""
    if log_file is not None:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        handler: logging.Handler = RotatingFileHandler(
            log_file, maxBytes=10 * 1024 * 1024, backupCount=5
        )
    else:
        handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(logging.Formatter(LOG_FORMAT, datefmt=LOG_DATE_FORMAT))

    logger = logging.getLogger("snitch")
    logger.setLevel(logging.DEBUG if verbose else logging.INFO)
    # Avoid adding multiple handlers if re-initialized
    if not logger.handlers:
        logger.addHandler(handler)


def parse_tags(values: list[str] | None) -> dict[str, str]:
    """Parse key=value pairs.

    Raises:
        ValueError: If a pair has no '=' or an empty key.
    """
    tags: dict[str, str] = {}
    for item in values or []:
        key, sep, value = item.partition("=")
        if not sep or not key:
            raise ValueError(f"Invalid tag format: {item}. Use key=value")
        tags[key] = value
    return tags


def cmd_config_validate(args: argparse.Namespace) -> int:
    """Handle 'config validate' command."""
    from snitch.errors import ConfigurationError
    from snitch.settings import Settings

    try:
        settings = Settings.load(args.config)
        settings.validate()
    except FileNotFoundError as e:
        print(f"No configuration found: {e}", file=sys.stderr)
        return 1
    except ConfigurationError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        return 1

    print(f"Configuration valid: {settings.config_path}")
    print(f"  Backend: {settings.address}:{settings.port} ({settings.transport})")
    if settings.transport == "http":
        print(f"  HTTP timeout: {settings.timeout_seconds}s")
        print(f"  HTTP post interval: {settings.post_interval_seconds}s")
    print(f"  Runtime monitor: {'enabled' if settings.runtime else 'disabled'}")
    print(f"  Tags: {len(settings.tags)}")
    for key, value in sorted(settings.tags.items()):
        print(f"    - {key}={value}")
    return 0


def cmd_send(args: argparse.Namespace) -> int:
    """Handle 'send' command."""
    from snitch.engine import Engine
    from snitch.errors import SnitchError
    from snitch.settings import Settings

    engine = None
    try:
        tags = parse_tags(args.tag)
        settings = Settings.load(args.config)
        engine = Engine(settings)
        engine.record_value(
            args.metric, tags, args.kind, "@every 1m", args.value, raw=True
        )
    except FileNotFoundError as e:
        print(f"No configuration found: {e}", file=sys.stderr)
        return 1
    except (SnitchError, ValueError) as e:
        if engine is not None:
            engine.terminate()
        print(f"Error: {e}", file=sys.stderr)
        return 1

    if settings.transport == "http":
        wait = settings.post_interval_seconds + settings.timeout_seconds + 1
    else:
        wait = 2.0

    engine.start()
    try:
        deadline = time.monotonic() + wait
        while time.monotonic() < deadline:
            if engine.transport.sent or engine.transport.dropped:
                break
            time.sleep(0.05)
    finally:
        engine.terminate()

    if engine.transport.sent:
        print(f"Sent {args.metric}={args.value} to {settings.address}:{settings.port}")
        return 0

    print(f"Failed to send {args.metric}", file=sys.stderr)
    return 1


def main() -> NoReturn:
    """Main entry point."""
    parser = create_parser()
    args = parser.parse_args()

    if args.command is None:
        parser.print_help()
        sys.exit(0)

    configure_logging(args.verbose, args.log_file)

    if args.command == "config":
        if args.config_command == "validate":
            sys.exit(cmd_config_validate(args))
        else:
            parser.parse_args(["config", "--help"])
            sys.exit(1)
    elif args.command == "send":
        sys.exit(cmd_send(args))
    else:
        parser.print_help()
        sys.exit(1)


if __name__ == "__main__":
    main()
