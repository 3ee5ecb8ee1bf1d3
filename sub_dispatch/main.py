"""
Command-line entry point.

Validates a dispatcher configuration and computes topic keys for configured
events, which helps when debugging why a trigger does not reach a subscriber.
"""

from __future__ import annotations

import argparse
import json
import sys

import structlog
import yaml
from pydantic import ValidationError

from .config import DispatchConfig, load_config
from .errors import DispatchError
from .topics import TopicKeyBuilder


def configure_logging(level: str = "info", fmt: str = "json") -> None:
    """Configure structlog with the specified level and format."""
    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
    ]
    if fmt == "json":
        processors.append(structlog.processors.format_exc_info)
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer())

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(level.lower()),
    )


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="sub-dispatch",
        description="Subscription dispatch tools",
    )
    parser.add_argument(
        "-c", "--config",
        default="sub-dispatch.yaml",
        help="Path to configuration file (default: sub-dispatch.yaml)",
    )
    commands = parser.add_subparsers(dest="command", required=True)

    commands.add_parser("check", help="Validate the configuration and list events")

    topic = commands.add_parser("topic", help="Print the topic key for an event")
    topic.add_argument("event", help="Event name")
    topic.add_argument(
        "--args",
        default="{}",
        help="Event arguments as a JSON object (default: {})",
    )
    topic.add_argument(
        "--scope",
        default=None,
        help="Scope value as JSON (only used for scoped events)",
    )
    return parser


def _check(config: DispatchConfig) -> int:
    schema = config.subscription_schema
    for name, event in sorted(schema.events.items()):
        args = ", ".join(f"{arg}: {spec.type}" for arg, spec in sorted(event.arguments.items()))
        scope = f" [scope: {event.scope.context_key}]" if event.scope else ""
        print(f"{name}({args}){scope}")
    return 0


def _topic(config: DispatchConfig, event: str, raw_args: str, raw_scope: str | None) -> int:
    try:
        args = json.loads(raw_args)
        scope = json.loads(raw_scope) if raw_scope is not None else None
    except json.JSONDecodeError as exc:
        print(f"Error: invalid JSON: {exc}", file=sys.stderr)
        return 2

    builder = TopicKeyBuilder(config.subscription_schema)
    try:
        print(builder.key_for(event, args, scope))
    except DispatchError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 1
    return 0


def main(argv: list[str] | None = None) -> int:
    args = _build_parser().parse_args(argv)

    try:
        config = load_config(args.config)
    except FileNotFoundError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 1
    except (ValidationError, ValueError, yaml.YAMLError) as exc:
        print(f"Configuration error: {exc}", file=sys.stderr)
        return 1

    configure_logging(config.logging.level, config.logging.format)
    log = structlog.get_logger()
    log.debug("cli.config_loaded", config_path=args.config, command=args.command)

    if args.command == "check":
        return _check(config)
    return _topic(config, args.event, args.args, args.scope)


def run() -> None:
    """CLI entry point."""
    sys.exit(main())


if __name__ == "__main__":
    run()
