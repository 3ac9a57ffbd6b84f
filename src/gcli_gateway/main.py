"""Command-line entry point for the gateway."""

from __future__ import annotations

import argparse
import logging
import sys
from collections.abc import Sequence

import uvicorn

from gcli_gateway.core.app.application_factory import build_app
from gcli_gateway.core.common.exceptions import ConfigurationError
from gcli_gateway.core.common.logging_utils import configure_logging
from gcli_gateway.core.config.app_config import AppConfig, LogLevel, load_config

logger = logging.getLogger(__name__)


def build_cli_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Run the OpenAI-compatible Gemini Code Assist gateway"
    )
    parser.add_argument(
        "--config",
        dest="config_file",
        metavar="PATH",
        help="Path to a YAML or JSON configuration file",
    )
    parser.add_argument("--host", help="Host to bind (overrides bind_address)")
    parser.add_argument("--port", type=int, help="Port to bind (overrides bind_address)")
    parser.add_argument(
        "--log-level",
        dest="log_level",
        choices=[level.value for level in LogLevel],
        type=str.upper,
        help="Logging level",
    )
    return parser


def apply_cli_args(config: AppConfig, args: argparse.Namespace) -> AppConfig:
    """Return ``config`` with the command-line overrides applied."""
    updates: dict[str, object] = {}
    if args.host or args.port:
        host = args.host or config.host
        port = args.port if args.port is not None else config.port
        updates["bind_address"] = f"{host}:{port}"
    if args.log_level:
        updates["log_level"] = LogLevel(args.log_level)
    if not updates:
        return config
    return AppConfig.model_validate({**config.model_dump(), **updates})


def main(argv: Sequence[str] | None = None) -> None:
    args = build_cli_parser().parse_args(argv)
    try:
        config = apply_cli_args(load_config(args.config_file), args)
    except ConfigurationError as e:
        print(f"Configuration error: {e.message}", file=sys.stderr)
        for error in e.details.get("errors", []):
            print(f"  {error}", file=sys.stderr)
        sys.exit(2)

    configure_logging(
        config.log_level.value, config.log_file, secrets=[config.password]
    )
    app = build_app(config)

    logger.info("Starting uvicorn on %s:%d", config.host, config.port)
    try:
        uvicorn.run(app, host=config.host, port=config.port, log_config=None)
    except Exception as e:
        logger.exception("Uvicorn failed to start: %s", e)
        raise


if __name__ == "__main__":
    main()
