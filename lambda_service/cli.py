"""
ai-lambda-service — run a local REST server from a declarative JSON config.

Usage:
    # Start with ./config.json on the configured port (default 3000)
    ai-lambda-service start

    # Explicit config, port and log level
    ai-lambda-service start -c examples/config.json -p 8080 -v debug
"""

from __future__ import annotations

import argparse
import asyncio
import logging
from pathlib import Path

from dotenv import load_dotenv

from lambda_service import __version__
from lambda_service.config import load_config
from lambda_service.errors import LambdaServiceError
from lambda_service.server import serve

logger = logging.getLogger("lambda_service")

LOG_LEVELS = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warn": logging.WARNING,
    "error": logging.ERROR,
}


def positive_int(value: str) -> int:
    try:
        parsed = int(value)
    except ValueError:
        parsed = 0
    if parsed <= 0:
        raise argparse.ArgumentTypeError("Port must be a positive integer.")
    return parsed


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="ai-lambda-service",
        description="Run a local REST server from a declarative JSON config with AI, Python or WorkIQ handlers.",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument("command", choices=["start", "stop"], help="start | stop")
    parser.add_argument("--config", "-c", type=str, default=None, help="Path to JSON configuration file (defaults to ./config.json)")
    parser.add_argument("--port", "-p", type=positive_int, default=None, help="Port to bind the server on")
    parser.add_argument("--verbose", "-v", type=str.lower, choices=list(LOG_LEVELS), default="info", help="Log level: debug | info | warn | error")
    return parser


def start(config_path: Path, port: int | None) -> int:
    try:
        config = load_config(config_path)
        asyncio.run(serve(config, port))
    except (LambdaServiceError, OSError) as e:
        logger.error(f"Failed to start: {e}")
        logger.debug("Startup failure", exc_info=True)
        return 1
    except KeyboardInterrupt:
        logger.info("Interrupted, shutting down...")
    return 0


def main(argv: list[str] | None = None) -> int:
    load_dotenv()
    args = build_parser().parse_args(argv)

    logging.basicConfig(level=LOG_LEVELS[args.verbose], format="%(levelname)s: %(message)s")

    if args.command == "stop":
        # Servers live inside the process that started them.
        logger.warning("No running server found to stop. In-memory mode only supports stopping from the same process.")
        return 0

    config_path = Path(args.config) if args.config else Path.cwd() / "config.json"
    return start(config_path.resolve(), args.port)


if __name__ == "__main__":
    raise SystemExit(main())
