"""
Order execution service entry point

Loads settings from the environment (and .env), configures logging and
serves the API until SIGINT/SIGTERM. aiohttp runs the engine's graceful
shutdown through the application cleanup hooks.
"""

import argparse
import sys
from typing import List, Optional

from aiohttp import web
from loguru import logger

from order_execution.config import load_settings
from order_execution.errors import ConfigError
from order_execution.execution_engine import ExecutionEngine
from order_execution.logging_config import configure_logging

from .server import create_app


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="DEX order execution service")
    parser.add_argument("--env-file", default=None, help="Path to a .env file")
    parser.add_argument("--host", default=None, help="Override HOST")
    parser.add_argument("--port", type=int, default=None, help="Override PORT")
    return parser.parse_args(argv)


def main(argv: Optional[List[str]] = None) -> int:
    args = parse_args(argv)

    try:
        settings = load_settings(args.env_file)
    except ConfigError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        return 2

    configure_logging(settings.log_level, settings.log_file)
    host = args.host or settings.server.host
    port = args.port or settings.server.port

    engine = ExecutionEngine(settings.execution)
    app = create_app(engine)

    logger.info(f"Starting order execution service ({settings.app_env}) on http://{host}:{port}")
    web.run_app(app, host=host, port=port, print=None,
                shutdown_timeout=settings.execution.shutdown_timeout_seconds)
    return 0


if __name__ == "__main__":
    sys.exit(main())
