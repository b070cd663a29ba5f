#!/usr/bin/env python3
"""
Harbormaster Controller Daemon

Reads Settings from the environment, applies command-line overrides and serves
the admin API with uvicorn. Components are built on API startup.
"""

import sys
import logging
import argparse
from pathlib import Path
from typing import List, Optional

import uvicorn

from controller.config import Settings
from controller.utils import lifecycle

logger = logging.getLogger(__name__)

LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'


def setup_logging(settings: Settings, level: str = "INFO") -> Path:
    """Log to stderr and to settings.log_path; returns the log file path."""
    log_path = settings.log_path
    log_path.parent.mkdir(parents=True, exist_ok=True)

    logging.basicConfig(
        level=getattr(logging, level.upper()),
        format=LOG_FORMAT,
        handlers=[
            logging.StreamHandler(),
            logging.FileHandler(log_path)
        ]
    )
    return log_path


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Harbormaster Controller Daemon")
    parser.add_argument("--host", default=None, help="Host to bind to (default: HARBORMASTER_HOST)")
    parser.add_argument("--port", type=int, default=None, help="Port to bind to (default: HARBORMASTER_PORT)")
    parser.add_argument("--log-level", default="INFO",
                        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
                        help="Logging level")
    parser.add_argument("--log-dir", default=None,
                        help="Directory for the controller log file (default: HARBORMASTER_LOG_DIR)")
    parser.add_argument("--redis-url", default=None,
                        help="Registry store URL (default: HARBORMASTER_REDIS_URL)")
    return parser.parse_args(argv)


def build_settings(args: argparse.Namespace) -> Settings:
    """Settings from the environment with command-line values on top."""
    settings = Settings.from_env()
    if args.host:
        settings.host = args.host
    if args.port:
        settings.port = args.port
    if args.log_dir:
        settings.log_dir = args.log_dir
    if args.redis_url:
        settings.redis_url = args.redis_url
    return settings


def main(argv: Optional[List[str]] = None):
    """Main entry point for the controller daemon."""
    args = parse_args(argv)

    try:
        settings = build_settings(args)
    except ValueError as e:
        print(f"Invalid configuration: {e}", file=sys.stderr)
        sys.exit(1)

    log_path = setup_logging(settings, args.log_level)
    lifecycle.settings = settings

    logger.info(f"Starting Harbormaster Controller, logging to {log_path}")
    logger.info(f"API will be available at http://{settings.host}:{settings.port}")
    logger.info(f"Registry store: {settings.redis_url} (channel '{settings.updates_channel}')")

    from controller.api import app

    log_config = uvicorn.config.LOGGING_CONFIG
    log_config["handlers"]["default"]["stream"] = "ext://sys.stdout"

    # uvicorn installs its own SIGINT/SIGTERM handlers and runs the shutdown hooks
    uvicorn.run(
        app,
        host=settings.host,
        port=settings.port,
        log_level=args.log_level.lower(),
        access_log=True,
        log_config=log_config
    )


if __name__ == "__main__":
    main()
