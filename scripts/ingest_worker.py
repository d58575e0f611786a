#!/usr/bin/env python3
"""Headless runner for the file ingest pipeline.

Runs the directory watcher and the worker pool without the HTTP API.
Settings come from the environment / ``.env``; the flags below override
the most common ones.
"""

from __future__ import annotations

import argparse
import signal
import sys
import threading
from pathlib import Path
from typing import Optional

from loguru import logger

from app.utils.config import Settings, get_settings
from domains.file_ingest.pipeline import IngestPipeline


def parse_args(argv: Optional[list[str]] = None) -> argparse.Namespace:
    """Parse CLI arguments."""

    parser = argparse.ArgumentParser(
        description="Watch a directory and process dropped files in the background.",
    )
    parser.add_argument(
        "--watch",
        type=Path,
        default=None,
        help="Directory to watch (default: WATCH_PATH setting).",
    )
    parser.add_argument(
        "--database-url",
        default=None,
        help="SQLAlchemy database URL (default: DATABASE_URL setting).",
    )
    parser.add_argument(
        "--workers",
        type=int,
        default=None,
        help="Worker pool size (default: WORKER_POOL_SIZE setting).",
    )
    parser.add_argument(
        "--recursive",
        action="store_true",
        help="Also watch subdirectories.",
    )
    parser.add_argument(
        "--once",
        action="store_true",
        help="Process files already in the directory, wait for the queue to drain and exit.",
    )
    parser.add_argument(
        "--log-level",
        default=None,
        help="Log level (default: LOG_LEVEL setting).",
    )

    return parser.parse_args(argv)


def build_settings(args: argparse.Namespace, base: Optional[Settings] = None) -> Settings:
    """Apply CLI overrides on top of the loaded settings."""

    base = base or get_settings()
    overrides = {}
    if args.watch is not None:
        overrides["watch_path"] = args.watch
    if args.database_url is not None:
        overrides["database_url"] = args.database_url
    if args.workers is not None:
        overrides["worker_pool_size"] = args.workers
    if args.recursive:
        overrides["watch_recursive"] = True
    if args.log_level is not None:
        overrides["log_level"] = args.log_level
    if args.once:
        overrides["initial_scan"] = True

    return Settings(**{**base.model_dump(), **overrides})


def main(argv: Optional[list[str]] = None) -> int:
    """Entry point for the CLI script."""

    args = parse_args(argv)
    settings = build_settings(args)

    logger.remove()
    logger.add(
        sys.stdout,
        format="<green>{time:YYYY-MM-DD HH:mm:ss}</green> | <level>{level: <8}</level> | <cyan>{name}</cyan>:<cyan>{function}</cyan> - <level>{message}</level>",
        level=settings.log_level.upper(),
    )

    pipeline = IngestPipeline(settings)
    pipeline.start()

    if pipeline.watch_error:
        pipeline.stop()
        return 1

    if args.once:
        pipeline.executor.wait_idle()
        drained = pipeline.stop()
        return 0 if drained else 1

    stop_event = threading.Event()

    def _signal_handler(signum, frame):  # noqa: D401
        logger.info(f"Received signal {signum}, shutting down.")
        stop_event.set()

    signal.signal(signal.SIGINT, _signal_handler)
    signal.signal(signal.SIGTERM, _signal_handler)

    try:
        while not stop_event.is_set():
            stop_event.wait(1.0)
    finally:
        pipeline.stop()

    logger.info("Ingest worker stopped.")
    return 0


if __name__ == "__main__":  # pragma: no cover - CLI bridge
    sys.exit(main())
