#!/usr/bin/env python3
"""
Container entry point: create/seed the database, then exec gunicorn.

Usage:
    PORT=8080 WEB_CONCURRENCY=2 python scripts/start.py
"""

from __future__ import annotations

import logging
import os
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from app.erp.logging import configure_logging  # noqa: E402

logger = logging.getLogger("erp.start")


def resolve_port(raw: str | None) -> int:
    raw = (raw or "").strip()
    if not raw:
        logger.warning("PORT not set, falling back to 8080")
        return 8080
    port = int(raw)
    if not 1 <= port <= 65535:
        raise ValueError(f"port {port} out of range")
    return port


def gunicorn_argv(port: int, workers: str, log_level: str) -> list[str]:
    # Request logs come from LoggingMiddleware, so gunicorn's access log stays off.
    return [
        "gunicorn",
        "app.wsgi:app",
        "--bind", f"0.0.0.0:{port}",
        "--workers", workers,
        "--timeout", "60",
        "--preload",
        "--log-level", log_level.lower(),
        "--error-logfile", "-",
    ]


def main() -> None:
    log_level = os.environ.get("LOG_LEVEL", "INFO")
    configure_logging(log_level, os.environ.get("LOG_JSON", "0") == "1")

    try:
        port = resolve_port(os.environ.get("PORT"))
    except ValueError:
        logger.error("Invalid PORT %r, expected an integer 1-65535", os.environ.get("PORT"))
        sys.exit(1)

    from scripts.init_db import init_db

    try:
        init_db()
    except Exception:
        logger.exception("Database init failed")
        sys.exit(1)

    workers = os.environ.get("WEB_CONCURRENCY", "2").strip() or "2"
    logger.info("Starting gunicorn on 0.0.0.0:%s (workers=%s)", port, workers)
    os.execvp("gunicorn", gunicorn_argv(port, workers, log_level))


if __name__ == "__main__":
    main()
