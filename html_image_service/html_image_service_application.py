"""Command line entry point: logging setup and a single-process uvicorn server."""

import argparse
import logging
import logging.config
import os
from datetime import datetime
from pathlib import Path
from typing import Any

import uvicorn

from html_image_service import render_controller
from html_image_service.service_config import validate_int_setting

# Libraries with their own loggers; uvicorn's are routed through the root handlers.
THIRD_PARTY_LOGGERS = ["playwright", "PIL", "jinja2", "uvicorn", "uvicorn.error", "uvicorn.access"]

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
DEFAULT_LOG_DIR = "/opt/html-image-service/logs"
DEFAULT_PORT = 9080


def logging_config(log_level: str, log_file: Path) -> dict[str, Any]:
    """``logging.config.dictConfig`` schema with a file and a console handler on the root logger."""
    return {
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": {"default": {"format": LOG_FORMAT}},
        "handlers": {
            "file": {"class": "logging.FileHandler", "filename": str(log_file), "encoding": "utf-8", "formatter": "default"},
            "console": {"class": "logging.StreamHandler", "formatter": "default"},
        },
        "root": {"level": log_level, "handlers": ["file", "console"]},
        "loggers": {name: {"level": log_level, "handlers": [], "propagate": True} for name in THIRD_PARTY_LOGGERS},
    }


def setup_logging() -> Path:
    """
    Log to a new timestamped file under LOG_DIR and to the console.

    LOG_LEVEL (default INFO) applies to the root logger and to every logger in
    THIRD_PARTY_LOGGERS; an unknown level falls back to INFO. Files are never
    rotated, each service start gets its own.

    Returns:
        Path: The path to the created log file
    """
    requested_level = os.getenv("LOG_LEVEL", "INFO").upper()
    log_level = requested_level if requested_level in logging.getLevelNamesMapping() else "INFO"

    log_dir = Path(os.getenv("LOG_DIR", DEFAULT_LOG_DIR))
    log_dir.mkdir(parents=True, exist_ok=True)
    log_file = log_dir / f"html-image-service_{datetime.now().strftime('%Y-%m-%d_%H-%M-%S')}.log"

    logging.config.dictConfig(logging_config(log_level, log_file))

    logger = logging.getLogger(__name__)
    if log_level != requested_level:
        logger.warning("Unknown LOG_LEVEL '%s', using INFO", requested_level)
    logger.info("Logging initialized with level %s, writing to %s", log_level, log_file)
    return log_file


def start_server(port: int) -> None:
    # log_config=None keeps uvicorn from replacing the handlers installed by setup_logging
    uvicorn.run(app=render_controller.app, host="", port=port, log_config=None)


def main() -> None:
    """Parse ``--port`` (default: PORT or 9080), set up logging and serve the API."""
    parser = argparse.ArgumentParser(description="Render HTML, templates or URLs to PNG, JPEG or WebP")
    parser.add_argument(
        "--port",
        type=int,
        default=validate_int_setting(None, "PORT", default=DEFAULT_PORT, min_value=1, max_value=65535),
        help="Service port",
    )
    args = parser.parse_args()

    setup_logging()
    logging.getLogger(__name__).info("HTML image service listening on port %d", args.port)

    start_server(args.port)


if __name__ == "__main__":
    main()
