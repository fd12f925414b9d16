"""
Gunicorn configuration for running the HTML image service with several workers.

Every worker is a separate uvicorn event loop with its own ChromiumManager, so
each one launches its own browser on its first render. Settings are read with
the same validation as the service itself.

Environment Variables:
    WORKERS: Number of worker processes (1-64, default: 1)
    PORT: Service port (default: 9080)
    WORKER_TIMEOUT: Seconds before a silent worker is killed
        (default: the worst-case render time plus WORKER_TIMEOUT_MARGIN)
    GRACEFUL_TIMEOUT: Graceful shutdown timeout in seconds (default: 30)
    KEEP_ALIVE: Keep-alive timeout in seconds (default: 5)
    LOG_LEVEL: Log level (default: INFO)
    RENDER_TIMEOUT, RENDER_MAX_ATTEMPTS, RENDER_RETRY_DELAY_MS: Used to derive
        the WORKER_TIMEOUT default
"""

import math
import os
from typing import Any

from html_image_service.service_config import validate_int_setting

# Seconds on top of the render budget for navigation setup, encoding and the response
WORKER_TIMEOUT_MARGIN = 30


def render_budget_seconds() -> int:
    """Longest a single /render request can take: every attempt timing out plus the delays between them."""
    render_timeout = validate_int_setting(None, "RENDER_TIMEOUT", default=120, min_value=5, max_value=600)
    attempts = validate_int_setting(None, "RENDER_MAX_ATTEMPTS", default=3, min_value=1, max_value=10)
    retry_delay_ms = validate_int_setting(None, "RENDER_RETRY_DELAY_MS", default=500, min_value=0, max_value=10000)
    return render_timeout * attempts + math.ceil(retry_delay_ms * (attempts - 1) / 1000)


bind = f"0.0.0.0:{validate_int_setting(None, 'PORT', default=9080, min_value=1, max_value=65535)}"

workers = validate_int_setting(None, "WORKERS", default=1, min_value=1, max_value=64)
worker_class = "uvicorn.workers.UvicornWorker"

# A worker killed mid-render drops every request it is serving, so it must outlive the retry loop
timeout = validate_int_setting(None, "WORKER_TIMEOUT", default=render_budget_seconds() + WORKER_TIMEOUT_MARGIN, min_value=10, max_value=7200)
graceful_timeout = validate_int_setting(None, "GRACEFUL_TIMEOUT", default=30, min_value=1, max_value=600)
keepalive = validate_int_setting(None, "KEEP_ALIVE", default=5, min_value=1, max_value=300)

loglevel = os.getenv("LOG_LEVEL", "INFO").lower()
accesslog = "-"
errorlog = "-"
access_log_format = '%(h)s "%(r)s" %(s)s %(b)s %(D)sus'

proc_name = "html-image-service"

# Each worker must build its own ChromiumManager after the fork
preload_app = False


def on_starting(server: Any) -> None:
    server.log.info("Starting %d worker(s) on %s, worker timeout %ds", workers, bind, timeout)


def post_fork(server: Any, worker: Any) -> None:
    server.log.info("Worker %s spawned, Chromium starts on its first render", worker.pid)


def worker_exit(server: Any, worker: Any) -> None:
    server.log.info("Worker %s exited", worker.pid)
