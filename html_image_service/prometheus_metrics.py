"""
Prometheus metrics collectors for html-image-service.

Counters and histograms are updated when events occur (renders, failures,
retries, browser launches). Gauges mirror ChromiumManager state and are
refreshed right before each scrape.
"""

import logging
from typing import TYPE_CHECKING

from prometheus_client import Counter, Gauge, Histogram, Info

if TYPE_CHECKING:
    from html_image_service.chromium_manager import ChromiumManager


logger = logging.getLogger(__name__)


renders_total = Counter(
    "renders_total",
    "Total number of successful image renders",
    ["format"],
)

render_failures_total = Counter(
    "render_failures_total",
    "Total number of failed image renders by error kind",
    ["kind"],
)

render_duration_seconds = Histogram(
    "render_duration_seconds",
    "Image render duration in seconds, including retries",
    buckets=[0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0],
)

render_retries_total = Counter(
    "render_retries_total",
    "Total number of render attempts repeated after the browser closed",
)

chromium_launches_total = Counter(
    "chromium_launches_total",
    "Total number of Chromium browser launches",
)

render_error_rate_percent = Gauge(
    "render_error_rate_percent",
    "Render error rate as percentage",
)

avg_render_time_seconds = Gauge(
    "avg_render_time_seconds",
    "Average successful render time in seconds",
)

uptime_seconds = Gauge(
    "uptime_seconds",
    "Uptime of the current Chromium browser in seconds",
)

cpu_percent = Gauge(
    "cpu_percent",
    "Current Chromium CPU usage percentage",
)

chromium_memory_bytes = Gauge(
    "chromium_memory_bytes",
    "Current Chromium memory usage in bytes",
)

system_memory_total_bytes = Gauge(
    "system_memory_total_bytes",
    "Total system memory in bytes",
)

system_memory_available_bytes = Gauge(
    "system_memory_available_bytes",
    "Available system memory in bytes",
)

queue_size = Gauge(
    "queue_size",
    "Current number of requests waiting for a browser context",
)

active_renders = Gauge(
    "active_renders",
    "Current number of open browser contexts",
)

chromium_info = Info(
    "chromium",
    "Chromium browser information",
)


def increment_render_success(image_format: str, duration_seconds: float) -> None:
    """Increment successful render counter and record duration."""
    renders_total.labels(format=image_format).inc()
    render_duration_seconds.observe(duration_seconds)


def increment_render_failure(kind: str) -> None:
    """Increment failed render counter for an error kind such as ``SizeBudgetExceeded``."""
    render_failures_total.labels(kind=kind).inc()


def increment_render_retry() -> None:
    render_retries_total.inc()


def increment_chromium_launch() -> None:
    chromium_launches_total.inc()


def update_gauges_from_chromium_manager(chromium_manager: "ChromiumManager") -> None:
    """
    Update Prometheus gauges from ChromiumManager current state.

    Called before serving metrics so gauges reflect the current state. Only
    gauges are touched here; counters are incremented by the increment_* functions.
    """
    try:
        metrics = chromium_manager.get_metrics()

        render_error_rate_percent.set(float(metrics["error_rate_percent"]))
        avg_render_time_seconds.set(float(metrics["avg_render_time_ms"]) / 1000.0)
        uptime_seconds.set(float(metrics["uptime_seconds"]))
        cpu_percent.set(float(metrics["current_cpu_percent"]))
        chromium_memory_bytes.set(float(metrics["current_chromium_memory_mb"]) * 1024 * 1024)
        system_memory_total_bytes.set(float(metrics["total_memory_mb"]) * 1024 * 1024)
        system_memory_available_bytes.set(float(metrics["available_memory_mb"]) * 1024 * 1024)
        queue_size.set(float(metrics["queue_size"]))
        active_renders.set(float(metrics["active_renders"]))

        chromium_version = chromium_manager.get_version()
        if chromium_version:
            chromium_info.info({"version": chromium_version})

        logger.debug("Prometheus gauges updated from ChromiumManager")

    except Exception as e:
        logger.error("Failed to update Prometheus gauges: %s", e, exc_info=True)
