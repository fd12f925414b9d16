"""
Chromium browser management via Playwright.

This module provides a singleton ChromiumManager that owns one shared headless
Chromium process for the whole worker. The browser is launched lazily on the
first render, replaced by a fresh launch when it is found disconnected, and
closed on shutdown. Every render gets its own isolated browser context with
network routing applied.
"""

from __future__ import annotations

import asyncio
import logging
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime
from typing import TYPE_CHECKING

import psutil
from playwright.async_api import Error as PlaywrightError
from playwright.async_api import ViewportSize, async_playwright

from html_image_service.errors import EngineClosed, EngineUnavailable, RenderFailed, RenderServiceError
from html_image_service.network_policy import should_allow
from html_image_service.prometheus_metrics import increment_chromium_launch
from html_image_service.sanitization import sanitize_url_for_logging
from html_image_service.service_config import DEFAULT_HEIGHT, DEFAULT_WIDTH, validate_int_setting

if TYPE_CHECKING:
    from collections.abc import AsyncGenerator, Awaitable, Callable

    from playwright.async_api import Browser, BrowserContext, Page, Playwright, Route

    from html_image_service.network_policy import NetworkPolicy

LAUNCH_ARGS = [
    "--no-sandbox",
    "--disable-gpu",
    "--disable-dev-shm-usage",
    "--disable-features=IsolateOrigins,site-per-process",
    "--font-render-hinting=none",
    "--hide-scrollbars",
]

# Substrings of Playwright error messages raised when the browser process,
# its connection or the page's target went away.
_ENGINE_CLOSED_MARKERS = (
    "has been closed",
    "target closed",
    "browser closed",
    "connection closed",
    "browser has disconnected",
)


def is_engine_closed_error(error: BaseException) -> bool:
    """Whether a Playwright error means the browser itself is gone."""
    if isinstance(error, EngineClosed):
        return True
    if not isinstance(error, PlaywrightError):
        return False
    message = str(error).lower()
    return any(marker in message for marker in _ENGINE_CLOSED_MARKERS)


def translate_playwright_error(error: Exception, message: str) -> RenderServiceError:
    """Map a Playwright failure onto ``EngineClosed`` or ``RenderFailed``."""
    if is_engine_closed_error(error):
        return EngineClosed(f"{message}: rendering engine closed")
    return RenderFailed(f"{message}: {error}")


@dataclass
class ChromiumConfig:
    """
    Configuration settings for ChromiumManager.

    Attributes:
        max_concurrent_renders: Maximum browser contexts open at once (1-100, default 10).
        render_timeout: Overall timeout in seconds for one render attempt (5-600, default 120).
    """

    max_concurrent_renders: int | None = None
    render_timeout: int | None = None


@dataclass
class RenderMetrics:
    """
    Counters for render throughput, engine health and resource usage.

    Attributes:
        total_renders: Successful renders since start.
        failed_renders: Failed renders since start.
        total_render_time_ms: Sum of successful render durations (for averaging).
        avg_render_time_ms: Average successful render duration.
        total_engine_launches: Chromium launches, including the first one.
        total_retries: Render attempts repeated after the engine closed.
        last_health_check: Timestamp of last health check.
        last_health_status: Result of last health check.
        consecutive_failures: Failed renders since the last success.
        uptime_seconds: Time since the current browser was launched.
        queue_size: Requests waiting for a free context slot.
        max_queue_size: Largest queue observed.
        active_renders: Contexts currently open.
        total_queue_time_ms: Total time spent waiting for a slot (for averaging).
        avg_queue_time_ms: Average time spent waiting for a slot.
    """

    total_renders: int = 0
    failed_renders: int = 0
    total_render_time_ms: float = 0.0
    avg_render_time_ms: float = 0.0

    total_engine_launches: int = 0
    total_retries: int = 0
    last_health_check: float = 0.0
    last_health_status: bool = False
    consecutive_failures: int = 0
    uptime_seconds: float = 0.0
    start_time: float = field(default_factory=time.time)

    current_chromium_memory_mb: float = 0.0
    current_cpu_percent: float = 0.0

    queue_size: int = 0
    max_queue_size: int = 0
    active_renders: int = 0
    total_queue_time_ms: float = 0.0
    avg_queue_time_ms: float = 0.0
    total_queued: int = 0

    def record_success(self, duration_ms: float) -> None:
        self.total_renders += 1
        self.consecutive_failures = 0
        self.total_render_time_ms += duration_ms
        self.avg_render_time_ms = self.total_render_time_ms / self.total_renders

    def record_failure(self) -> None:
        self.failed_renders += 1
        self.consecutive_failures += 1

    def record_launch(self) -> None:
        self.total_engine_launches += 1
        self.start_time = time.time()
        self.uptime_seconds = 0.0

    def record_retry(self) -> None:
        self.total_retries += 1

    def record_health_check(self, is_healthy: bool) -> None:
        self.last_health_check = time.time()
        self.last_health_status = is_healthy

    def update_uptime(self) -> None:
        self.uptime_seconds = time.time() - self.start_time

    @property
    def total_chromium_restarts(self) -> int:
        return max(0, self.total_engine_launches - 1)

    def get_error_rate(self) -> float:
        """Failed renders as a percentage of all finished renders."""
        total_attempts = self.total_renders + self.failed_renders
        if total_attempts == 0:
            return 0.0
        return (self.failed_renders / total_attempts) * 100.0

    def record_resource_usage(self, browser_process: psutil.Process | None) -> None:
        if browser_process is None:
            return
        try:
            self.current_cpu_percent = browser_process.cpu_percent()
            self.current_chromium_memory_mb = browser_process.memory_info().rss / (1024 * 1024)
        except (psutil.NoSuchProcess, psutil.AccessDenied):
            pass

    def record_queue_entry(self, queue_time_ms: float) -> None:
        self.total_queued += 1
        self.total_queue_time_ms += queue_time_ms
        self.avg_queue_time_ms = self.total_queue_time_ms / self.total_queued

    def update_queue_metrics(self, queue_size: int, active_renders: int) -> None:
        self.queue_size = queue_size
        self.active_renders = active_renders
        self.max_queue_size = max(self.max_queue_size, queue_size)


class ChromiumManager:
    """
    Singleton manager for the shared Chromium browser.

    The browser reference is only ever replaced, never reset in place, so a
    request still holding the old handle keeps a consistent object until its
    own context is closed.
    """

    def __init__(
        self,
        config: ChromiumConfig | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        """
        Initialize ChromiumManager. No browser is launched until the first render.

        Args:
            config: Configuration settings. If None, values come from environment variables.
            logger: Optional logger; if None, a module-level logger is used.
        """
        self.log = logger or logging.getLogger(__name__)

        if config is None:
            config = ChromiumConfig()

        self.max_concurrent_renders = validate_int_setting(
            config.max_concurrent_renders, "MAX_CONCURRENT_RENDERS", default=10, min_value=1, max_value=100
        )
        self.render_timeout = validate_int_setting(config.render_timeout, "RENDER_TIMEOUT", default=120, min_value=5, max_value=600)

        self._playwright: Playwright | None = None
        self._browser: Browser | None = None
        self._browser_process: psutil.Process | None = None
        self._lock = asyncio.Lock()
        self._semaphore = asyncio.Semaphore(self.max_concurrent_renders)

        self._metrics = RenderMetrics()

        self._waiting_in_queue = 0
        self._active_renders = 0

    @property
    def metrics(self) -> RenderMetrics:
        return self._metrics

    async def acquire_engine(self) -> Browser:
        """
        Return the shared browser, launching a new one if there is none or it disconnected.

        Relaunching is single-flight: concurrent callers that find the browser
        dead wait on the same lock and then reuse the browser launched by
        whichever caller got there first.

        Raises:
            EngineUnavailable: If Chromium cannot be launched.
        """
        browser = self._browser
        if browser is not None and self.is_connected(browser):
            return browser

        async with self._lock:
            browser = self._browser
            if browser is not None and self.is_connected(browser):
                return browser

            if browser is not None:
                self.log.warning("Chromium browser is disconnected, launching a replacement")
                self._browser = None
                self._browser_process = None
                await self._close_browser_quietly(browser)

            self._browser = await self._launch()
            return self._browser

    async def invalidate(self, browser: Browser) -> None:
        """
        Discard ``browser`` so the next ``acquire_engine`` launches a fresh one.

        Does nothing if the shared handle has already been replaced, or if the
        browser is still connected since other renders may be using it.
        """
        async with self._lock:
            if self._browser is not browser:
                return
            if self.is_connected(browser):
                self.log.warning("Keeping Chromium browser handle, it is still connected")
                return
            self._browser = None
            self._browser_process = None

        self.log.warning("Discarded Chromium browser handle")
        await self._close_browser_quietly(browser)

    async def _launch(self) -> Browser:
        try:
            if self._playwright is None:
                self._playwright = await async_playwright().start()
            self.log.info("Launching Chromium browser process via Playwright...")
            browser = await self._playwright.chromium.launch(headless=True, args=LAUNCH_ARGS)
        except Exception as e:
            self.log.error("Failed to launch Chromium: %s", e)
            await self._stop_playwright_quietly()
            raise EngineUnavailable(f"Rendering engine could not be launched: {e}") from e

        browser.on("disconnected", lambda _: self.log.warning("Chromium browser disconnected"))
        self._metrics.record_launch()
        increment_chromium_launch()
        self._browser_process = self._find_browser_process()
        self.log.info("Chromium browser launched successfully (version %s)", browser.version)
        return browser

    def _find_browser_process(self) -> psutil.Process | None:
        """Locate the Chromium main process among our descendants for resource monitoring."""
        try:
            for child in psutil.Process().children(recursive=True):
                name = child.name().lower()
                if "chrom" in name and not any(arg.startswith("--type=") for arg in child.cmdline()):
                    self.log.debug("Found Chromium process PID: %d", child.pid)
                    return child
        except psutil.Error as e:
            self.log.warning("Could not attach to Chromium process for resource monitoring: %s", e)
        return None

    async def stop(self) -> None:
        """Close the browser and the Playwright driver."""
        async with self._lock:
            browser, self._browser = self._browser, None
            self._browser_process = None
            if browser is not None:
                await self._close_browser_quietly(browser)
            await self._stop_playwright_quietly()
        self.log.info("Chromium browser stopped")

    async def _close_browser_quietly(self, browser: Browser) -> None:
        try:
            await browser.close()
        except Exception as e:  # noqa: BLE001
            self.log.warning("Error closing browser: %s", e)

    async def _stop_playwright_quietly(self) -> None:
        playwright, self._playwright = self._playwright, None
        if playwright is None:
            return
        try:
            await playwright.stop()
        except Exception as e:  # noqa: BLE001
            self.log.error("Error stopping Playwright: %s", e)

    @staticmethod
    def is_connected(browser: Browser) -> bool:
        try:
            return browser.is_connected()
        except Exception:  # noqa: BLE001
            return False

    def is_running(self) -> bool:
        """Check if a browser has been launched and is still connected."""
        return self._browser is not None and self.is_connected(self._browser)

    def health_check(self) -> bool:
        """
        Report whether renders can be served.

        A manager that has not launched a browser yet is healthy since the
        browser starts on demand; a launched browser must still be connected.
        """
        is_healthy = self._browser is None or self.is_connected(self._browser)
        self._metrics.record_health_check(is_healthy)
        return is_healthy

    def get_version(self) -> str | None:
        """
        Get the Chromium browser version.

        Returns:
            Chromium version string (e.g., "131.0.6778.69") or None if no browser is running.
        """
        try:
            if not self.is_running() or self._browser is None:
                return None
            version_string = self._browser.version
            if "/" in version_string:
                return version_string.split("/")[1]
            return version_string
        except Exception as e:  # noqa: BLE001
            self.log.error("Failed to get Chromium version: %s", e)
            return None

    @asynccontextmanager
    async def open_context(
        self,
        browser: Browser,
        device_scale_factor: float,
        network_policy: NetworkPolicy,
    ) -> AsyncGenerator[Page]:
        """
        Open an isolated browser context and page for one render.

        Args:
            browser: Browser returned by ``acquire_engine``.
            device_scale_factor: Device scale factor of the new context.
            network_policy: Decides which outgoing requests are allowed.

        Yields:
            A Playwright Page object.

        Note:
            The page and then its context are closed exactly once when the
            block exits, whether it succeeded, raised or was cancelled.

        Raises:
            EngineClosed: If the browser went away while the context was opened.
            RenderFailed: If the context could not be opened for another reason.
        """
        queue_entry_time = time.time()
        self._waiting_in_queue += 1
        self._metrics.update_queue_metrics(self._waiting_in_queue, self._active_renders)

        try:
            await self._semaphore.acquire()
        finally:
            self._waiting_in_queue -= 1

        self._metrics.record_queue_entry((time.time() - queue_entry_time) * 1000)
        self._active_renders += 1
        self._metrics.update_queue_metrics(self._waiting_in_queue, self._active_renders)

        context: BrowserContext | None = None
        page: Page | None = None
        try:
            try:
                context = await browser.new_context(
                    device_scale_factor=device_scale_factor,
                    viewport=ViewportSize(width=DEFAULT_WIDTH, height=DEFAULT_HEIGHT),
                    java_script_enabled=True,
                    bypass_csp=False,
                )
                await context.route("**/*", self._route_handler(network_policy))
                page = await context.new_page()
            except PlaywrightError as e:
                raise translate_playwright_error(e, "Could not open browser context") from e

            yield page

        finally:
            try:
                await self._cleanup_page_resources(page, context)
            finally:
                self._active_renders -= 1
                self._metrics.update_queue_metrics(self._waiting_in_queue, self._active_renders)
                self._semaphore.release()

    def _route_handler(self, network_policy: NetworkPolicy) -> Callable[[Route], Awaitable[None]]:
        async def handle_route(route: Route) -> None:
            url = route.request.url
            if should_allow(url, network_policy):
                await route.continue_()
            else:
                self.log.debug("Blocked request to %s", sanitize_url_for_logging(url))
                await route.abort()

        return handle_route

    async def _cleanup_page_resources(self, page: Page | None, context: BrowserContext | None) -> None:
        """Close the page, then its context, logging rather than raising close errors."""
        if page is not None:
            try:
                await page.close()
            except Exception as e:  # noqa: BLE001
                self.log.warning("Error closing page: %s", e)

        if context is not None:
            try:
                await context.close()
            except Exception as e:  # noqa: BLE001
                self.log.warning("Error closing context: %s", e)

    def get_metrics(self) -> dict[str, float | int | bool | str]:
        """
        Get current metrics for monitoring and observability.

        Returns:
            Dictionary containing render counters, engine lifecycle counters,
            health check state, CPU and memory usage and queue figures.
        """
        self._metrics.update_uptime()
        self._metrics.record_resource_usage(self._browser_process)

        system_memory = psutil.virtual_memory()

        last_health_check_str = ""
        if self._metrics.last_health_check > 0:
            last_health_check_str = datetime.fromtimestamp(self._metrics.last_health_check).strftime("%H:%M:%S %d.%m.%Y")

        return {
            "total_renders": self._metrics.total_renders,
            "failed_renders": self._metrics.failed_renders,
            "error_rate_percent": round(self._metrics.get_error_rate(), 2),
            "avg_render_time_ms": round(self._metrics.avg_render_time_ms, 2),
            "total_engine_launches": self._metrics.total_engine_launches,
            "total_chromium_restarts": self._metrics.total_chromium_restarts,
            "total_retries": self._metrics.total_retries,
            "last_health_check": last_health_check_str,
            "last_health_status": self._metrics.last_health_status,
            "consecutive_failures": self._metrics.consecutive_failures,
            "uptime_seconds": round(self._metrics.uptime_seconds, 2) if self.is_running() else 0.0,
            "current_cpu_percent": round(self._metrics.current_cpu_percent, 2),
            "current_chromium_memory_mb": round(self._metrics.current_chromium_memory_mb, 2),
            "total_memory_mb": round(system_memory.total / (1024 * 1024), 2),
            "available_memory_mb": round(system_memory.available / (1024 * 1024), 2),
            "queue_size": self._metrics.queue_size,
            "max_queue_size": self._metrics.max_queue_size,
            "active_renders": self._metrics.active_renders,
            "avg_queue_time_ms": round(self._metrics.avg_queue_time_ms, 2),
            "max_concurrent_renders": self.max_concurrent_renders,
        }


# Global singleton instance
_chromium_manager: ChromiumManager | None = None


def get_chromium_manager() -> ChromiumManager:
    """
    Get the global ChromiumManager singleton instance.

    Note:
        This is intended for dependency injection in FastAPI endpoints.
    """
    global _chromium_manager  # noqa: PLW0603
    if _chromium_manager is None:
        _chromium_manager = ChromiumManager()
    return _chromium_manager
