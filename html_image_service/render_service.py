"""
Render orchestration: validate geometry and content, then drive the browser.

Everything that can reject a request (presets, size budget, URL policy,
templates) runs before a browser is acquired. The browser part is retried
only when the Chromium process itself went away mid-render.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from html_image_service.chromium_manager import get_chromium_manager
from html_image_service.content_resolver import ContentResolver
from html_image_service.errors import EngineClosed, RenderFailed, RenderServiceError
from html_image_service.geometry import ClipRegion, resolve_geometry
from html_image_service.network_policy import NetworkPolicy
from html_image_service.presets import load_presets
from html_image_service.prometheus_metrics import increment_render_failure, increment_render_retry, increment_render_success
from html_image_service.render_pipeline import CaptureOptions, RenderPipeline
from html_image_service.service_config import DEFAULT_QUALITY, DEFAULT_TIMEOUT_MS, load_service_config
from html_image_service.template_provider import TemplateProvider

if TYPE_CHECKING:
    from playwright.async_api import Browser

    from html_image_service.chromium_manager import ChromiumManager
    from html_image_service.content_resolver import ContentInstruction
    from html_image_service.geometry import ResolvedGeometry
    from html_image_service.presets import PresetTable
    from html_image_service.schemas import RenderRequest
    from html_image_service.service_config import ServiceConfig

FONT_SIZE_FIELDS = ("mainTitleSize", "subtitleSize", "bodySize")


@dataclass(frozen=True)
class RenderResult:
    image: bytes
    media_type: str


class RenderService:
    def __init__(
        self,
        chromium_manager: ChromiumManager,
        config: ServiceConfig,
        presets: PresetTable,
        templates: TemplateProvider,
        pipeline: RenderPipeline | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        self.log = logger or logging.getLogger(__name__)
        self.chromium_manager = chromium_manager
        self.config = config
        self.presets = presets
        self.templates = templates
        self.network_policy = NetworkPolicy.from_config(config)
        self.content_resolver = ContentResolver(templates, self.network_policy)
        self.pipeline = pipeline or RenderPipeline()
        self.max_attempts = config.render_max_attempts
        self.retry_delay_seconds = config.render_retry_delay_ms / 1000.0

    async def render(self, request: RenderRequest) -> RenderResult:
        """
        Render a validated request to image bytes.

        Raises:
            RenderServiceError: Any of the specific error kinds; unexpected
                exceptions are reported as ``RenderFailed``.
        """
        start_time = time.time()
        try:
            geometry = resolve_geometry(
                self.presets,
                self.config,
                width=request.width,
                height=request.height,
                size_preset=request.sizePreset,
                clip=ClipRegion.from_mapping(request.clip.model_dump()) if request.clip else None,
                clip_preset=request.clipPreset,
            )
            content = self.content_resolver.resolve(
                template_name=request.templateName,
                template_data=self._template_data(request),
                html=request.html,
                url=request.url,
                css=request.css,
            )
            options = CaptureOptions(
                format=request.format,
                quality=request.quality if request.quality is not None else DEFAULT_QUALITY,
                full_page=request.fullPage,
                omit_background=request.omitBackground,
                dpr=request.dpr if request.dpr is not None else self.config.default_dpr,
                wait_until=request.waitUntil,
                wait_for=request.waitFor,
                timeout_ms=request.timeout if request.timeout is not None else DEFAULT_TIMEOUT_MS,
            )
            self.log.info(
                "Rendering %s content as %s, viewport %dx%d@%sx",
                content.kind if content.kind == "url" else content.source,
                options.format,
                geometry.width,
                geometry.height,
                options.dpr,
            )
            image = await self.render_with_retry(content, geometry, options)

        except RenderServiceError as e:
            self._record_failure(e)
            raise
        except Exception as e:
            self.log.error("Unexpected error while rendering: %s", e, exc_info=True)
            error = RenderFailed()
            self._record_failure(error)
            raise error from e

        duration_seconds = time.time() - start_time
        self.chromium_manager.metrics.record_success(duration_seconds * 1000)
        increment_render_success(options.format, duration_seconds)
        self.log.info("Rendered %s image in %.0f ms (%d bytes)", options.format, duration_seconds * 1000, len(image))
        return RenderResult(image=image, media_type=f"image/{options.format}")

    async def render_with_retry(self, content: ContentInstruction, geometry: ResolvedGeometry, options: CaptureOptions) -> bytes:
        """
        Acquire the browser, open a context and run the pipeline, retrying on ``EngineClosed``.

        Each retry discards the shared browser first so the next attempt
        relaunches it. ``EngineClosed`` raised while the browser is still
        connected means only the page or context closed; it is reported as
        ``RenderFailed`` without a retry. Any other error propagates on first
        occurrence.
        """
        last_error: EngineClosed | None = None

        for attempt in range(1, self.max_attempts + 1):
            browser = await self.chromium_manager.acquire_engine()
            try:
                return await asyncio.wait_for(
                    self._render_once(browser, content, geometry, options),
                    timeout=self.chromium_manager.render_timeout,
                )
            except TimeoutError as e:
                raise RenderFailed(f"Render timed out after {self.chromium_manager.render_timeout} seconds") from e
            except EngineClosed as e:
                if self.chromium_manager.is_connected(browser):
                    # Only the page or its context went away, e.g. content called window.close()
                    self.log.warning("Page closed during render while the browser is still connected: %s", e.message)
                    raise RenderFailed("Page was closed during render") from e
                last_error = e
                self.log.warning("Rendering engine closed (attempt %d/%d): %s", attempt, self.max_attempts, e.message)
                await self.chromium_manager.invalidate(browser)
                if attempt < self.max_attempts:
                    self.chromium_manager.metrics.record_retry()
                    increment_render_retry()
                    await asyncio.sleep(self.retry_delay_seconds)

        self.log.error("Render failed after %d attempts", self.max_attempts)
        raise last_error or RenderFailed()

    async def _render_once(self, browser: Browser, content: ContentInstruction, geometry: ResolvedGeometry, options: CaptureOptions) -> bytes:
        async with self.chromium_manager.open_context(browser, options.dpr, self.network_policy) as page:
            return await self.pipeline.run(page, content, geometry, options)

    def render_template_html(self, template_name: str, template_data: dict[str, Any] | None = None) -> str:
        """Render a template to HTML without taking a screenshot."""
        return self.templates.render(template_name, template_data)

    @staticmethod
    def _template_data(request: RenderRequest) -> dict[str, Any]:
        data = dict(request.templateData or {})
        for name in FONT_SIZE_FIELDS:
            value = getattr(request, name)
            if value is not None:
                data.setdefault(name, value)
        return data

    def _record_failure(self, error: RenderServiceError) -> None:
        self.chromium_manager.metrics.record_failure()
        increment_render_failure(type(error).__name__)
        self.log.warning("Render failed (%s): %s", type(error).__name__, error.message)


# Global singleton instance
_render_service: RenderService | None = None


def get_render_service() -> RenderService:
    """
    Get the global RenderService, building it from the environment on first use.

    Note:
        This is intended for dependency injection in FastAPI endpoints.
    """
    global _render_service  # noqa: PLW0603
    if _render_service is None:
        config = load_service_config()
        _render_service = RenderService(
            chromium_manager=get_chromium_manager(),
            config=config,
            presets=load_presets(config.presets_path),
            templates=TemplateProvider(config.templates_dir, cache_enabled=not config.development),
        )
        logging.getLogger(__name__).info("Templates available: %s", _render_service.templates.list_templates())
    return _render_service
