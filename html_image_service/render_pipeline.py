"""
Drive one browser page from content to image bytes.

The steps always run in the same order: size the viewport, force screen
media, set the timeout budget, load the content, optionally wait some more,
pin the device pixel ratio and take the screenshot. Nothing is returned unless
the capture fully succeeded.
"""

from __future__ import annotations

import io
import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Literal

from PIL import Image
from playwright.async_api import Error as PlaywrightError
from playwright.async_api import FloatRect, ViewportSize
from playwright.async_api import TimeoutError as PlaywrightTimeoutError

from html_image_service.chromium_manager import translate_playwright_error
from html_image_service.content_resolver import UrlContent
from html_image_service.errors import ContentLoadTimeout, RenderFailed, SelectorWaitTimeout
from html_image_service.sanitization import sanitize_for_logging, sanitize_url_for_logging
from html_image_service.service_config import DEFAULT_QUALITY, DEFAULT_TIMEOUT_MS

if TYPE_CHECKING:
    from playwright.async_api import Page

    from html_image_service.content_resolver import ContentInstruction
    from html_image_service.geometry import ResolvedGeometry

ImageFormat = Literal["png", "jpeg", "webp"]
WaitUntil = Literal["load", "domcontentloaded", "networkidle"]

WEBP_MAX_DIMENSION = 16383

# Runs after content load so template CSS sees the context's real ratio during first layout.
DPR_OVERRIDE_SCRIPT = "dpr => Object.defineProperty(window, 'devicePixelRatio', { get: () => dpr, configurable: true })"


@dataclass(frozen=True)
class CaptureOptions:
    format: ImageFormat = "png"
    quality: int = DEFAULT_QUALITY
    full_page: bool = False
    omit_background: bool = False
    dpr: float = 1.0
    wait_until: WaitUntil = "networkidle"
    wait_for: int | str | None = None
    timeout_ms: int = DEFAULT_TIMEOUT_MS


def encode_webp(png_bytes: bytes, quality: int) -> bytes:
    """
    Re-encode a PNG screenshot as WebP, keeping its alpha channel.

    Raises:
        RenderFailed: If the capture exceeds the WebP dimension limit or cannot be encoded.
    """
    # Screenshots come from our own browser and are bounded by MAX_PIXELS and dpr,
    # so Pillow's decompression bomb guard is lifted while they are decoded.
    max_image_pixels = Image.MAX_IMAGE_PIXELS
    Image.MAX_IMAGE_PIXELS = None
    try:
        with Image.open(io.BytesIO(png_bytes), formats=["PNG"]) as img:
            width, height = img.size
            if width > WEBP_MAX_DIMENSION or height > WEBP_MAX_DIMENSION:
                raise RenderFailed(
                    f"Image of {width}x{height} px exceeds the WebP limit of {WEBP_MAX_DIMENSION} px per side; use png or jpeg"
                )
            output = io.BytesIO()
            img.save(output, format="WEBP", quality=quality)
            return output.getvalue()
    except (OSError, ValueError) as e:
        raise RenderFailed(f"Could not encode WebP image: {e}") from e
    finally:
        Image.MAX_IMAGE_PIXELS = max_image_pixels


class RenderPipeline:
    def __init__(self, logger: logging.Logger | None = None) -> None:
        self.log = logger or logging.getLogger(__name__)

    async def run(self, page: Page, content: ContentInstruction, geometry: ResolvedGeometry, options: CaptureOptions) -> bytes:
        """
        Render ``content`` on ``page`` and return the encoded image.

        Raises:
            ContentLoadTimeout: If the ``wait_until`` condition is not met in time.
            SelectorWaitTimeout: If the ``wait_for`` selector does not become visible in time.
            EngineClosed: If the browser went away during any step.
            RenderFailed: For any other failure.
        """
        viewport = ViewportSize(width=geometry.width, height=geometry.height)

        try:
            await page.set_viewport_size(viewport)
            await page.emulate_media(media="screen")
            page.set_default_timeout(options.timeout_ms)
        except PlaywrightError as e:
            raise translate_playwright_error(e, "Could not prepare page") from e

        await self._load_content(page, content, options)
        await self._wait_for(page, options)

        try:
            await page.set_viewport_size(viewport)
            await page.evaluate(DPR_OVERRIDE_SCRIPT, options.dpr)
        except PlaywrightError as e:
            raise translate_playwright_error(e, "Could not apply device pixel ratio") from e

        image = await self._capture(page, geometry, options)
        self.log.debug("Captured %s image %dx%d@%sx (%d bytes)", options.format, geometry.width, geometry.height, options.dpr, len(image))
        return image

    async def _load_content(self, page: Page, content: ContentInstruction, options: CaptureOptions) -> None:
        try:
            if isinstance(content, UrlContent):
                self.log.debug("Navigating to %s (wait_until=%s)", sanitize_url_for_logging(content.target), options.wait_until)
                await page.goto(content.target, wait_until=options.wait_until)
            else:
                self.log.debug("Setting %s content (%d characters, wait_until=%s)", content.source, len(content.markup), options.wait_until)
                await page.set_content(content.markup, wait_until=options.wait_until)
        except PlaywrightTimeoutError as e:
            raise ContentLoadTimeout(f"Content did not reach '{options.wait_until}' within {options.timeout_ms} ms") from e
        except PlaywrightError as e:
            raise translate_playwright_error(e, "Could not load content") from e

    async def _wait_for(self, page: Page, options: CaptureOptions) -> None:
        wait_for = options.wait_for
        if wait_for is None:
            return

        try:
            if isinstance(wait_for, int):
                await page.wait_for_timeout(wait_for)
            else:
                await page.wait_for_selector(wait_for, state="visible", timeout=options.timeout_ms)
        except PlaywrightTimeoutError as e:
            selector = sanitize_for_logging(wait_for, max_length=100)
            raise SelectorWaitTimeout(f"Selector '{selector}' not visible within {options.timeout_ms} ms") from e
        except PlaywrightError as e:
            raise translate_playwright_error(e, "Waiting failed") from e

    async def _capture(self, page: Page, geometry: ResolvedGeometry, options: CaptureOptions) -> bytes:
        # Chromium only encodes PNG and JPEG; WebP is transcoded from a PNG capture.
        screenshot_type = "jpeg" if options.format == "jpeg" else "png"
        screenshot_options: dict[str, Any] = {
            "type": screenshot_type,
            "full_page": options.full_page and geometry.clip is None,
            "omit_background": options.omit_background and screenshot_type == "png",
        }
        if screenshot_type == "jpeg":
            screenshot_options["quality"] = options.quality
        if geometry.clip is not None:
            screenshot_options["clip"] = FloatRect(**geometry.clip.as_dict())

        try:
            image = await page.screenshot(**screenshot_options)
        except PlaywrightTimeoutError as e:
            raise RenderFailed(f"Screenshot timed out after {options.timeout_ms} ms") from e
        except PlaywrightError as e:
            raise translate_playwright_error(e, "Screenshot failed") from e

        if options.format == "webp":
            return encode_webp(image, options.quality)
        return image
