"""
Error kinds raised while validating and rendering a request.

Every error carries a human-readable ``message`` that the HTTP layer returns
to the caller as ``{"error": message}``. Only :class:`EngineClosed` is retried.
"""

from __future__ import annotations


class RenderServiceError(Exception):
    """Base class for all failures surfaced to API callers."""

    default_message = "Render failed"

    def __init__(self, message: str | None = None) -> None:
        self.message = message or self.default_message
        super().__init__(self.message)


class RenderValidationError(RenderServiceError):
    """Malformed or unsatisfiable request; rejected before touching the engine."""

    default_message = "Invalid payload"


class UnknownPreset(RenderValidationError):
    def __init__(self, kind: str, name: str) -> None:
        self.kind = kind
        self.name = name
        super().__init__(f"Unknown {kind}: {name}")


class SizeBudgetExceeded(RenderValidationError):
    def __init__(self, width: int, height: int, max_pixels: int) -> None:
        self.width = width
        self.height = height
        self.max_pixels = max_pixels
        super().__init__(f"Requested viewport {width}x{height} exceeds maximum pixel budget {max_pixels}")


class UrlRenderingDisabled(RenderValidationError):
    default_message = "URL rendering disabled by server configuration"


class UrlNotAllowlisted(RenderValidationError):
    default_message = "URL not in allowlist"


class NoContentSource(RenderValidationError):
    default_message = "Provide one of: html | templateName | url"


class TemplateRenderFailed(RenderValidationError):
    default_message = "Template render failed"


class ContentLoadTimeout(RenderServiceError):
    default_message = "Timed out waiting for content to load"


class SelectorWaitTimeout(RenderServiceError):
    default_message = "Timed out waiting for selector to become visible"


class EngineUnavailable(RenderServiceError):
    default_message = "Rendering engine could not be launched"


class EngineClosed(RenderServiceError):
    """The Chromium process went away underneath a request."""

    default_message = "Rendering engine closed unexpectedly"


class RenderFailed(RenderServiceError):
    default_message = "Render failed"
