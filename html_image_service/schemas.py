from typing import Annotated, Any, Literal
from urllib.parse import urlparse

from pydantic import BaseModel, ConfigDict, Field, field_validator


class ClipSchema(BaseModel):
    """Sub-rectangle of the page to capture, in CSS pixels"""

    x: float = Field(title="X", description="Left edge of the clip rectangle")
    y: float = Field(title="Y", description="Top edge of the clip rectangle")
    width: float = Field(title="Width", description="Width of the clip rectangle", gt=0)
    height: float = Field(title="Height", description="Height of the clip rectangle", gt=0)


class RenderRequest(BaseModel):
    """Schema for request /render"""

    model_config = ConfigDict(extra="ignore")

    # Content sources, checked in the order templateName, html, url
    html: str | None = Field(None, title="HTML", description="Inline HTML document or fragment to render")
    url: str | None = Field(None, title="URL", description="Remote page to render (requires ALLOW_URL and an allowlisted host)")
    templateName: str | None = Field(None, title="Template Name", description="Name of a template under TEMPLATES_DIR/html")
    templateData: dict[str, Any] | None = Field(None, title="Template Data", description="Variables passed to the template")

    # Geometry
    width: int | None = Field(None, title="Width", description="Viewport width in CSS pixels", ge=1, le=10000)
    height: int | None = Field(None, title="Height", description="Viewport height in CSS pixels", ge=1, le=10000)
    sizePreset: str | None = Field(None, title="Size Preset", description="Named size from the preset table; overrides width/height")
    clip: ClipSchema | None = Field(None, title="Clip", description="Capture only this rectangle")
    clipPreset: str | None = Field(None, title="Clip Preset", description="Named clip from the preset table; overrides clip")

    # Template font sizes
    mainTitleSize: str | None = Field(None, title="Main Title Size", description="Font size passed to templates as mainTitleSize")
    subtitleSize: str | None = Field(None, title="Subtitle Size", description="Font size passed to templates as subtitleSize")
    bodySize: str | None = Field(None, title="Body Size", description="Font size passed to templates as bodySize")

    # Output
    dpr: float | None = Field(None, title="Device Pixel Ratio", description="Defaults to DEFAULT_DPR", ge=0.5, le=4)
    format: Literal["png", "jpeg", "webp"] = Field("png", title="Format", description="Image format")
    quality: int | None = Field(None, title="Quality", description="Compression quality for jpeg/webp (default 90); ignored for png", ge=1, le=100)
    fullPage: bool = Field(False, title="Full Page", description="Capture the full scrollable page instead of the viewport")
    omitBackground: bool = Field(False, title="Omit Background", description="Transparent background (png/webp only)")
    css: str | None = Field(None, title="CSS", description="Extra CSS injected before </head>")

    # Timing
    waitUntil: Literal["load", "domcontentloaded", "networkidle"] = Field("networkidle", title="Wait Until", description="Load condition to wait for")
    waitFor: Annotated[int, Field(ge=0, le=30000)] | str | None = Field(
        None, title="Wait For", description="Extra delay in milliseconds, or a CSS selector that must become visible"
    )
    timeout: int | None = Field(None, title="Timeout", description="Timeout in milliseconds for each wait (default 15000)", ge=0, le=60000)

    @field_validator("url")
    @classmethod
    def _validate_url(cls, value: str | None) -> str | None:
        if value is None:
            return value
        parsed = urlparse(value)
        if not parsed.scheme or not parsed.netloc:
            raise ValueError("Invalid url")
        return value


class RenderHtmlRequest(BaseModel):
    """Schema for request /render-html"""

    templateName: str | None = Field(None, title="Template Name", description="Name of a template under TEMPLATES_DIR/html")
    templateData: dict[str, Any] | None = Field(None, title="Template Data", description="Variables passed to the template")


class ErrorSchema(BaseModel):
    """Schema for error responses"""

    error: str = Field(title="Error", description="Human-readable error message")
    details: list[dict[str, Any]] | None = Field(None, title="Details", description="Validation errors, if any")


class HealthzSchema(BaseModel):
    """Schema for response /healthz"""

    ok: bool = Field(title="OK", description="Always true while the process serves requests")


class VersionSchema(BaseModel):
    """Schema for response /version"""

    python: str = Field(title="Python", description="Python version")
    playwright: str | None = Field(title="Playwright", description="Playwright version")
    htmlImageService: str | None = Field(title="HTML Image Service", description="Service version")
    timestamp: str | None = Field(title="Build Timestamp", description="Build timestamp")
    chromium: str | None = Field(title="Chromium", description="Chromium version")


class RenderMetricsSchema(BaseModel):
    """Schema for render performance and browser health metrics"""

    total_renders: int = Field(title="Renders", description="Total successful renders")
    failed_renders: int = Field(title="Failed Renders", description="Total failed renders")
    error_rate_percent: float = Field(title="Error Rate (%)", description="Failed renders as percentage of all renders")
    avg_render_time_ms: float = Field(title="Avg Render Time (ms)", description="Average successful render time in milliseconds")

    total_engine_launches: int = Field(title="Engine Launches", description="Chromium launches since startup")
    total_chromium_restarts: int = Field(title="Total Chromium Restarts", description="Chromium relaunches after the first launch")
    total_retries: int = Field(title="Retries", description="Render attempts repeated after the browser closed")
    last_health_check: str = Field(title="Last Health Check", description="Formatted timestamp of last health check (HH:MM:SS DD.MM.YYYY)")
    last_health_status: bool = Field(title="Last Health Status", description="Result of last health check (true=healthy)")
    consecutive_failures: int = Field(title="Consecutive Failures", description="Failed renders since the last success")
    uptime_seconds: float = Field(title="Uptime (seconds)", description="Uptime of the current browser in seconds")

    current_cpu_percent: float = Field(title="Current CPU (%)", description="Chromium CPU usage percentage")
    current_chromium_memory_mb: float = Field(title="Current Chromium Memory (MB)", description="Chromium physical memory usage in MB")
    total_memory_mb: float = Field(title="Total Memory (MB)", description="Total system memory in MB")
    available_memory_mb: float = Field(title="Available Memory (MB)", description="Available system memory in MB")

    queue_size: int = Field(title="Queue Size", description="Requests waiting for a free browser context")
    max_queue_size: int = Field(title="Max Queue Size", description="Largest queue observed")
    active_renders: int = Field(title="Active Renders", description="Browser contexts currently open")
    avg_queue_time_ms: float = Field(title="Avg Queue Time (ms)", description="Average time requests wait for a browser context")
    max_concurrent_renders: int = Field(title="Max Concurrent Renders", description="Configured limit of open browser contexts")


class HealthSchema(BaseModel):
    """Schema for detailed health status response"""

    status: str = Field(title="Status", description="Overall health status: healthy or unhealthy")
    version: str = Field(title="Version", description="Service version")
    chromium_running: bool = Field(title="Chromium Running", description="Whether a Chromium browser is currently launched")
    chromium_version: str | None = Field(title="Chromium Version", description="Chromium version if available")
    metrics: RenderMetricsSchema = Field(title="Metrics", description="Performance and health metrics")
