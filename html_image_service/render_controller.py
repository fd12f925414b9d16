import contextlib
import json
import logging
import os
import platform
from collections.abc import AsyncGenerator
from importlib.metadata import PackageNotFoundError
from importlib.metadata import version as package_version
from typing import Annotated, Any

from fastapi import Depends, FastAPI, Query, Request, Response, status
from fastapi.responses import HTMLResponse, JSONResponse
from pydantic import ValidationError

from html_image_service.chromium_manager import ChromiumManager, get_chromium_manager
from html_image_service.errors import RenderServiceError
from html_image_service.metrics_server import MetricsServer
from html_image_service.render_service import RenderService, get_render_service
from html_image_service.schemas import ErrorSchema, HealthSchema, HealthzSchema, RenderHtmlRequest, RenderMetricsSchema, RenderRequest, VersionSchema


logger = logging.getLogger(__name__)


async def _stop_chromium() -> None:
    try:
        logger.info("Stopping Chromium browser...")
        await get_chromium_manager().stop()
    except Exception as e:  # noqa: BLE001
        logger.error("Error stopping Chromium browser: %s", e)


@contextlib.asynccontextmanager
async def lifespan(app_instance: FastAPI) -> AsyncGenerator[None]:
    """
    Build the render service before the first request and run the metrics server beside the API.

    Configuration, presets and templates are loaded here so misconfiguration is
    reported at startup. Chromium is launched lazily by the first render and
    closed on shutdown.
    """
    provider = app_instance.dependency_overrides.get(get_render_service, get_render_service)
    config = provider().config

    async with contextlib.AsyncExitStack() as stack:
        stack.push_async_callback(_stop_chromium)
        if config.metrics_server_enabled:
            try:
                await stack.enter_async_context(MetricsServer(port=config.metrics_port))
            except (TimeoutError, OSError) as e:
                logger.error("Metrics server not available: %s", e)

        yield  # Application runs here


app = FastAPI(
    title="HTML Image Service API",
    version="1.0.0",
    openapi_url="/api-docs/openapi.json",
    docs_url="/api-docs",
    openapi_version="3.1.0",
    lifespan=lifespan,
)

ERROR_RESPONSE = {"model": ErrorSchema, "description": "Invalid payload or render failure"}


def error_response(message: str, status_code: int = status.HTTP_400_BAD_REQUEST, details: list[dict[str, Any]] | None = None) -> JSONResponse:
    return JSONResponse(
        ErrorSchema(error=message, details=details).model_dump(exclude_none=True),
        status_code=status_code,
    )


def validation_details(e: ValidationError) -> list[dict[str, Any]]:
    # Round-trip through JSON so non-serializable error context (e.g. exceptions) is stringified
    return json.loads(e.json(include_url=False))


async def read_body(request: Request, max_body_bytes: int) -> bytes | None:
    """
    Return the request body, or None if it is larger than ``max_body_bytes``.

    Chunked uploads carry no Content-Length, so the stream is read piecewise
    and abandoned as soon as the running total passes the limit.
    """
    content_length = request.headers.get("content-length")
    if content_length and content_length.isdigit() and int(content_length) > max_body_bytes:
        return None

    body = bytearray()
    async for chunk in request.stream():
        body.extend(chunk)
        if len(body) > max_body_bytes:
            return None
    return bytes(body)


@app.post(
    "/render",
    responses={
        200: {
            "content": {"image/png": {}, "image/jpeg": {}, "image/webp": {}},
            "description": "Rendered image",
        },
        400: ERROR_RESPONSE,
        413: {"model": ErrorSchema, "description": "Request body too large"},
    },
    summary="Render HTML, a template or a URL to an image",
    description="Accepts a JSON RenderRequest and returns the screenshot as PNG, JPEG or WebP.",
    operation_id="render_post",
    tags=["render"],
    openapi_extra={"requestBody": {"required": True, "content": {"application/json": {"schema": RenderRequest.model_json_schema()}}}},
)
async def render(
    request: Request,
    render_service: Annotated[RenderService, Depends(get_render_service)],
) -> Response:
    logger.info("Image render requested")
    raw = await read_body(request, render_service.config.max_body_bytes)
    if raw is None:
        logger.warning("Rejected request body larger than %d bytes", render_service.config.max_body_bytes)
        return error_response("Request body too large", status.HTTP_413_REQUEST_ENTITY_TOO_LARGE)

    try:
        render_request = RenderRequest.model_validate_json(raw)
    except ValidationError as e:
        logger.warning("Invalid render payload: %d error(s)", e.error_count())
        return error_response("Invalid payload", details=validation_details(e))

    try:
        result = await render_service.render(render_request)
    except RenderServiceError as e:
        return error_response(e.message)
    except Exception as e:
        logger.error("Unexpected error in image render: %s", str(e), exc_info=True)
        return error_response("Render failed")

    return Response(result.image, media_type=result.media_type, headers={"Cache-Control": "no-store"})


@app.get(
    "/presets",
    summary="Preset table",
    description="Returns the size, clip and font size presets loaded at startup.",
    operation_id="getPresets",
    tags=["render"],
)
async def presets(render_service: Annotated[RenderService, Depends(get_render_service)]) -> dict[str, Any]:
    return render_service.presets.as_dict()


@app.post(
    "/render-html",
    response_class=HTMLResponse,
    responses={400: ERROR_RESPONSE},
    summary="Render a template to HTML",
    description="Renders a template with the given data and returns the HTML without taking a screenshot. Useful for template development.",
    operation_id="render_html_post",
    tags=["render"],
    openapi_extra={"requestBody": {"required": True, "content": {"application/json": {"schema": RenderHtmlRequest.model_json_schema()}}}},
)
async def render_html(
    request: Request,
    render_service: Annotated[RenderService, Depends(get_render_service)],
) -> Response:
    raw = await read_body(request, render_service.config.max_body_bytes)
    if raw is None:
        return error_response("Request body too large", status.HTTP_413_REQUEST_ENTITY_TOO_LARGE)

    try:
        html_request = RenderHtmlRequest.model_validate_json(raw)
    except ValidationError as e:
        return error_response("Invalid payload", details=validation_details(e))

    if not html_request.templateName:
        return error_response("Template name is required")

    try:
        html = render_service.render_template_html(html_request.templateName, html_request.templateData)
    except RenderServiceError as e:
        logger.warning("Template preview failed: %s", e.message)
        return error_response(e.message)

    return HTMLResponse(html)


@app.get(
    "/healthz",
    response_model=HealthzSchema,
    summary="Liveness probe",
    description="Always returns {\"ok\": true} while the process is serving requests. Does not touch the browser.",
    operation_id="getHealthz",
    tags=["meta"],
)
async def healthz() -> dict[str, bool]:
    return {"ok": True}


@app.get(
    "/health",
    summary="Health check",
    description="Returns health status with optional detailed metrics. Use ?detailed=true for JSON response with metrics.",
    operation_id="getHealth",
    tags=["meta"],
    response_model=None,
    responses={
        200: {
            "content": {
                "text/plain": {"example": "OK"},
                "application/json": {"schema": HealthSchema.model_json_schema()},
            },
            "description": "Service is healthy",
        },
        503: {
            "content": {
                "text/plain": {"example": "Service Unavailable"},
                "application/json": {"schema": HealthSchema.model_json_schema()},
            },
            "description": "Service is unhealthy",
        },
    },
)
async def health(
    chromium_manager: Annotated[ChromiumManager, Depends(get_chromium_manager)],
    detailed: bool = Query(False, description="Return detailed JSON response with metrics"),
) -> Response:
    """
    Health check endpoint that verifies the Chromium browser status.

    Args:
        detailed: If True, returns detailed JSON response with metrics. If False, returns simple text response.

    Returns:
        - Simple mode: 200 with "OK" text or 503 with "Service Unavailable" text
        - Detailed mode: 200/503 with JSON containing status, metrics, and browser info

    Note: The browser is launched on the first render, so a service that has not
    rendered anything yet reports healthy.
    """
    chromium_healthy = chromium_manager.health_check()
    status_code = status.HTTP_200_OK if chromium_healthy else status.HTTP_503_SERVICE_UNAVAILABLE

    if detailed:
        health_response = HealthSchema(
            status="healthy" if chromium_healthy else "unhealthy",
            version=os.environ.get("HTML_IMAGE_SERVICE_VERSION", "unknown"),
            chromium_running=chromium_manager.is_running(),
            chromium_version=chromium_manager.get_version(),
            metrics=RenderMetricsSchema(**chromium_manager.get_metrics()),  # type: ignore[arg-type]
        )
        return Response(content=health_response.model_dump_json(), media_type="application/json", status_code=status_code)

    if chromium_healthy:
        return Response("OK", media_type="text/plain", status_code=status_code)
    return Response("Service Unavailable", media_type="text/plain", status_code=status_code)


@app.get(
    "/version",
    response_model=VersionSchema,
    summary="Service version information",
    description="Returns versions of Python, Playwright, the service itself, build timestamp, and Chromium.",
    operation_id="getVersion",
    tags=["meta"],
)
async def version(chromium_manager: Annotated[ChromiumManager, Depends(get_chromium_manager)]) -> dict[str, str | None]:
    logger.info("Version endpoint called")
    version_info = {
        "python": platform.python_version(),
        "playwright": _playwright_version(),
        "htmlImageService": os.environ.get("HTML_IMAGE_SERVICE_VERSION"),
        "timestamp": os.environ.get("HTML_IMAGE_SERVICE_BUILD_TIMESTAMP"),
        "chromium": chromium_manager.get_version(),
    }
    logger.debug("Version info: %s", version_info)
    return version_info


def _playwright_version() -> str | None:
    try:
        return package_version("playwright")
    except PackageNotFoundError:
        return None
