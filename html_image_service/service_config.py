"""
Environment-sourced configuration for the rendering service.

The configuration is read once at startup into an immutable ``ServiceConfig``.
Values that cannot be parsed or fall outside their valid range are replaced by
their defaults and a warning is logged, so a typo in a deployment never stops
the service from starting.
"""

from __future__ import annotations

import logging
import os
import re
from dataclasses import dataclass, field
from pathlib import Path

logger = logging.getLogger(__name__)

DEFAULT_WIDTH = 1200
DEFAULT_HEIGHT = 630
DEFAULT_TIMEOUT_MS = 15000
DEFAULT_QUALITY = 90

_SIZE_UNITS = {"b": 1, "kb": 1024, "mb": 1024**2, "gb": 1024**3}
_SIZE_PATTERN = re.compile(r"^\s*(\d+(?:\.\d+)?)\s*([kmg]?b)?\s*$", re.IGNORECASE)


@dataclass(frozen=True)
class ServiceConfig:
    """
    Immutable service settings.

    Attributes:
        default_dpr: Device pixel ratio used when a request does not set ``dpr`` (0.5-4.0).
        max_width: Upper bound for the viewport width in CSS pixels.
        max_height: Upper bound for the viewport height in CSS pixels.
        max_pixels: Upper bound for ``width * height`` after clamping.
        block_external: Abort outgoing requests other than data/blob and allowlisted hosts.
        allow_url: Enable rendering of remote URLs.
        allowlist_domains: Hostnames (``*.domain`` wildcards allowed) permitted for URL rendering.
        max_body_bytes: Maximum accepted request body size.
        templates_dir: Directory containing ``html/<name>.html`` templates.
        presets_path: JSON file with size, clip and font size presets.
        development: Disable template caching for hot reloading.
        render_max_attempts: Total attempts when the engine process dies mid-render.
        render_retry_delay_ms: Pause between attempts so a relaunch can settle.
        metrics_server_enabled: Serve /metrics on a separate port from the API.
        metrics_port: Port of the metrics server (1024-65535).
    """

    default_dpr: float = 1.0
    max_width: int = 4000
    max_height: int = 4000
    max_pixels: int = 14_000_000
    block_external: bool = True
    allow_url: bool = False
    allowlist_domains: tuple[str, ...] = field(default_factory=tuple)
    max_body_bytes: int = 1024 * 1024
    templates_dir: Path = field(default_factory=lambda: Path.cwd() / "templates")
    presets_path: Path = field(default_factory=lambda: Path.cwd() / "templates" / "presets" / "presets.json")
    development: bool = False
    render_max_attempts: int = 3
    render_retry_delay_ms: int = 500
    metrics_server_enabled: bool = True
    metrics_port: int = 9180


def load_service_config() -> ServiceConfig:
    """Build a ``ServiceConfig`` from the process environment."""
    templates_dir = Path(os.environ.get("TEMPLATES_DIR") or Path.cwd() / "templates")
    presets_path = Path(os.environ.get("PRESETS_PATH") or templates_dir / "presets" / "presets.json")

    config = ServiceConfig(
        default_dpr=validate_float_setting(None, "DEFAULT_DPR", default=1.0, min_value=0.5, max_value=4.0),
        max_width=validate_int_setting(None, "MAX_WIDTH", default=4000, min_value=1, max_value=10000),
        max_height=validate_int_setting(None, "MAX_HEIGHT", default=4000, min_value=1, max_value=10000),
        max_pixels=validate_int_setting(None, "MAX_PIXELS", default=14_000_000, min_value=1, max_value=100_000_000),
        block_external=validate_bool_setting(None, "BLOCK_EXTERNAL", default=True),
        allow_url=validate_bool_setting(None, "ALLOW_URL", default=False),
        allowlist_domains=parse_allowlist(os.environ.get("ALLOWLIST_DOMAINS", "")),
        max_body_bytes=_body_size_from_env("MAX_BODY", default="1mb"),
        templates_dir=templates_dir,
        presets_path=presets_path,
        development=os.environ.get("SERVICE_ENV", "production").lower() == "development",
        render_max_attempts=validate_int_setting(None, "RENDER_MAX_ATTEMPTS", default=3, min_value=1, max_value=10),
        render_retry_delay_ms=validate_int_setting(None, "RENDER_RETRY_DELAY_MS", default=500, min_value=0, max_value=10000),
        metrics_server_enabled=validate_bool_setting(None, "METRICS_SERVER_ENABLED", default=True),
        metrics_port=validate_int_setting(None, "METRICS_PORT", default=9180, min_value=1024, max_value=65535),
    )
    logger.info(
        "Service configuration loaded: max=%dx%d (%d px), default_dpr=%s, block_external=%s, allow_url=%s, allowlist=%d entries",
        config.max_width,
        config.max_height,
        config.max_pixels,
        config.default_dpr,
        config.block_external,
        config.allow_url,
        len(config.allowlist_domains),
    )
    return config


def parse_allowlist(value: str) -> tuple[str, ...]:
    """Split a comma-separated hostname list, dropping blanks."""
    return tuple(entry.strip().lower() for entry in value.split(",") if entry.strip())


def parse_body_size(value: str) -> int:
    """
    Parse a human-readable size such as ``1mb`` or ``512kb`` into bytes.

    A bare number is taken as bytes. Units are binary (1kb = 1024 bytes).

    Raises:
        ValueError: If the value is not a recognised size string.
    """
    match = _SIZE_PATTERN.match(value)
    if match is None:
        raise ValueError(f"Invalid size: {value!r}")
    number, unit = match.groups()
    return int(float(number) * _SIZE_UNITS[(unit or "b").lower()])


def validate_int_setting(value: int | None, env_var: str, default: int, min_value: int, max_value: int) -> int:
    """
    Validate an integer setting.

    Args:
        value: Explicit value, or None to read ``env_var`` from the environment.
        env_var: Environment variable name, also used in warnings.
        default: Value used when the input is missing, unparsable or out of range.
        min_value: Minimum valid value (inclusive).
        max_value: Maximum valid value (inclusive).
    """
    value = _parse_int(os.environ.get(env_var), default) if value is None else _parse_int(str(value), default)
    if not (min_value <= value <= max_value):
        logger.warning("%s must be between %s and %s, using default: %s", env_var, min_value, max_value, default)
        return default
    return value


def validate_float_setting(value: float | None, env_var: str, default: float, min_value: float, max_value: float) -> float:
    """Float counterpart of :func:`validate_int_setting`."""
    value = _parse_float(os.environ.get(env_var), default) if value is None else _parse_float(str(value), default)
    if not (min_value <= value <= max_value):
        logger.warning("%s must be between %s and %s, using default: %s", env_var, min_value, max_value, default)
        return default
    return value


def validate_bool_setting(value: bool | None, env_var: str, default: bool) -> bool:
    if value is not None:
        return bool(value)

    env_value = os.environ.get(env_var)
    if env_value is None or not env_value.strip():
        return default
    return env_value.strip().lower() in ("true", "1", "yes", "on")


def _body_size_from_env(env_var: str, default: str) -> int:
    raw = os.environ.get(env_var, default)
    try:
        return parse_body_size(raw)
    except ValueError:
        logger.warning("Invalid %s value '%s', using default: %s", env_var, raw, default)
        return parse_body_size(default)


def _parse_float(value: str | None, default: float) -> float:
    """Parse a string to float with a default fallback."""
    try:
        return float(value) if value is not None else default
    except (ValueError, TypeError):
        logger.warning("Could not parse '%s' as a number, using default: %s", value, default)
        return default


def _parse_int(value: str | None, default: int) -> int:
    """Parse a string to int with a default fallback."""
    try:
        return int(value) if value is not None else default
    except (ValueError, TypeError):
        logger.warning("Could not parse '%s' as an integer, using default: %s", value, default)
        return default
