import logging
from pathlib import Path

import pytest

from html_image_service.service_config import (
    ServiceConfig,
    load_service_config,
    parse_allowlist,
    parse_body_size,
    validate_bool_setting,
    validate_float_setting,
    validate_int_setting,
)

CONFIG_ENV_VARS = [
    "DEFAULT_DPR",
    "MAX_WIDTH",
    "MAX_HEIGHT",
    "MAX_PIXELS",
    "BLOCK_EXTERNAL",
    "ALLOW_URL",
    "ALLOWLIST_DOMAINS",
    "MAX_BODY",
    "TEMPLATES_DIR",
    "PRESETS_PATH",
    "SERVICE_ENV",
    "RENDER_MAX_ATTEMPTS",
    "RENDER_RETRY_DELAY_MS",
    "METRICS_SERVER_ENABLED",
    "METRICS_PORT",
]


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for name in CONFIG_ENV_VARS:
        monkeypatch.delenv(name, raising=False)


def test_defaults(monkeypatch, tmp_path):
    monkeypatch.chdir(tmp_path)
    config = load_service_config()

    assert config == ServiceConfig(templates_dir=Path.cwd() / "templates", presets_path=Path.cwd() / "templates" / "presets" / "presets.json")
    assert config.default_dpr == 1.0
    assert (config.max_width, config.max_height, config.max_pixels) == (4000, 4000, 14_000_000)
    assert config.block_external is True
    assert config.allow_url is False
    assert config.allowlist_domains == ()
    assert config.max_body_bytes == 1024 * 1024
    assert config.development is False
    assert (config.render_max_attempts, config.render_retry_delay_ms) == (3, 500)
    assert (config.metrics_server_enabled, config.metrics_port) == (True, 9180)


def test_values_from_environment(monkeypatch):
    monkeypatch.setenv("DEFAULT_DPR", "2")
    monkeypatch.setenv("MAX_WIDTH", "2000")
    monkeypatch.setenv("MAX_HEIGHT", "3000")
    monkeypatch.setenv("MAX_PIXELS", "5000000")
    monkeypatch.setenv("BLOCK_EXTERNAL", "false")
    monkeypatch.setenv("ALLOW_URL", "true")
    monkeypatch.setenv("ALLOWLIST_DOMAINS", "Example.com, *.cdn.net,,")
    monkeypatch.setenv("MAX_BODY", "512kb")
    monkeypatch.setenv("TEMPLATES_DIR", "/srv/templates")
    monkeypatch.setenv("SERVICE_ENV", "Development")
    monkeypatch.setenv("RENDER_MAX_ATTEMPTS", "5")
    monkeypatch.setenv("RENDER_RETRY_DELAY_MS", "0")
    monkeypatch.setenv("METRICS_SERVER_ENABLED", "off")
    monkeypatch.setenv("METRICS_PORT", "9200")

    config = load_service_config()

    assert config.default_dpr == 2.0
    assert (config.max_width, config.max_height, config.max_pixels) == (2000, 3000, 5_000_000)
    assert config.block_external is False
    assert config.allow_url is True
    assert config.allowlist_domains == ("example.com", "*.cdn.net")
    assert config.max_body_bytes == 512 * 1024
    assert config.templates_dir == Path("/srv/templates")
    assert config.presets_path == Path("/srv/templates/presets/presets.json")
    assert config.development is True
    assert (config.render_max_attempts, config.render_retry_delay_ms) == (5, 0)
    assert (config.metrics_server_enabled, config.metrics_port) == (False, 9200)


def test_presets_path_override(monkeypatch):
    monkeypatch.setenv("TEMPLATES_DIR", "/srv/templates")
    monkeypatch.setenv("PRESETS_PATH", "/etc/presets.json")
    assert load_service_config().presets_path == Path("/etc/presets.json")


@pytest.mark.parametrize(
    ("env_var", "value", "attribute", "default"),
    [
        ("DEFAULT_DPR", "8", "default_dpr", 1.0),
        ("DEFAULT_DPR", "abc", "default_dpr", 1.0),
        ("MAX_WIDTH", "0", "max_width", 4000),
        ("MAX_HEIGHT", "20000", "max_height", 4000),
        ("MAX_PIXELS", "-1", "max_pixels", 14_000_000),
        ("RENDER_MAX_ATTEMPTS", "11", "render_max_attempts", 3),
        ("RENDER_RETRY_DELAY_MS", "soon", "render_retry_delay_ms", 500),
        ("MAX_BODY", "lots", "max_body_bytes", 1024 * 1024),
        ("METRICS_PORT", "80", "metrics_port", 9180),
        ("METRICS_PORT", "65536", "metrics_port", 9180),
        ("METRICS_PORT", "invalid", "metrics_port", 9180),
    ],
)
def test_invalid_values_fall_back_with_warning(monkeypatch, caplog, env_var, value, attribute, default):
    monkeypatch.setenv(env_var, value)
    with caplog.at_level(logging.WARNING):
        config = load_service_config()
    assert getattr(config, attribute) == default
    assert caplog.records, f"expected a warning for {env_var}={value}"


def test_config_is_immutable():
    config = ServiceConfig()
    with pytest.raises(AttributeError):
        config.max_width = 1  # type: ignore[misc]


@pytest.mark.parametrize(
    ("value", "expected"),
    [
        ("1024", 1024),
        ("100b", 100),
        ("1kb", 1024),
        ("1mb", 1024 * 1024),
        ("2MB", 2 * 1024 * 1024),
        ("1.5mb", int(1.5 * 1024 * 1024)),
        ("1gb", 1024**3),
        (" 10 kb ", 10 * 1024),
    ],
)
def test_parse_body_size(value, expected):
    assert parse_body_size(value) == expected


@pytest.mark.parametrize("value", ["", "mb", "1tb", "-1mb", "one mb"])
def test_parse_body_size_invalid(value):
    with pytest.raises(ValueError, match="Invalid size"):
        parse_body_size(value)


def test_parse_allowlist():
    assert parse_allowlist("") == ()
    assert parse_allowlist(" A.com ,*.B.com") == ("a.com", "*.b.com")


def test_validate_int_setting_explicit_value_wins(monkeypatch):
    monkeypatch.setenv("SOME_LIMIT", "50")
    assert validate_int_setting(7, "SOME_LIMIT", default=10, min_value=1, max_value=100) == 7


def test_validate_int_setting_reads_env(monkeypatch):
    monkeypatch.setenv("SOME_LIMIT", "50")
    assert validate_int_setting(None, "SOME_LIMIT", default=10, min_value=1, max_value=100) == 50


def test_validate_int_setting_out_of_range(caplog):
    with caplog.at_level(logging.WARNING):
        assert validate_int_setting(500, "SOME_LIMIT", default=10, min_value=1, max_value=100) == 10
    assert "SOME_LIMIT must be between 1 and 100, using default: 10" in caplog.text


def test_validate_float_setting_bounds_inclusive():
    assert validate_float_setting(0.5, "X", default=1.0, min_value=0.5, max_value=4.0) == 0.5
    assert validate_float_setting(4.0, "X", default=1.0, min_value=0.5, max_value=4.0) == 4.0


@pytest.mark.parametrize(("value", "expected"), [("true", True), ("1", True), ("YES", True), ("on", True), ("false", False), ("0", False), ("no", False)])
def test_validate_bool_setting_from_env(monkeypatch, value, expected):
    monkeypatch.setenv("FLAG", value)
    assert validate_bool_setting(None, "FLAG", default=not expected) is expected


def test_validate_bool_setting_empty_env_uses_default(monkeypatch):
    monkeypatch.setenv("FLAG", "  ")
    assert validate_bool_setting(None, "FLAG", default=True) is True
