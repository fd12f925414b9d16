"""Pytest configuration and fixtures for html-image-service tests."""

import os
from contextlib import asynccontextmanager
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

# The lifespan would otherwise bind the metrics port in every TestClient session
os.environ.setdefault("METRICS_SERVER_ENABLED", "false")

from html_image_service.chromium_manager import ChromiumManager, RenderMetrics  # noqa: E402
from html_image_service.presets import PresetTable, load_presets  # noqa: E402
from html_image_service.render_service import RenderService  # noqa: E402
from html_image_service.service_config import ServiceConfig  # noqa: E402
from html_image_service.template_provider import TemplateProvider  # noqa: E402

REPO_TEMPLATES_DIR = Path(__file__).resolve().parent.parent / "templates"


def pytest_addoption(parser: pytest.Parser) -> None:
    """Add custom command-line options to pytest."""
    parser.addoption(
        "--save-test-outputs",
        action="store_true",
        default=False,
        help="Save rendered images to disk for manual inspection",
    )


@pytest.fixture
def save_test_outputs(request: pytest.FixtureRequest) -> bool:
    """Fixture to check if test outputs should be saved to disk."""
    return request.config.getoption("--save-test-outputs")


@pytest.fixture
def templates_dir(tmp_path: Path) -> Path:
    """A throwaway templates directory with one card template."""
    html_dir = tmp_path / "html"
    html_dir.mkdir()
    (html_dir / "card.html").write_text(
        "<html><head><title>{{ title }}</title></head><body><h1 style=\"font-size: {{ mainTitleSize }}\">{{ title }}</h1></body></html>",
        encoding="utf-8",
    )
    return tmp_path


@pytest.fixture
def template_provider(templates_dir: Path) -> TemplateProvider:
    return TemplateProvider(templates_dir)


@pytest.fixture
def presets() -> PresetTable:
    return PresetTable(
        sizes={"twitter_card": {"width": 1200, "height": 630}, "square": {"width": 1080, "height": 1080}},
        clips={"top_half": {"x": 0, "y": 0, "width": 1200, "height": 315}},
        font_sizes={"large": {"mainTitle": "72px"}},
    )


@pytest.fixture
def repo_presets() -> PresetTable:
    return load_presets(REPO_TEMPLATES_DIR / "presets" / "presets.json")


@pytest.fixture
def config(templates_dir: Path) -> ServiceConfig:
    return ServiceConfig(
        templates_dir=templates_dir,
        presets_path=templates_dir / "presets" / "presets.json",
        render_retry_delay_ms=0,
        metrics_server_enabled=False,
    )


@pytest.fixture
def mock_page() -> MagicMock:
    """A Playwright Page double whose screenshot returns a PNG signature."""
    page = MagicMock()
    page.set_viewport_size = AsyncMock()
    page.emulate_media = AsyncMock()
    page.set_default_timeout = MagicMock()
    page.set_content = AsyncMock()
    page.goto = AsyncMock()
    page.wait_for_timeout = AsyncMock()
    page.wait_for_selector = AsyncMock()
    page.evaluate = AsyncMock()
    page.screenshot = AsyncMock(return_value=b"\x89PNG\r\n\x1a\nfake")
    page.close = AsyncMock()
    return page


@pytest.fixture
def mock_context(mock_page: MagicMock) -> MagicMock:
    context = MagicMock()
    context.route = AsyncMock()
    context.new_page = AsyncMock(return_value=mock_page)
    context.close = AsyncMock()
    return context


@pytest.fixture
def mock_browser(mock_context: MagicMock) -> MagicMock:
    browser = MagicMock()
    browser.is_connected.return_value = True
    browser.new_context = AsyncMock(return_value=mock_context)
    browser.close = AsyncMock()
    browser.version = "131.0.6778.69"
    return browser


@pytest.fixture
def mock_playwright(mock_browser: MagicMock) -> MagicMock:
    """Object returned by ``async_playwright().start()``."""
    playwright = MagicMock()
    playwright.chromium.launch = AsyncMock(return_value=mock_browser)
    playwright.stop = AsyncMock()
    return playwright


class FakeChromiumManager:
    """Stands in for ChromiumManager, recording acquisitions and context lifetimes."""

    def __init__(self, render_timeout: float = 120) -> None:
        self.metrics = RenderMetrics()
        self.render_timeout = render_timeout
        self.browsers = [MagicMock(name=f"browser-{i}") for i in range(10)]
        self.acquire_engine = AsyncMock(side_effect=self.browsers)
        self.invalidate = AsyncMock()
        # Browsers report disconnected so EngineClosed takes the retry path
        self.is_connected = MagicMock(return_value=False)
        self.opened: list[tuple] = []
        self.closed = 0

    @asynccontextmanager
    async def open_context(self, browser, device_scale_factor, network_policy):
        self.opened.append((browser, device_scale_factor, network_policy))
        try:
            yield MagicMock(name="page")
        finally:
            self.closed += 1


@pytest.fixture
def fake_chromium_manager() -> FakeChromiumManager:
    return FakeChromiumManager()


@pytest.fixture
def fake_pipeline() -> MagicMock:
    """A RenderPipeline double returning fixed image bytes."""
    pipeline = MagicMock()
    pipeline.run = AsyncMock(return_value=b"image-bytes")
    return pipeline


@pytest.fixture
def render_service(fake_chromium_manager, config, presets, template_provider, fake_pipeline) -> RenderService:
    return RenderService(fake_chromium_manager, config, presets, template_provider, pipeline=fake_pipeline)


@pytest.fixture
def patched_playwright(mock_playwright):
    """Patch async_playwright so ``async_playwright().start()`` returns ``mock_playwright``."""
    with (
        patch("html_image_service.chromium_manager.async_playwright") as async_playwright,
        patch.object(ChromiumManager, "_find_browser_process", return_value=None),
    ):
        async_playwright.return_value.start = AsyncMock(return_value=mock_playwright)
        yield mock_playwright
