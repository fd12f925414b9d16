"""Jinja2-backed templates that turn ``templateName`` + ``templateData`` into markup."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any

from jinja2 import Environment, FileSystemLoader, TemplateError, TemplateNotFound

from html_image_service.errors import TemplateRenderFailed

TEMPLATE_SUFFIX = ".html"


class TemplateProvider:
    """
    Loads templates from ``<templates_dir>/html/<name>.html``.

    Output is not HTML-escaped: templates are trusted and data frequently
    carries markup fragments. Compiled templates are cached unless
    ``cache_enabled`` is False, in which case every render re-reads the file.
    """

    def __init__(self, templates_dir: Path, cache_enabled: bool = True, logger: logging.Logger | None = None) -> None:
        self.log = logger or logging.getLogger(__name__)
        self.html_dir = templates_dir / "html"
        self._env = Environment(
            loader=FileSystemLoader(str(self.html_dir)),
            autoescape=False,
            cache_size=400 if cache_enabled else 0,
            auto_reload=not cache_enabled,
        )

    def render(self, name: str, data: dict[str, Any] | None = None) -> str:
        """
        Render a template to markup.

        Raises:
            TemplateRenderFailed: If the template does not exist or fails to compile or render.
        """
        try:
            template = self._env.get_template(f"{name}{TEMPLATE_SUFFIX}")
            markup = template.render(**(data or {}))
        except TemplateNotFound as e:
            self.log.warning("Template not found: %s", name)
            raise TemplateRenderFailed(f"Template not found: {name}") from e
        except TemplateError as e:
            self.log.warning("Template %s failed to render: %s", name, e)
            raise TemplateRenderFailed(f"Template {name} failed to render: {e}") from e

        self.log.debug("Rendered template %s (%d characters)", name, len(markup))
        return markup

    def list_templates(self) -> list[str]:
        """Names of all available templates, without suffix."""
        return sorted(
            name.removesuffix(TEMPLATE_SUFFIX)
            for name in self._env.list_templates()
            if name.endswith(TEMPLATE_SUFFIX)
        )
