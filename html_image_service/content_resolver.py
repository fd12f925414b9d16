"""
Decide what a request asks the browser to load.

A request may carry a template, inline HTML or a URL. They are checked in
that order and the first non-empty one wins, so ``{"html": ..., "url": ...}``
renders the HTML.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Literal

from html_image_service.errors import NoContentSource, UrlNotAllowlisted, UrlRenderingDisabled
from html_image_service.network_policy import is_allowlisted
from html_image_service.sanitization import sanitize_url_for_logging

if TYPE_CHECKING:
    from html_image_service.network_policy import NetworkPolicy
    from html_image_service.template_provider import TemplateProvider

_HEAD_CLOSE = re.compile(r"</head\s*>", re.IGNORECASE)


@dataclass(frozen=True)
class HtmlContent:
    markup: str
    source: Literal["html", "template"] = "html"
    kind: Literal["html"] = "html"


@dataclass(frozen=True)
class UrlContent:
    target: str
    kind: Literal["url"] = "url"


ContentInstruction = HtmlContent | UrlContent


def inject_css(markup: str, css: str | None) -> str:
    """Insert ``<style>css</style>`` right before the first ``</head>``; no head, no change."""
    if not css:
        return markup
    match = _HEAD_CLOSE.search(markup)
    if match is None:
        return markup
    return f"{markup[: match.start()]}<style>{css}</style>{markup[match.start() :]}"


class ContentResolver:
    def __init__(self, templates: TemplateProvider, policy: NetworkPolicy, logger: logging.Logger | None = None) -> None:
        self.log = logger or logging.getLogger(__name__)
        self.templates = templates
        self.policy = policy

    def resolve(
        self,
        template_name: str | None = None,
        template_data: dict[str, Any] | None = None,
        html: str | None = None,
        url: str | None = None,
        css: str | None = None,
    ) -> ContentInstruction:
        """
        Pick the content source and turn it into a load instruction.

        Raises:
            TemplateRenderFailed: If the template cannot be rendered.
            UrlRenderingDisabled: If a URL was chosen but URL rendering is off.
            UrlNotAllowlisted: If the URL's host is not allowlisted.
            NoContentSource: If no source is present.
        """
        supplied = [name for name, value in (("templateName", template_name), ("html", html), ("url", url)) if value]
        if len(supplied) > 1:
            self.log.warning("Multiple content sources supplied (%s), using %s", ", ".join(supplied), supplied[0])

        if template_name:
            markup = self.templates.render(template_name, template_data)
            return HtmlContent(markup=inject_css(markup, css), source="template")

        if html:
            return HtmlContent(markup=inject_css(html, css), source="html")

        if url:
            if not self.policy.allow_url:
                raise UrlRenderingDisabled()
            if not is_allowlisted(url, self.policy.allowlist):
                self.log.warning("Rejected URL outside allowlist: %s", sanitize_url_for_logging(url))
                raise UrlNotAllowlisted()
            return UrlContent(target=url)

        raise NoContentSource()
