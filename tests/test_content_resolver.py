import logging
from unittest.mock import MagicMock

import pytest

from html_image_service.content_resolver import ContentResolver, HtmlContent, UrlContent, inject_css
from html_image_service.errors import NoContentSource, TemplateRenderFailed, UrlNotAllowlisted, UrlRenderingDisabled
from html_image_service.network_policy import NetworkPolicy

URL_POLICY = NetworkPolicy(block_external=True, allow_url=True, allowlist=("example.com", "*.cdn.net"))


@pytest.fixture
def resolver(template_provider):
    return ContentResolver(template_provider, URL_POLICY)


def test_inject_css_before_head_close():
    markup = "<html><head><title>x</title></head><body></body></html>"
    assert inject_css(markup, "h1{color:red}") == "<html><head><title>x</title><style>h1{color:red}</style></head><body></body></html>"


def test_inject_css_is_case_insensitive_and_uses_first_match():
    markup = "<HEAD></HEAD ><p>&lt;/head&gt;</p></head>"
    assert inject_css(markup, "p{}") == "<HEAD><style>p{}</style></HEAD ><p>&lt;/head&gt;</p></head>"


def test_inject_css_without_head_leaves_markup_untouched():
    assert inject_css("<h1>Hello</h1>", "h1{}") == "<h1>Hello</h1>"


def test_inject_css_without_css():
    assert inject_css("<head></head>", None) == "<head></head>"
    assert inject_css("<head></head>", "") == "<head></head>"


def test_html_source(resolver):
    content = resolver.resolve(html="<head></head><p>hi</p>", css="p{margin:0}")
    assert content == HtmlContent(markup="<head><style>p{margin:0}</style></head><p>hi</p>", source="html")


def test_template_source_gets_data_and_css(resolver):
    content = resolver.resolve(template_name="card", template_data={"title": "Launch", "mainTitleSize": "64px"}, css="h1{}")
    assert isinstance(content, HtmlContent)
    assert content.source == "template"
    assert "<title>Launch</title><style>h1{}</style></head>" in content.markup
    assert "font-size: 64px" in content.markup


def test_template_wins_over_html_and_url(resolver, caplog):
    with caplog.at_level(logging.WARNING):
        content = resolver.resolve(template_name="card", template_data={"title": "T"}, html="<p>ignored</p>", url="https://example.com/")
    assert content.source == "template"
    assert "Multiple content sources supplied (templateName, html, url), using templateName" in caplog.text


def test_html_wins_over_url(resolver):
    content = resolver.resolve(html="<p>x</p>", url="https://example.com/")
    assert content == HtmlContent(markup="<p>x</p>", source="html")


def test_empty_strings_do_not_count_as_sources(resolver):
    content = resolver.resolve(template_name="", html="", url="https://example.com/")
    assert content == UrlContent(target="https://example.com/")


def test_missing_template(resolver):
    with pytest.raises(TemplateRenderFailed, match="Template not found: nope"):
        resolver.resolve(template_name="nope")


def test_url_allowlisted(resolver):
    assert resolver.resolve(url="https://img.cdn.net/a") == UrlContent(target="https://img.cdn.net/a")


def test_url_not_allowlisted(resolver, caplog):
    with caplog.at_level(logging.WARNING), pytest.raises(UrlNotAllowlisted, match="URL not in allowlist"):
        resolver.resolve(url="https://evil.org/?token=secret")
    assert "https://evil.org/" in caplog.text
    assert "secret" not in caplog.text


def test_url_rendering_disabled_checked_before_allowlist(template_provider):
    resolver = ContentResolver(template_provider, NetworkPolicy(allow_url=False, allowlist=("example.com",)))
    with pytest.raises(UrlRenderingDisabled, match="URL rendering disabled by server configuration"):
        resolver.resolve(url="https://example.com/")


def test_no_source(resolver):
    with pytest.raises(NoContentSource, match=r"Provide one of: html \| templateName \| url"):
        resolver.resolve()


def test_template_provider_not_called_for_html():
    templates = MagicMock()
    ContentResolver(templates, URL_POLICY).resolve(html="<p></p>")
    templates.render.assert_not_called()
