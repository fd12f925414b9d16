"""Helpers that make request-derived values safe to write into log files."""

import re
from urllib.parse import urlparse

_CONTROL_CHARS = re.compile(r"[\x00-\x1f\x7f-\x9f]")


def sanitize_for_logging(text: object, max_length: int = 200) -> str:
    """
    Flatten a value into a single log-safe line.

    Newlines become spaces, remaining control characters are dropped and the
    result is truncated to ``max_length`` characters with a ``...[truncated]``
    marker.
    """
    if not isinstance(text, str):
        text = str(text)

    text = text.replace("\n", " ").replace("\r", " ")
    text = _CONTROL_CHARS.sub("", text)

    if len(text) > max_length:
        text = text[:max_length] + "...[truncated]"

    return text


def sanitize_url_for_logging(url: str | None) -> str:
    """
    Reduce a URL to scheme, host, port and path.

    Credentials, query strings and fragments are removed. ``data:`` and
    ``blob:`` URLs are collapsed to their scheme since their payload may be
    megabytes of inline content.
    """
    if url is None:
        return "None"

    lowered = url[:5].lower()
    if lowered.startswith("data:") or lowered.startswith("blob:"):
        return lowered

    try:
        parsed = urlparse(url)
        safe_url = f"{parsed.scheme}://{parsed.hostname or ''}"
        if parsed.port:
            safe_url += f":{parsed.port}"
        safe_url += parsed.path or "/"
        return sanitize_for_logging(safe_url)
    except ValueError:
        return "[invalid URL]"
