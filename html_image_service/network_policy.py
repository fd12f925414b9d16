"""Per-request decision whether an outgoing browser request may leave the sandbox."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING
from urllib.parse import urlparse

if TYPE_CHECKING:
    from collections.abc import Iterable

    from html_image_service.service_config import ServiceConfig


@dataclass(frozen=True)
class NetworkPolicy:
    block_external: bool = True
    allow_url: bool = False
    allowlist: tuple[str, ...] = field(default_factory=tuple)

    @classmethod
    def from_config(cls, config: ServiceConfig) -> NetworkPolicy:
        return cls(block_external=config.block_external, allow_url=config.allow_url, allowlist=config.allowlist_domains)


def hostname_of(url: str) -> str | None:
    try:
        return urlparse(url).hostname
    except ValueError:
        return None


def is_allowlisted(url: str, allowlist: Iterable[str]) -> bool:
    """
    Check the URL's hostname against allowlist entries.

    ``example.com`` matches only that host. ``*.example.com`` matches any
    subdomain such as ``cdn.example.com`` but not ``example.com`` itself.
    """
    host = hostname_of(url)
    if not host:
        return False
    host = host.lower()

    for pattern in allowlist:
        pattern = pattern.lower()
        if pattern.startswith("*."):
            if host.endswith(pattern[1:]):
                return True
        elif host == pattern:
            return True
    return False


def should_allow(url: str, policy: NetworkPolicy) -> bool:
    """Decide whether the browser may fetch ``url``."""
    if not policy.block_external:
        return True
    if url.startswith(("data:", "blob:")):
        return True
    return policy.allow_url and is_allowlisted(url, policy.allowlist)
