"""link_audit.utils: URL helpers shared by the extractor, checker and orchestrator."""

from __future__ import annotations

from typing import Optional, Sequence
from urllib.parse import urldefrag, urlsplit, urlunsplit

from link_audit.config import ScanConfig

__all__: Sequence[str] = (
    "HTTP_SCHEMES",
    "normalize_url",
    "is_http_url",
    "hostname",
    "is_subdomain",
    "is_in_scope",
)

HTTP_SCHEMES = frozenset(("http", "https"))
_DEFAULT_PORTS = {"http": 80, "https": 443}


def normalize_url(url: str) -> str:
    """Identity form of *url*: lower-case scheme and host, no default port,
    ``/`` for an empty path, fragment removed. Path and query are kept verbatim.

    Raises :class:`ValueError` for URLs without a scheme or host.
    """
    url, _ = urldefrag(url.strip())
    parts = urlsplit(url)
    scheme = parts.scheme.lower()
    host = parts.hostname
    if not scheme or not host:
        raise ValueError(f"not an absolute URL: {url!r}")
    port = parts.port
    netloc = host
    if ":" in host:
        netloc = f"[{host}]"
    if port is not None and port != _DEFAULT_PORTS.get(scheme):
        netloc = f"{netloc}:{port}"
    if parts.username:
        userinfo = parts.username + (f":{parts.password}" if parts.password else "")
        netloc = f"{userinfo}@{netloc}"
    path = parts.path or "/"
    return urlunsplit((scheme, netloc, path, parts.query, ""))


def is_http_url(url: str) -> bool:
    return urlsplit(url).scheme.lower() in HTTP_SCHEMES


def hostname(url: str) -> Optional[str]:
    """Lower-cased host of *url* or ``None`` when it cannot be parsed."""
    try:
        return urlsplit(url).hostname
    except ValueError:
        return None


def is_subdomain(host: str, parent: str) -> bool:
    """``blog.example.test`` is a subdomain of ``example.test``; a host is not its own subdomain."""
    return host != parent and host.endswith("." + parent)


def is_in_scope(url: str, seed_host: str, config: ScanConfig) -> bool:
    """Whether *url* belongs to the scanned site and may be expanded.

    A different host is out of scope when ``skip_external_domains`` is set;
    a subdomain of the seed host is out of scope when ``exclude_subdomains``
    is set, otherwise it counts as part of the site.
    """
    host = hostname(url)
    if host is None:
        return False
    if host == seed_host:
        return True
    if is_subdomain(host, seed_host):
        return not config.exclude_subdomains
    return not config.skip_external_domains
