# link_audit/crawler/link_extractor.py
"""
Link extraction for LinkAudit: every ``href``/``src`` of a document,
resolved against the document's base URL.
"""
from __future__ import annotations

from typing import Iterator, List, Optional, Union
from urllib.parse import urljoin, urlsplit

from bs4 import BeautifulSoup
from bs4.element import Tag

from link_audit.crawler.models import ExtractedLink
from link_audit.logger import get_logger
from link_audit.utils import HTTP_SCHEMES, normalize_url

log = get_logger("extractor")

#: tag name -> attribute holding a link
LINK_ATTRIBUTES = {
    "a": "href",
    "area": "href",
    "link": "href",
    "img": "src",
    "script": "src",
    "iframe": "src",
    "frame": "src",
    "source": "src",
    "embed": "src",
    "audio": "src",
    "video": "src",
    "track": "src",
}

_HTML_TYPES = ("text/html", "application/xhtml+xml")

#: longest element markup kept as the context of a link
CONTEXT_CHARS = 200


def is_html_content(content_type: Optional[str]) -> bool:
    if not content_type:
        return False
    mime = content_type.split(";", 1)[0].strip().lower()
    return mime in _HTML_TYPES


def extract_links(
    html: Union[str, bytes],
    base_url: str,
    content_type: Optional[str] = "text/html",
) -> List[ExtractedLink]:
    """
    Extract every link of the document at *base_url*.

    Relative, protocol-relative and fragment-only references are resolved
    with standard URL rules (honouring ``<base href>``). Links with a
    non-HTTP scheme (``mailto:``, ``tel:``, ``javascript:`` ...) are returned
    with ``url=None`` so the caller can mark them skipped without a request.

    Unsupported content types and undecodable documents yield no links.
    """
    if not is_html_content(content_type):
        log.debug("Not extracting links from %s (content type %r)", base_url, content_type)
        return []
    try:
        soup = BeautifulSoup(html, "html.parser")
    except (UnicodeError, ValueError, TypeError) as exc:
        log.warning("Could not parse %s: %s", base_url, exc)
        return []
    return list(_iter_links(soup, _document_base(soup, base_url)))


def _document_base(soup: BeautifulSoup, base_url: str) -> str:
    base = soup.find("base", href=True)
    if isinstance(base, Tag):
        href = base.get("href")
        if isinstance(href, str) and href.strip():
            return urljoin(base_url, href.strip())
    return base_url


def _iter_links(soup: BeautifulSoup, base_url: str) -> Iterator[ExtractedLink]:
    for tag in soup.find_all(list(LINK_ATTRIBUTES)):
        if not isinstance(tag, Tag):
            continue
        attr = LINK_ATTRIBUTES[tag.name]
        value = tag.get(attr)
        if not isinstance(value, str):
            continue
        raw = value.strip()
        if not raw:
            continue
        link = resolve_link(raw, base_url)
        if link is None:
            continue
        link.element = tag
        link.attribute = attr
        link.context = anchor_context(tag)
        yield link


def anchor_context(tag: Tag, limit: int = CONTEXT_CHARS) -> str:
    """Markup of *tag* on one line, cut to *limit* characters."""
    text = " ".join(str(tag).split())
    if len(text) > limit:
        text = text[: limit - 3].rstrip() + "..."
    return text


def resolve_link(raw: str, base_url: str) -> Optional[ExtractedLink]:
    """Resolve one reference. ``None`` when it cannot be turned into a URL at all."""
    try:
        absolute = urljoin(base_url, raw)
        scheme = urlsplit(absolute).scheme.lower()
    except ValueError:
        log.debug("Unparsable link %r on %s", raw, base_url)
        return None
    if scheme not in HTTP_SCHEMES:
        return ExtractedLink(url=None, display_url=raw)
    try:
        identity = normalize_url(absolute)
    except ValueError:
        log.debug("Unparsable link %r on %s", raw, base_url)
        return None
    return ExtractedLink(url=identity, display_url=absolute)


__all__ = [
    "CONTEXT_CHARS",
    "LINK_ATTRIBUTES",
    "anchor_context",
    "extract_links",
    "is_html_content",
    "resolve_link",
]
