"""
Exclusion rules: decide whether a discovered link is left out of the scan.

Rules are evaluated in a fixed order (literal URL, regex, wildcard, CSS
selector) but their effect does not depend on the order: one match is
enough. Patterns are compiled once, when the evaluator is built; a broken
pattern is logged and ignored instead of aborting the scan.
"""
from __future__ import annotations

import fnmatch
import re
from dataclasses import dataclass
from typing import Any, Iterable, List, Optional, Set, Tuple

import soupsieve
from bs4.element import Tag

from link_audit.config import ScanConfig
from link_audit.logger import get_logger
from link_audit.utils import normalize_url

log = get_logger("exclusions")


@dataclass(frozen=True, slots=True)
class ExclusionMatch:
    """Which rule excluded a link."""

    rule: str  # "literal" | "regex" | "wildcard" | "css" | "blacklist"
    pattern: str


class ExclusionEvaluator:
    """Evaluates the exclusion rules of one scan.

    With ``css_selectors_force_exclude`` a CSS match also puts the URL on a
    blacklist, so later discoveries of the same URL outside the excluded
    subtree are dropped too. The blacklist belongs to one scan and is part of
    its resumable state.
    """

    def __init__(self, config: ScanConfig, blacklist: Iterable[str] = ()) -> None:
        self.force_css = config.css_selectors_force_exclude
        self.invalid_patterns: List[str] = []
        self._literals: Set[str] = {self._identity(u) for u in config.excluded_urls}
        self._regexes: List[Tuple[str, re.Pattern[str]]] = []
        for pattern in config.regex_exclusions:
            rx = self._compile_regex(pattern)
            if rx is not None:
                self._regexes.append((pattern, rx))
        self._wildcards = [
            (p, re.compile(fnmatch.translate(p))) for p in config.wildcard_exclusions
        ]
        self._selectors: List[Tuple[str, soupsieve.SoupSieve]] = []
        for pattern in config.css_selectors:
            selector = self._compile_selector(pattern)
            if selector is not None:
                self._selectors.append((pattern, selector))
        self._blacklist: Set[str] = set(blacklist)

    # ------------------------------------------------------------------ public

    @property
    def blacklist(self) -> Set[str]:
        return set(self._blacklist)

    def is_blacklisted(self, url: str) -> bool:
        return url in self._blacklist

    def should_exclude(self, url: str, source_node: Any = None) -> bool:
        return self.evaluate(url, source_node) is not None

    def evaluate(self, url: str, source_node: Any = None) -> Optional[ExclusionMatch]:
        """Return the first rule that excludes *url* found at *source_node*, or ``None``."""
        if url in self._blacklist:
            return ExclusionMatch("blacklist", url)
        if self._identity(url) in self._literals:
            return ExclusionMatch("literal", url)
        for pattern, rx in self._regexes:
            if rx.search(url):
                return ExclusionMatch("regex", pattern)
        for pattern, rx in self._wildcards:
            if rx.match(url):
                return ExclusionMatch("wildcard", pattern)
        if isinstance(source_node, Tag) and self._selectors:
            pattern = self._css_match(source_node)
            if pattern is not None:
                if self.force_css:
                    self._blacklist.add(url)
                return ExclusionMatch("css", pattern)
        return None

    def excludes_url(self, url: str) -> bool:
        """URL-only rules (no DOM context): blacklist, literal, regex, wildcard."""
        return self.evaluate(url, None) is not None

    # ----------------------------------------------------------------- helpers

    def _css_match(self, node: Tag) -> Optional[str]:
        chain = [node, *(p for p in node.parents if p.name != "[document]")]
        for pattern, selector in self._selectors:
            for el in chain:
                if selector.match(el):
                    return pattern
        return None

    def _compile_regex(self, pattern: str) -> Optional[re.Pattern[str]]:
        try:
            return re.compile(pattern)
        except re.error as exc:
            log.warning("Ignoring invalid regex exclusion %r: %s", pattern, exc)
            self.invalid_patterns.append(pattern)
            return None

    def _compile_selector(self, pattern: str) -> Optional[soupsieve.SoupSieve]:
        try:
            return soupsieve.compile(pattern)
        except (soupsieve.SelectorSyntaxError, ValueError, TypeError) as exc:
            log.warning("Ignoring invalid CSS selector %r: %s", pattern, exc)
            self.invalid_patterns.append(pattern)
            return None

    @staticmethod
    def _identity(url: str) -> str:
        try:
            return normalize_url(url)
        except ValueError:
            return url.strip()


__all__ = ["ExclusionEvaluator", "ExclusionMatch"]
