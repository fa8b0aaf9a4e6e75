import pytest
from bs4 import BeautifulSoup

from link_audit.config import ScanConfig
from link_audit.crawler.exclusions import ExclusionEvaluator
from link_audit.utils import is_in_scope, is_subdomain, normalize_url

PAGE = """
<html><body>
  <nav class="menu"><ul><li><a id="deep" href="/nav-target">N</a></li></ul></nav>
  <a id="plain" class="ext" href="/plain">P</a>
  <div class="footer"><a id="legal" href="/legal">Legal</a></div>
</body></html>
"""


def _anchor(anchor_id: str):
    return BeautifulSoup(PAGE, "html.parser").find(id=anchor_id)


# --------------------------------------------------------------------------- #
#                                   URLs                                      #
# --------------------------------------------------------------------------- #


def test_normalize_url():
    assert normalize_url("HTTP://Example.TEST") == "http://example.test/"
    assert normalize_url("https://example.test:443/a?b=1#frag") == "https://example.test/a?b=1"
    assert normalize_url("http://example.test:8080/x") == "http://example.test:8080/x"


def test_normalize_url_rejects_relative():
    with pytest.raises(ValueError):
        normalize_url("/relative/path")


def test_scope_rules():
    cfg = ScanConfig()
    assert is_subdomain("blog.example.test", "example.test")
    assert not is_subdomain("example.test", "example.test")
    assert is_in_scope("http://example.test/x", "example.test", cfg)
    assert not is_in_scope("http://blog.example.test/", "example.test", cfg)
    assert not is_in_scope("http://other.test/", "example.test", cfg)

    lenient = ScanConfig(exclude_subdomains=False, skip_external_domains=False)
    assert is_in_scope("http://blog.example.test/", "example.test", lenient)
    assert is_in_scope("http://other.test/", "example.test", lenient)


# --------------------------------------------------------------------------- #
#                                  Rules                                      #
# --------------------------------------------------------------------------- #


def test_each_rule_kind_excludes_on_its_own():
    url = "http://example.test/files/report.pdf"
    configs = [
        ScanConfig(excluded_urls=["http://EXAMPLE.test/files/report.pdf#top"]),
        ScanConfig(regex_exclusions=[r"\.pdf$"]),
        ScanConfig(wildcard_exclusions=["*/files/*"]),
    ]
    for cfg in configs:
        evaluator = ExclusionEvaluator(cfg)
        assert evaluator.should_exclude(url)
        assert evaluator.excludes_url(url)

    assert not ExclusionEvaluator(ScanConfig()).should_exclude(url)


def test_rule_order_does_not_change_the_result():
    url = "http://example.test/private/page"
    node = _anchor("plain")
    forward = ScanConfig(
        regex_exclusions=["/private/"], wildcard_exclusions=["*/nothing/*"], css_selectors=[".none"]
    )
    backward = ScanConfig(
        regex_exclusions=["/nothing/"], wildcard_exclusions=["*/private/*"], css_selectors=[".ext"]
    )
    assert ExclusionEvaluator(forward).should_exclude(url, node)
    assert ExclusionEvaluator(backward).should_exclude(url, node)


def test_wildcard_question_mark():
    evaluator = ExclusionEvaluator(ScanConfig(wildcard_exclusions=["http://example.test/page?"]))
    assert evaluator.should_exclude("http://example.test/page1")
    assert not evaluator.should_exclude("http://example.test/page10")


def test_css_matches_ancestor_and_anchor_itself():
    evaluator = ExclusionEvaluator(ScanConfig(css_selectors=["nav.menu", "a.ext"]))
    deep = evaluator.evaluate("http://example.test/nav-target", _anchor("deep"))
    assert deep is not None and deep.rule == "css" and deep.pattern == "nav.menu"
    assert evaluator.should_exclude("http://example.test/plain", _anchor("plain"))
    assert not evaluator.should_exclude("http://example.test/legal", _anchor("legal"))


def test_css_without_force_only_drops_the_occurrence():
    evaluator = ExclusionEvaluator(ScanConfig(css_selectors=[".footer"]))
    assert evaluator.should_exclude("http://example.test/legal", _anchor("legal"))
    assert not evaluator.is_blacklisted("http://example.test/legal")
    # same URL in a different place of the page is fine
    assert not evaluator.should_exclude("http://example.test/legal", _anchor("plain"))


def test_css_force_blacklists_url():
    evaluator = ExclusionEvaluator(
        ScanConfig(css_selectors=[".footer"], css_selectors_force_exclude=True)
    )
    assert evaluator.should_exclude("http://example.test/legal", _anchor("legal"))
    assert evaluator.is_blacklisted("http://example.test/legal")
    assert evaluator.should_exclude("http://example.test/legal", _anchor("plain"))
    assert evaluator.excludes_url("http://example.test/legal")
    assert evaluator.blacklist == {"http://example.test/legal"}


def test_blacklist_restored_from_state():
    evaluator = ExclusionEvaluator(ScanConfig(), blacklist=["http://example.test/x"])
    match = evaluator.evaluate("http://example.test/x")
    assert match is not None and match.rule == "blacklist"


def test_invalid_patterns_are_ignored():
    evaluator = ExclusionEvaluator(
        ScanConfig(regex_exclusions=["(unclosed", r"\.zip$"], css_selectors=["div[", ".ok"])
    )
    assert evaluator.invalid_patterns == ["(unclosed", "div["]
    assert evaluator.should_exclude("http://example.test/a.zip")
    assert not evaluator.should_exclude("http://example.test/(unclosed")
