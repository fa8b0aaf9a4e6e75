# File: tests/test_crawler.py
# Test-suite for the LinkAudit crawl orchestrator
from __future__ import annotations

import asyncio
import time

import pytest
from aiohttp import web

from conftest import HITS, OTHER_HOST, SITE_HOST, html_app, links
from link_audit.config import AuthCredentials, ScanConfig
from link_audit.crawler.crawler import ControlSignal, CrawlOrchestrator, CrawlOutcome
from link_audit.crawler.models import INITIAL_SOURCE, AuthDecision, LinkStatus, ScanState
from link_audit.errors import ConfigurationError

#: number of seconds a “slow” handler sleeps in the concurrency test
SLOW_SLEEP: float = 0.5


# --------------------------------------------------------------------------- #
#                               Helper utilities                              #
# --------------------------------------------------------------------------- #


async def run_crawler(seed: str, config: ScanConfig, **kwargs):
    """Run the orchestrator inside a generous overall timeout."""
    async with CrawlOrchestrator(seed, config, **kwargs) as crawler:
        outcome = await asyncio.wait_for(crawler.run(), timeout=20)
    return crawler, outcome


def by_url(crawler: CrawlOrchestrator):
    return {r.url: r for r in crawler.results()}


def comparable(records):
    return {
        (r.url, r.status, r.status_code, frozenset(r.found_on), r.auth_decision) for r in records
    }


def counting_control(signal: ControlSignal, after: int):
    """Control callback answering *signal* from its *after*-th call on."""
    calls = {"n": 0}

    async def control():
        calls["n"] += 1
        return signal if calls["n"] >= after else None

    return control


def chain_app(length: int) -> web.Application:
    """/ -> /1 -> /2 -> ... -> /length (each page one hop further)."""
    pages = {"/": links("/1")}
    for i in range(1, length + 1):
        pages[f"/{i}"] = links(f"/{i + 1}") if i < length else "<p>end</p>"
    return html_app(pages)


def site_app() -> web.Application:
    """Small static site: a tree with a cycle and two broken links."""
    return html_app(
        {
            "/": links("/a", "/b", "/c"),
            "/a": links("/a1", "/a2", "/"),
            "/b": links("/b1", "/missing"),
            "/c": links("/a", "/doc.txt"),
            "/a1": links("/b"),
            "/a2": "<p>leaf</p>",
            "/b1": "<p>leaf</p>",
        },
        statuses={"/missing": 404},
    )


# --------------------------------------------------------------------------- #
#                                  Scenarios                                  #
# --------------------------------------------------------------------------- #


@pytest.mark.asyncio()
async def test_ok_broken_external_scenario(serve):
    app = html_app(
        {"/": links("/a", "/b", "{other}/x"), "/a": "<p>a</p>", "/x": "<p>x</p>"},
        statuses={"/b": 404},
    )
    base = await serve(app)
    other = base.replace(SITE_HOST, OTHER_HOST)

    seed = f"{base}/"
    crawler, outcome = await run_crawler(seed, ScanConfig(depth=1, skip_external_domains=True))
    records = by_url(crawler)

    assert outcome is CrawlOutcome.COMPLETED
    assert set(records) == {seed, f"{base}/a", f"{base}/b", f"{other}/x"}
    assert records[seed].found_on == {INITIAL_SOURCE}
    assert records[f"{base}/a"].status is LinkStatus.OK
    assert records[f"{base}/b"].status is LinkStatus.BROKEN
    assert records[f"{base}/b"].status_code == 404
    assert records[f"{base}/b"].found_on == {seed}
    assert records[f"{other}/x"].status is LinkStatus.EXTERNAL
    assert records[f"{other}/x"].found_on == {seed}
    assert crawler.broken_count == 1
    assert crawler.total_count == 4


@pytest.mark.asyncio()
async def test_external_links_are_checked_but_not_followed(serve):
    app = html_app({"/": links("{other}/ext"), "/ext": links("/deep"), "/deep": "<p>deep</p>"})
    base = await serve(app)
    other = base.replace(SITE_HOST, OTHER_HOST)

    crawler, _ = await run_crawler(f"{base}/", ScanConfig(depth=None))
    records = by_url(crawler)
    assert records[f"{other}/ext"].status is LinkStatus.EXTERNAL
    assert f"{other}/deep" not in records
    assert app[HITS].get("/deep", 0) == 0


@pytest.mark.asyncio()
async def test_auth_never_sent_to_external_domain(serve):
    base = await serve(html_app({"/": links("/ok", "{other}/ok"), "/ok": "<p>ok</p>"}))
    other = base.replace(SITE_HOST, OTHER_HOST)

    cfg = ScanConfig(depth=1, auth=AuthCredentials(username="u", password="p"))
    crawler, _ = await run_crawler(f"{base}/", cfg)
    records = by_url(crawler)

    external = records[f"{other}/ok"]
    assert external.status is LinkStatus.EXTERNAL
    assert external.auth_decision is AuthDecision.SKIPPED_DIFFERENT_DOMAIN
    assert external.used_auth is False
    internal = records[f"{base}/ok"]
    assert internal.auth_decision is AuthDecision.USED_SAME_DOMAIN
    assert internal.used_auth is True


@pytest.mark.asyncio()
async def test_external_domains_crawled_when_allowed(serve):
    base = await serve(html_app({"/": links("{other}/x"), "/x": "<p>x</p>"}))
    other = base.replace(SITE_HOST, OTHER_HOST)

    crawler, _ = await run_crawler(f"{base}/", ScanConfig(depth=1, skip_external_domains=False))
    assert by_url(crawler)[f"{other}/x"].status is LinkStatus.OK


# --------------------------------------------------------------------------- #
#                                    Depth                                    #
# --------------------------------------------------------------------------- #


@pytest.mark.asyncio()
@pytest.mark.parametrize("depth", [0, 1, 2, 4])
async def test_depth_bounds_hops_from_seed(serve, depth):
    app = chain_app(6)
    base = await serve(app)
    crawler, _ = await run_crawler(f"{base}/", ScanConfig(depth=depth, concurrency=3))

    expected = {f"{base}/"} | {f"{base}/{i}" for i in range(1, depth + 1)}
    assert set(by_url(crawler)) == expected
    # the page one hop beyond the limit is never requested
    assert app[HITS].get(f"/{depth + 1}", 0) == 0


@pytest.mark.asyncio()
async def test_unlimited_depth(serve):
    base = await serve(chain_app(6))
    crawler, _ = await run_crawler(f"{base}/", ScanConfig(depth=None))
    assert len(crawler.results()) == 7


# --------------------------------------------------------------------------- #
#                           Dedup and provenance                              #
# --------------------------------------------------------------------------- #


@pytest.mark.asyncio()
async def test_each_url_checked_once_with_full_provenance(serve):
    app = site_app()
    base = await serve(app)
    seed = f"{base}/"
    crawler, _ = await run_crawler(seed, ScanConfig(depth=None, concurrency=4))
    records = by_url(crawler)

    assert len(records) == len(crawler.results())
    assert records[seed].found_on == {INITIAL_SOURCE, f"{base}/a"}
    assert records[f"{base}/a"].found_on == {seed, f"{base}/c"}
    assert records[f"{base}/b"].found_on == {seed, f"{base}/a1"}
    assert records[f"{base}/missing"].status is LinkStatus.BROKEN
    assert records[f"{base}/doc.txt"].status is LinkStatus.BROKEN  # not served
    for path in ("/", "/a", "/b", "/c", "/a1"):
        assert app[HITS][path] == 1, path


@pytest.mark.asyncio()
async def test_without_dedup_every_occurrence_is_checked(serve):
    app = html_app({"/": links("/a", "/a", "/b"), "/a": links("/"), "/b": "<p>b</p>"})
    base = await serve(app)
    seed = f"{base}/"
    crawler, outcome = await run_crawler(
        seed, ScanConfig(depth=None, concurrency=1, scan_same_link_once=False)
    )
    records = by_url(crawler)

    assert outcome is CrawlOutcome.COMPLETED
    assert app[HITS]["/a"] == 2
    assert app[HITS]["/"] == 2
    assert set(records) == {seed, f"{base}/a", f"{base}/b"}
    assert records[f"{base}/a"].found_on == {seed}
    assert records[seed].found_on == {INITIAL_SOURCE, f"{base}/a"}


@pytest.mark.asyncio()
async def test_non_http_links_are_skipped(serve):
    base = await serve(html_app({"/": links("mailto:team@example.test", "javascript:void(0)")}))
    seed = f"{base}/"
    crawler, _ = await run_crawler(seed, ScanConfig(depth=1))
    records = by_url(crawler)

    mail = records["mailto:team@example.test"]
    assert mail.status is LinkStatus.SKIPPED
    assert mail.found_on == {seed}
    assert records["javascript:void(0)"].status is LinkStatus.SKIPPED
    assert crawler.broken_count == 0


@pytest.mark.asyncio()
async def test_non_html_documents_are_not_parsed(serve):
    app = html_app({"/": links("/file")})
    app.router.add_get(
        "/file", lambda _: web.Response(text=links("/hidden"), content_type="text/plain")
    )
    base = await serve(app)
    crawler, _ = await run_crawler(f"{base}/", ScanConfig(depth=None))
    assert by_url(crawler)[f"{base}/file"].status is LinkStatus.OK
    assert f"{base}/hidden" not in by_url(crawler)


@pytest.mark.asyncio()
async def test_timeouts_are_recorded_and_counted(serve):
    app = html_app({"/": links("/slow", "/fine"), "/fine": "<p>ok</p>"})

    async def slow(_):
        await asyncio.sleep(1.0)
        return web.Response(text="late")

    app.router.add_get("/slow", slow)
    base = await serve(app)
    crawler, outcome = await run_crawler(f"{base}/", ScanConfig(depth=1, request_timeout=200))
    records = by_url(crawler)

    assert outcome is CrawlOutcome.COMPLETED
    assert records[f"{base}/slow"].status is LinkStatus.ERROR
    assert records[f"{base}/slow"].error_message == "Request timed out after 0.2s"
    assert records[f"{base}/fine"].status is LinkStatus.OK
    assert crawler.broken_count == 1


# --------------------------------------------------------------------------- #
#                                 Exclusions                                  #
# --------------------------------------------------------------------------- #

FOOTER_PAGE = """
<html><body>
  <a href="/legal">Legal (body)</a>
  <a href="/page">Page</a>
  <div class="footer"><a href="/legal">Legal</a><a href="/footer-only">Only here</a></div>
</body></html>
"""


def footer_app() -> web.Application:
    return html_app(
        {
            "/": FOOTER_PAGE,
            "/page": links("/legal"),
            "/legal": "<p>legal</p>",
            "/footer-only": links("/behind-footer"),
            "/behind-footer": "<p>x</p>",
        }
    )


@pytest.mark.asyncio()
async def test_forced_css_exclusion_drops_url_everywhere(serve):
    app = footer_app()
    base = await serve(app)
    cfg = ScanConfig(depth=None, css_selectors=[".footer"], css_selectors_force_exclude=True)
    crawler, _ = await run_crawler(f"{base}/", cfg)
    records = by_url(crawler)

    assert f"{base}/legal" not in records
    assert f"{base}/footer-only" not in records
    assert all(f"{base}/legal" not in r.found_on for r in records.values())
    assert app[HITS].get("/legal", 0) == 0
    assert f"{base}/page" in records


@pytest.mark.asyncio()
async def test_css_exclusion_without_force_only_drops_occurrence(serve):
    app = footer_app()
    base = await serve(app)
    seed = f"{base}/"
    cfg = ScanConfig(depth=None, css_selectors=[".footer"])
    crawler, _ = await run_crawler(seed, cfg)
    records = by_url(crawler)

    assert records[f"{base}/legal"].found_on == {seed, f"{base}/page"}
    assert f"{base}/footer-only" not in records
    assert f"{base}/behind-footer" not in records
    assert app[HITS].get("/footer-only", 0) == 0


@pytest.mark.asyncio()
@pytest.mark.parametrize(
    "rules",
    [
        lambda base: {"excluded_urls": [f"{base}/private#top"]},
        lambda base: {"regex_exclusions": [r"/private$"]},
        lambda base: {"wildcard_exclusions": ["*/private"]},
    ],
    ids=["literal", "regex", "wildcard"],
)
async def test_url_rules_prevent_fetch(serve, rules):
    app = html_app({"/": links("/private", "/public"), "/private": links("/secret"), "/public": ""})
    base = await serve(app)
    crawler, _ = await run_crawler(f"{base}/", ScanConfig(depth=None, **rules(base)))
    records = by_url(crawler)

    assert f"{base}/private" not in records
    assert f"{base}/secret" not in records
    assert app[HITS].get("/private", 0) == 0
    assert f"{base}/public" in records


@pytest.mark.asyncio()
async def test_invalid_patterns_do_not_abort(serve):
    base = await serve(html_app({"/": links("/a"), "/a": ""}))
    cfg = ScanConfig(depth=1, regex_exclusions=["(oops"], css_selectors=["a[href"])
    crawler, outcome = await run_crawler(f"{base}/", cfg)
    assert outcome is CrawlOutcome.COMPLETED
    assert crawler.exclusions.invalid_patterns == ["(oops", "a[href"]
    assert f"{base}/a" in by_url(crawler)


# --------------------------------------------------------------------------- #
#                        Concurrency, progress, control                       #
# --------------------------------------------------------------------------- #


@pytest.mark.asyncio()
async def test_concurrency(serve):
    """Ensure that two slow pages are fetched concurrently."""
    app = html_app({"/": links("/slow1", "/slow2")})

    async def slow(_):
        await asyncio.sleep(SLOW_SLEEP)
        return web.Response(text="<h1>Slow</h1>", content_type="text/html")

    app.router.add_get("/slow1", slow)
    app.router.add_get("/slow2", slow)
    base = await serve(app)

    start = time.perf_counter()
    crawler, _ = await run_crawler(f"{base}/", ScanConfig(depth=1, concurrency=2))
    elapsed = time.perf_counter() - start

    assert elapsed < SLOW_SLEEP * 1.8
    assert {f"{base}/slow1", f"{base}/slow2"} <= set(by_url(crawler))


@pytest.mark.asyncio()
async def test_progress_reports(serve):
    base = await serve(site_app())
    reports = []

    async def on_progress(progress):
        reports.append(progress)

    crawler, _ = await run_crawler(
        f"{base}/", ScanConfig(depth=None, concurrency=1), on_progress=on_progress
    )

    assert [p.urls_scanned for p in reports] == list(range(1, len(reports) + 1))
    assert all(p.urls_scanned <= p.total_urls for p in reports)
    last = reports[-1]
    assert last.percent == 100
    assert last.urls_scanned == crawler.urls_scanned == crawler.total_urls
    assert last.total_links == crawler.total_count


@pytest.mark.asyncio()
async def test_stop_keeps_partial_results(serve):
    base = await serve(site_app())
    crawler, outcome = await run_crawler(
        f"{base}/",
        ScanConfig(depth=None, concurrency=1),
        control=counting_control(ControlSignal.STOP, after=3),
    )
    assert outcome is CrawlOutcome.STOPPED
    assert crawler.urls_scanned == 2
    assert len(crawler.results()) == 2


@pytest.mark.asyncio()
@pytest.mark.parametrize("concurrency", [1, 3])
async def test_pause_resume_matches_uninterrupted_run(serve, concurrency):
    base = await serve(site_app())
    seed = f"{base}/"
    cfg = ScanConfig(depth=None, concurrency=concurrency)

    reference, _ = await run_crawler(seed, cfg)

    paused, outcome = await run_crawler(
        seed, cfg, control=counting_control(ControlSignal.PAUSE, after=4)
    )
    assert outcome is CrawlOutcome.PAUSED
    assert len(paused.results()) < len(reference.results())

    # through JSON, as a job store would keep it
    state = ScanState.model_validate_json(paused.snapshot().model_dump_json())
    resumed, outcome = await run_crawler(seed, cfg, state=state)

    assert outcome is CrawlOutcome.COMPLETED
    assert comparable(resumed.results()) == comparable(reference.results())
    assert resumed.urls_scanned == reference.urls_scanned
    assert {r.url: r.html_contexts for r in resumed.results()} == {
        r.url: r.html_contexts for r in reference.results()
    }


def test_invalid_seed_and_concurrency():
    with pytest.raises(ConfigurationError):
        CrawlOrchestrator("not a url", ScanConfig())
    with pytest.raises(ConfigurationError):
        CrawlOrchestrator("ftp://example.test/", ScanConfig())
    with pytest.raises(ConfigurationError):
        CrawlOrchestrator("http://example.test/", ScanConfig.model_construct(concurrency=0))


@pytest.mark.asyncio()
async def test_records_keep_markup_of_linking_elements(serve):
    base = await serve(
        html_app(
            {
                "/": '<a class="nav" href="/x">X</a> <img src="/x"> <a href="mailto:me@example.test">mail</a>',
                "/x": "<p>x</p>",
            }
        )
    )
    seed = f"{base}/"
    crawler, _ = await run_crawler(seed, ScanConfig(depth=1, concurrency=1))
    records = by_url(crawler)

    assert records[f"{base}/x"].html_contexts == {
        seed: ['<a class="nav" href="/x">X</a>', '<img src="/x"/>']
    }
    assert records["mailto:me@example.test"].html_contexts == {
        seed: ['<a href="mailto:me@example.test">mail</a>']
    }
    assert records[seed].html_contexts == {}
