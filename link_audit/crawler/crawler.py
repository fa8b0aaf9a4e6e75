from __future__ import annotations

import asyncio
import time
from collections import deque
from dataclasses import dataclass
from enum import Enum
from typing import Awaitable, Callable, Deque, List, Optional, Set

from aiohttp import ClientSession

from link_audit.aggregator import ResultAggregator
from link_audit.config import ScanConfig
from link_audit.crawler.checker import LinkChecker, new_session
from link_audit.crawler.exclusions import ExclusionEvaluator
from link_audit.crawler.link_extractor import extract_links
from link_audit.crawler.models import (
    INITIAL_SOURCE,
    CheckOutcome,
    FrontierEntry,
    LinkRecord,
    LinkStatus,
    ScanState,
)
from link_audit.errors import ConfigurationError
from link_audit.logger import get_logger
from link_audit.utils import hostname, is_http_url, is_in_scope, normalize_url

__all__ = (
    "ControlSignal",
    "CrawlOrchestrator",
    "CrawlOutcome",
    "CrawlProgress",
)


class ControlSignal(str, Enum):
    PAUSE = "pause"
    STOP = "stop"


class CrawlOutcome(str, Enum):
    COMPLETED = "completed"
    PAUSED = "paused"
    STOPPED = "stopped"


@dataclass(slots=True)
class CrawlProgress:
    """Live counters handed to the progress callback after every frontier entry."""

    urls_scanned: int
    total_urls: int
    current_url: str
    broken_links: int
    total_links: int

    @property
    def percent(self) -> int:
        if self.total_urls <= 0:
            return 0
        return min(100, round(self.urls_scanned * 100 / self.total_urls))


ProgressCallback = Callable[[CrawlProgress], Awaitable[None]]
ControlCallback = Callable[[], Awaitable[Optional[ControlSignal]]]


class CrawlOrchestrator:
    """Breadth-first link audit of one site, bounded by ``config.depth`` hops.

    Owns the frontier (FIFO of :class:`FrontierEntry`), the seen/visited sets
    and a pool of ``config.concurrency`` asyncio workers. Before claiming a
    frontier entry every worker asks *control* whether the job was asked to
    pause or stop; a halted crawl lets in-flight requests finish and can be
    resumed from :meth:`snapshot`.
    """

    def __init__(
        self,
        seed_url: str,
        config: ScanConfig,
        *,
        on_progress: Optional[ProgressCallback] = None,
        control: Optional[ControlCallback] = None,
        control_interval: float = 0.0,
        state: Optional[ScanState] = None,
        session: Optional[ClientSession] = None,
    ) -> None:
        if config.concurrency < 1:
            raise ConfigurationError(f"concurrency must be positive, got {config.concurrency}")
        try:
            seed = normalize_url(seed_url)
        except ValueError as exc:
            raise ConfigurationError(f"Invalid start URL: {seed_url!r}") from exc
        if not is_http_url(seed):
            raise ConfigurationError(f"Start URL must be http(s): {seed_url!r}")

        self.config = config
        self.seed_url = seed
        self.seed_host: str = hostname(seed) or ""
        self.logger = get_logger("crawler")
        self._on_progress = on_progress
        self._control = control
        self._control_interval = control_interval
        self.session = session
        self._owns_session = session is None
        self._checker: Optional[LinkChecker] = None

        self._dedup = config.scan_same_link_once
        self._frontier: Deque[FrontierEntry] = deque()
        self._seen: Set[str] = set()
        self._visited: Set[str] = set()
        self._expanded: Set[str] = set()
        self._scanned = 0
        self._current_url = seed
        self._in_flight = 0
        self._halt: Optional[ControlSignal] = None
        self._last_poll = float("-inf")
        self._cond: Optional[asyncio.Condition] = None
        self._poll_lock: Optional[asyncio.Lock] = None
        self._running = False

        if state is None:
            self.exclusions = ExclusionEvaluator(config)
            self._aggregator = ResultAggregator()
            self._aggregator.seed(seed)
            self._seen.add(seed)
            self._frontier.append(FrontierEntry(seed, 0, INITIAL_SOURCE))
        else:
            self._restore(state)

    # ------------------------------------------------------------------ lifecycle

    async def __aenter__(self) -> CrawlOrchestrator:
        if self.session is None:
            self.session = new_session(self.config)
            self._owns_session = True
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        if self._owns_session and self.session and not self.session.closed:
            await self.session.close()

    async def run(self) -> CrawlOutcome:
        """Crawl until the frontier is empty or a pause/stop request is seen."""
        if self._running:
            raise RuntimeError("Scan already in progress.")
        if self.session is None:
            raise RuntimeError("Session not initialized")
        self._running = True
        self._halt = None
        self._cond = asyncio.Condition()
        self._poll_lock = asyncio.Lock()
        self._checker = LinkChecker(self.session, self.config, self.seed_url)

        self.logger.info(
            "Crawl of %s started (depth=%s, concurrency=%d, frontier=%d)",
            self.seed_url, self.config.depth, self.config.concurrency, len(self._frontier),
        )
        start = time.monotonic()
        workers = [asyncio.create_task(self._worker()) for _ in range(self.config.concurrency)]
        try:
            await asyncio.gather(*workers)
        except BaseException:
            for w in workers:
                w.cancel()
            await asyncio.gather(*workers, return_exceptions=True)
            raise
        finally:
            self._running = False

        duration = time.monotonic() - start
        outcome = {
            ControlSignal.PAUSE: CrawlOutcome.PAUSED,
            ControlSignal.STOP: CrawlOutcome.STOPPED,
        }.get(self._halt, CrawlOutcome.COMPLETED)  # type: ignore[arg-type]
        self.logger.info(
            "Crawl %s: %d URLs scanned, %d links recorded (%d broken) in %.2f s",
            outcome.value, self._scanned, self._aggregator.total_count,
            self._aggregator.broken_count, duration,
        )
        return outcome

    # ------------------------------------------------------------------ state

    @property
    def urls_scanned(self) -> int:
        return self._scanned

    @property
    def total_urls(self) -> int:
        return self._scanned + len(self._frontier)

    @property
    def broken_count(self) -> int:
        return self._aggregator.broken_count

    @property
    def total_count(self) -> int:
        return self._aggregator.total_count

    def results(self) -> List[LinkRecord]:
        return self._aggregator.results()

    def progress(self) -> CrawlProgress:
        return CrawlProgress(
            urls_scanned=self._scanned,
            total_urls=self.total_urls,
            current_url=self._current_url,
            broken_links=self._aggregator.broken_count,
            total_links=self._aggregator.total_count,
        )

    def snapshot(self) -> ScanState:
        """Serializable state; taken after :meth:`run` returns, nothing is in flight."""
        records, pending, contexts = self._aggregator.snapshot()
        return ScanState(
            seed_url=self.seed_url,
            frontier=list(self._frontier),
            seen=set(self._seen),
            visited=set(self._visited),
            expanded=set(self._expanded),
            blacklist=self.exclusions.blacklist,
            records=records,
            pending_found_on=pending,
            pending_contexts=contexts,
            urls_scanned=self._scanned,
        )

    def _restore(self, state: ScanState) -> None:
        if state.seed_url != self.seed_url:
            self.logger.warning(
                "Saved state belongs to %s, resuming it for %s", state.seed_url, self.seed_url
            )
        self.exclusions = ExclusionEvaluator(self.config, blacklist=state.blacklist)
        self._aggregator = ResultAggregator.restore(
            state.records, state.pending_found_on, state.pending_contexts
        )
        self._frontier.extend(state.frontier)
        self._seen.update(state.seen)
        self._visited.update(state.visited)
        self._expanded.update(state.expanded)
        self._scanned = state.urls_scanned
        self.logger.info(
            "Resuming %s: %d URLs scanned, %d in frontier",
            self.seed_url, self._scanned, len(self._frontier),
        )

    # ------------------------------------------------------------------ workers

    def _can_proceed(self) -> bool:
        return self._halt is not None or bool(self._frontier) or self._in_flight == 0

    async def _worker(self) -> None:
        assert self._cond is not None
        while True:
            async with self._cond:
                await self._cond.wait_for(self._can_proceed)
                if self._halt is not None or (not self._frontier and self._in_flight == 0):
                    self._cond.notify_all()
                    return

            signal = await self._poll_control()
            if signal is not None:
                await self._request_halt(signal)
                return
            if self._halt is not None:
                return
            if not self._frontier:
                continue

            entry = self._frontier.popleft()
            self._in_flight += 1
            try:
                await self._process(entry)
            finally:
                self._in_flight -= 1
                async with self._cond:
                    self._cond.notify_all()

    async def _poll_control(self) -> Optional[ControlSignal]:
        if self._control is None:
            return None
        assert self._poll_lock is not None
        async with self._poll_lock:
            if self._halt is not None:
                return self._halt
            now = time.monotonic()
            if now - self._last_poll < self._control_interval:
                return None
            self._last_poll = now
            return await self._control()

    async def _request_halt(self, signal: ControlSignal) -> None:
        assert self._cond is not None
        async with self._cond:
            if self._halt is None:
                self._halt = signal
                self.logger.info(
                    "%s requested; draining %d in-flight request(s)",
                    signal.value.capitalize(), self._in_flight,
                )
            self._cond.notify_all()

    # ------------------------------------------------------------------ per URL

    async def _process(self, entry: FrontierEntry) -> None:
        url = entry.url
        self._scanned += 1
        self._current_url = url
        try:
            if self._dedup and url in self._visited:
                return
            self._visited.add(url)

            if self.exclusions.excludes_url(url):
                # blacklisted by a forced CSS exclusion after it was queued
                if self.exclusions.is_blacklisted(url):
                    self._aggregator.discard(url)
                return

            in_scope = is_in_scope(url, self.seed_host, self.config)
            expand = in_scope and self._within_depth(entry.depth) and url not in self._expanded
            if expand:
                # claimed before the request: a concurrent repeat of the URL only gets checked
                self._expanded.add(url)
            self.logger.debug("[depth %d] checking %s", entry.depth, url)
            assert self._checker is not None
            outcome = await self._checker.check(url, want_body=expand)

            if expand and outcome.body is None:
                self._expanded.discard(url)
            if self.exclusions.is_blacklisted(url):
                self._aggregator.discard(url)
                return

            status = outcome.status
            if not in_scope and status is LinkStatus.OK:
                status = LinkStatus.EXTERNAL
            self._aggregator.record(outcome.to_record(status), entry.found_on)

            if expand and outcome.body is not None:
                self._expand(outcome, entry)
        finally:
            await self._report_progress()

    def _within_depth(self, depth: int) -> bool:
        return self.config.depth is None or depth < self.config.depth

    def _expand(self, outcome: CheckOutcome, entry: FrontierEntry) -> None:
        page = entry.url
        base = outcome.final_url or outcome.url
        links = extract_links(outcome.body or b"", base, outcome.content_type)
        added = 0
        for link in links:
            target = link.url if link.url is not None else link.display_url
            match = self.exclusions.evaluate(target, link.element)
            if match is not None:
                self.logger.debug("Excluded %s on %s (%s %r)", target, page, match.rule, match.pattern)
                if self.exclusions.is_blacklisted(target):
                    self._aggregator.discard(target)
                continue
            if link.url is None:
                self._aggregator.record(
                    LinkRecord(url=link.display_url, status=LinkStatus.SKIPPED),
                    page,
                    link.context,
                )
                continue
            if self._discover(link.url, entry.depth + 1, page, link.context):
                added += 1
        self.logger.debug("%s: %d links, %d queued", page, len(links), added)

    def _discover(self, url: str, depth: int, page: str, context: Optional[str] = None) -> bool:
        self._aggregator.add_reference(url, page, context)
        if self._dedup:
            if url in self._seen:
                return False
            self._seen.add(url)
        self._frontier.append(FrontierEntry(url, depth, page))
        return True

    async def _report_progress(self) -> None:
        if self._on_progress is None:
            return
        await self._on_progress(self.progress())
