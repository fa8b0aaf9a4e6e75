"""
Link checker: one network request per URL, classified into a LinkStatus.

Handles the request timeout, redirects, the HEAD→GET fallback and the
domain-scoped Basic Auth policy.
"""
from __future__ import annotations

import asyncio
from typing import Optional, Sequence, Tuple

from aiohttp import BasicAuth, ClientError, ClientResponse, ClientSession, ClientTimeout, TCPConnector

from link_audit.config import ScanConfig
from link_audit.crawler.models import AuthDecision, CheckOutcome, LinkStatus
from link_audit.logger import get_logger
from link_audit.utils import hostname

log = get_logger("checker")

#: HEAD answers that are confirmed with a GET
_HEAD_FALLBACK_FROM: Sequence[int] = tuple(range(400, 600))


def decide_auth(url: str, config: ScanConfig, origin_url: str) -> Tuple[bool, AuthDecision]:
    """Whether Basic Auth goes with a request to *url*, and why.

    Pure function of its arguments, so a later re-check of the same link
    reaches the same decision as the scan did.
    """
    if config.auth is None:
        return False, AuthDecision.NO_CREDENTIALS
    target, origin = hostname(url), hostname(origin_url)
    if target is None or origin is None:
        return False, AuthDecision.SKIPPED_DOMAIN_ERROR
    if target == origin:
        return True, AuthDecision.USED_SAME_DOMAIN
    if config.use_auth_for_all_domains:
        return True, AuthDecision.USED_ALL_DOMAINS
    return False, AuthDecision.SKIPPED_DIFFERENT_DOMAIN


def new_session(config: ScanConfig) -> ClientSession:
    """ClientSession with the scan's User-Agent, timeout and connection cap."""
    return ClientSession(
        timeout=ClientTimeout(total=config.timeout_seconds),
        headers={"User-Agent": config.user_agent},
        connector=TCPConnector(limit=config.concurrency),
        raise_for_status=False,
    )


class LinkChecker:
    """Checks URLs for one scan over a shared :class:`ClientSession`."""

    def __init__(self, session: ClientSession, config: ScanConfig, origin_url: str) -> None:
        self.session = session
        self.config = config
        self.origin_url = origin_url
        self._auth = (
            BasicAuth(config.auth.username, config.auth.password) if config.auth else None
        )

    async def check(self, url: str, *, want_body: bool = False) -> CheckOutcome:
        """
        Request *url* and classify the answer.

        ``want_body=True`` issues a GET and keeps the body (up to
        ``max_body_bytes``) when the response is HTML; otherwise a HEAD is
        tried first and any 4xx/5xx answer to it is confirmed with a GET,
        since many servers answer HEAD badly.
        """
        use_auth, decision = decide_auth(url, self.config, self.origin_url)
        auth = self._auth if use_auth else None
        try:
            if want_body:
                return await self._get(url, auth, use_auth, decision, read_body=True)
            outcome = await self._request("HEAD", url, auth, use_auth, decision)
            if outcome.status_code in _HEAD_FALLBACK_FROM:
                log.debug("HEAD %s -> %s, retrying with GET", url, outcome.status_code)
                outcome = await self._get(url, auth, use_auth, decision, read_body=False)
            return outcome
        except asyncio.TimeoutError:
            seconds = self.config.timeout_seconds
            log.info("Timed out after %ss: %s", _fmt_seconds(seconds), url)
            return CheckOutcome(
                url=url,
                status=LinkStatus.ERROR,
                error_message=f"Request timed out after {_fmt_seconds(seconds)}s",
                auth_decision=AuthDecision.REQUEST_TIMEOUT,
            )
        except (ClientError, OSError, ValueError) as exc:
            log.info("Request to %s failed: %s", url, exc)
            return CheckOutcome(
                url=url,
                status=LinkStatus.ERROR,
                error_message=str(exc) or type(exc).__name__,
                auth_decision=AuthDecision.REQUEST_ERROR,
            )

    async def _get(
        self,
        url: str,
        auth: Optional[BasicAuth],
        use_auth: bool,
        decision: AuthDecision,
        *,
        read_body: bool,
    ) -> CheckOutcome:
        async with self.session.get(url, auth=auth, allow_redirects=True) as resp:
            outcome = self._classify(url, resp, use_auth, decision)
            if read_body and outcome.status is LinkStatus.OK and outcome.is_html:
                outcome.body = await self._read_limited(resp)
            return outcome

    async def _read_limited(self, resp: ClientResponse) -> bytes:
        limit = self.config.max_body_bytes
        chunks: list[bytes] = []
        size = 0
        async for chunk in resp.content.iter_chunked(64 * 1024):
            chunks.append(chunk)
            size += len(chunk)
            if size >= limit:
                log.debug("Body of %s truncated at %d bytes", resp.url, limit)
                break
        return b"".join(chunks)[:limit]

    async def _request(
        self,
        method: str,
        url: str,
        auth: Optional[BasicAuth],
        use_auth: bool,
        decision: AuthDecision,
    ) -> CheckOutcome:
        async with self.session.request(method, url, auth=auth, allow_redirects=True) as resp:
            return self._classify(url, resp, use_auth, decision)

    @staticmethod
    def _classify(
        url: str, resp: ClientResponse, use_auth: bool, decision: AuthDecision
    ) -> CheckOutcome:
        status = resp.status
        return CheckOutcome(
            url=url,
            status=LinkStatus.BROKEN if status >= 400 else LinkStatus.OK,
            status_code=status,
            content_type=resp.headers.get("Content-Type") or None,
            used_auth=use_auth,
            auth_decision=decision,
            final_url=str(resp.url),
        )


def _fmt_seconds(seconds: float) -> str:
    return f"{seconds:g}"


__all__ = ["LinkChecker", "decide_auth", "new_session"]
