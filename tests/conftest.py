# File: tests/conftest.py
from __future__ import annotations

from collections.abc import AsyncIterator, Awaitable, Callable

import pytest
import pytest_asyncio
from aiohttp import web

from link_audit.config import EngineSettings, ScanConfig
from link_audit.jobs.history import MemoryHistoryStore
from link_audit.jobs.store import MemoryJobStore
from link_audit.logger import init_logging

#: host the fixture sites are bound to; "localhost" reaches them as another domain
SITE_HOST = "127.0.0.1"
OTHER_HOST = "localhost"

HITS = web.AppKey("hits", dict)

ServeFn = Callable[[web.Application], Awaitable[str]]


def pytest_configure(config):
    """Register custom markers so that `--strict-markers` does not fail."""
    config.addinivalue_line(
        "markers",
        "slow: marks tests as slow (deselect with '-m \"not slow\"')",
    )


@pytest.fixture(autouse=True)
def _reset_logging():
    """CliRunner swaps stderr; give every test a fresh handler."""
    init_logging("WARNING")
    yield
    init_logging("WARNING")


@pytest_asyncio.fixture
async def serve(unused_tcp_port_factory) -> AsyncIterator[ServeFn]:
    """Start aiohttp apps on free ports, return their base URL, clean up afterwards."""
    runners: list[web.AppRunner] = []

    async def _serve(app: web.Application) -> str:
        port = unused_tcp_port_factory()
        runner = web.AppRunner(app)
        await runner.setup()
        site = web.TCPSite(runner, SITE_HOST, port)
        await site.start()
        runners.append(runner)
        return f"http://{SITE_HOST}:{port}"

    try:
        yield _serve
    finally:
        for runner in runners:
            await runner.cleanup()


def html_app(pages: dict[str, str], *, statuses: dict[str, int] | None = None) -> web.Application:
    """App serving *pages* (path -> HTML) and bare status codes for *statuses*.

    ``{base}`` and ``{other}`` in a page are replaced at request time with the
    site URL and the same server reached through another host name.
    """
    app = web.Application()
    app[HITS] = {}

    def make_page(path: str, body: str):
        async def handler(request: web.Request):
            hits = request.app[HITS]
            hits[path] = hits.get(path, 0) + 1
            port = request.url.port
            text = body.replace("{base}", f"http://{SITE_HOST}:{port}").replace(
                "{other}", f"http://{OTHER_HOST}:{port}"
            )
            return web.Response(text=text, content_type="text/html")

        return handler

    def make_status(path: str, code: int):
        async def handler(request: web.Request):
            hits = request.app[HITS]
            hits[path] = hits.get(path, 0) + 1
            return web.Response(status=code, text="status", content_type="text/plain")

        return handler

    for path, body in pages.items():
        app.router.add_get(path, make_page(path, body))
    for path, code in (statuses or {}).items():
        app.router.add_get(path, make_status(path, code))
    return app


def links(*hrefs: str) -> str:
    return "<html><body>" + "".join(f'<a href="{h}">{h}</a>' for h in hrefs) + "</body></html>"


@pytest.fixture()
def fast_config() -> ScanConfig:
    return ScanConfig(depth=3, concurrency=4, request_timeout=3000, user_agent="TestAgent/1.0")


@pytest.fixture()
def engine_settings(tmp_path) -> EngineSettings:
    return EngineSettings(
        data_dir=tmp_path / "data",
        poll_interval=0.05,
        progress_every=1,
        progress_interval=0.0,
        store_timeout=2.0,
    )


@pytest.fixture()
def job_store() -> MemoryJobStore:
    return MemoryJobStore()


@pytest.fixture()
def history_store() -> MemoryHistoryStore:
    return MemoryHistoryStore()
