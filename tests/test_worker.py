# Test-suite for the worker dispatcher
from __future__ import annotations

import asyncio
from datetime import timedelta

import pytest

from conftest import html_app, links
from link_audit.engine import Engine
from link_audit.jobs.models import ControlFlag, JobStatus
from link_audit.worker import WorkerDispatcher


@pytest.fixture()
def engine(job_store, history_store, engine_settings):
    return Engine(job_store, history_store, engine_settings)


@pytest.fixture()
def dispatcher(engine):
    return WorkerDispatcher(engine)


async def wait_for_status(engine: Engine, job_id: str, status: JobStatus, timeout: float = 10.0):
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while loop.time() < deadline:
        job = await engine.store.get_job(job_id)
        if job.status is status:
            return job
        await asyncio.sleep(0.02)
    raise AssertionError(f"job {job_id} never reached {status.value}")


@pytest.mark.asyncio()
async def test_run_once_with_empty_queue(dispatcher):
    assert await dispatcher.run_once() is None


@pytest.mark.asyncio()
async def test_run_once_runs_oldest_job(serve, engine, dispatcher):
    base = await serve(html_app({"/": links("/a"), "/a": "<p>a</p>"}))
    first = await engine.create_job(f"{base}/", {"depth": 1})
    second = await engine.create_job(f"{base}/a", {"depth": 0})

    result = await dispatcher.run_once()

    assert result.job_id == first.id
    assert result.error is None
    assert len(result.results) == 2
    assert (await engine.get_job(first.id)).status is JobStatus.COMPLETED
    assert (await engine.get_job(second.id)).status is JobStatus.QUEUED


@pytest.mark.asyncio()
async def test_run_once_reports_failed_job(engine, dispatcher):
    job = await engine.store.create_job("ftp://example.test/")
    result = await dispatcher.run_once()
    assert result.job_id == job.id
    assert result.results == []
    assert "http(s)" in result.error
    assert (await engine.get_job(job.id)).status is JobStatus.FAILED


@pytest.mark.asyncio()
async def test_recover_orphans(engine, dispatcher):
    running = await engine.create_job("http://example.test/running")
    await engine.store.get_pending_job()
    stopping = await engine.create_job("http://example.test/stopping")
    await engine.store.get_pending_job()
    await engine.store.set_control_flag(stopping.id, ControlFlag.STOP)
    idle = await engine.create_job("http://example.test/idle")

    recovered = await dispatcher.recover_orphans()

    assert {j.id for j in recovered} == {running.id, stopping.id}
    assert (await engine.get_job(running.id)).status is JobStatus.QUEUED
    assert (await engine.get_job(stopping.id)).status is JobStatus.STOPPED
    assert (await engine.get_job(idle.id)).status is JobStatus.QUEUED


@pytest.mark.asyncio()
async def test_run_forever_until_shutdown(serve, engine, dispatcher):
    base = await serve(html_app({"/": links("/a"), "/a": "<p>a</p>"}))
    task = asyncio.create_task(dispatcher.run_forever())
    try:
        job = await engine.create_job(f"{base}/", {"depth": 1})
        done = await wait_for_status(engine, job.id, JobStatus.COMPLETED)
        assert done.total_links == 2
    finally:
        dispatcher.request_shutdown()
        await asyncio.wait_for(task, timeout=5)
    assert task.done() and task.exception() is None


async def backdate(engine: Engine, job_id: str, seconds: float) -> None:
    """Pretend the job's last store write happened *seconds* ago."""
    job = await engine.store.get_job(job_id)
    engine.store._save(
        job.model_copy(update={"updated_at": job.updated_at - timedelta(seconds=seconds)})
    )


@pytest.mark.asyncio()
async def test_run_once_leaves_live_running_jobs_alone(engine, dispatcher):
    job = await engine.create_job("http://example.test/")
    await engine.store.get_pending_job()

    assert await dispatcher.run_once() is None
    assert (await engine.get_job(job.id)).status is JobStatus.RUNNING


@pytest.mark.asyncio()
async def test_run_once_recovers_stale_running_job(serve, engine, dispatcher):
    base = await serve(html_app({"/": links("/a"), "/a": "<p>a</p>"}))
    job = await engine.create_job(f"{base}/", {"depth": 1})
    await engine.store.get_pending_job()
    await backdate(engine, job.id, engine.settings.orphan_timeout + 60)

    result = await dispatcher.run_once()

    assert result.job_id == job.id
    assert result.error is None
    assert len(result.results) == 2
    assert (await engine.get_job(job.id)).status is JobStatus.COMPLETED


@pytest.mark.asyncio()
async def test_recover_orphans_skips_recently_written_jobs(engine, dispatcher):
    fresh = await engine.create_job("http://example.test/fresh")
    await engine.store.get_pending_job()
    stale = await engine.create_job("http://example.test/stale")
    await engine.store.get_pending_job()
    await backdate(engine, stale.id, 120)

    recovered = await dispatcher.recover_orphans(stale_after=60)

    assert [j.id for j in recovered] == [stale.id]
    assert (await engine.get_job(stale.id)).status is JobStatus.QUEUED
    assert (await engine.get_job(fresh.id)).status is JobStatus.RUNNING
