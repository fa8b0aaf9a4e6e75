"""
Worker Dispatcher: pulls queued jobs from the Job Store and runs them.

``run_once`` serves a polling trigger (cron, serverless invocation);
``run_forever`` is the always-on loop. Jobs are processed one at a time.
"""
from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import List, Optional

from link_audit.crawler.models import LinkRecord
from link_audit.engine import Engine
from link_audit.errors import ConfigurationError, JobStateError, PersistenceError
from link_audit.jobs.models import JobState, JobStatus
from link_audit.logger import get_logger

log = get_logger("worker")


@dataclass(slots=True)
class DispatchResult:
    job_id: str
    results: List[LinkRecord] = field(default_factory=list)
    error: Optional[str] = None


class WorkerDispatcher:
    def __init__(self, engine: Engine, poll_interval: Optional[float] = None) -> None:
        self.engine = engine
        self.poll_interval = poll_interval if poll_interval is not None else engine.settings.poll_interval
        self._stop = asyncio.Event()

    def request_shutdown(self) -> None:
        self._stop.set()

    async def recover_orphans(self, stale_after: Optional[float] = None) -> List[JobState]:
        """Requeue jobs left ``running``/``pausing`` by a dead worker, finish ``stopping`` ones.

        Their saved state, if any, is resumed by the next claim. With
        *stale_after* only jobs whose last store write is older than that many
        seconds are touched, so jobs of other live workers are left alone.
        """
        cutoff = None
        if stale_after is not None:
            cutoff = datetime.now(timezone.utc) - timedelta(seconds=stale_after)
        recovered = []
        for job in await self.engine.store.list_jobs():
            if not job.status.is_active:
                continue
            if cutoff is not None and job.updated_at > cutoff:
                continue
            try:
                if job.status is JobStatus.STOPPING:
                    recovered.append(
                        await self.engine.store.set_terminal(
                            job.id, JobStatus.STOPPED, results=job.results or []
                        )
                    )
                else:
                    recovered.append(
                        await self.engine.store.requeue(job.id, updated_before=cutoff)
                    )
            except (JobStateError, PersistenceError) as exc:
                log.error("Could not requeue orphaned job %s: %s", job.id, exc)
        if recovered:
            log.info("Found %d orphaned job(s), recovered", len(recovered))
        return recovered

    async def run_once(self, *, recover: bool = True) -> Optional[DispatchResult]:
        """Claim and run the oldest queued job. ``None`` when the queue is empty.

        Unless *recover* is false, jobs abandoned by a crashed invocation
        (no store write for ``orphan_timeout`` seconds) are requeued first.
        """
        if recover:
            await self.recover_orphans(stale_after=self.engine.settings.orphan_timeout)
        job = await self.engine.store.get_pending_job()
        if job is None:
            log.debug("No pending jobs")
            return None
        log.info("Picked up job %s for %s", job.id, job.scan_url)
        try:
            results = await self.engine.start_job(job)
        except (ConfigurationError, PersistenceError) as exc:
            log.error("Job %s: %s", job.id, exc)
            return DispatchResult(job.id, error=str(exc))
        return DispatchResult(job.id, results)

    async def run_forever(self, *, recover: bool = True) -> None:
        log.info("Worker starting up")
        if recover:
            await self.recover_orphans()
        log.info("Worker ready, polling every %.1f s", self.poll_interval)
        while not self._stop.is_set():
            try:
                handled = await self.run_once(recover=False)
            except Exception:
                log.exception("Worker error")
                handled = None
            if handled is None:
                try:
                    await asyncio.wait_for(self._stop.wait(), timeout=self.poll_interval)
                except asyncio.TimeoutError:
                    pass
        log.info("Worker shutting down")


__all__ = ["DispatchResult", "WorkerDispatcher"]
