"""
Job Controller: runs one crawl on behalf of a persisted job.

It translates orchestrator progress into Job Store writes, turns the
job's ``pausing``/``stopping`` status into control signals, and records the
terminal outcome (and the History Store entry of a completed scan).
Store writes during the crawl are best-effort: a failure is logged and the
crawl goes on.
"""
from __future__ import annotations

import asyncio
import time
from typing import Any, Dict, List, Optional

from aiohttp import ClientSession

from link_audit.config import EngineSettings
from link_audit.crawler.crawler import ControlSignal, CrawlOrchestrator, CrawlOutcome, CrawlProgress
from link_audit.crawler.models import LinkRecord
from link_audit.errors import ConfigurationError, JobNotFoundError, JobStateError, PersistenceError
from link_audit.jobs.history import HistoryStore
from link_audit.jobs.models import ControlFlag, JobState, JobStatus, LogLevel, ProgressUpdate
from link_audit.jobs.store import JobStore
from link_audit.logger import get_logger, job_logger

__all__ = ["JobController"]

_PY_LEVELS = {LogLevel.INFO: 20, LogLevel.WARN: 30, LogLevel.ERROR: 40}


class JobController:
    """Drives jobs of one Job Store; one :meth:`run` call per claimed job."""

    def __init__(
        self,
        store: JobStore,
        history: Optional[HistoryStore] = None,
        settings: Optional[EngineSettings] = None,
        session: Optional[ClientSession] = None,
    ) -> None:
        self.store = store
        self.history = history
        self.settings = settings or EngineSettings()
        self.session = session
        self.logger = get_logger("jobs")

    # ------------------------------------------------------------------ control

    async def pause(self, job_id: str) -> JobState:
        return await self.store.set_control_flag(job_id, ControlFlag.PAUSE)

    async def resume(self, job_id: str) -> JobState:
        return await self.store.set_control_flag(job_id, ControlFlag.RESUME)

    async def stop(self, job_id: str) -> JobState:
        return await self.store.set_control_flag(job_id, ControlFlag.STOP)

    # ------------------------------------------------------------------ run

    async def run(self, job: JobState) -> List[LinkRecord]:
        """Run *job* (already claimed as ``running``) to completion or suspension.

        Returns the records aggregated so far. Raises
        :class:`ConfigurationError` (job marked failed) for an unusable seed
        URL or config, re-raises unexpected orchestrator errors after marking
        the job failed with its partial results, and raises
        :class:`PersistenceError` when a completed scan cannot be saved to
        history.
        """
        job_id = job.id
        resuming = job.state is not None
        await self._log(
            job_id,
            LogLevel.INFO,
            f"{'Resuming' if resuming else 'Starting'} scan of {job.scan_url}",
            {"config": job.scan_config.to_wire() | {"auth": bool(job.scan_config.auth)}},
        )

        try:
            crawler = CrawlOrchestrator(
                job.scan_url,
                job.scan_config,
                on_progress=self._progress_writer(job_id),
                control=self._control_reader(job_id),
                control_interval=self.settings.control_poll_interval,
                state=job.state,
                session=self.session,
            )
        except ConfigurationError as exc:
            await self._log(job_id, LogLevel.ERROR, f"Scan failed: {exc}")
            await self._finish(job_id, JobStatus.FAILED, results=[], error=str(exc))
            raise

        for pattern in crawler.exclusions.invalid_patterns:
            await self._log(job_id, LogLevel.WARN, f"Ignoring invalid exclusion pattern {pattern!r}")

        try:
            async with crawler:
                outcome = await crawler.run()
        except Exception as exc:
            self.logger.exception("Job %s failed", job_id)
            await self._log(job_id, LogLevel.ERROR, f"Scan failed: {exc}")
            await self._finish(job_id, JobStatus.FAILED, results=crawler.results(), error=str(exc))
            raise

        results = crawler.results()
        progress = crawler.progress()
        await self._write_progress(job_id, progress)

        if outcome is CrawlOutcome.PAUSED and await self._stop_requested(job_id):
            outcome = CrawlOutcome.STOPPED
        if outcome is CrawlOutcome.PAUSED:
            parked = await self.store.save_paused(job_id, crawler.snapshot())
            details = {
                "urlsScanned": progress.urls_scanned,
                "frontier": progress.total_urls - progress.urls_scanned,
            }
            if parked.status is JobStatus.QUEUED:
                await self._log(
                    job_id, LogLevel.INFO, "Resume requested while pausing, scan requeued", details
                )
            elif parked.status is JobStatus.STOPPED:
                await self._log(
                    job_id, LogLevel.INFO, "Scan stopped",
                    {"totalLinks": parked.total_links, "brokenLinks": parked.broken_links},
                )
            else:
                await self._log(job_id, LogLevel.INFO, "Scan paused", details)
            return results

        status = JobStatus.STOPPED if outcome is CrawlOutcome.STOPPED else JobStatus.COMPLETED
        final = await self._finish(job_id, status, results=results)
        await self._log(
            job_id, LogLevel.INFO, f"Scan {status.value}",
            {"totalLinks": len(results), "brokenLinks": crawler.broken_count},
        )
        if status is JobStatus.COMPLETED and final is not None:
            await self._save_history(final, results)
        return results

    # ------------------------------------------------------------------ helpers

    def _progress_writer(self, job_id: str):
        every = self.settings.progress_every
        interval = self.settings.progress_interval
        state = {"count": 0, "at": time.monotonic()}

        async def on_progress(progress: CrawlProgress) -> None:
            state["count"] += 1
            now = time.monotonic()
            if state["count"] % every and now - state["at"] < interval:
                return
            state["at"] = now
            await self._write_progress(job_id, progress)

        return on_progress

    async def _write_progress(self, job_id: str, progress: CrawlProgress) -> None:
        update = ProgressUpdate(
            progress_percent=progress.percent,
            current_url=progress.current_url,
            urls_scanned=progress.urls_scanned,
            total_urls=progress.total_urls,
            broken_links=progress.broken_links,
            total_links=progress.total_links,
        )
        try:
            await asyncio.wait_for(
                self.store.update_progress(job_id, update), timeout=self.settings.store_timeout
            )
        except (asyncio.TimeoutError, PersistenceError, JobNotFoundError, OSError) as exc:
            self.logger.warning("Failed to update progress of job %s: %s", job_id, exc)

    def _control_reader(self, job_id: str):
        async def control() -> Optional[ControlSignal]:
            try:
                current = await asyncio.wait_for(
                    self.store.get_job(job_id), timeout=self.settings.store_timeout
                )
            except (asyncio.TimeoutError, PersistenceError, OSError) as exc:
                self.logger.warning("Error checking status of job %s (will retry): %s", job_id, exc)
                return None
            if current is None:
                self.logger.info("Job %s no longer exists, stopping", job_id)
                return ControlSignal.STOP
            if current.status is JobStatus.PAUSING:
                return ControlSignal.PAUSE
            if current.status in (JobStatus.STOPPING, JobStatus.STOPPED):
                return ControlSignal.STOP
            return None

        return control

    async def _stop_requested(self, job_id: str) -> bool:
        """A stop that arrived while the pause was draining wins over the pause.

        An unreadable store leaves the decision to :meth:`JobStore.save_paused`,
        which parks the job by its current status.
        """
        try:
            current = await asyncio.wait_for(
                self.store.get_job(job_id), timeout=self.settings.store_timeout
            )
        except (asyncio.TimeoutError, PersistenceError, OSError) as exc:
            self.logger.warning("Error checking status of job %s after pause: %s", job_id, exc)
            return False
        return current is None or current.status is JobStatus.STOPPING

    async def _finish(
        self,
        job_id: str,
        status: JobStatus,
        results: Optional[List[LinkRecord]] = None,
        error: Optional[str] = None,
    ) -> Optional[JobState]:
        try:
            return await self.store.set_terminal(job_id, status, results=results, error=error)
        except (JobStateError, JobNotFoundError) as exc:
            self.logger.warning("Job %s not marked %s: %s", job_id, status.value, exc)
            return None
        except PersistenceError as exc:
            self.logger.error("Could not record %s for job %s: %s", status.value, job_id, exc)
            raise

    async def _save_history(self, job: JobState, results: List[LinkRecord]) -> None:
        if self.history is None:
            return
        try:
            history_id = await self.history.save(
                job.scan_url,
                job.created_at,
                job.duration_seconds,
                job.scan_config,
                results,
                history_id=job.id,
            )
        except (PersistenceError, OSError) as exc:
            await self._log(job.id, LogLevel.ERROR, f"Failed to save scan to history: {exc}")
            raise PersistenceError(f"job {job.id} completed but was not saved to history: {exc}") from exc
        try:
            await self.store.set_history_id(job.id, history_id)
        except PersistenceError as exc:
            self.logger.warning("Could not link job %s to history %s: %s", job.id, history_id, exc)
        await self._log(job.id, LogLevel.INFO, "Scan saved to history", {"historyId": history_id})

    async def _log(
        self, job_id: str, level: LogLevel, message: str, data: Optional[Dict[str, Any]] = None
    ) -> None:
        job_logger(job_id).log(_PY_LEVELS[level], message)
        try:
            await self.store.append_log(job_id, level, message, data)
        except (PersistenceError, OSError) as exc:
            self.logger.warning("Failed to append log line for job %s: %s", job_id, exc)
