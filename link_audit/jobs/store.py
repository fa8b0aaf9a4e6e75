"""
Job Store: create/read/update scan jobs and their log lines.

Two backends share the lifecycle rules of :class:`BaseJobStore`:

* :class:`MemoryJobStore`: process-local, used by tests and ad hoc runs;
* :class:`FileJobStore`: one JSON document per job plus a JSON-lines log
  file, so pause/stop flags and saved state survive process restarts. The
  CLI and the worker are separate processes, so its writes are serialised
  with an exclusive ``flock`` on ``<dir>/.lock``.

All methods are coroutines so that a remote backend can implement the same
:class:`JobStore` protocol.
"""
from __future__ import annotations

import asyncio
import fcntl
import json
import os
from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, AsyncIterator, Dict, List, Optional, Protocol, Union

from pydantic import ValidationError

from link_audit.config import ScanConfig, parse_scan_config
from link_audit.crawler.models import LinkRecord, ScanState
from link_audit.errors import JobNotFoundError, JobStateError, PersistenceError
from link_audit.jobs.models import (
    ControlFlag,
    JobLogEntry,
    JobState,
    JobStatus,
    LogLevel,
    ProgressUpdate,
    apply_control,
)
from link_audit.logger import get_logger

log = get_logger("jobs.store")

#: seconds between attempts to take the directory lock
_LOCK_RETRY = 0.005


class JobStore(Protocol):
    async def create_job(self, url: str, config: Union[ScanConfig, dict, None]) -> JobState: ...

    async def get_job(self, job_id: str) -> Optional[JobState]: ...

    async def list_jobs(self, limit: Optional[int] = None) -> List[JobState]: ...

    async def update_progress(self, job_id: str, progress: ProgressUpdate) -> None: ...

    async def append_log(
        self, job_id: str, level: LogLevel, message: str, data: Optional[Dict[str, Any]] = None
    ) -> None: ...

    async def get_logs(self, job_id: str) -> List[JobLogEntry]: ...

    async def set_terminal(
        self,
        job_id: str,
        status: JobStatus,
        results: Optional[List[LinkRecord]] = None,
        error: Optional[str] = None,
    ) -> JobState: ...

    async def save_paused(self, job_id: str, state: ScanState) -> JobState: ...

    async def get_pending_job(self) -> Optional[JobState]: ...

    async def set_control_flag(self, job_id: str, flag: ControlFlag) -> JobState: ...

    async def requeue(
        self, job_id: str, updated_before: Optional[datetime] = None
    ) -> JobState: ...

    async def set_history_id(self, job_id: str, history_id: str) -> None: ...


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _result_fields(results: List[LinkRecord]) -> Dict[str, Any]:
    return {
        "results": results,
        "total_links": len(results),
        "broken_links": sum(1 for r in results if r.is_broken),
    }


class BaseJobStore(ABC):
    """Lifecycle rules on top of three storage primitives.

    Every read-modify-write runs inside :meth:`_transaction` and re-reads the
    job there, so a progress write never carries back a status that a
    control request replaced in the meantime.
    """

    def __init__(self) -> None:
        self._lock = asyncio.Lock()

    # -- storage primitives ------------------------------------------------

    @abstractmethod
    def _load(self, job_id: str) -> Optional[JobState]: ...

    @abstractmethod
    def _save(self, job: JobState) -> None: ...

    @abstractmethod
    def _all(self) -> List[JobState]: ...

    @abstractmethod
    def _write_log(self, entry: JobLogEntry) -> None: ...

    @abstractmethod
    def _read_logs(self, job_id: str) -> List[JobLogEntry]: ...

    @asynccontextmanager
    async def _transaction(self) -> AsyncIterator[None]:
        async with self._lock:
            yield

    def _write(self, job: JobState, **updates: Any) -> JobState:
        job = job.model_copy(update={**updates, "updated_at": _now()})
        self._save(job)
        return job

    # -- protocol ----------------------------------------------------------

    async def create_job(self, url: str, config: Union[ScanConfig, dict, None] = None) -> JobState:
        job = JobState(scan_url=url, scan_config=parse_scan_config(config))
        async with self._transaction():
            job = self._write(job)
        log.info("Job %s created for %s", job.id, url)
        return job

    async def get_job(self, job_id: str) -> Optional[JobState]:
        return self._load(job_id)

    async def list_jobs(self, limit: Optional[int] = None) -> List[JobState]:
        jobs = sorted(self._all(), key=lambda j: j.created_at, reverse=True)
        return jobs[:limit] if limit else jobs

    async def update_progress(self, job_id: str, progress: ProgressUpdate) -> None:
        async with self._transaction():
            job = self._require(job_id)
            if job.status.is_terminal:
                return
            self._write(job, **progress.model_dump())

    async def append_log(
        self, job_id: str, level: LogLevel, message: str, data: Optional[Dict[str, Any]] = None
    ) -> None:
        self._write_log(JobLogEntry(job_id=job_id, level=level, message=message, data=data))

    async def get_logs(self, job_id: str) -> List[JobLogEntry]:
        return self._read_logs(job_id)

    async def set_terminal(
        self,
        job_id: str,
        status: JobStatus,
        results: Optional[List[LinkRecord]] = None,
        error: Optional[str] = None,
    ) -> JobState:
        if not status.is_terminal:
            raise ValueError(f"{status.value} is not a terminal status")
        async with self._transaction():
            job = self._require(job_id)
            if job.status.is_terminal:
                raise JobStateError(f"job {job_id} is already {job.status.value}")
            updates: Dict[str, Any] = {
                "status": status,
                "completed_at": _now(),
                "state": None,
                "error": error,
            }
            if results is not None:
                updates.update(_result_fields(results))
            if status is JobStatus.COMPLETED:
                updates.update(progress_percent=100, total_urls=job.urls_scanned)
            return self._write(job, **updates)

    async def save_paused(self, job_id: str, state: ScanState) -> JobState:
        """Park a drained job together with its scan state.

        Where it lands depends on what was asked while in-flight requests
        were draining: ``pausing`` becomes ``paused``, a resume (the job is
        ``running`` again) puts it back in the queue, a stop finishes it as
        ``stopped`` with the records gathered so far.
        """
        async with self._transaction():
            job = self._require(job_id)
            if job.status.is_terminal:
                raise JobStateError(f"job {job_id} is already {job.status.value}")
            if job.status is JobStatus.STOPPING:
                return self._write(
                    job,
                    status=JobStatus.STOPPED,
                    completed_at=_now(),
                    state=None,
                    **_result_fields(state.records),
                )
            if job.status in (JobStatus.RUNNING, JobStatus.QUEUED):
                return self._write(job, status=JobStatus.QUEUED, state=state)
            return self._write(job, status=JobStatus.PAUSED, state=state)

    async def get_pending_job(self) -> Optional[JobState]:
        """Claim the oldest queued job (FIFO) and mark it running."""
        async with self._transaction():
            queued = [j for j in self._all() if j.status is JobStatus.QUEUED]
            if not queued:
                return None
            job = min(queued, key=lambda j: j.created_at)
            return self._write(job, status=JobStatus.RUNNING, started_at=job.started_at or _now())

    async def set_control_flag(self, job_id: str, flag: ControlFlag) -> JobState:
        async with self._transaction():
            job = self._require(job_id)
            new_status = apply_control(job.status, flag)
            updates: Dict[str, Any] = {"status": new_status}
            if new_status is JobStatus.STOPPED:
                # never ran or parked: partial results come from the saved state
                updates.update(
                    completed_at=_now(),
                    state=None,
                    **_result_fields(job.state.records if job.state else []),
                )
            return self._write(job, **updates)

    async def requeue(
        self, job_id: str, updated_before: Optional[datetime] = None
    ) -> JobState:
        """Put a job back in the queue, keeping its saved state.

        With *updated_before*, a job written since then is still owned by a
        live worker and :class:`JobStateError` is raised instead.
        """
        async with self._transaction():
            job = self._require(job_id)
            if job.status.is_terminal:
                raise JobStateError(f"job {job_id} is already {job.status.value}")
            if updated_before is not None and job.updated_at > updated_before:
                raise JobStateError(f"job {job_id} was updated at {job.updated_at.isoformat()}")
            return self._write(job, status=JobStatus.QUEUED)

    async def set_history_id(self, job_id: str, history_id: str) -> None:
        async with self._transaction():
            self._write(self._require(job_id), history_id=history_id)

    def _require(self, job_id: str) -> JobState:
        job = self._load(job_id)
        if job is None:
            raise JobNotFoundError(f"job {job_id} not found")
        return job


class MemoryJobStore(BaseJobStore):
    def __init__(self) -> None:
        super().__init__()
        self._jobs: Dict[str, JobState] = {}
        self._logs: Dict[str, List[JobLogEntry]] = {}

    def _load(self, job_id: str) -> Optional[JobState]:
        job = self._jobs.get(job_id)
        return job.model_copy(deep=True) if job else None

    def _save(self, job: JobState) -> None:
        self._jobs[job.id] = job.model_copy(deep=True)

    def _all(self) -> List[JobState]:
        return [j.model_copy(deep=True) for j in self._jobs.values()]

    def _write_log(self, entry: JobLogEntry) -> None:
        self._logs.setdefault(entry.job_id, []).append(entry)

    def _read_logs(self, job_id: str) -> List[JobLogEntry]:
        return list(self._logs.get(job_id, []))


class FileJobStore(BaseJobStore):
    """``<dir>/<id>.json`` per job and ``<dir>/<id>.log.jsonl`` for its log lines."""

    def __init__(self, directory: Union[str, Path]) -> None:
        super().__init__()
        self.directory = Path(directory)
        self.directory.mkdir(parents=True, exist_ok=True)

    def _path(self, job_id: str) -> Path:
        return self.directory / f"{job_id}.json"

    def _log_path(self, job_id: str) -> Path:
        return self.directory / f"{job_id}.log.jsonl"

    @asynccontextmanager
    async def _transaction(self) -> AsyncIterator[None]:
        async with self._lock:
            try:
                handle = (self.directory / ".lock").open("a")
            except OSError as exc:
                raise PersistenceError(f"cannot open lock file in {self.directory}: {exc}") from exc
            with handle:
                # non-blocking attempts: a blocked flock would stall the event loop
                while True:
                    try:
                        fcntl.flock(handle.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
                        break
                    except BlockingIOError:
                        await asyncio.sleep(_LOCK_RETRY)
                try:
                    yield
                finally:
                    fcntl.flock(handle.fileno(), fcntl.LOCK_UN)

    def _load(self, job_id: str) -> Optional[JobState]:
        path = self._path(job_id)
        if not path.is_file():
            return None
        try:
            return JobState.model_validate_json(path.read_text(encoding="utf-8"))
        except (OSError, ValidationError, ValueError) as exc:
            log.error("Error reading job file %s: %s", path, exc)
            return None

    def _save(self, job: JobState) -> None:
        path = self._path(job.id)
        tmp = path.with_suffix(".json.tmp")
        try:
            tmp.write_text(job.model_dump_json(indent=2), encoding="utf-8")
            os.replace(tmp, path)
        except OSError as exc:
            raise PersistenceError(f"failed to write job {job.id}: {exc}") from exc

    def _all(self) -> List[JobState]:
        jobs: List[JobState] = []
        for path in self.directory.glob("*.json"):
            job = self._load(path.stem)
            if job is not None:
                jobs.append(job)
        return jobs

    def _write_log(self, entry: JobLogEntry) -> None:
        try:
            with self._log_path(entry.job_id).open("a", encoding="utf-8") as fh:
                fh.write(entry.model_dump_json() + "\n")
        except OSError as exc:
            raise PersistenceError(f"failed to append log for job {entry.job_id}: {exc}") from exc

    def _read_logs(self, job_id: str) -> List[JobLogEntry]:
        path = self._log_path(job_id)
        if not path.is_file():
            return []
        entries: List[JobLogEntry] = []
        for line in path.read_text(encoding="utf-8").splitlines():
            if not line.strip():
                continue
            try:
                entries.append(JobLogEntry.model_validate(json.loads(line)))
            except (ValueError, ValidationError) as exc:
                log.warning("Skipping bad log line for job %s: %s", job_id, exc)
        return entries


__all__ = ["BaseJobStore", "FileJobStore", "JobStore", "MemoryJobStore"]
