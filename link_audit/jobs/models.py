"""
Job records and the lifecycle transition table.

A job is created ``queued``, claimed by a worker (``running``) and ends in
one of the terminal states ``completed``, ``failed`` or ``stopped``. Pause
and stop requests are written as intermediate states (``pausing``,
``stopping``) that the running worker picks up at its next frontier pop.
A resume sent while a pause is still draining flips ``pausing`` back to
``running``; the worker then parks the job as ``queued`` with its state
instead of ``paused``.
"""
from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional
from uuid import uuid4

from pydantic import BaseModel, Field

from link_audit.config import ScanConfig
from link_audit.crawler.models import LinkRecord, ScanState
from link_audit.errors import JobStateError


class JobStatus(str, Enum):
    QUEUED = "queued"
    RUNNING = "running"
    PAUSING = "pausing"
    PAUSED = "paused"
    STOPPING = "stopping"
    STOPPED = "stopped"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES

    @property
    def is_active(self) -> bool:
        """Owned by a worker process."""
        return self in (JobStatus.RUNNING, JobStatus.PAUSING, JobStatus.STOPPING)


TERMINAL_STATUSES = frozenset((JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.STOPPED))


class ControlFlag(str, Enum):
    PAUSE = "pause"
    RESUME = "resume"
    STOP = "stop"


class LogLevel(str, Enum):
    INFO = "INFO"
    WARN = "WARN"
    ERROR = "ERROR"


_CONTROL_TRANSITIONS: dict[ControlFlag, dict[JobStatus, JobStatus]] = {
    ControlFlag.PAUSE: {
        JobStatus.QUEUED: JobStatus.PAUSED,
        JobStatus.RUNNING: JobStatus.PAUSING,
        JobStatus.PAUSING: JobStatus.PAUSING,
        JobStatus.PAUSED: JobStatus.PAUSED,
    },
    ControlFlag.RESUME: {
        JobStatus.PAUSED: JobStatus.QUEUED,
        JobStatus.PAUSING: JobStatus.RUNNING,
        JobStatus.QUEUED: JobStatus.QUEUED,
        JobStatus.RUNNING: JobStatus.RUNNING,
    },
    ControlFlag.STOP: {
        JobStatus.QUEUED: JobStatus.STOPPED,
        JobStatus.PAUSED: JobStatus.STOPPED,
        JobStatus.RUNNING: JobStatus.STOPPING,
        JobStatus.PAUSING: JobStatus.STOPPING,
        JobStatus.STOPPING: JobStatus.STOPPING,
    },
}


def apply_control(status: JobStatus, flag: ControlFlag) -> JobStatus:
    """Status after *flag* is requested on a job in *status*.

    Raises :class:`JobStateError` when the request makes no sense, e.g.
    resuming a completed job or pausing one that is being stopped.
    """
    try:
        return _CONTROL_TRANSITIONS[flag][status]
    except KeyError:
        raise JobStateError(f"cannot {flag.value} a job that is {status.value}") from None


def _now() -> datetime:
    return datetime.now(timezone.utc)


class JobState(BaseModel):
    """Persisted scan job."""

    id: str = Field(default_factory=lambda: str(uuid4()))
    status: JobStatus = JobStatus.QUEUED
    scan_url: str
    scan_config: ScanConfig = Field(default_factory=ScanConfig)
    created_at: datetime = Field(default_factory=_now)
    #: time of the last store write; a running job's heartbeat
    updated_at: datetime = Field(default_factory=_now)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    progress_percent: int = 0
    current_url: Optional[str] = None
    urls_scanned: int = 0
    total_urls: int = 0
    broken_links: int = 0
    total_links: int = 0
    results: Optional[list[LinkRecord]] = None
    error: Optional[str] = None
    state: Optional[ScanState] = None
    history_id: Optional[str] = None

    @property
    def duration_seconds(self) -> float:
        if self.started_at is None or self.completed_at is None:
            return 0.0
        return (self.completed_at - self.started_at).total_seconds()

    def summary(self) -> dict[str, Any]:
        """Listing view without results and saved state."""
        return self.model_dump(mode="json", exclude={"results", "state", "scan_config"})


class JobLogEntry(BaseModel):
    job_id: str
    created_at: datetime = Field(default_factory=_now)
    level: LogLevel
    message: str
    data: Optional[dict[str, Any]] = None


class ProgressUpdate(BaseModel):
    progress_percent: int
    current_url: Optional[str] = None
    urls_scanned: int
    total_urls: int
    broken_links: int = 0
    total_links: int = 0


__all__ = [
    "TERMINAL_STATUSES",
    "ControlFlag",
    "JobLogEntry",
    "JobState",
    "JobStatus",
    "LogLevel",
    "ProgressUpdate",
    "apply_control",
]
