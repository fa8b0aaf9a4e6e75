"""link_audit.errors: Иерархия исключений движка LinkAudit."""

from __future__ import annotations

__all__ = [
    "LinkAuditError",
    "ConfigurationError",
    "PersistenceError",
    "JobNotFoundError",
    "JobStateError",
]


class LinkAuditError(Exception):
    """Base class for every error raised by the engine."""


class ConfigurationError(LinkAuditError, ValueError):
    """Unusable scan configuration or seed URL. Fatal for the job."""


class PersistenceError(LinkAuditError):
    """A Job Store or History Store write failed."""


class JobNotFoundError(LinkAuditError, KeyError):
    """No job, saved scan or saved configuration with the requested id."""

    def __str__(self) -> str:
        return str(self.args[0]) if self.args else "job not found"


class JobStateError(LinkAuditError):
    """Requested lifecycle transition is not allowed from the current status."""
