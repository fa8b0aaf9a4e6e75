"""
Data models for the LinkAudit crawler.

``LinkRecord`` and ``ScanState`` are pydantic models because they are
persisted with the job; the rest are plain dataclasses that never
leave one orchestrator run.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, field_serializer

#: provenance sentinel of the seed URL
INITIAL_SOURCE = "initial"


class LinkStatus(str, Enum):
    OK = "ok"
    BROKEN = "broken"
    ERROR = "error"
    EXTERNAL = "external"
    SKIPPED = "skipped"


class AuthDecision(str, Enum):
    """Why credentials were (not) sent. Stored verbatim with each record."""

    USED_SAME_DOMAIN = "auth_used_same_domain"
    USED_ALL_DOMAINS = "auth_used_all_domains"
    SKIPPED_DIFFERENT_DOMAIN = "auth_skipped_different_domain"
    SKIPPED_DOMAIN_ERROR = "auth_skipped_domain_error"
    NO_CREDENTIALS = "no_auth_credentials"
    REQUEST_TIMEOUT = "request_timeout"
    REQUEST_ERROR = "request_error"
    NOT_REQUESTED = "not_requested"


class LinkRecord(BaseModel):
    """One unique absolute URL met during a scan."""
    model_config = ConfigDict(use_enum_values=False)

    url: str
    status: LinkStatus
    status_code: Optional[int] = None
    content_type: Optional[str] = None
    error_message: Optional[str] = None
    found_on: set[str] = Field(default_factory=set)
    #: page -> markup of the elements that link here on that page
    html_contexts: dict[str, list[str]] = Field(default_factory=dict)
    used_auth: bool = False
    auth_decision: AuthDecision = AuthDecision.NOT_REQUESTED

    @field_serializer("found_on")
    def _sorted_found_on(self, value: set[str]) -> list[str]:
        return sorted(value)

    @property
    def is_broken(self) -> bool:
        return self.status in (LinkStatus.BROKEN, LinkStatus.ERROR)


@dataclass
class FrontierEntry:
    """A URL waiting to be visited, with its hop distance and the page it came from."""

    url: str
    depth: int
    found_on: str


@dataclass(slots=True)
class CheckOutcome:
    """What the Link Checker learned about one URL."""

    url: str
    status: LinkStatus
    status_code: Optional[int] = None
    content_type: Optional[str] = None
    error_message: Optional[str] = None
    used_auth: bool = False
    auth_decision: AuthDecision = AuthDecision.NO_CREDENTIALS
    final_url: Optional[str] = None
    body: Optional[bytes] = None

    @property
    def is_html(self) -> bool:
        return bool(self.content_type) and "html" in self.content_type.lower()

    def to_record(self, status: Optional[LinkStatus] = None) -> LinkRecord:
        return LinkRecord(
            url=self.url,
            status=status or self.status,
            status_code=self.status_code,
            content_type=self.content_type,
            error_message=self.error_message,
            used_auth=self.used_auth,
            auth_decision=self.auth_decision,
        )


@dataclass(slots=True)
class ExtractedLink:
    """A link found in a document.

    ``url`` is the identity form (absolute, fragment stripped) or ``None`` for
    links that are not HTTP(S); ``display_url`` keeps the fragment. ``context`` is
    the element's markup, trimmed, as shown next to the link in reports.
    """

    url: Optional[str]
    display_url: str
    element: Any = field(default=None, repr=False, compare=False)
    attribute: str = "href"
    context: Optional[str] = None

    @property
    def is_http(self) -> bool:
        return self.url is not None


class ScanState(BaseModel):
    """Everything needed to resume a paused scan in another process."""

    seed_url: str
    frontier: list[FrontierEntry] = Field(default_factory=list)
    seen: set[str] = Field(default_factory=set)
    visited: set[str] = Field(default_factory=set)
    expanded: set[str] = Field(default_factory=set)
    blacklist: set[str] = Field(default_factory=set)
    records: list[LinkRecord] = Field(default_factory=list)
    pending_found_on: dict[str, list[str]] = Field(default_factory=dict)
    pending_contexts: dict[str, dict[str, list[str]]] = Field(default_factory=dict)
    urls_scanned: int = 0

    @field_serializer("seen", "visited", "expanded", "blacklist")
    def _sorted_set(self, value: set[str]) -> list[str]:
        return sorted(value)


__all__ = [
    "INITIAL_SOURCE",
    "AuthDecision",
    "CheckOutcome",
    "ExtractedLink",
    "FrontierEntry",
    "LinkRecord",
    "LinkStatus",
    "ScanState",
]
