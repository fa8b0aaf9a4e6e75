"""
History Store: finished scans, kept for reports and single-link re-checks.
"""
from __future__ import annotations

import os
import secrets
from abc import ABC, abstractmethod
from datetime import datetime
from pathlib import Path
from typing import Dict, List, Optional, Protocol, Union

from pydantic import BaseModel, Field, ValidationError

from link_audit.config import ScanConfig
from link_audit.crawler.models import LinkRecord
from link_audit.errors import JobNotFoundError, PersistenceError
from link_audit.logger import get_logger

log = get_logger("jobs.history")


class SavedScan(BaseModel):
    id: str
    scan_url: str
    scan_date: datetime
    duration_seconds: float = 0.0
    config: ScanConfig = Field(default_factory=ScanConfig)
    results: List[LinkRecord] = Field(default_factory=list)

    @property
    def broken(self) -> List[LinkRecord]:
        return [r for r in self.results if r.is_broken]


class HistoryStore(Protocol):
    async def save(
        self,
        scan_url: str,
        scan_date: datetime,
        duration_seconds: float,
        config: ScanConfig,
        results: List[LinkRecord],
        history_id: Optional[str] = None,
    ) -> str: ...

    async def get(self, history_id: str) -> Optional[SavedScan]: ...

    async def list(self) -> List[SavedScan]: ...

    async def replace_record(self, history_id: str, record: LinkRecord) -> SavedScan: ...

    async def latest(self) -> Optional[SavedScan]: ...

    async def delete(self, history_id: str) -> None: ...


def new_history_id(scan_date: datetime) -> str:
    """``scan_<epoch ms>_<8 hex>``."""
    return f"scan_{int(scan_date.timestamp() * 1000)}_{secrets.token_hex(4)}"


class BaseHistoryStore(ABC):
    @abstractmethod
    def _load(self, history_id: str) -> Optional[SavedScan]: ...

    @abstractmethod
    def _store(self, scan: SavedScan) -> None: ...

    @abstractmethod
    def _all(self) -> List[SavedScan]: ...

    @abstractmethod
    def _remove(self, history_id: str) -> bool: ...

    async def save(
        self,
        scan_url: str,
        scan_date: datetime,
        duration_seconds: float,
        config: ScanConfig,
        results: List[LinkRecord],
        history_id: Optional[str] = None,
    ) -> str:
        scan = SavedScan(
            id=history_id or new_history_id(scan_date),
            scan_url=scan_url,
            scan_date=scan_date,
            duration_seconds=duration_seconds,
            config=config,
            results=results,
        )
        self._store(scan)
        log.info("Scan of %s saved to history as %s", scan_url, scan.id)
        return scan.id

    async def get(self, history_id: str) -> Optional[SavedScan]:
        return self._load(history_id)

    async def list(self) -> List[SavedScan]:
        return sorted(self._all(), key=lambda s: s.scan_date, reverse=True)

    async def latest(self) -> Optional[SavedScan]:
        """The most recent saved scan, ``None`` when there is none."""
        scans = await self.list()
        return scans[0] if scans else None

    async def delete(self, history_id: str) -> None:
        if not self._remove(history_id):
            raise JobNotFoundError(f"saved scan {history_id} not found")
        log.info("Saved scan %s deleted", history_id)

    async def replace_record(self, history_id: str, record: LinkRecord) -> SavedScan:
        """Swap the status fields of one URL.

        ``found_on`` and ``html_contexts`` are kept from the saved scan. A URL
        the scan never met raises :class:`JobNotFoundError`: its record would
        have no page to point at.
        """
        scan = self._load(history_id)
        if scan is None:
            raise JobNotFoundError(f"saved scan {history_id} not found")
        results = list(scan.results)
        for i, old in enumerate(results):
            if old.url == record.url:
                results[i] = record.model_copy(
                    update={"found_on": set(old.found_on), "html_contexts": old.html_contexts}
                )
                break
        else:
            raise JobNotFoundError(f"{record.url} is not part of saved scan {history_id}")
        scan = scan.model_copy(update={"results": results})
        self._store(scan)
        return scan


class MemoryHistoryStore(BaseHistoryStore):
    def __init__(self) -> None:
        self._scans: Dict[str, SavedScan] = {}

    def _load(self, history_id: str) -> Optional[SavedScan]:
        scan = self._scans.get(history_id)
        return scan.model_copy(deep=True) if scan else None

    def _store(self, scan: SavedScan) -> None:
        self._scans[scan.id] = scan.model_copy(deep=True)

    def _all(self) -> List[SavedScan]:
        return list(self._scans.values())

    def _remove(self, history_id: str) -> bool:
        return self._scans.pop(history_id, None) is not None


class FileHistoryStore(BaseHistoryStore):
    """One ``<id>.json`` per saved scan."""

    def __init__(self, directory: Union[str, Path]) -> None:
        self.directory = Path(directory)
        self.directory.mkdir(parents=True, exist_ok=True)

    def _path(self, history_id: str) -> Path:
        return self.directory / f"{history_id}.json"

    def _load(self, history_id: str) -> Optional[SavedScan]:
        path = self._path(history_id)
        if not path.is_file():
            return None
        try:
            return SavedScan.model_validate_json(path.read_text(encoding="utf-8"))
        except (OSError, ValidationError) as exc:
            log.error("Error reading saved scan %s: %s", path, exc)
            return None

    def _store(self, scan: SavedScan) -> None:
        path = self._path(scan.id)
        tmp = path.with_suffix(".json.tmp")
        try:
            tmp.write_text(scan.model_dump_json(indent=2), encoding="utf-8")
            os.replace(tmp, path)
        except OSError as exc:
            log.error("Error saving scan %s: %s", scan.id, exc)
            raise PersistenceError(f"failed to save scan {scan.id}: {exc}") from exc

    def _all(self) -> List[SavedScan]:
        scans = []
        for path in self.directory.glob("*.json"):
            scan = self._load(path.stem)
            if scan is not None:
                scans.append(scan)
        return scans

    def _remove(self, history_id: str) -> bool:
        path = self._path(history_id)
        try:
            path.unlink()
        except FileNotFoundError:
            return False
        except OSError as exc:
            raise PersistenceError(f"failed to delete scan {history_id}: {exc}") from exc
        return True


__all__ = [
    "BaseHistoryStore",
    "FileHistoryStore",
    "HistoryStore",
    "MemoryHistoryStore",
    "SavedScan",
    "new_history_id",
]
