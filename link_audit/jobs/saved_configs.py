"""
Saved configurations: named ``(url, ScanConfig)`` pairs that can be stored
once and queued again later.
"""
from __future__ import annotations

import os
import re
import secrets
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, List, Optional, Protocol, Union

from pydantic import BaseModel, Field, ValidationError

from link_audit.config import ScanConfig, parse_scan_config
from link_audit.errors import ConfigurationError, JobNotFoundError, PersistenceError
from link_audit.logger import get_logger

log = get_logger("jobs.configs")

_CONFIG_ID = re.compile(r"^[\w-]+$")


def _now() -> datetime:
    return datetime.now(timezone.utc)


def new_config_id() -> str:
    """``config_<epoch ms>_<8 hex>``."""
    return f"config_{int(_now().timestamp() * 1000)}_{secrets.token_hex(4)}"


class SavedConfig(BaseModel):
    id: str
    name: str
    url: str
    config: ScanConfig = Field(default_factory=ScanConfig)
    created_at: datetime = Field(default_factory=_now)
    updated_at: datetime = Field(default_factory=_now)


class ConfigStore(Protocol):
    async def save(
        self,
        name: str,
        url: str,
        config: Union[ScanConfig, dict, None],
        config_id: Optional[str] = None,
    ) -> SavedConfig: ...

    async def get(self, config_id: str) -> Optional[SavedConfig]: ...

    async def list(self) -> List[SavedConfig]: ...

    async def delete(self, config_id: str) -> None: ...


class BaseConfigStore(ABC):
    @abstractmethod
    def _load(self, config_id: str) -> Optional[SavedConfig]: ...

    @abstractmethod
    def _store(self, saved: SavedConfig) -> None: ...

    @abstractmethod
    def _all(self) -> List[SavedConfig]: ...

    @abstractmethod
    def _remove(self, config_id: str) -> bool: ...

    async def save(
        self,
        name: str,
        url: str,
        config: Union[ScanConfig, dict, None],
        config_id: Optional[str] = None,
    ) -> SavedConfig:
        """Create a configuration, or overwrite *config_id* keeping its creation time."""
        if not name.strip() or not url.strip():
            raise ConfigurationError("a saved configuration needs a name and a URL")
        cfg = parse_scan_config(config)
        if config_id is None:
            saved = SavedConfig(id=new_config_id(), name=name, url=url, config=cfg)
        else:
            _check_id(config_id)
            existing = self._load(config_id)
            saved = SavedConfig(
                id=config_id,
                name=name,
                url=url,
                config=cfg,
                created_at=existing.created_at if existing else _now(),
            )
        self._store(saved)
        log.info("Configuration %r saved as %s", name, saved.id)
        return saved

    async def get(self, config_id: str) -> Optional[SavedConfig]:
        if not _CONFIG_ID.match(config_id):
            return None
        return self._load(config_id)

    async def list(self) -> List[SavedConfig]:
        """Most recently updated first."""
        return sorted(self._all(), key=lambda c: c.updated_at, reverse=True)

    async def delete(self, config_id: str) -> None:
        _check_id(config_id)
        if not self._remove(config_id):
            raise JobNotFoundError(f"saved configuration {config_id} not found")


def _check_id(config_id: str) -> None:
    if not _CONFIG_ID.match(config_id):
        raise ConfigurationError(f"Invalid configuration id: {config_id!r}")


class MemoryConfigStore(BaseConfigStore):
    def __init__(self) -> None:
        self._configs: Dict[str, SavedConfig] = {}

    def _load(self, config_id: str) -> Optional[SavedConfig]:
        saved = self._configs.get(config_id)
        return saved.model_copy(deep=True) if saved else None

    def _store(self, saved: SavedConfig) -> None:
        self._configs[saved.id] = saved.model_copy(deep=True)

    def _all(self) -> List[SavedConfig]:
        return list(self._configs.values())

    def _remove(self, config_id: str) -> bool:
        return self._configs.pop(config_id, None) is not None


class FileConfigStore(BaseConfigStore):
    """One ``<id>.json`` per saved configuration."""

    def __init__(self, directory: Union[str, Path]) -> None:
        self.directory = Path(directory)
        self.directory.mkdir(parents=True, exist_ok=True)

    def _path(self, config_id: str) -> Path:
        return self.directory / f"{config_id}.json"

    def _load(self, config_id: str) -> Optional[SavedConfig]:
        path = self._path(config_id)
        if not path.is_file():
            return None
        try:
            return SavedConfig.model_validate_json(path.read_text(encoding="utf-8"))
        except (OSError, ValidationError) as exc:
            log.error("Error reading saved configuration %s: %s", path, exc)
            return None

    def _store(self, saved: SavedConfig) -> None:
        path = self._path(saved.id)
        tmp = path.with_suffix(".json.tmp")
        try:
            tmp.write_text(saved.model_dump_json(indent=2), encoding="utf-8")
            os.replace(tmp, path)
        except OSError as exc:
            raise PersistenceError(f"failed to save configuration {saved.id}: {exc}") from exc

    def _all(self) -> List[SavedConfig]:
        configs = []
        for path in self.directory.glob("*.json"):
            saved = self._load(path.stem)
            if saved is not None:
                configs.append(saved)
        return configs

    def _remove(self, config_id: str) -> bool:
        try:
            self._path(config_id).unlink()
        except FileNotFoundError:
            return False
        except OSError as exc:
            raise PersistenceError(f"failed to delete configuration {config_id}: {exc}") from exc
        return True


__all__ = [
    "BaseConfigStore",
    "ConfigStore",
    "FileConfigStore",
    "MemoryConfigStore",
    "SavedConfig",
    "new_config_id",
]
