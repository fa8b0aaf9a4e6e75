"""
Модуль для загрузки и валидации конфигурации LinkAudit.
Используется Pydantic для описания схемы и проверки данных.

Две схемы:

* :class:`ScanConfig`: неизменяемые параметры одного сканирования (хранятся
  вместе с заданием, на проводе используются camelCase-ключи);
* :class:`EngineSettings`: параметры воркера и файловых хранилищ.
"""
from __future__ import annotations

import json
import os
import errno
from pathlib import Path
from typing import Any, Mapping, Optional, Union

import yaml
from pydantic import (
    AliasChoices,
    BaseModel,
    ConfigDict,
    Field,
    ValidationError,
    field_validator,
)
from pydantic.alias_generators import to_camel

from link_audit.errors import ConfigurationError

DEFAULT_USER_AGENT = "LinkAuditBot/1.0"


class AuthCredentials(BaseModel):
    """HTTP Basic Auth credentials."""
    model_config = ConfigDict(frozen=True, extra="forbid")

    username: str = Field(..., min_length=1)
    password: str = ""

    def __repr__(self) -> str:
        return f"AuthCredentials(username={self.username!r}, password='***')"


class ScanConfig(BaseModel):
    """Конфигурация одного сканирования (неизменяема на время задания)."""
    model_config = ConfigDict(
        extra="forbid",
        frozen=True,
        alias_generator=to_camel,
        populate_by_name=True,
    )

    depth: Optional[int] = Field(
        3,
        ge=0,
        description="Число переходов от стартовой страницы. 0: только сама страница, None: без ограничения.",
    )
    concurrency: int = Field(10, ge=1, le=50, description="Максимум одновременных запросов.")
    request_timeout: int = Field(
        30000,
        gt=0,
        validation_alias=AliasChoices("requestTimeout", "requestTimeoutMs", "request_timeout"),
        description="Таймаут на один запрос (миллисекунды).",
    )
    scan_same_link_once: bool = Field(True, description="Проверять каждый URL только один раз.")
    excluded_urls: list[str] = Field(default_factory=list)
    regex_exclusions: list[str] = Field(default_factory=list)
    wildcard_exclusions: list[str] = Field(default_factory=list)
    css_selectors: list[str] = Field(default_factory=list)
    css_selectors_force_exclude: bool = False
    skip_external_domains: bool = True
    exclude_subdomains: bool = True
    auth: Optional[AuthCredentials] = None
    use_auth_for_all_domains: bool = False
    user_agent: str = Field(DEFAULT_USER_AGENT, min_length=1)
    max_body_bytes: int = Field(5 * 1024 * 1024, gt=0, description="Предел чтения HTML-документа.")

    @field_validator(
        "excluded_urls", "regex_exclusions", "wildcard_exclusions", "css_selectors", mode="before"
    )
    @classmethod
    def _drop_blank_patterns(cls, v: Any) -> Any:
        if v is None:
            return []
        if isinstance(v, str):
            v = v.splitlines()
        if isinstance(v, (list, tuple)):
            return [p.strip() for p in v if isinstance(p, str) and p.strip()]
        return v

    @property
    def timeout_seconds(self) -> float:
        return self.request_timeout / 1000

    def to_wire(self) -> dict[str, Any]:
        """camelCase-словарь для хранилищ и JSON-вывода."""
        return self.model_dump(mode="json", by_alias=True)


class EngineSettings(BaseModel):
    """Настройки воркера, хранилищ и частоты записи прогресса."""
    model_config = ConfigDict(extra="forbid", frozen=True)

    data_dir: Path = Field(Path(".linkaudit"), description="Каталог для заданий и истории.")
    poll_interval: float = Field(1.0, gt=0, description="Пауза между опросами очереди (секунд).")
    progress_every: int = Field(5, ge=1, description="Писать прогресс каждые N URL.")
    progress_interval: float = Field(1.0, ge=0, description="...или не реже, чем раз в N секунд.")
    control_poll_interval: float = Field(
        0.0, ge=0, description="Минимальный интервал между чтениями флагов pause/stop."
    )
    store_timeout: float = Field(5.0, gt=0, description="Таймаут записи прогресса в хранилище.")
    orphan_timeout: float = Field(
        300.0, gt=0,
        description="Задание running без записей дольше N секунд считается брошенным.",
    )

    @property
    def jobs_dir(self) -> Path:
        return self.data_dir / "scan_jobs"

    @property
    def history_dir(self) -> Path:
        return self.data_dir / "scan_history"

    @property
    def configs_dir(self) -> Path:
        return self.data_dir / "scan_configs"


_DEFAULT_SETTINGS = Path("configs/linkaudit.yaml")


def _read_yaml(path: Path) -> dict[str, Any]:
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    except yaml.YAMLError as exc:
        raise ValueError(f"Неправильный YAML в {path}: {exc}") from exc
    if not isinstance(data, dict):
        raise TypeError(f"Верхний уровень YAML должен быть mapping, получено {type(data).__name__}")
    return data


def _read_json(path: Path) -> dict[str, Any]:
    try:
        data = json.loads(path.read_text(encoding="utf-8")) or {}
    except json.JSONDecodeError as exc:
        raise ValueError(f"Неправильный JSON в {path}: {exc}") from exc
    if not isinstance(data, dict):
        raise TypeError(f"Верхний уровень JSON должен быть mapping, получено {type(data).__name__}")
    return data


def _read_mapping(path: Union[str, Path]) -> dict[str, Any]:
    path_obj = Path(path).expanduser().resolve()
    if not path_obj.is_file():
        raise FileNotFoundError(errno.ENOENT, os.strerror(errno.ENOENT), str(path_obj))

    suffix = path_obj.suffix.lower()
    if suffix in (".yaml", ".yml"):
        return _read_yaml(path_obj)
    if suffix == ".json":
        return _read_json(path_obj)
    raise ValueError(f"Неподдерживаемый формат конфига: {suffix}")


def parse_scan_config(data: Union[ScanConfig, Mapping[str, Any], None]) -> ScanConfig:
    """Проверяет словарь и возвращает ScanConfig, ошибки поднимаются как ConfigurationError."""
    if isinstance(data, ScanConfig):
        return data
    try:
        return ScanConfig.model_validate(dict(data or {}))
    except ValidationError as exc:
        raise ConfigurationError(f"Invalid scan config: {exc}") from exc


def load_config(path: Union[str, Path]) -> ScanConfig:
    """
    Читает YAML или JSON и возвращает проверенный объект ScanConfig.
    При отсутствии файла бросает FileNotFoundError, при ошибке схемы — ConfigurationError.
    """
    return parse_scan_config(_read_mapping(path))


def load_settings(path: Union[str, Path, None] = None) -> EngineSettings:
    """
    Читает настройки движка. Без пути берётся configs/linkaudit.yaml,
    а если его нет, значения по умолчанию.
    """
    if path is None:
        if not _DEFAULT_SETTINGS.exists():
            return EngineSettings()
        path = _DEFAULT_SETTINGS
    try:
        return EngineSettings(**_read_mapping(path))
    except ValidationError as exc:
        raise ConfigurationError(f"Invalid engine settings: {exc}") from exc


__all__ = [
    "AuthCredentials",
    "DEFAULT_USER_AGENT",
    "EngineSettings",
    "ScanConfig",
    "load_config",
    "load_settings",
    "parse_scan_config",
]
