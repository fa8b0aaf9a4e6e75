"""Логирование LinkAudit.

Один логгер проекта (``"LinkAudit"``) и дочерние логгеры модулей
(:func:`get_logger`). Консольный вывод идёт в **stderr**: stdout занят
JSON-отчётами команды ``linkaudit scan``. Файл логов (с ротацией)
подключается опционально.

Строки, относящиеся к заданию, пишутся через :func:`job_logger` и несут
``job_id``; у остальных записей на его месте ``-``::

    from link_audit.logger import get_logger, job_logger
    get_logger("worker").info("Worker ready")
    job_logger(job.id).warning("Ignoring invalid exclusion pattern")
"""
from __future__ import annotations

import logging
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Final, Union

_LOGGER_NAME: Final[str] = "LinkAudit"
_DEFAULT_FORMAT: Final[str] = "%(asctime)s | %(levelname)-8s | %(name)s | %(job_id)s | %(message)s"

#: размер одного файла логов и число архивных копий
_MAX_BYTES: Final[int] = 5 * 1024 * 1024
_BACKUPS: Final[int] = 3

_LevelT = Union[int, str]


class _JobIdFilter(logging.Filter):
    """Подставляет ``job_id='-'`` в записи, пришедшие не из :func:`job_logger`."""

    def filter(self, record: logging.LogRecord) -> bool:
        if not hasattr(record, "job_id"):
            record.job_id = "-"
        return True


def _handler(handler: logging.Handler, fmt: str) -> logging.Handler:
    handler.setFormatter(logging.Formatter(fmt))
    handler.addFilter(_JobIdFilter())
    return handler


def configure(
    *,
    level: _LevelT = "INFO",
    log_file: str | Path | None = None,
    log_format: str = _DEFAULT_FORMAT,
    replace_handlers: bool = True,
) -> logging.Logger:
    """Настраивает логгер проекта заново.

    Parameters
    ----------
    level
        Уровень логирования, числом или строкой (``"DEBUG"``).
    log_file
        Файл логов с ротацией; при ``None`` только консоль.
    log_format
        Формат :class:`logging.Formatter`; может ссылаться на ``%(job_id)s``.
    replace_handlers
        Удалить уже подключённые обработчики.
    """
    root = logging.getLogger(_LOGGER_NAME)
    root.setLevel(level)
    if replace_handlers:
        for old in list(root.handlers):
            root.removeHandler(old)
            old.close()

    root.addHandler(_handler(logging.StreamHandler(sys.stderr), log_format))
    if log_file is not None:
        Path(log_file).parent.mkdir(parents=True, exist_ok=True)
        root.addHandler(
            _handler(
                RotatingFileHandler(
                    str(log_file), maxBytes=_MAX_BYTES, backupCount=_BACKUPS, encoding="utf-8"
                ),
                log_format,
            )
        )
    root.propagate = False
    return root


def init_logging(
    level: _LevelT = "INFO",
    log_file: str | Path | None = None,
    log_format: str = _DEFAULT_FORMAT,
) -> logging.Logger:
    """То, что вызывает CLI при старте: заменить обработчики и выставить уровень."""
    return configure(level=level, log_file=log_file, log_format=log_format)


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(_LOGGER_NAME).getChild(name)


def job_logger(job_id: str) -> logging.LoggerAdapter:
    """Логгер ``LinkAudit.jobs``, помечающий каждую запись идентификатором задания."""
    return logging.LoggerAdapter(get_logger("jobs"), {"job_id": job_id})


logger: logging.Logger = init_logging()

__all__ = ["configure", "get_logger", "init_logging", "job_logger", "logger"]
